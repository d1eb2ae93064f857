"""Run identity tokens.

A run identity tags every EC2 resource created by one logical run and names
its local results directory. Generated identities have one-second
resolution: two invocations started within the same second receive the same
token. Automated or concurrent callers should pass ``--run-id`` explicitly.
"""

import re
from datetime import datetime, timezone

from .errors import ConfigurationError

RUN_ID_FORMAT = "%Y%m%d-%H%M%S"

# Must be usable as a directory name and as an EC2 tag value
_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


def new_run_identity(now: datetime | None = None) -> str:
    """Return a sortable timestamp token such as ``20260118-093015`` (UTC)."""
    moment = now or datetime.now(timezone.utc)
    return moment.strftime(RUN_ID_FORMAT)


def accept_run_identity(token: str | None) -> str:
    """Validate a user-supplied run identity and return it stripped."""
    value = (token or "").strip()
    if not value:
        raise ConfigurationError(
            "run_id",
            "run identity must not be empty",
            "Pass --run-id <token>, e.g. the id printed by 'benchfleet setup'",
        )
    if not _RUN_ID_PATTERN.match(value):
        raise ConfigurationError(
            "run_id",
            f"'{value}' is not filesystem-safe; use letters, digits, '.', '_' or '-' "
            "(max 128 characters, starting with a letter or digit)",
            "Pass --run-id with a simple token such as 20260118-093015",
        )
    return value
