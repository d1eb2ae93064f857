"""Error taxonomy for benchfleet.

Fatal conditions are exceptions derived from ``BenchfleetError``; each carries
the process exit code the CLI should use and a remediation hint naming the
command to run or the value to edit. Non-fatal conditions (a failed variant,
a missing artifact) are plain records collected into reports instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from .common.enums import InstanceSize, Outcome, Variant

if TYPE_CHECKING:
    from .models import TeardownReport
    from .validation import ValidationReport


class BenchfleetError(Exception):
    """Base class for fatal orchestration errors."""

    exit_code = 1

    def __init__(self, message: str, remediation: str | None = None):
        super().__init__(message)
        self.message = message
        self.remediation = remediation


class ConfigurationError(BenchfleetError):
    """A mandatory configuration value is missing, a placeholder, or invalid."""

    def __init__(self, field: str, message: str, remediation: str | None = None):
        super().__init__(f"{field}: {message}", remediation)
        self.field = field


class PrerequisiteError(BenchfleetError):
    """Local tooling or credentials required for the run are missing."""

    def __init__(self, report: ValidationReport):
        failed = [c for c in report.checks if c.is_error]
        names = ", ".join(c.name for c in failed) or "unknown check"
        suggestions = [c.suggestion for c in failed if c.suggestion]
        super().__init__(
            f"Pre-flight checks failed: {names}",
            "\n".join(suggestions) if suggestions else "Run: benchfleet check",
        )
        self.report = report


class ProvisioningError(BenchfleetError):
    """No instance of the requested fleet became reachable."""


class TeardownPartialFailure(BenchfleetError):
    """One or more resource deletions failed during a teardown sweep."""

    exit_code = 3

    def __init__(self, report: TeardownReport):
        failed = ", ".join(sorted(report.failures))
        super().__init__(
            f"Teardown failed for {len(report.failures)} resource(s): {failed}",
            f"Re-run: benchfleet --run-id {report.run_id} cleanup --force"
            if report.run_id is not None
            else "Re-run: benchfleet cleanup --force",
        )
        self.report = report


@dataclass(frozen=True)
class ExecutionOutcomeFailure:
    """A variant that did not succeed on one instance."""

    size: InstanceSize
    instance_id: str | None
    variant: Variant
    outcome: Outcome
    detail: str = ""


@dataclass(frozen=True)
class CollectionWarning:
    """Artifacts that could not be collected from an instance."""

    size: InstanceSize
    instance_id: str | None
    message: str
    variant: Variant | None = None
