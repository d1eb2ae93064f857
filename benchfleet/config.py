"""Configuration resolution for benchfleet.

Every run works from one immutable ``RunConfiguration``. Each field is taken
from the first of three sources that supplies a usable value:

1. an explicit command-line flag
2. the YAML configuration file
3. the built-in default

Empty strings and template placeholders (``YOUR_...``) count as "not
supplied", so a half-edited config file falls through to the next tier, or
fails if the field is mandatory.
"""

import ipaddress
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator, model_validator

from .common.enums import InstallMethod, InstanceSize, Variant
from .errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path("config/aws-config.yml")
PLACEHOLDER_PREFIX = "YOUR_"

DEFAULTS: dict[str, Any] = {
    "region": "us-west-2",
    "ami_id": "ami-00f46ccd1cbfb363e",
    "security_group": "benchfleet-ssh",
    "ssh_user": "ubuntu",
    "ingress_cidr": "auto",
    "instance_sizes": ["c6a.2xlarge", "c6a.4xlarge", "c8g.4xlarge"],
    "variants": ["datafusion", "datafusion-partitioned"],
    "datafusion_ref": "main",
    "install_method": "compile",
    "enable_native_opts": True,
    "clickbench_repo": "https://github.com/ClickHouse/ClickBench.git",
    "clickbench_ref": "main",
    "volume_size_gb": 200,
    "reachability_timeout_s": 600,
    "parallel": False,
    "max_workers": None,
    "results_root": "results",
    "dry_run": False,
}

# Fields with no default: the run cannot reach an instance without them
MANDATORY_FIELDS: dict[str, str] = {
    "key_name": "aws.key_name",
    "private_key_file": "aws.private_key_file",
}

# (section, key) in the YAML file -> RunConfiguration field
FILE_FIELDS: dict[tuple[str, str], str] = {
    ("aws", "region"): "region",
    ("aws", "key_name"): "key_name",
    ("aws", "private_key_file"): "private_key_file",
    ("aws", "security_group"): "security_group",
    ("aws", "ssh_user"): "ssh_user",
    ("aws", "ingress_cidr"): "ingress_cidr",
    ("instances", "ami_id"): "ami_id",
    ("instances", "types"): "instance_sizes",
    ("instances", "volume_size_gb"): "volume_size_gb",
    ("instances", "reachability_timeout_s"): "reachability_timeout_s",
    ("datafusion", "default_ref"): "datafusion_ref",
    ("datafusion", "install_method"): "install_method",
    ("datafusion", "enable_native_opts"): "enable_native_opts",
    ("clickbench", "repository"): "clickbench_repo",
    ("clickbench", "default_ref"): "clickbench_ref",
    ("clickbench", "variants"): "variants",
    ("execution", "parallel"): "parallel",
    ("execution", "max_workers"): "max_workers",
    ("results", "root"): "results_root",
}

CONFIG_TEMPLATE = """\
# benchfleet configuration
aws:
  region: us-west-2
  key_name: YOUR_EC2_KEY_PAIR_NAME
  private_key_file: YOUR_PRIVATE_KEY_FILE
  security_group: benchfleet-ssh
  ssh_user: ubuntu
  # ingress_cidr: 203.0.113.4/32   # default: your current public IP

instances:
  ami_id: ami-00f46ccd1cbfb363e
  # types: [c6a.2xlarge, c6a.4xlarge, c8g.4xlarge]
  volume_size_gb: 200
  reachability_timeout_s: 600

datafusion:
  default_ref: main
  install_method: compile   # compile | package
  enable_native_opts: true

clickbench:
  repository: https://github.com/ClickHouse/ClickBench.git
  default_ref: main
  # variants: [datafusion, datafusion-partitioned]

execution:
  parallel: false
"""


class RunConfiguration(BaseModel):
    """Resolved parameters for one invocation. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    region: str
    key_name: str
    private_key_file: str
    ami_id: str
    security_group: str
    ssh_user: str
    ingress_cidr: str
    instance_sizes: tuple[InstanceSize, ...]
    variants: tuple[Variant, ...]
    datafusion_ref: str
    install_method: InstallMethod
    enable_native_opts: bool
    clickbench_repo: str
    clickbench_ref: str
    volume_size_gb: int
    reachability_timeout_s: float
    parallel: bool
    max_workers: int
    results_root: str
    dry_run: bool

    @model_validator(mode="before")
    @classmethod
    def default_max_workers(cls, data: Any) -> Any:
        """One worker per instance unless configured otherwise."""
        if isinstance(data, dict) and data.get("max_workers") is None:
            sizes = data.get("instance_sizes") or ()
            if isinstance(sizes, str):
                sizes = sizes.split(",")
            distinct = {str(s).strip() for s in sizes if str(s).strip()}
            data = {**data, "max_workers": max(1, len(distinct))}
        return data

    @field_validator("instance_sizes", mode="before")
    @classmethod
    def validate_instance_sizes(cls, v: Any) -> tuple[InstanceSize, ...]:
        return _parse_enum_list(v, InstanceSize, "instance type")

    @field_validator("variants", mode="before")
    @classmethod
    def validate_variants(cls, v: Any) -> tuple[Variant, ...]:
        return _parse_enum_list(v, Variant, "variant")

    @field_validator("install_method", mode="before")
    @classmethod
    def validate_install_method(cls, v: Any) -> InstallMethod:
        if isinstance(v, InstallMethod):
            return v
        try:
            return InstallMethod.parse(str(v))
        except ValueError:
            raise ValueError(
                f"Unknown install method '{v}'. Supported: compile, package (alias: brew)"
            ) from None

    @field_validator("ingress_cidr")
    @classmethod
    def validate_ingress_cidr(cls, v: str) -> str:
        if v == "auto":
            return v
        try:
            return str(ipaddress.ip_network(v, strict=False))
        except ValueError:
            raise ValueError(f"'{v}' is not a CIDR block (or 'auto')") from None

    @field_validator("volume_size_gb", "max_workers")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"must be positive (got {v})")
        return v

    @field_validator("reachability_timeout_s")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"must be positive (got {v})")
        return v

    @property
    def private_key_path(self) -> Path:
        return Path(self.private_key_file).expanduser()

    def results_dir(self, run_id: str) -> Path:
        return Path(self.results_root) / run_id


def _parse_enum_list(value: Any, enum_cls: type, what: str) -> tuple[Any, ...]:
    if isinstance(value, str):
        value = value.split(",")
    items = [str(v).strip() for v in value or [] if str(v).strip()]
    if not items:
        raise ValueError(f"at least one {what} is required")

    parsed = []
    for item in items:
        try:
            member = enum_cls(item)
        except ValueError:
            raise ValueError(
                f"Unknown {what} '{item}'. Supported: {', '.join(enum_cls.valid_values())}"
            ) from None
        if member not in parsed:
            parsed.append(member)
    return tuple(parsed)


def is_supplied(value: Any) -> bool:
    """Return True if a source actually provides a usable value."""
    if value is None:
        return False
    if isinstance(value, str):
        stripped = value.strip()
        return bool(stripped) and not stripped.upper().startswith(PLACEHOLDER_PREFIX)
    if isinstance(value, (list, tuple)):
        return bool(value) and all(is_supplied(v) for v in value)
    return True


def load_config_file(path: str | Path) -> dict[str, Any]:
    """Read the YAML file and return RunConfiguration fields it supplies."""
    config_path = Path(path)

    if not config_path.exists():
        raise ConfigurationError(
            "config_file",
            f"Configuration file not found: {config_path}",
            f"Run: benchfleet --config {config_path} init",
        )

    try:
        with open(config_path, encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            "config_file", f"Cannot parse {config_path}: {e}"
        ) from e

    if not isinstance(raw_config, dict):
        raise ConfigurationError(
            "config_file", f"{config_path} must contain a YAML mapping"
        )

    raw_config = _expand_env_vars(raw_config)

    values: dict[str, Any] = {}
    for (section, key), field in FILE_FIELDS.items():
        section_values = raw_config.get(section) or {}
        if not isinstance(section_values, dict):
            raise ConfigurationError(
                section, f"section '{section}' in {config_path} must be a mapping"
            )
        if key in section_values:
            values[field] = section_values[key]
    return values


def resolve_configuration(
    config_path: str | Path | None,
    overrides: Mapping[str, Any] | None = None,
    *,
    require_file: bool = True,
    require_ssh: bool = True,
) -> RunConfiguration:
    """
    Merge command-line overrides, the config file and defaults.

    Args:
        config_path: YAML file to read, or None to use flags and defaults only
        overrides: RunConfiguration field name -> flag value (None = not given)
        require_file: Fail if ``config_path`` does not exist
        require_ssh: Fail if the SSH key settings are missing; teardown
            only talks to the EC2 API and can run without them

    Raises:
        ConfigurationError: naming the first missing or invalid field
    """
    overrides = overrides or {}
    unknown = set(overrides) - set(RunConfiguration.model_fields)
    if unknown:
        raise ConfigurationError(
            sorted(unknown)[0], "not a configuration field"
        )

    file_values: dict[str, Any] = {}
    if config_path is not None and (require_file or Path(config_path).exists()):
        file_values = load_config_file(config_path)

    resolved: dict[str, Any] = {}
    for field in RunConfiguration.model_fields:
        for source in (overrides, file_values, DEFAULTS):
            value = source.get(field)
            if is_supplied(value):
                resolved[field] = value
                break
        else:
            if field in MANDATORY_FIELDS and require_ssh:
                raise ConfigurationError(
                    field,
                    "not configured (missing or still a placeholder)",
                    f"Edit {config_path or DEFAULT_CONFIG_PATH} and set "
                    f"{MANDATORY_FIELDS[field]}",
                )
            resolved[field] = DEFAULTS.get(field, "")

    try:
        return RunConfiguration(**resolved)
    except ValidationError as e:
        error = e.errors()[0]
        field = ".".join(str(part) for part in error["loc"]) or "configuration"
        message = str(error["msg"]).removeprefix("Value error, ")
        raise ConfigurationError(field, message) from e


def write_config_template(path: str | Path, force: bool = False) -> Path:
    """Write the starter configuration file; refuse to overwrite unless forced."""
    config_path = Path(path)
    if config_path.exists() and not force:
        raise ConfigurationError(
            "config_file",
            f"{config_path} already exists",
            f"Edit {config_path} directly, or re-run 'init --force' to overwrite it",
        )
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(CONFIG_TEMPLATE, encoding="utf-8")
    return config_path


def _expand_env_vars(obj: Any) -> Any:
    """Recursively expand environment variables in configuration."""
    if isinstance(obj, dict):
        return {k: _expand_env_vars(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_expand_env_vars(item) for item in obj]
    elif isinstance(obj, str):
        return os.path.expandvars(obj)
    else:
        return obj
