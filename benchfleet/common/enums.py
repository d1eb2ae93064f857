"""Common enums used across the benchfleet framework."""

from enum import Enum


class _ValueEnum(str, Enum):
    """String enum with helpers for validation messages."""

    @classmethod
    def valid_values(cls) -> list[str]:
        """Return all valid values as strings, in declaration order."""
        return [m.value for m in cls]

    def __str__(self) -> str:
        return self.value


class Variant(_ValueEnum):
    """DataFusion configurations benchmarked by ClickBench.

    Each value is also the name of the ClickBench directory holding the
    variant's ``benchmark.sh``.
    """

    DATAFUSION = "datafusion"
    DATAFUSION_PARTITIONED = "datafusion-partitioned"


class InstanceSize(_ValueEnum):
    """EC2 instance types the fleet may be launched with."""

    C6A_XLARGE = "c6a.xlarge"
    C6A_2XLARGE = "c6a.2xlarge"
    C6A_4XLARGE = "c6a.4xlarge"
    C6A_8XLARGE = "c6a.8xlarge"
    C8G_XLARGE = "c8g.xlarge"
    C8G_2XLARGE = "c8g.2xlarge"
    C8G_4XLARGE = "c8g.4xlarge"
    C8G_8XLARGE = "c8g.8xlarge"


class InstallMethod(_ValueEnum):
    """How DataFusion is installed on an instance.

    - COMPILE: build ``datafusion-cli`` from source at the configured ref
    - PACKAGE: install the Homebrew package (``brew`` is accepted as alias)
    """

    COMPILE = "compile"
    PACKAGE = "package"

    @classmethod
    def parse(cls, value: str) -> "InstallMethod":
        """Parse an install method name, accepting the ``brew`` alias."""
        normalized = value.strip().lower()
        if normalized == "brew":
            return cls.PACKAGE
        return cls(normalized)


class Reachability(_ValueEnum):
    """Network reachability of a provisioned instance."""

    PROVISIONING = "provisioning"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"


class VariantStatus(_ValueEnum):
    """Progress of one variant on one instance."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class Outcome(_ValueEnum):
    """Result of installing and running one variant on one instance.

    Failures are attributed to the first sub-phase that failed.
    """

    INSTALL_FAILED = "install-failed"
    WORKLOAD_FETCH_FAILED = "workload-fetch-failed"
    EXECUTION_FAILED = "execution-failed"
    SUCCEEDED = "succeeded"

    @property
    def succeeded(self) -> bool:
        return self is Outcome.SUCCEEDED


class Phase(_ValueEnum):
    """Orchestration phases; ``full`` runs them in declaration order."""

    SETUP = "setup"
    BENCHMARK = "benchmark"
    COLLECT = "collect"
    CLEANUP = "cleanup"
