"""Pre-flight validation for benchfleet operations.

Checks local tooling, the SSH private key and AWS access before any cloud
resource is created, so that a run fails before it costs money rather than
halfway through provisioning.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from cryptography.hazmat.primitives import serialization

from .errors import PrerequisiteError

if TYPE_CHECKING:
    from rich.console import Console

    from .config import RunConfiguration

REQUIRED_TOOLS = ("ssh", "scp")


class CheckSeverity(Enum):
    """Severity level for check results."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass
class CheckResult:
    """Result of a single validation check."""

    name: str
    passed: bool
    severity: CheckSeverity
    message: str
    details: str | None = None
    suggestion: str | None = None

    @property
    def is_error(self) -> bool:
        return not self.passed and self.severity == CheckSeverity.ERROR

    @property
    def symbol(self) -> str:
        """Return check symbol for display."""
        if self.passed:
            return "[green]✓[/green]"
        elif self.severity == CheckSeverity.ERROR:
            return "[red]✗[/red]"
        elif self.severity == CheckSeverity.WARNING:
            return "[yellow]⚠[/yellow]"
        else:
            return "[blue]ℹ[/blue]"


@dataclass
class ValidationReport:
    """Aggregated results of all validation checks."""

    checks: list[CheckResult] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return any(c.is_error for c in self.checks)

    @property
    def passed_count(self) -> int:
        return sum(1 for c in self.checks if c.passed)

    @property
    def failed_count(self) -> int:
        return sum(1 for c in self.checks if not c.passed)

    def add(self, result: CheckResult) -> None:
        self.checks.append(result)


def check_local_tool(tool: str) -> CheckResult:
    """Check that an executable is available on PATH."""
    path = shutil.which(tool)
    if path is None:
        return CheckResult(
            name=f"Local tool '{tool}'",
            passed=False,
            severity=CheckSeverity.ERROR,
            message=f"'{tool}' not found on PATH",
            suggestion="Install the OpenSSH client (e.g. apt install openssh-client)",
        )
    return CheckResult(
        name=f"Local tool '{tool}'",
        passed=True,
        severity=CheckSeverity.INFO,
        message=path,
    )


def check_ssh_key_file(key_path: str) -> CheckResult:
    """Check the SSH private key exists and is a regular file."""
    expanded_path = Path(key_path).expanduser()

    if not expanded_path.is_file():
        return CheckResult(
            name="SSH key file",
            passed=False,
            severity=CheckSeverity.ERROR,
            message=f"SSH private key not found: {key_path}",
            details=f"Expanded path: {expanded_path}",
            suggestion="Set aws.private_key_file to the .pem file of your EC2 key pair",
        )

    return CheckResult(
        name="SSH key file",
        passed=True,
        severity=CheckSeverity.INFO,
        message=f"SSH key found: {expanded_path}",
    )


def check_ssh_key_permissions(key_path: str) -> CheckResult:
    """Check the SSH private key is not readable by others (ssh refuses it)."""
    expanded_path = Path(key_path).expanduser()

    if not expanded_path.exists():
        return CheckResult(
            name="SSH key permissions",
            passed=False,
            severity=CheckSeverity.ERROR,
            message="Cannot check permissions: file does not exist",
        )

    mode = expanded_path.stat().st_mode & 0o777
    if mode in (0o600, 0o400):
        return CheckResult(
            name="SSH key permissions",
            passed=True,
            severity=CheckSeverity.INFO,
            message=f"Permissions OK: {oct(mode)}",
        )
    return CheckResult(
        name="SSH key permissions",
        passed=False,
        severity=CheckSeverity.ERROR,
        message=f"Incorrect permissions: {oct(mode)}",
        details="Expected: 0o600 or 0o400",
        suggestion=f"chmod 600 {expanded_path}",
    )


def _passphrase_protected(path: Path) -> CheckResult:
    return CheckResult(
        name="SSH key format",
        passed=True,
        severity=CheckSeverity.WARNING,
        message="Valid SSH key format (passphrase protected)",
        details="ssh must be able to use the key non-interactively",
        suggestion=f"eval $(ssh-agent) && ssh-add {path}",
    )


def check_ssh_key_format(key_path: str) -> CheckResult:
    """Check the file parses as an OpenSSH or PEM private key."""
    expanded_path = Path(key_path).expanduser()

    if not expanded_path.exists():
        return CheckResult(
            name="SSH key format",
            passed=False,
            severity=CheckSeverity.ERROR,
            message="Cannot check format: file does not exist",
        )

    key_data = expanded_path.read_bytes()
    private_key: Any = None
    try:
        private_key = serialization.load_ssh_private_key(key_data, password=None)
    except TypeError:
        return _passphrase_protected(expanded_path)
    except ValueError:
        try:
            private_key = serialization.load_pem_private_key(key_data, password=None)
        except TypeError:
            return _passphrase_protected(expanded_path)
        except ValueError as e:
            return CheckResult(
                name="SSH key format",
                passed=False,
                severity=CheckSeverity.ERROR,
                message=f"Invalid SSH key format: {e}",
                suggestion="Ensure the file is a valid SSH private key",
            )

    key_info = type(private_key).__name__.replace("PrivateKey", "").lstrip("_")
    if hasattr(private_key, "key_size"):
        key_info += f" {private_key.key_size}-bit"

    return CheckResult(
        name="SSH key format",
        passed=True,
        severity=CheckSeverity.INFO,
        message=f"Valid SSH key: {key_info}",
    )


def check_aws_credentials(sts_client: Any) -> CheckResult:
    """Check AWS credentials via STS get-caller-identity."""
    try:
        identity = sts_client.get_caller_identity()
    except NoCredentialsError:
        return CheckResult(
            name="AWS credentials",
            passed=False,
            severity=CheckSeverity.ERROR,
            message="No AWS credentials configured",
            suggestion="Run: aws configure\nOr set: AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY",
        )
    except (ClientError, BotoCoreError) as e:
        return CheckResult(
            name="AWS credentials",
            passed=False,
            severity=CheckSeverity.ERROR,
            message=f"AWS credentials error: {e}",
            suggestion="Run: aws configure",
        )

    return CheckResult(
        name="AWS credentials",
        passed=True,
        severity=CheckSeverity.INFO,
        message="AWS credentials configured",
        details=f"User: {identity.get('Arn', 'Unknown')}\n"
        f"Account: {identity.get('Account', 'Unknown')}",
    )


def check_aws_key_pair(ec2_client: Any, key_name: str) -> CheckResult:
    """Check the EC2 key pair exists in the configured region."""
    try:
        response = ec2_client.describe_key_pairs(KeyNames=[key_name])
    except ClientError as e:
        error_code = e.response.get("Error", {}).get("Code", "")
        if error_code == "InvalidKeyPair.NotFound":
            return CheckResult(
                name="AWS key pair",
                passed=False,
                severity=CheckSeverity.ERROR,
                message=f"Key pair '{key_name}' not found on AWS",
                suggestion=f"aws ec2 create-key-pair --key-name {key_name}",
            )
        return CheckResult(
            name="AWS key pair",
            passed=False,
            severity=CheckSeverity.ERROR,
            message=f"Error checking AWS key pair: {e}",
        )
    except BotoCoreError as e:
        return CheckResult(
            name="AWS key pair",
            passed=False,
            severity=CheckSeverity.ERROR,
            message=f"Error checking AWS key pair: {e}",
        )

    key_pairs = response.get("KeyPairs", [])
    if not key_pairs:
        return CheckResult(
            name="AWS key pair",
            passed=False,
            severity=CheckSeverity.ERROR,
            message=f"Key pair '{key_name}' not found on AWS",
            suggestion=f"aws ec2 create-key-pair --key-name {key_name}",
        )

    return CheckResult(
        name="AWS key pair",
        passed=True,
        severity=CheckSeverity.INFO,
        message=f"Key pair '{key_name}' found",
        details=f"KeyPairId: {key_pairs[0].get('KeyPairId', 'N/A')}",
    )


class PreflightChecker:
    """Runs the pre-flight checks appropriate for a resolved configuration."""

    def __init__(
        self,
        config: RunConfiguration,
        console: Console | None = None,
        session: Any = None,
    ):
        self.config = config
        self.console = console
        self._session = session

    def _client(self, service: str) -> Any:
        if self._session is None:
            self._session = boto3.Session(region_name=self.config.region)
        return self._session.client(service, region_name=self.config.region)

    def validate_local(self) -> ValidationReport:
        """Checks that need neither network nor credentials."""
        report = ValidationReport()
        for tool in REQUIRED_TOOLS:
            report.add(check_local_tool(tool))

        key_file = self.config.private_key_file
        file_check = check_ssh_key_file(key_file)
        report.add(file_check)
        if file_check.passed:
            report.add(check_ssh_key_permissions(key_file))
            report.add(check_ssh_key_format(key_file))
        return report

    def validate_aws(self) -> ValidationReport:
        report = ValidationReport()
        credentials = check_aws_credentials(self._client("sts"))
        report.add(credentials)
        if credentials.passed and self.config.key_name:
            report.add(check_aws_key_pair(self._client("ec2"), self.config.key_name))
        return report

    def run(self, include_aws: bool = True, include_local: bool = True) -> ValidationReport:
        report = self.validate_local() if include_local else ValidationReport()
        if include_aws:
            report.checks.extend(self.validate_aws().checks)
        return report

    def ensure_ready(
        self, include_aws: bool = True, include_local: bool = True
    ) -> ValidationReport:
        """Run the checks and raise PrerequisiteError if any failed."""
        report = self.run(include_aws=include_aws, include_local=include_local)
        if report.has_errors:
            self.display_report(report)
            raise PrerequisiteError(report)
        return report

    def display_report(self, report: ValidationReport) -> None:
        """Display validation report using the Rich console."""
        if self.console is None:
            for check in report.checks:
                status = "OK" if check.passed else "FAIL"
                print(f"  [{status}] {check.name}: {check.message}")
            return

        for check in report.checks:
            self.console.print(f"  {check.symbol} {check.name}: {check.message}")
            if check.details and not check.passed:
                for line in check.details.split("\n"):
                    self.console.print(f"      {line}")
            if check.suggestion and not check.passed:
                self.console.print(f"      [dim]→ Fix:[/dim] {check.suggestion}")

        self.console.print()
        color = "red bold" if report.has_errors else "green"
        self.console.print(
            f"[{color}]Summary: {report.passed_count} passed, "
            f"{report.failed_count} failed[/{color}]"
        )
