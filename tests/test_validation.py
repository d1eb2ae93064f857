"""Tests for the validation module."""

from __future__ import annotations

import pytest
from botocore.exceptions import NoCredentialsError
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from benchfleet.config import resolve_configuration, write_config_template
from benchfleet.errors import PrerequisiteError
from benchfleet.validation import (
    CheckResult,
    CheckSeverity,
    PreflightChecker,
    ValidationReport,
    check_aws_credentials,
    check_aws_key_pair,
    check_local_tool,
    check_ssh_key_file,
    check_ssh_key_format,
    check_ssh_key_permissions,
)

from .conftest import client_error


def write_rsa_key(path, password: bytes | None = None):
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    encryption = (
        serialization.BestAvailableEncryption(password)
        if password
        else serialization.NoEncryption()
    )
    path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8
            if password
            else serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=encryption,
        )
    )
    path.chmod(0o600)
    return path


class FakeSts:
    def __init__(self, error: Exception | None = None):
        self.error = error

    def get_caller_identity(self):
        if self.error:
            raise self.error
        return {"Arn": "arn:aws:iam::123456789012:user/bench", "Account": "123456789012"}


class FakeEc2:
    def __init__(self, key_pairs=None, error: Exception | None = None):
        self.key_pairs = key_pairs or []
        self.error = error

    def describe_key_pairs(self, KeyNames):
        if self.error:
            raise self.error
        return {"KeyPairs": self.key_pairs}


class FakeSession:
    def __init__(self, sts, ec2):
        self.clients = {"sts": sts, "ec2": ec2}

    def client(self, service, region_name=None):
        return self.clients[service]


# =============================================================================
# CheckResult / ValidationReport Tests
# =============================================================================


class TestCheckResult:
    """Tests for CheckResult dataclass."""

    def test_passed_check_symbol_is_green_checkmark(self):
        result = CheckResult("test", passed=True, severity=CheckSeverity.INFO, message="ok")
        assert "✓" in result.symbol  # checkmark
        assert "green" in result.symbol

    def test_failed_error_symbol_is_red_x(self):
        result = CheckResult("test", passed=False, severity=CheckSeverity.ERROR, message="x")
        assert "✗" in result.symbol  # x mark
        assert result.is_error

    def test_failed_warning_is_not_an_error(self):
        result = CheckResult("test", passed=False, severity=CheckSeverity.WARNING, message="w")
        assert "yellow" in result.symbol
        assert not result.is_error


class TestValidationReport:
    """Tests for ValidationReport dataclass."""

    def test_empty_report_has_no_errors(self):
        report = ValidationReport()
        assert not report.has_errors
        assert report.passed_count == 0
        assert report.failed_count == 0

    def test_report_with_failed_error(self):
        report = ValidationReport()
        report.add(CheckResult("a", passed=True, severity=CheckSeverity.INFO, message="ok"))
        assert not report.has_errors

        report.add(CheckResult("b", passed=False, severity=CheckSeverity.ERROR, message="fail"))
        assert report.has_errors
        assert report.passed_count == 1
        assert report.failed_count == 1


# =============================================================================
# Local Tool and SSH Key Tests
# =============================================================================


class TestLocalTool:
    """Tests for check_local_tool function."""

    def test_missing_tool_fails(self, monkeypatch):
        monkeypatch.setattr("benchfleet.validation.shutil.which", lambda tool: None)
        result = check_local_tool("ssh")
        assert result.is_error
        assert "openssh" in result.suggestion.lower()

    def test_present_tool_passes(self, monkeypatch):
        monkeypatch.setattr("benchfleet.validation.shutil.which", lambda tool: f"/usr/bin/{tool}")
        result = check_local_tool("scp")
        assert result.passed
        assert result.message == "/usr/bin/scp"


class TestSSHKeyFile:
    """Tests for check_ssh_key_file function."""

    def test_nonexistent_key_fails(self, tmp_path):
        result = check_ssh_key_file(str(tmp_path / "nonexistent.pem"))
        assert not result.passed
        assert result.severity == CheckSeverity.ERROR
        assert "not found" in result.message.lower()

    def test_directory_instead_of_file_fails(self, tmp_path):
        result = check_ssh_key_file(str(tmp_path))
        assert not result.passed

    def test_tilde_expansion(self, tmp_path, monkeypatch):
        ssh_dir = tmp_path / "home" / ".ssh"
        ssh_dir.mkdir(parents=True)
        (ssh_dir / "bench.pem").write_text("dummy key")
        monkeypatch.setenv("HOME", str(tmp_path / "home"))

        assert check_ssh_key_file("~/.ssh/bench.pem").passed


class TestSSHKeyPermissions:
    """Tests for check_ssh_key_permissions function."""

    @pytest.mark.parametrize("mode", [0o600, 0o400])
    def test_private_modes_pass(self, tmp_path, mode):
        key_file = tmp_path / "test.pem"
        key_file.write_text("dummy")
        key_file.chmod(mode)

        result = check_ssh_key_permissions(str(key_file))
        assert result.passed
        assert oct(mode) in result.message

    def test_permission_644_fails(self, tmp_path):
        key_file = tmp_path / "test.pem"
        key_file.write_text("dummy")
        key_file.chmod(0o644)

        result = check_ssh_key_permissions(str(key_file))
        assert not result.passed
        assert "0o644" in result.message
        assert "chmod 600" in result.suggestion


class TestSSHKeyFormat:
    """Tests for check_ssh_key_format function."""

    def test_invalid_format_fails(self, tmp_path):
        key_file = tmp_path / "test.pem"
        key_file.write_text("this is not a valid ssh key")

        result = check_ssh_key_format(str(key_file))
        assert not result.passed
        assert result.severity == CheckSeverity.ERROR

    def test_valid_rsa_pem_key_passes(self, tmp_path):
        result = check_ssh_key_format(str(write_rsa_key(tmp_path / "test.pem")))
        assert result.passed
        assert "RSA" in result.message
        assert "2048-bit" in result.message

    def test_openssh_ed25519_key_passes(self, tmp_path):
        key_file = tmp_path / "id_ed25519"
        key_file.write_bytes(
            ed25519.Ed25519PrivateKey.generate().private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.OpenSSH,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        result = check_ssh_key_format(str(key_file))
        assert result.passed
        assert "Ed25519" in result.message

    def test_passphrase_protected_key_warns(self, tmp_path):
        key_file = write_rsa_key(tmp_path / "locked.pem", password=b"secret")

        result = check_ssh_key_format(str(key_file))
        assert result.severity == CheckSeverity.WARNING
        assert "ssh-add" in result.suggestion


# =============================================================================
# AWS Tests
# =============================================================================


class TestAwsChecks:
    """Tests for the AWS credential and key pair checks."""

    def test_missing_credentials(self):
        result = check_aws_credentials(FakeSts(NoCredentialsError()))
        assert result.is_error
        assert "aws configure" in result.suggestion

    def test_credentials_report_account(self):
        result = check_aws_credentials(FakeSts())
        assert result.passed
        assert "123456789012" in result.details

    def test_key_pair_not_found(self):
        result = check_aws_key_pair(
            FakeEc2(error=client_error("InvalidKeyPair.NotFound")), "bench-key"
        )
        assert result.is_error
        assert "create-key-pair --key-name bench-key" in result.suggestion

    def test_key_pair_found(self):
        result = check_aws_key_pair(FakeEc2([{"KeyPairId": "key-0abc"}]), "bench-key")
        assert result.passed
        assert "key-0abc" in result.details


# =============================================================================
# PreflightChecker Tests
# =============================================================================


class TestPreflightChecker:
    """Tests for PreflightChecker class."""

    @pytest.fixture(autouse=True)
    def tools_present(self, monkeypatch):
        monkeypatch.setattr("benchfleet.validation.shutil.which", lambda tool: f"/usr/bin/{tool}")

    def test_valid_setup_passes(self, tmp_path, make_config):
        key = write_rsa_key(tmp_path / "bench.pem")
        config = make_config(private_key_file=str(key))
        session = FakeSession(FakeSts(), FakeEc2([{"KeyPairId": "key-0abc"}]))

        report = PreflightChecker(config, session=session).ensure_ready()
        assert not report.has_errors
        assert any(c.name == "AWS key pair" for c in report.checks)

    def test_bad_key_raises_prerequisite_error(self, make_config):
        # the shared fixture key is not a parseable private key
        config = make_config()

        with pytest.raises(PrerequisiteError) as exc_info:
            PreflightChecker(config).ensure_ready(include_aws=False)

        assert "SSH key format" in exc_info.value.message
        assert exc_info.value.exit_code == 1

    def test_aws_checks_can_be_skipped(self, tmp_path, make_config):
        key = write_rsa_key(tmp_path / "bench.pem")
        config = make_config(private_key_file=str(key))

        report = PreflightChecker(config).run(include_aws=False)
        assert not any(c.name.startswith("AWS") for c in report.checks)

    def test_local_checks_can_be_skipped(self, make_config):
        session = FakeSession(FakeSts(NoCredentialsError()), FakeEc2())
        checker = PreflightChecker(make_config(), session=session)

        report = checker.run(include_local=False)
        assert [c.name for c in report.checks] == ["AWS credentials"]
        assert report.has_errors

    def test_key_pair_not_checked_without_credentials(self, tmp_path, make_config):
        key = write_rsa_key(tmp_path / "bench.pem")
        session = FakeSession(FakeSts(NoCredentialsError()), FakeEc2())

        report = PreflightChecker(make_config(private_key_file=str(key)), session=session).run()
        assert "AWS key pair" not in [c.name for c in report.checks]

    def test_key_pair_not_checked_for_teardown_config(self, tmp_path):
        template = write_config_template(tmp_path / "aws-config.yml")
        config = resolve_configuration(template, require_ssh=False)
        session = FakeSession(FakeSts(), FakeEc2(error=AssertionError("not called")))

        report = PreflightChecker(config, session=session).ensure_ready(include_local=False)
        assert [c.name for c in report.checks] == ["AWS credentials"]
