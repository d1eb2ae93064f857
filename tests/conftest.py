"""Shared fixtures: an in-memory EC2 and a scripted SSH fleet."""

from __future__ import annotations

import copy
import itertools
import re
import shlex
from collections import defaultdict
from pathlib import Path
from typing import Any

import pytest
import yaml
from botocore.exceptions import ClientError, EndpointConnectionError

from benchfleet.config import resolve_configuration
from benchfleet.infra.ec2 import TAG_MANAGED, TAG_RUN_ID, Ec2Cloud, tag_value
from benchfleet.infra.provisioner import ResourceProvisioner
from benchfleet.infra.teardown import TeardownController
from benchfleet.run.collector import ResultCollector
from benchfleet.run.executor import RemoteExecutor
from benchfleet.run.orchestrator import Orchestrator


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def endpoint_down(region: str = "us-west-2") -> EndpointConnectionError:
    return EndpointConnectionError(endpoint_url=f"https://ec2.{region}.amazonaws.com/")


class FakeCloud:
    """Just enough of Ec2Cloud, backed by dictionaries."""

    MUTATING = {
        "create_security_group",
        "authorize_ssh",
        "delete_security_group",
        "run_instance",
        "terminate_instance",
    }

    def __init__(self, region: str = "us-west-2"):
        self.region = region
        self.groups: dict[str, dict[str, Any]] = {}
        self.instances: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.fail_launch: set[str] = set()
        self.fail_terminate: set[str] = set()
        self.no_public_ip: set[str] = set()
        # instance types or ids whose API call cannot reach the endpoint
        self.unreachable_api: set[str] = set()
        self._ids = itertools.count(1)

    @property
    def mutations(self) -> list[tuple[str, tuple[Any, ...]]]:
        return [c for c in self.calls if c[0] in self.MUTATING]

    def _record(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))

    # Security groups

    def find_security_group(self, name: str) -> dict[str, Any] | None:
        self._record("find_security_group", name)
        group = self.groups.get(name)
        return copy.deepcopy(group) if group else None

    def create_security_group(self, name: str, description: str) -> tuple[str, bool]:
        self._record("create_security_group", name)
        if name in self.groups:
            return self.groups[name]["GroupId"], False
        group_id = f"sg-{next(self._ids):04d}"
        self.groups[name] = {"GroupId": group_id, "GroupName": name, "IpPermissions": []}
        return group_id, True

    def authorize_ssh(self, group_id: str, cidr: str) -> bool:
        self._record("authorize_ssh", group_id, cidr)
        group = self._group_by_id(group_id)
        if Ec2Cloud.allows_ssh_from(group, cidr):
            return False
        group["IpPermissions"].append(
            {"IpProtocol": "tcp", "FromPort": 22, "ToPort": 22, "IpRanges": [{"CidrIp": cidr}]}
        )
        return True

    allows_ssh_from = staticmethod(Ec2Cloud.allows_ssh_from)

    def delete_security_group(self, group_id: str) -> None:
        self._record("delete_security_group", group_id)
        group = self._group_by_id(group_id)
        del self.groups[group["GroupName"]]

    def _group_by_id(self, group_id: str) -> dict[str, Any]:
        for group in self.groups.values():
            if group["GroupId"] == group_id:
                return group
        raise client_error("InvalidGroup.NotFound")

    def ssh_rules(self, name: str) -> list[str]:
        return [
            r["CidrIp"]
            for p in self.groups[name]["IpPermissions"]
            for r in p["IpRanges"]
        ]

    # Instances

    def add_instance(
        self, size: str, run_id: str, state: str = "running", managed: bool = True
    ) -> str:
        """Seed an instance as if an earlier process had launched it."""
        number = next(self._ids)
        instance_id = f"i-{number:04d}"
        tags = [{"Key": "Name", "Value": f"seed-{number}"}]
        if managed:
            tags += [
                {"Key": TAG_MANAGED, "Value": "true"},
                {"Key": TAG_RUN_ID, "Value": run_id},
                {"Key": "benchfleet:instance-size", "Value": size},
            ]
        self.instances[instance_id] = {
            "InstanceId": instance_id,
            "InstanceType": size,
            "State": {"Name": state},
            "PublicIpAddress": f"10.0.0.{number}",
            "Tags": tags,
        }
        return instance_id

    def run_instance(self, **params: Any) -> str:
        self._record("run_instance", params["instance_type"], params["tags"])
        if params["instance_type"] in self.unreachable_api:
            raise endpoint_down(self.region)
        if params["instance_type"] in self.fail_launch:
            raise client_error("InsufficientInstanceCapacity", "RunInstances")
        number = next(self._ids)
        instance_id = f"i-{number:04d}"
        self.instances[instance_id] = {
            "InstanceId": instance_id,
            "InstanceType": params["instance_type"],
            "State": {"Name": "pending"},
            "Tags": [{"Key": k, "Value": v} for k, v in params["tags"].items()],
            "SecurityGroupIds": [params["group_id"]],
            "VolumeSize": params["volume_size_gb"],
        }
        if params["instance_type"] not in self.no_public_ip:
            self.instances[instance_id]["PublicIpAddress"] = f"10.0.0.{number}"
        return instance_id

    def live_instances(self) -> set[str]:
        return {
            i["InstanceId"]
            for i in self.instances.values()
            if i["State"]["Name"] not in ("terminated", "shutting-down")
        }

    def find_instances(self, run_id: str | None = None) -> list[dict[str, Any]]:
        self._record("find_instances", run_id)
        found = []
        for instance in self.instances.values():
            if instance["State"]["Name"] in ("terminated", "shutting-down"):
                continue
            if tag_value(instance, TAG_MANAGED) != "true":
                continue
            if run_id is not None and tag_value(instance, TAG_RUN_ID) != run_id:
                continue
            found.append(copy.deepcopy(instance))
        return found

    def describe_instance(self, instance_id: str) -> dict[str, Any] | None:
        self._record("describe_instance", instance_id)
        instance = self.instances.get(instance_id)
        return copy.deepcopy(instance) if instance else None

    def wait_until_running(self, instance_ids: list[str], timeout_s: float) -> None:
        self._record("wait_until_running", tuple(instance_ids))
        for instance_id in instance_ids:
            self.instances[instance_id]["State"]["Name"] = "running"

    def terminate_instance(self, instance_id: str) -> None:
        self._record("terminate_instance", instance_id)
        if instance_id in self.unreachable_api:
            raise endpoint_down(self.region)
        if instance_id in self.fail_terminate:
            raise client_error("UnauthorizedOperation", "TerminateInstances")
        self.instances[instance_id]["State"]["Name"] = "shutting-down"

    def wait_until_terminated(self, instance_ids: list[str], timeout_s: float = 600) -> None:
        self._record("wait_until_terminated", tuple(instance_ids))
        for instance_id in instance_ids:
            self.instances[instance_id]["State"]["Name"] = "terminated"


class FakeHost:
    """Scripted stand-in for RemoteHost bound to one address."""

    def __init__(self, fleet: FakeFleet, public_ip: str):
        self.fleet = fleet
        self.public_ip = public_ip

    def wait_for_ssh(self, timeout: float = 300, interval: float = 10) -> bool:
        return self.public_ip not in self.fleet.unreachable

    def run(self, command: str, timeout: float | None = 3600, stream_callback: Any = None) -> dict[str, Any]:
        step, variant = self.fleet.classify(command)
        self.fleet.commands[self.public_ip].append((step, variant))

        if step == "outcome":
            tokens = shlex.split(command)
            self.fleet.remote_files[self.public_ip][tokens[8]] = tokens[6]
            return _result(True)

        count = sum(1 for s, _ in self.fleet.commands[self.public_ip] if s == step)
        failures = self.fleet.failures.get((self.public_ip, step), set())
        failed = "always" in failures or count in failures
        if stream_callback is not None:
            stream_callback(f"{step} {'failed' if failed else 'ok'}", "stdout")
        if failed:
            return _result(False, stderr=f"{step} broke", returncode=2)
        return _result(True)

    def read_file(self, remote_path: str) -> str | None:
        return self.fleet.remote_files[self.public_ip].get(remote_path)

    def copy_dir_from(self, remote_dir: str, local_dir: Path) -> dict[str, Any]:
        self.fleet.copies.append((self.public_ip, remote_dir, local_dir))
        if self.public_ip in self.fleet.copy_fail:
            return _result(False, stderr="scp: connection closed", returncode=1)
        (local_dir / "results").mkdir(parents=True)
        (local_dir / "output.log").write_text(f"copied from {self.public_ip}:{remote_dir}\n")
        (local_dir / "results" / "result.json").write_text("{}")
        return _result(True)


def _result(success: bool, stderr: str = "", returncode: int = 0) -> dict[str, Any]:
    return {
        "success": success,
        "stdout": "",
        "stderr": stderr,
        "returncode": returncode,
        "elapsed_s": 0.0,
        "command": "",
    }


class FakeFleet:
    """Behaviour of every FakeHost, keyed by public IP."""

    _VARIANT = re.compile(r"ClickBench/([a-z-]+)\"")

    def __init__(self) -> None:
        self.unreachable: set[str] = set()
        self.copy_fail: set[str] = set()
        self.failures: dict[tuple[str, str], set[Any]] = defaultdict(set)
        self.commands: dict[str, list[tuple[str, str | None]]] = defaultdict(list)
        self.remote_files: dict[str, dict[str, str]] = defaultdict(dict)
        self.copies: list[tuple[str, str, Path]] = []

    def host(self, config: Any, public_ip: str) -> FakeHost:
        return FakeHost(self, public_ip)

    def fail(self, public_ip: str, step: str, occurrence: int | None = None) -> None:
        """Make ``step`` fail on an address, always or on its n-th call."""
        self.failures[(public_ip, step)].add(occurrence or "always")

    @classmethod
    def classify(cls, command: str) -> tuple[str, str | None]:
        if "outcome.json" in command and "printf" in command:
            return "outcome", None
        if "benchmark.sh" in command:
            match = cls._VARIANT.search(command)
            return "execute", match.group(1) if match else None
        if "datafusion-cli --version" in command:
            return "install", None
        return "fetch", None


@pytest.fixture
def cloud() -> FakeCloud:
    return FakeCloud()


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet()


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    key = tmp_path / "bench.pem"
    key.write_text("not a real key")
    key.chmod(0o600)
    path = tmp_path / "aws-config.yml"
    path.write_text(
        yaml.safe_dump(
            {
                "aws": {
                    "region": "us-west-2",
                    "key_name": "bench-key",
                    "private_key_file": str(key),
                    "security_group": "benchfleet-ssh",
                    "ingress_cidr": "198.51.100.7/32",
                },
                "instances": {"ami_id": "ami-0123456789abcdef0"},
                "results": {"root": str(tmp_path / "results")},
            }
        )
    )
    return path


@pytest.fixture
def make_config(config_file: Path):
    def factory(**overrides: Any):
        return resolve_configuration(config_file, overrides)

    return factory


@pytest.fixture
def make_orchestrator(cloud: FakeCloud, fleet: FakeFleet):
    def factory(config: Any, identity: str = "20260118-093015", answer: bool = True):
        return Orchestrator(
            config,
            identity,
            provisioner=ResourceProvisioner(
                cloud, host_factory=fleet.host, ip_lookup=lambda: "203.0.113.9"
            ),
            executor=RemoteExecutor(host_factory=fleet.host),
            collector=ResultCollector(host_factory=fleet.host),
            teardown=TeardownController(
                cloud, config.security_group, confirm=lambda prompt: answer
            ),
        )

    return factory
