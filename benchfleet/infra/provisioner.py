"""Creates the SSH ingress rule and the tagged benchmark instances."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

import requests
from botocore.exceptions import BotoCoreError, ClientError, WaiterError
from rich.console import Console

from ..common.enums import InstanceSize, Reachability
from ..debug import debug_print
from ..errors import ProvisioningError
from ..models import InstanceRecord, RuleHandle
from .ec2 import TAG_MANAGED, TAG_RUN_ID, TAG_SIZE, Ec2Cloud, tag_value
from .ssh import RemoteHost

if TYPE_CHECKING:
    from ..config import RunConfiguration

console = Console()

CHECKIP_URL = "https://checkip.amazonaws.com"

HostFactory = Callable[["RunConfiguration", str], RemoteHost]


def detect_public_ip(url: str = CHECKIP_URL, timeout: float = 10) -> str:
    """Return the operator's public IPv4 address as seen from the internet."""
    response = requests.get(url, timeout=timeout)
    response.raise_for_status()
    return response.text.strip()


def instance_tags(identity: str, size: InstanceSize) -> dict[str, str]:
    return {
        "Name": f"benchfleet-{identity}-{size}",
        TAG_RUN_ID: identity,
        TAG_SIZE: str(size),
        TAG_MANAGED: "true",
    }


class ResourceProvisioner:
    """Brings a fleet for one run identity to the reachable state."""

    def __init__(
        self,
        cloud: Ec2Cloud,
        host_factory: HostFactory = RemoteHost.for_config,
        ip_lookup: Callable[[], str] = detect_public_ip,
        ssh_poll_interval: float = 10,
    ):
        self.cloud = cloud
        self.host_factory = host_factory
        self.ip_lookup = ip_lookup
        self.ssh_poll_interval = ssh_poll_interval
        self.rule: RuleHandle | None = None
        self.launched_instance_ids: list[str] = []

    # Ingress rule ----------------------------------------------------

    def resolve_ingress_cidr(self, config: RunConfiguration) -> str:
        """The configured CIDR, or the operator's public IP as a /32."""
        if config.ingress_cidr != "auto":
            return config.ingress_cidr
        try:
            return f"{self.ip_lookup()}/32"
        except requests.RequestException as e:
            raise ProvisioningError(
                f"Cannot detect your public IP address: {e}",
                "Set aws.ingress_cidr in the configuration file (e.g. 203.0.113.4/32)",
            ) from e

    def ensure_ingress_rule(self, config: RunConfiguration) -> RuleHandle:
        """
        Make sure the security group admits SSH from the control plane.

        Looks before it creates: an existing group and an existing permission
        are reused, so repeated calls leave exactly one rule behind.
        """
        name = config.security_group

        if config.dry_run:
            cidr = None if config.ingress_cidr == "auto" else config.ingress_cidr
            group_id = None
            try:
                group = self.cloud.find_security_group(name)
                group_id = group["GroupId"] if group else None
            except (ClientError, BotoCoreError) as e:
                debug_print(f"Security group lookup skipped: {e}")
            console.print(
                f"[yellow][DRY RUN][/yellow] Would ensure security group '{name}' "
                f"({group_id or 'to be created'}) allows SSH from "
                f"{cidr or 'your public IP /32'}"
            )
            self.rule = RuleHandle(group_id, name, cidr, planned=True)
            return self.rule

        cidr = self.resolve_ingress_cidr(config)
        try:
            group = self.cloud.find_security_group(name)
            created = False
            if group is None:
                group_id, created = self.cloud.create_security_group(
                    name, "benchfleet SSH access"
                )
                group = {"GroupId": group_id, "IpPermissions": []}
                if created:
                    console.print(f"[green]✓[/green] Created security group {name} ({group_id})")

            authorized = False
            if not self.cloud.allows_ssh_from(group, cidr):
                authorized = self.cloud.authorize_ssh(group["GroupId"], cidr)
            if authorized:
                console.print(f"[green]✓[/green] Allowed SSH from {cidr} in {name}")
            else:
                console.print(f"[dim]SSH from {cidr} already allowed in {name}[/dim]")
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError(
                f"Cannot prepare security group '{name}': {e}",
                "Check the IAM permissions for ec2:CreateSecurityGroup and "
                "ec2:AuthorizeSecurityGroupIngress, or set aws.security_group",
            ) from e

        self.rule = RuleHandle(
            group["GroupId"], name, cidr, created_group=created, authorized=authorized
        )
        return self.rule

    # Instances -------------------------------------------------------

    def launch_instances(
        self,
        config: RunConfiguration,
        identity: str,
        sizes: Iterable[InstanceSize] | None = None,
    ) -> list[InstanceRecord]:
        """
        Launch one tagged instance per size and wait until they answer SSH.

        Instances that fail to launch or never become reachable keep their
        record with ``reachability=UNREACHABLE``; only a fleet with no
        reachable instance at all raises.

        Raises:
            ProvisioningError: if zero instances became reachable
        """
        records = [InstanceRecord(size) for size in (sizes or config.instance_sizes)]

        if config.dry_run:
            for record in records:
                console.print(
                    f"[yellow][DRY RUN][/yellow] Would launch {record.size} from "
                    f"{config.ami_id} ({config.volume_size_gb} GB, key {config.key_name}) "
                    f"tagged {TAG_RUN_ID}={identity}"
                )
            return records

        group_id = self.rule.group_id if self.rule else self._lookup_group_id(config)

        for record in records:
            try:
                record.instance_id = self.cloud.run_instance(
                    instance_type=str(record.size),
                    ami_id=config.ami_id,
                    key_name=config.key_name,
                    group_id=group_id,
                    volume_size_gb=config.volume_size_gb,
                    tags=instance_tags(identity, record.size),
                )
            except (ClientError, BotoCoreError) as e:
                record.reachability = Reachability.UNREACHABLE
                record.error = f"launch failed: {e}"
                console.print(f"[red]✗ {record.size}: launch failed: {e}[/red]")
                continue
            self.launched_instance_ids.append(record.instance_id)
            console.print(f"[green]✓[/green] Launched {record.size}: {record.instance_id}")

        self._await_running(config, records)
        self._await_reachability(config, records)
        self._require_reachable(records, identity)
        return records

    def discover_instances(
        self, config: RunConfiguration, identity: str
    ) -> list[InstanceRecord]:
        """
        Rebuild instance records for an existing run from its tags.

        Every live instance tagged with ``identity`` is returned, whatever
        sizes the current invocation would launch.

        Raises:
            ProvisioningError: if no tagged instance exists or none is reachable
        """
        if config.dry_run:
            console.print(
                f"[yellow][DRY RUN][/yellow] Would look up instances tagged "
                f"{TAG_RUN_ID}={identity}"
            )
            return [InstanceRecord(size) for size in config.instance_sizes]

        try:
            described = self.cloud.find_instances(identity)
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError(
                f"Cannot list instances of run {identity}: {e}",
                "Check AWS credentials and region (benchfleet check)",
            ) from e

        records = []
        for instance in described:
            size_name = tag_value(instance, TAG_SIZE) or instance.get("InstanceType", "")
            try:
                size = InstanceSize(size_name)
            except ValueError:
                console.print(
                    f"[yellow]⚠ Ignoring {instance['InstanceId']}: unknown size {size_name}[/yellow]"
                )
                continue
            if instance.get("State", {}).get("Name") not in ("pending", "running"):
                continue
            records.append(
                InstanceRecord(
                    size,
                    instance_id=instance["InstanceId"],
                    public_ip=instance.get("PublicIpAddress"),
                )
            )

        if not records:
            raise ProvisioningError(
                f"No running instances tagged {TAG_RUN_ID}={identity} in {config.region}",
                f"Run: benchfleet --run-id {identity} setup",
            )

        records.sort(key=lambda r: InstanceSize.valid_values().index(str(r.size)))
        self._await_running(config, records)
        self._await_reachability(config, records)
        self._require_reachable(records, identity)
        return records

    # Internal helpers ------------------------------------------------

    def _lookup_group_id(self, config: RunConfiguration) -> str | None:
        try:
            group = self.cloud.find_security_group(config.security_group)
        except (ClientError, BotoCoreError) as e:
            raise ProvisioningError(
                f"Cannot look up security group '{config.security_group}': {e}",
                "Check AWS credentials and region (benchfleet check)",
            ) from e
        return group["GroupId"] if group else None

    def _await_running(
        self, config: RunConfiguration, records: list[InstanceRecord]
    ) -> None:
        """Wait for the running state and read each instance's public IP."""
        pending = [r for r in records if r.instance_id and not r.error]
        if not pending:
            return

        try:
            self.cloud.wait_until_running(
                [r.instance_id for r in pending], config.reachability_timeout_s
            )
        except WaiterError as e:
            debug_print(f"Waiter for running state ended: {e}")

        for record in pending:
            try:
                described: dict[str, Any] | None = self.cloud.describe_instance(
                    record.instance_id
                )
            except (ClientError, BotoCoreError) as e:
                record.reachability = Reachability.UNREACHABLE
                record.error = f"describe failed: {e}"
                continue

            state = (described or {}).get("State", {}).get("Name")
            record.public_ip = (described or {}).get("PublicIpAddress")
            if state != "running":
                record.reachability = Reachability.UNREACHABLE
                record.error = f"instance state is {state}"
            elif not record.public_ip:
                record.reachability = Reachability.UNREACHABLE
                record.error = "instance has no public IP address"

    def _await_reachability(
        self, config: RunConfiguration, records: list[InstanceRecord]
    ) -> None:
        """Probe SSH on every candidate concurrently, each with its own timeout."""
        candidates = [r for r in records if r.public_ip and not r.error]
        if not candidates:
            return

        console.print(
            f"Waiting up to {config.reachability_timeout_s:.0f}s for SSH on "
            f"{len(candidates)} instance(s)..."
        )

        def probe(record: InstanceRecord) -> bool:
            host = self.host_factory(config, record.public_ip)
            return host.wait_for_ssh(
                timeout=config.reachability_timeout_s,
                interval=self.ssh_poll_interval,
            )

        with ThreadPoolExecutor(max_workers=len(candidates)) as pool:
            reachable = list(pool.map(probe, candidates))

        for record, ok in zip(candidates, reachable):
            if ok:
                record.reachability = Reachability.REACHABLE
                console.print(f"[green]✓[/green] {record.size} reachable at {record.public_ip}")
            else:
                record.reachability = Reachability.UNREACHABLE
                record.error = f"SSH not reachable within {config.reachability_timeout_s:.0f}s"
                console.print(f"[red]✗ {record.size}: {record.error}[/red]")

    @staticmethod
    def _require_reachable(records: list[InstanceRecord], identity: str) -> None:
        for record in records:
            if record.reachability is Reachability.PROVISIONING:
                record.reachability = Reachability.UNREACHABLE
        if not any(r.is_reachable for r in records):
            problems = "; ".join(f"{r.size}: {r.error or 'unreachable'}" for r in records)
            raise ProvisioningError(
                f"No instance of run {identity} became reachable ({problems})",
                f"Inspect the instances in the EC2 console, then run: "
                f"benchfleet --run-id {identity} cleanup --force",
            )
