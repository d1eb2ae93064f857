"""Tag-scoped destruction of benchmark resources."""

from __future__ import annotations

from collections.abc import Callable

from botocore.exceptions import BotoCoreError, ClientError, WaiterError
from rich.console import Console
from rich.table import Table

from ..errors import TeardownPartialFailure
from ..models import TeardownReport
from .ec2 import TAG_MANAGED, TAG_RUN_ID, TAG_SIZE, Ec2Cloud, tag_value

console = Console()

Confirm = Callable[[str], bool]


def _refuse(prompt: str) -> bool:
    return False


class TeardownController:
    """Finds resources by tag and destroys them behind confirmation."""

    def __init__(
        self,
        cloud: Ec2Cloud,
        security_group: str,
        confirm: Confirm = _refuse,
        termination_timeout_s: float = 600,
    ):
        self.cloud = cloud
        self.security_group = security_group
        self.confirm = confirm
        self.termination_timeout_s = termination_timeout_s

    def teardown(
        self,
        run_id: str | None,
        *,
        remove_ingress_rule: bool = False,
        dry_run: bool = False,
        force: bool = False,
        confirm: Confirm | None = None,
    ) -> TeardownReport:
        """
        Destroy every instance tagged with ``run_id`` (or every managed one).

        Args:
            run_id: Run identity, or None for every benchfleet instance
            remove_ingress_rule: Also delete the security group afterwards
            dry_run: Report the destroy set without calling any mutating API
            force: Skip the confirmation prompt
            confirm: Overrides the controller's confirmation callback

        Raises:
            TeardownPartialFailure: after the sweep, if any deletion failed
        """
        report = TeardownReport(run_id=run_id, dry_run=dry_run)

        try:
            instances = self.cloud.find_instances(run_id)
            group = (
                self.cloud.find_security_group(self.security_group)
                if remove_ingress_rule
                else None
            )
        except (ClientError, BotoCoreError) as e:
            report.failures["lookup"] = str(e)
            raise TeardownPartialFailure(report) from e

        report.planned_instances = [i["InstanceId"] for i in instances]
        report.planned_security_group = group["GroupId"] if group else None

        if not report.planned_instances and not report.planned_security_group:
            console.print(f"[green]✓[/green] No resources match {self._describe(run_id)}; nothing to do")
            return report

        self._print_plan(instances, report)

        if dry_run:
            console.print("[yellow][DRY RUN][/yellow] No resources were destroyed")
            return report

        if not force:
            prompt = (
                f"Terminate {len(report.planned_instances)} instance(s)"
                + (f" and delete security group {self.security_group}" if group else "")
                + f" in {self.cloud.region}?"
            )
            if not (confirm or self.confirm)(prompt):
                report.cancelled = True
                console.print("[yellow]Teardown cancelled[/yellow]")
                return report

        for instance_id in report.planned_instances:
            try:
                self.cloud.terminate_instance(instance_id)
            except (ClientError, BotoCoreError) as e:
                report.failures[instance_id] = str(e)
                console.print(f"[red]✗ {instance_id}: {e}[/red]")
                continue
            report.destroyed.append(instance_id)
            console.print(f"[green]✓[/green] Terminating {instance_id}")

        if report.planned_security_group:
            self._remove_security_group(report.planned_security_group, report)

        if report.has_failures:
            raise TeardownPartialFailure(report)

        console.print(
            f"[green]✓ Teardown complete:[/green] {len(report.destroyed)} instance(s) terminated"
            + (", security group deleted" if report.security_group_removed else "")
        )
        return report

    def _remove_security_group(self, group_id: str, report: TeardownReport) -> None:
        # The group cannot be deleted while terminating instances still use it
        if report.destroyed:
            try:
                self.cloud.wait_until_terminated(report.destroyed, self.termination_timeout_s)
            except WaiterError as e:
                report.failures[group_id] = f"instances did not terminate in time: {e}"
                return
            except (ClientError, BotoCoreError) as e:
                report.failures[group_id] = f"cannot confirm termination: {e}"
                return

        try:
            self.cloud.delete_security_group(group_id)
        except (ClientError, BotoCoreError) as e:
            report.failures[group_id] = str(e)
            console.print(f"[red]✗ {self.security_group} ({group_id}): {e}[/red]")
            return
        report.security_group_removed = True
        console.print(f"[green]✓[/green] Deleted security group {self.security_group} ({group_id})")

    @staticmethod
    def _describe(run_id: str | None) -> str:
        if run_id is None:
            return f"{TAG_MANAGED}=true"
        return f"{TAG_RUN_ID}={run_id}"

    def _print_plan(self, instances: list[dict], report: TeardownReport) -> None:
        table = Table(title=f"Resources matching {self._describe(report.run_id)}")
        table.add_column("Resource")
        table.add_column("Id")
        table.add_column("Run")
        table.add_column("Size")
        table.add_column("State")
        for instance in instances:
            table.add_row(
                "instance",
                instance["InstanceId"],
                tag_value(instance, TAG_RUN_ID) or "-",
                tag_value(instance, TAG_SIZE) or instance.get("InstanceType", "-"),
                instance.get("State", {}).get("Name", "-"),
            )
        if report.planned_security_group:
            table.add_row(
                "security group", report.planned_security_group, "shared", "-", "-"
            )
        console.print(table)
