"""Phase coordinator: setup, benchmark, collect, cleanup and the full cycle.

Failure policy:

- setup failure is fatal; if instances were already launched they are
  terminated before the error propagates
- a failed variant is recorded and the run moves on to the next one
- collect problems are recorded and never prevent cleanup
- once this process has launched instances, ``full`` always tears them down
  unless the operator passed ``--skip-cleanup``
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.table import Table

from ..common.enums import Outcome, Phase, Variant, VariantStatus
from ..errors import BenchfleetError, TeardownPartialFailure
from ..models import InstanceRecord, RunReport, VariantOutcome, unique_labels
from ..util import save_json
from .parallel_executor import OutputCallback, ParallelExecutor

if TYPE_CHECKING:
    from ..config import RunConfiguration
    from ..infra.provisioner import ResourceProvisioner
    from ..infra.teardown import TeardownController
    from .collector import ResultCollector
    from .executor import RemoteExecutor

console = Console()

REPORT_FILE = "run_report.json"

OUTCOME_STYLES = {
    Outcome.SUCCEEDED: "green",
    Outcome.INSTALL_FAILED: "red",
    Outcome.WORKLOAD_FETCH_FAILED: "red",
    Outcome.EXECUTION_FAILED: "red",
}


class Orchestrator:
    """Sequences the phases of one run identity."""

    def __init__(
        self,
        config: RunConfiguration,
        identity: str,
        provisioner: ResourceProvisioner,
        executor: RemoteExecutor,
        collector: ResultCollector,
        teardown: TeardownController,
    ):
        self.config = config
        self.identity = identity
        self.provisioner = provisioner
        self.executor = executor
        self.collector = collector
        self.teardown = teardown
        self.instances: list[InstanceRecord] = []
        self.report = RunReport(run_id=identity)

    @property
    def results_dir(self) -> Path:
        return self.config.results_dir(self.identity)

    @property
    def log_dir(self) -> Path:
        return self.results_dir / "logs"

    @property
    def has_billable_resources(self) -> bool:
        return bool(self.provisioner.launched_instance_ids)

    # Phases ----------------------------------------------------------

    def run_setup(self) -> RunReport:
        """Ensure the ingress rule and launch one instance per size."""
        self._print_header(Phase.SETUP)
        self._print_parameters()

        self.provisioner.ensure_ingress_rule(self.config)
        self.instances = self.provisioner.launch_instances(self.config, self.identity)
        self.report.instances = self.instances

        if not self.config.dry_run:
            self._print_instances()
            console.print(
                f"[green]✓ Setup complete.[/green] Next: "
                f"benchfleet --run-id {self.identity} benchmark"
            )
        return self.report

    def run_benchmark(self, instances: list[InstanceRecord] | None = None) -> RunReport:
        """
        Install and run every variant on every reachable instance.

        Without ``instances`` the fleet is rediscovered from the run's tags.
        """
        self._print_header(Phase.BENCHMARK)
        self._use_instances(instances)

        if self.config.dry_run:
            for record in self.instances:
                for variant in self.config.variants:
                    console.print(
                        f"[yellow][DRY RUN][/yellow] Would install DataFusion "
                        f"{self.config.datafusion_ref} ({self.config.install_method}) "
                        f"and run {variant} on {record.size}"
                    )
            return self.report

        reachable = [r for r in self.instances if r.is_reachable]
        for record in self.instances:
            if not record.is_reachable:
                self.report.phase_errors[f"{Phase.BENCHMARK}:{record.size}"] = (
                    f"skipped, instance unreachable ({record.error or 'no SSH'})"
                )
                continue
            for variant in self.config.variants:
                record.variant_status[variant] = VariantStatus.PENDING

        by_label = unique_labels(reachable)
        tasks: dict[str, Callable[[OutputCallback], Any]] = {
            label: self._benchmark_task(record) for label, record in by_label.items()
        }
        workers = self.config.max_workers if self.config.parallel else 1
        parallel = ParallelExecutor(max_workers=workers)
        parallel.execute(tasks, f"Benchmark {self.identity}", self.log_dir)

        for label, exc in parallel.errors.items():
            self._fail_remaining(by_label[label], f"unexpected error: {exc}")

        self.report.benchmarked = True
        self.print_report()
        self.save_report()
        return self.report

    def run_collect(self, instances: list[InstanceRecord] | None = None) -> RunReport:
        """
        Copy artifacts of executed variants into the results directory.

        Standalone, the fleet is rediscovered and each variant's outcome is
        read back from the instance.
        """
        self._print_header(Phase.COLLECT)
        standalone = instances is None
        self._use_instances(instances)

        if standalone and not self.config.dry_run:
            for record in self.instances:
                if not record.is_reachable:
                    continue
                for variant in self.config.variants:
                    self.executor.probe_outcome(record, self.config, self.identity, variant)

        self.report.collection = self.collector.collect(
            self.instances, self.results_dir, self.identity, self.config
        )
        return self.report

    def run_cleanup(
        self,
        *,
        all_runs: bool = False,
        remove_ingress_rule: bool = False,
        force: bool = False,
    ) -> RunReport:
        """Tear down the run's instances (or every managed one) behind confirmation."""
        self._print_header(Phase.CLEANUP)
        try:
            self.report.teardown = self.teardown.teardown(
                None if all_runs else self.identity,
                remove_ingress_rule=remove_ingress_rule,
                dry_run=self.config.dry_run,
                force=force,
            )
        except TeardownPartialFailure as e:
            self.report.teardown = e.report
            raise
        return self.report

    def run_full(
        self, *, remove_ingress_rule: bool = False, skip_cleanup: bool = False
    ) -> RunReport:
        """Setup, benchmark, collect and cleanup of the current run identity."""
        try:
            self.run_setup()
        except Exception as e:
            message = e.message if isinstance(e, BenchfleetError) else str(e)
            console.print(f"[red]✗ Setup failed: {message}[/red]")
            if self.has_billable_resources and not skip_cleanup:
                console.print("[yellow]Cleaning up instances launched before the failure[/yellow]")
                self._cleanup_current_run(remove_ingress_rule)
            raise

        try:
            self._run_guarded(Phase.BENCHMARK, lambda: self.run_benchmark(self.instances))
            self._run_guarded(Phase.COLLECT, lambda: self.run_collect(self.instances))
        except Exception:
            if self.has_billable_resources and not skip_cleanup:
                self._cleanup_current_run(remove_ingress_rule)
            raise

        if skip_cleanup:
            console.print(
                f"[yellow]⚠ Skipping cleanup; instances of run {self.identity} keep "
                f"running.[/yellow] Later: benchfleet --run-id {self.identity} cleanup"
            )
        elif self.config.dry_run:
            self._print_header(Phase.CLEANUP)
            group = (
                f" and delete security group {self.config.security_group}"
                if remove_ingress_rule
                else ""
            )
            console.print(
                f"[yellow][DRY RUN][/yellow] Would terminate the instances of run "
                f"{self.identity}{group}"
            )
        elif self.has_billable_resources:
            self._cleanup_current_run(remove_ingress_rule)

        self._print_outcome()
        return self.report

    # Helpers ---------------------------------------------------------

    def _use_instances(self, instances: list[InstanceRecord] | None) -> None:
        if instances is None:
            instances = self.provisioner.discover_instances(self.config, self.identity)
        self.instances = instances
        self.report.instances = instances

    def _benchmark_task(self, record: InstanceRecord) -> Callable[[OutputCallback], Any]:
        def task(output: OutputCallback) -> InstanceRecord:
            for variant in self.config.variants:
                result = self.executor.install_and_run(
                    record, self.config, variant, self.identity, output=output
                )
                output(f"{variant}: {result.outcome} ({result.elapsed_s:.0f}s)")
            return record

        return task

    def _fail_remaining(self, record: InstanceRecord, detail: str) -> None:
        for variant in self.config.variants:
            if variant not in record.outcomes:
                record.record_outcome(
                    VariantOutcome(variant, Outcome.EXECUTION_FAILED, detail)
                )

    def _run_guarded(self, phase: Phase, action: Callable[[], RunReport]) -> None:
        try:
            action()
        except (BenchfleetError, OSError) as e:
            message = e.message if isinstance(e, BenchfleetError) else str(e)
            self.report.phase_errors[str(phase)] = message
            console.print(f"[red]✗ {phase} failed: {message}[/red]")

    def _cleanup_current_run(self, remove_ingress_rule: bool) -> None:
        try:
            self.run_cleanup(remove_ingress_rule=remove_ingress_rule, force=True)
        except TeardownPartialFailure:
            self.print_report()
            raise

    def _print_header(self, phase: Phase) -> None:
        console.print(f"\n[bold blue]Starting {phase} phase: {self.identity}[/bold blue]")

    def _print_parameters(self) -> None:
        c = self.config
        console.print(f"  Variants:        {', '.join(map(str, c.variants))}")
        console.print(f"  Instance types:  {', '.join(map(str, c.instance_sizes))}")
        console.print(f"  DataFusion ref:  {c.datafusion_ref} ({c.install_method})")
        console.print(f"  ClickBench:      {c.clickbench_repo} @ {c.clickbench_ref}")
        console.print(f"  Native opts:     {c.enable_native_opts}")
        console.print(f"  Region:          {c.region}")

    def _print_instances(self) -> None:
        table = Table(title=f"Instances of run {self.identity}")
        table.add_column("Size")
        table.add_column("Instance")
        table.add_column("Public IP")
        table.add_column("Reachability")
        for record in self.instances:
            style = "green" if record.is_reachable else "red"
            table.add_row(
                str(record.size),
                record.instance_id or "-",
                record.public_ip or "-",
                f"[{style}]{record.reachability}[/{style}]",
            )
        console.print(table)

    def print_report(self) -> None:
        """Per (instance, variant) outcome table, then warnings and phase errors."""
        table = Table(title=f"Run {self.identity}")
        table.add_column("Instance")
        for variant in self.config.variants:
            table.add_column(str(variant))

        for record in self.instances:
            cells = []
            for variant in self.config.variants:
                cells.append(self._outcome_cell(record, variant))
            table.add_row(str(record.size), *cells)
        console.print(table)

        for failure in self.report.failures:
            console.print(
                f"[red]✗ {failure.size}/{failure.variant}: {failure.outcome}[/red]"
                + (f" ({failure.detail})" if failure.detail else "")
            )
        for warning in self.report.warnings:
            console.print(f"[yellow]⚠ {warning.size}: {warning.message}[/yellow]")
        for phase, message in self.report.phase_errors.items():
            console.print(f"[yellow]⚠ {phase}: {message}[/yellow]")

    @staticmethod
    def _outcome_cell(record: InstanceRecord, variant: Variant) -> str:
        result = record.outcomes.get(variant)
        if result is None:
            status = record.variant_status.get(variant)
            return f"[dim]{status or 'not run'}[/dim]"
        style = OUTCOME_STYLES[result.outcome]
        return f"[{style}]{result.outcome}[/{style}]"

    def save_report(self) -> Path | None:
        if self.config.dry_run:
            return None
        path = self.results_dir / REPORT_FILE
        save_json(self.report.to_dict(), path)
        return path

    def _print_outcome(self) -> None:
        if self.config.dry_run:
            console.print("[green]✓ Dry run complete; no resources were changed[/green]")
        elif self.report.completed_with_failures:
            console.print(
                f"[yellow]Run {self.identity} completed with "
                f"{len(self.report.failures)} failed variant(s)[/yellow]"
            )
            self.save_report()
        else:
            console.print(f"[bold green]✓ Run {self.identity} completed successfully[/bold green]")
            self.save_report()
