"""Pull benchmark artifacts from the fleet into the local results directory."""

from __future__ import annotations

import shutil
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from rich.console import Console

from ..errors import CollectionWarning
from ..infra.ssh import RemoteHost
from ..models import CollectionReport, InstanceRecord, unique_labels
from ..util import ensure_directory, save_json
from .executor import remote_results_dir

if TYPE_CHECKING:
    from ..config import RunConfiguration

console = Console()

SUMMARY_FILE = "run_summary.json"

HostFactory = Callable[["RunConfiguration", str], RemoteHost]


class ResultCollector:
    """Copies ``<variant>`` artifact directories into ``<size>/<variant>/``."""

    def __init__(self, host_factory: HostFactory = RemoteHost.for_config):
        self.host_factory = host_factory

    def collect(
        self,
        instances: list[InstanceRecord],
        results_dir: Path,
        identity: str,
        config: RunConfiguration,
    ) -> CollectionReport:
        """
        Copy the artifacts of every executed (instance, variant) pair.

        Successful variants land in ``<size>/<variant>/``. Failed variants are
        copied to the same place as diagnostics; their ``outcome.json`` records
        the failure. Instances without a successful variant get a warning.
        Re-collecting the same run replaces the pair's directory.
        """
        report = CollectionReport(results_dir=results_dir)

        if config.dry_run:
            for record in instances:
                console.print(
                    f"[yellow][DRY RUN][/yellow] Would copy "
                    f"~/{remote_results_dir(identity, '<variant>')} from {record.size} "
                    f"to {results_dir / str(record.size)}/"
                )
            return report

        ensure_directory(results_dir)

        for label, record in unique_labels(instances).items():
            successful = record.successful_variants
            failed = record.failed_variants
            if not successful:
                self._warn(
                    report,
                    CollectionWarning(
                        record.size,
                        record.instance_id,
                        "no successful variant; only diagnostics collected"
                        if failed and record.public_ip
                        else "no successful variant; nothing collected",
                    ),
                )
            if not record.public_ip or not (successful or failed):
                continue

            host = self.host_factory(config, record.public_ip)
            for variant in successful + failed:
                target = results_dir / label / str(variant)
                if target.exists():
                    shutil.rmtree(target)
                copied = host.copy_dir_from(remote_results_dir(identity, variant), target)
                if not copied["success"]:
                    self._warn(
                        report,
                        CollectionWarning(
                            record.size,
                            record.instance_id,
                            f"copy failed: {copied['stderr'].strip() or 'scp error'}",
                            variant,
                        ),
                    )
                    continue
                if variant in successful:
                    report.collected.append((record.size, variant))
                    console.print(f"[green]✓[/green] {label}/{variant} -> {target}")
                else:
                    report.diagnostics.append((record.size, variant))
                    console.print(f"[yellow]⚠[/yellow] {label}/{variant} (failed) -> {target}")

        self.write_summary(report, instances, identity)
        console.print(f"Results saved to: {results_dir}")
        return report

    @staticmethod
    def write_summary(
        report: CollectionReport, instances: list[InstanceRecord], identity: str
    ) -> Path:
        path = report.results_dir / SUMMARY_FILE
        save_json(
            {
                "run_id": identity,
                "collected_at": datetime.now(timezone.utc).isoformat(),
                "instances": [
                    {
                        "size": str(r.size),
                        "instance_id": r.instance_id,
                        "outcomes": {
                            str(v): {"outcome": str(o.outcome), "detail": o.detail}
                            for v, o in r.outcomes.items()
                        },
                    }
                    for r in instances
                ],
                "collected": [f"{size}/{variant}" for size, variant in report.collected],
                "diagnostics": [f"{size}/{variant}" for size, variant in report.diagnostics],
                "warnings": [
                    {
                        "size": str(w.size),
                        "variant": str(w.variant) if w.variant else None,
                        "message": w.message,
                    }
                    for w in report.warnings
                ],
            },
            path,
        )
        return path

    @staticmethod
    def _warn(report: CollectionReport, warning: CollectionWarning) -> None:
        report.warnings.append(warning)
        where = f"{warning.size}/{warning.variant}" if warning.variant else str(warning.size)
        console.print(f"[yellow]⚠ {where}: {warning.message}[/yellow]")
