"""Runtime records shared between the orchestration components."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .common.enums import InstanceSize, Outcome, Reachability, Variant, VariantStatus
from .errors import CollectionWarning, ExecutionOutcomeFailure


@dataclass
class VariantOutcome:
    """Result of ``install_and_run`` for one (instance, variant) pair."""

    variant: Variant
    outcome: Outcome
    detail: str = ""
    elapsed_s: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.outcome.succeeded


@dataclass
class InstanceRecord:
    """One provisioned machine and the progress of its variants."""

    size: InstanceSize
    instance_id: str | None = None
    public_ip: str | None = None
    reachability: Reachability = Reachability.PROVISIONING
    variant_status: dict[Variant, VariantStatus] = field(default_factory=dict)
    outcomes: dict[Variant, VariantOutcome] = field(default_factory=dict)
    error: str | None = None

    @property
    def label(self) -> str:
        """Short name used to tag output lines and log files."""
        return str(self.size)

    @property
    def failed_variants(self) -> list[Variant]:
        return [
            v for v, status in self.variant_status.items()
            if status is VariantStatus.FAILED
        ]

    @property
    def is_reachable(self) -> bool:
        return self.reachability is Reachability.REACHABLE

    @property
    def successful_variants(self) -> list[Variant]:
        return [
            v for v, status in self.variant_status.items()
            if status is VariantStatus.SUCCESS
        ]

    def record_outcome(self, result: VariantOutcome) -> None:
        self.outcomes[result.variant] = result
        self.variant_status[result.variant] = (
            VariantStatus.SUCCESS if result.succeeded else VariantStatus.FAILED
        )


def unique_labels(records: list[InstanceRecord]) -> dict[str, InstanceRecord]:
    """Map a distinct label to every record; repeated sizes gain their instance id."""
    counts = Counter(r.size for r in records)
    return {
        r.label if counts[r.size] == 1 else f"{r.size}-{r.instance_id}": r
        for r in records
    }


@dataclass(frozen=True)
class RuleHandle:
    """The SSH ingress rule shared by all runs in a region."""

    group_id: str | None
    group_name: str
    cidr: str | None
    created_group: bool = False
    authorized: bool = False
    planned: bool = False


@dataclass
class TeardownReport:
    """What a teardown sweep planned, destroyed and failed to destroy."""

    run_id: str | None
    dry_run: bool
    planned_instances: list[str] = field(default_factory=list)
    planned_security_group: str | None = None
    destroyed: list[str] = field(default_factory=list)
    security_group_removed: bool = False
    failures: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)


@dataclass
class CollectionReport:
    """Outcome of pulling artifacts into the results directory."""

    results_dir: Path
    collected: list[tuple[InstanceSize, Variant]] = field(default_factory=list)
    diagnostics: list[tuple[InstanceSize, Variant]] = field(default_factory=list)
    warnings: list[CollectionWarning] = field(default_factory=list)


@dataclass
class RunReport:
    """Accumulated non-fatal results of one orchestration invocation."""

    run_id: str
    instances: list[InstanceRecord] = field(default_factory=list)
    benchmarked: bool = False
    collection: CollectionReport | None = None
    teardown: TeardownReport | None = None
    phase_errors: dict[str, str] = field(default_factory=dict)

    @property
    def failures(self) -> list[ExecutionOutcomeFailure]:
        failures = []
        for record in self.instances:
            for variant, result in record.outcomes.items():
                if not result.succeeded:
                    failures.append(
                        ExecutionOutcomeFailure(
                            size=record.size,
                            instance_id=record.instance_id,
                            variant=variant,
                            outcome=result.outcome,
                            detail=result.detail,
                        )
                    )
        return failures

    @property
    def warnings(self) -> list[CollectionWarning]:
        return self.collection.warnings if self.collection else []

    @property
    def completed_with_failures(self) -> bool:
        return bool(self.failures or self.phase_errors)

    @property
    def exit_code(self) -> int:
        """0 for a clean run, 2 when the run completed with recorded failures."""
        return 2 if self.completed_with_failures else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "instances": [
                {
                    "size": str(r.size),
                    "instance_id": r.instance_id,
                    "public_ip": r.public_ip,
                    "reachability": str(r.reachability),
                    "error": r.error,
                    "variants": {
                        str(v): {
                            "status": str(r.variant_status.get(v)),
                            "outcome": str(o.outcome),
                            "detail": o.detail,
                            "elapsed_s": round(o.elapsed_s, 3),
                        }
                        for v, o in r.outcomes.items()
                    },
                }
                for r in self.instances
            ],
            "warnings": [
                {
                    "size": str(w.size),
                    "variant": str(w.variant) if w.variant else None,
                    "message": w.message,
                }
                for w in self.warnings
            ],
            "phase_errors": dict(self.phase_errors),
        }
