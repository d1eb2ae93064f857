"""Tests for result collection."""

from __future__ import annotations

import json

import pytest

from benchfleet.common.enums import InstanceSize, Outcome, Reachability, Variant
from benchfleet.models import InstanceRecord, VariantOutcome
from benchfleet.run.collector import SUMMARY_FILE, ResultCollector

RUN_ID = "20260118-093015"


def make_record(size, ip, **outcomes):
    record = InstanceRecord(size, f"i-{ip[-1]}", ip, reachability=Reachability.REACHABLE)
    for variant, outcome in outcomes.items():
        record.record_outcome(VariantOutcome(Variant(variant.replace("_", "-")), outcome))
    return record


@pytest.fixture
def collector(fleet):
    return ResultCollector(host_factory=fleet.host)


def test_copies_successful_variants(collector, fleet, make_config, tmp_path):
    results_dir = tmp_path / "results" / RUN_ID
    records = [
        make_record(
            InstanceSize.C6A_2XLARGE,
            "10.0.0.2",
            datafusion=Outcome.SUCCEEDED,
            datafusion_partitioned=Outcome.EXECUTION_FAILED,
        ),
        make_record(
            InstanceSize.C8G_4XLARGE,
            "10.0.0.3",
            datafusion=Outcome.SUCCEEDED,
            datafusion_partitioned=Outcome.SUCCEEDED,
        ),
    ]

    report = collector.collect(records, results_dir, RUN_ID, make_config())

    assert report.collected == [
        (InstanceSize.C6A_2XLARGE, Variant.DATAFUSION),
        (InstanceSize.C8G_4XLARGE, Variant.DATAFUSION),
        (InstanceSize.C8G_4XLARGE, Variant.DATAFUSION_PARTITIONED),
    ]
    assert report.warnings == []
    assert (results_dir / "c6a.2xlarge" / "datafusion" / "output.log").exists()
    assert report.diagnostics == [(InstanceSize.C6A_2XLARGE, Variant.DATAFUSION_PARTITIONED)]
    assert (results_dir / "c6a.2xlarge" / "datafusion-partitioned" / "output.log").exists()
    assert (results_dir / "c8g.4xlarge" / "datafusion-partitioned" / "results").is_dir()
    assert fleet.copies[0][1] == f"benchfleet/results/{RUN_ID}/datafusion"

    summary = json.loads((results_dir / SUMMARY_FILE).read_text())
    assert summary["run_id"] == RUN_ID
    assert "c8g.4xlarge/datafusion-partitioned" in summary["collected"]
    assert summary["instances"][0]["outcomes"]["datafusion-partitioned"]["outcome"] == (
        "execution-failed"
    )


def test_instance_without_success_keeps_diagnostics(collector, fleet, make_config, tmp_path):
    record = make_record(
        InstanceSize.C6A_XLARGE, "10.0.0.4", datafusion=Outcome.INSTALL_FAILED
    )

    report = collector.collect([record], tmp_path / "out", RUN_ID, make_config())

    assert report.collected == []
    assert report.diagnostics == [(InstanceSize.C6A_XLARGE, Variant.DATAFUSION)]
    assert len(report.warnings) == 1
    assert report.warnings[0].size is InstanceSize.C6A_XLARGE
    assert report.warnings[0].variant is None
    assert "only diagnostics" in report.warnings[0].message
    assert (tmp_path / "out" / "c6a.xlarge" / "datafusion" / "output.log").exists()
    assert (tmp_path / "out" / SUMMARY_FILE).exists()


def test_copy_failure_becomes_warning(collector, fleet, make_config, tmp_path):
    fleet.copy_fail.add("10.0.0.5")
    record = make_record(InstanceSize.C6A_XLARGE, "10.0.0.5", datafusion=Outcome.SUCCEEDED)

    report = collector.collect([record], tmp_path / "out", RUN_ID, make_config())

    assert report.collected == []
    assert report.warnings[0].variant is Variant.DATAFUSION
    assert "connection closed" in report.warnings[0].message


def test_recollecting_replaces_previous_artifacts(collector, make_config, tmp_path):
    results_dir = tmp_path / "out"
    stale = results_dir / "c6a.xlarge" / "datafusion" / "stale.txt"
    stale.parent.mkdir(parents=True)
    stale.write_text("old")
    record = make_record(InstanceSize.C6A_XLARGE, "10.0.0.6", datafusion=Outcome.SUCCEEDED)

    collector.collect([record], results_dir, RUN_ID, make_config())

    assert not stale.exists()
    assert (results_dir / "c6a.xlarge" / "datafusion" / "output.log").exists()


def test_dry_run_writes_nothing(collector, fleet, make_config, tmp_path):
    record = make_record(InstanceSize.C6A_XLARGE, "10.0.0.6", datafusion=Outcome.SUCCEEDED)

    report = collector.collect([record], tmp_path / "out", RUN_ID, make_config(dry_run=True))

    assert report.collected == []
    assert not (tmp_path / "out").exists()
    assert fleet.copies == []


def test_instance_that_never_ran_copies_nothing(collector, fleet, make_config, tmp_path):
    record = InstanceRecord(InstanceSize.C6A_XLARGE, "i-7", "10.0.0.7")

    report = collector.collect([record], tmp_path / "out", RUN_ID, make_config())

    assert "nothing collected" in report.warnings[0].message
    assert fleet.copies == []


def test_same_size_instances_get_separate_directories(collector, make_config, tmp_path):
    records = [
        make_record(InstanceSize.C6A_XLARGE, "10.0.0.1", datafusion=Outcome.SUCCEEDED),
        make_record(InstanceSize.C6A_XLARGE, "10.0.0.2", datafusion=Outcome.SUCCEEDED),
    ]

    report = collector.collect(records, tmp_path / "out", RUN_ID, make_config())

    assert len(report.collected) == 2
    assert (tmp_path / "out" / "c6a.xlarge-i-1" / "datafusion" / "output.log").exists()
    assert (tmp_path / "out" / "c6a.xlarge-i-2" / "datafusion" / "output.log").exists()
