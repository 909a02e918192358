import sqlite3
import time
import threading

from vacancywatch.adapters import build_adapter
from vacancywatch.db import Database
from vacancywatch.models import (
    EventType,
    ExtractionError,
    PropertyTarget,
    RawUnitRecord,
    RunStage,
    RunStatus,
)
from vacancywatch.retry import RetryPolicy
from vacancywatch.runner import VacancyRunner


class StaticAdapter:
    def __init__(self, records):
        self.records = records
        self.calls = 0

    def fetch(self, target, timeout):
        self.calls += 1
        return list(self.records)


class FailingAdapter:
    def __init__(self, exc=None):
        self.exc = exc or ExtractionError("navigation timeout")
        self.calls = 0

    def fetch(self, target, timeout):
        self.calls += 1
        raise self.exc


class SlowAdapter:
    def __init__(self):
        self.release = threading.Event()

    def fetch(self, target, timeout):
        self.release.wait(5)
        return [RawUnitRecord(unit_number="1")]


class BrokenSnapshotDatabase(Database):
    def upsert_snapshot(self, *args, **kwargs):
        raise sqlite3.OperationalError("database is locked")


def records(*numbers):
    return [RawUnitRecord(unit_number=number) for number in numbers]


def build_runner(tmp_path, adapters, database_cls=Database, **kwargs) -> VacancyRunner:
    database = database_cls(path=tmp_path / "runs.db")
    runner = VacancyRunner(
        database=database,
        adapter_factory=lambda target: adapters[target.property_id],
        retry_policy=RetryPolicy(attempts=3, timeout=5, sleep=lambda seconds: None),
        **kwargs,
    )
    runner.init()
    return runner


def event_rows(runner, property_id, day):
    return [
        (event.event_type, event.unit_key, event.unit_number)
        for event in runner.database.fetch_events(property_id, day, runner.source)
    ]


def test_first_run_marks_every_unit_appeared(tmp_path):
    runner = build_runner(tmp_path, {"A": StaticAdapter(records("101", "102"))})

    result = runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")

    assert result.status is RunStatus.SUCCESS
    assert result.stage is RunStage.DONE
    assert result.appeared == ["unit:101", "unit:102"]
    assert result.disappeared == []
    assert event_rows(runner, "A", "2025-03-01") == [
        (EventType.APPEARED, "unit:101", "101"),
        (EventType.APPEARED, "unit:102", "102"),
    ]


def test_consecutive_days_diff_against_previous_snapshot(tmp_path):
    adapter = StaticAdapter(records("101", "102"))
    runner = build_runner(tmp_path, {"A": adapter})
    runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")

    adapter.records = records("102", "103")
    result = runner.run_property(PropertyTarget(property_id="A"), "2025-03-02")

    assert result.appeared == ["unit:103"]
    assert result.disappeared == ["unit:101"]
    assert event_rows(runner, "A", "2025-03-02") == [
        (EventType.APPEARED, "unit:103", "103"),
        (EventType.DISAPPEARED, "unit:101", "101"),
    ]


def test_same_day_reruns_do_not_accumulate(tmp_path):
    adapter = StaticAdapter(records("101", "102"))
    runner = build_runner(tmp_path, {"A": adapter})
    runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")
    adapter.records = records("102", "103")

    counts = []
    snapshots = []
    for _ in range(3):
        runner.run_property(PropertyTarget(property_id="A"), "2025-03-02")
        counts.append(len(event_rows(runner, "A", "2025-03-02")))
        snapshots.append(runner.database.fetch_snapshot("A", "2025-03-02").units)

    assert counts == [2, 2, 2]
    assert snapshots[0] == snapshots[1] == snapshots[2]
    with runner.database.connect() as conn:
        total = conn.execute(
            "SELECT COUNT(*) FROM unit_snapshots WHERE property_id = 'A'"
        ).fetchone()[0]
    assert total == 2


def test_event_unit_number_recovered_from_key(tmp_path):
    adapter = StaticAdapter([RawUnitRecord(unit_key="unit:103")])
    runner = build_runner(tmp_path, {"A": adapter})

    runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")

    assert event_rows(runner, "A", "2025-03-01") == [(EventType.APPEARED, "unit:103", "103")]


def test_unkeyable_records_never_reach_the_snapshot(tmp_path):
    adapter = StaticAdapter(records("101") + [RawUnitRecord(meta={"raw": "2 Bed floor plan"})])
    runner = build_runner(tmp_path, {"A": adapter})

    result = runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")

    assert result.raw_count == 2
    assert result.unit_count == 1
    assert result.dropped_count == 1
    assert runner.database.fetch_snapshot("A", "2025-03-01").unit_keys == ["unit:101"]


def test_zero_units_is_flagged_suspect_empty(tmp_path):
    adapter = StaticAdapter(records("101", "102"))
    runner = build_runner(tmp_path, {"A": adapter})
    runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")

    adapter.records = []
    result = runner.run_property(PropertyTarget(property_id="A"), "2025-03-02")

    assert result.status is RunStatus.SUSPECT_EMPTY
    assert result.reason == "adapter returned no records"
    assert result.disappeared == ["unit:101", "unit:102"]
    snapshot = runner.database.fetch_snapshot("A", "2025-03-02")
    assert snapshot.units == []
    assert snapshot.suspect_empty is True


def test_extraction_failure_is_retried_then_reported(tmp_path):
    failing = FailingAdapter()
    runner = build_runner(tmp_path, {"A": failing, "B": StaticAdapter(records("1"))})

    summary = runner.run_batch(
        [PropertyTarget(property_id="A"), PropertyTarget(property_id="B")],
        "2025-03-01",
    )

    assert failing.calls == 3
    statuses = {result.property_id: result.status for result in summary.results}
    assert statuses == {"A": RunStatus.FAILED, "B": RunStatus.SUCCESS}
    assert summary.failed[0].reason == "navigation timeout"
    assert summary.failed[0].stage is RunStage.FETCHING
    assert runner.database.fetch_snapshot("A", "2025-03-01") is None
    assert runner.database.fetch_snapshot("B", "2025-03-01").unit_keys == ["unit:1"]


def test_unexpected_adapter_errors_are_not_retried(tmp_path):
    crashing = FailingAdapter(RuntimeError("selector changed"))
    runner = build_runner(tmp_path, {"A": crashing})

    result = runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")

    assert crashing.calls == 1
    assert result.status is RunStatus.FAILED
    assert "selector changed" in result.reason


def test_property_kill_switch_abandons_slow_fetch(tmp_path):
    slow = SlowAdapter()
    runner = build_runner(tmp_path, {"A": slow}, property_max_seconds=0.2)

    try:
        result = runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")
    finally:
        slow.release.set()

    assert result.status is RunStatus.FAILED
    assert "timeout" in result.reason.lower()
    assert runner.database.fetch_snapshot("A", "2025-03-01") is None


def test_storage_failure_is_isolated(tmp_path):
    runner = build_runner(
        tmp_path,
        {"A": StaticAdapter(records("1"))},
        database_cls=BrokenSnapshotDatabase,
    )

    result = runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")

    assert result.status is RunStatus.FAILED
    assert result.stage is RunStage.PERSISTING_SNAPSHOT
    assert "database is locked" in result.reason
    assert runner.database.fetch_events("A") == []


def test_skipped_targets(tmp_path):
    runner = build_runner(tmp_path, {})
    runner.adapter_factory = build_adapter

    summary = runner.run_batch(
        [
            PropertyTarget(property_id="A", skip=True, skip_reason="site offline"),
            PropertyTarget(property_id="B", platform="yardi"),
        ],
        "2025-03-01",
    )

    assert [result.status for result in summary.results] == [RunStatus.SKIPPED, RunStatus.SKIPPED]
    assert summary.results[0].reason == "site offline"
    assert "unsupported platform" in summary.results[1].reason


def test_parallel_batch_matches_sequential(tmp_path):
    adapters = {pid: StaticAdapter(records(f"{pid}1", f"{pid}2")) for pid in "ABCD"}
    targets = [PropertyTarget(property_id=pid) for pid in "ABCD"]
    targets.append(PropertyTarget(property_id="A"))

    sequential = build_runner(tmp_path / "seq", adapters).run_batch(targets, "2025-03-01")
    parallel = build_runner(tmp_path / "par", adapters, max_workers=3).run_batch(
        targets, "2025-03-01"
    )

    def outcome(summary):
        return [(r.property_id, r.status, r.appeared) for r in summary.results]

    assert outcome(sequential) == outcome(parallel)
    assert outcome(parallel)[-1] == ("A", RunStatus.SKIPPED, [])
    assert parallel.appeared_total == 8


def test_batch_records_run_history(tmp_path):
    runner = build_runner(tmp_path, {"A": StaticAdapter(records("1")), "B": FailingAdapter()})

    runner.run_batch([PropertyTarget(property_id="A"), PropertyTarget(property_id="B")], "2025-03-01")

    runs = runner.database.recent_runs()
    assert {(run["property_id"], run["status"]) for run in runs} == {
        ("A", "success"),
        ("B", "failed"),
    }


def test_rediff_rebuilds_events_from_stored_snapshots(tmp_path):
    adapter = StaticAdapter(records("101", "102"))
    runner = build_runner(tmp_path, {"A": adapter})
    runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")
    adapter.records = records("102", "103")
    runner.run_property(PropertyTarget(property_id="A"), "2025-03-02")
    expected = event_rows(runner, "A", "2025-03-02")

    with runner.database.connect() as conn:
        conn.execute("DELETE FROM unit_events")

    summary = runner.rediff_batch(snapshot_date="2025-03-05")

    assert [result.status for result in summary.results] == [RunStatus.SUCCESS]
    assert event_rows(runner, "A", "2025-03-02") == expected
    assert adapter.calls == 2


def test_rediff_skips_properties_without_snapshots(tmp_path):
    runner = build_runner(tmp_path, {})

    result = runner.rediff_property("missing", "2025-03-01")

    assert result.status is RunStatus.SKIPPED


class TimeoutRecordingAdapter:
    """Waits out whatever timeout it is handed, then fails like a stalled page load."""

    def __init__(self):
        self.timeouts = []

    def fetch(self, target, timeout):
        self.timeouts.append(timeout)
        threading.Event().wait(timeout)
        raise ExtractionError("navigation timeout")


def test_kill_switch_caps_attempt_timeout_and_stops_retrying(tmp_path):
    adapter = TimeoutRecordingAdapter()
    runner = build_runner(tmp_path, {"A": adapter}, property_max_seconds=0.3)

    result = runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")
    time.sleep(0.6)

    assert result.status is RunStatus.FAILED
    assert len(adapter.timeouts) == 1
    assert adapter.timeouts[0] <= 0.3


def test_malformed_adapter_options_do_not_abort_batch(tmp_path):
    runner = build_runner(tmp_path, {})
    runner.adapter_factory = build_adapter

    summary = runner.run_batch(
        [
            PropertyTarget(
                property_id="A",
                platform="rentcafe",
                options={"urls": ["https://example.com/a"], "per_url_delay": "fast"},
            ),
            PropertyTarget(property_id="B", skip=True),
        ],
        "2025-03-01",
    )

    assert [result.property_id for result in summary.results] == ["A", "B"]
    assert summary.results[0].status is RunStatus.SKIPPED
    assert "per_url_delay" in summary.results[0].reason
    assert summary.results[1].status is RunStatus.SKIPPED


def test_adapter_factory_crash_is_reported_as_failed(tmp_path):
    def factory(target):
        if target.property_id == "A":
            raise TypeError("'int' object is not iterable")
        return StaticAdapter(records("1"))

    runner = build_runner(tmp_path, {})
    runner.adapter_factory = factory

    summary = runner.run_batch(
        [PropertyTarget(property_id="A"), PropertyTarget(property_id="B")],
        "2025-03-01",
    )

    first, second = summary.results
    assert first.status is RunStatus.FAILED
    assert first.stage is RunStage.FETCHING
    assert "not iterable" in first.reason
    assert second.status is RunStatus.SUCCESS


def test_duplicate_targets_keep_their_input_position(tmp_path):
    adapters = {pid: StaticAdapter(records("1")) for pid in "AB"}
    runner = build_runner(tmp_path, adapters, max_workers=2)

    summary = runner.run_batch(
        [
            PropertyTarget(property_id="A"),
            PropertyTarget(property_id="A"),
            PropertyTarget(property_id="B"),
        ],
        "2025-03-01",
    )

    assert [(r.property_id, r.status) for r in summary.results] == [
        ("A", RunStatus.SUCCESS),
        ("A", RunStatus.SKIPPED),
        ("B", RunStatus.SUCCESS),
    ]
    assert adapters["A"].calls == 1


def test_rediff_leaves_stored_snapshots_untouched(tmp_path):
    adapter = StaticAdapter(records("101"))
    runner = build_runner(tmp_path, {"A": adapter})
    runner.run_property(PropertyTarget(property_id="A"), "2025-03-01")
    adapter.records = []
    runner.run_property(PropertyTarget(property_id="A"), "2025-03-02")

    def stamps():
        with runner.database.connect() as conn:
            return conn.execute(
                "SELECT snapshot_date, updated_at, suspect_empty FROM unit_snapshots "
                "ORDER BY snapshot_date"
            ).fetchall()

    before = [tuple(row) for row in stamps()]
    time.sleep(0.01)
    result = runner.rediff_property("A", "2025-03-02")

    assert [tuple(row) for row in stamps()] == before
    assert result.status is RunStatus.SUSPECT_EMPTY
    assert result.stage is RunStage.DONE
    assert result.disappeared == ["unit:101"]
