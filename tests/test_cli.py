import json

import pytest

import track_units
from vacancywatch.db import Database, resolve_sqlite_path
from vacancywatch.models import EventType


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for name in ("PROPERTY_ID", "PLATFORM", "SNAPSHOT_DATE", "EVENT_SOURCE", "SLACK_WEBHOOK"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", "sqlite:///./cli.db")

    units_path = tmp_path / "harbor.json"
    units_path.write_text(
        json.dumps([{"unit_number": "101"}, {"unit_number": " 102 ", "price": "$1,900"}]),
        encoding="utf-8",
    )
    properties = tmp_path / "properties.json"
    properties.write_text(
        json.dumps(
            [
                {"id": "harbor", "name": "Harbor View", "platform": "json", "path": str(units_path)},
                {"id": "closed", "platform": "json", "path": "unused.json", "skip": True},
            ]
        ),
        encoding="utf-8",
    )
    return tmp_path


def test_cli_without_mode_prints_help(workspace):
    assert track_units.main([]) == 1


def test_cli_run_writes_snapshot_and_events(workspace):
    exit_code = track_units.main(["--run", "--date", "2025-03-01", "--source", "manual"])

    assert exit_code == 0
    database = Database(path=resolve_sqlite_path("sqlite:///./cli.db"))
    snapshot = database.fetch_snapshot("harbor", "2025-03-01")
    assert snapshot.unit_keys == ["unit:101", "unit:102"]
    events = database.fetch_events("harbor", "2025-03-01", "manual")
    assert {(event.event_type, event.unit_number) for event in events} == {
        (EventType.APPEARED, "101"),
        (EventType.APPEARED, "102"),
    }
    statuses = {run["property_id"]: run["status"] for run in database.recent_runs()}
    assert statuses == {"harbor": "success", "closed": "skipped"}


def test_cli_rediff_and_export(workspace):
    track_units.main(["--run", "--date", "2025-03-01"])

    exit_code = track_units.main(
        ["--rediff", "--date", "2025-03-01", "--export", str(workspace / "out.xlsx")]
    )

    assert exit_code == 0
    assert (workspace / "out.xlsx").exists()


def test_cli_reports_bad_property_file(workspace):
    (workspace / "properties.json").write_text("[{}]", encoding="utf-8")

    assert track_units.main(["--run"]) == 2


def test_cli_rejects_bad_date(workspace):
    with pytest.raises(SystemExit):
        track_units.main(["--run", "--date", "yesterday"])
