from pathlib import Path

from conplicity.metadata import OperationHistoryStore
from conplicity.models import OperationResult
from conplicity.patterns import ParseError


def _result(
    *,
    volume_name: str = "db-data",
    operation: str = "backup",
    status: str,
    finished_at: str,
    started_at: str = "2026-02-23T10:00:00+00:00",
    error: Exception | None = None,
) -> OperationResult:
    return OperationResult(
        volume_name=volume_name,
        operation=operation,
        status=status,
        error=error,
        started_at=started_at,
        finished_at=finished_at,
    )


def _store(tmp_path: Path) -> OperationHistoryStore:
    store = OperationHistoryStore(tmp_path / "history" / "conplicity.db")
    store.initialize()
    return store


def test_initialize_creates_parent_directory_and_empty_table(tmp_path: Path) -> None:
    store = _store(tmp_path)

    assert (tmp_path / "history").is_dir()
    assert store.count_results() == 0


def test_get_last_success_map_tracks_latest_success_timestamp(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_result(
        _result(status="failed", finished_at="2026-02-23T10:01:00+00:00", error=RuntimeError("simulated failure")),
        engine="duplicity",
    )
    store.record_result(_result(status="success", finished_at="2026-02-23T11:01:00+00:00"), engine="duplicity")

    last_success = store.get_last_success_map()

    assert last_success["db-data"] == "2026-02-23T11:01:00+00:00"


def test_get_last_success_map_with_mixed_statuses_returns_successful_entries_only(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_result(_result(status="success", finished_at="2026-02-23T09:01:00+00:00"), engine="restic")
    store.record_result(_result(status="failed", finished_at="2026-02-23T12:01:00+00:00"), engine="restic")
    store.record_result(
        _result(volume_name="logs", status="failed", finished_at="2026-02-23T12:05:00+00:00"),
        engine="restic",
    )

    last_success = store.get_last_success_map()

    assert last_success == {"db-data": "2026-02-23T09:01:00+00:00"}


def test_get_last_success_filters_by_operation(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_result(_result(status="success", finished_at="2026-02-23T09:00:00+00:00"), engine="duplicity")
    store.record_result(
        _result(operation="verify", status="success", finished_at="2026-02-22T09:00:00+00:00"),
        engine="duplicity",
    )
    store.record_result(
        _result(operation="verify", status="failed", finished_at="2026-02-23T10:00:00+00:00"),
        engine="duplicity",
    )

    assert store.get_last_success("db-data", "verify") == "2026-02-22T09:00:00+00:00"
    assert store.get_last_success("db-data", "backup") == "2026-02-23T09:00:00+00:00"
    assert store.get_last_success("other", "verify") is None
    assert store.get_last_success_map("verify") == {"db-data": "2026-02-22T09:00:00+00:00"}


def test_get_recent_results_returns_newest_first_with_messages(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.record_result(_result(status="success", finished_at="2026-02-23T09:00:00+00:00"), engine="duplicity")
    store.record_result(
        _result(
            operation="status",
            status="parse_error",
            finished_at="2026-02-23T09:05:00+00:00",
            error=ParseError(marker="chain end time", volume_name="db-data"),
        ),
        engine="duplicity",
    )

    rows = store.get_recent_results(limit=10)

    assert [row["operation"] for row in rows] == ["status", "backup"]
    assert rows[0]["status"] == "parse_error"
    assert rows[0]["message"] == "failed to parse chain end time for volume db-data: marker not found"
    assert rows[0]["engine"] == "duplicity"
    assert rows[1]["message"] == ""
    assert store.count_results() == 2


def test_get_recent_results_respects_limit(tmp_path: Path) -> None:
    store = _store(tmp_path)
    for minute in range(5):
        store.record_result(
            _result(status="success", finished_at=f"2026-02-23T09:0{minute}:00+00:00"),
            engine="rclone",
        )

    assert len(store.get_recent_results(limit=3)) == 3
    assert store.get_recent_results(limit=0) == []
