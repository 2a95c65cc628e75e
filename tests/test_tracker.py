"""Tests for ImportTracker, the SQLite idempotency store."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from booking_ingestor.core.models import (
    CycleProgress,
    ImportStatus,
    SkippedCandidate,
    SkipReason,
)
from booking_ingestor.storage.tracker import ImportTracker


class TestConnect:
    """ImportTracker.connect() initialises the database schema."""

    def test_creates_tables(self, tmp_db_path: Path) -> None:
        with ImportTracker(tmp_db_path) as tracker:
            rows = tracker.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        names = {row["name"] for row in rows}
        assert {"imports", "poll_runs", "system_settings"} <= names

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        nested = tmp_path / "a" / "b" / "test.db"
        tracker = ImportTracker(nested)
        tracker.connect()
        tracker.close()
        assert nested.exists()

    def test_conn_raises_when_not_connected(self, tmp_db_path: Path) -> None:
        tracker = ImportTracker(tmp_db_path)
        with pytest.raises(RuntimeError, match="not connected"):
            _ = tracker.conn


class TestCreateIfAbsent:
    """create_if_absent inserts exactly once per discriminator."""

    def test_first_insert_creates_pending(self, tracker: ImportTracker, make_metadata) -> None:
        assert tracker.create_if_absent("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE")) is True
        record = tracker.get("m1::BODY_TABLE")
        assert record is not None
        assert record.status == ImportStatus.PENDING
        assert record.retry_count == 0
        assert record.source_sender == "info@world-insight.de"
        assert record.message_id == "m1"

    def test_duplicate_returns_false(self, tracker: ImportTracker, make_metadata) -> None:
        meta = make_metadata("m1::a.xlsx")
        tracker.create_if_absent("m1::a.xlsx", meta)
        assert tracker.create_if_absent("m1::a.xlsx", meta) is False
        assert tracker.count_by_status() == {"PENDING": 1}

    def test_concurrent_inserts_create_once(self, tracker: ImportTracker, make_metadata) -> None:
        meta = make_metadata("m1::scan.png")
        results: list[bool] = []
        lock = threading.Lock()

        def insert() -> None:
            created = tracker.create_if_absent("m1::scan.png", meta)
            with lock:
                results.append(created)

        threads = [threading.Thread(target=insert) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert tracker.count_by_status() == {"PENDING": 1}

    def test_two_connections_create_once(self, tmp_db_path: Path, make_metadata) -> None:
        meta = make_metadata("m2::BODY_TABLE")
        with ImportTracker(tmp_db_path) as a, ImportTracker(tmp_db_path) as b:
            first = a.create_if_absent("m2::BODY_TABLE", meta)
            second = b.create_if_absent("m2::BODY_TABLE", meta)
        assert (first, second) == (True, False)


class TestClaimAndTransitions:
    """Conditional status transitions."""

    def test_claim_pending(self, tracker: ImportTracker, make_metadata) -> None:
        tracker.create_if_absent("m1::x", make_metadata("m1::x"))
        assert tracker.claim("m1::x") is True
        assert tracker.get("m1::x").status == ImportStatus.PROCESSING

    def test_second_claim_fails(self, tracker: ImportTracker, make_metadata) -> None:
        tracker.create_if_absent("m1::x", make_metadata("m1::x"))
        tracker.claim("m1::x")
        assert tracker.claim("m1::x") is False

    def test_claim_unknown_discriminator(self, tracker: ImportTracker) -> None:
        assert tracker.claim("nope::x") is False

    def test_mark_success_records_results(self, tracker: ImportTracker, make_metadata) -> None:
        tracker.create_if_absent("m1::x", make_metadata("m1::x"))
        tracker.claim("m1::x")
        skipped = [SkippedCandidate("XX-1", SkipReason.UNKNOWN_CLASSIFICATION)]
        assert tracker.mark_success("m1::x", ["26CO-USB07"], skipped, candidate_count=2)

        record = tracker.get("m1::x")
        assert record.status == ImportStatus.SUCCESS
        assert record.result_refs == ("26CO-USB07",)
        assert record.skipped == tuple(skipped)
        assert record.candidate_count == 2
        assert record.processed_at is not None

    def test_mark_success_requires_processing(self, tracker: ImportTracker, make_metadata) -> None:
        tracker.create_if_absent("m1::x", make_metadata("m1::x"))
        assert tracker.mark_success("m1::x", []) is False
        assert tracker.get("m1::x").status == ImportStatus.PENDING

    def test_failure_below_threshold_is_failed(self, tracker: ImportTracker, make_metadata) -> None:
        tracker.create_if_absent("m1::x", make_metadata("m1::x"))
        tracker.claim("m1::x")
        status = tracker.mark_failure("m1::x", "timeout", retry_threshold=3)
        record = tracker.get("m1::x")
        assert status == ImportStatus.FAILED
        assert record.retry_count == 1
        assert record.error_message == "timeout"
        assert record.processed_at is None

    def test_failure_at_threshold_is_manual_review(
        self, tracker: ImportTracker, make_metadata
    ) -> None:
        tracker.create_if_absent("m1::x", make_metadata("m1::x"))
        statuses = []
        for _ in range(3):
            assert tracker.claim("m1::x")
            statuses.append(tracker.mark_failure("m1::x", "boom", retry_threshold=3))

        assert statuses == [ImportStatus.FAILED, ImportStatus.FAILED, ImportStatus.MANUAL_REVIEW]
        record = tracker.get("m1::x")
        assert record.retry_count == 3
        assert record.processed_at is not None
        assert tracker.claim("m1::x") is False

    def test_terminal_failure_skips_retries(self, tracker: ImportTracker, make_metadata) -> None:
        tracker.create_if_absent("m1::x", make_metadata("m1::x"))
        tracker.claim("m1::x")
        status = tracker.mark_failure("m1::x", "Not a booking table", 3, terminal=True)
        assert status == ImportStatus.MANUAL_REVIEW
        assert tracker.get("m1::x").retry_count == 1


class TestReset:
    """reset() gives FAILED/MANUAL_REVIEW records a fresh retry budget."""

    def test_reset_manual_review(self, tracker: ImportTracker, make_metadata) -> None:
        tracker.create_if_absent("m1::x", make_metadata("m1::x"))
        tracker.claim("m1::x")
        tracker.mark_failure("m1::x", "bad", 3, terminal=True)

        assert tracker.reset("m1::x") is True
        record = tracker.get("m1::x")
        assert record.status == ImportStatus.PENDING
        assert record.retry_count == 0
        assert record.error_message is None
        assert record.processed_at is None

    def test_reset_ignores_success(self, tracker: ImportTracker, make_metadata) -> None:
        tracker.create_if_absent("m1::x", make_metadata("m1::x"))
        tracker.claim("m1::x")
        tracker.mark_success("m1::x", [])
        assert tracker.reset("m1::x") is False


class TestQueries:
    """Listing and counting."""

    def test_list_records_filters_by_status(self, tracker: ImportTracker, make_metadata) -> None:
        for disc in ("m1::a", "m2::b", "m3::c"):
            tracker.create_if_absent(disc, make_metadata(disc))
        tracker.claim("m2::b")
        tracker.mark_success("m2::b", [])

        pending = tracker.list_records(ImportStatus.PENDING)
        assert {r.discriminator for r in pending} == {"m1::a", "m3::c"}
        assert len(tracker.list_records()) == 3
        assert len(tracker.list_records(limit=1)) == 1

    def test_list_retryable(self, tracker: ImportTracker, make_metadata) -> None:
        for disc in ("m1::failed", "m2::fresh", "m3::done"):
            tracker.create_if_absent(disc, make_metadata(disc))
        tracker.claim("m1::failed")
        tracker.mark_failure("m1::failed", "x", 3)
        tracker.claim("m3::done")
        tracker.mark_success("m3::done", [])

        recent_cutoff = datetime.now(UTC) - timedelta(minutes=30)
        assert [r.discriminator for r in tracker.list_retryable(recent_cutoff)] == ["m1::failed"]

        future_cutoff = datetime.now(UTC) + timedelta(minutes=1)
        found = {r.discriminator for r in tracker.list_retryable(future_cutoff)}
        assert found == {"m1::failed", "m2::fresh"}

    def test_count_by_status(self, tracker: ImportTracker, make_metadata) -> None:
        tracker.create_if_absent("m1::a", make_metadata("m1::a"))
        tracker.create_if_absent("m2::a", make_metadata("m2::a"))
        tracker.claim("m2::a")
        assert tracker.count_by_status() == {"PENDING": 1, "PROCESSING": 1}


class TestRunsAndSettings:
    """Poll-run audit rows and the settings table."""

    def test_start_and_complete_run(self, tracker: ImportTracker) -> None:
        run_id = tracker.start_run()
        tracker.complete_run(run_id, CycleProgress(messages_seen=3, artifacts_created=2))
        last = tracker.last_run()
        assert last["run_id"] == run_id
        assert last["messages_seen"] == 3
        assert last["artifacts_created"] == 2
        assert last["completed_at"] is not None

    def test_settings_roundtrip_and_overwrite(self, tracker: ImportTracker) -> None:
        assert tracker.get_setting("sender_allowlist") is None
        tracker.set_setting("sender_allowlist", ["@a.de"])
        tracker.set_setting("sender_allowlist", ["@b.de", "x@c.de"])
        assert tracker.get_setting("sender_allowlist") == ["@b.de", "x@c.de"]
