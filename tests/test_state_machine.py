"""Tests for ImportStateMachine: creation, claiming, outcomes and the retry bound."""

from __future__ import annotations

import threading
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from booking_ingestor.core.exceptions import ExtractionError
from booking_ingestor.core.extraction import ExtractionAdapter
from booking_ingestor.core.models import (
    ImportStatus,
    ReconcileSummary,
    SkippedCandidate,
    SkipReason,
)
from booking_ingestor.core.reconciler import ReconciliationEngine
from booking_ingestor.pipeline.state_machine import ImportStateMachine
from booking_ingestor.storage.artifact_store import ArtifactStore
from booking_ingestor.storage.bookings import BookingStore
from booking_ingestor.storage.tracker import ImportTracker

ONE_BOOKING = {"bookings": [{"bookingCode": "26CO-USB07", "pax": 12}]}


@pytest.fixture
def notifier() -> MagicMock:
    return MagicMock()


@pytest.fixture
def machine(
    tracker: ImportTracker,
    artifact_store: ArtifactStore,
    fake_service,
    booking_store: BookingStore,
    notifier: MagicMock,
) -> ImportStateMachine:
    return ImportStateMachine(
        tracker,
        artifact_store,
        ExtractionAdapter(service=fake_service),
        ReconciliationEngine(booking_store),
        notifier=notifier,
        retry_threshold=3,
    )


class TestGetOrCreate:
    def test_creates_once(self, machine: ImportStateMachine, make_metadata) -> None:
        record, created = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))
        assert created is True
        assert record.status == ImportStatus.PENDING

        again, created_again = machine.get_or_create(
            "m1::BODY_TABLE", make_metadata("m1::BODY_TABLE")
        )
        assert created_again is False
        assert again.created_at == record.created_at

    def test_concurrent_callers_single_creation(
        self, machine: ImportStateMachine, make_metadata
    ) -> None:
        metadata = make_metadata("m1::liste.xlsx")
        results: list[bool] = []
        lock = threading.Lock()

        def create() -> None:
            _, created = machine.get_or_create("m1::liste.xlsx", metadata)
            with lock:
                results.append(created)

        threads = [threading.Thread(target=create) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert len(results) == 8


class TestAttemptProcessing:
    """Outcomes of a single attempt."""

    def test_success(
        self,
        machine: ImportStateMachine,
        make_metadata,
        fake_service,
        tracker: ImportTracker,
        booking_store: BookingStore,
        notifier: MagicMock,
    ) -> None:
        fake_service.response = ONE_BOOKING
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))

        outcome = machine.attempt_processing(record)

        assert outcome.attempted is True
        assert outcome.status == ImportStatus.SUCCESS
        assert outcome.created == ("26CO-USB07",)
        stored = tracker.get("m1::BODY_TABLE")
        assert stored.status == ImportStatus.SUCCESS
        assert stored.result_refs == ("26CO-USB07",)
        assert stored.candidate_count == 1
        assert stored.processed_at is not None
        assert booking_store.get_booking("26CO-USB07", 2026).pax == 12
        notifier.notify.assert_called_once_with(outcome)

    def test_empty_result_is_success(
        self, machine: ImportStateMachine, make_metadata, tracker: ImportTracker
    ) -> None:
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))

        outcome = machine.attempt_processing(record)

        assert outcome.status == ImportStatus.SUCCESS
        stored = tracker.get("m1::BODY_TABLE")
        assert stored.candidate_count == 0
        assert stored.result_refs == ()

    def test_partial_batch_succeeds_with_skips(
        self, machine: ImportStateMachine, make_metadata, fake_service, tracker: ImportTracker
    ) -> None:
        fake_service.response = {
            "bookings": [{"bookingCode": "26CO-USB07"}, {"bookingCode": "26XY-01"}]
        }
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))

        outcome = machine.attempt_processing(record)

        assert outcome.status == ImportStatus.SUCCESS
        stored = tracker.get("m1::BODY_TABLE")
        assert stored.result_refs == ("26CO-USB07",)
        assert stored.skipped == (SkippedCandidate("26XY-01", SkipReason.UNKNOWN_CLASSIFICATION),)
        assert stored.candidate_count == 2

    def test_refusal_goes_to_manual_review(
        self, machine: ImportStateMachine, make_metadata, fake_service, tracker: ImportTracker
    ) -> None:
        fake_service.response = {"error": "Not a booking table"}
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))

        outcome = machine.attempt_processing(record)

        assert outcome.status == ImportStatus.MANUAL_REVIEW
        stored = tracker.get("m1::BODY_TABLE")
        assert stored.retry_count == 1
        assert "Not a booking table" in stored.error_message

    def test_transport_error_is_retryable(
        self,
        tracker: ImportTracker,
        artifact_store: ArtifactStore,
        booking_store: BookingStore,
        make_metadata,
    ) -> None:
        service = MagicMock()
        service.request_text.side_effect = ExtractionError("read timeout")
        machine = ImportStateMachine(
            tracker, artifact_store, ExtractionAdapter(service=service),
            ReconciliationEngine(booking_store),
        )
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))

        outcome = machine.attempt_processing(record)

        assert outcome.status == ImportStatus.FAILED
        assert outcome.error_message == "read timeout"

    def test_unreadable_artifact(
        self, machine: ImportStateMachine, make_metadata, tracker: ImportTracker
    ) -> None:
        metadata = make_metadata("m1::BODY_TABLE")
        Path(metadata.artifact_location).unlink()
        record, _ = machine.get_or_create("m1::BODY_TABLE", metadata)

        outcome = machine.attempt_processing(record)

        assert outcome.status == ImportStatus.FAILED
        assert "unreadable" in outcome.error_message

    def test_all_store_conflicts_count_as_failure(
        self, tracker: ImportTracker, artifact_store: ArtifactStore, fake_service, make_metadata
    ) -> None:
        fake_service.response = ONE_BOOKING
        reconciler = MagicMock()
        reconciler.reconcile.return_value = ReconcileSummary(
            skipped=[SkippedCandidate("26CO-USB07", SkipReason.STORE_CONFLICT)]
        )
        machine = ImportStateMachine(
            tracker, artifact_store, ExtractionAdapter(service=fake_service), reconciler
        )
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))

        outcome = machine.attempt_processing(record)

        assert outcome.status == ImportStatus.FAILED
        assert tracker.get("m1::BODY_TABLE").skipped[0].reason == SkipReason.STORE_CONFLICT

    def test_unexpected_error_recorded_as_failure(
        self, tracker: ImportTracker, artifact_store: ArtifactStore, fake_service, make_metadata
    ) -> None:
        fake_service.response = ONE_BOOKING
        reconciler = MagicMock()
        reconciler.reconcile.side_effect = RuntimeError("boom")
        machine = ImportStateMachine(
            tracker, artifact_store, ExtractionAdapter(service=fake_service), reconciler
        )
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))

        outcome = machine.attempt_processing(record)

        assert outcome.status == ImportStatus.FAILED
        assert outcome.error_message == "Unexpected error: boom"
        assert tracker.get("m1::BODY_TABLE").status == ImportStatus.FAILED

    def test_notifier_failure_does_not_change_status(
        self,
        machine: ImportStateMachine,
        make_metadata,
        fake_service,
        tracker: ImportTracker,
        notifier: MagicMock,
    ) -> None:
        fake_service.response = ONE_BOOKING
        notifier.notify.side_effect = OSError("smtp down")
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))

        outcome = machine.attempt_processing(record)

        assert outcome.status == ImportStatus.SUCCESS
        assert tracker.get("m1::BODY_TABLE").status == ImportStatus.SUCCESS


class TestClaiming:
    def test_already_claimed_not_attempted(
        self,
        machine: ImportStateMachine,
        make_metadata,
        tracker: ImportTracker,
        fake_service,
        notifier: MagicMock,
    ) -> None:
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))
        assert tracker.claim("m1::BODY_TABLE") is True

        outcome = machine.attempt_processing(record)

        assert outcome.attempted is False
        assert outcome.status == ImportStatus.PROCESSING
        assert fake_service.calls == []
        notifier.notify.assert_not_called()

    def test_success_is_terminal(
        self, machine: ImportStateMachine, make_metadata, fake_service
    ) -> None:
        fake_service.response = ONE_BOOKING
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))
        machine.attempt_processing(record)

        again = machine.attempt_processing(record)

        assert again.attempted is False
        assert again.status == ImportStatus.SUCCESS
        assert len(fake_service.calls) == 1


class TestRetryBound:
    """Retryable failures stop at the threshold."""

    def test_manual_review_after_threshold(
        self, machine: ImportStateMachine, make_metadata, fake_service, tracker: ImportTracker
    ) -> None:
        fake_service.response = "not json at all"
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))

        statuses = [machine.attempt_processing(record).status for _ in range(3)]

        assert statuses == [ImportStatus.FAILED, ImportStatus.FAILED, ImportStatus.MANUAL_REVIEW]
        stored = tracker.get("m1::BODY_TABLE")
        assert stored.retry_count == 3
        assert stored.processed_at is not None

        fourth = machine.attempt_processing(record)
        assert fourth.attempted is False
        assert tracker.get("m1::BODY_TABLE").retry_count == 3

    def test_reset_restores_budget(
        self, machine: ImportStateMachine, make_metadata, fake_service, tracker: ImportTracker
    ) -> None:
        fake_service.response = {"error": "Not a booking table"}
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))
        machine.attempt_processing(record)

        assert machine.reset("m1::BODY_TABLE") is True
        stored = tracker.get("m1::BODY_TABLE")
        assert stored.status == ImportStatus.PENDING
        assert stored.retry_count == 0

        fake_service.response = ONE_BOOKING
        assert machine.attempt_processing(stored).status == ImportStatus.SUCCESS

    def test_reset_rejects_success(
        self, machine: ImportStateMachine, make_metadata, fake_service
    ) -> None:
        fake_service.response = ONE_BOOKING
        record, _ = machine.get_or_create("m1::BODY_TABLE", make_metadata("m1::BODY_TABLE"))
        machine.attempt_processing(record)
        assert machine.reset("m1::BODY_TABLE") is False
