"""Import state machine: create-once records, atomic claims, bounded retries."""

from __future__ import annotations

import logging

from booking_ingestor.core.exceptions import ExtractionError
from booking_ingestor.core.extraction import EmptyResult, ExtractionAdapter, SchemaError
from booking_ingestor.core.models import (
    ArtifactMetadata,
    ImportOutcome,
    ImportRecord,
    ImportStatus,
    SkippedCandidate,
    SkipReason,
)
from booking_ingestor.core.notifier import Notifier, notify_safely
from booking_ingestor.core.reconciler import ReconciliationEngine
from booking_ingestor.storage.artifact_store import ArtifactStore
from booking_ingestor.storage.tracker import ImportTracker

logger = logging.getLogger(__name__)


class ImportStateMachine:
    """Drives one import record through PENDING → PROCESSING → terminal.

    Failure path: each failed attempt bumps ``retry_count``; the record is
    FAILED while below ``retry_threshold`` and MANUAL_REVIEW once it gets
    there. Non-retryable extraction failures go to MANUAL_REVIEW at once.
    """

    def __init__(
        self,
        tracker: ImportTracker,
        artifacts: ArtifactStore,
        extractor: ExtractionAdapter,
        reconciler: ReconciliationEngine,
        notifier: Notifier | None = None,
        retry_threshold: int = 3,
    ) -> None:
        self._tracker = tracker
        self._artifacts = artifacts
        self._extractor = extractor
        self._reconciler = reconciler
        self._notifier = notifier
        self._retry_threshold = retry_threshold

    def get_or_create(
        self, discriminator: str, metadata: ArtifactMetadata
    ) -> tuple[ImportRecord, bool]:
        """Return the record for ``discriminator``, creating it PENDING if new.

        Safe under concurrent callers: exactly one of them sees ``is_new=True``.
        """
        created = self._tracker.create_if_absent(discriminator, metadata)
        record = self._tracker.get(discriminator)
        if record is None:
            raise RuntimeError(f"Import record {discriminator} vanished after insert")
        if created:
            logger.info("New import %s (%s)", discriminator, metadata.artifact_kind.value)
        return record, created

    def attempt_processing(self, record: ImportRecord) -> ImportOutcome:
        """Claim the record and run extraction + reconciliation once.

        Returns a not-attempted outcome if the record is not claimable
        (already processing elsewhere, or terminal).
        """
        if not self._tracker.claim(record.discriminator):
            current = self._tracker.get(record.discriminator) or record
            logger.debug(
                "Import %s not claimable (status %s)", record.discriminator, current.status.value
            )
            return ImportOutcome(
                discriminator=record.discriminator,
                status=current.status,
                attempted=False,
                source_subject=record.source_subject,
                source_sender=record.source_sender,
                retry_count=current.retry_count,
            )

        try:
            outcome = self._process(record)
        except Exception as e:
            logger.exception("Unexpected error processing %s", record.discriminator)
            outcome = self._fail(record, f"Unexpected error: {e}")

        notify_safely(self._notifier, outcome)
        return outcome

    def reset(self, discriminator: str) -> bool:
        """Return a FAILED/MANUAL_REVIEW record to PENDING with retry_count 0."""
        reset = self._tracker.reset(discriminator)
        if reset:
            logger.info("Import %s reset to PENDING", discriminator)
        return reset

    def _process(self, record: ImportRecord) -> ImportOutcome:
        try:
            raw = self._artifacts.read(record.artifact_location)
        except OSError as e:
            return self._fail(record, f"Staged artifact unreadable: {e}")

        try:
            result = self._extractor.extract(
                raw, record.artifact_kind, record.mime_type, record.artifact_name
            )
        except ExtractionError as e:
            return self._fail(record, str(e), terminal=not e.retryable)

        if isinstance(result, SchemaError):
            return self._fail(record, result.message, terminal=not result.retryable)

        if isinstance(result, EmptyResult):
            logger.info("Import %s: %s", record.discriminator, result.reason)
            return self._succeed(record, [], [], [], [], candidate_count=0)

        summary = self._reconciler.reconcile(
            result.candidates, default_year=record.source_date.year
        )
        candidate_count = len(result.candidates)

        if len(summary.skipped) == candidate_count and all(
            s.reason == SkipReason.STORE_CONFLICT for s in summary.skipped
        ):
            return self._fail(
                record,
                f"All {candidate_count} candidate(s) failed to store",
                skipped=summary.skipped,
                candidate_count=candidate_count,
            )

        return self._succeed(
            record,
            summary.refs,
            summary.created,
            summary.updated,
            summary.skipped,
            candidate_count=candidate_count,
        )

    def _succeed(
        self,
        record: ImportRecord,
        refs: list[str],
        created: list[str],
        updated: list[str],
        skipped: list[SkippedCandidate],
        *,
        candidate_count: int,
    ) -> ImportOutcome:
        if not self._tracker.mark_success(record.discriminator, refs, skipped, candidate_count):
            logger.warning("Import %s left PROCESSING before success was recorded", record.discriminator)
        logger.info(
            "Import %s succeeded: %d created, %d updated, %d skipped",
            record.discriminator, len(created), len(updated), len(skipped),
        )
        return ImportOutcome(
            discriminator=record.discriminator,
            status=ImportStatus.SUCCESS,
            attempted=True,
            source_subject=record.source_subject,
            source_sender=record.source_sender,
            created=tuple(created),
            updated=tuple(updated),
            skipped=tuple(skipped),
            retry_count=record.retry_count,
        )

    def _fail(
        self,
        record: ImportRecord,
        error_message: str,
        *,
        terminal: bool = False,
        skipped: list[SkippedCandidate] | None = None,
        candidate_count: int = 0,
    ) -> ImportOutcome:
        status = self._tracker.mark_failure(
            record.discriminator,
            error_message,
            self._retry_threshold,
            terminal=terminal,
            skipped=skipped or [],
            candidate_count=candidate_count,
        )
        current = self._tracker.get(record.discriminator)
        retry_count = current.retry_count if current else record.retry_count + 1
        if status is None:
            status = current.status if current else ImportStatus.FAILED

        log = logger.error if status == ImportStatus.MANUAL_REVIEW else logger.warning
        log(
            "Import %s failed (attempt %d): %s -> %s",
            record.discriminator, retry_count, error_message, status.value,
        )
        return ImportOutcome(
            discriminator=record.discriminator,
            status=status,
            attempted=True,
            source_subject=record.source_subject,
            source_sender=record.source_sender,
            skipped=tuple(skipped or ()),
            retry_count=retry_count,
            error_message=error_message,
        )
