"""Poll cycle: discover messages, create import records, dispatch processing."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import Executor, Future, wait
from datetime import UTC, datetime, timedelta

from booking_ingestor.core.allowlist import is_sender_allowed, normalize_entries
from booking_ingestor.core.classifier import ContentClassifier
from booking_ingestor.core.exceptions import BookingIngestorError
from booking_ingestor.core.gmail_client import MailboxClient
from booking_ingestor.core.models import (
    Artifact,
    ArtifactKind,
    ArtifactMetadata,
    CycleProgress,
    ImportOutcome,
    ImportRecord,
    MessageDetail,
    MessageRef,
)
from booking_ingestor.pipeline.state_machine import ImportStateMachine
from booking_ingestor.storage.artifact_store import ArtifactStore
from booking_ingestor.storage.tracker import ALLOWLIST_SETTING, ImportTracker

logger = logging.getLogger(__name__)


class Poller:
    """Runs one poll cycle at a time; processing happens on the executor.

    Per message: fetch detail → allowlist → classify → for each new artifact
    stage bytes, create the PENDING record and dispatch it → mark the
    message processed. Attachment tasks of a message wait for that
    message's inline-table task to finish first.
    """

    def __init__(
        self,
        mailbox: MailboxClient | None,
        tracker: ImportTracker,
        artifacts: ArtifactStore,
        state_machine: ImportStateMachine,
        executor: Executor,
        *,
        classifier: ContentClassifier | None = None,
        since_days: int = 7,
        default_allowlist: Sequence[str] = (),
        stale_pending_minutes: int = 30,
        retry_batch_size: int = 50,
        mailbox_factory: Callable[[], MailboxClient] | None = None,
    ) -> None:
        if mailbox is None and mailbox_factory is None:
            raise ValueError("Poller needs a mailbox or a mailbox_factory")
        self._mailbox = mailbox
        self._mailbox_factory = mailbox_factory
        self._tracker = tracker
        self._artifacts = artifacts
        self._state_machine = state_machine
        self._executor = executor
        self._classifier = classifier or ContentClassifier()
        self._since_days = since_days
        self._default_allowlist = list(default_allowlist)
        self._stale_after = timedelta(minutes=stale_pending_minutes)
        self._retry_batch_size = retry_batch_size
        self._in_flight: set[Future] = set()
        self._lock = threading.Lock()
        self._mailbox_lock = threading.Lock()

    def current_allowlist(self) -> list[str]:
        """Persisted allowlist, falling back to the configured default."""
        stored = self._tracker.get_setting(ALLOWLIST_SETTING)
        return normalize_entries(stored if stored is not None else self._default_allowlist)

    def run_poll_cycle(self) -> CycleProgress:
        """Run one cycle. Never raises; failures are logged and recorded on the run."""
        progress = CycleProgress()
        try:
            run_id = self._tracker.start_run()
        except Exception as e:
            logger.error("Poll cycle aborted, cannot record run: %s", e)
            progress.error = str(e)
            return progress

        dispatched: set[str] = set()
        try:
            allowlist = self.current_allowlist()
            mailbox = self._get_mailbox()
            refs = mailbox.list_candidates(self._since_days, allowlist)
            if not refs:
                logger.debug("No candidate messages")

            for ref in refs:
                progress.messages_seen += 1
                try:
                    self._handle_message(ref, allowlist, progress, dispatched)
                except BookingIngestorError as e:
                    logger.error("Failed to handle message %s: %s", ref.message_id, e)
                except Exception:
                    logger.exception("Unexpected error handling message %s", ref.message_id)
        except Exception as e:
            progress.error = str(e)
            logger.error("Poll cycle failed: %s", e)

        # Runs even when the mailbox is unavailable
        try:
            self._sweep_retries(progress, dispatched)
        except Exception as e:
            progress.error = progress.error or str(e)
            logger.error("Retry sweep failed: %s", e)
        finally:
            try:
                self._tracker.complete_run(run_id, progress)
            except Exception as e:
                logger.error("Failed to record poll run %d: %s", run_id, e)

        if progress.messages_seen or progress.retries_dispatched:
            logger.info(
                "Poll cycle: %d messages (%d skipped), %d new artifacts, %d retries",
                progress.messages_seen, progress.messages_skipped,
                progress.artifacts_created, progress.retries_dispatched,
            )
        return progress

    def _get_mailbox(self) -> MailboxClient:
        """Return the mailbox, building it on first use.

        A factory failure (e.g. no valid OAuth token) propagates to the cycle,
        which records it; the next cycle calls the factory again.
        """
        with self._mailbox_lock:
            if self._mailbox is None:
                self._mailbox = self._mailbox_factory()
                logger.info("Mailbox client ready")
            return self._mailbox

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every dispatched task has finished. Returns False on timeout."""
        with self._lock:
            pending = list(self._in_flight)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def _handle_message(
        self,
        ref: MessageRef,
        allowlist: list[str],
        progress: CycleProgress,
        dispatched: set[str],
    ) -> None:
        detail = self._mailbox.fetch_detail(ref)

        if not is_sender_allowed(detail.sender, allowlist):
            logger.info("Skipping %s: sender %s not allowed", ref.message_id, detail.sender)
            progress.messages_skipped += 1
            self._mailbox.mark_processed(ref)
            return

        artifacts = self._classifier.classify(detail)
        if not artifacts:
            logger.info("No booking content in %s (%s)", ref.message_id, detail.subject)

        body_future: Future | None = None
        for artifact in artifacts:
            if self._tracker.exists(artifact.discriminator):
                logger.debug("Artifact %s already tracked", artifact.discriminator)
                continue

            location = self._artifacts.stage(
                artifact.discriminator, self._load(ref, detail, artifact), artifact.name
            )
            metadata = ArtifactMetadata(
                source_subject=detail.subject,
                source_sender=detail.sender,
                source_date=detail.date,
                artifact_kind=artifact.kind,
                artifact_name=artifact.name,
                artifact_location=location,
                mime_type=artifact.mime_type,
            )
            record, is_new = self._state_machine.get_or_create(artifact.discriminator, metadata)
            if not is_new:
                continue
            progress.artifacts_created += 1

            future = self._dispatch(record, after=body_future)
            if artifact.kind == ArtifactKind.INLINE_TABLE:
                body_future = future
            dispatched.add(record.discriminator)
            progress.artifacts_dispatched += 1

        self._mailbox.mark_processed(ref)

    def _load(self, ref: MessageRef, detail: MessageDetail, artifact: Artifact) -> bytes:
        if artifact.kind == ArtifactKind.INLINE_TABLE:
            return (detail.html or "").encode("utf-8")
        if artifact.attachment is None:
            raise BookingIngestorError(f"Artifact {artifact.discriminator} has no attachment")
        return self._mailbox.download_attachment(ref, artifact.attachment.attachment_id)

    def _sweep_retries(self, progress: CycleProgress, dispatched: set[str]) -> None:
        """Re-dispatch FAILED records and PENDING records orphaned before dispatch."""
        stale_before = datetime.now(UTC) - self._stale_after
        records = [
            r for r in self._tracker.list_retryable(stale_before, self._retry_batch_size)
            if r.discriminator not in dispatched
        ]
        records.sort(key=lambda r: r.artifact_kind != ArtifactKind.INLINE_TABLE)

        body_futures: dict[str, Future] = {}
        for record in records:
            future = self._dispatch(record, after=body_futures.get(record.message_id))
            if record.artifact_kind == ArtifactKind.INLINE_TABLE:
                body_futures[record.message_id] = future
            progress.retries_dispatched += 1
            logger.info(
                "Retrying import %s (%s, attempt %d)",
                record.discriminator, record.status.value, record.retry_count + 1,
            )

    def _dispatch(self, record: ImportRecord, after: Future | None = None) -> Future:
        def task() -> ImportOutcome:
            if after is not None:
                wait([after])
            return self._state_machine.attempt_processing(record)

        future = self._executor.submit(task)
        with self._lock:
            self._in_flight.add(future)
        future.add_done_callback(self._task_done)
        return future

    def _task_done(self, future: Future) -> None:
        with self._lock:
            self._in_flight.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Import task failed: %s", exc, exc_info=exc)
