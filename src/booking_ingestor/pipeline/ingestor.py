"""Orchestrator: wires stores, mailbox, extraction and notifier; owns the lifecycle."""

from __future__ import annotations

import logging
import threading
from collections.abc import Sequence
from concurrent.futures import Executor, ThreadPoolExecutor

from booking_ingestor.config.settings import BookingIngestorSettings
from booking_ingestor.core.allowlist import normalize_entries
from booking_ingestor.core.auth import authenticate, build_gmail_service
from booking_ingestor.core.classifier import ContentClassifier
from booking_ingestor.core.converter import BodyTableConverter
from booking_ingestor.core.extraction import (
    AnthropicExtractionService,
    ExtractionAdapter,
    ExtractionService,
)
from booking_ingestor.core.gmail_client import GmailClient, MailboxClient
from booking_ingestor.core.models import CycleProgress, ImportOutcome, ImportRecord, ImportStatus
from booking_ingestor.core.notifier import LoggingNotifier, Notifier, SmtpNotifier
from booking_ingestor.core.reconciler import ReconciliationEngine
from booking_ingestor.pipeline.poller import Poller
from booking_ingestor.pipeline.scheduler import PollScheduler
from booking_ingestor.pipeline.state_machine import ImportStateMachine
from booking_ingestor.storage.artifact_store import ArtifactStore
from booking_ingestor.storage.bookings import BookingStore
from booking_ingestor.storage.tracker import ALLOWLIST_SETTING, ImportTracker

logger = logging.getLogger(__name__)


class BookingIngestor:
    """Entry point for the CLI and for embedding.

    Components are built lazily from settings unless injected. Admin
    operations (listing, retry, allowlist) only open the stores; polling
    additionally authenticates against the mailbox.
    """

    def __init__(
        self,
        settings: BookingIngestorSettings | None = None,
        *,
        mailbox: MailboxClient | None = None,
        extraction_service: ExtractionService | None = None,
        notifier: Notifier | None = None,
        tracker: ImportTracker | None = None,
        bookings: BookingStore | None = None,
        executor: Executor | None = None,
    ) -> None:
        self._settings = settings or BookingIngestorSettings()
        self._mailbox = mailbox
        self._extraction_service = extraction_service
        self._notifier = notifier
        self._tracker = tracker
        self._bookings = bookings
        self._executor = executor
        self._owns_executor = executor is None

        self._artifacts: ArtifactStore | None = None
        self._state_machine: ImportStateMachine | None = None
        self._poller: Poller | None = None
        self._scheduler: PollScheduler | None = None
        self._stop = threading.Event()

    def _ensure_stores(self) -> tuple[ImportTracker, BookingStore, ArtifactStore]:
        if self._artifacts is None:
            self._settings.ensure_directories()
            self._artifacts = ArtifactStore(self._settings.artifact_dir)

        if self._tracker is None:
            self._tracker = ImportTracker(self._settings.database_path)
            self._tracker.connect()

        if self._bookings is None:
            self._bookings = BookingStore(self._settings.booking_database_path)
            self._bookings.connect()

        return self._tracker, self._bookings, self._artifacts

    def _ensure_state_machine(self) -> ImportStateMachine:
        if self._state_machine is not None:
            return self._state_machine

        tracker, bookings, artifacts = self._ensure_stores()

        if self._extraction_service is None and self._settings.anthropic_api_key:
            self._extraction_service = AnthropicExtractionService(
                api_key=self._settings.anthropic_api_key,
                model=self._settings.extraction_model,
                max_tokens=self._settings.extraction_max_tokens,
                timeout=self._settings.extraction_timeout_seconds,
            )
        if self._extraction_service is None:
            logger.warning(
                "No extraction service configured; only spreadsheets can be imported"
            )

        if self._notifier is None:
            self._notifier = self._build_notifier()

        self._state_machine = ImportStateMachine(
            tracker,
            artifacts,
            ExtractionAdapter(
                service=self._extraction_service,
                converter=BodyTableConverter(self._settings.body_table_markers),
            ),
            ReconciliationEngine(bookings),
            notifier=self._notifier,
            retry_threshold=self._settings.retry_threshold,
        )
        return self._state_machine

    def _build_notifier(self) -> Notifier:
        s = self._settings
        if s.smtp_host and s.notify_email:
            return SmtpNotifier(
                s.smtp_host,
                s.smtp_port,
                s.smtp_user,
                s.smtp_password,
                s.notify_email,
                imports_url=s.imports_url,
                timeout=s.notify_timeout_seconds,
            )
        return LoggingNotifier()

    def _ensure_poller(self) -> Poller:
        if self._poller is not None:
            return self._poller

        state_machine = self._ensure_state_machine()
        tracker, _, artifacts = self._ensure_stores()
        s = self._settings

        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=s.worker_count, thread_name_prefix="booking-import"
            )

        self._poller = Poller(
            self._mailbox,
            tracker,
            artifacts,
            state_machine,
            self._executor,
            classifier=ContentClassifier(s.body_table_markers),
            since_days=s.recency_window_days,
            default_allowlist=s.default_sender_allowlist,
            stale_pending_minutes=s.stale_pending_minutes,
            mailbox_factory=self._build_mailbox,
        )
        return self._poller

    def _build_mailbox(self) -> MailboxClient:
        """Authenticate and build the Gmail client. Called by the poller on first use.

        Raises:
            AuthenticationError: If no valid token is cached.
        """
        s = self._settings
        creds = authenticate(s.credentials_path, s.token_path)
        service = build_gmail_service(creds, s.mailbox_timeout_seconds)
        return GmailClient(
            service,
            s.user_id,
            processed_label=s.processed_label,
            max_results_per_page=s.max_results_per_page,
            max_candidates=s.max_candidates_per_cycle,
            max_retries=s.max_retries,
            initial_backoff_seconds=s.initial_backoff_seconds,
            max_backoff_seconds=s.max_backoff_seconds,
            inter_page_delay_seconds=s.inter_page_delay_seconds,
            num_retries=s.num_retries,
        )

    def run_poll_cycle(self, *, wait: bool = False) -> CycleProgress:
        """Run one poll cycle; with ``wait``, block until dispatched imports finish."""
        poller = self._ensure_poller()
        progress = poller.run_poll_cycle()
        if wait:
            poller.wait_idle()
        return progress

    def start(self) -> bool:
        """Start the recurring poll. Returns False when polling is disabled."""
        if not self._settings.poll_enabled:
            logger.info("Polling disabled (poll_enabled=false)")
            return False
        poller = self._ensure_poller()
        if self._scheduler is None:
            self._scheduler = PollScheduler(
                poller.run_poll_cycle,
                enabled=self._settings.poll_enabled,
                interval_minutes=self._settings.poll_interval_minutes,
                startup_delay_seconds=self._settings.startup_delay_seconds,
                max_instances=self._settings.max_overlapping_cycles,
            )
        return self._scheduler.start()

    def serve(self) -> None:
        """Start polling and block until ``shutdown()`` is called."""
        if not self.start():
            return
        logger.info("Booking ingestor running; waiting for shutdown")
        try:
            self._stop.wait()
        finally:
            self._stop_scheduler()

    def shutdown(self) -> None:
        """Ask a blocking ``serve()`` to return."""
        self._stop.set()

    def list_imports(
        self, status: ImportStatus | None = None, limit: int = 50, offset: int = 0
    ) -> list[ImportRecord]:
        tracker, _, _ = self._ensure_stores()
        return tracker.list_records(status, limit=limit, offset=offset)

    def get_import(self, discriminator: str) -> ImportRecord | None:
        tracker, _, _ = self._ensure_stores()
        return tracker.get(discriminator)

    def get_status(self) -> dict[str, int]:
        """Get current import counts by status."""
        tracker, _, _ = self._ensure_stores()
        return tracker.count_by_status()

    def last_run(self) -> dict | None:
        tracker, _, _ = self._ensure_stores()
        return tracker.last_run()

    def retry_import(self, discriminator: str) -> ImportOutcome | None:
        """Reset a FAILED/MANUAL_REVIEW import and process it right away.

        Returns None when the record does not exist or is not resettable.
        """
        state_machine = self._ensure_state_machine()
        if not state_machine.reset(discriminator):
            return None
        record = self.get_import(discriminator)
        if record is None:
            return None
        return state_machine.attempt_processing(record)

    def get_allowlist(self) -> list[str]:
        tracker, _, _ = self._ensure_stores()
        stored = tracker.get_setting(ALLOWLIST_SETTING)
        return normalize_entries(
            stored if stored is not None else self._settings.default_sender_allowlist
        )

    def set_allowlist(self, entries: Sequence[str]) -> list[str]:
        tracker, _, _ = self._ensure_stores()
        normalized = normalize_entries(entries)
        tracker.set_setting(ALLOWLIST_SETTING, normalized)
        logger.info("Sender allowlist set to %s", normalized)
        return normalized

    def add_tour_type(self, code: str, name: str = "") -> int:
        _, bookings, _ = self._ensure_stores()
        return bookings.add_tour_type(code, name)

    def close(self) -> None:
        """Clean up resources."""
        self._stop_scheduler()
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=True)
            self._executor = None
        if self._tracker:
            self._tracker.close()
        if self._bookings:
            self._bookings.close()

    def _stop_scheduler(self) -> None:
        if self._scheduler is not None:
            self._scheduler.shutdown()
            self._scheduler = None
