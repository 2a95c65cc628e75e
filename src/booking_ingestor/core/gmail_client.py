"""Gmail API client: candidate discovery, message detail, attachments, processed marker."""

from __future__ import annotations

import base64
import logging
import random
import time
from collections.abc import Sequence
from typing import Any, Protocol

from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

from booking_ingestor.core.exceptions import MailboxError, RateLimitError
from booking_ingestor.core.models import MessageDetail, MessageRef
from booking_ingestor.core.parser import GmailParser

logger = logging.getLogger(__name__)


class MailboxClient(Protocol):
    """Capability interface the pipeline consumes; GmailClient is the production one."""

    def list_candidates(
        self, since_days: int, allowlist: Sequence[str]
    ) -> list[MessageRef]: ...

    def fetch_detail(self, ref: MessageRef) -> MessageDetail: ...

    def download_attachment(self, ref: MessageRef, attachment_id: str) -> bytes: ...

    def mark_processed(self, ref: MessageRef) -> None: ...


def _is_rate_limit_error(exc: Exception) -> bool:
    """Check whether an exception represents a Gmail API 429 rate limit."""
    if isinstance(exc, HttpError) and exc.status_code == 429:
        return True
    error_str = str(exc)
    return "429" in error_str or "rateLimitExceeded" in error_str


def build_candidate_query(
    since_days: int, allowlist: Sequence[str], processed_label: str
) -> str:
    """Build the Gmail search query for unread, unprocessed mail from allowed senders.

    >>> build_candidate_query(7, ["@a.de", "x@b.de"], "PROCESSED")
    'is:unread -label:PROCESSED newer_than:7d (from:(@a.de) OR from:(x@b.de))'
    """
    parts = ["is:unread", f"-label:{processed_label}"]
    if since_days > 0:
        parts.append(f"newer_than:{since_days}d")
    if allowlist:
        senders = " OR ".join(f"from:({entry})" for entry in allowlist)
        parts.append(f"({senders})")
    return " ".join(parts)


class GmailClient:
    """Thin wrapper around the Gmail API implementing MailboxClient."""

    def __init__(
        self,
        service: Resource,
        user_id: str = "me",
        *,
        processed_label: str = "PROCESSED",
        max_results_per_page: int = 50,
        max_candidates: int = 50,
        max_retries: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 60.0,
        inter_page_delay_seconds: float = 0.2,
        num_retries: int = 3,
    ) -> None:
        self._service = service
        self._user_id = user_id
        self._processed_label = processed_label
        self._page_size = max_results_per_page
        self._max_candidates = max_candidates
        self._max_retries = max_retries
        self._initial_backoff = initial_backoff_seconds
        self._max_backoff = max_backoff_seconds
        self._inter_page_delay = inter_page_delay_seconds
        self._num_retries = num_retries
        self._parser = GmailParser()
        self._processed_label_id: str | None = None

    def _execute_with_retry(self, request: Any, context: str) -> Any:
        """Execute a single API request with exponential backoff on 429 errors.

        Args:
            request: A googleapiclient HttpRequest object.
            context: Description for log messages (e.g. "list labels").

        Returns:
            The API response dict.

        Raises:
            RateLimitError: When retries are exhausted on 429 errors.
            MailboxError: On non-rate-limit API errors, including timeouts.
        """
        backoff = self._initial_backoff

        for attempt in range(self._max_retries + 1):
            try:
                return request.execute(num_retries=self._num_retries)
            except Exception as e:
                if _is_rate_limit_error(e):
                    if attempt >= self._max_retries:
                        raise RateLimitError(
                            f"Rate limited during {context} after "
                            f"{self._max_retries} retries: {e}"
                        ) from e
                    sleep_time = min(backoff, self._max_backoff)
                    jitter = random.uniform(0, sleep_time)
                    logger.warning(
                        "Rate limited during %s (attempt %d/%d), "
                        "sleeping %.2fs (backoff=%.2f + jitter=%.2f)",
                        context, attempt + 1, self._max_retries,
                        jitter, backoff, jitter,
                    )
                    time.sleep(jitter)
                    backoff = min(backoff * 2, self._max_backoff)
                else:
                    raise MailboxError(f"Failed to {context}: {e}") from e

        raise RateLimitError(f"Rate limited during {context} after {self._max_retries} retries")

    def list_candidates(
        self, since_days: int, allowlist: Sequence[str]
    ) -> list[MessageRef]:
        """Page through candidate messages, oldest first, capped at max_candidates.

        Gmail lists newest first; the result is reversed so that when two
        messages touch the same booking, the newer one is handled last.
        """
        query = build_candidate_query(since_days, allowlist, self._processed_label)
        logger.debug("Gmail query: %s", query)

        refs: list[MessageRef] = []
        page_token: str | None = None
        first_page = True

        while len(refs) < self._max_candidates:
            if not first_page and self._inter_page_delay > 0:
                time.sleep(self._inter_page_delay)
            first_page = False

            kwargs: dict[str, Any] = {
                "userId": self._user_id,
                "q": query,
                "maxResults": min(self._page_size, self._max_candidates - len(refs)),
            }
            if page_token:
                kwargs["pageToken"] = page_token

            request = self._service.users().messages().list(**kwargs)
            response = self._execute_with_retry(request, "list candidate messages")

            messages = response.get("messages", [])
            refs.extend(
                MessageRef(message_id=msg["id"], thread_id=msg.get("threadId", ""))
                for msg in messages
            )

            page_token = response.get("nextPageToken")
            if not messages or not page_token:
                break

        refs = refs[: self._max_candidates]
        refs.reverse()
        return refs

    def fetch_detail(self, ref: MessageRef) -> MessageDetail:
        """Fetch and parse one full message."""
        request = self._service.users().messages().get(
            userId=self._user_id, id=ref.message_id, format="full"
        )
        raw = self._execute_with_retry(request, f"fetch message {ref.message_id}")
        return self._parser.parse(raw)

    def download_attachment(self, ref: MessageRef, attachment_id: str) -> bytes:
        """Download and decode one attachment's bytes."""
        request = (
            self._service.users()
            .messages()
            .attachments()
            .get(userId=self._user_id, messageId=ref.message_id, id=attachment_id)
        )
        response = self._execute_with_retry(
            request, f"download attachment of {ref.message_id}"
        )
        data = response.get("data", "")
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded)

    def mark_processed(self, ref: MessageRef) -> None:
        """Add the processed label and clear UNREAD. Idempotent on the provider side."""
        label_id = self._get_processed_label_id()
        request = self._service.users().messages().modify(
            userId=self._user_id,
            id=ref.message_id,
            body={"addLabelIds": [label_id], "removeLabelIds": ["UNREAD"]},
        )
        self._execute_with_retry(request, f"mark {ref.message_id} processed")
        logger.info("Message %s marked as processed", ref.message_id)

    def _get_processed_label_id(self) -> str:
        """Find the processed label, creating it on first use."""
        if self._processed_label_id:
            return self._processed_label_id

        request = self._service.users().labels().list(userId=self._user_id)
        labels = self._execute_with_retry(request, "list labels").get("labels", [])
        for label in labels:
            if label.get("name") == self._processed_label:
                self._processed_label_id = label["id"]
                return label["id"]

        request = self._service.users().labels().create(
            userId=self._user_id,
            body={
                "name": self._processed_label,
                "labelListVisibility": "labelShow",
                "messageListVisibility": "show",
            },
        )
        created = self._execute_with_retry(request, "create processed label")
        logger.info("Created Gmail label %s (%s)", self._processed_label, created["id"])
        self._processed_label_id = created["id"]
        return created["id"]
