"""Shared fixtures for Booking Ingestor tests."""

from __future__ import annotations

import base64
import json
import threading
from collections.abc import Iterator, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from booking_ingestor.core.models import (
    ArtifactKind,
    ArtifactMetadata,
    MessageDetail,
    MessageRef,
)
from booking_ingestor.core.parser import GmailParser
from booking_ingestor.storage.artifact_store import ArtifactStore
from booking_ingestor.storage.bookings import BookingStore
from booking_ingestor.storage.tracker import ImportTracker

BODY_TABLE_HTML = """<html><body>
<p>Guten Tag, anbei die aktuellen Buchungszahlen.</p>
<table>
  <tr><th>Reise</th><th>Reisename</th><th>Von</th><th>Bis</th><th>Pax</th></tr>
  <tr><td>26CO-USB07</td><td>Usbekistan ComfortPlus</td><td>15.03.2026</td><td>28.03.2026</td><td>12</td></tr>
</table>
</body></html>"""


def b64url(data: bytes | str) -> str:
    """Encode like the Gmail API does (base64url, no padding)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def make_raw_message(
    message_id: str,
    *,
    sender: str = "Reisebuero <info@world-insight.de>",
    subject: str = "Buchungen 2026",
    date: str = "Mon, 12 Jan 2026 09:30:00 +0100",
    html: str | None = None,
    attachments: Sequence[dict[str, Any]] = (),
) -> dict[str, Any]:
    """Build a Gmail API ``format=full`` message dict.

    Each attachment dict needs ``filename``, ``mimeType`` and ``attachmentId``;
    ``headers`` is optional.
    """
    parts: list[dict[str, Any]] = []
    if html is not None:
        parts.append({
            "partId": "0",
            "mimeType": "text/html",
            "filename": "",
            "headers": [{"name": "Content-Type", "value": "text/html; charset=UTF-8"}],
            "body": {"size": len(html), "data": b64url(html)},
        })
    for i, att in enumerate(attachments, start=1):
        parts.append({
            "partId": str(i),
            "mimeType": att["mimeType"],
            "filename": att["filename"],
            "headers": att.get(
                "headers",
                [{"name": "Content-Disposition", "value": f'attachment; filename="{att["filename"]}"'}],
            ),
            "body": {"size": att.get("size", 100), "attachmentId": att["attachmentId"]},
        })

    return {
        "id": message_id,
        "threadId": f"thread_{message_id}",
        "labelIds": ["INBOX", "UNREAD"],
        "payload": {
            "mimeType": "multipart/mixed",
            "filename": "",
            "headers": [
                {"name": "From", "value": sender},
                {"name": "To", "value": "bookings@example.com"},
                {"name": "Subject", "value": subject},
                {"name": "Date", "value": date},
            ],
            "body": {"size": 0},
            "parts": parts,
        },
    }


class FakeMailbox:
    """In-memory MailboxClient backed by raw Gmail message dicts."""

    def __init__(self) -> None:
        self.messages: dict[str, dict[str, Any]] = {}
        self.attachments: dict[str, bytes] = {}
        self.processed: list[str] = []
        self.list_calls: list[tuple[int, list[str]]] = []
        self.list_error: Exception | None = None
        self._parser = GmailParser()

    def add(self, raw: dict[str, Any], attachments: dict[str, bytes] | None = None) -> None:
        self.messages[raw["id"]] = raw
        self.attachments.update(attachments or {})

    def list_candidates(self, since_days: int, allowlist: Sequence[str]) -> list[MessageRef]:
        self.list_calls.append((since_days, list(allowlist)))
        if self.list_error is not None:
            raise self.list_error
        return [
            MessageRef(message_id=mid)
            for mid in self.messages
            if mid not in self.processed
        ]

    def fetch_detail(self, ref: MessageRef) -> MessageDetail:
        return self._parser.parse(self.messages[ref.message_id])

    def download_attachment(self, ref: MessageRef, attachment_id: str) -> bytes:
        return self.attachments[attachment_id]

    def mark_processed(self, ref: MessageRef) -> None:
        self.processed.append(ref.message_id)


class FakeExtractionService:
    """ExtractionService returning canned JSON and recording every call."""

    def __init__(self, response: dict[str, Any] | str | None = None) -> None:
        self.response = response if response is not None else {"bookings": []}
        self.calls: list[tuple[str, Any]] = []
        self._lock = threading.Lock()

    def _answer(self) -> str:
        if isinstance(self.response, str):
            return self.response
        return json.dumps(self.response)

    def request_text(self, text: str) -> str:
        with self._lock:
            self.calls.append(("text", text))
        return self._answer()

    def request_image(self, data: bytes, media_type: str) -> str:
        with self._lock:
            self.calls.append(("image", media_type))
        return self._answer()


@pytest.fixture
def tmp_db_path(tmp_path: Path) -> Path:
    """Temporary database path for tests."""
    return tmp_path / "test.db"


@pytest.fixture
def tracker(tmp_db_path: Path) -> Iterator[ImportTracker]:
    """Connected ImportTracker on a temporary database."""
    with ImportTracker(tmp_db_path) as t:
        yield t


@pytest.fixture
def booking_store(tmp_path: Path) -> Iterator[BookingStore]:
    """Connected BookingStore; the standard tour types are seeded on connect."""
    with BookingStore(tmp_path / "bookings.db") as store:
        yield store


@pytest.fixture
def artifact_store(tmp_path: Path) -> ArtifactStore:
    """ArtifactStore rooted in a temporary directory."""
    return ArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def fake_mailbox() -> FakeMailbox:
    return FakeMailbox()


@pytest.fixture
def fake_service() -> FakeExtractionService:
    return FakeExtractionService()


@pytest.fixture
def make_metadata(artifact_store: ArtifactStore):
    """Factory staging bytes and returning ArtifactMetadata pointing at them."""

    def _make(
        discriminator: str,
        data: bytes = b"<html>Reisename Pax</html>",
        kind: ArtifactKind = ArtifactKind.INLINE_TABLE,
        name: str = "EMAIL_BODY_TABLE",
        mime_type: str = "text/html",
    ) -> ArtifactMetadata:
        location = artifact_store.stage(discriminator, data, name)
        return ArtifactMetadata(
            source_subject="Buchungen 2026",
            source_sender="info@world-insight.de",
            source_date=datetime(2026, 1, 12, 9, 30, tzinfo=UTC),
            artifact_kind=kind,
            artifact_name=name,
            artifact_location=location,
            mime_type=mime_type,
        )

    return _make


@pytest.fixture
def body_table_html() -> str:
    return BODY_TABLE_HTML


@pytest.fixture
def raw_message():
    """Factory for raw Gmail API message dicts (see make_raw_message)."""
    return make_raw_message
