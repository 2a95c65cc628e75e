"""Gmail message parser: MIME tree walking, base64url decoding, header extraction."""

from __future__ import annotations

import base64
import logging
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import Any

from booking_ingestor.core.exceptions import ParseError
from booking_ingestor.core.models import AttachmentRef, MessageDetail

logger = logging.getLogger(__name__)


class GmailParser:
    """Parses raw Gmail API message dicts into MessageDetail objects."""

    def parse(self, raw_message: dict[str, Any]) -> MessageDetail:
        """Parse a raw Gmail API message dict (format=full).

        Raises:
            ParseError: If the message structure is invalid.
        """
        try:
            message_id = raw_message["id"]
            payload = raw_message.get("payload", {})
            headers = self._extract_headers(payload)

            return MessageDetail(
                message_id=message_id,
                subject=headers.get("subject") or "(no subject)",
                sender=headers.get("from", ""),
                date=self._parse_date(headers.get("date", "")),
                html=self._extract_html(payload),
                attachments=tuple(self._walk_attachments(payload)),
            )
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(f"Failed to parse message {raw_message.get('id', '?')}: {e}") from e

    @staticmethod
    def _extract_headers(part: dict[str, Any]) -> dict[str, str]:
        headers: dict[str, str] = {}
        for h in part.get("headers", []):
            name = h.get("name", "").lower()
            if name not in headers:
                headers[name] = h.get("value", "")
        return headers

    def _extract_html(self, payload: dict[str, Any]) -> str | None:
        """Return the first text/html body that is not an attachment."""
        mime_type = payload.get("mimeType", "")

        if mime_type == "text/html" and not payload.get("filename"):
            data = payload.get("body", {}).get("data")
            return self._decode_body(data) if data else None

        if mime_type.startswith("multipart/"):
            for sub_part in payload.get("parts", []):
                if sub_part.get("filename"):
                    continue
                html = self._extract_html(sub_part)
                if html:
                    return html

        return None

    def _walk_attachments(self, part: dict[str, Any]) -> list[AttachmentRef]:
        """Recursively collect every part that carries a downloadable attachment."""
        found: list[AttachmentRef] = []
        body = part.get("body", {})
        filename = part.get("filename", "")

        if filename and body.get("attachmentId"):
            headers = self._extract_headers(part)
            disposition = headers.get("content-disposition", "").lower()
            found.append(
                AttachmentRef(
                    filename=filename,
                    mime_type=part.get("mimeType", "application/octet-stream"),
                    attachment_id=body["attachmentId"],
                    size=int(body.get("size", 0) or 0),
                    inline=disposition.startswith("inline") or (
                        not disposition.startswith("attachment") and "content-id" in headers
                    ),
                )
            )

        for sub_part in part.get("parts", []):
            found.extend(self._walk_attachments(sub_part))

        return found

    @staticmethod
    def _decode_body(data: str) -> str:
        """Decode base64url-encoded body data."""
        # Gmail uses base64url encoding (RFC 4648 §5)
        padded = data + "=" * (4 - len(data) % 4) if len(data) % 4 else data
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")

    @staticmethod
    def _parse_date(date_str: str) -> datetime:
        """Parse an RFC 2822 date string, falling back to the current time."""
        if not date_str:
            return datetime.now(UTC)
        try:
            return parsedate_to_datetime(date_str)
        except Exception:
            logger.warning("Failed to parse date: %s", date_str)
            return datetime.now(UTC)
