"""Enumerate the processable artifacts of a fetched message."""

from __future__ import annotations

import logging
from pathlib import PurePosixPath

from booking_ingestor.core.models import Artifact, ArtifactKind, AttachmentRef, MessageDetail

logger = logging.getLogger(__name__)

BODY_TABLE_TAG = "BODY_TABLE"
BODY_TABLE_NAME = "EMAIL_BODY_TABLE"

SPREADSHEET_MIME_TYPES = frozenset({
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/vnd.ms-excel",
    "application/vnd.ms-excel.sheet.macroenabled.12",
})
SPREADSHEET_EXTENSIONS = frozenset({".xlsx", ".xlsm", ".xls"})

DOCUMENT_MIME_TYPES = frozenset({"application/pdf"})
IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".gif", ".webp", ".pdf"})


def make_discriminator(message_id: str, tag: str) -> str:
    return f"{message_id}::{tag}"


def _extension(filename: str) -> str:
    return PurePosixPath(filename.lower()).suffix


def is_spreadsheet(attachment: AttachmentRef) -> bool:
    return (
        attachment.mime_type.lower() in SPREADSHEET_MIME_TYPES
        or _extension(attachment.filename) in SPREADSHEET_EXTENSIONS
    )


def is_image_or_scan(attachment: AttachmentRef) -> bool:
    mime = attachment.mime_type.lower()
    return (
        mime.startswith("image/")
        or mime in DOCUMENT_MIME_TYPES
        or _extension(attachment.filename) in IMAGE_EXTENSIONS
    )


class ContentClassifier:
    """Turn a MessageDetail into an ordered list of artifacts.

    Order: the inline body table (if any) first, then spreadsheets, then
    images/scans. Inline images (logos, signatures) are never artifacts.
    """

    def __init__(self, body_markers: tuple[str, ...] = ("reisename", "pax")) -> None:
        self._body_markers = tuple(m.lower() for m in body_markers)

    def classify(self, detail: MessageDetail) -> list[Artifact]:
        artifacts: list[Artifact] = []

        if self.has_body_table(detail.html):
            artifacts.append(
                Artifact(
                    discriminator=make_discriminator(detail.message_id, BODY_TABLE_TAG),
                    kind=ArtifactKind.INLINE_TABLE,
                    name=BODY_TABLE_NAME,
                    mime_type="text/html",
                )
            )

        spreadsheets: list[Artifact] = []
        scans: list[Artifact] = []
        for attachment in detail.attachments:
            if is_spreadsheet(attachment):
                spreadsheets.append(self._attachment_artifact(detail, attachment, ArtifactKind.SPREADSHEET))
            elif attachment.inline:
                logger.debug(
                    "Skipping inline part %s of %s", attachment.filename, detail.message_id
                )
            elif is_image_or_scan(attachment):
                scans.append(self._attachment_artifact(detail, attachment, ArtifactKind.IMAGE_OR_SCAN))
            else:
                logger.debug(
                    "Unrecognized attachment %s (%s) in %s",
                    attachment.filename, attachment.mime_type, detail.message_id,
                )

        return artifacts + spreadsheets + scans

    def has_body_table(self, html: str | None) -> bool:
        if not html:
            return False
        lowered = html.lower()
        return all(marker in lowered for marker in self._body_markers)

    @staticmethod
    def _attachment_artifact(
        detail: MessageDetail, attachment: AttachmentRef, kind: ArtifactKind
    ) -> Artifact:
        return Artifact(
            discriminator=make_discriminator(detail.message_id, attachment.filename),
            kind=kind,
            name=attachment.filename,
            mime_type=attachment.mime_type,
            attachment=attachment,
        )
