"""Frozen dataclasses and enums for the Booking Ingestor domain model."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum


class ArtifactKind(str, Enum):
    INLINE_TABLE = "INLINE_TABLE"
    SPREADSHEET = "SPREADSHEET"
    IMAGE_OR_SCAN = "IMAGE_OR_SCAN"


class ImportStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    MANUAL_REVIEW = "MANUAL_REVIEW"

    @property
    def is_terminal(self) -> bool:
        return self in (ImportStatus.SUCCESS, ImportStatus.MANUAL_REVIEW)


class SkipReason(str, Enum):
    UNKNOWN_CLASSIFICATION = "UNKNOWN_CLASSIFICATION"
    STORE_CONFLICT = "STORE_CONFLICT"
    NO_MATCHING_BOOKING = "NO_MATCHING_BOOKING"


@dataclass(frozen=True)
class MessageRef:
    """Lightweight message reference from the mailbox list API."""

    message_id: str
    thread_id: str = ""


@dataclass(frozen=True)
class AttachmentRef:
    """Attachment descriptor from a fetched message."""

    filename: str
    mime_type: str
    attachment_id: str
    size: int = 0
    inline: bool = False


@dataclass(frozen=True)
class MessageDetail:
    """Headers, best-effort HTML body, and flat attachment list of one message."""

    message_id: str
    subject: str
    sender: str
    date: datetime
    html: str | None = None
    attachments: tuple[AttachmentRef, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Artifact:
    """One processable piece of content inside a message."""

    discriminator: str
    kind: ArtifactKind
    name: str
    mime_type: str
    attachment: AttachmentRef | None = None


@dataclass(frozen=True)
class ArtifactMetadata:
    """Provenance and staging details captured when an import record is created."""

    source_subject: str
    source_sender: str
    source_date: datetime
    artifact_kind: ArtifactKind
    artifact_name: str
    artifact_location: str
    mime_type: str = ""


@dataclass(frozen=True)
class SkippedCandidate:
    key: str
    reason: SkipReason


@dataclass(frozen=True)
class ImportRecord:
    """One row of the idempotency store: a single artifact ever seen."""

    discriminator: str
    source_subject: str
    source_sender: str
    source_date: datetime
    artifact_kind: ArtifactKind
    artifact_name: str
    artifact_location: str
    mime_type: str
    status: ImportStatus
    retry_count: int = 0
    error_message: str | None = None
    result_refs: tuple[str, ...] = field(default_factory=tuple)
    skipped: tuple[SkippedCandidate, ...] = field(default_factory=tuple)
    candidate_count: int = 0
    processed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def message_id(self) -> str:
        return self.discriminator.split("::", 1)[0]


@dataclass(frozen=True)
class CandidateBooking:
    """A booking row as extracted from an artifact. Only drives reconciliation."""

    booking_code: str
    source: ArtifactKind
    trip_name: str | None = None
    departure_date: date | None = None
    arrival_date: date | None = None
    end_date: date | None = None
    pax: int | None = None
    pax_uzbekistan: int | None = None
    pax_turkmenistan: int | None = None
    flight_outbound: str | None = None
    flight_return: str | None = None

    @property
    def transport_refs(self) -> str | None:
        refs = [f for f in (self.flight_outbound, self.flight_return) if f]
        return " / ".join(refs) if refs else None


@dataclass(frozen=True)
class Booking:
    """Booking row as stored by the back office."""

    id: int
    booking_number: str
    year: int
    tour_type_id: int
    status: str
    departure_date: date | None = None
    arrival_date: date | None = None
    end_date: date | None = None
    avia: str | None = None
    pax: int = 0
    pax_uzbekistan: int = 0
    pax_turkmenistan: int = 0
    pax_source: str | None = None
    rooms_dbl: int = 0
    rooms_twn: int = 0
    rooms_sngl: int = 0
    rooms_total: int = 0


@dataclass
class ReconcileSummary:
    """Per-batch result of reconciliation."""

    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[SkippedCandidate] = field(default_factory=list)
    refs: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ImportOutcome:
    """What one processing attempt did; also the notification payload."""

    discriminator: str
    status: ImportStatus
    attempted: bool
    source_subject: str = ""
    source_sender: str = ""
    created: tuple[str, ...] = field(default_factory=tuple)
    updated: tuple[str, ...] = field(default_factory=tuple)
    skipped: tuple[SkippedCandidate, ...] = field(default_factory=tuple)
    retry_count: int = 0
    error_message: str | None = None


@dataclass
class CycleProgress:
    """Mutable counters for one poll cycle."""

    messages_seen: int = 0
    messages_skipped: int = 0
    artifacts_created: int = 0
    artifacts_dispatched: int = 0
    retries_dispatched: int = 0
    error: str | None = None
