"""Booking Ingestor - Import tour bookings from mailbox notifications."""

from booking_ingestor.core.models import (
    Artifact,
    ArtifactKind,
    CandidateBooking,
    CycleProgress,
    ImportOutcome,
    ImportRecord,
    ImportStatus,
    MessageDetail,
    MessageRef,
)
from booking_ingestor.pipeline.ingestor import BookingIngestor

__all__ = [
    "Artifact",
    "ArtifactKind",
    "BookingIngestor",
    "CandidateBooking",
    "CycleProgress",
    "ImportOutcome",
    "ImportRecord",
    "ImportStatus",
    "MessageDetail",
    "MessageRef",
]
