"""Reconcile extracted candidates into the booking store by business key and year."""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable

from booking_ingestor.core.exceptions import StoreConflictError
from booking_ingestor.core.models import (
    ArtifactKind,
    CandidateBooking,
    ReconcileSummary,
    SkippedCandidate,
    SkipReason,
)
from booking_ingestor.storage.bookings import BookingStore

logger = logging.getLogger(__name__)

CODE_PREFIX = re.compile(r"^(\d{2})([A-Z]+)")

PAX_SOURCES = {
    ArtifactKind.INLINE_TABLE: "EMAIL_TABLE",
    ArtifactKind.SPREADSHEET: "EXCEL",
    ArtifactKind.IMAGE_OR_SCAN: "SCREENSHOT",
}

_UZ = ("usbekistan", "uzbekistan")
_TM = ("turkmenistan", "turkmen")
_TJ = ("tadschikistan", "tajikistan")
_KZ = ("kasachstan", "kazakhstan")
_KG = ("kirgistan", "kyrgyzstan")
_COMFORT = ("comfortplus", "comfort plus")


def _mentions(text: str, words: tuple[str, ...]) -> bool:
    return any(word in text for word in words)


def classify_trip_name(trip_name: str) -> tuple[str, str] | None:
    """Map a free-text trip name to ``(tour_code, pax_field)``.

    >>> classify_trip_name("Usbekistan ComfortPlus")
    ('CO', 'pax_uzbekistan')
    >>> classify_trip_name("Usbekistan mit Verlängerung Turkmenistan")
    ('ER', 'pax_turkmenistan')
    """
    lower = trip_name.lower()
    if all(_mentions(lower, w) for w in (_TM, _UZ, _TJ, _KZ, _KG)):
        return "ZA", "pax_uzbekistan"
    if all(_mentions(lower, w) for w in (_KZ, _KG, _UZ)):
        return "KAS", "pax_uzbekistan"
    if _mentions(lower, _COMFORT) and _mentions(lower, _UZ):
        return "CO", "pax_uzbekistan"
    if _mentions(lower, _UZ) and _mentions(lower, _TM):
        return "ER", "pax_turkmenistan"
    if _mentions(lower, _UZ):
        return "ER", "pax_uzbekistan"
    return None


def classification_code(candidate: CandidateBooking) -> tuple[str, str | None] | None:
    """Tour-type code from the booking-code prefix, else from the trip name.

    The pax field is only set for trip-name matches; those rows carry no
    business key of their own.
    """
    match = CODE_PREFIX.match(candidate.booking_code.upper())
    if match:
        return match.group(2), None
    return classify_trip_name(candidate.trip_name or candidate.booking_code)


def booking_year(candidate: CandidateBooking, default_year: int) -> int:
    match = CODE_PREFIX.match(candidate.booking_code.upper())
    if match:
        return 2000 + int(match.group(1))
    if candidate.departure_date is not None:
        return candidate.departure_date.year
    return default_year


class ReconciliationEngine:
    """Upsert candidate bookings; never deletes, never merges business keys.

    Rows with a coded business key are created or patched by
    ``(booking_number, year)``. Rows known only by trip name never create a
    booking: they patch the pax of an existing booking of that tour type
    departing within ``match_window_days`` of the row's date.
    """

    def __init__(self, bookings: BookingStore, *, match_window_days: int = 2) -> None:
        self._bookings = bookings
        self._match_window_days = match_window_days

    def reconcile(
        self, candidates: Iterable[CandidateBooking], default_year: int
    ) -> ReconcileSummary:
        summary = ReconcileSummary()

        for candidate in candidates:
            key = candidate.booking_code
            classified = classification_code(candidate)
            tour_type_id = (
                self._bookings.find_tour_type_id(classified[0]) if classified else None
            )
            if tour_type_id is None:
                logger.warning(
                    "Skipping %s: no known tour type (%s)",
                    key, classified[0] if classified else "unclassified",
                )
                summary.skipped.append(SkippedCandidate(key, SkipReason.UNKNOWN_CLASSIFICATION))
                continue

            pax_field = classified[1]
            if pax_field is not None:
                self._patch_matching(candidate, tour_type_id, pax_field, summary)
                continue

            year = booking_year(candidate, default_year)
            try:
                created, _ = self._bookings.upsert_booking(
                    key, year, tour_type_id, **self._fields_for(candidate)
                )
            except StoreConflictError as e:
                logger.error("Skipping %s/%s: %s", key, year, e)
                summary.skipped.append(SkippedCandidate(key, SkipReason.STORE_CONFLICT))
                continue

            self._record(summary, key, created)

        logger.info(
            "Reconciled batch: %d created, %d updated, %d skipped",
            len(summary.created), len(summary.updated), len(summary.skipped),
        )
        return summary

    def _patch_matching(
        self,
        candidate: CandidateBooking,
        tour_type_id: int,
        pax_field: str,
        summary: ReconcileSummary,
    ) -> None:
        """Route a trip-name row's pax to the country field of the matching booking."""
        key = candidate.booking_code
        booking = None
        if candidate.departure_date is not None:
            booking = self._bookings.find_booking_near(
                tour_type_id, candidate.departure_date, self._match_window_days
            )
        if booking is None:
            logger.warning(
                "Skipping %s: no booking of that tour type departs near %s",
                key, candidate.departure_date,
            )
            summary.skipped.append(SkippedCandidate(key, SkipReason.NO_MATCHING_BOOKING))
            return

        pax = candidate.pax
        if pax is None:
            pax = getattr(candidate, pax_field)
        fields = {}
        if pax is not None:
            fields = {pax_field: pax, "pax_source": PAX_SOURCES[candidate.source]}

        try:
            self._bookings.upsert_booking(
                booking.booking_number, booking.year, booking.tour_type_id, **fields
            )
        except StoreConflictError as e:
            logger.error("Skipping %s (%s): %s", key, booking.booking_number, e)
            summary.skipped.append(SkippedCandidate(key, SkipReason.STORE_CONFLICT))
            return

        logger.debug("Trip %r matched booking %s", key, booking.booking_number)
        self._record(summary, booking.booking_number, created=False)

    @staticmethod
    def _record(summary: ReconcileSummary, key: str, created: bool) -> None:
        (summary.created if created else summary.updated).append(key)
        if key not in summary.refs:
            summary.refs.append(key)

    @staticmethod
    def _fields_for(candidate: CandidateBooking) -> dict:
        has_pax = any(
            v is not None
            for v in (candidate.pax, candidate.pax_uzbekistan, candidate.pax_turkmenistan)
        )
        return {
            "departure_date": candidate.departure_date,
            "arrival_date": candidate.arrival_date,
            "end_date": candidate.end_date,
            "avia": candidate.transport_refs,
            "pax": candidate.pax,
            "pax_uzbekistan": candidate.pax_uzbekistan,
            "pax_turkmenistan": candidate.pax_turkmenistan,
            "pax_source": PAX_SOURCES[candidate.source] if has_pax else None,
        }
