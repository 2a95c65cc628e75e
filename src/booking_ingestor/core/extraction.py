"""Extraction adapter: artifact bytes in, a validated candidate batch (or a typed failure) out.

The result is a tagged union:

- ``ValidBatch``: at least one candidate, every candidate passed validation.
- ``SchemaError``: the payload was unusable. ``retryable`` says whether a
  second attempt could plausibly succeed (malformed JSON does; an explicit
  "not a booking table" verdict does not).
- ``EmptyResult``: the payload was well-formed but listed no bookings.

Transport failures and timeouts are raised as ``ExtractionError`` instead.
"""

from __future__ import annotations

import base64
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol

import anthropic
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from booking_ingestor.core.converter import BodyTableConverter
from booking_ingestor.core.exceptions import ExtractionError
from booking_ingestor.core.models import ArtifactKind, CandidateBooking
from booking_ingestor.core.spreadsheet import SpreadsheetParser

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_VERSIONS = frozenset({1})
DATE_FORMATS = ("%d.%m.%Y", "%Y-%m-%d", "%d.%m.%y")

# Kinds whose rows may legitimately lack a departure date (summary lists)
DEPARTURE_OPTIONAL = frozenset({ArtifactKind.INLINE_TABLE, ArtifactKind.SPREADSHEET})

IMAGE_MEDIA_TYPES = {
    "image/png": "image/png",
    "image/jpeg": "image/jpeg",
    "image/jpg": "image/jpeg",
    "image/gif": "image/gif",
    "image/webp": "image/webp",
}
EXTENSION_MEDIA_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".pdf": "application/pdf",
}

EXTRACTION_PROMPT = """Parse this booking schedule into JSON.

Return exactly this structure:
{
  "schemaVersion": 1,
  "bookings": [
    {
      "bookingCode": "26CO-USB01",
      "reisename": "Usbekistan ComfortPlus",
      "departureDate": "15.03.2026",
      "arrivalDate": "16.03.2026",
      "returnArrivalDate": "28.03.2026",
      "pax": 12,
      "flightNumberDEP": "TK368",
      "flightNumberRETURN": "TK369"
    }
  ]
}

Rules:
- bookingCode comes from the "Reise" column and is required for every row;
  when the table has no such column, use the Reisename as bookingCode too
- departureDate is the DEP FRA date, arrivalDate the ARR TAS date,
  returnArrivalDate the ARR FRA date
- Flight numbers come from the DEP FRA / ARR FRA column headers
- Keep dates in DD.MM.YYYY format
- Omit fields that are not present; never guess values
- Extract ALL rows from the table
- Return valid JSON only, no markdown code blocks
- If this is not a booking table, return: {"error": "Not a booking table"}"""


@dataclass(frozen=True)
class ValidBatch:
    candidates: tuple[CandidateBooking, ...]


@dataclass(frozen=True)
class SchemaError:
    message: str
    retryable: bool = True


@dataclass(frozen=True)
class EmptyResult:
    reason: str = "no bookings in payload"


ExtractionResult = ValidBatch | SchemaError | EmptyResult


def parse_date(value: Any) -> date | None:
    """Accept ``DD.MM.YYYY``, ISO ``YYYY-MM-DD``, or date/datetime objects."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognized date {text!r}")


class CandidatePayload(BaseModel):
    """One booking row on the wire."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    booking_code: str = Field(alias="bookingCode")
    trip_name: str | None = Field(default=None, alias="reisename")
    departure_date: date | None = Field(default=None, alias="departureDate")
    arrival_date: date | None = Field(default=None, alias="arrivalDate")
    end_date: date | None = Field(default=None, alias="returnArrivalDate")
    pax: int | None = Field(default=None, ge=0)
    pax_uzbekistan: int | None = Field(default=None, ge=0, alias="paxUzbekistan")
    pax_turkmenistan: int | None = Field(default=None, ge=0, alias="paxTurkmenistan")
    flight_outbound: str | None = Field(default=None, alias="flightNumberDEP")
    flight_return: str | None = Field(default=None, alias="flightNumberRETURN")

    @field_validator("booking_code", mode="before")
    @classmethod
    def _require_code(cls, value: Any) -> str:
        text = "" if value is None else str(value).strip()
        if not text:
            raise ValueError("bookingCode is required")
        return text

    @field_validator("departure_date", "arrival_date", "end_date", mode="before")
    @classmethod
    def _coerce_date(cls, value: Any) -> date | None:
        return parse_date(value)

    @field_validator("trip_name", "flight_outbound", "flight_return", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None

    @field_validator("pax", "pax_uzbekistan", "pax_turkmenistan", mode="before")
    @classmethod
    def _blank_count(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def to_candidate(self, source: ArtifactKind) -> CandidateBooking:
        return CandidateBooking(
            booking_code=self.booking_code,
            source=source,
            trip_name=self.trip_name,
            departure_date=self.departure_date,
            arrival_date=self.arrival_date,
            end_date=self.end_date,
            pax=self.pax,
            pax_uzbekistan=self.pax_uzbekistan,
            pax_turkmenistan=self.pax_turkmenistan,
            flight_outbound=self.flight_outbound,
            flight_return=self.flight_return,
        )


class BookingsPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    schema_version: int = Field(default=1, alias="schemaVersion")
    bookings: list[CandidatePayload] = Field(default_factory=list)


def _summarize_validation(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg', 'invalid value')}"


def parse_response_text(text: str) -> Any:
    """Decode the service's JSON answer, tolerating markdown code fences.

    Raises:
        ValueError: If no JSON document can be recovered.
    """
    cleaned = text.strip()
    fenced = re.search(r"```(?:json)?\s*(\{[\s\S]*\})\s*```", cleaned)
    if fenced:
        cleaned = fenced.group(1)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    match = re.search(r"\{[\s\S]*\}", cleaned)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass
    raise ValueError("response is not valid JSON")


def decode_payload(data: Any, kind: ArtifactKind) -> ExtractionResult:
    """Validate a decoded payload into one of the three result variants."""
    if not isinstance(data, dict):
        return SchemaError("payload is not a JSON object")

    if data.get("error"):
        return SchemaError(f"Extraction refused: {data['error']}", retryable=False)

    if "bookings" not in data:
        return SchemaError("payload has no bookings array")

    version = data.get("schemaVersion", 1)
    if version not in SUPPORTED_SCHEMA_VERSIONS:
        return SchemaError(f"unsupported schemaVersion {version!r}")

    try:
        payload = BookingsPayload.model_validate(data)
    except ValidationError as e:
        return SchemaError(f"invalid bookings payload: {_summarize_validation(e)}")

    if not payload.bookings:
        return EmptyResult()

    if kind not in DEPARTURE_OPTIONAL:
        for booking in payload.bookings:
            if booking.departure_date is None:
                return SchemaError(f"Missing departureDate for booking {booking.booking_code}")

    return ValidBatch(tuple(b.to_candidate(kind) for b in payload.bookings))


def media_type_for(mime_type: str, name: str = "") -> str | None:
    """Resolve the media type sent to the extraction service, or None if unsupported."""
    mime = mime_type.lower()
    if mime in IMAGE_MEDIA_TYPES:
        return IMAGE_MEDIA_TYPES[mime]
    if mime == "application/pdf":
        return mime
    lowered = name.lower()
    for ext, media_type in EXTENSION_MEDIA_TYPES.items():
        if lowered.endswith(ext):
            return media_type
    return None


class ExtractionService(Protocol):
    """Remote service turning a table (text or image) into a JSON answer."""

    def request_text(self, text: str) -> str: ...

    def request_image(self, data: bytes, media_type: str) -> str: ...


class AnthropicExtractionService:
    """ExtractionService backed by the Anthropic Messages API."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-3-5-sonnet-20241022",
        max_tokens: int = 4096,
        timeout: float = 120.0,
        max_retries: int = 2,
    ) -> None:
        self._client = anthropic.Anthropic(api_key=api_key, timeout=timeout, max_retries=max_retries)
        self._model = model
        self._max_tokens = max_tokens

    def request_text(self, text: str) -> str:
        return self._create([
            {"type": "text", "text": f"{EXTRACTION_PROMPT}\n\nTable:\n{text}"},
        ])

    def request_image(self, data: bytes, media_type: str) -> str:
        block_type = "document" if media_type == "application/pdf" else "image"
        encoded = base64.standard_b64encode(data).decode("ascii")
        return self._create([
            {
                "type": block_type,
                "source": {"type": "base64", "media_type": media_type, "data": encoded},
            },
            {"type": "text", "text": EXTRACTION_PROMPT},
        ])

    def _create(self, content: list[dict[str, Any]]) -> str:
        try:
            message = self._client.messages.create(
                model=self._model,
                max_tokens=self._max_tokens,
                temperature=0,
                messages=[{"role": "user", "content": content}],
            )
        except anthropic.BadRequestError as e:
            raise ExtractionError(f"Extraction request rejected: {e}", retryable=False) from e
        except anthropic.APIError as e:
            raise ExtractionError(f"Extraction service call failed: {e}") from e

        return "".join(
            block.text for block in message.content if getattr(block, "type", "") == "text"
        )


@dataclass
class ExtractionAdapter:
    """Route an artifact to the right extractor and validate what comes back."""

    service: ExtractionService | None = None
    converter: BodyTableConverter = field(default_factory=BodyTableConverter)
    spreadsheets: SpreadsheetParser = field(default_factory=SpreadsheetParser)

    def extract(
        self, raw: bytes, kind: ArtifactKind, mime_type: str = "", name: str = ""
    ) -> ExtractionResult:
        """Extract candidates from staged artifact bytes.

        Raises:
            ExtractionError: Transport failure or timeout talking to the service.
        """
        if kind == ArtifactKind.SPREADSHEET:
            try:
                rows = self.spreadsheets.parse(raw)
            except ExtractionError as e:
                return SchemaError(str(e), retryable=e.retryable)
            result = decode_payload({"bookings": rows}, kind)
            if isinstance(result, SchemaError):
                # Local parsing is deterministic; a second attempt reads the same bytes.
                return SchemaError(result.message, retryable=False)
            return result

        if self.service is None:
            return SchemaError("No extraction service configured", retryable=False)

        if kind == ArtifactKind.INLINE_TABLE:
            try:
                text = self.converter.convert(raw.decode("utf-8", errors="replace"))
            except ExtractionError as e:
                return SchemaError(str(e), retryable=e.retryable)
            response = self.service.request_text(text)
        else:
            media_type = media_type_for(mime_type, name)
            if media_type is None:
                return SchemaError(f"Unsupported media type {mime_type or name!r}", retryable=False)
            response = self.service.request_image(raw, media_type)

        try:
            data = parse_response_text(response)
        except ValueError as e:
            logger.warning("Unparseable extraction response for %s: %s", name or kind.value, e)
            return SchemaError(str(e))

        return decode_payload(data, kind)
