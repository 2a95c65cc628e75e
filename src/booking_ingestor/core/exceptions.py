"""Custom exceptions for the Booking Ingestor."""


class BookingIngestorError(Exception):
    """Base exception for all Booking Ingestor errors."""


class AuthenticationError(BookingIngestorError):
    """Failed to authenticate with the Gmail API."""


class MailboxError(BookingIngestorError):
    """A mailbox provider call failed (network, auth, API error)."""


class RateLimitError(MailboxError):
    """Gmail API rate limit exceeded."""


class ParseError(BookingIngestorError):
    """Failed to parse email MIME content."""


class ExtractionError(BookingIngestorError):
    """The extraction service or a local parser could not produce bookings.

    ``retryable`` is False when repeating the attempt cannot succeed
    (explicit error payload, unreadable file).
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class StoreConflictError(BookingIngestorError):
    """A booking store write was rejected."""
