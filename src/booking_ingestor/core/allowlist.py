"""Sender allowlist: exact addresses or ``@domain`` entries."""

from __future__ import annotations

from collections.abc import Iterable
from email.utils import parseaddr


def normalize_entries(entries: Iterable[str]) -> list[str]:
    """Strip and lower-case entries, dropping blanks and duplicates (order kept)."""
    seen: list[str] = []
    for entry in entries:
        cleaned = entry.strip().lower()
        if cleaned and cleaned not in seen:
            seen.append(cleaned)
    return seen


def sender_address(from_header: str) -> str:
    """Extract the bare address from a From header like ``Name <a@b.de>``."""
    _, address = parseaddr(from_header)
    return (address or from_header).strip().lower()


def is_sender_allowed(from_header: str, allowlist: Iterable[str]) -> bool:
    """Return True if the sender matches an exact address or an ``@domain`` entry.

    Domain entries match the whole domain portion only: ``@example.de`` does
    not admit ``someone@mail.example.de``.
    """
    address = sender_address(from_header)
    if "@" not in address:
        return False
    domain = address.rsplit("@", 1)[1]

    for entry in normalize_entries(allowlist):
        if entry.startswith("@"):
            if domain == entry[1:]:
                return True
        elif address == entry:
            return True
    return False
