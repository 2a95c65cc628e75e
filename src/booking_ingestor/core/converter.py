"""HTML body to plain text for the extraction service, using trafilatura with a fallback."""

from __future__ import annotations

import logging

import trafilatura
from bs4 import BeautifulSoup

from booking_ingestor.core.exceptions import ExtractionError

logger = logging.getLogger(__name__)


class BodyTableConverter:
    """Render an email body with a booking table into text that keeps the table rows."""

    def __init__(self, markers: tuple[str, ...] = ("reisename", "pax")) -> None:
        self._markers = tuple(m.lower() for m in markers)

    def convert(self, html: str) -> str:
        """Convert the HTML body to text.

        Strategy:
        1. trafilatura with tables included (favor_recall=True for email layouts).
        2. If trafilatura returns nothing, or drops the table (a marker is
           missing from its output), parse the HTML with BeautifulSoup so each
           table row becomes one ``|``-separated line.

        Raises:
            ExtractionError: If no text can be recovered (not retryable).
        """
        result: str | None = None

        try:
            result = trafilatura.extract(
                html,
                output_format="txt",
                favor_recall=True,
                include_tables=True,
                include_links=False,
            )
        except Exception as e:
            logger.warning("Trafilatura extraction failed: %s", e)
            result = None

        if not result or not self._keeps_markers(result):
            logger.debug("Falling back to table walk for body conversion")
            result = self._table_text(html)

        if not result.strip():
            raise ExtractionError("Email body has no readable content", retryable=False)

        return result

    def _keeps_markers(self, text: str) -> bool:
        lowered = text.lower()
        return all(marker in lowered for marker in self._markers)

    @staticmethod
    def _table_text(html: str) -> str:
        soup = BeautifulSoup(html, "html.parser")
        for tag in soup(["script", "style", "head"]):
            tag.decompose()

        # Innermost rows first so nested tables collapse into their parent cell
        for row in reversed(soup.find_all("tr")):
            cells = [cell.get_text(" ", strip=True) for cell in row.find_all(["td", "th"])]
            row.replace_with(" | ".join(cells) + "\n")

        text = soup.get_text(separator="\n").replace("\xa0", " ")
        lines = [line.strip(" |\t") for line in text.splitlines()]
        return "\n".join(line for line in lines if line)
