"""Best-effort notifications about import outcomes."""

from __future__ import annotations

import html
import logging
import smtplib
from datetime import UTC, datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Protocol

from booking_ingestor.core.models import ImportOutcome, ImportStatus

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, outcome: ImportOutcome) -> None: ...


def notify_safely(notifier: Notifier | None, outcome: ImportOutcome) -> None:
    """Deliver a notification; failures are logged and never propagate."""
    if notifier is None:
        return
    try:
        notifier.notify(outcome)
    except Exception as e:
        logger.warning("Notification for %s failed: %s", outcome.discriminator, e)


def _subject(outcome: ImportOutcome) -> str:
    if outcome.status == ImportStatus.SUCCESS:
        total = len(outcome.created) + len(outcome.updated)
        return f"Booking import: {total} booking(s) updated from \"{outcome.source_subject}\""
    if outcome.status == ImportStatus.MANUAL_REVIEW:
        return f"Booking import needs review: \"{outcome.source_subject}\""
    return f"Booking import failed (attempt {outcome.retry_count}): \"{outcome.source_subject}\""


def render_html(outcome: ImportOutcome, imports_url: str = "") -> str:
    """Render the outcome as a small HTML summary."""
    esc = html.escape
    rows = [
        f"<tr><td><b>Status</b></td><td>{esc(outcome.status.value)}</td></tr>",
        f"<tr><td><b>From</b></td><td>{esc(outcome.source_sender)}</td></tr>",
        f"<tr><td><b>Subject</b></td><td>{esc(outcome.source_subject)}</td></tr>",
        f"<tr><td><b>Artifact</b></td><td>{esc(outcome.discriminator)}</td></tr>",
    ]
    if outcome.created:
        rows.append(f"<tr><td><b>Created</b></td><td>{esc(', '.join(outcome.created))}</td></tr>")
    if outcome.updated:
        rows.append(f"<tr><td><b>Updated</b></td><td>{esc(', '.join(outcome.updated))}</td></tr>")
    if outcome.skipped:
        skipped = ", ".join(f"{s.key} ({s.reason.value})" for s in outcome.skipped)
        rows.append(f"<tr><td><b>Skipped</b></td><td>{esc(skipped)}</td></tr>")
    if outcome.error_message:
        rows.append(f"<tr><td><b>Error</b></td><td>{esc(outcome.error_message)}</td></tr>")

    link = f'<p><a href="{esc(imports_url)}">Open imports</a></p>' if imports_url else ""
    return (
        "<html><body>"
        f"<h2>{esc(_subject(outcome))}</h2>"
        f"<table cellpadding=\"4\">{''.join(rows)}</table>"
        f"{link}"
        "</body></html>"
    )


class LoggingNotifier:
    """Notifier used when no mail transport is configured."""

    def notify(self, outcome: ImportOutcome) -> None:
        logger.info(
            "Import %s: %s (created=%d, updated=%d, skipped=%d)%s",
            outcome.discriminator,
            outcome.status.value,
            len(outcome.created),
            len(outcome.updated),
            len(outcome.skipped),
            f" error={outcome.error_message}" if outcome.error_message else "",
        )


class SmtpNotifier:
    """Send an HTML summary mail to an administrator address."""

    def __init__(
        self,
        host: str,
        port: int,
        user: str | None,
        password: str | None,
        to_email: str,
        *,
        from_email: str | None = None,
        imports_url: str = "",
        timeout: float = 15.0,
    ) -> None:
        self._host = host
        self._port = port
        self._user = user
        self._password = password
        self._to_email = to_email
        self._from_email = from_email or user or to_email
        self._imports_url = imports_url
        self._timeout = timeout

    def notify(self, outcome: ImportOutcome) -> None:
        msg = MIMEMultipart("alternative")
        msg["Subject"] = _subject(outcome)
        msg["From"] = f"Booking Ingestor <{self._from_email}>"
        msg["To"] = self._to_email
        msg["Date"] = datetime.now(UTC).strftime("%a, %d %b %Y %H:%M:%S %z")
        msg.attach(MIMEText(render_html(outcome, self._imports_url), "html"))

        with smtplib.SMTP(self._host, self._port, timeout=self._timeout) as server:
            server.starttls()
            if self._user and self._password:
                server.login(self._user, self._password)
            server.send_message(msg)

        logger.info("Notification for %s sent to %s", outcome.discriminator, self._to_email)
