"""Tests for CLI argument parsing and command dispatch."""

from __future__ import annotations

from collections.abc import Iterator
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from booking_ingestor.core.models import (
    ArtifactKind,
    CycleProgress,
    ImportOutcome,
    ImportRecord,
    ImportStatus,
)
from scripts.cli import build_parser, format_progress, format_record, main


def _record(**overrides) -> ImportRecord:
    values = dict(
        discriminator="m1::BODY_TABLE",
        source_subject="Buchungen 2026",
        source_sender="info@world-insight.de",
        source_date=datetime(2026, 1, 12, tzinfo=UTC),
        artifact_kind=ArtifactKind.INLINE_TABLE,
        artifact_name="EMAIL_BODY_TABLE",
        artifact_location="/tmp/x",
        mime_type="text/html",
        status=ImportStatus.SUCCESS,
        result_refs=("26CO-USB07",),
    )
    values.update(overrides)
    return ImportRecord(**values)


@pytest.fixture
def ingestor() -> Iterator[MagicMock]:
    settings = MagicMock(log_level="INFO", poll_enabled=True)
    with (
        patch("scripts.cli.BookingIngestorSettings", return_value=settings),
        patch("scripts.cli.setup_logging"),
        patch("scripts.cli.BookingIngestor") as cls,
    ):
        yield cls.return_value


class TestParser:
    """Subcommands and their flags."""

    def test_imports_defaults(self) -> None:
        args = build_parser().parse_args(["imports"])
        assert args.status is None
        assert args.limit == 50
        assert args.offset == 0

    def test_imports_status_choices(self) -> None:
        args = build_parser().parse_args(["imports", "--status", "MANUAL_REVIEW"])
        assert args.status == "MANUAL_REVIEW"
        with pytest.raises(SystemExit):
            build_parser().parse_args(["imports", "--status", "DONE"])

    def test_poll_wait(self) -> None:
        assert build_parser().parse_args(["poll", "--wait"]).wait is True
        assert build_parser().parse_args(["poll"]).wait is False

    def test_allowlist_set(self) -> None:
        args = build_parser().parse_args(["allowlist", "--set", "@a.de", "b@c.de"])
        assert args.entries == ["@a.de", "b@c.de"]
        assert build_parser().parse_args(["allowlist"]).entries is None

    def test_add_tour_type_name_optional(self) -> None:
        args = build_parser().parse_args(["add-tour-type", "za"])
        assert args.code == "za"
        assert args.name == ""


class TestFormatting:
    def test_format_progress_with_error(self) -> None:
        text = format_progress(CycleProgress(messages_seen=2, error="boom"))
        assert text.startswith("messages=2 ")
        assert text.endswith("error=boom")

    def test_format_record(self) -> None:
        line = format_record(_record())
        assert "SUCCESS" in line
        assert "m1::BODY_TABLE" in line
        assert "refs=26CO-USB07" in line


class TestMain:
    """Dispatch to the orchestrator."""

    def test_no_command_exits(self) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 1

    @pytest.mark.parametrize("argv", [["imports", "--limit", "0"], ["imports", "--offset", "-1"]])
    def test_invalid_pagination(self, argv: list[str], ingestor: MagicMock) -> None:
        with pytest.raises(SystemExit) as exc_info:
            main(argv)
        assert exc_info.value.code == 1
        ingestor.list_imports.assert_not_called()

    def test_imports_passes_filters(
        self, ingestor: MagicMock, capsys: pytest.CaptureFixture[str]
    ) -> None:
        ingestor.list_imports.return_value = [_record()]

        main(["imports", "--status", "SUCCESS", "--limit", "10", "--offset", "5"])

        ingestor.list_imports.assert_called_once_with(ImportStatus.SUCCESS, limit=10, offset=5)
        assert "1 import(s)" in capsys.readouterr().out
        ingestor.close.assert_called_once()

    def test_poll_error_exits_nonzero(self, ingestor: MagicMock) -> None:
        ingestor.run_poll_cycle.return_value = CycleProgress(error="network")
        with pytest.raises(SystemExit) as exc_info:
            main(["poll", "--wait"])
        assert exc_info.value.code == 1
        ingestor.run_poll_cycle.assert_called_once_with(wait=True)

    def test_show_missing(self, ingestor: MagicMock) -> None:
        ingestor.get_import.return_value = None
        with pytest.raises(SystemExit) as exc_info:
            main(["show", "m9::BODY_TABLE"])
        assert exc_info.value.code == 1

    def test_retry(self, ingestor: MagicMock, capsys: pytest.CaptureFixture[str]) -> None:
        ingestor.retry_import.return_value = ImportOutcome(
            discriminator="m1::scan.pdf", status=ImportStatus.SUCCESS, attempted=True
        )

        main(["retry", "m1::scan.pdf"])

        ingestor.retry_import.assert_called_once_with("m1::scan.pdf")
        assert "m1::scan.pdf: SUCCESS" in capsys.readouterr().out

    def test_retry_not_resettable(self, ingestor: MagicMock) -> None:
        ingestor.retry_import.return_value = None
        with pytest.raises(SystemExit) as exc_info:
            main(["retry", "m1::BODY_TABLE"])
        assert exc_info.value.code == 1

    def test_allowlist_set(self, ingestor: MagicMock, capsys: pytest.CaptureFixture[str]) -> None:
        ingestor.set_allowlist.return_value = ["@a.de"]
        main(["allowlist", "--set", "@A.de"])
        ingestor.set_allowlist.assert_called_once_with(["@A.de"])
        assert "@a.de" in capsys.readouterr().out

    def test_error_exits_and_closes(self, ingestor: MagicMock) -> None:
        ingestor.get_status.side_effect = RuntimeError("db locked")
        with pytest.raises(SystemExit) as exc_info:
            main(["status"])
        assert exc_info.value.code == 1
        ingestor.close.assert_called_once()

    def test_keyboard_interrupt(self, ingestor: MagicMock) -> None:
        ingestor.serve.side_effect = KeyboardInterrupt
        with patch("scripts.cli.signal.signal"):
            with pytest.raises(SystemExit) as exc_info:
                main(["serve"])
        assert exc_info.value.code == 130
