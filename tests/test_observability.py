from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta, timezone
import logging
from pathlib import Path

import pytest

from issuepilot import observability
from issuepilot.models import WorkKey
from issuepilot.observability import (
    configure_logging,
    log_event,
    log_warning,
    logging_work_context,
)


@pytest.fixture(autouse=True)
def restore_issuepilot_logger_state() -> Iterator[None]:
    logger = logging.getLogger("issuepilot")
    original_handlers = list(logger.handlers)
    original_level = logger.level
    original_propagate = logger.propagate
    try:
        yield
    finally:
        for handler in logger.handlers:
            if handler not in original_handlers:
                handler.close()
        logger.handlers.clear()
        for handler in original_handlers:
            logger.addHandler(handler)
        logger.setLevel(original_level)
        logger.propagate = original_propagate


def test_configure_logging_quiet_modes_install_null_handler() -> None:
    for verbose in (None, False):
        configure_logging(verbose)
        logger = logging.getLogger("issuepilot")
        assert logger.propagate is False
        assert logger.level > logging.CRITICAL
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0], logging.NullHandler)


def test_configure_logging_verbose_is_idempotent() -> None:
    configure_logging(True)
    configure_logging(True)
    logger = logging.getLogger("issuepilot")
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    assert isinstance(logger.handlers[0], logging.StreamHandler)


def test_configure_logging_rejects_unknown_mode() -> None:
    with pytest.raises(ValueError, match="Unsupported verbose mode"):
        configure_logging("chatty")


def test_log_event_formats_fields(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("high")
    logger = logging.getLogger("issuepilot.test")

    log_event(
        logger,
        "work_admitted",
        work=WorkKey.of("Acme", "Widgets", 7),
        ok=True,
        missing=None,
        count=3,
        at=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone(timedelta(hours=2))),
        note="two   words\nhere",
        blob=object(),
        eq="a=b",
        empty="",
    )

    line = capsys.readouterr().err.strip()
    message = line.split("] ", 1)[1]
    assert message == (
        "event=work_admitted at=2024-01-02T01:04:05Z blob=<object> count=3 empty=<empty> "
        'eq="a=b" missing=null note="two words here" ok=true work=acme/widgets#7'
    )


def test_long_values_are_truncated() -> None:
    value = observability._normalize_field_value("x" * 200)
    assert value == "x" * 120 + "..."


def test_low_verbosity_filters_routine_events(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging("low")
    logger = logging.getLogger("issuepilot.test")

    log_event(logger, "poll_cycle_completed", triggers=0)
    log_event(logger, "work_admitted", issue_number=1)
    log_warning(logger, "transition_rejected", current="done")

    stderr = capsys.readouterr().err
    assert "poll_cycle_completed" not in stderr
    assert "event=work_admitted issue_number=1" in stderr
    assert "event=transition_rejected current=done" in stderr
    assert " WARNING " in stderr


def test_logging_work_context_merges_nested_fields(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(True)
    logger = logging.getLogger("issuepilot.test")

    with logging_work_context(repo="acme/widgets"):
        with logging_work_context(issue_number=4):
            log_event(logger, "inner", extra="x")
        log_event(logger, "outer")
    log_event(logger, "bare")

    lines = capsys.readouterr().err.strip().splitlines()
    assert lines[0].endswith("event=inner extra=x issue_number=4 repo=acme/widgets")
    assert lines[1].endswith("event=outer repo=acme/widgets")
    assert lines[2].endswith("event=bare")


def test_explicit_fields_override_context(capsys: pytest.CaptureFixture[str]) -> None:
    configure_logging(True)
    logger = logging.getLogger("issuepilot.test")

    with logging_work_context(repo="acme/widgets"):
        log_event(logger, "override", repo="acme/other")

    assert capsys.readouterr().err.strip().endswith("event=override repo=acme/other")


def test_file_handler_writes_daily_log(tmp_path: Path) -> None:
    configure_logging(True, state_dir=tmp_path)
    logger = logging.getLogger("issuepilot.test")

    log_event(logger, "orchestrator_started", repos=1)

    date_key = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    log_path = tmp_path / "logs" / f"{date_key}.log"
    assert log_path.exists()
    assert "event=orchestrator_started repos=1" in log_path.read_text(encoding="utf-8")
    assert len(logging.getLogger("issuepilot").handlers) == 2


def test_extract_event_name() -> None:
    assert observability._extract_event_name("event=foo a=1") == "foo"
    assert observability._extract_event_name("event= a=1") is None
    assert observability._extract_event_name("plain message") is None
