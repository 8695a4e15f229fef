from __future__ import annotations

import json
import logging
import sys

from chainmind.logging_context import with_cycle_context, with_logging_context
from chainmind.logging_utils import JsonFormatter, setup_logging


def _record(msg: str, *, level: int = logging.INFO, exc_info=None) -> logging.LogRecord:
    return logging.LogRecord(
        name="chainmind.test",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


def test_json_formatter_includes_exception_details() -> None:
    formatter = JsonFormatter()

    try:
        raise ValueError("boom")
    except ValueError:
        rendered = formatter.format(_record("Cycle failed", level=logging.ERROR, exc_info=sys.exc_info()))

    payload = json.loads(rendered)
    assert payload["message"] == "Cycle failed"
    assert payload["error_type"] == "ValueError"
    assert payload["error_message"] == "boom"
    assert "ValueError: boom" in payload["traceback"]


def test_setup_logging_uses_log_level_env(monkeypatch) -> None:
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    setup_logging()

    assert logging.getLogger().level == logging.DEBUG


def test_setup_logging_quiets_http_loggers_for_info() -> None:
    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("httpcore").level == logging.WARNING
    assert logging.getLogger("web3").level == logging.INFO


def test_setup_logging_debug_enables_http_debug() -> None:
    setup_logging("DEBUG")

    assert logging.getLogger("httpx").level == logging.DEBUG
    assert logging.getLogger("httpcore").level == logging.DEBUG


def test_setup_logging_respects_http_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("HTTPX_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("HTTPCORE_LOG_LEVEL", "CRITICAL")

    setup_logging("INFO")

    assert logging.getLogger("httpx").level == logging.ERROR
    assert logging.getLogger("httpcore").level == logging.CRITICAL


def test_json_formatter_includes_correlation_fields_even_when_unset() -> None:
    payload = json.loads(JsonFormatter().format(_record("hello")))

    for field in ("run_id", "cycle_id", "decision_id", "chain", "token"):
        assert field in payload
        assert payload[field] is None


def test_json_formatter_reads_nested_logging_context() -> None:
    formatter = JsonFormatter()

    with with_cycle_context("cycle-1", run_id="run-1"):
        with with_logging_context(chain="polygon", token="USDC"):
            inner = json.loads(formatter.format(_record("pair")))
        outer = json.loads(formatter.format(_record("cycle")))

    assert inner["run_id"] == "run-1"
    assert inner["cycle_id"] == "cycle-1"
    assert inner["chain"] == "polygon"
    assert inner["token"] == "USDC"
    assert outer["chain"] is None
    assert outer["cycle_id"] == "cycle-1"


def test_json_formatter_merges_extra_payload() -> None:
    record = _record("oracle_decision_generated")
    record.extra = {"action": "hold", "confidence": 0.9}

    payload = json.loads(JsonFormatter().format(record))

    assert payload["action"] == "hold"
    assert payload["confidence"] == 0.9


def test_json_formatter_exception_redacts_traceback_message() -> None:
    formatter = JsonFormatter()
    try:
        raise RuntimeError("Authorization: Bearer TOPSECRET123456")
    except RuntimeError:
        record = _record("failure", level=logging.ERROR, exc_info=sys.exc_info())
    rendered = formatter.format(record)
    assert "TOPSECRET123456" not in rendered


def test_json_formatter_redacts_private_key_in_extra() -> None:
    record = _record("chain_client_initialized")
    record.extra = {"executor_private_key": "0xabcdef0123456789abcdef"}

    rendered = JsonFormatter().format(record)

    assert "0xabcdef0123456789abcdef" not in rendered
