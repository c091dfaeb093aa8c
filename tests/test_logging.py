from __future__ import annotations

import io
import logging
import sys

import pytest
from _logcap import capture_json_logs, parse_lines

from segmentation_ai.logging import (
    _ConsoleFormatter,
    _JsonFormatter,
    _parse_evt_fields,
    get_logger,
    init_logging,
    log_event,
)
from segmentation_ai.request_context import request_id_var


def _record(msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord("segmentation_ai", level, __file__, 1, msg, None, None)


def test_log_event_field_types() -> None:
    with capture_json_logs() as buf:
        log_event(
            "segment_request_finished",
            fields={
                "latency_ms": 12,
                "results": 3,
                "detections": True,  # bools are not counts
                "confidence": 0.75,
                "family": "detection prototype",
                "model_id": "",
                "ignored": "x",
            },
        )
    (line,) = parse_lines(buf)
    assert line["message"] == "segment_request_finished"
    assert line["latency_ms"] == 12 and line["results"] == 3
    assert "detections" not in line
    assert line["confidence"] == 0.75
    assert line["family"] == "detection_prototype"
    assert "model_id" not in line and "ignored" not in line


def test_json_formatter_includes_request_id() -> None:
    token = request_id_var.set("req-9")
    try:
        out = _JsonFormatter().format(_record("plain message"))
    finally:
        request_id_var.reset(token)
    assert '"request_id": "req-9"' in out
    assert '"message": "plain message"' in out


def test_parse_evt_fields() -> None:
    f = _parse_evt_fields("EVT event=x latency_ms=5 confidence=0.5 family=dense junk")
    assert f == {"event": "x", "latency_ms": 5, "confidence": 0.5, "family": "dense"}
    assert _parse_evt_fields("no prefix") == {}


def test_console_formatter_renders_event_and_fields() -> None:
    fmt = _ConsoleFormatter()
    out = fmt.format(_record("EVT event=segment_finished latency_ms=4 family=dense"))
    assert "segment_finished" in out
    assert "latency_ms" in out and "dense" in out
    plain = fmt.format(_record("model_loaded model_id=m1 trailing words", logging.WARNING))
    assert "[WARN]" in plain
    assert "model_loaded" in plain and "trailing words" in plain
    assert "[DEBUG]" in fmt.format(_record("x", logging.DEBUG))


def test_init_logging_env_level_and_single_handler(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SEGMENTATION_LOG_LEVEL", "warning")
    monkeypatch.setenv("SEGMENTATION_LOG_JSON", "1")
    buf = io.StringIO()
    monkeypatch.setattr(sys, "stdout", buf)
    logger = init_logging()
    init_logging()
    try:
        streams = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
        assert len(streams) == 1
        assert logger.level == logging.WARNING
        assert isinstance(streams[0].formatter, _JsonFormatter)
        get_logger().info("hidden")
        get_logger().warning("shown")
        assert "shown" in buf.getvalue() and "hidden" not in buf.getvalue()
    finally:
        monkeypatch.delenv("SEGMENTATION_LOG_LEVEL")
        monkeypatch.delenv("SEGMENTATION_LOG_JSON")
        init_logging()


def test_init_logging_pretty_style() -> None:
    logger = init_logging("pretty")
    try:
        streams = [h for h in logger.handlers if isinstance(h, logging.StreamHandler)]
        assert isinstance(streams[0].formatter, _ConsoleFormatter)
    finally:
        init_logging()
