from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, TypedDict, runtime_checkable

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "segmentation_ai"
_INT_FIELDS: Final[tuple[str, ...]] = ("latency_ms", "detections", "results")
_STR_FIELDS: Final[tuple[str, ...]] = ("family", "model_id")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        fields = _parse_evt_fields(msg)
        if fields:
            if "event" in fields:
                payload["message"] = str(fields.pop("event"))
            payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for terminals.

    Renders `[HH:MM:SS] [LEVEL] event key=value ...`, with numeric values
    and timings highlighted.
    """

    _RESET = "\x1b[0m"
    _BOLD = "\x1b[1m"
    _DIM = "\x1b[2m"
    _GRAY = "\x1b[90m"
    _RED = "\x1b[91m"
    _GREEN = "\x1b[92m"
    _BLUE = "\x1b[94m"
    _MAGENTA = "\x1b[95m"
    _CYAN = "\x1b[36m"

    _LEVELS: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.CRITICAL, "CRIT", "\x1b[95m"),
        (logging.ERROR, "ERROR", "\x1b[91m"),
        (logging.WARNING, "WARN", "\x1b[93m"),
        (logging.INFO, "INFO", "\x1b[36m"),
    )

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        parts: list[str] = [f"{self._DIM}[{ts}]{self._RESET}", self._level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{self._DIM}{self._GRAY}{record.name}{self._RESET}")

        event, kv_pairs, tail = self._split_message(record.getMessage())
        if event:
            parts.append(f"{self._BOLD}{self._BLUE}{event}{self._RESET}")
        for k, v in kv_pairs:
            parts.append(f"{self._DIM}{self._CYAN}{k}{self._RESET}={self._color_value(k, v)}")
        if tail:
            parts.append(tail)
        if record.exc_info:
            parts.append(f"\n{self._RED}{self.formatException(record.exc_info)}{self._RESET}")

        rid = request_id_var.get()
        if rid:
            parts.append(f"{self._DIM}{self._GRAY}rid={rid}{self._RESET}")
        return " ".join(parts)

    def _level_tag(self, level: int) -> str:
        for threshold, name, color in self._LEVELS:
            if level >= threshold:
                return f"{self._BOLD}{color}[{name}]{self._RESET}"
        return f"{self._BOLD}{self._GRAY}[DEBUG]{self._RESET}"

    def _split_message(self, msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
        if msg.startswith("EVT "):
            fields = _parse_evt_fields(msg)
            name = str(fields.pop("event")) if "event" in fields else "event"
            return name, [(k, str(v)) for k, v in fields.items()], None

        toks = msg.split()
        if not toks:
            return None, [], None
        event: str | None = None
        if "=" not in toks[0]:
            event = toks[0]
            toks = toks[1:]
        kv: list[tuple[str, str]] = []
        rest: list[str] = []
        for t in toks:
            k, sep, v = t.partition("=")
            if sep and k.strip():
                kv.append((k.strip(), v))
            else:
                rest.append(t)
        return event, kv, (" ".join(rest) if rest else None)

    def _color_value(self, key: str, v: str) -> str:
        ks = key.lower()
        vs = v.strip()
        if ks.endswith("_ms") or ks.endswith("_s") or "time" in ks:
            return f"{self._MAGENTA}{vs}{self._RESET}"
        if vs.lower() in {"true", "false"}:
            return f"{self._CYAN}{vs}{self._RESET}"
        if _is_float_str(vs):
            return f"{self._GREEN}{vs}{self._RESET}"
        return vs


class LogEvent(TypedDict, total=False):
    event: str
    latency_ms: int
    family: str
    detections: int
    results: int
    confidence: float
    model_id: str


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    parts: list[str] = [f"event={event}"]
    if fields is not None:
        for key in _INT_FIELDS:
            val = fields.get(key)
            if isinstance(val, int) and not isinstance(val, bool):
                parts.append(f"{key}={val}")
        conf = fields.get("confidence")
        if isinstance(conf, float):
            parts.append(f"confidence={conf}")
        for key in _STR_FIELDS:
            sval = fields.get(key)
            if isinstance(sval, str) and sval:
                # Values are space-delimited on the wire
                parts.append(f"{key}={sval.replace(' ', '_')}")
    get_logger().info("EVT " + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith("EVT "):
        return {}
    out: dict[str, object] = {}
    for tok in msg[4:].split():
        k, sep, v = tok.partition("=")
        key = k.strip()
        if not sep or not key:
            continue
        val: object = v
        if key in _INT_FIELDS and v.isdigit():
            val = int(v)
        elif key == "confidence" and _is_float_str(v):
            val = float(v)
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    # Accepts 0.5, 1, 1.0
    return bool(s) and s.count(".") <= 1 and s.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]

_LEVEL_NAMES: Final[dict[str, int]] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _env_level() -> int:
    v = os.environ.get("SEGMENTATION_LOG_LEVEL")
    if not v:
        return logging.INFO
    return _LEVEL_NAMES.get(v.strip().upper(), logging.INFO)


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Rebinds to the current `sys.stdout` on every call (pytest capsys swaps it)
    and keeps exactly one StreamHandler on the project logger.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("SEGMENTATION_LOG_PROPAGATE") or _env_truthy("LOG_PROPAGATE")

    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(lvl)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name)
    if not v:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()

    force_json = _env_truthy("SEGMENTATION_LOG_JSON") or _env_truthy("LOG_JSON")
    force_pretty = _env_truthy("SEGMENTATION_LOG_PRETTY") or _env_truthy("LOG_PRETTY")

    @runtime_checkable
    class _HasIsatty(Protocol):
        def isatty(self) -> bool: ...

    out_stream = sys.stdout
    is_tty = isinstance(out_stream, _HasIsatty) and bool(out_stream.isatty())
    if not force_json and (force_pretty or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
