from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, runtime_checkable

_LOGGER_NAME: Final[str] = "anemia_screen"
_ENV_PREFIX: Final[str] = "ANEMIA_SCREEN_"

# Correlation id of the HTTP request being served, blank outside a request
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")

# Structured fields understood by log_event and the formatters, with their types
_EVT_FIELDS: Final[dict[str, type]] = {
    "latency_ms": int,
    "submission_id": str,
    "session_id": str,
    "risk_class": str,
    "confidence": float,
    "estimated_value": float,
    "model_id": str,
    "state": str,
    "code": str,
    "rss_bytes": int,
}


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
        extra = _parse_evt_fields(msg)
        if "event" in extra:
            payload["message"] = str(extra.pop("event"))
        payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for interactive terminals."""

    _RESET = "\x1b[0m"
    _BOLD = "\x1b[1m"
    _DIM = "\x1b[2m"
    _FG_GRAY = "\x1b[90m"
    _FG_RED = "\x1b[91m"
    _FG_GREEN = "\x1b[92m"
    _FG_YELLOW = "\x1b[93m"
    _FG_BLUE = "\x1b[94m"
    _FG_MAGENTA = "\x1b[95m"
    _FG_CYAN = "\x1b[36m"
    _FG_WHITE = "\x1b[97m"

    _LEVELS: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.CRITICAL, "CRIT", _FG_MAGENTA),
        (logging.ERROR, "ERROR", _FG_RED),
        (logging.WARNING, "WARN", _FG_YELLOW),
        (logging.INFO, "INFO", _FG_CYAN),
    )

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        parts: list[str] = [f"{self._DIM}[{ts}]{self._RESET}", self._level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{self._DIM}{self._FG_GRAY}{record.name}{self._RESET}")

        event, kv_pairs, tail = self._split_message(record.getMessage())
        if event:
            parts.append(f"{self._BOLD}{self._FG_BLUE}{event}{self._RESET}")
        for k, v in kv_pairs:
            parts.append(f"{self._DIM}{self._FG_CYAN}{k}{self._RESET}={self._color_value(k, v)}")
        if tail:
            parts.append(tail)
        if record.exc_info:
            parts.append(f"\n{self._FG_RED}{self.formatException(record.exc_info)}{self._RESET}")

        rid = request_id_var.get()
        if rid:
            parts.append(f"{self._DIM}{self._FG_GRAY}rid={rid}{self._RESET}")
        return " ".join(parts)

    def _level_tag(self, level: int) -> str:
        name, color = "DEBUG", self._FG_GRAY
        for threshold, n, c in self._LEVELS:
            if level >= threshold:
                name, color = n, c
                break
        return f"{self._BOLD}{color}[{name}]{self._RESET}"

    def _split_message(self, msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
        if msg.startswith("EVT "):
            extra = _parse_evt_fields(msg)
            evt_name = str(extra.pop("event", "event"))
            return evt_name, [(k, _fmt_value(v)) for k, v in extra.items()], None
        toks = msg.split()
        if not toks:
            return None, [], None
        event: str | None = None
        if "=" not in toks[0]:
            event = toks[0]
            toks = toks[1:]
        kv: list[tuple[str, str]] = []
        tail_parts: list[str] = []
        for t in toks:
            k, sep, v = t.partition("=")
            if sep and k.strip():
                kv.append((k.strip(), v))
            else:
                tail_parts.append(t)
        return event, kv, " ".join(tail_parts) if tail_parts else None

    def _color_value(self, key: str, v: str) -> str:
        ks = key.lower()
        if ks.endswith("_ms") or ks.endswith("_s") or ks.endswith("seconds"):
            return f"{self._FG_MAGENTA}{v}{self._RESET}"
        if ks == "risk_class":
            color = self._FG_RED if v == "at_risk" else self._FG_GREEN
            return f"{self._BOLD}{color}{v}{self._RESET}"
        if v.lower() in {"true", "false"}:
            return f"{self._FG_CYAN}{v}{self._RESET}"
        if _is_float_str(v):
            return f"{self._FG_GREEN}{v}{self._RESET}"
        return f"{self._FG_WHITE}{v}{self._RESET}"


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    """Emit a structured ``EVT`` line; unknown or mistyped fields are dropped."""
    parts: list[str] = [f"event={event}"]
    if fields is not None:
        for key, typ in _EVT_FIELDS.items():
            val = fields.get(key)
            if val is None or isinstance(val, bool) or not isinstance(val, typ):
                continue
            text = _fmt_value(val)
            # Values must stay single tokens
            if " " in text:
                continue
            parts.append(f"{key}={text}")
    get_logger().info("EVT " + " ".join(parts))


def _fmt_value(v: object) -> str:
    if isinstance(v, bool):
        return "true" if v else "false"
    return str(v)


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith("EVT "):
        return {}
    out: dict[str, object] = {}
    for tok in msg[4:].split():
        k, sep, v = tok.partition("=")
        key = k.strip()
        if not sep or not key:
            continue
        typ = _EVT_FIELDS.get(key)
        val: object = v
        if typ is int and v.isdigit():
            val = int(v)
        elif typ is float and _is_float_str(v):
            val = float(v)
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    if not s:
        return False
    return s.count(".") <= 1 and s.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]


def _env(name: str) -> str | None:
    return os.environ.get(_ENV_PREFIX + name)


def _env_level() -> int:
    v = _env("LOG_LEVEL")
    if not v:
        return logging.INFO
    return {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }.get(v.strip().upper(), logging.INFO)


def _env_truthy(name: str) -> bool:
    v = _env(name)
    if not v:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Re-binds a single StreamHandler to the current ``sys.stdout`` so repeated
    calls (app factories, pytest capture) never duplicate output.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("LOG_PROPAGATE")

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


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()

    @runtime_checkable
    class _HasIsatty(Protocol):
        def isatty(self) -> bool: ...

    out_stream = sys.stdout
    is_tty = isinstance(out_stream, _HasIsatty) and bool(out_stream.isatty())
    if not _env_truthy("LOG_JSON") and (_env_truthy("LOG_PRETTY") or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
