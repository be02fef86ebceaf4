"""Structured logging helpers: JSON lines with context, plus line-prefixed writers."""

from __future__ import annotations

import codecs
import json
import logging
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any, TextIO

_ANSI_COLOR = re.compile(r"\x1b\[[0-9;]*m")


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def get_logger(name: str = "cnb_pack") -> logging.Logger:
    # Handler lives on the package logger; module loggers propagate to it.
    root = logging.getLogger("cnb_pack")
    if not root.handlers:
        handler = logging.StreamHandler(stream=sys.stderr)
        handler.setFormatter(JsonFormatter())
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    return logging.getLogger(name)


def set_verbose(verbose: bool) -> None:
    get_logger().setLevel(logging.DEBUG if verbose else logging.INFO)


class PrefixWriter:
    """Write complete lines to *out*, each prefixed with ``[<prefix>] ``.

    Partial lines are buffered until a line feed arrives or :meth:`close` is
    called. ANSI color codes are stripped unless *want_color* is set.
    """

    def __init__(self, out: TextIO, prefix: str, want_color: bool = False) -> None:
        self._out = out
        self._prefix = f"[{prefix}] "
        self._want_color = want_color
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._lock = threading.Lock()

    def _emit(self, line: str) -> None:
        if not self._want_color:
            line = _ANSI_COLOR.sub("", line)
        self._out.write(self._prefix + line + "\n")

    def write(self, data: str | bytes) -> int:
        size = len(data)
        with self._lock:
            if isinstance(data, bytes):
                data = self._decoder.decode(data)
            self._buffer += data
            *lines, self._buffer = self._buffer.split("\n")
            for line in lines:
                self._emit(line)
            self._out.flush()
        return size

    def close(self) -> None:
        with self._lock:
            self._buffer += self._decoder.decode(b"", final=True)
            if self._buffer:
                self._emit(self._buffer)
                self._buffer = ""
                self._out.flush()
