"""Loguru sinks for the chat client.

stdout belongs to the REPL, so the console sink writes to stderr and stays at
``ConsoleLogLevel`` (WARNING by default) while the file sink records at
``LogLevel``. Every record carries ``extra["session"]``: the chat session of the
send that produced it, or ``-`` outside a send.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TextIO

from loguru import logger

from iano_chat.app_config import DEFAULT_LOG_FILE, AppConfig

NO_SESSION = "-"

_CONSOLE_FORMAT = "<level>{level:<8}</level> | <cyan>{extra[session]}</cyan> | <level>{message}</level>"
_FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | session={extra[session]} | "
    "{name}:{function}:{line} - {message}"
)


@dataclass(frozen=True)
class LogSink:
    kind: str
    level: str
    path: str | None = None
    rotation: str = "10 MB"
    retention: int = 3

    def describe(self) -> str:
        if self.kind == "file":
            return f"file ({self.path}, {self.level})"
        return f"console (stderr, {self.level})"


def sinks_from_config(app: AppConfig) -> list[LogSink]:
    """Resolve the sinks for *app*.

    Without ``LogConsumers`` this is a console sink plus, unless ``LogFile`` is
    empty, a rotating file sink. An explicit ``LogConsumers`` list replaces
    both; entries fall back to the top-level levels and file path.
    """
    if app.log_consumers is None:
        sinks = [LogSink("console", app.console_log_level)]
        if app.log_file:
            sinks.append(LogSink("file", app.log_level, path=app.log_file))
        return sinks

    sinks = []
    for entry in app.log_consumers:
        kind = entry.get("type", "") if isinstance(entry, dict) else ""
        if kind == "console":
            sinks.append(LogSink("console", str(entry.get("level", app.console_log_level))))
        elif kind == "file":
            sinks.append(
                LogSink(
                    "file",
                    str(entry.get("level", app.log_level)),
                    path=str(entry.get("path") or app.log_file or DEFAULT_LOG_FILE),
                    rotation=str(entry.get("rotation", "10 MB")),
                    retention=int(entry.get("retention", 3)),
                )
            )
        else:
            logger.warning(f"Unknown log consumer type: {kind!r}")
    return sinks


def setup_logging(sinks: list[LogSink], *, console: TextIO | None = None) -> list[str]:
    """Replace all loguru sinks with *sinks*. Returns a description of each."""
    logger.remove()
    logger.configure(extra={"session": NO_SESSION})

    for sink in sinks:
        if sink.kind == "file":
            Path(sink.path).parent.mkdir(parents=True, exist_ok=True)
            logger.add(
                sink.path,
                level=sink.level,
                format=_FILE_FORMAT,
                rotation=sink.rotation,
                retention=sink.retention,
                encoding="utf-8",
            )
        else:
            logger.add(console or sys.stderr, level=sink.level, format=_CONSOLE_FORMAT)

    return [sink.describe() for sink in sinks]
