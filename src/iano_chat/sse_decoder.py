from __future__ import annotations

import codecs
import json
from collections.abc import AsyncIterable, AsyncIterator, Iterable, Iterator
from dataclasses import dataclass
from typing import Any

from loguru import logger

LEGACY_DEFAULT_EVENT = "message"
RICH_DEFAULT_EVENT = ""


@dataclass(frozen=True)
class SseRecord:
    event_type: str
    data: Any


class SseFrameDecoder:
    """Incremental decoder for ``event:`` / ``data:`` framed streams.

    Chunks may split lines (and multi-byte characters) anywhere; incomplete
    lines are held back until their terminator arrives. Each ``data:`` line
    yields one record whose payload is the parsed JSON. Payloads that are
    not valid JSON are dropped.
    """

    def __init__(self, default_event: str = RICH_DEFAULT_EVENT, encoding: str = "utf-8"):
        self._default_event = default_event
        self._event_type = default_event
        self._pending = ""
        self._bytes_decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    @property
    def event_type(self) -> str:
        return self._event_type

    def feed(self, chunk: bytes | str) -> Iterator[SseRecord]:
        if isinstance(chunk, bytes):
            chunk = self._bytes_decoder.decode(chunk)
        if not chunk:
            return
        self._pending += chunk
        *lines, self._pending = self._pending.split("\n")
        for line in lines:
            record = self._process_line(line)
            if record is not None:
                yield record

    def flush(self) -> Iterator[SseRecord]:
        """Process whatever is left once the stream has ended."""
        tail = self._bytes_decoder.decode(b"", final=True)
        remaining = self._pending + tail
        self._pending = ""
        for line in remaining.split("\n"):
            if not line:
                continue
            record = self._process_line(line)
            if record is not None:
                yield record

    def reset(self) -> None:
        self._event_type = self._default_event
        self._pending = ""
        self._bytes_decoder.reset()

    def _process_line(self, line: str) -> SseRecord | None:
        if line.endswith("\r"):
            line = line[:-1]

        if line.strip() == "":
            self._event_type = self._default_event
            return None
        if line.startswith("event:"):
            self._event_type = line[len("event:"):].strip()
            return None
        if line.startswith("data:"):
            raw = line[len("data:"):]
            if raw.startswith(" "):
                raw = raw[1:]
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                logger.trace(f"Dropping malformed SSE payload ({self._event_type!r}): {raw[:200]}")
                return None
            return SseRecord(event_type=self._event_type, data=payload)

        # id:, retry: and ":" comment lines carry nothing the client needs.
        return None


def iter_records(chunks: Iterable[bytes | str], default_event: str = RICH_DEFAULT_EVENT) -> Iterator[SseRecord]:
    decoder = SseFrameDecoder(default_event)
    for chunk in chunks:
        yield from decoder.feed(chunk)
    yield from decoder.flush()


async def aiter_records(
    chunks: AsyncIterable[bytes | str],
    default_event: str = RICH_DEFAULT_EVENT,
) -> AsyncIterator[SseRecord]:
    decoder = SseFrameDecoder(default_event)
    async for chunk in chunks:
        for record in decoder.feed(chunk):
            yield record
    for record in decoder.flush():
        yield record
