"""Incremental Server-Sent-Events parser.

Turns an async byte stream into text lines and then into SSE records. The parser
knows nothing about vendor payloads: ``data`` is returned as a raw string.
"""

from __future__ import annotations

import codecs
from collections.abc import AsyncIterable, AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass


@dataclass(frozen=True)
class SSERecord:
    """One ``{event, data}`` unit framed by a blank line."""

    event: str | None = None
    data: str | None = None


async def iter_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[str]:
    """Decode ``chunks`` as UTF-8 and yield lines without their ``\\n`` / ``\\r\\n``.

    A trailing partial line is flushed when the stream ends.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    source = aiter(chunks)
    try:
        async for chunk in source:
            buffer += decoder.decode(chunk)
            while (idx := buffer.find("\n")) != -1:
                line, buffer = buffer[:idx], buffer[idx + 1 :]
                yield line.removesuffix("\r")
        buffer += decoder.decode(b"", final=True)
        if buffer:
            yield buffer
    finally:
        # release the underlying stream even if the consumer stopped early
        close = getattr(source, "aclose", None)
        if close is not None:
            await close()


async def parse_sse(chunks: AsyncIterable[bytes]) -> AsyncIterator[SSERecord | None]:
    """Yield SSE records; ``None`` marks a keep-alive (blank record)."""
    data_lines: list[str] = []
    event: str | None = None
    async with aclosing(iter_lines(chunks)) as lines:
        async for line in lines:
            if line == "":
                data = "\n".join(data_lines) if data_lines else None
                yield SSERecord(event=event, data=data) if (data or event) else None
                data_lines = []
                event = None
                continue
            if line.startswith(":"):
                continue
            field, sep, value = line.partition(":")
            value = value.lstrip() if sep else ""
            if field == "event":
                event = value
            elif field == "data":
                data_lines.append(value)
