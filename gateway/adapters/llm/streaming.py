"""Provider-agnostic stream normalization.

Upstream bodies arrive as arbitrary byte chunks. ``LineBuffer`` reassembles
complete lines (a line or a multi-byte character may straddle two chunks) and
``normalize_stream`` hands each line to a provider-specific parser, yielding
``StreamChunk`` values in upstream order.
"""

from __future__ import annotations

import codecs
import functools
import json
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from gateway.api.exceptions import StreamParseError
from gateway.models.llm.llm_models import StreamChunk

logger = logging.getLogger(__name__)

LineParser = Callable[[str], StreamChunk | None]

# Raised by the parsers when valid JSON has fields of the wrong type or shape
_SHAPE_ERRORS = (AttributeError, TypeError, ValueError, KeyError, IndexError)

SSE_DONE = "[DONE]"


class LineBuffer:
    """Accumulates bytes and releases complete ``\\n``-terminated lines.

    Invalid UTF-8 is reported as a ``StreamParseError`` for ``provider``.
    """

    def __init__(self, provider: str) -> None:
        self._provider = provider
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._pending = ""

    def feed(self, chunk: bytes) -> list[str]:
        self._pending += self._decode(chunk)
        if "\n" not in self._pending:
            return []
        *complete, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in complete]

    def flush(self) -> list[str]:
        """Return whatever is left once the upstream body has ended."""
        self._pending += self._decode(b"", final=True)
        remainder, self._pending = self._pending.rstrip("\r"), ""
        return [remainder] if remainder else []

    def _decode(self, chunk: bytes, final: bool = False) -> str:
        try:
            return self._decoder.decode(chunk, final=final)
        except UnicodeDecodeError as exc:
            msg = f"Invalid UTF-8 in stream from {self._provider}: {exc.reason}"
            raise StreamParseError(self._provider, msg) from exc


def sse_data(line: str) -> str | None:
    """Return the payload of an SSE ``data:`` line, or None for any other line.

    Blank separators, comments (``:``) and ``event:``/``id:``/``retry:`` fields
    carry nothing the parsers need.
    """
    if not line.startswith("data:"):
        return None
    payload = line[5:]
    if payload.startswith(" "):
        payload = payload[1:]
    return payload


def load_json_payload(provider: str, payload: str) -> dict[str, Any]:
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        msg = f"Malformed stream line from {provider}: {exc.msg} at position {exc.pos}"
        raise StreamParseError(provider, msg) from exc
    if not isinstance(data, dict):
        msg = f"Unexpected stream payload from {provider}: expected an object"
        raise StreamParseError(provider, msg)
    return data


def shape_checked(provider: str) -> Callable[[LineParser], LineParser]:
    """Report a payload whose fields have the wrong shape as a parse error."""

    def decorator(parse: LineParser) -> LineParser:
        @functools.wraps(parse)
        def wrapper(line: str) -> StreamChunk | None:
            try:
                return parse(line)
            except _SHAPE_ERRORS as exc:
                msg = f"Unexpected stream payload from {provider}: {type(exc).__name__}: {exc}"
                raise StreamParseError(provider, msg) from exc

        return wrapper

    return decorator


async def normalize_stream(
    byte_chunks: AsyncIterator[bytes],
    parse_line: LineParser,
    provider: str,
) -> AsyncIterator[StreamChunk]:
    """Turn a raw upstream body into normalized chunks.

    Empty parse results are dropped. Parser errors propagate unchanged so the
    caller can stop the stream with a terminal error.
    """
    buffer = LineBuffer(provider)
    async for raw in byte_chunks:
        for line in buffer.feed(raw):
            chunk = parse_line(line)
            if chunk is not None and not chunk.is_empty:
                yield chunk
    for line in buffer.flush():
        chunk = parse_line(line)
        if chunk is not None and not chunk.is_empty:
            yield chunk
