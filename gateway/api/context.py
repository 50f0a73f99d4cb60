"""Per-request identifiers shared by middleware, handlers and log records."""

from __future__ import annotations

import logging
import re
import secrets
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, replace

_TRACEPARENT_RE = re.compile(r"^[0-9a-f]{2}-([0-9a-f]{32})-([0-9a-f]{16})-[0-9a-f]{2}$")


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    trace_id: str
    span_id: str
    parent_span_id: str | None = None
    caller_id: str | None = None
    log_level: str = "INFO"

    @classmethod
    def new(cls, traceparent: str | None = None, log_level: str = "INFO") -> RequestContext:
        """Create a context, continuing an inbound W3C ``traceparent`` when valid."""
        trace_id = secrets.token_hex(16)
        parent_span_id = None
        if traceparent:
            match = _TRACEPARENT_RE.match(traceparent.strip().lower())
            if match and match.group(1) != "0" * 32:
                trace_id, parent_span_id = match.group(1), match.group(2)
        return cls(
            request_id=str(uuid.uuid4()),
            trace_id=trace_id,
            span_id=secrets.token_hex(8),
            parent_span_id=parent_span_id,
            log_level=log_level,
        )

    def with_caller(self, caller_id: str) -> RequestContext:
        return replace(self, caller_id=caller_id)

    def log_fields(self) -> dict[str, str | None]:
        return {
            "request_id": self.request_id,
            "trace_id": self.trace_id,
            "span_id": self.span_id,
            "caller_id": self.caller_id,
        }


request_context_ctx: ContextVar[RequestContext | None] = ContextVar(
    "request_context", default=None
)


def current_request_context() -> RequestContext | None:
    return request_context_ctx.get()


class RequestContextFilter(logging.Filter):
    """Stamp the active request identifiers onto every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = request_context_ctx.get()
        if context is not None:
            for key, value in context.log_fields().items():
                if not hasattr(record, key):
                    setattr(record, key, value)
        return True
