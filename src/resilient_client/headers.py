from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Mapping

MAX_LOGGED_VALUE_LENGTH = 1024
CONTENT_TYPE_HEADER = "Content-Type"
REQUEST_ID_HEADER = "x-request-id"
TRACE_CONTEXT_HEADER = "x-cloud-trace-context"
_TRACE_CONTEXT_KEYS = ("X-Cloud-Trace-Context", TRACE_CONTEXT_HEADER)


def truncate(value: str, *, limit: int = MAX_LOGGED_VALUE_LENGTH) -> str:
    """Truncate a decoded string value to the configured log size limit."""
    return value[:limit]


def generate_request_id() -> str:
    """Return a request id of the form ``req-<epoch ms>-<random>``."""
    return f"req-{int(time.time() * 1000)}-{uuid.uuid4().hex[:7]}"


def _has_header(headers: Mapping[str, str], name: str) -> bool:
    lowered = name.lower()
    return any(key.lower() == lowered for key in headers)


def trace_header_value(trace_context: Mapping[str, str] | None) -> str | None:
    """Return the Cloud Trace header carried by ``trace_context``, if any."""
    if not trace_context:
        return None
    for key in _TRACE_CONTEXT_KEYS:
        value = trace_context.get(key)
        if value:
            return value
    return None


def build_request_headers(
    headers: Mapping[str, str] | None,
    *,
    trace_context: Mapping[str, str] | None = None,
    request_id_factory: Callable[[], str] = generate_request_id,
) -> dict[str, str]:
    """Return outgoing headers with defaults, request id and trace context."""
    built: dict[str, str] = {CONTENT_TYPE_HEADER: "application/json"}
    for key, value in (headers or {}).items():
        if key.lower() == CONTENT_TYPE_HEADER.lower():
            built.pop(CONTENT_TYPE_HEADER, None)
        built[key] = value

    if not _has_header(built, REQUEST_ID_HEADER):
        built[REQUEST_ID_HEADER] = request_id_factory()

    trace_value = trace_header_value(trace_context)
    if trace_value is not None:
        built[TRACE_CONTEXT_HEADER] = trace_value
    return built
