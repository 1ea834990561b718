"""Helpers for classifying and decoding dependency responses."""

from __future__ import annotations

import json

import httpx

from resilient_client.client.constants import (
    BODYLESS_METHODS,
    NO_CONTENT_STATUS,
)
from resilient_client.errors import ResponseParseError, RetryableError, TerminalFailure
from resilient_client.headers import truncate
from resilient_client.retry import is_retryable_status


def is_empty_response(response: httpx.Response) -> bool:
    """Return true when a response carries no body to decode."""
    if response.status_code == NO_CONTENT_STATUS:
        return True
    if response.headers.get("content-length") == "0":
        return True
    return not response.content


def encode_json_body(method: str, data: object | None) -> bytes | None:
    """Serialize ``data`` for methods that carry a request body."""
    if data is None or method.upper() in BODYLESS_METHODS:
        return None
    return json.dumps(data).encode("utf-8")


def raise_for_status(response: httpx.Response) -> None:
    """Raise the classified error for a non-2xx response."""
    if response.is_success:
        return

    status = response.status_code
    body = response.text
    message = truncate(body) or f"Request failed with status {status}"
    if is_retryable_status(status):
        raise RetryableError(message, http_status=status, response_body=body)
    raise TerminalFailure(message, status_code=status, body=body)


def parse_response_body(response: httpx.Response) -> object:
    """Decode a successful response body; empty bodies decode to ``None``."""
    if is_empty_response(response):
        return None
    try:
        return response.json()
    except ValueError as exc:
        raise ResponseParseError(
            "Failed to parse JSON response",
            status_code=response.status_code,
            body=response.text,
        ) from exc
