"""Transport seam between the resilient client and the network."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol

import httpx


class Transport(Protocol):
    """Sends one HTTP request and returns the raw response."""

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        content: bytes | None,
        timeout: float,
    ) -> httpx.Response:
        """Send one request; raise ``httpx.RequestError`` on network failure."""


class HttpxTransport:
    """Transport backed by a shared ``httpx.AsyncClient``."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def send(
        self,
        method: str,
        url: str,
        *,
        headers: Mapping[str, str],
        content: bytes | None,
        timeout: float,
    ) -> httpx.Response:
        return await self._client.request(
            method,
            url,
            headers=dict(headers),
            content=content,
            timeout=timeout,
        )
