"""Best-effort reachability probe for one dependency."""

from __future__ import annotations

import asyncio

import structlog

from resilient_client.auth import AuthProvider, NoAuth
from resilient_client.logging import (
    StructuredLogger,
    log_debug,
    log_error,
    log_info,
    log_warning,
)
from resilient_client.transport import Transport
from resilient_client.url import build_url

DEFAULT_HEALTH_PATH = "/health"
DEFAULT_HEALTH_TIMEOUT_SECONDS = 5.0


class HealthProbe:
    """Single GET reachability check that bypasses retries and the breaker.

    Probe outcomes never feed circuit breaker accounting, and an open circuit
    never blocks a probe: the probe observes current reachability only.
    """

    def __init__(
        self,
        *,
        transport: Transport,
        base_url: str,
        service_name: str,
        auth: AuthProvider | None = None,
        logger: StructuredLogger | None = None,
    ) -> None:
        self._transport = transport
        self._base_url = base_url
        self._service_name = service_name
        self._auth = NoAuth() if auth is None else auth
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )

    async def check(
        self,
        path: str = DEFAULT_HEALTH_PATH,
        timeout: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
    ) -> bool:
        """Return true when ``GET path`` answers 2xx within ``timeout``.

        ``timeout`` bounds authentication and the request together.
        """
        log_debug(
            self._logger,
            "health_check_started",
            service=self._service_name,
            path=path,
        )
        headers: dict[str, str] = {}
        url = build_url(self._base_url, path)
        try:
            async with asyncio.timeout(timeout):
                if not await self._authenticate(headers):
                    return False
                response = await self._transport.send(
                    "GET",
                    url,
                    headers=headers,
                    content=None,
                    timeout=timeout,
                )
        except Exception as exc:
            log_warning(
                self._logger,
                "health_check_failed",
                service=self._service_name,
                path=path,
                error=f"{exc.__class__.__name__}: {exc}",
            )
            return False

        log_debug(
            self._logger,
            "health_check_finished",
            service=self._service_name,
            path=path,
            status=response.status_code,
        )
        return response.is_success

    async def _authenticate(self, headers: dict[str, str]) -> bool:
        try:
            await self._auth.authenticate(headers)
        except Exception as exc:
            log_warning(
                self._logger,
                "health_check_auth_failed",
                service=self._service_name,
                error=f"{exc.__class__.__name__}: {exc}",
            )
            return False
        return True

    async def check_with_fallback(
        self,
        primary_path: str,
        fallback_path: str,
        timeout: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
    ) -> bool:
        """Check ``primary_path`` and fall back to ``fallback_path`` on failure."""
        if await self.check(primary_path, timeout):
            return True

        log_warning(
            self._logger,
            "health_check_trying_fallback",
            service=self._service_name,
            primary_path=primary_path,
            fallback_path=fallback_path,
        )
        if await self.check(fallback_path, timeout):
            log_info(
                self._logger,
                "health_check_fallback_succeeded",
                service=self._service_name,
                fallback_path=fallback_path,
            )
            return True

        log_error(
            self._logger,
            "health_check_unhealthy",
            service=self._service_name,
            primary_path=primary_path,
            fallback_path=fallback_path,
        )
        return False
