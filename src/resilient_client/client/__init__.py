from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import TypedDict, Unpack, cast

import httpx
import structlog
from tenacity import RetryCallState, RetryError, retry_if_exception_type

from resilient_client.auth import AuthProvider, NoAuth
from resilient_client.circuit_breaker import (
    BreakerListener,
    BreakerStats,
    CircuitBreaker,
    CircuitBreakerConfig,
)
from resilient_client.client.constants import CANCELLED_MESSAGE, DEFAULT_TIMEOUT_SECONDS
from resilient_client.client.helpers import (
    encode_json_body,
    parse_response_body,
    raise_for_status,
)
from resilient_client.errors import (
    AttemptTimeoutError,
    AuthError,
    RequestCancelledError,
    ResilientClientError,
    RetriesExhaustedError,
    RetryableError,
    TerminalFailure,
    TransportFailure,
)
from resilient_client.headers import build_request_headers, truncate
from resilient_client.health import (
    DEFAULT_HEALTH_PATH,
    DEFAULT_HEALTH_TIMEOUT_SECONDS,
    HealthProbe,
)
from resilient_client.logging import (
    StructuredLogger,
    log_debug,
    log_error,
    log_info,
    log_warning,
)
from resilient_client.retry import (
    RetryPolicy,
    build_interruptible_sleep,
    build_policy_retrying,
)
from resilient_client.settings import ClientSettings
from resilient_client.transport import HttpxTransport, Transport
from resilient_client.url import build_url, normalize_base_url


class RequestOptions(TypedDict, total=False):
    """Per-call options accepted by the HTTP verb helpers."""

    params: Mapping[str, str] | None
    headers: Mapping[str, str] | None
    timeout: float | None
    cancel_event: asyncio.Event | None
    trace_context: Mapping[str, str] | None


@dataclass(frozen=True)
class RequestContext:
    """Caller-supplied description of one logical call."""

    method: str
    path: str
    data: object | None = None
    params: Mapping[str, str] | None = None
    headers: Mapping[str, str] | None = None
    timeout: float | None = None
    cancel_event: asyncio.Event | None = None
    trace_context: Mapping[str, str] | None = None


@dataclass
class _CallProgress:
    started: float
    attempts: int = 0

    def elapsed(self) -> float:
        return max(time.monotonic() - self.started, 0.0)


def _status_of(error: ResilientClientError) -> int | None:
    if isinstance(error, RetriesExhaustedError):
        return error.cause.http_status
    if isinstance(error, RetryableError):
        return error.http_status
    if isinstance(error, TerminalFailure):
        return error.status_code
    return None


class ResilientClient:
    """Client for one dependency with timeouts, retries and a circuit breaker."""

    def __init__(
        self,
        *,
        transport: Transport,
        base_url: str,
        service_name: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
        breaker_config: CircuitBreakerConfig | None = None,
        breaker_listeners: Sequence[BreakerListener] | None = None,
        auth: AuthProvider | None = None,
        clock: Callable[[], datetime] | None = None,
        health_path: str = DEFAULT_HEALTH_PATH,
        health_fallback_path: str | None = None,
        health_timeout: float = DEFAULT_HEALTH_TIMEOUT_SECONDS,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create a client bound to one dependency base URL.

        Args:
            transport: Sends individual HTTP requests.
            base_url: Absolute base URL of the dependency.
            service_name: Name used for the breaker and in logs.
            timeout: Default per-attempt timeout in seconds.
            retry_policy: Retry budget and backoff. Defaults to ``RetryPolicy()``.
            breaker_config: Circuit breaker settings. Disabled by default.
            breaker_listeners: Optional breaker event hooks.
            auth: Credential provider run once per call. Defaults to ``NoAuth``.
            clock: "Now" source for breaker timing, injectable for tests.
            health_path: Default path probed by ``health_check``.
            health_fallback_path: Path probed when ``health_path`` fails.
            health_timeout: Default health probe timeout in seconds.
            logger: Structured logger. Defaults to this module's logger.
        """
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self._transport = transport
        self._base_url = normalize_base_url(base_url)
        self._service_name = service_name
        self._timeout = timeout
        self._retry_policy = RetryPolicy() if retry_policy is None else retry_policy
        self._auth = NoAuth() if auth is None else auth
        self._logger = (
            structlog.stdlib.get_logger(__name__) if logger is None else logger
        )
        self._breaker = CircuitBreaker(
            service_name,
            config=breaker_config,
            listeners=breaker_listeners,
            clock=clock,
            logger=self._logger,
        )
        self._health_path = health_path
        self._health_fallback_path = health_fallback_path
        self._health_timeout = health_timeout
        self._probe = HealthProbe(
            transport=transport,
            base_url=self._base_url,
            service_name=service_name,
            auth=self._auth,
            logger=self._logger,
        )
        log_info(
            self._logger,
            "dependency_client_initialized",
            service=service_name,
            base_url=self._base_url,
            timeout=timeout,
            retry_enabled=self._retry_policy.max_retries > 0,
            circuit_breaker_enabled=self._breaker.config.enabled,
        )

    @property
    def service_name(self) -> str:
        """Name of the dependency, also used as the breaker name."""
        return self._service_name

    @property
    def breaker(self) -> CircuitBreaker:
        """Circuit breaker owned by this client."""
        return self._breaker

    def get_breaker_stats(self) -> BreakerStats:
        """Return circuit breaker state without side effects."""
        return self._breaker.stats()

    def service_info(self) -> dict[str, object]:
        """Describe the configured connection to the dependency."""
        return {
            "service_name": self._service_name,
            "base_url": self._base_url,
            "timeout": self._timeout,
            "authenticated": not isinstance(self._auth, NoAuth),
            "max_retries": self._retry_policy.max_retries,
            "circuit_breaker_enabled": self._breaker.config.enabled,
        }

    async def health_check(
        self,
        path: str | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Probe the dependency once, bypassing retries and the breaker."""
        resolved_path = self._health_path if path is None else path
        resolved_timeout = self._health_timeout if timeout is None else timeout
        if self._health_fallback_path is None:
            return await self._probe.check(resolved_path, resolved_timeout)
        return await self._probe.check_with_fallback(
            resolved_path,
            self._health_fallback_path,
            resolved_timeout,
        )

    async def get(self, path: str, **options: Unpack[RequestOptions]) -> object:
        return await self.execute("GET", path, **options)

    async def post(
        self, path: str, data: object | None = None, **options: Unpack[RequestOptions]
    ) -> object:
        return await self.execute("POST", path, data=data, **options)

    async def put(
        self, path: str, data: object | None = None, **options: Unpack[RequestOptions]
    ) -> object:
        return await self.execute("PUT", path, data=data, **options)

    async def patch(
        self, path: str, data: object | None = None, **options: Unpack[RequestOptions]
    ) -> object:
        return await self.execute("PATCH", path, data=data, **options)

    async def delete(self, path: str, **options: Unpack[RequestOptions]) -> object:
        return await self.execute("DELETE", path, **options)

    async def execute(
        self,
        method: str,
        path: str,
        *,
        data: object | None = None,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        trace_context: Mapping[str, str] | None = None,
    ) -> object:
        """Run one logical call with admission, auth, timeouts and retries.

        Args:
            method: HTTP method.
            path: Path relative to the base URL.
            data: JSON-serializable body, ignored for GET and HEAD.
            params: Query parameters.
            headers: Extra request headers.
            timeout: Per-attempt timeout override in seconds.
            cancel_event: Set by the caller to abandon the whole call.
            trace_context: Trace metadata bound to logs and propagated as
                ``x-cloud-trace-context`` when present.

        Returns:
            The decoded JSON body, or ``None`` for empty responses.

        Raises:
            CircuitOpenError: When the breaker rejects the call or a retry.
            AuthError: When credentials cannot be attached.
            RetriesExhaustedError: When every attempt failed transiently.
            TerminalFailure: For non-retryable statuses, undecodable bodies,
                transport failures and caller cancellation.
        """
        request = RequestContext(
            method=method.upper(),
            path=path,
            data=data,
            params=params,
            headers=headers,
            timeout=timeout,
            cancel_event=cancel_event,
            trace_context=trace_context,
        )
        with structlog.contextvars.bound_contextvars(**dict(trace_context or {})):
            return await self._execute(request)

    async def _execute(self, request: RequestContext) -> object:
        url = build_url(self._base_url, request.path, request.params)
        progress = _CallProgress(started=time.monotonic())
        try:
            result = await self._run(request, url, progress)
        except ResilientClientError as exc:
            exc.annotate(attempts=progress.attempts, elapsed=progress.elapsed())
            log_error(
                self._logger,
                "dependency_request_failed",
                service=self._service_name,
                method=request.method,
                url=url,
                error=str(exc),
                error_type=exc.__class__.__name__,
                status=_status_of(exc),
                attempts=progress.attempts,
                duration=progress.elapsed(),
                circuit_state=self._circuit_state_label(),
            )
            raise

        log_debug(
            self._logger,
            "dependency_request_succeeded",
            service=self._service_name,
            method=request.method,
            url=url,
            attempts=progress.attempts,
            duration=progress.elapsed(),
        )
        return result

    async def _run(
        self,
        request: RequestContext,
        url: str,
        progress: _CallProgress,
    ) -> object:
        headers = build_request_headers(
            request.headers,
            trace_context=request.trace_context,
        )
        content = encode_json_body(request.method, request.data)
        timeout = self._timeout if request.timeout is None else request.timeout

        admission = await self._breaker.admit()
        try:
            await self._authenticate(headers)
        except BaseException:
            await self._breaker.release(admission)
            raise

        retrying = build_policy_retrying(
            retry=retry_if_exception_type(RetryableError),
            policy=self._retry_policy,
            sleep=self._build_sleep(request.cancel_event),
            before_sleep=self._log_retry_scheduled,
            reraise=False,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    if progress.attempts:
                        self._raise_if_cancelled(request.cancel_event)
                        admission = await self._breaker.admit()
                    progress.attempts += 1
                    try:
                        return await self._attempt_once(
                            request,
                            url=url,
                            headers=headers,
                            content=content,
                            timeout=timeout,
                            attempt_number=progress.attempts,
                        )
                    finally:
                        await self._breaker.release(admission)
        except RetryError as exc:
            last_error = cast(RetryableError, exc.last_attempt.exception())
            raise RetriesExhaustedError(
                last_error, attempts=progress.attempts
            ) from last_error

        raise RuntimeError("Request retry loop exited unexpectedly.")

    async def _authenticate(self, headers: dict[str, str]) -> None:
        try:
            await self._auth.authenticate(headers)
        except AuthError as exc:
            log_error(
                self._logger,
                "dependency_authentication_failed",
                service=self._service_name,
                error=str(exc),
            )
            raise
        except Exception as exc:
            log_error(
                self._logger,
                "dependency_authentication_failed",
                service=self._service_name,
                error=f"{exc.__class__.__name__}: {exc}",
            )
            raise AuthError(f"Authentication failed: {exc}") from exc

    async def _attempt_once(
        self,
        request: RequestContext,
        *,
        url: str,
        headers: Mapping[str, str],
        content: bytes | None,
        timeout: float,
        attempt_number: int,
    ) -> object:
        try:
            response = await self._send_with_deadline(
                request,
                url=url,
                headers=headers,
                content=content,
                timeout=timeout,
            )
            log_debug(
                self._logger,
                "dependency_attempt_finished",
                service=self._service_name,
                method=request.method,
                url=url,
                status=response.status_code,
                attempt=attempt_number,
                circuit_state=self._circuit_state_label(),
            )
            raise_for_status(response)
            body = parse_response_body(response)
        except RequestCancelledError:
            raise
        except (RetryableError, TerminalFailure) as exc:
            log_warning(
                self._logger,
                "dependency_attempt_failed",
                service=self._service_name,
                attempt=attempt_number,
                retryable=isinstance(exc, RetryableError),
                error_type=exc.__class__.__name__,
                status=_status_of(exc),
                error=truncate(str(exc), limit=100),
            )
            await self._breaker.record_failure()
            raise

        await self._breaker.record_success()
        return body

    async def _send_with_deadline(
        self,
        request: RequestContext,
        *,
        url: str,
        headers: Mapping[str, str],
        content: bytes | None,
        timeout: float,
    ) -> httpx.Response:
        """Race the transport call against the attempt timeout and caller cancel."""
        cancel_event = request.cancel_event
        self._raise_if_cancelled(cancel_event)

        send_task = asyncio.create_task(
            self._transport.send(
                request.method,
                url,
                headers=headers,
                content=content,
                timeout=timeout,
            ),
            name=f"resilient-client:{self._service_name}:send",
        )
        cancel_task: asyncio.Task[bool] | None = None
        if cancel_event is not None:
            cancel_task = asyncio.create_task(
                cancel_event.wait(),
                name=f"resilient-client:{self._service_name}:cancel",
            )
        waiters: set[asyncio.Task[object]] = {cast(asyncio.Task[object], send_task)}
        if cancel_task is not None:
            waiters.add(cast(asyncio.Task[object], cancel_task))

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            pending = [task for task in waiters if not task.done()]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        if send_task in done:
            try:
                return send_task.result()
            except (httpx.TimeoutException, TimeoutError) as exc:
                raise AttemptTimeoutError(timeout) from exc
            except Exception as exc:
                raise TransportFailure(f"{exc.__class__.__name__}: {exc}") from exc
        if cancel_task is not None and cancel_task in done:
            raise RequestCancelledError(CANCELLED_MESSAGE)
        raise AttemptTimeoutError(timeout)

    def _build_sleep(
        self, cancel_event: asyncio.Event | None
    ) -> Callable[[float], Awaitable[None]]:
        if cancel_event is None:
            return asyncio.sleep
        return build_interruptible_sleep(cancel_event)

    def _log_retry_scheduled(self, retry_state: RetryCallState) -> None:
        next_action = retry_state.next_action
        log_info(
            self._logger,
            "dependency_retry_scheduled",
            service=self._service_name,
            attempt=retry_state.attempt_number,
            max_retries=self._retry_policy.max_retries,
            delay=0.0 if next_action is None else next_action.sleep,
        )

    def _circuit_state_label(self) -> str:
        stats = self._breaker.stats()
        return str(stats.state) if stats.enabled else "disabled"

    @staticmethod
    def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RequestCancelledError(CANCELLED_MESSAGE)


def create_client(
    settings: ClientSettings,
    *,
    http_client: httpx.AsyncClient,
    auth: AuthProvider | None = None,
    breaker_listeners: Sequence[BreakerListener] | None = None,
    logger: StructuredLogger | None = None,
) -> ResilientClient:
    """Wire a ``ResilientClient`` from settings and a shared HTTP client.

    Raises:
        ValueError: When ``settings.auth_enabled`` is true and no provider is
            given.
    """
    if settings.auth_enabled and auth is None:
        raise ValueError(
            f"auth_enabled is true for {settings.service_name} but no auth "
            "provider was supplied"
        )
    return ResilientClient(
        transport=HttpxTransport(http_client),
        base_url=settings.base_url,
        service_name=settings.service_name,
        timeout=settings.timeout_seconds,
        retry_policy=settings.retry_policy(),
        breaker_config=settings.breaker_config(),
        breaker_listeners=breaker_listeners,
        auth=auth if settings.auth_enabled else NoAuth(),
        health_path=settings.health_check_path,
        health_fallback_path=settings.health_check_fallback_path,
        health_timeout=settings.health_check_timeout_seconds,
        logger=logger,
    )
