"""Credential providers that decorate outgoing request headers."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol, cast

import httpx
from tenacity import retry_if_exception_type

from resilient_client.errors import AuthError, RetryableError
from resilient_client.retry import (
    RetryPolicy,
    build_policy_retrying,
    is_retryable_status,
)

AUTHORIZATION_HEADER = "Authorization"
_DEFAULT_TOKEN_LIFETIME_SECONDS = 3600.0


class AuthProvider(Protocol):
    """Attaches credentials to the headers of one outgoing request."""

    async def authenticate(self, headers: dict[str, str]) -> None:
        """Mutate ``headers`` in place; raise ``AuthError`` on failure."""


class NoAuth:
    """Provider for dependencies that need no credentials."""

    async def authenticate(self, headers: dict[str, str]) -> None:
        del headers


class StaticTokenAuth:
    """Attach a fixed token, e.g. an API key issued out of band."""

    def __init__(self, token: str, *, scheme: str = "Bearer") -> None:
        if not token:
            raise ValueError("token must be non-empty")
        self._value = f"{scheme} {token}" if scheme else token

    async def authenticate(self, headers: dict[str, str]) -> None:
        headers[AUTHORIZATION_HEADER] = self._value


@dataclass(frozen=True)
class _Token:
    """Cached token value with absolute expiry epoch."""

    value: str
    expires_at_epoch: float

    def is_expired(self, buffer_seconds: float, now: float) -> bool:
        """Return true when token expiry is within the safety window."""
        return now >= (self.expires_at_epoch - buffer_seconds)


class ClientCredentialsAuth:
    """OAuth2 client-credentials provider with token caching and retries."""

    def __init__(
        self,
        *,
        client: httpx.AsyncClient,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str | None = None,
        audience: str | None = None,
        expiration_buffer_seconds: float = 60.0,
        retry_policy: RetryPolicy | None = None,
        now_fn: Callable[[], float] = time.time,
    ) -> None:
        """Create a provider that fetches bearer tokens from ``token_url``.

        Args:
            client: Shared async HTTP client.
            token_url: OAuth2 token endpoint.
            client_id: Client identifier.
            client_secret: Client secret.
            scope: Optional space-separated scopes to request.
            audience: Optional audience claim to request.
            expiration_buffer_seconds: Safety buffer before token expiry.
            retry_policy: Backoff for transient token endpoint failures.
            now_fn: Epoch seconds source, injectable for tests.
        """
        self._client = client
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._audience = audience
        self._expiration_buffer_seconds = expiration_buffer_seconds
        self._retry_policy = (
            RetryPolicy(max_retries=3, min_delay=0.5, max_delay=3.0)
            if retry_policy is None
            else retry_policy
        )
        self._now = now_fn
        self._token_lock = asyncio.Lock()
        self._token: _Token | None = None

    async def authenticate(self, headers: dict[str, str]) -> None:
        token = await self.ensure_token()
        headers[AUTHORIZATION_HEADER] = f"Bearer {token}"

    async def ensure_token(self) -> str:
        """Ensure a valid token is available and return it."""
        cached_token = self._cached_token_value()
        if cached_token is not None:
            return cached_token

        async with self._token_lock:
            cached_token = self._cached_token_value()
            if cached_token is not None:
                return cached_token
            return await self._refresh_token_with_retry()

    async def invalidate_token(self) -> None:
        """Clear the cached token so the next request forces a refresh."""
        async with self._token_lock:
            self._token = None

    def _cached_token_value(self) -> str | None:
        token = self._token
        if token is None:
            return None
        if token.is_expired(self._expiration_buffer_seconds, self._now()):
            return None
        return token.value

    async def _refresh_token_with_retry(self) -> str:
        retrying = build_policy_retrying(
            retry=retry_if_exception_type(RetryableError),
            policy=self._retry_policy,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    token = await self._request_token_once()
                    self._token = token
                    return token.value
        except RetryableError as exc:
            raise AuthError(
                f"Token endpoint unavailable after retries: {exc}"
            ) from exc

        raise RuntimeError("Token retry loop exited unexpectedly.")

    async def _request_token_once(self) -> _Token:
        form_data = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        if self._scope:
            form_data["scope"] = self._scope
        if self._audience:
            form_data["audience"] = self._audience

        try:
            response = await self._client.post(self._token_url, data=form_data)
        except httpx.RequestError as exc:
            raise RetryableError(str(exc)) from exc

        if is_retryable_status(response.status_code):
            raise RetryableError(
                f"Token endpoint transient failure (HTTP {response.status_code}).",
                http_status=response.status_code,
                response_body=response.text,
            )
        if response.status_code >= 400:
            raise AuthError(
                f"Token endpoint returned HTTP {response.status_code}."
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Token response is not valid JSON.") from exc
        if not isinstance(payload, dict):
            raise AuthError("Token response is not a JSON object.")
        payload = cast(dict[str, object], payload)

        token = payload.get("access_token")
        if not isinstance(token, str) or not token:
            raise AuthError("Token response missing access_token field.")

        expires_in = payload.get("expires_in")
        lifetime = (
            float(expires_in)
            if isinstance(expires_in, (int, float))
            else _DEFAULT_TOKEN_LIFETIME_SECONDS
        )
        return _Token(value=token, expires_at_epoch=self._now() + lifetime)
