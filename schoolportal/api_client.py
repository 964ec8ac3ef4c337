"""
Resilient API Client - single choke point for outbound HTTP calls

Features:
1. Bearer token injection from the session provider
2. Auto-retry with exponential backoff on network failures and 5xx
3. Per-request timeout, treated like a network failure
4. Cooperative cancellation and supersede-by-key de-duplication
5. Global session teardown on 401

Usage:
    async with ApiClient(config, session, on_unauthorized=redirect) as client:
        response = await client.request("GET", "/tests/available")
"""

import asyncio
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from schoolportal.config import ClientConfig
from schoolportal.exceptions import (
    ApiError,
    AuthenticationError,
    NetworkError,
    RequestCanceledError,
    is_transient,
)
from schoolportal.logging_config import logger, generate_request_id, set_request_id
from schoolportal.session import SessionProvider


MAX_BACKOFF_MS = 10000


class RequestPriority(str, Enum):
    """Advisory only; requests are never reordered"""
    HIGH = "high"
    NORMAL = "normal"


def backoff_delay(retry_count: int) -> float:
    """Seconds to wait before retry number `retry_count` (1-based)"""
    delay_ms = min(1000 * (2 ** retry_count - 1), MAX_BACKOFF_MS)
    return delay_ms / 1000.0


class CancellationToken:
    """
    Cooperative cancellation handle.

    Cancelling is idempotent. A request that already completed is not
    affected; a pending one is aborted and raises RequestCanceledError.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "canceled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise RequestCanceledError(self.reason or "canceled")


@dataclass(frozen=True)
class RequestDescriptor:
    """One logical HTTP call; a new copy is made for every retry"""
    method: str
    path: str
    timeout: float  # seconds
    json: Any = None
    data: Optional[Mapping[str, Any]] = None
    files: Optional[Mapping[str, Any]] = None
    headers: Mapping[str, str] = field(default_factory=dict)
    priority: RequestPriority = RequestPriority.NORMAL
    retry_count: int = 0
    cancel_token: Optional[CancellationToken] = None
    request_id: str = ""

    @property
    def is_multipart(self) -> bool:
        return bool(self.files)

    def next_attempt(self) -> "RequestDescriptor":
        return replace(self, retry_count=self.retry_count + 1)


@dataclass
class ApiResponse:
    """API Response wrapper"""
    status: int
    data: Any
    headers: Dict[str, str]

    @property
    def success(self) -> bool:
        return 200 <= self.status < 300


def _parse_body(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    if content_type.startswith("text/"):
        return response.text
    return response.content


class ApiClient:
    """
    Wraps httpx.AsyncClient with the retry, auth and cancellation policy.

    `on_unauthorized` receives the login path after the token was cleared;
    it is the one side effect that bypasses the caller's error handling.
    """

    def __init__(
        self,
        config: ClientConfig,
        session: SessionProvider,
        on_unauthorized: Optional[Callable[[str], None]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.config = config
        self.session = session
        self.max_retries = config.max_retries
        self.on_unauthorized = on_unauthorized
        self._sleep = sleep
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._inflight: Dict[str, CancellationToken] = {}

    async def __aenter__(self) -> "ApiClient":
        self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.api_base_url.rstrip('/'),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        for token in self._inflight.values():
            token.cancel("client closed")
        self._inflight.clear()
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def supersede(self, key: str) -> CancellationToken:
        """
        Cancel the request previously issued under `key` and hand out a
        token for its replacement. The cancel happens before this returns,
        so the superseding request can never race the stale one.
        """
        previous = self._inflight.get(key)
        if previous is not None:
            previous.cancel(f"superseded: {key}")
        token = CancellationToken()
        self._inflight[key] = token
        return token

    def cancel(self, key: str, reason: str = "canceled") -> None:
        """Abort whatever is running under `key`; no-op when nothing is"""
        token = self._inflight.pop(key, None)
        if token is not None:
            token.cancel(reason)

    def _build_headers(self, descriptor: RequestDescriptor) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if not descriptor.is_multipart:
            headers["Content-Type"] = "application/json"
        headers.update(descriptor.headers)

        token = self.session.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        timeout: Optional[int] = None,
        signal: Optional[CancellationToken] = None,
        priority: str = "normal",
        headers: Optional[Mapping[str, str]] = None,
        files: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
    ) -> ApiResponse:
        """
        Send a request, retrying transient failures.

        Args:
            method: HTTP method
            path: Path relative to the configured base URL
            body: JSON body
            timeout: Milliseconds per attempt (default from config)
            signal: Cancellation token
            priority: "high" or "normal", recorded only
            headers: Extra headers, e.g. a different Accept
            files: Multipart files; Content-Type is then left to httpx
            data: Multipart form fields

        Returns:
            ApiResponse for a 2xx/3xx answer

        Raises:
            ApiError: final error status, body preserved
            NetworkError: no response after all retries
            AuthenticationError: 401, session already torn down
            RequestCanceledError: the signal fired first
        """
        timeout_ms = timeout if timeout is not None else self.config.timeout_ms
        descriptor = RequestDescriptor(
            method=method.upper(),
            path=path,
            timeout=timeout_ms / 1000.0,
            json=body,
            data=data,
            files=files,
            headers=dict(headers or {}),
            priority=RequestPriority(priority),
            cancel_token=signal,
            request_id=generate_request_id(),
        )
        set_request_id(descriptor.request_id)

        while True:
            try:
                return await self._attempt(descriptor)
            except (ApiError, NetworkError) as e:
                if not is_transient(e) or descriptor.retry_count >= self.max_retries:
                    raise
                descriptor = descriptor.next_attempt()
                delay = backoff_delay(descriptor.retry_count)
                logger.warning(
                    f"{descriptor.method} {descriptor.path} failed ({e.code}); "
                    f"retrying in {delay:.1f}s "
                    f"(attempt {descriptor.retry_count}/{self.max_retries})"
                )
                await self._wait(self._sleep(delay), descriptor.cancel_token)

    async def _attempt(self, descriptor: RequestDescriptor) -> ApiResponse:
        if descriptor.cancel_token is not None:
            descriptor.cancel_token.raise_if_cancelled()

        client = self._ensure_client()
        started = time.monotonic()
        # httpx applies its timeout per read; wait_for bounds the whole exchange
        send = asyncio.wait_for(
            client.request(
                descriptor.method,
                descriptor.path,
                json=descriptor.json if not descriptor.is_multipart else None,
                data=descriptor.data,
                files=descriptor.files,
                headers=self._build_headers(descriptor),
                timeout=descriptor.timeout,
            ),
            timeout=descriptor.timeout,
        )

        try:
            response = await self._wait(send, descriptor.cancel_token)
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise NetworkError(
                f"{descriptor.method} {descriptor.path} timed out after "
                f"{descriptor.timeout * 1000:.0f}ms",
                timed_out=True
            ) from e
        except httpx.TransportError as e:
            raise NetworkError(f"{descriptor.method} {descriptor.path}: {e}") from e

        duration_ms = (time.monotonic() - started) * 1000
        logger.log_request(
            descriptor.method,
            descriptor.path,
            response.status_code,
            duration_ms,
            attempt=descriptor.retry_count,
            priority=descriptor.priority.value,
        )

        body = _parse_body(response)

        if response.status_code == 401:
            self._handle_unauthorized()
            raise AuthenticationError("Authentication required")

        if response.status_code >= 400:
            raise ApiError(response.status_code, body, descriptor.method, descriptor.path)

        return ApiResponse(
            status=response.status_code,
            data=body,
            headers=dict(response.headers),
        )

    async def _wait(self, awaitable: Awaitable[Any], token: Optional[CancellationToken]) -> Any:
        """Await `awaitable` unless `token` fires first"""
        if token is None:
            return await awaitable

        work = asyncio.ensure_future(awaitable)
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {work, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            work.cancel()
            cancelled.cancel()
            raise

        if work in done:
            cancelled.cancel()
            return work.result()

        work.cancel()
        try:
            await work
        except (asyncio.CancelledError, httpx.HTTPError):
            pass
        raise RequestCanceledError(token.reason or "canceled")

    def _handle_unauthorized(self) -> None:
        self.session.clear()
        logger.log_auth_event("session", success=False, reason="401 from server")
        if self.on_unauthorized is not None:
            self.on_unauthorized(self.config.login_path)
