"""
aiohttp client for the remote item API.

The client performs exactly one HTTP exchange per call and returns an
``ApiResponse``; it never retries and never interprets statuses. Pacing,
throttle feedback and identity rotation live above it (RequestGovernor,
ResilientExecutor), which keeps every retry decision in one place.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp
import orjson

from requestgov.transport.types import ApiResponse, ItemId

if TYPE_CHECKING:
    from types import TracebackType

    from requestgov.credentials.pool import Credentials

logger = logging.getLogger(__name__)


@dataclass
class EndpointConfig:
    """Paths of the remote API, relative to the base URL."""

    login_path: str = "/api/clients/auth/login"
    items_path: str = "/api/clients/addresses"
    update_path: str = "/api/clients/addresses/update/{id}"
    item_path: str = "/api/clients/addresses/{id}"
    set_default_path: str = "/api/clients/addresses/set-default"
    health_path: str = "/api/v1/public/health"


@dataclass
class HealthStatus:
    """Result of a pre-flight probe."""

    api_reachable: bool = False
    auth_valid: bool = False
    latency_ms: int | None = None
    details: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return self.api_reachable


def decode_body(raw: bytes) -> Any:
    """
    Decode a response body tolerantly.

    A UTF-8 BOM is stripped, an empty body decodes to ``{}`` and a non-JSON
    body is returned as text so that callers still see what the server said.
    """
    text = raw.decode("utf-8", errors="replace").lstrip("\ufeff").strip()
    if not text:
        return {}
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError:
        return text


class RemoteApiClient:
    """
    Async client for login and item CRUD.

    Usage:
        async with RemoteApiClient("https://api.example.test") as client:
            response = await client.list_items(token)
    """

    def __init__(
        self,
        base_url: str,
        *,
        endpoints: EndpointConfig | None = None,
        request_timeout_ms: int = 30000,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Scheme and host (a trailing slash is ignored).
            endpoints: Endpoint paths; defaults match the production API.
            request_timeout_ms: Total timeout per request.
            session: Optional externally owned session (not closed by ``close``).
        """
        self._base_url = base_url.rstrip("/")
        self._endpoints = endpoints or EndpointConfig()
        self._timeout = aiohttp.ClientTimeout(total=request_timeout_ms / 1000)
        self._session = session
        self._owns_session = session is None

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def endpoints(self) -> EndpointConfig:
        return self._endpoints

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> RemoteApiClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    @staticmethod
    def auth_headers(token: str | None, *, language: str | None = None) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if language:
            headers["Accept-Language"] = language
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        json: Any = None,
        params: dict[str, str] | None = None,
        language: str | None = None,
    ) -> ApiResponse:
        """
        Perform one HTTP exchange.

        Args:
            method: HTTP method.
            path: Path relative to the base URL.
            token: Bearer token, if the call is authenticated.
            json: JSON payload.
            params: Query parameters.
            language: Optional Accept-Language value.

        Returns:
            The fully read response.

        Raises:
            aiohttp.ClientError: On connection-level failures.
            asyncio.TimeoutError: When the request exceeds its timeout.
        """
        url = f"{self._base_url}{path}"
        session = await self._get_session()
        started = time.monotonic()
        async with session.request(
            method,
            url,
            json=json,
            params=params,
            headers=self.auth_headers(token, language=language),
        ) as response:
            raw = await response.read()
            result = ApiResponse(
                status=response.status,
                body=decode_body(raw),
                headers=dict(response.headers),
                url=url,
            )
        logger.debug(
            "HTTP exchange",
            extra={
                "method": method,
                "url": url,
                "status": result.status,
                "elapsed_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return result

    async def login(self, credentials: Credentials) -> ApiResponse:
        """POST the login form for one identity."""
        return await self.request(
            "POST",
            self._endpoints.login_path,
            json={"login": credentials.login, "password": credentials.password},
        )

    async def list_items(
        self,
        token: str | None,
        params: dict[str, str] | None = None,
        *,
        language: str | None = None,
    ) -> ApiResponse:
        return await self.request(
            "GET", self._endpoints.items_path, token=token, params=params, language=language
        )

    async def create_item(
        self, token: str | None, payload: dict[str, Any], *, language: str | None = None
    ) -> ApiResponse:
        return await self.request(
            "POST", self._endpoints.items_path, token=token, json=payload, language=language
        )

    async def update_item(
        self,
        token: str | None,
        item_id: ItemId,
        payload: dict[str, Any],
        *,
        language: str | None = None,
    ) -> ApiResponse:
        return await self.request(
            "POST",
            self._endpoints.update_path.format(id=item_id),
            token=token,
            json=payload,
            language=language,
        )

    async def delete_item(self, token: str | None, item_id: ItemId) -> ApiResponse:
        return await self.request(
            "DELETE", self._endpoints.item_path.format(id=item_id), token=token
        )

    async def set_default(self, token: str | None, item_id: ItemId) -> ApiResponse:
        return await self.request(
            "POST",
            self._endpoints.set_default_path,
            token=token,
            json={"address_id": item_id},
        )

    async def probe(self, token: str | None = None) -> HealthStatus:
        """
        Pre-flight reachability check.

        Any HTTP answer (401, 403 and 404 included) proves the server is
        reachable; only connection failures count as unreachable. With a
        token, a 2xx from the list endpoint additionally marks auth as valid.
        """
        status = HealthStatus()
        started = time.monotonic()
        try:
            response = await self.request("GET", self._endpoints.health_path)
            if response.status == 404:
                response = await self.request("GET", "/")
        except (aiohttp.ClientError, TimeoutError) as e:
            status.details.append(f"API unreachable at {self._base_url}: {type(e).__name__}")
            logger.warning("Health probe failed", extra={"error": type(e).__name__})
            return status

        status.api_reachable = True
        status.latency_ms = int((time.monotonic() - started) * 1000)
        status.details.append(f"API reachable ({response.status}, {status.latency_ms}ms)")

        if token:
            try:
                auth_response = await self.list_items(token)
            except (aiohttp.ClientError, TimeoutError) as e:
                status.details.append(f"Auth check failed: {type(e).__name__}")
            else:
                status.auth_valid = auth_response.ok
                status.details.append(f"Auth check returned {auth_response.status}")
        return status
