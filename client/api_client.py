"""
client/api_client.py -- Async HTTP client with single-flight credential renewal.

Used by back-office tools and integration tests to talk to /api/v1. Both
credentials live in the httpx cookie jar; the client never sees the refresh
secret directly.

Renewal protocol:
  - A 401 whose error code is CREDENTIAL_EXPIRED on a first attempt triggers
    a renewal (POST /api/v1/auth/refresh) through the RefreshCoordinator,
    then the original request is replayed exactly once with retry=True. A
    replay never re-enters the renewal branch.
  - Concurrent callers that hit an expired credential while a renewal is in
    flight await that same renewal. One round trip serves all of them; they
    all succeed together or all fail together.
  - CREDENTIAL_MISSING never triggers renewal: there is nothing to renew.
    on_login_required is called and ApiError raised.
  - A failed renewal calls on_login_required and raises ApiError. The refresh
    secret is single-use, so a failed renewal is not retried.

Each ApiClient owns its own coordinator, so several isolated clients (for
example one per test or per tenant) can share one event loop.

Layer rule: no imports from api/ or auth/ -- this module talks to the server
only over HTTP.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Optional

import httpx

logger = logging.getLogger("minimarket.client")

REFRESH_PATH = "/api/v1/auth/refresh"

CREDENTIAL_MISSING = "CREDENTIAL_MISSING"
CREDENTIAL_EXPIRED = "CREDENTIAL_EXPIRED"
_LOGIN_REQUIRED_CODES = {CREDENTIAL_MISSING, "CREDENTIAL_MALFORMED", "CREDENTIAL_INVALID", "REFRESH_INVALID"}


class ApiError(Exception):
    """An API call that did not succeed.

    status is the HTTP status (0 for transport failures), code the server's
    error code when the body carried one.
    """

    def __init__(self, status: int, message: str, code: Optional[str] = None) -> None:
        self.status = status
        self.message = message
        self.code = code
        super().__init__(f"{status} {code or ''} {message}".strip())


# ---------------------------------------------------------------------------
# Single-flight coordinator
# ---------------------------------------------------------------------------


class RefreshCoordinator:
    """Per-client single-flight guard around credential renewal.

    State:
        is_refreshing -- True while a renewal round trip is running.
        in_flight     -- the Future of that round trip; followers await it.
        generation    -- bumped on every successful renewal. A caller whose
                         request was sent under an older generation can replay
                         without renewing again.
    """

    def __init__(self) -> None:
        self.is_refreshing: bool = False
        self.in_flight: Optional[asyncio.Future] = None
        self.generation: int = 0

    async def run(self, refresh: Callable[[], Awaitable[bool]]) -> bool:
        """Run refresh() unless one is already in flight; return its result.

        Every caller, the leader included, awaits the renewal through
        asyncio.shield, so a cancelled caller cannot cancel the shared round
        trip. The renewal stays published in in_flight until the round trip
        itself ends, even when the caller that started it is gone.
        """
        if self.is_refreshing and self.in_flight is not None:
            return await asyncio.shield(self.in_flight)

        self.is_refreshing = True
        task = asyncio.ensure_future(self._guarded(refresh))
        self.in_flight = task
        return await asyncio.shield(task)

    async def _guarded(self, refresh: Callable[[], Awaitable[bool]]) -> bool:
        # Any exception counts as a failed renewal for every waiter.
        try:
            ok = bool(await refresh())
        except Exception:
            logger.exception("Credential renewal raised")
            ok = False
        finally:
            self.is_refreshing = False
            self.in_flight = None
        if ok:
            self.generation += 1
        return ok


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def _error_fields(response: httpx.Response) -> tuple[Optional[str], str]:
    """Extract (code, message) from the {"error": {...}} envelope, tolerating other bodies."""
    try:
        body = response.json()
    except ValueError:
        return None, response.reason_phrase or "API Error"
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        return error.get("code"), error.get("message") or "API Error"
    return None, "API Error"


class ApiClient:
    """Thin async wrapper over httpx.AsyncClient with automatic renewal.

    Usage:
        async with ApiClient("http://localhost:8000", on_login_required=go_to_login) as api:
            await api.post("/api/v1/auth/login", json={"email": ..., "password": ...})
            me = await api.get("/api/v1/auth/me")
    """

    def __init__(
        self,
        base_url: str = "",
        *,
        on_login_required: Optional[Callable[[], Any]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._http = http_client or httpx.AsyncClient(base_url=base_url, transport=transport, timeout=timeout)
        self._on_login_required = on_login_required
        self.coordinator = RefreshCoordinator()

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    @property
    def cookies(self) -> httpx.Cookies:
        return self._http.cookies

    async def _login_required(self) -> None:
        if self._on_login_required is None:
            return
        result = self._on_login_required()
        if inspect.isawaitable(result):
            await result

    async def _renew(self) -> bool:
        """POST the refresh cookie. True only on a 2xx; network errors are a failure."""
        try:
            response = await self._http.post(REFRESH_PATH)
        except httpx.HTTPError as exc:
            logger.warning("Credential renewal failed: %s", exc.__class__.__name__)
            return False
        if response.is_success:
            return True
        logger.info("Credential renewal rejected with %d", response.status_code)
        return False

    async def request(self, method: str, path: str, *, retry: bool = False, **kwargs) -> Any:
        """Send a request and return the decoded JSON body (None for empty bodies).

        Raises ApiError for every non-2xx outcome that renewal cannot fix.
        """
        generation = self.coordinator.generation
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ApiError(0, "Network error or invalid response") from exc

        if response.is_success:
            return response.json() if response.content else None

        code, message = _error_fields(response)

        if code == CREDENTIAL_MISSING:
            await self._login_required()
            raise ApiError(response.status_code, message, code)

        if response.status_code == 401 and code == CREDENTIAL_EXPIRED and not retry:
            if self.coordinator.generation != generation:
                # Renewed by someone else after this request was sent
                return await self.request(method, path, retry=True, **kwargs)
            if await self.coordinator.run(self._renew):
                return await self.request(method, path, retry=True, **kwargs)
            await self._login_required()
            raise ApiError(401, "Session expired. Please log in again.", code)

        if response.status_code == 401 and code in _LOGIN_REQUIRED_CODES:
            await self._login_required()

        raise ApiError(response.status_code, message, code)

    async def get(self, path: str, **kwargs) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs) -> Any:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs) -> Any:
        return await self.request("PATCH", path, **kwargs)
