import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Mapping, Union

import httpx

from .. import endpoints
from ..errors import ApiError, AuthenticationError, SessionExpiredError
from ..settings import Settings, get_settings
from .session_store import ACCESS_TOKEN, REFRESH_TOKEN, SessionStore

logger = logging.getLogger(__name__)

SessionExpiredHook = Callable[[], Union[None, Awaitable[None]]]

MAX_ATTEMPTS = 2


class ApiClient:
    """HTTP client for the remote API with bearer auth and one-shot token refresh.

    Each call may be retried at most once, and only after a 401 that a
    successful refresh answered. The attempt number travels with the call,
    so concurrent requests each get their own refresh opportunity.
    """

    def __init__(
        self,
        store: SessionStore,
        settings: Settings | None = None,
        *,
        on_session_expired: SessionExpiredHook | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store
        self._on_session_expired = on_session_expired
        self._http = httpx.AsyncClient(
            base_url=self._settings.api_base_url,
            headers={"Content-Type": "application/json"},
            timeout=self._settings.request_timeout_seconds,
            transport=transport,
        )
        self._refresh_task: asyncio.Task[str] | None = None

    @property
    def store(self) -> SessionStore:
        return self._store

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def get(self, path: str, *, params: Mapping[str, Any] | None = None) -> Any:
        return await self.request("GET", path, params=params)

    async def post(self, path: str, *, json: Any = None) -> Any:
        return await self.request("POST", path, json=json)

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """Send a request and return its decoded JSON body (None when empty).

        Raises:
            ApiError: for any non-2xx final response (see errors.py subclasses).
            httpx.RequestError: for transport failures, unchanged.
        """
        request = self._http.build_request(method, path, params=params, json=json)
        response = await self._send(request, attempt=1)
        if response.is_success:
            return response.json() if response.content else None
        raise ApiError.from_response(response)

    async def _send(self, request: httpx.Request, attempt: int) -> httpx.Response:
        """Send a fresh copy of request; the template itself is never mutated."""
        headers = httpx.Headers(request.headers)
        access = await self._store.get(ACCESS_TOKEN)
        if access:
            headers["Authorization"] = f"Bearer {access}"
        else:
            headers.pop("Authorization", None)
        outgoing = httpx.Request(request.method, request.url, headers=headers, content=request.content)

        response = await self._http.send(outgoing)
        if response.status_code != 401 or not self._may_refresh(outgoing, attempt):
            return response

        logger.info("401 from %s %s; refreshing access token", request.method, request.url.path)
        await response.aclose()
        await self._refresh()
        return await self._send(request, attempt=attempt + 1)

    def _may_refresh(self, request: httpx.Request, attempt: int) -> bool:
        if attempt >= MAX_ATTEMPTS:
            return False
        return not request.url.path.endswith(endpoints.LOGIN)

    async def _refresh(self) -> str:
        """Exchange the refresh token for a new access token and store it."""
        if not self._settings.coalesce_refresh:
            return await self._do_refresh()
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> str:
        refresh = await self._store.get(REFRESH_TOKEN)
        if not refresh:
            await self._expire_session()
            raise AuthenticationError("No refresh token available", status_code=401)

        try:
            response = await self._http.post(endpoints.TOKEN_REFRESH, json={"refresh": refresh})
            if not response.is_success:
                raise ApiError.from_response(response)
            data: Dict[str, Any] = response.json()
            access = data["access"]
        except (ApiError, httpx.RequestError, ValueError, KeyError) as e:
            logger.warning("Token refresh failed: %s", e)
            await self._expire_session()
            raise SessionExpiredError(
                "Session expired; please log in again",
                status_code=getattr(e, "status_code", None),
                data=getattr(e, "data", None),
            ) from e

        await self._store.set(ACCESS_TOKEN, access)
        if data.get("refresh"):
            await self._store.set(REFRESH_TOKEN, data["refresh"])
        logger.info("Access token refreshed")
        return access

    async def _expire_session(self) -> None:
        await self._store.clear()
        if self._on_session_expired is None:
            return
        result = self._on_session_expired()
        if inspect.isawaitable(result):
            await result
