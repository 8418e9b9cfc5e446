import asyncio
import json
from typing import Callable, List
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from agridash.errors import ApiError, AuthenticationError, BadRequestError, SessionExpiredError
from agridash.services.api_client import ApiClient
from agridash.services.session_store import MemorySessionStore
from agridash.settings import Settings

REFRESH = "/api/auth/token/refresh/"


class ScriptedApi:
    """MockTransport handler: accepts 'new-access', answers refresh with a script."""

    def __init__(self, refresh_status: int = 200, rotate: bool = False) -> None:
        self.requests: List[httpx.Request] = []
        self.refresh_status = refresh_status
        self.rotate = rotate

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == REFRESH:
            if self.refresh_status != 200:
                return httpx.Response(self.refresh_status, json={"detail": "Token is invalid or expired"})
            body = {"access": "new-access"}
            if self.rotate:
                body["refresh"] = "refresh-2"
            return httpx.Response(200, json=body)
        if request.url.path == "/api/boom/":
            return httpx.Response(500, json={"detail": "server error"})
        if request.headers.get("Authorization") == "Bearer new-access":
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(401, json={"detail": "Given token not valid"})


def make_client(
    store: MemorySessionStore,
    settings: Settings,
    handler: Callable[[httpx.Request], httpx.Response],
    **kwargs,
) -> ApiClient:
    return ApiClient(store, settings, transport=httpx.MockTransport(handler), **kwargs)


@pytest.mark.asyncio
async def test_attaches_bearer_token(settings: Settings) -> None:
    """Stored access token is sent as a bearer header."""
    api = ScriptedApi()
    store = MemorySessionStore({"access_token": "new-access"})
    async with make_client(store, settings, api) as client:
        assert await client.get("/api/auth/user/") == {"ok": True}
    assert api.requests[0].headers["Authorization"] == "Bearer new-access"


@pytest.mark.asyncio
async def test_sends_unauthenticated_without_token(settings: Settings) -> None:
    """No stored token means no Authorization header and no refresh."""
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    async with make_client(MemorySessionStore(), settings, handler) as client:
        assert await client.get("/api/table/data/") == []
    assert "Authorization" not in seen[0].headers


@pytest.mark.asyncio
async def test_refreshes_once_and_retries_once(store: MemorySessionStore, settings: Settings) -> None:
    """A 401 triggers exactly one refresh and one retry with the new token."""
    api = ScriptedApi()
    async with make_client(store, settings, api) as client:
        result = await client.get("/api/table/data/", params={"page": "2"})

    assert result == {"ok": True}
    assert len(api.calls_to(REFRESH)) == 1
    data_calls = api.calls_to("/api/table/data/")
    assert len(data_calls) == 2
    assert data_calls[0].headers["Authorization"] == "Bearer old-access"
    assert data_calls[1].headers["Authorization"] == "Bearer new-access"
    assert data_calls[1].url.params["page"] == "2"
    assert json.loads(api.calls_to(REFRESH)[0].content) == {"refresh": "refresh-1"}
    assert "Authorization" not in api.calls_to(REFRESH)[0].headers
    assert await store.get("access_token") == "new-access"
    assert await store.get("refresh_token") == "refresh-1"


@pytest.mark.asyncio
async def test_retry_is_a_separate_request_with_same_body(store: MemorySessionStore, settings: Settings) -> None:
    """The first attempt keeps its old header; the retry resends the same JSON body."""
    api = ScriptedApi()
    async with make_client(store, settings, api) as client:
        await client.post("/api/form/submit/", json={"full_name": "Jane"})

    first, retry = api.calls_to("/api/form/submit/")
    assert first is not retry
    assert first.headers["Authorization"] == "Bearer old-access"
    assert retry.headers["Authorization"] == "Bearer new-access"
    assert json.loads(first.content) == json.loads(retry.content) == {"full_name": "Jane"}
    assert retry.headers["Content-Type"] == "application/json"


@pytest.mark.asyncio
async def test_rotated_refresh_token_is_stored(store: MemorySessionStore, settings: Settings) -> None:
    api = ScriptedApi(rotate=True)
    async with make_client(store, settings, api) as client:
        await client.get("/api/table/data/")
    assert await store.get("refresh_token") == "refresh-2"


@pytest.mark.asyncio
async def test_retried_request_is_final(store: MemorySessionStore, settings: Settings) -> None:
    """A second 401 after a successful refresh is returned, not refreshed again."""
    requests: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == REFRESH:
            return httpx.Response(200, json={"access": "new-access"})
        return httpx.Response(401, json={"detail": "nope"})

    async with make_client(store, settings, handler) as client:
        with pytest.raises(AuthenticationError) as exc_info:
            await client.get("/api/crops/7/")

    assert not isinstance(exc_info.value, SessionExpiredError)
    assert exc_info.value.status_code == 401
    assert [r.url.path for r in requests] == ["/api/crops/7/", REFRESH, "/api/crops/7/"]
    assert await store.get("access_token") == "new-access"


@pytest.mark.asyncio
async def test_refresh_failure_clears_session(store: MemorySessionStore, settings: Settings) -> None:
    """Failed refresh clears both tokens, redirects, and never retries."""
    api = ScriptedApi(refresh_status=401)
    redirect = MagicMock()
    await store.set("theme", "dark")
    async with make_client(store, settings, api, on_session_expired=redirect) as client:
        with pytest.raises(SessionExpiredError) as exc_info:
            await client.get("/api/table/data/")

    assert isinstance(exc_info.value.__cause__, ApiError)
    assert exc_info.value.status_code == 401
    assert len(api.calls_to(REFRESH)) == 1
    assert len(api.calls_to("/api/table/data/")) == 1
    assert store.snapshot() == {"theme": "dark"}
    redirect.assert_called_once_with()


@pytest.mark.asyncio
async def test_refresh_network_error_clears_session(store: MemorySessionStore, settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == REFRESH:
            raise httpx.ConnectError("unreachable", request=request)
        return httpx.Response(401)

    redirect = AsyncMock()
    async with make_client(store, settings, handler, on_session_expired=redirect) as client:
        with pytest.raises(SessionExpiredError) as exc_info:
            await client.get("/api/table/data/")
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)
    assert await store.get("access_token") is None
    redirect.assert_awaited_once()


@pytest.mark.asyncio
async def test_missing_refresh_token_fails_with_auth_error(settings: Settings) -> None:
    api = ScriptedApi()
    store = MemorySessionStore({"access_token": "old-access"})
    redirect = MagicMock()
    async with make_client(store, settings, api, on_session_expired=redirect) as client:
        with pytest.raises(AuthenticationError):
            await client.get("/api/auth/user/")
    assert api.calls_to(REFRESH) == []
    assert store.snapshot() == {}
    redirect.assert_called_once_with()


@pytest.mark.asyncio
async def test_login_401_is_not_refreshed(store: MemorySessionStore, settings: Settings) -> None:
    """Wrong credentials surface directly; the session is left alone."""
    api = ScriptedApi()
    async with make_client(store, settings, api) as client:
        with pytest.raises(AuthenticationError):
            await client.post("/api/auth/login/", json={"username": "a", "password": "b"})
    assert api.calls_to(REFRESH) == []
    assert await store.get("refresh_token") == "refresh-1"


@pytest.mark.asyncio
async def test_login_under_base_path_is_not_refreshed(store: MemorySessionStore) -> None:
    """The login endpoint is recognised when the API is mounted under a prefix."""
    api = ScriptedApi()
    prefixed = Settings(api_base_url="http://testserver/v1", session_store="memory")
    async with make_client(store, prefixed, api) as client:
        with pytest.raises(AuthenticationError):
            await client.post("/api/auth/login/", json={"username": "a", "password": "b"})
    assert [r.url.path for r in api.requests] == ["/v1/api/auth/login/"]


@pytest.mark.asyncio
async def test_server_errors_propagate_without_retry(store: MemorySessionStore, settings: Settings) -> None:
    api = ScriptedApi()
    async with make_client(store, settings, api) as client:
        with pytest.raises(ApiError) as exc_info:
            await client.get("/api/boom/")
    assert exc_info.value.status_code == 500
    assert exc_info.value.data == {"detail": "server error"}
    assert len(api.requests) == 1


@pytest.mark.asyncio
async def test_bad_request_maps_to_subclass(store: MemorySessionStore, settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"details": {"email": ["Taken."]}})

    async with make_client(store, settings, handler) as client:
        with pytest.raises(BadRequestError) as exc_info:
            await client.post("/api/form/submit/", json={})
    assert exc_info.value.field_errors() == {"email": ["Taken."]}


@pytest.mark.asyncio
async def test_network_error_propagates_unchanged(store: MemorySessionStore, settings: Settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("down", request=request)

    async with make_client(store, settings, handler) as client:
        with pytest.raises(httpx.ConnectError):
            await client.get("/api/table/data/")
    assert await store.get("refresh_token") == "refresh-1"


@pytest.mark.asyncio
async def test_concurrent_expiry_refreshes_per_request(store: MemorySessionStore, settings: Settings) -> None:
    """Without coalescing each expired request gets its own refresh."""
    api = ScriptedApi()
    both_rejected = asyncio.Event()
    rejected: List[str] = []

    class BothExpire(httpx.AsyncBaseTransport):
        async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
            response = api(request)
            if response.status_code == 401:
                rejected.append(request.url.path)
                if len(rejected) == 2:
                    both_rejected.set()
                await both_rejected.wait()
            return response

    async with ApiClient(store, settings, transport=BothExpire()) as client:
        results = await asyncio.gather(client.get("/api/a/"), client.get("/api/b/"))
    assert results == [{"ok": True}, {"ok": True}]
    assert sorted(rejected) == ["/api/a/", "/api/b/"]
    assert len(api.calls_to(REFRESH)) == 2


@pytest.mark.asyncio
async def test_coalesced_refresh_is_shared(store: MemorySessionStore) -> None:
    """With coalesce_refresh, simultaneous expiries share one refresh call."""
    settings = Settings(api_base_url="http://testserver", session_store="memory", coalesce_refresh=True)
    refresh_started = asyncio.Event()
    release = asyncio.Event()
    requests: List[httpx.Request] = []

    class SlowRefresh(httpx.AsyncBaseTransport):
        async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
            requests.append(request)
            if request.url.path == REFRESH:
                refresh_started.set()
                await release.wait()
                return httpx.Response(200, json={"access": "new-access"})
            if request.headers.get("Authorization") == "Bearer new-access":
                return httpx.Response(200, json={"ok": True})
            return httpx.Response(401)

    async with ApiClient(store, settings, transport=SlowRefresh()) as client:
        first = asyncio.create_task(client.get("/api/a/"))
        await refresh_started.wait()
        second = asyncio.create_task(client.get("/api/b/"))
        await asyncio.sleep(0.01)
        release.set()
        assert await asyncio.gather(first, second) == [{"ok": True}, {"ok": True}]

    assert len([r for r in requests if r.url.path == REFRESH]) == 1
