"""End-to-end: the client stack against the in-process mock API."""

import httpx
import pytest
import pytest_asyncio

from agridash.errors import AuthenticationError, FormValidationError, SessionExpiredError
from agridash.models import SortSpec, TablePagination
from agridash.query_state import MemoryLocation, QueryStateStore
from agridash.services import (
    ApiClient,
    AuthService,
    CropService,
    FormService,
    MemorySessionStore,
    SessionManager,
    TableLoader,
    validate_entry,
)
from agridash.settings import Settings
from mock_api.server import DEMO_PASSWORD, DEMO_USERNAME, MockBackend, create_app, seed_crops


@pytest.fixture
def backend() -> MockBackend:
    return MockBackend(crops=seed_crops(60))


@pytest_asyncio.fixture
async def client(backend: MockBackend, settings: Settings):
    transport = httpx.ASGITransport(app=create_app(backend))
    async with ApiClient(MemorySessionStore(), settings, transport=transport) as api:
        yield api


async def login(client: ApiClient) -> SessionManager:
    manager = SessionManager(AuthService(client), client.store)
    await manager.login(DEMO_USERNAME, DEMO_PASSWORD)
    return manager


@pytest.mark.asyncio
async def test_login_and_bootstrap(client: ApiClient) -> None:
    await login(client)
    session = await SessionManager(AuthService(client), client.store).bootstrap()
    assert session.user is not None
    assert session.user.username == DEMO_USERNAME


@pytest.mark.asyncio
async def test_wrong_password_is_rejected_without_refresh(client: ApiClient, backend: MockBackend) -> None:
    manager = SessionManager(AuthService(client), client.store)
    with pytest.raises(AuthenticationError) as exc_info:
        await manager.login(DEMO_USERNAME, "wrong")
    assert exc_info.value.data == {"detail": "No active account found with the given credentials"}
    assert backend.refresh_calls == 0


@pytest.mark.asyncio
async def test_expired_access_token_is_refreshed(client: ApiClient, backend: MockBackend) -> None:
    await login(client)
    old_refresh = await client.store.get("refresh_token")
    backend.expire_access_tokens()

    page = await CropService(client).fetch_crops(QueryStateStore(MemoryLocation("pageSize=25")).read())

    assert page.count == 60
    assert len(page.results) == 25
    assert backend.refresh_calls == 1
    assert await client.store.get("refresh_token") != old_refresh


@pytest.mark.asyncio
async def test_revoked_refresh_token_ends_session(client: ApiClient, backend: MockBackend) -> None:
    await login(client)
    backend.expire_access_tokens()
    backend.refresh_tokens.clear()

    with pytest.raises(SessionExpiredError):
        await CropService(client).get_crop("1")
    assert await client.store.get("access_token") is None
    assert await client.store.get("refresh_token") is None
    assert backend.refresh_calls == 1


@pytest.mark.asyncio
async def test_url_state_drives_table_query(client: ApiClient) -> None:
    await login(client)
    store = QueryStateStore(MemoryLocation())
    store.apply_table_change(
        TablePagination(1, 50),
        {"country": ["USA", "Canada"]},
        SortSpec("yield_amount", "descend"),
    )
    loader = TableLoader(CropService(client).fetch_crops)
    assert await loader.load(store.read()) is True

    rows = loader.state.rows
    assert rows
    assert {r.country for r in rows} <= {"USA", "Canada"}
    yields = [r.yield_amount for r in rows if r.yield_amount is not None]
    assert yields == sorted(yields, reverse=True)


@pytest.mark.asyncio
async def test_search_and_filter_options(client: ApiClient) -> None:
    await login(client)
    crops = CropService(client)
    options = await crops.fetch_filter_options()
    assert options.crops
    store = QueryStateStore(MemoryLocation("page=3"))
    view = store.apply_search(options.crops[0])
    page = await crops.fetch_crops(view)
    assert view.page == 1
    assert all(options.crops[0].lower() in r.crop_name.lower() for r in page.results)


@pytest.mark.asyncio
async def test_form_submission_round_trip(client: ApiClient, backend: MockBackend) -> None:
    await login(client)
    form = validate_entry(
        {
            "fullName": "Jane Doe",
            "email": "jane@example.com",
            "password": "SecurePass123",
            "contactMethod": "email",
            "agreeTerms": True,
        }
    )
    forms = FormService(client)
    await forms.submit(form)
    assert backend.submissions[0]["full_name"] == "Jane Doe"
    assert backend.submissions[0]["agree_terms"] is True

    with pytest.raises(FormValidationError) as exc_info:
        await forms.submit(form)
    assert exc_info.value.errors == {"email": ["An entry with this email already exists."]}


@pytest.mark.asyncio
async def test_logout_revokes_refresh_token(client: ApiClient, backend: MockBackend) -> None:
    manager = await login(client)
    refresh = await client.store.get("refresh_token")
    await manager.logout()
    assert refresh not in backend.refresh_tokens
    assert await client.store.get("access_token") is None
