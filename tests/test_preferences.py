import pytest

from agridash.services.preferences import get_theme, toggle_theme
from agridash.services.session_store import MemorySessionStore


@pytest.mark.asyncio
async def test_theme_defaults_to_light() -> None:
    assert await get_theme(MemorySessionStore()) == "light"
    assert await get_theme(MemorySessionStore({"theme": "solarized"})) == "light"


@pytest.mark.asyncio
async def test_toggle_persists_and_survives_logout() -> None:
    store = MemorySessionStore({"access_token": "a", "refresh_token": "r"})
    assert await toggle_theme(store) == "dark"
    await store.clear()
    assert store.snapshot() == {"theme": "dark"}
    assert await toggle_theme(store) == "light"
