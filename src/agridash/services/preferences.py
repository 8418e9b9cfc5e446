import logging
from typing import Literal

from .session_store import THEME, SessionStore

logger = logging.getLogger(__name__)

Theme = Literal["light", "dark"]


async def get_theme(store: SessionStore) -> Theme:
    """Stored theme; anything but "dark" reads as light."""
    return "dark" if await store.get(THEME) == "dark" else "light"


async def set_theme(store: SessionStore, theme: Theme) -> None:
    await store.set(THEME, theme)


async def toggle_theme(store: SessionStore) -> Theme:
    new_theme: Theme = "light" if await get_theme(store) == "dark" else "dark"
    await set_theme(store, new_theme)
    logger.debug("Theme switched to %s", new_theme)
    return new_theme
