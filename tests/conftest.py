import sys
from pathlib import Path

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
for _path in (_src, _root):
    if _path.exists() and str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from agridash.services.session_store import MemorySessionStore  # noqa: E402
from agridash.settings import Settings  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    """Settings pointing at a test host with in-memory session storage."""
    return Settings(api_base_url="http://testserver", session_store="memory")


@pytest.fixture
def store() -> MemorySessionStore:
    """Session store holding an expired access token and a valid refresh token."""
    return MemorySessionStore({"access_token": "old-access", "refresh_token": "refresh-1"})
