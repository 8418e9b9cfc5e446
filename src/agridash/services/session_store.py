import asyncio
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN = "access_token"
REFRESH_TOKEN = "refresh_token"
THEME = "theme"

TOKEN_KEYS = (ACCESS_TOKEN, REFRESH_TOKEN)


class SessionStore(ABC):
    """Durable client-side key/value storage for credentials and preferences.

    Every value is a single string under a fixed key. Writes are
    last-write-wins; there is no multi-key transaction.
    """

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value for key, or None if missing."""

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store value under key."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Missing keys are ignored."""

    async def clear(self, keys: Iterable[str] = TOKEN_KEYS) -> None:
        """Remove the given keys (both tokens by default)."""
        for key in keys:
            await self.delete(key)

    async def close(self) -> None:
        """Release backend resources. Idempotent."""


class MemorySessionStore(SessionStore):
    """Process-local store; nothing survives a restart."""

    def __init__(self, initial: Dict[str, str] | None = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class FileSessionStore(SessionStore):
    """JSON file on local disk, the desktop counterpart of browser local storage."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Unreadable session file %s: %s", self._path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Session file %s does not hold an object; ignoring", self._path)
            return {}
        return {str(k): str(v) for k, v in data.items()}

    def _save(self, data: Dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        tmp.replace(self._path)

    async def get(self, key: str) -> str | None:
        return self._load().get(key)

    async def set(self, key: str, value: str) -> None:
        async with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    async def delete(self, key: str) -> None:
        async with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)


class RedisSessionStore(SessionStore):
    """Session values in Redis, namespaced by a key prefix."""

    def __init__(self, url: str, prefix: str = "agridash:") -> None:
        """Create a store for the given URL (e.g. redis://localhost:6379/0)."""
        self._url = url
        self._prefix = prefix
        self._client: Redis | None = None

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def connect(self) -> Redis:
        """Establish connection to Redis and return the client. Idempotent."""
        if self._client is not None:
            return self._client
        client = Redis.from_url(self._url, decode_responses=True)
        try:
            await client.ping()
            logger.info("Redis connection established: %s", self._url.split("@")[-1])
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.warning("Redis ping failed: %s", e)
            await client.aclose()
            raise
        self._client = client
        return client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.debug("Redis connection closed")

    async def get(self, key: str) -> str | None:
        client = await self.connect()
        value = await client.get(self._key(key))
        return value if value is None else str(value)

    async def set(self, key: str, value: str) -> None:
        client = await self.connect()
        await client.set(self._key(key), value)

    async def delete(self, key: str) -> None:
        client = await self.connect()
        await client.delete(self._key(key))


def get_session_store(settings: Settings | None = None) -> SessionStore:
    """Build the store selected by the session_store setting."""
    settings = settings or get_settings()
    if settings.session_store == "memory":
        return MemorySessionStore()
    if settings.session_store == "redis":
        if not settings.redis_url or not settings.redis_url.strip():
            raise ValueError("session_store is 'redis' but redis_url is not set")
        return RedisSessionStore(settings.redis_url.strip(), prefix=settings.session_key_prefix)
    return FileSessionStore(settings.session_store_path)
