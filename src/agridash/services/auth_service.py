import logging
from typing import Any, Dict

import httpx
from pydantic import ValidationError

from .. import endpoints
from ..errors import ApiError, BadRequestError, LogoutError
from ..models import LoginResponse, Session, User
from .api_client import ApiClient
from .form_service import RegisterData, raise_field_errors
from .session_store import ACCESS_TOKEN, REFRESH_TOKEN, SessionStore

logger = logging.getLogger(__name__)


class AuthService:
    """Thin wrappers over the authentication endpoints."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    async def login(self, username: str, password: str) -> LoginResponse:
        data = await self._client.post(endpoints.LOGIN, json={"username": username, "password": password})
        return LoginResponse.model_validate(data)

    async def get_current_user(self) -> User:
        data = await self._client.get(endpoints.CURRENT_USER)
        return User.model_validate(data)

    async def logout(self, refresh_token: str | None) -> None:
        await self._client.post(endpoints.LOGOUT, json={"refresh": refresh_token})

    async def register(self, values: Dict[str, Any]) -> None:
        await self._client.post(endpoints.SIGNUP, json=values)


class SessionManager:
    """Owns the Session: bootstrap from stored tokens, login and logout."""

    def __init__(self, auth: AuthService, store: SessionStore) -> None:
        self._auth = auth
        self._store = store
        self.session = Session()

    async def bootstrap(self) -> Session:
        """Resolve the current user if an access token is stored.

        Any failure clears the stored tokens so that the user and the
        credentials never disagree.
        """
        access = await self._store.get(ACCESS_TOKEN)
        if not access:
            self.session = Session()
            return self.session
        try:
            user = await self._auth.get_current_user()
        except (ApiError, httpx.RequestError, ValidationError) as e:
            logger.info("Stored session is no longer valid: %s", e)
            await self._store.clear()
            self.session = Session()
            return self.session
        self.session = Session(
            access_token=await self._store.get(ACCESS_TOKEN),
            refresh_token=await self._store.get(REFRESH_TOKEN),
            user=user,
        )
        return self.session

    async def login(self, username: str, password: str) -> Session:
        """Authenticate and persist both tokens. Errors propagate to the caller."""
        response = await self._auth.login(username, password)
        await self._store.set(ACCESS_TOKEN, response.access)
        await self._store.set(REFRESH_TOKEN, response.refresh)
        self.session = Session(
            access_token=response.access,
            refresh_token=response.refresh,
            user=response.user,
        )
        logger.info("Logged in as %s", response.user.username)
        return self.session

    async def logout(self) -> None:
        """Invalidate the refresh token remotely and always clear local state.

        Raises:
            LogoutError: the remote call failed (local state is cleared anyway).
        """
        refresh = await self._store.get(REFRESH_TOKEN)
        try:
            await self._auth.logout(refresh)
        except (ApiError, httpx.RequestError) as e:
            logger.warning("Remote logout failed: %s", e)
            raise LogoutError("Logout failed") from e
        finally:
            await self._store.clear()
            self.session = Session()
        logger.info("Logged out")

    async def signup(self, data: RegisterData) -> None:
        """Register a new account.

        Raises:
            FormValidationError: the server rejected individual fields.
        """
        try:
            await self._auth.register(data.model_dump())
        except BadRequestError as e:
            raise_field_errors(e, name_map={})
        logger.info("Registered %s", data.username)
