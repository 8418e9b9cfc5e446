"""Remote API access: authenticated client, session storage and endpoint services."""

from .api_client import ApiClient
from .auth_service import AuthService, SessionManager
from .crop_service import CropService, build_table_params
from .form_service import EntryForm, FormService, RegisterData, validate_entry, validate_form
from .session_store import (
    FileSessionStore,
    MemorySessionStore,
    RedisSessionStore,
    SessionStore,
    get_session_store,
)
from .table_loader import TableLoader

__all__ = [
    "ApiClient",
    "AuthService",
    "CropService",
    "EntryForm",
    "FileSessionStore",
    "FormService",
    "MemorySessionStore",
    "RedisSessionStore",
    "RegisterData",
    "SessionManager",
    "SessionStore",
    "TableLoader",
    "build_table_params",
    "get_session_store",
    "validate_entry",
    "validate_form",
]
