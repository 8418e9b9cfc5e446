from typing import Any, Dict, List

import httpx


class ApiError(Exception):
    """Non-2xx response from the remote API."""

    def __init__(self, message: str, status_code: int | None = None, data: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.data = data

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ApiError":
        """Build the matching error subclass for a failed response."""
        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        message = f"{response.request.method} {response.request.url.path} failed with {response.status_code}"
        if response.status_code == 401:
            return AuthenticationError(message, response.status_code, data)
        if response.status_code == 400:
            return BadRequestError(message, response.status_code, data)
        return cls(message, response.status_code, data)


class AuthenticationError(ApiError):
    """The request could not be authorized, even after a refresh attempt."""


class SessionExpiredError(AuthenticationError):
    """Token refresh failed and the stored session was cleared."""


NON_FIELD_KEYS = frozenset({"detail", "error", "message", "code", "non_field_errors"})


class BadRequestError(ApiError):
    """400 response, usually carrying field-level validation details."""

    def field_errors(self) -> Dict[str, List[str]]:
        """Return {field: [messages]} or {} when the body has no field structure."""
        data = self.data
        if isinstance(data, dict) and isinstance(data.get("details"), dict):
            data = data["details"]
        if not isinstance(data, dict):
            return {}
        errors: Dict[str, List[str]] = {}
        for name, value in data.items():
            if name in NON_FIELD_KEYS:
                continue
            if isinstance(value, list):
                errors[name] = [str(v) for v in value]
            elif isinstance(value, str):
                errors[name] = [value]
        return errors


class FormValidationError(Exception):
    """Client-side validation failed; errors are keyed by form field name."""

    def __init__(self, errors: Dict[str, List[str]]) -> None:
        super().__init__("; ".join(f"{k}: {', '.join(v)}" for k, v in errors.items()))
        self.errors = errors


class LogoutError(Exception):
    """The remote logout call failed. Local credentials are already cleared."""


def describe_error(exc: BaseException, fallback: str = "Request failed.") -> str:
    """Pick the most specific user-facing message from an API error body."""
    data = getattr(exc, "data", None)
    if isinstance(data, dict):
        details = data.get("details")
        if isinstance(details, dict) and details.get("message"):
            return str(details["message"])
        for key in ("error", "detail"):
            if data.get(key):
                return str(data[key])
    return fallback
