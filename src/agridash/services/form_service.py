import logging
import re
from typing import Any, Dict, List, Literal, Mapping, NoReturn, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel, to_snake

from .. import endpoints
from ..errors import BadRequestError, FormValidationError
from .api_client import ApiClient

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
URL_PATTERN = re.compile(r"^https?://.+")
PHONE_PATTERN = re.compile(r"^[0-9+\-\s()]*$")
USERNAME_PATTERN = re.compile(r"^[\w.@+-]+$")

# Server field names that differ from the entry form's.
SERVER_TO_FORM_FIELDS = {
    "full_name": "fullName",
    "contact_method": "contactMethod",
    "agree_terms": "agreeTerms",
}

PHONE_CONTACT_METHODS = ("phone", "both")

FormT = TypeVar("FormT", bound=BaseModel)


def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _check_password_strength(v: str) -> str:
    if len(v) < 8:
        raise ValueError("Password must be at least 8 characters")
    if not re.search(r"[A-Z]", v):
        raise ValueError("Uppercase required")
    if not re.search(r"[a-z]", v):
        raise ValueError("Lowercase required")
    if not re.search(r"\d", v):
        raise ValueError("Digit required")
    return v


def _check_email(v: str) -> str:
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Please enter a valid email")
    return v


class EntryForm(BaseModel):
    """New yield entry; attributes are snake_case, inputs use camelCase names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    full_name: str
    email: str
    password: str
    contact_method: Literal["email", "phone", "both"] = "email"
    phone: str | None = Field(default=None, validate_default=True)
    age: int | None = None
    country: str | None = None
    website: str | None = None
    bio: str | None = None
    agree_terms: bool = Field(default=False, validate_default=True)

    @field_validator("phone", "country", "website", "bio", mode="before")
    @classmethod
    def optional_blank(cls, v: Any) -> Any:
        return _blank_to_none(v)

    @field_validator("full_name")
    @classmethod
    def check_full_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 3:
            raise ValueError("Full name must be at least 3 characters")
        if len(v) > 100:
            raise ValueError("Full name must be at most 100 characters")
        return v

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return _check_email(v.strip())

    @field_validator("password")
    @classmethod
    def check_password(cls, v: str) -> str:
        return _check_password_strength(v)

    @field_validator("phone")
    @classmethod
    def check_phone(cls, v: str | None, info: ValidationInfo) -> str | None:
        if v is None:
            if info.data.get("contact_method") in PHONE_CONTACT_METHODS:
                raise ValueError("Phone is required")
            return v
        if not PHONE_PATTERN.match(v):
            raise ValueError("Invalid phone characters")
        if len(v) < 10:
            raise ValueError("Phone number must be at least 10 digits")
        return v

    @field_validator("age")
    @classmethod
    def check_age(cls, v: int | None) -> int | None:
        if v is not None and not 1 <= v <= 150:
            raise ValueError("Valid age required")
        return v

    @field_validator("website")
    @classmethod
    def check_website(cls, v: str | None) -> str | None:
        if v is not None and not URL_PATTERN.match(v):
            raise ValueError("Please enter a valid URL")
        return v

    @field_validator("bio")
    @classmethod
    def check_bio(cls, v: str | None) -> str | None:
        if v is not None and len(v) > 500:
            raise ValueError("Bio cannot exceed 500 characters")
        return v

    @field_validator("agree_terms")
    @classmethod
    def check_terms(cls, v: bool) -> bool:
        if not v:
            raise ValueError("Agree to terms")
        return v

    def to_payload(self) -> Dict[str, Any]:
        """Snake_case request body; unset optional fields are left out."""
        return to_api_payload(self.model_dump(by_alias=True, exclude_none=True))


class RegisterData(BaseModel):
    """Signup form. Field names already match the server's."""

    username: str
    email: str
    first_name: str
    last_name: str
    password: str
    password_confirm: str

    @field_validator("username")
    @classmethod
    def check_username(cls, v: str) -> str:
        if len(v) < 3:
            raise ValueError("Username must be at least 3 characters")
        if len(v) > 150:
            raise ValueError("Username must be at most 150 characters")
        if not USERNAME_PATTERN.match(v):
            raise ValueError("Letters, digits and @/./+/-/_ only.")
        return v

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        return _check_email(v.strip())

    @field_validator("first_name", "last_name")
    @classmethod
    def check_name(cls, v: str, info: ValidationInfo) -> str:
        label = info.field_name.replace("_", " ").capitalize()
        v = v.strip()
        if len(v) < 2:
            raise ValueError(f"{label} must be at least 2 characters")
        if len(v) > 30:
            raise ValueError(f"{label} must be at most 30 characters")
        return v

    @field_validator("password")
    @classmethod
    def check_password(cls, v: str) -> str:
        return _check_password_strength(v)

    @field_validator("password_confirm")
    @classmethod
    def check_confirm(cls, v: str, info: ValidationInfo) -> str:
        password = info.data.get("password")
        if password is not None and v != password:
            raise ValueError("Passwords do not match!")
        return v


REQUIRED_MESSAGES = {
    "fullName": "Please input your full name",
    "email": "Please input your email",
    "password": "Please input your password",
    "contactMethod": "Please select a contact method",
    "username": "Please input your username!",
    "first_name": "Please input your first name!",
    "last_name": "Please input your last name!",
    "password_confirm": "Please confirm your password!",
}


def _errors_from_validation(model: Type[BaseModel], exc: ValidationError) -> Dict[str, List[str]]:
    errors: Dict[str, List[str]] = {}
    for err in exc.errors():
        name = str(err["loc"][0]) if err["loc"] else "__all__"
        # Errors on defaults are located by attribute name, not alias.
        field = model.model_fields.get(name)
        if field is not None and field.alias:
            name = field.alias
        if err["type"] == "missing":
            message = REQUIRED_MESSAGES.get(name, "This field is required")
        else:
            message = err["msg"].removeprefix("Value error, ")
        errors.setdefault(name, []).append(message)
    return errors


def validate_form(model: Type[FormT], values: Mapping[str, Any]) -> FormT:
    """Validate raw form values, raising FormValidationError keyed by field name."""
    try:
        return model.model_validate(dict(values))
    except ValidationError as e:
        raise FormValidationError(_errors_from_validation(model, e)) from e


def validate_entry(values: Mapping[str, Any]) -> EntryForm:
    return validate_form(EntryForm, values)


def to_api_payload(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Rename camelCase form keys to the server's snake_case, dropping None."""
    return {to_snake(key): value for key, value in values.items() if value is not None}


def map_server_errors(
    field_errors: Mapping[str, Any],
    name_map: Mapping[str, str] = SERVER_TO_FORM_FIELDS,
) -> Dict[str, List[str]]:
    """Key server-side field errors by form field name; messages become lists."""
    mapped: Dict[str, List[str]] = {}
    for server_name, messages in field_errors.items():
        name = name_map.get(server_name, server_name)
        if isinstance(messages, list):
            mapped[name] = [str(m) for m in messages]
        else:
            mapped[name] = [str(messages)]
    return mapped


def raise_field_errors(exc: BadRequestError, name_map: Mapping[str, str] = SERVER_TO_FORM_FIELDS) -> NoReturn:
    """Re-raise a 400 as FormValidationError when it carries field errors."""
    field_errors = exc.field_errors()
    if not field_errors:
        raise exc
    raise FormValidationError(map_server_errors(field_errors, name_map)) from exc


class FormService:
    """Submits the entry form."""

    def __init__(self, client: ApiClient) -> None:
        self._client = client

    async def submit(self, form: EntryForm) -> None:
        """Post the form.

        Raises:
            FormValidationError: the server rejected individual fields.
            ApiError: any other failure, including 400s without field details.
        """
        try:
            await self._client.post(endpoints.FORM_SUBMIT, json=form.to_payload())
        except BadRequestError as e:
            logger.info("Form rejected by server: %s", e.data)
            raise_field_errors(e)
        logger.info("Form submitted")
