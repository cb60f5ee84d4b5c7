from __future__ import annotations

import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from starterauth.service.errors import ErrorCodes

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
STRONG_PASSWORD_PATTERN = re.compile(
    r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]{8,}$"
)
NAME_PATTERN = re.compile(r"^[a-zA-Z0-9\s-]+$")


def _validate_email(value: str) -> str:
    email = (value or "").strip().lower()
    if len(email) > 254 or not EMAIL_PATTERN.match(email):
        raise PydanticCustomError(ErrorCodes.VALIDATION.INVALID_EMAIL, "invalid email address")
    return email


def _validate_password_length(value: str) -> str:
    if len(value) < MIN_PASSWORD_LENGTH:
        raise PydanticCustomError(
            ErrorCodes.VALIDATION.PASSWORD_TOO_SHORT,
            "password must be at least {min} characters",
            {"min": MIN_PASSWORD_LENGTH},
        )
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def _validate_password_strength(value: str) -> str:
    _validate_password_length(value)
    if not STRONG_PASSWORD_PATTERN.match(value):
        raise PydanticCustomError(
            ErrorCodes.VALIDATION.PASSWORD_TOO_WEAK,
            "password must contain an uppercase letter, a lowercase letter, a number "
            "and one of @$!%*?&",
        )
    return value


def _validate_name(value: str) -> str:
    name = value.strip()
    if not 2 <= len(name) <= 50 or not NAME_PATTERN.match(name):
        raise PydanticCustomError(
            ErrorCodes.VALIDATION.INVALID_NAME,
            "name must be 2-50 characters of letters, numbers, spaces and hyphens",
        )
    return name


class CamelModel(BaseModel):
    """JSON bodies use camelCase keys; snake_case is accepted as well."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class LoginRequest(CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class RegisterRequest(CamelModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_length(value)


class EmailRequest(CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return _validate_email(value)


class ResetPasswordRequest(CamelModel):
    token: str = Field(..., min_length=1, max_length=256)
    password: str

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UpdatePasswordRequest(CamelModel):
    current_password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class CreateUserRequest(CamelModel):
    email: str
    password: str
    name: Optional[str] = Field(default=None, max_length=50)

    @field_validator("email")
    @classmethod
    def _validate_create_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class UpdateUserRequest(CamelModel):
    email: Optional[str] = None
    name: Optional[str] = Field(default=None, max_length=50)
    password: Optional[str] = None

    @field_validator("email")
    @classmethod
    def _validate_update_email(cls, value: Optional[str]) -> Optional[str]:
        return _validate_email(value) if value is not None else None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: Optional[str]) -> Optional[str]:
        return _validate_password_length(value) if value is not None else None


class UpdateNameRequest(CamelModel):
    name: str

    @field_validator("name")
    @classmethod
    def _validate_profile_name(cls, value: str) -> str:
        return _validate_name(value)


class UserOut(CamelModel):
    id: str
    email: str
    name: Optional[str] = None
    is_email_confirmed: bool = False
    avatar_url: Optional[str] = None
    provider: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class AuthTokensOut(CamelModel):
    user: UserOut
    access_token: str
    refresh_token: str


class MessageOut(CamelModel):
    message: str


class ApiErrorMeta(BaseModel):
    language: str
    errors: Optional[List[str]] = None


class ApiErrorBody(BaseModel):
    code: str
    message: str
    status: int
    meta: ApiErrorMeta
