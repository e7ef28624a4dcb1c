"""Request and response bodies for the users service.

JSON on the wire is camelCase; Python attributes are snake_case. Response
models never declare a password field, so a hash cannot leak through them.
"""

import datetime
import re
from dataclasses import dataclass
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, ValidationInfo, field_validator, model_validator
from pydantic.alias_generators import to_camel

from services.users.app.models import ROLES

PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
PHONE_PATTERN    = re.compile(r"^\+?\d{7,15}$")

SortField = Literal["createdAt", "updatedAt", "email", "firstName", "lastName", "lastLoginAt"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _check_password(value: str, label: str = "Password") -> str:
    if len(value) < 8:
        raise ValueError(f"{label} must be at least 8 characters long")
    if len(value.encode()) > 72:
        raise ValueError(f"{label} must be at most 72 bytes long")
    if not PASSWORD_PATTERN.match(value):
        raise ValueError(f"{label} must contain at least one lowercase letter, one uppercase letter, and one number")
    return value


def _check_name(value: Optional[str], label: str) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    if not 1 <= len(value) <= 50:
        raise ValueError(f"{label} must be between 1 and 50 characters")
    return value


def _check_phone(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    compact = re.sub(r"[\s\-().]", "", value)
    if not PHONE_PATTERN.match(compact):
        raise ValueError("Please provide a valid phone number")
    return compact


def _check_role(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in ROLES:
        raise ValueError("Invalid role specified")
    return value


class ProfileFields(CamelModel):
    first_name: Optional[str] = None
    last_name:  Optional[str] = None
    phone:      Optional[str] = None

    @field_validator("first_name")
    @classmethod
    def _first_name(cls, v):
        return _check_name(v, "First name")

    @field_validator("last_name")
    @classmethod
    def _last_name(cls, v):
        return _check_name(v, "Last name")

    @field_validator("phone")
    @classmethod
    def _phone(cls, v):
        return _check_phone(v)


class UserCreate(ProfileFields):
    email:    EmailStr
    password: str
    role:     str = "user"

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        return _check_password(v)

    @field_validator("role")
    @classmethod
    def _role(cls, v: str) -> str:
        return _check_role(v)


class LoginRequest(CamelModel):
    email:    EmailStr
    password: str

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("password")
    @classmethod
    def _password(cls, v: str) -> str:
        if not v:
            raise ValueError("Password is required")
        return v


class UserUpdate(ProfileFields):
    email:       Optional[EmailStr] = None
    role:        Optional[str]      = None
    is_active:   Optional[bool]     = None
    is_verified: Optional[bool]     = None
    # Accepted only so the route can reject them with a pointer to change-password.
    password:         Optional[str] = None
    password_confirm: Optional[str] = None

    # Optional only so a PATCH may omit them; the columns are NOT NULL.
    @field_validator("email", "role", "is_active", "is_verified", mode="before")
    @classmethod
    def _not_null(cls, v, info: ValidationInfo):
        if v is None:
            raise ValueError(f"{to_camel(info.field_name)} cannot be null")
        return v

    @field_validator("email")
    @classmethod
    def _email(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("role")
    @classmethod
    def _role(cls, v):
        return _check_role(v)

    def changes(self) -> dict:
        """Fields the client actually sent, minus the password ones."""
        return self.model_dump(exclude_unset=True, exclude={"password", "password_confirm"})


class ChangePasswordRequest(CamelModel):
    current_password: Optional[str] = None
    new_password:     str
    confirm_password: str

    @field_validator("new_password")
    @classmethod
    def _new_password(cls, v: str) -> str:
        return _check_password(v, "New password")

    @model_validator(mode="after")
    def _confirmation_matches(self):
        if self.confirm_password != self.new_password:
            raise ValueError("Password confirmation does not match password")
        return self


class UserPublic(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id:            str
    email:         str
    first_name:    Optional[str] = None
    last_name:     Optional[str] = None
    name:          Optional[str] = None
    phone:         Optional[str] = None
    role:          str
    is_active:     bool
    is_verified:   bool
    last_login_at: Optional[datetime.datetime] = None
    created_at:    datetime.datetime
    updated_at:    datetime.datetime
    deleted_at:    Optional[datetime.datetime] = None


def public_user(user) -> dict:
    return UserPublic.model_validate(user).model_dump(by_alias=True, mode="json")


@dataclass
class UserFilters:
    page:            int = 1
    limit:           int = 10
    search:          Optional[str] = None
    sort_by:         str = "createdAt"
    sort_order:      str = "desc"
    is_active:       Optional[bool] = None
    is_verified:     Optional[bool] = None
    role:            Optional[str] = None
    include_deleted: bool = False


@dataclass
class Pagination:
    total:       int
    page:        int
    limit:       int
    total_pages: int
    has_next:    bool
    has_prev:    bool

    def to_dict(self) -> dict:
        return {
            "total":      self.total,
            "page":       self.page,
            "limit":      self.limit,
            "totalPages": self.total_pages,
            "hasNext":    self.has_next,
            "hasPrev":    self.has_prev,
        }


@dataclass
class UserPage:
    items:      list
    pagination: Pagination
