"""Request/response schemas for the auth flows.

Learn: Only the shapes the auth and token flows need live here. Success
responses share one envelope: {"status": "success", "message", "data"}.
"""

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from warden.stores.base import RoleType, UserRecord


def success(message: str, data: Any = None) -> dict:
    body = {"status": "success", "message": message}
    if data is not None:
        body["data"] = data
    return body


# ─── Requests ────────────────────────────────────────────


class _PasswordConfirmMixin(BaseModel):
    password: str = Field(min_length=6, max_length=64)
    password_confirm: str = Field(alias="passwordConfirm", min_length=1)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.password_confirm:
            raise ValueError("passwords do not match")
        return self


class SignUpRequest(_PasswordConfirmMixin):
    name: str = Field(min_length=4, max_length=20)
    email: EmailStr


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=64)


class EmailRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(_PasswordConfirmMixin):
    token: str = Field(min_length=1, max_length=64)


# ─── Responses ───────────────────────────────────────────


class UserResponse(BaseModel):
    id: uuid.UUID
    name: str
    email: str
    role: Optional[RoleType] = None
    verified: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, user: UserRecord, role: Optional[RoleType] = None) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=role,
            verified=user.is_verified,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )
