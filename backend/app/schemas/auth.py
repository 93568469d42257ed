# backend/app/schemas/auth.py
"""Request/response bodies for /auth. Wire names are camelCase."""
from datetime import datetime
from typing import Generic, Optional, TypeVar
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

T = TypeVar("T")

USERNAME_PATTERN = r"^[a-zA-Z0-9_-]+$"
HEX_PATTERN = r"^[0-9a-fA-F]+$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiResponse(CamelModel, Generic[T]):
    success: bool = True
    data: T


# --- Shared field validation ---

class _EmailMixin(CamelModel):
    @field_validator("email", mode="after", check_fields=False)
    @classmethod
    def lowercase_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if len(v) > 255:
            raise ValueError("Email must be less than 255 characters")
        return v.lower()


# --- Availability ---

class CheckAvailabilityRequest(_EmailMixin):
    email: Optional[EmailStr] = None
    username: Optional[str] = Field(default=None, min_length=3, max_length=50, pattern=USERNAME_PATTERN)

    @model_validator(mode="after")
    def require_one(self) -> "CheckAvailabilityRequest":
        if not self.email and not self.username:
            raise ValueError("Either email or username must be provided")
        return self


class AvailabilityEntry(CamelModel):
    available: bool
    value: str


class CheckAvailabilityResponse(CamelModel):
    email: Optional[AvailabilityEntry] = None
    username: Optional[AvailabilityEntry] = None


# --- Registration ---

class RegisterInitRequest(_EmailMixin):
    email: EmailStr
    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)


class RegisterInitResponse(CamelModel):
    registration_token: str


class RegisterCompleteRequest(_EmailMixin):
    email: EmailStr
    username: str = Field(min_length=3, max_length=50, pattern=USERNAME_PATTERN)
    srp_salt: str = Field(min_length=64, max_length=64, pattern=HEX_PATTERN)
    # Hex shape and the lower bound are checked by the service (400 either way)
    srp_verifier: str = Field(min_length=1, max_length=1024)
    vault_key_encrypted: str = Field(min_length=1, max_length=4096)
    public_key: str = Field(min_length=1, max_length=2048)
    private_key_encrypted: str = Field(min_length=1, max_length=4096)


class UserOut(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)

    id: str
    email: str
    username: str
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class RegisterCompleteResponse(CamelModel):
    user: UserOut


# --- Login ---

class LoginInitRequest(CamelModel):
    identifier: str = Field(min_length=1, max_length=255)


class LoginInitResponse(CamelModel):
    session_id: str
    server_public_key: str
    salt: str


class LoginVerifyRequest(CamelModel):
    session_id: UUID
    client_public_key: str = Field(min_length=1, max_length=1024, pattern=HEX_PATTERN)
    client_proof: str = Field(min_length=1, max_length=256, pattern=HEX_PATTERN)


class LoginVerifyResponse(CamelModel):
    user: UserOut
    server_proof: str
