"""Auth and API key request/response schemas."""

from typing import Optional

from pydantic import BaseModel, Field


class RegisterRequest(BaseModel):
    email: str
    password: str = Field(min_length=6)
    name: str = ""


class LoginRequest(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: str
    email: str
    name: str
    role: str
    is_active: bool


class LoginResponse(BaseModel):
    access_token: str
    user: UserResponse


class RoleUpdateRequest(BaseModel):
    role: str


# --- API keys ---

class ApiKeyCreateRequest(BaseModel):
    name: str
    expires_in_days: Optional[int] = Field(default=None, gt=0)


class ApiKeyResponse(BaseModel):
    id: str
    name: str
    key_prefix: str
    is_active: bool
    expires_at: Optional[str]
    last_used_at: Optional[str]
    created_at: str


class ApiKeyCreateResponse(ApiKeyResponse):
    key: str  # shown once
