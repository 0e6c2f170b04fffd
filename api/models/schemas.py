"""
Pydantic schemas for the Checklist Sync API.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field


# =============================================================================
# Enums
# =============================================================================

class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# =============================================================================
# Authentication Schemas
# =============================================================================

class UserCreate(BaseModel):
    """Schema for user registration."""
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    full_name: str = Field("", max_length=255)


class UserLogin(BaseModel):
    """Schema for user login."""
    email: EmailStr
    password: str


class UserResponse(BaseModel):
    """Signed-in user as returned by ``/auth/user`` (no password)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    email: str
    created_at: datetime
    user_metadata: dict[str, Any] = Field(default_factory=dict)


class RefreshRequest(BaseModel):
    """Schema for exchanging a refresh token."""
    refresh_token: str


class TokenResponse(BaseModel):
    """Schema for JWT token response."""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = Field(..., description="Token expiration in seconds")


class TokenPayload(BaseModel):
    """Schema for JWT token payload."""
    sub: UUID
    exp: datetime
    iat: datetime
    type: str
    jti: str


# =============================================================================
# Collection Schemas
# =============================================================================

class CollectionUpsert(BaseModel):
    """Replacement document for one collection."""
    data: Any
    updated_at: Optional[datetime] = None


class CollectionResponse(BaseModel):
    """Stored collection document."""
    model_config = ConfigDict(from_attributes=True)

    user_id: UUID
    data: Any
    updated_at: datetime


class ChangeMessage(BaseModel):
    """Change notification pushed over the realtime WebSocket."""
    model_config = ConfigDict(populate_by_name=True)

    event_type: ChangeType = Field(..., alias="eventType")
    table: str
    new: dict[str, Any] = Field(default_factory=dict)
    old: dict[str, Any] = Field(default_factory=dict)


# =============================================================================
# Account Schemas
# =============================================================================

class ProfileBase(BaseModel):
    email: str = ""
    full_name: str = ""
    avatar_url: str = ""
    settings: dict[str, Any] = Field(default_factory=dict)


class ProfileCreate(ProfileBase):
    """New profile row; tier and role are assigned by the server."""
    id: UUID
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class ProfileUpdate(BaseModel):
    """Partial profile update."""
    full_name: Optional[str] = None
    avatar_url: Optional[str] = None
    last_login: Optional[datetime] = None
    settings: Optional[dict[str, Any]] = None


class ProfileResponse(ProfileBase):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_tier: str = "free"
    role: str = "user"
    created_at: datetime
    last_login: Optional[datetime] = None


class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: UUID
    status: SubscriptionStatus
    tier: str
    created_at: datetime
    current_period_end: Optional[datetime] = None


class EventCreate(BaseModel):
    """Telemetry event."""
    user_id: UUID
    event_name: str = Field(..., min_length=1, max_length=100)
    properties: dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class EventResponse(EventCreate):
    model_config = ConfigDict(from_attributes=True)

    id: int
    created_at: datetime


class UserStats(BaseModel):
    """Aggregate usage numbers for one user."""
    total_todos: int = 0
    completed_todos: int = 0
    total_mindmaps: int = 0
    total_nodes: int = 0
    streak_days: int = 0


# =============================================================================
# Common Response Schemas
# =============================================================================

class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    status_code: int


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "healthy"
    version: str
    database: str = "connected"
