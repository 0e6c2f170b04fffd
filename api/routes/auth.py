"""
Authentication routes for the Checklist Sync API.

Handles registration, password and redirect sign-in, token refresh and
sign-out.
"""

import logging
from typing import Annotated
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.core.config import settings
from api.core.security import (
    CurrentToken,
    CurrentUser,
    decode_token,
    hash_password,
    is_revoked,
    issue_tokens,
    revoke_token,
    unauthorized,
    verify_password,
)
from api.models.database import User, get_db
from api.models.schemas import (
    ErrorResponse,
    RefreshRequest,
    TokenResponse,
    UserCreate,
    UserLogin,
    UserResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def to_user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        created_at=user.created_at,
        user_metadata={
            "full_name": user.full_name,
            "avatar_url": user.avatar_url,
            "provider": user.provider,
        },
    )


# =============================================================================
# Registration
# =============================================================================

@router.post(
    "/register",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        201: {"description": "User created successfully"},
        400: {"description": "Invalid input or user already exists", "model": ErrorResponse},
    },
    summary="Register a new user",
)
async def register(
    user_data: UserCreate,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> UserResponse:
    """Create an email/password account. Emails are unique; passwords need 8+ characters."""
    existing = await db.execute(select(User).where(User.email == user_data.email))
    if existing.scalar_one_or_none():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered",
        )

    new_user = User(
        email=user_data.email,
        full_name=user_data.full_name,
        hashed_password=hash_password(user_data.password),
    )

    try:
        db.add(new_user)
        await db.commit()
        await db.refresh(new_user)
    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Registration failed. Please try again.",
        )

    logger.info(f"Registered user {new_user.id}")
    return to_user_response(new_user)


# =============================================================================
# Login
# =============================================================================

@router.post(
    "/login",
    response_model=TokenResponse,
    responses={
        200: {"description": "Login successful"},
        401: {"description": "Invalid credentials", "model": ErrorResponse},
    },
    summary="Login and get JWT tokens",
)
async def login(
    credentials: UserLogin,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> TokenResponse:
    """Authenticate with email and password; returns an access/refresh pair."""
    result = await db.execute(select(User).where(User.email == credentials.email))
    user = result.scalar_one_or_none()

    if not user or not verify_password(credentials.password, user.hashed_password):
        raise unauthorized("Invalid email or password")

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled",
        )

    return issue_tokens(user.id)


# =============================================================================
# Redirect Sign-In
# =============================================================================

@router.get(
    "/authorize",
    status_code=status.HTTP_302_FOUND,
    summary="Redirect sign-in",
    description=(
        "Development stand-in for a hosted identity provider. Signs in (or "
        "creates) the account for `login_hint` and redirects to `redirect_to` "
        "with the tokens in the URL fragment."
    ),
)
async def authorize(
    db: Annotated[AsyncSession, Depends(get_db)],
    provider: str,
    redirect_to: str,
    login_hint: Annotated[str | None, Query(max_length=255)] = None,
) -> RedirectResponse:
    if provider not in settings.oauth_providers:
        fragment = urlencode({
            "error": "unsupported_provider",
            "error_description": f"Provider '{provider}' is not enabled",
        })
        return RedirectResponse(f"{redirect_to}#{fragment}", status_code=status.HTTP_302_FOUND)

    email = login_hint or f"{provider}-user@checklist.dev"
    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(email=email, provider=provider)
        db.add(user)
        await db.commit()
        await db.refresh(user)
        logger.info(f"Created {provider} user {user.id}")

    if not user.is_active:
        fragment = urlencode({"error": "access_denied", "error_description": "Account is disabled"})
        return RedirectResponse(f"{redirect_to}#{fragment}", status_code=status.HTTP_302_FOUND)

    tokens = issue_tokens(user.id)
    fragment = urlencode(tokens.model_dump())
    return RedirectResponse(f"{redirect_to}#{fragment}", status_code=status.HTTP_302_FOUND)


# =============================================================================
# Token Refresh
# =============================================================================

@router.post(
    "/refresh",
    response_model=TokenResponse,
    responses={
        200: {"description": "Token refreshed successfully"},
        401: {"description": "Invalid or expired refresh token", "model": ErrorResponse},
    },
    summary="Refresh access token",
)
async def refresh_token(
    body: RefreshRequest,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> TokenResponse:
    """Exchange a refresh token for a new pair. The used refresh token is revoked."""
    token_data = decode_token(body.refresh_token, expected_type="refresh")

    if await is_revoked(db, token_data.jti):
        raise unauthorized("Refresh token has been revoked")

    result = await db.execute(select(User).where(User.id == token_data.sub))
    user = result.scalar_one_or_none()
    if user is None or not user.is_active:
        raise unauthorized("User not found")

    await revoke_token(db, token_data)
    return issue_tokens(user.id)


# =============================================================================
# Current User
# =============================================================================

@router.get(
    "/user",
    response_model=UserResponse,
    responses={
        200: {"description": "Current user information"},
        401: {"description": "Not authenticated", "model": ErrorResponse},
    },
    summary="Get current user",
)
async def get_current_user_info(current_user: CurrentUser) -> UserResponse:
    """Who the bearer token belongs to."""
    return to_user_response(current_user)


# =============================================================================
# Sign Out
# =============================================================================

@router.post(
    "/logout",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        204: {"description": "Signed out"},
        401: {"description": "Not authenticated", "model": ErrorResponse},
    },
    summary="Sign out",
)
async def logout(
    token_data: CurrentToken,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> None:
    """Revoke the access token used for this request."""
    await revoke_token(db, token_data)
    logger.info(f"User {token_data.sub} signed out")
