"""
Security utilities for the Checklist Sync API.

Password hashing, signed access/refresh tokens with revocation, and the
FastAPI dependencies that resolve the caller from a bearer token.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated
from uuid import UUID

from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.core.config import settings
from api.models.database import AsyncSessionLocal, RevokedToken, User, get_db
from api.models.schemas import TokenPayload, TokenResponse

# =============================================================================
# Password Hashing
# =============================================================================

pwd_context = CryptContext(
    schemes=["pbkdf2_sha256"],
    deprecated="auto",
    pbkdf2_sha256__rounds=settings.password_hash_rounds,
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str | None) -> bool:
    """Check a password. Accounts created through a provider have no hash and never match."""
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


# =============================================================================
# JWT Token Handling
# =============================================================================

def unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _encode(user_id: UUID, token_type: str, lifetime: timedelta) -> str:
    issued_at = datetime.now(timezone.utc)
    claims = {
        "sub": str(user_id),
        "iat": issued_at,
        "exp": issued_at + lifetime,
        "type": token_type,
        "jti": uuid.uuid4().hex,
    }
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: UUID, lifetime: timedelta | None = None) -> str:
    """
    Short-lived token sent as ``Authorization: Bearer`` on every request.

    Args:
        user_id: Subject of the token
        lifetime: Overrides ``jwt_access_token_expire_minutes``
    """
    return _encode(
        user_id,
        "access",
        lifetime or timedelta(minutes=settings.jwt_access_token_expire_minutes),
    )


def create_refresh_token(user_id: UUID) -> str:
    return _encode(user_id, "refresh", timedelta(days=settings.jwt_refresh_token_expire_days))


def issue_tokens(user_id: UUID) -> TokenResponse:
    """Access and refresh token pair for a user."""
    return TokenResponse(
        access_token=create_access_token(user_id),
        refresh_token=create_refresh_token(user_id),
        token_type="bearer",
        expires_in=settings.jwt_access_token_expire_minutes * 60,
    )


def decode_token(token: str, expected_type: str = "access") -> TokenPayload:
    """
    Verify a token's signature and expiry and return its claims.

    Raises:
        HTTPException: 401 for a malformed, expired or wrongly typed token
    """
    try:
        claims = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        token_data = TokenPayload(
            sub=UUID(claims["sub"]),
            exp=datetime.fromtimestamp(claims["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(claims["iat"], tz=timezone.utc),
            type=claims.get("type", "access"),
            jti=claims.get("jti", ""),
        )
    except (JWTError, KeyError, ValueError) as e:
        raise unauthorized(f"Invalid token: {e}")

    if token_data.type != expected_type:
        raise unauthorized(f"Expected a {expected_type} token")
    return token_data


async def is_revoked(db: AsyncSession, jti: str) -> bool:
    result = await db.execute(select(RevokedToken).where(RevokedToken.jti == jti))
    return result.scalar_one_or_none() is not None


async def revoke_token(db: AsyncSession, token_data: TokenPayload) -> None:
    """Remember a token id until it would have expired anyway."""
    if await is_revoked(db, token_data.jti):
        return
    db.add(RevokedToken(jti=token_data.jti, expires_at=token_data.exp))
    await db.commit()


# =============================================================================
# Authentication Dependencies
# =============================================================================

bearer_scheme = HTTPBearer(auto_error=True)


async def get_token_payload(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> TokenPayload:
    """Claims of the request's access token, rejecting revoked ones."""
    token_data = decode_token(credentials.credentials)
    if await is_revoked(db, token_data.jti):
        raise unauthorized("Token has been revoked")
    return token_data


async def get_current_user(
    token_data: Annotated[TokenPayload, Depends(get_token_payload)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> User:
    """The account behind the bearer token. Disabled accounts get 403."""
    result = await db.execute(select(User).where(User.id == token_data.sub))
    user = result.scalar_one_or_none()

    if user is None:
        raise unauthorized("User not found")
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled",
        )
    return user


def require_owner(current_user: User, user_id: UUID) -> None:
    """Rows are private: a user may only touch their own."""
    if current_user.id != user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not allowed to access another user's data",
        )


CurrentUser = Annotated[User, Depends(get_current_user)]
CurrentToken = Annotated[TokenPayload, Depends(get_token_payload)]


# =============================================================================
# WebSocket Authentication
# =============================================================================

def extract_websocket_token(websocket: WebSocket) -> str | None:
    """Bearer token from the handshake headers, falling back to ``?token=``."""
    auth_header = websocket.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return websocket.query_params.get("token")


async def authenticate_websocket(websocket: WebSocket) -> User | None:
    """The active account behind a WebSocket handshake, or None."""
    token = extract_websocket_token(websocket)
    if not token:
        return None
    try:
        token_data = decode_token(token)
    except HTTPException:
        return None

    async with AsyncSessionLocal() as db:
        if await is_revoked(db, token_data.jti):
            return None
        user = await db.get(User, token_data.sub)
    if user is None or not user.is_active:
        return None
    return user
