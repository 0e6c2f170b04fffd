"""
Account routes for the Checklist Sync API.

Profiles, subscription lookup, usage telemetry and per-user statistics.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Annotated, Any, Iterable
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.core.security import CurrentUser, require_owner
from api.models.database import (
    AnalyticsEvent,
    MindmapDocument,
    Subscription,
    TodoDocument,
    UserProfile,
    get_db,
)
from api.models.schemas import (
    ErrorResponse,
    EventCreate,
    EventResponse,
    ProfileCreate,
    ProfileResponse,
    ProfileUpdate,
    SubscriptionResponse,
    SubscriptionStatus,
    UserStats,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Profiles
# =============================================================================

async def load_profile(db: AsyncSession, user_id: UUID) -> UserProfile | None:
    result = await db.execute(select(UserProfile).where(UserProfile.id == user_id))
    return result.scalar_one_or_none()


@router.get(
    "/profiles/{user_id}",
    response_model=ProfileResponse,
    tags=["Profiles"],
    responses={404: {"description": "No profile yet", "model": ErrorResponse}},
    summary="Get a profile",
)
async def get_profile(
    user_id: UUID,
    current_user: CurrentUser,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ProfileResponse:
    require_owner(current_user, user_id)
    profile = await load_profile(db, user_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found",
        )
    return ProfileResponse.model_validate(profile)


@router.post(
    "/profiles",
    response_model=ProfileResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Profiles"],
    responses={409: {"description": "Profile already exists", "model": ErrorResponse}},
    summary="Create a profile",
)
async def create_profile(
    body: ProfileCreate,
    current_user: CurrentUser,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ProfileResponse:
    """Create the caller's profile. New profiles always start on the free tier as a user."""
    require_owner(current_user, body.id)
    if await load_profile(db, body.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Profile already exists",
        )

    now = datetime.now(timezone.utc)
    profile = UserProfile(
        id=body.id,
        email=body.email or current_user.email,
        full_name=body.full_name,
        avatar_url=body.avatar_url,
        subscription_tier="free",
        role="user",
        created_at=body.created_at or now,
        last_login=body.last_login or now,
        settings=body.settings,
    )
    db.add(profile)
    await db.commit()
    await db.refresh(profile)
    logger.info(f"Created profile for {body.id}")
    return ProfileResponse.model_validate(profile)


@router.patch(
    "/profiles/{user_id}",
    response_model=ProfileResponse,
    tags=["Profiles"],
    responses={404: {"description": "No profile yet", "model": ErrorResponse}},
    summary="Update a profile",
)
async def update_profile(
    user_id: UUID,
    body: ProfileUpdate,
    current_user: CurrentUser,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> ProfileResponse:
    require_owner(current_user, user_id)
    profile = await load_profile(db, user_id)
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found",
        )

    for field, value in body.model_dump(exclude_unset=True).items():
        if field == "settings" and value is not None:
            value = {**(profile.settings or {}), **value}
        setattr(profile, field, value)

    await db.commit()
    await db.refresh(profile)
    return ProfileResponse.model_validate(profile)


# =============================================================================
# Subscriptions
# =============================================================================

@router.get(
    "/subscriptions/{user_id}/active",
    response_model=SubscriptionResponse,
    tags=["Subscriptions"],
    responses={404: {"description": "No active subscription", "model": ErrorResponse}},
    summary="Get the active subscription",
)
async def get_active_subscription(
    user_id: UUID,
    current_user: CurrentUser,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> SubscriptionResponse:
    """Most recent active subscription. Free users have none (404)."""
    require_owner(current_user, user_id)
    result = await db.execute(
        select(Subscription)
        .where(
            Subscription.user_id == user_id,
            Subscription.status == SubscriptionStatus.ACTIVE.value,
        )
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    subscription = result.scalar_one_or_none()
    if subscription is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No active subscription",
        )
    return SubscriptionResponse.model_validate(subscription)


# =============================================================================
# Telemetry
# =============================================================================

@router.post(
    "/events",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
    tags=["Telemetry"],
    summary="Record a usage event",
)
async def create_event(
    body: EventCreate,
    current_user: CurrentUser,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> EventResponse:
    require_owner(current_user, body.user_id)
    event = AnalyticsEvent(
        user_id=body.user_id,
        event_name=body.event_name,
        properties=body.properties,
        created_at=body.created_at or datetime.now(timezone.utc),
    )
    db.add(event)
    await db.commit()
    await db.refresh(event)
    return EventResponse.model_validate(event)


# =============================================================================
# Statistics
# =============================================================================

def as_records(data: Any) -> list[dict]:
    """Collection payloads are lists; legacy boards are objects keyed by id."""
    if isinstance(data, dict):
        data = list(data.values())
    if not isinstance(data, list):
        return []
    return [item for item in data if isinstance(item, dict)]


def streak_length(days: Iterable[date], today: date) -> int:
    """Consecutive days with activity, counting back from today."""
    active = set(days)
    streak = 0
    day = today
    while day in active:
        streak += 1
        day -= timedelta(days=1)
    return streak


@router.get(
    "/stats/{user_id}",
    response_model=UserStats,
    tags=["Statistics"],
    summary="Usage statistics",
)
async def get_user_stats(
    user_id: UUID,
    current_user: CurrentUser,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> UserStats:
    require_owner(current_user, user_id)

    todos = await db.execute(select(TodoDocument.data).where(TodoDocument.user_id == user_id))
    tasks = as_records(todos.scalar_one_or_none())

    mindmaps = await db.execute(
        select(MindmapDocument.data).where(MindmapDocument.user_id == user_id)
    )
    boards = as_records(mindmaps.scalar_one_or_none())

    events = await db.execute(
        select(AnalyticsEvent.created_at).where(AnalyticsEvent.user_id == user_id)
    )
    active_days = [created_at.date() for created_at in events.scalars()]

    return UserStats(
        total_todos=len(tasks),
        completed_todos=sum(1 for task in tasks if task.get("checked")),
        total_mindmaps=len(boards),
        total_nodes=sum(len(board.get("nodes") or []) for board in boards),
        streak_days=streak_length(active_days, datetime.now(timezone.utc).date()),
    )
