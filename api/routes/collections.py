"""
Collection routes for the Checklist Sync API.

Each synced collection (todos, categories, mindmaps) is stored as one JSON
document per user. Writes replace the whole document and are broadcast to
the owner's realtime listeners.
"""

import logging
from datetime import datetime, timezone
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.core.realtime import broker
from api.core.security import CurrentUser, require_owner
from api.models.database import COLLECTION_MODELS, CollectionDocument, get_db
from api.models.schemas import (
    ChangeMessage,
    ChangeType,
    CollectionResponse,
    CollectionUpsert,
    ErrorResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/collections", tags=["Collections"])


def get_collection_model(table: str) -> type[CollectionDocument]:
    """Resolve a table name, rejecting anything that is not a synced collection."""
    model = COLLECTION_MODELS.get(table)
    if model is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown collection '{table}'",
        )
    return model


async def load_document(
    db: AsyncSession,
    model: type[CollectionDocument],
    user_id: UUID,
) -> CollectionDocument | None:
    result = await db.execute(select(model).where(model.user_id == user_id))
    return result.scalar_one_or_none()


def row_payload(document: CollectionDocument) -> dict:
    return CollectionResponse.model_validate(document).model_dump(mode="json")


@router.get(
    "/{table}",
    response_model=CollectionResponse,
    responses={
        200: {"description": "Stored document"},
        403: {"description": "Not the owner", "model": ErrorResponse},
        404: {"description": "No document stored yet", "model": ErrorResponse},
    },
    summary="Fetch a collection",
)
async def get_collection(
    table: str,
    user_id: Annotated[UUID, Query()],
    current_user: CurrentUser,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CollectionResponse:
    """The user's document. 404 means nothing was ever stored; an empty list is a value."""
    model = get_collection_model(table)
    require_owner(current_user, user_id)

    document = await load_document(db, model, user_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {table} stored for this user",
        )
    return CollectionResponse.model_validate(document)


@router.put(
    "/{table}",
    response_model=CollectionResponse,
    responses={
        200: {"description": "Document stored"},
        403: {"description": "Not the owner", "model": ErrorResponse},
    },
    summary="Upsert a collection",
)
async def put_collection(
    table: str,
    body: CollectionUpsert,
    user_id: Annotated[UUID, Query()],
    current_user: CurrentUser,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> CollectionResponse:
    """Replace the user's document, creating it on first write."""
    model = get_collection_model(table)
    require_owner(current_user, user_id)

    updated_at = body.updated_at or datetime.now(timezone.utc)
    document = await load_document(db, model, user_id)

    if document is None:
        old: dict = {}
        change = ChangeType.INSERT
        document = model(user_id=user_id, data=body.data, updated_at=updated_at)
        db.add(document)
    else:
        old = row_payload(document)
        change = ChangeType.UPDATE
        document.data = body.data
        document.updated_at = updated_at

    await db.commit()
    await db.refresh(document)

    delivered = broker.publish(
        user_id,
        ChangeMessage(event_type=change, table=table, new=row_payload(document), old=old),
    )
    logger.debug(f"{change.value} {table} for {user_id}, {delivered} listener(s) notified")
    return CollectionResponse.model_validate(document)


@router.delete(
    "/{table}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        204: {"description": "Document deleted"},
        403: {"description": "Not the owner", "model": ErrorResponse},
        404: {"description": "No document stored", "model": ErrorResponse},
    },
    summary="Delete a collection",
)
async def delete_collection(
    table: str,
    user_id: Annotated[UUID, Query()],
    current_user: CurrentUser,
    db: Annotated[AsyncSession, Depends(get_db)],
) -> None:
    """Remove the user's document. Listeners get a DELETE carrying only the key."""
    model = get_collection_model(table)
    require_owner(current_user, user_id)

    document = await load_document(db, model, user_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No {table} stored for this user",
        )

    await db.delete(document)
    await db.commit()

    broker.publish(
        user_id,
        ChangeMessage(
            event_type=ChangeType.DELETE,
            table=table,
            old={"user_id": str(user_id)},
        ),
    )
