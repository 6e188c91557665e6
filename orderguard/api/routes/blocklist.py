"""
OrderGuard — Blocklist API

GET    /api/v1/blocklist                       → all entries (optionally one type)
POST   /api/v1/blocklist                       → add an entry        (admin)
DELETE /api/v1/blocklist/{type}/{value}        → remove an entry     (admin)
GET    /api/v1/blocklist/{type}/{value}/orders → orders from a blocked source
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.models.schemas import (
    BlockEntryCreate,
    BlockEntryListResponse,
    BlockEntryResponse,
    BlockType,
    OrderResponse,
)
from orderguard.services import blocklist as blocklist_service
from orderguard.services.db import get_db
from orderguard.services.security import get_current_admin, get_current_user

logger = logging.getLogger("orderguard.api.blocklist")
router = APIRouter()


@router.get(
    "/",
    response_model=BlockEntryListResponse,
    summary="List Blocklist Entries",
)
async def list_entries(
    type: Optional[BlockType] = None,
    db: AsyncSession = Depends(get_db),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    entries = await blocklist_service.list_entries(db, type)
    return BlockEntryListResponse(
        total=len(entries),
        items=[BlockEntryResponse.model_validate(e) for e in entries],
    )


@router.post(
    "/",
    status_code=status.HTTP_201_CREATED,
    response_model=BlockEntryResponse,
    summary="Block a Phone, IP or Device",
    description="Phones are stored canonical when valid.  Duplicate entries return 409.",
)
async def add_entry(
    payload: BlockEntryCreate,
    db: AsyncSession = Depends(get_db),
    admin: Dict[str, Any] = Depends(get_current_admin),
):
    entry = await blocklist_service.add_entry(
        db,
        payload.type,
        payload.value,
        note=payload.note,
        created_by=admin.get("sub"),
    )
    return BlockEntryResponse.model_validate(entry)


@router.delete(
    "/{type}/{value}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Unblock a Phone, IP or Device",
)
async def remove_entry(
    type: BlockType,
    value: str,
    db: AsyncSession = Depends(get_db),
    admin: Dict[str, Any] = Depends(get_current_admin),
):
    if not await blocklist_service.remove_entry(db, type, value):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Blocklist entry not found")


@router.get(
    "/{type}/{value}/orders",
    response_model=List[OrderResponse],
    summary="Orders From a Blocked Source",
)
async def entry_orders(
    type: BlockType,
    value: str,
    limit: int = Query(50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    orders = await blocklist_service.orders_for_entry(db, type, value, limit=limit)
    return [OrderResponse.model_validate(o) for o in orders]
