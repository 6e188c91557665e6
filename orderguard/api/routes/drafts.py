"""
OrderGuard — Incomplete-checkout Drafts API

POST   /api/v1/drafts         → capture checkout form contents (create or update the draft)
DELETE /api/v1/drafts/stale   → purge drafts past DRAFT_RETENTION_DAYS   (admin)
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from orderguard.config import settings
from orderguard.models.schemas import DraftCapture, DraftPurgeResponse, DraftResponse
from orderguard.services.db import get_db
from orderguard.services.drafts import CONTACT_FIELDS, capture_checkout, purge_stale_drafts
from orderguard.services.network import resolve_client_ip
from orderguard.services.security import get_current_admin, get_current_user

logger = logging.getLogger("orderguard.api.drafts")
router = APIRouter()


@router.post(
    "/",
    response_model=DraftResponse,
    summary="Capture an Incomplete Checkout",
    description=(
        "Stores the checkout form as the customer's single ``incomplete`` "
        "draft, updating it in place on later captures.  Pass the returned "
        "``draft_id`` to checkout evaluation and order recording."
    ),
)
async def capture(
    payload: DraftCapture,
    request: Request,
    db: AsyncSession = Depends(get_db),
    current_user: Dict[str, Any] = Depends(get_current_user),
):
    if not settings.DRAFT_CAPTURE_ENABLED:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Draft capture is disabled")

    fields = payload.model_dump(include=set(CONTACT_FIELDS) | {"total"})
    if not fields.get("ip_address"):
        fields["ip_address"] = resolve_client_ip(
            dict(request.headers), request.client.host if request.client else None
        )

    draft, created = await capture_checkout(db, fields, draft_id=payload.draft_id)
    if draft is None:
        return DraftResponse(message="Nothing to capture yet")
    return DraftResponse(
        draft_id=draft.id,
        created=created,
        message="Draft created" if created else "Draft updated",
    )


@router.delete(
    "/stale",
    response_model=DraftPurgeResponse,
    summary="Purge Old Drafts",
)
async def purge(
    retention_days: Optional[int] = Query(None, ge=0, description="Defaults to DRAFT_RETENTION_DAYS"),
    db: AsyncSession = Depends(get_db),
    admin: Dict[str, Any] = Depends(get_current_admin),
):
    deleted, cutoff = await purge_stale_drafts(db, retention_days)
    logger.info("Stale drafts purged by=%s deleted=%d", admin.get("sub"), deleted)
    return DraftPurgeResponse(deleted=deleted, older_than=cutoff)
