"""On-call lookup endpoints."""

import uuid
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from oncall_api.core.auth import require_api_key
from oncall_api.database import get_db
from oncall_api.schemas.oncall import CurrentOnCallResponse, OnCallResolutionResponse
from oncall_api.services.oncall_resolver import get_current_oncall, resolve_now

router = APIRouter(
    prefix="/api/orgs/{organization_id}/oncall",
    tags=["On-Call"],
    dependencies=[Depends(require_api_key)],
)


def as_utc(value: datetime | None) -> datetime:
    """Query instants default to now; naive values are taken as UTC."""
    if value is None:
        return datetime.now(UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@router.get("/now", response_model=CurrentOnCallResponse)
async def current_oncall(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> CurrentOnCallResponse:
    """Who is on call right now, with display info."""
    return await get_current_oncall(db, organization_id, datetime.now(UTC))


@router.get("/resolve", response_model=OnCallResolutionResponse)
async def resolve_oncall(
    organization_id: uuid.UUID,
    at: datetime | None = Query(default=None),
    global_: bool = Query(default=False, alias="global"),
    db: AsyncSession = Depends(get_db),
) -> OnCallResolutionResponse:
    """Resolve on-call at an arbitrary instant.

    With global=true resolution starts at each root schedule's fallback,
    which is what ONCALL_PRIMARY_GLOBAL routes to.
    """
    resolution = await resolve_now(db, organization_id, as_utc(at), force_fallback=global_)
    return OnCallResolutionResponse.model_validate(resolution)
