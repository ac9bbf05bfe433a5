"""Alert escalation endpoints.

Manual scan trigger, escalation timeline, acknowledgment and failure
reporting for one organization.
"""

import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oncall_api.core.auth import require_api_key
from oncall_api.database import get_db
from oncall_api.middleware.rate_limit import limiter
from oncall_api.models import AlertEvent, AlertType
from oncall_api.routers.oncall import as_utc
from oncall_api.schemas.escalation import (
    AcknowledgeRequest,
    AlertEscalationResponse,
    AlertEventResponse,
    EscalationTimelineResponse,
    ScanResult,
)
from oncall_api.services.alert_ingestion import acknowledge_alert
from oncall_api.services.escalation_engine import (
    get_escalations_for_alert,
    run_escalation_scan_for_org,
)
from oncall_api.services.scheduler import scan_guard

router = APIRouter(
    prefix="/api/orgs/{organization_id}",
    tags=["Alerts"],
    dependencies=[Depends(require_api_key)],
)


class FailureReport(BaseModel):
    """A single failure reported by another component."""

    type: AlertType
    details: dict[str, Any] | None = None


class FailureReportResponse(BaseModel):
    alert_raised: bool
    alert_event_id: uuid.UUID | None = None


@router.post("/escalations/scan", response_model=ScanResult)
@limiter.limit("10/minute")
async def trigger_escalation_scan(
    request: Request,
    organization_id: uuid.UUID,
    at: datetime | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
) -> ScanResult:
    """Run one escalation tick for the organization now (or at `at`).

    Shares the single-flight guard with the periodic job; a scan that is
    already running yields 409.
    """
    now = as_utc(at)
    ran, result = await scan_guard.run(
        organization_id,
        lambda: run_escalation_scan_for_org(db, organization_id, now),
    )
    if not ran:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="An escalation scan is already running for this organization",
        )
    return result


async def _get_alert_or_404(
    db: AsyncSession,
    organization_id: uuid.UUID,
    alert_id: uuid.UUID,
) -> AlertEvent:
    result = await db.execute(
        select(AlertEvent).where(
            AlertEvent.id == alert_id,
            AlertEvent.organization_id == organization_id,
        )
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert not found",
        )
    return alert


@router.get(
    "/alerts/{alert_id}/escalations",
    response_model=EscalationTimelineResponse,
)
async def get_escalation_timeline(
    organization_id: uuid.UUID,
    alert_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> EscalationTimelineResponse:
    """Escalation rows for an alert, oldest first."""
    await _get_alert_or_404(db, organization_id, alert_id)
    escalations = await get_escalations_for_alert(db, alert_id)
    return EscalationTimelineResponse(
        alert_event_id=alert_id,
        escalations=[AlertEscalationResponse.model_validate(e) for e in escalations],
        count=len(escalations),
    )


@router.post(
    "/alerts/{alert_id}/acknowledge",
    response_model=AlertEventResponse,
)
async def acknowledge(
    organization_id: uuid.UUID,
    alert_id: uuid.UUID,
    body: AcknowledgeRequest | None = None,
    db: AsyncSession = Depends(get_db),
) -> AlertEventResponse:
    """Acknowledge an alert; repeated calls keep the first acknowledgment."""
    alert = await acknowledge_alert(
        db,
        organization_id,
        alert_id,
        datetime.now(UTC),
        user_id=body.user_id if body else None,
    )
    if alert is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Alert not found",
        )
    return AlertEventResponse.model_validate(alert)


@router.post("/failures", response_model=FailureReportResponse)
@limiter.limit("120/minute")
async def report_failure(
    request: Request,
    organization_id: uuid.UUID,
    report: FailureReport,
    db: AsyncSession = Depends(get_db),
) -> FailureReportResponse:
    """Count one failure; raises an alert when the rule threshold is hit."""
    recorder = request.app.state.failure_recorder
    alert = await recorder.record_failure(
        db,
        report.type,
        organization_id,
        datetime.now(UTC),
        details=report.details,
    )
    return FailureReportResponse(
        alert_raised=alert is not None,
        alert_event_id=alert.id if alert is not None else None,
    )
