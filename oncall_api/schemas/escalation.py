"""Escalation policy step, scan result and timeline schemas."""

import math
import uuid
from datetime import datetime
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from oncall_api.logging_config import get_logger
from oncall_api.models.alert_event import AlertSeverity

logger = get_logger(__name__)


class EscalationStep(BaseModel):
    """One policy step as stored in EscalationPolicy.steps.

    Accepts both snake_case and camelCase keys. after_minutes is rounded
    and clamped to at least 1; route names are upper-cased except for
    channel ids.
    """

    model_config = ConfigDict(frozen=True)

    after_minutes: int = Field(
        validation_alias=AliasChoices("after_minutes", "afterMinutes"),
    )
    route_to: tuple[str, ...] = Field(
        validation_alias=AliasChoices("route_to", "routeTo"),
        min_length=1,
    )
    min_severity: AlertSeverity = Field(
        default=AlertSeverity.LOW,
        validation_alias=AliasChoices("min_severity", "minSeverity"),
    )

    @field_validator("after_minutes", mode="before")
    @classmethod
    def clamp_after_minutes(cls, v: Any) -> int:
        if isinstance(v, bool) or not isinstance(v, int | float):
            raise ValueError("after_minutes must be a number")
        if not math.isfinite(v):
            raise ValueError("after_minutes must be finite")
        return max(1, round(v))

    @field_validator("route_to", mode="before")
    @classmethod
    def normalize_routes(cls, v: Any) -> tuple[str, ...]:
        if not isinstance(v, list | tuple):
            raise ValueError("route_to must be a list")
        routes: list[str] = []
        for entry in v:
            route = str(entry).strip()
            if not route:
                continue
            try:
                routes.append(str(uuid.UUID(route)))
            except ValueError:
                routes.append(route.upper())
        # Preserve order, drop duplicates
        return tuple(dict.fromkeys(routes))

    @field_validator("min_severity", mode="before")
    @classmethod
    def upper_severity(cls, v: Any) -> Any:
        return v.strip().upper() if isinstance(v, str) else v


def normalize_steps(raw: Any) -> list[EscalationStep]:
    """Parse stored steps, dropping invalid entries, sorted by after_minutes.

    Step numbers are 1-based positions in the returned list.
    """
    if not isinstance(raw, list):
        return []

    steps: list[EscalationStep] = []
    for index, entry in enumerate(raw):
        try:
            steps.append(EscalationStep.model_validate(entry))
        except ValidationError as e:
            logger.warning(
                "Dropping invalid escalation step",
                index=index,
                errors=e.error_count(),
            )
    # sorted() is stable so equal thresholds keep their configured order
    return sorted(steps, key=lambda step: step.after_minutes)


class ScanResult(BaseModel):
    """Counters from one organization's escalation scan."""

    total_processed: int = 0
    escalated: int = 0
    suppressed: int = 0


class ScanAllResult(ScanResult):
    """Aggregated counters from a scan over every organization."""

    processed_orgs: int = 0
    failed_orgs: int = 0
    skipped_orgs: int = 0


class AlertEscalationResponse(BaseModel):
    """Single escalation row."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    alert_event_id: uuid.UUID
    step_number: int
    attempted_at: datetime
    routed_to: list[Any]
    suppressed: bool
    reason: str | None


class EscalationTimelineResponse(BaseModel):
    """Escalation timeline for an alert."""

    alert_event_id: uuid.UUID
    escalations: list[AlertEscalationResponse]
    count: int


class AlertEventResponse(BaseModel):
    """Alert event as returned after acknowledgment."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    organization_id: uuid.UUID
    type: str
    severity: str
    title: str
    created_at: datetime
    acknowledged: bool
    acknowledged_at: datetime | None
    acknowledged_by_user_id: uuid.UUID | None


class AcknowledgeRequest(BaseModel):
    """Request body for acknowledging an alert."""

    user_id: uuid.UUID | None = None
