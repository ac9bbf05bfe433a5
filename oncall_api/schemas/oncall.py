"""On-call lookup schemas."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict


class OnCallResolutionResponse(BaseModel):
    """Resolver output for one instant."""

    model_config = ConfigDict(from_attributes=True)

    primary_user_id: uuid.UUID | None
    secondary_user_id: uuid.UUID | None
    active_schedule_id: uuid.UUID | None
    in_coverage_window: bool
    is_holiday: bool
    resolved_at: datetime


class OnCallUser(BaseModel):
    """Display info for an on-call user."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    email: str
    display_name: str | None = None


class CurrentOnCallResponse(BaseModel):
    """Current on-call lookup for UI display."""

    resolved_at: datetime
    active_schedule_id: uuid.UUID | None
    active_schedule_name: str | None
    in_coverage_window: bool
    is_holiday: bool
    primary: OnCallUser | None
    secondary: OnCallUser | None
