"""Escalation policy: per-severity SLAs, quiet hours and ordered steps."""

import uuid
from typing import Any

from sqlalchemy import ForeignKey, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from oncall_api.models.base import Base, TimestampMixin


class EscalationPolicy(Base, TimestampMixin):
    """One policy per organization.

    Attributes:
        timezone: IANA zone for quiet hours and business-day checks
        quiet_hours_start / quiet_hours_end: Local "HH:MM"; end exclusive,
            wraps past midnight when end <= start
        sla_*: Minimum minutes before any step fires for that severity
        steps: List of {after_minutes, route_to, min_severity} objects
    """

    __tablename__ = "escalation_policies"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="Default")
    is_enabled: Mapped[bool] = mapped_column(default=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    quiet_hours_enabled: Mapped[bool] = mapped_column(default=False)
    quiet_hours_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    quiet_hours_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    business_days_only: Mapped[bool] = mapped_column(default=False)
    sla_critical: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    sla_high: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    sla_medium: Mapped[int] = mapped_column(Integer, nullable=False, default=180)
    sla_low: Mapped[int] = mapped_column(Integer, nullable=False, default=1440)
    steps: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )

    def __repr__(self) -> str:
        return (
            f"<EscalationPolicy(org={self.organization_id}, "
            f"enabled={self.is_enabled}, steps={len(self.steps or [])})>"
        )
