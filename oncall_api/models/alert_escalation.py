"""Audit rows for escalation steps that fired or were suppressed."""

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from oncall_api.models.base import Base


class SuppressionReason(str, enum.Enum):
    """Why a step was recorded without delivery."""

    QUIET_HOURS = "quiet-hours"
    BUSINESS_DAYS_ONLY = "business-days-only"
    NO_ONCALL_COVERAGE = "no-oncall-coverage"


class AlertEscalation(Base):
    """One row per (alert event, step) that fired or was suppressed.

    The partial unique index allows at most one non-suppressed row per
    (alert_event_id, step_number); suppressed rows may repeat.
    """

    __tablename__ = "alert_escalations"

    __table_args__ = (
        Index(
            "uq_alert_escalations_event_step_fired",
            "alert_event_id",
            "step_number",
            unique=True,
            postgresql_where=text("suppressed = false"),
        ),
        Index(
            "ix_alert_escalations_event_attempted",
            "alert_event_id",
            "attempted_at",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    alert_event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("alert_events.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_number: Mapped[int] = mapped_column(Integer, nullable=False)
    attempted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    # Snapshot of the step's route targets at the time it was evaluated
    routed_to: Mapped[list[Any]] = mapped_column(JSONB, nullable=False, default=list)
    suppressed: Mapped[bool] = mapped_column(default=False)
    reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<AlertEscalation(event={self.alert_event_id}, step={self.step_number}, "
            f"suppressed={self.suppressed}, reason={self.reason})>"
        )
