"""Alert events raised by ingestion and walked by the escalation scanner."""

import enum
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, Enum, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from oncall_api.models.base import Base


class AlertSeverity(str, enum.Enum):
    """Alert severity, ordered LOW < MEDIUM < HIGH < CRITICAL."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    def at_least(self, other: "AlertSeverity") -> bool:
        return self.rank >= other.rank


_SEVERITY_RANK = {
    AlertSeverity.LOW: 1,
    AlertSeverity.MEDIUM: 2,
    AlertSeverity.HIGH: 3,
    AlertSeverity.CRITICAL: 4,
}


class AlertType(str, enum.Enum):
    """Failure signal that produced the alert."""

    JOB_FAILURE_SPIKE = "JOB_FAILURE_SPIKE"
    WEBHOOK_FAILURE_SPIKE = "WEBHOOK_FAILURE_SPIKE"
    APP_COMMAND_FAILURE_SPIKE = "APP_COMMAND_FAILURE_SPIKE"
    OAUTH_REFRESH_FAILURE = "OAUTH_REFRESH_FAILURE"


class AlertEvent(Base):
    """An alert raised for an organization.

    Immutable after creation except for the acknowledgment columns.
    """

    __tablename__ = "alert_events"

    __table_args__ = (
        # Scanner query: open events for an org, oldest first
        Index(
            "ix_alert_events_org_ack_created",
            "organization_id",
            "acknowledged",
            "created_at",
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
    )
    rule_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("alert_rules.id", ondelete="SET NULL"),
        nullable=True,
    )
    type: Mapped[AlertType] = mapped_column(
        Enum(
            AlertType,
            name="alerttype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    severity: Mapped[AlertSeverity] = mapped_column(
        Enum(
            AlertSeverity,
            name="alertseverity",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSONB, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    acknowledged: Mapped[bool] = mapped_column(default=False)
    acknowledged_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    acknowledged_by_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<AlertEvent(id={self.id}, type={self.type.value}, "
            f"severity={self.severity.value}, acknowledged={self.acknowledged})>"
        )
