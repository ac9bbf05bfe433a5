"""Delivery attempts, one row per attempt."""

import uuid
from datetime import UTC, datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from oncall_api.models.base import Base


class AlertDelivery(Base):
    """Outcome of sending one alert event to one channel.

    Failed attempts each get their own row. The partial unique index
    allows a single successful row per (alert_event_id, channel_id).
    """

    __tablename__ = "alert_deliveries"

    __table_args__ = (
        Index(
            "uq_alert_deliveries_event_channel_success",
            "alert_event_id",
            "channel_id",
            unique=True,
            postgresql_where=text("success = true"),
        ),
        # Hourly cap query
        Index("ix_alert_deliveries_org_created", "organization_id", "created_at"),
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
    alert_event_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("alert_events.id", ondelete="CASCADE"),
        nullable=False,
    )
    channel_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("alert_channels.id", ondelete="CASCADE"),
        nullable=False,
    )
    success: Mapped[bool] = mapped_column(default=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(String(100), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )

    def __repr__(self) -> str:
        return (
            f"<AlertDelivery(event={self.alert_event_id}, channel={self.channel_id}, "
            f"attempt={self.attempt}, success={self.success}, error={self.error})>"
        )
