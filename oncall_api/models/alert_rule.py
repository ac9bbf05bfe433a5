"""Per-organization threshold rules for failure ingestion."""

import uuid

from sqlalchemy import Enum, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from oncall_api.models.alert_event import AlertSeverity, AlertType
from oncall_api.models.base import Base, TimestampMixin


class AlertRule(Base, TimestampMixin):
    """Raise an alert when threshold_count failures land within window_minutes."""

    __tablename__ = "alert_rules"

    __table_args__ = (
        UniqueConstraint("organization_id", "type", name="uq_alert_rules_org_type"),
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
    type: Mapped[AlertType] = mapped_column(
        Enum(
            AlertType,
            name="alerttype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    threshold_count: Mapped[int] = mapped_column(Integer, nullable=False)
    window_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    severity: Mapped[AlertSeverity] = mapped_column(
        Enum(
            AlertSeverity,
            name="alertseverity",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    is_enabled: Mapped[bool] = mapped_column(default=True)

    def __repr__(self) -> str:
        return (
            f"<AlertRule(type={self.type.value}, "
            f"{self.threshold_count}/{self.window_minutes}min)>"
        )
