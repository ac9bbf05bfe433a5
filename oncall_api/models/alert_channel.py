"""Notification channels an organization can deliver alerts to."""

import enum
import uuid

from sqlalchemy import Enum, ForeignKey, String, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from oncall_api.models.alert_event import AlertSeverity
from oncall_api.models.base import Base, TimestampMixin


class ChannelType(str, enum.Enum):
    """Delivery transport."""

    WEBHOOK = "WEBHOOK"
    EMAIL = "EMAIL"
    SLACK = "SLACK"


class AlertChannel(Base, TimestampMixin):
    """A configured delivery target.

    config_encrypted holds a Fernet-encrypted JSON object whose shape
    depends on the type: WEBHOOK {url, secret}, EMAIL {recipients},
    SLACK {channel_id, access_token}.
    """

    __tablename__ = "alert_channels"

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
    type: Mapped[ChannelType] = mapped_column(
        Enum(
            ChannelType,
            name="channeltype",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    min_severity: Mapped[AlertSeverity] = mapped_column(
        Enum(
            AlertSeverity,
            name="alertseverity",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=AlertSeverity.LOW,
    )
    config_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    is_enabled: Mapped[bool] = mapped_column(default=True)

    def __repr__(self) -> str:
        return f"<AlertChannel(id={self.id}, type={self.type.value}, name={self.name})>"
