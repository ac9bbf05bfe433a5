"""On-call schedule models.

A schedule owns ordered rotation members per tier, time-boxed overrides,
an optional business-hours coverage window, links to holiday calendars,
and an optional fallback schedule consulted whenever it is not live.
"""

import enum
import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from oncall_api.models.base import Base, TimestampMixin


class HandoffInterval(str, enum.Enum):
    """How often duty passes to the next member."""

    DAILY = "DAILY"
    WEEKLY = "WEEKLY"


class OnCallTier(str, enum.Enum):
    """On-call role within a schedule."""

    PRIMARY = "PRIMARY"
    SECONDARY = "SECONDARY"


class OnCallSchedule(Base, TimestampMixin):
    """A rotation schedule.

    Attributes:
        timezone: IANA zone used for handoffs and the coverage window
        handoff_hour: Local hour (0-23) at which duty changes hands
        start_at: Rotation anchor; member 0 is on duty from this instant
        coverage_days: Weekday codes (MON..SUN); empty means every day
        coverage_start / coverage_end: Local "HH:MM" bounds, end exclusive
        fallback_schedule_id: Schedule consulted while this one is not live
    """

    __tablename__ = "on_call_schedules"

    __table_args__ = (
        Index("ix_on_call_schedules_org_created", "organization_id", "created_at"),
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
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    handoff_interval: Mapped[HandoffInterval] = mapped_column(
        Enum(
            HandoffInterval,
            name="handoffinterval",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=HandoffInterval.WEEKLY,
    )
    handoff_hour: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    start_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(UTC),
    )
    coverage_enabled: Mapped[bool] = mapped_column(default=False)
    coverage_days: Mapped[list[str]] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
    )
    coverage_start: Mapped[str | None] = mapped_column(String(5), nullable=True)
    coverage_end: Mapped[str | None] = mapped_column(String(5), nullable=True)
    fallback_schedule_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("on_call_schedules.id", ondelete="SET NULL"),
        nullable=True,
    )
    is_enabled: Mapped[bool] = mapped_column(default=True)

    members = relationship(
        "OnCallRotationMember",
        back_populates="schedule",
        cascade="all, delete-orphan",
        order_by="OnCallRotationMember.order",
    )
    overrides = relationship(
        "OnCallOverride",
        back_populates="schedule",
        cascade="all, delete-orphan",
    )
    calendars = relationship(
        "HolidayCalendar",
        secondary="on_call_schedule_calendars",
        viewonly=True,
    )

    def __repr__(self) -> str:
        return (
            f"<OnCallSchedule(id={self.id}, name={self.name}, "
            f"fallback={self.fallback_schedule_id})>"
        )


class OnCallRotationMember(Base, TimestampMixin):
    """A user's slot in a schedule's rotation for one tier."""

    __tablename__ = "on_call_rotation_members"

    __table_args__ = (
        UniqueConstraint(
            "schedule_id",
            "tier",
            "order",
            name="uq_on_call_rotation_members_schedule_tier_order",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("on_call_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    tier: Mapped[OnCallTier] = mapped_column(
        Enum(
            OnCallTier,
            name="oncalltier",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=OnCallTier.PRIMARY,
    )
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(default=True)

    schedule = relationship("OnCallSchedule", back_populates="members")

    def __repr__(self) -> str:
        return (
            f"<OnCallRotationMember(tier={self.tier.value}, order={self.order}, "
            f"user={self.user_id})>"
        )


class OnCallOverride(Base, TimestampMixin):
    """Replaces the rotation's user for a tier during [start_at, end_at]."""

    __tablename__ = "on_call_overrides"

    __table_args__ = (
        Index("ix_on_call_overrides_schedule_window", "schedule_id", "start_at", "end_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("on_call_schedules.id", ondelete="CASCADE"),
        nullable=False,
    )
    tier: Mapped[OnCallTier] = mapped_column(
        Enum(
            OnCallTier,
            name="oncalltier",
            create_type=False,
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
        default=OnCallTier.PRIMARY,
    )
    from_user_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    to_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    schedule = relationship("OnCallSchedule", back_populates="overrides")

    def __repr__(self) -> str:
        return (
            f"<OnCallOverride(tier={self.tier.value}, to={self.to_user_id}, "
            f"{self.start_at}..{self.end_at})>"
        )


class OnCallScheduleCalendar(Base):
    """Links a schedule to a holiday calendar."""

    __tablename__ = "on_call_schedule_calendars"

    __table_args__ = (
        UniqueConstraint(
            "schedule_id",
            "calendar_id",
            name="uq_on_call_schedule_calendars_schedule_calendar",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    schedule_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("on_call_schedules.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    calendar_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("holiday_calendars.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
