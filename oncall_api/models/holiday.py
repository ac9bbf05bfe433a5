"""Holiday calendars: whole-day date ranges during which linked schedules are off."""

import uuid
from datetime import date

from sqlalchemy import Date, ForeignKey, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from oncall_api.models.base import Base, TimestampMixin


class HolidayCalendar(Base, TimestampMixin):
    """A named set of holiday entries interpreted in one timezone."""

    __tablename__ = "holiday_calendars"

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
    is_enabled: Mapped[bool] = mapped_column(default=True)

    entries = relationship(
        "HolidayEntry",
        back_populates="calendar",
        cascade="all, delete-orphan",
        order_by="HolidayEntry.start_date",
    )

    def __repr__(self) -> str:
        return f"<HolidayCalendar(id={self.id}, name={self.name}, tz={self.timezone})>"


class HolidayEntry(Base, TimestampMixin):
    """An inclusive date range; end_date defaults to start_date."""

    __tablename__ = "holiday_entries"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    calendar_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("holiday_calendars.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)

    calendar = relationship("HolidayCalendar", back_populates="entries")

    def __repr__(self) -> str:
        return f"<HolidayEntry({self.start_date}..{self.end_date}, {self.title})>"
