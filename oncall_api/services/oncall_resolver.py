"""On-call rotation resolver.

Answers "who is on call for this organization at this instant" from the
stored schedules. The database read happens in resolve_now(); everything
after that is a pure function of (schedules, instant) so the same inputs
always produce the same answer and never touch the wall clock.

Liveness of a schedule at an instant:
- a linked, enabled holiday calendar has an entry covering the local date
  (in the calendar's timezone) -> not live
- a coverage window is enabled and the local weekday/time falls outside it
  (in the schedule's timezone) -> not live
- otherwise live

Traversal starts at the root schedules (those no other schedule names as
its fallback) in creation order and follows fallback references with a
visited set; a revisit aborts that branch instead of looping.
"""

import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from oncall_api.core.errors import ErrorCode, ScheduleCycleError
from oncall_api.core.timeutils import (
    WEEKDAY_CODES,
    in_daily_window,
    local_date,
    minutes_into_day,
    parse_hhmm,
    to_local,
    weekday_code,
)
from oncall_api.logging_config import get_logger
from oncall_api.models import (
    HandoffInterval,
    HolidayCalendar,
    OnCallOverride,
    OnCallSchedule,
    OnCallTier,
    User,
)
from oncall_api.schemas.oncall import CurrentOnCallResponse, OnCallUser

logger = get_logger(__name__)


@dataclass(frozen=True)
class OnCallResolution:
    """Who is on call at ``resolved_at``.

    in_coverage_window reflects the schedule that supplied the answer.
    is_holiday is True when a schedule was passed over because of a
    holiday on the way to the answer. error carries SCHEDULE_MISSING or
    SCHEDULE_CYCLE when nothing could be resolved for that reason.
    """

    resolved_at: datetime
    primary_user_id: uuid.UUID | None = None
    secondary_user_id: uuid.UUID | None = None
    active_schedule_id: uuid.UUID | None = None
    in_coverage_window: bool = False
    is_holiday: bool = False
    error: ErrorCode | None = None

    @property
    def resolved(self) -> bool:
        return self.active_schedule_id is not None


@dataclass(frozen=True)
class ScheduleState:
    """Liveness of one schedule at one instant."""

    in_coverage_window: bool
    is_holiday: bool

    @property
    def live(self) -> bool:
        return self.in_coverage_window and not self.is_holiday


def normalize_coverage_days(value: Any) -> set[str]:
    """Return the valid weekday codes in value; anything else is ignored."""
    if not isinstance(value, list | tuple | set):
        return set()
    return {
        code
        for code in (str(entry).strip().upper() for entry in value)
        if code in WEEKDAY_CODES
    }


def is_in_coverage_window(schedule: Any, instant: datetime) -> bool:
    """Check the schedule's business-hours window at instant.

    A disabled window, an empty day set or unparseable times all mean
    "no restriction" for that part of the check.
    """
    if not schedule.coverage_enabled:
        return True

    local = to_local(instant, schedule.timezone)
    days = normalize_coverage_days(schedule.coverage_days)
    if days and weekday_code(local) not in days:
        return False

    start = parse_hhmm(schedule.coverage_start)
    end = parse_hhmm(schedule.coverage_end)
    if start is None or end is None:
        return True

    return in_daily_window(minutes_into_day(local), start, end)


def is_holiday(schedule: Any, instant: datetime) -> bool:
    """True if any enabled linked calendar has an entry covering instant."""
    for calendar in schedule.calendars or []:
        if not calendar.is_enabled:
            continue
        today = local_date(instant, calendar.timezone)
        for entry in calendar.entries or []:
            end_date: date = entry.end_date or entry.start_date
            if entry.start_date <= today <= end_date:
                return True
    return False


def get_schedule_state(schedule: Any, instant: datetime) -> ScheduleState:
    return ScheduleState(
        in_coverage_window=is_in_coverage_window(schedule, instant),
        is_holiday=is_holiday(schedule, instant),
    )


def elapsed_handoff_periods(schedule: Any, instant: datetime) -> int:
    """Whole handoff periods between the schedule anchor and instant.

    Both instants are converted to the schedule's wall clock and shifted
    back by handoff_hour, so a "day" runs from handoff_hour to handoff_hour.
    Instants before the anchor count as period 0.
    """
    shift = timedelta(hours=schedule.handoff_hour or 0)
    anchor_day = (to_local(schedule.start_at, schedule.timezone) - shift).date()
    current_day = (to_local(instant, schedule.timezone) - shift).date()

    days = (current_day - anchor_day).days
    if days < 0:
        return 0
    if schedule.handoff_interval == HandoffInterval.DAILY:
        return days
    return days // 7


def pick_member(members: Iterable[Any], tier: OnCallTier, periods: int) -> uuid.UUID | None:
    """Return the on-duty user of a tier, or None when the tier is empty."""
    rotation = sorted(
        (m for m in members if m.tier == tier and m.is_active),
        key=lambda m: m.order,
    )
    if not rotation:
        return None
    return rotation[periods % len(rotation)].user_id


def active_override(
    overrides: Iterable[Any], tier: OnCallTier, instant: datetime
) -> Any | None:
    """Latest-created override of tier whose [start_at, end_at] holds instant."""
    matching = [
        o
        for o in overrides
        if o.tier == tier and o.start_at <= instant <= o.end_at
    ]
    if not matching:
        return None
    return max(matching, key=lambda o: o.created_at)


def resolve_schedule(
    schedule: Any,
    state: ScheduleState,
    instant: datetime,
    passed_holiday: bool = False,
) -> OnCallResolution:
    """Compute the on-duty users of a live schedule."""
    periods = elapsed_handoff_periods(schedule, instant)
    members = schedule.members or []
    overrides = schedule.overrides or []

    users: dict[OnCallTier, uuid.UUID | None] = {}
    for tier in (OnCallTier.PRIMARY, OnCallTier.SECONDARY):
        override = active_override(overrides, tier, instant)
        users[tier] = (
            override.to_user_id if override else pick_member(members, tier, periods)
        )

    return OnCallResolution(
        resolved_at=instant,
        primary_user_id=users[OnCallTier.PRIMARY],
        secondary_user_id=users[OnCallTier.SECONDARY],
        active_schedule_id=schedule.id,
        in_coverage_window=state.in_coverage_window,
        is_holiday=passed_holiday or state.is_holiday,
    )


@dataclass
class _Walk:
    """Bookkeeping shared across the branches of one resolution."""

    instant: datetime
    by_id: dict[uuid.UUID, Any]
    cycle_detected: bool = False
    passed_holiday: bool = False


def _walk_chain(
    walk: _Walk,
    start_id: uuid.UUID | None,
    visited: set[uuid.UUID],
) -> OnCallResolution | None:
    """Follow fallback references from start_id until a live schedule is found."""
    current_id = start_id
    while current_id is not None:
        if current_id in visited:
            walk.cycle_detected = True
            logger.warning(
                "Fallback chain revisits a schedule, aborting branch",
                code=ErrorCode.SCHEDULE_CYCLE.value,
                schedule_id=str(current_id),
            )
            return None
        visited.add(current_id)

        schedule = walk.by_id.get(current_id)
        if schedule is None:
            # Missing or disabled fallback ends the branch
            return None

        state = get_schedule_state(schedule, walk.instant)
        if state.live:
            return resolve_schedule(
                schedule, state, walk.instant, passed_holiday=walk.passed_holiday
            )
        if state.is_holiday:
            walk.passed_holiday = True

        current_id = schedule.fallback_schedule_id
    return None


def find_root_schedules(schedules: Sequence[Any]) -> list[Any]:
    """Schedules no other schedule uses as fallback, in the given order.

    When every schedule is someone's fallback (a pure cycle) all of them
    are treated as roots so the cycle guard can report it.
    """
    referenced = {
        s.fallback_schedule_id for s in schedules if s.fallback_schedule_id is not None
    }
    roots = [s for s in schedules if s.id not in referenced]
    return roots or list(schedules)


def resolve_from_schedules(
    schedules: Sequence[Any],
    instant: datetime,
    force_fallback: bool = False,
) -> OnCallResolution:
    """Resolve on-call users from already-loaded enabled schedules.

    Args:
        schedules: Enabled schedules in creation order, with members,
            overrides and calendars (with entries) loaded
        instant: Evaluation instant (timezone-aware)
        force_fallback: Start each root's walk at its fallback instead of
            the root itself (follow-the-sun / global owner). Falls back to
            normal resolution when no fallback schedule is live.
    """
    if not schedules:
        return OnCallResolution(resolved_at=instant, error=ErrorCode.SCHEDULE_MISSING)

    walk = _Walk(instant=instant, by_id={s.id: s for s in schedules})
    roots = find_root_schedules(schedules)

    if force_fallback:
        for root in roots:
            if root.fallback_schedule_id is None:
                continue
            found = _walk_chain(walk, root.fallback_schedule_id, visited={root.id})
            if found is not None:
                return found
        walk.passed_holiday = False

    for root in roots:
        found = _walk_chain(walk, root.id, visited=set())
        if found is not None:
            return found

    return OnCallResolution(
        resolved_at=instant,
        is_holiday=walk.passed_holiday,
        error=ErrorCode.SCHEDULE_CYCLE if walk.cycle_detected else None,
    )


async def load_schedules(
    db: AsyncSession,
    organization_id: uuid.UUID,
    instant: datetime,
) -> list[OnCallSchedule]:
    """Load an organization's enabled schedules with everything resolution needs."""
    result = await db.execute(
        select(OnCallSchedule)
        .where(
            OnCallSchedule.organization_id == organization_id,
            OnCallSchedule.is_enabled.is_(True),
        )
        .options(
            selectinload(OnCallSchedule.members),
            selectinload(
                OnCallSchedule.overrides.and_(
                    OnCallOverride.start_at <= instant,
                    OnCallOverride.end_at >= instant,
                )
            ),
            selectinload(OnCallSchedule.calendars).selectinload(
                HolidayCalendar.entries
            ),
        )
        .order_by(OnCallSchedule.created_at.asc(), OnCallSchedule.id.asc())
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def resolve_now(
    db: AsyncSession,
    organization_id: uuid.UUID,
    instant: datetime,
    force_fallback: bool = False,
) -> OnCallResolution:
    """Resolve who is on call for an organization at instant."""
    schedules = await load_schedules(db, organization_id, instant)
    resolution = resolve_from_schedules(schedules, instant, force_fallback)

    if resolution.error == ErrorCode.SCHEDULE_MISSING:
        logger.debug(
            "No enabled on-call schedules",
            organization_id=str(organization_id),
            code=ErrorCode.SCHEDULE_MISSING.value,
        )
    else:
        logger.debug(
            "Resolved on-call",
            organization_id=str(organization_id),
            schedule_id=str(resolution.active_schedule_id),
            force_fallback=force_fallback,
            resolved=resolution.resolved,
        )
    return resolution


async def get_current_oncall(
    db: AsyncSession,
    organization_id: uuid.UUID,
    now: datetime,
) -> CurrentOnCallResponse:
    """Resolve on-call at now and attach user display info."""
    resolution = await resolve_now(db, organization_id, now)

    user_ids = [
        uid
        for uid in (resolution.primary_user_id, resolution.secondary_user_id)
        if uid is not None
    ]
    users: dict[uuid.UUID, User] = {}
    if user_ids:
        result = await db.execute(
            select(User).where(
                User.organization_id == organization_id,
                User.id.in_(user_ids),
            )
        )
        users = {u.id: u for u in result.scalars().all()}

    schedule_name = None
    if resolution.active_schedule_id is not None:
        schedule_name = await db.scalar(
            select(OnCallSchedule.name).where(
                OnCallSchedule.id == resolution.active_schedule_id
            )
        )

    def _to_user(uid: uuid.UUID | None) -> OnCallUser | None:
        user = users.get(uid) if uid is not None else None
        return OnCallUser.model_validate(user) if user is not None else None

    return CurrentOnCallResponse(
        resolved_at=now,
        active_schedule_id=resolution.active_schedule_id,
        active_schedule_name=schedule_name,
        in_coverage_window=resolution.in_coverage_window,
        is_holiday=resolution.is_holiday,
        primary=_to_user(resolution.primary_user_id),
        secondary=_to_user(resolution.secondary_user_id),
    )


async def assert_no_fallback_cycle(
    db: AsyncSession,
    schedule_id: uuid.UUID,
    fallback_schedule_id: uuid.UUID | None,
) -> None:
    """Reject a fallback assignment that would close a loop.

    Walks the existing chain from the proposed fallback; reaching
    schedule_id again means the new reference would create a cycle.

    Raises:
        ScheduleCycleError: If the assignment would create a cycle
    """
    if fallback_schedule_id is None:
        return
    if fallback_schedule_id == schedule_id:
        raise ScheduleCycleError(schedule_id, fallback_schedule_id)

    visited: set[uuid.UUID] = set()
    current: uuid.UUID | None = fallback_schedule_id
    while current is not None and current not in visited:
        if current == schedule_id:
            raise ScheduleCycleError(schedule_id, fallback_schedule_id)
        visited.add(current)
        current = await db.scalar(
            select(OnCallSchedule.fallback_schedule_id).where(
                OnCallSchedule.id == current
            )
        )


def validate_override_window(start_at: datetime, end_at: datetime) -> None:
    """Raise ValueError unless end_at is strictly after start_at (both aware)."""
    if start_at.tzinfo is None or end_at.tzinfo is None:
        raise ValueError("Override start and end must be timezone-aware")
    if end_at <= start_at:
        raise ValueError("Override end must be after start")


def validate_holiday_range(start_date: date, end_date: date | None) -> None:
    """Raise ValueError if end_date precedes start_date."""
    if end_date is not None and end_date < start_date:
        raise ValueError("Holiday end date must not be before start date")
