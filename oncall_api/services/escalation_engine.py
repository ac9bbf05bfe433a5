"""Alert escalation scanner.

Walks an organization's open alert events and, for each one, fires at
most one escalation step per tick: the highest step that is due and
numbered above every step already fired. Steps can be suppressed by the
policy's business-day and quiet-hour rules; suppressed steps are recorded
and may fire on a later tick.
"""

import asyncio
import enum
import math
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oncall_api.config import settings
from oncall_api.core.errors import ErrorCode
from oncall_api.core.timeutils import in_daily_window, minutes_into_day, parse_hhmm, to_local
from oncall_api.logging_config import get_logger, organization_context
from oncall_api.models import (
    AlertEscalation,
    AlertEvent,
    AlertSeverity,
    EscalationPolicy,
    SuppressionReason,
)
from oncall_api.schemas.escalation import EscalationStep, ScanResult, normalize_steps
from oncall_api.services.delivery_dispatcher import dispatch
from oncall_api.services.notification_router import plan_routes

logger = get_logger(__name__)


class EscalationOutcome(str, enum.Enum):
    """What happened to one alert event during a tick."""

    NONE = "none"
    ESCALATED = "escalated"
    SUPPRESSED = "suppressed"


@dataclass
class EscalationDecision:
    """Decision about whether to escalate an alert."""

    should_escalate: bool
    step_number: int | None
    step: EscalationStep | None
    reason: str


def sla_minutes(policy: EscalationPolicy, severity: AlertSeverity) -> int:
    """Minimum age before any step may fire for severity."""
    return {
        AlertSeverity.CRITICAL: policy.sla_critical,
        AlertSeverity.HIGH: policy.sla_high,
        AlertSeverity.MEDIUM: policy.sla_medium,
        AlertSeverity.LOW: policy.sla_low,
    }[AlertSeverity(severity)]


def elapsed_minutes(created_at: datetime, now: datetime) -> int:
    return math.floor((now - created_at).total_seconds() / 60)


def determine_next_step(
    alert: AlertEvent,
    policy: EscalationPolicy,
    steps: Sequence[EscalationStep],
    existing: Sequence[AlertEscalation],
    now: datetime,
) -> EscalationDecision:
    """Pick the step to fire for alert at now, if any.

    Args:
        alert: The open alert event.
        policy: The organization's escalation policy.
        steps: Normalized steps; step numbers are 1-based positions.
        existing: Escalation rows already recorded for the alert.
        now: Evaluation instant.

    Returns:
        EscalationDecision naming the step and the reason.
    """
    age = elapsed_minutes(alert.created_at, now)
    sla = sla_minutes(policy, alert.severity)

    eligible = [
        (number, step)
        for number, step in enumerate(steps, start=1)
        if alert.severity.at_least(step.min_severity)
        and age >= max(step.after_minutes, sla)
    ]
    if not eligible:
        return EscalationDecision(
            should_escalate=False,
            step_number=None,
            step=None,
            reason=f"No step due (age {age}m, SLA {sla}m)",
        )

    highest_fired = max(
        (e.step_number for e in existing if not e.suppressed),
        default=0,
    )
    candidates = [(n, s) for n, s in eligible if n > highest_fired]
    if not candidates:
        return EscalationDecision(
            should_escalate=False,
            step_number=None,
            step=None,
            reason=f"Due steps already fired (highest fired: {highest_fired})",
        )

    number, step = candidates[-1]
    cooldown = timedelta(minutes=settings.escalation_cooldown_minutes)
    if any(
        e.step_number == number and now - e.attempted_at < cooldown
        for e in existing
    ):
        return EscalationDecision(
            should_escalate=False,
            step_number=number,
            step=step,
            reason=f"Step {number} attempted within cooldown",
        )

    return EscalationDecision(
        should_escalate=True,
        step_number=number,
        step=step,
        reason=f"Age {age}m >= max(after {step.after_minutes}m, SLA {sla}m)",
    )


def get_suppression_reason(
    policy: EscalationPolicy,
    now: datetime,
) -> SuppressionReason | None:
    """Business-day and quiet-hour checks in the policy's timezone."""
    local = to_local(now, policy.timezone)

    if policy.business_days_only and local.weekday() >= 5:
        return SuppressionReason.BUSINESS_DAYS_ONLY

    if policy.quiet_hours_enabled:
        start = parse_hhmm(policy.quiet_hours_start)
        end = parse_hhmm(policy.quiet_hours_end)
        if (
            start is not None
            and end is not None
            and in_daily_window(minutes_into_day(local), start, end)
        ):
            return SuppressionReason.QUIET_HOURS

    return None


async def get_policy(
    db: AsyncSession,
    organization_id: uuid.UUID,
) -> EscalationPolicy | None:
    result = await db.execute(
        select(EscalationPolicy).where(
            EscalationPolicy.organization_id == organization_id
        )
    )
    return result.scalar_one_or_none()


async def get_open_alerts(
    db: AsyncSession,
    organization_id: uuid.UUID,
    now: datetime,
) -> list[AlertEvent]:
    """Unacknowledged alerts created inside the lookback window, oldest first."""
    since = now - timedelta(hours=settings.escalation_lookback_hours)
    result = await db.execute(
        select(AlertEvent)
        .where(
            AlertEvent.organization_id == organization_id,
            AlertEvent.acknowledged.is_(False),
            AlertEvent.created_at >= since,
            AlertEvent.created_at <= now,
        )
        .order_by(AlertEvent.created_at.asc())
    )
    return list(result.scalars().all())


async def get_escalations_for_alert(
    db: AsyncSession,
    alert_event_id: uuid.UUID,
) -> list[AlertEscalation]:
    """All escalation rows for an alert, ordered by attempted_at."""
    result = await db.execute(
        select(AlertEscalation)
        .where(AlertEscalation.alert_event_id == alert_event_id)
        .order_by(AlertEscalation.attempted_at.asc())
    )
    return list(result.scalars().all())


async def record_escalation(
    db: AsyncSession,
    alert: AlertEvent,
    step_number: int,
    step: EscalationStep,
    now: datetime,
    suppressed: bool = False,
    reason: SuppressionReason | None = None,
) -> AlertEscalation | None:
    """Create an escalation row.

    Returns:
        Created AlertEscalation, or None if a non-suppressed row for the
        same step already exists (concurrent tick).
    """
    escalation = AlertEscalation(
        organization_id=alert.organization_id,
        alert_event_id=alert.id,
        step_number=step_number,
        attempted_at=now,
        routed_to=list(step.route_to),
        suppressed=suppressed,
        reason=reason.value if reason else None,
    )

    try:
        async with db.begin_nested():
            db.add(escalation)
        await db.commit()
        return escalation
    except IntegrityError:
        # Another tick already fired this step
        logger.debug(
            "Escalation step already recorded (race condition)",
            alert_event_id=str(alert.id),
            step_number=step_number,
        )
        return None


async def escalate_alert(
    db: AsyncSession,
    alert: AlertEvent,
    policy: EscalationPolicy,
    steps: Sequence[EscalationStep],
    now: datetime,
) -> EscalationOutcome:
    """Evaluate one alert and fire, suppress or skip its next step."""
    existing = await get_escalations_for_alert(db, alert.id)
    decision = determine_next_step(alert, policy, steps, existing, now)

    if not decision.should_escalate:
        logger.debug(
            "No escalation needed",
            alert_event_id=str(alert.id),
            reason=decision.reason,
        )
        return EscalationOutcome.NONE

    number, step = decision.step_number, decision.step

    plan = None
    suppression = get_suppression_reason(policy, now)
    if suppression is None:
        plan = await plan_routes(db, alert, step.route_to, now)
        if plan.no_oncall_coverage:
            suppression = SuppressionReason.NO_ONCALL_COVERAGE

    if suppression is not None:
        row = await record_escalation(
            db, alert, number, step, now, suppressed=True, reason=suppression
        )
        if row is None:
            return EscalationOutcome.NONE
        logger.info(
            "Escalation suppressed",
            alert_event_id=str(alert.id),
            step_number=number,
            reason=suppression.value,
            code=ErrorCode.SUPPRESSED.value,
        )
        return EscalationOutcome.SUPPRESSED

    logger.info(
        "Escalating alert",
        alert_event_id=str(alert.id),
        step_number=number,
        reason=decision.reason,
    )

    # Record the step before dispatching so a concurrent tick cannot fire it twice
    row = await record_escalation(db, alert, number, step, now)
    if row is None:
        return EscalationOutcome.NONE

    delivered = 0
    for planned in plan.deliveries:
        result = await dispatch(
            db,
            alert,
            planned.channel,
            now,
            recipients_override=planned.recipients_override,
        )
        if result.success:
            delivered += 1
        else:
            logger.warning(
                "Escalation delivery failed",
                alert_event_id=str(alert.id),
                step_number=number,
                channel_id=str(result.channel_id),
                error=result.error,
            )

    logger.info(
        "Escalation step completed",
        alert_event_id=str(alert.id),
        step_number=number,
        deliveries_planned=len(plan.deliveries),
        deliveries_succeeded=delivered,
    )
    return EscalationOutcome.ESCALATED


async def run_escalation_scan_for_org(
    db: AsyncSession,
    organization_id: uuid.UUID,
    now: datetime,
) -> ScanResult:
    """Run one escalation tick for an organization.

    Args:
        db: Database session.
        organization_id: Organization to scan.
        now: Evaluation instant.

    Returns:
        ScanResult counters for the tick.
    """
    with organization_context(organization_id):
        policy = await get_policy(db, organization_id)
        if policy is None or not policy.is_enabled:
            logger.debug(
                "No enabled escalation policy",
                code=ErrorCode.POLICY_MISSING.value,
            )
            return ScanResult()

        alerts = await get_open_alerts(db, organization_id, now)
        steps = normalize_steps(policy.steps)
        result = ScanResult(total_processed=len(alerts))
        if not steps:
            return result

        for alert in alerts:
            outcome = await escalate_alert(db, alert, policy, steps, now)
            if outcome == EscalationOutcome.ESCALATED:
                result.escalated += 1
            elif outcome == EscalationOutcome.SUPPRESSED:
                result.suppressed += 1

        if result.escalated or result.suppressed:
            logger.info(
                "Escalation scan complete",
                total_processed=result.total_processed,
                escalated=result.escalated,
                suppressed=result.suppressed,
            )
        return result


class OrgScanGuard:
    """Single-flight guard: at most one running scan per organization.

    A lock exists only while a scan for that organization is in flight,
    so the guard holds no more entries than there are concurrent scans.
    """

    def __init__(self) -> None:
        self._locks: dict[uuid.UUID, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def is_running(self, organization_id: uuid.UUID) -> bool:
        lock = self._locks.get(organization_id)
        return lock is not None and lock.locked()

    async def run(self, organization_id: uuid.UUID, coro_factory):
        """Await coro_factory() unless a scan for the org is already running.

        Returns:
            (True, result) when the scan ran, (False, None) when skipped.
        """
        if self.is_running(organization_id):
            return False, None

        lock = self._locks.setdefault(organization_id, asyncio.Lock())
        async with lock:
            try:
                return True, await coro_factory()
            finally:
                self._locks.pop(organization_id, None)
