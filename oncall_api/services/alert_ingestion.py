"""Failure ingestion and alert acknowledgment.

Callers report failures with FailureRecorder.record_failure(). Failures
are counted per (organization, alert type) in an injected WindowedCounter;
when the organization's rule threshold is reached inside the rule window,
and no alert of that type was raised in the same window, an AlertEvent is
created and sent to every eligible channel.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oncall_api.config import settings
from oncall_api.core.windowed_counter import WindowedCounter
from oncall_api.logging_config import get_logger
from oncall_api.models import AlertEvent, AlertRule, AlertSeverity, AlertType
from oncall_api.services.delivery_dispatcher import DeliveryResult, dispatch
from oncall_api.services.notification_router import load_enabled_channels

logger = get_logger(__name__)


@dataclass(frozen=True)
class DefaultRule:
    threshold_count: int
    window_minutes: int
    severity: AlertSeverity


DEFAULT_ALERT_RULES: dict[AlertType, DefaultRule] = {
    AlertType.JOB_FAILURE_SPIKE: DefaultRule(5, 10, AlertSeverity.HIGH),
    AlertType.WEBHOOK_FAILURE_SPIKE: DefaultRule(10, 10, AlertSeverity.HIGH),
    AlertType.APP_COMMAND_FAILURE_SPIKE: DefaultRule(20, 10, AlertSeverity.CRITICAL),
    AlertType.OAUTH_REFRESH_FAILURE: DefaultRule(5, 60, AlertSeverity.HIGH),
}

ALERT_TITLES: dict[AlertType, str] = {
    AlertType.JOB_FAILURE_SPIKE: "Job failures spiking",
    AlertType.WEBHOOK_FAILURE_SPIKE: "Webhook delivery failures spiking",
    AlertType.APP_COMMAND_FAILURE_SPIKE: "App command failures spiking",
    AlertType.OAUTH_REFRESH_FAILURE: "OAuth refresh failures detected",
}


async def ensure_default_rules(db: AsyncSession, organization_id: uuid.UUID) -> None:
    """Create any missing default rules for the organization."""
    result = await db.execute(
        select(AlertRule.type).where(AlertRule.organization_id == organization_id)
    )
    existing = set(result.scalars().all())
    missing = [t for t in DEFAULT_ALERT_RULES if t not in existing]
    if not missing:
        return

    for alert_type in missing:
        default = DEFAULT_ALERT_RULES[alert_type]
        db.add(
            AlertRule(
                organization_id=organization_id,
                type=alert_type,
                threshold_count=default.threshold_count,
                window_minutes=default.window_minutes,
                severity=default.severity,
                is_enabled=True,
            )
        )
    await db.commit()
    logger.info(
        "Created default alert rules",
        organization_id=str(organization_id),
        rule_types=[t.value for t in missing],
    )


async def get_enabled_rule(
    db: AsyncSession,
    organization_id: uuid.UUID,
    alert_type: AlertType,
) -> AlertRule | None:
    result = await db.execute(
        select(AlertRule).where(
            AlertRule.organization_id == organization_id,
            AlertRule.type == alert_type,
            AlertRule.is_enabled.is_(True),
        )
    )
    return result.scalar_one_or_none()


async def has_recent_alert(
    db: AsyncSession,
    organization_id: uuid.UUID,
    alert_type: AlertType,
    since: datetime,
) -> bool:
    result = await db.execute(
        select(AlertEvent.id)
        .where(
            AlertEvent.organization_id == organization_id,
            AlertEvent.type == alert_type,
            AlertEvent.created_at >= since,
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def route_new_alert(
    db: AsyncSession,
    alert: AlertEvent,
    now: datetime,
) -> list[DeliveryResult]:
    """Send a newly raised alert to every enabled channel it is eligible for."""
    channels = await load_enabled_channels(db, alert.organization_id)
    results = []
    for channel in channels:
        if not alert.severity.at_least(channel.min_severity):
            continue
        results.append(await dispatch(db, alert, channel, now))
    return results


class FailureRecorder:
    """Counts reported failures and raises alerts at rule thresholds.

    Owns the in-memory counter. The application keeps one on
    app.state; tests build their own.
    """

    def __init__(self, counter: WindowedCounter | None = None) -> None:
        self.counter = (
            counter
            if counter is not None
            else WindowedCounter(max_keys=settings.failure_counter_max_keys)
        )

    async def record_failure(
        self,
        db: AsyncSession,
        alert_type: AlertType,
        organization_id: uuid.UUID,
        now: datetime,
        details: dict[str, Any] | None = None,
    ) -> AlertEvent | None:
        """Count one failure; raise and route an alert at threshold.

        Returns:
            The created AlertEvent, or None when no alert was raised.
        """
        await ensure_default_rules(db, organization_id)
        rule = await get_enabled_rule(db, organization_id, alert_type)
        if rule is None:
            return None

        window = timedelta(minutes=max(rule.window_minutes, 1))
        observed = self.counter.hit((organization_id, alert_type), now, window)
        if observed < rule.threshold_count:
            return None

        if await has_recent_alert(db, organization_id, alert_type, now - window):
            return None

        alert = AlertEvent(
            organization_id=organization_id,
            rule_id=rule.id,
            type=alert_type,
            severity=rule.severity,
            title=ALERT_TITLES.get(alert_type, "Operational alert triggered"),
            details={
                **(details or {}),
                "threshold_count": rule.threshold_count,
                "window_minutes": rule.window_minutes,
                "observed_count": observed,
            },
            created_at=now,
            acknowledged=False,
        )
        db.add(alert)
        await db.commit()
        await db.refresh(alert)

        logger.warning(
            "Alert raised",
            alert_event_id=str(alert.id),
            organization_id=str(organization_id),
            alert_type=alert_type.value,
            observed=observed,
            threshold=rule.threshold_count,
        )

        await route_new_alert(db, alert, now)
        return alert


async def acknowledge_alert(
    db: AsyncSession,
    organization_id: uuid.UUID,
    alert_id: uuid.UUID,
    now: datetime,
    user_id: uuid.UUID | None = None,
) -> AlertEvent | None:
    """Mark an alert acknowledged; the next scan tick stops escalating it.

    Returns:
        The alert, or None if it does not exist in the organization.
        Acknowledging twice keeps the first acknowledgment.
    """
    result = await db.execute(
        select(AlertEvent).where(
            AlertEvent.id == alert_id,
            AlertEvent.organization_id == organization_id,
        )
    )
    alert = result.scalar_one_or_none()
    if alert is None:
        return None

    if alert.acknowledged:
        return alert

    alert.acknowledged = True
    alert.acknowledged_at = now
    alert.acknowledged_by_user_id = user_id
    await db.commit()
    await db.refresh(alert)

    logger.info(
        "Alert acknowledged",
        alert_event_id=str(alert_id),
        organization_id=str(organization_id),
        user_id=str(user_id) if user_id else None,
    )
    return alert
