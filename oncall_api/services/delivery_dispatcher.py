"""Alert delivery dispatcher.

Sends one alert event to one channel: dedup against earlier successful
deliveries, enforce the per-organization hourly cap, decrypt the channel
config, then call the channel adapter with bounded retries. Every attempt
is recorded as an AlertDelivery row.
"""

import asyncio
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from oncall_api.config import settings
from oncall_api.core.encryption import decrypt_channel_config
from oncall_api.core.errors import DeliveryError, ErrorCode
from oncall_api.logging_config import get_logger
from oncall_api.models import AlertChannel, AlertDelivery, AlertEvent
from oncall_api.services.channel_adapters import send_to_channel

logger = get_logger(__name__)


@dataclass
class DeliveryResult:
    """Outcome of dispatching one alert event to one channel."""

    channel_id: uuid.UUID
    success: bool
    already_delivered: bool = False
    attempts: int = 0
    status_code: int | None = None
    error: str | None = None


def backoff_seconds(attempt: int) -> float:
    """Delay after a failed attempt: base, 2x base, 4x base, ..."""
    return settings.delivery_backoff_base_ms * (2 ** (attempt - 1)) / 1000


async def has_successful_delivery(
    db: AsyncSession,
    alert_event_id: uuid.UUID,
    channel_id: uuid.UUID,
) -> bool:
    result = await db.execute(
        select(AlertDelivery.id)
        .where(
            AlertDelivery.alert_event_id == alert_event_id,
            AlertDelivery.channel_id == channel_id,
            AlertDelivery.success.is_(True),
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def count_recent_deliveries(
    db: AsyncSession,
    organization_id: uuid.UUID,
    now: datetime,
) -> int:
    """Delivery rows for the organization in the hour before now.

    Rows written because the cap was already hit are not counted, so a
    burst of rate-limited attempts does not extend the block.
    """
    result = await db.execute(
        select(func.count(AlertDelivery.id)).where(
            AlertDelivery.organization_id == organization_id,
            AlertDelivery.created_at >= now - timedelta(hours=1),
            or_(
                AlertDelivery.error.is_(None),
                AlertDelivery.error != ErrorCode.DELIVERY_RATE_LIMIT.value,
            ),
        )
    )
    return result.scalar_one()


async def record_delivery(
    db: AsyncSession,
    alert: AlertEvent,
    channel: AlertChannel,
    *,
    success: bool,
    attempt: int,
    now: datetime,
    status_code: int | None = None,
    error: str | None = None,
    duration_ms: int | None = None,
) -> AlertDelivery | None:
    """Persist one delivery attempt.

    Returns:
        The row, or None when a concurrent dispatcher already recorded a
        successful delivery for the same (event, channel).
    """
    delivery = AlertDelivery(
        organization_id=alert.organization_id,
        alert_event_id=alert.id,
        channel_id=channel.id,
        success=success,
        attempt=attempt,
        status_code=status_code,
        error=error,
        duration_ms=duration_ms,
        created_at=now,
    )
    try:
        # Savepoint so a duplicate leaves the rest of the session intact
        async with db.begin_nested():
            db.add(delivery)
        await db.commit()
        return delivery
    except IntegrityError:
        # Unique index on successful (event, channel) rows
        logger.debug(
            "Successful delivery already recorded",
            alert_event_id=str(alert.id),
            channel_id=str(channel.id),
        )
        return None


async def dispatch(
    db: AsyncSession,
    alert: AlertEvent,
    channel: AlertChannel,
    now: datetime,
    recipients_override: Sequence[str] | None = None,
) -> DeliveryResult:
    """Deliver an alert event to a channel.

    Never raises for delivery problems; the outcome is returned and
    recorded. Callers treat a failed result as a warning.
    """
    if await has_successful_delivery(db, alert.id, channel.id):
        logger.debug(
            "Alert already delivered to channel",
            alert_event_id=str(alert.id),
            channel_id=str(channel.id),
        )
        return DeliveryResult(channel_id=channel.id, success=True, already_delivered=True)

    used = await count_recent_deliveries(db, alert.organization_id, now)
    if used >= settings.max_deliveries_per_hour:
        await record_delivery(
            db,
            alert,
            channel,
            success=False,
            attempt=1,
            now=now,
            error=ErrorCode.DELIVERY_RATE_LIMIT.value,
        )
        logger.warning(
            "Hourly delivery cap reached",
            alert_event_id=str(alert.id),
            channel_id=str(channel.id),
            used=used,
            limit=settings.max_deliveries_per_hour,
        )
        return DeliveryResult(
            channel_id=channel.id,
            success=False,
            error=ErrorCode.DELIVERY_RATE_LIMIT.value,
        )

    try:
        config = decrypt_channel_config(channel.config_encrypted)
    except ValueError:
        await record_delivery(
            db,
            alert,
            channel,
            success=False,
            attempt=1,
            now=now,
            error=ErrorCode.CHANNEL_MISCONFIGURED.value,
        )
        logger.warning(
            "Channel config could not be decrypted",
            channel_id=str(channel.id),
            code=ErrorCode.CHANNEL_MISCONFIGURED.value,
        )
        return DeliveryResult(
            channel_id=channel.id,
            success=False,
            attempts=1,
            error=ErrorCode.CHANNEL_MISCONFIGURED.value,
        )

    max_attempts = max(1, settings.delivery_max_attempts)
    last_error: DeliveryError | None = None
    attempt = 0

    for attempt in range(1, max_attempts + 1):
        started = time.perf_counter()
        try:
            status_code = await send_to_channel(
                channel.type, config, alert, recipients_override
            )
        except DeliveryError as e:
            last_error = e
            await record_delivery(
                db,
                alert,
                channel,
                success=False,
                attempt=attempt,
                now=now,
                status_code=e.status_code,
                error=e.code,
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            if not e.retryable or attempt == max_attempts:
                break
            await asyncio.sleep(backoff_seconds(attempt))
            continue

        row = await record_delivery(
            db,
            alert,
            channel,
            success=True,
            attempt=attempt,
            now=now,
            status_code=status_code,
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        logger.info(
            "Alert delivered",
            alert_event_id=str(alert.id),
            channel_id=str(channel.id),
            channel_type=channel.type.value,
            attempt=attempt,
            status_code=status_code,
        )
        return DeliveryResult(
            channel_id=channel.id,
            success=True,
            already_delivered=row is None,
            attempts=attempt,
            status_code=status_code,
        )

    error_code = last_error.code if last_error else ErrorCode.DELIVERY_FAILED.value
    logger.warning(
        "Alert delivery failed",
        alert_event_id=str(alert.id),
        channel_id=str(channel.id),
        channel_type=channel.type.value,
        attempts=attempt,
        error=error_code,
    )
    return DeliveryResult(
        channel_id=channel.id,
        success=False,
        attempts=attempt,
        status_code=last_error.status_code if last_error else None,
        error=error_code,
    )
