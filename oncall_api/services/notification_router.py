"""Notification router.

Turns an escalation step's route strings into concrete deliveries.
Routes are parsed once into RouteTarget values:

- CHANNEL: a channel id
- CHANNEL_TYPE: WEBHOOK / EMAIL / SLACK, meaning every enabled channel of
  that type in the organization
- ALIAS: an on-call alias, resolved through the rotation resolver to user
  emails and delivered via the organization's email channel(s)
"""

import enum
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from oncall_api.logging_config import get_logger
from oncall_api.models import AlertChannel, AlertEvent, ChannelType, User
from oncall_api.services.oncall_resolver import resolve_now

logger = get_logger(__name__)


class RouteKind(str, enum.Enum):
    CHANNEL = "CHANNEL"
    CHANNEL_TYPE = "CHANNEL_TYPE"
    ALIAS = "ALIAS"


class OnCallAlias(str, enum.Enum):
    """Route names that mean "whoever is on call"."""

    ONCALL_PRIMARY = "ONCALL_PRIMARY"
    ONCALL_SECONDARY = "ONCALL_SECONDARY"
    ONCALL_PRIMARY_EMAIL = "ONCALL_PRIMARY_EMAIL"
    ONCALL_SECONDARY_EMAIL = "ONCALL_SECONDARY_EMAIL"
    # Primary of the fallback (follow-the-sun) schedule, skipping the local one
    ONCALL_PRIMARY_GLOBAL = "ONCALL_PRIMARY_GLOBAL"


_PRIMARY_ALIASES = {OnCallAlias.ONCALL_PRIMARY, OnCallAlias.ONCALL_PRIMARY_EMAIL}
_SECONDARY_ALIASES = {OnCallAlias.ONCALL_SECONDARY, OnCallAlias.ONCALL_SECONDARY_EMAIL}


@dataclass(frozen=True)
class RouteTarget:
    """A parsed route entry."""

    kind: RouteKind
    value: str

    @classmethod
    def parse(cls, raw: str) -> "RouteTarget | None":
        """Parse a stored route string; returns None for unknown routes."""
        text = str(raw).strip()
        try:
            return cls(RouteKind.CHANNEL, str(uuid.UUID(text)))
        except ValueError:
            pass

        name = text.upper()
        if name in ChannelType.__members__:
            return cls(RouteKind.CHANNEL_TYPE, name)
        if name in OnCallAlias.__members__:
            return cls(RouteKind.ALIAS, name)
        return None


def parse_targets(routes: Iterable[str]) -> list[RouteTarget]:
    """Parse routes, dropping unknown entries with a warning."""
    targets: list[RouteTarget] = []
    for raw in routes:
        target = RouteTarget.parse(raw)
        if target is None:
            logger.warning("Dropping unknown route target", route=str(raw))
            continue
        if target not in targets:
            targets.append(target)
    return targets


def uses_oncall(targets: Iterable[RouteTarget]) -> bool:
    return any(t.kind == RouteKind.ALIAS for t in targets)


@dataclass(frozen=True)
class PlannedDelivery:
    """One channel to send to, optionally with on-call recipients."""

    channel: AlertChannel
    recipients_override: tuple[str, ...] | None = None


@dataclass
class RoutePlan:
    """Deliveries planned for one escalation step."""

    targets: list[RouteTarget]
    deliveries: list[PlannedDelivery] = field(default_factory=list)
    oncall_recipients: list[str] = field(default_factory=list)

    @property
    def uses_oncall(self) -> bool:
        return uses_oncall(self.targets)

    @property
    def no_oncall_coverage(self) -> bool:
        """On-call routing found nobody and there is nothing else to send to."""
        return self.uses_oncall and not self.oncall_recipients and not self.deliveries


async def load_enabled_channels(
    db: AsyncSession,
    organization_id: uuid.UUID,
) -> list[AlertChannel]:
    result = await db.execute(
        select(AlertChannel)
        .where(
            AlertChannel.organization_id == organization_id,
            AlertChannel.is_enabled.is_(True),
        )
        .order_by(AlertChannel.created_at.asc())
    )
    return list(result.scalars().all())


async def _emails_for_users(
    db: AsyncSession,
    organization_id: uuid.UUID,
    user_ids: Sequence[uuid.UUID],
) -> list[str]:
    """Active users' emails, trimmed, lower-cased and de-duplicated."""
    if not user_ids:
        return []
    result = await db.execute(
        select(User.email).where(
            User.organization_id == organization_id,
            User.id.in_(user_ids),
            User.is_active.is_(True),
        )
    )
    emails = (str(e).strip().lower() for e in result.scalars().all())
    return list(dict.fromkeys(e for e in emails if e))


async def resolve_oncall_emails(
    db: AsyncSession,
    organization_id: uuid.UUID,
    aliases: Iterable[OnCallAlias],
    now: datetime,
) -> list[str]:
    """Resolve on-call aliases to recipient emails at now.

    Local aliases use normal resolution; ONCALL_PRIMARY_GLOBAL uses a
    separate forced-fallback resolution so both can appear in one step.
    """
    aliases = set(aliases)
    user_ids: list[uuid.UUID] = []

    if aliases & (_PRIMARY_ALIASES | _SECONDARY_ALIASES):
        local = await resolve_now(db, organization_id, now)
        if aliases & _PRIMARY_ALIASES and local.primary_user_id:
            user_ids.append(local.primary_user_id)
        if aliases & _SECONDARY_ALIASES and local.secondary_user_id:
            user_ids.append(local.secondary_user_id)

    if OnCallAlias.ONCALL_PRIMARY_GLOBAL in aliases:
        global_ = await resolve_now(db, organization_id, now, force_fallback=True)
        if global_.primary_user_id:
            user_ids.append(global_.primary_user_id)

    return await _emails_for_users(db, organization_id, list(dict.fromkeys(user_ids)))


async def plan_routes(
    db: AsyncSession,
    alert: AlertEvent,
    routes: Sequence[str],
    now: datetime,
) -> RoutePlan:
    """Translate a step's routes into channel deliveries for alert.

    Channels whose min_severity is above the alert's severity are
    skipped. On-call recipients are sent through every eligible EMAIL
    channel, replacing that channel's own recipient list.
    """
    plan = RoutePlan(targets=parse_targets(routes))
    if not plan.targets:
        return plan

    channels = await load_enabled_channels(db, alert.organization_id)
    eligible = [c for c in channels if alert.severity.at_least(c.min_severity)]
    by_id = {str(c.id): c for c in eligible}

    selected: dict[uuid.UUID, PlannedDelivery] = {}
    for target in plan.targets:
        if target.kind == RouteKind.CHANNEL:
            channel = by_id.get(target.value)
            if channel is None:
                logger.info(
                    "Routed channel is missing, disabled or below alert severity",
                    channel_id=target.value,
                    alert_event_id=str(alert.id),
                )
                continue
            selected.setdefault(channel.id, PlannedDelivery(channel))
        elif target.kind == RouteKind.CHANNEL_TYPE:
            for channel in eligible:
                if channel.type == ChannelType(target.value):
                    selected.setdefault(channel.id, PlannedDelivery(channel))

    aliases = [OnCallAlias(t.value) for t in plan.targets if t.kind == RouteKind.ALIAS]
    if aliases:
        plan.oncall_recipients = await resolve_oncall_emails(
            db, alert.organization_id, aliases, now
        )
        if plan.oncall_recipients:
            email_channels = [c for c in eligible if c.type == ChannelType.EMAIL]
            if not email_channels:
                logger.warning(
                    "On-call recipients resolved but no email channel is available",
                    alert_event_id=str(alert.id),
                )
            for channel in email_channels:
                selected[channel.id] = PlannedDelivery(
                    channel, tuple(plan.oncall_recipients)
                )

    plan.deliveries = list(selected.values())
    return plan
