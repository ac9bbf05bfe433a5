# Database Models
from oncall_api.models.alert_channel import AlertChannel, ChannelType
from oncall_api.models.alert_delivery import AlertDelivery
from oncall_api.models.alert_escalation import AlertEscalation, SuppressionReason
from oncall_api.models.alert_event import AlertEvent, AlertSeverity, AlertType
from oncall_api.models.alert_rule import AlertRule
from oncall_api.models.base import Base, TimestampMixin
from oncall_api.models.escalation_policy import EscalationPolicy
from oncall_api.models.holiday import HolidayCalendar, HolidayEntry
from oncall_api.models.oncall_schedule import (
    HandoffInterval,
    OnCallOverride,
    OnCallRotationMember,
    OnCallSchedule,
    OnCallScheduleCalendar,
    OnCallTier,
)
from oncall_api.models.organization import Organization, User

__all__ = [
    "AlertChannel",
    "AlertDelivery",
    "AlertEscalation",
    "AlertEvent",
    "AlertRule",
    "AlertSeverity",
    "AlertType",
    "Base",
    "ChannelType",
    "EscalationPolicy",
    "HandoffInterval",
    "HolidayCalendar",
    "HolidayEntry",
    "OnCallOverride",
    "OnCallRotationMember",
    "OnCallSchedule",
    "OnCallScheduleCalendar",
    "OnCallTier",
    "Organization",
    "SuppressionReason",
    "TimestampMixin",
    "User",
]
