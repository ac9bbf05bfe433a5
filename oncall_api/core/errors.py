"""Error taxonomy shared by the resolver, scanner and dispatcher."""

import enum
import uuid


class ErrorCode(str, enum.Enum):
    """Machine-readable outcome codes recorded in logs and audit rows."""

    SCHEDULE_CYCLE = "SCHEDULE_CYCLE"
    POLICY_MISSING = "POLICY_MISSING"
    SCHEDULE_MISSING = "SCHEDULE_MISSING"
    CHANNEL_NOT_CONNECTED = "CHANNEL_NOT_CONNECTED"
    CHANNEL_MISCONFIGURED = "CHANNEL_MISCONFIGURED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    DELIVERY_RATE_LIMIT = "DELIVERY_RATE_LIMIT"
    SUPPRESSED = "SUPPRESSED"


class DeliveryError(Exception):
    """Raised by channel adapters when a send does not succeed.

    Attributes:
        code: Recorded in AlertDelivery.error, e.g. "WEBHOOK_503",
            "TIMEOUT" or an ErrorCode value
        retryable: False for configuration problems that a retry cannot fix
        status_code: HTTP status returned by the provider, if any
    """

    def __init__(
        self,
        code: str,
        message: str = "",
        *,
        retryable: bool = True,
        status_code: int | None = None,
    ) -> None:
        self.code = code
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message or code)


class ChannelNotConnectedError(DeliveryError):
    """The channel never completed its connection handshake."""

    def __init__(self, message: str = "Channel is not connected") -> None:
        super().__init__(
            ErrorCode.CHANNEL_NOT_CONNECTED.value, message, retryable=False
        )


class ChannelMisconfiguredError(DeliveryError):
    """The channel config is missing something required to send."""

    def __init__(self, message: str) -> None:
        super().__init__(
            ErrorCode.CHANNEL_MISCONFIGURED.value, message, retryable=False
        )


class ScheduleCycleError(ValueError):
    """Setting a fallback would close a loop in the fallback chain."""

    def __init__(self, schedule_id: uuid.UUID, fallback_schedule_id: uuid.UUID):
        self.schedule_id = schedule_id
        self.fallback_schedule_id = fallback_schedule_id
        super().__init__(
            f"Fallback {fallback_schedule_id} for schedule {schedule_id} "
            "would create a cycle"
        )
