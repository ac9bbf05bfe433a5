"""Channel adapters: one HTTP send per call.

Each adapter takes the decrypted channel config and the alert, performs a
single POST and returns the provider's status code. Failures raise
DeliveryError; retry and bookkeeping live in the delivery dispatcher.
"""

import hashlib
import hmac
import json
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

import httpx

from oncall_api.config import settings
from oncall_api.core.errors import (
    ChannelMisconfiguredError,
    ChannelNotConnectedError,
    DeliveryError,
    ErrorCode,
)
from oncall_api.models.alert_channel import ChannelType
from oncall_api.models.alert_event import AlertEvent, AlertSeverity

SEVERITY_EMOJI = {
    AlertSeverity.CRITICAL: ":rotating_light:",
    AlertSeverity.HIGH: ":warning:",
    AlertSeverity.MEDIUM: ":information_source:",
    AlertSeverity.LOW: ":information_source:",
}

# Slack API errors that mean the workspace connection is gone
_SLACK_DISCONNECTED_ERRORS = frozenset(
    {"not_authed", "invalid_auth", "token_revoked", "account_inactive"}
)


def build_alert_payload(alert: AlertEvent) -> dict[str, Any]:
    """JSON body sent to webhooks."""
    return {
        "event_id": str(alert.id),
        "organization_id": str(alert.organization_id),
        "type": alert.type.value,
        "severity": alert.severity.value,
        "title": alert.title,
        "details": alert.details or {},
        "created_at": alert.created_at.isoformat(),
    }


def sign_payload(body: bytes, secret: str) -> str:
    """Return the signature header value for a webhook body."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Constant-time check of a signature header value (for receivers and tests)."""
    return hmac.compare_digest(sign_payload(body, secret), signature)


def _alerts_url() -> str:
    return f"{settings.web_base_url.rstrip('/')}/alerts"


def _request_error(exc: httpx.HTTPError) -> DeliveryError:
    if isinstance(exc, httpx.TimeoutException):
        return DeliveryError("TIMEOUT", str(exc) or "Request timed out")
    return DeliveryError(ErrorCode.DELIVERY_FAILED.value, str(exc) or type(exc).__name__)


def validate_channel_config(channel_type: ChannelType, config: dict[str, Any]) -> None:
    """Check that a channel config has what its adapter needs to send.

    Slack access tokens are not required here; they arrive later when the
    connection handshake completes.

    Raises:
        ChannelMisconfiguredError: If a required field is missing
    """
    if channel_type == ChannelType.WEBHOOK:
        url = str(config.get("url") or "").strip()
        if not url.startswith(("http://", "https://")):
            raise ChannelMisconfiguredError("Webhook channel requires an http(s) url")
    elif channel_type == ChannelType.EMAIL:
        if not _config_recipients(config):
            raise ChannelMisconfiguredError("Email channel requires recipients")
    elif channel_type == ChannelType.SLACK:
        if not _slack_channel(config):
            raise ChannelMisconfiguredError("Slack channel requires a channel_id")


async def send_webhook(
    config: dict[str, Any],
    alert: AlertEvent,
    recipients_override: Sequence[str] | None = None,
) -> int:
    """POST the signed alert payload to the webhook url."""
    url = str(config.get("url") or "").strip()
    if not url:
        raise ChannelMisconfiguredError("Webhook channel missing url")

    body = json.dumps(build_alert_payload(alert), separators=(",", ":")).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        settings.webhook_event_header: alert.type.value,
    }
    secret = config.get("secret")
    if isinstance(secret, str) and secret:
        headers[settings.webhook_signature_header] = sign_payload(body, secret)

    try:
        async with httpx.AsyncClient(timeout=settings.delivery_timeout_seconds) as client:
            response = await client.post(url, content=body, headers=headers)
    except httpx.HTTPError as e:
        raise _request_error(e) from e

    if not response.is_success:
        raise DeliveryError(
            f"WEBHOOK_{response.status_code}",
            f"Webhook responded with status {response.status_code}",
            status_code=response.status_code,
        )
    return response.status_code


def _config_recipients(config: dict[str, Any]) -> list[str]:
    raw = config.get("recipients", config.get("to"))
    if not isinstance(raw, list):
        return []
    return [entry.strip() for entry in raw if isinstance(entry, str) and "@" in entry]


async def send_email(
    config: dict[str, Any],
    alert: AlertEvent,
    recipients_override: Sequence[str] | None = None,
) -> int:
    """Send the alert through the email provider's HTTP API.

    recipients_override replaces the channel's own recipient list; it is
    how on-call aliases reach the resolved user.
    """
    if not settings.email_api_key:
        raise ChannelMisconfiguredError("Email provider API key is not configured")

    recipients = list(recipients_override) if recipients_override else _config_recipients(config)
    if not recipients:
        raise ChannelMisconfiguredError("Email channel has no recipients")

    sender = str(config.get("from") or "").strip() or settings.email_from
    payload = {
        "from": sender,
        "to": recipients,
        "subject": f"[{alert.severity.value}] {alert.title}",
        "text": (
            f"{alert.title}\n\n"
            f"Type: {alert.type.value}\n"
            f"Severity: {alert.severity.value}\n\n"
            f"View: {_alerts_url()}"
        ),
    }

    try:
        async with httpx.AsyncClient(timeout=settings.delivery_timeout_seconds) as client:
            response = await client.post(
                settings.email_api_url,
                json=payload,
                headers={"Authorization": f"Bearer {settings.email_api_key}"},
            )
    except httpx.HTTPError as e:
        raise _request_error(e) from e

    if not response.is_success:
        raise DeliveryError(
            f"EMAIL_{response.status_code}",
            f"Email provider responded with status {response.status_code}",
            status_code=response.status_code,
        )
    return response.status_code


def _slack_channel(config: dict[str, Any]) -> str:
    return str(config.get("channel_id") or config.get("channel") or "").strip()


def format_slack_message(alert: AlertEvent, channel_id: str) -> dict[str, Any]:
    """Build a chat.postMessage body with a summary block and an alerts link."""
    emoji = SEVERITY_EMOJI.get(alert.severity, ":information_source:")
    return {
        "channel": channel_id,
        "text": f"{emoji} {alert.title}",
        "blocks": [
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": (
                        f"{emoji} *{alert.title}*\n"
                        f"Type: {alert.type.value}\n"
                        f"Severity: {alert.severity.value}"
                    ),
                },
            },
            {
                "type": "actions",
                "elements": [
                    {
                        "type": "button",
                        "text": {"type": "plain_text", "text": "Open Alerts"},
                        "url": _alerts_url(),
                    }
                ],
            },
        ],
    }


async def send_slack(
    config: dict[str, Any],
    alert: AlertEvent,
    recipients_override: Sequence[str] | None = None,
) -> int:
    """Post the alert to a Slack channel with the connection's bot token."""
    channel_id = _slack_channel(config)
    if not channel_id:
        raise ChannelMisconfiguredError("Slack channel missing channel_id")

    token = str(config.get("access_token") or "").strip()
    if not token:
        raise ChannelNotConnectedError("Slack connection has not been completed")

    try:
        async with httpx.AsyncClient(timeout=settings.delivery_timeout_seconds) as client:
            response = await client.post(
                settings.slack_api_url,
                json=format_slack_message(alert, channel_id),
                headers={"Authorization": f"Bearer {token}"},
            )
    except httpx.HTTPError as e:
        raise _request_error(e) from e

    try:
        data = response.json()
    except ValueError:
        data = {}

    if response.is_success and data.get("ok") is True:
        return response.status_code

    error = data.get("error")
    if error in _SLACK_DISCONNECTED_ERRORS:
        raise ChannelNotConnectedError(f"Slack rejected the token: {error}")
    raise DeliveryError(
        f"SLACK_{error}" if error else f"SLACK_{response.status_code}",
        f"Slack API error: {error or response.status_code}",
        status_code=response.status_code,
    )


Adapter = Callable[[dict[str, Any], AlertEvent, Sequence[str] | None], Awaitable[int]]

ADAPTERS: dict[ChannelType, Adapter] = {
    ChannelType.WEBHOOK: send_webhook,
    ChannelType.EMAIL: send_email,
    ChannelType.SLACK: send_slack,
}


async def send_to_channel(
    channel_type: ChannelType,
    config: dict[str, Any],
    alert: AlertEvent,
    recipients_override: Sequence[str] | None = None,
) -> int:
    """Dispatch one send to the adapter for channel_type."""
    adapter = ADAPTERS.get(ChannelType(channel_type))
    if adapter is None:
        raise ChannelMisconfiguredError(f"Unsupported channel type: {channel_type}")
    return await adapter(config, alert, recipients_override)
