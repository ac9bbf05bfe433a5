"""API routers for the on-call escalation service."""

from oncall_api.routers import alerts, health, oncall

__all__ = ["alerts", "health", "oncall"]
