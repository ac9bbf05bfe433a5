"""On-call rotation resolution and alert escalation service."""

__version__ = "0.1.0"
