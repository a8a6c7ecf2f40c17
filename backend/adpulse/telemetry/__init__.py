"""
Telemetry Module
================

Observability for adpulse: Sentry error tracking. Logging uses the stdlib
`logging` module with bracketed component tags (configured in main.py).

Usage:
    from adpulse.telemetry import init_sentry, capture_exception

    init_sentry(settings)
"""

from adpulse.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
]
