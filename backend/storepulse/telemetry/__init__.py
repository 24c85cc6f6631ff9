"""
Telemetry Module
================

Error tracking for the storepulse backend.

Components:
- sentry.py: Error tracking (Sentry)

Usage:
    from storepulse.telemetry import init_observability, capture_exception

    init_observability()  # on app startup
"""

from storepulse.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool: {"sentry": True/False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
