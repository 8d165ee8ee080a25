"""Daemon-side services."""

from .global_events import GlobalEventService
from .global_events import GlobalEventSink
from .global_events import get_global_events

__all__ = ["GlobalEventService", "GlobalEventSink", "get_global_events"]
