"""Trigger subscriptions for automations.

Public Interface:
    - TriggerRegistry: One subscription per enabled automation
    - HostEnvironment, HeadlessHost, HostSignals, PowerMonitor: Host facilities
    - Debouncer: Batches bursts of events
"""

from .debounce import Debouncer
from .host import HeadlessHost
from .host import HostEnvironment
from .host import HostSignals
from .host import PowerMonitor
from .registry import RegisteredTrigger
from .registry import TriggerRegistry
from .registry import parse_cron

__all__ = [
    "Debouncer",
    "HeadlessHost",
    "HostEnvironment",
    "HostSignals",
    "PowerMonitor",
    "RegisteredTrigger",
    "TriggerRegistry",
    "parse_cron",
]
