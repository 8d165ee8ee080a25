"""autopilotd - REST daemon for trigger-driven automations."""

__version__ = "0.1.0"
