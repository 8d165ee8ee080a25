"""Host environment facilities used by event-driven triggers.

The registry never talks to the operating system directly for hotkeys,
lifecycle signals or the clipboard; it goes through a HostEnvironment so
the daemon, a desktop shell, and tests can each supply their own.

HostSignals: named lifecycle signals (app and power events)
HostEnvironment: hotkey binding, clipboard access, signals
HeadlessHost: daemon host: no global hotkeys, clipboard via platform tools
PowerMonitor: derives power signals from psutil battery state and clock jumps
"""

import asyncio
import logging
import shutil
import subprocess
import sys
import time
from collections.abc import Callable

import psutil

logger = logging.getLogger(__name__)

SignalHandler = Callable[[], None]


class HostSignals:
    """Named signal emitter for host lifecycle events."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[SignalHandler]] = {}

    def on(self, event: str, handler: SignalHandler) -> None:
        self._handlers.setdefault(event, []).append(handler)

    def remove_listener(self, event: str, handler: SignalHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)
            if not handlers:
                del self._handlers[event]

    def listener_count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._handlers.get(event, []))
        return sum(len(handlers) for handlers in self._handlers.values())

    def emit(self, event: str) -> None:
        """Invoke every handler for ``event``. Handler errors are logged."""
        for handler in list(self._handlers.get(event, [])):
            try:
                handler()
            except Exception as e:
                logger.error(f"Host signal handler for {event!r} failed: {e}", exc_info=True)


class HostEnvironment:
    """Base host: signals only, no hotkeys, empty clipboard."""

    def __init__(self, signals: HostSignals | None = None) -> None:
        self.signals = signals or HostSignals()

    def register_hotkey(self, accelerator: str, callback: Callable[[], None]) -> bool:
        """Bind a global accelerator. Returns False when the binding is refused."""
        return False

    def unregister_hotkey(self, accelerator: str) -> None:
        return None

    def read_clipboard(self) -> str:
        return ""


class HeadlessHost(HostEnvironment):
    """Host used by the daemon.

    A background service cannot own global keyboard shortcuts, so hotkey
    registration is always refused. Clipboard text is read with the
    platform's command-line tool when one is installed.
    """

    def __init__(self, signals: HostSignals | None = None) -> None:
        super().__init__(signals)
        self._clipboard_command = self._find_clipboard_command()
        if self._clipboard_command is None:
            logger.info("No clipboard tool found, clipboard triggers will never fire")

    @staticmethod
    def _find_clipboard_command() -> list[str] | None:
        if sys.platform == "darwin":
            candidates = [["pbpaste"]]
        elif sys.platform == "win32":
            candidates = [["powershell", "-NoProfile", "-Command", "Get-Clipboard"]]
        else:
            candidates = [["wl-paste", "--no-newline"], ["xclip", "-selection", "clipboard", "-o"], ["xsel", "-b"]]

        for command in candidates:
            if shutil.which(command[0]):
                return command
        return None

    def register_hotkey(self, accelerator: str, callback: Callable[[], None]) -> bool:
        logger.debug(f"Global hotkeys are not available in headless mode ({accelerator})")
        return False

    def read_clipboard(self) -> str:
        if self._clipboard_command is None:
            return ""
        try:
            result = subprocess.run(self._clipboard_command, capture_output=True, timeout=2, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Clipboard read failed: {e}")
            return ""
        if result.returncode != 0:
            return ""
        return result.stdout.decode("utf-8", errors="replace")


class PowerMonitor:
    """Emits power signals derived from psutil and the system clocks.

    - ``on-ac`` / ``on-battery`` when the battery's plugged state flips
    - ``suspend`` then ``resume`` when wall-clock time jumps ahead of the
      monotonic clock, which stops while the machine sleeps

    Machines without a battery only get suspend/resume detection.
    """

    def __init__(self, signals: HostSignals, poll_interval: float = 5.0, sleep_threshold: float = 30.0) -> None:
        self.signals = signals
        self.poll_interval = poll_interval
        self.sleep_threshold = sleep_threshold
        self._task: asyncio.Task[None] | None = None
        self._plugged: bool | None = None

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._plugged = self._read_plugged()
        self._task = asyncio.create_task(self._run(), name="power_monitor")
        logger.info("Power monitor started")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Power monitor stopped")

    @staticmethod
    def _read_plugged() -> bool | None:
        try:
            battery = psutil.sensors_battery()
        except (AttributeError, NotImplementedError, OSError):
            return None
        return None if battery is None else bool(battery.power_plugged)

    def check(self, wall_elapsed: float, monotonic_elapsed: float) -> None:
        """Compare one polling step against the previous one and emit signals."""
        if wall_elapsed - monotonic_elapsed > self.sleep_threshold:
            logger.info(f"Detected system sleep of ~{wall_elapsed - monotonic_elapsed:.0f}s")
            self.signals.emit("suspend")
            self.signals.emit("resume")

        plugged = self._read_plugged()
        if plugged is not None and self._plugged is not None and plugged != self._plugged:
            self.signals.emit("on-ac" if plugged else "on-battery")
        if plugged is not None:
            self._plugged = plugged

    async def _run(self) -> None:
        last_wall = time.time()
        last_mono = time.monotonic()
        while True:
            await asyncio.sleep(self.poll_interval)
            now_wall = time.time()
            now_mono = time.monotonic()
            self.check(now_wall - last_wall, now_mono - last_mono)
            last_wall, last_mono = now_wall, now_mono
