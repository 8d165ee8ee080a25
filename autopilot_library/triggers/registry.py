"""Trigger registry for automations.

Owns one active subscription per enabled automation and normalizes every
trigger kind into a single fire callback::

    def on_fire(workspace_id: str, automation_id: str, trigger_type: str, context: dict) -> None:
        ...

Architecture:
- schedule       APScheduler AsyncIOScheduler job with a CronTrigger
- hotkey         HostEnvironment.register_hotkey
- file-change    watchfiles.awatch per path, glob/event filters, debounced batch
- folder-action  watchfiles.awatch on one folder, new files only, 3s debounce
- app-event      HostSignals listeners; "app-ready" fires at registration
- power-event    HostSignals listeners (fed by PowerMonitor)
- clipboard      asyncio polling task
- webhook, deep-link, manual  no subscription; dispatched by the daemon or API

Registration is best-effort per automation: a failing kind is logged and
leaves that automation without a subscription, never blocking others.
"""

import asyncio
import fnmatch
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC
from datetime import datetime
from pathlib import Path
from typing import Any
from typing import Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from watchfiles import Change
from watchfiles import awatch

from autopilot_library.models.automations import AppEventTriggerConfig
from autopilot_library.models.automations import Automation
from autopilot_library.models.automations import ClipboardTriggerConfig
from autopilot_library.models.automations import FileChangeTriggerConfig
from autopilot_library.models.automations import FolderActionTriggerConfig
from autopilot_library.models.automations import HotkeyTriggerConfig
from autopilot_library.models.automations import PowerEventTriggerConfig
from autopilot_library.models.automations import ScheduleTriggerConfig
from autopilot_library.models.automations import TriggerType

from .debounce import Debouncer
from .host import HostEnvironment

logger = logging.getLogger(__name__)

FireCallback = Callable[[str, str, TriggerType, dict[str, Any]], None]

FOLDER_ACTION_DEBOUNCE_SECONDS = 3.0
CLIPBOARD_CONTEXT_CHARS = 500

APP_SIGNALS = frozenset({"window-focus", "window-blur"})
POWER_SIGNALS = frozenset({"on-ac", "on-battery", "suspend", "resume", "lock-screen", "unlock-screen"})

_CHANGE_NAMES = {Change.added: "add", Change.modified: "change", Change.deleted: "unlink"}


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def parse_cron(expression: str, timezone: str | None = None) -> CronTrigger:
    """Parse a cron expression into a CronTrigger.

    Args:
        expression: Standard cron expression (5 parts) or extended with seconds (6 parts)
        timezone: IANA timezone name (None = local timezone)

    Raises:
        ValueError: If the expression or timezone is invalid

    Example:
        "0 9 * * *" -> Daily at 9:00
        "*/30 * * * * *" -> Every 30 seconds
    """
    parts = expression.split()

    if len(parts) == 5:
        minute, hour, day, month, day_of_week = parts
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone,
        )
    if len(parts) == 6:
        second, minute, hour, day, month, day_of_week = parts
        return CronTrigger(
            second=second,
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=timezone,
        )
    raise ValueError(f"Invalid cron expression (must be 5 or 6 parts): {expression}")


class Subscription(Protocol):
    def stop(self) -> None: ...


class CallbackSubscription:
    """Subscription whose teardown is a single callable."""

    def __init__(self, stop: Callable[[], None]) -> None:
        self._stop = stop

    def stop(self) -> None:
        self._stop()


@dataclass
class RegisteredTrigger:
    automation_id: str
    trigger_type: TriggerType
    subscription: Subscription


# ---------------------------------------------------------------------------
# Filesystem subscriptions
# ---------------------------------------------------------------------------


class _WatchSubscription:
    """Runs one watchfiles task per root and feeds a debouncer."""

    recursive = True

    def __init__(self, roots: list[Path], debounce_seconds: float, flush: Callable[[list[Any]], None]) -> None:
        self.roots = roots
        self.debouncer: Debouncer[Any] = Debouncer(debounce_seconds, flush)
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []

    def start(self) -> None:
        for root in self.roots:
            self._tasks.append(asyncio.create_task(self._watch(root), name=f"watch_{root}"))

    async def _watch(self, root: Path) -> None:
        try:
            async for changes in awatch(root, stop_event=self._stop_event, recursive=self.recursive):
                for change, path in changes:
                    self.handle_change(root, change, path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Watcher for {root} stopped: {e}")

    def handle_change(self, root: Path, change: Change, path: str) -> bool:
        raise NotImplementedError

    def stop(self) -> None:
        self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        self._tasks = []
        self.debouncer.cancel()


class FileChangeSubscription(_WatchSubscription):
    """Batches qualifying changes under the configured paths."""

    def __init__(self, config: FileChangeTriggerConfig, roots: list[Path], flush: Callable[[list[Any]], None]) -> None:
        super().__init__(roots, config.debounce_ms / 1000, flush)
        self.config = config

    def matches_patterns(self, root: Path, path: str) -> bool:
        if not self.config.patterns:
            return True
        candidate = Path(path)
        try:
            relative = candidate.relative_to(root).as_posix()
        except ValueError:
            relative = candidate.as_posix()
        names = (candidate.name, relative)
        for pattern in self.config.patterns:
            globs = [pattern]
            if pattern.startswith("**/"):
                globs.append(pattern[3:])
            if any(fnmatch.fnmatch(name, glob) for name in names for glob in globs):
                return True
        return False

    def handle_change(self, root: Path, change: Change, path: str) -> bool:
        return self.feed(root, path, _CHANGE_NAMES.get(change, "change"))

    def feed(self, root: Path, path: str, event: str) -> bool:
        """Filter one change and buffer it. Returns True if it qualified."""
        if not self.matches_patterns(root, path):
            return False
        if self.config.events and event not in self.config.events:
            return False
        self.debouncer.push({"path": path, "event": event})
        return True


class FolderActionSubscription(_WatchSubscription):
    """Batches new files that land directly in a folder."""

    recursive = False

    def __init__(self, config: FolderActionTriggerConfig, folder: Path, flush: Callable[[list[Any]], None]) -> None:
        super().__init__([folder], FOLDER_ACTION_DEBOUNCE_SECONDS, flush)
        self.config = config
        self.folder = folder

    def accepts(self, path: Path) -> bool:
        if path.parent.resolve() != self.folder.resolve():
            return False

        name = path.name
        if self.config.extensions:
            lowered = name.lower()
            if not any(lowered.endswith(ext.lower()) for ext in self.config.extensions):
                return False
        if self.config.name_pattern and not fnmatch.fnmatch(name, self.config.name_pattern):
            return False

        if self.config.min_size is not None or self.config.max_size is not None:
            try:
                size = path.stat().st_size
            except OSError:
                return False
            if self.config.min_size is not None and size < self.config.min_size:
                return False
            if self.config.max_size is not None and size > self.config.max_size:
                return False
        return True

    def handle_change(self, root: Path, change: Change, path: str) -> bool:
        if change != Change.added:
            return False
        return self.feed(Path(path))

    def feed(self, path: Path) -> bool:
        if not self.accepts(path):
            return False
        self.debouncer.push(path.name)
        return True


# ---------------------------------------------------------------------------
# Clipboard subscription
# ---------------------------------------------------------------------------


class ClipboardPoller:
    """Polls clipboard text and reports distinct content matching a pattern."""

    def __init__(
        self,
        host: HostEnvironment,
        interval: float,
        regex: re.Pattern[str] | None,
        on_change: Callable[[str], None],
    ) -> None:
        self.host = host
        self.interval = interval
        self.regex = regex
        self._on_change = on_change
        self._last: str | None = None
        self._task: asyncio.Task[None] | None = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._run(), name="clipboard_poller")

    async def _run(self) -> None:
        # The first successful read is the baseline and never fires
        baseline = True
        while True:
            try:
                content = await asyncio.to_thread(self.host.read_clipboard)
            except Exception as e:
                logger.warning(f"Clipboard read failed: {e}")
            else:
                if baseline:
                    self._last = content
                    baseline = False
                else:
                    self.check(content)
            await asyncio.sleep(self.interval)

    def check(self, content: str) -> bool:
        """Compare against the last observed content. Returns True if it fired."""
        if content == self._last:
            return False
        self._last = content
        if self.regex is not None and not self.regex.search(content):
            return False
        self._on_change(content)
        return True

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class TriggerRegistry:
    """Manages all active triggers for automations.

    Must be used from the asyncio event loop thread; watcher, polling and
    scheduler callbacks all run on that loop.
    """

    def __init__(self, on_fire: FireCallback, host: HostEnvironment | None = None) -> None:
        """Initialize trigger registry.

        Args:
            on_fire: Callback invoked whenever a trigger condition is met
            host: Host facilities for hotkeys, lifecycle signals and clipboard
        """
        self._on_fire = on_fire
        self.host = host or HostEnvironment()
        self._triggers: dict[str, RegisteredTrigger] = {}
        self._scheduler: AsyncIOScheduler | None = None
        self._handlers: dict[str, Callable[[Automation, Any], Subscription | None]] = {
            "schedule": self._register_schedule,
            "hotkey": self._register_hotkey,
            "file-change": self._register_file_change,
            "folder-action": self._register_folder_action,
            "app-event": self._register_app_event,
            "power-event": self._register_power_event,
            "clipboard": self._register_clipboard,
            "webhook": self._register_inbound,
            "deep-link": self._register_inbound,
            "manual": self._register_manual,
        }

    # --- Public API ---

    def register(self, automation: Automation) -> None:
        """Register the trigger for an enabled automation, replacing any previous one."""
        self.unregister(automation.id)

        if not automation.enabled:
            logger.debug(f"Automation {automation.id} is disabled, not registering its trigger")
            return

        config = automation.trigger_config
        handler = self._handlers.get(config.type)
        if handler is None:
            logger.warning(f"Trigger type {config.type!r} is not supported for '{automation.name}'")
            return

        try:
            subscription = handler(automation, config)
        except Exception as e:
            logger.error(f"Failed to register {config.type} trigger for '{automation.name}': {e}")
            return

        if subscription is None:
            return

        self._triggers[automation.id] = RegisteredTrigger(
            automation_id=automation.id,
            trigger_type=config.type,
            subscription=subscription,
        )
        logger.info(f"Registered {config.type} trigger for '{automation.name}' ({automation.id})")

    def unregister(self, automation_id: str) -> None:
        """Stop and remove the trigger for an automation. No-op if absent."""
        existing = self._triggers.pop(automation_id, None)
        if existing is None:
            return
        try:
            existing.subscription.stop()
        except Exception as e:
            logger.warning(f"Error stopping {existing.trigger_type} trigger for {automation_id}: {e}")
        logger.info(f"Unregistered {existing.trigger_type} trigger for automation {automation_id}")

    def unregister_all(self) -> None:
        """Unregister all triggers and stop the scheduler (shutdown)."""
        for automation_id in list(self._triggers):
            self.unregister(automation_id)

        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
        logger.info("All triggers unregistered")

    def active_count(self) -> int:
        return len(self._triggers)

    def get(self, automation_id: str) -> RegisteredTrigger | None:
        return self._triggers.get(automation_id)

    def next_run_at(self, automation_id: str) -> datetime | None:
        """Next scheduled fire time for a schedule trigger, if any."""
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(self._job_id(automation_id))
        return job.next_run_time if job else None

    # --- Internal helpers ---

    def _fire(self, automation: Automation, trigger_type: TriggerType, context: dict[str, Any]) -> None:
        try:
            self._on_fire(automation.workspace_id, automation.id, trigger_type, context)
        except Exception as e:
            logger.error(f"Fire callback failed for '{automation.name}': {e}", exc_info=True)

    @staticmethod
    def _job_id(automation_id: str) -> str:
        return f"automation-{automation_id}"

    def _ensure_scheduler(self) -> AsyncIOScheduler:
        if self._scheduler is None:
            self._scheduler = AsyncIOScheduler(timezone="UTC")
        if not self._scheduler.running:
            self._scheduler.start()
        return self._scheduler

    # --- Schedule (cron) ---

    def _register_schedule(self, automation: Automation, config: ScheduleTriggerConfig) -> Subscription | None:
        if not config.cron:
            logger.warning(f"Schedule trigger for '{automation.name}' has no cron expression")
            return None

        trigger = parse_cron(config.cron, config.timezone)
        scheduler = self._ensure_scheduler()
        job_id = self._job_id(automation.id)

        async def fire_schedule() -> None:
            now = datetime.now(trigger.timezone)
            next_fire = trigger.get_next_fire_time(now, now)
            logger.info(f"Schedule trigger fired for '{automation.name}' (cron: {config.cron})")
            self._fire(
                automation,
                "schedule",
                {
                    "expression": config.cron,
                    "firedAt": _now_iso(),
                    "nextRunAt": next_fire.isoformat() if next_fire else None,
                },
            )

        job = scheduler.add_job(
            fire_schedule,
            trigger=trigger,
            id=job_id,
            name=f"Automation: {automation.name}",
            replace_existing=True,
        )
        logger.info(f"Scheduled '{automation.name}' (cron: {config.cron}, next: {job.next_run_time})")

        def remove_job() -> None:
            try:
                scheduler.remove_job(job_id)
            except JobLookupError:
                pass

        return CallbackSubscription(remove_job)

    # --- Hotkey ---

    def _register_hotkey(self, automation: Automation, config: HotkeyTriggerConfig) -> Subscription | None:
        accelerator = config.accelerator
        if not accelerator:
            logger.warning(f"Hotkey trigger for '{automation.name}' has no accelerator")
            return None

        def on_hotkey() -> None:
            logger.info(f"Hotkey trigger fired for '{automation.name}' ({accelerator})")
            self._fire(automation, "hotkey", {"accelerator": accelerator, "firedAt": _now_iso()})

        if not self.host.register_hotkey(accelerator, on_hotkey):
            logger.warning(
                f"Failed to register hotkey '{accelerator}' for '{automation.name}' - shortcut may be in use"
            )
            return None

        def unbind() -> None:
            try:
                self.host.unregister_hotkey(accelerator)
            except Exception as e:
                logger.debug(f"Hotkey {accelerator} already unbound: {e}")

        return CallbackSubscription(unbind)

    # --- File change ---

    def _register_file_change(self, automation: Automation, config: FileChangeTriggerConfig) -> Subscription | None:
        if not config.paths:
            logger.warning(f"File change trigger for '{automation.name}' has no paths")
            return None

        roots = []
        for raw_path in config.paths:
            path = Path(raw_path).expanduser()
            if not path.exists():
                logger.warning(f"Watch path does not exist: {path}")
                continue
            roots.append(path)

        if not roots:
            return None

        def flush(changes: list[dict[str, str]]) -> None:
            logger.info(f"File change trigger fired for '{automation.name}' ({len(changes)} change(s))")
            self._fire(automation, "file-change", {"changes": changes, "firedAt": _now_iso()})

        subscription = FileChangeSubscription(config, roots, flush)
        subscription.start()
        return subscription

    # --- Folder action ---

    def _register_folder_action(
        self, automation: Automation, config: FolderActionTriggerConfig
    ) -> Subscription | None:
        if not config.folder_path:
            logger.warning(f"Folder action trigger for '{automation.name}' has no folder path")
            return None

        folder = Path(config.folder_path).expanduser()
        if not folder.is_dir():
            logger.warning(f"Folder action path does not exist: {folder}")
            return None

        def flush(files: list[str]) -> None:
            logger.info(f"Folder action trigger fired for '{automation.name}' ({len(files)} new file(s))")
            self._fire(
                automation,
                "folder-action",
                {"files": files, "folderPath": str(folder), "firedAt": _now_iso()},
            )

        subscription = FolderActionSubscription(config, folder, flush)
        subscription.start()
        return subscription

    # --- App and power events ---

    def _listen(
        self,
        automation: Automation,
        trigger_type: TriggerType,
        events: list[str],
        known: frozenset[str],
    ) -> list[tuple[str, Callable[[], None]]]:
        listeners = []
        for event in events:
            if event not in known:
                logger.warning(f"Unknown {trigger_type} '{event}' for '{automation.name}'")
                continue

            def handler(event: str = event) -> None:
                logger.info(f"{trigger_type} '{event}' fired for '{automation.name}'")
                self._fire(automation, trigger_type, {"event": event, "firedAt": _now_iso()})

            self.host.signals.on(event, handler)
            listeners.append((event, handler))
        return listeners

    def _stop_listeners(self, listeners: list[tuple[str, Callable[[], None]]]) -> Subscription:
        def stop() -> None:
            for event, handler in listeners:
                self.host.signals.remove_listener(event, handler)

        return CallbackSubscription(stop)

    def _register_app_event(self, automation: Automation, config: AppEventTriggerConfig) -> Subscription | None:
        if not config.events:
            logger.warning(f"App event trigger for '{automation.name}' has no events")
            return None

        events = [event for event in config.events if event != "app-ready"]
        listeners = self._listen(automation, "app-event", events, APP_SIGNALS)

        # Triggers are only registered once the host is up, so app-ready fires now
        if "app-ready" in config.events:
            logger.info(f"App event 'app-ready' fired immediately for '{automation.name}'")
            self._fire(automation, "app-event", {"event": "app-ready", "firedAt": _now_iso()})
        elif not listeners:
            return None

        return self._stop_listeners(listeners)

    def _register_power_event(self, automation: Automation, config: PowerEventTriggerConfig) -> Subscription | None:
        if not config.events:
            logger.warning(f"Power event trigger for '{automation.name}' has no events")
            return None

        listeners = self._listen(automation, "power-event", list(config.events), POWER_SIGNALS)
        if not listeners:
            return None
        return self._stop_listeners(listeners)

    # --- Clipboard ---

    def _register_clipboard(self, automation: Automation, config: ClipboardTriggerConfig) -> Subscription | None:
        regex = None
        if config.pattern:
            try:
                regex = re.compile(config.pattern)
            except re.error:
                logger.warning(f"Invalid clipboard pattern regex for '{automation.name}': {config.pattern}")

        def on_change(content: str) -> None:
            logger.info(f"Clipboard trigger fired for '{automation.name}'")
            self._fire(
                automation,
                "clipboard",
                {"content": content[:CLIPBOARD_CONTEXT_CHARS], "firedAt": _now_iso()},
            )

        poller = ClipboardPoller(self.host, config.poll_interval_ms / 1000, regex, on_change)
        poller.start()
        logger.info(
            f"Clipboard trigger for '{automation.name}' polling every {config.poll_interval_ms}ms"
            + (f" (pattern: {config.pattern})" if config.pattern else "")
        )
        return poller

    # --- Externally dispatched ---

    def _register_inbound(self, automation: Automation, config: Any) -> Subscription | None:
        logger.debug(f"{config.type} trigger for '{automation.name}' is dispatched by inbound requests")
        return None

    def _register_manual(self, automation: Automation, config: Any) -> Subscription | None:
        return None
