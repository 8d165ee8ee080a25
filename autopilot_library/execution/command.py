"""Command-backed execution service.

Runs an agent CLI as one subprocess per work unit. The delivered message is
written to the process's stdin; the exit status decides between a
``complete`` and an ``error`` notification.
"""

import asyncio
import logging
import uuid
from pathlib import Path

from .service import ExecutionNotification
from .service import ExecutionService
from .service import WorkPolicy
from .service import WorkUnit

logger = logging.getLogger(__name__)

OUTPUT_TAIL_CHARS = 2000


class CommandExecutionService(ExecutionService):
    """Execution service that spawns ``command`` for every work unit.

    ``command`` is an argv template; ``{model}``, ``{permission_mode}`` and
    ``{max_turns}`` are substituted from the work unit's policy.

    Example:
        >>> service = CommandExecutionService(["claude", "--print", "--model", "{model}"])
    """

    def __init__(self, command: list[str], default_max_turns: int = 15) -> None:
        super().__init__()
        if not command:
            raise ValueError("Execution command cannot be empty")
        self.command = command
        self.default_max_turns = default_max_turns
        self._units: dict[str, WorkUnit] = {}
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._cancelled: set[str] = set()

    async def create_work_unit(self, workspace_id: str, policy: WorkPolicy) -> WorkUnit:
        if policy.working_directory and not Path(policy.working_directory).is_dir():
            raise FileNotFoundError(f"Working directory does not exist: {policy.working_directory}")

        unit = WorkUnit(id=f"auto_{uuid.uuid4().hex[:12]}", workspace_id=workspace_id, policy=policy)
        self._units[unit.id] = unit
        logger.info(f"Created work unit {unit.id} (model={policy.model}, mode={policy.permission_mode})")
        return unit

    def _build_argv(self, policy: WorkPolicy) -> list[str]:
        values = {
            "model": policy.model,
            "permission_mode": policy.permission_mode,
            "max_turns": policy.max_turns or self.default_max_turns,
        }
        return [part.format(**values) for part in self.command]

    async def deliver_message(self, work_unit_id: str, text: str) -> None:
        unit = self._units.get(work_unit_id)
        if unit is None:
            raise ValueError(f"Unknown work unit: {work_unit_id}")
        if work_unit_id in self._processes:
            raise RuntimeError(f"Work unit {work_unit_id} already received its message")

        argv = self._build_argv(unit.policy)
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=unit.policy.working_directory,
        )
        self._processes[work_unit_id] = process
        self._tasks[work_unit_id] = asyncio.create_task(
            self._wait_for_exit(work_unit_id, process, text),
            name=f"work_unit_{work_unit_id}",
        )
        logger.info(f"Started {argv[0]} for work unit {work_unit_id} (pid {process.pid})")

    async def _wait_for_exit(self, work_unit_id: str, process: asyncio.subprocess.Process, text: str) -> None:
        try:
            stdout, stderr = await process.communicate(text.encode("utf-8"))
        except Exception as e:
            if work_unit_id not in self._cancelled:
                self._notify(ExecutionNotification(kind="error", work_unit_id=work_unit_id, error=str(e)))
            return
        finally:
            self._processes.pop(work_unit_id, None)
            self._tasks.pop(work_unit_id, None)
            self._units.pop(work_unit_id, None)

        if work_unit_id in self._cancelled:
            self._cancelled.discard(work_unit_id)
            logger.info(f"Work unit {work_unit_id} exited after cancellation")
            return

        output = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode == 0:
            self._notify(
                ExecutionNotification(
                    kind="complete",
                    work_unit_id=work_unit_id,
                    summary=output[-OUTPUT_TAIL_CHARS:] or None,
                )
            )
            return

        error_output = stderr.decode("utf-8", errors="replace").strip() or output
        message = f"Agent exited with code {process.returncode}"
        if error_output:
            message = f"{message}: {error_output[-OUTPUT_TAIL_CHARS:]}"
        self._notify(ExecutionNotification(kind="error", work_unit_id=work_unit_id, error=message))

    async def cancel(self, work_unit_id: str) -> None:
        process = self._processes.get(work_unit_id)
        if process is None:
            self._units.pop(work_unit_id, None)
            return

        self._cancelled.add(work_unit_id)
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        logger.info(f"Cancelled work unit {work_unit_id}")
