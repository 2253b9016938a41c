"""Spawns, watches, times out and cancels agent processes.

Every execution is written to the state record before its process starts, and
its pid right after, so a crash at any point leaves a traceable execution that
the next engine instance can resolve. Processes run in their own session so a
cancel or timeout can signal the whole process tree.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any
from uuid import uuid4

from flowpilot.agents import RESULT_FAILED, AgentRunner
from flowpilot.agents.base import WORKFLOW_OUTPUT_SCHEMA
from flowpilot.errors import ConcurrentUpdateError, ExecutionCrash, ExecutionTimeout
from flowpilot.health import ORPHAN_GRACE_SECONDS, pid_alive, seconds_since
from flowpilot.skills import SpawnContext, build_prompt
from flowpilot.state.model import (
    EXEC_CANCELLED,
    EXEC_COMPLETED,
    EXEC_FAILED,
    EXEC_RUNNING,
    OUTCOME_FAILED,
    Execution,
    utcnow_iso,
)
from flowpilot.state.store import StateStore

logger = logging.getLogger(__name__)

SupervisorEventHook = Callable[[dict[str, Any]], None]

OUTPUT_TAIL_LIMIT = 2000


class ProcessSupervisor:
    def __init__(
        self,
        store: StateStore,
        runner: AgentRunner,
        *,
        timeout_seconds: float = 1800.0,
        kill_grace_seconds: float = 5.0,
        spawn_grace_seconds: float = ORPHAN_GRACE_SECONDS,
        skills_dir: Path | None = None,
        event_hook: SupervisorEventHook | None = None,
    ) -> None:
        self.store = store
        self.runner = runner
        self.project_root = store.project_root
        self.executions_dir = store.state_dir / "executions"
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.spawn_grace_seconds = spawn_grace_seconds
        self.skills_dir = skills_dir
        self.event_hook = event_hook
        self._owned: dict[str, asyncio.subprocess.Process] = {}
        self._watchers: dict[str, asyncio.Task[None]] = {}
        self._cancelling: set[str] = set()
        self._activity: asyncio.Event | None = None
        self._activity_loop: asyncio.AbstractEventLoop | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)

    def _activity_event(self) -> asyncio.Event:
        loop = asyncio.get_running_loop()
        if self._activity is None or self._activity_loop is not loop:
            self._activity = asyncio.Event()
            self._activity_loop = loop
        return self._activity

    def _signal_activity(self) -> None:
        if self._activity is not None:
            self._activity.set()

    def execution_dir(self, execution_id: str) -> Path:
        return self.executions_dir / execution_id

    @staticmethod
    def new_execution_id() -> str:
        return f"exec-{uuid4().hex[:12]}"

    def owns(self, execution_id: str) -> bool:
        return execution_id in self._owned

    async def spawn(
        self,
        context: SpawnContext,
        *,
        execution_id: str | None = None,
        link: dict[str, Any] | None = None,
        append: dict[str, list[Any]] | None = None,
        expected_revision: int | None = None,
    ) -> Execution:
        """Record an execution, apply ``link`` in the same write, then start the agent.

        ``link`` carries the step or batch fields that point at the new
        execution, so the record never shows a live process nobody owns.
        """
        execution = Execution(
            id=execution_id or self.new_execution_id(),
            run_id=context.run_id,
            skill=context.skill,
            step=context.step,
            batch_index=context.batch_index,
            timeout_ms=int(self.timeout_seconds * 1000),
            session_ref=context.resume_session,
            heal=context.heal,
        )
        workdir = self.execution_dir(execution.id)
        workdir.mkdir(parents=True, exist_ok=True)
        prompt_path = workdir / "prompt.md"
        schema_path = workdir / "schema.json"
        prompt_path.write_text(build_prompt(context, self.skills_dir), encoding="utf-8")
        schema_path.write_text(json.dumps(WORKFLOW_OUTPUT_SCHEMA, indent=2), encoding="utf-8")

        mutation: dict[str, Any] = {
            f"executions.{execution.id}": execution.to_dict(),
            "last_execution": execution.id,
        }
        mutation.update(link or {})
        try:
            await self.store.awrite(mutation, append=append, expected_revision=expected_revision)
        except ConcurrentUpdateError:
            shutil.rmtree(workdir, ignore_errors=True)
            raise

        command = self.runner.build_command(
            session_ref=context.resume_session, schema_path=schema_path
        )
        try:
            with (
                open(prompt_path, "rb") as stdin_file,
                open(workdir / "stdout.log", "wb") as stdout_file,
                open(workdir / "stderr.log", "wb") as stderr_file,
            ):
                process = await asyncio.create_subprocess_exec(
                    *command,
                    cwd=str(self.project_root),
                    stdin=stdin_file,
                    stdout=stdout_file,
                    stderr=stderr_file,
                    start_new_session=True,
                )
        except OSError as exc:
            message = f"Could not start {self.runner.binary}: {exc}"
            logger.error("Execution %s failed to start: %s", execution.id, exc)
            await self._finalize(
                execution.id, status=EXEC_FAILED, outcome=OUTCOME_FAILED, error=message
            )
            self._emit({"event": "spawn_failed", "execution_id": execution.id, "error": message})
            raise ExecutionCrash(message, execution_id=execution.id) from exc

        execution.pid = process.pid
        self._owned[execution.id] = process
        self._watchers[execution.id] = asyncio.create_task(
            self._watch(execution.id, process, self.timeout_seconds)
        )
        logger.info(
            "Spawned %s for %s as %s (pid %s)",
            context.skill,
            context.step,
            execution.id,
            process.pid,
        )
        self._emit(
            {
                "event": "spawned",
                "execution_id": execution.id,
                "skill": context.skill,
                "pid": process.pid,
            }
        )
        await self._write_if_running(execution.id, {"pid": process.pid})
        return execution

    async def _watch(
        self, execution_id: str, process: asyncio.subprocess.Process, timeout: float
    ) -> None:
        try:
            try:
                exit_code = await asyncio.wait_for(process.wait(), timeout=timeout)
            except TimeoutError:
                logger.warning("Execution %s exceeded %.0fs; terminating", execution_id, timeout)
                await self._terminate(process.pid, process)
                await self._fail_timeout(execution_id, timeout)
                return
            if execution_id in self._cancelling:
                return
            await self._resolve_from_output(execution_id, exit_code)
        finally:
            self._owned.pop(execution_id, None)
            self._watchers.pop(execution_id, None)
            self._cancelling.discard(execution_id)
            self._signal_activity()

    async def _terminate(
        self, pid: int | None, process: asyncio.subprocess.Process | None = None
    ) -> None:
        """SIGTERM the process group, then SIGKILL once the grace period lapses."""
        if pid is None:
            return
        for sig in (signal.SIGTERM, signal.SIGKILL):
            try:
                os.killpg(pid, sig)
            except ProcessLookupError:
                return
            except PermissionError:
                logger.warning("Not permitted to signal process group %s", pid)
                return
            if await self._exited(pid, process, self.kill_grace_seconds):
                return
        logger.warning("Process %s survived SIGKILL", pid)

    @staticmethod
    async def _exited(
        pid: int, process: asyncio.subprocess.Process | None, grace: float
    ) -> bool:
        if process is not None:
            try:
                await asyncio.wait_for(process.wait(), timeout=grace)
            except TimeoutError:
                return False
            return True
        deadline = time.monotonic() + grace
        while time.monotonic() < deadline:
            if not pid_alive(pid):
                return True
            await asyncio.sleep(0.05)
        return not pid_alive(pid)

    async def _write_if_running(self, execution_id: str, fields: dict[str, Any]) -> bool:
        """Update an execution unless it already reached a terminal status."""
        for _ in range(4):
            state = self.store.read()
            execution = state.execution(execution_id)
            if execution is None or execution.status != EXEC_RUNNING:
                return False
            mutation = {f"executions.{execution_id}.{key}": value for key, value in fields.items()}
            try:
                await self.store.awrite(mutation, expected_revision=state.revision)
                return True
            except ConcurrentUpdateError:
                await asyncio.sleep(0.01)
        raise ConcurrentUpdateError(f"Could not update execution {execution_id}.")

    async def _finalize(self, execution_id: str, *, status: str, **fields: Any) -> None:
        fields.update({"status": status, "ended_at": utcnow_iso()})
        if await self._write_if_running(execution_id, fields):
            logger.info("Execution %s %s", execution_id, status)
            self._emit({"event": "finalized", "execution_id": execution_id, "status": status})
        self._signal_activity()

    async def _fail_timeout(self, execution_id: str, limit: float) -> None:
        failure = ExecutionTimeout(
            f"Timed out after {limit:.0f}s", execution_id=execution_id, retriable=True
        )
        await self._finalize(
            execution_id, status=EXEC_FAILED, outcome=OUTCOME_FAILED, error=str(failure)
        )
        self._emit({"event": "timeout", "execution_id": execution_id, "error": str(failure)})

    def _read_log(self, execution_id: str, name: str) -> str:
        path = self.execution_dir(execution_id) / name
        if not path.exists():
            return ""
        return path.read_text(encoding="utf-8", errors="replace")

    def read_output_tail(
        self, execution_id: str, stream: str = "stderr", limit: int = OUTPUT_TAIL_LIMIT
    ) -> str:
        return self._read_log(execution_id, f"{stream}.log")[-limit:]

    async def _resolve_from_output(self, execution_id: str, exit_code: int | None) -> None:
        stdout = self._read_log(execution_id, "stdout.log")
        stderr = self._read_log(execution_id, "stderr.log")
        result = self.runner.parse_output(stdout, exit_code=exit_code, stderr=stderr)
        status = EXEC_FAILED if result.status == RESULT_FAILED else EXEC_COMPLETED
        await self._finalize(
            execution_id,
            status=status,
            outcome=result.status,
            exit_code=exit_code,
            cost_units=result.cost,
            session_ref=result.session_ref,
            message=result.message or None,
            questions=list(result.questions),
            error=result.error,
        )

    async def poll(self, execution_id: str) -> Execution | None:
        """Non-blocking status check; resolves executions this instance does not own."""
        execution = self.store.read().execution(execution_id)
        if execution is None or execution.terminal or self.owns(execution_id):
            return execution

        age = seconds_since(execution.started_at) or 0.0
        if execution.pid is None:
            if age > self.spawn_grace_seconds:
                logger.warning("Execution %s never recorded a pid; marking stale", execution_id)
                await self._finalize(
                    execution_id,
                    status=EXEC_FAILED,
                    outcome=OUTCOME_FAILED,
                    error="Stale: process never started",
                )
        elif pid_alive(execution.pid):
            limit = execution.timeout_ms / 1000.0
            if limit > 0 and age > limit:
                logger.warning("Orphaned execution %s exceeded its timeout", execution_id)
                await self._terminate(execution.pid)
                await self._fail_timeout(execution_id, limit)
        elif self.runner.has_result(self._read_log(execution_id, "stdout.log")):
            logger.info("Execution %s finished while unsupervised; resolving output", execution_id)
            await self._resolve_from_output(execution_id, None)
        else:
            logger.warning(
                "Execution %s pid %s is gone without a result; marking stale",
                execution_id,
                execution.pid,
            )
            await self._finalize(
                execution_id,
                status=EXEC_FAILED,
                outcome=OUTCOME_FAILED,
                error=f"Stale: process {execution.pid} is no longer alive",
            )
        return self.store.read().execution(execution_id)

    async def refresh(self) -> list[Execution]:
        updated: list[Execution] = []
        for execution in self.store.read().running_executions():
            current = await self.poll(execution.id)
            if current is not None and current.terminal:
                updated.append(current)
        return updated

    async def cancel(self, execution_id: str, *, reason: str = "Cancelled") -> Execution | None:
        execution = self.store.read().execution(execution_id)
        if execution is None or execution.terminal:
            return execution
        process = self._owned.get(execution_id)
        if process is not None:
            self._cancelling.add(execution_id)
            await self._terminate(process.pid, process)
        elif pid_alive(execution.pid):
            await self._terminate(execution.pid)
        await self._finalize(execution_id, status=EXEC_CANCELLED, error=reason)
        logger.warning("Cancelled execution %s: %s", execution_id, reason)
        self._emit({"event": "cancelled", "execution_id": execution_id, "reason": reason})
        return self.store.read().execution(execution_id)

    async def wait_for_activity(self, timeout: float) -> bool:
        event = self._activity_event()
        try:
            await asyncio.wait_for(event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        finally:
            event.clear()
        return True

    async def shutdown(self, *, kill: bool = False) -> None:
        """Stop watching; agent processes keep running unless ``kill`` is set."""
        if kill:
            for execution_id in list(self._owned):
                await self.cancel(execution_id, reason="Engine shutdown")
        watchers = list(self._watchers.values())
        for task in watchers:
            task.cancel()
        if watchers:
            await asyncio.gather(*watchers, return_exceptions=True)
        self._owned.clear()
        self._watchers.clear()
