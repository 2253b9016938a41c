from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import time
from collections.abc import Callable, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from flowpilot.errors import (
    ConcurrentUpdateError,
    InvalidOverride,
    StateCorruptError,
    StateError,
    StateLockTimeout,
)
from flowpilot.health import pid_alive
from flowpilot.state.model import OrchestrationState

logger = logging.getLogger(__name__)

Mutation = Mapping[str, Any]
MutationBuilder = Callable[[OrchestrationState], tuple[Mutation, Mapping[str, list[Any]] | None]]

EXECUTION_ARCHIVE_LIMIT = 25


def _split_path(key: str) -> list[str]:
    parts = key.split(".")
    if not key or any(not part for part in parts):
        raise InvalidOverride(f"Invalid key path: {key!r}")
    return parts


def get_path(data: Any, key: str) -> Any:
    current = data
    for part in _split_path(key):
        if isinstance(current, dict):
            if part not in current:
                raise KeyError(key)
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise KeyError(key)
    return current


def set_path(data: dict[str, Any], key: str, value: Any) -> None:
    """Assign ``value`` at a dot path, creating intermediate objects as needed.

    Numeric segments index into lists and must address an existing element.
    """
    parts = _split_path(key)
    current: Any = data
    for position, part in enumerate(parts):
        last = position == len(parts) - 1
        if isinstance(current, list):
            if not part.isdigit() or int(part) >= len(current):
                raise InvalidOverride(f"List index out of range in {key!r}: {part}")
            if last:
                current[int(part)] = value
                return
            current = current[int(part)]
            continue
        if not isinstance(current, dict):
            raise InvalidOverride(f"Cannot descend into scalar at {key!r}")
        if last:
            current[part] = value
            return
        if current.get(part) is None:
            current[part] = {}
        current = current[part]


def parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


class StateStore:
    """Single JSON record per project, written atomically under a lock file."""

    SCHEMA_VERSION = 1
    FILENAME = "orchestration.json"

    def __init__(
        self,
        project_root: Path,
        *,
        state_dir: str = ".flowpilot",
        lock_timeout_seconds: float = 3.0,
    ) -> None:
        self.project_root = project_root.resolve()
        self.state_dir = self.project_root / state_dir
        self.path = self.state_dir / self.FILENAME
        self.lock_file = self.state_dir / ".lock"
        self.lock_timeout_seconds = lock_timeout_seconds

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    def _clear_abandoned_lock(self) -> bool:
        try:
            owner = int(self.lock_file.read_text(encoding="utf-8").strip() or "0")
        except (OSError, ValueError):
            return False
        if owner == os.getpid() or pid_alive(owner):
            return False
        logger.warning("Removing state lock left by dead process %s", owner)
        try:
            self.lock_file.unlink()
        except FileNotFoundError:
            pass
        return True

    @contextmanager
    def _state_lock(self):
        self.state_dir.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if self._clear_abandoned_lock():
                    continue
                if time.monotonic() - start > self.lock_timeout_seconds:
                    raise StateLockTimeout("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self) -> Any:
        if not self.path.exists():
            return None
        content = self.path.read_text(encoding="utf-8")
        if not content.strip():
            raise StateCorruptError(f"State record is empty: {self.path}", path=str(self.path))
        try:
            return json.loads(content)
        except json.JSONDecodeError as exc:
            logger.error("State record %s is not valid JSON: %s", self.path, exc)
            raise StateCorruptError(
                f"State record is not valid JSON: {exc}", path=str(self.path)
            ) from exc

    def _normalize_envelope(self, raw_payload: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 0),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data") or {},
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 0,
            "updated_at": self._utcnow_iso(),
            "data": {} if raw_payload is None else raw_payload,
        }

    def _write_raw(self, envelope: dict[str, Any]) -> None:
        serialized = json.dumps(envelope, ensure_ascii=False, indent=2)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                handle.write(serialized)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            try:
                tmp_path.unlink()
            except FileNotFoundError:
                pass
            raise StateError(f"Failed to write {self.path}: {exc}") from exc

    def get_envelope(self) -> dict[str, Any]:
        return self._normalize_envelope(self._read_raw())

    def _parse(self, envelope: dict[str, Any]) -> OrchestrationState:
        try:
            state = OrchestrationState.from_dict(envelope["data"], revision=envelope["revision"])
        except StateCorruptError as exc:
            logger.error("State record %s is malformed: %s", self.path, exc)
            exc.path = str(self.path)
            raise
        if not state.project:
            state.project = self.project_root.name
        return state

    def read(self) -> OrchestrationState:
        return self._parse(self.get_envelope())

    @staticmethod
    def _prune_executions(data: dict[str, Any]) -> None:
        executions = data.get("executions")
        if not isinstance(executions, dict) or len(executions) <= EXECUTION_ARCHIVE_LIMIT:
            return
        pinned = {data.get("last_execution"), (data.get("step") or {}).get("execution_id")}
        for item in (data.get("batches") or {}).get("items") or []:
            if isinstance(item, dict):
                pinned.add(item.get("execution_id"))
                pinned.add(item.get("healer_execution_id"))
        archived = [
            key
            for key, value in executions.items()
            if isinstance(value, dict) and value.get("reconciled") and key not in pinned
        ]
        excess = len(executions) - EXECUTION_ARCHIVE_LIMIT
        for key in archived[: max(0, excess)]:
            del executions[key]

    def write(
        self,
        mutation: Mutation | None = None,
        *,
        append: Mapping[str, list[Any]] | None = None,
        expected_revision: int | None = None,
    ) -> OrchestrationState:
        """Apply dot-path assignments and list appends as one atomic write.

        Raises ``ConcurrentUpdateError`` when ``expected_revision`` is given and
        the record has moved on since the caller read it.
        """
        with self._state_lock():
            envelope = self.get_envelope()
            current_revision = int(envelope["revision"])
            if expected_revision is not None and expected_revision != current_revision:
                raise ConcurrentUpdateError(
                    "Concurrent state update detected.",
                    expected=expected_revision,
                    actual=current_revision,
                )
            data = copy.deepcopy(envelope["data"])
            for key, value in (mutation or {}).items():
                set_path(data, key, copy.deepcopy(value))
            for key, items in (append or {}).items():
                try:
                    target = get_path(data, key)
                except KeyError:
                    target = []
                    set_path(data, key, target)
                if not isinstance(target, list):
                    raise InvalidOverride(f"Cannot append to non-list at {key!r}")
                target.extend(copy.deepcopy(items))
            self._prune_executions(data)
            try:
                OrchestrationState.from_dict(data)
            except StateCorruptError as exc:
                raise InvalidOverride(f"Rejected state mutation: {exc}") from exc
            new_envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": current_revision + 1,
                "updated_at": self._utcnow_iso(),
                "data": data,
            }
            self._write_raw(new_envelope)
        return self._parse(new_envelope)

    async def awrite(
        self,
        mutation: Mutation | None = None,
        *,
        append: Mapping[str, list[Any]] | None = None,
        expected_revision: int | None = None,
    ) -> OrchestrationState:
        """``write`` on a worker thread; waiting for the lock never blocks the event loop."""
        return await asyncio.to_thread(
            self.write, mutation, append=append, expected_revision=expected_revision
        )

    def update(self, builder: MutationBuilder, *, attempts: int = 4) -> OrchestrationState:
        """Read, build a mutation from the snapshot, and write it back.

        Retries when another writer slipped in between the read and the write.
        """
        last_error: ConcurrentUpdateError | None = None
        for _ in range(attempts):
            state = self.read()
            mutation, append = builder(state)
            try:
                return self.write(mutation, append=append, expected_revision=state.revision)
            except ConcurrentUpdateError as exc:
                last_error = exc
                time.sleep(0.01)
        raise last_error or ConcurrentUpdateError("State update failed.")

    def get_value(self, key: str) -> Any:
        return get_path(self.get_envelope()["data"], key)

    def set_value(self, key: str, raw: str) -> OrchestrationState:
        return self.write({key: parse_value(raw)})
