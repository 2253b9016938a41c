from __future__ import annotations

import errno
import os
from datetime import UTC, datetime

# A freshly spawned execution may not have a pid recorded yet.
ORPHAN_GRACE_SECONDS = 120.0


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def pid_alive(pid: int | None) -> bool:
    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as exc:
        # EPERM means the pid exists but belongs to someone else.
        return exc.errno == errno.EPERM
    return True


def seconds_since(timestamp: str | None, *, now: datetime | None = None) -> float | None:
    started = parse_iso(timestamp)
    if started is None:
        return None
    current = now or datetime.now(UTC)
    return max(0.0, (current - started).total_seconds())
