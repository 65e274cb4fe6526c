"""
mvdcoapp processes: registry of every child the host has spawned.

The registry is the single source of truth for "is this child still alive".
Each registered child gets a watcher task that removes it on exit, exactly
once, and reports the new live count.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

import anyio
import anyio.abc

import mvdcoapp_config as config
from mvdcoapp_log import log


class Category(str, Enum):
    DEFAULT = "default"
    PROCESSING = "processing"  # analysis/preview work that kill-processing may interrupt


def signal_name() -> str:
    """Name of the stop signal: graceful on POSIX, hard kill on Windows."""
    return "SIGKILL" if config.IS_WINDOWS else "SIGTERM"


def stop_process(process: Any) -> bool:
    """Send the platform stop signal. Returns False if the child was already gone."""
    if getattr(process, "returncode", None) is not None:
        return False
    try:
        if config.IS_WINDOWS:
            process.kill()
        else:
            process.terminate()
        return True
    except ProcessLookupError:
        return False
    except OSError as e:
        log("PROC", {"error": str(e), "pid": getattr(process, "pid", None)})
        return False


@dataclass(eq=False)
class ManagedProcess:
    """One tracked child."""
    process: Any
    category: Category = Category.DEFAULT
    exited: bool = False

    @property
    def pid(self) -> int | None:
        return getattr(self.process, "pid", None)


class ProcessRegistry:
    """Tracks live children; supports bulk and processing-only termination."""

    def __init__(
        self,
        task_group: anyio.abc.TaskGroup | None = None,
        on_count_changed: Callable[[int], None] | None = None,
    ):
        self._tg = task_group
        self.on_count_changed = on_count_changed
        self._all: dict[int, ManagedProcess] = {}
        self._processing: dict[int, ManagedProcess] = {}
        self._shutting_down = False

    @property
    def count(self) -> int:
        return len(self._all)

    @property
    def processing_count(self) -> int:
        return len(self._processing)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __contains__(self, process: Any) -> bool:
        return id(process) in self._all

    def _notify(self) -> None:
        if self.on_count_changed is not None:
            self.on_count_changed(self.count)

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def register(self, process: Any, category: Category = Category.DEFAULT) -> ManagedProcess | None:
        """Track a child until it exits. No-op for a child without a pid."""
        if process is None or not getattr(process, "pid", None):
            return None
        if self._shutting_down:
            # kill_all has already run; a late child is stopped, never tracked
            log("PROC", {"event": "late_register", "pid": process.pid})
            stop_process(process)
            return None

        entry = ManagedProcess(process, Category(category))
        self._all[id(process)] = entry
        if entry.category is Category.PROCESSING:
            self._processing[id(process)] = entry
        log("PROC", {"event": "registered", "pid": entry.pid, "category": entry.category.value})
        self._notify()

        if self._tg is not None:
            self._tg.start_soon(self._watch, entry)
        return entry

    def unregister(self, process: Any) -> bool:
        """Early removal for callers that take over a child's lifecycle."""
        entry = self._all.get(id(process))
        if entry is None:
            return False
        self._forget(entry, "unregistered")
        return True

    async def _watch(self, entry: ManagedProcess) -> None:
        reason = "close"
        try:
            code = await entry.process.wait()
        except anyio.get_cancelled_exc_class():
            raise
        except Exception as e:
            reason = "error"
            code = None
            log("PROC", {"event": "wait_error", "pid": entry.pid, "error": str(e)})
        if self._forget(entry, reason):
            log("PROC", {"event": "closed", "pid": entry.pid, "code": code})

    def _forget(self, entry: ManagedProcess, reason: str) -> bool:
        if entry.exited:
            return False
        entry.exited = True
        key = id(entry.process)
        if self._all.get(key) is not entry:
            return False
        del self._all[key]
        self._processing.pop(key, None)
        if reason == "unregistered":
            log("PROC", {"event": reason, "pid": entry.pid})
        self._notify()
        return True

    # -------------------------------------------------------------------------
    # Termination
    # -------------------------------------------------------------------------

    def clear_processing(self, reason: str = "cache clear") -> int:
        """Stop every processing child and drop it from tracking. Returns the count."""
        count = len(self._processing)
        if count == 0:
            return 0

        log("PROC", {"event": "clear_processing", "count": count, "reason": reason})
        entries = list(self._processing.values())
        self._processing.clear()
        for entry in entries:
            stop_process(entry.process)
            entry.exited = True
            self._all.pop(id(entry.process), None)
        self._notify()
        return count

    def kill_all(self, reason: str = "shutdown") -> int:
        """One-shot: stop every tracked child. Later calls do nothing."""
        if self._shutting_down:
            return 0
        self._shutting_down = True

        entries = list(self._all.values())
        log("PROC", {"event": "kill_all", "count": len(entries), "reason": reason})
        signaled = sum(1 for entry in entries if stop_process(entry.process))
        for entry in entries:
            entry.exited = True
        self._all.clear()
        self._processing.clear()
        return signaled
