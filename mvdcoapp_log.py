"""
mvdcoapp log: append-only diagnostics file with a sliding size window.

Stdout carries the native messaging wire, so nothing here ever writes to it.

Line format:
    <iso timestamp> [<TAG>] <compact json>
"""

from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import mvdcoapp_config as config

_writes = 0


def _compact(msg: Any) -> str:
    if isinstance(msg, str):
        return msg
    try:
        return json.dumps(msg, separators=(",", ":"), default=str, ensure_ascii=False)
    except (TypeError, ValueError):
        return repr(msg)


def trim_log(path: Path, max_size: int = config.LOG_MAX_SIZE, keep: int = config.LOG_KEEP_SIZE) -> bool:
    """Cut the log down to its last `keep` bytes, starting on a line boundary."""
    try:
        size = path.stat().st_size
        if size <= max_size:
            return False
        with path.open("rb") as f:
            f.seek(size - keep)
            tail = f.read(keep)
        newline = tail.find(b"\n")
        path.write_bytes(tail[newline + 1:] if newline != -1 else tail)
        return True
    except OSError:
        return False


def log(tag: str, msg: Any = None, path: Path | None = None):
    """Append a tagged line to the log file (and stderr when enabled)."""
    global _writes
    path = path or config.LOG_FILE
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    line = f"{stamp} [{tag}]" if msg is None else f"{stamp} [{tag}] {_compact(msg)}"

    _writes += 1
    if _writes % config.LOG_TRIM_EVERY == 0:
        trim_log(path)

    try:
        with path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")
    except OSError:
        pass

    if config.LOG_TO_STDERR:
        print(line, file=sys.stderr, flush=True)


def shorten(text: Any, limit: int = 500, keep: int = 400) -> Any:
    """Keep only the tail of long strings so progress chunks don't flood the log."""
    if not isinstance(text, str) or len(text) <= limit:
        return text
    return f"[truncated {len(text) - keep} chars] ... {text[-keep:]}"


def log_size(path: Path | None = None) -> int:
    try:
        return (path or config.LOG_FILE).stat().st_size
    except OSError:
        return 0


def log_status() -> dict:
    """The `log-status` event reported to the extension."""
    return {
        "command": "log-status",
        "logFileSize": log_size(),
        "logFile": str(config.LOG_FILE),
        "logsFolder": str(config.TEMP_DIR),
    }
