"""
mvdcoapp downloads: ffmpeg transfers into the user's save directory.

A transfer is a long-running ffmpeg job with no timeout of its own. It is
tracked by id so the extension can cancel it:

    cancel  ->  "q" on stdin  ->  SIGTERM after 5s  ->  SIGKILL after 15s
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

import anyio
import anyio.abc
import anyio.to_thread

import mvdcoapp_config as config
from mvdcoapp_errors import CoAppError, ErrorKind, wrap_error
from mvdcoapp_log import log
from mvdcoapp_tools import JOB_DOWNLOAD, JobSpec, ToolInvocation, ToolJob, ToolRunner

INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
WINDOWS_RESERVED_NAMES = frozenset(
    ["CON", "PRN", "AUX", "NUL"]
    + [f"COM{i}" for i in range(1, 10)]
    + [f"LPT{i}" for i in range(1, 10)]
)


# ============================================================================
# Paths
# ============================================================================

def resolve_save_dir(raw: str | None) -> Path | None:
    if not raw or not isinstance(raw, str):
        return None
    if raw == "~" or raw.startswith("~/") or raw.startswith("~\\"):
        raw = str(Path.home() / raw[2:]) if len(raw) > 1 else str(Path.home())
    return Path(raw).resolve()


def build_ui_path(path: Path) -> str:
    """Home-relative display path (`~/Videos/a.mp4`), absolute otherwise."""
    try:
        relative = path.relative_to(Path.home())
    except ValueError:
        return str(path)
    return str(Path("~") / relative) if relative.parts else str(path)


def sanitize_filename(filename: str | None, fallback: str, container: str | None = None) -> str:
    """Make a user-supplied title safe as a file name on every platform."""
    raw = (filename or "").strip() or fallback or "output"
    base = raw.replace("\\", "/").rsplit("/", 1)[-1]

    ext = ""
    if container:
        ext = "." + INVALID_FILENAME_CHARS.sub("", container.strip())
        while ext != "." and base.lower().endswith(ext.lower()):
            base = base[: -len(ext)]
        if ext == ".":
            ext = ""

    base = INVALID_FILENAME_CHARS.sub("", base).strip(". \t\r\n")
    if not base:
        base = fallback or "output"
    if base.upper() in WINDOWS_RESERVED_NAMES:
        base += "_"
    return base + ext


def ensure_unique_filename(directory: Path, candidate: str, in_use: Callable[[Path], bool] | None = None) -> str:
    """`name.ext`, then `name (1).ext`, `name (2).ext`, ... until nothing collides."""
    dot = candidate.rfind(".")
    if dot > 0 and " " not in candidate[dot:]:
        base, ext = candidate[:dot], candidate[dot:]
    else:
        base, ext = candidate, ""

    name = candidate
    attempt = 0
    while (directory / name).exists() or (in_use is not None and in_use(directory / name)):
        attempt += 1
        name = f"{base} ({attempt}){ext}"
    return name


async def free_disk_space(path: Path | str) -> int | None:
    try:
        usage = await anyio.to_thread.run_sync(shutil.disk_usage, str(path))
    except OSError as e:
        log("DOWNLOAD", {"error": str(e), "context": "disk_usage", "path": str(path)})
        return None
    return usage.free


# ============================================================================
# Transfers
# ============================================================================

@dataclass
class ActiveDownload:
    job: ToolJob
    final_path: Path


class DownloadManager:
    """Owns the in-flight transfers, keyed by download id."""

    def __init__(self, runner: ToolRunner, task_group: anyio.abc.TaskGroup, send: Callable[[dict], None]):
        self.runner = runner
        self._tg = task_group
        self._send = send
        self._active: dict[str, ActiveDownload] = {}

    def __contains__(self, download_id: str) -> bool:
        return download_id in self._active

    def path_in_use(self, path: Path) -> bool:
        return any(entry.final_path == path for entry in self._active.values())

    def _error(self, download_id, err: CoAppError) -> dict:
        """Announce the failure as a `download-error` event; the reply is the plain error."""
        self._send(dict(err.to_message(), command="download-error", downloadId=download_id))
        return err.to_message()

    async def _prepare_dir(self, directory: Path) -> None:
        try:
            await anyio.Path(directory).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise wrap_error(e, ErrorKind.IO) from e
        if not os.access(directory, os.W_OK):
            raise CoAppError(f"Directory not writable: {directory}", ErrorKind.PERMISSION, [str(directory)])

    async def _report_disk_space(self, download_id, directory: Path) -> None:
        free = await free_disk_space(directory)
        self._send({"command": "download-disk-space", "downloadId": download_id, "targetDir": str(directory), "freeBytes": free})

    async def start(self, request: dict) -> dict:
        params = dict(request.get("params") or {}, **request)
        download_id = params["downloadId"]
        filename = params.get("filename")
        log("DOWNLOAD", {"event": "start", "id": download_id, "filename": filename, "dir": params.get("saveDir")})

        directory = resolve_save_dir(params.get("saveDir"))
        if directory is None:
            return self._error(download_id, CoAppError("Invalid saveDir", ErrorKind.NOT_FOUND))
        try:
            await self._prepare_dir(directory)
        except CoAppError as e:
            log("DOWNLOAD", {"error": e.message, "context": "save_dir", "dir": str(directory)})
            return self._error(download_id, e)

        self._tg.start_soon(self._report_disk_space, download_id, directory)

        sanitized = sanitize_filename(filename, f"download-{download_id}", params.get("container"))
        if params.get("allowOverwrite") and not self.path_in_use(directory / sanitized):
            final_name = sanitized
        else:
            final_name = ensure_unique_filename(directory, sanitized, self.path_in_use)
        final_path = directory / final_name
        self._send({
            "command": "filename-resolved",
            "downloadId": download_id,
            "resolvedFilename": final_name,
            "path": build_ui_path(final_path),
        })

        invocation = ToolInvocation(
            tool="ffmpeg",
            args=list(params["argsBeforeOutput"]) + [str(final_path)],
            timeout=config.DOWNLOAD_TOOL_TIMEOUT,
            job=JobSpec(kind=JOB_DOWNLOAD, id=download_id, url=params.get("url")),
            progress_command="download-progress",
        )
        job = await self.runner.start(invocation)
        self._active[download_id] = ActiveDownload(job, final_path)
        try:
            result = await job.result()
        finally:
            self._active.pop(download_id, None)

        log("DOWNLOAD", {"event": "finished", "id": download_id, "success": result.success, "code": result.code})
        self._send({
            "command": "download-finished",
            "downloadId": download_id,
            "success": result.success,
            "code": result.code,
            "signal": result.signal,
            "path": str(final_path),
            "fileExists": final_path.exists(),
            "timeout": result.timeout,
            "key": result.key.value if result.key else None,
        })
        return result.to_message()

    async def cancel(self, request: dict) -> dict:
        download_id = request.get("downloadId", (request.get("params") or {}).get("downloadId"))
        entry = self._active.get(download_id)
        if entry is None:
            return {
                "success": False,
                "from": "cancel-download-v2",
                "downloadId": download_id,
                "error": "Not found",
                "key": ErrorKind.NOT_FOUND.value,
            }

        log("DOWNLOAD", {"event": "cancel", "id": download_id, "pid": entry.job.pid})
        await entry.job.quit()
        self._tg.start_soon(self._escalate, entry.job)
        return {"success": True, "from": "cancel-download-v2", "downloadId": download_id}

    async def _escalate(self, job: ToolJob) -> None:
        with anyio.move_on_after(config.CANCEL_TERM_GRACE):
            await job.wait()
            return
        job.stop()
        with anyio.move_on_after(config.CANCEL_KILL_GRACE - config.CANCEL_TERM_GRACE):
            await job.wait()
            return
        log("DOWNLOAD", {"event": "force_kill", "pid": job.pid})
        job.kill()
