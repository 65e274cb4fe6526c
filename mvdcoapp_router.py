"""
mvdcoapp router: command dispatch and the host lifecycle.

Lifecycle states, driven by three observables (in-flight handlers, pipe
state, live child count from the registry):

    Idle        no handlers, idle timer armed
    Busy        handlers running, timer disarmed
    Draining    pipe closed, waiting for handlers and children to finish
    Terminated  shutdown notified, host task group cancelled

Every exit path sends `{"command": "shutdown", "reason": ...}` first.
"""

from __future__ import annotations

import os
import platform
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Any, Awaitable, Callable

import anyio
import anyio.abc
import anyio.from_thread
import anyio.lowlevel

import mvdcoapp_config as config
from mvdcoapp_downloads import DownloadManager, free_disk_space
from mvdcoapp_errors import CoAppError, ErrorKind, wrap_error
from mvdcoapp_fs import FileSystem
from mvdcoapp_log import log, log_size, log_status
from mvdcoapp_processes import ProcessRegistry
from mvdcoapp_protocol import FrameCodec
from mvdcoapp_tools import ToolInvocation, ToolRunner

Handler = Callable[[dict], Awaitable[dict | None]]

STDIN_CHUNK = 65536


# ============================================================================
# Connection info
# ============================================================================

def connection_info() -> dict:
    """The unsolicited `validateConnection` announcement."""
    return {
        "command": "validateConnection",
        "alive": True,
        "success": True,
        "version": config.APP_VERSION,
        "location": sys.executable if config.IS_FROZEN else str(Path(sys.argv[0]).resolve()),
        "ffmpegVersion": config.FFMPEG_VERSION,
        "arch": platform.machine(),
        "platform": sys.platform,
        "osRelease": platform.release(),
        "osVersion": platform.version(),
        "pid": os.getpid(),
        "lastValidation": int(time.time() * 1000),
        "logsFolder": str(config.TEMP_DIR),
        "logFile": str(config.LOG_FILE),
        "logFileSize": log_size(),
        "capabilities": list(config.CAPABILITIES),
    }


def binary_status(binaries: dict[str, Any] | None = None) -> dict:
    """Report bundled binaries missing from disk."""
    binaries = config.BINARIES if binaries is None else binaries
    missing = [name for name, path in binaries.items() if path and not Path(path).exists()]
    if not missing:
        return {"success": True}
    names = ", ".join(missing)
    return {
        "success": False,
        "error": f"{names} not found, please reinstall",
        "key": ErrorKind.BINARY_NOT_FOUND.value,
        "substitutions": [names],
    }


def validate_request(request: dict) -> None:
    """Raise EINVAL if a field the command needs is absent from the request and its params."""
    params = request.get("params") if isinstance(request.get("params"), dict) else {}
    for name in config.VALIDATION_SCHEMA.get(request["command"], []):
        if request.get(name, params.get(name)) is None:
            raise CoAppError(f"Missing required field: {name}", ErrorKind.INVALID_REQUEST, [name])


# ============================================================================
# Router
# ============================================================================

class Router:
    """Routes decoded messages to handlers and decides when the host exits."""

    def __init__(
        self,
        task_group: anyio.abc.TaskGroup,
        send: Callable[..., None],
        registry: ProcessRegistry,
        runner: ToolRunner,
        idle_timeout: float = config.IDLE_TIMEOUT,
        on_exit: Callable[[], None] | None = None,
    ):
        self._tg = task_group
        self.send = send
        self.registry = registry
        self.runner = runner
        self.idle_timeout = idle_timeout
        self.on_exit = on_exit

        self.downloads = DownloadManager(runner, task_group, send)
        self.filesystem = FileSystem(registry)
        self.handlers: dict[str, Handler] = {
            "download-v2": self.downloads.start,
            "cancel-download-v2": self.downloads.cancel,
            "fileSystem": self.filesystem.handle,
            "runTool": self.run_tool,
            "get-disk-space": self.get_disk_space,
            "kill-processing": self.kill_processing,
            "quit": self.quit,
        }

        self.active = 0
        self.pipe_closed = False
        self.exit_reason: str | None = None
        self._commands = 0
        self._idle_scope: anyio.CancelScope | None = None

        registry.on_count_changed = self.on_process_count

    @property
    def terminated(self) -> bool:
        return self.exit_reason is not None

    @property
    def idle_armed(self) -> bool:
        return self._idle_scope is not None

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def dispatch(self, request: Any) -> None:
        """Codec callback: validate synchronously, run the handler in the task group."""
        if self.terminated:
            return
        request_id = request.get("id") if isinstance(request, dict) else None
        if not isinstance(request, dict) or not isinstance(request.get("command"), str):
            log("ROUTER", {"error": "malformed request"})
            self.send(CoAppError("Malformed request", ErrorKind.INVALID_REQUEST).to_message(), request_id)
            return

        command = request["command"]
        handler = self.handlers.get(command)
        if handler is None:
            log("ROUTER", {"error": "unknown command", "command": command})
            self.send({
                "success": False,
                "error": f"Unknown command: {command}",
                "key": ErrorKind.NOT_IMPLEMENTED.value,
            }, request_id)
            return

        try:
            validate_request(request)
        except CoAppError as e:
            log("ROUTER", {"error": e.message, "command": command})
            self.send(e.to_message(), request_id)
            return

        self._enter()
        self._tg.start_soon(self._run, command, handler, request)

    async def _run(self, command: str, handler: Handler, request: dict) -> None:
        request_id = request.get("id")
        fields = {k: v for k, v in request.items() if k not in ("id", "command")}
        log("ROUTER", {"command": command, "id": request_id, "params": fields})

        self._commands += 1
        if self._commands % config.LOG_STATUS_EVERY == 0:
            self.send(log_status())

        try:
            result = await handler(request)
            if result is not None:
                self.send(result, request_id)
        except anyio.get_cancelled_exc_class():
            raise
        except Exception as e:
            err = wrap_error(e)
            log("ROUTER", {"error": err.message, "command": command, "key": err.kind.value})
            self.send(err.to_message(), request_id)
        finally:
            self._leave()

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def run_tool(self, request: dict) -> dict:
        merged = dict(request.get("params") or {}, **request)
        result = await self.runner.run(ToolInvocation.from_request(merged))
        return result.to_message()

    async def get_disk_space(self, request: dict) -> dict:
        path = request.get("path") or str(Path.home())
        return {"success": True, "freeDiskSpace": await free_disk_space(path)}

    async def kill_processing(self, request: dict) -> dict:
        killed = self.registry.clear_processing("manual")
        return {"success": True, "from": "kill-processing", "killedCount": killed}

    async def quit(self, request: dict) -> None:
        self.shutdown("quit_command")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def _enter(self) -> None:
        self.active += 1
        self._disarm_idle()

    def _leave(self) -> None:
        self.active = max(0, self.active - 1)
        if self.active == 0:
            self._arm_idle()
            self.check_drained()

    def _arm_idle(self) -> None:
        self._disarm_idle()
        if self.terminated:
            return
        scope = anyio.CancelScope()
        self._idle_scope = scope
        self._tg.start_soon(self._idle_countdown, scope)

    def _disarm_idle(self) -> None:
        if self._idle_scope is not None:
            self._idle_scope.cancel()
            self._idle_scope = None

    async def _idle_countdown(self, scope: anyio.CancelScope) -> None:
        with scope:
            await anyio.sleep(self.idle_timeout)
            if self._idle_scope is scope:
                self._idle_scope = None
            if self.active == 0 and self.registry.count == 0:
                log("ROUTER", {"event": "idle_timeout", "seconds": self.idle_timeout})
                self.shutdown("idle_timeout")

    def on_pipe_closed(self) -> None:
        self.pipe_closed = True
        self.check_drained()

    def on_process_count(self, count: int) -> None:
        if self.active != 0:
            return
        self.check_drained()
        # A child that outlived its handler leaves no armed timer behind.
        if count == 0 and not self.idle_armed:
            self._arm_idle()

    def check_drained(self) -> None:
        if self.pipe_closed and self.active == 0 and self.registry.count == 0:
            log("ROUTER", {"event": "drained"})
            self.shutdown("pipe_closed")

    def shutdown(self, reason: str) -> None:
        """Notify the peer once, then end the host task group."""
        if self.terminated:
            return
        self.exit_reason = reason
        self._disarm_idle()
        log("ROUTER", {"event": "shutdown", "reason": reason})
        self.send({"command": "shutdown", "reason": reason})
        if self.on_exit is not None:
            self.on_exit()

    def start(self) -> None:
        """Announce the connection and arm the first idle timer."""
        self.send(connection_info())
        status = binary_status()
        if not status["success"]:
            self.send(dict(status, command="binary-status"))
        self._arm_idle()


# ============================================================================
# Host
# ============================================================================

class Host:
    """Wires stdin/stdout, the registry and the router inside one task group."""

    def __init__(self, stdin_fd: int | None = None, stdout: Any = None, idle_timeout: float = config.IDLE_TIMEOUT):
        self.stdin_fd = sys.stdin.fileno() if stdin_fd is None else stdin_fd
        self.stdout = sys.stdout.buffer if stdout is None else stdout
        self.idle_timeout = idle_timeout
        self.registry: ProcessRegistry | None = None
        self.router: Router | None = None

    async def run(self) -> int:
        """Serve until the router shuts down. Returns the process exit code."""
        log("BOOT", {"pid": os.getpid(), "platform": sys.platform, "argv": sys.argv, "version": config.APP_VERSION})
        try:
            async with anyio.create_task_group() as tg:
                self.registry = ProcessRegistry(tg)
                codec = FrameCodec(
                    lambda message: self.router.dispatch(message),
                    self.stdout,
                    lambda: self.router.on_pipe_closed(),
                )
                runner = ToolRunner(tg, self.registry, codec.send)
                self.router = Router(
                    tg, codec.send, self.registry, runner,
                    idle_timeout=self.idle_timeout,
                    on_exit=lambda: tg.start_soon(self._finish, tg.cancel_scope),
                )
                if not config.IS_WINDOWS:
                    tg.start_soon(self._watch_signals)
                self.router.start()
                tg.start_soon(self._read_stdin, codec)
        except Exception as e:
            log("FATAL", {"error": repr(e)})
            if self.registry is not None:
                self.registry.kill_all("fatal")
            return 1

        self.registry.kill_all("exit")
        log("EXIT", {"reason": self.router.exit_reason})
        return 0

    async def _finish(self, scope: anyio.CancelScope) -> None:
        # Let the shutdown notice reach the pipe before tearing down.
        await anyio.sleep(config.SHUTDOWN_GRACE)
        scope.cancel()

    # -------------------------------------------------------------------------
    # Stdin
    # -------------------------------------------------------------------------

    async def _read_stdin(self, codec: FrameCodec) -> None:
        send, receive = anyio.create_memory_object_stream(16)
        token = anyio.lowlevel.current_token()
        # Daemon thread: a blocked pipe read must never hold up process exit.
        threading.Thread(target=self._stdin_thread, args=(send, token), name="stdin", daemon=True).start()
        async with receive:
            async for chunk in receive:
                codec.feed(chunk)
        log("HOST", {"event": "stdin_eof"})
        codec.close_input()

    def _stdin_thread(self, send, token) -> None:
        try:
            while True:
                try:
                    chunk = os.read(self.stdin_fd, STDIN_CHUNK)
                except OSError as e:
                    log("HOST", {"error": str(e), "context": "stdin"})
                    break
                if not chunk:
                    break
                anyio.from_thread.run(send.send, chunk, token=token)
            anyio.from_thread.run_sync(send.close, token=token)
        except (anyio.RunFinishedError, anyio.BrokenResourceError, anyio.ClosedResourceError):
            pass

    async def _watch_signals(self) -> None:
        with anyio.open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
            async for signum in signals:
                log("HOST", {"event": "signal", "signal": signal.Signals(signum).name})
                self.registry.kill_all("signal")
                self.router.shutdown("signal")
                return
