"""
mvdcoapp tools: spawn ffmpeg/ffprobe, enforce timeouts, capture output.

A ToolJob is one supervised child. Its stdout/stderr are pumped in the
background task group, so a timed-out job can answer its caller right away
while the child is still shutting down.
"""

from __future__ import annotations

import base64
import codecs
import shlex
import shutil
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

import anyio
import anyio.abc

import mvdcoapp_config as config
from mvdcoapp_errors import CoAppError, ErrorKind
from mvdcoapp_log import log
from mvdcoapp_processes import Category, ProcessRegistry, signal_name, stop_process

JOB_PROBE = "probe"
JOB_PREVIEW = "preview"
JOB_DOWNLOAD = "download"

# ffmpeg often exits with a code (255) rather than a signal when interrupted
CANCEL_MARKERS = ("received signal 15", "Exiting normally, received signal")
NOT_FOUND_MARKERS = ("No such file or directory", "does not exist", "Server returned 404")


# ============================================================================
# Output capture
# ============================================================================

def truncation_marker(elided: int) -> str:
    return f"\n... [{elided} bytes truncated] ...\n"


def truncate_output(data: bytes, cap: int = config.OUTPUT_HEAD_TAIL) -> tuple[str, bool, int]:
    """Head-and-tail truncation. Returns (text, truncated, total byte count)."""
    total = len(data)
    if total <= 2 * cap:
        text = data.decode("utf-8", errors="replace")
        # U+FFFD is three bytes; binary output must stay inside the byte budget
        if len(text.encode("utf-8")) > 2 * cap:
            text = data.decode("utf-8", errors="ignore")
        return text, False, total
    # "ignore" at the cut points never grows the text past the byte budget
    head = data[:cap].decode("utf-8", errors="ignore")
    tail = data[-cap:].decode("utf-8", errors="ignore")
    return head + truncation_marker(total - 2 * cap) + tail, True, total


def classify_exit(code: int | None, sig: str | None, killed: bool, stderr: str) -> ErrorKind | None:
    """Map an exit state to an error kind; None means success."""
    if code == 0:
        return None
    if sig or killed or any(marker in stderr for marker in CANCEL_MARKERS):
        return ErrorKind.USER_CANCELLED
    if any(marker in stderr for marker in NOT_FOUND_MARKERS):
        return ErrorKind.NOT_FOUND
    return ErrorKind.IO


def split_returncode(returncode: int | None) -> tuple[int | None, str | None]:
    """anyio reports death-by-signal as a negative code; split it into (code, signal)."""
    if returncode is None or returncode >= 0:
        return returncode, None
    try:
        return None, signal.Signals(-returncode).name
    except ValueError:
        return None, f"SIG{-returncode}"


# ============================================================================
# Progress coalescing
# ============================================================================

class ProgressCoalescer:
    """Rolling stderr buffer flushed after a short delay or once it is large.

    State is the buffer plus a deadline; `generation` invalidates a pending
    delayed flush whenever the buffer is flushed by any other path.
    """

    def __init__(
        self,
        emit: Callable[[str], None],
        task_group: anyio.abc.TaskGroup,
        delay: float = config.PROGRESS_FLUSH_DELAY,
        max_chars: int = config.PROGRESS_FLUSH_BYTES,
    ):
        self._emit = emit
        self._tg = task_group
        self.delay = delay
        self.max_chars = max_chars
        self._buffer = ""
        self._deadline: float | None = None
        self._generation = 0

    @property
    def pending(self) -> bool:
        return self._deadline is not None

    def feed(self, text: str) -> None:
        if not text:
            return
        self._buffer += text
        if len(self._buffer) >= self.max_chars:
            self.flush()
        elif self._deadline is None:
            self._deadline = anyio.current_time() + self.delay
            self._tg.start_soon(self._flush_at, self._generation, self._deadline)

    async def _flush_at(self, generation: int, deadline: float) -> None:
        await anyio.sleep_until(deadline)
        if generation == self._generation:
            self.flush()

    def flush(self) -> None:
        self._generation += 1
        self._deadline = None
        if not self._buffer:
            return
        chunk, self._buffer = self._buffer, ""
        self._emit(chunk)


# ============================================================================
# Jobs
# ============================================================================

@dataclass
class JobSpec:
    """What the caller is doing with the tool; drives timeout and tracking."""
    kind: str = JOB_PROBE
    id: str | None = None
    url: str | None = None
    mode: str | None = None
    output: dict | None = None

    @classmethod
    def from_dict(cls, data: dict | None) -> JobSpec | None:
        if not isinstance(data, dict):
            return None
        return cls(
            kind=data.get("kind") or JOB_PROBE,
            id=data.get("id"),
            url=data.get("url"),
            mode=data.get("mode"),
            output=data.get("output") if isinstance(data.get("output"), dict) else None,
        )


@dataclass
class ToolInvocation:
    tool: str
    args: list
    timeout: float | None = None
    job: JobSpec | None = None
    progress_command: str | None = None

    @classmethod
    def from_request(cls, request: dict) -> ToolInvocation:
        timeout_ms = request.get("timeoutMs")
        args = request.get("args")
        if args is None:
            args = []
        elif not isinstance(args, list):
            raise CoAppError("args must be a list", ErrorKind.INVALID_REQUEST, ["args"])
        return cls(
            tool=request.get("tool"),
            args=list(args),
            timeout=timeout_ms / 1000 if isinstance(timeout_ms, (int, float)) else None,
            job=JobSpec.from_dict(request.get("job")),
            progress_command=request.get("progressCommand"),
        )

    @property
    def kind(self) -> str:
        return self.job.kind if self.job else JOB_PROBE

    def effective_timeout(self) -> float:
        """Seconds; 0 means no timeout."""
        if self.timeout is not None:
            return max(0.0, float(self.timeout))
        if self.kind == JOB_DOWNLOAD:
            return config.DOWNLOAD_TOOL_TIMEOUT
        if self.kind == JOB_PREVIEW:
            return config.PREVIEW_TOOL_TIMEOUT
        return config.DEFAULT_TOOL_TIMEOUT


@dataclass
class ToolResult:
    success: bool
    code: int | None = None
    signal: str | None = None
    timeout: bool = False
    key: ErrorKind | None = None
    error: str | None = None
    stdout: bytes = b""
    stderr: bytes = b""
    data: dict | None = None

    def to_message(self) -> dict:
        out_text, out_truncated, out_total = truncate_output(self.stdout)
        err_text, err_truncated, err_total = truncate_output(self.stderr)
        msg: dict[str, Any] = {
            "success": self.success,
            "code": self.code,
            "signal": self.signal,
            "stdout": out_text,
            "stdoutTruncated": out_truncated,
            "stdoutTotalSize": out_total,
            "stderr": err_text,
            "stderrTruncated": err_truncated,
            "stderrTotalSize": err_total,
        }
        if self.timeout:
            msg["timeout"] = True
        if self.key is not None:
            msg["key"] = self.key.value
        if self.error:
            msg["error"] = self.error
        if self.data is not None:
            msg["data"] = self.data
        return msg


class ToolJob:
    """One spawned tool process and its captured output."""

    def __init__(self, invocation: ToolInvocation, argv: list[str], output_path: Path | None = None):
        self.invocation = invocation
        self.argv = argv
        self.output_path = output_path
        self.process: anyio.abc.Process | None = None
        self.stdout = bytearray()
        self.stderr = bytearray()
        self.killed = False
        self.timed_out = False
        self._done = anyio.Event()
        self._final: ToolResult | None = None
        self._progress: ProgressCoalescer | None = None
        self._stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pid(self) -> int | None:
        return self.process.pid if self.process is not None else None

    def _fail_spawn(self, err: OSError) -> None:
        self._final = ToolResult(success=False, key=ErrorKind.SPAWN_FAILED, error=str(err))
        self._done.set()

    # -------------------------------------------------------------------------
    # Supervision (runs in the host task group)
    # -------------------------------------------------------------------------

    async def _pump(self, stream: anyio.abc.ByteReceiveStream | None, sink: bytearray, on_chunk=None):
        if stream is None:
            return
        try:
            async for chunk in stream:
                sink.extend(chunk)
                if on_chunk is not None:
                    on_chunk(chunk)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass
        except Exception as e:
            log("TOOLS", {"error": str(e), "context": "pump", "pid": self.pid})

    def _on_stderr(self, chunk: bytes) -> None:
        if self._progress is not None:
            self._progress.feed(self._stderr_decoder.decode(chunk))

    async def _supervise(self, registry: ProcessRegistry) -> None:
        process = self.process
        async with anyio.create_task_group() as tg:
            tg.start_soon(self._pump, process.stdout, self.stdout)
            tg.start_soon(self._pump, process.stderr, self.stderr, self._on_stderr)
        returncode = await process.wait()
        with anyio.CancelScope(shield=True):
            await process.aclose()

        if self._progress is not None:
            self._progress.feed(self._stderr_decoder.decode(b"", final=True))
            self._progress.flush()

        code, sig = split_returncode(returncode)
        log("TOOLS", {
            "event": "finished", "tool": self.invocation.tool, "kind": self.invocation.kind,
            "job": self.invocation.job.id if self.invocation.job else None,
            "code": code, "signal": sig, "timed_out": self.timed_out,
        })

        stderr_text = self.stderr.decode("utf-8", errors="replace")
        kind = classify_exit(code, sig, self.killed, stderr_text)
        result = ToolResult(
            success=code == 0,
            code=code,
            signal=sig,
            key=kind,
            stdout=bytes(self.stdout),
            stderr=bytes(self.stderr),
        )
        if not self.timed_out:
            result.data = await self._collect_preview(stderr_text)
        await self._discard_output()

        self._final = result
        self._done.set()
        registry.unregister(process)

    async def _collect_preview(self, stderr_text: str) -> dict | None:
        job = self.invocation.job
        if job is None or job.kind != JOB_PREVIEW or job.mode != "imageDataUrl" or self.output_path is None:
            return None
        path = anyio.Path(self.output_path)
        if not await path.exists():
            return None
        try:
            raw = await path.read_bytes()
        except OSError as e:
            log("TOOLS", {"error": str(e), "context": "preview"})
            return None
        mime = "image/png" if (job.output or {}).get("format") == "png" else "image/jpeg"
        return {
            "previewUrl": f"data:{mime};base64,{base64.b64encode(raw).decode('ascii')}",
            "noVideoStream": "Output file does not contain any stream" in stderr_text,
        }

    async def _discard_output(self) -> None:
        if self.output_path is None:
            return
        job = self.invocation.job
        if job is not None and job.output is not None and job.output.get("temp") is False:
            return
        try:
            await anyio.Path(self.output_path).unlink(missing_ok=True)
        except OSError as e:
            log("TOOLS", {"error": str(e), "context": "preview cleanup"})

    # -------------------------------------------------------------------------
    # Caller side
    # -------------------------------------------------------------------------

    async def result(self) -> ToolResult:
        """Wait for exit, or for the timeout, whichever comes first."""
        timeout = self.invocation.effective_timeout()
        if timeout > 0 and not self._done.is_set():
            with anyio.move_on_after(timeout):
                await self._done.wait()
            if not self._done.is_set():
                return self._expire(timeout)
        await self._done.wait()
        return self._final

    def _expire(self, timeout: float) -> ToolResult:
        # Fire-and-forget: the registry watcher reconciles once the child exits.
        log("TOOLS", {"event": "timeout", "tool": self.invocation.tool, "seconds": timeout, "pid": self.pid})
        self.timed_out = True
        self.killed = True
        stop_process(self.process)
        return ToolResult(
            success=False,
            timeout=True,
            code=None,
            signal=signal_name(),
            key=ErrorKind.TIMEOUT,
            stdout=bytes(self.stdout),
            stderr=bytes(self.stderr),
        )

    async def wait(self) -> None:
        await self._done.wait()

    async def quit(self) -> bool:
        """Ask ffmpeg to stop cleanly by typing `q` on its stdin."""
        self.killed = True
        if self.process is None or self.process.stdin is None:
            return False
        try:
            await self.process.stdin.send(b"q\n")
            return True
        except (anyio.ClosedResourceError, anyio.BrokenResourceError, OSError):
            return False

    def stop(self) -> bool:
        self.killed = True
        return stop_process(self.process)

    def kill(self) -> bool:
        self.killed = True
        if self.process is None or self.process.returncode is not None:
            return False
        try:
            self.process.kill()
            return True
        except ProcessLookupError:
            return False


# ============================================================================
# Runner
# ============================================================================

class ToolRunner:
    """Spawns tool jobs and registers them with the process registry."""

    def __init__(
        self,
        task_group: anyio.abc.TaskGroup,
        registry: ProcessRegistry,
        send: Callable[[dict], None] | None = None,
        binaries: dict[str, Any] | None = None,
        temp_dir: Path | None = None,
    ):
        self._tg = task_group
        self.registry = registry
        self._send = send
        self.binaries = binaries if binaries is not None else config.BINARIES
        self.temp_dir = temp_dir or config.TEMP_DIR

    def resolve(self, tool: str) -> str:
        """Bundled binary first, then PATH."""
        if tool not in config.TOOLS:
            raise CoAppError(f"Invalid tool: {tool}", ErrorKind.INVALID_REQUEST)
        bundled = self.binaries.get(tool)
        if bundled and Path(bundled).exists():
            return str(bundled)
        found = shutil.which(tool)
        if found:
            return found
        raise CoAppError(f"{tool} not found, please reinstall", ErrorKind.BINARY_NOT_FOUND, [tool])

    def build_argv(self, invocation: ToolInvocation) -> tuple[list[str], Path | None]:
        argv = [self.resolve(invocation.tool)]
        argv += [arg.strip() if isinstance(arg, str) else str(arg) for arg in invocation.args]
        output_path = None
        job = invocation.job
        if job is not None and job.kind == JOB_PREVIEW and job.output is not None:
            fmt = job.output.get("format") or "jpg"
            output_path = Path(self.temp_dir) / f"preview-{int(time.time() * 1000)}.{fmt}"
            argv += ["-y", str(output_path)]
        return argv, output_path

    async def start(self, invocation: ToolInvocation) -> ToolJob:
        """Spawn the tool. Spawn failures come back as an already-finished job."""
        argv, output_path = self.build_argv(invocation)
        job = ToolJob(invocation, argv, output_path)
        log("TOOLS", {
            "event": "exec", "kind": invocation.kind, "command": shlex.join(argv),
            "url": invocation.job.url if invocation.job else None,
        })

        is_download = invocation.kind == JOB_DOWNLOAD
        try:
            job.process = await anyio.open_process(
                argv,
                stdin=subprocess.PIPE if is_download else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=config.full_env(),
            )
        except OSError as e:
            log("TOOLS", {"event": "spawn_failed", "tool": invocation.tool, "error": str(e)})
            job._fail_spawn(e)
            return job

        self.registry.register(job.process, Category.DEFAULT if is_download else Category.PROCESSING)

        if invocation.progress_command and self._send is not None:
            command = invocation.progress_command
            job_id = invocation.job.id if invocation.job else None
            send = self._send
            job._progress = ProgressCoalescer(
                lambda chunk: send({"command": command, "downloadId": job_id, "chunk": chunk}),
                self._tg,
            )

        self._tg.start_soon(job._supervise, self.registry)
        return job

    async def run(self, invocation: ToolInvocation) -> ToolResult:
        job = await self.start(invocation)
        return await job.result()
