
import anyio
import pytest

from conftest import PYTHON
import mvdcoapp_config as config
from mvdcoapp_errors import CoAppError, ErrorKind
from mvdcoapp_processes import ProcessRegistry, signal_name
from mvdcoapp_tools import (
    JobSpec,
    ProgressCoalescer,
    ToolInvocation,
    ToolRunner,
    classify_exit,
    split_returncode,
    truncate_output,
    truncation_marker,
)

pytestmark = pytest.mark.anyio

CAP = 128 * 1024


def script(code):
    return ["-c", code]


# ----------------------------------------------------------------------------
# Pure helpers
# ----------------------------------------------------------------------------

async def test_small_output_is_not_truncated():
    text, truncated, total = truncate_output(b"hello")
    assert (text, truncated, total) == ("hello", False, 5)


@pytest.mark.parametrize("data", [
    b"x" * (2 * CAP + 1),
    b"y" * (3 * 1024 * 1024),
    "é".encode() * (CAP + 7),
])
async def test_truncation_bound(data):
    text, truncated, total = truncate_output(data)
    marker = truncation_marker(total - 2 * CAP)
    assert truncated
    assert total == len(data)
    assert marker in text
    assert len(text.encode()) <= 2 * CAP + len(marker.encode())


@pytest.mark.parametrize("data", [
    b"\xff" * (2 * CAP),
    b"\xfe\xff" * 1000 + "\u00e9".encode() * 10,
])
async def test_invalid_utf8_stays_within_bound(data):
    text, truncated, total = truncate_output(data)
    assert not truncated
    assert total == len(data)
    assert len(text.encode()) <= 2 * CAP


async def test_invalid_utf8_is_replaced_when_it_fits():
    text, _, _ = truncate_output(b"ok \xff done")
    assert text == "ok \ufffd done"


async def test_truncation_keeps_head_and_tail():
    data = b"H" * CAP + b"m" * 1000 + b"T" * CAP
    text, _, _ = truncate_output(data)
    assert text.startswith("H" * CAP)
    assert text.endswith("T" * CAP)
    assert "[1000 bytes truncated]" in text


@pytest.mark.parametrize("code, sig, killed, stderr, expected", [
    (0, None, False, "", None),
    (0, None, True, "", None),
    (None, "SIGTERM", False, "", ErrorKind.USER_CANCELLED),
    (1, None, True, "", ErrorKind.USER_CANCELLED),
    (255, None, False, "Exiting normally, received signal 2.", ErrorKind.USER_CANCELLED),
    (1, None, False, "received signal 15, terminating.", ErrorKind.USER_CANCELLED),
    (1, None, False, "in.mp4: No such file or directory", ErrorKind.NOT_FOUND),
    (1, None, False, "HTTP error: Server returned 404 Not Found", ErrorKind.NOT_FOUND),
    (1, None, False, "Invalid data found when processing input", ErrorKind.IO),
])
async def test_classify_exit(code, sig, killed, stderr, expected):
    assert classify_exit(code, sig, killed, stderr) is expected


async def test_split_returncode():
    assert split_returncode(0) == (0, None)
    assert split_returncode(3) == (3, None)
    assert split_returncode(-15) == (None, "SIGTERM")
    assert split_returncode(None) == (None, None)


async def test_effective_timeout_defaults():
    assert ToolInvocation("ffprobe", []).effective_timeout() == 30.0
    assert ToolInvocation("ffmpeg", [], job=JobSpec(kind="preview")).effective_timeout() == 40.0
    assert ToolInvocation("ffmpeg", [], job=JobSpec(kind="download")).effective_timeout() == 0.0
    assert ToolInvocation("ffmpeg", [], timeout=2.5, job=JobSpec(kind="download")).effective_timeout() == 2.5


async def test_invocation_rejects_non_list_args():
    with pytest.raises(CoAppError) as info:
        ToolInvocation.from_request({"tool": "ffprobe", "args": "-i input.mp4"})
    assert info.value.kind is ErrorKind.INVALID_REQUEST
    assert info.value.substitutions == ["args"]
    assert ToolInvocation.from_request({"tool": "ffprobe"}).args == []


async def test_invocation_from_request():
    inv = ToolInvocation.from_request({
        "tool": "ffprobe",
        "args": ["-i", "x"],
        "timeoutMs": 1500,
        "job": {"kind": "preview", "id": "p1", "output": {"format": "png"}},
        "progressCommand": "preview-progress",
    })
    assert inv.timeout == 1.5
    assert inv.kind == "preview"
    assert inv.job.output == {"format": "png"}
    assert inv.progress_command == "preview-progress"


# ----------------------------------------------------------------------------
# Progress coalescing
# ----------------------------------------------------------------------------

async def test_progress_flushes_after_delay():
    chunks = []
    async with anyio.create_task_group() as tg:
        progress = ProgressCoalescer(chunks.append, tg, delay=0.05)
        progress.feed("frame=1 ")
        progress.feed("frame=2 ")
        assert chunks == []
        assert progress.pending
    assert chunks == ["frame=1 frame=2 "]
    assert not progress.pending


async def test_progress_flushes_at_size_cap():
    chunks = []
    async with anyio.create_task_group() as tg:
        progress = ProgressCoalescer(chunks.append, tg, delay=10, max_chars=8)
        progress.feed("abc")
        progress.feed("defghij")
        assert chunks == ["abcdefghij"]
        assert not progress.pending
        tg.cancel_scope.cancel()


async def test_explicit_flush_cancels_pending_timer():
    chunks = []
    async with anyio.create_task_group() as tg:
        progress = ProgressCoalescer(chunks.append, tg, delay=0.05)
        progress.feed("x")
        progress.flush()
        progress.flush()
    assert chunks == ["x"]


# ----------------------------------------------------------------------------
# Runner
# ----------------------------------------------------------------------------

async def test_timeout_resolves_before_child_exits():
    async with anyio.create_task_group() as tg:
        registry = ProcessRegistry(tg)
        runner = ToolRunner(tg, registry, binaries=PYTHON)
        started = anyio.current_time()
        result = await runner.run(ToolInvocation("ffprobe", script("import time; time.sleep(1)"), timeout=0.005))
        elapsed = anyio.current_time() - started

    assert elapsed < 0.2
    assert not result.success
    assert result.timeout
    assert result.code is None
    assert result.signal == signal_name()
    assert result.key is ErrorKind.TIMEOUT
    msg = result.to_message()
    assert msg["timeout"] is True and msg["key"] == "ETIMEDOUT"
    assert registry.count == 0


async def test_successful_run_captures_output():
    async with anyio.create_task_group() as tg:
        runner = ToolRunner(tg, ProcessRegistry(tg), binaries=PYTHON)
        result = await runner.run(ToolInvocation(
            "ffprobe", script("import sys; sys.stdout.write('out'); sys.stderr.write('err')"),
        ))
    msg = result.to_message()
    assert msg["success"] is True
    assert msg["code"] == 0
    assert msg["stdout"] == "out"
    assert msg["stderr"] == "err"
    assert msg["stdoutTotalSize"] == 3
    assert msg["stdoutTruncated"] is False
    assert "key" not in msg


async def test_string_args_are_trimmed():
    async with anyio.create_task_group() as tg:
        runner = ToolRunner(tg, ProcessRegistry(tg), binaries=PYTHON)
        result = await runner.run(ToolInvocation("ffprobe", ["  -c  ", " import sys; sys.stdout.write('ok') "]))
    assert result.stdout == b"ok"


async def test_failed_run_is_classified():
    async with anyio.create_task_group() as tg:
        runner = ToolRunner(tg, ProcessRegistry(tg), binaries=PYTHON)
        generic = await runner.run(ToolInvocation("ffprobe", script("import sys; sys.exit(3)")))
        missing = await runner.run(ToolInvocation(
            "ffprobe", script("import sys; sys.stderr.write('a.mp4: No such file or directory'); sys.exit(1)"),
        ))
    assert (generic.success, generic.code, generic.key) == (False, 3, ErrorKind.IO)
    assert (missing.success, missing.key) == (False, ErrorKind.NOT_FOUND)


async def test_processing_category_unless_download():
    seen = {}
    async with anyio.create_task_group() as tg:
        registry = ProcessRegistry(tg)
        runner = ToolRunner(tg, registry, binaries=PYTHON)
        for kind in ("probe", "download"):
            job = await runner.start(ToolInvocation("ffmpeg", script("pass"), job=JobSpec(kind=kind)))
            seen[kind] = registry.processing_count
            await job.result()
    assert seen == {"probe": 1, "download": 0}


async def test_spawn_failure_is_distinct(tmp_path):
    not_executable = tmp_path / "ffprobe"
    not_executable.write_text("")
    async with anyio.create_task_group() as tg:
        registry = ProcessRegistry(tg)
        runner = ToolRunner(tg, registry, binaries={"ffprobe": str(not_executable)})
        result = await runner.run(ToolInvocation("ffprobe", []))
    assert not result.success
    assert result.key is ErrorKind.SPAWN_FAILED
    assert result.error
    assert registry.count == 0


async def test_missing_binary(monkeypatch):
    monkeypatch.setattr("mvdcoapp_tools.shutil.which", lambda name: None)
    async with anyio.create_task_group() as tg:
        runner = ToolRunner(tg, ProcessRegistry(tg), binaries={"ffprobe": "/nonexistent/ffprobe"})
        with pytest.raises(CoAppError) as info:
            await runner.run(ToolInvocation("ffprobe", []))
    assert info.value.kind is ErrorKind.BINARY_NOT_FOUND
    assert info.value.substitutions == ["ffprobe"]


async def test_unknown_tool_is_invalid():
    async with anyio.create_task_group() as tg:
        runner = ToolRunner(tg, ProcessRegistry(tg), binaries=PYTHON)
        with pytest.raises(CoAppError) as info:
            await runner.run(ToolInvocation("rm", ["-rf", "/"]))
    assert info.value.kind is ErrorKind.INVALID_REQUEST


async def test_progress_events_are_streamed():
    events = []
    async with anyio.create_task_group() as tg:
        runner = ToolRunner(tg, ProcessRegistry(tg), send=events.append, binaries=PYTHON)
        result = await runner.run(ToolInvocation(
            "ffmpeg",
            script("import sys; sys.stderr.write('frame=1\\n'); sys.stderr.flush(); sys.stderr.write('frame=2\\n')"),
            job=JobSpec(kind="download", id="d1"),
            progress_command="download-progress",
        ))
    assert result.success
    assert events
    assert all(e["command"] == "download-progress" and e["downloadId"] == "d1" for e in events)
    assert "".join(e["chunk"] for e in events) == "frame=1\nframe=2\n"


async def test_preview_data_url_and_cleanup(tmp_path):
    write_png = "import sys; open(sys.argv[-1], 'wb').write(b'PNGDATA')"
    async with anyio.create_task_group() as tg:
        runner = ToolRunner(tg, ProcessRegistry(tg), binaries=PYTHON, temp_dir=tmp_path)
        result = await runner.run(ToolInvocation(
            "ffmpeg",
            script(write_png),
            job=JobSpec(kind="preview", mode="imageDataUrl", output={"format": "png"}),
        ))
    assert result.success
    assert result.data["previewUrl"] == "data:image/png;base64,UE5HREFUQQ=="
    assert result.data["noVideoStream"] is False
    assert list(tmp_path.iterdir()) == []


async def test_preview_kept_when_not_temp(tmp_path):
    write_jpg = "import sys; open(sys.argv[-1], 'wb').write(b'JPG')"
    async with anyio.create_task_group() as tg:
        runner = ToolRunner(tg, ProcessRegistry(tg), binaries=PYTHON, temp_dir=tmp_path)
        result = await runner.run(ToolInvocation(
            "ffmpeg",
            script(write_jpg),
            job=JobSpec(kind="preview", output={"format": "jpg", "temp": False}),
        ))
    assert result.success
    assert result.data is None
    kept = list(tmp_path.iterdir())
    assert len(kept) == 1 and kept[0].name.startswith("preview-") and kept[0].suffix == ".jpg"


async def test_exec_log_records_job_url(tmp_path, monkeypatch):
    log_file = tmp_path / "host.log"
    monkeypatch.setattr(config, "LOG_FILE", log_file)
    async with anyio.create_task_group() as tg:
        runner = ToolRunner(tg, ProcessRegistry(tg), binaries=PYTHON)
        await runner.run(ToolInvocation(
            "ffprobe", script("pass"), job=JobSpec(kind="probe", url="https://cdn.example/v.m3u8"),
        ))
    exec_lines = [line for line in log_file.read_text().splitlines() if '"event":"exec"' in line]
    assert len(exec_lines) == 1
    assert '"url":"https://cdn.example/v.m3u8"' in exec_lines[0]
