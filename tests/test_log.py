import errno

from mvdcoapp_errors import CoAppError, ErrorKind, wrap_error
from mvdcoapp_log import log, log_size, shorten, trim_log


def test_log_appends_tagged_lines(tmp_path):
    path = tmp_path / "host.log"
    log("BOOT", path=path)
    log("SEND", {"command": "shutdown", "reason": "quit_command"}, path=path)
    lines = path.read_text().splitlines()
    assert lines[0].endswith(" [BOOT]")
    assert lines[1].endswith(' [SEND] {"command":"shutdown","reason":"quit_command"}')
    assert log_size(path) == path.stat().st_size
    assert log_size(tmp_path / "missing.log") == 0


def test_trim_keeps_tail_on_line_boundary(tmp_path):
    path = tmp_path / "host.log"
    path.write_bytes(b"".join(b"line %03d\n" % n for n in range(100)))
    assert trim_log(path, max_size=500, keep=100)
    data = path.read_bytes()
    assert len(data) <= 100
    assert data.startswith(b"line ")
    assert data.endswith(b"line 099\n")
    assert not trim_log(path, max_size=500, keep=100)


def test_shorten():
    assert shorten("short") == "short"
    assert shorten(42) == 42
    long = "x" * 450 + "END"
    assert shorten(long, limit=100, keep=10) == "[truncated 443 chars] ... xxxxxxxEND"


def test_wrap_error():
    original = CoAppError("custom", ErrorKind.DISK_FULL, ["/x"])
    assert wrap_error(original) is original
    assert wrap_error(OSError(errno.ENOSPC, "full")).kind is ErrorKind.DISK_FULL
    assert wrap_error(PermissionError(errno.EACCES, "denied")).kind is ErrorKind.PERMISSION
    assert wrap_error(OSError(errno.EBADF, "bad fd"), ErrorKind.IO).kind is ErrorKind.IO
    assert wrap_error(KeyError()).message == "KeyError"


def test_error_message_shape():
    msg = CoAppError("x not found", ErrorKind.BINARY_NOT_FOUND, ["ffmpeg"]).to_message()
    assert msg == {"success": False, "error": "x not found", "key": "binaryNotFound", "substitutions": ["ffmpeg"]}
