"""
mvdcoapp configuration: paths, limits and static tables.

Everything is resolved once at import. A few values can be overridden from
the environment, which is how tests and packaged builds relocate things:

    APP_VERSION              Version reported to the extension
    MVDCOAPP_TEMP_DIR        Directory for logs and preview files
    MVDCOAPP_BIN_DIR         Directory holding the bundled ffmpeg/ffprobe
    MVDCOAPP_IDLE_TIMEOUT    Idle exit timeout in seconds
    MVDCOAPP_LOG_STDERR      Mirror log lines to stderr when set
"""

from __future__ import annotations

import os
import sys
import tempfile
from importlib import metadata
from pathlib import Path

# ============================================================================
# Platform
# ============================================================================

PLATFORM = sys.platform
IS_WINDOWS = PLATFORM == "win32"
IS_MACOS = PLATFORM == "darwin"
IS_LINUX = PLATFORM.startswith("linux")
IS_FROZEN = bool(getattr(sys, "frozen", False))

APP_NAME = "mvdcoapp"
HOST_NAME = "pro.maxvideodownloader.coapp"
HOST_DESCRIPTION = "MAX Video Downloader CoApp"


def _resolve_version() -> str:
    env = os.environ.get("APP_VERSION")
    if env:
        return env
    try:
        return metadata.version(APP_NAME)
    except metadata.PackageNotFoundError:
        return "0.0.0"


APP_VERSION = _resolve_version()

# ============================================================================
# Paths
# ============================================================================


def _resolve_temp_dir() -> Path:
    env = os.environ.get("MVDCOAPP_TEMP_DIR")
    if env:
        raw = Path(env)
    elif os.environ.get("SNAP") or os.environ.get("SNAP_REVISION") or "snap" in tempfile.gettempdir():
        cache = os.environ.get("XDG_CACHE_HOME") or str(Path.home() / ".cache")
        raw = Path(cache) / APP_NAME
    else:
        raw = Path(tempfile.gettempdir()) / APP_NAME
    try:
        raw.mkdir(parents=True, exist_ok=True)
        return raw.resolve()
    except OSError:
        return raw


TEMP_DIR = _resolve_temp_dir()
LOG_FILE = TEMP_DIR / f"{APP_NAME}.log"

if os.environ.get("MVDCOAPP_BIN_DIR"):
    BIN_DIR = Path(os.environ["MVDCOAPP_BIN_DIR"])
elif IS_FROZEN:
    BIN_DIR = Path(sys.executable).resolve().parent
else:
    BIN_DIR = Path(__file__).resolve().parent

EXE_EXT = ".exe" if IS_WINDOWS else ""

BINARIES: dict[str, Path | None] = {
    "ffmpeg": BIN_DIR / f"ffmpeg{EXE_EXT}",
    "ffprobe": BIN_DIR / f"ffprobe{EXE_EXT}",
    "fileui": BIN_DIR / f"mvd-fileui{EXE_EXT}" if IS_WINDOWS else None,
}

TOOLS = ("ffmpeg", "ffprobe")

# ============================================================================
# Timeouts & Limits (seconds / bytes)
# ============================================================================

IDLE_TIMEOUT = float(os.environ.get("MVDCOAPP_IDLE_TIMEOUT", "30"))
DEFAULT_TOOL_TIMEOUT = 30.0
PREVIEW_TOOL_TIMEOUT = 40.0
DOWNLOAD_TOOL_TIMEOUT = 0.0  # explicit: transfers carry no cap of their own

OUTPUT_HEAD_TAIL = 128 * 1024
PROGRESS_FLUSH_DELAY = 0.1
PROGRESS_FLUSH_BYTES = 64 * 1024

CANCEL_TERM_GRACE = 5.0
CANCEL_KILL_GRACE = 15.0
SHUTDOWN_GRACE = 0.1

LOG_MAX_SIZE = 10 * 1024 * 1024
LOG_KEEP_SIZE = 5 * 1024 * 1024
LOG_TRIM_EVERY = 100
LOG_STATUS_EVERY = 10
LOG_TO_STDERR = bool(os.environ.get("MVDCOAPP_LOG_STDERR"))

# ============================================================================
# Messaging
# ============================================================================

ALLOWED_IDS = [
    "bkblnddclhmmgjlmbofhakhhbklkcofd",
    "kjinbaahkmjgkkedfdgpkkelehofieke",
    "hkakpofpmdphjlkojabkfjapnhjfebdl",
    "max-video-downloader@rostislav.dev",
]

CHROME_ORIGINS = [f"chrome-extension://{ext_id}/" for ext_id in ALLOWED_IDS[:3]]
FIREFOX_EXTENSIONS = [ALLOWED_IDS[3]]

# Mandatory fields per command; looked up on the request and on request["params"].
VALIDATION_SCHEMA: dict[str, list[str]] = {
    "download-v2": ["downloadId", "argsBeforeOutput", "saveDir"],
    "cancel-download-v2": ["downloadId"],
    "fileSystem": ["operation"],
    "runTool": ["tool", "args"],
}

CAPABILITIES = [
    "download-v2",
    "cancel-download-v2",
    "fileSystem",
    "kill-processing",
    "runTool",
    "get-disk-space",
]

FFMPEG_VERSION = "n8.0.1-1.8.1"


def full_env() -> dict[str, str]:
    """Process environment with the usual binary directories ahead of PATH."""
    env = dict(os.environ)
    if IS_WINDOWS:
        return env
    extra = ["/opt/homebrew/bin", "/usr/local/bin", "/usr/bin", "/bin", "/usr/sbin", "/sbin"]
    env["PATH"] = os.pathsep.join(extra + [env.get("PATH", "")])
    return env
