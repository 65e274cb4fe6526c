"""
mvdcoapp fs: the `fileSystem` command.

Plain file operations plus the native helpers the extension cannot reach
itself: opening/revealing files and the directory/save pickers.

Pickers per platform:
    macOS    osascript
    Windows  bundled mvd-fileui helper
    Linux    desktop portal (D-Bus), then zenity/kdialog/yad, then ~/Downloads
"""

from __future__ import annotations

import errno
import importlib.util
import os
import secrets
import shlex
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Any

import anyio
import anyio.abc

import mvdcoapp_config as config
from mvdcoapp_errors import CoAppError, ErrorKind, wrap_error
from mvdcoapp_log import log, log_size
from mvdcoapp_processes import ProcessRegistry

FALLBACK_FOLDER_NAME = "MAX Video Downloader"
DIRECT_TOOLS = ("zenity", "kdialog", "yad")


class PickerCancelled(Exception):
    """The user closed a dialog without choosing anything."""


async def read_all(stream: anyio.abc.ByteReceiveStream | None) -> bytes:
    if stream is None:
        return b""
    data = bytearray()
    try:
        async for chunk in stream:
            data.extend(chunk)
    except (anyio.ClosedResourceError, anyio.BrokenResourceError):
        pass
    return bytes(data)


def applescript_quote(text: str) -> str:
    return text.replace("\\", "\\\\").replace('"', '\\"')


# ============================================================================
# File System Handler
# ============================================================================

class FileSystem:
    """Dispatches `fileSystem` operations; helper processes go through the registry."""

    def __init__(self, registry: ProcessRegistry):
        self.registry = registry
        self.operations = {
            "exists": self.exists,
            "mkdir": self.mkdir,
            "readFile": self.read_file,
            "writeFile": self.write_file,
            "unlink": self.unlink,
            "deleteFile": self.delete_file,
            "openFile": self.open_file,
            "showInFolder": self.show_in_folder,
            "chooseDirectory": self.choose_directory,
            "chooseSaveLocation": self.choose_save_location,
        }

    async def handle(self, request: dict) -> dict:
        operation = request.get("operation", (request.get("params") or {}).get("operation"))
        params = request.get("params") or {}
        handler = self.operations.get(operation)
        if handler is None:
            raise CoAppError(f"Unknown filesystem operation: {operation}", ErrorKind.NOT_IMPLEMENTED, [str(operation)])
        log("FS", {"operation": operation, "params": params})
        try:
            return await handler(params)
        except PickerCancelled:
            log("FS", {"operation": operation, "event": "cancelled"})
            return {"success": True, "operation": operation, "cancelled": True}
        except OSError as e:
            raise wrap_error(e, ErrorKind.IO) from e

    # -------------------------------------------------------------------------
    # Plain file operations
    # -------------------------------------------------------------------------

    @staticmethod
    def _path(params: dict) -> Path:
        raw = params.get("path") or params.get("filePath")
        if not raw:
            raise CoAppError("File path required", ErrorKind.INVALID_REQUEST)
        return Path(raw).expanduser()

    @staticmethod
    def _encoding(params: dict) -> str:
        return (params.get("options") or {}).get("encoding") or "utf-8"

    async def exists(self, params: dict) -> dict:
        return {"success": True, "exists": await anyio.Path(self._path(params)).exists()}

    async def mkdir(self, params: dict) -> dict:
        await anyio.Path(self._path(params)).mkdir(parents=True, exist_ok=True)
        return {"success": True}

    async def read_file(self, params: dict) -> dict:
        data = await anyio.Path(self._path(params)).read_text(encoding=self._encoding(params))
        return {"success": True, "data": data}

    async def write_file(self, params: dict) -> dict:
        content = params.get("content")
        await anyio.Path(self._path(params)).write_text("" if content is None else str(content), encoding=self._encoding(params))
        return {"success": True}

    async def unlink(self, params: dict) -> dict:
        await anyio.Path(self._path(params)).unlink(missing_ok=True)
        return {"success": True}

    async def delete_file(self, params: dict) -> dict:
        path = self._path(params)
        if not await anyio.Path(path).exists():
            raise CoAppError(f"File not found: {path}", ErrorKind.NOT_FOUND, [str(path)])
        await anyio.Path(path).unlink()
        result = {"success": True, "operation": "deleteFile", "filePath": str(path), "key": "fileDeleted"}
        if path == config.LOG_FILE:
            result["logFileSize"] = log_size()
        return result

    # -------------------------------------------------------------------------
    # Open / reveal
    # -------------------------------------------------------------------------

    def _fileui(self) -> str | None:
        helper = config.BINARIES.get("fileui")
        return str(helper) if helper and Path(helper).exists() else None

    def _open_command(self, path: Path, mode: str) -> list[str]:
        if config.IS_MACOS:
            return ["open", "-R", str(path)] if mode == "reveal" else ["open", str(path)]
        if config.IS_WINDOWS:
            helper = self._fileui()
            if helper:
                return [helper, "--mode", mode, "--path", str(path)]
            return ["explorer", "/select,", str(path)] if mode == "reveal" else ["explorer", str(path)]
        return ["xdg-open", str(path.parent if mode == "reveal" else path)]

    async def open_file(self, params: dict) -> dict:
        path = self._path(params)
        if not path.exists():
            raise CoAppError(f"File not found: {path}", ErrorKind.NOT_FOUND, [str(path)])
        await self.run_helper(self._open_command(path, "open-file"))
        return {"success": True, "operation": "openFile", "filePath": str(path)}

    async def show_in_folder(self, params: dict) -> dict:
        path = self._path(params)
        if params.get("openFolderOnly"):
            folder = path.parent
            if not folder.exists():
                raise CoAppError(f"Folder not found: {folder}", ErrorKind.NOT_FOUND, [str(folder)])
            command = self._open_command(folder, "open-folder")
        else:
            if not path.exists():
                raise CoAppError(f"File not found: {path}", ErrorKind.NOT_FOUND, [str(path)])
            command = self._open_command(path, "reveal")
        await self.run_helper(command)
        return {"success": True, "operation": "showInFolder", "filePath": str(path)}

    # -------------------------------------------------------------------------
    # Pickers
    # -------------------------------------------------------------------------

    async def choose_directory(self, params: dict) -> dict:
        title = params.get("title") or "Choose Directory"
        try:
            selected = await self.pick("directory", title, params.get("defaultPath"))
            if not selected:
                raise CoAppError("No path selected", ErrorKind.PICKER_FAILED)
            await check_writable(Path(selected))
        except CoAppError as e:
            if e.kind not in (ErrorKind.PICKER_FAILED, ErrorKind.HELPER_NOT_FOUND):
                raise
            log("FS", {"event": "picker_failed", "key": e.kind.value, "error": e.message})
            fallback = await find_writable_fallback()
            if fallback is None:
                raise CoAppError("No writable folder found", ErrorKind.PERMISSION) from e
            return {
                "success": True,
                "operation": "chooseDirectory",
                "selectedPath": str(fallback),
                "isAutoFallback": True,
                "key": e.kind.value,
            }
        log("FS", {"event": "selected", "path": selected})
        return {"success": True, "operation": "chooseDirectory", "selectedPath": selected}

    async def choose_save_location(self, params: dict) -> dict:
        title = params.get("title") or "Save As"
        default_name = params.get("defaultName") or "untitled"
        selected = await self.pick("save", title, params.get("defaultPath"), default_name)
        if not selected:
            raise CoAppError("No path selected", ErrorKind.PICKER_FAILED)
        path = Path(selected)
        await check_writable(path.parent)
        return {
            "success": True,
            "operation": "chooseSaveLocation",
            "path": str(path),
            "directory": str(path.parent),
            "filename": path.name,
            "willOverwrite": path.exists(),
        }

    async def pick(self, kind: str, title: str, default_path: str | None = None, default_name: str | None = None) -> str:
        """Run the platform picker and return the chosen path (stripped)."""
        if config.IS_MACOS:
            output = await self.run_helper(self._osascript(kind, title, default_path, default_name), capture=True)
        elif config.IS_WINDOWS:
            output = await self.run_helper(self._fileui_picker(kind, title, default_path, default_name), capture=True)
        else:
            output = await self._linux_pick(kind, title, default_path, default_name)
        return output.strip().lstrip("\ufeff")

    def _osascript(self, kind, title, default_path, default_name) -> list[str]:
        if kind == "directory":
            script = f'set chosen to choose folder with prompt "{applescript_quote(title)}"'
        else:
            script = (
                f'set chosen to choose file name with prompt "{applescript_quote(title)}"'
                f' default name "{applescript_quote(default_name or "untitled")}"'
            )
        if default_path and Path(default_path).exists():
            script += f' default location POSIX file "{applescript_quote(default_path)}"'
        script += "\nreturn POSIX path of chosen"
        return ["osascript", "-e", script]

    def _fileui_picker(self, kind, title, default_path, default_name) -> list[str]:
        helper = self._fileui()
        if helper is None:
            raise CoAppError("File dialog helper not found", ErrorKind.HELPER_NOT_FOUND)
        if kind == "directory":
            argv = [helper, "--mode", "pick-folder", "--title", title]
        else:
            argv = [helper, "--mode", "save-file", "--title", title, "--name", default_name or "untitled"]
            if not default_path and (Path.home() / "Downloads").exists():
                default_path = str(Path.home() / "Downloads")
        if default_path:
            argv += ["--initial", default_path]
        return argv

    async def _linux_pick(self, kind, title, default_path, default_name) -> str:
        if portal_available():
            import mvdcoapp_portal as portal

            try:
                chosen = await portal.choose(kind, title, default_path, default_name)
            except portal.PortalCancelled:
                raise PickerCancelled() from None
            except Exception as e:
                log("FS", {"event": "portal_failed", "error": str(e)})
                chosen = None
            if chosen:
                return chosen

        tool = direct_tool()
        if tool is not None:
            return await self.run_helper(self._direct_tool_argv(tool, kind, title, default_path, default_name), capture=True)

        return str(await self.downloads_dir())

    def _direct_tool_argv(self, tool, kind, title, default_path, default_name) -> list[str]:
        seed = default_path if default_path and Path(default_path).exists() else str(Path.home() / "Downloads")
        if tool == "kdialog":
            if kind == "directory":
                return ["kdialog", "--getexistingdirectory", seed, "--title", title]
            target = str(Path(seed) / default_name) if default_name else seed
            return ["kdialog", "--getsavefilename", target, "--title", title]

        flag = "--file-selection" if tool == "zenity" else "--file"
        argv = [tool, flag]
        if kind == "directory":
            argv += ["--directory", "--title", title, "--filename", seed.rstrip("/") + "/"]
        else:
            target = str(Path(seed) / default_name) if default_name else seed
            argv += ["--save", "--confirm-overwrite", "--title", title, "--filename", target]
        return argv

    async def downloads_dir(self) -> Path:
        try:
            output = (await self.run_helper(["xdg-user-dir", "DOWNLOAD"], capture=True)).strip()
            if output and Path(output).exists():
                return Path(output)
        except (CoAppError, PickerCancelled) as e:
            log("FS", {"event": "xdg_user_dir_failed", "error": str(e)})
        return Path.home() / "Downloads"

    # -------------------------------------------------------------------------
    # Helper processes
    # -------------------------------------------------------------------------

    async def run_helper(self, argv: list[str], capture: bool = False) -> str:
        """Run a short-lived helper to completion and return its stdout.

        With `capture`, exit code 1 means the user cancelled the dialog.
        """
        log("FS", {"event": "exec", "command": shlex.join(argv)})
        try:
            process = await anyio.open_process(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=config.full_env(),
            )
        except OSError as e:
            raise CoAppError(str(e), ErrorKind.PICKER_FAILED) from e

        self.registry.register(process)
        try:
            async with process:
                streams: dict[str, bytes] = {}

                async def collect(name: str, stream: Any) -> None:
                    streams[name] = await read_all(stream)

                async with anyio.create_task_group() as tg:
                    tg.start_soon(collect, "stdout", process.stdout)
                    tg.start_soon(collect, "stderr", process.stderr)
                code = await process.wait()
        finally:
            self.registry.unregister(process)

        if code == 0:
            return streams["stdout"].decode("utf-8", errors="replace")
        if code == 1 and capture:
            raise PickerCancelled()
        stderr = streams["stderr"].decode("utf-8", errors="replace").strip()
        raise CoAppError(stderr or f"Exit {code}", ErrorKind.PICKER_FAILED)


# ============================================================================
# Helpers
# ============================================================================

def portal_available() -> bool:
    """Session bus reachable and the optional sdbus binding installed."""
    return bool(os.environ.get("DBUS_SESSION_BUS_ADDRESS")) and importlib.util.find_spec("sdbus") is not None


def direct_tool() -> str | None:
    """First installed zenity/kdialog/yad, when there is a display to show it on."""
    if not (os.environ.get("DISPLAY") or os.environ.get("WAYLAND_DISPLAY")):
        return None
    for tool in DIRECT_TOOLS:
        if shutil.which(tool):
            return tool
    return None


async def check_writable(directory: Path) -> None:
    """Prove `directory` is writable by creating and removing a probe file."""
    probe = anyio.Path(directory) / f"maxvd_test_{secrets.token_hex(4)}.tmp"
    try:
        await probe.write_text("test")
        await probe.unlink()
    except OSError as e:
        if e.errno in (errno.EACCES, errno.EPERM, errno.EROFS):
            raise CoAppError(f"Directory not writable: {directory}", ErrorKind.PERMISSION, [str(directory)]) from e
        raise wrap_error(e, ErrorKind.IO) from e


async def find_writable_fallback() -> Path | None:
    for candidate in (
        Path.home() / "Downloads" / FALLBACK_FOLDER_NAME,
        Path(tempfile.gettempdir()) / FALLBACK_FOLDER_NAME,
    ):
        try:
            await anyio.Path(candidate).mkdir(parents=True, exist_ok=True)
            await check_writable(candidate)
            return candidate
        except (OSError, CoAppError) as e:
            log("FS", {"event": "fallback_rejected", "path": str(candidate), "error": str(e)})
    return None
