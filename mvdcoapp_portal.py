"""
mvdcoapp portal: xdg-desktop-portal FileChooser over the D-Bus session bus.

Linux only; imported lazily by mvdcoapp_fs. The portal answers a call with a
Request object path and later emits `Response(code, results)` on it:

    0  user picked something (results["uris"])
    1  user cancelled
    2  anything else
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from urllib.parse import unquote, urlparse

import anyio
from sdbus import DbusInterfaceCommonAsync, dbus_method_async, dbus_signal_async, sd_bus_open_user

PORTAL_NAME = "org.freedesktop.portal.Desktop"
PORTAL_PATH = "/org/freedesktop/portal/desktop"
RESPONSE_TIMEOUT = 600.0


class FileChooser(DbusInterfaceCommonAsync, interface_name="org.freedesktop.portal.FileChooser"):
    @dbus_method_async("ssa{sv}", "o", method_name="OpenFile")
    async def open_file(self, parent_window: str, title: str, options: dict) -> str: ...

    @dbus_method_async("ssa{sv}", "o", method_name="SaveFile")
    async def save_file(self, parent_window: str, title: str, options: dict) -> str: ...


class Request(DbusInterfaceCommonAsync, interface_name="org.freedesktop.portal.Request"):
    @dbus_signal_async("ua{sv}", signal_name="Response")
    def response(self) -> tuple[int, dict]: ...


class PortalCancelled(Exception):
    pass


def uri_to_path(uri: str) -> str | None:
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return None
    return unquote(parsed.path)


async def choose(kind: str, title: str, default_path: str | None = None, default_name: str | None = None) -> str | None:
    """Show the portal dialog. Returns the chosen path, None if the portal gave nothing usable.

    Raises PortalCancelled when the user dismissed the dialog.
    """
    bus = sd_bus_open_user()
    chooser = FileChooser.new_proxy(PORTAL_NAME, PORTAL_PATH, bus)

    options: dict = {
        "handle_token": ("s", f"mvd_{int(time.time() * 1000)}"),
        "modal": ("b", True),
        "multiple": ("b", False),
    }
    if kind == "directory":
        options["directory"] = ("b", True)
    elif default_name:
        options["current_name"] = ("s", default_name)
    if default_path and Path(default_path).exists():
        options["current_folder"] = ("ay", os.fsencode(default_path) + b"\0")

    if kind == "directory":
        handle = await chooser.open_file("", title, options)
    else:
        handle = await chooser.save_file("", title, options)

    request = Request.new_proxy(PORTAL_NAME, handle, bus)
    code, results = -1, {}
    with anyio.move_on_after(RESPONSE_TIMEOUT):
        async for code, results in request.response:
            break

    if code == 1:
        raise PortalCancelled()
    if code != 0:
        return None
    _, uris = results.get("uris", ("as", []))
    for uri in uris:
        path = uri_to_path(uri)
        if path:
            return path
    return None
