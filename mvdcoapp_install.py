"""
mvdcoapp install: native messaging host manifests for the user's browsers.

A browser only launches the host if a manifest naming it sits in the
browser's NativeMessagingHosts directory. Chromium-family manifests list
`allowed_origins`; Firefox-family manifests list `allowed_extensions`.

Only browsers whose profile directory already exists get a manifest.
"""

from __future__ import annotations

import json
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path

import mvdcoapp_config as config
from mvdcoapp_log import log

MANIFEST_NAME = f"{config.HOST_NAME}.json"

CHROME = "chrome"
FIREFOX = "firefox"


@dataclass
class Browser:
    name: str
    type: str
    path: Path  # manifest directory
    config_dir: Path

    @property
    def manifest_path(self) -> Path:
        return self.path / MANIFEST_NAME


# ============================================================================
# Browser tables (home-relative)
# ============================================================================

_MAC_APP_SUPPORT = "Library/Application Support"

MACOS_BROWSERS = [
    ("Google Chrome", CHROME, f"{_MAC_APP_SUPPORT}/Google/Chrome"),
    ("Google Chrome Beta", CHROME, f"{_MAC_APP_SUPPORT}/Google/Chrome Beta"),
    ("Google Chrome Dev", CHROME, f"{_MAC_APP_SUPPORT}/Google/Chrome Dev"),
    ("Google Chrome Canary", CHROME, f"{_MAC_APP_SUPPORT}/Google/Chrome Canary"),
    ("Chromium", CHROME, f"{_MAC_APP_SUPPORT}/Chromium"),
    ("Arc", CHROME, f"{_MAC_APP_SUPPORT}/Arc/User Data"),
    ("Microsoft Edge", CHROME, f"{_MAC_APP_SUPPORT}/Microsoft Edge"),
    ("Microsoft Edge Beta", CHROME, f"{_MAC_APP_SUPPORT}/Microsoft Edge Beta"),
    ("Brave Browser", CHROME, f"{_MAC_APP_SUPPORT}/BraveSoftware/Brave-Browser"),
    ("Opera", CHROME, f"{_MAC_APP_SUPPORT}/com.operasoftware.Opera"),
    ("Vivaldi", CHROME, f"{_MAC_APP_SUPPORT}/Vivaldi"),
    ("Yandex Browser", CHROME, f"{_MAC_APP_SUPPORT}/Yandex/YandexBrowser"),
    ("Firefox", FIREFOX, f"{_MAC_APP_SUPPORT}/Mozilla"),
    ("LibreWolf", FIREFOX, f"{_MAC_APP_SUPPORT}/LibreWolf"),
    ("Tor Browser", FIREFOX, f"{_MAC_APP_SUPPORT}/TorBrowser-Data/Browser"),
]

# (name, type, manifest dir, profile dir)
LINUX_BROWSERS = [
    ("Google Chrome", CHROME, ".config/google-chrome/NativeMessagingHosts", ".config/google-chrome"),
    ("Google Chrome Beta", CHROME, ".config/google-chrome-beta/NativeMessagingHosts", ".config/google-chrome-beta"),
    ("Google Chrome Dev", CHROME, ".config/google-chrome-unstable/NativeMessagingHosts", ".config/google-chrome-unstable"),
    ("Chromium", CHROME, ".config/chromium/NativeMessagingHosts", ".config/chromium"),
    ("Brave Browser", CHROME, ".config/BraveSoftware/Brave-Browser/NativeMessagingHosts", ".config/BraveSoftware/Brave-Browser"),
    ("Microsoft Edge", CHROME, ".config/microsoft-edge/NativeMessagingHosts", ".config/microsoft-edge"),
    ("Microsoft Edge Beta", CHROME, ".config/microsoft-edge-beta/NativeMessagingHosts", ".config/microsoft-edge-beta"),
    ("Vivaldi", CHROME, ".config/vivaldi/NativeMessagingHosts", ".config/vivaldi"),
    ("Opera", CHROME, ".config/opera/NativeMessagingHosts", ".config/opera"),
    ("Yandex Browser", CHROME, ".config/yandex-browser/NativeMessagingHosts", ".config/yandex-browser"),
    ("Firefox", FIREFOX, ".mozilla/native-messaging-hosts", ".mozilla"),
    ("LibreWolf", FIREFOX, ".librewolf/native-messaging-hosts", ".librewolf"),
    ("Firefox (Flatpak)", FIREFOX, ".var/app/org.mozilla.firefox/.mozilla/native-messaging-hosts", ".var/app/org.mozilla.firefox"),
    ("Chromium (Flatpak)", CHROME, ".var/app/org.chromium.Chromium/config/chromium/NativeMessagingHosts", ".var/app/org.chromium.Chromium"),
]


def browsers(home: Path | None = None, platform: str | None = None) -> list[Browser]:
    """Every known browser location for the platform, resolved under `home`."""
    home = home or Path.home()
    platform = platform or config.PLATFORM
    if platform == "darwin":
        return [
            Browser(name, kind, home / profile / "NativeMessagingHosts", home / profile)
            for name, kind, profile in MACOS_BROWSERS
        ]
    if platform.startswith("linux"):
        return [
            Browser(name, kind, home / manifest_dir, home / profile)
            for name, kind, manifest_dir, profile in LINUX_BROWSERS
        ]
    return []


def detect(candidates: list[Browser]) -> list[Browser]:
    return [b for b in candidates if b.config_dir.is_dir()]


def executable_path() -> str:
    """What browsers should launch: the frozen binary or the installed console script."""
    if config.IS_FROZEN:
        return str(Path(sys.executable).resolve())
    script = shutil.which(config.APP_NAME)
    if script:
        return str(Path(script).resolve())
    return str(Path(sys.argv[0]).resolve())


def create_manifest(browser_type: str, exec_path: str) -> dict:
    manifest = {
        "name": config.HOST_NAME,
        "description": config.HOST_DESCRIPTION,
        "path": exec_path,
        "type": "stdio",
    }
    if browser_type == FIREFOX:
        manifest["allowed_extensions"] = list(config.FIREFOX_EXTENSIONS)
    else:
        manifest["allowed_origins"] = list(config.CHROME_ORIGINS)
    return manifest


def write_atomic(path: Path, content: str) -> None:
    tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
        path.chmod(0o644)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


# ============================================================================
# Install / Uninstall
# ============================================================================

def install(home: Path | None = None, exec_path: str | None = None, platform: str | None = None) -> tuple[list[Browser], list[tuple[Browser, str]]]:
    """Write manifests for detected browsers. Returns (installed, failed)."""
    exec_path = exec_path or executable_path()
    installed: list[Browser] = []
    failed: list[tuple[Browser, str]] = []
    for browser in detect(browsers(home, platform)):
        try:
            browser.path.mkdir(parents=True, exist_ok=True)
            write_atomic(browser.manifest_path, json.dumps(create_manifest(browser.type, exec_path), indent=2))
            installed.append(browser)
            log("INSTALL", {"browser": browser.name, "path": str(browser.manifest_path)})
        except OSError as e:
            failed.append((browser, str(e)))
            log("INSTALL", {"browser": browser.name, "error": str(e)})
    return installed, failed


def uninstall(home: Path | None = None, platform: str | None = None) -> list[Browser]:
    """Remove our manifest wherever it exists. Returns the browsers it was removed from."""
    removed: list[Browser] = []
    for browser in browsers(home, platform):
        if not browser.manifest_path.exists():
            continue
        try:
            browser.manifest_path.unlink()
            removed.append(browser)
            log("UNINSTALL", {"browser": browser.name})
        except OSError as e:
            log("UNINSTALL", {"browser": browser.name, "error": str(e)})
    return removed
