#!/usr/bin/env python3
"""
mvdcoapp - MAX Video Downloader native messaging host

Usage:
    mvdcoapp                    Install for detected browsers (Linux/macOS)
    mvdcoapp -i, --install      Install for all detected browsers
    mvdcoapp -u, --uninstall    Remove from all browsers
    mvdcoapp --info             Show connection info as JSON
    mvdcoapp -v, --version      Show version
    mvdcoapp -h, --help         Show this help

When a browser extension launches it (extension id in argv, stdin a pipe),
mvdcoapp serves native messaging frames on stdin/stdout until idle.
"""

import argparse
import json
import sys

import anyio
from rich.console import Console

import mvdcoapp_config as config
import mvdcoapp_install as installer
from mvdcoapp_log import log
from mvdcoapp_router import Host, connection_info

console = Console()


def error(msg: str):
    """Print error and exit."""
    console.print(f"[red]error:[/red] {msg}")
    sys.exit(1)


def is_messaging_launch(argv: list[str], stdin_is_tty: bool | None = None) -> bool:
    """Browsers pass the caller's origin (Chrome) or extension id (Firefox) as arguments."""
    if stdin_is_tty is None:
        stdin_is_tty = sys.stdin.isatty()
    if stdin_is_tty:
        return False
    return any(ext_id in arg for arg in argv for ext_id in config.ALLOWED_IDS)


# ============================================================================
# Commands
# ============================================================================

def serve() -> int:
    """Run the native messaging host; returns the process exit code."""
    try:
        return anyio.run(Host().run)
    except Exception as e:
        log("FATAL", {"error": repr(e), "context": "serve"})
        return 1


def cmd_install():
    if config.IS_WINDOWS:
        error("install is not available on Windows, use the installer instead")
    installed, failed = installer.install()
    for browser in installed:
        console.print(f"[green]installed[/green] {browser.name} [dim]{browser.manifest_path}[/dim]")
    for browser, reason in failed:
        console.print(f"[red]failed[/red] {browser.name} [dim]{reason}[/dim]")
    if not installed and not failed:
        console.print("No browsers found.")
    if failed and not installed:
        sys.exit(1)


def cmd_uninstall():
    if config.IS_WINDOWS:
        error("uninstall is not available on Windows, use the uninstaller instead")
    removed = installer.uninstall()
    for browser in removed:
        console.print(f"[yellow]removed[/yellow] {browser.name}")
    if not removed:
        console.print("Nothing to remove.")


def cmd_info():
    console.print_json(json.dumps(connection_info()))


def usage() -> str:
    return __doc__.strip()


# ============================================================================
# Main
# ============================================================================

def main():
    argv = sys.argv[1:]

    if is_messaging_launch(argv):
        sys.exit(serve())

    if not argv:
        if config.IS_WINDOWS:
            sys.exit(0)
        cmd_install()
        return

    parser = argparse.ArgumentParser(prog=config.APP_NAME, add_help=False)
    parser.add_argument("-h", "--help", action="store_true")
    parser.add_argument("-v", "--version", action="store_true")
    parser.add_argument("--info", action="store_true")
    parser.add_argument("-i", "--install", action="store_true")
    parser.add_argument("-u", "--uninstall", action="store_true")
    args, _ = parser.parse_known_args(argv)

    if args.help:
        console.print(usage(), markup=False, highlight=False)
    elif args.version:
        console.print(f"MVD CoApp v{config.APP_VERSION}", highlight=False)
    elif args.info:
        cmd_info()
    elif args.install:
        cmd_install()
    elif args.uninstall:
        cmd_uninstall()
    else:
        console.print(usage(), markup=False, highlight=False)
        sys.exit(1)


if __name__ == "__main__":
    main()
