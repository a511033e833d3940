# ABOUTME: Operator-facing terminal output for the CLI
# ABOUTME: Status markers, the access menu, URL and credential blocks, command references

"""
Operator console.

Everything the operator reads goes through Console and lands on stdout.
Diagnostics go through structlog to stderr, so `otel-access access
--choice 5 > commands.txt` captures only the reference text.

MARKERS:
--------
    [✓] done          (green)
    [!] warning       (yellow)
    [✗] error         (red)
    [i] information   (blue)

Colors are emitted only when stdout is a terminal and NO_COLOR is unset.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from otel_access.credentials import Credentials
    from otel_access.orchestrator import ExposureResult
    from otel_access.utils.probe import ProbeResult

RULE = "=" * 46
THIN_RULE = "─" * 45

_COLORS = {
    "red": "\033[0;31m",
    "green": "\033[0;32m",
    "yellow": "\033[1;33m",
    "blue": "\033[0;34m",
    "cyan": "\033[0;36m",
}
_RESET = "\033[0m"

MENU = """\
  1) Frontend Proxy (Recommended - Single Entry Point)
     - Access all services via one port
     - Best for: Quick access, development

  2) LoadBalancer (Cloud/Production)
     - Expose Frontend Proxy with external IP
     - Best for: Cloud environments

  3) NodePort (Alternative External Access)
     - Expose Frontend Proxy on node port
     - Best for: On-premise, bare-metal

  4) Individual Services (Port Forward Each)
     - Forward each service to a different local port
     - Best for: Debugging specific services

  5) Skip - Show access commands only
"""


class Console:
    """Writes operator-facing text, optionally colored."""

    def __init__(self, stream: TextIO | None = None, color: bool | None = None) -> None:
        self._stream = stream or sys.stdout
        if color is None:
            color = self._stream.isatty() and "NO_COLOR" not in os.environ
        self._color = color

    def _paint(self, text: str, color: str) -> str:
        if not self._color:
            return text
        return f"{_COLORS[color]}{text}{_RESET}"

    def line(self, text: str = "") -> None:
        print(text, file=self._stream, flush=True)

    def write(self, text: str) -> None:
        """Write without a newline (progress dots)."""
        print(text, end="", file=self._stream, flush=True)

    # -------------------------------------------------------------------------
    # Markers
    # -------------------------------------------------------------------------

    def status(self, message: str) -> None:
        self.line(f"{self._paint('[✓]', 'green')} {message}")

    def warning(self, message: str) -> None:
        self.line(f"{self._paint('[!]', 'yellow')} {message}")

    def error(self, message: str) -> None:
        self.line(f"{self._paint('[✗]', 'red')} {message}")

    def info(self, message: str) -> None:
        self.line(f"{self._paint('[i]', 'blue')} {message}")

    # -------------------------------------------------------------------------
    # Blocks
    # -------------------------------------------------------------------------

    def banner(self, title: str) -> None:
        self.line(RULE)
        self.line(title)
        self.line(RULE)
        self.line()

    def heading(self, title: str) -> None:
        self.line(RULE)
        self.line(self._paint(title, "cyan"))
        self.line(RULE)
        self.line()

    def menu(self) -> None:
        self.line(RULE)
        self.line("How would you like to access the observability stack?")
        self.line(RULE)
        self.line()
        self.line(MENU)

    def service_status(self, status: Mapping[str, bool], names: Mapping[str, str]) -> None:
        """One line per catalog service: filled dot when present."""
        for key, present in status.items():
            name = names.get(key, key)
            if present:
                self.line(f"  {self._paint('●', 'green')} {name}")
            else:
                self.line(f"  {self._paint('○', 'red')} {name} (not found)")
        self.line()

    def urls(self, urls: Mapping[str, str], title: str = "Observability Stack Access URLs:") -> None:
        self.heading(title)
        width = max((len(name) for name in urls), default=0) + 2
        for name, url in urls.items():
            self.line(f"  {(name + ':').ljust(width)} {url}")
        self.line()

    def credentials(self, title: str, creds: Credentials) -> None:
        self.line(RULE)
        self.line(f"  {self._paint(title, 'blue')}")
        self.line(f"    Username: {creds.username}")
        if creds.password is not None:
            self.line(f"    Password: {creds.password}")
        self.line(RULE)
        if creds.is_default:
            self.warning(
                f"Password is the configured default ({creds.source}); "
                "the secret could not be read, so it may be wrong."
            )
        elif creds.manual_command:
            self.warning("Password not available yet. You can extract it later with:")
            self.line(f"  {creds.manual_command}")
        self.line()

    def commands(self, commands: Iterable[tuple[str, str]]) -> None:
        for title, command in commands:
            self.line(f"  {title}:")
            self.line(f"    {command}")
            self.line()

    def probes(self, results: Mapping[str, ProbeResult]) -> None:
        for name, result in results.items():
            if result.reachable:
                self.status(f"{name} answered (HTTP {result.status_code})")
            elif result.status_code is not None:
                self.warning(f"{name} answered HTTP {result.status_code}")
            else:
                self.warning(f"{name} not reachable yet: {result.error}")
        self.line()

    def result(self, result: ExposureResult) -> None:
        """Render one exposure outcome."""
        if result.pending:
            self.line()
            self.warning("External IP not yet assigned. Check status with:")
            if result.manual_command:
                self.line(f"  {result.manual_command}")
            self.line()
            return

        if result.strategy.value == "show-commands":
            self.status("Access Commands Reference")
            self.line()
            self.heading("Commands")
            self.commands(result.commands)
            self.urls(result.urls, title="Access URLs (when using port-forward)")
        else:
            self.urls(result.urls)
            if result.commands:
                self.commands(result.commands)

        for name, error in result.failures.items():
            self.error(f"{name}: {error}")
        for note in result.notes:
            self.info(note)
        if result.failures or result.notes:
            self.line()
