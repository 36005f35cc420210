"""Operator-facing output: colored status lines, JSON mode and a log file."""
from __future__ import annotations

import json
import os
import sys
from datetime import datetime
from typing import Any, Sequence

# ANSI color codes (respect NO_COLOR convention: https://no-color.org)
if os.environ.get("NO_COLOR") is not None or not sys.stdout.isatty():
    GREEN = RED = YELLOW = BLUE = BOLD = RESET = ""
else:
    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    BLUE = "\033[34m"
    BOLD = "\033[1m"
    RESET = "\033[0m"

PROG = "zfsh"


class Console:
    """Prints status lines the way every zfsh command reports progress.

    quiet:    drop info/success lines (warnings and errors still print).
    json:     drop all human text; commands print one JSON document instead.
    log_file: append every status line, with a timestamp, to this file.
    """

    def __init__(self, quiet: bool = False, json: bool = False, log_file: str | None = None):
        self.quiet = quiet
        self.json = json
        self.log_file = log_file

    def _log(self, level: str, message: str) -> None:
        if not self.log_file:
            return
        stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        try:
            with open(self.log_file, "a") as f:
                f.write(f"[{stamp}] [{PROG}] {level}: {message}\n")
        except OSError as e:
            print(f"{YELLOW}[WARN]{RESET} Cannot write log file {self.log_file}: {e}",
                  file=sys.stderr)
            self.log_file = None

    @property
    def chatty(self) -> bool:
        return not self.quiet and not self.json

    def info(self, message: str) -> None:
        self._log("INFO", message)
        if self.chatty:
            print(f"{BLUE}[INFO]{RESET} {message}")

    def success(self, message: str) -> None:
        self._log("OK", message)
        if self.chatty:
            print(f"{GREEN}[OK]{RESET} {message}")

    def warn(self, message: str) -> None:
        self._log("WARN", message)
        if not self.json:
            print(f"{YELLOW}[WARN]{RESET} {message}", file=sys.stderr)

    def error(self, message: str) -> None:
        self._log("ERROR", message)
        if not self.json:
            print(f"{RED}[ERROR]{RESET} {message}", file=sys.stderr)

    def header(self, title: str) -> None:
        if self.chatty:
            print(f"\n{BOLD}{title}{RESET}")
            print(f"{BOLD}{'=' * len(title)}{RESET}")

    def line(self, text: str = "") -> None:
        """Plain plan/listing text; hidden in JSON mode but not in quiet mode."""
        if not self.json:
            print(text)

    def table(self, headers: Sequence[str], rows: Sequence[Sequence[Any]], widths: Sequence[int]) -> None:
        if self.json:
            return
        fmt = " ".join(f"{{:<{w}}}" for w in widths[:-1]) + " {}"
        print()
        print(fmt.format(*headers))
        print(fmt.format(*("-" * len(h) for h in headers)))
        for row in rows:
            print(fmt.format(*(str(c) for c in row)))

    def emit_json(self, payload: Any) -> None:
        if self.json:
            print(json.dumps(payload, indent=2, default=str))

    def confirm(self, prompt: str, assume_yes: bool = False) -> bool:
        """Ask the user yes/no. Return True if yes."""
        if assume_yes:
            return True
        try:
            answer = input(f"{prompt} [y/N] ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            print()
            return False
        return answer in ("y", "yes")
