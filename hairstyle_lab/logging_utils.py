from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, TextIO

from rich.console import Console
from rich.theme import Theme

_LOG_LEVELS = {"DEBUG": 10, "INFO": 20, "WARN": 30, "ERROR": 40}
_LEVEL_STYLES = {"DEBUG": "dim", "INFO": "white", "WARN": "yellow", "ERROR": "red"}


def _normalize_level(level: str) -> str:
    level = level.upper().strip()
    return "WARN" if level == "WARNING" else level


@dataclass(slots=True)
class RunLogger:
    """Step-tagged console logger with an optional plain-text mirror file."""

    console: Optional[Console]
    level: str = "INFO"
    logfile: Optional[Path] = None
    _plain_file: Optional[TextIO] = field(init=False, repr=False, default=None)

    def __post_init__(self) -> None:
        self.level = _normalize_level(self.level)
        if self.logfile:
            self.logfile.parent.mkdir(parents=True, exist_ok=True)
            self._plain_file = self.logfile.open("a", encoding="utf-8")

    def close(self) -> None:
        if self._plain_file:
            self._plain_file.close()
            self._plain_file = None

    def enabled(self, level: str) -> bool:
        return _LOG_LEVELS.get(_normalize_level(level), 100) >= _LOG_LEVELS.get(self.level, 20)

    def log(
        self,
        step: str,
        message: str,
        level: str = "INFO",
        elapsed_ms: Optional[float] = None,
    ) -> None:
        level = _normalize_level(level)
        if not self.enabled(level):
            return
        now = datetime.now().strftime("%H:%M:%S.%f")[:-3]
        suffix = f" (ms={elapsed_ms:.0f})" if elapsed_ms is not None else ""
        line = f"[{now}] [{level.ljust(5)}] [{step.upper().ljust(8)}] {message}{suffix}"
        if self.console is not None:
            self.console.print(line, style=_LEVEL_STYLES.get(level, "white"), highlight=False, soft_wrap=True)
        if self._plain_file:
            self._plain_file.write(line + "\n")
            self._plain_file.flush()

    @contextmanager
    def span(self, step: str, message: str, level: str = "INFO") -> Iterator[None]:
        """Log ``message`` with the elapsed time once the block finishes.

        Exceptions are logged at ERROR and re-raised.
        """

        start = time.perf_counter()
        try:
            yield
        except Exception as exc:
            self.log(step, f"{message} failed: {exc}", level="ERROR", elapsed_ms=(time.perf_counter() - start) * 1000.0)
            raise
        self.log(step, message, level=level, elapsed_ms=(time.perf_counter() - start) * 1000.0)


def create_logger(level: str = "INFO", logfile: Optional[Path] = None) -> RunLogger:
    # stderr keeps stdout free for JSON output from the command line
    console = Console(theme=Theme({"repr.number": "cyan"}), stderr=True)
    return RunLogger(console=console, level=level, logfile=logfile)


__all__ = ["RunLogger", "create_logger"]
