from __future__ import annotations

from collections import Counter
from typing import Optional

from rich.console import Console
from rich.markup import escape

from polymarket_scalper.utils.storage import append_event


_STYLES = {
    "debug": "dim",
    "info": "white",
    "warn": "yellow",
    "error": "red",
}


class EventLog:
    """Single observability sink shared by every pipeline component.

    Each event is printed as one rich console line and appended to the JSONL
    events file. Debug events are dropped unless ``debug`` is set.
    """

    def __init__(self, events_path: Optional[str] = None, console: Optional[Console] = None, debug: bool = False):
        self.events_path = events_path
        self.console = console or Console(highlight=False)
        self.debug_enabled = debug
        self.counts: Counter = Counter()
        self._write_failed = False

    @classmethod
    def silent(cls) -> "EventLog":
        return cls(events_path=None, console=Console(quiet=True))

    def emit(self, kind: str, message: str = "", level: str = "info", **fields) -> None:
        if level == "debug" and not self.debug_enabled:
            return
        self.counts[kind] += 1
        if message:
            style = _STYLES.get(level, "white")
            self.console.print(f"[{style}]{escape(message)}[/{style}]")
        if not self.events_path:
            return
        try:
            append_event(self.events_path, {"type": kind, "level": level, **fields})
        except OSError as e:
            if not self._write_failed:
                self._write_failed = True
                self.console.print(f"[red]event log write failed: {e}[/red]")

    def debug(self, kind: str, message: str = "", **fields) -> None:
        self.emit(kind, message, level="debug", **fields)

    def info(self, kind: str, message: str = "", **fields) -> None:
        self.emit(kind, message, level="info", **fields)

    def warn(self, kind: str, message: str = "", **fields) -> None:
        self.emit(kind, message, level="warn", **fields)

    def error(self, kind: str, message: str = "", **fields) -> None:
        self.emit(kind, message, level="error", **fields)
