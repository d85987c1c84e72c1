# Copyright 2025 Wahyu Ardiansyah
# Licensed under the Apache License, Version 2.0

"""
Structured Logger for Meridian

Structured events for net execution: operator failures carry the net
name, operator type and net position; run timings carry a duration.
Events are written as text or JSON lines and passed to registered
handlers.

Example:
    from meridian.observability import MeridianLogger, Verbosity

    logger = MeridianLogger.get()
    logger.set_verbosity(Verbosity.DEBUG)
    with logger.timed("Run complete", component="net", net_name="train"):
        ws.run_net("train")
"""

import json
import os
import sys
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import IntEnum
from typing import Callable, Iterator, List, Optional, TextIO


class Verbosity(IntEnum):
    """Verbosity levels; an event is emitted when its level <= verbosity."""

    SILENT = 0
    ERROR = 1
    WARNING = 2
    INFO = 3
    DEBUG = 4


@dataclass
class LogEntry:
    """
    One structured event.

    Attributes:
        level: ERROR, WARNING, INFO or DEBUG
        message: Event message
        timestamp: ISO format timestamp
        component: Emitting component (net, workspace, recurrent)
        net_name: Net the event belongs to
        operation: Operator type
        net_position: 1-based position of the operator in its net
        duration_ms: Elapsed time in milliseconds
        extra: Any other keyword passed to the log call
    """

    level: str
    message: str
    timestamp: str
    component: str = "meridian"
    net_name: Optional[str] = None
    operation: Optional[str] = None
    net_position: Optional[int] = None
    duration_ms: Optional[float] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def build(cls, level: Verbosity, message: str, context: dict) -> "LogEntry":
        """Split keyword context into known fields and extra."""
        known = {f.name for f in fields(cls)} - {"level", "message", "timestamp", "extra"}
        values = {name: context.pop(name) for name in list(context) if name in known}
        return cls(
            level=level.name,
            message=message,
            timestamp=datetime.now().isoformat(),
            extra=context,
            **values,
        )

    def to_json(self) -> str:
        data = {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not None
        }
        if not self.extra:
            del data["extra"]
        return json.dumps(data, default=str)

    def to_text(self) -> str:
        parts = [f"[{self.level}]", f"[{self.component}]"]
        if self.net_name is not None:
            parts.append(f"[net={self.net_name}]")
        if self.operation is not None:
            where = f"@{self.net_position}" if self.net_position else ""
            parts.append(f"[op={self.operation}{where}]")
        parts.append(self.message)
        if self.duration_ms is not None:
            parts.append(f"({self.duration_ms:.2f}ms)")
        return " ".join(parts)


LogHandler = Callable[[LogEntry], None]


class MeridianLogger:
    """
    Process-wide structured logger.

    Verbosity defaults to INFO, or to MERIDIAN_VERBOSITY when that holds
    a valid level.
    """

    _instance: Optional["MeridianLogger"] = None

    def __init__(self):
        self._verbosity = Verbosity.INFO
        self._output: TextIO = sys.stderr
        self._json_format = False
        self._handlers: List[LogHandler] = []

        raw = os.environ.get("MERIDIAN_VERBOSITY")
        if raw is not None:
            try:
                self._verbosity = Verbosity(int(raw))
            except ValueError:
                pass

    @classmethod
    def get(cls) -> "MeridianLogger":
        """Get the singleton logger instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next get() starts from defaults."""
        cls._instance = None

    def set_verbosity(self, level: int) -> None:
        """Set verbosity; plain integers are clamped to SILENT..DEBUG."""
        if not isinstance(level, Verbosity):
            level = Verbosity(max(Verbosity.SILENT, min(Verbosity.DEBUG, level)))
        self._verbosity = level

    def get_verbosity(self) -> Verbosity:
        return self._verbosity

    def is_enabled(self, level: Verbosity) -> bool:
        return level <= self._verbosity

    def set_json_format(self, enabled: bool) -> None:
        self._json_format = enabled

    def set_output(self, output: TextIO) -> None:
        self._output = output

    def add_handler(self, handler: LogHandler) -> None:
        """Call handler with every emitted LogEntry."""
        self._handlers.append(handler)

    def remove_handler(self, handler: LogHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    def log(self, level: Verbosity, message: str, **context) -> Optional[LogEntry]:
        """
        Emit an event at level.

        Returns:
            The emitted entry, or None if level is above the verbosity.
        """
        if not self.is_enabled(level):
            return None
        entry = LogEntry.build(level, message, context)
        self._output.write((entry.to_json() if self._json_format else entry.to_text()) + "\n")
        self._output.flush()
        for handler in list(self._handlers):
            handler(entry)
        return entry

    def debug(self, message: str, **context) -> None:
        self.log(Verbosity.DEBUG, message, **context)

    def info(self, message: str, **context) -> None:
        self.log(Verbosity.INFO, message, **context)

    def warning(self, message: str, **context) -> None:
        self.log(Verbosity.WARNING, message, **context)

    def error(self, message: str, **context) -> None:
        self.log(Verbosity.ERROR, message, **context)

    @contextmanager
    def timed(
        self, message: str, level: Verbosity = Verbosity.DEBUG, **context
    ) -> Iterator[dict]:
        """
        Emit message with duration_ms once the block exits normally.

        The yielded dict is merged into the event, so the block can attach
        results (for example success=False).
        """
        start = time.perf_counter()
        fields_out: dict = {}
        yield fields_out
        context.update(fields_out)
        context["duration_ms"] = (time.perf_counter() - start) * 1000
        self.log(level, message, **context)


def get_logger() -> MeridianLogger:
    """Get the global Meridian logger."""
    return MeridianLogger.get()


def set_verbosity(level: int) -> None:
    """
    Set global verbosity level.

    Args:
        level: Verbosity level (0=SILENT, 1=ERROR, 2=WARNING, 3=INFO, 4=DEBUG)
    """
    MeridianLogger.get().set_verbosity(level)
