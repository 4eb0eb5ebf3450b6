"""Common utility functions for the project."""

import logging
import threading
from collections import deque
from enum import Enum
from typing import (
    Any,
    Deque,
    List,
    Tuple,
)


class AnsiColors(Enum):
    """
    ANSI color codes for terminal output.
    """

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[33m"
    BLUE = "\033[94m"
    MAGENTA = "\033[95m"


def colored_print(text: str, color: AnsiColors, *args: Any, **kwargs: Any) -> None:
    """
    Print text in color.

    Args:
        text: The text to print
        color: The color to use (AnsiColors enum)
        args: Additional positional arguments for print
        kwargs: Additional keyword arguments for print
    """
    print(f"{color.value}{text}\033[0m", *args, **kwargs)  # ANSI reset at the end


class RecentLogHandler(logging.Handler):
    """
    Keep the most recent log records in memory.

    The ``get_logs`` tool reads from this buffer so the model can inspect warnings and errors
    produced by earlier tool calls.
    """

    def __init__(self, capacity: int = 200, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._records: Deque[Tuple[str, str]] = deque(maxlen=capacity)
        self._buffer_lock = threading.Lock()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            message = self.format(record)
        except Exception:  # pylint: disable=broad-except
            self.handleError(record)
            return
        with self._buffer_lock:
            self._records.append((record.levelname, message))

    def latest(self, limit: int = 50) -> List[Tuple[str, str]]:
        """Return up to *limit* records, newest first."""
        with self._buffer_lock:
            records = list(self._records)
        return list(reversed(records[-limit:])) if limit > 0 else []

    def clear(self) -> None:
        with self._buffer_lock:
            self._records.clear()


recent_logs = RecentLogHandler()
"""Process-wide buffer attached to the root logger by ``toolloop.main``."""
