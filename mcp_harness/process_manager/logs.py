"""Per-server log files: append sinks for child output and a tail reader."""

from __future__ import annotations

import logging
import os
from collections import deque
from pathlib import Path
from typing import BinaryIO

log = logging.getLogger(__name__)


class LogStore:
    """Maps a logical server name to ``<log_dir>/<name>.log``."""

    def __init__(self, log_dir: str | Path) -> None:
        self.log_dir = Path(log_dir)

    def path_for(self, name: str) -> Path:
        """Log path for ``name``; raises ValueError for names that are not
        a single plain path component."""
        if (
            not name
            or name in (".", "..")
            or "/" in name
            or (os.altsep is not None and os.altsep in name)
            or os.sep in name
            or "\0" in name
        ):
            raise ValueError(f"Invalid server name for a log file: {name!r}")
        return self.log_dir / f"{name}.log"

    def open_sink(self, name: str) -> BinaryIO:
        """Open the server's log file for appending raw output bytes."""
        self.log_dir.mkdir(parents=True, exist_ok=True)
        return open(self.path_for(name), "ab")

    def tail(self, name: str, lines: int = 100) -> str | None:
        """Return the last ``lines`` lines of the server's log.

        Returns None when the server has never written a log file.
        """
        path = self.path_for(name)
        if not path.exists():
            return None
        if lines <= 0:
            return ""

        last: deque[str] = deque(maxlen=lines)
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                last.append(line.rstrip("\n"))
        return "\n".join(last)
