from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import List

LOGGER = logging.getLogger("ui_harness.output")


class CapturedOutput:
    """Timestamped lines written by one test, mirrored to logging and dumped on failure."""

    def __init__(self, test_name: str = "") -> None:
        self._test_name = test_name
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def write_line(self, message: str, *args: object) -> None:
        text = message % args if args else message
        stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        with self._lock:
            self._lines.append(f"{stamp} - {text}")
        LOGGER.info("[%s] %s", self._test_name or "test", text)

    @property
    def lines(self) -> List[str]:
        with self._lock:
            return list(self._lines)

    def text(self) -> str:
        return "\n".join(self.lines)

    def save(self, path: Path) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.text() + "\n", encoding="utf-8")
        return path
