"""Numbered phase progress for the command line."""

from __future__ import annotations

import sys
from typing import Optional, TextIO


class PhaseReporter:
    """Prints ``[k/total] description`` lines as phases start."""

    def __init__(self, total: int, stream: Optional[TextIO] = None):
        self.total = total
        self.current = 0
        self.stream = stream

    def _out(self) -> TextIO:
        return self.stream if self.stream is not None else sys.stdout

    def step(self, description: str) -> None:
        self.current = min(self.current + 1, self.total)
        print(f"[{self.current}/{self.total}] {description}", file=self._out(), flush=True)

    def detail(self, text: str) -> None:
        print(f"      {text}", file=self._out(), flush=True)

    def blank(self) -> None:
        print("", file=self._out(), flush=True)
