from __future__ import annotations
import os
from pathlib import Path
from typing import List, Optional, TextIO

from .mistClasses import MIST_HEADER, MistRegion

MIST_EXTENSION = ".mist"


def ensure_mist_extension(path: str | Path) -> Path:
    p = Path(path)
    if not p.name.endswith(MIST_EXTENSION):
        p = p.with_name(p.name + MIST_EXTENSION)
    return p


class MistWriter:
    """
    Tab-separated .mist output. The file is recreated with the header on open();
    every region is flushed to disk before the next one is written, so a cancelled
    run leaves only complete records behind.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.written = 0
        self._fh: Optional[TextIO] = None

    def open(self) -> "MistWriter":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "w", encoding="utf-8")
        self._write_line(MIST_HEADER)
        return self

    def write(self, region: MistRegion) -> None:
        self._write_line(region.to_row())
        self.written += 1

    def _write_line(self, values: List[str]) -> None:
        if self._fh is None:
            raise RuntimeError(f"{self.path} is not open")
        self._fh.write("\t".join(values) + "\n")
        self._fh.flush()
        os.fsync(self._fh.fileno())

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def __enter__(self) -> "MistWriter":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
