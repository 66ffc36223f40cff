from __future__ import annotations
from typing import Iterator, Sequence, Tuple

from .mistClasses import INSIDE, LEFT, OVERLAP, RIGHT

# Bases added on each side of an exon before scanning
WINDOW_SIZE = 10


def scan_window(exon_start: int, exon_end: int, array_length: int, pad: int = WINDOW_SIZE) -> Tuple[int, int]:
    """
    Half-open genomic window [start, end) around an exon, clipped to the chromosome:
    positions 1 to array_length - 1 (the last base) can be scanned.
    The window is empty (start >= end) when the exon lies past the chromosome end.
    """
    start = max(1, exon_start - pad)
    end = min(array_length, exon_end + pad)
    return start, end


def find_runs(
    depths: Sequence[int],
    start: int,
    end: int,
    threshold: int,
    min_length: int,
    emit_open_runs: bool = False,
) -> Iterator[Tuple[int, int]]:
    """
    Yield maximal runs [run_start, run_end] (inclusive) inside [start, end) where
    depth < threshold and the run is at least min_length bases long.

    A run is closed by the first position with depth >= threshold. A run still open
    when the window ends is only reported with emit_open_runs=True.
    """
    window = depths[start:end]
    if hasattr(window, "tolist"):
        window = window.tolist()  # numpy slice: iterate plain ints
    in_run = False
    run_start = 0
    for pos, depth in enumerate(window, start):
        if depth < threshold:
            if not in_run:
                in_run = True
                run_start = pos
        elif in_run:
            in_run = False
            if pos - run_start >= min_length:
                yield run_start, pos - 1
    if in_run and emit_open_runs and end - run_start >= min_length:
        yield run_start, end - 1


def classify(exon_start: int, exon_end: int, mist_start: int, mist_end: int) -> str:
    """Position of a MIST region relative to its exon: left, right, inside or overlap."""
    if mist_start < exon_start:
        return OVERLAP if mist_end > exon_end else LEFT
    return RIGHT if mist_end > exon_end else INSIDE
