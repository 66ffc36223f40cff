from __future__ import annotations
import logging
import time
from typing import Callable, List, Optional

from .catalog import genome_length, loaded_length
from .mistClasses import ChromosomeInfo, ProgressState

ProgressObserver = Callable[[ProgressState], None]


def human_readable_time(millis: Optional[int]) -> str:
    """'1 d 02:03:04' when a day or more, else '02:03:04'."""
    if millis is None:
        return "--:--:--"
    total = max(0, int(millis)) // 1000
    days, rem = divmod(total, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)
    ret = f"{days} d " if days > 0 else ""
    return ret + f"{hours:02d}:{minutes:02d}:{seconds:02d}"


def format_coordinate(chrom: str, pos: int) -> str:
    return f"{chrom}:{pos:,}"


class ProgressTracker:
    """
    Turns (chromosome, local position) into a genome-wide snapshot.

    global position = length of every other chromosome already loaded + local position.
    Coverage records can arrive out of order, so the local position only ever grows
    while the same chromosome is being reported.
    """

    def __init__(self, chromosomes: List[ChromosomeInfo], clock: Callable[[], float] = time.monotonic):
        self.chromosomes = chromosomes
        self.genome_length = genome_length(chromosomes)
        self._clock = clock
        self._start: Optional[float] = None
        self._chrom: Optional[str] = None
        self._local = 0

    def start(self) -> None:
        self._start = self._clock()

    def elapsed_millis(self) -> int:
        if self._start is None:
            return 0
        return int((self._clock() - self._start) * 1000)

    def update(self, chrom: str, pos: int, matches: int) -> ProgressState:
        if chrom != self._chrom:
            self._chrom = chrom
            self._local = 0
        self._local = max(self._local, pos)
        done = loaded_length(c for c in self.chromosomes if c.name != chrom)
        gpos = done + self._local
        elapsed = self.elapsed_millis()
        # Linear extrapolation of the average throughput so far
        remaining = None if gpos <= 0 else self.genome_length * elapsed // gpos - elapsed
        return ProgressState(
            global_position=gpos,
            genome_length=self.genome_length,
            elapsed_millis=elapsed,
            remaining_millis=remaining,
            match_count=matches,
            current_coordinate=format_coordinate(chrom, pos),
        )

    def finish(self, matches: int, coordinate: str = "") -> ProgressState:
        return ProgressState(
            global_position=self.genome_length,
            genome_length=self.genome_length,
            elapsed_millis=self.elapsed_millis(),
            remaining_millis=0,
            match_count=matches,
            current_coordinate=coordinate,
        )


def logging_observer(logger: logging.Logger) -> ProgressObserver:
    """Observer writing each snapshot as one INFO line."""
    def observe(state: ProgressState) -> None:
        logger.info(
            f"{state.current_coordinate or '-'}  {state.fraction * 100:.2f}%  "
            f"elapsed {human_readable_time(state.elapsed_millis)}  "
            f"remaining {human_readable_time(state.remaining_millis)}  "
            f"matches {state.match_count:,}"
        )
    return observe
