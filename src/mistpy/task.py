from __future__ import annotations
import logging
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import numpy as np

from .annotation import AnnotationError, default_annotation_path, iter_exons
from .catalog import find_chromosome, read_chromosomes
from .depth import DEFAULT_REPORT_EVERY, CoverageSource, load_chromosome, samtools_mpileup
from .mistClasses import ChromosomeInfo, ExonRecord, MistRegion, ProgressState
from .progress import ProgressObserver, ProgressTracker
from .scan import WINDOW_SIZE, classify, find_runs, scan_window
from .writer import MistWriter, ensure_mist_extension

HeaderReader = Callable[..., List[ChromosomeInfo]]


def _make_logger(level: str) -> logging.Logger:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logger = logging.getLogger("mistpy")
    if not logger.handlers:
        handler = logging.StreamHandler()
        fmt = logging.Formatter("[%(asctime)s] [%(levelname)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    logger.setLevel(lvl)
    return logger


class InvalidParameterError(ValueError):
    """A run parameter is not a positive integer."""

    def __init__(self, field: str, value):
        super().__init__(f"Invalid {field}: {value!r} (expected a positive integer)")
        self.field = field
        self.value = value


def _positive_int(field: str, value) -> int:
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise InvalidParameterError(field, value)
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise InvalidParameterError(field, value) from None
    if n <= 0:
        raise InvalidParameterError(field, value)
    return n


@dataclass(frozen=True)
class MistParameters:
    threshold: int  # depth < threshold is insufficient
    length: int     # minimum region length

    @classmethod
    def from_values(cls, threshold, length) -> "MistParameters":
        return cls(_positive_int("threshold", threshold), _positive_int("length", length))


class TaskStatus(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class MistResult:
    status: TaskStatus
    matches: int
    message: str


def status_message(status: TaskStatus, matches: int) -> str:
    if status is TaskStatus.SUCCEEDED:
        return f"Finished successfully: {matches} regions found"
    if status is TaskStatus.FAILED:
        return f"Finished with errors: {matches} regions found"
    return "Cancelled"


class MistTask:
    """
    Find MIST regions (runs of depth < threshold at least `length` bases long) in and
    around every annotated exon of a BAM file and write them to a .mist file.

    Exons are processed in annotation order. Whenever the chromosome changes its whole
    depth array is rebuilt from the coverage source; only one array is resident at a time.

    Given the following exon:

        Pos   DP
        1000  5
        1001  4
        1002  8
        1003  9
        1004  10
        1005  11
        1006  9

    With threshold=10 and length=1 the MIST regions are [1000-1003] and [1006-1006].
    With threshold=10 and length=3 the MIST region is [1000-1003].
    With threshold=9 and length=2 the MIST region is [1000-1002].
    """

    def __init__(
        self,
        bam_path: str | Path,
        output: str | Path,
        threshold,
        length,
        *,
        annotation: str | Path | None = None,
        coverage_source: CoverageSource | None = None,
        header_reader: HeaderReader = read_chromosomes,
        pad: int = WINDOW_SIZE,
        report_every: int = DEFAULT_REPORT_EVERY,
        workers: int = 1,
        emit_open_runs: bool = False,
        logger: logging.Logger | None = None,
    ):
        self.params = MistParameters.from_values(threshold, length)
        self.bam_path = Path(bam_path)
        self.output = ensure_mist_extension(output)
        self.annotation = annotation
        self.coverage_source = coverage_source or samtools_mpileup()
        self.header_reader = header_reader
        self.pad = pad
        self.report_every = report_every
        self.workers = max(1, workers)
        self.emit_open_runs = emit_open_runs
        self.logger = logger or logging.getLogger("mistpy.task")

        self.chromosomes: List[ChromosomeInfo] = []
        self.matches = 0
        self.result: Optional[MistResult] = None
        self._cancel = threading.Event()
        self._observers: List[ProgressObserver] = []
        self._progress: Optional[ProgressState] = None
        self._progress_lock = threading.Lock()
        self._tracker: Optional[ProgressTracker] = None
        self._thread: Optional[threading.Thread] = None

    # Observers and cancellation

    def add_observer(self, observer: ProgressObserver) -> None:
        self._observers.append(observer)

    @property
    def progress(self) -> Optional[ProgressState]:
        """Latest published snapshot."""
        return self._progress

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancel.is_set()

    def _publish(self, state: ProgressState) -> None:
        self._progress = state
        for observer in list(self._observers):
            try:
                observer(state)
            except Exception as e:
                self.logger.error(f"Progress observer failed: {e}")

    def _on_load_progress(self, chrom: str, pos: int) -> None:
        with self._progress_lock:
            if self._tracker is not None:
                self._publish(self._tracker.update(chrom, pos, self.matches))

    # Background execution

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self._run_in_thread, name="mist", daemon=False)
        self._thread.start()
        return self._thread

    def _run_in_thread(self) -> None:
        try:
            self.run()
        except Exception:
            self.logger.exception("MIST run failed")
            self.result = MistResult(TaskStatus.FAILED, self.matches, status_message(TaskStatus.FAILED, self.matches))

    def join(self, timeout: float | None = None) -> Optional[MistResult]:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.result

    # Pipeline

    def run(self) -> MistResult:
        """Execute the whole analysis in the calling thread."""
        self.matches = 0
        try:
            status = self._start_mist()
        except (OSError, AnnotationError) as e:
            self.logger.error(f"MIST run failed: {e}")
            status = TaskStatus.FAILED
        if self.is_cancelled:
            status = TaskStatus.CANCELLED
        if status is TaskStatus.SUCCEEDED and self._tracker is not None:
            self._publish(self._tracker.finish(self.matches))

        message = status_message(status, self.matches)
        if status is TaskStatus.SUCCEEDED:
            self.logger.info(message)
        else:
            self.logger.warning(message)
        self.result = MistResult(status, self.matches, message)
        return self.result

    def _start_mist(self) -> TaskStatus:
        # 1: read chromosomes, 2: write header, 3: stream exons, loading each
        # chromosome on first use, 4: locate and write MIST regions
        self.chromosomes = self.header_reader(self.bam_path, logger=self.logger)
        self._tracker = ProgressTracker(self.chromosomes)
        annotation = Path(self.annotation) if self.annotation else default_annotation_path()

        self.logger.info(
            f"MIST on {self.bam_path}: threshold={self.params.threshold}, "
            f"length={self.params.length}, output={self.output}"
        )
        with MistWriter(self.output) as writer:
            self._tracker.start()
            current: Optional[str] = None
            depths: Optional[np.ndarray] = None
            for exon in iter_exons(annotation, logger=self.logger):
                if self.is_cancelled:
                    return TaskStatus.CANCELLED
                if exon.chrom != current:
                    depths = self._next_chromosome(exon.chrom)
                    current = exon.chrom
                if depths is not None:
                    self._compute_mist_regions(exon, depths, writer)
        return TaskStatus.CANCELLED if self.is_cancelled else TaskStatus.SUCCEEDED

    def _next_chromosome(self, chrom: str) -> Optional[np.ndarray]:
        depths = load_chromosome(
            self.chromosomes,
            chrom,
            self.bam_path,
            self.coverage_source,
            logger=self.logger,
            cancel=self._cancel,
            report_every=self.report_every,
            workers=self.workers,
            on_progress=self._on_load_progress,
        )
        info = find_chromosome(self.chromosomes, chrom)
        if info is not None and not self.is_cancelled:
            info.loaded = True
        return depths

    def _compute_mist_regions(self, exon: ExonRecord, depths: np.ndarray, writer: MistWriter) -> None:
        start, end = scan_window(exon.exon_start, exon.exon_end, len(depths), self.pad)
        for mist_start, mist_end in find_runs(
            depths, start, end, self.params.threshold, self.params.length, self.emit_open_runs
        ):
            match = classify(exon.exon_start, exon.exon_end, mist_start, mist_end)
            writer.write(MistRegion(exon, mist_start, mist_end, match))
            self.matches += 1
