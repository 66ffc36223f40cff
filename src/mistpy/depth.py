from __future__ import annotations
import logging
import os
import subprocess
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

import numpy as np
import psutil

from .catalog import find_chromosome
from .mistClasses import ChromosomeInfo

# Records handed to a single scatter-write call
CHUNK_SIZE = 65536
DEFAULT_REPORT_EVERY = 1_000_000

# (chrom, bam_path) -> lines of "chrom  pos  ref  depth  ..."
CoverageSource = Callable[[str, str], Iterable[str]]
# (chrom, latest position seen)
LoadProgress = Callable[[str, int], None]


class CoverageSourceError(RuntimeError):
    """The external coverage process could not be started or did not finish cleanly."""


def _stream_command(cmd: List[str]) -> Iterator[str]:
    with tempfile.TemporaryFile() as err:
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=err, text=True)
        except OSError as e:
            raise CoverageSourceError(f"Could not start {cmd[0]}: {e}") from e

        completed = False
        try:
            for line in proc.stdout:
                yield line
            completed = True
        finally:
            # Consumer stopped early (cancelled): do not wait for the whole chromosome
            if not completed and proc.poll() is None:
                proc.kill()
            proc.stdout.close()
            returncode = proc.wait()

        if returncode != 0:
            err.seek(0)
            msg = err.read().decode("utf-8", errors="replace").strip()
            raise CoverageSourceError(f"{' '.join(cmd)} exited with {returncode}: {msg}")


def samtools_mpileup(samtools: str = "samtools") -> CoverageSource:
    """Coverage source running `samtools mpileup -r <chrom> <bam>`."""
    def source(chrom: str, bam_path: str) -> Iterator[str]:
        return _stream_command([samtools, "mpileup", "-r", chrom, str(bam_path)])
    return source


def _get_memory_usage():
    process = psutil.Process(os.getpid())
    return process.memory_info().rss / 1024 / 1024  # Current memory usage in MB


def _parse_chunk(lines: List[str], length: int) -> Tuple[List[int], List[int], int, int]:
    """Returns (positions, depths, last position seen, skipped lines)."""
    positions: List[int] = []
    values: List[int] = []
    last = 0
    skipped = 0
    for line in lines:
        cols = line.split("\t", 4)
        if len(cols) < 4:
            skipped += 1
            continue
        try:
            pos = int(cols[1])
            dp = int(cols[3])
        except ValueError:
            skipped += 1
            continue
        last = pos
        if 1 <= pos <= length:
            positions.append(pos)
            values.append(dp)
    return positions, values, last, skipped


class _RecordCounter:
    """Shared record counter; fires the progress callback once per `every` records."""

    def __init__(self, chrom: str, every: int, on_progress: Optional[LoadProgress]):
        self.chrom = chrom
        self.every = max(1, every)
        self.on_progress = on_progress
        self.count = 0
        self.skipped = 0
        self._lock = threading.Lock()

    def add(self, n: int, skipped: int, last_pos: int) -> None:
        with self._lock:
            before = self.count
            self.count += n
            self.skipped += skipped
            crossed = self.count // self.every > before // self.every
        if crossed and self.on_progress is not None:
            self.on_progress(self.chrom, last_pos)


def load_depths(
    chromosome: ChromosomeInfo,
    bam_path: str | Path,
    source: CoverageSource,
    *,
    cancel: threading.Event | None = None,
    report_every: int = DEFAULT_REPORT_EVERY,
    workers: int = 1,
    on_progress: Optional[LoadProgress] = None,
    logger: logging.Logger | None = None,
) -> Optional[np.ndarray]:
    """
    Build the depth array of one chromosome.

    The array has length + 1 cells and is indexed by genomic (1-based) position;
    cell 0 is never used. Positions the coverage source does not report stay at 0.
    Coverage lines may arrive in any order. With workers > 1 chunks of lines are
    scatter-written concurrently; each position appears once, so writes never alias.

    Returns None when the source fails or the load is cancelled.
    """
    name = chromosome.name
    depths = np.zeros(chromosome.length + 1, dtype=np.int32)
    counter = _RecordCounter(name, report_every, on_progress)
    chunk_size = max(1, min(CHUNK_SIZE, report_every))

    def ingest(chunk: List[str]) -> None:
        positions, values, last, skipped = _parse_chunk(chunk, chromosome.length)
        if positions:
            depths[np.asarray(positions, dtype=np.int64)] = values
        counter.add(len(chunk), skipped, last)

    if logger:
        logger.info(f"Loading depths for {name} ({chromosome.length:,} bp)")

    executor = ThreadPoolExecutor(max_workers=workers) if workers > 1 else None
    pending: List[Future] = []
    cancelled = False
    lines = None
    try:
        lines = source(name, str(bam_path))
        chunk: List[str] = []
        for line in lines:
            if cancel is not None and cancel.is_set():
                cancelled = True
                break
            chunk.append(line)
            if len(chunk) >= chunk_size:
                if executor is None:
                    ingest(chunk)
                else:
                    pending.append(executor.submit(ingest, chunk))
                    # bound the number of chunks held in memory
                    if len(pending) >= 2 * workers:
                        pending.pop(0).result()
                chunk = []
        if chunk and not cancelled:
            if executor is None:
                ingest(chunk)
            else:
                pending.append(executor.submit(ingest, chunk))
        for fut in pending:
            fut.result()
    except (CoverageSourceError, OSError) as e:
        if logger:
            logger.error(f"Coverage for {name} could not be read: {e}")
        return None
    finally:
        if executor is not None:
            executor.shutdown(wait=True)
        close = getattr(lines, "close", None)
        if cancelled and close is not None:
            close()

    if cancelled:
        if logger:
            logger.info(f"Loading of {name} cancelled after {counter.count:,} records")
        return None

    if logger:
        logger.info(f"Loaded {name}: {counter.count:,} coverage records")
        if counter.skipped:
            logger.debug(f"{name}: skipped {counter.skipped:,} malformed coverage lines")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(f"Memory after loading {name}: {_get_memory_usage():.1f} MB")
    return depths


def load_chromosome(
    chromosomes: List[ChromosomeInfo],
    name: str,
    bam_path: str | Path,
    source: CoverageSource,
    logger: logging.Logger | None = None,
    **kwargs,
) -> Optional[np.ndarray]:
    """Look `name` up in the catalog and load it; None when it is not declared."""
    chromosome = find_chromosome(chromosomes, name)
    if chromosome is None:
        if logger:
            logger.warning(f"Missing chromosome: {name}")
        return None
    return load_depths(chromosome, bam_path, source, logger=logger, **kwargs)
