from __future__ import annotations
import logging
from pathlib import Path
from typing import Iterable, List, Optional

import bamnostic as bn

from .mistClasses import ChromosomeInfo


def parse_sq_lines(lines: Iterable[str]) -> List[ChromosomeInfo]:
    """
    Parse SAM header text into chromosomes, keeping the declared order.

        @SQ	SN:1	LN:249250621
        @SQ	SN:GL000249.1	LN:38502
    """
    out: List[ChromosomeInfo] = []
    for line in lines:
        if not line.startswith("@SQ"):
            continue
        tags = {}
        for field in line.rstrip("\r\n").split("\t")[1:]:
            if ":" in field:
                k, v = field.split(":", 1)
                tags[k] = v
        name = tags.get("SN")
        try:
            length = int(tags.get("LN", ""))
        except ValueError:
            continue
        if name and length >= 0:
            out.append(ChromosomeInfo(name, length))
    return out


def _header_text(bf) -> str:
    # bamnostic keeps the plain-text SAM header in .text; some versions expose it via header
    text = getattr(bf, "text", None)
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    if not text:
        header = getattr(bf, "header", None)
        text = header if isinstance(header, str) else ""
    return text or ""


def read_chromosomes(
    bam_path: str | Path,
    logger: logging.Logger | None = None,
) -> List[ChromosomeInfo]:
    """
    Read the sequence dictionary of a BAM file.
    Returns an empty list when no chromosomes are declared or the header cannot be read.
    """
    try:
        bf = bn.AlignmentFile(str(bam_path), "rb")
    except Exception as e:
        if logger:
            logger.error(f"Could not read header of {bam_path}: {e}")
        return []

    try:
        names = list(getattr(bf, "references", None) or [])
        lengths = list(getattr(bf, "lengths", None) or [])
        if names and len(names) == len(lengths):
            chromosomes = [ChromosomeInfo(str(n), int(ln)) for n, ln in zip(names, lengths)]
        else:
            chromosomes = parse_sq_lines(_header_text(bf).splitlines())
    except Exception as e:
        if logger:
            logger.error(f"Could not parse header of {bam_path}: {e}")
        return []
    finally:
        try:
            bf.close()
        except Exception:
            pass

    if logger:
        if chromosomes:
            logger.info(
                f"{len(chromosomes)} chromosomes declared in {bam_path} "
                f"({genome_length(chromosomes):,} bp)"
            )
        else:
            logger.warning(f"No chromosomes declared in header of {bam_path}")
    return chromosomes


def find_chromosome(chromosomes: List[ChromosomeInfo], name: str) -> Optional[ChromosomeInfo]:
    for chrom in chromosomes:
        if chrom.name == name:
            return chrom
    return None


def genome_length(chromosomes: Iterable[ChromosomeInfo]) -> int:
    return sum(c.length for c in chromosomes)


def loaded_length(chromosomes: Iterable[ChromosomeInfo]) -> int:
    return sum(c.length for c in chromosomes if c.loaded)
