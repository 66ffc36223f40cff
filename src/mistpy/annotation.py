from __future__ import annotations
import gzip
import importlib.resources as res
import logging
import zlib
from pathlib import Path
from typing import Iterator, TextIO

from .mistClasses import ExonRecord

# Ensembl GRCh37 (v75) protein-coding exons, packaged under mistpy/data
DEFAULT_ANNOTATION = "HomoSapiens_v75_protein_coding.tsv.gz"


class AnnotationError(ValueError):
    """A row of the exon annotation could not be parsed."""

    def __init__(self, line_number: int, reason: str):
        super().__init__(f"annotation line {line_number}: {reason}")
        self.line_number = line_number


def _open_text_auto(path: str | Path) -> TextIO:
    p = Path(path)
    if p.suffix.lower() == ".gz":
        return gzip.open(p, "rt", encoding="utf-8", errors="replace")
    return open(p, "rt", encoding="utf-8", errors="replace")


def default_annotation_path() -> Path:
    """Location of the bundled exon annotation."""
    try:
        p = Path(str(res.files("mistpy.data").joinpath(DEFAULT_ANNOTATION)))
    except ModuleNotFoundError:
        p = None
    if p is None or not p.exists():
        raise FileNotFoundError(
            f"Bundled annotation {DEFAULT_ANNOTATION} not found in mistpy/data; "
            f"pass an exon annotation explicitly (--annotation)."
        )
    return p


def iter_exons(
    path: str | Path,
    logger: logging.Logger | None = None,
) -> Iterator[ExonRecord]:
    """
    Stream exon records in file order from a tab-separated (optionally gzipped) table:
    chrom, start, end, gene_id, gene_name, exon_number, exon_id, transcript_name,
    transcript_info, gene_biotype. The first line is a header and is skipped.

    Malformed rows and corrupt or truncated gzip streams raise AnnotationError;
    other read errors propagate as OSError.
    """
    with _open_text_auto(path) as fh:
        n = 1
        try:
            header = fh.readline()
            if logger and logger.isEnabledFor(logging.DEBUG):
                logger.debug(f"Annotation header: {header.rstrip()!r}")
            for line in fh:
                n += 1
                if not line.strip():
                    continue
                cols = line.rstrip("\r\n").split("\t")
                try:
                    record = ExonRecord.from_columns(cols)
                except ValueError as e:
                    raise AnnotationError(n, str(e)) from e
                yield record
        except (EOFError, zlib.error) as e:
            raise AnnotationError(n, f"unreadable annotation stream: {e}") from e
