from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional

# Match kinds of a MIST region relative to its exon
INSIDE = "inside"
OVERLAP = "overlap"
LEFT = "left"
RIGHT = "right"

# Annotation columns:
# chrom | start | end | gene_id | gene_name | exon_number | exon_id | transcript_name |
# transcript_info | gene_biotype
EXON_CHR = 0
EXON_START = 1
EXON_END = 2
GENE_ID = 3
GENE_NAME = 4
EXON_N = 5
EXON_ID = 6
TRANS_NAME = 7
TRANS_INFO = 8
GENE_BIO = 9

MIST_HEADER = [
    "chrom", "exon_start", "exon_end", "mist_start", "mist_end",
    "gene_id", "gene_name", "exon_number", "exon_id", "transcript_name", "biotype", "match",
]


# Only used for progress accounting; 'loaded' is never reset during a run
@dataclass
class ChromosomeInfo:
    name: str
    length: int
    loaded: bool = False


@dataclass(frozen=True)
class ExonRecord:
    chrom: str
    exon_start: int  # 1-based inclusive
    exon_end: int    # 1-based inclusive
    gene_id: str
    gene_name: str
    exon_number: str
    exon_id: str
    transcript_name: str
    biotype: str

    @classmethod
    def from_columns(cls, cols: List[str]) -> "ExonRecord":
        """Build a record from a split annotation row. Raises ValueError on bad rows."""
        if len(cols) <= GENE_BIO:
            raise ValueError(f"expected {GENE_BIO + 1} columns, got {len(cols)}")
        return cls(
            chrom=cols[EXON_CHR],
            exon_start=int(cols[EXON_START]),
            exon_end=int(cols[EXON_END]),
            gene_id=cols[GENE_ID],
            gene_name=cols[GENE_NAME],
            exon_number=cols[EXON_N],
            exon_id=cols[EXON_ID],
            transcript_name=cols[TRANS_NAME],
            biotype=cols[GENE_BIO],
        )


@dataclass(frozen=True)
class MistRegion:
    exon: ExonRecord
    mist_start: int
    mist_end: int
    match: str

    def to_row(self) -> List[str]:
        e = self.exon
        return [
            e.chrom, str(e.exon_start), str(e.exon_end), str(self.mist_start), str(self.mist_end),
            e.gene_id, e.gene_name, e.exon_number, e.exon_id, e.transcript_name, e.biotype, self.match,
        ]


@dataclass(frozen=True)
class ProgressState:
    """Immutable progress snapshot, replaced wholesale on every tick."""
    global_position: int
    genome_length: int
    elapsed_millis: int
    remaining_millis: Optional[int]  # None until any position has been processed
    match_count: int
    current_coordinate: str

    @property
    def fraction(self) -> float:
        if self.genome_length <= 0:
            return 0.0
        return min(1.0, max(0.0, self.global_position / self.genome_length))
