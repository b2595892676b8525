"""Genomic intervals and gene annotations.

Coordinates are 0-based and half-open ([start, end)), as in BED files.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, Iterator, List, Sequence, Tuple

import pandas as pd

from ..errors import MatrixValidationError

# chr1-100-200, chr1:100-200, chr1_100_200
PEAK_ID_PATTERN = re.compile(r"^(?P<chrom>.+?)[:_-](?P<start>\d+)[-_](?P<end>\d+)$")

VALID_STRANDS = ("+", "-", ".")


@dataclass(frozen=True)
class GenomicInterval:
    """A stranded genomic interval, optionally associated with a gene."""

    chrom: str
    start: int
    end: int
    strand: str = "+"
    gene_name: str = ""

    def __post_init__(self):
        if self.start < 0 or self.end < self.start:
            raise MatrixValidationError(
                f"Invalid interval {self.chrom}:{self.start}-{self.end}"
            )
        if self.strand not in VALID_STRANDS:
            raise MatrixValidationError(f"Invalid strand '{self.strand}'")

    @property
    def width(self) -> int:
        return self.end - self.start

    def overlaps(self, other: "GenomicInterval") -> bool:
        return (
            self.chrom == other.chrom
            and self.start < other.end
            and other.start < self.end
        )

    def extend(self, upstream: int, downstream: int) -> "GenomicInterval":
        """Extend relative to strand.

        Upstream is the 5' side: lower coordinates on '+' (and '.'),
        higher coordinates on '-'.
        """
        if self.strand == "-":
            start, end = self.start - downstream, self.end + upstream
        else:
            start, end = self.start - upstream, self.end + downstream
        return GenomicInterval(
            self.chrom, max(start, 0), max(end, 0), self.strand, self.gene_name
        )


def parse_peak_id(peak_id: str) -> GenomicInterval:
    """Parse a peak identifier like ``chr1-10000-10500`` into an interval.

    Raises
    ------
    MatrixValidationError
        If the identifier does not encode coordinates
    """
    match = PEAK_ID_PATTERN.match(str(peak_id))
    if match is None:
        raise MatrixValidationError(
            f"Cannot parse genomic coordinates from feature id '{peak_id}'"
        )
    return GenomicInterval(
        match.group("chrom"), int(match.group("start")), int(match.group("end")), "."
    )


class FeatureAnnotation:
    """Immutable ordered sequence of gene intervals.

    Parameters
    ----------
    intervals : Sequence[GenomicInterval]
        Gene intervals; each should carry a gene name
    genome : str, optional
        Genome build label (opaque)
    """

    def __init__(self, intervals: Sequence[GenomicInterval], genome: str = ""):
        self._intervals: Tuple[GenomicInterval, ...] = tuple(intervals)
        self.genome = genome

    def __len__(self) -> int:
        return len(self._intervals)

    def __iter__(self) -> Iterator[GenomicInterval]:
        return iter(self._intervals)

    def __getitem__(self, i: int) -> GenomicInterval:
        return self._intervals[i]

    @property
    def gene_names(self) -> List[str]:
        return [iv.gene_name for iv in self._intervals]

    def collapse_to_longest(self) -> "FeatureAnnotation":
        """Keep one interval per gene name: the longest (first seen on ties).

        Output order follows the first appearance of each gene.
        """
        best: Dict[str, GenomicInterval] = {}
        order: List[str] = []
        for iv in self._intervals:
            current = best.get(iv.gene_name)
            if current is None:
                order.append(iv.gene_name)
                best[iv.gene_name] = iv
            elif iv.width > current.width:
                best[iv.gene_name] = iv
        return FeatureAnnotation([best[g] for g in order], genome=self.genome)

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(
            [
                {
                    "chrom": iv.chrom,
                    "start": iv.start,
                    "end": iv.end,
                    "strand": iv.strand,
                    "gene_name": iv.gene_name,
                }
                for iv in self._intervals
            ],
            columns=["chrom", "start", "end", "strand", "gene_name"],
        )

    @classmethod
    def from_dataframe(
        cls,
        frame: pd.DataFrame,
        genome: str = "",
        gene_col: str = "gene_name",
    ) -> "FeatureAnnotation":
        """Build from a BED-like table with chrom/start/end/strand/gene columns."""
        required = ["chrom", "start", "end", gene_col]
        missing = [c for c in required if c not in frame.columns]
        if missing:
            raise MatrixValidationError(
                f"Annotation table missing columns: {missing}",
                {"available": list(frame.columns)},
            )
        strands = frame["strand"] if "strand" in frame.columns else ["+"] * len(frame)
        intervals = [
            GenomicInterval(str(chrom), int(start), int(end), str(strand), str(gene))
            for chrom, start, end, strand, gene in zip(
                frame["chrom"], frame["start"], frame["end"], strands, frame[gene_col]
            )
        ]
        return cls(intervals, genome=genome)


def peak_intervals(feature_ids: Sequence[str]) -> List[GenomicInterval]:
    """Parse every feature id of a peak matrix."""
    return [parse_peak_id(fid) for fid in feature_ids]


def format_peak_id(interval: GenomicInterval, sep: str = "-") -> str:
    return f"{interval.chrom}{sep}{interval.start}{sep}{interval.end}"
