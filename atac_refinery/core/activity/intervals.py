"""Sorted interval index for overlap and nearest-interval queries.

Intervals are stored per chromosome sorted by start, together with the
chromosome's maximal interval width. An overlap query for [start, end)
only needs the intervals whose start lies in (start - max_width, end),
found with two binary searches.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..matrix.annotation import GenomicInterval


@dataclass
class _ChromBlock:
    starts: np.ndarray
    ends: np.ndarray
    positions: np.ndarray
    max_width: int
    # running maximum of ends in start order, and where it is reached
    prefix_max_end: np.ndarray
    prefix_argmax: np.ndarray


class IntervalIndex:
    """Index over a fixed list of intervals.

    Query results are positions into the list the index was built from,
    returned in ascending order.

    Parameters
    ----------
    intervals : Sequence[GenomicInterval]
        Intervals to index

    Example
    -------
    >>> index = IntervalIndex(peak_intervals(matrix.feature_ids))
    >>> index.overlapping(GenomicInterval("chr1", 1000, 5000))
    array([3, 4])
    """

    def __init__(self, intervals: Sequence[GenomicInterval]):
        self._intervals = list(intervals)
        grouped: Dict[str, List[int]] = {}
        for pos, iv in enumerate(self._intervals):
            grouped.setdefault(iv.chrom, []).append(pos)

        self._blocks: Dict[str, _ChromBlock] = {}
        for chrom, positions in grouped.items():
            positions = np.asarray(positions, dtype=np.int64)
            starts = np.array([self._intervals[p].start for p in positions], dtype=np.int64)
            ends = np.array([self._intervals[p].end for p in positions], dtype=np.int64)
            order = np.lexsort((positions, starts))
            starts, ends, positions = starts[order], ends[order], positions[order]
            prefix_max = np.maximum.accumulate(ends)
            argmax = np.zeros(len(ends), dtype=np.int64)
            for i in range(1, len(ends)):
                argmax[i] = i if ends[i] > prefix_max[i - 1] else argmax[i - 1]
            self._blocks[chrom] = _ChromBlock(
                starts=starts,
                ends=ends,
                positions=positions,
                max_width=int((ends - starts).max()) if len(ends) else 0,
                prefix_max_end=prefix_max,
                prefix_argmax=argmax,
            )

    def __len__(self) -> int:
        return len(self._intervals)

    @property
    def chromosomes(self) -> List[str]:
        return list(self._blocks)

    def overlapping(self, query: GenomicInterval) -> np.ndarray:
        """Positions of intervals with a non-empty half-open intersection."""
        block = self._blocks.get(query.chrom)
        if block is None or query.end <= query.start:
            return np.empty(0, dtype=np.int64)
        lo = np.searchsorted(block.starts, query.start - block.max_width, side="right")
        hi = np.searchsorted(block.starts, query.end, side="left")
        candidates = slice(lo, hi)
        hits = block.ends[candidates] > query.start
        return np.sort(block.positions[candidates][hits])

    def closest(self, query: GenomicInterval) -> Optional[Tuple[int, int]]:
        """Nearest interval to ``query`` on the same chromosome.

        Returns
        -------
        tuple of (int, int) or None
            (position, distance) where distance is 0 for overlaps and the
            number of bases separating the intervals otherwise. Ties go to
            the lower position. None if the chromosome is not indexed.
        """
        block = self._blocks.get(query.chrom)
        if block is None:
            return None
        hits = self.overlapping(query)
        if hits.size:
            return int(hits[0]), 0

        best: Optional[Tuple[int, int]] = None
        left = np.searchsorted(block.starts, query.start, side="left") - 1
        if left >= 0:
            i = block.prefix_argmax[left]
            gap = max(int(query.start - block.prefix_max_end[left]), 0)
            best = (int(block.positions[i]), gap)

        right = np.searchsorted(block.starts, query.end, side="left")
        if right < len(block.starts):
            # smallest position among the intervals sharing the nearest start
            same = block.starts == block.starts[right]
            candidate = (int(block.positions[same].min()), int(block.starts[right] - query.end))
            if best is None or (candidate[1], candidate[0]) < (best[1], best[0]):
                best = candidate
        return best
