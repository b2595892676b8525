"""Test fixtures for ATAC-Refinery.

Provides synthetic data generators and test utilities.
"""

from .mock_counts import (
    create_annotation,
    create_block_embedding_coords,
    create_cell_ids,
    create_cell_qc,
    create_peak_ids,
    create_random_counts,
    create_two_block_counts,
    ring_of_cliques,
)

__all__ = [
    "create_annotation",
    "create_block_embedding_coords",
    "create_cell_ids",
    "create_cell_qc",
    "create_peak_ids",
    "create_random_counts",
    "create_two_block_counts",
    "ring_of_cliques",
]
