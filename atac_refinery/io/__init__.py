"""I/O utilities for ATAC-Refinery.

Provides logging, h5ad round-trips for analysis entities, and loaders for
plain-text inputs.
"""

from .logging import (
    get_logger,
    get_timestamped_log_path,
    log_json,
    log_yaml,
    write_anomaly_records,
)
from .matrix_io import (
    load_annotation,
    load_cell_qc,
    load_gc_content,
    load_motif_presence,
    load_mtx,
    read_deviation,
    read_embedding,
    read_h5ad,
    read_table,
    write_deviation,
    write_embedding,
    write_h5ad,
    write_table,
)

__all__ = [
    # Logging
    "get_logger",
    "get_timestamped_log_path",
    "log_json",
    "log_yaml",
    "write_anomaly_records",
    # Entities
    "read_deviation",
    "read_embedding",
    "read_h5ad",
    "write_deviation",
    "write_embedding",
    "write_h5ad",
    # Plain-text inputs
    "load_annotation",
    "load_cell_qc",
    "load_gc_content",
    "load_motif_presence",
    "load_mtx",
    # Tables
    "read_table",
    "write_table",
]
