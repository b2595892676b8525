"""Command-line interface for ATAC-Refinery.

Provides CLI commands for running analysis stages.

Example Usage
-------------
    # From command line:
    atac-refinery --help
    atac-refinery lsi --input peaks.h5ad --out out/
    atac-refinery cluster --input peaks.h5ad --resolution 0.8 --out out/
    atac-refinery run --input filtered_peak_bc_matrix/ --config analysis.yaml --out out/
"""

__version__ = "1.0.0"

from .main import cli, main

__all__ = [
    "__version__",
    "cli",
    "main",
]
