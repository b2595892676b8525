"""Test suite for ATAC-Refinery.

Test organization:
- fixtures/: Synthetic count matrices, annotations and motif tables
- unit/: Unit tests for individual modules and the analysis session

Run tests with:
    pytest tests/
    pytest tests/unit/
    pytest tests/ -v --tb=short
"""
