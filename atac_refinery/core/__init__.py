"""Core computational modules for ATAC-Refinery.

This package contains the analysis engines:
- matrix: Sparse count matrices, cell metadata, annotation and QC
- lsi: TF-IDF normalization and truncated SVD embedding
- clustering: SNN graph construction and modularity clustering
- activity: Gene activity from peak aggregation
- motifs: Bias-corrected motif deviation scores
- differential: Covariate-adjusted logistic-regression tests
"""
