"""Dimensionality reduction for accessibility matrices.

Provides TF-IDF normalization of peak counts and truncated SVD (LSI)
embedding of the normalized matrix.

Example Usage
-------------
>>> from atac_refinery.core.lsi import TfidfNormalizer, LSIEmbedder
>>> normalized = TfidfNormalizer().normalize(peaks).matrix
>>> result = LSIEmbedder().embed(normalized, k=30, depth=peaks.total_counts())
>>> result.embedding.default_dims()
"""

__version__ = "1.0.0"

# Configuration classes
from .config import (
    LSIConfig,
    NormalizationConfig,
)

# Normalization
from .normalization import (
    NormalizationResult,
    TfidfNormalizer,
    inverse_document_frequency,
)

# Embedding
from .embedding import (
    Embedding,
    EmbeddingResult,
    LSIEmbedder,
    SVD_SOLVERS,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "LSIConfig",
    "NormalizationConfig",
    # Normalization
    "NormalizationResult",
    "TfidfNormalizer",
    "inverse_document_frequency",
    # Embedding
    "Embedding",
    "EmbeddingResult",
    "LSIEmbedder",
    "SVD_SOLVERS",
]
