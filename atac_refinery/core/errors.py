"""
Error taxonomy and anomaly reporting for accessibility analysis stages.

Fatal errors are raised at the component boundary. Per-cell and per-feature
anomalies are collected into an AnomalyReport and the stage continues over
the remaining valid items.

Error Codes:
    E001_MATRIX_VALIDATION: Malformed matrix dimensions, ids or values
    E002_DEGENERATE_CELL: Cell with zero total counts
    E003_RANK_DEFICIENCY: Requested embedding rank exceeds matrix rank
    E004_DISCONNECTED_GRAPH: Neighbor graph has several components (non-fatal)
    E005_ZERO_VARIANCE_FEATURE: Feature cannot be tested (non-fatal)
    E006_INSUFFICIENT_BACKGROUND: Too few matched background peaks
    E007_CANCELLED: Cooperative cancellation observed
    E008_MODEL_FIT: Logistic model for a feature could not be fit (non-fatal)
    W001_EMPTY_OVERLAP: Gene window without overlapping peaks (non-fatal)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type, Union


class AnalysisError(Exception):
    """Base class for analysis errors with structured diagnostics.

    Parameters
    ----------
    message : str
        Human-readable error description
    context : Dict[str, Any], optional
        Additional context for debugging and reporting
    """

    error_code: str = "E000_UNKNOWN"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context or {})

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "type": type(self).__name__,
            "message": self.message,
            "context": self.context,
        }


class MatrixValidationError(AnalysisError):
    """Construction-time invariant violation (shape, ids, values)."""

    error_code = "E001_MATRIX_VALIDATION"


class DegenerateCellError(AnalysisError):
    """One or more cells have zero total counts."""

    error_code = "E002_DEGENERATE_CELL"

    def __init__(
        self,
        cell_ids: Sequence[str],
        message: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.cell_ids = [str(c) for c in cell_ids]
        preview = ", ".join(self.cell_ids[:5])
        if len(self.cell_ids) > 5:
            preview += ", ..."
        message = message or (
            f"{len(self.cell_ids)} cell(s) with zero total counts: {preview}"
        )
        ctx = {"cell_ids": self.cell_ids}
        ctx.update(context or {})
        super().__init__(message, ctx)


class RankDeficiencyError(AnalysisError):
    """Requested embedding dimension exceeds the matrix's (effective) rank."""

    error_code = "E003_RANK_DEFICIENCY"


class DisconnectedGraphError(AnalysisError):
    """Neighbor graph is not connected. Recorded, never raised by clustering."""

    error_code = "E004_DISCONNECTED_GRAPH"

    def __init__(
        self,
        n_components: int,
        isolated_cells: Sequence[str] = (),
        message: Optional[str] = None,
    ):
        self.n_components = int(n_components)
        self.isolated_cells = [str(c) for c in isolated_cells]
        message = message or (
            f"Neighbor graph has {self.n_components} connected components "
            f"({len(self.isolated_cells)} isolated cells)"
        )
        super().__init__(
            message,
            {
                "n_components": self.n_components,
                "isolated_cells": self.isolated_cells,
            },
        )


class ZeroVarianceFeatureError(AnalysisError):
    """Feature skipped by the differential tester."""

    error_code = "E005_ZERO_VARIANCE_FEATURE"

    def __init__(self, feature_id: str, reason: str = "zero variance"):
        self.feature_id = str(feature_id)
        self.reason = reason
        super().__init__(
            f"Feature '{self.feature_id}' skipped: {reason}",
            {"feature_id": self.feature_id, "reason": reason},
        )


class InsufficientBackgroundError(AnalysisError):
    """Not enough GC/abundance matched peaks to draw background sets from."""

    error_code = "E006_INSUFFICIENT_BACKGROUND"


class CancelledError(AnalysisError):
    """Cancellation was requested and observed at a stage boundary."""

    error_code = "E007_CANCELLED"


class ModelFitError(AnalysisError):
    """Feature with non-zero variance whose logistic model could not be fit."""

    error_code = "E008_MODEL_FIT"

    def __init__(self, feature_id: str, reason: str):
        self.feature_id = str(feature_id)
        self.reason = reason
        super().__init__(
            f"Feature '{self.feature_id}' skipped: {reason}",
            {"feature_id": self.feature_id, "reason": reason},
        )


class EmptyOverlapWarning(UserWarning):
    """Gene window without any overlapping peak; the gene keeps a zero row."""

    error_code = "W001_EMPTY_OVERLAP"

    def __init__(self, gene: str):
        super().__init__(f"No peaks overlap the window of gene '{gene}'")
        self.gene = str(gene)
        self.message = str(self)
        self.context = {"gene": self.gene}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "error_code": self.error_code,
            "type": type(self).__name__,
            "message": self.message,
            "context": self.context,
        }


Anomaly = Union[AnalysisError, EmptyOverlapWarning]


@dataclass
class AnomalyReport:
    """Side-channel report of non-fatal anomalies produced by a stage.

    Attributes
    ----------
    stage : str
        Name of the stage that produced the report
    items : List[Anomaly]
        Recorded anomaly instances, in the order they were observed
    """

    stage: str = ""
    items: List[Anomaly] = field(default_factory=list)

    def add(self, anomaly: Anomaly) -> None:
        """Record a single anomaly."""
        self.items.append(anomaly)

    def extend(self, anomalies: Iterable[Anomaly]) -> None:
        """Record several anomalies."""
        self.items.extend(anomalies)

    def merge(self, other: "AnomalyReport") -> None:
        """Append every item of another report."""
        self.items.extend(other.items)

    def by_type(self, kind: Type) -> List[Anomaly]:
        """Return items that are instances of ``kind``."""
        return [item for item in self.items if isinstance(item, kind)]

    def count(self, kind: Optional[Type] = None) -> int:
        """Number of items, optionally restricted to one type."""
        if kind is None:
            return len(self.items)
        return len(self.by_type(kind))

    @property
    def is_clean(self) -> bool:
        return not self.items

    def to_records(self) -> List[Dict[str, Any]]:
        """Convert to list of dictionaries (one per anomaly)."""
        records = []
        for item in self.items:
            record = item.to_dict()
            record["stage"] = self.stage
            records.append(record)
        return records

    def summary(self) -> Dict[str, int]:
        """Count anomalies per type name."""
        counts: Dict[str, int] = {}
        for item in self.items:
            name = type(item).__name__
            counts[name] = counts.get(name, 0) + 1
        return counts
