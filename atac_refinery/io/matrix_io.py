"""Readers and writers for matrices, embeddings, deviations and tables.

AnnData files store cells as observations, so matrices are transposed on
write and read. Entity metadata is kept as a JSON string in ``uns`` so
that ids and small arrays round-trip exactly.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import anndata as ad
import numpy as np
import pandas as pd
from scipy import io as spio
from scipy import sparse

from ..core.errors import MatrixValidationError
from ..core.lsi.embedding import Embedding
from ..core.matrix.annotation import FeatureAnnotation
from ..core.matrix.store import CellMetadata, CountMatrix, MatrixKind
from ..core.motifs.deviation import MotifDeviation

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

META_KEY = "atac_refinery"


def _read_lines(path: PathLike) -> List[str]:
    with open(path) as handle:
        return [line.rstrip("\n") for line in handle if line.strip()]


def _meta(adata: ad.AnnData, entity: str) -> Dict:
    raw = adata.uns.get(META_KEY)
    if raw is None:
        return {"entity": entity}
    meta = json.loads(str(raw))
    if meta.get("entity", entity) != entity:
        raise MatrixValidationError(
            f"File holds a '{meta.get('entity')}', expected '{entity}'"
        )
    return meta


# ----------------------------------------------------------------------
# CountMatrix
# ----------------------------------------------------------------------


def write_h5ad(
    matrix: CountMatrix,
    path: PathLike,
    metadata: Optional[CellMetadata] = None,
) -> Path:
    """Write a matrix (and optional cell metadata) to an h5ad file."""
    obs = (
        metadata.subset(matrix.cell_ids).frame
        if metadata is not None
        else pd.DataFrame(index=matrix.cell_ids)
    )
    obs.index = obs.index.astype(str)
    adata = ad.AnnData(
        X=sparse.csr_matrix(matrix.X.T),
        obs=obs,
        var=pd.DataFrame(index=pd.Index(matrix.feature_ids, dtype=str)),
    )
    adata.uns[META_KEY] = json.dumps({"entity": "matrix", "kind": matrix.kind.value})
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path)
    logger.info("Wrote %s -> %s", matrix, path)
    return path


def read_h5ad(path: PathLike) -> Tuple[CountMatrix, CellMetadata]:
    """Read a matrix and its cell metadata from an h5ad file.

    Files written by other tools are read as COUNTS with cells as rows.
    """
    adata = ad.read_h5ad(path)
    meta = _meta(adata, "matrix")
    kind = MatrixKind(meta.get("kind", MatrixKind.COUNTS.value))
    X = adata.X
    data = sparse.csr_matrix(X).T if sparse.issparse(X) else sparse.csr_matrix(np.asarray(X)).T
    cell_ids = adata.obs_names.astype(str)
    matrix = CountMatrix(data, adata.var_names.astype(str), cell_ids, kind)
    obs = adata.obs.copy()
    obs.index = cell_ids
    return matrix, CellMetadata(cell_ids, obs)


# ----------------------------------------------------------------------
# Embedding
# ----------------------------------------------------------------------


def write_embedding(embedding: Embedding, path: PathLike) -> Path:
    """Write an embedding to h5ad (cells x components)."""
    adata = ad.AnnData(
        X=np.asarray(embedding.values),
        obs=pd.DataFrame(index=pd.Index(embedding.cell_ids, dtype=str)),
        var=pd.DataFrame(index=pd.Index(embedding.component_names, dtype=str)),
    )
    adata.uns["feature_loadings"] = np.asarray(embedding.feature_loadings)
    adata.uns[META_KEY] = json.dumps(
        {
            "entity": "embedding",
            "singular_values": [float(s) for s in embedding.singular_values],
            "depth_correlation": [float(r) for r in embedding.depth_correlation],
            "flagged": [int(i) for i in embedding.flagged],
            "feature_ids": [str(f) for f in embedding.feature_ids],
            "source_fingerprint": embedding.source_fingerprint,
        }
    )
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path)
    return path


def read_embedding(path: PathLike) -> Embedding:
    """Read an embedding written by :func:`write_embedding`."""
    adata = ad.read_h5ad(path)
    meta = _meta(adata, "embedding")
    return Embedding(
        cell_ids=pd.Index(adata.obs_names.astype(str)),
        values=np.asarray(adata.X, dtype=float),
        singular_values=np.asarray(meta["singular_values"], dtype=float),
        feature_ids=pd.Index(meta["feature_ids"], dtype=object),
        feature_loadings=np.asarray(adata.uns["feature_loadings"], dtype=float),
        depth_correlation=np.asarray(meta["depth_correlation"], dtype=float),
        flagged=list(meta["flagged"]),
        source_fingerprint=meta.get("source_fingerprint", ""),
    )


# ----------------------------------------------------------------------
# MotifDeviation
# ----------------------------------------------------------------------


def write_deviation(deviation: MotifDeviation, path: PathLike) -> Path:
    """Write motif deviations to h5ad (cells x motifs, z and raw as layers)."""
    var = deviation.variability.set_index("motif").copy()
    var.index = var.index.astype(str)
    var["fidelity_flag"] = deviation.fidelity_flags.reindex(var.index).fillna(False).astype(bool)
    adata = ad.AnnData(
        X=deviation.deviations.T.to_numpy(dtype=float),
        obs=pd.DataFrame(index=pd.Index(deviation.cell_ids, dtype=str)),
        var=var,
        layers={
            "z": deviation.z_scores.T.to_numpy(dtype=float),
            "raw": deviation.raw_deviations.T.to_numpy(dtype=float),
        },
    )
    adata.uns[META_KEY] = json.dumps(
        {
            "entity": "motif_deviation",
            "skipped_motifs": list(deviation.skipped_motifs),
            "source_fingerprint": deviation.source_fingerprint,
        }
    )
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    adata.write_h5ad(path)
    return path


def read_deviation(path: PathLike) -> MotifDeviation:
    """Read motif deviations written by :func:`write_deviation`."""
    adata = ad.read_h5ad(path)
    meta = _meta(adata, "motif_deviation")
    motifs = pd.Index(adata.var_names.astype(str)).rename(None)
    cells = pd.Index(adata.obs_names.astype(str)).rename(None)

    def frame(values) -> pd.DataFrame:
        return pd.DataFrame(np.asarray(values, dtype=float).T, index=motifs, columns=cells)

    var = adata.var.copy()
    variability = var.drop(columns=["fidelity_flag"]).reset_index(names="motif")
    return MotifDeviation(
        deviations=frame(adata.X),
        z_scores=frame(adata.layers["z"]),
        raw_deviations=frame(adata.layers["raw"]),
        variability=variability,
        skipped_motifs=list(meta.get("skipped_motifs", [])),
        fidelity_flags=var["fidelity_flag"].astype(bool).rename("fidelity_flag").rename_axis(None),
        source_fingerprint=meta.get("source_fingerprint", ""),
    )


# ----------------------------------------------------------------------
# Plain-text inputs
# ----------------------------------------------------------------------


def load_mtx(
    matrix_path: PathLike,
    features_path: PathLike,
    barcodes_path: PathLike,
) -> CountMatrix:
    """Load a Matrix Market count matrix (features x cells).

    The features file is either one id per line or a BED-like file whose
    first three columns are joined as ``chrom-start-end``.
    """
    data = spio.mmread(str(matrix_path))
    features = []
    for line in _read_lines(features_path):
        fields = line.split("\t")
        if len(fields) >= 3 and fields[1].isdigit() and fields[2].isdigit():
            features.append(f"{fields[0]}-{fields[1]}-{fields[2]}")
        else:
            features.append(fields[0])
    barcodes = [line.split("\t")[0] for line in _read_lines(barcodes_path)]
    matrix = CountMatrix(sparse.csr_matrix(data), features, barcodes)
    logger.info("Loaded %s from %s", matrix, matrix_path)
    return matrix


def _read_delimited(path: PathLike, **kwargs) -> pd.DataFrame:
    suffix = "".join(Path(path).suffixes).lower()
    sep = "," if suffix.endswith(".csv") or suffix.endswith(".csv.gz") else "\t"
    return pd.read_csv(path, sep=sep, **kwargs)


def load_annotation(path: PathLike, genome: str = "", gene_col: str = "gene_name") -> FeatureAnnotation:
    """Load gene intervals from a CSV/TSV table or a headerless BED6 file."""
    suffix = "".join(Path(path).suffixes).lower()
    if ".bed" in suffix:
        frame = pd.read_csv(path, sep="\t", header=None, comment="#")
        names = ["chrom", "start", "end", gene_col, "score", "strand"]
        frame.columns = names[: frame.shape[1]] + [
            f"col{i}" for i in range(len(names), frame.shape[1])
        ]
    else:
        frame = _read_delimited(path)
    return FeatureAnnotation.from_dataframe(frame, genome=genome, gene_col=gene_col)


def load_motif_presence(path: PathLike) -> Dict[str, List[str]]:
    """Load motif presence as a mapping motif -> peak ids.

    Accepts a long table with ``peak`` and ``motif`` columns, or a wide
    binary table with peaks as the first column and one column per motif.
    """
    frame = _read_delimited(path)
    if {"peak", "motif"}.issubset(frame.columns):
        presence: Dict[str, List[str]] = {}
        for motif, group in frame.groupby("motif", sort=False):
            presence[str(motif)] = group["peak"].astype(str).tolist()
        return presence
    frame = frame.set_index(frame.columns[0])
    frame.index = frame.index.astype(str)
    return {
        str(motif): frame.index[frame[motif].astype(bool).to_numpy()].tolist()
        for motif in frame.columns
    }


def load_gc_content(path: PathLike, column: str = "gc") -> pd.Series:
    """Load GC fraction per peak from a table with ``peak`` and ``gc`` columns."""
    frame = _read_delimited(path)
    if "peak" not in frame.columns or column not in frame.columns:
        raise MatrixValidationError(
            f"GC table needs 'peak' and '{column}' columns",
            {"available": list(frame.columns)},
        )
    series = pd.Series(frame[column].to_numpy(dtype=float), index=frame["peak"].astype(str))
    series.name = column
    return series


def load_cell_qc(path: PathLike, index_col: Optional[str] = None) -> pd.DataFrame:
    """Load per-cell QC fields indexed by barcode (first column by default)."""
    frame = _read_delimited(path)
    index_col = index_col or frame.columns[0]
    frame = frame.set_index(index_col)
    frame.index = frame.index.astype(str)
    return frame


def write_table(frame: pd.DataFrame, path: PathLike, index: bool = False) -> Path:
    """Write a result table to CSV."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index=index)
    logger.info("Saved %d rows to %s", len(frame), path)
    return path


def read_table(path: PathLike, index_col: Optional[Union[int, str]] = None) -> pd.DataFrame:
    """Read a CSV result table."""
    return pd.read_csv(path, index_col=index_col)
