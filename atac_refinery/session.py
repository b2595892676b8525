"""Analysis session: named matrix registry, cached stages and run orchestration.

The session replaces any notion of a "current" assay. Every matrix lives
under an explicit handle name with a MatrixKind tag, and every stage reads
the handles it is given. Derived entities are cached together with the
fingerprints of their inputs and the parameters used, so changing an input
makes everything downstream of it stale.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .core.activity.engine import AggregationResult, FeatureAggregator
from .core.cancellation import CancellationToken
from .core.clustering.engine import ClusteringResult, GraphClusterer, default_cluster_key
from .core.clustering.graph import NeighborGraph
from .core.config import AnalysisConfig
from .core.differential.engine import DifferentialResult, DifferentialTester
from .core.errors import AnomalyReport, MatrixValidationError
from .core.lsi.embedding import Embedding, EmbeddingResult, LSIEmbedder
from .core.lsi.normalization import NormalizationResult, TfidfNormalizer
from .core.matrix.annotation import FeatureAnnotation
from .core.matrix.qc import CellQC, QCResult, select_top_features
from .core.matrix.store import CellMetadata, CountMatrix, MatrixKind
from .core.motifs.deviation import MotifDeviationResult, MotifDeviationScorer, MotifPresence
from .pipeline.executor import StageRunner
from .pipeline.logger import PipelineLogger


# Handle names used by the built-in stages
PEAKS = "peaks"
PEAKS_QC = "peaks_qc"
PEAKS_TFIDF = "peaks_tfidf"
GENE_ACTIVITY = "gene_activity"
GENE_ACTIVITY_NORM = "gene_activity_norm"
MOTIF_DEVIATIONS = "motif_deviations"


def _digest(payload: Any) -> str:
    return hashlib.sha1(json.dumps(payload, sort_keys=True, default=str).encode()).hexdigest()


def _plain(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    if isinstance(value, np.ndarray):
        return value.tolist()
    return str(value)


@dataclass
class Provenance:
    """Inputs and parameters a derived entity was computed from.

    Attributes
    ----------
    inputs : Dict[str, str]
        Input name to the token it had at computation time
    params : Dict[str, Any]
        Parameters of the computation
    """

    inputs: Dict[str, str] = field(default_factory=dict)
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def token(self) -> str:
        return _digest({"inputs": self.inputs, "params": self.params})


class AnalysisSession:
    """Owns the matrices, metadata and derived results of one analysis.

    Parameters
    ----------
    config : AnalysisConfig, optional
        Master configuration
    logger : logging.Logger, optional
        Logger instance

    Attributes
    ----------
    metadata : CellMetadata or None
        Working metadata, aligned with the most recently filtered cells
    annotation : FeatureAnnotation or None
        Gene intervals for activity scoring
    motif_presence : mapping or DataFrame or None
        Motif to peak membership
    gc_bias : pd.Series or None
        GC fraction per peak

    Example
    -------
    >>> session = AnalysisSession(AnalysisConfig.from_yaml("analysis.yaml"))
    >>> session.register("peaks", counts, metadata=vendor_qc)
    >>> session.run()
    >>> session.metadata["clusters_res0.8"].value_counts()
    >>> session.is_stale("lsi")
    False
    """

    def __init__(
        self,
        config: Optional[AnalysisConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or AnalysisConfig.default()
        self.logger = logger or logging.getLogger(__name__)

        self.metadata: Optional[CellMetadata] = None
        self.annotation: Optional[FeatureAnnotation] = None
        self.motif_presence: Optional[MotifPresence] = None
        self.gc_bias: Optional[pd.Series] = None

        self._matrices: Dict[str, CountMatrix] = {}
        self._source_metadata: Dict[str, CellMetadata] = {}
        self._results: Dict[str, Any] = {}
        self._provenance: Dict[str, Provenance] = {}
        self._input_tokens: Dict[str, str] = {}
        self._lineage: Dict[str, str] = {}
        self.reports: Dict[str, AnomalyReport] = {}
        self.cluster_keys: List[str] = []

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def register(
        self,
        name: str,
        matrix: CountMatrix,
        kind: Optional[Union[MatrixKind, str]] = None,
        metadata: Optional[Union[CellMetadata, pd.DataFrame]] = None,
    ) -> None:
        """Register a source matrix under ``name``.

        Re-registering a name replaces the matrix; results computed from
        the previous one become stale.

        Raises
        ------
        MatrixValidationError
            If ``kind`` is given and does not match the matrix, or the
            metadata does not cover the matrix's cells
        """
        if kind is not None and matrix.kind != MatrixKind(kind):
            raise MatrixValidationError(
                f"Handle '{name}' expects a {MatrixKind(kind).value} matrix, "
                f"got {matrix.kind.value}"
            )
        self._matrices[name] = matrix
        self._provenance.pop(name, None)
        self._lineage.pop(name, None)
        if metadata is not None:
            if isinstance(metadata, pd.DataFrame):
                metadata = CellMetadata(matrix.cell_ids, metadata)
            elif not metadata.aligned_with(matrix):
                metadata = metadata.subset(matrix.cell_ids)
            self._source_metadata[name] = metadata
            self.metadata = metadata
        elif self.metadata is None:
            self.metadata = CellMetadata(matrix.cell_ids)
        self.logger.info("Registered '%s': %s", name, matrix)

    def get(self, name: str, kind: Optional[Union[MatrixKind, str]] = None) -> CountMatrix:
        """Look up a matrix by handle, optionally checking its kind."""
        if name not in self._matrices:
            raise KeyError(f"No matrix registered as '{name}' (have {sorted(self._matrices)})")
        matrix = self._matrices[name]
        if kind is not None and matrix.kind != MatrixKind(kind):
            raise MatrixValidationError(
                f"Handle '{name}' holds a {matrix.kind.value} matrix, "
                f"expected {MatrixKind(kind).value}"
            )
        return matrix

    def __contains__(self, name: str) -> bool:
        return name in self._matrices

    @property
    def handles(self) -> Dict[str, MatrixKind]:
        return {name: matrix.kind for name, matrix in self._matrices.items()}

    def set_annotation(self, annotation: FeatureAnnotation) -> None:
        self.annotation = annotation
        self._input_tokens["annotation"] = _digest(
            annotation.to_dataframe().astype(str).values.tolist()
        )

    def set_motif_inputs(
        self,
        motif_presence: MotifPresence,
        gc_bias: Union[Sequence[float], pd.Series],
    ) -> None:
        """Register motif presence and per-peak GC content."""
        self.motif_presence = motif_presence
        if isinstance(motif_presence, pd.DataFrame):
            presence_token = _digest(
                [list(motif_presence.columns), motif_presence.index.tolist(),
                 motif_presence.astype(bool).to_numpy().tolist()]
            )
        else:
            presence_token = _digest({str(k): sorted(map(str, v)) for k, v in motif_presence.items()})
        self._input_tokens["motif_presence"] = presence_token
        if not isinstance(gc_bias, pd.Series):
            gc_bias = pd.Series(np.asarray(gc_bias, dtype=float))
        self.gc_bias = gc_bias
        self._input_tokens["gc_bias"] = hashlib.sha1(
            np.ascontiguousarray(gc_bias.to_numpy(dtype=float)).tobytes()
            + "\x1f".join(map(str, gc_bias.index)).encode()
        ).hexdigest()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def _token(self, name: str) -> Optional[str]:
        if name in self._provenance:
            if name in self._matrices:
                return self._matrices[name].fingerprint
            return self._provenance[name].token
        if name in self._matrices:
            return self._matrices[name].fingerprint
        return self._input_tokens.get(name)

    def _provenance_for(self, inputs: Sequence[str], params: Dict[str, Any]) -> Provenance:
        tokens = {}
        for name in inputs:
            token = self._token(name)
            if token is None:
                raise KeyError(f"Input '{name}' is not available")
            tokens[name] = token
        return Provenance(inputs=tokens, params=json.loads(json.dumps(params, default=str)))

    def _lookup(self, name: str, provenance: Provenance) -> Any:
        recorded = self._provenance.get(name)
        if recorded is None or name not in self._results:
            return None
        if recorded.inputs != provenance.inputs or recorded.params != provenance.params:
            return None
        self.logger.debug("Using cached '%s'", name)
        return self._results[name]

    def _store(
        self,
        name: str,
        value: Any,
        provenance: Provenance,
        report: Optional[AnomalyReport] = None,
    ) -> None:
        self._results[name] = value
        self._provenance[name] = provenance
        if report is not None:
            self.reports[name] = report

    def _store_matrix(self, name: str, matrix: CountMatrix, provenance: Provenance, source: str) -> None:
        self._matrices[name] = matrix
        self._provenance[name] = provenance
        self._lineage[name] = source

    def is_stale(self, name: str) -> bool:
        """True if any input of ``name`` changed since it was computed.

        Source matrices and inputs registered directly are never stale.

        Raises
        ------
        KeyError
            If nothing is known under ``name``
        """
        if name not in self._provenance:
            if name in self._matrices or name in self._input_tokens:
                return False
            raise KeyError(f"Unknown entity '{name}'")
        for input_name, token in self._provenance[name].inputs.items():
            if self._token(input_name) != token or self.is_stale(input_name):
                return True
        return False

    def result(self, name: str) -> Any:
        """Stage result stored under ``name``."""
        return self._results[name]

    @property
    def report(self) -> AnomalyReport:
        """All stage reports merged, in stage order."""
        merged = AnomalyReport(stage="session")
        for stage_report in self.reports.values():
            merged.merge(stage_report)
        return merged

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def counts_handle(self) -> str:
        return PEAKS_QC if PEAKS_QC in self._matrices else PEAKS

    def qc(self, source: str = PEAKS, target: str = PEAKS_QC) -> QCResult:
        """Filter cells of ``source`` and register the result as ``target``."""
        matrix = self.get(source, MatrixKind.COUNTS)
        provenance = self._provenance_for([source], asdict(self.config.qc))
        cached = self._lookup("qc", provenance)
        if cached is not None:
            return cached

        result = CellQC(self.config.qc, self.logger).filter(
            matrix, self._source_metadata.get(source)
        )
        self.metadata = result.metadata
        self._store("qc", result, provenance, result.report)
        self._store_matrix(target, result.matrix, provenance, source)
        return result

    def normalize(self, source: Optional[str] = None, target: str = PEAKS_TFIDF) -> NormalizationResult:
        """Select informative peaks of ``source`` and apply TF-IDF."""
        source = source or self.counts_handle()
        counts = self.get(source, MatrixKind.COUNTS)
        cfg = self.config
        params = {
            "min_cell_fraction": cfg.qc.min_cell_fraction,
            "n_top_features": cfg.qc.n_top_features,
            **asdict(cfg.normalization),
        }
        provenance = self._provenance_for([source], params)
        cached = self._lookup("normalize", provenance)
        if cached is not None:
            return cached

        selected = select_top_features(
            counts, cfg.qc.min_cell_fraction, cfg.qc.n_top_features, logger=self.logger
        )
        result = TfidfNormalizer(cfg.normalization, self.logger).normalize(selected)
        if result.dropped_cells and self.metadata is not None:
            self.metadata = self.metadata.subset(result.matrix.cell_ids)
        self._store("normalize", result, provenance, result.report)
        self._store_matrix(target, result.matrix, provenance, source)
        return result

    def embed(self, source: str = PEAKS_TFIDF, k: Optional[int] = None) -> EmbeddingResult:
        """LSI embedding of a normalized matrix.

        Depth correlations use the column totals of the counts the
        normalized matrix was derived from, when known.
        """
        matrix = self.get(source, MatrixKind.NORMALIZED)
        params = {**asdict(self.config.lsi), "k": k}
        provenance = self._provenance_for([source], params)
        cached = self._lookup("lsi", provenance)
        if cached is not None:
            return cached

        depth = None
        counts_name = self._lineage.get(source)
        if counts_name in self._matrices:
            depth = self._matrices[counts_name].total_counts().reindex(matrix.cell_ids)
        result = LSIEmbedder(self.config.lsi, self.logger).embed(matrix, k=k, depth=depth)
        self._store("lsi", result, provenance, result.report)
        return result

    @property
    def embedding(self) -> Embedding:
        if "lsi" not in self._results:
            raise ValueError("No embedding available; run embed() first")
        return self._results["lsi"].embedding

    def _aligned_metadata(self, cell_ids: pd.Index) -> CellMetadata:
        if self.metadata is None:
            self.metadata = CellMetadata(cell_ids)
        elif not self.metadata.cell_ids.equals(pd.Index(cell_ids)):
            self.metadata = self.metadata.subset(cell_ids)
        return self.metadata

    def graph(
        self, dims: Optional[Sequence[int]] = None, k_neighbors: Optional[int] = None
    ) -> NeighborGraph:
        """SNN graph over the current embedding (cached)."""
        clusterer = GraphClusterer(self.config.clustering, self.logger)
        dims = clusterer.resolve_dims(self.embedding, dims)
        params = {**asdict(self.config.clustering), "dims": dims, "k_neighbors": k_neighbors}
        provenance = self._provenance_for(["lsi"], params)
        cached = self._lookup("graph", provenance)
        if cached is not None:
            return cached
        graph = clusterer.build_graph(self.embedding, dims, k_neighbors)
        graph.params["dims"] = dims
        self._store("graph", graph, provenance)
        return graph

    def cluster(
        self,
        resolution: Optional[float] = None,
        dims: Optional[Sequence[int]] = None,
        k_neighbors: Optional[int] = None,
        cluster_key: Optional[str] = None,
    ) -> ClusteringResult:
        """Cluster the embedding and store labels in the metadata."""
        resolution = resolution if resolution is not None else self.config.clustering.resolution
        cluster_key = cluster_key or default_cluster_key(resolution)
        graph = self.graph(dims, k_neighbors)
        provenance = self._provenance_for(["graph"], {"resolution": resolution})
        cached = self._lookup(cluster_key, provenance)
        if cached is None:
            clusterer = GraphClusterer(self.config.clustering, self.logger)
            cached = clusterer.partition(graph, resolution, cluster_key)
            self._store(cluster_key, cached, provenance, cached.report)
        metadata = self._aligned_metadata(graph.cell_ids)
        metadata.add_column(cluster_key, cached.assignment.labels)
        if cluster_key not in self.cluster_keys:
            self.cluster_keys.append(cluster_key)
        return cached

    def cluster_resolutions(
        self, resolutions: Optional[Sequence[float]] = None, **kwargs
    ) -> Dict[float, ClusteringResult]:
        """Cluster at every resolution over one shared graph."""
        resolutions = resolutions if resolutions is not None else self.config.resolutions
        return {res: self.cluster(res, **kwargs) for res in resolutions}

    def gene_activity(
        self,
        annotation: Optional[FeatureAnnotation] = None,
        source: Optional[str] = None,
    ) -> AggregationResult:
        """Aggregate peak counts into per-gene activity.

        Registers ``gene_activity`` and, when configured, the
        log-normalized ``gene_activity_norm``.
        """
        if annotation is not None:
            self.set_annotation(annotation)
        if self.annotation is None:
            raise ValueError("No gene annotation registered")
        source = source or self.counts_handle()
        counts = self.get(source, MatrixKind.COUNTS)
        provenance = self._provenance_for([source, "annotation"], asdict(self.config.activity))
        cached = self._lookup("activity", provenance)
        if cached is not None:
            return cached

        result = FeatureAggregator(self.config.activity, self.logger).aggregate(
            counts, self.annotation
        )
        self._store("activity", result, provenance, result.report)
        self._store_matrix(GENE_ACTIVITY, result.matrix, provenance, source)
        if self.config.activity.log_normalize:
            normalized = TfidfNormalizer(self.config.normalization, self.logger).log_normalize(
                result.matrix
            )
            self._store_matrix(GENE_ACTIVITY_NORM, normalized, provenance, GENE_ACTIVITY)
        return result

    def motif_deviations(
        self,
        motif_presence: Optional[MotifPresence] = None,
        gc_bias: Optional[Union[Sequence[float], pd.Series]] = None,
        source: Optional[str] = None,
        token: Optional[CancellationToken] = None,
    ) -> MotifDeviationResult:
        """Score motif deviations and register them as ``motif_deviations``."""
        if motif_presence is not None or gc_bias is not None:
            if motif_presence is None or gc_bias is None:
                raise ValueError("motif_presence and gc_bias must be given together")
            self.set_motif_inputs(motif_presence, gc_bias)
        if self.motif_presence is None or self.gc_bias is None:
            raise ValueError("No motif presence / GC content registered")
        source = source or self.counts_handle()
        counts = self.get(source, MatrixKind.COUNTS)
        provenance = self._provenance_for(
            [source, "motif_presence", "gc_bias"], asdict(self.config.motifs)
        )
        cached = self._lookup("motifs", provenance)
        if cached is not None:
            return cached

        gc_bias = self.gc_bias
        if isinstance(gc_bias.index, pd.RangeIndex):
            gc_bias = gc_bias.to_numpy()
        result = MotifDeviationScorer(self.config.motifs, self.logger).score(
            counts, self.motif_presence, gc_bias, token=token
        )
        self._store("motifs", result, provenance, result.report)
        self._store_matrix(
            MOTIF_DEVIATIONS, result.deviation.as_matrix("deviations"), provenance, source
        )
        return result

    def _group_inputs(
        self, handle: Optional[str], cluster_key: Optional[str]
    ) -> Tuple[str, CountMatrix, pd.Series, Optional[pd.Series], str]:
        if cluster_key is None:
            if not self.cluster_keys:
                raise ValueError("No clustering available; run cluster() first")
            cluster_key = self.cluster_keys[-1]
        if self.metadata is None or cluster_key not in self.metadata:
            raise KeyError(f"Metadata has no column '{cluster_key}'")
        labels = self.metadata[cluster_key]
        handle = handle or self.counts_handle()
        matrix = self.get(handle)
        if not matrix.cell_ids.equals(labels.index):
            matrix = matrix.subset_cells(labels.index)

        covariate = None
        column = self.config.covariate
        if column:
            if column in self.metadata:
                covariate = pd.to_numeric(self.metadata[column], errors="coerce")
            elif column == "total_counts":
                counts = self.get(self.counts_handle())
                covariate = counts.total_counts().reindex(labels.index)
            else:
                raise KeyError(f"Covariate column '{column}' not found in metadata")
        return handle, matrix, labels, covariate, cluster_key

    def differential(
        self,
        target_group: Any,
        matrix: Optional[str] = None,
        cluster_key: Optional[str] = None,
        reference_group: Optional[Any] = None,
        token: Optional[CancellationToken] = None,
        **kwargs,
    ) -> DifferentialResult:
        """Test ``target_group`` of ``cluster_key`` against the rest.

        Parameters
        ----------
        target_group : Any
            Cluster label of interest
        matrix : str, optional
            Handle to test. Defaults to the filtered peak counts.
        cluster_key : str, optional
            Metadata column with group labels. Defaults to the last clustering.
        reference_group : Any, optional
            Compare against one group instead of all others
        token : CancellationToken, optional
            Checked between batches
        **kwargs
            ``min_log_fold_change`` / ``only_positive`` overrides
        """
        handle, data, labels, covariate, cluster_key = self._group_inputs(matrix, cluster_key)
        params = {
            **asdict(self.config.differential),
            "target_group": str(target_group),
            "reference_group": None if reference_group is None else str(reference_group),
            "covariate": self.config.covariate,
            "labels": _digest(labels.astype(str).tolist()),
            **kwargs,
        }
        name = f"differential:{handle}:{cluster_key}:{target_group}"
        provenance = self._provenance_for([handle], params)
        cached = self._lookup(name, provenance)
        if cached is not None:
            return cached
        result = DifferentialTester(self.config.differential, self.logger).test(
            data,
            labels,
            target_group,
            covariate=covariate,
            reference_group=reference_group,
            token=token,
            **kwargs,
        )
        self._store(name, result, provenance, result.report)
        return result

    def find_markers(
        self,
        matrix: Optional[str] = None,
        cluster_key: Optional[str] = None,
        token: Optional[CancellationToken] = None,
        **kwargs,
    ) -> pd.DataFrame:
        """Marker table for every group of ``cluster_key``."""
        handle, data, labels, covariate, cluster_key = self._group_inputs(matrix, cluster_key)
        params = {
            **asdict(self.config.differential),
            "covariate": self.config.covariate,
            "labels": _digest(labels.astype(str).tolist()),
            **kwargs,
        }
        name = f"markers:{handle}:{cluster_key}"
        provenance = self._provenance_for([handle], params)
        cached = self._lookup(name, provenance)
        if cached is not None:
            return cached
        combined, results = DifferentialTester(
            self.config.differential, self.logger
        ).find_all_markers(data, labels, covariate=covariate, token=token, **kwargs)
        report = AnomalyReport(stage="markers")
        for group_result in results.values():
            report.merge(group_result.report)
        self._store(name, combined, provenance, report)
        return combined

    # ------------------------------------------------------------------
    # Orchestration
    # ------------------------------------------------------------------

    def run(
        self,
        token: Optional[CancellationToken] = None,
        pipeline_logger: Optional[PipelineLogger] = None,
        markers: bool = False,
    ) -> Dict[str, Any]:
        """Run qc -> normalize -> embed -> cluster and the optional stages.

        Gene activity runs when an annotation is registered, motif
        deviations when presence and GC content are registered, and marker
        detection when ``markers`` is set.

        Returns
        -------
        Dict[str, Any]
            Stage id to stage result

        Raises
        ------
        CancelledError
            If ``token`` is cancelled before a stage or during a batch loop
        """
        runner = StageRunner(pipeline_logger)

        def _stage(func: Callable[[], Any]) -> Callable[..., Any]:
            return lambda stage_results: func()

        runner.register_stage("qc", _stage(self.qc), name="Cell QC")
        runner.register_stage("normalize", _stage(self.normalize), ["qc"], "TF-IDF")
        runner.register_stage("embed", _stage(self.embed), ["normalize"], "LSI")

        def _cluster() -> Dict[float, ClusteringResult]:
            results = {self.config.clustering.resolution: self.cluster()}
            for res in self.config.resolutions:
                results[res] = self.cluster(res)
            return results

        runner.register_stage("cluster", _stage(_cluster), ["embed"], "Clustering")
        if self.annotation is not None:
            runner.register_stage(
                "gene_activity", _stage(self.gene_activity), ["qc"], "Gene activity"
            )
        if self.motif_presence is not None and self.gc_bias is not None:
            runner.register_stage(
                "motif_deviations",
                _stage(lambda: self.motif_deviations(token=token)),
                ["qc"],
                "Motif deviations",
            )
        if markers:
            runner.register_stage(
                "markers",
                _stage(lambda: self.find_markers(token=token)),
                ["cluster"],
                "Marker peaks",
            )

        results = runner.run(token=token)
        report = self.report
        if pipeline_logger is not None:
            pipeline_logger.log_report(report)
        elif not report.is_clean:
            self.logger.warning("Anomalies: %s", report.summary())
        return results

    def summary(self) -> Dict[str, Any]:
        """Serializable overview of handles and stage results."""
        stages = {}
        for name, value in self._results.items():
            if hasattr(value, "to_dict") and not isinstance(value, pd.DataFrame):
                stages[name] = value.to_dict()
        overview = {
            "handles": {name: kind.value for name, kind in self.handles.items()},
            "stale": [name for name in self._provenance if self.is_stale(name)],
            "stages": stages,
            "anomalies": self.report.summary(),
        }
        return json.loads(json.dumps(overview, default=_plain))
