"""Unit tests for file readers, writers and run records."""

import json
import logging

import pytest
import numpy as np
import pandas as pd
import yaml
from scipy import io as spio
from scipy import sparse

from atac_refinery.core.errors import AnomalyReport, DegenerateCellError, MatrixValidationError
from atac_refinery.core.lsi import Embedding
from atac_refinery.core.matrix import CellMetadata, MatrixKind
from atac_refinery.core.motifs import MotifDeviation, compute_variability
from atac_refinery.io import (
    get_logger,
    get_timestamped_log_path,
    load_annotation,
    load_cell_qc,
    load_gc_content,
    load_motif_presence,
    load_mtx,
    log_json,
    log_yaml,
    read_deviation,
    read_embedding,
    read_h5ad,
    read_table,
    write_anomaly_records,
    write_deviation,
    write_embedding,
    write_h5ad,
    write_table,
)


class TestMatrixH5ad:
    """Tests for CountMatrix h5ad round-trips."""

    def test_round_trip(self, two_block_counts, tmp_path):
        """Test that values, ids and kind survive."""
        metadata = CellMetadata(two_block_counts.cell_ids)
        metadata.add_column("batch", ["b1"] * 20)
        path = write_h5ad(two_block_counts, tmp_path / "peaks.h5ad", metadata)

        matrix, meta = read_h5ad(path)
        assert matrix.kind == MatrixKind.COUNTS
        assert matrix.feature_ids.equals(two_block_counts.feature_ids)
        assert matrix.cell_ids.equals(two_block_counts.cell_ids)
        assert (matrix.X != two_block_counts.X).nnz == 0
        assert matrix.fingerprint == two_block_counts.fingerprint
        assert meta["batch"].tolist() == ["b1"] * 20

    def test_kind_preserved(self, two_block_counts, tmp_path):
        """Test that non-count kinds are restored."""
        activity = two_block_counts.with_kind(MatrixKind.ACTIVITY)
        matrix, _ = read_h5ad(write_h5ad(activity, tmp_path / "act.h5ad"))
        assert matrix.kind == MatrixKind.ACTIVITY

    def test_wrong_entity(self, two_block_counts, tmp_path):
        """Test that an embedding file is not read as a matrix."""
        emb = Embedding(
            cell_ids=two_block_counts.cell_ids,
            values=np.zeros((20, 2)),
            singular_values=np.array([2.0, 1.0]),
            feature_ids=two_block_counts.feature_ids,
            feature_loadings=np.zeros((10, 2)),
            depth_correlation=np.zeros(2),
        )
        path = write_embedding(emb, tmp_path / "lsi.h5ad")
        with pytest.raises(MatrixValidationError, match="embedding"):
            read_h5ad(path)


class TestEmbeddingH5ad:
    """Tests for Embedding h5ad round-trips."""

    def test_round_trip(self, tmp_path):
        """Test that every embedding field survives."""
        rng = np.random.default_rng(0)
        emb = Embedding(
            cell_ids=pd.Index(["c1", "c2", "c3"]),
            values=rng.normal(size=(3, 2)),
            singular_values=np.array([3.0, 1.5]),
            feature_ids=pd.Index(["chr1-1-2", "chr1-5-9"]),
            feature_loadings=rng.normal(size=(2, 2)),
            depth_correlation=np.array([0.95, 0.1]),
            flagged=[0],
            source_fingerprint="abc",
        )
        loaded = read_embedding(write_embedding(emb, tmp_path / "lsi.h5ad"))
        np.testing.assert_allclose(loaded.values, emb.values)
        np.testing.assert_allclose(loaded.feature_loadings, emb.feature_loadings)
        np.testing.assert_allclose(loaded.singular_values, emb.singular_values)
        assert loaded.cell_ids.tolist() == ["c1", "c2", "c3"]
        assert loaded.feature_ids.tolist() == ["chr1-1-2", "chr1-5-9"]
        assert loaded.flagged == [0]
        assert loaded.source_fingerprint == "abc"


class TestDeviationH5ad:
    """Tests for MotifDeviation h5ad round-trips."""

    def test_round_trip(self, tmp_path):
        """Test deviations, z-scores and flags."""
        motifs, cells = ["CTCF", "GATA1"], ["c1", "c2", "c3"]
        z = pd.DataFrame([[1.0, -1.0, 0.5], [np.nan, 2.0, 0.0]], index=motifs, columns=cells)
        deviation = MotifDeviation(
            deviations=z * 0.1,
            z_scores=z,
            raw_deviations=z * 0.2,
            variability=compute_variability(z),
            skipped_motifs=["SP1"],
            fidelity_flags=pd.Series([False, True], index=motifs, name="fidelity_flag"),
            source_fingerprint="xyz",
        )
        loaded = read_deviation(write_deviation(deviation, tmp_path / "motifs.h5ad"))
        pd.testing.assert_frame_equal(loaded.z_scores, z)
        pd.testing.assert_frame_equal(loaded.deviations, z * 0.1)
        assert loaded.skipped_motifs == ["SP1"]
        assert loaded.fidelity_flags.tolist() == [False, True]
        assert loaded.variability["motif"].tolist() == motifs
        assert loaded.source_fingerprint == "xyz"


class TestPlainTextInputs:
    """Tests for Matrix Market and table loaders."""

    def test_load_mtx_with_bed_features(self, tmp_path):
        """Test that BED-like features become coordinate ids."""
        X = sparse.coo_matrix(np.array([[1, 0, 2], [0, 3, 0]]))
        spio.mmwrite(str(tmp_path / "matrix.mtx"), X)
        (tmp_path / "peaks.bed").write_text("chr1\t100\t200\nchr2\t300\t400\n")
        (tmp_path / "barcodes.tsv").write_text("AAA-1\nCCC-1\nGGG-1\n")

        matrix = load_mtx(
            tmp_path / "matrix.mtx", tmp_path / "peaks.bed", tmp_path / "barcodes.tsv"
        )
        assert matrix.shape == (2, 3)
        assert matrix.feature_ids.tolist() == ["chr1-100-200", "chr2-300-400"]
        assert matrix.cell_ids.tolist() == ["AAA-1", "CCC-1", "GGG-1"]
        assert matrix.total_counts().tolist() == [1, 3, 2]

    def test_load_annotation_bed_and_csv(self, tmp_path):
        """Test both annotation formats."""
        (tmp_path / "genes.bed").write_text("chr1\t100\t900\tGeneA\t0\t-\n")
        pd.DataFrame(
            {"chrom": ["chr1"], "start": [100], "end": [900], "strand": ["-"], "gene_name": ["GeneA"]}
        ).to_csv(tmp_path / "genes.csv", index=False)

        bed = load_annotation(tmp_path / "genes.bed", genome="hg38")
        csv = load_annotation(tmp_path / "genes.csv")
        assert bed[0] == csv[0]
        assert bed[0].strand == "-"
        assert bed.genome == "hg38"

    def test_load_motif_presence_long_and_wide(self, tmp_path):
        """Test long and wide presence tables."""
        pd.DataFrame(
            {"peak": ["p1", "p2", "p1"], "motif": ["CTCF", "CTCF", "GATA1"]}
        ).to_csv(tmp_path / "long.tsv", sep="\t", index=False)
        pd.DataFrame(
            {"peak": ["p1", "p2"], "CTCF": [1, 1], "GATA1": [1, 0]}
        ).to_csv(tmp_path / "wide.csv", index=False)

        expected = {"CTCF": ["p1", "p2"], "GATA1": ["p1"]}
        assert load_motif_presence(tmp_path / "long.tsv") == expected
        assert load_motif_presence(tmp_path / "wide.csv") == expected

    def test_load_gc_content(self, tmp_path):
        """Test GC table loading and column validation."""
        pd.DataFrame({"peak": ["p1", "p2"], "gc": [0.4, 0.6]}).to_csv(
            tmp_path / "gc.csv", index=False
        )
        gc = load_gc_content(tmp_path / "gc.csv")
        assert gc.to_dict() == {"p1": 0.4, "p2": 0.6}
        with pytest.raises(MatrixValidationError):
            load_gc_content(tmp_path / "gc.csv", column="gc_fraction")

    def test_load_cell_qc(self, tmp_path):
        """Test per-cell QC indexed by barcode."""
        pd.DataFrame({"barcode": ["AAA-1"], "tss_enrichment": [5.0]}).to_csv(
            tmp_path / "qc.csv", index=False
        )
        frame = load_cell_qc(tmp_path / "qc.csv")
        assert frame.index.tolist() == ["AAA-1"]
        assert frame.loc["AAA-1", "tss_enrichment"] == 5.0

    def test_table_round_trip(self, tmp_path):
        """Test CSV result tables."""
        frame = pd.DataFrame({"feature_id": ["a", "b"], "p_value": [0.01, 0.5]})
        path = write_table(frame, tmp_path / "out" / "markers.csv")
        pd.testing.assert_frame_equal(read_table(path), frame)


class TestRunRecords:
    """Tests for log files and structured records."""

    def test_timestamped_path(self, tmp_path):
        """Test that the timestamp goes before the suffix."""
        path = get_timestamped_log_path(tmp_path / "run.log")
        assert path.parent == tmp_path
        assert path.name.startswith("run_")
        assert path.suffix == ".log"

    def test_get_logger(self, tmp_path):
        """Test a plain file logger."""
        logger, path = get_logger("atac_refinery_test_io", tmp_path / "run.log", timestamped=False)
        logger.info("hello %s", "world")
        for handler in logger.handlers:
            handler.flush()
        assert path == tmp_path / "run.log"
        assert "INFO | hello world" in path.read_text()
        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

    def test_log_json_appends(self, tmp_path):
        """Test one JSON object per line."""
        path = tmp_path / "records.jsonl"
        log_json(path, {"stage": "qc", "n": 1})
        log_json(path, {"stage": "embed", "n": 2})
        lines = path.read_text().splitlines()
        assert [json.loads(line)["stage"] for line in lines] == ["qc", "embed"]

    def test_log_yaml_documents(self, tmp_path):
        """Test YAML documents separated by markers."""
        path = tmp_path / "summary.yaml"
        log_yaml(path, {"stage": "qc", "n_cells": 10})
        log_yaml(path, {"stage": "embed"})
        docs = [d for d in yaml.safe_load_all(path.read_text()) if d is not None]
        assert docs == [{"stage": "qc", "n_cells": 10}, {"stage": "embed"}]

    def test_log_yaml_to_logger(self, caplog):
        """Test YAML written through a logger."""
        logger = logging.getLogger("atac_refinery_test_yaml")
        with caplog.at_level(logging.INFO, logger="atac_refinery_test_yaml"):
            log_yaml("unused.yaml", {"stage": "qc"}, logger=logger)
        assert "stage: qc" in caplog.text

    def test_write_anomaly_records(self, tmp_path):
        """Test that every anomaly becomes a JSON line with its stage."""
        report = AnomalyReport(stage="normalize")
        report.add(DegenerateCellError(["c1", "c2"]))
        path = tmp_path / "anomalies.jsonl"
        assert write_anomaly_records(path, [report, AnomalyReport(stage="embed")]) == 1
        record = json.loads(path.read_text())
        assert record["stage"] == "normalize"
        assert record["error_code"] == "E002_DEGENERATE_CELL"
        assert record["context"]["cell_ids"] == ["c1", "c2"]
