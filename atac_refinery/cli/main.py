"""Command-line interface for ATAC-Refinery.

Provides CLI commands for running the analysis stages on h5ad, Matrix
Market and CSV inputs.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Tuple

import click


def setup_logging(verbose: bool = False, debug: bool = False) -> logging.Logger:
    """Setup logging for CLI commands."""
    level = logging.DEBUG if debug else (logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    return logging.getLogger("atac_refinery")


def _load_config(config: Optional[str]):
    from atac_refinery.core.config import AnalysisConfig

    return AnalysisConfig.from_yaml(Path(config)) if config else AnalysisConfig.default()


def _load_input(input_path: str, qc_table: Optional[str] = None):
    """Read counts from an h5ad file or a Matrix Market directory.

    A directory must contain ``matrix.mtx``, ``barcodes.tsv`` and either
    ``peaks.bed`` or ``features.tsv`` (optionally gzipped).
    """
    from atac_refinery.core.matrix import CellMetadata
    from atac_refinery.io import load_cell_qc, load_mtx, read_h5ad

    path = Path(input_path)
    if path.is_dir():

        def _find(*names: str) -> Path:
            for name in names:
                for candidate in (path / name, path / f"{name}.gz"):
                    if candidate.exists():
                        return candidate
            raise click.BadParameter(f"{path} has none of {', '.join(names)}")

        matrix = load_mtx(
            _find("matrix.mtx"),
            _find("peaks.bed", "features.tsv"),
            _find("barcodes.tsv"),
        )
        metadata = CellMetadata(matrix.cell_ids)
    else:
        matrix, metadata = read_h5ad(path)

    if qc_table:
        frame = load_cell_qc(qc_table)
        merged = metadata.frame.join(frame.reindex(matrix.cell_ids), how="left")
        metadata = CellMetadata(matrix.cell_ids, merged)
    return matrix, metadata


def _prepare_output(output_path: str) -> Path:
    out_dir = Path(output_path)
    out_dir.mkdir(parents=True, exist_ok=True)
    return out_dir


def _permissive_qc(cfg) -> None:
    """Disable threshold filters for commands that only remove empty cells."""
    for name in (
        "min_peak_fragments",
        "max_peak_fragments",
        "min_fraction_in_peaks",
        "max_blacklist_ratio",
        "max_nucleosome_signal",
        "min_tss_enrichment",
    ):
        setattr(cfg.qc, name, None)


def _write_reports(session, out_dir: Path) -> None:
    from atac_refinery.io import write_anomaly_records

    n = write_anomaly_records(out_dir / "anomalies.jsonl", session.reports.values())
    if n:
        click.echo(f"Recorded {n} anomalies in {out_dir / 'anomalies.jsonl'}")


@click.group()
@click.version_option(version="1.0.0", prog_name="atac-refinery")
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose output")
@click.option("--debug", is_flag=True, help="Enable debug output")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, debug: bool) -> None:
    """ATAC-Refinery: Single-cell chromatin accessibility analysis.

    LSI embedding, graph clustering, gene activity, motif deviations and
    differential accessibility for peak-by-cell count matrices.

    Examples:

        # Embed cells
        atac-refinery lsi --input peaks.h5ad --out lsi/

        # Cluster cells at two resolutions
        atac-refinery cluster --input peaks.h5ad -r 0.4 -r 0.8 --out clusters/

        # Marker peaks per cluster
        atac-refinery markers --input clusters/clustered.h5ad --out markers/

        # Run the full analysis from a config
        atac-refinery run --input filtered_peak_bc_matrix/ --config analysis.yaml --out out/
    """
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["debug"] = debug
    ctx.obj["logger"] = setup_logging(verbose, debug)


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Peak counts (.h5ad or Matrix Market directory)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--n-components", "-k", type=int, default=None, help="Number of LSI components")
@click.pass_context
def lsi(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    n_components: Optional[int],
) -> None:
    """TF-IDF normalize and embed cells with truncated SVD."""
    logger = ctx.obj["logger"]
    from atac_refinery.io import write_embedding, write_table
    from atac_refinery.session import PEAKS, AnalysisSession

    cfg = _load_config(config)
    _permissive_qc(cfg)
    out_dir = _prepare_output(output_path)
    matrix, metadata = _load_input(input_path)

    session = AnalysisSession(cfg, logger)
    session.register(PEAKS, matrix, metadata=metadata)
    session.qc()
    session.normalize()
    result = session.embed(k=n_components)

    write_embedding(result.embedding, out_dir / "lsi.h5ad")
    write_table(result.embedding.component_table(), out_dir / "lsi_components.csv")
    _write_reports(session, out_dir)
    flagged = ", ".join(f"LSI_{i + 1}" for i in result.embedding.flagged) or "none"
    click.echo(f"LSI complete: {result.embedding.n_components} components (flagged: {flagged})")
    click.echo(f"Output saved to: {out_dir / 'lsi.h5ad'}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Peak counts (.h5ad or Matrix Market directory)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--resolution", "-r", "resolutions", type=float, multiple=True,
              help="Modularity resolution (repeatable)")
@click.option("--k-neighbors", type=int, default=None, help="Neighbors per cell")
@click.option("--dims", type=str, default=None,
              help="Comma-separated zero-based LSI components (default: unflagged)")
@click.pass_context
def cluster(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    resolutions: Tuple[float, ...],
    k_neighbors: Optional[int],
    dims: Optional[str],
) -> None:
    """Cluster cells on an SNN graph of the LSI embedding."""
    logger = ctx.obj["logger"]
    from atac_refinery.io import write_h5ad, write_table
    from atac_refinery.session import PEAKS, AnalysisSession

    cfg = _load_config(config)
    _permissive_qc(cfg)
    out_dir = _prepare_output(output_path)
    matrix, metadata = _load_input(input_path)

    session = AnalysisSession(cfg, logger)
    session.register(PEAKS, matrix, metadata=metadata)
    session.qc()
    session.normalize()
    session.embed()

    dim_list = [int(d) for d in dims.split(",")] if dims else None
    for res in resolutions or [cfg.clustering.resolution]:
        result = session.cluster(res, dims=dim_list, k_neighbors=k_neighbors)
        click.echo(
            f"Resolution {res}: {result.assignment.n_clusters} clusters "
            f"(modularity {result.assignment.modularity:.3f})"
        )

    clustered = session.get(session.counts_handle())
    write_h5ad(clustered, out_dir / "clustered.h5ad", session.metadata)
    write_table(
        session.metadata.frame[session.cluster_keys].reset_index(),
        out_dir / "clusters.csv",
    )
    _write_reports(session, out_dir)
    click.echo(f"Output saved to: {out_dir / 'clustered.h5ad'}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Peak counts (.h5ad or Matrix Market directory)")
@click.option("--annotation", "-a", required=True, type=click.Path(exists=True),
              help="Gene annotation (BED or CSV/TSV with chrom,start,end,strand,gene_name)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--upstream", type=int, default=None, help="Upstream extension in bases")
@click.pass_context
def activity(
    ctx: click.Context,
    input_path: str,
    annotation: str,
    output_path: str,
    config: Optional[str],
    upstream: Optional[int],
) -> None:
    """Aggregate peak counts into gene activity scores."""
    logger = ctx.obj["logger"]
    from atac_refinery.io import load_annotation, write_h5ad, write_table
    from atac_refinery.session import GENE_ACTIVITY, GENE_ACTIVITY_NORM, PEAKS, AnalysisSession

    cfg = _load_config(config)
    if upstream is not None:
        cfg.activity.upstream_extension = upstream
    out_dir = _prepare_output(output_path)
    matrix, metadata = _load_input(input_path)

    session = AnalysisSession(cfg, logger)
    session.register(PEAKS, matrix, metadata=metadata)
    result = session.gene_activity(load_annotation(annotation))

    write_h5ad(session.get(GENE_ACTIVITY), out_dir / "gene_activity.h5ad", session.metadata)
    if GENE_ACTIVITY_NORM in session:
        write_h5ad(
            session.get(GENE_ACTIVITY_NORM), out_dir / "gene_activity_norm.h5ad", session.metadata
        )
    write_table(result.windows, out_dir / "gene_windows.csv")
    _write_reports(session, out_dir)
    click.echo(
        f"Gene activity complete: {result.matrix.n_features} genes "
        f"({len(result.empty_genes)} without peaks)"
    )


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Peak counts (.h5ad or Matrix Market directory)")
@click.option("--motifs", "-m", "motif_path", required=True, type=click.Path(exists=True),
              help="Motif presence table (long peak,motif or wide binary)")
@click.option("--gc", "gc_path", required=True, type=click.Path(exists=True),
              help="Per-peak GC content table (peak,gc)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--n-background", type=int, default=None, help="Background peak sets")
@click.option("--n-jobs", type=int, default=None, help="Parallel jobs")
@click.pass_context
def motifs(
    ctx: click.Context,
    input_path: str,
    motif_path: str,
    gc_path: str,
    output_path: str,
    config: Optional[str],
    n_background: Optional[int],
    n_jobs: Optional[int],
) -> None:
    """Compute bias-corrected motif deviation scores."""
    logger = ctx.obj["logger"]
    from atac_refinery.io import (
        load_gc_content,
        load_motif_presence,
        write_deviation,
        write_table,
    )
    from atac_refinery.session import PEAKS, AnalysisSession

    cfg = _load_config(config)
    if n_background is not None:
        cfg.motifs.n_background_sets = n_background
    if n_jobs is not None:
        cfg.motifs.n_jobs = n_jobs
    out_dir = _prepare_output(output_path)
    matrix, metadata = _load_input(input_path)

    session = AnalysisSession(cfg, logger)
    session.register(PEAKS, matrix, metadata=metadata)
    result = session.motif_deviations(load_motif_presence(motif_path), load_gc_content(gc_path))

    write_deviation(result.deviation, out_dir / "motif_deviations.h5ad")
    write_table(result.deviation.variability, out_dir / "motif_variability.csv")
    _write_reports(session, out_dir)
    click.echo(
        f"Motif deviations complete: {len(result.deviation.motif_ids)} motifs "
        f"({len(result.deviation.skipped_motifs)} skipped)"
    )


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Clustered matrix (.h5ad with cluster labels in obs)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--cluster-key", required=True, help="Cluster column name")
@click.option("--group", "groups", multiple=True, help="Group to test (repeatable; default all)")
@click.option("--reference", default=None, help="Reference group (default: all other cells)")
@click.option("--only-positive", is_flag=True, help="Keep only features higher in the group")
@click.option("--correction", type=click.Choice(["bonferroni", "fdr_bh", "holm", "none"]),
              default=None, help="Multiple-testing correction")
@click.pass_context
def markers(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    cluster_key: str,
    groups: Tuple[str, ...],
    reference: Optional[str],
    only_positive: bool,
    correction: Optional[str],
) -> None:
    """Find differentially accessible features per group."""
    logger = ctx.obj["logger"]
    import pandas as pd

    from atac_refinery.io import write_table
    from atac_refinery.session import PEAKS, AnalysisSession

    cfg = _load_config(config)
    if correction:
        cfg.differential.correction = correction
    if only_positive:
        cfg.differential.only_positive = True
    out_dir = _prepare_output(output_path)
    matrix, metadata = _load_input(input_path)
    if cluster_key not in metadata:
        raise click.BadParameter(f"Column '{cluster_key}' not found", param_hint="--cluster-key")

    session = AnalysisSession(cfg, logger)
    session.register(PEAKS, matrix, metadata=metadata)
    if cfg.covariate and cfg.covariate not in metadata and cfg.covariate != "total_counts":
        logger.warning("Covariate '%s' not found; testing without it", cfg.covariate)
        cfg.covariate = ""

    if groups or reference is not None:
        targets = list(groups) or sorted(
            str(g) for g in metadata[cluster_key].dropna().unique() if str(g) != str(reference)
        )
        tables = []
        for group in targets:
            result = session.differential(
                group, cluster_key=cluster_key, reference_group=reference
            )
            frame = result.table.copy()
            frame.insert(0, "group", group)
            tables.append(frame)
        table = pd.concat(tables, ignore_index=True)
    else:
        table = session.find_markers(cluster_key=cluster_key)

    write_table(table, out_dir / "markers.csv")
    _write_reports(session, out_dir)
    n_sig = int((table["adjusted_p_value"] < 0.05).sum())
    click.echo(f"Markers complete: {len(table)} tests, {n_sig} significant (adj. p < 0.05)")
    click.echo(f"Output saved to: {out_dir / 'markers.csv'}")


@cli.command()
@click.option("--input", "-i", "input_path", required=True, type=click.Path(exists=True),
              help="Peak counts (.h5ad or Matrix Market directory)")
@click.option("--out", "-o", "output_path", required=True, type=click.Path(),
              help="Output directory")
@click.option("--config", "-c", type=click.Path(exists=True),
              help="Analysis configuration file (YAML)")
@click.option("--qc-table", type=click.Path(exists=True),
              help="Per-cell QC table (e.g. singlecell.csv)")
@click.option("--annotation", "-a", type=click.Path(exists=True),
              help="Gene annotation for activity scores")
@click.option("--motifs", "-m", "motif_path", type=click.Path(exists=True),
              help="Motif presence table")
@click.option("--gc", "gc_path", type=click.Path(exists=True),
              help="Per-peak GC content table")
@click.option("--markers/--no-markers", "find_markers", default=True,
              help="Find marker peaks for the default clustering")
@click.option("--log-dir", type=click.Path(), default=None, help="Directory for run logs")
@click.pass_context
def run(
    ctx: click.Context,
    input_path: str,
    output_path: str,
    config: Optional[str],
    qc_table: Optional[str],
    annotation: Optional[str],
    motif_path: Optional[str],
    gc_path: Optional[str],
    find_markers: bool,
    log_dir: Optional[str],
) -> None:
    """Run QC, LSI, clustering and the optional scoring stages."""
    from atac_refinery.core.errors import AnalysisError
    from atac_refinery.io import (
        load_annotation,
        load_gc_content,
        load_motif_presence,
        log_yaml,
        write_deviation,
        write_embedding,
        write_h5ad,
        write_table,
    )
    from atac_refinery.pipeline import PipelineLogger
    from atac_refinery.session import (
        GENE_ACTIVITY,
        PEAKS,
        AnalysisSession,
    )

    if bool(motif_path) != bool(gc_path):
        raise click.UsageError("--motifs and --gc must be given together")

    cfg = _load_config(config)
    out_dir = _prepare_output(output_path)
    level = "DEBUG" if ctx.obj["debug"] else "INFO"
    plog = PipelineLogger(log_dir=log_dir or out_dir / "logs", log_level=level)
    plog.setup(console=ctx.obj["verbose"] or ctx.obj["debug"])

    matrix, metadata = _load_input(input_path, qc_table)
    session = AnalysisSession(cfg, plog.logger)
    session.register(PEAKS, matrix, metadata=metadata)
    if annotation:
        session.set_annotation(load_annotation(annotation))
    if motif_path:
        session.set_motif_inputs(load_motif_presence(motif_path), load_gc_content(gc_path))

    try:
        results = session.run(pipeline_logger=plog, markers=find_markers)
    except AnalysisError as e:
        click.echo(f"Analysis failed: {e}", err=True)
        sys.exit(1)

    write_h5ad(session.get(session.counts_handle()), out_dir / "peaks.h5ad", session.metadata)
    write_embedding(session.embedding, out_dir / "lsi.h5ad")
    write_table(session.metadata.frame.reset_index(), out_dir / "cells.csv")
    if "gene_activity" in results:
        write_h5ad(session.get(GENE_ACTIVITY), out_dir / "gene_activity.h5ad", session.metadata)
    if "motif_deviations" in results:
        write_deviation(results["motif_deviations"].deviation, out_dir / "motif_deviations.h5ad")
    if "markers" in results:
        write_table(results["markers"], out_dir / "markers.csv")
    _write_reports(session, out_dir)
    log_yaml(out_dir / "summary.yaml", session.summary())
    click.echo(f"Analysis complete: {len(results)} stages, outputs in {out_dir}")


def main() -> None:
    """Entry point for CLI."""
    cli(obj={})


if __name__ == "__main__":
    main()
