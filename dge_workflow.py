"""
Two-stage differential expression workflow.

Stage one ("prepare"): load counts and metadata, attach annotation, build the
expression container, compute TMM factors, run QC (MDS, PCA) and save the
container.

Stage two ("analyze"): load the container, filter low-expressed genes, run
voom, fit the weighted linear model, test the contrast, apply BH, classify
significant genes, run GO over-representation analysis and write the results.

Usage:
    dge-workflow prepare --config config/pipeline.yaml
    dge-workflow analyze --config config/pipeline.yaml
    dge-workflow demo --output results/demo
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence
import argparse
import logging
import sys
import pandas as pd

from advanced_qc import AdvancedQC, EmbeddingResult
from de_analysis import Contrast, DEAnalysisEngine, DEResult, LinearModelFitter, SignificanceTester
from demo_data import write_demo_inputs
from export_engine import ExportEngine, StageOneExport, StageTwoExport
from expression_container import RESERVED_SAMPLE_COLUMNS, ExpressionContainer
from expression_filter import LowExpressionFilter, filter_summary
from gene_annotation import GeneAnnotationJoiner, read_annotation_table
from normalization import TMMNormalizer
from pathway_enrichment import RESULT_COLUMNS, EnrichmentAnalyzer, read_go_mapping
from pipeline_config import ModelConfig, PipelineConfig, apply_overrides, load_config
from pipeline_errors import ConfigurationError, PipelineError, RunSummary
from qc_plots import (
    create_density_comparison,
    create_enrichment_dotplot,
    create_library_size_barplot,
    create_mds_plot,
    create_voom_trend_plot,
    create_volcano_plot,
)
from rnaseq_parser import CountMatrixLoader
from session_manager import SessionManager
from voom_transform import VarianceModeler, VoomResult

logger = logging.getLogger(__name__)


@dataclass
class StageOneResult:
    """Result from run_stage_one()."""

    container: ExpressionContainer
    mds: EmbeddingResult
    pca: EmbeddingResult
    outliers: List[str]
    covariate_effects: Dict[str, Dict[str, float]]  # covariate → dimension → fraction
    paths: Dict[str, Path] = field(default_factory=dict)


@dataclass
class StageTwoResult:
    """Result from run_stage_two()."""

    filtered: ExpressionContainer
    voom: VoomResult
    de_result: DEResult
    enrichment_all: pd.DataFrame
    enrichment_simplified: pd.DataFrame
    summary: RunSummary
    paths: Dict[str, Path] = field(default_factory=dict)


def resolve_contrast(model: ModelConfig, levels: Sequence[str]) -> Contrast:
    """
    Contrast from the model settings.

    Without an explicit contrast, two groups are compared as the non-reference
    group minus `reference_group`, or first minus second level (sorted) when no
    reference is set.
    """
    levels = list(levels)
    if model.contrast:
        return Contrast.parse(model.contrast, levels)
    if len(levels) != 2:
        raise ConfigurationError(
            f"model.contrast is required when there are {len(levels)} groups: {levels}"
        )
    if model.reference_group is not None:
        if model.reference_group not in levels:
            raise ConfigurationError(
                f"model.reference_group '{model.reference_group}' is not one of {levels}"
            )
        test = [lv for lv in levels if lv != model.reference_group][0]
        return Contrast.difference(test, model.reference_group)
    return Contrast.difference(levels[0], levels[1])


def _require(value: Optional[str], setting: str) -> str:
    if not value:
        raise ConfigurationError(f"Missing required setting '{setting}'")
    return value


# =============================================================================
# Stage one
# =============================================================================


def run_stage_one(config: PipelineConfig) -> StageOneResult:
    """
    Import, annotate, normalize, QC and save the container.

    All outputs are written after every step succeeded.
    """
    inputs = config.input
    count_path = _require(inputs.count_table, "input.count_table")
    metadata_path = _require(inputs.sample_metadata, "input.sample_metadata")

    loader = CountMatrixLoader(
        skip_rows=inputs.skip_rows,
        sample_key=inputs.sample_key,
        group_column=inputs.group_column,
    )
    loaded = loader.load(count_path, metadata_path)

    genes = None
    if inputs.annotation:
        annotation = read_annotation_table(inputs.annotation)
        genes = GeneAnnotationJoiner(key_column=inputs.annotation_key).join(loaded.counts.index, annotation)

    container = ExpressionContainer.from_counts(
        loaded.counts, loaded.samples, genes=genes, remove_zero_genes=inputs.remove_zero_genes
    )
    norm = config.normalization
    container = TMMNormalizer(
        log_ratio_trim=norm.log_ratio_trim,
        sum_trim=norm.sum_trim,
        ref_column=norm.ref_sample,
    ).normalize(container)

    log_cpm = container.cpm(log=True)
    qc = AdvancedQC()
    mds = qc.compute_mds(log_cpm, top=config.qc.mds_top)
    pca = qc.compute_pca(log_cpm, n_components=config.qc.pca_components, n_top_genes=config.qc.pca_top_genes)
    outliers, _ = qc.detect_outliers(mds.coordinates, threshold_sd=config.qc.outlier_sd)

    sample_table = container.sample_table()
    effects = {"group": qc.assess_covariate_effects(pca.coordinates, container.groups)}
    for covariate in sample_table.columns:
        if covariate in RESERVED_SAMPLE_COLUMNS:
            continue
        labels = sample_table[covariate]
        if labels.nunique(dropna=True) > 1 and not pd.api.types.is_numeric_dtype(labels):
            effects[covariate] = qc.assess_covariate_effects(pca.coordinates, labels)

    figures = {}
    if config.output.write_html:
        figures = {
            "library_sizes": create_library_size_barplot(container.lib_size, container.effective_lib_size),
            "mds": create_mds_plot(mds.coordinates, container.groups, mds.explained_variance),
            "pca": create_mds_plot(pca.coordinates, container.groups, pca.explained_variance, title="Sample PCA"),
            "pca_group_effect": qc.create_covariate_effect_plot(effects["group"], "group"),
        }

    out_dir = Path(config.output.directory)
    paths = {
        "container": SessionManager.save_container(
            container,
            out_dir / config.output.container_file,
            extra={"outliers": outliers, "covariate_effects": effects, "warnings": loaded.warnings},
        )
    }
    paths.update(
        ExportEngine().export_stage_one(
            out_dir,
            StageOneExport(
                log_cpm=log_cpm,
                mds=mds.coordinates,
                pca=pca.coordinates,
                sample_table=sample_table,
                figures=figures,
            ),
        )
    )
    logger.info(f"Stage one complete: {container.summary()}")
    return StageOneResult(
        container=container,
        mds=mds,
        pca=pca,
        outliers=outliers,
        covariate_effects=effects,
        paths=paths,
    )


# =============================================================================
# Stage two
# =============================================================================


def run_stage_two(config: PipelineConfig, container: Optional[ExpressionContainer] = None) -> StageTwoResult:
    """
    Filter, voom, fit, test, enrich and write results.

    Args:
        config: Workflow configuration
        container: Stage-one container (default: loaded from the output directory)
    """
    out_dir = Path(config.output.directory)
    if container is None:
        container, _ = SessionManager.load_container(out_dir / config.output.container_file)

    mapping = None
    if config.enrichment.enabled and config.input.go_mapping:
        mapping = read_go_mapping(config.input.go_mapping)

    summary = RunSummary()
    filt = LowExpressionFilter(cpm_cutoff=config.filter.cpm_cutoff, min_samples=config.filter.min_samples)
    filtered = filt.apply(container)
    summary.note("filter", filter_summary(container, filtered))
    if filtered.n_genes == 0:
        raise ConfigurationError(
            "No genes pass the low-expression filter. "
            "Suggestion: Lower filter.cpm_cutoff or filter.min_samples.",
            details=filter_summary(container, filtered),
        )

    contrast = resolve_contrast(config.model, filtered.group_levels)
    voom = VarianceModeler(span=config.voom.span).transform(filtered, summary=summary)

    engine = DEAnalysisEngine(
        fitter=LinearModelFitter(n_jobs=config.model.n_jobs, shard_size=config.model.shard_size),
        tester=SignificanceTester(alpha=config.significance.alpha, lfc_floor=config.significance.lfc_floor),
        lfc_threshold=config.model.lfc_threshold,
    )
    de_result = engine.run_all_comparisons(voom, [contrast], genes=filtered.genes, summary=summary)[contrast.name]

    enrichment_all = pd.DataFrame(columns=RESULT_COLUMNS)
    enrichment_simplified = pd.DataFrame(columns=RESULT_COLUMNS)
    enrichment_note = None
    if mapping is None:
        enrichment_note = "Enrichment disabled or no GO mapping configured"
    else:
        enr = config.enrichment
        analyzer = EnrichmentAnalyzer(
            min_size=enr.min_size,
            max_size=enr.max_size,
            ontology=enr.ontology,
            alpha=enr.alpha,
            n_jobs=enr.n_jobs,
        )
        significant, universe, enrichment_note = analyzer.select_genes_for_enrichment(
            de_result.results_df, config.significance.alpha, config.significance.lfc_floor
        )
        if enrichment_note:
            logger.warning(enrichment_note)
        enrichment_all = analyzer.run(significant, universe, mapping, summary=summary)
        if len(enrichment_all):
            enrichment_simplified = analyzer.simplify(
                enrichment_all, cutoff=enr.similarity_cutoff, measure=enr.similarity_measure
            )

    figures = {}
    if config.output.write_html:
        figures = {
            "density_filtering": create_density_comparison(
                container.cpm(log=True), filtered.cpm(log=True), config.filter.cpm_cutoff
            ),
            "voom_trend": create_voom_trend_plot(voom),
            "volcano": create_volcano_plot(
                de_result.results_df, config.significance.alpha, config.significance.lfc_floor
            ),
        }
        if len(enrichment_simplified):
            figures["go_enrichment"] = create_enrichment_dotplot(enrichment_simplified)

    paths = ExportEngine().export_stage_two(
        out_dir,
        StageTwoExport(
            de_result=de_result,
            enrichment_all=enrichment_all,
            enrichment_simplified=enrichment_simplified,
            summary=summary,
            settings=config.to_dict(),
            figures=figures,
            enrichment_note=enrichment_note,
        ),
    )
    logger.info(
        f"Stage two complete: {de_result.n_significant} significant genes, "
        f"{len(enrichment_simplified)} GO categories after simplification"
    )
    return StageTwoResult(
        filtered=filtered,
        voom=voom,
        de_result=de_result,
        enrichment_all=enrichment_all,
        enrichment_simplified=enrichment_simplified,
        summary=summary,
        paths=paths,
    )


# =============================================================================
# Command line
# =============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dge-workflow",
        description="Two-stage RNA-seq differential expression workflow (TMM, voom, limma, GO ORA).",
    )
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    sub = parser.add_subparsers(dest="command", required=True)

    def add_common(p):
        p.add_argument("--config", default=None, help="YAML config (default: built-in settings)")
        p.add_argument("--output", default=None, help="Output directory")
        p.add_argument("--html", action="store_true", default=None, help="Also write HTML figures")

    prepare = sub.add_parser("prepare", help="Stage one: import, normalize, QC, save container")
    add_common(prepare)
    prepare.add_argument("--counts", default=None, help="Count table (tab-delimited)")
    prepare.add_argument("--metadata", default=None, help="Sample metadata table")
    prepare.add_argument("--annotation", default=None, help="Gene annotation table")
    prepare.add_argument("--skip-rows", type=int, default=None, help="Lines to skip before the count header")

    analyze = sub.add_parser("analyze", help="Stage two: filter, voom, fit, test, enrich")
    add_common(analyze)
    analyze.add_argument("--go-mapping", default=None, help="Gene → GO category table")
    analyze.add_argument("--contrast", default=None, help='Contrast, e.g. "COVID - healthy"')
    analyze.add_argument("--alpha", type=float, default=None, help="Adjusted p-value threshold")
    analyze.add_argument("--lfc-floor", type=float, default=None, help="|log2FC| threshold for significance")
    analyze.add_argument("--lfc-threshold", type=float, default=None, help="TREAT log2FC threshold")
    analyze.add_argument("--cpm-cutoff", type=float, default=None, help="Low-expression CPM cutoff")
    analyze.add_argument("--min-samples", type=int, default=None, help="Samples required above the cutoff")
    analyze.add_argument("--n-jobs", type=int, default=None, help="Worker threads for model fitting")

    demo = sub.add_parser("demo", help="Generate the demo dataset and run both stages")
    add_common(demo)
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    config = load_config(args.config)
    overrides = {
        "output.directory": args.output,
        "output.write_html": args.html,
    }
    if args.command == "prepare":
        overrides.update(
            {
                "input.count_table": args.counts,
                "input.sample_metadata": args.metadata,
                "input.annotation": args.annotation,
                "input.skip_rows": args.skip_rows,
            }
        )
    elif args.command == "analyze":
        overrides.update(
            {
                "input.go_mapping": args.go_mapping,
                "model.contrast": args.contrast,
                "significance.alpha": args.alpha,
                "significance.lfc_floor": args.lfc_floor,
                "model.lfc_threshold": args.lfc_threshold,
                "filter.cpm_cutoff": args.cpm_cutoff,
                "filter.min_samples": args.min_samples,
                "model.n_jobs": args.n_jobs,
            }
        )
    return apply_overrides(config, overrides)


def run_demo(config: PipelineConfig) -> StageTwoResult:
    """Write the demo inputs next to the results and run both stages on them."""
    out_dir = Path(config.output.directory)
    paths = write_demo_inputs(out_dir / "inputs")
    config = apply_overrides(
        config,
        {
            "input.count_table": str(paths["count_table"]),
            "input.sample_metadata": str(paths["sample_metadata"]),
            "input.annotation": str(paths["annotation"]),
            "input.go_mapping": str(paths["go_mapping"]),
            "input.skip_rows": 0,
        },
    )
    stage_one = run_stage_one(config)
    return run_stage_two(config, container=stage_one.container)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        config = config_from_args(args)
        if args.command == "prepare":
            run_stage_one(config)
        elif args.command == "analyze":
            run_stage_two(config)
        else:
            run_demo(config)
    except PipelineError as e:
        logger.error(f"{type(e).__name__}: {e.message}", exc_info=args.log_level == "DEBUG")
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
