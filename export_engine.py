"""
Result export for the differential expression workflow.

Writes the stage result tables as tab-delimited text, the run summary as JSON
and, optionally, Plotly figures as standalone HTML files. Export is called only
after every computation of a stage has succeeded, so a failed run leaves no
partial output behind.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, List, Any
from datetime import datetime
from pathlib import Path
import json
import logging
import re
import sys
import numpy as np
import pandas as pd
import plotly.graph_objects as go

from de_analysis import DEResult
from pipeline_errors import RunSummary

logger = logging.getLogger(__name__)


@dataclass
class StageOneExport:
    """Everything stage one writes besides the container file."""

    log_cpm: pd.DataFrame  # genes × samples, TMM-normalized log2-CPM
    mds: pd.DataFrame  # samples × Dim1..
    pca: pd.DataFrame  # samples × PC1..
    sample_table: pd.DataFrame  # samples with group, covariates, lib_size, norm_factors
    figures: Dict[str, go.Figure] = field(default_factory=dict)


@dataclass
class StageTwoExport:
    """Complete stage-two export bundle."""

    de_result: DEResult
    enrichment_all: pd.DataFrame  # every tested category
    enrichment_simplified: pd.DataFrame  # significant, non-redundant categories
    summary: RunSummary
    settings: Dict[str, Any]  # resolved configuration
    figures: Dict[str, go.Figure] = field(default_factory=dict)
    enrichment_note: Optional[str] = None  # why enrichment was skipped, if it was


class ExportEngine:
    """Writes stage outputs to a results directory."""

    def sanitize_file_stem(self, name: str, max_length: int = 64) -> str:
        """
        Sanitize a figure or table name for use as a file name.

        Args:
            name: Raw name
            max_length: Maximum length

        Returns:
            Name with path separators and shell-unfriendly characters replaced
        """
        name = re.sub(r"[^\w.\-]+", "_", name).strip("._")
        return name[:max_length] or "figure"

    def write_table(self, df: pd.DataFrame, path: Path, index: bool = False) -> Path:
        df.to_csv(path, sep="\t", index=index, na_rep="NA")
        logger.info(f"Wrote {path} ({len(df)} rows)")
        return path

    def export_figures(self, figures: Dict[str, go.Figure], directory: Path) -> List[Path]:
        """Write each figure as a standalone HTML file."""
        paths = []
        for name, fig in figures.items():
            path = directory / f"{self.sanitize_file_stem(name)}.html"
            fig.write_html(str(path), include_plotlyjs="cdn")
            paths.append(path)
        if paths:
            logger.info(f"Wrote {len(paths)} HTML figure(s) to {directory}")
        return paths

    def export_stage_one(self, directory, bundle: StageOneExport) -> Dict[str, Path]:
        """
        Write stage-one QC tables (and figures, if any).

        Files: log_cpm.tsv, qc_mds.tsv, qc_pca.tsv, samples.tsv, *.html
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        written = {
            "log_cpm": self.write_table(bundle.log_cpm, directory / "log_cpm.tsv", index=True),
            "qc_mds": self.write_table(bundle.mds, directory / "qc_mds.tsv", index=True),
            "qc_pca": self.write_table(bundle.pca, directory / "qc_pca.tsv", index=True),
            "samples": self.write_table(bundle.sample_table, directory / "samples.tsv", index=True),
        }
        for path in self.export_figures(bundle.figures, directory):
            written[path.stem] = path
        return written

    def export_stage_two(self, directory, bundle: StageTwoExport) -> Dict[str, Path]:
        """
        Write stage-two result tables and the run summary.

        Files: de_results_all.tsv, de_results_significant.tsv, go_enrichment.tsv,
        go_enrichment_all.tsv, run_summary.json, *.html
        """
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        de = bundle.de_result
        written = {
            "de_results_all": self.write_table(de.results_df, directory / "de_results_all.tsv"),
            "de_results_significant": self.write_table(
                de.significant_df, directory / "de_results_significant.tsv"
            ),
            "go_enrichment": self.write_table(bundle.enrichment_simplified, directory / "go_enrichment.tsv"),
            "go_enrichment_all": self.write_table(bundle.enrichment_all, directory / "go_enrichment_all.tsv"),
        }
        summary_path = directory / "run_summary.json"
        with open(summary_path, "w") as f:
            json.dump(self.build_run_summary(bundle), f, indent=2, default=_json_default)
        logger.info(f"Wrote {summary_path}")
        written["run_summary"] = summary_path

        for path in self.export_figures(bundle.figures, directory):
            written[path.stem] = path
        return written

    def build_run_summary(self, bundle: StageTwoExport) -> Dict[str, Any]:
        """
        Run metadata: versions, thresholds, result counts and recoverable conditions.
        """
        de = bundle.de_result
        summary = {
            "analysis_date": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            "python_version": f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}",
            "library_versions": {"numpy": np.__version__, "pandas": pd.__version__},
            "contrast": de.contrast.name,
            "thresholds": {
                "alpha": de.alpha,
                "lfc_floor": de.lfc_floor,
                "treat_lfc_threshold": de.lfc_threshold,
            },
            "genes_tested": int(de.results_df["pvalue"].notna().sum()),
            "n_significant": de.n_significant,
            "decide_tests": de.decide_tests(),
            "enrichment": {
                "categories_tested": len(bundle.enrichment_all),
                "categories_significant": int(
                    (bundle.enrichment_all["p_adjust"] < bundle.settings.get("enrichment", {}).get("alpha", 0.05)).sum()
                ) if len(bundle.enrichment_all) else 0,
                "categories_after_simplify": len(bundle.enrichment_simplified),
                "note": bundle.enrichment_note,
            },
            "warnings": list(de.warnings),
            "degeneracies": bundle.summary.to_dict(),
            "settings": bundle.settings,
        }
        return summary


def _json_default(obj):
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, (set, frozenset)):
        return sorted(obj)
    return str(obj)
