"""
Error taxonomy and run summary for the differential expression workflow.

Fatal conditions are raised as PipelineError subclasses and abort the stage
before any output is written. Recoverable numeric conditions are emitted as
NumericDegeneracyWarning, logged, and accumulated in a RunSummary that is
exported next to the final results.
"""

from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional
import logging
import warnings

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for fatal workflow errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


class SchemaMismatchError(PipelineError):
    """Input tables disagree on keys, dimensions or value types."""


class DegenerateNormalizationError(PipelineError):
    """A sample shares no comparably expressed genes with the reference sample."""


class ConfigurationError(PipelineError):
    """A threshold or option is outside its valid range."""


class NumericDegeneracyWarning(UserWarning):
    """A gene or category was excluded from statistics because it is degenerate."""


@dataclass(frozen=True)
class DegeneracyRecord:
    """One recoverable condition encountered during a run."""

    stage: str  # e.g. "voom", "linear_model", "enrichment"
    kind: str  # e.g. "zero_variance", "zero_expected_count"
    identifier: str  # gene key or category id
    message: str


@dataclass
class RunSummary:
    """Accumulates recoverable conditions so they are reported, never dropped."""

    records: List[DegeneracyRecord] = field(default_factory=list)
    notes: Dict[str, Any] = field(default_factory=dict)

    def record(self, stage: str, kind: str, identifiers: List[str], message: str) -> None:
        """
        Record a degenerate gene/category set and emit one warning for it.

        Args:
            stage: Pipeline stage that detected the condition
            kind: Short machine-readable condition name
            identifiers: Affected gene keys or category ids
            message: Human-readable description
        """
        if not identifiers:
            return
        for identifier in identifiers:
            self.records.append(
                DegeneracyRecord(stage=stage, kind=kind, identifier=str(identifier), message=message)
            )
        preview = ", ".join(str(i) for i in identifiers[:5])
        more = f" (+{len(identifiers) - 5} more)" if len(identifiers) > 5 else ""
        text = f"[{stage}] {message}: {preview}{more}"
        logger.warning(text)
        warnings.warn(text, NumericDegeneracyWarning, stacklevel=2)

    def note(self, key: str, value: Any) -> None:
        self.notes[key] = value

    def identifiers(self, stage: Optional[str] = None, kind: Optional[str] = None) -> List[str]:
        return [
            r.identifier
            for r in self.records
            if (stage is None or r.stage == stage) and (kind is None or r.kind == kind)
        ]

    def to_dict(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for r in self.records:
            key = f"{r.stage}:{r.kind}"
            counts[key] = counts.get(key, 0) + 1
        return {
            "n_records": len(self.records),
            "counts": counts,
            "records": [asdict(r) for r in self.records],
            "notes": self.notes,
        }
