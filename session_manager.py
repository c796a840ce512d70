"""Hand-off of the expression container between the two workflow stages."""

import pickle
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union
import logging

from expression_container import ExpressionContainer
from pipeline_errors import SchemaMismatchError

logger = logging.getLogger(__name__)


class SessionManager:
    """Save and load the stage-one ExpressionContainer as a versioned pickle."""

    PLATFORM_VERSION = "2.0.0"
    FORMAT = "expression-container"

    @staticmethod
    def save_container(
        container: ExpressionContainer,
        path: Union[str, Path],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """
        Write the container with a `_meta` block describing the format.

        Args:
            container: Normalized ExpressionContainer from stage one
            path: Output file
            extra: Additional JSON-like metadata stored next to `_meta` (e.g. QC notes)

        Returns:
            Path of the written file
        """
        path = Path(path)
        data = {
            "_meta": {
                "format": SessionManager.FORMAT,
                "platform_version": SessionManager.PLATFORM_VERSION,
                "saved_at": datetime.now().isoformat(),
                "n_genes": container.n_genes,
                "n_samples": container.n_samples,
            },
            "container": container,
            "extra": _make_serializable(extra or {}),
        }
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            pickle.dump(data, f, protocol=pickle.HIGHEST_PROTOCOL)
        logger.info(f"Saved container ({container.n_genes} genes × {container.n_samples} samples) to {path}")
        return path

    @staticmethod
    def load_container(path: Union[str, Path]) -> Tuple[ExpressionContainer, Dict[str, Any]]:
        """
        Read a container written by save_container().

        Returns:
            (container, metadata dict with `_meta` and `extra`)

        Raises:
            SchemaMismatchError: missing file, foreign pickle or major version mismatch
        """
        path = Path(path)
        if not path.exists():
            raise SchemaMismatchError(
                f"Container file not found: {path}. Suggestion: Run the 'prepare' stage first.",
                details={"file": str(path)},
            )
        with open(path, "rb") as f:
            data = pickle.load(f)

        meta = data.get("_meta", {}) if isinstance(data, dict) else {}
        if meta.get("format") != SessionManager.FORMAT or not isinstance(
            data.get("container"), ExpressionContainer
        ):
            raise SchemaMismatchError(f"{path} is not an expression container file", details={"file": str(path)})
        major = str(meta.get("platform_version", "0")).split(".")[0]
        if major != SessionManager.PLATFORM_VERSION.split(".")[0]:
            raise SchemaMismatchError(
                f"Container was written by version {meta.get('platform_version')}, "
                f"this is {SessionManager.PLATFORM_VERSION}. Suggestion: Re-run the 'prepare' stage.",
                details={"file": str(path)},
            )

        container = data["container"]
        logger.info(f"Loaded container ({container.n_genes} genes × {container.n_samples} samples) from {path}")
        return container, {"_meta": meta, "extra": data.get("extra", {})}


def _make_serializable(obj):
    """Recursively convert tuples to lists."""
    if isinstance(obj, tuple):
        return [_make_serializable(item) for item in obj]
    elif isinstance(obj, list):
        return [_make_serializable(item) for item in obj]
    elif isinstance(obj, dict):
        return {k: _make_serializable(v) for k, v in obj.items()}
    return obj
