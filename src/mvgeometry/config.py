from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from mvgeometry.errors import ConfigValidationError

SCHEMA_VERSION = "mvgeometry.solver.v0"


@dataclass(frozen=True)
class SolverConfig:
    """
    Triangulation settings shared by the batch reconstruction and the CLI.

    `min_views`, `min_confidence` and `max_loss` only matter for batch use: they decide
    which detections contribute and which solved points are kept.
    """

    max_iterations: int = 20
    update_tolerance: float = 1e-4
    regularization_weight: float = 1e-4
    residual: str = "ray"
    min_views: int = 2
    min_confidence: float = 0.0
    max_loss: float | None = None

    def solve_kwargs(self) -> dict[str, Any]:
        return {
            "max_iterations": self.max_iterations,
            "update_tolerance": self.update_tolerance,
            "regularization_weight": self.regularization_weight,
            "residual": self.residual,
        }

    def to_dict(self) -> dict[str, Any]:
        return {"schema_version": SCHEMA_VERSION, **asdict(self)}


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigValidationError(msg)


def load_solver_config(path: Path) -> SolverConfig:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return parse_solver_config(data)


def parse_solver_config(data: dict[str, Any]) -> SolverConfig:
    _require(isinstance(data, dict), "solver config must be a JSON object")
    schema_version = data.get("schema_version", SCHEMA_VERSION)
    _require(schema_version == SCHEMA_VERSION, f"schema_version must be {SCHEMA_VERSION}")

    known = set(SolverConfig.__dataclass_fields__) | {"schema_version"}
    unknown = sorted(set(data) - known)
    _require(not unknown, f"unknown solver config keys: {unknown}")

    defaults = SolverConfig()
    try:
        max_iterations = int(data.get("max_iterations", defaults.max_iterations))
        update_tolerance = float(data.get("update_tolerance", defaults.update_tolerance))
        regularization_weight = float(data.get("regularization_weight", defaults.regularization_weight))
        min_views = int(data.get("min_views", defaults.min_views))
        min_confidence = float(data.get("min_confidence", defaults.min_confidence))
        max_loss_raw = data.get("max_loss", defaults.max_loss)
        max_loss = None if max_loss_raw is None else float(max_loss_raw)
    except (TypeError, ValueError) as e:
        raise ConfigValidationError(f"invalid solver config value: {e}") from e
    residual = str(data.get("residual", defaults.residual))

    _require(max_iterations >= 0, "max_iterations must be >= 0")
    _require(update_tolerance > 0.0, "update_tolerance must be > 0")
    _require(regularization_weight >= 0.0, "regularization_weight must be >= 0")
    _require(residual in ("ray", "reprojection"), "residual must be 'ray' or 'reprojection'")
    _require(min_views >= 2, "min_views must be >= 2 (a single ray cannot fix a 3D point)")
    _require(min_confidence >= 0.0, "min_confidence must be >= 0")
    _require(max_loss is None or max_loss > 0.0, "max_loss must be > 0 when set")

    return SolverConfig(
        max_iterations=max_iterations,
        update_tolerance=update_tolerance,
        regularization_weight=regularization_weight,
        residual=residual,
        min_views=min_views,
        min_confidence=min_confidence,
        max_loss=max_loss,
    )
