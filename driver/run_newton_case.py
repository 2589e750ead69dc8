"""
Driver to run a Newton solve on a model problem from a YAML case file.

Responsibilities:
- Load NewtonConfig and the problem block from YAML.
- Build the model problem and initial guess.
- Solve, log a summary and optionally dump the iteration stats as JSON.

Exit codes: 0 converged, 1 not converged / solve failed, 2 bad configuration.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import yaml

from assembly.model_problems import build_model_problem
from core.logging_utils import get_log_level_from_env, is_root_rank, setup_logging
from core.types import NewtonConfig
from solvers.errors import SolveFailed
from solvers.newton import NewtonSolver
from solvers.nonlinear_types import IterationStats

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# YAML loader
# -----------------------------------------------------------------------------
def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def _load_case(cfg_path: str | Path) -> Tuple[str, Dict[str, Any], NewtonConfig]:
    """Load YAML file into (case_id, problem block, NewtonConfig)."""
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    if not isinstance(raw, Mapping):
        raise TypeError(f"{cfg_file}: expected a mapping at top level, got {type(raw).__name__}")

    unknown = set(raw.keys()) - {"case", "problem", "convergence", "linear", "output"}
    if unknown:
        raise ValueError(f"Unsupported top-level keys in {cfg_file.name}: {sorted(unknown)}")

    case_raw = raw.get("case", {}) or {}
    case_id = str(case_raw.get("id", cfg_file.stem))

    problem_raw = raw.get("problem", None)
    if not isinstance(problem_raw, Mapping) or "name" not in problem_raw:
        raise ValueError("problem: a mapping with at least 'name' is required")

    cfg = NewtonConfig.from_dict(raw)
    return case_id, dict(problem_raw), cfg


def _stats_to_dict(stats: IterationStats) -> Dict[str, Any]:
    out = asdict(stats)
    return {k: (None if isinstance(v, float) and v != v else v) for k, v in out.items()}


def _write_stats_json(path: Path, case_id: str, status: str, stats: IterationStats) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {"case": case_id, "status": status, "stats": _stats_to_dict(stats)}
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def run_case(
    cfg_path: str | Path,
    *,
    backend: Optional[str] = None,
    max_iters: Optional[int] = None,
    dry_run: bool = False,
    stats_json: Optional[str | Path] = None,
    log_level: int | str = logging.INFO,
) -> int:
    """Run one Newton case. Return 0 on convergence, non-zero otherwise."""
    level = get_log_level_from_env(default=log_level)
    setup_logging(0 if is_root_rank() else 1, level=level, quiet_nonroot=True)

    try:
        case_id, problem_raw, cfg = _load_case(cfg_path)
        if backend is not None:
            cfg.linear.backend = str(backend).strip().lower()
            if cfg.linear.backend not in ("scipy", "petsc"):
                raise ValueError(f"Unknown backend override: {backend!r}")
        if max_iters is not None:
            if int(max_iters) < 1:
                raise ValueError(f"--max_iters must be >= 1, got {max_iters}")
            cfg.convergence.max_iters = int(max_iters)
        params = {k: v for k, v in problem_raw.items() if k != "name"}
        problem, x0 = build_model_problem(problem_raw["name"], params)
    except (OSError, TypeError, ValueError, yaml.YAMLError) as exc:
        logger.error("Invalid case %s: %s", cfg_path, exc)
        return 2

    logger.info(
        "case=%s problem=%s n=%d backend=%s method=%s",
        case_id,
        problem_raw["name"],
        x0.size,
        cfg.linear.backend,
        cfg.linear.method.value,
    )
    if dry_run:
        logger.info("dry run: configuration loaded, skipping solve")
        return 0

    solver = NewtonSolver(problem, cfg)
    try:
        result = solver.solve(x0)
        status, stats = result.status.value, result.stats
        code = 0 if result.converged else 1
    except SolveFailed as exc:
        status, stats = exc.status.value, exc.stats
        code = 1
    except ValueError as exc:
        # setup the problem cannot serve, e.g. LU on a matrix-free problem
        logger.error("Invalid case %s: %s", cfg_path, exc)
        return 2

    logger.info(
        "case=%s status=%s outer_its=%d linear_its=%d |F|=%.3e achieved_tol=%.3e",
        case_id,
        status,
        stats.outer_iterations,
        stats.linear_iterations,
        stats.residual_norm,
        stats.achieved_tol,
    )
    if stats_json is not None:
        _write_stats_json(Path(stats_json), case_id, status, stats)
    return code


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a Newton solve on a model problem.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--backend",
        choices=("scipy", "petsc"),
        default=None,
        help="Override linear solver backend (default: use YAML).",
    )
    parser.add_argument(
        "--max_iters",
        type=int,
        default=None,
        help="Override convergence.max_iters (default: use YAML).",
    )
    parser.add_argument(
        "--stats_json",
        default=None,
        help="Write final iteration stats to this JSON file.",
    )
    parser.add_argument(
        "--dry_run",
        action="store_true",
        help="Load config and build the problem only; skip the solve.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    if args.backend == "petsc":
        # Keep driver flags away from PETSc's option parser.
        sys.argv = sys.argv[:1]
    return run_case(
        args.case_yaml,
        backend=args.backend,
        max_iters=args.max_iters,
        dry_run=args.dry_run,
        stats_json=args.stats_json,
    )


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
