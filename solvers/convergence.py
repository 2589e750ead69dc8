"""
Outer-loop stopping tests for the Newton iteration.

All enabled tests are combined with AND: the iteration is converged only when
every enabled test passes on the same iteration. Non-finite residual norms
are reported as DIVERGED before any other test; the iteration cap is applied
last.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from core.types import ConvergenceConfig, NormType, ScaleType
from solvers.nonlinear_types import ConvergenceStatus

logger = logging.getLogger(__name__)


def vector_norm(v: np.ndarray, norm_type: NormType, scale_type: ScaleType = ScaleType.UNSCALED) -> float:
    """
    One-, two- or max-norm; SCALED divides the two-norm by sqrt(n) and the
    other norms by n.
    """
    v = np.asarray(v, dtype=np.float64).ravel()
    n = v.size
    if norm_type is NormType.ONE:
        val = float(np.sum(np.abs(v)))
    elif norm_type is NormType.TWO:
        val = float(np.linalg.norm(v))
    elif norm_type is NormType.MAX:
        val = float(np.max(np.abs(v))) if n else 0.0
    else:
        raise ValueError(f"Unknown norm type: {norm_type!r}")
    if scale_type is ScaleType.SCALED and n > 0:
        val /= math.sqrt(n) if norm_type is NormType.TWO else n
    return val


def wrms_norm(dx: np.ndarray, x: np.ndarray, rtol: float, atol: float) -> float:
    """sqrt(mean((dx_i / (atol + rtol |x_i|))^2))"""
    dx = np.asarray(dx, dtype=np.float64).ravel()
    x = np.asarray(x, dtype=np.float64).ravel()
    if dx.size == 0:
        return 0.0
    w = atol + rtol * np.abs(x)
    with np.errstate(divide="ignore", invalid="ignore"):
        q = dx / w
    return float(np.sqrt(np.mean(q * q)))


@dataclass(slots=True)
class CriterionCheck:
    name: str
    value: float
    threshold: float
    passed: bool


@dataclass(slots=True)
class ConvergenceCheck:
    status: ConvergenceStatus
    residual_norm: float
    criteria: List[CriterionCheck]


class ConvergenceEvaluator:
    """
    Stateful evaluator for one solve; call reset() before reusing it.

    ``check(k, r, x, dx)`` receives the outer iteration index k (0 for the
    initial guess), the residual at x, the current trial solution and the
    step that produced it (None at k = 0).
    """

    def __init__(self, cfg: ConvergenceConfig) -> None:
        cfg.validate()
        self.cfg = cfg
        self.initial_norm: Optional[float] = None

    def reset(self) -> None:
        self.initial_norm = None

    def residual_norm(self, r: np.ndarray) -> float:
        return vector_norm(r, self.cfg.norm_type, self.cfg.scale_type)

    def update_norm(self, dx: np.ndarray) -> float:
        return vector_norm(dx, self.cfg.norm_type, self.cfg.scale_type)

    def check(
        self,
        k: int,
        r: np.ndarray,
        x: np.ndarray,
        dx: Optional[np.ndarray] = None,
    ) -> ConvergenceCheck:
        cfg = self.cfg
        rnorm = self.residual_norm(r)
        if self.initial_norm is None:
            self.initial_norm = rnorm

        if not math.isfinite(rnorm):
            return ConvergenceCheck(ConvergenceStatus.DIVERGED, rnorm, [])
        r0 = self.initial_norm
        if (
            cfg.divergence_threshold is not None
            and math.isfinite(r0)
            and r0 > 0.0
            and rnorm > cfg.divergence_threshold * r0
        ):
            return ConvergenceCheck(ConvergenceStatus.DIVERGED, rnorm, [])

        criteria: List[CriterionCheck] = []
        if cfg.abs_resid is not None:
            criteria.append(CriterionCheck("abs_resid", rnorm, cfg.abs_resid, rnorm <= cfg.abs_resid))
        if cfg.rel_resid is not None:
            threshold = cfg.rel_resid * r0
            criteria.append(CriterionCheck("rel_resid", rnorm, threshold, rnorm <= threshold))
        if cfg.update is not None:
            if dx is None:
                criteria.append(CriterionCheck("update", math.nan, cfg.update, False))
            else:
                unorm = self.update_norm(dx)
                criteria.append(CriterionCheck("update", unorm, cfg.update, unorm <= cfg.update))
        if cfg.wrms is not None:
            rtol, atol = cfg.wrms
            if dx is None:
                criteria.append(CriterionCheck("wrms", math.nan, 1.0, False))
            else:
                w = wrms_norm(dx, x, rtol, atol)
                criteria.append(CriterionCheck("wrms", w, 1.0, w <= 1.0))

        if criteria and all(c.passed for c in criteria):
            status = ConvergenceStatus.CONVERGED
        elif k >= cfg.max_iters:
            status = ConvergenceStatus.MAX_ITERATIONS_EXCEEDED
        else:
            status = ConvergenceStatus.CONTINUE
        return ConvergenceCheck(status, rnorm, criteria)
