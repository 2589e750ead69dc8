"""
Shared nonlinear solver result types.

Goal:
- Backend-agnostic: SciPy and PETSc linear backends produce the same structure.
- Stats are reset per solve and read-only once the solve returns.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional

import numpy as np

from solvers.errors import SolveFailed


class ConvergenceStatus(str, Enum):
    """
    Verdict of one convergence check, or the reason a solve stopped.

    ConvergenceEvaluator only produces the first four members; the rest are
    set by the controller when an exception ends a solve (SOLVER_ERROR for
    anything that is neither an evaluation nor a linear solve failure).
    """

    CONTINUE = "continue"
    CONVERGED = "converged"
    MAX_ITERATIONS_EXCEEDED = "max_iterations_exceeded"
    DIVERGED = "diverged"
    EVALUATION_FAILED = "evaluation_failed"
    LINEAR_SOLVE_FAILED = "linear_solve_failed"
    SOLVER_ERROR = "solver_error"

    @property
    def is_terminal(self) -> bool:
        return self is not ConvergenceStatus.CONTINUE


class SolverState(str, Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass(slots=True)
class IterationStats:
    outer_iterations: int = 0
    linear_iterations: int = 0
    linear_solves: int = 0
    linear_failures: int = 0
    achieved_tol: float = math.nan
    residual_norm: float = math.nan
    initial_residual_norm: float = math.nan
    update_norm: float = math.nan
    precond_builds: int = 0
    precond_recomputes: int = 0
    precond_reuses: int = 0
    history_res: List[float] = field(default_factory=list)

    def reset(self) -> None:
        self.outer_iterations = 0
        self.linear_iterations = 0
        self.linear_solves = 0
        self.linear_failures = 0
        self.achieved_tol = math.nan
        self.residual_norm = math.nan
        self.initial_residual_norm = math.nan
        self.update_norm = math.nan
        self.precond_builds = 0
        self.precond_recomputes = 0
        self.precond_reuses = 0
        self.history_res = []

    def copy(self) -> "IterationStats":
        return replace(self, history_res=list(self.history_res))


@dataclass(slots=True)
class NonlinearSolveResult:
    x: np.ndarray
    status: ConvergenceStatus
    stats: IterationStats
    message: Optional[str] = None

    @property
    def converged(self) -> bool:
        return self.status is ConvergenceStatus.CONVERGED

    def raise_for_status(self) -> "NonlinearSolveResult":
        """Raise SolveFailed unless the solve converged; return self otherwise."""
        if not self.converged:
            raise SolveFailed(
                self.message or f"Newton solve ended with status {self.status.value}",
                stats=self.stats.copy(),
                status=self.status,
                solution=self.x.copy(),
            )
        return self
