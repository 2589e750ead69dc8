"""
Exceptions raised by the Newton solver stack.

EvaluationError and an unrecoverable LinearSolveError abort a solve; the
controller re-raises them as SolveFailed with the iteration statistics
attached so partial progress stays inspectable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

import numpy as np

if TYPE_CHECKING:  # pragma: no cover
    from solvers.linear_types import LinearSolveResult
    from solvers.nonlinear_types import ConvergenceStatus, IterationStats


class EvaluationError(RuntimeError):
    """
    Residual, Jacobian or preconditioner could not be computed at a trial point.

    Fatal for the current solve: the trial point is presumed invalid, so no
    retry is attempted.
    """
    pass


class LinearSolveError(RuntimeError):
    """Inner linear solve did not reach its tolerance within the iteration cap."""

    def __init__(self, message: str, result: Optional["LinearSolveResult"] = None) -> None:
        super().__init__(message)
        self.result = result


class SolveFailed(RuntimeError):
    """Nonlinear solve ended without convergence."""

    def __init__(
        self,
        message: str,
        *,
        stats: "IterationStats",
        status: "ConvergenceStatus",
        solution: Optional[np.ndarray] = None,
    ) -> None:
        super().__init__(message)
        self.stats = stats
        self.status = status
        self.solution = solution
