"""
Linear solve configuration for one Newton step, dispatched to SciPy/PETSc.

This module binds J and P into a LinearSolveHandle, runs the backend and owns
the preconditioner lifecycle (rebuild / recompute / reuse with max age). The
lifecycle lives on each controller instance; nothing here is process-wide.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import numpy as np

from core.types import LinearMethod, LinearSolveConfig, PrecondReusePolicy
from solvers.errors import LinearSolveError
from solvers.linear_types import LinearSolveHandle, LinearSolveResult
from solvers.matrix_free import MatrixFreeJacobian
from solvers.nonlinear_types import IterationStats
from solvers.preconditioner import Preconditioner
from solvers.problem_adapter import ProblemAdapter
from solvers.scipy_linear import is_explicit, solve_linear_system_scipy

logger = logging.getLogger(__name__)


class PreconditionerLifecycle:
    """
    Decides per linear solve whether the preconditioner is rebuilt, recomputed or reused.

    - REBUILD:   a new Preconditioner object every solve.
    - RECOMPUTE: same object, values refreshed every solve.
    - REUSE:     same object, untouched, until it has served ``max_age``
                 solves; then a new object is built.
    request_rebuild() forces a new object on the next acquire regardless of
    policy.
    """

    def __init__(self, policy: PrecondReusePolicy, max_age: int = 999) -> None:
        if int(max_age) < 1:
            raise ValueError(f"precond_max_age must be >= 1, got {max_age}")
        self.policy = policy
        self.max_age = int(max_age)
        self.age = 0
        self._force_rebuild = False
        self._current: Optional[Preconditioner] = None

    def reset(self) -> None:
        self.age = 0
        self._force_rebuild = False
        self._current = None

    def request_rebuild(self) -> None:
        self._force_rebuild = True

    def acquire(
        self,
        adapter: ProblemAdapter,
        x: np.ndarray,
        stats: Optional[IterationStats] = None,
    ) -> Preconditioner:
        current = adapter.get_preconditioner()
        if current is not self._current:
            # replaced from outside (set_preconditioner): a ready user
            # preconditioner is adopted, anything else is built afresh
            self.age = 0
            adopt = current is not None and adapter.has_user_preconditioner and current.is_ready
            self._current = current if adopt else None
            current = self._current
        if current is not None and not current.is_ready:
            current = None
            self.age = 0

        rebuild = (
            current is None
            or self._force_rebuild
            or self.policy is PrecondReusePolicy.REBUILD
            or (self.policy is PrecondReusePolicy.REUSE and self.age >= self.max_age)
        )
        if rebuild:
            reason = "forced" if self._force_rebuild else ("initial" if current is None else self.policy.value)
            P = adapter.evaluate_preconditioner(x, rebuild=True)
            self.age = 0
            if stats is not None:
                stats.precond_builds += 1
            logger.debug("preconditioner rebuilt (%s)", reason)
        elif self.policy is PrecondReusePolicy.RECOMPUTE:
            P = adapter.evaluate_preconditioner(x, rebuild=False)
            if stats is not None:
                stats.precond_recomputes += 1
        else:
            P = current
            if stats is not None:
                stats.precond_reuses += 1

        self._force_rebuild = False
        self._current = P
        self.age += 1
        return P


def matrix_free_operator(
    adapter: ProblemAdapter,
    x: np.ndarray,
    r: np.ndarray,
    cfg: LinearSolveConfig,
) -> MatrixFreeJacobian:
    """Jacobian action by differencing the adapter's residual."""
    return MatrixFreeJacobian(adapter.evaluate_residual, x, r, eps=cfg.fd_eps)


def configure_linear_solve(
    J,
    P: Optional[Preconditioner],
    cfg: LinearSolveConfig,
) -> LinearSolveHandle:
    """Bind J and P into a ready-to-invoke linear solve."""
    explicit = is_explicit(J)
    if cfg.method is LinearMethod.LU and not explicit:
        raise ValueError("linear_method='lu' requires an explicit Jacobian matrix")
    if P is not None and not getattr(P, "is_ready", False):
        raise ValueError(f"preconditioner {P.kind!r} has not been computed")
    if cfg.backend not in ("scipy", "petsc"):
        raise ValueError(f"Unknown backend '{cfg.backend}' for linear solver (expected 'scipy' or 'petsc').")
    return LinearSolveHandle(J=J, P=P, cfg=cfg, matrix_free=not explicit)


def solve_step(
    handle: LinearSolveHandle,
    r: np.ndarray,
    stats: Optional[IterationStats] = None,
    *,
    monitor: Optional[Callable[[int, float], None]] = None,
) -> LinearSolveResult:
    """
    Solve J dx = -r for the Newton step.

    Updates linear iteration count and achieved tolerance in ``stats``;
    raises LinearSolveError when the inner solve does not converge.
    """
    cfg = handle.cfg
    b = -np.asarray(r, dtype=np.float64)

    if cfg.backend == "petsc":
        from solvers.petsc_linear import solve_linear_system_petsc

        result = solve_linear_system_petsc(handle.J, b, cfg, P=handle.P, monitor=monitor)
    else:
        M = None
        if handle.P is not None and cfg.method is not LinearMethod.LU:
            M = handle.P.as_linear_operator()
        result = solve_linear_system_scipy(handle.J, b, cfg, M=M, monitor=monitor)

    if stats is not None:
        stats.linear_solves += 1
        stats.linear_iterations += int(result.n_iter)
        stats.achieved_tol = float(result.rel_residual)

    if not result.converged:
        if stats is not None:
            stats.linear_failures += 1
        raise LinearSolveError(
            f"linear solve ({result.method}) failed: {result.message or 'not converged'}; "
            f"its={result.n_iter} rel_residual={result.rel_residual:.3e} tol={cfg.tolerance:.3e}",
            result=result,
        )
    return result
