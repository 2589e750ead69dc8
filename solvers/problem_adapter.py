"""
Adapter between an external discretized problem and the Newton controller.

The problem exposes any subset of three capabilities:
  - ResidualProvider.residual(x)                  (required)
  - JacobianProvider.jacobian(x)                  (optional; else matrix-free)
  - PreconditionerProvider.preconditioner_matrix(x) (optional)
or the three hooks are passed as plain callables via
ProblemAdapter.from_callbacks. The adapter never mutates the trial point and
turns every failure of the problem into EvaluationError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol, runtime_checkable

import numpy as np

from core.types import PrecondType
from solvers.errors import EvaluationError
from solvers.preconditioner import Preconditioner, make_preconditioner

logger = logging.getLogger(__name__)


@runtime_checkable
class ResidualProvider(Protocol):
    def residual(self, x: np.ndarray) -> np.ndarray: ...


@runtime_checkable
class JacobianProvider(Protocol):
    def jacobian(self, x: np.ndarray) -> Any: ...


@runtime_checkable
class PreconditionerProvider(Protocol):
    def preconditioner_matrix(self, x: np.ndarray) -> Any: ...


@dataclass
class CallbackProblem:
    """Problem assembled from function hooks instead of a provider object."""

    residual_fn: Callable[[np.ndarray], np.ndarray]
    jacobian_fn: Optional[Callable[[np.ndarray], Any]] = None
    preconditioner_fn: Optional[Callable[[np.ndarray], Any]] = None

    def residual(self, x: np.ndarray) -> np.ndarray:
        return self.residual_fn(x)


class ProblemAdapter:
    """
    Issues residual/Jacobian/preconditioner requests to one problem.

    ``precond_type`` and ``precond_params`` select the preconditioner built
    by evaluate_preconditioner; a preconditioner installed with
    set_preconditioner takes precedence until replaced.
    """

    def __init__(
        self,
        problem: Any,
        *,
        precond_type: PrecondType = PrecondType.NONE,
        precond_params: Optional[Mapping[str, Any]] = None,
        backend: str = "scipy",
    ) -> None:
        if isinstance(problem, CallbackProblem):
            self._residual = problem.residual_fn
            self._jacobian = problem.jacobian_fn
            self._pc_matrix = problem.preconditioner_fn
        elif isinstance(problem, ResidualProvider):
            self._residual = problem.residual
            self._jacobian = problem.jacobian if isinstance(problem, JacobianProvider) else None
            self._pc_matrix = (
                problem.preconditioner_matrix if isinstance(problem, PreconditionerProvider) else None
            )
        else:
            raise TypeError(f"problem must provide residual(x), got {type(problem).__name__}")

        self.problem = problem
        self.precond_type = precond_type
        self.precond_params = dict(precond_params or {})
        self.backend = backend
        self._precond: Optional[Preconditioner] = None
        self._user_precond = False
        self.time: Optional[float] = None
        self.time_step: Optional[float] = None

        self.n_residual_evals = 0
        self.n_jacobian_evals = 0
        self.n_preconditioner_evals = 0

    @classmethod
    def from_callbacks(
        cls,
        residual: Callable[[np.ndarray], np.ndarray],
        jacobian: Optional[Callable[[np.ndarray], Any]] = None,
        preconditioner_matrix: Optional[Callable[[np.ndarray], Any]] = None,
        **kwargs,
    ) -> "ProblemAdapter":
        return cls(CallbackProblem(residual, jacobian, preconditioner_matrix), **kwargs)

    # ------------------------------------------------------------------
    # capabilities
    # ------------------------------------------------------------------
    @property
    def has_jacobian(self) -> bool:
        return self._jacobian is not None

    @property
    def has_preconditioner_matrix(self) -> bool:
        return self._pc_matrix is not None

    @property
    def wants_preconditioner(self) -> bool:
        """True if a preconditioner is configured or user-supplied."""
        return self._user_precond or self.precond_type is not PrecondType.NONE

    @property
    def has_user_preconditioner(self) -> bool:
        return self._user_precond

    @property
    def can_compute_preconditioner(self) -> bool:
        """True if some matrix (preconditioning matrix or Jacobian) is available."""
        return self._pc_matrix is not None or self._jacobian is not None

    # ------------------------------------------------------------------
    # evaluation
    # ------------------------------------------------------------------
    @staticmethod
    def _frozen(x: np.ndarray) -> np.ndarray:
        x_ro = np.array(x, dtype=np.float64)
        x_ro.setflags(write=False)
        return x_ro

    def evaluate_residual(self, x: np.ndarray) -> np.ndarray:
        x_ro = self._frozen(x)
        self.n_residual_evals += 1
        try:
            r = self._residual(x_ro)
        except EvaluationError:
            raise
        except Exception as exc:
            raise EvaluationError(f"residual evaluation failed: {type(exc).__name__}: {exc}") from exc
        r = np.array(r, dtype=np.float64).ravel()
        if r.shape != x_ro.shape:
            raise EvaluationError(f"residual shape {r.shape} does not match trial solution shape {x_ro.shape}")
        return r

    def evaluate_jacobian(self, x: np.ndarray) -> Any:
        if self._jacobian is None:
            raise EvaluationError("problem provides no explicit Jacobian")
        x_ro = self._frozen(x)
        self.n_jacobian_evals += 1
        try:
            J = self._jacobian(x_ro)
        except EvaluationError:
            raise
        except Exception as exc:
            raise EvaluationError(f"Jacobian assembly failed: {type(exc).__name__}: {exc}") from exc
        shape = getattr(J, "shape", None)
        if shape is None or tuple(shape) != (x_ro.size, x_ro.size):
            raise EvaluationError(f"Jacobian shape {shape} does not match {x_ro.size} unknowns")
        return J

    def _preconditioning_matrix(self, x: np.ndarray) -> Any:
        if self._pc_matrix is not None:
            x_ro = self._frozen(x)
            try:
                return self._pc_matrix(x_ro)
            except EvaluationError:
                raise
            except Exception as exc:
                raise EvaluationError(
                    f"preconditioner matrix evaluation failed: {type(exc).__name__}: {exc}"
                ) from exc
        if self._jacobian is not None:
            return self.evaluate_jacobian(x)
        raise EvaluationError("no matrix available to build a preconditioner (matrix-free problem)")

    def evaluate_preconditioner(
        self,
        x: np.ndarray,
        params: Optional[Mapping[str, Any]] = None,
        *,
        rebuild: bool = True,
    ) -> Preconditioner:
        """
        Build (rebuild=True) or refresh in place (rebuild=False) the preconditioner at x.

        A user-installed preconditioner is never replaced, only recomputed; when
        the problem supplies no matrix, a ready user preconditioner is returned
        as-is.
        """
        if not self.wants_preconditioner:
            raise EvaluationError("preconditioner requested but no preconditioner is configured")

        merged = dict(self.precond_params)
        if params:
            merged.update(params)

        P = self._precond
        if P is None or (rebuild and not self._user_precond):
            P = make_preconditioner(self.precond_type, merged, backend=self.backend)
        elif params:
            P.params.update(params)

        if self._user_precond and P.is_ready and not self.can_compute_preconditioner:
            return P

        M = self._preconditioning_matrix(x)
        self.n_preconditioner_evals += 1
        try:
            P.compute(M)
        except Exception as exc:
            raise EvaluationError(
                f"preconditioner ({P.kind}) computation failed: {type(exc).__name__}: {exc}"
            ) from exc
        self._precond = P
        return P

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------
    def set_preconditioner(self, P: Optional[Preconditioner]) -> None:
        """Install a user preconditioner (None restores the configured kind)."""
        self._precond = P
        self._user_precond = P is not None

    def get_preconditioner(self) -> Optional[Preconditioner]:
        return self._precond

    def set_time(self, t: float) -> None:
        self.time = float(t)
        if hasattr(self.problem, "set_time"):
            self.problem.set_time(self.time)

    def set_time_step(self, dt: float) -> None:
        self.time_step = float(dt)
        if hasattr(self.problem, "set_time_step"):
            self.problem.set_time_step(self.time_step)
