"""
Small discretized model problems for the driver and the test suite.

Shapes: x, F(x) have shape (n,); Jacobians are CSR (n, n).
- ScalarQuadratic: F(x) = x^2 - c (componentwise), root sqrt(c).
- Bratu1D:         -u'' - lam * exp(u) = 0 on (0, 1), u(0) = u(1) = 0,
                   second-order finite differences on n interior nodes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Tuple

import numpy as np
import scipy.sparse as sp

from solvers.problem_adapter import CallbackProblem


@dataclass(slots=True)
class ScalarQuadratic:
    c: float = 2.0
    n: int = 1

    def residual(self, x: np.ndarray) -> np.ndarray:
        return x * x - self.c

    def jacobian(self, x: np.ndarray) -> sp.csr_matrix:
        return sp.diags(2.0 * x, format="csr")

    def initial_guess(self) -> np.ndarray:
        return np.ones(self.n, dtype=np.float64)


@dataclass(slots=True)
class Bratu1D:
    """
    Bratu problem; the preconditioning matrix is the discrete Laplacian alone.

    For lam below ~3.51 the lower branch solution is reached from u = 0.
    """

    n: int = 50
    lam: float = 1.0

    @property
    def h(self) -> float:
        return 1.0 / (self.n + 1)

    def laplacian(self) -> sp.csr_matrix:
        n = self.n
        main = np.full(n, 2.0)
        off = np.full(n - 1, -1.0)
        return sp.diags([off, main, off], [-1, 0, 1], format="csr") / self.h**2

    def residual(self, u: np.ndarray) -> np.ndarray:
        u_pad = np.concatenate(([0.0], u, [0.0]))
        lap = (2.0 * u_pad[1:-1] - u_pad[:-2] - u_pad[2:]) / self.h**2
        return lap - self.lam * np.exp(u)

    def jacobian(self, u: np.ndarray) -> sp.csr_matrix:
        return (self.laplacian() - sp.diags(self.lam * np.exp(u))).tocsr()

    def preconditioner_matrix(self, u: np.ndarray) -> sp.csr_matrix:
        return self.laplacian()

    def initial_guess(self) -> np.ndarray:
        return np.zeros(self.n, dtype=np.float64)

    def as_callback_problem(self, *, jacobian: bool = True, preconditioner: bool = True) -> CallbackProblem:
        """Same problem with selected capabilities (e.g. matrix-free)."""
        return CallbackProblem(
            residual_fn=self.residual,
            jacobian_fn=self.jacobian if jacobian else None,
            preconditioner_fn=self.preconditioner_matrix if preconditioner else None,
        )


def build_model_problem(name: str, params: Mapping[str, Any]) -> Tuple[Any, np.ndarray]:
    """Return (problem, x0) for a named model problem."""
    key = str(name).strip().lower()
    if key in ("scalar_quadratic", "sqrt"):
        problem = ScalarQuadratic(c=float(params.get("c", 2.0)), n=int(params.get("n", 1)))
        x0 = np.full(problem.n, float(params.get("x0", 1.0)))
        return problem, x0
    if key == "bratu1d":
        bratu = Bratu1D(n=int(params.get("n", 50)), lam=float(params.get("lam", 1.0)))
        problem = bratu.as_callback_problem(
            jacobian=bool(params.get("jacobian", True)),
            preconditioner=bool(params.get("preconditioner_matrix", True)),
        )
        return problem, bratu.initial_guess()
    raise ValueError(f"Unknown model problem: {name!r} (expected 'scalar_quadratic' or 'bratu1d')")
