"""
Matrix-free Jacobian action by forward differencing the residual.

Used when the problem supplies no explicit Jacobian:
    J(x) v ~= (F(x + h v) - F(x)) / h,   h = eps * max(1, |x|) / |v|
"""

from __future__ import annotations

from typing import Callable, Optional

import numpy as np
import scipy.sparse.linalg as spla


class MatrixFreeJacobian(spla.LinearOperator):
    """
    Apply-only Jacobian at a fixed base point.

    ``F`` is the residual callable; ``r0`` (F at ``x``) is computed on
    construction if not given. Every matvec costs one residual evaluation.
    """

    def __init__(
        self,
        F: Callable[[np.ndarray], np.ndarray],
        x: np.ndarray,
        r0: Optional[np.ndarray] = None,
        *,
        eps: float = 1.0e-8,
    ) -> None:
        self.F = F
        self.x = np.array(x, dtype=np.float64)
        self.r0 = np.asarray(F(self.x) if r0 is None else r0, dtype=np.float64)
        self.eps = float(eps)
        self.x_norm = float(np.linalg.norm(self.x))
        self.n_matvec = 0
        n = self.x.size
        super().__init__(dtype=np.float64, shape=(n, n))

    def _matvec(self, v: np.ndarray) -> np.ndarray:
        v = np.asarray(v, dtype=np.float64).ravel()
        v_norm = float(np.linalg.norm(v))
        if v_norm == 0.0:
            return np.zeros_like(self.r0)
        h = self.eps * max(1.0, self.x_norm) / v_norm
        self.n_matvec += 1
        r_plus = np.asarray(self.F(self.x + h * v), dtype=np.float64)
        return (r_plus - self.r0) / h
