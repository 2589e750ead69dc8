"""
Preconditioner objects shared between ProblemAdapter and the linear solve.

A Preconditioner is built once and may be recomputed in place from a new
matrix; object identity therefore tells a rebuild (new object) from a
recompute (same object, new values). Subclass Preconditioner to supply a
user-built preconditioner.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from core.types import PrecondType
from solvers.scipy_linear import _as_csr

logger = logging.getLogger(__name__)


class Preconditioner:
    """
    Approximate inverse of the Jacobian, applied as ``z = M^{-1} v``.

    Subclasses implement ``_factor(A)`` (A is CSR) and ``apply(v)``.
    ``params`` is forwarded unchanged from the caller (fill level, drop
    tolerance, ...); unknown keys are ignored by the built-in kinds.
    """

    kind: str = "base"

    def __init__(self, params: Optional[Mapping[str, Any]] = None) -> None:
        self.params = dict(params or {})
        self.n_computes = 0
        self.structure_reused = False
        self._shape: Optional[tuple] = None
        self._pattern: Optional[tuple] = None

    @property
    def is_ready(self) -> bool:
        return self._shape is not None

    @property
    def shape(self) -> Optional[tuple]:
        return self._shape

    def same_structure(self, matrix) -> bool:
        """True if ``matrix`` has the sparsity pattern of the last compute."""
        if self._pattern is None:
            return False
        A = _as_csr(matrix)
        indptr, indices = self._pattern
        return (
            A.shape == self._shape
            and A.nnz == indices.size
            and np.array_equal(A.indptr, indptr)
            and np.array_equal(A.indices, indices)
        )

    def compute(self, matrix) -> "Preconditioner":
        A = _as_csr(matrix)
        if A.shape[0] != A.shape[1]:
            raise ValueError(f"preconditioner matrix must be square, got shape {A.shape}")
        self.structure_reused = self.same_structure(A)
        self._factor(A)
        self._shape = A.shape
        self._pattern = (A.indptr.copy(), A.indices.copy())
        self.n_computes += 1
        logger.debug(
            "preconditioner %s computed: n=%d nnz=%d structure_reused=%s",
            self.kind,
            A.shape[0],
            A.nnz,
            self.structure_reused,
        )
        return self

    def _factor(self, A: sp.csr_matrix) -> None:
        raise NotImplementedError

    def apply(self, v: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def as_linear_operator(self) -> spla.LinearOperator:
        if not self.is_ready:
            raise RuntimeError(f"preconditioner {self.kind!r} used before compute()")
        return spla.LinearOperator(self._shape, matvec=self.apply, dtype=np.float64)


class IdentityPreconditioner(Preconditioner):
    kind = "none"

    def _factor(self, A: sp.csr_matrix) -> None:
        pass

    def apply(self, v: np.ndarray) -> np.ndarray:
        return np.asarray(v, dtype=np.float64).copy()


class JacobiPreconditioner(Preconditioner):
    kind = "jacobi"

    def __init__(self, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(params)
        self._inv_diag: Optional[np.ndarray] = None

    def _factor(self, A: sp.csr_matrix) -> None:
        diag = np.asarray(A.diagonal(), dtype=np.float64)
        zero = np.flatnonzero(diag == 0.0)
        if zero.size:
            raise ValueError(f"Jacobi preconditioner: zero diagonal at rows {zero[:5].tolist()}")
        if self._inv_diag is not None and self._inv_diag.shape == diag.shape:
            np.divide(1.0, diag, out=self._inv_diag)
        else:
            self._inv_diag = 1.0 / diag

    def apply(self, v: np.ndarray) -> np.ndarray:
        return self._inv_diag * np.asarray(v, dtype=np.float64).ravel()


class ILUPreconditioner(Preconditioner):
    """Incomplete LU (SuperLU ILUTP); honours ``drop_tol`` and ``fill_factor``."""

    kind = "ilu"

    def __init__(self, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(params)
        self._ilu = None

    def _factor(self, A: sp.csr_matrix) -> None:
        kwargs = {}
        if self.params.get("drop_tol") is not None:
            kwargs["drop_tol"] = float(self.params["drop_tol"])
        if self.params.get("fill_factor") is not None:
            kwargs["fill_factor"] = float(self.params["fill_factor"])
        self._ilu = spla.spilu(A.tocsc(), **kwargs)

    def apply(self, v: np.ndarray) -> np.ndarray:
        return self._ilu.solve(np.asarray(v, dtype=np.float64).ravel())


_SCIPY_KINDS = {
    PrecondType.NONE: IdentityPreconditioner,
    PrecondType.JACOBI: JacobiPreconditioner,
    PrecondType.ILU: ILUPreconditioner,
}


def make_preconditioner(
    kind: PrecondType,
    params: Optional[Mapping[str, Any]] = None,
    *,
    backend: str = "scipy",
) -> Preconditioner:
    """Create an empty (not yet computed) preconditioner of the given kind."""
    if backend == "petsc":
        from solvers.petsc_linear import PetscPreconditioner

        return PetscPreconditioner(kind, params)
    try:
        cls = _SCIPY_KINDS[kind]
    except KeyError:
        raise ValueError(f"Unknown preconditioner kind: {kind!r}") from None
    return cls(params)
