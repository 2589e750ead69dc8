"""
PETSc-based linear solver backend (mirrors SciPy interface).

Design goals:
- petsc4py is optional and imported lazily; SciPy objects come in, NumPy
  arrays go out.
- API mirrors SciPy backend: returns LinearSolveResult.
- Preconditioners are PETSc PC objects owned by PetscPreconditioner so the
  reuse policy decides when PCSetUp runs, not the KSP.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Callable, Mapping, Optional

import numpy as np

from core.types import LinearMethod, LinearSolveConfig, PrecondType
from solvers.linear_types import LinearSolveResult
from solvers.preconditioner import Preconditioner
from solvers.scipy_linear import _as_csr, _as_operator, is_explicit

logger = logging.getLogger(__name__)

_KSP_TYPES = {
    LinearMethod.GMRES: "gmres",
    LinearMethod.CG: "cg",
    LinearMethod.CGS: "cgs",
    LinearMethod.TFQMR: "tfqmr",
    LinearMethod.BICGSTAB: "bcgs",
    LinearMethod.LU: "preonly",
}

_PC_TYPES = {
    PrecondType.NONE: "none",
    PrecondType.JACOBI: "jacobi",
    PrecondType.ILU: "ilu",
}


_PETSC_INITIALIZED = False


def _get_petsc():
    """
    Import petsc4py.PETSc, initialising mpi4py first when it is installed.

    Under pytest PETSc is initialised without argv so pytest flags are not
    parsed as PETSc options.
    """
    global _PETSC_INITIALIZED
    try:
        import petsc4py
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("petsc4py is required for PETSc backend.") from exc

    if not _PETSC_INITIALIZED:
        _PETSC_INITIALIZED = True
        try:
            from mpi4py import MPI  # noqa: F401
        except ImportError:
            pass
        argv = [] if os.environ.get("PYTEST_CURRENT_TEST") else sys.argv
        try:
            petsc4py.init(argv)
        except Exception:
            # PETSc may already be initialised by the caller.
            pass
    from petsc4py import PETSc

    return PETSc


def _format_prefix(prefix: str) -> str:
    value = str(prefix or "").strip()
    if not value:
        return ""
    return value if value.endswith("_") else f"{value}_"


def to_petsc_aij(A, PETSc=None):
    """Copy an explicit matrix into a serial PETSc AIJ matrix."""
    if PETSc is None:
        PETSc = _get_petsc()
    A_csr = _as_csr(A)
    mat = PETSc.Mat().createAIJ(
        size=A_csr.shape,
        csr=(
            A_csr.indptr.astype(PETSc.IntType),
            A_csr.indices.astype(PETSc.IntType),
            np.asarray(A_csr.data, dtype=PETSc.ScalarType),
        ),
        comm=PETSc.COMM_SELF,
    )
    mat.assemble()
    return mat


class _OperatorShell:
    """Python-matrix context: y = op @ x."""

    def __init__(self, op) -> None:
        self.op = op

    def mult(self, mat, x, y) -> None:
        y.setArray(self.op.matvec(x.getArray(readonly=True)))


class _PreconditionerShell:
    """Python-PC context wrapping a SciPy-side Preconditioner."""

    def __init__(self, P: Preconditioner) -> None:
        self.P = P

    def apply(self, pc, x, y) -> None:
        y.setArray(self.P.apply(x.getArray(readonly=True)))


def to_petsc_operator(J, PETSc=None):
    """AIJ copy for explicit matrices, Python shell matrix for apply-only operators."""
    if PETSc is None:
        PETSc = _get_petsc()
    if is_explicit(J):
        return to_petsc_aij(J, PETSc)
    op = _as_operator(J)
    n = int(op.shape[0])
    mat = PETSc.Mat().createPython([n, n], context=_OperatorShell(op), comm=PETSc.COMM_SELF)
    mat.setUp()
    return mat


class PetscPreconditioner(Preconditioner):
    """
    PETSc PC built from an explicit preconditioning matrix.

    ``fill_level`` in params sets ILU(k) levels. Recomputing keeps the same
    PC object and re-runs PCSetUp on the new values.
    """

    def __init__(self, kind: PrecondType, params: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(params)
        try:
            self.kind = _PC_TYPES[kind]
        except KeyError:
            raise ValueError(f"Unknown preconditioner kind for PETSc: {kind!r}") from None
        self.pc = None
        self.pmat = None

    def _factor(self, A) -> None:
        PETSc = _get_petsc()
        pmat = to_petsc_aij(A, PETSc)
        if self.pc is None:
            pc = PETSc.PC().create(comm=PETSc.COMM_SELF)
            pc.setType(self.kind)
            if self.kind == "ilu" and self.params.get("fill_level") is not None:
                pc.setFactorLevels(int(self.params["fill_level"]))
            self.pc = pc
        if hasattr(self.pc, "setReusePreconditioner"):
            self.pc.setReusePreconditioner(False)
        self.pc.setOperators(pmat, pmat)
        self.pc.setUp()
        self.pmat = pmat

    def apply(self, v: np.ndarray) -> np.ndarray:
        PETSc = _get_petsc()
        x = PETSc.Vec().createWithArray(np.array(v, dtype=PETSc.ScalarType), comm=PETSc.COMM_SELF)
        y = x.duplicate()
        self.pc.apply(x, y)
        return np.asarray(y.getArray(), dtype=np.float64).copy()


def solve_linear_system_petsc(
    A,
    b: np.ndarray,
    cfg: LinearSolveConfig,
    *,
    P: Optional[Preconditioner] = None,
    x0: Optional[np.ndarray] = None,
    monitor: Optional[Callable[[int, float], None]] = None,
) -> LinearSolveResult:
    """Solve Ax=b using PETSc KSP; returns LinearSolveResult (mirrors SciPy backend)."""
    PETSc = _get_petsc()

    A_op = _as_operator(A)
    if A_op.shape[0] != A_op.shape[1]:
        raise ValueError(f"A must be square, got shape {A_op.shape}")
    N = A_op.shape[0]
    b = np.asarray(b, dtype=np.float64)
    if b.shape != (N,):
        raise ValueError(f"b shape {b.shape} does not match A dimension {N}")

    b_norm = float(np.linalg.norm(b))
    if b_norm == 0.0:
        return LinearSolveResult(
            x=np.zeros(N, dtype=np.float64),
            converged=True,
            n_iter=0,
            residual_norm=0.0,
            rel_residual=0.0,
            method=_KSP_TYPES[cfg.method],
        )

    A_p = to_petsc_operator(A_op, PETSc)
    ksp = PETSc.KSP().create(comm=PETSc.COMM_SELF)
    ksp.setOptionsPrefix(_format_prefix(cfg.options_prefix))
    ksp_type = _KSP_TYPES[cfg.method]

    if cfg.method is LinearMethod.LU:
        if not is_explicit(A_op):
            raise ValueError("linear_method='lu' requires an explicit Jacobian matrix")
        ksp.setOperators(A_p, A_p)
        ksp.setType(ksp_type)
        ksp.getPC().setType("lu")
    else:
        if isinstance(P, PetscPreconditioner):
            # KSP takes its operators from the PC: install the PC first.
            ksp.setPC(P.pc)
            ksp.setOperators(A_p, P.pmat)
            ksp.setReusePreconditioner(True)
        else:
            ksp.setOperators(A_p, A_p)
            pc = ksp.getPC()
            if P is None:
                pc.setType("none")
            else:
                pc.setType("python")
                pc.setPythonContext(_PreconditionerShell(P))
        ksp.setType(ksp_type)
        ksp.setTolerances(rtol=cfg.tolerance, max_it=cfg.max_iters)
        if ksp_type == "gmres":
            ksp.setGMRESRestart(int(cfg.krylov_subspace_size))

    if monitor is not None:
        def _monitor(ksp_obj, its, rnorm):
            if its > 0:
                monitor(int(its), float(rnorm) / b_norm)
        ksp.setMonitor(_monitor)

    b_p = PETSc.Vec().createWithArray(b.copy(), comm=PETSc.COMM_SELF)
    x = b_p.duplicate()
    x.set(0.0)
    if x0 is not None and ksp_type != "preonly":
        x.setArray(np.ascontiguousarray(x0, dtype=np.float64).copy())
        ksp.setInitialGuessNonzero(True)

    try:
        ksp.setFromOptions()
        ksp.setUp()
        ksp.solve(b_p, x)
    except PETSc.Error as exc:
        # factorization or setup errors (zero pivot, bad options) end up here
        logger.warning("PETSc KSP setup/solve raised: %s ksp=%s", exc, ksp_type)
        return LinearSolveResult(
            x=np.zeros(N, dtype=np.float64),
            converged=False,
            n_iter=0,
            residual_norm=b_norm,
            rel_residual=1.0,
            method=ksp_type,
            message=f"PETSc error: {exc}",
            diag={"reason": None, "ksp_type": ksp_type, "pc_type": None},
        )

    reason = int(ksp.getConvergedReason())
    converged = reason > 0
    n_iter = int(ksp.getIterationNumber()) if ksp_type != "preonly" else 1
    x_arr = np.asarray(x.getArray(), dtype=np.float64).copy()
    res_norm = float(np.linalg.norm(b - A_op @ x_arr))
    rel = res_norm / b_norm
    pc_type = str(ksp.getPC().getType())

    if not converged:
        logger.warning(
            "PETSc KSP not converged: reason=%d residual=%.3e rel=%.3e ksp=%s pc=%s",
            reason,
            res_norm,
            rel,
            ksp_type,
            pc_type,
        )

    return LinearSolveResult(
        x=x_arr,
        converged=converged,
        n_iter=n_iter,
        residual_norm=res_norm,
        rel_residual=rel,
        method=f"{ksp_type}+{pc_type}",
        message=None if converged else f"PETSc KSP diverged (reason={reason})",
        diag={"reason": reason, "ksp_type": ksp_type, "pc_type": pc_type},
    )
