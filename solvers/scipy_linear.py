"""
SciPy-based linear solver backend for the Newton step.

Design goals:
- Pure SciPy/NumPy (no PETSc dependency).
- API mirrors the PETSc backend: returns LinearSolveResult.
- Strict shape checks; never raises on non-convergence (the caller decides).
"""

from __future__ import annotations

import logging
import math
from typing import Callable, Optional

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from core.types import LinearMethod, LinearSolveConfig
from solvers.linear_types import LinearSolveResult

logger = logging.getLogger(__name__)

_KRYLOV_SOLVERS = {
    LinearMethod.GMRES: spla.gmres,
    LinearMethod.CG: spla.cg,
    LinearMethod.CGS: spla.cgs,
    LinearMethod.TFQMR: spla.tfqmr,
    LinearMethod.BICGSTAB: spla.bicgstab,
}


def _as_csr(A) -> sp.csr_matrix:
    """Ensure matrix is CSR sparse format."""
    if sp.issparse(A):
        return sp.csr_matrix(A) if A.format != "csr" else A
    if isinstance(A, np.ndarray):
        if A.ndim != 2:
            raise TypeError(f"Expected 2D array for A, got ndim={A.ndim}")
        return sp.csr_matrix(A)
    raise TypeError(f"Unsupported matrix type for A: {type(A)}")


def is_explicit(A) -> bool:
    """True for assembled matrices (sparse or dense), False for apply-only operators."""
    return sp.issparse(A) or (isinstance(A, np.ndarray) and A.ndim == 2)


def _as_operator(A):
    if is_explicit(A):
        return _as_csr(A)
    if isinstance(A, spla.LinearOperator):
        return A
    raise TypeError(f"Unsupported operator type for A: {type(A)}")


def solve_linear_system_scipy(
    A,
    b: np.ndarray,
    cfg: LinearSolveConfig,
    *,
    M: Optional[spla.LinearOperator] = None,
    x0: Optional[np.ndarray] = None,
    monitor: Optional[Callable[[int, float], None]] = None,
) -> LinearSolveResult:
    """
    Solve Ax=b with the configured SciPy Krylov method or sparse LU.

    ``M`` is an operator approximating A^{-1}. ``monitor(it, rnorm)`` is
    called once per inner iteration with the relative residual estimate.
    """
    A_op = _as_operator(A)
    if A_op.shape[0] != A_op.shape[1]:
        raise ValueError(f"A must be square, got shape {A_op.shape}")
    N = A_op.shape[0]

    b = np.asarray(b, dtype=np.float64)
    if b.shape != (N,):
        raise ValueError(f"b shape {b.shape} does not match A dimension {N}")
    if x0 is not None:
        x0 = np.asarray(x0, dtype=np.float64)
        if x0.shape != (N,):
            raise ValueError(f"x0 shape {x0.shape} does not match A dimension {N}")

    method = cfg.method
    b_norm = float(np.linalg.norm(b))
    if b_norm == 0.0:
        return LinearSolveResult(
            x=np.zeros(N, dtype=np.float64),
            converged=True,
            n_iter=0,
            residual_norm=0.0,
            rel_residual=0.0,
            method=method.value,
        )

    logger.debug(
        "solve_linear_system_scipy: size=%s method=%s rtol=%.3e max_it=%d precond=%s",
        A_op.shape,
        method.value,
        cfg.tolerance,
        cfg.max_iters,
        M is not None,
    )

    info = 0
    message = None
    if method is LinearMethod.LU:
        if not sp.issparse(A_op):
            raise ValueError("linear_method='lu' requires an explicit Jacobian matrix")
        n_iter = 1
        try:
            x_raw = spla.splu(A_op.tocsc()).solve(b)
        except RuntimeError as exc:
            logger.warning("splu failed: %s", exc)
            x_raw = np.zeros(N, dtype=np.float64)
            info = -1
            message = f"splu failed: {exc}"
    else:
        solver = _KRYLOV_SOLVERS[method]
        n_iter = 0

        def _count(arg) -> None:
            nonlocal n_iter
            n_iter += 1
            if monitor is None:
                return
            if method is LinearMethod.GMRES:
                rnorm = float(arg)
            else:
                rnorm = float(np.linalg.norm(b - A_op @ arg)) / b_norm
            monitor(n_iter, rnorm)

        kwargs = {"rtol": cfg.tolerance, "atol": 0.0, "M": M, "x0": x0, "callback": _count}
        if method is LinearMethod.GMRES:
            restart = max(1, min(int(cfg.krylov_subspace_size), N))
            kwargs["restart"] = restart
            # gmres counts restart cycles in maxiter
            kwargs["maxiter"] = max(1, math.ceil(cfg.max_iters / restart))
            kwargs["callback_type"] = "pr_norm"
        else:
            kwargs["maxiter"] = int(cfg.max_iters)
        x_raw, info = solver(A_op, b, **kwargs)
        if info > 0:
            message = f"{method.value} not converged after {n_iter} iterations"
        elif info < 0:
            message = f"{method.value} breakdown (info={info})"

    x_raw = np.asarray(x_raw, dtype=np.float64)
    r = b - A_op @ x_raw
    res_norm = float(np.linalg.norm(r))
    rel = res_norm / b_norm
    converged = info == 0 and np.isfinite(rel)
    if converged and message is None:
        logger.debug(
            "Linear solve converged: residual=%.3e rel=%.3e method=%s its=%d",
            res_norm,
            rel,
            method.value,
            n_iter,
        )
    elif message is None:
        message = "Residual is not finite"

    return LinearSolveResult(
        x=x_raw,
        converged=bool(converged),
        n_iter=int(n_iter),
        residual_norm=res_norm,
        rel_residual=rel,
        method=method.value,
        message=message,
        diag={"info": int(info)},
    )
