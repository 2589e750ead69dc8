"""
PETSc linear backend (skipped when petsc4py is not installed).

Tests:
1. KSP solves with PETSc ILU / Jacobi preconditioners and direct LU
2. Matrix-free operators go through a Python shell matrix
3. PetscPreconditioner recompute keeps the PC object
4. Newton on Bratu with backend=petsc matches the SciPy backend
5. A singular LU factorization comes back as a non-converged result
"""

from __future__ import annotations

import numpy as np
import pytest
import scipy.sparse as sp
import scipy.sparse.linalg as spla

pytest.importorskip("petsc4py")

from assembly.model_problems import Bratu1D  # noqa: E402
from core.types import (  # noqa: E402
    ConvergenceConfig,
    LinearMethod,
    LinearSolveConfig,
    NewtonConfig,
    PrecondReusePolicy,
    PrecondType,
)
from solvers.errors import LinearSolveError  # noqa: E402
from solvers.newton import NewtonSolver  # noqa: E402
from solvers.petsc_linear import PetscPreconditioner, solve_linear_system_petsc  # noqa: E402
from solvers.preconditioner import JacobiPreconditioner, make_preconditioner  # noqa: E402
from solvers.solver_linear import configure_linear_solve, solve_step  # noqa: E402


def _tridiag(n: int = 30) -> sp.csr_matrix:
    return sp.diags([-np.ones(n - 1), 4.0 * np.ones(n), -np.ones(n - 1)], [-1, 0, 1], format="csr")


@pytest.mark.parametrize("kind", [PrecondType.ILU, PrecondType.JACOBI])
def test_ksp_with_petsc_preconditioner(kind):
    A = _tridiag()
    b = np.arange(1.0, 31.0)
    P = make_preconditioner(kind, backend="petsc").compute(A)
    assert isinstance(P, PetscPreconditioner)

    cfg = LinearSolveConfig(method=LinearMethod.GMRES, tolerance=1.0e-10, backend="petsc")
    result = solve_linear_system_petsc(A, b, cfg, P=P)
    assert result.converged, result.message
    np.testing.assert_allclose(result.x, spla.spsolve(A.tocsc(), b), rtol=1.0e-7)
    assert result.diag["pc_type"] == P.kind


def test_ksp_direct_lu():
    A = _tridiag(12)
    b = np.ones(12)
    cfg = LinearSolveConfig(method=LinearMethod.LU, backend="petsc")
    result = solve_linear_system_petsc(A, b, cfg)
    assert result.converged
    assert result.method == "preonly+lu"
    np.testing.assert_allclose(A @ result.x, b, atol=1.0e-10)


def test_shell_operator_with_scipy_side_preconditioner():
    A = _tridiag(20)
    b = np.linspace(1.0, 2.0, 20)
    op = spla.aslinearoperator(A)
    P = JacobiPreconditioner().compute(A)
    cfg = LinearSolveConfig(method=LinearMethod.CG, tolerance=1.0e-10, backend="petsc")
    result = solve_linear_system_petsc(op, b, cfg, P=P)
    assert result.converged
    assert result.diag["pc_type"] == "python"
    np.testing.assert_allclose(A @ result.x, b, atol=1.0e-8)


def test_petsc_preconditioner_recompute_keeps_pc():
    A = _tridiag(10)
    P = PetscPreconditioner(PrecondType.ILU, {"fill_level": 1})
    P.compute(A)
    pc = P.pc
    P.compute(2.0 * A)
    assert P.pc is pc
    assert P.n_computes == 2
    assert P.structure_reused
    np.testing.assert_allclose(2.0 * A @ P.apply(np.ones(10)), np.ones(10), atol=1.0e-10)


def test_newton_bratu_petsc_matches_scipy():
    def solve(backend):
        cfg = NewtonConfig(
            convergence=ConvergenceConfig(max_iters=20, abs_resid=1.0e-10, rel_resid=1.0e-10),
            linear=LinearSolveConfig(
                method=LinearMethod.GMRES,
                tolerance=1.0e-10,
                preconditioner=PrecondType.ILU,
                reuse_policy=PrecondReusePolicy.REUSE,
                precond_max_age=2,
                backend=backend,
            ),
        )
        return NewtonSolver(Bratu1D(n=30), cfg).solve(np.zeros(30), raise_on_failure=True)

    petsc = solve("petsc")
    ref = solve("scipy")
    np.testing.assert_allclose(petsc.x, ref.x, rtol=1.0e-7, atol=1.0e-10)
    assert petsc.stats.precond_builds >= 1


def test_singular_lu_reports_non_converged():
    A = sp.csr_matrix(np.array([[1.0, 1.0], [1.0, 1.0]]))
    b = np.array([1.0, 2.0])
    cfg = LinearSolveConfig(method=LinearMethod.LU, backend="petsc")

    result = solve_linear_system_petsc(A, b, cfg)
    assert not result.converged
    assert result.x.shape == (2,)

    handle = configure_linear_solve(A, None, cfg)
    with pytest.raises(LinearSolveError, match="failed"):
        solve_step(handle, -b)
