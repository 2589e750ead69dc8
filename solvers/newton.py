"""
Newton iteration controller.

This module only coordinates the outer loop; residual/Jacobian assembly is
handled by the problem behind ProblemAdapter and the inner solve by
solvers.solver_linear.

Per iteration:
  1. r = F(x)
  2. convergence check (stop on CONVERGED / MAX_ITERATIONS_EXCEEDED / DIVERGED)
  3. Jacobian (explicit or matrix-free) and preconditioner per reuse policy
  4. solve J dx = -r; one retry with a rebuilt preconditioner on failure
  5. x <- x + dx (or the step returned by step_hook)
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Iterable, Optional, Union

import numpy as np

from core.logging_utils import output_log_level
from core.types import (
    LinearMethod,
    NewtonConfig,
    NormType,
    OutputKind,
    PrecondReusePolicy,
    PrecondType,
    ScaleType,
    _coerce_enum,
    parse_output_kinds,
)
from solvers.convergence import ConvergenceCheck, ConvergenceEvaluator
from solvers.errors import EvaluationError, LinearSolveError, SolveFailed
from solvers.nonlinear_types import ConvergenceStatus, IterationStats, NonlinearSolveResult, SolverState
from solvers.preconditioner import Preconditioner
from solvers.problem_adapter import ProblemAdapter
from solvers.solver_linear import (
    PreconditionerLifecycle,
    configure_linear_solve,
    matrix_free_operator,
    solve_step,
)

logger = logging.getLogger(__name__)

StepHook = Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray]


class NewtonSolver:
    """
    Inexact Newton solver over a discretized problem.

    ``problem`` is a ProblemAdapter or any object accepted by one (residual
    provider, optionally Jacobian/preconditioner providers). ``step_hook(x,
    dx, r)`` may return a damped step; it receives copies and must not keep
    references to them.

    One solve runs at a time per instance; the trial solution, the stats and
    the preconditioner lifecycle belong to the instance. Preconditioner kind,
    params and backend always follow ``cfg.linear``, also for an adapter
    passed in directly.
    """

    def __init__(
        self,
        problem: Any,
        cfg: Optional[NewtonConfig] = None,
        *,
        step_hook: Optional[StepHook] = None,
    ) -> None:
        self.cfg = copy.deepcopy(cfg) if cfg is not None else NewtonConfig()
        lin = self.cfg.linear
        if isinstance(problem, ProblemAdapter):
            self.adapter = problem
        else:
            self.adapter = ProblemAdapter(
                problem,
                precond_type=lin.preconditioner,
                precond_params=lin.precond_params,
                backend=lin.backend,
            )
        self.step_hook = step_hook
        self.state = SolverState.INITIALIZED
        self.stats = IterationStats()
        self.sln_vector: Optional[np.ndarray] = None
        self._lifecycle = PreconditionerLifecycle(lin.reuse_policy, lin.precond_max_age)

    # ------------------------------------------------------------------
    # linear solver setters
    # ------------------------------------------------------------------
    def set_ls_type(self, method: Union[str, LinearMethod]) -> None:
        self.cfg.linear.method = _coerce_enum(LinearMethod, method, "linear.linear_method")

    def set_ls_max_iters(self, iters: int) -> None:
        self.cfg.linear.max_iters = _positive_int(iters, "linear.ls_max_iters")

    def set_ls_tolerance(self, tolerance: float) -> None:
        self.cfg.linear.tolerance = _positive_float(tolerance, "linear.ls_tolerance")

    def set_ls_sizeof_krylov_subspace(self, size: int) -> None:
        self.cfg.linear.krylov_subspace_size = _positive_int(size, "linear.krylov_subspace_size")

    # ------------------------------------------------------------------
    # convergence setters
    # ------------------------------------------------------------------
    def set_norm_type(self, norm_type: Union[str, NormType]) -> None:
        self.cfg.convergence.norm_type = _coerce_enum(NormType, norm_type, "convergence.norm_type")

    def set_scale_type(self, scale_type: Union[str, ScaleType]) -> None:
        self.cfg.convergence.scale_type = _coerce_enum(ScaleType, scale_type, "convergence.scale_type")

    def set_conv_iters(self, iters: int) -> None:
        self.cfg.convergence.max_iters = _positive_int(iters, "convergence.max_iters")

    def set_conv_abs_resid(self, resid: float) -> None:
        self.cfg.convergence.abs_resid = _positive_float(resid, "convergence.abs_resid_tol")

    def set_conv_rel_resid(self, resid: float) -> None:
        self.cfg.convergence.rel_resid = _positive_float(resid, "convergence.rel_resid_tol")

    def disable_abs_resid(self) -> None:
        self.cfg.convergence.abs_resid = None

    def disable_rel_resid(self) -> None:
        self.cfg.convergence.rel_resid = None

    def set_conv_update(self, update: float) -> None:
        self.cfg.convergence.update = _positive_float(update, "convergence.update_tol")

    def disable_update(self) -> None:
        self.cfg.convergence.update = None

    def set_conv_wrms(self, rtol: float, atol: float) -> None:
        self.cfg.convergence.wrms = (float(rtol), float(atol))

    def disable_wrms(self) -> None:
        self.cfg.convergence.wrms = None

    # ------------------------------------------------------------------
    # preconditioner setters
    # ------------------------------------------------------------------
    def set_precond_reuse(self, policy: Union[str, PrecondReusePolicy]) -> None:
        self.cfg.linear.reuse_policy = _coerce_enum(
            PrecondReusePolicy, policy, "linear.precond_reuse_policy"
        )

    def set_precond_max_age(self, max_age: int) -> None:
        self.cfg.linear.precond_max_age = _positive_int(max_age, "linear.precond_max_age")

    def set_precond(self, pc: Union[str, PrecondType, Preconditioner]) -> None:
        """Select a preconditioner kind by name, or install a user-built one."""
        if isinstance(pc, Preconditioner):
            self.adapter.set_preconditioner(pc)
            return
        self.cfg.linear.preconditioner = _coerce_enum(PrecondType, pc, "linear.preconditioner")
        self.adapter.set_preconditioner(None)

    def set_output_flags(self, kinds: Iterable[Union[str, OutputKind]]) -> None:
        self.cfg.output = parse_output_kinds(kinds)

    # ------------------------------------------------------------------
    # time-dependent problems
    # ------------------------------------------------------------------
    def set_time(self, time: float) -> None:
        self.adapter.set_time(time)

    def set_time_step(self, time_step: float) -> None:
        self.adapter.set_time_step(time_step)

    # ------------------------------------------------------------------
    # accessors
    # ------------------------------------------------------------------
    def get_sln_vector(self) -> Optional[np.ndarray]:
        return self.sln_vector

    def get_num_iters(self) -> int:
        return self.stats.outer_iterations

    def get_residual(self) -> float:
        return self.stats.residual_norm

    def get_num_lin_iters(self) -> int:
        return self.stats.linear_iterations

    def get_achieved_tol(self) -> float:
        return self.stats.achieved_tol

    # ------------------------------------------------------------------
    # solve
    # ------------------------------------------------------------------
    def _emit(self, kind: OutputKind, msg: str, *args) -> None:
        level = output_log_level(self.cfg.output, kind)
        if level is not None:
            logger.log(level, msg, *args)

    def _sync_config(self) -> None:
        lin = self.cfg.linear
        self.adapter.precond_type = lin.preconditioner
        self.adapter.precond_params = dict(lin.precond_params)
        self.adapter.backend = lin.backend
        self._lifecycle.policy = lin.reuse_policy
        self._lifecycle.max_age = int(lin.precond_max_age)

    def _log_parameters(self, n: int) -> None:
        conv = self.cfg.convergence
        lin = self.cfg.linear
        self._emit(
            OutputKind.PARAMETERS,
            "newton setup: n=%d max_iters=%d norm=%s/%s tests=%s abs=%s rel=%s update=%s wrms=%s",
            n,
            conv.max_iters,
            conv.norm_type.value,
            conv.scale_type.value,
            ",".join(conv.enabled_tests()),
            conv.abs_resid,
            conv.rel_resid,
            conv.update,
            conv.wrms,
        )
        self._emit(
            OutputKind.PARAMETERS,
            "linear setup: backend=%s method=%s max_its=%d tol=%.3e krylov=%d pc=%s reuse=%s max_age=%d jacobian=%s",
            lin.backend,
            lin.method.value,
            lin.max_iters,
            lin.tolerance,
            lin.krylov_subspace_size,
            lin.preconditioner.value,
            lin.reuse_policy.value,
            lin.precond_max_age,
            "explicit" if self.adapter.has_jacobian else "matrix-free",
        )

    def _log_check(self, k: int, check: ConvergenceCheck) -> None:
        self._emit(
            OutputKind.OUTER_ITERATION,
            "newton iter=%d |F|=%.6e |dx|=%.3e lin_its=%d",
            k,
            check.residual_norm,
            self.stats.update_norm,
            self.stats.linear_iterations,
        )
        self._emit(OutputKind.OUTER_ITERATION_STATUS_TEST, "newton iter=%d status=%s", k, check.status.value)
        for c in check.criteria:
            self._emit(
                OutputKind.TEST_DETAILS,
                "  test %-9s value=%.6e threshold=%.6e %s",
                c.name,
                c.value,
                c.threshold,
                "pass" if c.passed else "fail",
            )

    def _linear_monitor(self, its: int, rnorm: float) -> None:
        self._emit(OutputKind.LINEAR_SOLVER_DETAILS, "  linear its=%d rel_res=%.6e", its, rnorm)

    def _newton_step(self, x: np.ndarray, r: np.ndarray) -> np.ndarray:
        lin = self.cfg.linear
        if self.adapter.has_jacobian:
            J = self.adapter.evaluate_jacobian(x)
        else:
            J = matrix_free_operator(self.adapter, x, r, lin)
            self._emit(OutputKind.DETAILS, "using matrix-free Jacobian (fd_eps=%.3e)", lin.fd_eps)

        use_pc = self.adapter.wants_preconditioner and lin.method is not LinearMethod.LU
        monitor = None
        if output_log_level(self.cfg.output, OutputKind.LINEAR_SOLVER_DETAILS) is not None:
            monitor = self._linear_monitor

        retried = False
        while True:
            P = self._lifecycle.acquire(self.adapter, x, self.stats) if use_pc else None
            if P is not None:
                self._emit(
                    OutputKind.DETAILS,
                    "preconditioner %s id=%#x age=%d computes=%d",
                    P.kind,
                    id(P),
                    self._lifecycle.age,
                    P.n_computes,
                )
            handle = configure_linear_solve(J, P, lin)
            try:
                result = solve_step(handle, r, self.stats, monitor=monitor)
            except LinearSolveError as exc:
                if retried:
                    raise
                retried = True
                logger.warning("%s; rebuilding preconditioner and retrying once", exc)
                self._lifecycle.request_rebuild()
                continue
            self._emit(
                OutputKind.INNER_ITERATION,
                "linear solve method=%s its=%d rel_res=%.3e",
                result.method,
                result.n_iter,
                result.rel_residual,
            )
            return result.x

    def _fail(self, status: ConvergenceStatus, exc: Exception) -> SolveFailed:
        self.state = SolverState.FAILED
        msg = f"Newton solve failed ({status.value}) after {self.stats.outer_iterations} iterations: {exc}"
        logger.error(msg)
        return SolveFailed(
            msg,
            stats=self.stats.copy(),
            status=status,
            solution=None if self.sln_vector is None else self.sln_vector.copy(),
        )

    def _check_setup(self) -> None:
        """Reject linear setups the problem cannot serve before anything is evaluated."""
        lin = self.cfg.linear
        adapter = self.adapter
        if adapter.has_jacobian:
            return
        if lin.method is LinearMethod.LU:
            raise ValueError("linear_method='lu' requires an explicit Jacobian matrix")
        if adapter.wants_preconditioner and not adapter.can_compute_preconditioner:
            P = adapter.get_preconditioner()
            if not (adapter.has_user_preconditioner and P is not None and P.is_ready):
                raise ValueError(
                    f"preconditioner {lin.preconditioner.value!r} needs a matrix but the problem is "
                    "matrix-free; install a computed preconditioner or use preconditioner='none'"
                )

    def solve(self, x0, *, raise_on_failure: bool = False) -> NonlinearSolveResult:
        """
        Run the Newton iteration from x0 (not modified).

        Returns a NonlinearSolveResult whose status is CONVERGED,
        MAX_ITERATIONS_EXCEEDED or DIVERGED; with raise_on_failure the latter
        two raise SolveFailed. Evaluation failures, a linear solve that fails
        twice in one iteration and any other error inside the loop always
        raise SolveFailed. A configuration the problem cannot serve raises
        ValueError before the first evaluation.
        """
        evaluator = ConvergenceEvaluator(self.cfg.convergence)
        self._sync_config()
        self._check_setup()
        self.stats.reset()

        x = np.array(x0, dtype=np.float64).ravel()
        self.sln_vector = x
        self.state = SolverState.ITERATING
        self._log_parameters(x.size)

        stats = self.stats
        dx: Optional[np.ndarray] = None
        k = 0
        try:
            while True:
                r = self.adapter.evaluate_residual(x)
                check = evaluator.check(k, r, x, dx)
                stats.residual_norm = check.residual_norm
                stats.history_res.append(check.residual_norm)
                if k == 0:
                    stats.initial_residual_norm = check.residual_norm
                self._log_check(k, check)
                if check.status.is_terminal:
                    break

                dx = self._newton_step(x, r)
                if self.step_hook is not None:
                    dx = np.asarray(self.step_hook(x.copy(), dx.copy(), r.copy()), dtype=np.float64).ravel()
                    if dx.shape != x.shape:
                        raise ValueError(f"step_hook returned shape {dx.shape}, expected {x.shape}")
                x += dx
                stats.update_norm = evaluator.update_norm(dx)
                k += 1
                stats.outer_iterations = k
        except EvaluationError as exc:
            raise self._fail(ConvergenceStatus.EVALUATION_FAILED, exc) from exc
        except LinearSolveError as exc:
            raise self._fail(ConvergenceStatus.LINEAR_SOLVE_FAILED, exc) from exc
        except Exception as exc:
            raise self._fail(ConvergenceStatus.SOLVER_ERROR, exc) from exc

        status = check.status
        if status is ConvergenceStatus.CONVERGED:
            self.state = SolverState.CONVERGED
            message = None
            logger.debug(
                "newton converged: iters=%d |F|=%.3e lin_its=%d",
                stats.outer_iterations,
                stats.residual_norm,
                stats.linear_iterations,
            )
        else:
            self.state = SolverState.FAILED
            message = (
                f"Newton solve ended with status {status.value} after {stats.outer_iterations} "
                f"iterations (|F|={stats.residual_norm:.3e})"
            )
            logger.warning(message)

        result = NonlinearSolveResult(x=x.copy(), status=status, stats=stats.copy(), message=message)
        if raise_on_failure:
            result.raise_for_status()
        return result


def solve_nonlinear(
    problem: Any,
    x0,
    cfg: Optional[NewtonConfig] = None,
    **kwargs,
) -> NonlinearSolveResult:
    """One-shot helper: build a NewtonSolver and solve from x0."""
    raise_on_failure = bool(kwargs.pop("raise_on_failure", False))
    return NewtonSolver(problem, cfg, **kwargs).solve(x0, raise_on_failure=raise_on_failure)


def _positive_int(value: Any, where: str) -> int:
    val = int(value)
    if val < 1:
        raise ValueError(f"{where}: must be >= 1, got {value!r}")
    return val


def _positive_float(value: Any, where: str) -> float:
    val = float(value)
    if not np.isfinite(val) or val <= 0.0:
        raise ValueError(f"{where}: must be a positive finite number, got {value!r}")
    return val
