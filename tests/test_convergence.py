"""
Outer convergence tests (solvers/convergence.py).

Tests:
1. Enabled criteria are combined with AND
2. A single enabled criterion reduces to its own threshold check
3. Update and WRMS tests cannot pass on the initial guess
4. Non-finite residuals and blow-up past divergence_threshold report DIVERGED
5. Scaled norms and the WRMS norm
6. A configuration with every test disabled fails fast
7. divergence_threshold below 1 is rejected
"""

from __future__ import annotations

import math

import numpy as np
import pytest

from core.types import ConvergenceConfig, NormType, ScaleType
from solvers.convergence import ConvergenceEvaluator, vector_norm, wrms_norm
from solvers.nonlinear_types import ConvergenceStatus


def _cfg(**overrides) -> ConvergenceConfig:
    """Unscaled two-norm config with everything disabled except the overrides."""
    base = dict(
        max_iters=10,
        norm_type=NormType.TWO,
        scale_type=ScaleType.UNSCALED,
        abs_resid=None,
        rel_resid=None,
        update=None,
        wrms=None,
    )
    base.update(overrides)
    return ConvergenceConfig(**base)


# =============================================================================
# Combination semantics
# =============================================================================


def test_all_enabled_criteria_must_pass_together():
    ev = ConvergenceEvaluator(_cfg(abs_resid=1.0e-3, rel_resid=1.0e-6))
    x = np.zeros(1)

    assert ev.check(0, np.array([1.0]), x).status is ConvergenceStatus.CONTINUE
    # abs passes, rel (1e-6 * 1.0) does not
    check = ev.check(1, np.array([1.0e-4]), x, np.array([0.1]))
    assert check.status is ConvergenceStatus.CONTINUE
    passed = {c.name: c.passed for c in check.criteria}
    assert passed == {"abs_resid": True, "rel_resid": False}

    check = ev.check(2, np.array([1.0e-7]), x, np.array([0.1]))
    assert check.status is ConvergenceStatus.CONVERGED


def test_abs_resid_alone_is_a_threshold_check():
    ev = ConvergenceEvaluator(_cfg(abs_resid=1.0e-6))
    x = np.zeros(2)
    assert ev.check(0, np.array([1.0e-7, 0.0]), x).status is ConvergenceStatus.CONVERGED
    ev.reset()
    assert ev.check(0, np.array([1.0e-5, 0.0]), x).status is ConvergenceStatus.CONTINUE


def test_rel_resid_is_relative_to_first_residual():
    ev = ConvergenceEvaluator(_cfg(rel_resid=1.0e-2))
    x = np.zeros(1)
    assert ev.check(0, np.array([4.0]), x).status is ConvergenceStatus.CONTINUE
    assert ev.initial_norm == pytest.approx(4.0)
    assert ev.check(1, np.array([0.05]), x, np.array([1.0])).status is ConvergenceStatus.CONTINUE
    check = ev.check(2, np.array([0.03]), x, np.array([1.0]))
    assert check.status is ConvergenceStatus.CONVERGED
    assert check.criteria[0].threshold == pytest.approx(0.04)


def test_reset_forgets_initial_residual():
    ev = ConvergenceEvaluator(_cfg(rel_resid=0.5))
    x = np.zeros(1)
    ev.check(0, np.array([10.0]), x)
    ev.reset()
    ev.check(0, np.array([1.0]), x)
    assert ev.initial_norm == pytest.approx(1.0)


def test_update_and_wrms_fail_on_initial_guess():
    ev = ConvergenceEvaluator(_cfg(update=1.0, wrms=(1.0e-2, 1.0e-8)))
    check = ev.check(0, np.array([0.0]), np.array([1.0]))
    assert check.status is ConvergenceStatus.CONTINUE
    assert [c.passed for c in check.criteria] == [False, False]
    assert all(math.isnan(c.value) for c in check.criteria)


def test_update_and_wrms_pass_with_small_step():
    ev = ConvergenceEvaluator(_cfg(update=1.0e-2, wrms=(1.0e-2, 1.0e-8)))
    x = np.array([1.0])
    ev.check(0, np.array([1.0]), x)
    check = ev.check(1, np.array([1.0]), x, np.array([1.0e-3]))
    assert check.status is ConvergenceStatus.CONVERGED


# =============================================================================
# Divergence and iteration cap
# =============================================================================


@pytest.mark.parametrize("bad", [np.nan, np.inf, -np.inf])
def test_non_finite_residual_is_diverged(bad):
    ev = ConvergenceEvaluator(_cfg(abs_resid=1.0, max_iters=1))
    check = ev.check(1, np.array([0.0, bad]), np.zeros(2), np.zeros(2))
    assert check.status is ConvergenceStatus.DIVERGED
    assert check.criteria == []


def test_divergence_threshold_relative_to_initial_residual():
    ev = ConvergenceEvaluator(_cfg(abs_resid=1.0e-8, divergence_threshold=100.0))
    x = np.zeros(1)
    ev.check(0, np.array([1.0]), x)
    assert ev.check(1, np.array([50.0]), x, x).status is ConvergenceStatus.CONTINUE
    assert ev.check(2, np.array([500.0]), x, x).status is ConvergenceStatus.DIVERGED


def test_max_iterations_reported_after_criteria():
    ev = ConvergenceEvaluator(_cfg(abs_resid=1.0e-6, max_iters=2))
    x = np.zeros(1)
    ev.check(0, np.array([1.0]), x)
    assert ev.check(1, np.array([0.5]), x, x).status is ConvergenceStatus.CONTINUE
    assert ev.check(2, np.array([0.25]), x, x).status is ConvergenceStatus.MAX_ITERATIONS_EXCEEDED
    # converging on the last allowed iteration wins over the cap
    assert ev.check(2, np.array([1.0e-9]), x, x).status is ConvergenceStatus.CONVERGED


# =============================================================================
# Norms
# =============================================================================


def test_vector_norms_unscaled_and_scaled():
    v = np.array([3.0, -4.0])
    assert vector_norm(v, NormType.ONE) == pytest.approx(7.0)
    assert vector_norm(v, NormType.TWO) == pytest.approx(5.0)
    assert vector_norm(v, NormType.MAX) == pytest.approx(4.0)
    assert vector_norm(v, NormType.ONE, ScaleType.SCALED) == pytest.approx(3.5)
    assert vector_norm(v, NormType.TWO, ScaleType.SCALED) == pytest.approx(5.0 / math.sqrt(2.0))
    assert vector_norm(v, NormType.MAX, ScaleType.SCALED) == pytest.approx(2.0)


def test_wrms_norm_weights_by_solution_magnitude():
    dx = np.array([1.0e-3, 1.0e-3])
    x = np.array([1.0, 10.0])
    w = np.array([1.0e-2, 1.0e-1]) + 1.0e-8
    expected = math.sqrt(np.mean((dx / w) ** 2))
    assert wrms_norm(dx, x, 1.0e-2, 1.0e-8) == pytest.approx(expected)
    assert wrms_norm(np.array([]), np.array([]), 1.0e-2, 1.0e-8) == 0.0


# =============================================================================
# Fail-fast configuration checks
# =============================================================================


def test_all_tests_disabled_fails_fast():
    cfg = _cfg()
    with pytest.raises(ValueError, match="all tests are disabled"):
        cfg.validate()
    with pytest.raises(ValueError, match="all tests are disabled"):
        ConvergenceEvaluator(cfg)


def test_invalid_wrms_tolerances_rejected():
    with pytest.raises(ValueError, match="wrms"):
        ConvergenceEvaluator(_cfg(wrms=(0.0, 0.0)))


@pytest.mark.parametrize("threshold", [0.5, 0.0, -2.0, math.inf])
def test_divergence_threshold_below_one_rejected(threshold):
    with pytest.raises(ValueError, match="divergence_threshold"):
        ConvergenceEvaluator(_cfg(abs_resid=1.0, divergence_threshold=threshold))


def test_divergence_threshold_of_one_keeps_initial_guess_alive():
    ev = ConvergenceEvaluator(_cfg(abs_resid=1.0e-8, divergence_threshold=1.0))
    assert ev.check(0, np.array([3.0, 4.0]), np.zeros(2)).status is ConvergenceStatus.CONTINUE
    assert ev.check(1, np.array([3.0, 4.0]), np.zeros(2), np.ones(2)).status is ConvergenceStatus.CONTINUE
