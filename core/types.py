"""
Strongly typed containers for Newton solver configuration.

Conventions:
- A disabled convergence test is represented by ``None``.
- Enum-valued options accept either the enum member or its string value
  (case-insensitive) when built through ``from_dict``.
- ``from_dict`` raises ValueError/TypeError with a dotted location so YAML
  errors point to the offending key.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

FloatArray = NDArray[np.float64]


class LinearMethod(str, Enum):
    """Inner linear solver; all but LU are Krylov methods."""

    GMRES = "gmres"
    CG = "cg"
    CGS = "cgs"
    TFQMR = "tfqmr"
    BICGSTAB = "bicgstab"
    LU = "lu"


class PrecondReusePolicy(str, Enum):
    REBUILD = "rebuild"
    REUSE = "reuse"
    RECOMPUTE = "recompute"


class PrecondType(str, Enum):
    NONE = "none"
    JACOBI = "jacobi"
    ILU = "ilu"


class NormType(str, Enum):
    ONE = "one"
    TWO = "two"
    MAX = "max"


class ScaleType(str, Enum):
    SCALED = "scaled"
    UNSCALED = "unscaled"


class OutputKind(str, Enum):
    """Selectable solver output; warnings and errors are always logged."""

    OUTER_ITERATION = "outer_iteration"
    OUTER_ITERATION_STATUS_TEST = "outer_iteration_status_test"
    INNER_ITERATION = "inner_iteration"
    PARAMETERS = "parameters"
    DETAILS = "details"
    LINEAR_SOLVER_DETAILS = "linear_solver_details"
    TEST_DETAILS = "test_details"
    DEBUG = "debug"


_ENUM_ALIASES: Dict[type, Dict[str, str]] = {
    LinearMethod: {"bicgstab": "bicgstab", "bcgs": "bicgstab", "direct": "lu", "splu": "lu"},
    PrecondType: {"": "none", "null": "none", "identity": "none", "ifpack": "ilu", "new ifpack": "ilu"},
    NormType: {"onenorm": "one", "l1": "one", "twonorm": "two", "l2": "two", "maxnorm": "max", "inf": "max"},
}


def _coerce_enum(enum_cls: type[Enum], value: Any, where: str) -> Enum:
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        text = _ENUM_ALIASES.get(enum_cls, {}).get(text, text)
        try:
            return enum_cls(text)
        except ValueError:
            allowed = [e.value for e in enum_cls]
            raise ValueError(f"{where}: invalid value {value!r}, allowed={allowed}")
    raise TypeError(f"{where}: expected str or {enum_cls.__name__}, got {type(value).__name__}")


def _opt_float(d: Mapping[str, Any], key: str, default: Optional[float], where: str) -> Optional[float]:
    """Read an optional positive float; ``None``/``false``/``"disabled"`` disable it."""
    if key not in d:
        return default
    raw = d[key]
    if raw is None or raw is False or (isinstance(raw, str) and raw.strip().lower() in ("disabled", "off", "none")):
        return None
    try:
        val = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}.{key}: invalid value {raw!r}") from exc
    if not np.isfinite(val) or val <= 0.0:
        raise ValueError(f"{where}.{key}: must be a positive finite number, got {raw!r}")
    return val


def _pos_int(d: Mapping[str, Any], key: str, default: int, where: str) -> int:
    raw = d.get(key, None)
    if raw is None:
        return default
    try:
        val = int(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{where}.{key}: invalid value {raw!r}") from exc
    if val < 1:
        raise ValueError(f"{where}.{key}: must be >= 1, got {val}")
    return val


def parse_output_kinds(value: Any, where: str = "output") -> FrozenSet[OutputKind]:
    """Build the output set from an iterable of names/members (or ``"all"``)."""
    if value is None:
        return frozenset()
    if isinstance(value, str):
        if value.strip().lower() == "all":
            return frozenset(OutputKind)
        value = [value]
    if isinstance(value, OutputKind):
        value = [value]
    if not isinstance(value, Iterable):
        raise TypeError(f"{where}: expected a list of output kinds, got {type(value).__name__}")
    return frozenset(_coerce_enum(OutputKind, v, where) for v in value)


@dataclass(slots=True)
class ConvergenceConfig:
    """Outer (nonlinear) stopping tests; all enabled tests must pass together."""

    max_iters: int = 10
    norm_type: NormType = NormType.TWO
    scale_type: ScaleType = ScaleType.SCALED
    abs_resid: Optional[float] = 1.0e-6
    rel_resid: Optional[float] = 1.0e-2
    update: Optional[float] = None
    wrms: Optional[Tuple[float, float]] = None  # (rtol, atol)
    divergence_threshold: Optional[float] = None

    def enabled_tests(self) -> Tuple[str, ...]:
        names = []
        if self.abs_resid is not None:
            names.append("abs_resid")
        if self.rel_resid is not None:
            names.append("rel_resid")
        if self.update is not None:
            names.append("update")
        if self.wrms is not None:
            names.append("wrms")
        return tuple(names)

    def validate(self) -> None:
        if int(self.max_iters) < 1:
            raise ValueError(f"convergence.max_iters must be >= 1, got {self.max_iters}")
        if not self.enabled_tests():
            raise ValueError(
                "convergence: all tests are disabled; enable at least one of "
                "abs_resid, rel_resid, update, wrms"
            )
        if self.wrms is not None:
            rtol, atol = self.wrms
            if rtol < 0.0 or atol < 0.0 or (rtol == 0.0 and atol == 0.0):
                raise ValueError(f"convergence.wrms: need rtol, atol >= 0 and not both zero, got {self.wrms}")
        if self.divergence_threshold is not None:
            thr = float(self.divergence_threshold)
            # |F0| > thr * |F0| would flag the initial guess itself
            if not np.isfinite(thr) or thr < 1.0:
                raise ValueError(
                    f"convergence.divergence_threshold must be a finite number >= 1, got {self.divergence_threshold}"
                )

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where: str = "convergence") -> "ConvergenceConfig":
        defaults = cls()
        wrms = d.get("wrms", None)
        if isinstance(wrms, str) and wrms.strip().lower() in ("disabled", "off", "none"):
            wrms = None
        if wrms is not None and wrms is not False:
            if isinstance(wrms, Mapping):
                wrms = (wrms.get("rtol", 1.0e-2), wrms.get("atol", 1.0e-8))
            try:
                rtol, atol = (float(v) for v in wrms)
            except (TypeError, ValueError) as exc:
                raise ValueError(f"{where}.wrms: expected (rtol, atol), got {wrms!r}") from exc
            wrms = (rtol, atol)
        else:
            wrms = None

        cfg = cls(
            max_iters=_pos_int(d, "max_iters", defaults.max_iters, where),
            norm_type=_coerce_enum(NormType, d.get("norm_type", defaults.norm_type), f"{where}.norm_type"),
            scale_type=_coerce_enum(ScaleType, d.get("scale_type", defaults.scale_type), f"{where}.scale_type"),
            abs_resid=_opt_float(d, "abs_resid_tol", defaults.abs_resid, where),
            rel_resid=_opt_float(d, "rel_resid_tol", defaults.rel_resid, where),
            update=_opt_float(d, "update_tol", defaults.update, where),
            wrms=wrms,
            divergence_threshold=_opt_float(d, "divergence_threshold", defaults.divergence_threshold, where),
        )
        cfg.validate()
        return cfg


@dataclass(slots=True)
class LinearSolveConfig:
    """Inner linear solve and preconditioner lifecycle options."""

    method: LinearMethod = LinearMethod.GMRES
    max_iters: int = 800
    tolerance: float = 1.0e-8
    krylov_subspace_size: int = 50
    reuse_policy: PrecondReusePolicy = PrecondReusePolicy.RECOMPUTE
    precond_max_age: int = 999
    preconditioner: PrecondType = PrecondType.NONE
    precond_params: Dict[str, Any] = field(default_factory=dict)
    backend: str = "scipy"
    options_prefix: str = ""
    fd_eps: float = 1.0e-8

    @classmethod
    def from_dict(cls, d: Mapping[str, Any], *, where: str = "linear") -> "LinearSolveConfig":
        defaults = cls()
        tol = _opt_float(d, "ls_tolerance", defaults.tolerance, where)
        if tol is None:
            raise ValueError(f"{where}.ls_tolerance: cannot be disabled")
        fd_eps = _opt_float(d, "fd_eps", defaults.fd_eps, where)
        if fd_eps is None:
            raise ValueError(f"{where}.fd_eps: cannot be disabled")

        params = d.get("precond_params", None) or {}
        if not isinstance(params, Mapping):
            raise TypeError(f"{where}.precond_params: expected mapping, got {type(params).__name__}")

        backend = str(d.get("backend", defaults.backend)).strip().lower()
        if backend not in ("scipy", "petsc"):
            raise ValueError(f"{where}.backend: invalid value {backend!r}, allowed=['scipy', 'petsc']")

        return cls(
            method=_coerce_enum(LinearMethod, d.get("linear_method", defaults.method), f"{where}.linear_method"),
            max_iters=_pos_int(d, "ls_max_iters", defaults.max_iters, where),
            tolerance=tol,
            krylov_subspace_size=_pos_int(d, "krylov_subspace_size", defaults.krylov_subspace_size, where),
            reuse_policy=_coerce_enum(
                PrecondReusePolicy,
                d.get("precond_reuse_policy", defaults.reuse_policy),
                f"{where}.precond_reuse_policy",
            ),
            precond_max_age=_pos_int(d, "precond_max_age", defaults.precond_max_age, where),
            preconditioner=_coerce_enum(
                PrecondType, d.get("preconditioner", defaults.preconditioner), f"{where}.preconditioner"
            ),
            precond_params=dict(params),
            backend=backend,
            options_prefix=str(d.get("options_prefix", "") or ""),
            fd_eps=fd_eps,
        )


@dataclass(slots=True)
class NewtonConfig:
    """Configuration container for one NewtonSolver."""

    convergence: ConvergenceConfig = field(default_factory=ConvergenceConfig)
    linear: LinearSolveConfig = field(default_factory=LinearSolveConfig)
    output: FrozenSet[OutputKind] = frozenset()

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "NewtonConfig":
        conv = d.get("convergence", None) or {}
        lin = d.get("linear", None) or {}
        for name, block in (("convergence", conv), ("linear", lin)):
            if not isinstance(block, Mapping):
                raise TypeError(f"{name}: expected mapping, got {type(block).__name__}")
        return cls(
            convergence=ConvergenceConfig.from_dict(conv),
            linear=LinearSolveConfig.from_dict(lin),
            output=parse_output_kinds(d.get("output", None)),
        )
