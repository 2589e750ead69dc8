"""
Shared linear solver result types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import numpy as np

from core.types import LinearSolveConfig


@dataclass
class LinearSolveResult:
    x: np.ndarray
    converged: bool
    n_iter: int
    residual_norm: float
    rel_residual: float
    method: str
    message: Optional[str] = None
    diag: Optional[Dict[str, Any]] = None


@dataclass
class LinearSolveHandle:
    """
    A linear solve bound to one Jacobian and one preconditioner.

    ``J`` is a SciPy sparse matrix, dense ndarray or LinearOperator; ``P`` is a
    solvers.preconditioner.Preconditioner or None. Valid for one Newton
    iteration; ``backend_state`` holds backend objects (e.g. a PETSc KSP).
    """

    J: Any
    P: Any
    cfg: LinearSolveConfig
    matrix_free: bool = False
    backend_state: Dict[str, Any] = field(default_factory=dict)

    @property
    def size(self) -> int:
        return int(self.J.shape[0])
