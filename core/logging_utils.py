"""
Logging setup for the Newton driver and the solver-output selection.

Solver messages go through module loggers; which optional message kinds are
emitted is decided by the OutputKind set in NewtonConfig.output.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import AbstractSet, Iterator, Optional

from core.types import OutputKind

ENV_LOG_LEVEL = "NEWTON_LOG_LEVEL"
ENV_DEBUG = "NEWTON_DEBUG"

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _parse_level(value, default_level: int) -> int:
    """Accept ints, digit strings and level names; anything else gives default_level."""
    if isinstance(value, int):
        return value
    text = str(value or "").strip().upper()
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text) if text else None
    return resolved if isinstance(resolved, int) else default_level


def get_log_level_from_env(default: str | int = "INFO") -> int:
    """
    NEWTON_LOG_LEVEL wins; otherwise NEWTON_DEBUG=1/true/yes/on selects DEBUG.
    """
    level = _parse_level(default, logging.INFO)
    env_level = os.environ.get(ENV_LOG_LEVEL)
    if env_level:
        return _parse_level(env_level, level)
    if str(os.environ.get(ENV_DEBUG, "")).strip().lower() in ("1", "true", "yes", "on"):
        return logging.DEBUG
    return level


def _rank_of(comm) -> Optional[int]:
    for getter in ("getRank", "Get_rank"):
        fn = getattr(comm, getter, None)
        if fn is not None:
            return int(fn())
    return None


def is_root_rank(comm=None) -> bool:
    """
    True on rank 0, and in serial runs.

    mpi4py is tried first; petsc4py is only consulted when it is already
    imported so this never triggers PETSc initialisation.
    """
    if comm is not None:
        rank = _rank_of(comm)
        if rank is not None:
            return rank == 0
    try:
        from mpi4py import MPI

        return int(MPI.COMM_WORLD.Get_rank()) == 0
    except ImportError:
        pass
    if "petsc4py.PETSc" in sys.modules:
        PETSc = sys.modules["petsc4py.PETSc"]
        return int(PETSc.COMM_WORLD.getRank()) == 0
    return True


def _console_handlers(logger: logging.Logger) -> Iterator[logging.Handler]:
    return (h for h in logger.handlers if not isinstance(h, logging.FileHandler))


def setup_logging(rank: int, *, level: int, quiet_nonroot: bool = True) -> None:
    """
    Configure root logging once; on non-root ranks console output is limited to warnings.
    """
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)

    console_level = max(level, logging.WARNING) if (quiet_nonroot and rank != 0) else level
    for handler in _console_handlers(root):
        handler.setLevel(console_level)


def output_log_level(output: AbstractSet[OutputKind], kind: OutputKind) -> Optional[int]:
    """
    Logging level for a selectable message kind, or None if it is switched off.

    DEBUG in the output set enables every kind at DEBUG level (outer
    iteration lines stay at INFO); otherwise selected kinds log at INFO.
    """
    if OutputKind.DEBUG in output:
        return logging.INFO if kind is OutputKind.OUTER_ITERATION else logging.DEBUG
    return logging.INFO if kind in output else None
