# operators/krylov.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np
import scipy.sparse.linalg as spla

from schwarz.core.config import KrylovConfig
from schwarz.operators.solve import LinearOperatorLike

log = logging.getLogger(__name__)


@dataclass
class KrylovResult:
    solution: np.ndarray
    converged: bool
    iterations: int
    residual_norm: float          # ||b - A x|| / ||b|| of the returned solution
    history: List[float] = field(default_factory=list)


def _global_view(operator) -> Tuple[Callable, Callable, Callable, int]:
    """
    (matvec, to_global, to_local, n) on the replicated global vector.

    Distributed operators expose scatter_global / gather_global; plain
    {height, width, apply} operators are used as they are.
    """
    if hasattr(operator, "gather_global") and hasattr(operator, "scatter_global"):
        def matvec(v):
            return operator.gather_global(operator.apply(operator.scatter_global(np.asarray(v).reshape(-1))))
        return matvec, operator.gather_global, operator.scatter_global, int(operator.global_size)

    def ident(v):
        return np.asarray(v)

    def apply(v):
        return operator.apply(np.asarray(v).reshape(-1))

    return apply, ident, ident, int(operator.width)


class KrylovDriver:
    """
    Restarted GMRES (scipy) on an implicit operator.

    Every process runs the same iteration on the replicated global vector; the
    matvec scatters to the local block, applies the operator and gathers back.
    Non-convergence is reported in the result, never raised.
    """

    def __init__(self, config: Optional[KrylovConfig] = None):
        self.config = config or KrylovConfig()

    def solve(self, operator: LinearOperatorLike, rhs: np.ndarray, x0: Optional[np.ndarray] = None) -> KrylovResult:
        cfg = self.config
        if operator.height != operator.width:
            raise ValueError(f"operator must be square, got {operator.height}x{operator.width}")
        rhs = np.asarray(rhs)
        if rhs.shape != (operator.height,):
            raise ValueError(f"rhs has shape {rhs.shape}, expected ({operator.height},)")

        matvec, to_global, to_local, n = _global_view(operator)
        b = to_global(rhs)
        dtype = np.result_type(b.dtype, getattr(operator, "dtype", np.float64))
        bnorm = float(np.linalg.norm(b))

        if n == 0 or bnorm == 0.0:
            return KrylovResult(
                solution=np.zeros(operator.height, dtype=dtype), converged=True,
                iterations=0, residual_norm=0.0,
            )

        history: List[float] = []

        def count(pr_norm):
            history.append(float(pr_norm))

        # one restart cycle per gmres call, so that max_iter caps inner iterations exactly
        restart = min(int(cfg.restart), int(cfg.max_iter), n)
        A = spla.LinearOperator((n, n), matvec=matvec, dtype=dtype)
        b = b.astype(dtype, copy=False)
        x = np.zeros(n, dtype=dtype) if x0 is None else to_global(np.asarray(x0)).astype(dtype)
        info = 1
        remaining = int(cfg.max_iter)
        while remaining > 0:
            before = len(history)
            x, info = spla.gmres(
                A, b, x0=x, rtol=cfg.tol, atol=0.0,
                restart=min(restart, remaining), maxiter=1,
                callback=count, callback_type="pr_norm",
            )
            if info == 0:
                break
            remaining -= max(len(history) - before, 1)

        res = float(np.linalg.norm(b - matvec(x))) / bnorm
        converged = info == 0
        if converged:
            log.info("GMRES converged in %d iterations, relative residual %.3e", len(history), res)
        else:
            log.warning("GMRES did not converge (info=%d) after %d iterations, relative residual %.3e",
                        info, len(history), res)

        return KrylovResult(
            solution=to_local(x), converged=converged,
            iterations=len(history), residual_norm=res, history=history,
        )


def krylov_solve(
    operator: LinearOperatorLike, rhs: np.ndarray, tol: float, max_iter: int, restart: int
) -> Tuple[np.ndarray, bool, int]:
    """solve(operator, rhs, tol, maxIter, restartDim) -> (solution, converged, iterations)."""
    res = KrylovDriver(KrylovConfig(tol=tol, max_iter=max_iter, restart=restart)).solve(operator, rhs)
    return res.solution, res.converged, res.iterations


class ExternalKrylovWrapper:
    """The Krylov solve exposed as an operator: apply(b) ≈ A⁻¹ b."""

    def __init__(self, operator: LinearOperatorLike, driver: Optional[KrylovDriver] = None):
        self.operator = operator
        self.driver = driver or KrylovDriver()
        self.last_result: Optional[KrylovResult] = None

    @property
    def height(self) -> int:
        return self.operator.width

    @property
    def width(self) -> int:
        return self.operator.height

    def apply(self, b: np.ndarray) -> np.ndarray:
        self.last_result = self.driver.solve(self.operator, b)
        return self.last_result.solution
