# operators/solve.py
from __future__ import annotations

import logging
from typing import Protocol, runtime_checkable

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from schwarz.core.config import LocalSolverKind
from schwarz.core.errors import LocalSolveError

log = logging.getLogger(__name__)


@runtime_checkable
class LinearOperatorLike(Protocol):
    """{height, width, apply} capability shared by every operator in the package."""

    @property
    def height(self) -> int: ...

    @property
    def width(self) -> int: ...

    def apply(self, x: np.ndarray) -> np.ndarray: ...


def as_scipy_operator(op: LinearOperatorLike, dtype=None) -> spla.LinearOperator:
    """scipy LinearOperator view of any {height, width, apply} object."""
    return spla.LinearOperator((op.height, op.width), matvec=op.apply, dtype=dtype)


# ============================
# Subdomain local solves
# ============================

class SubdomainLocalSolve:
    """
    Approximate inverse of one subdomain's Robin matrix, set up once.

    kind selects the strategy:
      SUPERLU    : scipy splu factorization, reused for every apply
      FACTORIZED : scipy factorized (UMFPACK when scikit-umfpack is installed)
      GMRES_ILU  : scipy gmres preconditioned with spilu

    Singular factorizations and non-converged iterations raise LocalSolveError.
    """

    def __init__(
        self,
        A: sp.spmatrix,
        kind: LocalSolverKind = LocalSolverKind.SUPERLU,
        *,
        tol: float = 1e-12,
        max_iter: int = 500,
        ident: int = -1,
    ):
        if A.shape[0] != A.shape[1]:
            raise ValueError(f"local matrix must be square, got {A.shape}")
        self.A = A.tocsc()
        self.kind = LocalSolverKind(kind)
        self.tol = float(tol)
        self.max_iter = int(max_iter)
        self.ident = int(ident)
        self._solve = None
        self._M = None

        if self.height == 0:
            return
        try:
            if self.kind is LocalSolverKind.SUPERLU:
                self._solve = spla.splu(self.A).solve
            elif self.kind is LocalSolverKind.FACTORIZED:
                self._solve = spla.factorized(self.A)
            else:
                ilu = spla.spilu(self.A)
                self._M = spla.LinearOperator(self.A.shape, matvec=ilu.solve, dtype=self.A.dtype)
        except RuntimeError as exc:
            raise LocalSolveError(
                f"subdomain {self.ident}: {self.kind.value} setup failed: {exc}", (self.ident,)
            ) from exc

    @property
    def height(self) -> int:
        return int(self.A.shape[0])

    @property
    def width(self) -> int:
        return int(self.A.shape[1])

    def apply(self, b: np.ndarray) -> np.ndarray:
        b = np.asarray(b)
        if b.shape != (self.width,):
            raise ValueError(f"rhs has shape {b.shape}, expected ({self.width},)")
        dtype = np.result_type(self.A.dtype, b.dtype)
        if self.height == 0:
            return np.zeros(0, dtype=dtype)

        if self._solve is not None:
            if np.iscomplexobj(b) and not np.iscomplexobj(self.A.data):
                # real factor: solve the two parts separately
                x = self._solve(np.ascontiguousarray(b.real)) + 1j * self._solve(np.ascontiguousarray(b.imag))
            else:
                x = self._solve(b.astype(dtype, copy=False))
        else:
            x, info = spla.gmres(
                self.A, b.astype(dtype, copy=False), rtol=self.tol, atol=0.0,
                restart=min(self.height, 50), maxiter=self.max_iter, M=self._M,
            )
            if info != 0:
                raise LocalSolveError(
                    f"subdomain {self.ident}: gmres did not converge (info={info})", (self.ident,)
                )

        if not np.all(np.isfinite(x)):
            raise LocalSolveError(f"subdomain {self.ident}: non-finite local solution", (self.ident,))
        return x

    def __repr__(self) -> str:
        return f"SubdomainLocalSolve(ident={self.ident}, n={self.height}, kind={self.kind.value})"


def make_local_solver(A: sp.spmatrix, kind: LocalSolverKind, **kwargs) -> SubdomainLocalSolve:
    return SubdomainLocalSolve(A, kind, **kwargs)
