from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import numpy as np


class LocalSolverKind(str, Enum):
    """Named strategies for the subdomain boundary-value solve."""

    SUPERLU = "superlu"          # scipy splu, factor once, reuse
    FACTORIZED = "factorized"    # scipy factorized (UMFPACK when scikit-umfpack is present)
    GMRES_ILU = "gmres_ilu"      # scipy gmres preconditioned with spilu


@dataclass(frozen=True)
class ProblemConfig:
    """
    Model operator  -Δu + σ u = f  with essential data on the physical boundary.

    sigma may be negative or complex (Helmholtz: σ = -k²).
    """
    sigma: complex = 1.0
    dirichlet: bool = True

    @property
    def dtype(self) -> np.dtype:
        return np.result_type(self.sigma, np.float64)


@dataclass(frozen=True)
class DDConfig:
    num_subdomains: int
    transmission: Optional[complex] = None   # α in T = α M_Γ; None -> optimized_robin_parameter
    local_solver: LocalSolverKind = LocalSolverKind.SUPERLU
    local_tol: float = 1e-12
    local_max_iter: int = 500

    def __post_init__(self) -> None:
        if int(self.num_subdomains) < 1:
            raise ValueError("DDConfig requires num_subdomains >= 1.")
        if self.transmission is not None and self.transmission == 0:
            raise ValueError("transmission coefficient must be nonzero.")
        if float(self.local_tol) <= 0.0:
            raise ValueError("local_tol must be positive.")
        # accept plain strings from CLI / yaml
        object.__setattr__(self, "local_solver", LocalSolverKind(self.local_solver))


@dataclass(frozen=True)
class KrylovConfig:
    tol: float = 1e-8
    max_iter: int = 100
    restart: int = 100

    def __post_init__(self) -> None:
        if float(self.tol) <= 0.0:
            raise ValueError("KrylovConfig requires tol > 0.")
        if int(self.max_iter) < 1 or int(self.restart) < 1:
            raise ValueError("KrylovConfig requires max_iter, restart >= 1.")


@dataclass(frozen=True)
class CaseConfig:
    name: str
    exact: Optional[Callable[[np.ndarray, np.ndarray], np.ndarray]] = None
    source: Optional[Callable[[np.ndarray, np.ndarray], np.ndarray]] = None


def optimized_robin_parameter(hmin: float, sigma: complex) -> complex:
    """
    Default transmission coefficient α.

    Definite case (real σ >= 0): optimized Robin parameter for η - Δ,
        α = ((π² + σ)(π²/h² + σ))^{1/4}
    Indefinite / complex σ: impedance condition α = -i sqrt(-σ).
    """
    if hmin <= 0.0:
        raise ValueError("hmin must be positive.")
    if np.imag(sigma) != 0 or float(np.real(sigma)) < 0.0:
        return complex(-1j * np.sqrt(-complex(sigma)))
    s = float(np.real(sigma))
    k_min = np.pi ** 2 + s
    k_max = (np.pi / hmin) ** 2 + s
    return float((k_min * k_max) ** 0.25)


def resolve_transmission(cfg: DDConfig, problem: ProblemConfig, hmin: float) -> complex:
    if cfg.transmission is not None:
        return cfg.transmission
    return optimized_robin_parameter(hmin, problem.sigma)
