"""
Core: problem definition (mesh, configs, cases, partition, distributed mesh).
"""

from .config import (
    CaseConfig,
    DDConfig,
    KrylovConfig,
    LocalSolverKind,
    ProblemConfig,
    optimized_robin_parameter,
    resolve_transmission,
)
from .cases import make_default_cases
from .errors import InvariantViolation, LocalSolveError
from .mesh import Mesh, rectangle_mesh
from .partition import cartesian_partitioning, check_partition
from .parmesh import ParMesh

__all__ = [
    "CaseConfig",
    "DDConfig",
    "KrylovConfig",
    "LocalSolverKind",
    "ProblemConfig",
    "optimized_robin_parameter",
    "resolve_transmission",
    "make_default_cases",
    "InvariantViolation",
    "LocalSolveError",
    "Mesh",
    "rectangle_mesh",
    "cartesian_partitioning",
    "check_partition",
    "ParMesh",
]
