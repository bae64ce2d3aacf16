"""
Operators: discretization/assembly, local solves, interface operator, Krylov driver.

Public API:
- assemble_system, assemble_load_vector, segment_mass_matrix, form_linear_system, l2_error
- compute_residual, residual_norms (distributed, unlifted system)
- SubdomainLocalSolve, make_local_solver
- InterfaceOperator
- KrylovDriver, KrylovResult, ExternalKrylovWrapper
"""

# Assembly
from .assemble import (
    assemble_load_vector,
    assemble_system,
    assemble_vertex_vector,
    apply_global_operator,
    compute_residual,
    form_linear_system,
    l2_error,
    lifted_system,
    residual_norms,
    segment_mass_matrix,
)

# Linear solves
from .solve import (
    LinearOperatorLike,
    SubdomainLocalSolve,
    as_scipy_operator,
    make_local_solver,
)

# Domain decomposition
from .ddoperator import InterfaceOperator
from .krylov import ExternalKrylovWrapper, KrylovDriver, KrylovResult, krylov_solve

__all__ = [
    # Assembly
    "assemble_load_vector",
    "assemble_system",
    "assemble_vertex_vector",
    "apply_global_operator",
    "compute_residual",
    "form_linear_system",
    "l2_error",
    "lifted_system",
    "residual_norms",
    "segment_mass_matrix",

    # Solves
    "LinearOperatorLike",
    "SubdomainLocalSolve",
    "as_scipy_operator",
    "make_local_solver",

    # Domain decomposition
    "InterfaceOperator",
    "ExternalKrylovWrapper",
    "KrylovDriver",
    "KrylovResult",
    "krylov_solve",
]
