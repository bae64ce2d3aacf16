# operators/assemble.py
from __future__ import annotations

from typing import Callable, Dict, Optional, Tuple

import numpy as np
import scipy.sparse as sp
from mpi4py import MPI

from schwarz.core.config import ProblemConfig
from schwarz.core.mesh import Mesh
from schwarz.core.parmesh import ParMesh

Field = Callable[[np.ndarray, np.ndarray], np.ndarray]


# ============================
# Quadrature / reference elements
# ============================

_GAUSS_1D = np.array([-1.0, 1.0]) / np.sqrt(3.0)
_Q1_NODES = np.array([[-1.0, -1.0], [1.0, -1.0], [1.0, 1.0], [-1.0, 1.0]])

# P1 shape values at the three edge midpoints (exact for quadratics)
_P1_MIDPOINT_SHAPES = np.array([[0.5, 0.5, 0.0], [0.0, 0.5, 0.5], [0.5, 0.0, 0.5]])


def _q1_shapes(xi: float, eta: float) -> Tuple[np.ndarray, np.ndarray]:
    sx, sy = _Q1_NODES[:, 0], _Q1_NODES[:, 1]
    N = 0.25 * (1.0 + xi * sx) * (1.0 + eta * sy)
    dN = 0.25 * np.column_stack([sx * (1.0 + eta * sy), sy * (1.0 + xi * sx)])
    return N, dN


def quadrature(mesh: Mesh) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Element quadrature data.

    Returns
    -------
    points  : (ne, nq, 2) physical quadrature points
    weights : (ne, nq) weights including the Jacobian
    shapes  : (nq, k) shape function values
    grads   : (ne, nq, k, 2) physical shape function gradients
    """
    P = mesh.vertices[mesh.elements]  # (ne, k, 2)
    ne = mesh.num_elements

    if mesh.element_type == "tri":
        d1 = P[:, 1] - P[:, 0]
        d2 = P[:, 2] - P[:, 0]
        det = d1[:, 0] * d2[:, 1] - d1[:, 1] * d2[:, 0]
        if ne and np.any(det == 0.0):
            raise ValueError("degenerate triangle in mesh")
        g1 = np.stack([d2[:, 1], -d2[:, 0]], axis=-1) / det[:, None]
        g2 = np.stack([-d1[:, 1], d1[:, 0]], axis=-1) / det[:, None]
        G = np.stack([-(g1 + g2), g1, g2], axis=1)  # (ne, 3, 2)

        shapes = _P1_MIDPOINT_SHAPES
        points = np.einsum("qk,ekd->eqd", shapes, P)
        weights = np.repeat((np.abs(det) / 6.0)[:, None], 3, axis=1)
        grads = np.repeat(G[:, None], 3, axis=1)
        return points, weights, shapes, grads

    if mesh.element_type == "quad":
        shapes, points, weights, grads = [], [], [], []
        for xi in _GAUSS_1D:
            for eta in _GAUSS_1D:
                N, dN = _q1_shapes(xi, eta)
                J = np.einsum("eai,aj->eij", P, dN)  # dx_i / dxi_j
                det = J[:, 0, 0] * J[:, 1, 1] - J[:, 0, 1] * J[:, 1, 0]
                if ne and np.any(det == 0.0):
                    raise ValueError("degenerate quadrilateral in mesh")
                invJ = np.empty_like(J)
                invJ[:, 0, 0] = J[:, 1, 1] / det
                invJ[:, 1, 1] = J[:, 0, 0] / det
                invJ[:, 0, 1] = -J[:, 0, 1] / det
                invJ[:, 1, 0] = -J[:, 1, 0] / det
                shapes.append(N)
                points.append(P.transpose(0, 2, 1) @ N)
                weights.append(np.abs(det))
                grads.append(np.einsum("aj,eji->eai", dN, invJ))
        return (
            np.stack(points, axis=1),
            np.stack(weights, axis=1),
            np.stack(shapes, axis=0),
            np.stack(grads, axis=1),
        )

    raise ValueError(f"quadrature not defined for '{mesh.element_type}'")


# ============================
# Element kernels + assembly
# ============================

def element_matrices(mesh: Mesh, sigma: complex) -> np.ndarray:
    """Stiffness + σ·mass for every element, shape (ne, k, k)."""
    _, w, N, G = quadrature(mesh)
    K = np.einsum("eq,eqad,eqbd->eab", w, G, G)
    M = np.einsum("eq,qa,qb->eab", w, N, N)
    if sigma == 0:
        return K
    return K + sigma * M


def _coo(elements: np.ndarray, Ke: np.ndarray, n: int) -> sp.csr_matrix:
    k = elements.shape[1]
    rows = np.repeat(elements, k, axis=1).reshape(-1)
    cols = np.tile(elements, (1, k)).reshape(-1)
    return sp.coo_matrix((Ke.reshape(-1), (rows, cols)), shape=(n, n)).tocsr()


def assemble_system(mesh: Mesh, problem: ProblemConfig) -> sp.csr_matrix:
    """
    Assemble the Galerkin matrix of  -Δu + σ u  on `mesh` (no boundary rows).

    Returns
    -------
    A : scipy.sparse.csr_matrix (nv, nv), float or complex depending on σ
    """
    Ke = element_matrices(mesh, problem.sigma).astype(problem.dtype, copy=False)
    return _coo(mesh.elements, Ke, mesh.num_vertices)


def assemble_load_vector(mesh: Mesh, source: Optional[Field], dtype=np.float64) -> np.ndarray:
    """b_i = ∫ f φ_i, by element quadrature."""
    b = np.zeros(mesh.num_vertices, dtype=dtype)
    if source is None or mesh.num_elements == 0:
        return b
    X, w, N, _ = quadrature(mesh)
    fq = np.asarray(source(X[..., 0], X[..., 1]))
    be = np.einsum("eq,eq,qa->ea", w, np.broadcast_to(fq, w.shape), N)
    b = b.astype(np.result_type(dtype, be.dtype))
    np.add.at(b, mesh.elements.reshape(-1), be.reshape(-1))
    return b


def segment_mass_matrix(mesh: Mesh) -> sp.csr_matrix:
    """
    Mass matrix of a segment mesh (P1 on each segment):
        M_e = L/6 [[2, 1], [1, 2]]
    """
    if mesh.element_type != "segment":
        raise ValueError("segment_mass_matrix expects a segment mesh")
    L = mesh.element_measures()
    Me = L[:, None, None] / 6.0 * np.array([[2.0, 1.0], [1.0, 2.0]])[None]
    return _coo(mesh.elements, Me, mesh.num_vertices)


def lifted_system(
    A: sp.spmatrix, F: np.ndarray, dirichlet: np.ndarray, x_D: np.ndarray
) -> Tuple[sp.csr_matrix, np.ndarray]:
    """
    Serial essential-boundary lifting:
        A_bc[free, free] = A[free, free],  A_bc[D, D] = I
        B = F - A x_D  on free vertices,   B_D = x_D
    """
    dirichlet = np.asarray(dirichlet, dtype=bool)
    xd = np.where(dirichlet, x_D, 0.0)
    B = np.asarray(F - A @ xd)
    B[dirichlet] = xd[dirichlet]

    keep = sp.diags((~dirichlet).astype(float))
    A_bc = (keep @ A @ keep + sp.diags(dirichlet.astype(float))).tocsr()
    return A_bc, B


# ============================
# Distributed vertex fields
# ============================

def assemble_vertex_vector(pmesh: ParMesh, source: Optional[Field], dtype=np.float64) -> np.ndarray:
    """Global load vector restricted to the local vertices (contributions from all processes)."""
    return pmesh.accumulate(assemble_load_vector(pmesh.mesh, source, dtype=dtype))


def apply_global_operator(pmesh: ParMesh, A_local: sp.spmatrix, u: np.ndarray) -> np.ndarray:
    """(A u) at the local vertices, where A_local is the matrix assembled on the shard."""
    return pmesh.accumulate(A_local @ u)


def form_linear_system(
    pmesh: ParMesh,
    problem: ProblemConfig,
    load: np.ndarray,
    boundary_values: Optional[np.ndarray] = None,
    A_local: Optional[sp.spmatrix] = None,
) -> np.ndarray:
    """
    Lifted right-hand side as a process-consistent vertex field:
        B = F - A x_D on free vertices,  B_D = x_D
    """
    dirichlet = pmesh.dirichlet if problem.dirichlet else np.zeros(pmesh.mesh.num_vertices, dtype=bool)
    if A_local is None:
        A_local = assemble_system(pmesh.mesh, problem)
    if boundary_values is None:
        boundary_values = np.zeros(pmesh.mesh.num_vertices)
    dtype = np.result_type(problem.dtype, load.dtype, np.asarray(boundary_values).dtype)

    x_D = np.where(dirichlet, boundary_values, 0.0).astype(dtype)
    B = np.asarray(load, dtype=dtype) - apply_global_operator(pmesh, A_local, x_D)
    B[dirichlet] = x_D[dirichlet]
    return B


def compute_residual(
    pmesh: ParMesh,
    A_local: sp.spmatrix,
    u: np.ndarray,
    load: np.ndarray,
    dirichlet: Optional[np.ndarray] = None,
    boundary_values: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    r = F - A u   on free vertices
    r = x_D - u   on Dirichlet vertices
    """
    r = np.asarray(load) - apply_global_operator(pmesh, A_local, u)
    if dirichlet is not None and np.any(dirichlet):
        x_D = np.zeros(r.shape, dtype=r.dtype) if boundary_values is None else np.asarray(boundary_values)
        r = r.astype(np.result_type(r.dtype, x_D.dtype), copy=False)
        r[dirichlet] = x_D[dirichlet] - np.asarray(u)[dirichlet]
    return r


def residual_norms(
    pmesh: ParMesh,
    A_local: sp.spmatrix,
    u: np.ndarray,
    load: np.ndarray,
    dirichlet: Optional[np.ndarray] = None,
    boundary_values: Optional[np.ndarray] = None,
) -> Dict[str, float]:
    """
    Common residual diagnostics of the unlifted system, reduced over processes.
    """
    r = compute_residual(pmesh, A_local, u, load, dirichlet, boundary_values)
    f = np.array(load, copy=True)
    if dirichlet is not None and np.any(dirichlet):
        f = f.astype(np.result_type(f.dtype, r.dtype))
        f[dirichlet] = 0.0 if boundary_values is None else np.asarray(boundary_values)[dirichlet]

    fn = pmesh.global_norm(f)
    rn = pmesh.global_norm(r)
    rmax = float(np.max(np.abs(r[pmesh.owned]))) if np.any(pmesh.owned) else 0.0
    return {
        "||r||2": rn,
        "||f||2": fn,
        "||r||2/||f||2": rn / fn if fn > 0 else np.nan,
        "||u||2": pmesh.global_norm(u),
        "||r||inf": pmesh.comm.allreduce(rmax, op=MPI.MAX),
    }


def l2_error(pmesh: ParMesh, u: np.ndarray, exact: Field) -> Tuple[float, float]:
    """
    Discrete L2 error ||u_h - u|| and the L2 norm of u, by element quadrature.

    Every element lives on exactly one process, so local sums are reduced.
    """
    m = pmesh.mesh
    err2, ref2 = 0.0, 0.0
    if m.num_elements:
        X, w, N, _ = quadrature(m)
        uh = np.einsum("qa,ea->eq", N, np.asarray(u)[m.elements])
        ue = np.broadcast_to(np.asarray(exact(X[..., 0], X[..., 1])), w.shape)
        err2 = float(np.sum(w * np.abs(uh - ue) ** 2))
        ref2 = float(np.sum(w * np.abs(ue) ** 2))
    err2 = pmesh.comm.allreduce(err2, op=MPI.SUM)
    ref2 = pmesh.comm.allreduce(ref2, op=MPI.SUM)
    return float(np.sqrt(err2)), float(np.sqrt(ref2))
