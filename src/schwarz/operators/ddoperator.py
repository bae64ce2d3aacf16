# operators/ddoperator.py
"""
Optimized-Schwarz interface operator.

Unknowns live on interfaces. Interface g = (sd0, sd1) carries a trace vector
[λ_0; λ_1] of Robin data entering sd0 and sd1, both on the free interface
vertices (sorted by global id). With the impedance matrix T = α M_Γ, subdomain s
solves

    (A_s + Σ_g P_gᵀ T_g P_g) u_s = b_s + Σ_g P_gᵀ λ_{g,s}

and sends back the outgoing trace w_{g,s} = -λ_{g,s} + 2 T_g P_g u_s. One
application of the operator is

    y_g = x_g - Π w_g(x),        Π swaps the two halves,

so that the coupled problem reads  apply(λ) = get_reduced_source(B).

Layout: interface i is owned by the lowest rank holding one of its faces. The
local block of a process is the concatenation, in enumeration order, of the
traces of the interfaces it owns; the global vector is the concatenation of the
local blocks in rank order.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla
from mpi4py import MPI

from schwarz.core.comm import exchange, rendezvous
from schwarz.core.config import DDConfig, ProblemConfig, resolve_transmission
from schwarz.core.errors import LocalSolveError, verify
from schwarz.core.parmesh import ParMesh
from schwarz.decomposition.interfaces import InterfaceMap
from schwarz.decomposition.submesh import SubMesh
from schwarz.operators.assemble import assemble_system, segment_mass_matrix
from schwarz.operators.solve import SubdomainLocalSolve, as_scipy_operator, make_local_solver

log = logging.getLogger(__name__)


@dataclass
class _Adjacent:
    """One interface seen from a subdomain: side 0 if the subdomain is sd0."""
    index: int
    side: int
    pos: np.ndarray       # trace vertex -> position among the subdomain's free vertices
    T: sp.csr_matrix


@dataclass
class _SubdomainState:
    ident: int
    free_gids: np.ndarray
    solver: Optional[SubdomainLocalSolve] = None
    adjacent: List[_Adjacent] = field(default_factory=list)
    multiplicity: Optional[np.ndarray] = None

    @property
    def num_free(self) -> int:
        return int(self.free_gids.size)


class InterfaceOperator:
    """
    Matrix-free interface operator with {height, width, apply}.

    Construction is collective over pmesh.comm: interface meshes and subdomain
    meshes are gathered on their roots, local Robin matrices are assembled and
    factorized once. apply / get_reduced_source / recover_domain_solution are
    collective and must be called in the same order on every process.
    """

    def __init__(
        self,
        pmesh: ParMesh,
        subdomain_meshes: Sequence[SubMesh],
        interface_meshes: Sequence[SubMesh],
        interface_map: InterfaceMap,
        problem: ProblemConfig,
        dd_config: DDConfig,
    ):
        if len(subdomain_meshes) != dd_config.num_subdomains:
            raise ValueError(
                f"got {len(subdomain_meshes)} subdomain meshes for {dd_config.num_subdomains} subdomains"
            )
        if len(interface_meshes) != len(interface_map):
            raise ValueError(f"got {len(interface_meshes)} interface meshes for {len(interface_map)} interfaces")

        self.pmesh = pmesh
        self.comm = pmesh.comm
        self.rank = self.comm.Get_rank()
        self.problem = problem
        self.config = dd_config
        self.interface_map = interface_map
        self.alpha = resolve_transmission(dd_config, problem, pmesh.hmin)
        self.dtype = np.result_type(problem.dtype, np.asarray(self.alpha).dtype)

        if problem.dirichlet:
            self._dirichlet = pmesh.dirichlet
        else:
            self._dirichlet = np.zeros(pmesh.mesh.num_vertices, dtype=bool)

        self._sd_roots = np.array([m.root_rank for m in subdomain_meshes], dtype=np.int64)
        self._owners = np.array([m.root_rank for m in interface_meshes], dtype=np.int64)
        self._sides = [interface_map.identity(i) for i in range(len(interface_map))]

        self._busy = False

        received = self._setup_interfaces(interface_meshes)
        self._setup_layout()
        self._setup_subdomains(subdomain_meshes, received)

        if self.rank == 0:
            log.info(
                "interface operator: %d interfaces, global size %d, alpha=%s",
                len(interface_map), self.global_size, self.alpha,
            )

    # ============================
    # Setup (collective)
    # ============================

    def _setup_interfaces(self, interface_meshes: Sequence[SubMesh]) -> List:
        """Trace space + impedance matrix on each interface owner, sent to both subdomain roots."""
        self._traces: Dict[int, np.ndarray] = {}
        outgoing = defaultdict(list)

        for i, imesh in enumerate(interface_meshes):
            gathered = imesh.gather_to_root()
            if gathered is None:
                continue
            mesh_g, dflag = gathered
            free = ~dflag if self.problem.dirichlet else np.ones(mesh_g.num_vertices, dtype=bool)
            M = segment_mass_matrix(mesh_g)[free][:, free]
            T = (self.alpha * M).tocsr()
            gids = mesh_g.vertex_gids[free]
            self._traces[i] = gids

            sd0, sd1 = self._sides[i]
            outgoing[int(self._sd_roots[sd0])].append((i, 0, gids, T))
            outgoing[int(self._sd_roots[sd1])].append((i, 1, gids, T))

        return exchange(self.comm, outgoing)

    def _setup_layout(self) -> None:
        n = len(self.interface_map)
        mine = np.zeros(n, dtype=np.int64)
        for i, gids in self._traces.items():
            mine[i] = gids.size
        sizes = np.empty_like(mine)
        self.comm.Allreduce(mine, sizes, op=MPI.SUM)
        self.trace_sizes = sizes

        order = np.lexsort((np.arange(n), self._owners))
        offsets = np.zeros(n, dtype=np.int64)
        offsets[order] = np.concatenate([[0], np.cumsum(2 * sizes[order])[:-1]]) if n else []
        self.global_offsets = offsets
        self.global_size = int(2 * sizes.sum())

        self.owned_interfaces = [int(i) for i in order if self._owners[i] == self.rank]
        self.local_offsets: Dict[int, int] = {}
        o = 0
        for i in self.owned_interfaces:
            self.local_offsets[i] = o
            o += 2 * int(sizes[i])
        self._height = o
        self.block_start = int(offsets[self.owned_interfaces[0]]) if self.owned_interfaces else 0

    def _setup_subdomains(self, subdomain_meshes: Sequence[SubMesh], received: List) -> None:
        incoming = defaultdict(list)
        for msgs in received:
            for i, side, gids, T in msgs or ():
                sd = self._sides[i][side]
                incoming[sd].append((i, side, gids, T))

        self._subdomains: Dict[int, _SubdomainState] = {}
        matrices: Dict[int, sp.spmatrix] = {}
        for s, smesh in enumerate(subdomain_meshes):
            gathered = smesh.gather_to_root()
            if gathered is None:
                continue
            mesh_s, dflag = gathered
            free = ~dflag if self.problem.dirichlet else np.ones(mesh_s.num_vertices, dtype=bool)
            st = _SubdomainState(ident=s, free_gids=mesh_s.vertex_gids[free])

            A = assemble_system(mesh_s, self.problem).tocsr()[free][:, free].astype(self.dtype)
            for i, side, gids, T in sorted(incoming.pop(s, []), key=lambda m: m[0]):
                pos = np.searchsorted(st.free_gids, gids)
                verify(
                    bool(np.all(pos < st.num_free)) and bool(np.all(st.free_gids[np.minimum(pos, st.num_free - 1)] == gids)),
                    f"interface {self.interface_map.interface_gi[i]} has trace vertices outside subdomain {s}",
                )
                R = sp.coo_matrix(
                    (np.ones(gids.size), (np.arange(gids.size), pos)), shape=(gids.size, st.num_free)
                ).tocsr()
                A = A + R.T @ T @ R
                st.adjacent.append(_Adjacent(index=i, side=side, pos=pos, T=T))
            matrices[s] = A.tocsr()
            self._subdomains[s] = st

        verify(not incoming, f"trace spaces received for subdomains {sorted(incoming)} not rooted here")

        # vertex multiplicity: number of subdomains containing each vertex
        keys = [st.free_gids for st in self._subdomains.values()]
        keys = np.concatenate(keys) if keys else np.zeros(0, dtype=np.int64)
        counts, _ = rendezvous(self.comm, keys, np.ones(keys.size, dtype=np.int64))
        o = 0
        for st in self._subdomains.values():
            st.multiplicity = counts[o:o + st.num_free]
            o += st.num_free

        failed: List[int] = []
        for s, st in self._subdomains.items():
            try:
                st.solver = make_local_solver(
                    matrices[s], self.config.local_solver,
                    tol=self.config.local_tol, max_iter=self.config.local_max_iter, ident=s,
                )
            except LocalSolveError as exc:
                log.warning("%s", exc)
                failed.append(s)
        self._raise_if_failed(failed, "local solver setup")

        log.debug(
            "rank %d: roots of subdomains %s, owner of interfaces %s",
            self.rank, sorted(self._subdomains), self.owned_interfaces,
        )

    # ============================
    # Capability {height, width, apply}
    # ============================

    @property
    def height(self) -> int:
        return self._height

    @property
    def width(self) -> int:
        return self._height

    @contextmanager
    def _exclusive(self):
        if self._busy:
            raise RuntimeError("InterfaceOperator calls must not overlap")
        self._busy = True
        try:
            yield
        finally:
            self._busy = False

    def apply(self, x: np.ndarray) -> np.ndarray:
        """y = x - Π w(x): one optimized-Schwarz transmission step (collective)."""
        x = self._check_block(x)
        with self._exclusive():
            received = self._route_traces(x)
            _, outgoing = self._solve_pass(received, None, "apply")
            back = exchange(self.comm, outgoing)

            y = x.astype(np.result_type(self.dtype, x.dtype), copy=True)
            self._accumulate_swapped(y, back, -1.0)
        log.debug("apply: |x|=%.3e |y|=%.3e", np.linalg.norm(x), np.linalg.norm(y))
        return y

    def as_linear_operator(self) -> spla.LinearOperator:
        return as_scipy_operator(self, dtype=self.dtype)

    # ============================
    # Reduction / recovery
    # ============================

    def get_reduced_source(self, global_rhs: np.ndarray) -> np.ndarray:
        """
        Interface right-hand side Π w_b for a lifted vertex field B.

        Each subdomain takes b_s = B / m on its free vertices (m = number of
        subdomains holding the vertex) and solves once with zero Robin data.
        """
        B = self._check_field(global_rhs)
        with self._exclusive():
            source = self._split_source(B)
            _, outgoing = self._solve_pass([], source, "reduced source")
            back = exchange(self.comm, outgoing)

            y = np.zeros(self.height, dtype=np.result_type(self.dtype, B.dtype))
            self._accumulate_swapped(y, back, 1.0)
        return y

    def recover_domain_solution(
        self,
        interface_solution: np.ndarray,
        prior_guess: np.ndarray,
        global_rhs: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Vertex field from interface traces: one more local solve with b_s + Σ P_gᵀ λ,
        averaged over the subdomains holding each vertex.

        b_s is split from global_rhs exactly as in get_reduced_source; pass the
        same lifted field B that produced the reduced source. Without it the
        local problems are homogeneous (b_s = 0).

        Dirichlet vertices, and vertices no subdomain solved for, keep prior_guess.
        """
        x = self._check_block(interface_solution)
        prior = self._check_field(prior_guess)
        B = None if global_rhs is None else self._check_field(global_rhs)
        with self._exclusive():
            source = None if B is None else self._split_source(B)
            received = self._route_traces(x)
            solutions, _ = self._solve_pass(received, source, "recovery")

            keys, values = [], []
            for s, u in solutions.items():
                keys.append(self._subdomains[s].free_gids)
                values.append(np.column_stack([u, np.ones(u.size)]))
            keys = np.concatenate(keys) if keys else np.zeros(0, dtype=np.int64)
            values = np.concatenate(values) if values else np.zeros((0, 2), dtype=self.dtype)

            summed, found = rendezvous(self.comm, keys, values, query_keys=self.pmesh.vertex_gids)
            count = np.real(summed[:, 1]) if summed.size else np.zeros(0)
            touched = found & (count > 0) & ~self._dirichlet

            out = prior.astype(np.result_type(prior.dtype, summed.dtype), copy=True)
            out[touched] = summed[touched, 0] / count[touched]
        return out

    # ============================
    # Global interface vector helpers
    # ============================

    def scatter_global(self, x_global: np.ndarray) -> np.ndarray:
        """Local block of a replicated global interface vector."""
        x_global = np.asarray(x_global)
        if x_global.shape != (self.global_size,):
            raise ValueError(f"global vector has shape {x_global.shape}, expected ({self.global_size},)")
        return x_global[self.block_start:self.block_start + self.height].copy()

    def gather_global(self, y_local: np.ndarray) -> np.ndarray:
        """Replicated global interface vector from the local blocks (collective)."""
        y_local = self._check_block(y_local)
        parts = self.comm.allgather(y_local)
        if not parts or sum(p.size for p in parts) == 0:
            return np.zeros(0, dtype=y_local.dtype)
        return np.concatenate(parts)

    def dense_matrix(self) -> np.ndarray:
        """Column-by-column dense dump of the global operator (collective, small problems only)."""
        n = self.global_size
        D = np.zeros((n, n), dtype=self.dtype)
        for j in range(n):
            e = np.zeros(n, dtype=self.dtype)
            e[j] = 1.0
            D[:, j] = self.gather_global(self.apply(self.scatter_global(e)))
        return D

    # ============================
    # Internals
    # ============================

    def _check_block(self, x: np.ndarray) -> np.ndarray:
        x = np.asarray(x)
        if x.shape != (self.height,):
            raise ValueError(f"trace vector has shape {x.shape}, expected ({self.height},)")
        return x

    def _check_field(self, v: np.ndarray) -> np.ndarray:
        v = np.asarray(v)
        nv = self.pmesh.mesh.num_vertices
        if v.shape != (nv,):
            raise ValueError(f"vertex field has shape {v.shape}, expected ({nv},)")
        return v

    def _split_source(self, B: np.ndarray) -> Dict[int, np.ndarray]:
        """b_s = B / m on the free vertices of every subdomain rooted here (collective)."""
        owned = self.pmesh.owned
        keys = [st.free_gids for st in self._subdomains.values()]
        keys = np.concatenate(keys) if keys else np.zeros(0, dtype=np.int64)
        values, found = rendezvous(self.comm, self.pmesh.vertex_gids[owned], B[owned], query_keys=keys)
        verify(bool(np.all(found)), "right-hand side is missing subdomain vertices")

        source: Dict[int, np.ndarray] = {}
        o = 0
        for s, st in self._subdomains.items():
            source[s] = values[o:o + st.num_free] / st.multiplicity
            o += st.num_free
        return source

    def _route_traces(self, x: np.ndarray) -> List:
        """Send each owned interface's halves to the roots of sd0 and sd1."""
        outgoing = defaultdict(list)
        for i in self.owned_interfaces:
            o, n = self.local_offsets[i], int(self.trace_sizes[i])
            sd0, sd1 = self._sides[i]
            outgoing[int(self._sd_roots[sd0])].append((i, 0, x[o:o + n]))
            outgoing[int(self._sd_roots[sd1])].append((i, 1, x[o + n:o + 2 * n]))
        return exchange(self.comm, outgoing)

    def _solve_pass(
        self, received: List, source: Optional[Dict[int, np.ndarray]], what: str
    ) -> Tuple[Dict[int, np.ndarray], Dict[int, list]]:
        """
        Local Robin solves on every subdomain rooted here.

        Returns the local solutions (free vertices) and the outgoing traces
        w = -λ + 2 T u|Γ keyed by interface owner rank.
        """
        lam: Dict[Tuple[int, int], np.ndarray] = {}
        for msgs in received:
            for i, side, values in msgs or ():
                lam[(i, side)] = values

        dtype = np.result_type(
            self.dtype, *[v.dtype for v in lam.values()], *[v.dtype for v in (source or {}).values()]
        )
        solutions: Dict[int, np.ndarray] = {}
        failed: List[int] = []
        for s, st in self._subdomains.items():
            rhs = np.zeros(st.num_free, dtype=dtype)
            if source is not None and s in source:
                rhs += source[s]
            for adj in st.adjacent:
                if (adj.index, adj.side) in lam:
                    rhs[adj.pos] += lam[(adj.index, adj.side)]
            try:
                solutions[s] = st.solver.apply(rhs)
            except LocalSolveError as exc:
                log.warning("%s", exc)
                failed.append(s)
        self._raise_if_failed(failed, what)

        outgoing = defaultdict(list)
        for s, u in solutions.items():
            for adj in self._subdomains[s].adjacent:
                w = 2.0 * (adj.T @ u[adj.pos])
                if (adj.index, adj.side) in lam:
                    w = w - lam[(adj.index, adj.side)]
                outgoing[int(self._owners[adj.index])].append((adj.index, adj.side, w))
        return solutions, outgoing

    def _accumulate_swapped(self, y: np.ndarray, back: List, sign: float) -> None:
        """y[half entering the other side] += sign * w, for every returned trace."""
        for msgs in back:
            for i, side, w in msgs or ():
                o, n = self.local_offsets[i], int(self.trace_sizes[i])
                if side == 0:
                    y[o + n:o + 2 * n] += sign * w
                else:
                    y[o:o + n] += sign * w

    def _raise_if_failed(self, failed: List[int], what: str) -> None:
        everyone = self.comm.allgather(failed)
        ids = tuple(sorted({s for part in everyone for s in part}))
        if ids:
            raise LocalSolveError(f"{what}: local solve failed in subdomains {list(ids)}", ids)
