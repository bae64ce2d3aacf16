# core/parmesh.py
from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from mpi4py import MPI

from schwarz.core.comm import reduce_by_key, rendezvous
from schwarz.core.errors import verify
from schwarz.core.mesh import Mesh
from schwarz.core.partition import check_partition

log = logging.getLogger(__name__)


class ParMesh:
    """
    The shard of a global 2D mesh held by one process.

    `mesh` is the local piece: its vertex_gids / element_gids are global ids and
    its attributes are subdomain tags. At construction the shard discovers,
    collectively over `comm`:

      - faces shared with another process (neighbour rank, element gid, tag),
      - faces on the physical boundary,
      - Dirichlet vertex flags, consistent on every process holding a vertex,
      - vertex ownership (lowest holding rank owns),
      - the global minimum element size hmin.
    """

    def __init__(self, comm: MPI.Comm, mesh: Mesh):
        if mesh.element_type not in ("tri", "quad"):
            raise ValueError(f"ParMesh needs a 2D mesh, got '{mesh.element_type}'.")
        self.comm = comm
        self.mesh = mesh
        self.rank = comm.Get_rank()
        self.size = comm.Get_size()

        gmax = int(mesh.vertex_gids.max()) if mesh.num_vertices else -1
        self.num_global_vertices = comm.allreduce(gmax, op=MPI.MAX) + 1

        check_partition(
            np.zeros(mesh.num_elements, dtype=np.int64), 1, comm=comm, element_gids=mesh.element_gids
        )
        self.num_global_elements = comm.allreduce(mesh.num_elements, op=MPI.SUM)

        self._find_face_neighbors()
        self._mark_dirichlet()
        self._mark_owned()

        local_h = float(mesh.element_sizes().min()) if mesh.num_elements else np.inf
        self.hmin = comm.allreduce(local_h, op=MPI.MIN)

        log.debug(
            "rank %d: %d elements, %d vertices, %d shared faces, %d boundary faces",
            self.rank, mesh.num_elements, mesh.num_vertices,
            self.shared_faces.shape[0], self.boundary_faces.shape[0],
        )

    @classmethod
    def from_serial(
        cls, comm: MPI.Comm, mesh: Mesh, proc_partition: Optional[np.ndarray] = None
    ) -> "ParMesh":
        """
        Cut a replicated serial mesh by an element -> process map.

        Default map: contiguous blocks of element indices.
        """
        size, rank = comm.Get_size(), comm.Get_rank()
        if proc_partition is None:
            proc_partition = np.arange(mesh.num_elements, dtype=np.int64) * size // max(mesh.num_elements, 1)
        proc_partition = np.asarray(proc_partition)
        verify(
            proc_partition.shape == (mesh.num_elements,),
            f"process partition has shape {proc_partition.shape}, expected ({mesh.num_elements},)",
        )
        check_partition(proc_partition, size)

        mine = np.flatnonzero(proc_partition == rank)
        conn = mesh.elements[mine]
        used = np.unique(conn)
        lookup = np.full(mesh.num_vertices, -1, dtype=np.int64)
        lookup[used] = np.arange(used.size, dtype=np.int64)

        local = Mesh(
            vertices=mesh.vertices[used],
            elements=lookup[conn],
            element_type=mesh.element_type,
            vertex_gids=mesh.vertex_gids[used],
            element_gids=mesh.element_gids[mine],
            attributes=mesh.attributes[mine],
        )
        return cls(comm, local)

    # -----------------------------
    # Construction steps (collective)
    # -----------------------------

    def _find_face_neighbors(self) -> None:
        m = self.mesh
        keys, elem, local = m.faces(self.num_global_vertices)
        _, first, counts = np.unique(keys, return_index=True, return_counts=True)
        verify(bool(np.all(counts <= 2)), "a face is shared by more than two local elements")
        single = first[counts == 1]

        e = elem[single]
        payload = np.column_stack([
            np.ones(single.size, dtype=np.int64),
            m.attributes[e],
            np.full(single.size, self.rank, dtype=np.int64),
            m.element_gids[e],
        ]).astype(np.int64)

        # sum of both sides; subtracting our own entry leaves the neighbour's
        total, _ = rendezvous(self.comm, keys[single], payload)
        nb = total[:, 0]
        verify(bool(np.all(nb <= 2)), "a face is shared by more than two elements globally")

        shared = nb == 2
        self.shared_face_keys = keys[single[shared]]
        self.shared_faces = local[single[shared]]
        self.shared_elements = e[shared]
        self.neighbor_attributes = total[shared, 1] - m.attributes[e[shared]]
        self.neighbor_ranks = total[shared, 2] - self.rank
        self.neighbor_element_gids = total[shared, 3] - m.element_gids[e[shared]]

        bnd = nb == 1
        self.boundary_faces = local[single[bnd]]
        self.boundary_elements = e[bnd]

    def _mark_dirichlet(self) -> None:
        flag = np.zeros(self.mesh.num_vertices, dtype=np.int64)
        flag[self.boundary_faces.reshape(-1)] = 1
        flag = reduce_by_key(self.comm, self.mesh.vertex_gids, flag, op="max")
        self.dirichlet = flag.astype(bool)

    def _mark_owned(self) -> None:
        mine = np.full(self.mesh.num_vertices, self.rank, dtype=np.int64)
        owner = reduce_by_key(self.comm, self.mesh.vertex_gids, mine, op="min")
        self.owned = owner == self.rank

    # -----------------------------
    # Vertex-field helpers (collective)
    # -----------------------------

    @property
    def vertex_gids(self) -> np.ndarray:
        return self.mesh.vertex_gids

    def accumulate(self, values: np.ndarray) -> np.ndarray:
        """Sum partial per-vertex contributions over all processes holding each vertex."""
        return reduce_by_key(self.comm, self.mesh.vertex_gids, values, op="sum")

    def global_dot(self, a: np.ndarray, b: np.ndarray) -> complex:
        """conj(a) . b over owned vertices, summed over processes."""
        local = np.vdot(np.asarray(a)[self.owned], np.asarray(b)[self.owned])
        return self.comm.allreduce(local, op=MPI.SUM)

    def global_norm(self, a: np.ndarray) -> float:
        return float(np.sqrt(np.real(self.global_dot(a, a))))

    def to_global(self, values: np.ndarray) -> np.ndarray:
        """Replicated full vector indexed by global vertex id."""
        values = np.asarray(values)
        parts = self.comm.allgather((self.mesh.vertex_gids[self.owned], values[self.owned]))
        dtype = np.result_type(*[p[1].dtype for p in parts])
        out = np.zeros(self.num_global_vertices, dtype=dtype)
        for g, v in parts:
            out[g] = v
        return out

    def evaluate(self, fn) -> np.ndarray:
        """Sample a callable fn(X, Y) at the local vertices."""
        X, Y = self.mesh.vertices[:, 0], self.mesh.vertices[:, 1]
        return np.asarray(fn(X, Y))
