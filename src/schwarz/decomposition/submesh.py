# decomposition/submesh.py
"""
Independent distributed meshes for subdomains and interfaces.

Each SubMesh keeps the local piece (global vertex ids preserved) and a
sub-communicator spanning only the processes that hold a piece of it.
Processes holding nothing get a zero-size mesh and comm=None.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np
from mpi4py import MPI

from schwarz.core.comm import lowest_ranks, split
from schwarz.core.errors import verify
from schwarz.core.mesh import Mesh
from schwarz.core.parmesh import ParMesh
from schwarz.core.partition import check_partition
from schwarz.decomposition.interfaces import (
    Interface,
    InterfaceMap,
    RealizedInterface,
    make_interface,
)

log = logging.getLogger(__name__)


@dataclass(eq=False)
class SubMesh:
    """
    ident           : subdomain id, or global interface index
    mesh            : local piece; vertex_gids are global vertex ids
    comm            : communicator of the participating processes, None if not participating
    root_rank       : parent-communicator rank of the sub-communicator root (-1: globally empty)
    parent_vertices : index of each local vertex in the ParMesh shard
    dirichlet       : Dirichlet flag of each local vertex
    """
    ident: int
    mesh: Mesh
    comm: Optional[MPI.Comm]
    root_rank: int
    parent_vertices: np.ndarray
    dirichlet: np.ndarray

    @property
    def is_empty(self) -> bool:
        return self.mesh.num_elements == 0

    @property
    def is_root(self) -> bool:
        return self.comm is not None and self.comm.Get_rank() == 0

    def gather_to_root(self) -> Optional[Tuple[Mesh, np.ndarray]]:
        """
        Collect the distributed pieces on the sub-communicator root.

        Returns (mesh, dirichlet) on the root, with vertices sorted by global id
        and elements sorted by global element id; None on every other process.
        Collective over self.comm only.
        """
        if self.comm is None:
            return None
        m = self.mesh
        piece = (m.vertex_gids[m.elements], m.element_gids, m.attributes, m.vertex_gids, m.vertices, self.dirichlet)
        parts = self.comm.gather(piece, root=0)
        if self.comm.Get_rank() != 0:
            return None

        k = m.elements.shape[1]
        conn = np.concatenate([p[0] for p in parts]).reshape(-1, k)
        egids = np.concatenate([p[1] for p in parts])
        attrs = np.concatenate([p[2] for p in parts])
        vgids = np.concatenate([p[3] for p in parts])
        coords = np.concatenate([p[4] for p in parts]).reshape(-1, 2)
        dflag = np.concatenate([p[5] for p in parts]).astype(bool)

        verify(np.unique(egids).size == egids.size, f"mesh {self.ident}: overlapping elements across processes")

        gids, first = np.unique(vgids, return_index=True)
        order = np.argsort(egids, kind="stable")
        mesh = Mesh(
            vertices=coords[first],
            elements=np.searchsorted(gids, conn[order]),
            element_type=m.element_type,
            vertex_gids=gids,
            element_gids=egids[order],
            attributes=attrs[order],
        )
        return mesh, dflag[first]


def _extract(mesh: Mesh, elements: np.ndarray, element_type: str, element_gids, attributes) -> Tuple[Mesh, np.ndarray]:
    """Sub-mesh on the given connectivity rows (local vertex ids of `mesh`), renumbered."""
    used = np.unique(elements)
    lookup = np.full(mesh.num_vertices, -1, dtype=np.int64)
    lookup[used] = np.arange(used.size, dtype=np.int64)
    sub = Mesh(
        vertices=mesh.vertices[used],
        elements=lookup[elements],
        element_type=element_type,
        vertex_gids=mesh.vertex_gids[used],
        element_gids=element_gids,
        attributes=attributes,
    )
    return sub, used


class SubdomainMeshBuilder:
    def __init__(self, num_subdomains: int, pmesh: ParMesh):
        self.num_subdomains = int(num_subdomains)
        self.pmesh = pmesh
        self.comm = pmesh.comm

    def create_subdomain_meshes(self) -> List[SubMesh]:
        """
        One SubMesh per subdomain id, on every process (collective).

        Elements tagged s on this process form the local piece of subdomain s.
        """
        pm = self.pmesh
        m = pm.mesh
        n = self.num_subdomains

        counts = check_partition(m.attributes, n, comm=self.comm, element_gids=m.element_gids)
        roots = lowest_ranks(self.comm, np.bincount(m.attributes, minlength=n) > 0)

        out: List[SubMesh] = []
        claimed = 0
        for s in range(n):
            sel = np.flatnonzero(m.attributes == s)
            claimed += sel.size
            sub, used = _extract(m, m.elements[sel], m.element_type, m.element_gids[sel], m.attributes[sel])
            comm = split(self.comm, sel.size > 0)
            out.append(
                SubMesh(
                    ident=s, mesh=sub, comm=comm, root_rank=int(roots[s]),
                    parent_vertices=used, dirichlet=pm.dirichlet[used],
                )
            )
        verify(claimed == m.num_elements, "subdomain meshes overlap or miss local elements")

        if pm.rank == 0:
            log.info("subdomain element counts: %s", counts.tolist())
        return out

    def create_interface_mesh(self, interface: Interface) -> SubMesh:
        """
        Segment mesh of one interface (collective).

        A face seen by two processes is kept by the lower rank only, so the
        interface mesh has each face exactly once.
        """
        pm = self.pmesh
        keep = interface.neighbor_ranks >= pm.rank
        faces = interface.faces[keep]
        sub, used = _extract(
            pm.mesh,
            faces,
            "segment",
            interface.face_keys[keep],
            np.full(faces.shape[0], interface.global_index, dtype=np.int64),
        )
        comm = split(self.comm, faces.shape[0] > 0)
        root = int(lowest_ranks(self.comm, np.array([faces.shape[0] > 0]))[0])
        return SubMesh(
            ident=interface.global_index, mesh=sub, comm=comm, root_rank=root,
            parent_vertices=used, dirichlet=pm.dirichlet[used],
        )

    def create_interface_meshes(
        self, interface_map: InterfaceMap, interfaces: Sequence[RealizedInterface]
    ) -> List[SubMesh]:
        """Interface meshes in enumeration order; empty variants where nothing is held."""
        return [
            self.create_interface_mesh(make_interface(g, interfaces, int(li), self.num_subdomains))
            for g, li in zip(interface_map.interface_gi, interface_map.local_index)
        ]
