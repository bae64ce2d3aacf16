# decomposition/interfaces.py
"""
Subdomain interface topology.

An interface is the set of mesh faces shared by two subdomains sd0 < sd1. Its
global index is g = sd0*N + sd1 (N = number of subdomains), so every process
derives the same index for the same pair without communication. Only the set of
indices realized somewhere is agreed collectively.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple, Union

import numpy as np
from mpi4py import MPI

from schwarz.core.errors import verify
from schwarz.core.parmesh import ParMesh

log = logging.getLogger(__name__)


def interface_identity(g: int, num_subdomains: int) -> Tuple[int, int]:
    """Decode (sd0, sd1) from a global interface index."""
    g, n = int(g), int(num_subdomains)
    sd0 = g // n
    return sd0, g - n * sd0


def interface_index(sd0: int, sd1: int, num_subdomains: int) -> int:
    a, b = min(int(sd0), int(sd1)), max(int(sd0), int(sd1))
    return a * int(num_subdomains) + b


@dataclass(frozen=True, eq=False)
class RealizedInterface:
    """
    Interface faces held by this process.

    faces are (nf, 2) local vertex indices into the ParMesh shard; face_keys
    are the matching global face keys. neighbor_ranks holds, per face, the rank
    of the element on the other side (this rank for faces interior to the shard).
    A realized interface may hold zero faces here while existing globally.
    """
    sd0: int
    sd1: int
    num_subdomains: int
    faces: np.ndarray = field(default_factory=lambda: np.zeros((0, 2), dtype=np.int64))
    face_keys: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    neighbor_ranks: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))

    def __post_init__(self) -> None:
        if not (0 <= self.sd0 < self.sd1 < self.num_subdomains):
            raise ValueError(f"invalid interface pair ({self.sd0}, {self.sd1})")
        if self.faces.shape[0] != self.face_keys.size or self.face_keys.size != self.neighbor_ranks.size:
            raise ValueError("faces, face_keys and neighbor_ranks must have one entry per face")

    @property
    def global_index(self) -> int:
        return interface_index(self.sd0, self.sd1, self.num_subdomains)

    @property
    def num_faces(self) -> int:
        return int(self.face_keys.size)

    @property
    def vertices(self) -> np.ndarray:
        return np.unique(self.faces)

    @property
    def is_empty(self) -> bool:
        return False


@dataclass(frozen=True)
class EmptyInterface:
    """Placeholder for an interface this process holds no part of."""
    sd0: int
    sd1: int
    num_subdomains: int

    def __post_init__(self) -> None:
        if not (0 <= self.sd0 < self.sd1 < self.num_subdomains):
            raise ValueError(f"invalid interface pair ({self.sd0}, {self.sd1})")

    @property
    def global_index(self) -> int:
        return interface_index(self.sd0, self.sd1, self.num_subdomains)

    @property
    def num_faces(self) -> int:
        return 0

    @property
    def faces(self) -> np.ndarray:
        return np.zeros((0, 2), dtype=np.int64)

    @property
    def face_keys(self) -> np.ndarray:
        return np.zeros(0, dtype=np.int64)

    @property
    def neighbor_ranks(self) -> np.ndarray:
        return np.zeros(0, dtype=np.int64)

    @property
    def vertices(self) -> np.ndarray:
        return np.zeros(0, dtype=np.int64)

    @property
    def is_empty(self) -> bool:
        return True


Interface = Union[RealizedInterface, EmptyInterface]


@dataclass(frozen=True, eq=False)
class InterfaceMap:
    """
    Agreed enumeration of realized interfaces.

    interface_gi : sorted global indices realized on at least one process
                   (identical on every process)
    local_index  : position of each entry in this process's interface list,
                   or -1 where this process holds nothing
    """
    interface_gi: np.ndarray
    local_index: np.ndarray
    num_subdomains: int

    def __len__(self) -> int:
        return int(self.interface_gi.size)

    def identity(self, i: int) -> Tuple[int, int]:
        return interface_identity(self.interface_gi[i], self.num_subdomains)

    def position(self, g: int) -> int:
        """Position of global index g in the enumeration, or -1."""
        pos = int(np.searchsorted(self.interface_gi, g))
        if pos < self.interface_gi.size and int(self.interface_gi[pos]) == int(g):
            return pos
        return -1


def make_interface(g: int, local_list: Sequence[RealizedInterface], local_index: int, num_subdomains: int) -> Interface:
    """Realized interface from the local list, or the empty variant with the right pair."""
    if local_index >= 0:
        itf = local_list[local_index]
        verify(itf.global_index == int(g), f"local interface {local_index} is {itf.global_index}, expected {g}")
        return itf
    sd0, sd1 = interface_identity(g, num_subdomains)
    return EmptyInterface(sd0, sd1, num_subdomains)


class InterfaceTopologyBuilder:
    """Discover inter-subdomain faces of a distributed mesh and agree on their numbering."""

    def __init__(self, num_subdomains: int, pmesh: ParMesh):
        if int(num_subdomains) < 1:
            raise ValueError("num_subdomains must be >= 1")
        self.num_subdomains = int(num_subdomains)
        self.pmesh = pmesh
        self.comm = pmesh.comm

        attrs = pmesh.mesh.attributes
        verify(
            attrs.size == 0 or (attrs.min() >= 0 and attrs.max() < self.num_subdomains),
            f"element subdomain tags out of range [0, {self.num_subdomains})",
        )

    def create_interfaces(self) -> List[RealizedInterface]:
        """
        Interfaces with at least one face on this process, sorted by global index.

        Faces between two local elements appear once; faces across a process
        boundary appear on both neighbouring processes.
        """
        pm = self.pmesh
        m = pm.mesh
        n = self.num_subdomains

        # faces between two local elements
        keys, elem, local = m.faces(pm.num_global_vertices)
        order = np.argsort(keys, kind="stable")
        sk = keys[order]
        dup = np.flatnonzero(sk[1:] == sk[:-1])
        i0, i1 = order[dup], order[dup + 1]
        ta, tb = m.attributes[elem[i0]], m.attributes[elem[i1]]
        cross = ta != tb

        f_keys = [keys[i0][cross]]
        f_local = [local[i0][cross]]
        f_sa = [ta[cross]]
        f_sb = [tb[cross]]
        f_rank = [np.full(int(cross.sum()), pm.rank, dtype=np.int64)]

        # faces across a process boundary
        ts = m.attributes[pm.shared_elements]
        cross = ts != pm.neighbor_attributes
        f_keys.append(pm.shared_face_keys[cross])
        f_local.append(pm.shared_faces[cross])
        f_sa.append(ts[cross])
        f_sb.append(pm.neighbor_attributes[cross])
        f_rank.append(pm.neighbor_ranks[cross])

        fk = np.concatenate(f_keys)
        fl = np.concatenate(f_local).reshape(-1, 2)
        sa, sb = np.concatenate(f_sa), np.concatenate(f_sb)
        fr = np.concatenate(f_rank)

        sd0, sd1 = np.minimum(sa, sb), np.maximum(sa, sb)
        gi = sd0 * n + sd1

        interfaces: List[RealizedInterface] = []
        for g in np.unique(gi):
            sel = np.flatnonzero(gi == g)
            sel = sel[np.argsort(fk[sel], kind="stable")]
            a, b = interface_identity(g, n)
            interfaces.append(
                RealizedInterface(
                    sd0=a, sd1=b, num_subdomains=n,
                    faces=fl[sel], face_keys=fk[sel], neighbor_ranks=fr[sel],
                )
            )

        log.debug(
            "rank %d: %d local interfaces, %d faces",
            pm.rank, len(interfaces), sum(i.num_faces for i in interfaces),
        )
        return interfaces

    def global_to_local_map(self, interfaces: Sequence[RealizedInterface]) -> InterfaceMap:
        """
        Agree on the realized interface indices and map them to local positions.

        Raises InvariantViolation if the local list does not reconcile with the
        agreed enumeration or processes disagree on it.
        """
        n = self.num_subdomains
        local_gi = np.array([itf.global_index for itf in interfaces], dtype=np.int64)
        verify(
            bool(np.all(np.diff(local_gi) > 0)),
            "local interfaces must be unique and sorted by global index",
        )

        reports = self.comm.allgather(local_gi)
        agreed = np.unique(np.concatenate(reports)).astype(np.int64)

        local_index = np.full(agreed.size, -1, dtype=np.int64)
        local_index[np.searchsorted(agreed, local_gi)] = np.arange(local_gi.size, dtype=np.int64)

        realized = int(np.count_nonzero(local_index >= 0))
        placeholders = int(np.count_nonzero(local_index < 0))
        verify(
            realized == local_gi.size and realized + placeholders == agreed.size,
            f"interface count mismatch: {realized} realized + {placeholders} placeholders "
            f"!= {agreed.size} agreed",
        )
        verify(agreed.size <= n * (n - 1) // 2, "more interfaces than subdomain pairs")

        sig = np.array(
            [agreed.size, int(agreed.sum()), int((agreed * np.arange(1, agreed.size + 1)).sum())],
            dtype=np.int64,
        )
        lo, hi = np.empty_like(sig), np.empty_like(sig)
        self.comm.Allreduce(sig, lo, op=MPI.MIN)
        self.comm.Allreduce(sig, hi, op=MPI.MAX)
        verify(bool(np.all(lo == hi)), "processes disagree on the interface enumeration")

        for g in agreed:
            a, b = interface_identity(g, n)
            verify(0 <= a < b < n, f"interface index {g} does not decode to a valid pair")

        if self.pmesh.rank == 0:
            log.info("%d interfaces between %d subdomains", agreed.size, n)
        return InterfaceMap(interface_gi=agreed, local_index=local_index, num_subdomains=n)
