# core/partition.py
from __future__ import annotations

from typing import Optional, Sequence

import numpy as np
from mpi4py import MPI

from schwarz.core.comm import reduce_by_key
from schwarz.core.errors import verify
from schwarz.core.mesh import Mesh


def cartesian_partitioning(mesh: Mesh, nxyz: Sequence[int]) -> np.ndarray:
    """
    Coordinate partitioner: bin element centres into an nx x ny grid of boxes
    spanning the mesh bounding box.

    Box (ix, iy) gets part id ix + nx*iy. Boxes may be empty for unstructured
    meshes; check_partition does not require every part to be non-empty.
    """
    nx, ny = (int(n) for n in tuple(nxyz)[:2])
    if nx < 1 or ny < 1:
        raise ValueError("cartesian_partitioning requires positive box counts.")
    if mesh.num_elements == 0:
        return np.zeros(0, dtype=np.int64)

    lo = mesh.vertices.min(axis=0)
    hi = mesh.vertices.max(axis=0)
    ext = np.where(hi > lo, hi - lo, 1.0)

    c = mesh.element_centers()
    ix = np.clip(np.floor((c[:, 0] - lo[0]) / ext[0] * nx), 0, nx - 1).astype(np.int64)
    iy = np.clip(np.floor((c[:, 1] - lo[1]) / ext[1] * ny), 0, ny - 1).astype(np.int64)
    return ix + nx * iy


def check_partition(
    tags: np.ndarray,
    num_parts: int,
    comm: Optional[MPI.Comm] = None,
    element_gids: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Verify an element -> part map and return the (global) element count per part.

    Serial checks: one integer tag per element, all in [0, num_parts).
    With `comm` and `element_gids`, additionally verify that every global element
    is claimed by exactly one process and that the claimed ids cover
    0..num_global_elements-1 without gaps.

    Raises InvariantViolation on any mismatch.
    """
    tags = np.asarray(tags)
    verify(tags.ndim == 1, f"partition must be 1D, got shape {tags.shape}")
    verify(tags.size == 0 or np.issubdtype(tags.dtype, np.integer), "partition tags must be integers")
    tags = tags.astype(np.int64)
    verify(
        tags.size == 0 or (tags.min() >= 0 and tags.max() < num_parts),
        f"partition tags out of range [0, {num_parts})",
    )

    counts = np.bincount(tags, minlength=num_parts).astype(np.int64)
    if comm is None:
        return counts

    total = np.empty_like(counts)
    comm.Allreduce(counts, total, op=MPI.SUM)

    if element_gids is not None:
        gids = np.asarray(element_gids, dtype=np.int64).reshape(-1)
        verify(gids.size == tags.size, "element_gids and tags differ in length")
        claims = reduce_by_key(comm, gids, np.ones(gids.size, dtype=np.int64))
        verify(bool(np.all(claims == 1)), "an element is claimed by more than one process")
        gmax = comm.allreduce(int(gids.max()) if gids.size else -1, op=MPI.MAX)
        verify(
            int(total.sum()) == gmax + 1,
            f"partition covers {int(total.sum())} elements, global mesh has {gmax + 1}",
        )
    return total
