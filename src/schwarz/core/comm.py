# core/comm.py
"""
Collective communication helpers on top of mpi4py.

All functions here are collective: every process of `comm` must call them in
the same order, with possibly empty data.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from mpi4py import MPI


_REDUCERS = {"sum": np.add, "max": np.maximum, "min": np.minimum}


def exchange(comm: MPI.Comm, outgoing: Dict[int, Any]) -> List[Any]:
    """
    Personalized all-to-all: `outgoing[r]` is delivered to rank r.

    Returns the list of objects received, indexed by source rank (None when the
    source sent nothing).
    """
    size = comm.Get_size()
    return comm.alltoall([outgoing.get(r) for r in range(size)])


def rendezvous(
    comm: MPI.Comm,
    keys: np.ndarray,
    values: np.ndarray,
    query_keys: Optional[np.ndarray] = None,
    *,
    op: str = "sum",
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Reduce (key, value) contributions from all processes and look keys up.

    Every key is routed to the owner rank `key % size`, where contributions
    with equal keys are combined with `op` ("sum", "max", "min"). Each process
    then receives the reduced value of every key in `query_keys` (default: its
    own `keys`), together with a mask telling whether anybody contributed it.

    values may be 1D or 2D (one row per key).
    """
    if op not in _REDUCERS:
        raise ValueError(f"Unknown reduction '{op}'. Use one of: {sorted(_REDUCERS)}.")
    ufunc = _REDUCERS[op]

    size = comm.Get_size()
    keys = np.asarray(keys, dtype=np.int64).reshape(-1)
    values = np.asarray(values)
    if values.shape[0] != keys.size:
        raise ValueError(f"values has {values.shape[0]} rows, expected {keys.size}")
    query_keys = keys if query_keys is None else np.asarray(query_keys, dtype=np.int64).reshape(-1)

    kdest = keys % size
    qdest = query_keys % size
    send = [(keys[kdest == r], values[kdest == r], query_keys[qdest == r]) for r in range(size)]
    recv = comm.alltoall(send)

    # --- owner side: combine contributions
    ck = np.concatenate([m[0] for m in recv])
    cv = np.concatenate([m[1] for m in recv])
    uniq, inv = np.unique(ck, return_inverse=True)
    inv = inv.reshape(-1)
    reduced = np.zeros((uniq.size,) + cv.shape[1:], dtype=cv.dtype)
    if op != "sum":
        reduced[inv] = cv
    ufunc.at(reduced, inv, cv)

    reply = []
    for m in recv:
        q = m[2]
        vals = np.zeros((q.size,) + cv.shape[1:], dtype=cv.dtype)
        found = np.zeros(q.size, dtype=bool)
        if uniq.size and q.size:
            pos = np.minimum(np.searchsorted(uniq, q), uniq.size - 1)
            found = uniq[pos] == q
            vals[found] = reduced[pos[found]]
        reply.append((vals, found))
    back = comm.alltoall(reply)

    # --- querying side: put answers back in query order
    dtype = np.result_type(values.dtype, *[b[0].dtype for b in back])
    out = np.zeros((query_keys.size,) + values.shape[1:], dtype=dtype)
    found = np.zeros(query_keys.size, dtype=bool)
    for r in range(size):
        sel = qdest == r
        out[sel] = back[r][0]
        found[sel] = back[r][1]
    return out, found


def reduce_by_key(comm: MPI.Comm, keys: np.ndarray, values: np.ndarray, op: str = "sum") -> np.ndarray:
    """Reduce contributions with equal keys across processes; return per-key result."""
    out, _ = rendezvous(comm, keys, values, op=op)
    return out


def split(comm: MPI.Comm, participate: bool) -> Optional[MPI.Comm]:
    """
    Sub-communicator of the participating processes, ordered by parent rank.

    Collective over `comm`; non-participants get None.
    """
    color = 0 if participate else MPI.UNDEFINED
    sub = comm.Split(color, comm.Get_rank())
    if sub == MPI.COMM_NULL:
        return None
    return sub


def lowest_ranks(comm: MPI.Comm, flags: np.ndarray) -> np.ndarray:
    """
    For a boolean vector `flags` (same length on every process), return the
    lowest rank whose flag is set for each entry, or -1 if no process set it.
    """
    rank, size = comm.Get_rank(), comm.Get_size()
    flags = np.asarray(flags, dtype=bool).reshape(-1)
    mine = np.where(flags, rank, size).astype(np.int64)
    roots = np.empty_like(mine)
    comm.Allreduce(mine, roots, op=MPI.MIN)
    roots[roots == size] = -1
    return roots
