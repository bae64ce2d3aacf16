# diagnostics.py
from __future__ import annotations

import logging
import socket
from pathlib import Path
from typing import Any, Literal, Optional

import numpy as np
import matplotlib.pyplot as plt
import matplotlib.tri as mtri
from mpi4py import MPI

from schwarz.core.mesh import Mesh

log = logging.getLogger(__name__)


# -----------------------------
# I/O helpers
# -----------------------------

def save_npz(path: Path, **arrays: np.ndarray) -> None:
    """Save compressed .npz (creates parent dirs)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez_compressed(path, **arrays)


def append_record(path: Path, comm: Optional[MPI.Comm] = None, **fields: Any) -> None:
    """
    Append one plain-text record of `key=value` lines, followed by a blank line.

    Only rank 0 of `comm` writes.
    """
    if comm is not None and comm.Get_rank() != 0:
        return
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as fh:
        for key, value in fields.items():
            fh.write(f"{key}={value}\n")
        fh.write("\n")


# -----------------------------
# Plotting
# -----------------------------

PlotMode = Literal["abs", "real", "imag", "logabs", "phase"]


def _as_mode_array(u: np.ndarray, mode: str, eps: float) -> np.ndarray:
    """
    Convert a complex/real vertex field to a real array for plotting.
    """
    mode = (mode or "real").lower()

    if mode in ("abs", "magnitude", "|u|"):
        return np.abs(u)

    if mode in ("real", "re"):
        return np.real(u)

    if mode in ("imag", "im"):
        return np.imag(u)

    if mode in ("logabs", "log|u|", "log10abs", "log10|u|"):
        return np.log10(np.abs(u) + eps)

    if mode in ("phase", "angle"):
        return np.angle(u)

    raise ValueError(
        f"plot mode '{mode}' not recognized. "
        "Use one of: abs, real, imag, logabs, phase."
    )


def triangulate(mesh: Mesh) -> mtri.Triangulation:
    """matplotlib triangulation of a tri/quad mesh (quads split along 0-2)."""
    if mesh.element_type == "tri":
        tris = mesh.elements
    elif mesh.element_type == "quad":
        e = mesh.elements
        tris = np.concatenate([e[:, [0, 1, 2]], e[:, [0, 2, 3]]])
    else:
        raise ValueError(f"cannot triangulate '{mesh.element_type}' mesh")
    return mtri.Triangulation(mesh.vertices[:, 0], mesh.vertices[:, 1], tris)


def plot_field(
    mesh: Mesh,
    u: np.ndarray,
    *,
    title: str = "",
    path: Optional[Path] = None,
    mode: PlotMode = "real",
    log_eps: float = 1e-16,
    cmap: str | None = None,
    show: bool = True,
    close: bool = True,
) -> None:
    """
    Plot a vertex field u on a serial mesh.

    Parameters
    ----------
    path:
        If provided, saves the figure to this path (parent dirs created).
    show:
        If True, calls plt.show().
    close:
        If True, closes figure.
    """
    u = np.asarray(u)
    if u.shape != (mesh.num_vertices,):
        raise ValueError(f"u has shape {u.shape}, expected ({mesh.num_vertices},)")
    Z = _as_mode_array(u, mode=mode, eps=log_eps)

    fig, ax = plt.subplots()
    im = ax.tripcolor(triangulate(mesh), Z, shading="gouraud", cmap=cmap)
    fig.colorbar(im, ax=ax)
    ax.set_title(title)
    ax.set_aspect("equal")
    ax.set_xlabel("x")
    ax.set_ylabel("y")
    fig.tight_layout()

    if path is not None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(path, dpi=200)

    if show:
        plt.show()

    if close:
        plt.close(fig)


# -----------------------------
# Visualization stream
# -----------------------------

_GEOMETRY = {"tri": 2, "quad": 3}


def format_solution(mesh: Mesh, u: np.ndarray) -> str:
    """
    Textual mesh + vertex-field stream (GLVis-style "solution" block).

    Element geometry codes: 2 triangle, 3 square.
    """
    u = np.real(np.asarray(u))
    lines = ["solution", "MFEM mesh v1.0", "", "dimension", "2", "", "elements", str(mesh.num_elements)]
    geom = _GEOMETRY[mesh.element_type]
    for attr, conn in zip(mesh.attributes, mesh.elements):
        lines.append(" ".join(str(int(v)) for v in (attr + 1, geom, *conn)))
    lines += ["", "boundary", "0", "", "vertices", str(mesh.num_vertices), "2"]
    lines += [f"{x:.16g} {y:.16g}" for x, y in mesh.vertices]
    lines += ["", "FiniteElementSpace", "FiniteElementCollection: H1_2D_P1", "VDim: 1", "Ordering: 0", ""]
    lines += [f"{v:.16g}" for v in u]
    return "\n".join(lines) + "\n"


def stream_solution(
    mesh: Mesh,
    u: np.ndarray,
    *,
    host: str = "localhost",
    port: int = 19916,
    title: str = "",
    timeout: float = 2.0,
) -> bool:
    """
    Send the solution to a visualization server listening on host:port.

    Connection failures are logged and reported as False; they never raise.
    """
    payload = format_solution(mesh, u)
    if title:
        payload += f"window_title '{title}'\n"
    try:
        with socket.create_connection((host, int(port)), timeout=timeout) as sock:
            sock.sendall(payload.encode())
    except OSError as exc:
        log.warning("visualization stream to %s:%d failed: %s", host, int(port), exc)
        return False
    return True
