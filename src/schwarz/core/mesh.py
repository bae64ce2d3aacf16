# core/mesh.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np


VERTICES_PER_ELEMENT = {"segment": 2, "tri": 3, "quad": 4}

# local vertex pairs of each element face (edges in 2D)
ELEMENT_FACES = {
    "tri": np.array([[0, 1], [1, 2], [2, 0]], dtype=np.int64),
    "quad": np.array([[0, 1], [1, 2], [2, 3], [3, 0]], dtype=np.int64),
}


def idx(i: int, j: int, ny: int) -> int:
    return i * ny + j


def encode_faces(a: np.ndarray, b: np.ndarray, num_global_vertices: int) -> np.ndarray:
    """
    Orientation-free integer key of the face (a, b) of global vertex ids:
        key = min(a, b) * N + max(a, b)
    """
    a = np.asarray(a, dtype=np.int64)
    b = np.asarray(b, dtype=np.int64)
    return np.minimum(a, b) * np.int64(num_global_vertices) + np.maximum(a, b)


def decode_faces(keys: np.ndarray, num_global_vertices: int) -> np.ndarray:
    """Inverse of encode_faces: (n, 2) array of sorted global vertex ids."""
    keys = np.asarray(keys, dtype=np.int64)
    n = np.int64(num_global_vertices)
    return np.stack([keys // n, keys % n], axis=-1).reshape(-1, 2)


@dataclass
class Mesh:
    """
    A serial 2D mesh: vertex coordinates plus element connectivity.

    vertex_gids / element_gids are global identifiers; they default to the local
    numbering and are preserved when a mesh is extracted from a larger one.
    attributes carry the subdomain tag of each element.
    """
    vertices: np.ndarray
    elements: np.ndarray
    element_type: str = "quad"
    vertex_gids: Optional[np.ndarray] = None
    element_gids: Optional[np.ndarray] = None
    attributes: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        if self.element_type not in VERTICES_PER_ELEMENT:
            raise ValueError(f"Unknown element type '{self.element_type}'.")
        k = VERTICES_PER_ELEMENT[self.element_type]

        self.vertices = np.asarray(self.vertices, dtype=float).reshape(-1, 2)
        self.elements = np.asarray(self.elements, dtype=np.int64).reshape(-1, k)

        nv, ne = self.vertices.shape[0], self.elements.shape[0]
        if ne and (self.elements.min() < 0 or self.elements.max() >= nv):
            raise ValueError("Element connectivity references missing vertices.")

        if self.vertex_gids is None:
            self.vertex_gids = np.arange(nv, dtype=np.int64)
        if self.element_gids is None:
            self.element_gids = np.arange(ne, dtype=np.int64)
        if self.attributes is None:
            self.attributes = np.zeros(ne, dtype=np.int64)

        self.vertex_gids = np.asarray(self.vertex_gids, dtype=np.int64).reshape(-1)
        self.element_gids = np.asarray(self.element_gids, dtype=np.int64).reshape(-1)
        self.attributes = np.asarray(self.attributes, dtype=np.int64).reshape(-1)

        if self.vertex_gids.size != nv:
            raise ValueError(f"vertex_gids has size {self.vertex_gids.size}, expected {nv}")
        if self.element_gids.size != ne or self.attributes.size != ne:
            raise ValueError("element_gids and attributes must have one entry per element.")

    @classmethod
    def empty(cls, element_type: str = "quad") -> "Mesh":
        k = VERTICES_PER_ELEMENT[element_type]
        return cls(
            vertices=np.zeros((0, 2)),
            elements=np.zeros((0, k), dtype=np.int64),
            element_type=element_type,
        )

    @property
    def num_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def num_elements(self) -> int:
        return int(self.elements.shape[0])

    def element_centers(self) -> np.ndarray:
        if self.num_elements == 0:
            return np.zeros((0, 2))
        return self.vertices[self.elements].mean(axis=1)

    def element_measures(self) -> np.ndarray:
        """Area of each element (length for segments)."""
        P = self.vertices[self.elements]
        if self.element_type == "segment":
            return np.linalg.norm(P[:, 1] - P[:, 0], axis=1)
        x, y = P[..., 0], P[..., 1]
        # shoelace
        return 0.5 * np.abs(np.sum(x * np.roll(y, -1, axis=1) - np.roll(x, -1, axis=1) * y, axis=1))

    def element_sizes(self) -> np.ndarray:
        """Element diameter proxy: the longest element edge."""
        if self.num_elements == 0:
            return np.zeros(0)
        if self.element_type == "segment":
            return self.element_measures()
        faces = ELEMENT_FACES[self.element_type]
        P = self.vertices[self.elements]
        lengths = np.linalg.norm(P[:, faces[:, 1]] - P[:, faces[:, 0]], axis=-1)
        return lengths.max(axis=1)

    def faces(self, num_global_vertices: int) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Enumerate element faces.

        Returns
        -------
        keys : (ne*nf,) face keys (see encode_faces)
        elem : (ne*nf,) local element index owning each face entry
        local : (ne*nf, 2) local vertex indices of the face
        """
        if self.element_type == "segment":
            raise ValueError("faces() is defined for 2D elements only.")
        table = ELEMENT_FACES[self.element_type]
        nf = table.shape[0]
        local = self.elements[:, table].reshape(-1, 2)
        elem = np.repeat(np.arange(self.num_elements, dtype=np.int64), nf)
        g = self.vertex_gids[local]
        keys = encode_faces(g[:, 0], g[:, 1], num_global_vertices)
        return keys, elem, local

    def boundary_faces(self) -> np.ndarray:
        """Local vertex pairs of faces that belong to exactly one element."""
        if self.num_elements == 0:
            return np.zeros((0, 2), dtype=np.int64)
        keys, _, local = self.faces(int(self.vertex_gids.max()) + 1)
        _, first, counts = np.unique(keys, return_index=True, return_counts=True)
        return local[first[counts == 1]]


def rectangle_mesh(
    nx: int,
    ny: int,
    lx: float = 1.0,
    ly: float = 1.0,
    *,
    element_type: str = "quad",
    x_min: float = 0.0,
    y_min: float = 0.0,
) -> Mesh:
    """
    Structured mesh of [x_min, x_min+lx] x [y_min, y_min+ly] with nx x ny cells.

    element_type "quad" gives nx*ny bilinear cells; "tri" splits each cell along
    its (0,0)-(1,1) diagonal into two counter-clockwise triangles.
    """
    nx, ny = int(nx), int(ny)
    if nx < 1 or ny < 1:
        raise ValueError("rectangle_mesh requires nx, ny >= 1.")
    if float(lx) <= 0.0 or float(ly) <= 0.0:
        raise ValueError("rectangle_mesh requires lx, ly > 0.")
    if element_type not in ELEMENT_FACES:
        raise ValueError(f"rectangle_mesh supports 'quad' and 'tri', got '{element_type}'.")

    x = np.linspace(x_min, x_min + lx, nx + 1)
    y = np.linspace(y_min, y_min + ly, ny + 1)
    X, Y = np.meshgrid(x, y, indexing="ij")
    vertices = np.column_stack([X.reshape(-1), Y.reshape(-1)])

    nvy = ny + 1
    elements: list[list[int]] = []
    for i in range(nx):
        for j in range(ny):
            v00 = idx(i, j, nvy)
            v10 = idx(i + 1, j, nvy)
            v11 = idx(i + 1, j + 1, nvy)
            v01 = idx(i, j + 1, nvy)
            if element_type == "quad":
                elements.append([v00, v10, v11, v01])
            else:
                elements.append([v00, v10, v11])
                elements.append([v00, v11, v01])

    return Mesh(vertices=vertices, elements=np.array(elements), element_type=element_type)
