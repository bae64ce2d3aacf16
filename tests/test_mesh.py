import numpy as np
import pytest

from schwarz.core.mesh import Mesh, decode_faces, encode_faces, rectangle_mesh


@pytest.mark.parametrize("element_type,per_cell", [("quad", 1), ("tri", 2)])
def test_rectangle_mesh_counts(element_type, per_cell):
    mesh = rectangle_mesh(4, 3, lx=2.0, ly=1.5, element_type=element_type)
    assert mesh.num_vertices == 5 * 4
    assert mesh.num_elements == 4 * 3 * per_cell
    np.testing.assert_allclose(mesh.element_measures().sum(), 2.0 * 1.5)
    np.testing.assert_array_equal(mesh.vertex_gids, np.arange(mesh.num_vertices))
    np.testing.assert_array_equal(mesh.attributes, 0)


@pytest.mark.parametrize("element_type", ["quad", "tri"])
def test_boundary_faces(element_type):
    mesh = rectangle_mesh(4, 2, element_type=element_type)
    bf = mesh.boundary_faces()
    assert bf.shape == (2 * (4 + 2), 2)

    P = mesh.vertices[bf]
    on_edge = (
        np.all(np.isclose(P[..., 0], 0.0), axis=1)
        | np.all(np.isclose(P[..., 0], 1.0), axis=1)
        | np.all(np.isclose(P[..., 1], 0.0), axis=1)
        | np.all(np.isclose(P[..., 1], 1.0), axis=1)
    )
    assert on_edge.all()


def test_element_sizes_longest_edge():
    quad = rectangle_mesh(4, 2, element_type="quad")
    np.testing.assert_allclose(quad.element_sizes(), 0.5)

    tri = rectangle_mesh(4, 4, element_type="tri")
    np.testing.assert_allclose(tri.element_sizes(), np.sqrt(2.0) / 4.0)


def test_face_keys_are_orientation_free():
    keys = encode_faces(np.array([5, 2]), np.array([2, 5]), 10)
    assert keys[0] == keys[1] == 25
    np.testing.assert_array_equal(decode_faces(keys, 10), [[2, 5], [2, 5]])


def test_faces_shared_by_neighbours():
    mesh = rectangle_mesh(2, 1)
    keys, elem, _ = mesh.faces(mesh.num_vertices)
    uniq, counts = np.unique(keys, return_counts=True)
    assert uniq.size == 7
    assert np.count_nonzero(counts == 2) == 1


def test_mesh_validation():
    with pytest.raises(ValueError):
        Mesh(vertices=np.zeros((3, 2)), elements=[[0, 1, 3]], element_type="tri")
    with pytest.raises(ValueError):
        Mesh(vertices=np.zeros((3, 2)), elements=[[0, 1, 2]], element_type="hex")
    with pytest.raises(ValueError):
        Mesh(vertices=np.zeros((3, 2)), elements=[[0, 1, 2]], element_type="tri", vertex_gids=[0, 1])
    with pytest.raises(ValueError):
        rectangle_mesh(0, 2)


def test_empty_mesh():
    mesh = Mesh.empty("segment")
    assert mesh.num_vertices == 0
    assert mesh.num_elements == 0
    assert mesh.elements.shape == (0, 2)
    assert mesh.boundary_faces().shape == (0, 2)
