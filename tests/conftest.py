"""Pytest configuration and fixtures for the domain-decomposition tests."""

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest
from mpi4py import MPI

from schwarz.core.config import DDConfig, ProblemConfig
from schwarz.core.mesh import rectangle_mesh
from schwarz.core.parmesh import ParMesh
from schwarz.core.partition import cartesian_partitioning


@pytest.fixture
def comm():
    return MPI.COMM_WORLD


@pytest.fixture
def problem():
    return ProblemConfig(sigma=1.0)


def tagged_mesh(nx, ny, nxyz, element_type="quad"):
    """Rectangle mesh of the unit square with subdomain tags from a Cartesian layout."""
    mesh = rectangle_mesh(nx, ny, element_type=element_type)
    mesh.attributes = cartesian_partitioning(mesh, nxyz)
    return mesh


@pytest.fixture
def scenario_mesh():
    """4x2 quads of the unit square split into two subdomains of 4 elements."""
    return tagged_mesh(4, 2, (2, 1))


@pytest.fixture
def scenario_pmesh(comm, scenario_mesh):
    return ParMesh.from_serial(comm, scenario_mesh)


@pytest.fixture
def two_subdomains():
    return DDConfig(num_subdomains=2)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def make_tagged_mesh():
    return tagged_mesh
