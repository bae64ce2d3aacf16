import numpy as np
import pytest
import scipy.sparse.linalg as spla

from schwarz.algorithm.driver import build_operator
from schwarz.core.config import DDConfig, KrylovConfig, ProblemConfig
from schwarz.core.errors import LocalSolveError
from schwarz.core.mesh import rectangle_mesh
from schwarz.core.parmesh import ParMesh
from schwarz.decomposition.interfaces import InterfaceTopologyBuilder
from schwarz.decomposition.submesh import SubdomainMeshBuilder
from schwarz.operators.assemble import assemble_system, lifted_system
from schwarz.operators.ddoperator import InterfaceOperator
from schwarz.operators.krylov import KrylovDriver


def operator_from_pmesh(pmesh, problem, dd):
    topo = InterfaceTopologyBuilder(dd.num_subdomains, pmesh)
    interfaces = topo.create_interfaces()
    imap = topo.global_to_local_map(interfaces)
    builder = SubdomainMeshBuilder(dd.num_subdomains, pmesh)
    return InterfaceOperator(
        pmesh,
        builder.create_subdomain_meshes(),
        builder.create_interface_meshes(imap, interfaces),
        imap,
        problem,
        dd,
    )


def manufactured_rhs(op, u_star):
    """Lifted right-hand side whose discrete solution is u_star."""
    pm = op.pmesh
    A = assemble_system(pm.mesh, op.problem)
    _, B = lifted_system(A, A @ u_star, pm.dirichlet, u_star)
    return B


def solve_round_trip(op, B, tol=1e-12):
    rhs = op.get_reduced_source(B)
    result = KrylovDriver(KrylovConfig(tol=tol, max_iter=200, restart=200)).solve(op, rhs)
    assert result.converged
    return op.recover_domain_solution(result.solution, B, B)


@pytest.fixture
def scenario_operator(scenario_pmesh, problem, two_subdomains):
    return operator_from_pmesh(scenario_pmesh, problem, two_subdomains)


# ============================
# Scenario: 4x2 quads, two subdomains
# ============================

def test_scenario_layout(scenario_operator):
    op = scenario_operator
    # one free vertex on x = 1/2, two Robin traces
    assert op.height == op.width == 2
    assert op.global_size == 2
    np.testing.assert_array_equal(op.trace_sizes, [1])
    assert op.owned_interfaces == [0]
    assert op.alpha > 0


def test_zero_source_and_zero_apply(scenario_operator):
    op = scenario_operator
    B = np.zeros(op.pmesh.mesh.num_vertices)
    np.testing.assert_array_equal(op.get_reduced_source(B), np.zeros(2))
    np.testing.assert_array_equal(op.apply(np.zeros(2)), np.zeros(2))


def test_recovery_keeps_dirichlet_prior(scenario_operator, rng):
    op = scenario_operator
    prior = rng.standard_normal(op.pmesh.mesh.num_vertices)
    u = op.recover_domain_solution(np.zeros(op.height), prior)

    d = op.pmesh.dirichlet
    np.testing.assert_array_equal(u[d], prior[d])
    np.testing.assert_allclose(u[~d], 0.0, atol=1e-14)


def test_apply_is_linear(scenario_operator, rng):
    op = scenario_operator
    x, z = rng.standard_normal(2), rng.standard_normal(2)
    np.testing.assert_allclose(op.apply(2.0 * x - 3.0 * z), 2.0 * op.apply(x) - 3.0 * op.apply(z), atol=1e-12)


def test_shape_errors(scenario_operator):
    op = scenario_operator
    with pytest.raises(ValueError):
        op.apply(np.zeros(3))
    with pytest.raises(ValueError):
        op.get_reduced_source(np.zeros(4))
    with pytest.raises(ValueError):
        op.recover_domain_solution(np.zeros(2), np.zeros(4))
    with pytest.raises(ValueError):
        op.scatter_global(np.zeros(5))


def test_overlapping_calls_rejected(scenario_operator):
    op = scenario_operator
    with op._exclusive():
        with pytest.raises(RuntimeError):
            op.apply(np.zeros(2))
    # guard released
    op.apply(np.zeros(2))


def test_local_failure_propagates(scenario_operator, monkeypatch):
    op = scenario_operator

    def boom(b):
        raise LocalSolveError("subdomain 1: factor lost", (1,))

    monkeypatch.setattr(op._subdomains[1].solver, "apply", boom)
    with pytest.raises(LocalSolveError) as excinfo:
        op.apply(np.ones(2))
    assert excinfo.value.subdomains == (1,)
    assert not op._busy


def test_subdomain_count_mismatch(scenario_pmesh, problem):
    pm = scenario_pmesh
    topo = InterfaceTopologyBuilder(2, pm)
    interfaces = topo.create_interfaces()
    imap = topo.global_to_local_map(interfaces)
    builder = SubdomainMeshBuilder(2, pm)
    with pytest.raises(ValueError):
        InterfaceOperator(
            pm, builder.create_subdomain_meshes()[:1], builder.create_interface_meshes(imap, interfaces),
            imap, problem, DDConfig(num_subdomains=2),
        )


# ============================
# Round trips
# ============================

@pytest.mark.parametrize("element_type", ["quad", "tri"])
def test_round_trip_two_subdomains(comm, problem, rng, element_type):
    mesh = rectangle_mesh(8, 8, element_type=element_type)
    op = build_operator(mesh, problem, DDConfig(num_subdomains=2), comm, nxyz_subdomains=(2, 1))
    assert op.height == 2 * 7

    u_star = rng.standard_normal(op.pmesh.mesh.num_vertices)
    u = solve_round_trip(op, manufactured_rhs(op, u_star))
    np.testing.assert_allclose(u, u_star, atol=1e-7)


def test_round_trip_strips(comm, problem, rng):
    mesh = rectangle_mesh(6, 4)
    op = build_operator(mesh, problem, DDConfig(num_subdomains=3), comm, nxyz_subdomains=(3, 1))
    assert len(op.interface_map) == 2
    np.testing.assert_array_equal(op.interface_map.interface_gi, [1, 5])

    u_star = rng.standard_normal(op.pmesh.mesh.num_vertices)
    u = solve_round_trip(op, manufactured_rhs(op, u_star))
    np.testing.assert_allclose(u, u_star, atol=1e-7)


def test_round_trip_helmholtz(comm, rng):
    problem = ProblemConfig(sigma=-10.0)
    mesh = rectangle_mesh(8, 8)
    op = build_operator(mesh, problem, DDConfig(num_subdomains=2), comm, nxyz_subdomains=(2, 1))
    assert np.iscomplexobj(op.alpha)
    assert op.dtype == np.complex128

    u_star = rng.standard_normal(op.pmesh.mesh.num_vertices)
    u = solve_round_trip(op, manufactured_rhs(op, u_star))
    np.testing.assert_allclose(u, u_star, atol=1e-7)


def test_round_trip_explicit_transmission(comm, problem, rng):
    mesh = rectangle_mesh(8, 8, element_type="tri")
    dd = DDConfig(num_subdomains=2, transmission=3.0)
    op = build_operator(mesh, problem, dd, comm, nxyz_subdomains=(2, 1))
    assert op.alpha == 3.0

    u_star = rng.standard_normal(op.pmesh.mesh.num_vertices)
    u = solve_round_trip(op, manufactured_rhs(op, u_star))
    np.testing.assert_allclose(u, u_star, atol=1e-7)


def test_empty_subdomain(comm, problem, rng):
    mesh = rectangle_mesh(6, 2)
    mesh.attributes = np.where(mesh.element_centers()[:, 0] < 0.5, 0, 2).astype(np.int64)
    op = operator_from_pmesh(ParMesh.from_serial(comm, mesh), problem, DDConfig(num_subdomains=3))

    np.testing.assert_array_equal(op.interface_map.interface_gi, [2])
    assert sorted(op._subdomains) == [0, 2]
    assert op.height == 2

    u_star = rng.standard_normal(op.pmesh.mesh.num_vertices)
    u = solve_round_trip(op, manufactured_rhs(op, u_star))
    np.testing.assert_allclose(u, u_star, atol=1e-8)


def test_single_subdomain_is_direct_solve(comm, problem, rng):
    mesh = rectangle_mesh(5, 5, element_type="tri")
    op = build_operator(mesh, problem, DDConfig(num_subdomains=1), comm)
    assert op.height == 0
    assert op.global_size == 0

    u_star = rng.standard_normal(op.pmesh.mesh.num_vertices)
    B = manufactured_rhs(op, u_star)
    assert op.get_reduced_source(B).shape == (0,)
    u = op.recover_domain_solution(np.zeros(0), B, B)
    np.testing.assert_allclose(u, u_star, atol=1e-10)


# ============================
# Global views
# ============================

def test_dense_matrix_matches_apply(comm, problem, rng):
    op = build_operator(rectangle_mesh(6, 4), problem, DDConfig(num_subdomains=3), comm, nxyz_subdomains=(3, 1))
    D = op.dense_matrix()
    assert D.shape == (op.global_size, op.global_size)

    x = rng.standard_normal(op.global_size)
    y = op.gather_global(op.apply(op.scatter_global(x)))
    np.testing.assert_allclose(D @ x, y, atol=1e-12)

    # I - ΠS is nonsingular away from cross points
    assert np.linalg.matrix_rank(D) == op.global_size


def test_scatter_gather(scenario_operator):
    op = scenario_operator
    x = np.array([1.0, 2.0])
    np.testing.assert_array_equal(op.gather_global(op.scatter_global(x)), x)


def test_scipy_linear_operator(scenario_operator, rng):
    op = scenario_operator
    L = op.as_linear_operator()
    assert isinstance(L, spla.LinearOperator)
    x = rng.standard_normal(2)
    np.testing.assert_allclose(L.matvec(x), op.apply(x))


def test_recovery_takes_the_source_explicitly(comm, problem, rng):
    op = build_operator(rectangle_mesh(8, 8), problem, DDConfig(num_subdomains=2), comm, nxyz_subdomains=(2, 1))
    u_star = rng.standard_normal(op.pmesh.mesh.num_vertices)
    B = manufactured_rhs(op, u_star)
    lam = rng.standard_normal(op.height)

    first = op.recover_domain_solution(lam, B, B)
    # reducing another right-hand side in between leaves recovery unchanged
    op.get_reduced_source(np.zeros_like(B))
    np.testing.assert_allclose(op.recover_domain_solution(lam, B, B), first)

    # without a right-hand side the local problems are homogeneous and linear in λ
    homogeneous = op.recover_domain_solution(lam, np.zeros_like(B))
    np.testing.assert_allclose(
        op.recover_domain_solution(2.0 * lam, np.zeros_like(B)), 2.0 * homogeneous, atol=1e-12
    )
    with pytest.raises(ValueError):
        op.recover_domain_solution(lam, B, np.zeros(3))
