import logging

import numpy as np
import pytest
import scipy.sparse.linalg as spla

from schwarz.algorithm.driver import run_dd_solve
from schwarz.core.cases import make_default_cases
from schwarz.core.config import (
    DDConfig,
    KrylovConfig,
    LocalSolverKind,
    ProblemConfig,
    optimized_robin_parameter,
    resolve_transmission,
)
from schwarz.core.mesh import rectangle_mesh
from schwarz.diagnostics import append_record, format_solution, plot_field, save_npz, stream_solution
from schwarz.operators.assemble import assemble_load_vector, assemble_system, lifted_system

EXPECTED_METRICS = {
    "case", "num_procs", "num_subdomains", "num_interfaces", "num_vertices", "num_elements",
    "interface_size", "hmin", "alpha", "local_solver", "converged", "iterations",
    "krylov_residual", "rel_residual", "l2_error", "rel_l2_error",
}


def serial_direct_solve(mesh, case, problem):
    A = assemble_system(mesh, problem)
    F = assemble_load_vector(mesh, case.source, dtype=problem.dtype)
    dirichlet = np.zeros(mesh.num_vertices, dtype=bool)
    dirichlet[np.unique(mesh.boundary_faces())] = True
    A_bc, B = lifted_system(A, F, dirichlet, case.exact(mesh.vertices[:, 0], mesh.vertices[:, 1]))
    return spla.spsolve(A_bc.tocsc(), B)


@pytest.mark.parametrize("element_type", ["quad", "tri"])
def test_sine_two_subdomains(comm, problem, element_type):
    mesh = rectangle_mesh(16, 16, element_type=element_type)
    case = make_default_cases(sigma=problem.sigma)["sine"]
    res = run_dd_solve(
        mesh, case, problem, DDConfig(num_subdomains=2), KrylovConfig(tol=1e-10), comm,
        nxyz_subdomains=(2, 1),
    )
    m = res.metrics

    assert set(m) == EXPECTED_METRICS
    assert m["converged"]
    assert m["iterations"] > 0
    assert m["num_interfaces"] == 1
    assert m["interface_size"] == 2 * 15
    assert m["rel_residual"] < 1e-6
    assert m["rel_l2_error"] < 5e-2
    assert m["num_vertices"] == 17 * 17


def test_matches_serial_direct_solve(comm, problem):
    mesh = rectangle_mesh(12, 12, element_type="tri")
    case = make_default_cases(sigma=problem.sigma)["wave"]
    res = run_dd_solve(
        mesh, case, problem, DDConfig(num_subdomains=3), KrylovConfig(tol=1e-12), comm,
        nxyz_subdomains=(3, 1),
    )
    assert res.metrics["converged"]
    # nonzero boundary data: the residual of the exact discrete solution is at round-off
    assert res.metrics["rel_residual"] < 1e-8

    u_ref = serial_direct_solve(mesh, case, problem)
    np.testing.assert_allclose(res.pmesh.to_global(res.u), u_ref, atol=1e-8)


def test_boundary_values_are_imposed(comm, problem):
    mesh = rectangle_mesh(8, 8)
    case = make_default_cases(sigma=problem.sigma)["wave"]
    res = run_dd_solve(mesh, case, problem, DDConfig(num_subdomains=2), comm=comm)

    pm = res.pmesh
    X = pm.mesh.vertices
    d = pm.dirichlet
    np.testing.assert_allclose(res.u[d], case.exact(X[d, 0], X[d, 1]))


def test_helmholtz(comm):
    problem = ProblemConfig(sigma=-10.0)
    mesh = rectangle_mesh(16, 16)
    case = make_default_cases(sigma=problem.sigma)["sine"]
    res = run_dd_solve(
        mesh, case, problem, DDConfig(num_subdomains=2), KrylovConfig(tol=1e-10), comm,
        nxyz_subdomains=(2, 1),
    )
    m = res.metrics
    assert m["converged"]
    assert np.iscomplexobj(res.u)
    assert m["rel_residual"] < 1e-6
    assert m["rel_l2_error"] < 5e-2


@pytest.mark.parametrize("kind", [LocalSolverKind.FACTORIZED, LocalSolverKind.GMRES_ILU])
def test_other_local_solvers(comm, problem, kind):
    mesh = rectangle_mesh(8, 8)
    case = make_default_cases(sigma=problem.sigma)["polynomial"]
    res = run_dd_solve(
        mesh, case, problem, DDConfig(num_subdomains=2, local_solver=kind), KrylovConfig(tol=1e-10), comm,
    )
    assert res.metrics["converged"]
    assert res.metrics["local_solver"] == kind.value
    assert res.metrics["rel_residual"] < 1e-6


def test_zero_case_needs_no_iterations(comm, problem):
    case = make_default_cases()["zero"]
    res = run_dd_solve(rectangle_mesh(6, 6), case, problem, DDConfig(num_subdomains=2), comm=comm)
    assert res.metrics["converged"]
    assert res.metrics["iterations"] == 0
    np.testing.assert_array_equal(res.u, 0.0)


def test_layout_mismatch(comm, problem):
    case = make_default_cases()["sine"]
    mesh = rectangle_mesh(4, 4)
    with pytest.raises(ValueError):
        run_dd_solve(mesh, case, problem, DDConfig(num_subdomains=3), comm=comm, nxyz_subdomains=(2, 1))
    with pytest.raises(ValueError):
        run_dd_solve(
            mesh, case, problem, DDConfig(num_subdomains=2), comm=comm,
            nxyz_procs=(comm.Get_size() + 1, 1),
        )
    with pytest.raises(ValueError):
        run_dd_solve(
            mesh, case, problem, DDConfig(num_subdomains=2), comm=comm,
            nxyz_procs=(comm.Get_size(), 1), proc_partition=np.zeros(mesh.num_elements, dtype=np.int64),
        )


# ============================
# Configuration
# ============================

def test_optimized_robin_parameter():
    h = 0.1
    alpha = optimized_robin_parameter(h, 1.0)
    assert alpha == pytest.approx(((np.pi ** 2 + 1.0) * ((np.pi / h) ** 2 + 1.0)) ** 0.25)
    # grows like h^{-1/2}
    assert optimized_robin_parameter(h / 4, 1.0) / alpha == pytest.approx(2.0, rel=1e-2)

    assert optimized_robin_parameter(h, -9.0) == pytest.approx(-3.0j)
    # complex-typed but real σ stays in the definite branch
    assert optimized_robin_parameter(h, 1.0 + 0.0j) == pytest.approx(alpha)
    assert optimized_robin_parameter(h, 1.0 + 2.0j) == pytest.approx(-1j * np.sqrt(-(1.0 + 2.0j)))
    with pytest.raises(ValueError):
        optimized_robin_parameter(0.0, 1.0)


def test_resolve_transmission():
    problem = ProblemConfig(sigma=1.0)
    assert resolve_transmission(DDConfig(num_subdomains=2, transmission=2.5), problem, 0.1) == 2.5
    assert resolve_transmission(DDConfig(num_subdomains=2), problem, 0.1) == optimized_robin_parameter(0.1, 1.0)


@pytest.mark.parametrize(
    "kwargs",
    [{"num_subdomains": 0}, {"num_subdomains": 2, "transmission": 0.0}, {"num_subdomains": 2, "local_tol": 0.0}],
)
def test_dd_config_validation(kwargs):
    with pytest.raises(ValueError):
        DDConfig(**kwargs)


def test_dd_config_accepts_strings():
    assert DDConfig(num_subdomains=2, local_solver="gmres_ilu").local_solver is LocalSolverKind.GMRES_ILU


# ============================
# Diagnostics
# ============================

def test_append_record(tmp_path, comm):
    path = tmp_path / "out" / "records.txt"
    append_record(path, comm, case="sine", iterations=7)
    append_record(path, comm, case="wave", iterations=9)
    if comm.Get_rank() == 0:
        assert path.read_text() == "case=sine\niterations=7\n\ncase=wave\niterations=9\n\n"


def test_save_npz(tmp_path):
    path = tmp_path / "a" / "b.npz"
    save_npz(path, u=np.arange(3.0))
    with np.load(path) as data:
        np.testing.assert_array_equal(data["u"], [0.0, 1.0, 2.0])


def test_format_solution():
    mesh = rectangle_mesh(2, 1)
    text = format_solution(mesh, np.arange(6.0))
    lines = text.splitlines()
    assert lines[0] == "solution"
    assert "elements" in lines
    assert lines[lines.index("elements") + 1] == "2"
    assert lines[lines.index("vertices") + 1] == "6"
    assert lines[-1] == "5"


def test_stream_solution_without_server(caplog):
    mesh = rectangle_mesh(2, 2)
    with caplog.at_level(logging.WARNING, logger="schwarz.diagnostics"):
        # port 1 is privileged and not listening
        ok = stream_solution(mesh, np.zeros(mesh.num_vertices), port=1, timeout=0.5)
    assert ok is False
    assert "visualization stream" in caplog.text


@pytest.mark.parametrize("element_type", ["quad", "tri"])
def test_plot_field(tmp_path, element_type):
    mesh = rectangle_mesh(4, 4, element_type=element_type)
    path = tmp_path / "u.png"
    plot_field(mesh, mesh.vertices[:, 0] + 1j * mesh.vertices[:, 1], mode="abs", path=path, show=False)
    assert path.exists()

    with pytest.raises(ValueError):
        plot_field(mesh, np.zeros(3), show=False)
    with pytest.raises(ValueError):
        plot_field(mesh, np.zeros(mesh.num_vertices), mode="bogus", show=False)


def test_wave_residual_matches_direct_residual(comm, problem):
    mesh = rectangle_mesh(10, 10)
    case = make_default_cases(sigma=problem.sigma)["wave"]
    res = run_dd_solve(mesh, case, problem, DDConfig(num_subdomains=2), KrylovConfig(tol=1e-12), comm=comm)
    assert res.metrics["converged"]
    assert res.metrics["rel_residual"] < 1e-8
    assert res.metrics["rel_l2_error"] < 5e-2
