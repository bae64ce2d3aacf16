"""
Optimized-Schwarz solve of  -Δu + σu = f  on the unit square.

    mpirun -n 4 python experiments/run_dd.py --n 32 --subdomains 2 2 --procs 2 2
"""
from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

import numpy as np
from mpi4py import MPI

from schwarz.algorithm.driver import run_dd_solve
from schwarz.core.cases import make_default_cases
from schwarz.core.config import DDConfig, KrylovConfig, LocalSolverKind, ProblemConfig
from schwarz.core.errors import InvariantViolation
from schwarz.core.mesh import rectangle_mesh
from schwarz.diagnostics import append_record, plot_field, save_npz, stream_solution

log = logging.getLogger("run_dd")


def parse_arguments(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Optimized Schwarz domain decomposition solve")

    # Mesh
    parser.add_argument("--n", type=int, default=16, help="Cells per direction (default: 16)")
    parser.add_argument("--element", choices=["quad", "tri"], default="quad", help="Element type (default: quad)")

    # Decomposition
    parser.add_argument("--subdomains", type=int, nargs=2, default=[2, 1], metavar=("NX", "NY"),
                        help="Cartesian subdomain layout (default: 2 1)")
    parser.add_argument("--procs", type=int, nargs=2, default=None, metavar=("NX", "NY"),
                        help="Cartesian process layout; product must equal the MPI size")

    # Problem
    parser.add_argument("--case", choices=sorted(make_default_cases()), default="sine",
                        help="Manufactured solution (default: sine)")
    parser.add_argument("--sigma", type=complex, default=1.0, help="Reaction coefficient σ (default: 1)")
    parser.add_argument("--alpha", type=complex, default=None,
                        help="Transmission coefficient (default: optimized Robin from hmin)")

    # Solvers
    parser.add_argument("--tol", type=float, default=1e-8, help="GMRES relative tolerance (default: 1e-8)")
    parser.add_argument("--max-iter", type=int, default=100, help="GMRES iterations (default: 100)")
    parser.add_argument("--restart", type=int, default=100, help="GMRES restart (default: 100)")
    parser.add_argument("--local-solver", choices=[k.value for k in LocalSolverKind],
                        default=LocalSolverKind.SUPERLU.value, help="Subdomain solver (default: superlu)")

    # Output
    parser.add_argument("--outdir", type=Path, default=Path("outputs"), help="Output directory")
    parser.add_argument("--plot", action="store_true", help="Save a figure of the solution")
    parser.add_argument("--visualize", action="store_true", help="Stream the solution to a GLVis server")
    parser.add_argument("--vis-port", type=int, default=19916)
    parser.add_argument("--dump-operator", action="store_true", help="Save the dense interface operator")
    parser.add_argument("--verbose", "-v", action="store_true")
    return parser.parse_args(argv)


def _real_if_possible(z: complex):
    return z.real if z.imag == 0 else z


def main(argv=None) -> int:
    args = parse_arguments(argv)
    comm = MPI.COMM_WORLD
    rank = comm.Get_rank()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=f"[{rank}] %(levelname)s %(name)s: %(message)s",
    )

    sigma = _real_if_possible(args.sigma)
    problem = ProblemConfig(sigma=sigma)
    case = make_default_cases(sigma=sigma)[args.case]
    dd = DDConfig(
        num_subdomains=int(np.prod(args.subdomains)),
        transmission=None if args.alpha is None else _real_if_possible(args.alpha),
        local_solver=args.local_solver,
    )
    kr = KrylovConfig(tol=args.tol, max_iter=args.max_iter, restart=args.restart)
    mesh = rectangle_mesh(args.n, args.n, element_type=args.element)

    try:
        result = run_dd_solve(
            mesh, case, problem, dd, kr, comm,
            nxyz_subdomains=args.subdomains, nxyz_procs=args.procs,
        )
    except InvariantViolation as exc:
        log.error("invariant violation: %s", exc)
        if comm.Get_size() > 1:
            comm.Abort(1)
        raise

    m = result.metrics
    outdir = args.outdir / f"case_{case.name}" / f"n{args.n}_{args.element}_sd{args.subdomains[0]}x{args.subdomains[1]}"
    append_record(args.outdir / "records.txt", comm, **m)

    u_full = result.pmesh.to_global(result.u)
    D = result.operator.dense_matrix() if args.dump_operator else None

    if rank == 0:
        save_npz(outdir / "solution.npz", u=u_full, residual_history=np.asarray(result.krylov.history))
        if D is not None:
            save_npz(outdir / "operator.npz", D=D)
        if args.plot:
            plot_field(mesh, u_full, title=f"{case.name} u", path=outdir / "u.png", show=False)
        if args.visualize:
            stream_solution(mesh, u_full, port=args.vis_port, title=case.name)

        print(f"{case.name}: {m}")

    return 0 if m["converged"] else 1


if __name__ == "__main__":
    sys.exit(main())
