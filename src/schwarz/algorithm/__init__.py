"""
Algorithm: end-to-end domain-decomposition solve.
"""

from .driver import DDSolveResult, build_operator, run_dd_solve

__all__ = ["DDSolveResult", "build_operator", "run_dd_solve"]
