# core/errors.py
from __future__ import annotations


class InvariantViolation(RuntimeError):
    """
    Fatal setup defect: partition coverage mismatch, interface counts that do not
    reconcile across processes, inconsistent global numbering, overlapping meshes.

    These are never recovered from; the driver aborts the run.
    """


class LocalSolveError(RuntimeError):
    """
    A subdomain boundary-value solve failed (singular factorization or
    iterative non-convergence).

    Raised on every process of the communicator, so that the caller can decide
    what to do with the outer iteration.
    """

    def __init__(self, message: str, subdomains: tuple[int, ...] = ()):
        super().__init__(message)
        self.subdomains = tuple(subdomains)


def verify(condition: bool, message: str) -> None:
    """Raise InvariantViolation with `message` unless `condition` holds."""
    if not condition:
        raise InvariantViolation(message)
