from __future__ import annotations

import numpy as np

from schwarz.core.config import CaseConfig


def make_default_cases(sigma: complex = 1.0, kappa: float = np.pi) -> dict[str, CaseConfig]:
    """
    Manufactured solutions for  -Δu + σ u = f, keyed by name.

    "sine" and "polynomial" vanish on the unit square boundary; "wave" does not,
    so it exercises the essential-boundary lifting.
    """

    def u_sine(X, Y):
        return np.sin(np.pi * X) * np.sin(np.pi * Y)

    def f_sine(X, Y):
        return (2.0 * np.pi ** 2 + sigma) * u_sine(X, Y)

    case_sine = CaseConfig(name="sine", exact=u_sine, source=f_sine)

    def u_poly(X, Y):
        return X * (1.0 - X) * Y * (1.0 - Y)

    def f_poly(X, Y):
        return 2.0 * (X * (1.0 - X) + Y * (1.0 - Y)) + sigma * u_poly(X, Y)

    case_poly = CaseConfig(name="polynomial", exact=u_poly, source=f_poly)

    def u_wave(X, Y):
        return np.sin(kappa * Y) + np.sin(kappa * X)

    def f_wave(X, Y):
        return (kappa ** 2 + sigma) * u_wave(X, Y)

    case_wave = CaseConfig(name="wave", exact=u_wave, source=f_wave)

    def zero(X, Y):
        return np.zeros_like(np.asarray(X, dtype=float))

    case_zero = CaseConfig(name="zero", exact=zero, source=zero)

    return {c.name: c for c in [case_sine, case_poly, case_wave, case_zero]}
