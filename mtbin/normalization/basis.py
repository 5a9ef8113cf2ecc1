"""Trivariate polynomial basis used to model the log-domain bias field."""

import numpy as np

N_BASIS = 20

# Exponents (x, y, z) of each basis term, in column order.
BASIS_EXPONENTS = (
    (0, 0, 0),
    (1, 0, 0),
    (0, 1, 0),
    (0, 0, 1),
    (1, 1, 0),
    (1, 0, 1),
    (0, 1, 1),
    (2, 0, 0),
    (0, 2, 0),
    (0, 0, 2),
    (2, 1, 0),
    (2, 0, 1),
    (1, 2, 0),
    (0, 2, 1),
    (1, 0, 2),
    (0, 1, 2),
    (3, 0, 0),
    (0, 3, 0),
    (0, 0, 3),
    (1, 1, 1),
)


def polynomial_basis(positions: np.ndarray) -> np.ndarray:
    """Evaluate the 20-term third-order polynomial basis.

    Terms: 1, x, y, z, xy, xz, yz, x^2, y^2, z^2, x^2y, x^2z, xy^2, y^2z,
    xz^2, yz^2, x^3, y^3, z^3, xyz.

    Args:
        positions: Scanner-space coordinates, shape (N, 3)

    Returns:
        Design matrix, shape (N, 20)
    """
    positions = np.asarray(positions, dtype=np.float64)
    if positions.ndim != 2 or positions.shape[1] != 3:
        raise ValueError(f"positions must have shape (N, 3), got {positions.shape}")

    x, y, z = positions[:, 0], positions[:, 1], positions[:, 2]
    powers = [
        [np.ones_like(x), x, x * x, x * x * x],
        [np.ones_like(y), y, y * y, y * y * y],
        [np.ones_like(z), z, z * z, z * z * z],
    ]

    basis = np.empty((positions.shape[0], N_BASIS), dtype=np.float64)
    for col, (i, j, k) in enumerate(BASIS_EXPONENTS):
        basis[:, col] = powers[0][i] * powers[1][j] * powers[2][k]
    return basis
