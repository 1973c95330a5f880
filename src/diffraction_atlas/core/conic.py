"""
Conic fitting by weighted hyper-renormalization and conic/ellipse conversion.

Hyper-renormalization (Kanatani, Al-Sharadqah, Chernov et al.) iterates a
generalized eigenproblem whose solution removes the second-order bias of
least squares, so near-degenerate ellipses stay well conditioned.
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import scipy.linalg

from ..exceptions import PreconditionError
from ..models import ConicCoefficients, ConicFit, Ellipse

logger = logging.getLogger(__name__)

# Derivative of (xi, e) for the conic's trace term
_E = np.array([1.0, 0.0, 1.0, 0.0, 0.0, 0.0])


def _carrier(x: np.ndarray, y: np.ndarray, f0: float) -> np.ndarray:
    ones = np.ones_like(x)
    return np.column_stack([x * x, 2 * x * y, y * y, 2 * f0 * x, 2 * f0 * y, f0 * f0 * ones])


def _normalised_covariance(x: np.ndarray, y: np.ndarray, f0: float) -> np.ndarray:
    n = x.size
    v0 = np.zeros((n, 6, 6))
    xx, yy, xy = x * x, y * y, x * y
    v0[:, 0, 0] = xx
    v0[:, 0, 1] = v0[:, 1, 0] = xy
    v0[:, 0, 3] = v0[:, 3, 0] = f0 * x
    v0[:, 1, 1] = xx + yy
    v0[:, 1, 2] = v0[:, 2, 1] = xy
    v0[:, 1, 3] = v0[:, 3, 1] = f0 * y
    v0[:, 1, 4] = v0[:, 4, 1] = f0 * x
    v0[:, 2, 2] = yy
    v0[:, 2, 4] = v0[:, 4, 2] = f0 * y
    v0[:, 3, 3] = f0 * f0
    v0[:, 4, 4] = f0 * f0
    return 4 * v0


def _truncated_pinv(matrix: np.ndarray, rank: int = 5) -> np.ndarray:
    vals, vecs = np.linalg.eigh(matrix)
    keep = slice(vals.size - rank, vals.size)
    kept_vals = vals[keep]
    kept_vals = np.where(np.abs(kept_vals) > 1e-300, kept_vals, np.inf)
    return (vecs[:, keep] / kept_vals) @ vecs[:, keep].T


def _smallest_generalized(m: np.ndarray, n: np.ndarray) -> np.ndarray:
    # Solve M theta = lambda N theta for the finite lambda of smallest magnitude
    vals, vecs = scipy.linalg.eig(m, n)
    finite = np.isfinite(vals)
    if not finite.any():
        raise np.linalg.LinAlgError("no finite generalized eigenvalue")
    idx = np.flatnonzero(finite)[int(np.argmin(np.abs(vals[finite])))]
    theta = np.real(vecs[:, idx])
    norm = np.linalg.norm(theta)
    if norm < 1e-300:
        raise np.linalg.LinAlgError("zero eigenvector")
    return theta / norm


def hyper_renormalization(
    x: np.ndarray,
    y: np.ndarray,
    weights: Optional[np.ndarray] = None,
    f0: float = 1.0,
    max_iter: int = 20,
    tolerance: float = 1e-6,
) -> ConicFit:
    """
    Fit a conic to weighted points by hyper-renormalization.

    Args:
        x: Point x coordinates (ideally centred near the conic)
        y: Point y coordinates
        weights: Non-negative per-point weights (default uniform)
        f0: Scale constant of the carrier, comparable to the coordinates
        max_iter: Iteration cap
        tolerance: Convergence threshold on the coefficient vector change

    Returns:
        ConicFit; `converged` is False when the cap was reached or the
        eigenproblem became singular, in which case the last iterate is kept
    """
    x = np.asarray(x, dtype=np.float64).ravel()
    y = np.asarray(y, dtype=np.float64).ravel()
    if x.size != y.size:
        raise PreconditionError(f"Got {x.size} x coordinates and {y.size} y coordinates")
    if x.size < 5:
        raise PreconditionError(f"A conic fit needs at least 5 points, got {x.size}")
    if f0 <= 0:
        raise PreconditionError(f"f0 must be positive, got {f0}")

    if weights is None:
        w = np.ones(x.size)
    else:
        w = np.clip(np.asarray(weights, dtype=np.float64).ravel(), 0, None)
    if w.sum() <= 0:
        w = np.ones(x.size)
    w = w / w.sum()

    xi = _carrier(x, y, f0)
    v0 = _normalised_covariance(x, y, f0)
    # xi e^T symmetrised per point
    xi_e = 0.5 * (xi[:, :, None] * _E[None, None, :] + _E[None, :, None] * xi[:, None, :])

    big_w = np.ones(x.size)
    theta = None
    converged = False
    iterations = 0

    for iterations in range(1, max_iter + 1):
        ww = w * big_w
        m = np.einsum("n,ni,nj->ij", ww, xi, xi)
        m5 = _truncated_pinv(m)

        xi_m5_xi = np.einsum("ni,ij,nj->n", xi, m5, xi)
        v0_m5_xi = np.einsum("nij,jk,nk->ni", v0, m5, xi)
        outer = v0_m5_xi[:, :, None] * xi[:, None, :]
        outer_sym = 0.5 * (outer + outer.transpose(0, 2, 1))
        n_first = np.einsum("n,nij->ij", ww, v0 + 2 * xi_e)
        n_second = np.einsum("n,nij->ij", ww ** 2, xi_m5_xi[:, None, None] * v0 + 2 * outer_sym)
        n_matrix = n_first - n_second

        try:
            new_theta = _smallest_generalized(m, n_matrix)
        except (np.linalg.LinAlgError, ValueError) as e:
            logger.debug("Hyper-renormalization stopped at iteration %d: %s", iterations, e)
            if theta is None:
                # Fall back to the least-squares solution
                _, vecs = np.linalg.eigh(m)
                theta = vecs[:, 0]
            break

        if theta is not None:
            change = min(np.linalg.norm(new_theta - theta), np.linalg.norm(new_theta + theta))
            theta = new_theta
            if change < tolerance:
                converged = True
                break
        else:
            theta = new_theta

        denom = np.einsum("i,nij,j->n", theta, v0, theta)
        big_w = 1.0 / np.maximum(denom, 1e-300)

    conic = ConicCoefficients(*(float(t) for t in theta), f0=f0)
    return ConicFit(conic=conic, iterations=iterations, converged=converged, n_points=int(x.size))


def conic_from_ellipse(
    center: Tuple[float, float],
    a: float,
    b: float,
    angle: float,
) -> np.ndarray:
    """
    General conic coefficients (A, B, C, D, E, F) of an ellipse.

    Args:
        center: (x, y) center
        a: Semi-axis along `angle`
        b: Semi-axis perpendicular to `angle`
        angle: Orientation of the `a` axis in radians

    Returns:
        Array of 6 coefficients of Ax^2 + Bxy + Cy^2 + Dx + Ey + F = 0
    """
    if a <= 0 or b <= 0:
        raise PreconditionError(f"Ellipse axes must be positive, got a={a}, b={b}")
    x0, y0 = center
    c, s = np.cos(angle), np.sin(angle)
    A = c * c / a ** 2 + s * s / b ** 2
    B = 2 * c * s * (1 / a ** 2 - 1 / b ** 2)
    C = s * s / a ** 2 + c * c / b ** 2
    D = -2 * A * x0 - B * y0
    E = -B * x0 - 2 * C * y0
    F = A * x0 ** 2 + B * x0 * y0 + C * y0 ** 2 - 1
    return np.array([A, B, C, D, E, F])


def ellipse_points_from_conic(coefficients: Sequence[float]) -> Ellipse:
    """
    Convert general conic coefficients to center, axes and rotation.

    The conic is rotated by theta = atan2(B, A - C) / 2, mapped into
    [0, pi/2), to remove the cross term; the center and semi-axes follow
    from the rotated coefficients and are rotated back. The four extremal
    points are the ends of the rotated axes.

    Args:
        coefficients: (A, B, C, D, E, F) of Ax^2 + Bxy + Cy^2 + Dx + Ey + F = 0

    Returns:
        Ellipse with a >= b and angle in [0, pi); is_ellipse is False exactly
        when 4AC - B^2 <= 0, imaginary ellipses have zero axes
    """
    A, B, C, D, E, F = (float(c) for c in coefficients)
    if 4 * A * C - B * B <= 0:
        return Ellipse.invalid()

    theta = (0.5 * np.arctan2(B, A - C)) % (np.pi / 2)
    ct, st = np.cos(theta), np.sin(theta)
    a_rot = A * ct * ct + B * ct * st + C * st * st
    c_rot = A * st * st - B * ct * st + C * ct * ct
    d_rot = D * ct + E * st
    e_rot = E * ct - D * st

    xr = -d_rot / (2 * a_rot)
    yr = -e_rot / (2 * c_rot)
    center = (float(xr * ct - yr * st), float(xr * st + yr * ct))

    k = a_rot * xr * xr + c_rot * yr * yr - F
    ax2, ay2 = k / a_rot, k / c_rot
    # Imaginary ellipses (no real points) collapse to zero axes
    ax, ay = float(np.sqrt(max(ax2, 0.0))), float(np.sqrt(max(ay2, 0.0)))

    def rotated(px: float, py: float) -> Tuple[float, float]:
        return float(center[0] + px * ct - py * st), float(center[1] + px * st + py * ct)

    extrema = [rotated(0.0, -ay), rotated(ax, 0.0), rotated(0.0, ay), rotated(-ax, 0.0)]

    if ax >= ay:
        a, b, angle = ax, ay, theta
    else:
        a, b, angle = ay, ax, theta + np.pi / 2
    return Ellipse(center=center, a=a, b=b, angle=float(angle % np.pi), is_ellipse=True, extrema=extrema)
