# -*- coding: utf-8 -*-
"""
Synthetic images and mismatch fits for exercising the registration code.

Functions
---------
- shepp_logan_2d: 2D Shepp-Logan phantom
- gaussian_blob: Smooth single-peak image (2D or 3D)
- checkerboard: Checkerboard pattern (2D or 3D)
- random_deformation: Smooth random GridDeformation on a knot grid
- random_quadratic_fits: Block-wise quadratic mismatch fits ``(cs, Qs)``
"""

from __future__ import annotations

from typing import Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage

from .deformation import GridDeformation, knots_from_size

# (center_y, center_x), (axis_y, axis_x), angle in degrees, intensity
_SHEPP_LOGAN = [
    ((0.5, 0.5), (0.345, 0.46), 0, 1.0),
    ((0.5, 0.5), (0.3225, 0.4375), 0, -0.8),
    ((0.44, 0.5), (0.125, 0.11), -18, -0.2),
    ((0.56, 0.5), (0.125, 0.11), 18, -0.2),
    ((0.5, 0.5), (0.125, 0.1875), 0, 0.15),
    ((0.5, 0.5), (0.025, 0.023), 0, 0.15),
    ((0.4, 0.5), (0.023, 0.023), 0, 0.15),
    ((0.6, 0.5), (0.023, 0.023), 0, 0.15),
    ((0.35, 0.6), (0.012, 0.023), 0, 0.15),
    ((0.65, 0.6), (0.012, 0.023), 0, 0.15),
]


def shepp_logan_2d(size: int = 128) -> NDArray[np.float32]:
    """
    Modified Shepp-Logan phantom of shape (size, size), values in [0, 1].

    Examples
    --------
    >>> shepp_logan_2d(64).shape
    (64, 64)
    """
    yy, xx = np.ogrid[:size, :size]
    phantom = np.zeros((size, size), dtype=np.float64)
    for (cy, cx), (ay, ax), angle, intensity in _SHEPP_LOGAN:
        theta = np.radians(angle)
        dy, dx = yy - cy * size, xx - cx * size
        xr = np.cos(theta) * dx + np.sin(theta) * dy
        yr = -np.sin(theta) * dx + np.cos(theta) * dy
        phantom += intensity * ((xr / (ax * size)) ** 2 + (yr / (ay * size)) ** 2 <= 1.0)
    phantom = np.clip(phantom, 0, None)
    if phantom.max() > 0:
        phantom /= phantom.max()
    return phantom.astype(np.float32)


def gaussian_blob(
    shape: Tuple[int, ...],
    sigma: float,
    center: Optional[Sequence[float]] = None,
) -> NDArray[np.float64]:
    """
    ``exp(-|x - center|² / (2 sigma²))`` on 1-based pixel coordinates.

    ``center`` defaults to the array center.
    """
    if center is None:
        center = [(s + 1) / 2 for s in shape]
    grids = np.meshgrid(*[np.arange(1, s + 1, dtype=np.float64) for s in shape], indexing='ij')
    r2 = sum((g - c) ** 2 for g, c in zip(grids, center))
    return np.exp(-r2 / (2 * sigma ** 2))


def checkerboard(shape: Tuple[int, ...], square: int = 8) -> NDArray[np.float32]:
    """Alternating 0/1 squares (cubes) with side ``square`` pixels."""
    idx = np.indices(shape) // square
    return (idx.sum(axis=0) % 2 == 0).astype(np.float32)


def random_deformation(
    size: Tuple[int, ...],
    gridsize: Tuple[int, ...],
    max_displacement: float = 2.0,
    seed: Optional[int] = None,
    smooth_sigma: float = 1.0,
) -> GridDeformation:
    """
    Smooth random deformation on an evenly spaced knot grid over ``size``.

    Knot displacements are uniform noise, Gaussian-smoothed across the grid
    and rescaled so the largest component equals ``max_displacement``.
    """
    rng = np.random.default_rng(seed)
    N = len(size)
    u = rng.uniform(-1, 1, (N,) + tuple(gridsize))
    for d in range(N):
        u[d] = ndimage.gaussian_filter(u[d], sigma=smooth_sigma, mode='nearest')
    u *= max_displacement / (np.abs(u).max() + 1e-12)
    return GridDeformation(u, knots_from_size(size, gridsize))


def random_quadratic_fits(
    gridsize: Tuple[int, ...],
    maxshift: Sequence[int],
    seed: Optional[int] = None,
    scale: float = 1.0,
) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Random block-wise quadratic fits of the mismatch.

    Returns
    -------
    cs : ndarray
        Centers within half of ``maxshift``, shape ``gridsize + (N,)``.
    Qs : ndarray
        Symmetric positive definite curvatures, shape ``gridsize + (N, N)``.
    """
    rng = np.random.default_rng(seed)
    N = len(gridsize)
    gridsize = tuple(gridsize)
    half = np.asarray(maxshift, dtype=np.float64) / 2
    cs = rng.uniform(-1, 1, gridsize + (N,)) * half
    B = rng.normal(size=gridsize + (N, N))
    Qs = scale * (np.einsum('...ij,...kj->...ik', B, B) / N + np.eye(N))
    return cs, Qs
