# -*- coding: utf-8 -*-
"""
Multilinear interpolation on rectilinear knot grids.

The displacement of a GridDeformation is known only at its knots; between
knots it is interpolated multilinearly. Points outside the knot box are
clamped to it (constant extrapolation, the same convention as
``padding_mode='border'``).

Everything is written in torch so that derivatives with respect to the
query points (needed for composition Jacobians) and with respect to the
knot values (needed for pixelwise refinement) come from autograd.

Functions
---------
- knots_to_torch: Convert a knot tuple to float64 tensors
- multilinear_interpolate: Interpolate C-component values at points
- multilinear_gradient: Spatial Jacobian of the interpolant at points
"""

from __future__ import annotations

import itertools
from typing import Sequence, Tuple

import numpy as np
import torch

from .errors import ShapeError


def knots_to_torch(
    knots: Sequence[np.ndarray],
    device: torch.device = torch.device('cpu'),
) -> Tuple[torch.Tensor, ...]:
    """Convert each knot vector to a contiguous float64 tensor."""
    return tuple(
        torch.as_tensor(np.ascontiguousarray(k), dtype=torch.float64, device=device)
        for k in knots
    )


def multilinear_interpolate(
    values: torch.Tensor,
    knots: Sequence[torch.Tensor],
    points: torch.Tensor,
) -> torch.Tensor:
    """
    Interpolate a multi-component field sampled on a knot grid.

    Parameters
    ----------
    values : torch.Tensor
        Field of shape (C, n_1, ..., n_N), one component per leading slice.
    knots : sequence of torch.Tensor
        N strictly increasing knot vectors, ``len(knots[d]) == n_{d+1}``.
    points : torch.Tensor
        Query points of shape (M, N).

    Returns
    -------
    torch.Tensor
        Interpolated values of shape (M, C).
    """
    N = len(knots)
    if values.dim() != N + 1:
        raise ShapeError(f"values must have {N + 1} dimensions, got {values.dim()}")
    if points.dim() != 2 or points.shape[1] != N:
        raise ShapeError(f"points must have shape (M, {N}), got {tuple(points.shape)}")

    C = values.shape[0]
    gridsize = tuple(values.shape[1:])
    M = points.shape[0]

    lower = []
    frac = []
    for d, k in enumerate(knots):
        x = torch.clamp(points[:, d], min=float(k[0]), max=float(k[-1]))
        i = torch.searchsorted(k, x.detach().contiguous(), right=True) - 1
        i = i.clamp(0, k.numel() - 2)
        t = (x - k[i]) / (k[i + 1] - k[i])
        lower.append(i)
        frac.append(t)

    strides = [int(np.prod(gridsize[d + 1:], dtype=np.int64)) for d in range(N)]
    flat = values.reshape(C, -1)

    out = torch.zeros((M, C), dtype=values.dtype, device=values.device)
    for corner in itertools.product((0, 1), repeat=N):
        idx = torch.zeros(M, dtype=torch.long, device=values.device)
        w = torch.ones(M, dtype=values.dtype, device=values.device)
        for d, c in enumerate(corner):
            idx = idx + (lower[d] + c) * strides[d]
            w = w * (frac[d] if c else 1.0 - frac[d])
        out = out + w[:, None] * flat[:, idx].T
    return out


def multilinear_gradient(
    values: torch.Tensor,
    knots: Sequence[torch.Tensor],
    points: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Interpolated values and their spatial Jacobian at ``points``.

    Returns
    -------
    interp : torch.Tensor
        Shape (M, C), detached.
    jac : torch.Tensor
        Shape (M, C, N); ``jac[m, c, d] = ∂u_c/∂x_d`` at point m.
    """
    pts = points.detach().clone().requires_grad_(True)
    with torch.enable_grad():
        interp = multilinear_interpolate(values.detach(), knots, pts)
        rows = []
        C = interp.shape[1]
        for c in range(C):
            (g,) = torch.autograd.grad(interp[:, c].sum(), pts,
                                       retain_graph=c < C - 1)
            rows.append(g)
    return interp.detach(), torch.stack(rows, dim=1)
