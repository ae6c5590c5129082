# -*- coding: utf-8 -*-
"""
Pixelwise refinement of a deformation.

Block mismatch data summarize the images at the resolution of the knot
grid. Once a deformation has been found from them, it can be polished
against the images themselves by minimizing

    (λ/n) ‖U − U F Fᵀ‖² + mean over valid pixels of (fixed(x) − moving(x + u(x)))²

where ``u`` is multilinearly interpolated from the knot values ``U``. A
pixel is valid when ``fixed`` is finite there and ``moving`` is finite
around ``x + u(x)``.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np
import torch
from numpy.typing import NDArray

from .common import grid_sample_ndim_check, pixel_points, sample_image_torch, to_float
from .constants import EDGE_TOL, PIXELWISE_MAXITER
from .deformation import DeformationMode, GridDeformation, validate_knots
from .errors import ShapeError
from .interpolation import knots_to_torch, multilinear_interpolate
from .penalty import AffinePenalty
from .solvers import CancellationToken, torch_gradient


class PixelwisePenalty:
    """
    Total pixelwise penalty as a differentiable function of the knot values.

    Parameters
    ----------
    knots : sequence of sequences
        Knot grid of the deformation.
    ap : AffinePenalty
        Regularization on that grid.
    fixed, moving : ndarray
        Images of the same shape; NaN marks missing pixels.
    """

    def __init__(self, knots, ap: AffinePenalty, fixed: NDArray, moving: NDArray):
        self.knots = validate_knots(knots)
        self.ap = ap
        fixed, moving = to_float(fixed, moving)
        if fixed.shape != moving.shape:
            raise ShapeError(f"fixed {fixed.shape} and moving {moving.shape} differ in shape")
        if fixed.ndim != len(self.knots):
            raise ShapeError(
                f"{len(self.knots)}D knots disagree with a {fixed.ndim}-dimensional image"
            )
        grid_sample_ndim_check(fixed.ndim, "image")
        f = torch.as_tensor(fixed, dtype=torch.float64).reshape(-1)
        m = torch.as_tensor(moving, dtype=torch.float64)
        self.ffinite = torch.isfinite(f)
        self.fixed = torch.where(self.ffinite, f, torch.zeros_like(f))
        self.mfinite = torch.isfinite(m).to(torch.float64)
        self.moving = torch.where(torch.isfinite(m), m, torch.zeros_like(m))
        self.points = torch.as_tensor(pixel_points(fixed.shape))
        self._knots_t = knots_to_torch(self.knots)

    def data(self, U: torch.Tensor) -> torch.Tensor:
        u = multilinear_interpolate(U, self._knots_t, self.points)
        y = self.points + u
        mov, inside = sample_image_torch(self.moving, y)
        mvalid, _ = sample_image_torch(self.mfinite, y.detach())
        valid = self.ffinite & inside & (mvalid >= 1 - EDGE_TOL)
        nvalid = int(valid.sum())
        if nvalid == 0:
            return torch.tensor(np.inf, dtype=torch.float64)
        w = valid.to(mov.dtype)
        return (w * (self.fixed - mov) ** 2).sum() / nvalid

    def __call__(self, U: torch.Tensor) -> torch.Tensor:
        N = len(self.knots)
        if U.shape[0] != N:
            raise ShapeError(
                f"size(U) = {tuple(U.shape)}, which disagrees with an {N}-dimensional image"
            )
        return self.ap.penalty_torch(U) + self.data(U)


def penalty_pixelwise(
    U: NDArray,
    knots,
    ap: AffinePenalty,
    fixed: NDArray,
    moving: NDArray,
) -> float:
    """Pixelwise penalty of knot values ``U`` of shape ``(N,) + gridsize``."""
    objective = PixelwisePenalty(knots, ap, fixed, moving)
    with torch.no_grad():
        return float(objective(torch.as_tensor(np.asarray(U, dtype=np.float64))))


def optimize_pixelwise(
    phi: GridDeformation,
    ap: AffinePenalty,
    fixed: NDArray,
    moving: NDArray,
    stepsize: float = 1.0,
    maxiter: int = PIXELWISE_MAXITER,
    verbose: bool = False,
    token: Optional[CancellationToken] = None,
) -> Tuple[GridDeformation, float, float]:
    """
    Polish ``ϕ`` against the images by normalized gradient descent.

    Every step moves the knot values by at most ``stepsize`` pixels,
    ``U ← U − (stepsize / max|g|)·g``; descent stops at the first step that
    does not lower the penalty.

    Returns
    -------
    phi : GridDeformation
        Interpolating deformation with the refined knot values.
    p : float
        Final penalty.
    p0 : float
        Penalty of the input deformation.
    """
    objective = PixelwisePenalty(phi.knots, ap, fixed, moving)
    grad = torch_gradient(objective)

    def value(U):
        with torch.no_grad():
            return float(objective(torch.as_tensor(U)))

    U = phi.u.copy()
    p0 = p = value(U)
    pold = np.inf
    it = 0
    while p < pold and it < maxiter:
        if token is not None:
            token.raise_if_cancelled()
        pold = p
        g = grad(U)
        gmax = np.max(np.abs(g))
        if gmax == 0 or not np.isfinite(gmax):
            break
        Utrial = U - (stepsize / gmax) * g
        p = value(Utrial)
        if p < pold:
            U = Utrial
        it += 1
        if verbose and it % 10 == 0:
            print(f"      Iter {it}: penalty={min(p, pold):.6g}")
    phi_opt = GridDeformation(U, phi.knots, mode=DeformationMode.INTERPOLATING)
    return phi_opt, min(p, pold), p0
