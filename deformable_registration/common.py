# -*- coding: utf-8 -*-
"""
Common utilities shared by the deformation, penalty and optimization modules.

Functions
---------
1. to_float: Convert a pair of images to a common floating-point dtype
2. pixel_points: 1-based coordinates of every pixel of an array
3. sample_image_torch: Differentiable linear sampling of an image at points
4. grid_sample_ndim_check: Validate that a torch-backed sampler supports N
"""

from __future__ import annotations

import numpy as np
import torch
import torch.nn.functional as F
from typing import Tuple
from numpy.typing import NDArray

from .constants import EDGE_TOL
from .errors import ShapeError


def to_float(
    a: NDArray,
    b: NDArray,
) -> Tuple[NDArray[np.floating], NDArray[np.floating]]:
    """
    Convert two arrays to a shared floating-point type.
    
    Floating inputs keep their (promoted) precision; integer inputs are
    converted to float32.
    """
    a = np.asarray(a)
    b = np.asarray(b)
    T = np.result_type(a.dtype, b.dtype)
    if not np.issubdtype(T, np.floating):
        T = np.float32
    return a.astype(T), b.astype(T)


def pixel_points(shape: Tuple[int, ...]) -> NDArray[np.float64]:
    """
    Return the 1-based coordinates of every pixel, in C order.
    
    Parameters
    ----------
    shape : tuple of int
        Array shape.
    
    Returns
    -------
    points : ndarray
        Array of shape (prod(shape), len(shape)).
    """
    grids = np.meshgrid(*[np.arange(1, n + 1, dtype=np.float64) for n in shape],
                        indexing='ij')
    return np.stack([g.reshape(-1) for g in grids], axis=1)


def grid_sample_ndim_check(ndim: int, what: str = "array") -> None:
    """Raise ShapeError unless ``ndim`` is supported by grid_sample."""
    if ndim not in (2, 3):
        raise ShapeError(f"{what} must be 2D or 3D, got {ndim}D")


def sample_image_torch(
    image: torch.Tensor,
    points: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Sample an image at fractional 1-based coordinates with linear interpolation.
    
    Differentiable with respect to ``points`` (and ``image``).
    
    Parameters
    ----------
    image : torch.Tensor
        2D or 3D image without batch/channel axes. Must not contain NaN.
    points : torch.Tensor
        Coordinates of shape (M, N), 1-based, axis order matching ``image``.
    
    Returns
    -------
    values : torch.Tensor
        Sampled values of shape (M,). Points outside the image are sampled
        with border padding; check ``inside``.
    inside : torch.Tensor
        Boolean mask of shape (M,), True where the point lies in the image.
    """
    shape = tuple(image.shape)
    N = len(shape)
    grid_sample_ndim_check(N, "image")
    if points.shape[-1] != N:
        raise ShapeError(f"points have {points.shape[-1]} coordinates, image is {N}D")
    M = points.shape[0]
    
    sizes = torch.tensor(shape, dtype=points.dtype, device=points.device)
    idx = points - 1
    inside = ((idx >= -EDGE_TOL) & (idx <= sizes - 1 + EDGE_TOL)).all(dim=1)
    
    # grid_sample expects (x, y[, z]) ordering, i.e. the last axis first
    norm = 2.0 * idx / (sizes - 1).clamp(min=1) - 1.0
    grid = norm.flip(-1).reshape((1,) + (1,) * (N - 1) + (M, N))
    
    values = F.grid_sample(
        image.reshape((1, 1) + shape), grid, mode='bilinear',
        padding_mode='border', align_corners=True
    )
    return values.reshape(M), inside
