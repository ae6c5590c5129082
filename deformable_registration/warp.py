# -*- coding: utf-8 -*-
"""
Warping images through deformations.

``W = WarpedArray(img, ϕ)`` is a lazy view with ``W[x] = img[ϕ(x)]``;
nothing is computed until values are requested. ``warp`` and
``warp_into`` materialize the view, and ``warp_frames`` streams a
sequence of frames, each with its own displacement grid, to a sink.

Images are sampled by an ``ImageSampler``, which interpolates at
fractional 1-based coordinates and returns NaN outside the image.

Functions
---------
1. warp: Warp an image into a newly allocated array
2. warp_into: Warp into caller-supplied storage
3. warp_frames: Frame-by-frame warping, optionally on a worker pool
4. translate: Integer shift with NaN fill
5. warpgrid: Image of a deformed grid, for inspecting a deformation
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray
from scipy import ndimage

from .affine import AffineTransform
from .common import pixel_points
from .constants import EDGE_TOL, WARP_CHUNK
from .deformation import GridDeformation
from .errors import ShapeError
from .solvers import CancellationToken


def warp_type(dtype: np.dtype) -> np.dtype:
    """Floating images keep their dtype; anything else is warped to float32."""
    dtype = np.dtype(dtype)
    if np.issubdtype(dtype, np.floating):
        return dtype
    return np.dtype(np.float32)


class ImageSampler:
    """
    Continuous sampler over an image, extrapolating with NaN.

    Parameters
    ----------
    image : ndarray
        Source image.
    order : int
        Spline order passed to ``scipy.ndimage.map_coordinates``. Default 1
        (linear).
    tform : AffineTransform, optional
        If given, coordinates are first mapped through ``tform`` (origin at
        the image center), i.e. the sampler represents the affine-transformed
        image.
    fill_value : float
        Value returned outside the image. Default NaN.
    """

    def __init__(
        self,
        image: NDArray,
        order: int = 1,
        tform: Optional[AffineTransform] = None,
        fill_value: float = np.nan,
    ):
        image = np.asarray(image)
        self.image = image.astype(warp_type(image.dtype), copy=False)
        self.order = order
        self.tform = tform
        self.fill_value = fill_value
        if tform is not None and tform.ndim != image.ndim:
            raise ShapeError(f"{tform.ndim}D transform cannot be applied to a {image.ndim}D image")

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.image.shape

    @property
    def ndim(self) -> int:
        return self.image.ndim

    @property
    def dtype(self) -> np.dtype:
        return self.image.dtype

    def __call__(self, points: NDArray) -> NDArray:
        """Sample at 1-based coordinates of shape (M, N)."""
        pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
        if pts.shape[1] != self.ndim:
            raise ShapeError(f"points have {pts.shape[1]} coordinates, image is {self.ndim}D")
        if self.tform is not None:
            pts = self.tform.apply_centered(pts, self.shape)
        coords = (pts - 1).T
        values = ndimage.map_coordinates(
            self.image, coords, order=self.order, mode='nearest',
            prefilter=self.order > 1,
        ).astype(self.dtype, copy=False)
        upper = np.asarray(self.shape, dtype=np.float64)[:, None] - 1
        outside = np.any((coords < -EDGE_TOL) | (coords > upper + EDGE_TOL), axis=0)
        values[outside] = self.fill_value
        return values


class WarpedArray:
    """
    Lazily warped array, ``W[x] = source(ϕ(x))``.

    Holds references to the sampler and the deformation only; values are
    computed when indexed. Integer/slice indexing is 0-based like any numpy
    array; ``sample`` takes fractional 1-based coordinates.

    Parameters
    ----------
    source : ImageSampler or ndarray
        Sampler (or array, which is wrapped in a linear ImageSampler).
    phi : GridDeformation
        Deformation; made interpolating if it is raw.
    """

    def __init__(self, source: Union[ImageSampler, NDArray], phi: GridDeformation):
        if not isinstance(source, ImageSampler):
            source = ImageSampler(source)
        if phi.ndim != source.ndim:
            raise ShapeError(f"{phi.ndim}D deformation cannot warp a {source.ndim}D image")
        if not phi.is_interpolating:
            phi = phi.interpolate()
        self.source = source
        self.phi = phi

    @property
    def shape(self) -> Tuple[int, ...]:
        return self.source.shape

    @property
    def ndim(self) -> int:
        return self.source.ndim

    @property
    def dtype(self) -> np.dtype:
        return self.source.dtype

    def sample(self, points: NDArray) -> NDArray:
        """Warped values at fractional 1-based coordinates (M, N)."""
        pts = np.atleast_2d(np.asarray(points, dtype=np.float64))
        out = np.empty(pts.shape[0], dtype=self.dtype)
        for start in range(0, pts.shape[0], WARP_CHUNK):
            chunk = pts[start:start + WARP_CHUNK]
            out[start:start + WARP_CHUNK] = self.source(self.phi.evaluate(chunk))
        return out

    def __getitem__(self, key):
        if not isinstance(key, tuple):
            key = (key,)
        if len(key) != self.ndim:
            raise ShapeError(f"Must use {self.ndim} indexes")
        axes = []
        keep = []
        for d, k in enumerate(key):
            idx = np.arange(self.shape[d])[k]
            keep.append(np.ndim(idx) > 0)
            axes.append(np.atleast_1d(idx))
        grids = np.meshgrid(*axes, indexing='ij')
        pts = np.stack([g.reshape(-1) for g in grids], axis=1) + 1.0
        values = self.sample(pts).reshape(tuple(len(a) for a in axes))
        squeeze = tuple(d for d, k in enumerate(keep) if not k)
        values = values.squeeze(axis=squeeze) if squeeze else values
        return values[()] if values.ndim == 0 else values

    def __array__(self, dtype=None, copy=None):
        out = np.empty(self.shape, dtype=self.dtype)
        warp_into(out, self)
        return out if dtype is None else out.astype(dtype)


def warp_into(
    dest: NDArray,
    source: Union[WarpedArray, ImageSampler, NDArray],
    phi: Optional[GridDeformation] = None,
    tform: Optional[AffineTransform] = None,
) -> NDArray:
    """
    Warp ``source`` by ``phi`` and store the result in ``dest``.

    Parameters
    ----------
    dest : ndarray
        Output storage; must have the shape of the source.
    source : WarpedArray, ImageSampler or ndarray
        A WarpedArray (then ``phi`` must be None) or an image/sampler.
    phi : GridDeformation, optional
        The deformation.
    tform : AffineTransform, optional
        Affine transform applied before the deformation (array sources only).

    Returns
    -------
    dest : ndarray
    """
    if isinstance(source, WarpedArray):
        if phi is not None:
            raise ShapeError("Pass either a WarpedArray or an image and a deformation")
        W = source
    else:
        if phi is None:
            raise ShapeError("A deformation is required to warp an image")
        if tform is not None and not isinstance(source, ImageSampler):
            source = ImageSampler(source, tform=tform)
        W = WarpedArray(source, phi)
    if tuple(dest.shape) != tuple(W.shape):
        raise ShapeError(f"dest has shape {dest.shape}, but the warped array has shape {W.shape}")

    dest[...] = W.sample(pixel_points(W.shape)).reshape(W.shape)
    return dest


def warp(
    image: NDArray,
    phi: GridDeformation,
    tform: Optional[AffineTransform] = None,
) -> NDArray:
    """
    Warp ``image`` according to the deformation ``phi``.

    Parameters
    ----------
    image : ndarray
        Image to warp. Integer images are warped to float32.
    phi : GridDeformation
        Deformation (raw deformations are made interpolating).
    tform : AffineTransform, optional
        Affine transform applied before ``phi``.

    Returns
    -------
    warped : ndarray
        Array of the image's shape; NaN where ``ϕ(x)`` falls outside.
    """
    image = np.asarray(image)
    dest = np.empty(image.shape, dtype=warp_type(image.dtype))
    return warp_into(dest, image, phi, tform=tform)


def _write(sink, index: int, frame: NDArray) -> None:
    if callable(sink):
        sink(index, frame)
    else:
        sink[index] = frame


def _single_frame(frames, us) -> bool:
    """True when ``frames`` is one image and ``us`` its one displacement grid."""
    if not isinstance(frames, np.ndarray):
        return False
    N = frames.ndim
    # a stack with one u per frame wins when both readings fit
    if len(us) == len(frames):
        return False
    if isinstance(us, tuple):
        return len(us) == N and all(np.ndim(c) == N for c in us)
    shape = np.shape(us)
    if len(shape) != N + 1 or (shape[0] != N and shape[-1] != N):
        return False
    # per-frame grids of (N-1)-dimensional frames carry N-1 components
    return shape[1] != N - 1 and shape[-1] != N - 1


def warp_frames(
    frames: Union[NDArray, Sequence[NDArray]],
    us: Union[NDArray, Sequence[Any]],
    sink: Union[Callable[[int, NDArray], Any], NDArray],
    nworkers: int = 1,
    dtype: Optional[np.dtype] = None,
    token: Optional[CancellationToken] = None,
    verbose: bool = False,
) -> None:
    """
    Warp a sequence of frames, each by its own displacement grid.

    Each warped frame is written to ``sink`` as soon as it is done. Frames
    are independent, so with ``nworkers > 1`` they are warped on a thread
    pool and may complete out of order.

    Parameters
    ----------
    frames : ndarray or sequence of ndarray
        Frames with the frame index as the first axis, or a single
        frame together with a single displacement array.
    us : ndarray or sequence
        One displacement array per frame, in any layout accepted by
        GridDeformation; knots are derived from the frame size.
    sink : callable or array
        ``sink(i, warped)`` is called for each frame, or ``sink[i] = warped``
        if ``sink`` is an array (e.g. a memmap or HDF5 dataset).
    nworkers : int
        Number of worker threads. Default 1 (sequential).
    dtype : numpy dtype, optional
        Output dtype. Default from ``warp_type``.
    token : CancellationToken, optional
        Stops scheduling further frames once cancelled.
    verbose : bool
        Print one line per finished frame.
    """
    if _single_frame(frames, us):
        frames, us = frames[np.newaxis], [us]
        if isinstance(sink, np.ndarray) and sink.ndim == frames.ndim - 1:
            sink = sink[np.newaxis]
    if len(frames) != len(us):
        raise ShapeError(f"Must have one u slice per frame: {len(us)} u slices for {len(frames)} frames")

    def _one(i: int) -> NDArray:
        frame = np.asarray(frames[i])
        phi = GridDeformation(us[i], frame.shape)
        dest = np.empty(frame.shape, dtype=dtype or warp_type(frame.dtype))
        return warp_into(dest, frame, phi)

    n = len(frames)
    if nworkers <= 1:
        for i in range(n):
            if token is not None:
                token.raise_if_cancelled()
            _write(sink, i, _one(i))
            if verbose:
                print(f"    Warped frame {i + 1}/{n}")
        return

    with ThreadPoolExecutor(max_workers=nworkers) as executor:
        futures = {}
        for i in range(n):
            if token is not None and token.cancelled:
                break
            futures[executor.submit(_one, i)] = i
        for future in as_completed(futures):
            i = futures[future]
            _write(sink, i, future.result())
            if verbose:
                print(f"    Warped frame {i + 1}/{n}")
    if token is not None:
        token.raise_if_cancelled()


def translate(image: NDArray, displacement: Sequence[int]) -> NDArray:
    """
    Shift ``image`` so that ``out[i] = image[i + displacement]``.

    Missing pixels are filled with NaN.
    """
    image = np.asarray(image)
    if len(displacement) != image.ndim:
        raise ShapeError(f"displacement has {len(displacement)} entries, image is {image.ndim}D")
    out = np.full(image.shape, np.nan, dtype=warp_type(image.dtype))
    dst, src = [], []
    for n, s in zip(image.shape, displacement):
        s = int(s)
        lo, hi = max(0, -s), min(n, n - s)
        if hi <= lo:
            return out
        dst.append(slice(lo, hi))
        src.append(slice(lo + s, hi + s))
    out[tuple(dst)] = image[tuple(src)]
    return out


def warpgrid(
    phi: GridDeformation,
    scale: float = 1,
    showidentity: bool = False,
) -> NDArray[np.float32]:
    """
    Image of a grid, warped by ``phi``, for inspecting a deformation.

    Grid lines pass through the knots of ``phi``.

    Parameters
    ----------
    phi : GridDeformation
        Deformation to visualize.
    scale : float
        Multiplies the displacements, to exaggerate subtle deformations.
    showidentity : bool
        If True, return an RGB array (last axis) with the warped grid in
        magenta and the undeformed grid in green.

    Returns
    -------
    img : ndarray
        Float32 array of the size spanned by the knots (plus a color axis
        if ``showidentity``).
    """
    imsz = tuple(int(round(k[-1])) for k in phi.knots)
    img = np.zeros(imsz, dtype=np.float32)
    for d, k in enumerate(phi.knots):
        lines = np.clip(np.round(k).astype(int), 2, imsz[d] - 1) - 1
        index = [slice(None)] * len(imsz)
        index[d] = lines
        img[tuple(index)] = 1
    if scale != 1:
        phi = phi.scaled(scale)
    wimg = warp(img, phi)
    if showidentity:
        return np.stack([wimg, img, wimg], axis=-1)
    return wimg
