# -*- coding: utf-8 -*-
"""
Grid-sampled deformations.

A deformation (warp) of space is a function ``ϕ(x) = x + u(x)``. For an
image, the warped version is obtained by looking up the pixel value at
``ϕ(x)``, so ``u(x)`` is the displacement, in pixels, at position ``x``.
A constant deformation ``u(x) = x0`` shifts the *coordinates* by ``x0``
and therefore the *image* in the opposite direction.

Deformations are stored on a grid of control points (knots); values
between knots are interpolated. A ``GridDeformation`` is either

- raw (``DeformationMode.GRID``): only the on-grid values are available, or
- interpolating (``DeformationMode.INTERPOLATING``): ``ϕ`` can be evaluated
  anywhere. Create one with ``ϕ.interpolate()``.

Coordinates are 1-based: a knot grid derived from an image size spans
``1..size`` along each axis.

Classes
-------
- DeformationMode: Raw vs. interpolating tag
- GridDeformation: Displacement field on a knot grid

Functions
---------
- compose: Composition ``ϕ_old ∘ ϕ_new`` plus its Jacobian
- identity: Marker for the identity deformation in ``compose``
- knots_from_size: Evenly spaced knots spanning an image
- eachknot, knot_points, arraysize: Knot grid helpers
- tform2deformation: Sample an affine transform on a knot grid
"""

from __future__ import annotations

import enum
import numbers
from typing import Iterator, Optional, Sequence, Tuple

import numpy as np
import torch
from numpy.typing import NDArray

from .affine import AffineTransform
from .errors import InvalidStateError, PreconditionError, ShapeError
from .interpolation import (
    knots_to_torch,
    multilinear_gradient,
    multilinear_interpolate,
)

Knots = Tuple[NDArray[np.float64], ...]


class DeformationMode(enum.Enum):
    GRID = "grid"
    INTERPOLATING = "interpolating"


def identity(x):
    """The identity deformation; pass it as ``ϕ_old`` to ``compose``."""
    return x


# =============================================================================
# Knot grids
# =============================================================================

def _is_int(x) -> bool:
    return isinstance(x, (numbers.Integral, np.integer)) and not isinstance(x, bool)


def knots_from_size(
    size: Sequence[int],
    gridsize: Sequence[int],
) -> Knots:
    """
    Evenly spaced knots with a control point at each corner of the image.

    ``knots[d] = linspace(1, size[d], gridsize[d])``.
    """
    if len(size) != len(gridsize):
        raise ShapeError(f"size {tuple(size)} and gridsize {tuple(gridsize)} differ in dimensionality")
    return validate_knots(
        tuple(np.linspace(1, s, g) for s, g in zip(size, gridsize))
    )


def validate_knots(knots: Sequence[Sequence[float]]) -> Knots:
    """Convert knots to float64 arrays and check that each axis is increasing."""
    if len(knots) == 0:
        raise ShapeError("Cannot supply an empty knot tuple")
    out = []
    for d, k in enumerate(knots):
        k = np.asarray(k, dtype=np.float64)
        if k.ndim != 1 or k.shape[0] < 2:
            raise ShapeError(f"knots[{d}] must be a 1D sequence with at least 2 entries")
        if not np.all(np.diff(k) > 0):
            raise ShapeError(f"knots[{d}] must be strictly increasing")
        out.append(k)
    return tuple(out)


def eachknot(knots: Knots) -> Iterator[NDArray[np.float64]]:
    """Iterate over knot coordinates in C order."""
    for I in np.ndindex(*map(len, knots)):
        yield np.array([knots[d][i] for d, i in enumerate(I)])


def knot_points(knots: Knots) -> NDArray[np.float64]:
    """All knot coordinates as an array of shape (n, N), C order."""
    grids = np.meshgrid(*knots, indexing='ij')
    return np.stack([g.reshape(-1) for g in grids], axis=1)


def arraysize(knots: Knots) -> Tuple[int, ...]:
    """Size of the array spanned by the knots."""
    return tuple(int(round(k[-1] - k[0] + 1)) for k in knots)


def _resolve_knots(knots_or_size, gridsize: Tuple[int, ...]) -> Knots:
    if isinstance(knots_or_size, np.ndarray) and knots_or_size.ndim == 1 \
            and np.issubdtype(knots_or_size.dtype, np.floating):
        knots_or_size = (knots_or_size,)
    if all(_is_int(s) for s in knots_or_size):
        return knots_from_size(tuple(int(s) for s in knots_or_size), gridsize)
    return validate_knots(knots_or_size)


def _components(u, N: int, gridsize: Optional[Tuple[int, ...]] = None) -> NDArray[np.float64]:
    """
    Bring any accepted displacement layout into shape (N,) + gridsize.

    With a known ``gridsize`` the layout whose grid axes match it is chosen;
    the leading component axis wins when both match or nothing is known.
    """
    if isinstance(u, (tuple, list)):
        if len(u) != N:
            raise ShapeError(f"Need {N} component arrays for {N}-dimensional deformations, got {len(u)}")
        parts = [np.asarray(c, dtype=np.float64) for c in u]
        for c in parts:
            if c.ndim != N:
                raise ShapeError(f"Need {N} dimensions for {N}-dimensional deformations, got {c.ndim}")
            if c.shape != parts[0].shape:
                raise ShapeError("All component arrays must have the same shape")
        return np.stack(parts, axis=0)

    u = np.asarray(u, dtype=np.float64)
    if u.ndim != N + 1:
        raise ShapeError(f"Need {N + 1} dimensions for {N}-dimensional deformations, got {u.ndim}")
    leading = u.shape[0] == N
    trailing = u.shape[-1] == N
    if gridsize is not None and leading and trailing:
        leading = u.shape[1:] == gridsize or u.shape[:-1] != gridsize
    if leading:
        return u
    if trailing:
        return np.moveaxis(u, -1, 0)
    raise ShapeError(
        f"u of shape {u.shape} has no axis of length {N} holding the displacement components"
    )


# =============================================================================
# GridDeformation
# =============================================================================

class GridDeformation:
    """
    A deformation sampled at the knots of a rectilinear grid.

    ``GridDeformation(u, knots)`` accepts ``u`` as

    - an array of N-vectors, shape ``gridsize + (N,)``,
    - a plain array with a leading component axis, shape ``(N,) + gridsize``,
    - an N-tuple of per-axis arrays, each of shape ``gridsize``.

    The second argument is either the per-axis knot vectors or the spatial
    size of the image; in the latter case the knots are
    ``linspace(1, size[d], gridsize[d])`` so that each corner of the image
    holds a control point. ``size(u, d) == len(knots[d])`` must hold for every
    axis, else ``ShapeError``.

    Parameters
    ----------
    u : array-like or tuple of array-like
        Displacements at the knots.
    knots : sequence of sequences, or tuple of int
        Knot vectors or image size.
    mode : DeformationMode
        Start out raw (default) or interpolating.
    """

    def __init__(
        self,
        u,
        knots,
        mode: DeformationMode = DeformationMode.GRID,
    ):
        if isinstance(knots, np.ndarray) and knots.ndim == 1 \
                and np.issubdtype(knots.dtype, np.floating):
            knots = (knots,)
        N = len(knots)
        explicit = None
        if not all(_is_int(s) for s in knots):
            explicit = tuple(len(k) for k in knots)
        comps = _components(u, N, explicit)
        gridsize = comps.shape[1:]
        self._knots = _resolve_knots(knots, gridsize)
        kshape = tuple(len(k) for k in self._knots)
        if kshape != gridsize:
            raise ShapeError(
                f"size(u) = {gridsize}, but the knots specify a grid of size {kshape}"
            )
        self._u = np.ascontiguousarray(comps)
        self._mode = DeformationMode(mode)
        self._torch_cache = None

    @classmethod
    def _from_components(cls, comps, knots, mode=DeformationMode.GRID) -> "GridDeformation":
        """Build from an array already in ``(N,) + gridsize`` layout."""
        N = len(knots)
        comps = np.asarray(comps, dtype=np.float64)
        if comps.ndim != N + 1 or comps.shape[0] != N:
            raise ShapeError(f"Expected shape ({N},) + gridsize, got {comps.shape}")
        return cls(comps, knots, mode=mode)

    @classmethod
    def from_vector(
        cls,
        vec: NDArray,
        knots,
        mode: DeformationMode = DeformationMode.GRID,
    ) -> "GridDeformation":
        """Inverse of ``as_vector``: block-major ``[u_1..., u_2..., ...]``."""
        knots = validate_knots(knots)
        N = len(knots)
        gridsize = tuple(len(k) for k in knots)
        vec = np.asarray(vec, dtype=np.float64)
        if vec.size != N * int(np.prod(gridsize)):
            raise ShapeError(f"Vector of length {vec.size} does not fit grid {gridsize} with {N} components")
        comps = np.moveaxis(vec.reshape(gridsize + (N,)), -1, 0)
        return cls._from_components(comps, knots, mode=mode)

    @classmethod
    def zeros(cls, knots) -> "GridDeformation":
        knots = validate_knots(knots)
        gridsize = tuple(len(k) for k in knots)
        return cls._from_components(np.zeros((len(knots),) + gridsize), knots)

    # ------------------------------------------------------------------
    # Basic properties
    # ------------------------------------------------------------------

    @property
    def u(self) -> NDArray[np.float64]:
        """Displacements, shape ``(N,) + gridsize``."""
        return self._u

    @property
    def knots(self) -> Knots:
        return self._knots

    @property
    def ndim(self) -> int:
        return len(self._knots)

    @property
    def gridsize(self) -> Tuple[int, ...]:
        return self._u.shape[1:]

    @property
    def mode(self) -> DeformationMode:
        return self._mode

    @property
    def is_interpolating(self) -> bool:
        return self._mode is DeformationMode.INTERPOLATING

    def u_vectors(self) -> NDArray[np.float64]:
        """Displacements as an array of N-vectors, shape ``gridsize + (N,)``."""
        return np.moveaxis(self._u, 0, -1)

    def as_vector(self) -> NDArray[np.float64]:
        """Flattened displacements, one N-vector per knot in C order."""
        return np.ascontiguousarray(self.u_vectors()).reshape(-1)

    def knot_points(self) -> NDArray[np.float64]:
        return knot_points(self._knots)

    def same_grid(self, other: "GridDeformation") -> bool:
        return self.ndim == other.ndim and all(
            a.shape == b.shape and np.array_equal(a, b)
            for a, b in zip(self._knots, other._knots)
        )

    def copy(self) -> "GridDeformation":
        return GridDeformation._from_components(self._u.copy(), self._knots, mode=self._mode)

    def scaled(self, s: float) -> "GridDeformation":
        """Deformation with displacements multiplied by ``s``."""
        return GridDeformation._from_components(s * self._u, self._knots, mode=self._mode)

    def __repr__(self) -> str:
        return (f"GridDeformation(ndim={self.ndim}, gridsize={self.gridsize}, "
                f"mode={self._mode.value})")

    # ------------------------------------------------------------------
    # Interpolation
    # ------------------------------------------------------------------

    def interpolate(self) -> "GridDeformation":
        """Return an interpolating copy of this deformation."""
        if self.is_interpolating:
            raise InvalidStateError("ϕ is already interpolating")
        return GridDeformation._from_components(
            self._u, self._knots, mode=DeformationMode.INTERPOLATING
        )

    def _require_interpolating(self, operation: str) -> None:
        if not self.is_interpolating:
            raise InvalidStateError(
                f"{operation} requires an interpolating deformation; use ϕ.interpolate()"
            )

    def _torch(self):
        if self._torch_cache is None:
            self._torch_cache = (
                torch.as_tensor(self._u, dtype=torch.float64),
                knots_to_torch(self._knots),
            )
        return self._torch_cache

    def _as_points(self, points) -> Tuple[NDArray[np.float64], bool]:
        pts = np.asarray(points, dtype=np.float64)
        single = pts.ndim == 1
        pts = np.atleast_2d(pts)
        if pts.shape[1] != self.ndim:
            raise ShapeError(
                f"{pts.shape[1]} indexes is not consistent with ϕ dimensionality {self.ndim}"
            )
        return pts, single

    def displacement_at(self, points) -> NDArray[np.float64]:
        """Interpolated ``u`` at one point (N,) or a batch (M, N)."""
        self._require_interpolating("Evaluating u off-grid")
        pts, single = self._as_points(points)
        U, K = self._torch()
        out = multilinear_interpolate(U, K, torch.as_tensor(pts)).numpy()
        return out[0] if single else out

    def displacement_gradient_at(self, points) -> NDArray[np.float64]:
        """
        Spatial Jacobian of ``u`` at one point (N, N) or a batch (M, N, N).

        ``g[..., i, j] = ∂u_i/∂x_j``.
        """
        self._require_interpolating("Evaluating the gradient of u")
        pts, single = self._as_points(points)
        _, jac = self._displacement_and_gradient(pts)
        return jac[0] if single else jac

    def _displacement_and_gradient(self, pts: NDArray) -> Tuple[NDArray, NDArray]:
        U, K = self._torch()
        val, jac = multilinear_gradient(U, K, torch.as_tensor(pts))
        return val.numpy(), jac.numpy()

    def evaluate(self, points) -> NDArray[np.float64]:
        """``ϕ(x) = x + u(x)`` at one point (N,) or a batch (M, N)."""
        self._require_interpolating("Point evaluation")
        pts, single = self._as_points(points)
        out = pts + self.displacement_at(pts)
        return out[0] if single else out

    def evaluate_on_grid(self) -> NDArray[np.float64]:
        """``ϕ`` at every knot, shape ``(N,) + gridsize``."""
        grids = np.meshgrid(*self._knots, indexing='ij')
        return np.stack(grids, axis=0) + self._u

    def __call__(self, arg):
        """
        ``ϕ(x)`` for a point, or the composition ``ϕ_old(ϕ_new)`` when called
        with another GridDeformation.
        """
        if isinstance(arg, GridDeformation):
            self._require_interpolating("Composition")
            return _compose_values(self, arg)[0]
        return self.evaluate(arg)


# =============================================================================
# Composition
# =============================================================================

def _compose_values(
    phi_old: GridDeformation,
    phi_new: GridDeformation,
    with_gradient: bool = False,
) -> Tuple[GridDeformation, Optional[NDArray[np.float64]]]:
    if phi_old.ndim != phi_new.ndim:
        raise PreconditionError(
            f"Cannot compose a {phi_old.ndim}D deformation with a {phi_new.ndim}D deformation"
        )
    N = phi_old.ndim
    x = phi_old.knot_points()
    if phi_new.same_grid(phi_old):
        dx = np.ascontiguousarray(phi_new.u_vectors()).reshape(-1, N)
    elif not phi_new.is_interpolating:
        raise InvalidStateError("If knots are incommensurate, ϕ_new must be interpolating")
    else:
        dx = phi_new.displacement_at(x)
    y = x + dx
    if with_gradient:
        uy, g = phi_old._displacement_and_gradient(y)
        jac = g + np.eye(N)
    else:
        uy = phi_old.displacement_at(y)
        jac = None
    gridsize = phi_old.gridsize
    ucomp = np.moveaxis((dx + uy).reshape(gridsize + (N,)), -1, 0)
    phi_c = GridDeformation._from_components(ucomp, phi_old.knots)
    if jac is not None:
        jac = jac.reshape(gridsize + (N, N))
    return phi_c, jac


def compose(
    phi_old,
    phi_new: GridDeformation,
) -> Tuple[GridDeformation, NDArray[np.float64]]:
    """
    Compose two deformations, ``ϕ_c(x) ≈ ϕ_old(ϕ_new(x))``.

    At every knot ``x`` of ``ϕ_old``, ``dx = u_new(x)`` (exact when both
    share a grid, interpolated otherwise) and ``u_c(x) = dx + u_old(x + dx)``.

    Parameters
    ----------
    phi_old : GridDeformation or identity
        Must be interpolating. Pass ``identity`` (or None) for the identity.
    phi_new : GridDeformation
        Must be interpolating unless it shares ``ϕ_old``'s knots.

    Returns
    -------
    phi_c : GridDeformation
        The composition, on ``ϕ_old``'s knots (raw mode).
    jac : ndarray
        Shape ``gridsize + (N, N)``; the Jacobian of ``u_c`` with respect to
        ``u_new`` at each knot, ``∇u_old(x + dx) + I``.
    """
    if phi_old is None or phi_old is identity:
        N = phi_new.ndim
        jac = np.broadcast_to(np.eye(N), phi_new.gridsize + (N, N)).copy()
        return phi_new, jac
    if not isinstance(phi_old, GridDeformation):
        raise PreconditionError("Only the identity function is supported")
    phi_old._require_interpolating("Composition")
    return _compose_values(phi_old, phi_new, with_gradient=True)


# =============================================================================
# Affine transforms as deformations
# =============================================================================

def tform2deformation(
    tform: AffineTransform,
    arraysize: Sequence[int],
    gridsize: Sequence[int],
) -> GridDeformation:
    """
    Sample an affine transform on a knot grid.

    The origin of coordinates of ``tform`` is the array center, so a pure
    rotation spins the array around its center.

    Parameters
    ----------
    tform : AffineTransform
        Transform to convert.
    arraysize : sequence of int
        Size of the array to be warped.
    gridsize : sequence of int
        Number of knots along each axis.
    """
    N = tform.ndim
    if len(arraysize) != N or len(gridsize) != N:
        raise ShapeError("Dimensionality mismatch")
    knots = knots_from_size(arraysize, gridsize)
    center = (np.asarray(arraysize, dtype=np.float64) + 1) / 2
    x = knot_points(knots) - center
    u = x @ (tform.matrix - np.eye(N)).T + tform.offset
    comps = np.moveaxis(u.reshape(tuple(gridsize) + (N,)), -1, 0)
    return GridDeformation._from_components(comps, knots)
