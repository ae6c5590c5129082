# -*- coding: utf-8 -*-
"""
Penalties for deformable registration.

The total penalty of a deformation is

    regularization(ϕ) + data(ϕ)

Regularization (``AffinePenalty``)
----------------------------------
Penalizes deviation of the displacement field from a single affine
transform. With ``U`` the N x n matrix of displacements at the n knots and
``F`` an orthonormal basis of affine fields on the knot grid,

    penalty = (λ/n) ‖U − U F Fᵀ‖²

λ is an explicit argument of every evaluation; an ``AffinePenalty`` is never
mutated while it is being used, so one instance can be shared between
threads (or cloned with ``copy``).

Data (``MismatchData``)
-----------------------
Each grid block carries a mismatch array sampled at integer shifts
``-maxshift..maxshift``, stored as a numerator and a denominator. The data
penalty is ``Σ num_i(u_i) / Σ denom_i(u_i)`` with each array interpolated at
the block's displacement (bilinear/trilinear, via ``grid_sample``).
Gradients come from torch autograd.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple, Union

import numpy as np
import torch
import torch.nn.functional as F
from numpy.typing import NDArray

from .common import grid_sample_ndim_check
from .deformation import GridDeformation, compose, knot_points, validate_knots
from .errors import ShapeError


# =============================================================================
# Affine regularization
# =============================================================================

class AffinePenalty:
    """
    Penalty on the non-affine part of a displacement field.

    Parameters
    ----------
    knots : sequence of sequences
        Knot grid the displacements live on.
    lam : float
        Default regularization weight λ.
    """

    def __init__(self, knots, lam: float):
        self.knots = validate_knots(knots)
        self.lam = float(lam)
        X = knot_points(self.knots)
        C = np.column_stack([np.ones(X.shape[0]), X])
        self.F, _ = np.linalg.qr(C)

    @property
    def ndim(self) -> int:
        return len(self.knots)

    @property
    def nblocks(self) -> int:
        return self.F.shape[0]

    def copy(self, lam: Optional[float] = None) -> "AffinePenalty":
        """Clone, optionally with a different λ."""
        other = AffinePenalty.__new__(AffinePenalty)
        other.knots = self.knots
        other.F = self.F
        other.lam = self.lam if lam is None else float(lam)
        return other

    def _as_matrix(self, u) -> NDArray[np.float64]:
        if isinstance(u, GridDeformation):
            u = u.u
        u = np.asarray(u, dtype=np.float64)
        N = self.ndim
        if u.shape[0] != N or u[0].size != self.nblocks:
            raise ShapeError(
                f"u of shape {u.shape} does not match a grid with {self.nblocks} knots and {N} components"
            )
        return u.reshape(N, -1)

    def residual(self, u) -> NDArray[np.float64]:
        """Non-affine part ``U − U F Fᵀ`` (N x n)."""
        U = self._as_matrix(u)
        return U - (U @ self.F) @ self.F.T

    def penalty(self, u, lam: Optional[float] = None) -> float:
        """Penalty value for ``u`` of shape ``(N,) + gridsize`` (or a GridDeformation)."""
        lam = self.lam if lam is None else lam
        dX = self.residual(u)
        return float(lam / self.nblocks * np.sum(dX ** 2))

    def gradient(self, u, lam: Optional[float] = None) -> NDArray[np.float64]:
        """Gradient with respect to ``u``, same shape as ``u``."""
        lam = self.lam if lam is None else lam
        U = u.u if isinstance(u, GridDeformation) else np.asarray(u, dtype=np.float64)
        dX = self.residual(U)
        return (2 * lam / self.nblocks * dX).reshape(U.shape)

    def penalty_and_gradient(
        self,
        u,
        jac: Optional[NDArray] = None,
        lam: Optional[float] = None,
    ) -> Tuple[float, NDArray[np.float64]]:
        """
        Value and gradient, optionally chained through a composition Jacobian.

        When ``u`` is the composition ``ϕ_old ∘ ϕ_new`` and ``jac`` the matching
        Jacobian from ``compose``, the returned gradient is with respect to
        ``u_new``: ``g_new[i] = jac[i]ᵀ g[i]``.
        """
        val = self.penalty(u, lam)
        g = self.gradient(u, lam)
        if jac is not None:
            gv = np.moveaxis(g, 0, -1)
            gv = np.einsum('...ji,...j->...i', jac, gv)
            g = np.moveaxis(gv, -1, 0)
        return val, g

    def penalty_torch(self, U: torch.Tensor, lam: Optional[float] = None) -> torch.Tensor:
        """Differentiable penalty of a tensor ``U`` of shape ``(N,) + gridsize``."""
        lam = self.lam if lam is None else lam
        Ft = torch.as_tensor(self.F, dtype=U.dtype, device=U.device)
        X = U.reshape(U.shape[0], -1)
        dX = X - (X @ Ft) @ Ft.T
        return (lam / self.nblocks) * (dX ** 2).sum()


# =============================================================================
# Mismatch data
# =============================================================================

@dataclass
class MismatchArray:
    """
    Mismatch of one block sampled on the shift grid ``-maxshift..maxshift``.

    ``num`` and ``denom`` have the same odd size along every axis; the
    center element corresponds to zero shift. ``denom`` defaults to ones.
    """
    num: NDArray[np.float64]
    denom: Optional[NDArray[np.float64]] = None

    def __post_init__(self):
        self.num = np.asarray(self.num, dtype=np.float64)
        if self.denom is None:
            self.denom = np.ones_like(self.num)
        self.denom = np.asarray(self.denom, dtype=np.float64)
        if self.num.shape != self.denom.shape:
            raise ShapeError(f"num {self.num.shape} and denom {self.denom.shape} differ in shape")
        if any(s % 2 == 0 for s in self.num.shape):
            raise ShapeError(f"Mismatch arrays must have odd sizes, got {self.num.shape}")

    @property
    def maxshift(self) -> Tuple[int, ...]:
        return tuple((s - 1) // 2 for s in self.num.shape)


class MismatchData:
    """
    Grid of per-block mismatch arrays, interpolated for refinement.

    Parameters
    ----------
    num : ndarray or sequence of MismatchArray
        Either stacked numerators of shape ``gridsize + shiftshape`` or a
        nested sequence / object array of ``MismatchArray`` in the shape of
        the grid.
    denom : ndarray, optional
        Stacked denominators (with stacked ``num`` only). Default ones.
    gridsize : tuple of int, optional
        Grid shape; required with stacked arrays whose dimensionality is not
        ``2 * N`` or when passing a flat list of MismatchArray.
    """

    def __init__(
        self,
        num: Union[NDArray, Sequence[MismatchArray]],
        denom: Optional[NDArray] = None,
        gridsize: Optional[Tuple[int, ...]] = None,
    ):
        if isinstance(num, MismatchArray) or (
            not isinstance(num, np.ndarray) or num.dtype == object
        ):
            blocks = np.asarray(num, dtype=object)
            if gridsize is not None:
                blocks = blocks.reshape(gridsize)
            gridsize = blocks.shape
            flat = list(blocks.reshape(-1))
            shiftshape = flat[0].num.shape
            if any(b.num.shape != shiftshape for b in flat):
                raise ShapeError("All mismatch arrays must have the same shape")
            nums = np.stack([b.num for b in flat])
            dens = np.stack([b.denom for b in flat])
        else:
            num = np.asarray(num, dtype=np.float64)
            if gridsize is None:
                if num.ndim % 2:
                    raise ShapeError(f"Cannot split a {num.ndim}D array into grid and shift axes")
                gridsize = num.shape[:num.ndim // 2]
            gridsize = tuple(gridsize)
            shiftshape = num.shape[len(gridsize):]
            nums = num.reshape((-1,) + shiftshape)
            dens = np.ones_like(nums) if denom is None else \
                np.asarray(denom, dtype=np.float64).reshape(nums.shape)

        if len(shiftshape) != len(gridsize):
            raise ShapeError(
                f"{len(shiftshape)}D mismatch arrays do not match a {len(gridsize)}D grid"
            )
        grid_sample_ndim_check(len(gridsize), "Mismatch data")
        if any(s % 2 == 0 or s < 3 for s in shiftshape):
            raise ShapeError(f"Mismatch arrays must have odd sizes of at least 3, got {shiftshape}")

        self.gridsize = tuple(gridsize)
        self.shiftshape = tuple(shiftshape)
        self._stack = torch.as_tensor(np.stack([nums, dens], axis=1), dtype=torch.float64)

    @property
    def ndim(self) -> int:
        return len(self.gridsize)

    @property
    def nblocks(self) -> int:
        return self._stack.shape[0]

    @property
    def maxshift(self) -> Tuple[int, ...]:
        return tuple((s - 1) // 2 for s in self.shiftshape)

    def _check(self, u_shape) -> None:
        expected = (self.ndim,) + self.gridsize
        if tuple(u_shape) != expected:
            raise ShapeError(f"u has shape {tuple(u_shape)}, mismatch data expect {expected}")

    def interpolate_torch(self, U: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """Per-block numerator and denominator at displacements ``U`` ((N,) + gridsize)."""
        self._check(U.shape)
        N = self.ndim
        m = torch.tensor(self.maxshift, dtype=U.dtype, device=U.device)
        shifts = U.reshape(N, -1).T / m
        grid = shifts.flip(-1).reshape((self.nblocks,) + (1,) * N + (N,))
        out = F.grid_sample(
            self._stack.to(U.device), grid, mode='bilinear',
            padding_mode='border', align_corners=True
        )
        out = out.reshape(self.nblocks, 2)
        return out[:, 0], out[:, 1]

    def penalty_torch(self, U: torch.Tensor) -> torch.Tensor:
        num, denom = self.interpolate_torch(U)
        return num.sum() / denom.sum()

    def data_penalty(self, u) -> float:
        """``Σ num / Σ denom`` at ``u`` (array ``(N,) + gridsize`` or GridDeformation)."""
        if isinstance(u, GridDeformation):
            u = u.u
        with torch.no_grad():
            return float(self.penalty_torch(torch.as_tensor(np.asarray(u, dtype=np.float64))))

    def data_penalty_and_gradient(self, u) -> Tuple[float, NDArray[np.float64]]:
        if isinstance(u, GridDeformation):
            u = u.u
        U = torch.as_tensor(np.asarray(u, dtype=np.float64)).clone().requires_grad_(True)
        with torch.enable_grad():
            val = self.penalty_torch(U)
            (g,) = torch.autograd.grad(val, U)
        return float(val.detach()), g.numpy()


def quadratic_mismatch(
    cs: NDArray,
    Qs: NDArray,
    maxshift: Sequence[int],
) -> MismatchData:
    """
    Mismatch data whose block ``i`` is ``(s - c_i)ᵀ Q_i (s - c_i)``.

    Parameters
    ----------
    cs : ndarray
        Centers, shape ``gridsize + (N,)``.
    Qs : ndarray
        Curvature matrices, shape ``gridsize + (N, N)``.
    maxshift : sequence of int
        Half-width of the sampled shift grid per axis.
    """
    cs = np.asarray(cs, dtype=np.float64)
    Qs = np.asarray(Qs, dtype=np.float64)
    N = cs.shape[-1]
    gridsize = cs.shape[:-1]
    if Qs.shape != gridsize + (N, N):
        raise ShapeError(f"Qs has shape {Qs.shape}, expected {gridsize + (N, N)}")
    if len(maxshift) != N:
        raise ShapeError(f"maxshift has {len(maxshift)} entries for {N}D fits")
    axes = [np.arange(-m, m + 1, dtype=np.float64) for m in maxshift]
    S = np.stack(np.meshgrid(*axes, indexing='ij'), axis=-1)
    shiftshape = S.shape[:-1]
    S = S.reshape(-1, N)
    c = cs.reshape(-1, N)
    Q = Qs.reshape(-1, N, N)
    D = S[None, :, :] - c[:, None, :]
    num = np.einsum('bki,bij,bkj->bk', D, Q, D)
    return MismatchData(num.reshape(gridsize + shiftshape), gridsize=gridsize)


# =============================================================================
# Total penalty
# =============================================================================

def total_penalty(
    phi: GridDeformation,
    ap: AffinePenalty,
    mmis: MismatchData,
    phi_old: Optional[GridDeformation] = None,
    lam: Optional[float] = None,
    gradient: bool = False,
):
    """
    Regularization on ``ϕ_old ∘ ϕ`` plus data penalty on ``ϕ``.

    The mismatch data are measured after warping by ``ϕ_old``, so they are
    evaluated at ``ϕ``'s own displacements, while the regularization sees the
    full composed deformation.

    Returns
    -------
    value : float
        If ``gradient`` is False.
    (value, grad) : (float, ndarray)
        If ``gradient`` is True; ``grad`` has shape ``(N,) + gridsize``.
    """
    phi_c, jac = compose(phi_old, phi)
    if not gradient:
        return ap.penalty(phi_c, lam) + mmis.data_penalty(phi)
    val_reg, g_reg = ap.penalty_and_gradient(
        phi_c, None if phi_old is None else jac, lam
    )
    val_data, g_data = mmis.data_penalty_and_gradient(phi)
    return val_reg + val_data, g_reg + g_data
