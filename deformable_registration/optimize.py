# -*- coding: utf-8 -*-
"""
Optimization of deformations from block-wise mismatch data.

The typical pipeline is

1. ``initial_deformation``: a globally optimal guess from quadratic fits
   ``(cs, Qs)`` of the block mismatch, solved with conjugate gradients on the
   matrix-free ``AffineQHessian``;
2. ``uclamp``: pull the guess strictly inside the shift bounds;
3. ``optimize_deformation``: bounded nonlinear refinement of the total
   penalty against the interpolated mismatch data.

``fixed_lambda`` runs these steps for one regularization weight;
``auto_lambda`` sweeps λ and picks a value on the initial upslope of the
data penalty (via ``fit_sigmoid``).

``optimize_rigid`` uses the same solver machinery on the 3 (2D) or 6 (3D)
parameters of a rigid transform, working directly on the images.

Classes
-------
- AffineQHessian: Matrix-free Hessian of the initial-guess objective
- DeformOpt: Evaluator for the total penalty of a grid deformation
- RigidValue, RigidOpt: Normalized intensity mismatch of a rigid transform
- AutoLambdaResult: Outcome of the λ sweep
- SigmoidFit: Parameters of a logistic fit

Functions
---------
- initial_deformation, prep_b, uclamp
- optimize_deformation, fixed_lambda, auto_lambda
- fit_sigmoid, sigmoid
- optimize_rigid
"""

from __future__ import annotations

import warnings
from dataclasses import dataclass, field
from typing import List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import torch
from numpy.typing import NDArray
from scipy.optimize import least_squares
from scipy.sparse.linalg import LinearOperator, cg

from .affine import (
    AffineTransform,
    n_rotation_parameters,
    p2rigid,
    rigid2p,
    rigid_matrix_torch,
)
from .common import pixel_points, sample_image_torch, to_float
from .constants import (
    BARRIER_BACKOFF,
    BARRIER_INIT,
    BARRIER_MIN,
    DEFAULT_MAXITER,
    DEFORM_TOL,
    LAMBDA_GROWTH,
    MIN_SIGMOID_POINTS,
    RIGID_TOL,
    SHIFT_MARGIN,
    SIGMOID_WIDTH_MIN,
    STABILIZER_FALLBACK,
)
from .deformation import GridDeformation
from .errors import ConvergenceWarning, PreconditionError, ShapeError
from .penalty import AffinePenalty, MismatchData, total_penalty
from .solvers import (
    OPTIMAL,
    CancellationToken,
    GradOnlyEvaluator,
    TrustConstrSolver,
    torch_gradient,
)


# =============================================================================
# Initial guess
# =============================================================================

def _check_fits(ap: AffinePenalty, cs: NDArray, Qs: NDArray) -> Tuple[NDArray, NDArray]:
    cs = np.asarray(cs, dtype=np.float64)
    Qs = np.asarray(Qs, dtype=np.float64)
    N = ap.ndim
    gridsize = tuple(len(k) for k in ap.knots)
    if cs.shape != gridsize + (N,):
        raise ShapeError(f"cs has shape {cs.shape}, expected {gridsize + (N,)}")
    if Qs.shape != gridsize + (N, N):
        raise ShapeError(f"Qs has shape {Qs.shape}, expected {gridsize + (N, N)}")
    return cs, Qs


def prep_b(cs: NDArray, Qs: NDArray) -> NDArray[np.float64]:
    """Right-hand side ``b[i] = Qs[i] @ cs[i]``, block-major."""
    cs = np.asarray(cs, dtype=np.float64)
    Qs = np.asarray(Qs, dtype=np.float64)
    return np.einsum('...ij,...j->...i', Qs, cs).reshape(-1)


class AffineQHessian:
    """
    Hessian of ``λ·affine penalty + Σ (u_i - c_i)ᵀ Q_i (u_i - c_i)``, matrix-free.

    Vectors use the block-major layout of ``GridDeformation.as_vector``:
    the N components of block 1, then block 2, and so on.

    A small multiple of the identity, ``cbrt(eps)·trace(ΣQ)/n``, is added so
    the operator stays positive definite when λ and the ``Q_i`` are
    degenerate.

    Parameters
    ----------
    ap : AffinePenalty
        Regularization on the knot grid of the deformation.
    Qs : ndarray
        Curvatures of the fits, shape ``gridsize + (N, N)``.
    lam : float, optional
        Regularization weight. Default ``ap.lam``.
    """

    def __init__(self, ap: AffinePenalty, Qs: NDArray, lam: Optional[float] = None):
        self.ap = ap
        self.Qs = np.asarray(Qs, dtype=np.float64)
        self.lam = ap.lam if lam is None else float(lam)
        N = ap.ndim
        self.gridsize = self.Qs.shape[:-2]
        if self.Qs.shape[-2:] != (N, N) or len(self.gridsize) != N:
            raise ShapeError(f"Qs of shape {self.Qs.shape} do not match a {N}D grid")
        self.nblocks = int(np.prod(self.gridsize))
        self._Qflat = self.Qs.reshape(-1, N, N)
        sumQ = float(np.einsum('bii->', self._Qflat))
        if sumQ == 0:
            sumQ = STABILIZER_FALLBACK
        self.stabilizer = np.cbrt(np.finfo(np.float64).eps) * sumQ / self.nblocks

    def dimension(self) -> int:
        return self.nblocks * self.ap.ndim

    @property
    def shape(self) -> Tuple[int, int]:
        n = self.dimension()
        return (n, n)

    def apply(self, x: NDArray) -> NDArray[np.float64]:
        N = self.ap.ndim
        xv = np.asarray(x, dtype=np.float64).reshape(self.nblocks, N)
        U = np.moveaxis(xv.reshape(self.gridsize + (N,)), -1, 0)
        # scaling λ by n/2 turns the affine gradient into λ·dX
        ga = self.ap.gradient(U, self.lam * self.nblocks / 2)
        g = np.moveaxis(ga, 0, -1).reshape(self.nblocks, N)
        g += np.einsum('bij,bj->bi', self._Qflat, xv)
        g += self.stabilizer * xv
        return g.reshape(-1)

    def as_linear_operator(self) -> LinearOperator:
        return LinearOperator(self.shape, matvec=self.apply, dtype=np.float64)

    def to_dense(self) -> NDArray[np.float64]:
        """Materialize the operator column by column (small problems only)."""
        n = self.dimension()
        return np.column_stack([self.apply(e) for e in np.eye(n)])


def initial_deformation(
    ap: AffinePenalty,
    cs: NDArray,
    Qs: NDArray,
    lam: Optional[float] = None,
) -> Tuple[NDArray[np.float64], bool]:
    """
    Globally optimal initial guess from quadratic fits of the mismatch.

    Minimizes

        ap(u) + Σ_i (u_i - cs_i)ᵀ Qs_i (u_i - cs_i)

    Parameters
    ----------
    ap : AffinePenalty
        Regularization for the knot grid.
    cs : ndarray
        Fit centers, shape ``gridsize + (N,)``.
    Qs : ndarray
        Fit curvatures (positive semidefinite), shape ``gridsize + (N, N)``.
    lam : float, optional
        Regularization weight. Default ``ap.lam``.

    Returns
    -------
    u0 : ndarray
        Shape ``(N,) + gridsize``.
    converged : bool
        Whether conjugate gradients reached its tolerance.
    """
    cs, Qs = _check_fits(ap, cs, Qs)
    P = AffineQHessian(ap, Qs, lam)
    b = prep_b(cs, Qs)
    x, info = cg(P.as_linear_operator(), b)
    N = ap.ndim
    u0 = np.moveaxis(np.asarray(x).reshape(P.gridsize + (N,)), -1, 0)
    return np.ascontiguousarray(u0), info == 0


def uclamp(
    u: NDArray,
    maxshift: Sequence[float],
    margin: float = SHIFT_MARGIN,
) -> NDArray[np.float64]:
    """
    Clamp displacements ``u`` of shape ``(N,) + gridsize`` into
    ``[-(maxshift - margin), maxshift - margin]`` per component.
    """
    u = np.asarray(u, dtype=np.float64)
    if len(maxshift) != u.shape[0]:
        raise ShapeError(f"maxshift has {len(maxshift)} entries for {u.shape[0]} components")
    bound = (np.asarray(maxshift, dtype=np.float64) - margin).reshape((-1,) + (1,) * (u.ndim - 1))
    return np.clip(u, -bound, bound)


# =============================================================================
# Nonlinear refinement
# =============================================================================

class DeformOpt(GradOnlyEvaluator):
    """
    Total penalty of a deformation on a fixed knot grid, as a function of
    its block-major displacement vector.
    """

    def __init__(
        self,
        phi: GridDeformation,
        ap: AffinePenalty,
        mmis: MismatchData,
        phi_old: Optional[GridDeformation] = None,
        lam: Optional[float] = None,
    ):
        if phi_old is not None and not phi_old.same_grid(phi):
            raise PreconditionError("ϕ_old must share the knot grid of ϕ")
        self.knots = phi.knots
        self.mode = phi.mode
        self.ap = ap
        self.mmis = mmis
        self.phi_old = phi_old
        self.lam = lam

    def deformation(self, x: NDArray) -> GridDeformation:
        return GridDeformation.from_vector(x, self.knots, mode=self.mode)

    def eval_f(self, x):
        return total_penalty(self.deformation(x), self.ap, self.mmis,
                             phi_old=self.phi_old, lam=self.lam)

    def eval_grad_f(self, x):
        _, g = total_penalty(self.deformation(x), self.ap, self.mmis,
                             phi_old=self.phi_old, lam=self.lam, gradient=True)
        return np.moveaxis(g, 0, -1).reshape(-1)


def optimize_deformation(
    phi: GridDeformation,
    ap: AffinePenalty,
    mmis: MismatchData,
    phi_old: Optional[GridDeformation] = None,
    lam: Optional[float] = None,
    tol: float = DEFORM_TOL,
    barrier_init: float = BARRIER_INIT,
    maxiter: int = DEFAULT_MAXITER,
    token: Optional[CancellationToken] = None,
) -> Tuple[GridDeformation, float, float]:
    """
    Refine ``ϕ`` by bounded minimization of the total penalty.

    Each displacement is bounded by ``maxshift - SHIFT_MARGIN`` of the
    mismatch data. The objective is the regularization of ``ϕ_old ∘ ϕ``
    plus the data penalty of ``ϕ``.

    Parameters
    ----------
    phi : GridDeformation
        Starting point; not modified.
    ap : AffinePenalty
        Regularization.
    mmis : MismatchData
        Mismatch data on ``ϕ``'s grid.
    phi_old : GridDeformation, optional
        Interpolating deformation already applied to the moving image.
    lam : float, optional
        Regularization weight. Default ``ap.lam``.
    tol : float
        Solver tolerance.
    barrier_init : float
        Initial barrier parameter of the interior-point solver.
    maxiter : int
        Iteration cap.
    token : CancellationToken, optional
        Aborts the solve with OperationCancelled.

    Returns
    -------
    phi_opt : GridDeformation
        Best deformation found, in the mode of ``ϕ``.
    fval : float
        Total penalty of ``phi_opt``.
    fval0 : float
        Total penalty of the starting point.
    """
    if tuple(phi.gridsize) != mmis.gridsize:
        raise ShapeError(f"ϕ has grid {phi.gridsize}, mismatch data have grid {mmis.gridsize}")
    objective = DeformOpt(phi, ap, mmis, phi_old=phi_old, lam=lam)
    x0 = phi.as_vector()
    n = x0.size
    ub = np.tile(np.asarray(mmis.maxshift, dtype=np.float64) - SHIFT_MARGIN, n // phi.ndim)

    fval0 = objective.eval_f(x0)
    if not np.isfinite(fval0):
        raise PreconditionError("Initial value must be finite")

    solver = TrustConstrSolver(tol=tol, maxiter=maxiter, barrier_init=barrier_init, token=token)
    solver.load_problem(n, -ub, ub, objective)
    solver.set_warm_start(x0)
    solver.optimize()
    if solver.get_status() != OPTIMAL:
        warnings.warn("Solution was not optimal", ConvergenceWarning, stacklevel=2)
    return objective.deformation(solver.get_solution()), solver.get_objective_value(), fval0


def _refine_with_backoff(
    phi: GridDeformation,
    ap: AffinePenalty,
    mmis: MismatchData,
    lam: Optional[float],
    tol: float,
    maxiter: int,
    verbose: bool,
    token: Optional[CancellationToken],
) -> Tuple[GridDeformation, float]:
    barrier = BARRIER_INIT
    penalty = None
    while barrier > BARRIER_MIN:
        if token is not None:
            token.raise_if_cancelled()
        phi, penalty, penalty0 = optimize_deformation(
            phi, ap, mmis, lam=lam, tol=tol, barrier_init=barrier,
            maxiter=maxiter, token=token
        )
        if penalty <= penalty0:
            break
        barrier /= BARRIER_BACKOFF
        if verbose:
            print(f"    No improvement, retrying with barrier parameter {barrier:.1e}")
    return phi, penalty


def _guess(ap, cs, Qs, lam, maxshift) -> NDArray[np.float64]:
    u0, converged = initial_deformation(ap, cs, Qs, lam)
    if not converged:
        lam = ap.lam if lam is None else lam
        warnings.warn(f"initial_deformation failed to converge with λ = {lam}",
                      ConvergenceWarning, stacklevel=3)
    return uclamp(u0, maxshift)


def fixed_lambda(
    cs: NDArray,
    Qs: NDArray,
    knots,
    ap: AffinePenalty,
    mmis: MismatchData,
    lam: Optional[float] = None,
    tol: float = DEFORM_TOL,
    maxiter: int = DEFAULT_MAXITER,
    verbose: bool = False,
    token: Optional[CancellationToken] = None,
) -> Tuple[GridDeformation, float]:
    """
    Optimal deformation for a fixed regularization weight.

    Parameters
    ----------
    cs, Qs : ndarray
        Quadratic fits of the block mismatch, shapes ``gridsize + (N,)``
        and ``gridsize + (N, N)``.
    knots : sequence of sequences
        Knot grid of the deformation.
    ap : AffinePenalty
        Regularization for that grid.
    mmis : MismatchData
        Interpolated mismatch data.
    lam : float, optional
        Regularization weight. Default ``ap.lam``.

    Returns
    -------
    phi : GridDeformation
        The optimized deformation (raw mode).
    penalty : float
        Its total penalty (data + regularization); never larger than the
        penalty of the clamped initial guess.
    """
    u0 = _guess(ap, cs, Qs, lam, mmis.maxshift)
    phi = GridDeformation(u0, knots)
    if verbose:
        print(f"    Refining {phi.gridsize} grid, λ = {ap.lam if lam is None else lam:.3g}")
    return _refine_with_backoff(phi, ap, mmis, lam, tol, maxiter, verbose, token)


# =============================================================================
# Automatic choice of λ
# =============================================================================

class SigmoidFit(NamedTuple):
    bottom: float
    top: float
    center: float
    width: float
    value: float


def sigmoid(x, bottom: float, top: float, center: float, width: float):
    """``bottom + (top - bottom) / (1 + exp(-(x - center)/width))``"""
    x = np.asarray(x, dtype=np.float64)
    return bottom + (top - bottom) / (1 + np.exp(-(x - center) / width))


def fit_sigmoid(
    data: Sequence[float],
    bottom: Optional[float] = None,
    top: Optional[float] = None,
    center: Optional[float] = None,
    width: Optional[float] = None,
) -> SigmoidFit:
    """
    Fit ``data`` (indexed 1..n) to a logistic curve.

    The fit is non-extrapolating: ``bottom`` and ``top`` lie within the
    range of ``data``, ``center`` within ``[1, n]`` and ``width`` within
    ``[0.1, n]``. Residuals are normalized by ``top - bottom``.

    Missing starting values are derived from the data: ``bottom`` and
    ``top`` are the means of the lower and upper halves of the sorted data,
    ``center`` and ``width`` are ``n // 2``.

    Returns
    -------
    SigmoidFit
        ``value`` is the sum of squared normalized residuals.
    """
    data = np.asarray(data, dtype=np.float64).ravel()
    n = data.size
    if n < MIN_SIGMOID_POINTS:
        raise PreconditionError("Too few data points for sigmoidal fit")
    sdata = np.sort(data)
    mid = n >> 1
    x0 = np.array([
        sdata[:mid].mean() if bottom is None else bottom,
        sdata[mid:].mean() if top is None else top,
        mid if center is None else center,
        mid if width is None else width,
    ], dtype=np.float64)

    mn, mx = float(sdata[0]), float(sdata[-1])
    if mx <= mn:
        # flat data: any center/width fits equally well
        return SigmoidFit(mn, mn, float(np.clip(x0[2], 1, n)),
                          float(np.clip(x0[3], SIGMOID_WIDTH_MIN, n)), 0.0)
    lb = np.array([mn, mn, 1.0, SIGMOID_WIDTH_MIN])
    ub = np.array([mx, mx, float(n), float(n)])
    x0 = np.clip(x0, lb, ub)
    i = np.arange(1, n + 1, dtype=np.float64)
    minspan = 1e-12 * (mx - mn)

    def residuals(p):
        b, t, c, w = p
        span = t - b
        if abs(span) < minspan:
            span = minspan if span >= 0 else -minspan
        return (data - b) / span - 1 / (1 + np.exp(-(i - c) / w))

    result = least_squares(residuals, x0, bounds=(lb, ub))
    if result.status <= 0:
        warnings.warn("Sigmoid fit did not converge", ConvergenceWarning, stacklevel=2)
    b, t, c, w = (float(v) for v in result.x)
    return SigmoidFit(b, t, c, w, float(2 * result.cost))


@dataclass
class AutoLambdaResult:
    """
    Outcome of ``auto_lambda``.

    Unpacks as ``phi, penalty, lam, datapenalty, quality``.
    """
    phi: GridDeformation
    penalty: float
    lam: float
    datapenalty: NDArray[np.float64]
    quality: float
    lambdas: NDArray[np.float64] = field(default_factory=lambda: np.zeros(0))
    index: int = 0
    sigmoid: Optional[SigmoidFit] = None

    def __iter__(self):
        return iter((self.phi, self.penalty, self.lam, self.datapenalty, self.quality))


def auto_lambda(
    cs: NDArray,
    Qs: NDArray,
    knots,
    ap: AffinePenalty,
    mmis: MismatchData,
    lam_min: float,
    lam_max: float,
    tol: float = DEFORM_TOL,
    maxiter: int = DEFAULT_MAXITER,
    verbose: bool = False,
    token: Optional[CancellationToken] = None,
) -> AutoLambdaResult:
    """
    Choose the regularization weight automatically.

    λ starts at ``lam_min`` and doubles while it stays below ``lam_max``.
    For every λ the deformation is optimized twice, warm-started from the
    previous winner and cold-started from a fresh ``initial_deformation``;
    the lower total penalty wins. The data penalty of the winners is then
    fit to a logistic curve and the λ at the initial upslope,
    ``round(center - width)``, is chosen: large enough to begin limiting
    the deformation, not yet large enough to hurt the registration.

    A first pass with ``lam_min=1e-6`` and ``lam_max=100`` is a reasonable
    start; check that ``datapenalty`` looks sigmoidal and adjust the range
    if it doesn't.

    Parameters
    ----------
    cs, Qs : ndarray
        Quadratic fits of the block mismatch.
    knots : sequence of sequences
        Knot grid of the deformation.
    ap : AffinePenalty
        Regularization for that grid; its own λ is ignored.
    mmis : MismatchData
        Interpolated mismatch data.
    lam_min, lam_max : float
        Range of λ.
    token : CancellationToken, optional
        Checked between rounds and inside each solve.

    Returns
    -------
    AutoLambdaResult

    Raises
    ------
    PreconditionError
        If fewer than 4 values of λ were tested.
    """
    maxshift = mmis.maxshift
    uc = uclamp(np.moveaxis(np.asarray(cs, dtype=np.float64), -1, 0), maxshift)
    warm = uc
    phis: List[GridDeformation] = []
    penalties: List[float] = []
    datapenalty: List[float] = []
    lambdas: List[float] = []

    lam = float(lam_min)
    while True:
        if token is not None:
            token.raise_if_cancelled()
        phi_prev, p_prev = _refine_with_backoff(
            GridDeformation(warm.copy(), knots), ap, mmis, lam, tol, maxiter, verbose, token
        )
        u0 = _guess(ap, cs, Qs, lam, maxshift)
        phi_ap, p_ap = _refine_with_backoff(
            GridDeformation(u0, knots), ap, mmis, lam, tol, maxiter, verbose, token
        )
        # keep the lower total penalty, but fit the sigmoid to the data part
        phi, p = (phi_prev, p_prev) if p_prev < p_ap else (phi_ap, p_ap)
        phis.append(phi)
        penalties.append(p)
        datapenalty.append(mmis.data_penalty(phi))
        lambdas.append(lam)
        if verbose:
            print(f"    λ = {lam:.3g}: penalty={p:.6g}, data penalty={datapenalty[-1]:.6g}")
        warm = phi.u
        lam *= LAMBDA_GROWTH
        if lam >= lam_max:
            break

    if len(datapenalty) < MIN_SIGMOID_POINTS:
        raise PreconditionError(
            f"Only {len(datapenalty)} values of λ were tested, need at least {MIN_SIGMOID_POINTS}"
        )
    dp = np.asarray(datapenalty)
    fit = fit_sigmoid(dp)
    idx = min(max(1, int(round(fit.center - fit.width))), len(dp))
    span = fit.top - fit.bottom
    quality = fit.value / span ** 2 / len(dp) if span != 0 else 0.0
    if verbose:
        print(f"    Chose λ = {lambdas[idx - 1]:.3g} (round {idx}/{len(dp)}), quality={quality:.3g}")
    return AutoLambdaResult(
        phi=phis[idx - 1],
        penalty=penalties[idx - 1],
        lam=lambdas[idx - 1],
        datapenalty=dp,
        quality=quality,
        lambdas=np.asarray(lambdas),
        index=idx,
        sigmoid=fit,
    )


# =============================================================================
# Rigid registration from raw images
# =============================================================================

class RigidValue:
    """
    Normalized intensity mismatch of a rigid transform.

    With ``f`` the fixed image and ``m`` the moving image sampled through the
    transform, both restricted to pixels valid in the other,

        value = Σ (f - m)² / (Σ f² + Σ m²)

    NaN pixels count as missing. If the denominator falls below ``thresh``
    (too little overlap) the value is ``+inf``.
    """

    def __init__(self, fixed: NDArray, moving: NDArray, SD: Optional[NDArray] = None,
                 thresh: float = 0.0):
        fixed, moving = to_float(fixed, moving)
        if fixed.shape != moving.shape:
            raise ShapeError(f"fixed {fixed.shape} and moving {moving.shape} differ in shape")
        f = torch.as_tensor(fixed, dtype=torch.float64)
        m = torch.as_tensor(moving, dtype=torch.float64)
        fnan = torch.isnan(f)
        self.fixed = torch.where(fnan, torch.zeros_like(f), f)
        self.wfixed = (~fnan).to(torch.float64)
        self.moving = torch.nan_to_num(m, nan=0.0)
        self.ndim = f.ndim
        self.nrot = n_rotation_parameters(self.ndim)
        SD = np.eye(self.ndim) if SD is None else np.asarray(SD, dtype=np.float64)
        self.SD = torch.as_tensor(SD)
        self.SDinv = torch.as_tensor(np.linalg.inv(SD))
        self.thresh = thresh
        shape = fixed.shape
        self.center = torch.tensor([(s + 1) / 2 for s in shape], dtype=torch.float64)
        self.points = torch.as_tensor(pixel_points(shape)) - self.center

    def __call__(self, p: torch.Tensor) -> torch.Tensor:
        A = self.SDinv @ rigid_matrix_torch(p[:self.nrot]) @ self.SD
        y = self.points @ A.T + p[self.nrot:] + self.center
        mov, inside = sample_image_torch(self.moving, y)
        inside = inside.to(mov.dtype)
        f = self.fixed.reshape(-1) * inside
        m = mov * inside * self.wfixed.reshape(-1)
        den = (f ** 2).sum() + (m ** 2).sum()
        if den.item() <= 0 or den.item() < self.thresh:
            return torch.tensor(np.inf, dtype=torch.float64)
        return ((f - m) ** 2).sum() / den


class RigidOpt(GradOnlyEvaluator):
    def __init__(self, fixed, moving, SD=None, thresh=0.0):
        self.rv = RigidValue(fixed, moving, SD, thresh)
        self.grad = torch_gradient(self.rv)

    def eval_f(self, x):
        with torch.no_grad():
            return float(self.rv(torch.as_tensor(np.asarray(x, dtype=np.float64))))

    def eval_grad_f(self, x):
        return self.grad(x)


def optimize_rigid(
    fixed: NDArray,
    moving: NDArray,
    tform0: AffineTransform,
    maxshift: Sequence[float],
    SD: Optional[NDArray] = None,
    thresh: float = 0.0,
    tol: float = RIGID_TOL,
    maxiter: int = DEFAULT_MAXITER,
    verbose: bool = False,
    token: Optional[CancellationToken] = None,
) -> Tuple[AffineTransform, float]:
    """
    Rigid registration of ``moving`` onto ``fixed``.

    Parameters
    ----------
    fixed, moving : ndarray
        2D or 3D images of the same shape; NaN marks missing pixels.
    tform0 : AffineTransform
        Initial guess (rotation + translation, center-origin convention).
    maxshift : sequence of float
        Bound on the translation along each axis.
    SD : ndarray, optional
        Axis scaling for anisotropic sampling.
    thresh : float
        Minimum overlap ``Σf² + Σm²``; below it the penalty is ``+inf``.
    tol : float
        Solver tolerance.

    Returns
    -------
    tform : AffineTransform
        Optimized transform.
    fval : float
        Its normalized mismatch.
    """
    objective = RigidOpt(fixed, moving, SD, thresh)
    N = objective.rv.ndim
    if len(maxshift) != N:
        raise ShapeError(f"maxshift has {len(maxshift)} entries for {N}D images")
    p0 = rigid2p(tform0, SD)
    ub = np.concatenate([np.full(objective.rv.nrot, np.pi),
                         np.asarray(maxshift, dtype=np.float64)])

    solver = TrustConstrSolver(tol=tol, maxiter=maxiter, token=token)
    solver.load_problem(p0.size, -ub, ub, objective)
    solver.set_warm_start(np.clip(p0, -ub, ub))
    solver.optimize()
    if solver.get_status() != OPTIMAL:
        warnings.warn("Solution was not optimal", ConvergenceWarning, stacklevel=2)
    p = solver.get_solution()
    fval = solver.get_objective_value()
    if verbose:
        print(f"    Rigid parameters: {np.array2string(p, precision=4)}, mismatch={fval:.6g}")
    return p2rigid(p, SD), fval
