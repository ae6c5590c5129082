# -*- coding: utf-8 -*-
"""
Deformable Registration Package.

Grid-sampled deformations and their optimization from block-wise
mismatch data, for 2D and 3D images.

Deformations
------------
- GridDeformation: Displacement field on a knot grid (raw or interpolating)
- compose: ``ϕ_old ∘ ϕ_new`` and its Jacobian
- tform2deformation: Affine transform sampled on a knot grid

Warping
-------
- WarpedArray: Lazy view ``img[ϕ(x)]``
- warp, warp_into: Materialize a warped image
- warp_frames: Frame-by-frame warping on a worker pool

Optimization
------------
- initial_deformation: Globally optimal guess from quadratic fits
- fixed_lambda: Optimal deformation for one regularization weight
- auto_lambda: Sweep λ and pick it from a sigmoidal fit
- optimize_rigid: Rigid registration from raw images
- optimize_pixelwise: Polish a deformation against the images

Regularization
--------------
The affine penalty ``(λ/n) ‖U − U F Fᵀ‖²`` penalizes deviation of the
displacement field from a single affine transform. Small λ lets every
block follow its own mismatch; large λ forces a nearly affine
deformation. As a first pass for ``auto_lambda`` try
``lam_min=1e-6, lam_max=100``.

Example:
    ap = AffinePenalty(knots, lam=1e-3)
    mmis = MismatchData(nums, denoms)
    phi, penalty = fixed_lambda(cs, Qs, knots, ap, mmis)
    warped = warp(moving, phi.interpolate())
"""

__version__ = "0.1.0"

from .errors import (
    ConvergenceWarning,
    InvalidStateError,
    OperationCancelled,
    PreconditionError,
    ShapeError,
)

from .affine import AffineTransform, p2rigid, rigid2p, rotation2, rotation3, rotation_parameters
from .deformation import (
    DeformationMode,
    GridDeformation,
    compose,
    identity,
    knots_from_size,
    tform2deformation,
)

from .warp import ImageSampler, WarpedArray, translate, warp, warp_frames, warp_into, warpgrid

from .penalty import AffinePenalty, MismatchArray, MismatchData, quadratic_mismatch, total_penalty

from .solvers import CancellationToken, TrustConstrSolver, torch_gradient
from .optimize import (
    AffineQHessian,
    AutoLambdaResult,
    SigmoidFit,
    auto_lambda,
    fit_sigmoid,
    fixed_lambda,
    initial_deformation,
    optimize_deformation,
    optimize_rigid,
    uclamp,
)
from .pixelwise import optimize_pixelwise, penalty_pixelwise

__all__ = [
    # Version
    "__version__",
    # Errors
    "ShapeError",
    "InvalidStateError",
    "PreconditionError",
    "OperationCancelled",
    "ConvergenceWarning",
    # Deformations
    "DeformationMode",
    "GridDeformation",
    "compose",
    "identity",
    "knots_from_size",
    "tform2deformation",
    # Affine
    "AffineTransform",
    "p2rigid",
    "rigid2p",
    "rotation2",
    "rotation3",
    "rotation_parameters",
    # Warping
    "ImageSampler",
    "WarpedArray",
    "warp",
    "warp_into",
    "warp_frames",
    "translate",
    "warpgrid",
    # Penalties
    "AffinePenalty",
    "MismatchArray",
    "MismatchData",
    "quadratic_mismatch",
    "total_penalty",
    # Solvers
    "CancellationToken",
    "TrustConstrSolver",
    "torch_gradient",
    # Optimization
    "AffineQHessian",
    "AutoLambdaResult",
    "SigmoidFit",
    "initial_deformation",
    "uclamp",
    "optimize_deformation",
    "fixed_lambda",
    "auto_lambda",
    "fit_sigmoid",
    "optimize_rigid",
    "optimize_pixelwise",
    "penalty_pixelwise",
]
