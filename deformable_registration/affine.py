# -*- coding: utf-8 -*-
"""
Affine and rigid transforms.

An ``AffineTransform`` maps a coordinate ``x`` to ``A @ x + offset``. When
applied to an image the origin of coordinates is the array center, so a
pure rotation spins the image around its center.

Rigid transforms are parameterized by a rotation followed by a
translation:

- 2D: ``p = [theta, dx1, dx2]``
- 3D: ``p = [r1, r2, r3, dx1, dx2, dx3]`` where ``r`` is a rotation vector
  (axis times angle)

Functions
---------
- rotation2, rotation3: Rotation matrices from parameters
- rotation_parameters: Inverse of rotation2/rotation3
- p2rigid: Parameter vector to AffineTransform
- rigid_matrix_torch: Differentiable rotation matrix for autograd
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
import torch
from numpy.typing import NDArray
from scipy.spatial.transform import Rotation

from .errors import ShapeError


@dataclass
class AffineTransform:
    """Linear part ``matrix`` (N x N) plus translation ``offset`` (N,)."""
    matrix: NDArray[np.float64]
    offset: NDArray[np.float64]

    def __post_init__(self):
        self.matrix = np.atleast_2d(np.asarray(self.matrix, dtype=np.float64))
        self.offset = np.atleast_1d(np.asarray(self.offset, dtype=np.float64))
        N = self.offset.shape[0]
        if self.matrix.shape != (N, N):
            raise ShapeError(
                f"matrix of shape {self.matrix.shape} does not match offset of length {N}"
            )

    @classmethod
    def identity(cls, ndim: int) -> "AffineTransform":
        return cls(np.eye(ndim), np.zeros(ndim))

    @property
    def ndim(self) -> int:
        return self.offset.shape[0]

    def __call__(self, x: NDArray) -> NDArray[np.float64]:
        """Apply to a point (N,) or a batch of points (M, N)."""
        x = np.asarray(x, dtype=np.float64)
        return x @ self.matrix.T + self.offset

    def apply_centered(
        self,
        points: NDArray,
        shape: Tuple[int, ...],
    ) -> NDArray[np.float64]:
        """
        Apply to 1-based array coordinates using the array center as origin.
        """
        c = (np.asarray(shape, dtype=np.float64) + 1) / 2
        return self(np.asarray(points, dtype=np.float64) - c) + c

    def compose(self, other: "AffineTransform") -> "AffineTransform":
        """Return the transform ``x -> self(other(x))``."""
        return AffineTransform(self.matrix @ other.matrix,
                               self.matrix @ other.offset + self.offset)

    def inverse(self) -> "AffineTransform":
        Ainv = np.linalg.inv(self.matrix)
        return AffineTransform(Ainv, -Ainv @ self.offset)


def rotation2(theta: float) -> NDArray[np.float64]:
    """2D rotation matrix for angle ``theta`` (radians)."""
    c, s = np.cos(theta), np.sin(theta)
    return np.array([[c, -s], [s, c]])


def rotation3(p: Sequence[float]) -> NDArray[np.float64]:
    """3D rotation matrix for rotation vector ``p`` (axis * angle)."""
    return Rotation.from_rotvec(np.asarray(p, dtype=np.float64)).as_matrix()


def rotation_parameters(R: NDArray) -> NDArray[np.float64]:
    """
    Recover the rotation parameters of a 2x2 or 3x3 rotation matrix.

    Returns a length-1 array (angle) in 2D and a rotation vector in 3D.
    """
    R = np.asarray(R, dtype=np.float64)
    if R.shape == (2, 2):
        return np.array([np.arctan2(R[1, 0], R[0, 0])])
    if R.shape == (3, 3):
        return Rotation.from_matrix(R).as_rotvec()
    raise ShapeError(f"Rotation parameters are defined for 2x2 or 3x3 matrices, got {R.shape}")


def n_rotation_parameters(ndim: int) -> int:
    if ndim == 2:
        return 1
    if ndim == 3:
        return 3
    raise ShapeError(f"Rigid transforms are supported in 2D and 3D, got {ndim}D")


def p2rigid(p: Sequence[float], SD: Optional[NDArray] = None) -> AffineTransform:
    """
    Convert a rigid parameter vector to an AffineTransform.

    Parameters
    ----------
    p : sequence of float
        Length 3 (2D) or 6 (3D); rotation parameters then translation.
    SD : ndarray, optional
        Axis scaling (e.g. ``np.diag(voxelspacing)``) for anisotropic
        sampling. The linear part is ``SD^-1 R SD``.
    """
    p = np.asarray(p, dtype=np.float64)
    if len(p) == 3:
        R = rotation2(p[0])
        offset = p[1:]
    elif len(p) == 6:
        R = rotation3(p[:3])
        offset = p[3:]
    else:
        raise ShapeError(f"Rigid parameter vector must have length 3 or 6, got {len(p)}")
    if SD is not None:
        SD = np.asarray(SD, dtype=np.float64)
        R = np.linalg.solve(SD, R @ SD)
    return AffineTransform(R, offset)


def rigid2p(tform: AffineTransform, SD: Optional[NDArray] = None) -> NDArray[np.float64]:
    """Inverse of ``p2rigid``."""
    A = tform.matrix
    if SD is not None:
        SD = np.asarray(SD, dtype=np.float64)
        A = SD @ A @ np.linalg.inv(SD)
    return np.concatenate([rotation_parameters(A), tform.offset])


def rigid_matrix_torch(rot: torch.Tensor) -> torch.Tensor:
    """
    Differentiable rotation matrix from 1 (2D) or 3 (3D) parameters.

    The 3D case uses Rodrigues' formula ``I + a K + b K^2`` with a Taylor
    expansion of ``a`` and ``b`` near zero angle, so the gradient is finite
    at the identity.
    """
    if rot.numel() == 1:
        c, s = torch.cos(rot[0]), torch.sin(rot[0])
        return torch.stack([torch.stack([c, -s]), torch.stack([s, c])])

    theta2 = (rot ** 2).sum()
    small = theta2 < 1e-8
    safe2 = torch.where(small, torch.ones_like(theta2), theta2)
    theta = torch.sqrt(safe2)
    a = torch.where(small, 1 - theta2 / 6, torch.sin(theta) / theta)
    b = torch.where(small, 0.5 - theta2 / 24, (1 - torch.cos(theta)) / safe2)
    zero = torch.zeros((), dtype=rot.dtype, device=rot.device)
    K = torch.stack([
        torch.stack([zero, -rot[2], rot[1]]),
        torch.stack([rot[2], zero, -rot[0]]),
        torch.stack([-rot[1], rot[0], zero]),
    ])
    eye = torch.eye(3, dtype=rot.dtype, device=rot.device)
    return eye + a * K + b * (K @ K)
