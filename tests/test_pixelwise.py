# -*- coding: utf-8 -*-
"""
Tests for pixelwise refinement against the images.
"""

import numpy as np
import pytest

from deformable_registration import (
    AffinePenalty,
    GridDeformation,
    ShapeError,
    knots_from_size,
    optimize_pixelwise,
    penalty_pixelwise,
)
from deformable_registration.phantoms import gaussian_blob


def _images():
    fixed = gaussian_blob((32, 32), 5.0, (16, 16))
    moving = gaussian_blob((32, 32), 5.0, (17, 16))
    return fixed, moving


class TestPenaltyPixelwise:

    def test_identical_images(self):
        fixed, _ = _images()
        knots = knots_from_size(fixed.shape, (3, 3))
        ap = AffinePenalty(knots, lam=1e-3)
        assert penalty_pixelwise(np.zeros((2, 3, 3)), knots, ap, fixed, fixed) < 1e-20
        print("✓ Zero displacement on identical images has zero penalty")

    def test_true_shift(self):
        fixed, moving = _images()
        knots = knots_from_size(fixed.shape, (3, 3))
        ap = AffinePenalty(knots, lam=1e-3)
        U = np.zeros((2, 3, 3))
        p0 = penalty_pixelwise(U, knots, ap, fixed, moving)
        U[0] = 1.0
        p1 = penalty_pixelwise(U, knots, ap, fixed, moving)
        assert p0 > 0
        assert p1 < 1e-10
        print(f"✓ Penalty drops from {p0:.2e} to {p1:.2e} at the true shift")

    def test_nan_pixels_ignored(self):
        fixed, moving = _images()
        knots = knots_from_size(fixed.shape, (3, 3))
        ap = AffinePenalty(knots, lam=1e-3)
        fixed = fixed.copy()
        fixed[0, :] = np.nan
        U = np.zeros((2, 3, 3))
        U[0] = 1.0
        assert np.isfinite(penalty_pixelwise(U, knots, ap, fixed, moving))
        print("✓ NaN pixels are excluded")

    def test_dimension_check(self):
        fixed, moving = _images()
        knots = knots_from_size((32, 32, 32), (2, 2, 2))
        ap = AffinePenalty(knots, lam=1e-3)
        with pytest.raises(ShapeError):
            penalty_pixelwise(np.zeros((3, 2, 2, 2)), knots, ap, fixed, moving)
        print("✓ Knot grid and image dimensionality must agree")


class TestOptimizePixelwise:

    def test_recovers_shift(self):
        fixed, moving = _images()
        knots = knots_from_size(fixed.shape, (3, 3))
        ap = AffinePenalty(knots, lam=1e-3)
        phi0 = GridDeformation(np.zeros((2, 3, 3)), knots)
        phi, p, p0 = optimize_pixelwise(phi0, ap, fixed, moving, stepsize=0.1)
        assert phi.is_interpolating
        assert np.isclose(p0, penalty_pixelwise(phi0.u, knots, ap, fixed, moving))
        assert p < 0.2 * p0
        assert phi.u[0, 1, 1] > 0.5
        assert np.isclose(p, penalty_pixelwise(phi.u, knots, ap, fixed, moving))
        print(f"✓ Pixelwise descent: {p0:.3e} -> {p:.3e}, center shift {phi.u[0, 1, 1]:.2f}")
