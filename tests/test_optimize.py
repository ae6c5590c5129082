# -*- coding: utf-8 -*-
"""
Tests for the optimization driver.

Covers the matrix-free initial-guess solve, bounded refinement with
barrier back-off, the λ sweep and the sigmoid fit.
"""

import numpy as np
import pytest

from deformable_registration import (
    AffinePenalty,
    AffineQHessian,
    AutoLambdaResult,
    GridDeformation,
    MismatchData,
    PreconditionError,
    ShapeError,
    auto_lambda,
    fit_sigmoid,
    fixed_lambda,
    initial_deformation,
    knots_from_size,
    optimize_deformation,
    quadratic_mismatch,
    total_penalty,
    uclamp,
)
import deformable_registration.optimize as optimize_module
from deformable_registration.constants import BARRIER_BACKOFF, BARRIER_INIT, BARRIER_MIN
from deformable_registration.optimize import prep_b, sigmoid
from deformable_registration.phantoms import random_quadratic_fits


def _problem(gridsize=(3, 3), maxshift=(3, 3), lam=0.1, seed=0):
    knots = knots_from_size((20, 20), gridsize)
    cs, Qs = random_quadratic_fits(gridsize, maxshift, seed=seed)
    mmis = quadratic_mismatch(cs, Qs, maxshift)
    ap = AffinePenalty(knots, lam=lam)
    return knots, cs, Qs, mmis, ap


# =============================================================================
# Initial guess
# =============================================================================

class TestInitialDeformation:
    """Conjugate-gradient solve with the matrix-free Hessian."""

    def test_prep_b(self):
        cs = np.arange(12, dtype=np.float64).reshape(2, 3, 2)
        Qs = np.broadcast_to(np.diag([1.0, 2.0]), (2, 3, 2, 2))
        b = prep_b(cs, Qs)
        assert b.shape == (12,)
        np.testing.assert_allclose(b[:4], [0, 2, 2, 6])
        print("✓ b[i] = Qs[i] cs[i], block-major")

    def test_operator(self):
        knots, cs, Qs, mmis, ap = _problem()
        P = AffineQHessian(ap, Qs)
        assert P.dimension() == 18
        assert P.shape == (18, 18)
        H = P.to_dense()
        np.testing.assert_allclose(H, H.T, atol=1e-12)
        assert np.all(np.linalg.eigvalsh(H) > 0)
        x = np.random.default_rng(1).normal(size=18)
        np.testing.assert_allclose(P.as_linear_operator() @ x, H @ x, atol=1e-12)
        print("✓ AffineQHessian is symmetric positive definite")

    def test_cg_matches_dense_solve(self):
        knots, cs, Qs, mmis, ap = _problem(lam=0.5)
        u0, converged = initial_deformation(ap, cs, Qs)
        assert converged
        H = AffineQHessian(ap, Qs).to_dense()
        x = np.linalg.solve(H, prep_b(cs, Qs))
        expected = np.moveaxis(x.reshape(3, 3, 2), -1, 0)
        np.testing.assert_allclose(u0, expected, rtol=1e-3, atol=1e-4)
        print("✓ CG solution matches a dense solve")

    def test_zero_lambda_recovers_centers(self):
        knots = knots_from_size((20, 30), (3, 4))
        rng = np.random.default_rng(2)
        cs = rng.uniform(-2, 2, (3, 4, 2))
        Qs = np.broadcast_to(np.diag([1.0, 2.0]), (3, 4, 2, 2)).copy()
        ap = AffinePenalty(knots, lam=0.0)
        u0, converged = initial_deformation(ap, cs, Qs)
        assert converged
        assert u0.shape == (2, 3, 4)
        np.testing.assert_allclose(np.moveaxis(u0, 0, -1), cs, atol=1e-3)
        print("✓ With λ = 0 the initial guess is the per-block minimum")

    def test_large_lambda_is_nearly_affine(self):
        knots, cs, Qs, mmis, ap = _problem(lam=1e4)
        u0, _ = initial_deformation(ap, cs, Qs)
        uc = np.moveaxis(cs, -1, 0)
        assert ap.penalty(u0, lam=1.0) < 0.01 * ap.penalty(uc, lam=1.0)
        print("✓ Large λ pulls the initial guess toward an affine field")

    def test_zero_fits_use_fallback(self):
        knots = knots_from_size((10, 10), (2, 2))
        ap = AffinePenalty(knots, lam=0.0)
        P = AffineQHessian(ap, np.zeros((2, 2, 2, 2)))
        assert P.stabilizer > 0
        np.testing.assert_allclose(P.apply(np.ones(8)), P.stabilizer * np.ones(8))
        print("✓ All-zero fits still give a positive definite operator")

    def test_shape_errors(self):
        knots, cs, Qs, mmis, ap = _problem()
        with pytest.raises(ShapeError):
            initial_deformation(ap, cs[:2], Qs)
        with pytest.raises(ShapeError):
            initial_deformation(ap, cs, Qs[..., :1])
        print("✓ Fits must match the knot grid")


class TestUclamp:

    def test_bounds(self):
        u = np.stack([np.linspace(-5, 5, 9).reshape(3, 3), np.full((3, 3), 10.0)])
        uc = uclamp(u, (3, 2))
        assert np.all(np.abs(uc[0]) <= 3 - 0.5001)
        assert np.all(uc[1] == 2 - 0.5001)
        np.testing.assert_array_equal(uc[0, 1, 1], 0.0)
        assert u[1, 0, 0] == 10.0
        print("✓ uclamp keeps displacements strictly inside the shift bounds")


# =============================================================================
# Refinement
# =============================================================================

class TestRefinement:
    """optimize_deformation and fixed_lambda."""

    def test_optimize_does_not_worsen(self):
        knots, cs, Qs, mmis, ap = _problem()
        phi0 = GridDeformation(np.zeros((2, 3, 3)), knots)
        phi, fval, fval0 = optimize_deformation(phi0, ap, mmis)
        assert np.isclose(fval0, total_penalty(phi0, ap, mmis))
        assert fval <= fval0
        assert np.isclose(fval, total_penalty(phi, ap, mmis), rtol=1e-8)
        assert np.all(np.abs(phi.u) <= 3 - 0.5001 + 1e-12)
        print(f"✓ Refinement lowered the penalty {fval0:.4f} -> {fval:.4f}")

    def test_infinite_start_raises(self):
        knots = knots_from_size((10, 10), (2, 2))
        ap = AffinePenalty(knots, lam=1.0)
        mmis = MismatchData(np.ones((2, 2, 3, 3)), np.zeros((2, 2, 3, 3)))
        with pytest.raises(PreconditionError):
            optimize_deformation(GridDeformation(np.zeros((2, 2, 2)), knots), ap, mmis)
        print("✓ A non-finite starting penalty is rejected")

    def test_grid_mismatch(self):
        knots, cs, Qs, mmis, ap = _problem()
        phi = GridDeformation(np.zeros((2, 2, 2)), (20, 20))
        with pytest.raises(ShapeError):
            optimize_deformation(phi, ap, mmis)
        print("✓ Deformation and mismatch data must share a grid")

    def test_fixed_lambda_monotone(self):
        for lam in (0.01, 1.0):
            knots, cs, Qs, mmis, ap = _problem(lam=lam, seed=3)
            u0, _ = initial_deformation(ap, cs, Qs)
            start = GridDeformation(uclamp(u0, mmis.maxshift), knots)
            p_start = total_penalty(start, ap, mmis)
            phi, penalty = fixed_lambda(cs, Qs, knots, ap, mmis)
            assert penalty <= p_start + 1e-12
            assert np.isclose(penalty, total_penalty(phi, ap, mmis), rtol=1e-8)
            print(f"✓ λ={lam}: fixed_lambda penalty {penalty:.5f} <= initial {p_start:.5f}")

    def test_fixed_lambda_explicit_lambda(self):
        knots, cs, Qs, mmis, ap = _problem(lam=1.0, seed=4)
        phi, penalty = fixed_lambda(cs, Qs, knots, ap, mmis, lam=0.05)
        assert ap.lam == 1.0
        assert np.isclose(penalty, total_penalty(phi, ap, mmis, lam=0.05), rtol=1e-8)
        print("✓ fixed_lambda uses an explicit λ without touching the penalty object")


class TestBarrierBackoff:
    """Retrying refinement with a smaller barrier parameter."""

    def _record(self, monkeypatch, worse_times):
        barriers = []

        def fake(phi, ap, mmis, **kwargs):
            barriers.append(kwargs["barrier_init"])
            phi_new, fval, fval0 = optimize_deformation(phi, ap, mmis, **kwargs)
            if len(barriers) <= worse_times:
                return phi_new, fval0 + 1.0, fval0
            return phi_new, fval, fval0

        monkeypatch.setattr(optimize_module, "optimize_deformation", fake)
        return barriers

    def test_retry_after_no_improvement(self, monkeypatch):
        barriers = self._record(monkeypatch, worse_times=1)
        knots, cs, Qs, mmis, ap = _problem(seed=5)
        phi, penalty = fixed_lambda(cs, Qs, knots, ap, mmis, maxiter=5)
        assert barriers == pytest.approx([BARRIER_INIT, BARRIER_INIT / BARRIER_BACKOFF])
        assert np.isclose(penalty, total_penalty(phi, ap, mmis), rtol=1e-8)
        print(f"✓ Barrier parameters tried: {barriers}")

    def test_gives_up_below_minimum(self, monkeypatch):
        barriers = self._record(monkeypatch, worse_times=100)
        knots, cs, Qs, mmis, ap = _problem(seed=5)
        fixed_lambda(cs, Qs, knots, ap, mmis, maxiter=2)
        assert all(b > BARRIER_MIN for b in barriers)
        assert barriers[-1] / BARRIER_BACKOFF <= BARRIER_MIN
        np.testing.assert_allclose(np.array(barriers[:-1]) / np.array(barriers[1:]), BARRIER_BACKOFF)
        print(f"✓ Back-off stops after {len(barriers)} attempts")


# =============================================================================
# Automatic λ
# =============================================================================

class TestSigmoid:
    """Logistic fit used to pick λ."""

    def test_recovers_parameters(self):
        i = np.arange(1, 21)
        data = sigmoid(i, 1.0, 5.0, 10.0, 1.5)
        fit = fit_sigmoid(data)
        assert abs(fit.bottom - 1.0) < 0.1
        assert abs(fit.top - 5.0) < 0.1
        assert abs(fit.center - 10.0) < 0.2
        assert abs(fit.width - 1.5) < 0.2
        assert fit.value >= 0
        print(f"✓ Fit recovered center={fit.center:.2f}, width={fit.width:.2f}")

    def test_too_few_points(self):
        with pytest.raises(PreconditionError):
            fit_sigmoid([1.0, 2.0, 3.0])
        print("✓ Fewer than 4 points raise PreconditionError")

    def test_constant_data(self):
        fit = fit_sigmoid(np.full(6, 2.0))
        assert np.isfinite(fit.value)
        assert 1 <= fit.center <= 6
        print("✓ Constant data do not break the fit")

    def test_sigmoid_midpoint(self):
        assert np.isclose(sigmoid(3.0, 1.0, 3.0, 3.0, 0.5), 2.0)
        print("✓ Sigmoid passes through the midpoint at its center")


class TestAutoLambda:
    """λ sweep."""

    def test_too_few_rounds(self):
        knots, cs, Qs, mmis, ap = _problem(seed=5)
        # λ = 1, 2, 4: three rounds
        with pytest.raises(PreconditionError):
            auto_lambda(cs, Qs, knots, ap, mmis, 1.0, 5.0)
        print("✓ Three λ values are too few for the sigmoid fit")

    def test_sweep(self):
        knots, cs, Qs, mmis, ap = _problem(seed=6)
        lam_min, lam_max = 0.01, 1.0
        result = auto_lambda(cs, Qs, knots, ap, mmis, lam_min, lam_max)
        assert isinstance(result, AutoLambdaResult)
        assert len(result.datapenalty) == 7
        np.testing.assert_allclose(result.lambdas, 0.01 * 2.0 ** np.arange(7))
        assert lam_min <= result.lam <= lam_max
        assert result.quality >= 0
        assert 1 <= result.index <= 7
        assert result.lam == result.lambdas[result.index - 1]
        assert np.isclose(result.penalty, total_penalty(result.phi, ap, mmis, lam=result.lam),
                          rtol=1e-8)
        phi, penalty, lam, datapenalty, quality = result
        assert phi is result.phi and lam == result.lam
        assert ap.lam == 0.1
        print(f"✓ auto_lambda chose λ={lam:.3g}, quality={quality:.3g}")
