# -*- coding: utf-8 -*-
"""
Tests for the solver interfaces and cancellation.
"""

import numpy as np
import pytest
import torch

from deformable_registration import (
    CancellationToken,
    OperationCancelled,
    PreconditionError,
    TrustConstrSolver,
    fixed_lambda,
    torch_gradient,
)
from deformable_registration.solvers import OPTIMAL, GradOnlyEvaluator
from deformable_registration.penalty import AffinePenalty, quadratic_mismatch
from deformable_registration.deformation import knots_from_size
from deformable_registration.phantoms import random_quadratic_fits


class Quadratic(GradOnlyEvaluator):
    """Σ (x - a)²"""

    def __init__(self, a):
        self.a = np.asarray(a, dtype=np.float64)

    def eval_f(self, x):
        return float(np.sum((x - self.a) ** 2))

    def eval_grad_f(self, x):
        return 2 * (x - self.a)


class TestCancellationToken:

    def test_flag(self):
        token = CancellationToken()
        assert not token.cancelled
        token.raise_if_cancelled()
        token.cancel()
        assert token.cancelled
        with pytest.raises(OperationCancelled):
            token.raise_if_cancelled()
        print("✓ CancellationToken flips once and stays cancelled")


class TestTorchGradient:

    def test_sum_of_squares(self):
        grad = torch_gradient(lambda x: (x ** 2).sum())
        x = np.array([[1.0, -2.0], [0.5, 3.0]])
        np.testing.assert_allclose(grad(x), 2 * x)
        print("✓ Gradient of Σx² is 2x")

    def test_constant(self):
        grad = torch_gradient(lambda x: torch.tensor(np.inf, dtype=torch.float64))
        np.testing.assert_array_equal(grad(np.ones(3)), 0)
        print("✓ Constant functions have zero gradient")


class TestTrustConstrSolver:

    def test_bounded_quadratic(self):
        solver = TrustConstrSolver()
        solver.load_problem(2, -1.0, 1.0, Quadratic([0.5, 3.0]))
        solver.set_warm_start([0.0, 0.0])
        solver.optimize()
        assert solver.get_status() == OPTIMAL
        np.testing.assert_allclose(solver.get_solution(), [0.5, 1.0], atol=1e-3)
        assert np.isclose(solver.get_objective_value(), 4.0, atol=1e-2)
        print(f"✓ Bounded minimum found at {solver.get_solution()}")

    def test_not_worse_than_start(self):
        solver = TrustConstrSolver(maxiter=2)
        solver.load_problem(3, -2.0, 2.0, Quadratic([1.0, -1.0, 0.5]))
        solver.set_warm_start([0.9, -0.9, 0.4])
        solver.optimize()
        assert solver.get_objective_value() <= 0.03 + 1e-12
        print("✓ The returned point is never worse than the warm start")

    def test_requires_problem(self):
        solver = TrustConstrSolver()
        with pytest.raises(PreconditionError):
            solver.optimize()
        print("✓ optimize() before load_problem raises PreconditionError")

    def test_unsupported_feature(self):
        with pytest.raises(PreconditionError):
            Quadratic([0.0]).initialize(["Hess"])
        print("✓ Evaluators reject features they do not provide")

    def test_cancel(self):
        token = CancellationToken()
        token.cancel()
        solver = TrustConstrSolver(token=token)
        solver.load_problem(2, -1.0, 1.0, Quadratic([0.5, 0.2]))
        solver.set_warm_start([0.0, 0.0])
        with pytest.raises(OperationCancelled):
            solver.optimize()
        print("✓ A cancelled token aborts the solve")


class TestDriverCancellation:

    def test_fixed_lambda(self):
        knots = knots_from_size((20, 20), (3, 3))
        cs, Qs = random_quadratic_fits((3, 3), (3, 3), seed=0)
        mmis = quadratic_mismatch(cs, Qs, (3, 3))
        ap = AffinePenalty(knots, lam=0.1)
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            fixed_lambda(cs, Qs, knots, ap, mmis, token=token)
        print("✓ fixed_lambda stops on a cancelled token")
