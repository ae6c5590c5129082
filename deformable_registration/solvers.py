# -*- coding: utf-8 -*-
"""
Solver interfaces used by the optimization driver.

The driver never talks to a particular optimizer directly. Objectives are
exposed through ``GradOnlyEvaluator`` (value and gradient callbacks for a
box-constrained problem) and solved through the ``NLPSolver`` contract:
load a problem, set a warm start, optimize, then query the solution, the
objective value and the status.

``TrustConstrSolver`` implements the contract with scipy's interior-point
``trust-constr`` method; its barrier parameter plays the role of the
``mu_init`` back-off knob in ``fixed_lambda``.

Classes
-------
- CancellationToken: Cooperative cancellation for long solves
- GradOnlyEvaluator: Objective + gradient for a bounds-only problem
- NLPSolver: Abstract solver contract
- TrustConstrSolver: scipy.optimize implementation

Functions
---------
- torch_gradient: Gradient provider built on torch autograd
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple

import numpy as np
import torch
from numpy.typing import NDArray
from scipy.optimize import BFGS, Bounds, minimize

from .constants import BARRIER_INIT, DEFAULT_MAXITER, DEFORM_TOL
from .errors import OperationCancelled, PreconditionError

OPTIMAL = "Optimal"
NOT_OPTIMAL = "NotOptimal"
CANCELLED = "Cancelled"


class CancellationToken:
    """
    Thread-safe flag checked between optimizer iterations and sweep rounds.

    Examples
    --------
    >>> token = CancellationToken()
    >>> # from another thread:
    >>> token.cancel()
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled("Operation was cancelled")


def torch_gradient(
    fn: Callable[[torch.Tensor], torch.Tensor],
) -> Callable[[NDArray], NDArray[np.float64]]:
    """
    Gradient provider: turn a scalar torch function into a gradient function.

    Parameters
    ----------
    fn : callable
        Maps a float64 tensor to a scalar tensor.

    Returns
    -------
    callable
        ``grad(x)`` evaluating ``∇fn`` at a numpy array ``x``; the result has
        the shape of ``x``. Where ``fn`` does not depend on its input (e.g. a
        constant ``inf`` penalty) the gradient is zero.
    """
    def grad(x: NDArray) -> NDArray[np.float64]:
        xt = torch.as_tensor(np.asarray(x, dtype=np.float64)).clone().requires_grad_(True)
        with torch.enable_grad():
            val = fn(xt)
            if not val.requires_grad:
                return np.zeros(xt.shape)
            (g,) = torch.autograd.grad(val, xt, allow_unused=True)
        if g is None:
            return np.zeros(xt.shape)
        return g.detach().cpu().numpy()
    return grad


class GradOnlyEvaluator(ABC):
    """
    Objective of a box-constrained problem that provides first derivatives.

    Subclasses implement ``eval_f`` and ``eval_grad_f``; Hessians are left to
    the solver's quasi-Newton approximation and there are no constraint
    functions besides the bounds.
    """

    features = ("Grad", "Jac")

    def initialize(self, requested_features) -> None:
        for feat in requested_features:
            if feat not in self.features:
                raise PreconditionError(f"Unsupported feature {feat}")

    @abstractmethod
    def eval_f(self, x: NDArray) -> float:
        pass

    @abstractmethod
    def eval_grad_f(self, x: NDArray) -> NDArray[np.float64]:
        pass


class NLPSolver(ABC):
    """Contract for nonlinear solvers with box constraints."""

    @abstractmethod
    def load_problem(
        self,
        n: int,
        lb: NDArray,
        ub: NDArray,
        evaluator: GradOnlyEvaluator,
    ) -> None:
        pass

    @abstractmethod
    def set_warm_start(self, x0: NDArray) -> None:
        pass

    @abstractmethod
    def optimize(self) -> None:
        pass

    @abstractmethod
    def get_solution(self) -> NDArray[np.float64]:
        pass

    @abstractmethod
    def get_objective_value(self) -> float:
        pass

    @abstractmethod
    def get_status(self) -> str:
        pass


class TrustConstrSolver(NLPSolver):
    """
    ``scipy.optimize.minimize(method='trust-constr')`` behind the NLPSolver contract.

    The best in-bounds point seen during the solve is kept, so the returned
    objective never exceeds the value at the warm start.

    Parameters
    ----------
    tol : float
        Gradient and step tolerance.
    maxiter : int
        Iteration cap; reaching it yields status ``NotOptimal``.
    barrier_init : float
        Initial barrier parameter of the interior-point method.
    verbose : int
        scipy verbosity level (0-3).
    token : CancellationToken, optional
        Checked after every iteration.
    """

    def __init__(
        self,
        tol: float = DEFORM_TOL,
        maxiter: int = DEFAULT_MAXITER,
        barrier_init: float = BARRIER_INIT,
        verbose: int = 0,
        token: Optional[CancellationToken] = None,
    ):
        self.tol = tol
        self.maxiter = maxiter
        self.barrier_init = barrier_init
        self.verbose = verbose
        self.token = token
        self._problem = None
        self._x0 = None
        self._best: Tuple[float, Optional[NDArray]] = (np.inf, None)
        self._status = None

    def load_problem(self, n, lb, ub, evaluator) -> None:
        lb = np.broadcast_to(np.asarray(lb, dtype=np.float64), (n,)).copy()
        ub = np.broadcast_to(np.asarray(ub, dtype=np.float64), (n,)).copy()
        evaluator.initialize(["Grad"])
        self._problem = (n, lb, ub, evaluator)

    def set_warm_start(self, x0) -> None:
        self._x0 = np.asarray(x0, dtype=np.float64).copy()

    def _record(self, x: NDArray, f: float) -> None:
        _, lb, ub, _ = self._problem
        if np.isfinite(f) and f < self._best[0] and np.all(x >= lb) and np.all(x <= ub):
            self._best = (f, x.copy())

    def optimize(self) -> None:
        if self._problem is None or self._x0 is None:
            raise PreconditionError("load_problem and set_warm_start must be called before optimize")
        n, lb, ub, evaluator = self._problem
        self._best = (np.inf, None)

        def fun(x):
            f = float(evaluator.eval_f(x))
            self._record(x, f)
            return f

        def callback(xk, state):
            return self.token is not None and self.token.cancelled

        result = minimize(
            fun, self._x0, jac=evaluator.eval_grad_f, hess=BFGS(),
            method='trust-constr', bounds=Bounds(lb, ub),
            callback=callback,
            options={
                'gtol': self.tol,
                'xtol': self.tol,
                'barrier_tol': self.tol,
                'maxiter': self.maxiter,
                'initial_barrier_parameter': self.barrier_init,
                'verbose': self.verbose,
            },
        )
        self._record(np.asarray(result.x, dtype=np.float64), float(result.fun))
        if self.token is not None and self.token.cancelled:
            self._status = CANCELLED
            raise OperationCancelled("Optimization was cancelled")
        self._status = OPTIMAL if result.status in (1, 2) else NOT_OPTIMAL
        if self._best[1] is None:
            self._best = (float(result.fun), np.clip(result.x, lb, ub))

    def get_solution(self) -> NDArray[np.float64]:
        return self._best[1]

    def get_objective_value(self) -> float:
        return self._best[0]

    def get_status(self) -> str:
        return self._status
