# -*- coding: utf-8 -*-
"""
Exception and warning types raised by deformable registration.

Structural problems (wrong shapes, wrong deformation mode) are programmer
errors and raise immediately. Numerical non-convergence is never fatal:
the best available answer is returned and a ``ConvergenceWarning`` is
emitted instead.

Classes
-------
- ShapeError: array or knot-grid dimensionality/size mismatch
- InvalidStateError: operation needs an interpolating deformation (or vice versa)
- PreconditionError: inputs violate a documented precondition
- OperationCancelled: a CancellationToken fired during a long solve
- ConvergenceWarning: an iterative solve stopped before its criterion was met
"""

from __future__ import annotations


class ShapeError(ValueError):
    """Array or grid dimensionality/size does not agree with the knot grid."""


class InvalidStateError(RuntimeError):
    """The deformation is in the wrong mode (raw vs. interpolating)."""


class PreconditionError(ValueError):
    """A documented precondition of an operation does not hold."""


class OperationCancelled(RuntimeError):
    """Raised when a cancellation token is triggered mid-computation."""


class ConvergenceWarning(UserWarning):
    """An iterative solver did not reach its stopping criterion."""
