# -*- coding: utf-8 -*-
"""
Tunable constants for the optimization driver.

These are the defaults of the corresponding keyword arguments; pass a
different value to the function instead of editing the module.

Barrier back-off
----------------
BARRIER_INIT : float
    Initial interior-point barrier parameter of each refinement solve.
BARRIER_BACKOFF : float
    Divisor applied to the barrier parameter after a solve that did not
    lower the penalty.
BARRIER_MIN : float
    The back-off loop gives up once the barrier parameter is below this.

Bounds
------
SHIFT_MARGIN : float
    Displacements are bounded by ``maxshift - SHIFT_MARGIN`` so that the
    interpolated mismatch is never sampled beyond its last grid point.

Regularization sweep
--------------------
LAMBDA_GROWTH : float
    Factor between successive λ values in ``auto_lambda``.
MIN_SIGMOID_POINTS : int
    Minimum number of data points for a 4-parameter logistic fit.
SIGMOID_WIDTH_MIN : float
    Lower bound of the logistic width parameter.
"""

BARRIER_INIT = 0.1
BARRIER_BACKOFF = 10.0
BARRIER_MIN = 1e-16

SHIFT_MARGIN = 0.5001

LAMBDA_GROWTH = 2.0
MIN_SIGMOID_POINTS = 4
SIGMOID_WIDTH_MIN = 0.1

# Solver tolerances and iteration caps
DEFORM_TOL = 1e-6
RIGID_TOL = 1e-4
DEFAULT_MAXITER = 500
PIXELWISE_MAXITER = 1000

# Trace used for the stabilizing diagonal when every Q is zero
STABILIZER_FALLBACK = 1.0

# Points evaluated per batch when warping large images
WARP_CHUNK = 1 << 18

# Coordinates this far outside the image still count as inside
EDGE_TOL = 1e-6
