"""Torch-LKF: Linear Kalman filtering with an optional control input, in PyTorch.

torch-lkf implements the discrete-time linear Kalman filter as a small stateful
estimator: a filter is built once from a fixed linear model ``(F, H, Q, R[, B])``
and an initial estimate ``(x, P)``, then each call to
:meth:`~torch_lkf.LinearFilter.run` consumes one measurement (and one control
input) and advances the estimate by one time step.

Key features
------------
- **Predict/update recursion** over the ``(x, P)`` pair, with an optional known
  control term ``B u`` added to the predicted state.
- **Fail-fast inversion**: a non-invertible innovation covariance raises
  :class:`~torch_lkf.InverseError` and leaves the estimate untouched.
- **Shape checks at the boundary**: shapes are validated at construction and at
  each call entry, raising :class:`~torch_lkf.ShapeMismatch` before any arithmetic.
- **Diagnostics**: the innovation, its covariance and its inverse can be returned
  for residual-based outlier rejection.
- **Independent streams**: the estimate may carry leading batch dimensions, all
  sharing the same model. Runs on CPU or GPU, in float32 or float64.

Getting started
---------------
The core API consists of:
- :class:`~torch_lkf.LinearFilter` with :meth:`~torch_lkf.LinearFilter.run`,
  :meth:`~torch_lkf.LinearFilter.set_x` and :meth:`~torch_lkf.LinearFilter.set_p`,
  plus the stateless stages :meth:`~torch_lkf.LinearFilter.predict`,
  :meth:`~torch_lkf.LinearFilter.project` and :meth:`~torch_lkf.LinearFilter.update`.
- :class:`~torch_lkf.ControlledLinearFilter`, which requires a control input at each step.
- :class:`~torch_lkf.GaussianState` and :class:`~torch_lkf.Innovation` value types.

:mod:`torch_lkf.models` builds standard constant velocity / acceleration models.

Notes on shapes
---------------
torch-lkf uses column vectors. State, measurement and control vectors must have
shape ``(..., dim, 1)``.
"""

from .errors import CovarianceError, InverseError, LinearFilterError, ShapeMismatch
from .linear_filter import ControlledLinearFilter, GaussianState, Innovation, LinearFilter

__all__ = [
    "ControlledLinearFilter",
    "CovarianceError",
    "GaussianState",
    "Innovation",
    "InverseError",
    "LinearFilter",
    "LinearFilterError",
    "ShapeMismatch",
]
__version__ = "0.1.0"
