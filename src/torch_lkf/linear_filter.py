from __future__ import annotations

import contextlib
import copy
import dataclasses
import logging
from typing import Literal, cast, overload

import torch
import torch.linalg

from .errors import CovarianceError, InverseError, ShapeMismatch

logger = logging.getLogger(__name__)

# Note on inversion:
# S is inverted explicitly (rather than solved with cholesky) because S^{-1} is part of the
# innovation diagnostics and is re-used for mahalanobis distances and likelihoods.
# Singularity is reported by the LU factorization of `torch.linalg.inv_ex`.

# Tolerance (relative to the largest absolute entry) of the optional covariance checks
_COVARIANCE_RTOL = 1e-5


if hasattr(torch._tensor_str, "printoptions"):  # noqa: SLF001
    printoptions = torch._tensor_str.printoptions  # noqa: SLF001
else:

    @contextlib.contextmanager
    def printoptions(**kwargs):
        """Change pytorch printoptions temporarily. From the future of pytorch."""
        old_printoptions = torch._tensor_str.PRINT_OPTS  # noqa: SLF001
        torch.set_printoptions(**kwargs)
        try:
            yield
        finally:
            torch._tensor_str.PRINT_OPTS = old_printoptions  # noqa: SLF001


@dataclasses.dataclass
class GaussianState:
    """Gaussian state x ~ N(mean, covariance).

    Vectors are **column vectors** with shape ``(..., dim, 1)``. Leading dimensions ``...`` are
    batch dimensions (independent estimation streams).

    An optional precision matrix (inverse covariance) can be stored. `LinearFilter.project`
    always fills it, so that the update step and the likelihood computations share one inverse.

    Attributes:
        mean: Mean of the distribution.
            Shape: ``(..., dim, 1)``
        covariance: Covariance matrix of the distribution.
            Shape: ``(..., dim, dim)``
        precision: Optional precision matrix (inverse covariance).
            Shape: ``(..., dim, dim)``
            If ``None``, it is computed lazily by `mahalanobis_squared`.
    """

    mean: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor | None = None

    def clone(self) -> GaussianState:
        """Return a deep copy of the state."""
        return GaussianState(
            self.mean.clone(), self.covariance.clone(), self.precision.clone() if self.precision is not None else None
        )

    def __getitem__(self, idx) -> GaussianState:
        """Index/slice the leading batch dimensions (e.g. to extract one estimation stream)."""
        return GaussianState(
            self.mean[idx], self.covariance[idx], self.precision[idx] if self.precision is not None else None
        )

    @overload
    def to(self, dtype: torch.dtype) -> GaussianState: ...

    @overload
    def to(self, device: torch.device) -> GaussianState: ...

    def to(self, fmt):
        """Convert a GaussianState to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the state to.

        Returns:
            GaussianState: The GaussianState with the right format
        """
        return GaussianState(
            self.mean.to(fmt),
            self.covariance.to(fmt),
            self.precision.to(fmt) if self.precision is not None else None,
        )

    def mahalanobis_squared(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the squared Mahalanobis distance to a measure: (x - μ)ᵀ Σ^{-1} (x - μ).

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``, broadcastable with the state.

        Returns:
            torch.Tensor: Squared Mahalanobis distance for broadcasted measures & states
                Shape: ``(...)``
        """
        diff = self.mean - measure
        if self.precision is None:
            self.precision = torch.linalg.inv(self.covariance)
        return (diff.mT @ self.precision @ diff)[..., 0, 0]

    def mahalanobis(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the Mahalanobis distance to a measure (square root of `mahalanobis_squared`)."""
        return self.mahalanobis_squared(measure).sqrt()

    def log_likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the log-likelihood of the given measure under the Gaussian distribution.

        For dimension ``dim``:

            log p(x) = -1/2 * ( dim*log(2π) + log|Σ| + MAHA^2 )

        Args:
            measure (torch.Tensor): Measure(s) to evaluate (column vector).
                Shape: ``(..., dim, 1)``, broadcastable with the state.

        Returns:
            torch.Tensor: Log-likelihood for broadcasted measures & states
                Shape: ``(...)``
        """
        maha_2 = self.mahalanobis_squared(measure)
        log_det = torch.log(torch.det(self.covariance))
        pi = torch.tensor(torch.pi, device=log_det.device, dtype=log_det.dtype)
        dim = self.covariance.shape[-1]
        return -0.5 * (dim * torch.log(2 * pi) + log_det + maha_2)

    def likelihood(self, measure: torch.Tensor) -> torch.Tensor:
        """Compute the likelihood of the given measure (exponential of `log_likelihood`)."""
        return self.log_likelihood(measure).exp()


@dataclasses.dataclass(frozen=True)
class Innovation:
    """Read-only diagnostics of one update step.

    The innovation y = z - H x' is expected to follow N(0, S). Consumers typically gate
    outliers on the normalized innovation squared ``yᵀ S^{-1} y`` (see `mahalanobis_squared`).

    Attributes:
        residual: Innovation ``y``.
            Shape: ``(..., dim_z, 1)``
        covariance: Innovation covariance ``S``.
            Shape: ``(..., dim_z, dim_z)``
        precision: Inverse innovation covariance ``S^{-1}``.
            Shape: ``(..., dim_z, dim_z)``
    """

    residual: torch.Tensor
    covariance: torch.Tensor
    precision: torch.Tensor

    def _as_gaussian(self) -> GaussianState:
        # Evaluating N(0, S) at y is evaluating N(y, S) at 0
        return GaussianState(self.residual, self.covariance, self.precision)

    def mahalanobis_squared(self) -> torch.Tensor:
        """Normalized innovation squared: yᵀ S^{-1} y.

        Returns:
            torch.Tensor: NIS for each estimation stream.
                Shape: ``(...)``
        """
        return self._as_gaussian().mahalanobis_squared(torch.zeros_like(self.residual))

    def mahalanobis(self) -> torch.Tensor:
        """Square root of `mahalanobis_squared`."""
        return self.mahalanobis_squared().sqrt()

    def log_likelihood(self) -> torch.Tensor:
        """Log-likelihood of the innovation under N(0, S)."""
        return self._as_gaussian().log_likelihood(torch.zeros_like(self.residual))


def _check_model_matrix(name: str, matrix: torch.Tensor, shape: tuple[int, int]) -> None:
    if matrix.shape != shape:
        raise ShapeMismatch(f"{name} should have shape {shape}, got {tuple(matrix.shape)}")


def _check_covariance(name: str, matrix: torch.Tensor) -> None:
    """Check that a (batch of) covariance matrix is symmetric positive semi-definite."""
    atol = _COVARIANCE_RTOL * max(1.0, matrix.abs().max().item())
    if not torch.allclose(matrix, matrix.mT, rtol=0.0, atol=atol):
        raise CovarianceError(f"{name} is not symmetric")
    if (torch.linalg.eigvalsh(matrix) < -atol).any():
        raise CovarianceError(f"{name} is not positive semi-definite")


class LinearFilter:
    """Discrete-time linear Kalman filter holding its own state estimate.

    The filter estimates the hidden state of a linear dynamical system under Gaussian noise:

        x_k = F x_{k-1} [+ B u_k] + w_k,   w_k ~ N(0, Q)
        z_k = H x_k               + v_k,   v_k ~ N(0, R)

    where:
    - ``x_k`` is the hidden state (dimension ``dim_x``),
    - ``z_k`` is the measure (dimension ``dim_z``),
    - ``u_k`` is an optional known control input (dimension ``dim_u``),
    - ``F``, ``Q`` are the transition (process) matrix and process noise covariance,
    - ``H``, ``R`` are the measurement matrix and measurement noise covariance,
    - ``B`` is the optional control matrix.

    The model ``F, H, Q, R, B`` is fixed at construction. Only the estimate ``(x, P)`` evolves,
    either through `run` (one predict/update step per measure) or through `set_x` / `set_p`.

    Stages of the recursion are also exposed as stateless methods (`predict`, `project`, `update`)
    operating on `GaussianState`. They do not validate shapes and do not touch the stored estimate.

    Shape conventions:
    - Vectors are **column vectors** with shape ``(..., dim, 1)``.
    - Model matrices are 2D. The stored estimate may have leading batch dimensions, in which case
      each batch element is an independent estimation stream sharing the same model.

    Numerical notes:
    - The covariance update is the standard ``P = P' - K H P'``. It does not enforce symmetry,
      running in float64 is advised for long or badly conditioned sequences.
    - ``P``, ``Q`` and ``R`` are trusted to be symmetric positive semi-definite unless
      ``check_covariances`` is set.

    Attributes:
        max_condition (float | None): If set, an innovation covariance whose condition number
            exceeds this value is considered non-invertible.
        check_covariances (bool): Validate that ``P``, ``Q`` and ``R`` are symmetric positive
            semi-definite at construction and in `set_p`.
    """

    _REPR_SPLIT_LENGTH = 110
    _title = "Linear Filter"

    def __init__(
        self,
        x: torch.Tensor,
        p: torch.Tensor,
        process_matrix: torch.Tensor,
        measurement_matrix: torch.Tensor,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
        *,
        control_matrix: torch.Tensor | None = None,
        dtype: torch.dtype | None = None,
        max_condition: float | None = None,
        check_covariances=False,
    ) -> None:
        """Constructor.

        Args:
            x (torch.Tensor): Initial state estimate.
                Shape: ``(..., dim_x, 1)``
            p (torch.Tensor): Initial state covariance.
                Shape: ``(..., dim_x, dim_x)``
            process_matrix (torch.Tensor): Transition matrix ``F``.
                Shape: ``(dim_x, dim_x)``
            measurement_matrix (torch.Tensor): Measurement matrix ``H``.
                Shape: ``(dim_z, dim_x)``
            process_noise (torch.Tensor): Process noise covariance ``Q``.
                Shape: ``(dim_x, dim_x)``
            measurement_noise (torch.Tensor): Measurement noise covariance ``R``.
                Shape: ``(dim_z, dim_z)``
            control_matrix (torch.Tensor | None): Optional control matrix ``B``.
                Shape: ``(dim_x, dim_u)``
            dtype (torch.dtype | None): Floating dtype shared by every tensor of the filter.
                Default: dtype of ``process_matrix`` if floating, else torch default dtype.
            max_condition (float | None): Condition number above which ``S`` is not inverted.
                Default: None (only singular ``S`` fails)
            check_covariances (bool): Validate ``P``, ``Q`` and ``R``.
                Default: False

        Raises:
            ShapeMismatch: If shapes are not consistent.
            CovarianceError: If ``check_covariances`` and a covariance is not symmetric PSD.
        """
        process_matrix = torch.as_tensor(process_matrix)
        if dtype is None:
            dtype = process_matrix.dtype if process_matrix.is_floating_point() else torch.get_default_dtype()
        if not dtype.is_floating_point:
            raise TypeError(f"A floating dtype is required, got {dtype}")
        device = process_matrix.device

        # The model is owned by the filter: conversions may return the caller's tensors
        self._process_matrix = process_matrix.to(dtype).clone()
        self._measurement_matrix = torch.as_tensor(measurement_matrix, dtype=dtype, device=device).clone()
        self._process_noise = torch.as_tensor(process_noise, dtype=dtype, device=device).clone()
        self._measurement_noise = torch.as_tensor(measurement_noise, dtype=dtype, device=device).clone()
        self._control_matrix = (
            torch.as_tensor(control_matrix, dtype=dtype, device=device).clone() if control_matrix is not None else None
        )
        self.max_condition = max_condition
        self.check_covariances = check_covariances

        self._check_model()

        self._mean = self._as_state_tensor("x", x, (self.state_dim, 1)).clone()
        self._covariance = self._as_state_tensor("p", p, (self.state_dim, self.state_dim)).clone()
        if self._mean.shape[:-2] != self._covariance.shape[:-2]:
            raise ShapeMismatch(
                f"x and p should share batch dimensions, got {tuple(self._mean.shape[:-2])} "
                f"and {tuple(self._covariance.shape[:-2])}"
            )

        if check_covariances:
            _check_covariance("p", self._covariance)
            _check_covariance("process_noise", self._process_noise)
            _check_covariance("measurement_noise", self._measurement_noise)

        logger.debug(
            "Built %s (dim_x=%d, dim_z=%d, dim_u=%d, batch=%s, dtype=%s)",
            type(self).__name__,
            self.state_dim,
            self.measure_dim,
            self.control_dim,
            tuple(self._mean.shape[:-2]),
            dtype,
        )

    def _check_model(self) -> None:
        shape = self._process_matrix.shape
        if len(shape) != 2 or shape[0] != shape[1]:  # noqa: PLR2004
            raise ShapeMismatch(f"process_matrix should be a square matrix, got {tuple(shape)}")
        dim_x = shape[0]

        if self._measurement_matrix.ndim != 2 or self._measurement_matrix.shape[1] != dim_x:  # noqa: PLR2004
            raise ShapeMismatch(
                f"measurement_matrix should have shape (dim_z, {dim_x}), got {tuple(self._measurement_matrix.shape)}"
            )
        dim_z = self._measurement_matrix.shape[0]

        _check_model_matrix("process_noise", self._process_noise, (dim_x, dim_x))
        _check_model_matrix("measurement_noise", self._measurement_noise, (dim_z, dim_z))

        if self._control_matrix is not None and (
            self._control_matrix.ndim != 2 or self._control_matrix.shape[0] != dim_x  # noqa: PLR2004
        ):
            raise ShapeMismatch(
                f"control_matrix should have shape ({dim_x}, dim_u), got {tuple(self._control_matrix.shape)}"
            )

    def _as_state_tensor(self, name: str, value: torch.Tensor, trailing: tuple[int, int]) -> torch.Tensor:
        value = torch.as_tensor(value, dtype=self.dtype, device=self.device)
        if value.ndim < 2 or value.shape[-2:] != trailing:  # noqa: PLR2004
            expected = f"(..., {trailing[0]}, {trailing[1]})"
            raise ShapeMismatch(f"{name} should have shape {expected}, got {tuple(value.shape)}")
        return value

    def _as_input(self, name: str, value: torch.Tensor, dim: int) -> torch.Tensor:
        """Convert and check a per-call input (measure or control) against the stored estimate."""
        value = self._as_state_tensor(name, value, (dim, 1))
        batch = self._mean.shape[:-2]
        message = f"{name} batch dimensions {tuple(value.shape[:-2])} do not broadcast to {tuple(batch)}"
        try:
            broadcast = torch.broadcast_shapes(value.shape[:-2], batch)
        except RuntimeError as exc:
            raise ShapeMismatch(message) from exc
        if broadcast != batch:
            raise ShapeMismatch(message)
        return value

    def _as_control(self, control: torch.Tensor | None) -> torch.Tensor | None:
        if control is None:
            return None
        if self._control_matrix is None:
            raise ShapeMismatch("A control input was given but the filter has no control matrix")
        return self._as_input("control", control, self.control_dim)

    @property
    def process_matrix(self) -> torch.Tensor:
        """Transition matrix ``F``."""
        return self._process_matrix.clone()

    @property
    def measurement_matrix(self) -> torch.Tensor:
        """Measurement matrix ``H``."""
        return self._measurement_matrix.clone()

    @property
    def process_noise(self) -> torch.Tensor:
        """Process noise covariance ``Q``."""
        return self._process_noise.clone()

    @property
    def measurement_noise(self) -> torch.Tensor:
        """Measurement noise covariance ``R``."""
        return self._measurement_noise.clone()

    @property
    def control_matrix(self) -> torch.Tensor | None:
        """Control matrix ``B`` (None without control model)."""
        return self._control_matrix.clone() if self._control_matrix is not None else None

    @property
    def state_dim(self) -> int:
        """Dimension of the state variable."""
        return self._process_matrix.shape[-1]

    @property
    def measure_dim(self) -> int:
        """Dimension of the measured variable."""
        return self._measurement_matrix.shape[-2]

    @property
    def control_dim(self) -> int:
        """Dimension of the control input (0 without control model)."""
        return self._control_matrix.shape[-1] if self._control_matrix is not None else 0

    @property
    def device(self) -> torch.device:
        """Device of the filter."""
        return self._process_matrix.device

    @property
    def dtype(self) -> torch.dtype:
        """Dtype of the filter."""
        return self._process_matrix.dtype

    @property
    def x(self) -> torch.Tensor:
        """Current state estimate.

        Shape: ``(..., dim_x, 1)``
        """
        return self._mean.clone()

    @property
    def p(self) -> torch.Tensor:
        """Current state covariance.

        Shape: ``(..., dim_x, dim_x)``
        """
        return self._covariance.clone()

    @property
    def state(self) -> GaussianState:
        """Current estimate as a GaussianState (a copy of the stored estimate)."""
        return GaussianState(self._mean.clone(), self._covariance.clone())

    def set_x(self, x: torch.Tensor) -> None:
        """Overwrite the state estimate, bypassing the recursion.

        Args:
            x (torch.Tensor): New state estimate, with the same shape as the current one.
                Shape: ``(..., dim_x, 1)``

        Raises:
            ShapeMismatch: If the shape differs from the current estimate.
        """
        x = self._as_state_tensor("x", x, (self.state_dim, 1))
        if x.shape != self._mean.shape:
            raise ShapeMismatch(f"x should have shape {tuple(self._mean.shape)}, got {tuple(x.shape)}")
        self._mean = x.clone()
        logger.debug("State estimate reinitialized")

    def set_p(self, p: torch.Tensor) -> None:
        """Overwrite the state covariance, bypassing the recursion.

        Args:
            p (torch.Tensor): New state covariance, with the same shape as the current one.
                Shape: ``(..., dim_x, dim_x)``

        Raises:
            ShapeMismatch: If the shape differs from the current covariance.
            CovarianceError: If ``check_covariances`` and ``p`` is not symmetric PSD.
        """
        p = self._as_state_tensor("p", p, (self.state_dim, self.state_dim))
        if p.shape != self._covariance.shape:
            raise ShapeMismatch(f"p should have shape {tuple(self._covariance.shape)}, got {tuple(p.shape)}")
        if self.check_covariances:
            _check_covariance("p", p)
        self._covariance = p.clone()
        logger.debug("State covariance reinitialized")

    def to(self, fmt):
        """Convert the filter (model and estimate) to a specific device or dtype.

        Args:
            fmt (torch.dtype | torch.device): Memory format to send the filter to.

        Returns:
            LinearFilter: A new filter of the same class with the right format
        """
        converted = copy.copy(self)
        for name, value in vars(self).items():
            if isinstance(value, torch.Tensor):
                setattr(converted, name, value.to(fmt))
        return converted

    def predict(self, state: GaussianState, control: torch.Tensor | None = None) -> GaussianState:
        """Compute the predicted (prior) state.

        From x_{k-1} ~ N(mu_{k-1}, P_{k-1}):

            mu_k = F mu_{k-1} [+ B u_k]
            P_k = F P_{k-1} Fᵀ + Q

        The control only shifts the mean, the covariance propagation is the same with or without it.

        Args:
            state (GaussianState): Posterior state at time k-1.
                Shape (mean): ``(..., dim_x, 1)``
                Shape (covariance): ``(..., dim_x, dim_x)``
            control (torch.Tensor | None): Optional control input ``u_k``.
                Shape: ``(..., dim_u, 1)``

        Returns:
            GaussianState: Predicted prior state at time k.

        Raises:
            ShapeMismatch: If a control is given to a filter without control matrix.
        """
        mean = self._process_matrix @ state.mean
        if control is not None:
            if self._control_matrix is None:
                raise ShapeMismatch("A control input was given but the filter has no control matrix")
            mean = mean + self._control_matrix @ control
        covariance = self._process_matrix @ state.covariance @ self._process_matrix.mT + self._process_noise

        return GaussianState(mean, covariance)

    def project(self, state: GaussianState) -> GaussianState:
        """Project a (predicted) state into measurement space.

        From x_k ~ N(mu_k, P_k), it computes the expected measure z_k ~ N(H mu_k, S_k) with

            S_k = H P_k Hᵀ + R

        and stores S_k^{-1} as the precision of the returned state.

        Args:
            state (GaussianState): State to project, typically the result of `predict`.

        Returns:
            GaussianState: Expected measure distribution, with its precision.
                Shape (mean): ``(..., dim_z, 1)``
                Shape (covariance/precision): ``(..., dim_z, dim_z)``

        Raises:
            InverseError: If S is not invertible.
        """
        mean = self._measurement_matrix @ state.mean
        covariance = (
            self._measurement_matrix @ state.covariance @ self._measurement_matrix.mT + self._measurement_noise
        )
        return GaussianState(mean, covariance, self._invert(covariance))

    def _invert(self, matrix: torch.Tensor) -> torch.Tensor:
        inverse, info = torch.linalg.inv_ex(matrix)

        reason = None
        if (info != 0).any():
            reason = "singular matrix"
        elif not torch.isfinite(inverse).all():
            reason = "non-finite inverse"
        elif self.max_condition is not None:
            condition = torch.linalg.cond(matrix).max().item()
            if condition > self.max_condition:
                reason = f"condition number {condition:.3g} above {self.max_condition:.3g}"

        if reason is not None:
            logger.debug("Innovation covariance inversion failed: %s", reason)
            raise InverseError(f"Innovation covariance is not invertible ({reason})")

        return inverse

    def update(
        self, state: GaussianState, measure: torch.Tensor, projection: GaussianState | None = None
    ) -> GaussianState:
        """Update a (predicted) state with a new measure.

        1. Project the state: z_k ~ N(H mu_k, S_k) (skipped if ``projection`` is given).
        2. Kalman gain: K = P_k Hᵀ S_k^{-1}
        3. Innovation: y = z_k - H mu_k
        4. Posterior: mu'_k = mu_k + K y,  P'_k = P_k - K H P_k

        Args:
            state (GaussianState): Prior state, typically the result of `predict`.
            measure (torch.Tensor): Measure ``z_k`` (column vector).
                Shape: ``(..., dim_z, 1)``
            projection (GaussianState | None): Optional precomputed result of `project(state)`.

        Returns:
            GaussianState: Posterior state.

        Raises:
            InverseError: If S is not invertible.
        """
        if projection is None:
            projection = self.project(state)
        precision = projection.precision if projection.precision is not None else self._invert(projection.covariance)

        kalman_gain = state.covariance @ self._measurement_matrix.mT @ precision
        residual = measure - projection.mean

        mean = state.mean + kalman_gain @ residual
        covariance = state.covariance - kalman_gain @ self._measurement_matrix @ state.covariance

        return GaussianState(mean, covariance)

    @overload
    def run(
        self,
        measure: torch.Tensor,
        control: torch.Tensor | None = ...,
        *,
        return_innovation: Literal[False] = ...,
    ) -> tuple[torch.Tensor, torch.Tensor]: ...

    @overload
    def run(
        self,
        measure: torch.Tensor,
        control: torch.Tensor | None = ...,
        *,
        return_innovation: Literal[True],
    ) -> tuple[torch.Tensor, torch.Tensor, Innovation]: ...

    def run(self, measure, control=None, *, return_innovation=False):
        """Advance the estimate by one time step given a new measure.

        It predicts the state with the process model (and the control, if any), then updates it
        with the measure. The stored estimate is replaced by the posterior only if the whole step
        succeeds: on `InverseError`, ``x`` and ``p`` are left untouched.

        Args:
            measure (torch.Tensor): Measure ``z_k`` (column vector).
                Shape: ``(..., dim_z, 1)``, broadcastable to the estimate batch dimensions.
            control (torch.Tensor | None): Control input ``u_k`` (column vector).
                Shape: ``(..., dim_u, 1)``
            return_innovation (bool): Also return the `Innovation` (y, S, S^{-1}) of this step.
                Default: False

        Returns:
            torch.Tensor: Posterior state estimate.
                Shape: ``(..., dim_x, 1)``
            torch.Tensor: Posterior state covariance.
                Shape: ``(..., dim_x, dim_x)``
            Innovation: Only if ``return_innovation``.

        Raises:
            ShapeMismatch: If the measure or the control does not match the filter.
            InverseError: If the innovation covariance is not invertible.
        """
        measure = self._as_input("measure", measure, self.measure_dim)
        control = self._as_control(control)

        predicted = self.predict(GaussianState(self._mean, self._covariance), control)
        projection = self.project(predicted)
        posterior = self.update(predicted, measure, projection)

        self._mean = posterior.mean
        self._covariance = posterior.covariance

        x, p = self._mean.clone(), self._covariance.clone()
        if return_innovation:
            precision = cast(torch.Tensor, projection.precision)  # Always set by `project`
            return x, p, Innovation(measure - projection.mean, projection.covariance, precision)

        return x, p

    def filter(
        self, measures: torch.Tensor, controls: torch.Tensor | None = None, *, return_all=False
    ) -> GaussianState:
        """Run the predict/update recursion over a sequence of measures.

        Measures (and controls) are consumed in order along their first dimension, each one with
        a call to `run`. If a step fails, the error propagates and the stored estimate is the
        posterior of the previous step.

        Args:
            measures (torch.Tensor): Sequence of measures over time.
                Shape: ``(T, ..., dim_z, 1)``
            controls (torch.Tensor | None): Sequence of control inputs, aligned with ``measures``.
                Shape: ``(T, ..., dim_u, 1)``
            return_all (bool): If True, return every posterior state with a leading time dimension.
                If False, only the last one.
                Default: False

        Returns:
            GaussianState: Either the last posterior state, or all the posterior states.
                Shape (mean): ``([T, ]..., dim_x, 1)``
                Shape (covariance): ``([T, ]..., dim_x, dim_x)``
        """
        measures = torch.as_tensor(measures, dtype=self.dtype, device=self.device)
        if controls is not None:
            controls = torch.as_tensor(controls, dtype=self.dtype, device=self.device)
            if controls.shape[:1] != measures.shape[:1]:
                raise ShapeMismatch(
                    f"controls and measures should have the same length, "
                    f"got {tuple(controls.shape[:1])} and {tuple(measures.shape[:1])}"
                )

        saver = GaussianState(
            torch.empty((measures.shape[0], *self._mean.shape), dtype=self.dtype, device=self.device),
            torch.empty((measures.shape[0], *self._covariance.shape), dtype=self.dtype, device=self.device),
        )

        for t, measure in enumerate(measures):
            self.run(measure, controls[t] if controls is not None else None)

            if return_all:
                saver.mean[t] = self._mean
                saver.covariance[t] = self._covariance

        if return_all:
            return saver

        return self.state

    def __repr__(self) -> str:
        """Convert the filter model into a readable string."""
        header = f"{self._title} (State dimension: {self.state_dim}, Measure dimension: {self.measure_dim}"
        if self._control_matrix is not None:
            header += f", Control dimension: {self.control_dim}"
        header += ")"

        blocks = [self._format_block("Process", [("F", self._process_matrix), ("Q", self._process_noise)], 80)]
        if self._control_matrix is not None:
            blocks.append(self._format_block("Control", [("B", self._control_matrix)], 80))
        blocks.append(
            self._format_block("Measurement", [("H", self._measurement_matrix), ("R", self._measurement_noise)], 100)
        )

        n_char = max(len(line) for line in "\n".join(blocks).split("\n"))
        return ("\n" + "-" * n_char + "\n").join([header, *blocks])

    @classmethod
    def _format_block(cls, label: str, matrices: list[tuple[str, torch.Tensor]], linewidth: int) -> str:
        """Format one or two named matrices, side by side when they fit on a line."""
        with printoptions(profile="short", sci_mode=False, linewidth=linewidth):
            reprs = [(name, str(matrix).split("\n")) for name, matrix in matrices]

        indent = " " * (len(label) + 2)
        first_name, first_repr = reprs[0]
        first_header = [f"{label}: {first_name} = "]
        first_header += [" " * len(first_header[0])] * (len(first_repr) - 1)

        if len(reprs) == 1:
            return "\n".join("".join(lines) for lines in zip(first_header, first_repr))

        second_name, second_repr = reprs[1]
        max_char_first = max(len(line) for line in first_repr)
        max_char_second = max(len(line) for line in second_repr)

        if max_char_first + max_char_second <= cls._REPR_SPLIT_LENGTH:  # Single line
            first_repr = [line + " " * (max_char_first - len(line)) for line in first_repr]
            sep = [f"  &  {second_name} = "] + [" " * 9] * (len(first_repr) - 1)
            return "\n".join("".join(lines) for lines in zip(first_header, first_repr, sep, second_repr))

        # Two lines
        second_header = f"{indent}{second_name} = "
        header = [*first_header, "", second_header] + [" " * len(second_header)] * (len(second_repr) - 1)
        return "\n".join("".join(lines) for lines in zip(header, [*first_repr, "", *second_repr]))


class ControlledLinearFilter(LinearFilter):
    """Linear Kalman filter driven by a known control input.

    Same recursion as `LinearFilter`, but the control matrix ``B`` is mandatory and every call
    to `run` requires a control input ``u``:

        x' = F x + B u

    Only the predicted mean is affected by the control.
    """

    _title = "Controlled Linear Filter"

    def __init__(
        self,
        x: torch.Tensor,
        p: torch.Tensor,
        process_matrix: torch.Tensor,
        control_matrix: torch.Tensor,
        measurement_matrix: torch.Tensor,
        process_noise: torch.Tensor,
        measurement_noise: torch.Tensor,
        **kwargs,
    ) -> None:
        """Constructor.

        Args:
            x, p, process_matrix, measurement_matrix, process_noise, measurement_noise: See `LinearFilter`.
            control_matrix (torch.Tensor): Control matrix ``B``.
                Shape: ``(dim_x, dim_u)``
            **kwargs: Keyword options of `LinearFilter` (dtype, max_condition, check_covariances).
        """
        if control_matrix is None:
            raise ShapeMismatch("ControlledLinearFilter requires a control matrix")
        super().__init__(
            x,
            p,
            process_matrix,
            measurement_matrix,
            process_noise,
            measurement_noise,
            control_matrix=control_matrix,
            **kwargs,
        )

    def _as_control(self, control: torch.Tensor | None) -> torch.Tensor | None:
        if control is None:
            raise ShapeMismatch("ControlledLinearFilter.run requires a control input")
        return super()._as_control(control)
