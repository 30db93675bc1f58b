"""Constant-derivative linear models.

Helpers building the ``F, H, Q, R`` (and ``B``) matrices of *constant-derivative motion
models* and assembling them into a filter:

- constant position (order = 0),
- constant velocity (order = 1),
- constant acceleration (order = 2), etc.

The state of each axis is a value and its derivatives up to ``order``. Only the values are
measured. The optional control input acts on the ``(order+1)``-th derivative of each axis
(e.g. a known acceleration command for a constant velocity model).

The noise levels are chosen by the caller: nothing here estimates them from data.
"""

from __future__ import annotations

import torch

from .linear_filter import ControlledLinearFilter, LinearFilter


def interleave(x: torch.Tensor, size: int) -> torch.Tensor:
    """Interleave tensor along the first dimension.

    Indices ``0, 1, ..., k*size-1`` are remapped as
    ``0, size, 2*size, ..., 1, 1+size, ..., size-1, 2*size-1, ..., k*size-1``.

    It converts a state grouped by axis (``x, x', y, y'``) into a state grouped by
    derivative order (``x, y, x', y'``) when ``size`` is the number of entries per axis.

    Example:
        >>> interleave(torch.arange(6), 3)
        tensor([0, 3, 1, 4, 2, 5])

    Args:
        x (torch.Tensor): Tensor to interleave.
            Shape: ``(N, ...)``
        size (int): Block size. Must divide ``N``.

    Returns:
        torch.Tensor: Interleaved tensor.
            Shape: ``(N, ...)``
    """
    shape = list(x.shape)
    return x.reshape([-1, size, *shape[1:]]).transpose(0, 1).reshape([-1, *shape[1:]])


def _taylor_coefficients(order: int, dt: float) -> torch.Tensor:
    """Return (1, dt, dt^2 / 2, ..., dt^order / order!)."""
    range_ = torch.arange(order + 1)
    range_[0] = 1
    return torch.tensor([dt**k for k in range(order + 1)]) / range_.cumprod(0)


def create_ckf_process_matrix(order: int, dt=1.0, approximate=False) -> torch.Tensor:
    r"""Create the transition matrix ``F`` of one axis.

    With the (order+1)-th derivative and above assumed zero, the Taylor expansion yields:

    x^{(i)}(t + dt) = \sum_{k=0}^{order - i} \frac{dt^k}{k!} x^{(i+k)}(t)

    Example (constant acceleration, ``dt = 0.5``)::

        [
            [1, 0.5, 0.125],
            [0, 1.0, 0.5],
            [0, 0.0, 1.0],
        ]

    Args:
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0
        approximate (bool): Keep only first order terms: x^{(i)}(t+dt) = x^{(i)}(t) + dt x^{(i+1)}(t).
            Default: False

    Returns:
        torch.Tensor: Transition matrix ``F``.
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = _taylor_coefficients(order, dt)
    if approximate:
        coefficients[2:] = 0

    process_matrix = torch.zeros(order + 1, order + 1)
    for k, coef in enumerate(coefficients):
        process_matrix += torch.diag(torch.tensor([coef] * (order + 1 - k)), k)
    return process_matrix


def create_ckf_process_noise(
    process_std: float, order: int, dt=1.0, expected_model=False, approximate=False
) -> torch.Tensor:
    r"""Create the process noise covariance ``Q`` of one axis.

    Two models are supported:

    1. Constant order-th derivative (default): the highest derivative receives an additive noise
       w_k ~ N(0, process_std**2) at each step, propagated to lower derivatives through the dynamics.
    2. Zero-mean (order+1)-th derivative (``expected_model``): the (order+1)-th derivative is a
       white noise w_k ~ N(0, process_std**2) over the time step.

    Args:
        process_std (float): Process noise standard deviation.
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0
        expected_model (bool): Use the zero-mean (order+1)-th derivative model.
            Default: False
        approximate (bool): Keep only first order terms (only the highest derivative is noisy).
            Default: False

    Returns:
        torch.Tensor: Process noise covariance ``Q``.
            Shape: ``(order + 1, order + 1)``
    """
    coefficients = _taylor_coefficients(order + expected_model, dt)
    if approximate:
        coefficients[1 + expected_model :] = 0

    # For the expected model, the first coefficient is dropped (shifted by 1)
    coefficients = coefficients[expected_model:].flip(0)
    return process_std**2 * coefficients[:, None] @ coefficients[None]


def create_ckf_control_matrix(order: int, dt=1.0, approximate=False) -> torch.Tensor:
    r"""Create the control matrix ``B`` of one axis.

    The control ``u`` is the (order+1)-th derivative, held constant over the time step:

    x^{(i)}(t + dt) = ... + \frac{dt^{order + 1 - i}}{(order + 1 - i)!} u

    Example (constant velocity with an acceleration command, ``dt = 1``)::

        [
            [0.5],
            [1.0],
        ]

    Args:
        order (int): Highest derivative order included in the state.
        dt (float): Time step duration.
            Default: 1.0
        approximate (bool): Keep only first order terms: only the highest derivative is driven by ``u``.
            Default: False

    Returns:
        torch.Tensor: Control matrix ``B``.
            Shape: ``(order + 1, 1)``
    """
    coefficients = _taylor_coefficients(order + 1, dt)[1:].flip(0)
    if approximate:
        coefficients[:-1] = 0
    return coefficients[:, None]


def constant_linear_filter(
    x: torch.Tensor,
    p: torch.Tensor,
    measurement_std: float | torch.Tensor,
    process_std: float | torch.Tensor,
    *,
    dim=2,
    order=1,
    dt=1.0,
    expected_model=False,
    order_by_dim=False,
    approximate=False,
    controlled=False,
    **kwargs,
) -> LinearFilter:
    """Create a constant-derivative linear filter.

    The state holds the values and their derivatives up to ``order`` for each of the ``dim``
    axes: its dimension is ``(order + 1) * dim``. Only the values are measured, with independent
    noise on each axis.

    Args:
        x (torch.Tensor): Initial state estimate.
            Shape: ``(..., (order + 1) * dim, 1)``
        p (torch.Tensor): Initial state covariance.
            Shape: ``(..., (order + 1) * dim, (order + 1) * dim)``
        measurement_std (float | torch.Tensor): Measurement noise standard deviation.
            Shape: broadcastable to ``(dim,)``
        process_std (float | torch.Tensor): Process noise standard deviation
            (see `create_ckf_process_noise`).
            Shape: broadcastable to ``(dim,)``
        dim (int): Number of independent axes.
            Default: 2
        order (int): Highest derivative order included in the state.
            Default: 1 (constant velocity)
        dt (float): Time step duration.
            Default: 1.0
        expected_model (bool): Use the zero-mean (order+1)-th derivative noise model.
            Default: False
        order_by_dim (bool): State layout.
            - True: grouped by axis (e.g. ``x, x', y, y'``),
            - False: grouped by derivative order (e.g. ``x, y, x', y'``).
            Default: False
        approximate (bool): Use first order approximations of ``F``, ``Q`` (and ``B``).
            Default: False
        controlled (bool): Build a `ControlledLinearFilter` whose control input is the
            (order+1)-th derivative of each axis.
            Shape of the control: ``(..., dim, 1)``
            Default: False
        **kwargs: Keyword options forwarded to the filter (dtype, max_condition, check_covariances).

    Returns:
        LinearFilter: The constant-derivative filter (a `ControlledLinearFilter` if ``controlled``).
    """
    measurement_std = torch.broadcast_to(torch.as_tensor(measurement_std), (dim,))
    process_std = torch.broadcast_to(torch.as_tensor(process_std), (dim,))

    state_dim = (order + 1) * dim

    # Only values are measured, with independent noise on each axis
    measurement_matrix = torch.eye(dim, state_dim)
    measurement_noise = torch.eye(dim) * measurement_std**2

    # Block matrices for each axis (grouped by axis)
    process_matrix = torch.block_diag(*(create_ckf_process_matrix(order, dt, approximate) for _ in range(dim)))
    process_noise = torch.block_diag(
        *(create_ckf_process_noise(process_std[k].item(), order, dt, expected_model, approximate) for k in range(dim))
    )
    control_matrix = torch.block_diag(*(create_ckf_control_matrix(order, dt, approximate) for _ in range(dim)))

    if order_by_dim:
        measurement_matrix = interleave(measurement_matrix.T, dim).T
    else:
        process_matrix = interleave(interleave(process_matrix, order + 1).T, order + 1).T
        process_noise = interleave(interleave(process_noise, order + 1).T, order + 1).T
        control_matrix = interleave(control_matrix, order + 1)

    if controlled:
        return ControlledLinearFilter(
            x,
            p,
            process_matrix.contiguous(),
            control_matrix.contiguous(),
            measurement_matrix.contiguous(),
            process_noise.contiguous(),
            measurement_noise.contiguous(),
            **kwargs,
        )

    return LinearFilter(
        x,
        p,
        process_matrix.contiguous(),
        measurement_matrix.contiguous(),
        process_noise.contiguous(),
        measurement_noise.contiguous(),
        **kwargs,
    )
