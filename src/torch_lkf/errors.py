"""Exceptions raised by torch-lkf."""


class LinearFilterError(Exception):
    """Base class of every error raised by torch-lkf."""


class InverseError(LinearFilterError):
    """The innovation covariance S cannot be inverted.

    Raised by `project` (and thus `run`) when S is singular, when its inverse is not finite,
    or when its condition number exceeds the filter's `max_condition`.
    The filter state is never modified when this error is raised.
    """


class ShapeMismatch(LinearFilterError, ValueError):
    """A matrix or vector does not match the fixed shapes of the filter."""


class CovarianceError(LinearFilterError, ValueError):
    """A covariance matrix is not symmetric positive semi-definite (only when checks are enabled)."""
