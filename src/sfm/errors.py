"""
Exception types raised by the structure-from-motion geometry routines.

- InvalidInputError: not enough correspondences/views, bad shapes
- NumericalFailureError: solver divergence, no valid pose candidate
- DegenerateSampleError: rank-deficient minimal sample (absorbed by RANSAC)
"""


class SfmError(Exception):
    """Base class for all errors raised by this package."""


class InvalidInputError(SfmError, ValueError):
    """The call cannot proceed with the supplied input."""


class NumericalFailureError(SfmError, ArithmeticError):
    """A numerical solve failed to produce a usable result."""


class DegenerateSampleError(SfmError):
    """A sample is degenerate (collinear points, rank deficiency)."""
