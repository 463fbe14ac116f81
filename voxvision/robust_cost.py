"""Robust scale estimators and weight functions for iterative least squares."""

from __future__ import annotations

import math
from typing import Iterable

from voxvision.mathutils import median

__all__ = [
    "TDistributionScaleEstimator",
    "MADScaleEstimator",
    "NormalDistributionScaleEstimator",
    "TukeyWeightFunction",
    "TDistributionWeightFunction",
    "HuberWeightFunction",
]


class TDistributionScaleEstimator:
    """Scale of residuals under a Student-t model, found by fixed-point iteration."""

    INITIAL_SIGMA = 5.0
    DEFAULT_DOF = 5.0

    def __init__(self, dof: float = DEFAULT_DOF):
        self.dof = dof
        self.initial_sigma = self.INITIAL_SIGMA

    def compute(self, errors: Iterable[float]) -> float:
        finite = [e for e in errors if math.isfinite(e)]
        if not finite:
            raise ValueError("no finite errors to estimate a scale from")
        squares = [e * e for e in finite]
        if not any(squares):
            return 0.0
        lam = 1.0 / (self.initial_sigma * self.initial_sigma)
        while True:
            previous = lam
            total = sum(e2 * (self.dof + 1.0) / (self.dof + previous * e2) for e2 in squares)
            lam = len(squares) / total
            if abs(lam - previous) <= 1e-3:
                break
        return math.sqrt(1.0 / lam)


class MADScaleEstimator:
    """Scale from the median of absolute errors."""

    NORMALIZER = 1.48

    def compute(self, errors: Iterable[float]) -> float:
        """``errors`` must already be absolute values."""
        return self.NORMALIZER * median(list(errors))


class NormalDistributionScaleEstimator:
    """Spread of errors around their mean."""

    def compute(self, errors: Iterable[float]) -> float:
        """Square root of the summed squared deviations from the mean."""
        values = list(errors)
        if not values:
            raise ValueError("no errors to estimate a scale from")
        mean = sum(values) / len(values)
        return math.sqrt(sum((d - mean) ** 2 for d in values))


class TukeyWeightFunction:
    """Tukey biweight."""

    DEFAULT_B = 4.6851

    def __init__(self, b: float = DEFAULT_B):
        self.configure(b)

    def value(self, x: float) -> float:
        x_square = x * x
        if x_square <= self.b_square:
            tmp = 1.0 - x_square / self.b_square
            return tmp * tmp
        return 0.0

    def configure(self, param: float) -> None:
        self.b_square = param * param


class TDistributionWeightFunction:
    """Weights derived from a Student-t distribution."""

    DEFAULT_DOF = 5.0

    def __init__(self, dof: float = DEFAULT_DOF):
        self.configure(dof)

    def value(self, x: float) -> float:
        return (self.dof + 1.0) / (self.dof + x * x)

    def configure(self, param: float) -> None:
        self.dof = param
        self.normalizer = self.dof / (self.dof + 1.0)


class HuberWeightFunction:
    """Huber weight: one inside ``k``, decaying as ``k/|t|`` outside."""

    DEFAULT_K = 1.345

    def __init__(self, k: float = DEFAULT_K):
        self.configure(k)

    def value(self, t: float) -> float:
        t_abs = abs(t)
        return 1.0 if t_abs < self.k else self.k / t_abs

    def configure(self, param: float) -> None:
        self.k = param