"""
Robust weighting policies (M-estimators)

Each policy maps squared, noise-normalised residuals e = |r|^2 to
- an IRLS weight w(e) in [0, 1] that scales the residual and Jacobian
  contributions to the normal equations (by sqrt(w)),
- a robust cost rho(e) used to compare the current and trial states,
- a noise scale estimate sigma^2 taken from the residual distribution.

With s = (c * sigma)^2 for the policy's tuning constant c:

    Tukey:   w = (1 - e/s)^2 for e < s, else 0;     rho = 1 - (1 - e/s)^3, saturating at 1
    Huber:   w = 1 for e < s, else sqrt(s/e);        rho = e/s, or 2 sqrt(e/s) - 1 beyond s
    Cauchy:  w = 1 / (1 + e/s);                      rho = log(1 + e/s)

Costs are divided by s, so they are only comparable under the same sigma.
The policies form a closed set selected by name through `make_weighting`.
"""

from dataclasses import dataclass
from typing import Dict, Protocol, Type

import numpy as np


def median_sigma_squared(error_squared: np.ndarray) -> float:
    """
    Robust noise scale from the median squared error

    sigma = 1.4826 * (1 + 5 / (2n - 6)) * sqrt(median(e))

    The small-sample correction is only applied when 2n - 6 > 0.

    Returns:
        sigma^2, or 0.0 for an empty input
    """
    errors = np.asarray(error_squared, dtype=np.float64)
    n = errors.size
    if n == 0:
        return 0.0

    # Upper median, matching a sort-and-index over an even count
    median = float(np.partition(errors, n // 2)[n // 2])
    correction = 1.0 + 5.0 / (2 * n - 6) if 2 * n - 6 > 0 else 1.0
    sigma = 1.4826 * correction * np.sqrt(median)
    return float(sigma * sigma)


class RobustWeighting(Protocol):
    """Interface shared by all weighting policies"""

    name: str
    tuning_constant: float

    def weight(self, error_squared: np.ndarray, sigma_squared: float) -> np.ndarray:
        ...

    def cost(self, error_squared: np.ndarray, sigma_squared: float) -> np.ndarray:
        ...

    def scale_estimate(self, error_squared: np.ndarray) -> float:
        ...


@dataclass(frozen=True)
class TukeyWeighting:
    """Tukey biweight: measurements beyond c*sigma get zero weight"""

    tuning_constant: float = 4.6851
    name: str = "tukey"

    def weight(self, error_squared: np.ndarray, sigma_squared: float) -> np.ndarray:
        s = self.tuning_constant ** 2 * sigma_squared
        e = np.asarray(error_squared, dtype=np.float64)
        inside = e < s
        d = 1.0 - e / s
        return np.where(inside, d * d, 0.0)

    def cost(self, error_squared: np.ndarray, sigma_squared: float) -> np.ndarray:
        s = self.tuning_constant ** 2 * sigma_squared
        e = np.asarray(error_squared, dtype=np.float64)
        x = e / s
        # 1 - (1 - x)^3, expanded to keep precision near zero
        return np.where(e < s, x * (3.0 - 3.0 * x + x * x), 1.0)

    def scale_estimate(self, error_squared: np.ndarray) -> float:
        return median_sigma_squared(error_squared)


@dataclass(frozen=True)
class HuberWeighting:
    """Huber: quadratic near zero, linear beyond c*sigma"""

    tuning_constant: float = 1.345
    name: str = "huber"

    def weight(self, error_squared: np.ndarray, sigma_squared: float) -> np.ndarray:
        s = self.tuning_constant ** 2 * sigma_squared
        e = np.asarray(error_squared, dtype=np.float64)
        safe = np.maximum(e, s)
        return np.where(e < s, 1.0, np.sqrt(s / safe))

    def cost(self, error_squared: np.ndarray, sigma_squared: float) -> np.ndarray:
        s = self.tuning_constant ** 2 * sigma_squared
        e = np.asarray(error_squared, dtype=np.float64)
        return np.where(e < s, e / s, 2.0 * np.sqrt(e / s) - 1.0)

    def scale_estimate(self, error_squared: np.ndarray) -> float:
        return median_sigma_squared(error_squared)


@dataclass(frozen=True)
class CauchyWeighting:
    """Cauchy (Lorentzian): smoothly saturating influence"""

    tuning_constant: float = 2.3849
    name: str = "cauchy"

    def weight(self, error_squared: np.ndarray, sigma_squared: float) -> np.ndarray:
        s = self.tuning_constant ** 2 * sigma_squared
        e = np.asarray(error_squared, dtype=np.float64)
        return 1.0 / (1.0 + e / s)

    def cost(self, error_squared: np.ndarray, sigma_squared: float) -> np.ndarray:
        s = self.tuning_constant ** 2 * sigma_squared
        e = np.asarray(error_squared, dtype=np.float64)
        return np.log1p(e / s)

    def scale_estimate(self, error_squared: np.ndarray) -> float:
        return median_sigma_squared(error_squared)


WEIGHTINGS: Dict[str, Type] = {
    "tukey": TukeyWeighting,
    "huber": HuberWeighting,
    "cauchy": CauchyWeighting,
}


def make_weighting(name: str) -> RobustWeighting:
    """
    Create a weighting policy by name

    Args:
        name: "tukey", "huber" or "cauchy" (case-insensitive)

    Returns:
        Weighting policy instance with its default tuning constant
    """
    key = name.lower()
    if key not in WEIGHTINGS:
        raise ValueError(f"Unknown m-estimator '{name}' (expected one of {sorted(WEIGHTINGS)})")
    return WEIGHTINGS[key]()
