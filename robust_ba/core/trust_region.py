"""
Levenberg-Marquardt damping control
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict

from .config import TrustRegionConfig


@dataclass
class StepRecord:
    """Diagnostics of one solve attempt"""

    iteration: int
    attempt: int
    damping: float
    current_error: float
    trial_error: float
    accepted: bool
    relative_update: float
    sigma_squared: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class DampingController:
    """
    Adapts the damping factor lambda from step outcomes

    Accepted step: lambda *= decrease, factor reset to its initial value.
    Rejected step: lambda *= factor, then factor doubles, so repeated
    rejections grow lambda geometrically faster.
    """

    def __init__(self, config: TrustRegionConfig):
        self.config = config
        self.damping = config.initial_damping
        self.factor = config.damping_factor

    def accept(self) -> None:
        self.damping *= self.config.damping_decrease
        self.factor = self.config.damping_factor

    def reject(self) -> None:
        self.damping *= self.factor
        self.factor *= 2.0

    def reset(self) -> None:
        self.damping = self.config.initial_damping
        self.factor = self.config.damping_factor

    def __repr__(self) -> str:
        return f"DampingController(damping={self.damping:.3g}, factor={self.factor:.3g})"
