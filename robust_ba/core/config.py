"""
Configuration management for robust bundle adjustment

Uses dataclasses for type safety and validation.
"""

from dataclasses import dataclass, field
from typing import Dict, Any

from .robust_weighting import WEIGHTINGS


@dataclass
class RobustConfig:
    """Configuration for the robust weighting policy"""

    # M-estimator: "tukey", "huber" or "cauchy"
    m_estimator: str = "tukey"

    # Lower bound on the noise scale estimate (0.4 px Tukey cut-off / 4.6851)
    min_sigma: float = 0.085

    def __post_init__(self):
        """Validate the estimator name and noise floor"""
        self.m_estimator = str(self.m_estimator).lower()
        if self.m_estimator not in WEIGHTINGS:
            raise ValueError(
                f"Invalid m_estimator: {self.m_estimator} "
                f"(expected one of {sorted(WEIGHTINGS)})"
            )
        if self.min_sigma <= 0.0:
            raise ValueError(f"min_sigma must be positive, got {self.min_sigma}")


@dataclass
class TrustRegionConfig:
    """Configuration for Levenberg-Marquardt damping control"""

    # Initial damping (small: behave like Gauss-Newton)
    initial_damping: float = 1e-4

    # Multiplier applied on a rejected step (doubles after every rejection)
    damping_factor: float = 2.0

    # Multiplier applied on an accepted step
    damping_decrease: float = 0.3

    # Attempts per outer iteration before the iteration counts as failed
    max_retries: int = 10

    # Consecutive failed outer iterations before compute() gives up
    max_failed_iterations: int = 3

    def __post_init__(self):
        """Validate damping parameters"""
        if self.initial_damping <= 0.0:
            raise ValueError(f"initial_damping must be positive, got {self.initial_damping}")
        if self.damping_factor <= 1.0:
            raise ValueError(f"damping_factor must be > 1, got {self.damping_factor}")
        if not (0.0 < self.damping_decrease < 1.0):
            raise ValueError(f"damping_decrease must be in (0, 1), got {self.damping_decrease}")
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries}")
        if self.max_failed_iterations < 1:
            raise ValueError(
                f"max_failed_iterations must be >= 1, got {self.max_failed_iterations}"
            )


@dataclass
class OutlierConfig:
    """Configuration for post-convergence outlier classification"""

    # A measurement is bad if its residual norm exceeds this many sigmas
    outlier_sigma_multiple: float = 4.6851

    # A point is an outlier when at least this fraction of its measurements is bad
    point_outlier_ratio: float = 1.0

    # ... and at least this many of them
    point_outlier_min_count: int = 1

    def __post_init__(self):
        if self.outlier_sigma_multiple <= 0.0:
            raise ValueError(
                f"outlier_sigma_multiple must be positive, got {self.outlier_sigma_multiple}"
            )
        if not (0.0 < self.point_outlier_ratio <= 1.0):
            raise ValueError(
                f"point_outlier_ratio must be in (0, 1], got {self.point_outlier_ratio}"
            )
        if self.point_outlier_min_count < 1:
            raise ValueError(
                f"point_outlier_min_count must be >= 1, got {self.point_outlier_min_count}"
            )


@dataclass
class BundleConfig:
    """Main configuration for the bundle adjuster"""

    # Maximum outer iterations per compute() call
    max_iterations: int = 20

    # Relative update magnitude below which the solve has converged
    convergence_threshold: float = 1e-8

    # Robust cost charged for a measurement whose point lies behind its camera
    behind_camera_cost: float = 1.0

    # Diagnostics: 0 = quiet, 1 = per iteration, 2 = every attempt
    verbose: int = 0

    # Logging level: "DEBUG", "INFO", "WARNING", "ERROR"
    log_level: str = "WARNING"

    # Sub-configurations
    robust: RobustConfig = field(default_factory=RobustConfig)
    trust_region: TrustRegionConfig = field(default_factory=TrustRegionConfig)
    outliers: OutlierConfig = field(default_factory=OutlierConfig)

    def __post_init__(self):
        """Validate configuration"""
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if self.convergence_threshold < 0.0:
            raise ValueError(
                f"convergence_threshold must be >= 0, got {self.convergence_threshold}"
            )
        if self.behind_camera_cost < 0.0:
            raise ValueError(
                f"behind_camera_cost must be >= 0, got {self.behind_camera_cost}"
            )
        if self.verbose not in (0, 1, 2):
            raise ValueError(f"Invalid verbose level: {self.verbose}")
        if self.log_level not in ["DEBUG", "INFO", "WARNING", "ERROR"]:
            raise ValueError(f"Invalid log_level: {self.log_level}")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "BundleConfig":
        """Create config from dictionary (for JSON/YAML loading)"""
        config_dict = dict(config_dict)
        robust = RobustConfig(**config_dict.pop("robust", {}))
        trust_region = TrustRegionConfig(**config_dict.pop("trust_region", {}))
        outliers = OutlierConfig(**config_dict.pop("outliers", {}))

        return cls(
            robust=robust,
            trust_region=trust_region,
            outliers=outliers,
            **config_dict
        )

    def to_dict(self) -> Dict[str, Any]:
        """Export config to dictionary"""
        return {
            "max_iterations": self.max_iterations,
            "convergence_threshold": self.convergence_threshold,
            "behind_camera_cost": self.behind_camera_cost,
            "verbose": self.verbose,
            "log_level": self.log_level,
            "robust": dict(self.robust.__dict__),
            "trust_region": dict(self.trust_region.__dict__),
            "outliers": dict(self.outliers.__dict__),
        }
