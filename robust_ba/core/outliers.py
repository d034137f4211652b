"""
Post-solve outlier classification
"""

import logging
from typing import Set

import numpy as np

from .config import OutlierConfig
from .problem_graph import ProblemGraph
from .residuals import ResidualBatch

logger = logging.getLogger(__name__)


class OutlierClassifier:
    """
    Flags bad measurements and outlier points at the final state

    A measurement is bad if it lies behind its camera or if its squared
    error exceeds (outlier_sigma_multiple * sigma)^2. Flags are sticky: a
    measurement or point flagged by an earlier compute() stays flagged.
    """

    def __init__(self, config: OutlierConfig):
        self.config = config

    def threshold(self, sigma_squared: float) -> float:
        """Squared-error cut-off for a given noise scale"""
        return self.config.outlier_sigma_multiple ** 2 * sigma_squared

    def classify(
        self,
        graph: ProblemGraph,
        batch: ResidualBatch,
        candidate: np.ndarray,
        sigma_squared: float,
    ) -> Set[int]:
        """
        Update measurement and point outlier flags

        Args:
            graph: Preprocessed problem graph
            batch: Residuals at the final state, in measurement order
            candidate: (M,) measurements still taking part in the solve
            sigma_squared: Noise scale estimated at the final state

        Returns:
            Indices of points newly marked as outliers
        """
        cutoff = self.threshold(sigma_squared)
        flagged = candidate & (~batch.valid | (batch.error_squared > cutoff))

        for idx in np.flatnonzero(flagged):
            meas = graph.measurements[idx]
            meas.is_bad = True
            graph.points[meas.point].n_outliers += 1

        newly_outlying = set()
        for point in graph.points:
            if point.is_outlier or point.n_measurements == 0:
                continue
            n_bad = point.n_outliers
            inliers = point.n_measurements - n_bad
            ratio = n_bad / point.n_measurements
            if inliers == 0 or (
                n_bad >= self.config.point_outlier_min_count
                and ratio >= self.config.point_outlier_ratio
            ):
                point.is_outlier = True
                newly_outlying.add(point.index)

        logger.info(
            f"Outlier classification: {int(np.count_nonzero(flagged))} bad measurement(s), "
            f"{len(newly_outlying)} outlier point(s), cut-off {cutoff:.4g}"
        )
        return newly_outlying
