#  Copyright (c) 2021-2025  The University of Texas Southwestern Medical Center.
#  All rights reserved.
#  Redistribution and use in source and binary forms, with or without
#  modification, are permitted for academic and research use only (subject to the
#  limitations in the disclaimer below) provided that the following conditions are met:
#       * Redistributions of source code must retain the above copyright notice,
#       this list of conditions and the following disclaimer.
#       * Redistributions in binary form must reproduce the above copyright
#       notice, this list of conditions and the following disclaimer in the
#       documentation and/or other materials provided with the distribution.
#       * Neither the name of the copyright holders nor the names of its
#       contributors may be used to endorse or promote products derived from this
#       software without specific prior written permission.
#  NO EXPRESS OR IMPLIED LICENSES TO ANY PARTY'S PATENT RIGHTS ARE GRANTED BY
#  THIS LICENSE. THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND
#  CONTRIBUTORS "AS IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT
#  LIMITED TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A
#  PARTICULAR PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR
#  CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL,
#  EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO,
#  PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR PROFITS; OR
#  BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF LIABILITY, WHETHER
#  IN CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING NEGLIGENCE OR OTHERWISE)
#  ARISING IN ANY WAY OUT OF THE USE OF THIS SOFTWARE, EVEN IF ADVISED OF THE
#  POSSIBILITY OF SUCH DAMAGE.

"""Block similarity metrics.

All metrics return a cost where lower is better. Samples that fall outside
the moving volume are NaN and ignored; an evaluation with fewer than half of
the samples valid, or with constant content for the correlation metrics,
scores the metric's ``worst`` value.
"""

# Standard Library Imports
import logging
from abc import ABC, abstractmethod

# Third Party Imports
import numpy as np
from numpy.typing import NDArray

# Local Imports
from densematch.registration.parameters import MetricKind

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

#: Minimum fraction of valid samples for an evaluation to count.
MINIMUM_VALID_FRACTION = 0.5


class BlockMetric(ABC):
    """Cost between the fixed and moving samples of one block."""

    #: Cost returned for invalid evaluations.
    worst: float = np.inf

    def evaluate(self, fixed: NDArray, moving: NDArray) -> float:
        fixed = np.asarray(fixed, dtype=np.float64).ravel()
        moving = np.asarray(moving, dtype=np.float64).ravel()
        valid = np.isfinite(fixed) & np.isfinite(moving)
        if valid.sum() < MINIMUM_VALID_FRACTION * fixed.size or not valid.any():
            return self.worst
        return self._cost(fixed[valid], moving[valid])

    @abstractmethod
    def _cost(self, fixed: NDArray, moving: NDArray) -> float:
        """Cost over valid samples only."""

    @abstractmethod
    def weight(self, cost: float) -> float:
        """Aggregation weight of a block matched with ``cost``."""

    def is_valid(self, cost: float) -> bool:
        return bool(np.isfinite(cost)) and cost < self.worst


class MeanSquaresMetric(BlockMetric):
    # Large finite value keeps the bounded line searches well defined.
    worst = 1e30

    def _cost(self, fixed, moving):
        return float(np.mean((fixed - moving) ** 2))

    def weight(self, cost):
        return 1.0


def _pearson(fixed: NDArray, moving: NDArray) -> float:
    fixed = fixed - fixed.mean()
    moving = moving - moving.mean()
    denominator = np.sqrt(np.sum(fixed**2) * np.sum(moving**2))
    if denominator <= np.finfo(np.float64).tiny:
        return np.nan
    return float(np.sum(fixed * moving) / denominator)


class CorrelationMetric(BlockMetric):
    """Negative Pearson correlation."""

    worst = 1.0

    def _cost(self, fixed, moving):
        correlation = _pearson(fixed, moving)
        if np.isnan(correlation):
            return self.worst
        return -correlation

    def weight(self, cost):
        return max(0.0, -cost)


class SquaredCorrelationMetric(BlockMetric):
    """Negative squared Pearson correlation."""

    worst = 0.0

    def _cost(self, fixed, moving):
        correlation = _pearson(fixed, moving)
        if np.isnan(correlation):
            return self.worst
        return -(correlation**2)

    def weight(self, cost):
        return max(0.0, -cost)


METRICS = {
    MetricKind.MEAN_SQUARES: MeanSquaresMetric,
    MetricKind.CORRELATION: CorrelationMetric,
    MetricKind.SQUARED_CORRELATION: SquaredCorrelationMetric,
}


def make_metric(kind: MetricKind) -> BlockMetric:
    return METRICS[kind]()
