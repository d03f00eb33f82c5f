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

"""Per-block search strategies.

Both optimizers minimise a cost function of a parameter vector, start from
the identity and only leave it on a strict improvement.
"""

# Standard Library Imports
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable

# Third Party Imports
import numpy as np
from numpy.typing import NDArray
from scipy.optimize import minimize

# Local Imports
from densematch.registration.parameters import (
    OptimizerKind,
    RegistrationParameters,
    TransformKind,
)
from densematch.registration.transforms import search_bounds

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

CostFunction = Callable[[NDArray[np.float64]], float]


@dataclass
class OptimizationResult:
    """Outcome of one block search."""

    parameters: NDArray[np.float64]
    cost: float
    evaluations: int
    stop_condition: str


class BlockOptimizer(ABC):
    """Search strategy over a bounded parameter box."""

    @abstractmethod
    def optimize(self, cost: CostFunction, size: int) -> OptimizationResult:
        """Minimise ``cost`` over ``size`` parameters starting at zero."""


class ExhaustiveOptimizer(BlockOptimizer):
    """Evaluate every translation of a regular grid.

    Parameters
    ----------
    radius : float
        Largest translation along each axis, physical units.
    step : float
        Grid step, physical units.
    """

    def __init__(self, radius: float, step: float):
        if step <= 0:
            raise ValueError(f"Step must be positive, got {step}.")
        self.radius = float(radius)
        self.step = float(step)

    def offsets(self) -> NDArray[np.float64]:
        count = int(np.floor(self.radius / self.step + 1e-9))
        return np.arange(-count, count + 1, dtype=np.float64) * self.step

    def optimize(self, cost, size=3):
        if size != 3:
            raise ValueError("Exhaustive search only covers translations.")

        best = np.zeros(3)
        best_cost = cost(best)
        evaluations = 1
        axis = self.offsets()
        for candidate in itertools.product(axis, axis, axis):
            candidate = np.asarray(candidate)
            if not np.any(candidate):
                continue
            value = cost(candidate)
            evaluations += 1
            if value < best_cost:
                best, best_cost = candidate, value

        return OptimizationResult(
            parameters=best,
            cost=best_cost,
            evaluations=evaluations,
            stop_condition=f"Exhaustive search evaluated {evaluations} positions",
        )


class BoundedOptimizer(BlockOptimizer):
    """Powell search on parameters normalised by their search radii.

    Parameters
    ----------
    radii : NDArray
        Typical extent of each parameter, used for normalisation.
    bounds : NDArray
        Symmetric box bound of each parameter.
    final_radius : float
        Tolerance on the normalised parameters.
    maximum_evaluations : int
        Cap on cost evaluations.
    """

    def __init__(
        self,
        radii: NDArray[np.float64],
        bounds: NDArray[np.float64],
        final_radius: float,
        maximum_evaluations: int,
    ):
        self.radii = np.asarray(radii, dtype=np.float64)
        self.bounds = np.asarray(bounds, dtype=np.float64)
        self.final_radius = float(final_radius)
        self.maximum_evaluations = int(maximum_evaluations)

    def optimize(self, cost, size=None):
        size = self.radii.size if size is None else size
        if size != self.radii.size:
            raise ValueError(f"Expected {self.radii.size} parameters, got {size}.")

        identity = np.zeros(size)
        identity_cost = cost(identity)
        free = (self.radii > 0) & (self.bounds > 0)
        if not np.any(free):
            return OptimizationResult(identity, identity_cost, 1, "No free parameters")

        def normalised_cost(x):
            parameters = identity.copy()
            parameters[free] = x * self.radii[free]
            return cost(parameters)

        limits = self.bounds[free] / self.radii[free]
        result = minimize(
            normalised_cost,
            x0=np.zeros(int(free.sum())),
            method="Powell",
            bounds=list(zip(-limits, limits)),
            options={
                "xtol": max(self.final_radius, 1e-12),
                "maxfev": self.maximum_evaluations,
            },
        )

        evaluations = int(result.nfev) + 1
        if not result.fun < identity_cost:
            return OptimizationResult(
                identity, identity_cost, evaluations, str(result.message)
            )

        parameters = identity.copy()
        parameters[free] = np.asarray(result.x) * self.radii[free]
        return OptimizationResult(
            parameters, float(result.fun), evaluations, str(result.message)
        )


def make_optimizer(
    parameters: RegistrationParameters, mean_spacing: float
) -> BlockOptimizer:
    """Build the configured optimizer for a level with ``mean_spacing``."""
    if parameters.optimizer is OptimizerKind.EXHAUSTIVE:
        if parameters.transform is not TransformKind.TRANSLATION:
            raise ValueError("Exhaustive search only covers translations.")
        radius = min(parameters.search_radius, parameters.translate_upper_bound)
        return ExhaustiveOptimizer(
            radius=radius * mean_spacing, step=parameters.step_size * mean_spacing
        )

    radii, bounds = search_bounds(parameters.transform, parameters, mean_spacing)
    return BoundedOptimizer(
        radii=radii,
        bounds=bounds,
        final_radius=parameters.final_radius,
        maximum_evaluations=parameters.optimizer_maximum_iterations,
    )
