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

"""Fusion of sparse block transforms into a dense velocity field.

Each block transform ``H_b`` is represented by its matrix logarithm ``L_b``.
The velocity at a voxel ``x`` is the weighted log-Euclidean mean of the
neighbouring logarithms applied to ``x``, which is the same as the weighted
mean of the velocities ``L_b [x; 1]`` each block induces at ``x``.

Dam blocks bound the neighbourhood: a regular block only reaches ``x`` when it
is not farther from ``x`` than the nearest dam block centre.
"""

# Standard Library Imports
import logging
from abc import ABC, abstractmethod
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

# Third Party Imports
import numpy as np
from numpy.typing import NDArray
from scipy.spatial import cKDTree

# Local Imports
from densematch.registration.control import worker_pool
from densematch.registration.parameters import AggregatorKind, RegistrationParameters
from densematch.registration.transforms import LocalTransform, velocities_at
from densematch.volume import Volume

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

#: Voxels handled per worker task.
CHUNK_SIZE = 32768

#: Slack on distance comparisons against the nearest dam.
DAM_TOLERANCE = 1e-9


@dataclass
class AggregationResult:
    """Dense field produced by an aggregator."""

    #: Velocity field on the target grid.
    field: Volume
    #: Re-weighting iterations used (1 for single-pass strategies).
    iterations: int
    #: False when the iteration cap was hit first.
    converged: bool


@dataclass
class _Neighbourhood:
    """Voxel/block pairs of one chunk."""

    voxel: NDArray[np.intp]
    block: NDArray[np.intp]
    spatial_weight: NDArray[np.float64]
    velocity: NDArray[np.float64]


class BaseAggregator(ABC):
    """Shared neighbourhood search and chunked execution.

    Parameters
    ----------
    extrapolation_sigma : float
        Gaussian kernel sigma, physical units.
    neighborhood_radius : float
        Largest block distance taken into account, physical units.
    number_of_threads : int
        Worker threads for the voxel chunks.
    executor : Executor, optional
        Shared worker pool used instead of a per-call pool.
    """

    def __init__(
        self,
        extrapolation_sigma: float,
        neighborhood_radius: float,
        number_of_threads: int = 1,
        executor: Optional[Executor] = None,
    ):
        if extrapolation_sigma <= 0:
            raise ValueError(
                f"Extrapolation sigma must be positive, got {extrapolation_sigma}."
            )
        self.extrapolation_sigma = float(extrapolation_sigma)
        self.neighborhood_radius = float(neighborhood_radius)
        self.number_of_threads = max(1, int(number_of_threads))
        self.executor = executor

    def fit(
        self, local_transforms: Sequence[LocalTransform], geometry: Volume
    ) -> AggregationResult:
        """Estimate a dense velocity field on the grid of ``geometry``.

        Parameters
        ----------
        local_transforms : sequence of LocalTransform
            Block transforms with their centres, weights and dam flags.
        geometry : Volume
            Target grid.

        Returns
        -------
        AggregationResult
            The field, the iterations used and the convergence flag.
        """
        field = np.zeros(geometry.shape + (3,))
        if len(local_transforms) == 0:
            logger.warning("No block transforms to aggregate, returning a zero field.")
            return AggregationResult(geometry.zeros_field(), 0, True)

        centers = np.array([t.center for t in local_transforms])
        logs = np.array([t.velocity_matrix() for t in local_transforms])
        weights = np.array([t.weight for t in local_transforms], dtype=np.float64)
        dams = np.array([t.dam for t in local_transforms], dtype=bool)

        block_tree = cKDTree(centers)
        dam_tree = cKDTree(centers[dams]) if dams.any() else None

        points = geometry.physical_grid().reshape(-1, 3)
        chunks = [
            (start, min(start + CHUNK_SIZE, points.shape[0]))
            for start in range(0, points.shape[0], CHUNK_SIZE)
        ]

        def work(bounds: Tuple[int, int]) -> Tuple[int, int, NDArray, int, bool]:
            start, stop = bounds
            neighbourhood = self._neighbourhood(
                points[start:stop], block_tree, dam_tree, centers, logs, weights, dams
            )
            velocity, iterations, converged = self._solve(
                neighbourhood, stop - start, geometry.mean_spacing
            )
            return start, stop, velocity, iterations, converged

        iterations = 0
        converged = True
        flat = field.reshape(-1, 3)
        with worker_pool(self.executor, self.number_of_threads) as executor:
            for start, stop, velocity, used, done in executor.map(work, chunks):
                flat[start:stop] = velocity
                iterations = max(iterations, used)
                converged = converged and done

        if not converged:
            logger.warning(
                f"{type(self).__name__} hit its iteration cap ({iterations}) before "
                "converging, keeping the last estimate."
            )
        return AggregationResult(geometry.with_data(field), iterations, converged)

    def _neighbourhood(
        self,
        points: NDArray[np.float64],
        block_tree: cKDTree,
        dam_tree: Optional[cKDTree],
        centers: NDArray[np.float64],
        logs: NDArray[np.float64],
        weights: NDArray[np.float64],
        dams: NDArray[np.bool_],
    ) -> _Neighbourhood:
        neighbours = block_tree.query_ball_point(points, r=self.neighborhood_radius)
        counts = np.array([len(n) for n in neighbours], dtype=np.intp)
        voxel = np.repeat(np.arange(points.shape[0], dtype=np.intp), counts)
        if voxel.size:
            block = np.concatenate([np.asarray(n, dtype=np.intp) for n in neighbours])
        else:
            block = np.zeros(0, dtype=np.intp)

        distances = np.linalg.norm(points[voxel] - centers[block], axis=-1)
        if dam_tree is not None:
            nearest_dam, _ = dam_tree.query(points)
            allowed = dams[block] | (distances <= nearest_dam[voxel] + DAM_TOLERANCE)
            voxel, block, distances = voxel[allowed], block[allowed], distances[allowed]

        spatial_weight = weights[block] * np.exp(
            -(distances**2) / (2 * self.extrapolation_sigma**2)
        )
        velocity = velocities_at(logs[block], points[voxel])
        return _Neighbourhood(voxel, block, spatial_weight, velocity)

    @staticmethod
    def _weighted_mean(
        neighbourhood: _Neighbourhood, weight: NDArray[np.float64], size: int
    ) -> NDArray[np.float64]:
        total = np.bincount(neighbourhood.voxel, weights=weight, minlength=size)
        mean = np.zeros((size, 3))
        for axis in range(3):
            mean[:, axis] = np.bincount(
                neighbourhood.voxel,
                weights=weight * neighbourhood.velocity[:, axis],
                minlength=size,
            )
        covered = total > 0
        mean[covered] /= total[covered, None]
        mean[~covered] = 0.0
        return mean

    @abstractmethod
    def _solve(
        self, neighbourhood: _Neighbourhood, size: int, mean_spacing: float
    ) -> Tuple[NDArray[np.float64], int, bool]:
        """Velocities of ``size`` voxels from their neighbourhood pairs."""


class BalooAggregator(BaseAggregator):
    """Single-pass Gaussian kernel blend, neighbourhood of three sigmas."""

    def __init__(
        self,
        extrapolation_sigma: float,
        number_of_threads: int = 1,
        executor: Optional[Executor] = None,
    ):
        super().__init__(
            extrapolation_sigma=extrapolation_sigma,
            neighborhood_radius=3.0 * extrapolation_sigma,
            number_of_threads=number_of_threads,
            executor=executor,
        )

    def _solve(self, neighbourhood, size, mean_spacing):
        return self._weighted_mean(neighbourhood, neighbourhood.spatial_weight, size), 1, True


class MEstimateAggregator(BaseAggregator):
    """Iteratively re-weighted kernel fit with Welsch outlier rejection.

    Parameters
    ----------
    extrapolation_sigma : float
        Gaussian kernel sigma, physical units.
    neighborhood_radius : float
        Neighbourhood radius, physical units.
    outlier_sigma : float
        Residuals beyond this many robust standard deviations are strongly
        down-weighted.
    convergence_threshold : float
        Stop once the largest velocity change is below this many mean voxel
        spacings.
    maximum_iterations : int
        Re-weighting cap.
    number_of_threads : int
        Worker threads for the voxel chunks.
    executor : Executor, optional
        Shared worker pool.
    """

    def __init__(
        self,
        extrapolation_sigma: float,
        neighborhood_radius: float,
        outlier_sigma: float,
        convergence_threshold: float,
        maximum_iterations: int,
        number_of_threads: int = 1,
        executor: Optional[Executor] = None,
    ):
        super().__init__(
            extrapolation_sigma, neighborhood_radius, number_of_threads, executor
        )
        self.outlier_sigma = float(outlier_sigma)
        self.convergence_threshold = float(convergence_threshold)
        self.maximum_iterations = int(maximum_iterations)

    def _solve(self, neighbourhood, size, mean_spacing):
        spatial = neighbourhood.spatial_weight
        velocity = self._weighted_mean(neighbourhood, spatial, size)
        if neighbourhood.voxel.size == 0 or self.outlier_sigma == 0:
            return velocity, 1, True

        tolerance = self.convergence_threshold * mean_spacing
        total = np.bincount(neighbourhood.voxel, weights=spatial, minlength=size)
        covered = total > 0
        for iteration in range(1, self.maximum_iterations + 1):
            residual = np.linalg.norm(
                neighbourhood.velocity - velocity[neighbourhood.voxel], axis=-1
            )
            squared = np.bincount(
                neighbourhood.voxel, weights=spatial * residual**2, minlength=size
            )
            variance = np.zeros(size)
            variance[covered] = squared[covered] / total[covered]
            scale = self.outlier_sigma * np.sqrt(variance)[neighbourhood.voxel]
            robust = np.ones_like(spatial)
            spread = scale > 0
            robust[spread] = np.exp(-(residual[spread] ** 2) / (2 * scale[spread] ** 2))

            updated = self._weighted_mean(neighbourhood, spatial * robust, size)
            change = float(np.max(np.linalg.norm(updated - velocity, axis=-1)))
            velocity = updated
            if change < tolerance:
                logger.debug(f"M-estimation converged after {iteration} iterations.")
                return velocity, iteration, True

        return velocity, self.maximum_iterations, False


def make_aggregator(
    parameters: RegistrationParameters,
    mean_spacing: float,
    executor: Optional[Executor] = None,
) -> BaseAggregator:
    """Build the configured aggregator for a level with ``mean_spacing``."""
    sigma = parameters.extrapolation_sigma * mean_spacing
    if parameters.aggregator is AggregatorKind.BALOO:
        return BalooAggregator(
            sigma, number_of_threads=parameters.threads, executor=executor
        )
    return MEstimateAggregator(
        extrapolation_sigma=sigma,
        neighborhood_radius=sigma * parameters.neighborhood_approximation,
        outlier_sigma=parameters.outlier_sigma,
        convergence_threshold=parameters.m_estimate_convergence_threshold,
        maximum_iterations=parameters.m_estimate_maximum_iterations,
        number_of_threads=parameters.threads,
        executor=executor,
    )

