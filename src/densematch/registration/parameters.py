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

"""Configuration for the pyramidal block-matching registration.

All values live in a single immutable :class:`RegistrationParameters` object
that is handed to the bridge. Distances given "in voxels" are converted to
physical units at each pyramid level using that level's mean voxel spacing.
"""

# Standard Library Imports
import logging
import os
from dataclasses import dataclass, fields
from enum import Enum
from typing import Optional

# Third Party Imports

# Local Imports

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


class SymmetryType(Enum):
    """How correspondences are searched between the two volumes."""

    #: Blocks from the reference, searched into the floating volume.
    ASYMMETRIC = "asymmetric"
    #: Independent forward and backward searches, averaged.
    SYMMETRIC = "symmetric"
    #: A single half-way transform per block pair.
    KISSING = "kissing"


class TransformKind(Enum):
    """Parametric family of the per-block transforms."""

    TRANSLATION = "translation"
    RIGID = "rigid"
    AFFINE = "affine"


class MetricKind(Enum):
    """Block similarity metric."""

    MEAN_SQUARES = "mean_squares"
    CORRELATION = "correlation"
    SQUARED_CORRELATION = "squared_correlation"


class OptimizerKind(Enum):
    """Per-block search strategy."""

    #: Every translation on a regular grid (translation only).
    EXHAUSTIVE = "exhaustive"
    #: Bound-constrained derivative-free search (Powell).
    BOUNDED = "bounded"


class AggregatorKind(Enum):
    """Strategy fusing block transforms into a dense velocity field."""

    #: Iteratively re-weighted, outlier-rejecting fit.
    M_ESTIMATOR = "m_estimator"
    #: Single-pass Gaussian kernel blend.
    BALOO = "baloo"


@dataclass(frozen=True)
class RegistrationParameters:
    """Immutable parameter set for one registration run."""

    # (1) strategies
    symmetry: SymmetryType = SymmetryType.ASYMMETRIC
    transform: TransformKind = TransformKind.TRANSLATION
    metric: MetricKind = MetricKind.SQUARED_CORRELATION
    optimizer: OptimizerKind = OptimizerKind.BOUNDED
    aggregator: AggregatorKind = AggregatorKind.BALOO

    # (2) block sampling - sizes and stride in voxels.
    block_size: int = 5
    block_spacing: int = 2
    # Blocks whose intensity standard deviation is below this are discarded.
    stdev_threshold: float = 5.0
    # Fraction of the remaining blocks kept, highest variance first.
    percentage_kept: float = 0.8

    # (3) iterations
    maximum_iterations: int = 10
    minimal_transform_error: float = 0.01
    optimizer_maximum_iterations: int = 100

    # (4) search radii. Translations in voxels, angles in degrees.
    search_radius: float = 2.0
    search_angle_radius: float = 5.0
    search_skew_radius: float = 5.0
    search_scale_radius: float = 0.1
    final_radius: float = 0.001
    step_size: float = 1.0
    translate_upper_bound: float = 50.0
    angle_upper_bound: float = 180.0
    skew_upper_bound: float = 45.0
    scale_upper_bound: float = 3.0

    # (5) aggregation and regularisation, sigmas in voxels at each level.
    extrapolation_sigma: float = 3.0
    elastic_sigma: float = 3.0
    outlier_sigma: float = 3.0
    m_estimate_convergence_threshold: float = 0.01
    m_estimate_maximum_iterations: int = 100
    neighborhood_approximation: float = 2.5
    use_transformation_dam: bool = True
    # Multiple of the extrapolation sigma.
    dam_distance: float = 2.5

    # (6) pyramid
    number_of_pyramid_levels: int = 3
    last_pyramid_level: int = 0

    # (7) threading. None uses every available core.
    number_of_threads: Optional[int] = None

    @property
    def variance_threshold(self) -> float:
        """Block variance threshold, the square of ``stdev_threshold``."""
        return self.stdev_threshold**2

    @property
    def threads(self) -> int:
        """Resolved worker count."""
        if self.number_of_threads is None:
            return os.cpu_count() or 1
        return self.number_of_threads

    @property
    def dam_distance_voxels(self) -> float:
        return self.dam_distance * self.extrapolation_sigma

    def validate(self) -> "RegistrationParameters":
        """Check the parameter set for consistency.

        Returns
        -------
        RegistrationParameters
            ``self``, so calls can be chained.

        Raises
        ------
        TypeError
            If a strategy field does not hold the matching enumeration.
        ValueError
            If any value is out of range or strategies are incompatible.
        """
        for name, enum_type in (
            ("symmetry", SymmetryType),
            ("transform", TransformKind),
            ("metric", MetricKind),
            ("optimizer", OptimizerKind),
            ("aggregator", AggregatorKind),
        ):
            if not isinstance(getattr(self, name), enum_type):
                raise TypeError(
                    f"{name} must be a {enum_type.__name__}, got {getattr(self, name)!r}."
                )

        if self.number_of_pyramid_levels < 1:
            raise ValueError(
                f"number_of_pyramid_levels must be >= 1, got {self.number_of_pyramid_levels}."
            )
        if not 0 <= self.last_pyramid_level < self.number_of_pyramid_levels:
            raise ValueError(
                "last_pyramid_level must be in [0, number_of_pyramid_levels), got "
                f"{self.last_pyramid_level} for {self.number_of_pyramid_levels} levels."
            )
        if not 0.0 < self.percentage_kept <= 1.0:
            raise ValueError(
                f"percentage_kept must be in (0, 1], got {self.percentage_kept}."
            )
        if self.block_size < 1 or self.block_spacing < 1:
            raise ValueError(
                "block_size and block_spacing must be positive, got "
                f"{self.block_size} and {self.block_spacing}."
            )

        non_negative = (
            "stdev_threshold",
            "minimal_transform_error",
            "search_radius",
            "search_angle_radius",
            "search_skew_radius",
            "search_scale_radius",
            "final_radius",
            "translate_upper_bound",
            "angle_upper_bound",
            "skew_upper_bound",
            "scale_upper_bound",
            "elastic_sigma",
            "outlier_sigma",
            "m_estimate_convergence_threshold",
            "neighborhood_approximation",
            "dam_distance",
        )
        for name in non_negative:
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be non-negative, got {getattr(self, name)}.")
        if self.extrapolation_sigma <= 0:
            raise ValueError(
                f"extrapolation_sigma must be positive, got {self.extrapolation_sigma}."
            )
        if self.step_size <= 0:
            raise ValueError(f"step_size must be positive, got {self.step_size}.")

        for name in (
            "maximum_iterations",
            "optimizer_maximum_iterations",
            "m_estimate_maximum_iterations",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1, got {getattr(self, name)}.")
        if self.number_of_threads is not None and self.number_of_threads < 1:
            raise ValueError(
                f"number_of_threads must be positive, got {self.number_of_threads}."
            )

        if (
            self.optimizer is OptimizerKind.EXHAUSTIVE
            and self.transform is not TransformKind.TRANSLATION
        ):
            raise ValueError(
                "Exhaustive search is only available for translation blocks, "
                f"got {self.transform.value}."
            )
        return self

    def describe(self) -> str:
        """One line per field, for the run log."""
        lines = []
        for item in fields(self):
            value = getattr(self, item.name)
            if isinstance(value, Enum):
                value = value.value
            lines.append(f"{item.name}: {value}")
        return "\n".join(lines)
