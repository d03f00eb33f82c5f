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

"""Iterative block-matching registration of one pyramid level.

Every iteration warps the inputs through the current transform, matches the
blocks, aggregates the block transforms into an update field ``u``, composes
``v <- v + u`` and regularises ``v`` with a Gaussian. The loop ends when the
update becomes smaller than ``minimal_transform_error`` voxels, when the
iteration budget is spent, or on cancellation.
"""

# Standard Library Imports
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

# Third Party Imports
import numpy as np

# Local Imports
from densematch.registration.aggregation import BaseAggregator
from densematch.registration.blocks import BlockSampler
from densematch.registration.control import CancellationToken, ProgressReporter
from densematch.registration.matching import BlockMatcher, MatchingResult
from densematch.registration.parameters import RegistrationParameters, SymmetryType
from densematch.registration.svf import (
    exponentiate,
    resample_image,
    resample_to_grid,
    rms_norm_voxels,
    scale_field,
    smooth_field,
)
from densematch.volume import Volume

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass
class LevelResult:
    """Outcome of one pyramid level."""

    #: Velocity field on the level's reference grid.
    velocity: Volume
    #: Iterations whose update was applied.
    iterations: int
    #: Why the loop ended, with the last optimizer stop condition.
    stop_condition: str
    #: Whether the level stopped on cancellation.
    cancelled: bool = False


class BlockMatchingRegistration(ABC):
    """Shared iteration loop of the symmetry variants.

    Parameters
    ----------
    reference : Volume
        Reference volume at this level.
    floating : Volume
        Floating volume at this level.
    parameters : RegistrationParameters
        Run configuration.
    sampler : BlockSampler
        Block sampler configured for this level.
    matcher : BlockMatcher
        Block matcher configured for this level.
    aggregator : BaseAggregator
        Aggregator configured for this level.
    initial_velocity : Volume, optional
        Starting velocity field on the reference grid, zero when omitted.
    cancellation : CancellationToken, optional
        Checked between iterations and forwarded to the matcher.
    progress : ProgressReporter, optional
        Advanced by one unit per iteration.
    mask : Volume, optional
        Reference-grid mask whose zero region adds dam blocks.
    """

    def __init__(
        self,
        reference: Volume,
        floating: Volume,
        parameters: RegistrationParameters,
        sampler: BlockSampler,
        matcher: BlockMatcher,
        aggregator: BaseAggregator,
        initial_velocity: Optional[Volume] = None,
        cancellation: Optional[CancellationToken] = None,
        progress: Optional[ProgressReporter] = None,
        mask: Optional[Volume] = None,
    ):
        self.reference = reference
        self.floating = floating
        self.parameters = parameters
        self.sampler = sampler
        self.matcher = matcher
        self.aggregator = aggregator
        self.cancellation = cancellation or CancellationToken()
        self.progress = progress
        self.mask = mask
        if initial_velocity is None:
            initial_velocity = reference.zeros_field()
        if not initial_velocity.same_geometry(reference):
            raise ValueError("The initial velocity field must lie on the reference grid.")
        self.velocity = initial_velocity

    def run(self) -> LevelResult:
        """Iterate until convergence, budget exhaustion or cancellation."""
        velocity = self.velocity
        elastic_sigma = self.parameters.elastic_sigma * self.reference.mean_spacing
        maximum_iterations = self.parameters.maximum_iterations
        self.prepare()

        reason = f"Reached the maximum of {maximum_iterations} iterations"
        last_condition = "No iteration run"
        iterations = 0
        cancelled = False
        for iteration in range(maximum_iterations):
            if self.cancellation.cancelled:
                cancelled = True
                reason = "Cancelled"
                break

            update, matched = self.iterate(velocity, iteration)
            last_condition = matched.stop_condition
            if matched.cancelled:
                # The partial update of an interrupted pass is discarded.
                cancelled = True
                reason = "Cancelled during block matching"
                break

            velocity = smooth_field(
                velocity.with_data(velocity.data + update.data), elastic_sigma
            )
            iterations += 1
            norm = rms_norm_voxels(update)
            logger.info(
                f"Iteration {iteration + 1}/{maximum_iterations}: update norm "
                f"{norm:.5f} voxels."
            )
            if norm < self.parameters.minimal_transform_error:
                reason = f"Update norm {norm:.5f} below {self.parameters.minimal_transform_error}"
                break

        if self.progress is not None and not cancelled:
            # Converged early, the unused iterations count as done.
            self.progress.advance(maximum_iterations - iterations)

        self.velocity = velocity
        return LevelResult(
            velocity=velocity,
            iterations=iterations,
            stop_condition=f"{reason}; last block search: {last_condition}",
            cancelled=cancelled,
        )

    def prepare(self) -> None:
        """Work done once per level before iterating."""

    def _sub_progress(self, units: float = 1.0):
        if self.progress is None:
            return None
        return self.progress.sub_reporter(units)

    def _match(self, fixed: Volume, moving: Volume, blocks, units: float, kissing=False):
        return self.matcher.match(
            fixed, moving, blocks, kissing=kissing, progress=self._sub_progress(units)
        )

    @abstractmethod
    def iterate(self, velocity: Volume, iteration: int) -> tuple[Volume, MatchingResult]:
        """One matching and aggregation pass.

        Returns
        -------
        update : Volume
            Velocity update on the reference grid.
        matched : MatchingResult
            The matching pass, for diagnostics and cancellation.
        """


class AsymmetricRegistration(BlockMatchingRegistration):
    """Blocks from the reference searched into ``floating o exp(v)``."""

    def prepare(self):
        self.blocks = self.sampler.sample(self.reference, mask=self.mask)

    def iterate(self, velocity, iteration):
        moving = resample_image(self.floating, exponentiate(velocity))
        matched = self._match(self.reference, moving, self.blocks, units=1.0)
        update = self.aggregator.fit(matched.transforms, self.reference).field
        return update, matched


class SymmetricRegistration(BlockMatchingRegistration):
    """Forward and backward searches averaged into one update.

    The backward pass samples blocks on the floating volume and searches them
    into ``reference o exp(-v)``; its update estimates ``-v`` and enters with
    a minus sign.
    """

    def prepare(self):
        self.floating_on_grid = resample_to_grid(self.floating, self.reference)
        self.forward_blocks = self.sampler.sample(self.reference, mask=self.mask)
        self.backward_blocks = self.sampler.sample(self.floating_on_grid)

    def iterate(self, velocity, iteration):
        moving = resample_image(self.floating, exponentiate(velocity))
        forward = self._match(self.reference, moving, self.forward_blocks, units=0.5)
        if forward.cancelled:
            return self.reference.zeros_field(), forward

        backward_moving = resample_image(
            self.reference, exponentiate(scale_field(velocity, -1.0))
        )
        backward = self._match(
            self.floating_on_grid, backward_moving, self.backward_blocks, units=0.5
        )
        forward_update = self.aggregator.fit(forward.transforms, self.reference).field
        backward_update = self.aggregator.fit(backward.transforms, self.reference).field
        update = forward_update.with_data((forward_update.data - backward_update.data) / 2)
        return update, backward if backward.cancelled else forward


class KissingSymmetricRegistration(BlockMatchingRegistration):
    """Half-way registration, both volumes warped towards the mid space.

    ``v`` is half of the full transform; the caller doubles it once all levels
    are done. Blocks are sampled again every iteration on the mean of the two
    warped volumes.
    """

    def iterate(self, velocity, iteration):
        fixed = resample_image(self.reference, exponentiate(scale_field(velocity, -1.0)))
        moving = resample_image(self.floating, exponentiate(velocity))
        mean = fixed.with_data((np.asarray(fixed.data) + np.asarray(moving.data)) / 2)
        blocks = self.sampler.sample(mean, mask=self.mask)
        matched = self._match(fixed, moving, blocks, units=1.0, kissing=True)
        update = self.aggregator.fit(matched.transforms, self.reference).field
        return update, matched


REGISTRATION_METHODS = {
    SymmetryType.ASYMMETRIC: AsymmetricRegistration,
    SymmetryType.SYMMETRIC: SymmetricRegistration,
    SymmetryType.KISSING: KissingSymmetricRegistration,
}


def make_registration_method(symmetry: SymmetryType, **kwargs) -> BlockMatchingRegistration:
    """Instantiate the registration variant for ``symmetry``."""
    return REGISTRATION_METHODS[symmetry](**kwargs)
