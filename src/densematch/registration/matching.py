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

"""Per-block correspondence search."""

# Standard Library Imports
import logging
from collections import Counter
from concurrent.futures import Executor, as_completed
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

# Third Party Imports
import numpy as np
from numpy.typing import NDArray

# Local Imports
from densematch.registration.blocks import Block
from densematch.registration.control import (
    CancellationToken,
    SubProgressReporter,
    worker_pool,
)
from densematch.registration.errors import BlockMatchingError
from densematch.registration.metrics import BlockMetric
from densematch.registration.optimizers import BlockOptimizer
from densematch.registration.parameters import TransformKind
from densematch.registration.svf import interpolate
from densematch.registration.transforms import (
    LocalTransform,
    apply_matrix,
    parameter_count,
    parameters_to_matrix,
)
from densematch.volume import Volume

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

#: Per-block numerical failures that drop the block instead of the run.
RECOVERABLE_ERRORS = (
    BlockMatchingError,
    ValueError,
    FloatingPointError,
    np.linalg.LinAlgError,
)


@dataclass
class MatchingResult:
    """Block transforms found by one matching pass."""

    transforms: List[LocalTransform] = field(default_factory=list)
    #: Number of blocks dropped because their search failed.
    dropped: int = 0
    #: Whether the pass stopped early on cancellation.
    cancelled: bool = False
    #: Count of each optimizer stop condition.
    stop_conditions: Counter = field(default_factory=Counter)

    @property
    def stop_condition(self) -> str:
        """Most frequent optimizer stop condition, for diagnostics."""
        if not self.stop_conditions:
            return "No block matched"
        message, count = self.stop_conditions.most_common(1)[0]
        total = sum(self.stop_conditions.values())
        return f"{message} ({count}/{total} blocks)"


class BlockMatcher:
    """Search the best local transform of every block.

    Parameters
    ----------
    kind : TransformKind
        Parametric family of the block transforms.
    metric : BlockMetric
        Similarity cost.
    optimizer : BlockOptimizer
        Search strategy, shared by all worker threads.
    number_of_threads : int
        Worker threads.
    cancellation : CancellationToken, optional
        Polled before each block.
    executor : Executor, optional
        Shared worker pool; a pool of ``number_of_threads`` workers is
        created per pass when omitted.
    """

    def __init__(
        self,
        kind: TransformKind,
        metric: BlockMetric,
        optimizer: BlockOptimizer,
        number_of_threads: int = 1,
        cancellation: Optional[CancellationToken] = None,
        executor: Optional[Executor] = None,
    ):
        self.kind = kind
        self.metric = metric
        self.optimizer = optimizer
        self.number_of_threads = max(1, int(number_of_threads))
        self.cancellation = cancellation or CancellationToken()
        self.executor = executor

    def match_block(
        self, block: Block, fixed: Volume, moving: Volume, kissing: bool = False
    ) -> Tuple[LocalTransform, str]:
        """Find the transform of a single block and the optimizer stop condition.

        With ``kissing`` each candidate ``T`` compares ``moving(T p)`` against
        ``fixed(T^-1 p)``; otherwise ``moving(T p)`` against the fixed block.

        Raises
        ------
        BlockMatchingError
            If no candidate gives a valid evaluation.
        """
        points = fixed.index_to_physical(block.voxel_indices())
        fixed_samples = np.asarray(fixed.data[block.slices], dtype=np.float64).ravel()

        def cost(parameters: NDArray[np.float64]) -> float:
            matrix = parameters_to_matrix(self.kind, parameters, block.center)
            moving_samples = interpolate(moving, apply_matrix(matrix, points))
            if kissing:
                inverse = np.linalg.inv(matrix)
                samples = interpolate(fixed, apply_matrix(inverse, points))
                return self.metric.evaluate(samples, moving_samples)
            return self.metric.evaluate(fixed_samples, moving_samples)

        result = self.optimizer.optimize(cost, parameter_count(self.kind))
        if not self.metric.is_valid(result.cost):
            raise BlockMatchingError(
                f"Block at {block.start} has no valid evaluation ({result.stop_condition})."
            )

        transform = LocalTransform(
            center=block.center,
            matrix=parameters_to_matrix(self.kind, result.parameters, block.center),
            kind=self.kind,
            parameters=result.parameters,
            score=result.cost,
            weight=self.metric.weight(result.cost),
            dam=block.dam,
        )
        return transform, result.stop_condition

    def match(
        self,
        fixed: Volume,
        moving: Volume,
        blocks: Sequence[Block],
        kissing: bool = False,
        progress: Optional[SubProgressReporter] = None,
    ) -> MatchingResult:
        """Match every block on the worker pool.

        Failed blocks are dropped. On cancellation blocks not yet started are
        skipped and the transforms found so far are returned.

        Parameters
        ----------
        fixed : Volume
            Volume the blocks were sampled on.
        moving : Volume
            Volume searched into.
        blocks : sequence of Block
            Blocks to match.
        kissing : bool
            Score candidates half-way between the two volumes.
        progress : SubProgressReporter, optional
            Receives the completed fraction of the pass.

        Returns
        -------
        MatchingResult
            Transforms in block order, with diagnostics.
        """
        result = MatchingResult()
        if len(blocks) == 0:
            logger.warning("No blocks to match.")
            if progress is not None:
                progress.finish()
            return result

        def work(block: Block):
            if self.cancellation.cancelled:
                return None
            return self.match_block(block, fixed, moving, kissing=kissing)

        found = {}
        completed = 0
        with worker_pool(self.executor, self.number_of_threads) as executor:
            futures = {executor.submit(work, block): index for index, block in enumerate(blocks)}
            for future in as_completed(futures):
                index = futures[future]
                completed += 1
                if progress is not None:
                    progress.update(completed / len(blocks))
                try:
                    outcome = future.result()
                except RECOVERABLE_ERRORS as error:
                    result.dropped += 1
                    logger.debug(f"Dropped block {blocks[index].start}: {error}")
                    continue
                if outcome is None:
                    result.cancelled = True
                    continue
                transform, stop_condition = outcome
                found[index] = transform
                result.stop_conditions[stop_condition] += 1

        result.transforms = [found[index] for index in sorted(found)]
        result.cancelled = result.cancelled or self.cancellation.cancelled
        logger.info(
            f"Matched {len(result.transforms)} of {len(blocks)} blocks, "
            f"{result.dropped} dropped. Stop condition: {result.stop_condition}."
        )
        return result
