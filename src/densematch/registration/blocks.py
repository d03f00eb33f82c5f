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

"""Block sampling on a single pyramid level."""

# Standard Library Imports
import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

# Third Party Imports
import numpy as np
from numpy.lib.stride_tricks import sliding_window_view
from numpy.typing import NDArray
from scipy.ndimage import distance_transform_edt

# Local Imports
from densematch.volume import Volume

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


@dataclass(frozen=True, eq=False)
class Block:
    """An axis-aligned cubic region of a volume."""

    #: Index of the first voxel of the block.
    start: Tuple[int, int, int]
    #: Voxels per side.
    size: int
    #: Centre in continuous index coordinates.
    center_index: NDArray[np.float64]
    #: Centre in physical coordinates.
    center: NDArray[np.float64]
    #: Intensity variance of the block content.
    variance: float
    #: Whether the block sits near the border or a masked-out region.
    dam: bool = False

    @property
    def slices(self) -> Tuple[slice, slice, slice]:
        return tuple(slice(s, s + self.size) for s in self.start)

    def voxel_indices(self) -> NDArray[np.float64]:
        """Index coordinates of every voxel in the block, shape ``(size**3, 3)``."""
        axes = [np.arange(s, s + self.size, dtype=np.float64) for s in self.start]
        grid = np.meshgrid(*axes, indexing="ij")
        return np.stack([g.ravel() for g in grid], axis=-1)


class BlockSampler:
    """Tile a volume into blocks and keep the informative ones.

    Parameters
    ----------
    block_size : int
        Voxels per block side.
    block_spacing : int
        Stride between block origins, in voxels.
    variance_threshold : float
        Blocks with an intensity variance below this value are discarded.
    percentage_kept : float
        Fraction in ``(0, 1]`` of the remaining blocks to keep, highest
        variance first. Equal variances keep scan order.
    use_dam : bool
        Whether to flag dam blocks.
    dam_distance : float
        A block is a dam when its centre lies closer than this many voxels to
        the volume border or to a zero region of the mask.
    """

    def __init__(
        self,
        block_size: int,
        block_spacing: int,
        variance_threshold: float,
        percentage_kept: float = 1.0,
        use_dam: bool = False,
        dam_distance: float = 0.0,
    ):
        if block_size < 1 or block_spacing < 1:
            raise ValueError(
                f"Block size and spacing must be positive, got {block_size}, {block_spacing}."
            )
        if not 0.0 < percentage_kept <= 1.0:
            raise ValueError(f"percentage_kept must be in (0, 1], got {percentage_kept}.")

        self.block_size = int(block_size)
        self.block_spacing = int(block_spacing)
        self.variance_threshold = float(variance_threshold)
        self.percentage_kept = float(percentage_kept)
        self.use_dam = use_dam
        self.dam_distance = float(dam_distance)

    def tile_variances(self, data: NDArray) -> NDArray[np.float64]:
        """Variance of every tile, shape ``(ni, nj, nk)`` in scan order."""
        size = self.block_size
        if any(n < size for n in data.shape):
            return np.zeros((0, 0, 0))
        windows = sliding_window_view(data, (size, size, size))
        windows = windows[:: self.block_spacing, :: self.block_spacing, :: self.block_spacing]
        return windows.var(axis=(-3, -2, -1))

    def sample(self, volume: Volume, mask: Optional[Volume] = None) -> List[Block]:
        """Select blocks on ``volume``.

        Parameters
        ----------
        volume : Volume
            Scalar volume to tile.
        mask : Volume, optional
            Scalar mask on the same grid; zero voxels act as dam sources.

        Returns
        -------
        list of Block
            Retained blocks in scan order.
        """
        if volume.is_vector:
            raise ValueError("Blocks can only be sampled on scalar volumes.")
        if mask is not None and mask.shape != volume.shape:
            raise ValueError(
                f"Mask shape {mask.shape} does not match volume shape {volume.shape}."
            )

        data = np.asarray(volume.data, dtype=np.float64)
        variances = self.tile_variances(data)
        tile_grid = variances.shape
        variances = variances.ravel()

        candidates = np.flatnonzero(variances >= self.variance_threshold)
        keep = int(math.ceil(self.percentage_kept * candidates.size - 1e-9))
        # Stable sort, equal variances stay in scan order.
        order = np.argsort(-variances[candidates], kind="stable")
        selected = np.sort(candidates[order[:keep]])

        mask_distance = None
        if self.use_dam and mask is not None:
            mask_distance = distance_transform_edt(np.asarray(mask.data) != 0)

        half = (self.block_size - 1) / 2.0
        shape = np.array(volume.shape, dtype=np.float64)
        blocks = []
        for flat in selected:
            tile = np.unravel_index(flat, tile_grid)
            start = tuple(int(t) * self.block_spacing for t in tile)
            center_index = np.array(start, dtype=np.float64) + half
            dam = False
            if self.use_dam:
                border = np.min(np.minimum(center_index, shape - 1 - center_index))
                dam = bool(border < self.dam_distance)
                if not dam and mask_distance is not None:
                    nearest = tuple(int(round(c)) for c in center_index)
                    dam = bool(mask_distance[nearest] < self.dam_distance)
            blocks.append(
                Block(
                    start=start,
                    size=self.block_size,
                    center_index=center_index,
                    center=volume.index_to_physical(center_index),
                    variance=float(variances[flat]),
                    dam=dam,
                )
            )

        logger.info(
            f"Kept {len(blocks)} of {variances.size} blocks "
            f"({candidates.size} above variance threshold, "
            f"{sum(b.dam for b in blocks)} dam)."
        )
        return blocks
