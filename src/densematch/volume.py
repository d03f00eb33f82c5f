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

"""Dense 3-D volumes with physical geometry.

A :class:`Volume` couples a numpy array with the index-to-physical mapping
(origin, spacing, direction cosines) that every stage of the registration
relies on. Scalar volumes have shape ``(i, j, k)``; vector volumes (velocity
and displacement fields) carry an extra trailing axis of length 3 holding
physical-space vectors.
"""

# Standard Library Imports
import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

# Third Party Imports
import ants
import numpy as np
from numpy.typing import NDArray

# Local Imports

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

#: Tolerance used when comparing geometries.
GEOMETRY_TOLERANCE = 1e-6


@dataclass(frozen=True, eq=False)
class Volume:
    """A dense scalar or vector grid with physical metadata.

    Attributes
    ----------
    data : NDArray
        Voxel values, ``(i, j, k)`` for scalar volumes or ``(i, j, k, 3)`` for
        vector volumes.
    origin : NDArray
        Physical position of voxel ``(0, 0, 0)``.
    spacing : NDArray
        Physical distance between voxel centres along each index axis.
    direction : NDArray
        3x3 direction cosine matrix; column ``a`` is the physical direction of
        index axis ``a``.
    """

    data: NDArray[Any]
    origin: NDArray[np.float64] = field(default=None)
    spacing: NDArray[np.float64] = field(default=None)
    direction: NDArray[np.float64] = field(default=None)

    def __post_init__(self):
        data = np.asarray(self.data)
        if data.ndim not in (3, 4) or (data.ndim == 4 and data.shape[-1] != 3):
            raise ValueError(
                f"Volume data must be (i, j, k) or (i, j, k, 3), got {data.shape}."
            )
        if data.size == 0:
            raise ValueError("Volume data must not be empty.")

        origin = np.zeros(3) if self.origin is None else self.origin
        spacing = np.ones(3) if self.spacing is None else self.spacing
        direction = np.eye(3) if self.direction is None else self.direction
        origin = np.asarray(origin, dtype=np.float64).reshape(3)
        spacing = np.asarray(spacing, dtype=np.float64).reshape(3)
        direction = np.asarray(direction, dtype=np.float64).reshape(3, 3)
        if np.any(spacing <= 0):
            raise ValueError(f"Spacing must be strictly positive, got {spacing}.")

        # Frozen dataclass, so bypass __setattr__ for normalisation.
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "origin", origin)
        object.__setattr__(self, "spacing", spacing)
        object.__setattr__(self, "direction", direction)

    @property
    def shape(self) -> tuple[int, int, int]:
        """Spatial grid size."""
        return tuple(int(s) for s in self.data.shape[:3])

    @property
    def is_vector(self) -> bool:
        return self.data.ndim == 4

    @property
    def mean_spacing(self) -> float:
        return float(np.mean(self.spacing))

    def index_to_physical(self, indices: NDArray[Any]) -> NDArray[np.float64]:
        """Map continuous indices ``(..., 3)`` to physical points ``(..., 3)``."""
        indices = np.asarray(indices, dtype=np.float64)
        scaled = indices * self.spacing
        return scaled @ self.direction.T + self.origin

    def physical_to_index(self, points: NDArray[Any]) -> NDArray[np.float64]:
        """Map physical points ``(..., 3)`` to continuous indices ``(..., 3)``."""
        points = np.asarray(points, dtype=np.float64)
        inverse = np.linalg.inv(self.direction)
        return ((points - self.origin) @ inverse.T) / self.spacing

    def physical_grid(self) -> NDArray[np.float64]:
        """Physical coordinates of every voxel centre, shape ``(i, j, k, 3)``."""
        grid = np.stack(
            np.meshgrid(*[np.arange(n) for n in self.shape], indexing="ij"), axis=-1
        )
        return self.index_to_physical(grid)

    def physical_bounds(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """Axis-aligned physical bounding box of the voxel centres."""
        corners = np.array(
            [
                [i, j, k]
                for i in (0, self.shape[0] - 1)
                for j in (0, self.shape[1] - 1)
                for k in (0, self.shape[2] - 1)
            ],
            dtype=np.float64,
        )
        points = self.index_to_physical(corners)
        return points.min(axis=0), points.max(axis=0)

    def same_geometry(self, other: "Volume", tolerance: float = GEOMETRY_TOLERANCE) -> bool:
        """Whether ``other`` lives on exactly the same grid."""
        return (
            self.shape == other.shape
            and np.allclose(self.origin, other.origin, atol=tolerance)
            and np.allclose(self.spacing, other.spacing, atol=tolerance)
            and np.allclose(self.direction, other.direction, atol=tolerance)
        )

    def with_data(self, data: NDArray[Any]) -> "Volume":
        """Return a new volume on this grid holding ``data``."""
        return Volume(
            data=data, origin=self.origin, spacing=self.spacing, direction=self.direction
        )

    def zeros_field(self, dtype=np.float64) -> "Volume":
        """Return an all-zero vector field on this grid."""
        return self.with_data(np.zeros(self.shape + (3,), dtype=dtype))

    def to_ants(self) -> ants.ANTsImage:
        """Convert to an ANTsImage, preserving geometry."""
        return ants.from_numpy(
            np.ascontiguousarray(self.data, dtype=np.float32),
            origin=tuple(float(o) for o in self.origin),
            spacing=tuple(float(s) for s in self.spacing),
            direction=self.direction,
            has_components=self.is_vector,
        )

    @classmethod
    def from_ants(cls, image: ants.ANTsImage) -> "Volume":
        """Build a volume from an ANTsImage, preserving geometry.

        Raises
        ------
        ValueError
            If the image is not 3-D, or a multi-component image does not have
            exactly three components.
        """
        if image.dimension != 3:
            raise ValueError(f"Only 3-D images are supported, got {image.dimension}-D.")

        data = image.numpy()
        if image.has_components:
            # Make sure components are on the last axis: (..., 3)
            if data.ndim == 4 and data.shape[-1] == 3:
                pass
            elif data.ndim == 4 and data.shape[0] == 3:
                data = np.moveaxis(data, 0, -1)
            else:
                raise ValueError(f"Unexpected vector image shape {data.shape}.")

        return cls(
            data=data,
            origin=np.asarray(image.origin),
            spacing=np.asarray(image.spacing),
            direction=np.asarray(image.direction),
        )

    @classmethod
    def from_numpy(
        cls,
        data: NDArray[Any],
        spacing: Optional[Sequence[float]] = None,
        origin: Optional[Sequence[float]] = None,
        direction: Optional[NDArray[Any]] = None,
    ) -> "Volume":
        """Wrap a raw array; omitted geometry defaults to the identity grid."""
        return cls(data=data, origin=origin, spacing=spacing, direction=direction)


def physical_overlap(first: Volume, second: Volume) -> bool:
    """Whether the physical bounding boxes of two volumes intersect."""
    low_a, high_a = first.physical_bounds()
    low_b, high_b = second.physical_bounds()
    return bool(
        np.all(low_a <= high_b + GEOMETRY_TOLERANCE)
        and np.all(low_b <= high_a + GEOMETRY_TOLERANCE)
    )
