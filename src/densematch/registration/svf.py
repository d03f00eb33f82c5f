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

"""Stationary velocity fields, displacement fields and resampling.

Vector fields are :class:`~densematch.volume.Volume` objects whose trailing
axis holds physical-space vectors. A displacement field ``u`` maps a point
``p`` of its grid to ``p + u(p)``.
"""

# Standard Library Imports
import logging
import math

# Third Party Imports
import numpy as np
from numpy.typing import NDArray
from scipy.ndimage import gaussian_filter, map_coordinates

# Local Imports
from densematch.volume import Volume

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

#: Continuous indices this close to an integer are snapped onto it.
SNAP_TOLERANCE = 1e-9


def _require_vector(field: Volume) -> None:
    if not field.is_vector:
        raise ValueError("Expected a vector field with a trailing axis of length 3.")


def to_index_vectors(field: Volume) -> NDArray[np.float64]:
    """Express the physical vectors of ``field`` in voxel units of its grid."""
    inverse = np.linalg.inv(field.direction)
    return (np.asarray(field.data, dtype=np.float64) @ inverse.T) / field.spacing


def _snap(coordinates: NDArray[np.float64]) -> NDArray[np.float64]:
    rounded = np.round(coordinates)
    return np.where(np.abs(coordinates - rounded) < SNAP_TOLERANCE, rounded, coordinates)


def sample_indices(
    data: NDArray, indices: NDArray[np.float64], cval: float = np.nan, mode: str = "constant"
) -> NDArray[np.float64]:
    """Trilinear interpolation of ``data`` at continuous ``indices`` ``(..., 3)``."""
    indices = _snap(np.asarray(indices, dtype=np.float64))
    coordinates = np.moveaxis(indices, -1, 0)
    return map_coordinates(
        np.asarray(data, dtype=np.float64),
        coordinates,
        order=1,
        mode=mode,
        cval=cval,
    )


def interpolate(
    volume: Volume, points: NDArray[np.float64], cval: float = np.nan
) -> NDArray[np.float64]:
    """Sample a scalar volume at physical ``points`` ``(..., 3)``.

    Points outside the volume receive ``cval``.
    """
    return sample_indices(volume.data, volume.physical_to_index(points), cval=cval)


def exponentiate(velocity: Volume) -> Volume:
    """Displacement field of ``exp(velocity)`` by scaling and squaring.

    The field is divided by ``2**N`` so that its largest vector is at most
    half the smallest voxel spacing, then composed with itself ``N`` times
    (``u <- u + u(x + u)``). A zero field gives an exactly zero result.

    Parameters
    ----------
    velocity : Volume
        Stationary velocity field.

    Returns
    -------
    Volume
        Displacement field on the same grid.
    """
    _require_vector(velocity)
    norms = np.linalg.norm(np.asarray(velocity.data, dtype=np.float64), axis=-1)
    max_norm = float(norms.max())
    if max_norm == 0.0:
        return velocity.zeros_field()

    steps = max(0, math.ceil(math.log2(max_norm / (0.5 * velocity.spacing.min()))))
    displacement = scale_field(velocity, 1.0 / 2**steps)
    for _ in range(steps):
        displacement = compose_displacement(displacement, displacement)

    logger.debug(f"Exponentiated velocity field with {steps} squaring steps.")
    return displacement


def compose_displacement(outer: Volume, inner: Volume) -> Volume:
    """Displacement of ``outer o inner`` on the grid of ``inner``.

    ``x -> x + inner(x) + outer(x + inner(x))``.
    """
    _require_vector(outer)
    _require_vector(inner)
    points = inner.physical_grid() + inner.data
    indices = outer.physical_to_index(points)
    warped = np.stack(
        [
            sample_indices(outer.data[..., axis], indices, mode="nearest")
            for axis in range(3)
        ],
        axis=-1,
    )
    return inner.with_data(np.asarray(inner.data, dtype=np.float64) + warped)


def resample_image(
    image: Volume, displacement: Volume, default_value: float = 0.0
) -> Volume:
    """Warp a scalar volume onto the grid of ``displacement``.

    The output at ``p`` is ``image(p + displacement(p))``; samples outside
    ``image`` take ``default_value``.
    """
    _require_vector(displacement)
    if image.is_vector:
        raise ValueError("Only scalar volumes can be resampled.")

    if image.same_geometry(displacement):
        indices = np.indices(image.shape, dtype=np.float64)
        indices = np.moveaxis(indices, 0, -1) + to_index_vectors(displacement)
    else:
        points = displacement.physical_grid() + displacement.data
        indices = image.physical_to_index(points)
    data = sample_indices(image.data, indices, cval=default_value)
    return displacement.with_data(data)


def resample_to_grid(image: Volume, geometry: Volume, default_value: float = 0.0) -> Volume:
    """Resample a scalar volume onto another grid with the identity transform."""
    return resample_image(image, geometry.zeros_field(), default_value=default_value)


def resample_vector_field(field: Volume, geometry: Volume) -> Volume:
    """Carry a vector field onto the grid of ``geometry``.

    Only the sampling grid changes, vectors keep their physical values. Points
    outside the source grid take the nearest edge value.
    """
    _require_vector(field)
    if field.same_geometry(geometry):
        return geometry.with_data(np.array(field.data, dtype=np.float64))

    indices = field.physical_to_index(geometry.physical_grid())
    data = np.stack(
        [
            sample_indices(field.data[..., axis], indices, mode="nearest")
            for axis in range(3)
        ],
        axis=-1,
    )
    return Volume(
        data=data,
        origin=geometry.origin,
        spacing=geometry.spacing,
        direction=geometry.direction,
    )


def smooth_field(field: Volume, sigma: float) -> Volume:
    """Gaussian smoothing of each component, ``sigma`` in physical units."""
    _require_vector(field)
    if sigma <= 0:
        return field
    sigmas = sigma / field.spacing
    data = np.stack(
        [
            gaussian_filter(np.asarray(field.data[..., axis], dtype=np.float64), sigmas, mode="nearest")
            for axis in range(3)
        ],
        axis=-1,
    )
    return field.with_data(data)


def scale_field(field: Volume, factor: float) -> Volume:
    return field.with_data(np.asarray(field.data, dtype=np.float64) * factor)


def rms_norm_voxels(field: Volume) -> float:
    """Root mean square vector length, in voxels of the field's grid."""
    _require_vector(field)
    norms = np.linalg.norm(to_index_vectors(field), axis=-1)
    return float(np.sqrt(np.mean(norms**2)))
