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

# Standard Library Imports
import logging
from typing import Optional, Union

# Third Party Imports
import ants
import numpy as np
from numpy.typing import NDArray

# Local Imports
from densematch.volume import Volume

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

ImageLike = Union[Volume, NDArray, ants.ANTsImage]


def to_ants_image(image: ImageLike) -> ants.ANTsImage:
    """Convert a Volume or array to an ANTsImage."""
    if isinstance(image, ants.ANTsImage):
        return image
    if isinstance(image, Volume):
        return image.to_ants()
    if isinstance(image, np.ndarray):
        return ants.from_numpy(np.asarray(image, dtype=np.float32))
    raise TypeError(f"Unsupported image type {type(image)}")


def calculate_metrics(
    fixed: ImageLike,
    moving: ImageLike,
    mask: Optional[ImageLike] = None,
    sampling: str = "regular",
    sampling_pct: float = 1.0,
) -> dict:
    """
    Compute normalized cross-correlation and Mattes Mutual Information between two
    volumes.

    Parameters
    ----------
    fixed : Volume, ndarray or ants.ANTsImage
        The reference (fixed) image.
    moving : Volume, ndarray or ants.ANTsImage
        The image to be compared, usually the registered floating image.
    mask : Volume, ndarray or ants.ANTsImage, optional
        Optional mask applied to both fixed and moving.
    sampling : {'regular', 'random', None}
        Sampling strategy for computing metric.
    sampling_pct : float
        Fraction of voxels to sample (0-1).

    Returns
    -------
    metric_results : dict
        Keys are 'Correlation' and 'MattesMutualInformation'. For the
        correlation coefficient the range is -1 to 1, where 1 indicates
        perfect alignment.
    """
    fixed = to_ants_image(fixed)
    moving = to_ants_image(moving)
    if mask is not None:
        mask = to_ants_image(mask)

    metric_results = {}
    for metric_type in ["Correlation", "MattesMutualInformation"]:
        value = ants.image_similarity(
            fixed,
            moving,
            metric_type=metric_type,
            fixed_mask=mask,
            moving_mask=mask,
            sampling_strategy=sampling,
            sampling_percentage=sampling_pct,
        )
        metric_results[metric_type] = -value
        logger.info(f"Image Metric: {metric_type}, value: {-value}")

    return metric_results


def inspect_velocity_field(
    field: Volume, mask: Optional[NDArray] = None
) -> dict[str, float | int]:
    """Summarise the vector magnitudes of a velocity or displacement field.

    Parameters
    ----------
    field : Volume
        Vector field, physical units.
    mask : ndarray, optional
        Boolean mask restricting the voxels summarised.

    Returns
    -------
    stats : dict
        ``mean``, ``min``, ``std`` and ``max`` of the magnitude in physical
        units, ``max_voxels`` the largest magnitude in voxels of the mean
        spacing, and ``n_vox`` the number of voxels included.

    Raises
    ------
    ValueError
        If ``field`` is not a vector field.
    """
    if not field.is_vector:
        raise ValueError("Expected a vector field.")

    amplitude = np.linalg.norm(np.asarray(field.data, dtype=np.float64), axis=-1)
    if mask is not None:
        amplitude = amplitude[np.asarray(mask, dtype=bool)]
    values = amplitude[np.isfinite(amplitude)].ravel()
    count = int(values.size)
    if count == 0:
        values = np.zeros(1)

    stats = {
        "mean": float(values.mean()),
        "min": float(values.min()),
        "std": float(values.std(ddof=0)),
        "max": float(values.max()),
        "max_voxels": float(values.max() / field.mean_spacing),
        "n_vox": count,
    }
    logger.info(
        f"Field magnitude: mean {stats['mean']:.4f}, max {stats['max']:.4f} "
        f"({stats['max_voxels']:.2f} voxels) over {stats['n_vox']} voxels."
    )
    return stats
