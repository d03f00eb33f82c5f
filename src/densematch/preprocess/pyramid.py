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

"""Multi-resolution pyramids of 3-D volumes."""

# Standard Library Imports
import logging
from typing import List

# Third-Party Imports
import numpy as np
from scipy.ndimage import gaussian_filter
from skimage.transform import resize

# Local Imports
from densematch.volume import Volume

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())


def downsample_volume(volume: Volume, factor: int) -> Volume:
    """Smooth and shrink a scalar volume by an integer factor.

    The data is low-pass filtered with a Gaussian of sigma ``0.5 * factor``
    voxels, then resized with linear interpolation. Spacing grows by the
    actual shrink ratio of each axis, and the origin moves so that the new
    grid covers the same physical extent as the original one.

    Parameters
    ----------
    volume : Volume
        The scalar volume to downsample.
    factor : int
        Shrink factor, 1 returns a float copy of the input.

    Returns
    -------
    Volume
        The downsampled volume.
    """
    if volume.is_vector:
        raise ValueError("Only scalar volumes can be downsampled.")
    if factor < 1:
        raise ValueError(f"Downsampling factor must be >= 1, got {factor}.")

    data = np.asarray(volume.data, dtype=np.float64)
    if factor == 1:
        return volume.with_data(data.copy())

    smoothed = gaussian_filter(data, sigma=0.5 * factor)
    old_shape = np.array(volume.shape, dtype=np.float64)
    new_shape = tuple(max(1, int(round(n / factor))) for n in volume.shape)

    # linear interpolation, the Gaussian above already handles aliasing
    resized = resize(
        smoothed, new_shape, order=1, preserve_range=True, anti_aliasing=False
    )

    new_spacing = volume.spacing * old_shape / np.array(new_shape, dtype=np.float64)
    new_origin = volume.origin + volume.direction @ ((new_spacing - volume.spacing) / 2)
    return Volume(
        data=resized,
        origin=new_origin,
        spacing=new_spacing,
        direction=volume.direction,
    )


def build_pyramid(volume: Volume, levels: int) -> List[Volume]:
    """Build a coarse-to-fine pyramid.

    Parameters
    ----------
    volume : Volume
        Full resolution scalar volume.
    levels : int
        Number of levels ``K``.

    Returns
    -------
    list of Volume
        ``K`` volumes, index 0 is the coarsest (factor ``2**(K-1)``) and index
        ``K-1`` the full resolution.

    Raises
    ------
    TypeError
        If ``volume`` is not a :class:`Volume`.
    ValueError
        If ``levels`` is smaller than 1.
    """
    if not isinstance(volume, Volume):
        raise TypeError(f"Expected a Volume, got {type(volume).__name__}.")
    if levels < 1:
        raise ValueError(f"A pyramid needs at least one level, got {levels}.")

    pyramid = []
    for level in range(levels):
        factor = 2 ** (levels - 1 - level)
        downsampled = downsample_volume(volume, factor)
        logger.info(
            f"Pyramid level {level}: factor {factor}, shape {downsampled.shape}, "
            f"spacing {np.round(downsampled.spacing, 4).tolist()}."
        )
        pyramid.append(downsampled)
    return pyramid
