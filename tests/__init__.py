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

"""Shared helpers producing small synthetic volumes for the test suite."""

from dataclasses import replace

import numpy as np
from scipy.ndimage import gaussian_filter, shift

from densematch.registration.parameters import RegistrationParameters
from densematch.volume import Volume


def textured_volume(
    shape=(24, 24, 24), seed: int = 0, sigma: float = 2.0, scale: float = 100.0, **geometry
) -> Volume:
    """Smooth random texture rescaled to ``[0, scale]``.

    Parameters
    ----------
    shape : tuple of int
        Grid size.
    seed : int
        Seed of the random generator, identical seeds give identical volumes.
    sigma : float
        Gaussian smoothing of the white noise, in voxels.
    scale : float
        Intensity range.
    **geometry
        ``origin``, ``spacing`` or ``direction`` forwarded to Volume.

    Returns
    -------
    Volume
        The textured volume.
    """
    rng = np.random.default_rng(seed)
    data = gaussian_filter(rng.standard_normal(shape), sigma)
    data = (data - data.min()) / (data.max() - data.min()) * scale
    return Volume(data=data, **geometry)


def shifted_volume(volume: Volume, offset) -> Volume:
    """Translate the content by ``offset`` voxels: ``out[x] = in[x - offset]``."""
    data = shift(volume.data, offset, order=1, mode="nearest")
    return volume.with_data(data)


def fast_parameters(**overrides) -> RegistrationParameters:
    """Parameters small enough for end-to-end tests on 24^3 volumes."""
    parameters = RegistrationParameters(
        block_size=5,
        block_spacing=3,
        stdev_threshold=1.0,
        percentage_kept=0.3,
        maximum_iterations=2,
        optimizer_maximum_iterations=60,
        extrapolation_sigma=2.0,
        elastic_sigma=1.0,
        number_of_pyramid_levels=2,
        number_of_threads=2,
    )
    return replace(parameters, **overrides)
