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
import os
from pathlib import Path
from typing import Union

# Third Party Imports
import ants
import numpy as np
import tifffile

# Local Imports
from densematch.volume import Volume

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

TIFF_SUFFIXES = (".tif", ".tiff")


def write_volume(
    volume: Volume, path: Union[str, os.PathLike], compress: bool = True
) -> Path:
    """Write a scalar volume or vector field to disk with its geometry.

    TIFF files are written with tifffile and carry the geometry in their JSON
    description. Every other suffix goes through ANTs; with ``compress`` a
    ``.nii`` target becomes ``.nii.gz``.

    Parameters
    ----------
    volume : Volume
        The volume to write.
    path : str or os.PathLike
        Destination file.
    compress : bool
        Whether to compress the output.

    Returns
    -------
    Path
        The path actually written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.suffix.lower() in TIFF_SUFFIXES:
        tifffile.imwrite(
            str(path),
            np.ascontiguousarray(volume.data, dtype=np.float32),
            photometric="minisblack",
            compression="zlib" if compress else None,
            metadata={
                "origin": volume.origin.tolist(),
                "spacing": volume.spacing.tolist(),
                "direction": volume.direction.tolist(),
            },
        )
    else:
        if compress and path.name.lower().endswith(".nii"):
            path = path.with_name(path.name + ".gz")
        ants.image_write(volume.to_ants(), str(path))

    logger.info(f"Volume {volume.data.shape} written to: {path}")
    return path
