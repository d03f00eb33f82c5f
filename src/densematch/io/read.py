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
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple, Type, Union
import logging

# Third Party Imports
import ants
import numpy as np
import tifffile

# Local Imports
from densematch.volume import Volume

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

#: Metadata keys used to store the volume geometry in TIFF descriptions.
GEOMETRY_KEYS = ("origin", "spacing", "direction")


@dataclass
class VolumeInfo:
    path: Path
    shape: Tuple[int, ...]
    dtype: Any
    metadata: Dict[str, Any] = field(default_factory=dict)


def _geometry_overrides(
    spacing: Optional[Sequence[float]],
    origin: Optional[Sequence[float]],
    direction: Optional[Any],
) -> Dict[str, Any]:
    overrides = {"spacing": spacing, "origin": origin, "direction": direction}
    return {k: v for k, v in overrides.items() if v is not None}


class Reader(ABC):
    """Abstract strategy for opening a volume."""

    # file suffixes this reader *typically* supports
    SUFFIXES: Tuple[str, ...] = ()

    @classmethod
    def claims(cls, path: Path) -> bool:
        """Lightweight test on the file name, compound suffixes included."""
        name = path.name.lower()
        return any(name.endswith(suffix) for suffix in cls.SUFFIXES)

    @abstractmethod
    def open(
        self,
        path: Path,
        spacing: Optional[Sequence[float]] = None,
        origin: Optional[Sequence[float]] = None,
        direction: Optional[Any] = None,
        **kwargs: Any,
    ) -> Tuple[Volume, VolumeInfo]:
        """Return the volume and its VolumeInfo.

        Geometry arguments, when given, override what the file stores.
        """


class AntsReader(Reader):
    """Reader for medical formats through ANTs, geometry included."""

    SUFFIXES = (".nii", ".nii.gz", ".nrrd", ".mha", ".mhd")

    def open(self, path, spacing=None, origin=None, direction=None, **kwargs):
        """Open a NIfTI/NRRD/MetaImage file.

        Parameters
        ----------
        path : Path
            The path to the image file.
        spacing, origin, direction : optional
            Geometry overrides.
        **kwargs : dict
            Additional keyword arguments passed to ants.image_read.
        Returns
        -------
        volume : Volume
            The loaded volume with its physical geometry.
        info : VolumeInfo
            Metadata about the loaded image.
        Raises
        ------
        ValueError
            If the image is not 3-D.
        """
        image = ants.image_read(str(path), **kwargs)
        volume = Volume.from_ants(image)
        overrides = _geometry_overrides(spacing, origin, direction)
        if overrides:
            volume = Volume(
                data=volume.data,
                origin=overrides.get("origin", volume.origin),
                spacing=overrides.get("spacing", volume.spacing),
                direction=overrides.get("direction", volume.direction),
            )
        info = VolumeInfo(
            path=path,
            shape=tuple(volume.data.shape),
            dtype=volume.data.dtype,
            metadata={"pixeltype": image.pixeltype, "components": image.components},
        )
        logger.info(f"Loaded {path.name} with ANTs.")
        return volume, info


class TiffReader(Reader):
    """Reader for TIFF volumes using tifffile.

    Geometry written by :func:`densematch.io.write.write_volume` is read back
    from the JSON image description; unit spacing is assumed otherwise.
    """

    SUFFIXES = (".tif", ".tiff")

    def open(self, path, spacing=None, origin=None, direction=None, **kwargs):
        with tifffile.TiffFile(str(path)) as tf:
            data = tf.asarray(**kwargs)
            shaped = tf.shaped_metadata or ()
            stored = dict(shaped[0]) if shaped else {}

        geometry = {k: stored[k] for k in GEOMETRY_KEYS if k in stored}
        geometry.update(_geometry_overrides(spacing, origin, direction))
        volume = Volume(
            data=data,
            origin=geometry.get("origin"),
            spacing=geometry.get("spacing"),
            direction=geometry.get("direction"),
        )
        info = VolumeInfo(
            path=path, shape=tuple(data.shape), dtype=data.dtype, metadata=stored
        )
        logger.info(f"Loaded {path.name} as NumPy array.")
        return volume, info


class NumpyReader(Reader):
    SUFFIXES = (".npy",)

    def open(self, path, spacing=None, origin=None, direction=None, **kwargs):
        data = np.load(str(path), **kwargs)
        volume = Volume.from_numpy(
            data, spacing=spacing, origin=origin, direction=direction
        )
        info = VolumeInfo(path=path, shape=tuple(data.shape), dtype=data.dtype)
        logger.info(f"Loaded {path.name} as NumPy array.")
        return volume, info


class VolumeOpener:
    """Generic volume opener that selects an appropriate reader."""

    def __init__(self, readers: Optional[Iterable[Type[Reader]]] = None) -> None:

        # Registry order is priority order
        self._readers: Tuple[Type[Reader], ...] = tuple(
            readers or (AntsReader, TiffReader, NumpyReader)
        )

    def open(
        self,
        path: Union[str, os.PathLike],
        spacing: Optional[Sequence[float]] = None,
        origin: Optional[Sequence[float]] = None,
        direction: Optional[Any] = None,
        **kwargs: Any,
    ) -> Tuple[Volume, VolumeInfo]:
        """Open a volume file with the appropriate reader.

        Parameters
        ----------
        path : str or os.PathLike
            Path to the volume file.
        spacing, origin, direction : optional
            Geometry overrides passed to the reader.
        **kwargs : dict
            Additional keyword arguments passed to the reader's `open` method.
        Returns
        -------
        volume : Volume
            The loaded volume.
        info : VolumeInfo
            Metadata about the loaded volume.
        Raises
        ------
        FileNotFoundError
            If the specified path does not exist.
        ValueError
            If no suitable reader is found for the file.
        """
        p = Path(path)
        if not p.exists():
            logger.error(f"File {p} does not exist")
            raise FileNotFoundError(p)

        geometry = {"spacing": spacing, "origin": origin, "direction": direction}

        # 1) Extension-based selection
        logger.info(f"Opening {p}")
        claimed = [reader_cls for reader_cls in self._readers if reader_cls.claims(p)]
        for reader_cls in claimed:
            try:
                logger.info(f"Using reader: {reader_cls.__name__}.")
                return reader_cls().open(p, **geometry, **kwargs)
            except (OSError, ValueError, RuntimeError) as error:
                logger.warning(f"{reader_cls.__name__} failed on {p}: {error}")

        # 2) Fallback: try readers that did not claim the file
        logger.info(f"No suitable reader found for {p}. Attempting fallback readers.")
        for reader_cls in self._readers:
            if reader_cls in claimed:
                continue
            try:
                return reader_cls().open(p, **geometry, **kwargs)
            except (OSError, ValueError, RuntimeError) as error:
                logger.debug(f"{reader_cls.__name__} cannot read {p}: {error}")

        logger.error(f"No suitable reader found for {p}")
        raise ValueError(f"No suitable reader found for: {p}")


def read_volume(path: Union[str, os.PathLike], **kwargs: Any) -> Volume:
    """Open ``path`` with the default reader registry and return the volume."""
    volume, _ = VolumeOpener().open(path, **kwargs)
    return volume
