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

"""Local block transforms and their parameterisation.

Every block transform is a 4x4 homogeneous matrix ``H`` in physical
coordinates mapping a reference point ``p`` to the floating point ``H p``.
Parameter vectors are laid out as follows (angles in radians):

- translation: ``[t0, t1, t2]``
- rigid: ``[r0, r1, r2, t0, t1, t2]`` with ``r`` a rotation vector about the
  block centre
- affine: rigid parameters followed by three log-scales and three skew angles,
  composed about the block centre as ``T(c) R K S T(-c)``.
"""

# Standard Library Imports
import logging
from dataclasses import dataclass
from typing import Tuple

# Third Party Imports
import numpy as np
from numpy.typing import NDArray
from scipy.linalg import logm
from scipy.spatial.transform import Rotation

# Local Imports
from densematch.registration.parameters import RegistrationParameters, TransformKind

# Start logging
logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

PARAMETER_COUNTS = {
    TransformKind.TRANSLATION: 3,
    TransformKind.RIGID: 6,
    TransformKind.AFFINE: 12,
}


def parameter_count(kind: TransformKind) -> int:
    return PARAMETER_COUNTS[kind]


def _skew_matrix(angles: NDArray[np.float64]) -> NDArray[np.float64]:
    skew = np.eye(3)
    skew[0, 1] = np.tan(angles[0])
    skew[0, 2] = np.tan(angles[1])
    skew[1, 2] = np.tan(angles[2])
    return skew


def parameters_to_matrix(
    kind: TransformKind, parameters: NDArray[np.float64], center: NDArray[np.float64]
) -> NDArray[np.float64]:
    """Build the homogeneous matrix of a block transform.

    Parameters
    ----------
    kind : TransformKind
        Parametric family.
    parameters : NDArray
        Parameter vector laid out as described in the module docstring.
    center : NDArray
        Physical centre of the block; rotations, scales and skews act about it.

    Returns
    -------
    NDArray
        4x4 homogeneous matrix.
    """
    parameters = np.asarray(parameters, dtype=np.float64)
    if parameters.size != PARAMETER_COUNTS[kind]:
        raise ValueError(
            f"{kind.value} transforms take {PARAMETER_COUNTS[kind]} parameters, "
            f"got {parameters.size}."
        )

    matrix = np.eye(4)
    if kind is TransformKind.TRANSLATION:
        matrix[:3, 3] = parameters
        return matrix

    center = np.asarray(center, dtype=np.float64)
    linear = Rotation.from_rotvec(parameters[:3]).as_matrix()
    translation = parameters[3:6]
    if kind is TransformKind.AFFINE:
        scales = np.diag(np.exp(parameters[6:9]))
        linear = linear @ _skew_matrix(parameters[9:12]) @ scales

    matrix[:3, :3] = linear
    matrix[:3, 3] = center + translation - linear @ center
    return matrix


def log_matrix(kind: TransformKind, matrix: NDArray[np.float64]) -> NDArray[np.float64]:
    """Velocity (Lie algebra) representation of a block transform.

    Translations use the exact closed form; other kinds use the principal
    real matrix logarithm.
    """
    if kind is TransformKind.TRANSLATION:
        log = np.zeros((4, 4))
        log[:3, 3] = matrix[:3, 3]
        return log

    log = logm(matrix)
    if np.iscomplexobj(log):
        log = np.real(log)
    if not np.all(np.isfinite(log)):
        raise FloatingPointError("Matrix logarithm is not finite.")
    log[3, :] = 0.0
    return log


def search_bounds(
    kind: TransformKind, parameters: RegistrationParameters, mean_spacing: float
) -> Tuple[NDArray[np.float64], NDArray[np.float64]]:
    """Search radii and hard bounds of each parameter, in internal units.

    Translation radii are ``search_radius`` voxels times ``mean_spacing``;
    angles are converted from degrees to radians and scales to log-scales.

    Returns
    -------
    radii : NDArray
        Typical search extent of each parameter.
    bounds : NDArray
        Symmetric box bound of each parameter, the radius capped by its upper
        bound.
    """
    translate_radius = parameters.search_radius * mean_spacing
    translate_bound = parameters.translate_upper_bound * mean_spacing
    translation = ([translate_radius] * 3, [translate_bound] * 3)
    if kind is TransformKind.TRANSLATION:
        radii, caps = translation
    else:
        angle = (
            [np.radians(parameters.search_angle_radius)] * 3,
            [np.radians(parameters.angle_upper_bound)] * 3,
        )
        radii = angle[0] + translation[0]
        caps = angle[1] + translation[1]
        if kind is TransformKind.AFFINE:
            radii = radii + [np.log1p(parameters.search_scale_radius)] * 3
            caps = caps + [np.log(max(parameters.scale_upper_bound, 1.0))] * 3
            radii = radii + [np.radians(parameters.search_skew_radius)] * 3
            caps = caps + [np.radians(parameters.skew_upper_bound)] * 3

    radii = np.asarray(radii, dtype=np.float64)
    caps = np.asarray(caps, dtype=np.float64)
    return radii, np.minimum(radii, caps)


@dataclass(frozen=True, eq=False)
class LocalTransform:
    """The transform estimated for one block."""

    center: NDArray[np.float64]
    matrix: NDArray[np.float64]
    kind: TransformKind
    parameters: NDArray[np.float64]
    score: float
    weight: float = 1.0
    dam: bool = False

    @property
    def translation(self) -> NDArray[np.float64]:
        return self.matrix[:3, 3]

    def velocity_matrix(self) -> NDArray[np.float64]:
        return log_matrix(self.kind, self.matrix)


def apply_matrix(matrix: NDArray[np.float64], points: NDArray[np.float64]) -> NDArray[np.float64]:
    """Apply a homogeneous matrix to physical points ``(n, 3)``."""
    return points @ matrix[:3, :3].T + matrix[:3, 3]


def velocities_at(
    logs: NDArray[np.float64], points: NDArray[np.float64]
) -> NDArray[np.float64]:
    """Velocities induced by log matrices at physical points.

    ``logs`` is ``(4, 4)`` or a stack ``(n, 4, 4)`` paired with ``points``
    ``(n, 3)``; a single matrix is applied to every point.
    """
    logs = np.asarray(logs, dtype=np.float64)
    points = np.asarray(points, dtype=np.float64)
    linear = np.matmul(logs[..., :3, :3], points[..., None])[..., 0]
    return linear + logs[..., :3, 3]
