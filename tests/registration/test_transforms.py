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

"""Tests for block transform parameterisation."""

# Standard Library Imports

# Third Party Imports
import numpy as np
import pytest
from scipy.linalg import expm

# Local Imports
from densematch.registration.parameters import RegistrationParameters, TransformKind
from densematch.registration.transforms import (
    LocalTransform,
    apply_matrix,
    log_matrix,
    parameter_count,
    parameters_to_matrix,
    search_bounds,
    velocities_at,
)


class TestParametersToMatrix:
    """Matrix construction for each transform kind."""

    @pytest.mark.parametrize("kind", list(TransformKind))
    def test_identity(self, kind):
        """Test that zero parameters give the identity matrix."""
        matrix = parameters_to_matrix(
            kind, np.zeros(parameter_count(kind)), np.array([3.0, 4, 5])
        )
        assert np.allclose(matrix, np.eye(4))

    def test_translation(self):
        """Test a pure translation."""
        matrix = parameters_to_matrix(
            TransformKind.TRANSLATION, np.array([1.0, -2.0, 0.5]), np.zeros(3)
        )
        assert np.allclose(apply_matrix(matrix, np.array([[1.0, 1.0, 1.0]])), [[2.0, -1.0, 1.5]])

    def test_rigid_rotates_about_the_centre(self):
        """Test that the block centre only moves by the translation."""
        center = np.array([10.0, 20.0, 30.0])
        parameters = np.array([0.1, -0.2, 0.3, 1.0, 2.0, 3.0])
        matrix = parameters_to_matrix(TransformKind.RIGID, parameters, center)
        assert np.allclose(apply_matrix(matrix, center[None]), [center + [1.0, 2.0, 3.0]])
        assert np.allclose(matrix[:3, :3] @ matrix[:3, :3].T, np.eye(3))

    def test_affine_scale(self):
        """Test that log-scales scale about the centre."""
        parameters = np.zeros(12)
        parameters[6:9] = np.log([2.0, 1.0, 0.5])
        center = np.array([1.0, 1.0, 1.0])
        matrix = parameters_to_matrix(TransformKind.AFFINE, parameters, center)
        assert np.allclose(np.diag(matrix[:3, :3]), [2.0, 1.0, 0.5])
        assert np.allclose(apply_matrix(matrix, center[None]), [center])

    def test_rejects_wrong_parameter_count(self):
        """Test the parameter vector length check."""
        with pytest.raises(ValueError):
            parameters_to_matrix(TransformKind.RIGID, np.zeros(3), np.zeros(3))

    def test_parameter_counts(self):
        """Test the size of each parameter vector."""
        assert parameter_count(TransformKind.TRANSLATION) == 3
        assert parameter_count(TransformKind.RIGID) == 6
        assert parameter_count(TransformKind.AFFINE) == 12


class TestLogMatrix:
    """Velocity representation of block transforms."""

    def test_translation_closed_form(self):
        """Test that a translation's velocity is the translation itself."""
        matrix = parameters_to_matrix(
            TransformKind.TRANSLATION, np.array([1.0, 2.0, 3.0]), np.zeros(3)
        )
        log = log_matrix(TransformKind.TRANSLATION, matrix)
        assert np.allclose(log[:3, 3], [1.0, 2.0, 3.0])
        assert np.allclose(log[:3, :3], 0.0)

    @pytest.mark.parametrize("kind", [TransformKind.RIGID, TransformKind.AFFINE])
    def test_exponential_inverts_logarithm(self, kind):
        """Test that expm(logm(H)) recovers H."""
        parameters = np.full(parameter_count(kind), 0.05)
        matrix = parameters_to_matrix(kind, parameters, np.array([5.0, 5.0, 5.0]))
        assert np.allclose(expm(log_matrix(kind, matrix)), matrix, atol=1e-8)

    def test_local_transform_velocity(self):
        """Test that a translation induces the same velocity everywhere."""
        matrix = parameters_to_matrix(
            TransformKind.TRANSLATION, np.array([0.5, 0.0, -1.0]), np.zeros(3)
        )
        transform = LocalTransform(
            center=np.zeros(3),
            matrix=matrix,
            kind=TransformKind.TRANSLATION,
            parameters=np.array([0.5, 0.0, -1.0]),
            score=-1.0,
        )
        points = np.array([[0.0, 0.0, 0.0], [10.0, -3.0, 7.0]])
        velocities = velocities_at(transform.velocity_matrix(), points)
        assert np.allclose(velocities, [[0.5, 0.0, -1.0]] * 2)

    def test_velocities_of_a_stack(self):
        """Test that stacked log matrices pair with their own points."""
        logs = np.zeros((2, 4, 4))
        logs[0, :3, 3] = [1.0, 0.0, 0.0]
        logs[1, 0, 1] = 2.0
        points = np.array([[5.0, 5.0, 5.0], [0.0, 3.0, 0.0]])
        assert np.allclose(velocities_at(logs, points), [[1.0, 0.0, 0.0], [6.0, 0.0, 0.0]])


class TestSearchBounds:
    """Search radii in internal units."""

    def test_translation_radii_scale_with_spacing(self):
        """Test that translation radii are voxels times the mean spacing."""
        radii, bounds = search_bounds(
            TransformKind.TRANSLATION, RegistrationParameters(search_radius=2.0), 1.5
        )
        assert np.allclose(radii, 3.0)
        assert np.allclose(bounds, 3.0)

    def test_upper_bound_caps_the_radius(self):
        """Test that bounds never exceed the hard upper bounds."""
        parameters = RegistrationParameters(search_radius=4.0, translate_upper_bound=1.0)
        radii, bounds = search_bounds(TransformKind.TRANSLATION, parameters, 1.0)
        assert np.allclose(radii, 4.0)
        assert np.allclose(bounds, 1.0)

    def test_rigid_angles_in_radians(self):
        """Test that angles are converted from degrees."""
        parameters = RegistrationParameters(search_angle_radius=10.0)
        radii, _ = search_bounds(TransformKind.RIGID, parameters, 1.0)
        assert radii.size == 6
        assert np.allclose(radii[:3], np.radians(10.0))

    def test_affine_layout(self):
        """Test the affine radius layout."""
        parameters = RegistrationParameters(search_scale_radius=0.1, search_skew_radius=5.0)
        radii, _ = search_bounds(TransformKind.AFFINE, parameters, 1.0)
        assert radii.size == 12
        assert np.allclose(radii[6:9], np.log1p(0.1))
        assert np.allclose(radii[9:], np.radians(5.0))
