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

"""Tests for the Volume value type."""

# Standard Library Imports

# Third Party Imports
import numpy as np
import pytest
from scipy.spatial.transform import Rotation

# Local Imports
from densematch.volume import Volume, physical_overlap


class TestVolumeConstruction:
    """Validation and normalisation of Volume fields."""

    def test_defaults_to_unit_geometry(self):
        """Test that omitted geometry gives the identity mapping."""
        volume = Volume(np.zeros((4, 5, 6)))
        assert volume.shape == (4, 5, 6)
        assert np.array_equal(volume.origin, np.zeros(3))
        assert np.array_equal(volume.spacing, np.ones(3))
        assert np.array_equal(volume.direction, np.eye(3))
        assert not volume.is_vector

    def test_vector_volume(self):
        """Test that a trailing axis of three makes a vector field."""
        volume = Volume(np.zeros((4, 5, 6, 3)))
        assert volume.is_vector
        assert volume.shape == (4, 5, 6)

    @pytest.mark.parametrize("shape", [(4, 5), (4, 5, 6, 2), (2, 3, 4, 5, 6)])
    def test_rejects_bad_shapes(self, shape):
        """Test that only 3-D scalar or 3-vector data is accepted."""
        with pytest.raises(ValueError):
            Volume(np.zeros(shape))

    def test_rejects_empty_data(self):
        """Test that empty volumes are refused."""
        with pytest.raises(ValueError):
            Volume(np.zeros((0, 4, 4)))

    def test_rejects_non_positive_spacing(self):
        """Test that spacing must be strictly positive."""
        with pytest.raises(ValueError):
            Volume(np.zeros((4, 4, 4)), spacing=(1.0, 0.0, 1.0))


class TestVolumeGeometry:
    """Index to physical mapping."""

    def test_round_trip_with_rotation(self):
        """Test that physical_to_index inverts index_to_physical."""
        direction = Rotation.from_euler("xyz", [10, 20, 30], degrees=True).as_matrix()
        volume = Volume(
            np.zeros((5, 6, 7)),
            origin=(1.0, 2.0, 3.0),
            spacing=(0.5, 1.0, 2.0),
            direction=direction,
        )
        indices = np.array([[0, 0, 0], [1.5, 2.0, 3.25], [4, 5, 6]])
        points = volume.index_to_physical(indices)
        assert np.allclose(volume.physical_to_index(points), indices)
        assert np.allclose(points[0], [1.0, 2.0, 3.0])

    def test_physical_grid_matches_index_mapping(self):
        """Test that the grid holds the physical position of each voxel."""
        volume = Volume(np.zeros((3, 4, 5)), origin=(1, 1, 1), spacing=(2, 3, 4))
        grid = volume.physical_grid()
        assert grid.shape == (3, 4, 5, 3)
        assert np.allclose(grid[2, 3, 4], [5.0, 10.0, 17.0])

    def test_same_geometry(self):
        """Test geometry comparison."""
        first = Volume(np.zeros((4, 4, 4)), spacing=(1, 1, 2))
        assert first.same_geometry(first.with_data(np.ones((4, 4, 4))))
        assert not first.same_geometry(Volume(np.zeros((4, 4, 4))))

    def test_physical_overlap(self):
        """Test bounding box intersection."""
        first = Volume(np.zeros((10, 10, 10)))
        assert physical_overlap(first, Volume(np.zeros((10, 10, 10)), origin=(5, 5, 5)))
        assert not physical_overlap(
            first, Volume(np.zeros((10, 10, 10)), origin=(100, 0, 0))
        )


class TestVolumeAnts:
    """Conversion to and from ANTs images."""

    def test_scalar_round_trip(self):
        """Test that data and geometry survive the ANTs conversion."""
        data = np.arange(60, dtype=np.float32).reshape(3, 4, 5)
        volume = Volume(data, origin=(1.0, 2.0, 3.0), spacing=(0.5, 1.0, 2.0))
        restored = Volume.from_ants(volume.to_ants())
        assert np.allclose(restored.data, data)
        assert restored.same_geometry(volume)

    def test_vector_round_trip(self):
        """Test that vector components end up on the last axis."""
        data = np.random.default_rng(0).standard_normal((3, 4, 5, 3)).astype(np.float32)
        restored = Volume.from_ants(Volume(data).to_ants())
        assert restored.is_vector
        assert np.allclose(restored.data, data, atol=1e-6)
