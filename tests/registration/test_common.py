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

# Third Party Imports
import ants
import numpy as np
import pytest

# Local Imports
from densematch.registration.common import (
    calculate_metrics,
    inspect_velocity_field,
    to_ants_image,
)
from densematch.volume import Volume
from tests import shifted_volume, textured_volume


class TestToAntsImage:
    def test_volume(self):
        volume = textured_volume(shape=(6, 6, 6), spacing=(2, 2, 2))
        image = to_ants_image(volume)
        assert isinstance(image, ants.ANTsImage)
        assert np.allclose(image.spacing, 2.0)

    def test_passthrough(self):
        image = ants.from_numpy(np.zeros((4, 4, 4), dtype=np.float32))
        assert to_ants_image(image) is image

    def test_rejects_other_types(self):
        with pytest.raises(TypeError):
            to_ants_image([1, 2, 3])


class TestCalculateMetrics:
    """Similarity reporting through ANTs."""

    def test_identical_volumes_are_perfectly_correlated(self):
        volume = textured_volume(shape=(16, 16, 16))
        metrics = calculate_metrics(volume, volume)
        assert set(metrics) == {"Correlation", "MattesMutualInformation"}
        assert metrics["Correlation"] == pytest.approx(1.0, abs=1e-3)

    def test_misalignment_lowers_correlation(self):
        """Test that a shifted volume correlates less."""
        volume = textured_volume(shape=(16, 16, 16))
        shifted = shifted_volume(volume, (3, 0, 0))
        aligned = calculate_metrics(volume, volume)["Correlation"]
        misaligned = calculate_metrics(volume, shifted)["Correlation"]
        assert misaligned < aligned


class TestInspectVelocityField:
    """Magnitude statistics of vector fields."""

    def test_uniform_field(self):
        data = np.zeros((4, 4, 4, 3))
        data[..., 0] = 3.0
        data[..., 1] = 4.0
        stats = inspect_velocity_field(Volume(data, spacing=(2.5, 2.5, 2.5)))
        assert stats["mean"] == pytest.approx(5.0)
        assert stats["std"] == pytest.approx(0.0)
        assert stats["max_voxels"] == pytest.approx(2.0)
        assert stats["n_vox"] == 64

    def test_mask_restricts_the_voxels(self):
        data = np.zeros((4, 4, 4, 3))
        data[0, ..., 2] = 1.0
        mask = np.zeros((4, 4, 4), dtype=bool)
        mask[0] = True
        stats = inspect_velocity_field(Volume(data), mask=mask)
        assert stats["n_vox"] == 16
        assert stats["min"] == pytest.approx(1.0)

    def test_rejects_scalar_volumes(self):
        with pytest.raises(ValueError):
            inspect_velocity_field(Volume(np.zeros((4, 4, 4))))
