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

"""Tests for block sampling."""

# Standard Library Imports

# Third Party Imports
import numpy as np
import pytest

# Local Imports
from densematch.registration.blocks import BlockSampler
from densematch.volume import Volume
from tests import textured_volume


def _sampler(**overrides):
    options = dict(
        block_size=5,
        block_spacing=5,
        variance_threshold=0.0,
        percentage_kept=1.0,
        use_dam=False,
        dam_distance=0.0,
    )
    options.update(overrides)
    return BlockSampler(**options)


class TestBlockCounts:
    """Exact retained block counts."""

    def test_keeps_every_tile(self):
        """Test that threshold 0 and percentage 1 retain all tiles."""
        blocks = _sampler().sample(textured_volume(shape=(20, 20, 20)))
        assert len(blocks) == 64

    def test_keeps_constant_tiles_at_zero_threshold(self):
        """Test that zero-variance tiles survive a zero threshold."""
        blocks = _sampler().sample(Volume(np.zeros((20, 20, 20))))
        assert len(blocks) == 64

    def test_variance_threshold(self):
        """Test that tiles below the threshold are discarded."""
        data = np.zeros((20, 20, 20))
        data[:10] = np.random.default_rng(1).uniform(0, 100, size=(10, 20, 20))
        blocks = _sampler(variance_threshold=1e-6).sample(Volume(data))
        assert len(blocks) == 2 * 4 * 4
        assert all(block.start[0] < 10 for block in blocks)

    @pytest.mark.parametrize("percentage, expected", [(0.5, 32), (0.1, 7), (0.01, 1)])
    def test_percentage_kept_rounds_up(self, percentage, expected):
        """Test that ceil(percentage x count) blocks are kept."""
        blocks = _sampler(percentage_kept=percentage).sample(
            textured_volume(shape=(20, 20, 20))
        )
        assert len(blocks) == expected

    def test_keeps_highest_variance(self):
        """Test that the retained blocks are the most variable ones."""
        volume = textured_volume(shape=(20, 20, 20), seed=2)
        sampler = _sampler(percentage_kept=0.25)
        kept = sampler.sample(volume)
        variances = np.sort(sampler.tile_variances(volume.data).ravel())[::-1]
        assert min(b.variance for b in kept) == pytest.approx(variances[len(kept) - 1])

    def test_ties_keep_scan_order(self):
        """Test that equal variances are broken by scan order."""
        blocks = _sampler(percentage_kept=0.25).sample(Volume(np.full((20, 20, 20), 3.0)))
        assert len(blocks) == 16
        assert [b.start for b in blocks] == [
            (0, j, k) for j in range(0, 20, 5) for k in range(0, 20, 5)
        ]

    def test_deterministic(self):
        """Test that identical inputs give identical blocks."""
        volume = textured_volume(shape=(20, 20, 20), seed=5)
        sampler = _sampler(block_spacing=2, percentage_kept=0.3)
        first = [b.start for b in sampler.sample(volume)]
        second = [b.start for b in sampler.sample(volume)]
        assert first == second

    def test_volume_smaller_than_block(self):
        """Test that tiny volumes produce no blocks."""
        assert _sampler().sample(Volume(np.ones((3, 10, 10)))) == []

    def test_rejects_vector_volumes(self):
        """Test that vector fields cannot be tiled."""
        with pytest.raises(ValueError):
            _sampler().sample(Volume(np.zeros((10, 10, 10, 3))))

    def test_rejects_bad_percentage(self):
        """Test the constructor guard on percentage_kept."""
        with pytest.raises(ValueError):
            _sampler(percentage_kept=0.0)


class TestBlockGeometry:
    """Block centres and dam flags."""

    def test_centres(self):
        """Test index and physical centres."""
        volume = textured_volume(shape=(20, 20, 20), origin=(10, 0, 0), spacing=(2, 1, 1))
        block = _sampler().sample(volume)[0]
        assert np.allclose(block.center_index, [2, 2, 2])
        assert np.allclose(block.center, [14, 2, 2])
        assert block.voxel_indices().shape == (125, 3)

    def test_border_dams(self):
        """Test that blocks near the border are dams."""
        blocks = _sampler(use_dam=True, dam_distance=3.0).sample(
            textured_volume(shape=(20, 20, 20))
        )
        interior = [b for b in blocks if not b.dam]
        assert len(interior) == 8
        assert all(set(b.center_index) <= {7.0, 12.0} for b in interior)

    def test_mask_dams(self):
        """Test that blocks next to a masked-out region are dams."""
        volume = textured_volume(shape=(30, 30, 30))
        mask_data = np.ones(volume.shape)
        mask_data[15:] = 0
        blocks = _sampler(use_dam=True, dam_distance=4.0).sample(
            volume, mask=volume.with_data(mask_data)
        )
        by_centre = {tuple(b.center_index): b.dam for b in blocks}
        assert by_centre[(12.0, 12.0, 12.0)]
        assert not by_centre[(7.0, 12.0, 12.0)]

    def test_no_dams_when_disabled(self):
        """Test that dam flags stay off without use_dam."""
        blocks = _sampler(dam_distance=100.0).sample(textured_volume(shape=(20, 20, 20)))
        assert not any(b.dam for b in blocks)
