"""Tests for per-spot accumulation maps."""

import numpy as np
import pytest

from diffraction_atlas.core.spot_maps import create_spot_maps
from diffraction_atlas.exceptions import PreconditionError
from diffraction_atlas.models import RelativePosition


def disk_counts(radius):
    y, x = np.mgrid[-radius:radius + 1, -radius:radius + 1]
    return (x ** 2 + y ** 2 < (radius + 0.5) ** 2).astype(int)


class TestSpotMaps:
    """Tests for create_spot_maps."""

    def test_single_image(self):
        """Test that one unshifted image contributes once per disk pixel."""
        image = np.random.default_rng(0).random((40, 40))
        maps = create_spot_maps([image], [(20, 20)], [RelativePosition(0, 0, 0)], radius=4)

        assert len(maps) == 1
        np.testing.assert_array_equal(maps[0].counts, disk_counts(4))
        covered = maps[0].counts > 0
        np.testing.assert_allclose(maps[0].accumulator[covered], image[16:25, 16:25][covered])

    def test_shifted_images_widen_map(self):
        """Test that a shift extends the map and overlapping disks count twice."""
        images = np.ones((2, 40, 40))
        positions = [RelativePosition(0, 0, 0), RelativePosition(1, 3, 0)]
        spot_map = create_spot_maps(images, [(20, 20)], positions, radius=4)[0]

        assert spot_map.counts.shape == (9, 12)
        assert spot_map.counts.max() == 2
        assert spot_map.counts.sum() == 2 * disk_counts(4).sum()

    def test_shift_follows_content(self):
        """Test that each image's contribution sits at its own offset."""
        images = np.zeros((2, 40, 40))
        images[0, 20, 20] = 1.0
        images[1, 20, 23] = 5.0  # the same spot moved by dx=3
        positions = [RelativePosition(0, 0, 0), RelativePosition(1, 3, 0)]
        spot_map = create_spot_maps(images, [(20, 20)], positions, radius=4)[0]

        assert spot_map.accumulator[4, 4] == 1.0
        assert spot_map.accumulator[4, 7] == 5.0

    def test_canvas_origin(self):
        """Test that canvas positions are mapped through the origin."""
        image = np.zeros((40, 40))
        image[20, 20] = 1.0
        spot_map = create_spot_maps(
            [image], [(25, 22)], [RelativePosition(0, 0, 0)], radius=3, origin=(5, 2)
        )[0]
        assert spot_map.accumulator[3, 3] == 1.0

    def test_clipped_at_border(self):
        """Test that a spot at the border only counts pixels inside the image."""
        maps = create_spot_maps([np.ones((20, 20))], [(0, 10)], [RelativePosition(0, 0, 0)], radius=3)
        counts = maps[0].counts
        assert counts[:, :3].sum() == 0
        assert counts[:, 3:].sum() == disk_counts(3)[:, 3:].sum()

    def test_order_and_threads(self):
        """Test that maps keep the order of the spot positions with a thread pool."""
        images = np.random.default_rng(1).random((3, 50, 50))
        relative = [RelativePosition(i, 0, 0) for i in range(3)]
        spots = [(10, 10), (25, 30), (40, 15)]
        maps = create_spot_maps(images, spots, relative, radius=4, workers=3)
        assert [m.position for m in maps] == spots
        assert [m.spot_index for m in maps] == [0, 1, 2]

    def test_position_count_mismatch(self):
        """Test that every image needs a relative position."""
        with pytest.raises(PreconditionError):
            create_spot_maps(np.ones((2, 10, 10)), [(5, 5)], [RelativePosition(0, 0, 0)], radius=2)

    def test_invalid_radius(self):
        """Test that the radius must be at least 1."""
        with pytest.raises(PreconditionError):
            create_spot_maps(np.ones((1, 10, 10)), [(5, 5)], [RelativePosition(0, 0, 0)], radius=0)

    def test_missing_image_index(self):
        """Test that positions skipping an image index are rejected."""
        positions = [RelativePosition(0, 0, 0), RelativePosition(2, 1, 0)]
        with pytest.raises(PreconditionError, match="every image index"):
            create_spot_maps(np.ones((2, 10, 10)), [(5, 5)], positions, radius=2)

    def test_duplicate_image_index(self):
        """Test that two positions for the same image are rejected."""
        positions = [RelativePosition(0, 0, 0), RelativePosition(0, 1, 0)]
        with pytest.raises(PreconditionError):
            create_spot_maps(np.ones((2, 10, 10)), [(5, 5)], positions, radius=2)
