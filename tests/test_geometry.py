"""Tests for detector geometry inference."""

import numpy as np
import pytest

from diffraction_atlas.core.geometry import elongation_direction, incidence_sign, summarize_geometry
from diffraction_atlas.models import Ellipse


def make_ellipse(a, b, angle, center=(0.0, 0.0)):
    return Ellipse(center=center, a=a, b=b, angle=angle, is_ellipse=True)


class TestElongationDirection:
    """Tests for the mean major-axis orientation."""

    def test_common_direction(self):
        """Test that identically oriented ellipses give their angle."""
        angle, ratio = elongation_direction([make_ellipse(6, 4, 0.8), make_ellipse(9, 6, 0.8)])
        assert angle == pytest.approx(0.8)
        assert ratio == pytest.approx(1.5)

    def test_wraparound(self):
        """Test that orientations either side of 0 average to 0, not pi/2."""
        angle, _ = elongation_direction([make_ellipse(6, 4, 0.1), make_ellipse(6, 4, np.pi - 0.1)])
        assert min(angle, np.pi - angle) < 1e-9

    def test_invalid_skipped(self):
        """Test that invalid ellipses are ignored."""
        angle, ratio = elongation_direction([Ellipse.invalid(), make_ellipse(4, 2, 1.0)])
        assert angle == pytest.approx(1.0)
        assert ratio == pytest.approx(2.0)

    def test_circles_have_no_direction(self):
        """Test that perfect circles give a ratio but no angle."""
        angle, ratio = elongation_direction([make_ellipse(5, 5, 0.3)])
        assert angle is None
        assert ratio == pytest.approx(1.0)

    def test_empty(self):
        """Test that no valid ellipses gives (None, None)."""
        assert elongation_direction([]) == (None, None)


class TestIncidenceSign:
    """Tests for the background fall-off direction."""

    @pytest.fixture
    def sloped_image(self):
        """Background decreasing along +x with two bright spots."""
        y, x = np.mgrid[0:100, 0:120].astype(float)
        image = 1.0 - 0.005 * x
        image[(x - 30) ** 2 + (y - 50) ** 2 <= 36] = 5.0
        image[(x - 90) ** 2 + (y - 50) ** 2 <= 36] = 5.0
        return image

    def test_falls_along_direction(self, sloped_image):
        """Test that a background falling along the direction gives +1."""
        assert incidence_sign(sloped_image, [(30, 50), (90, 50)], 6, 0.0) == 1.0

    def test_rises_along_direction(self, sloped_image):
        """Test that the opposite direction gives -1."""
        assert incidence_sign(sloped_image, [(30, 50), (90, 50)], 6, np.pi) == -1.0


class TestSummarizeGeometry:
    """Tests for summarize_geometry."""

    def test_summary(self):
        """Test that a summary carries count, ratio, angle and sign."""
        y, x = np.mgrid[0:64, 0:64].astype(float)
        image = 2.0 - 0.01 * x
        ellipses = [make_ellipse(6, 4, 0.0, (20, 32)), make_ellipse(6, 4, 0.0, (44, 32)), Ellipse.invalid()]
        summary = summarize_geometry(image, ellipses, [(20, 32), (44, 32)], 4)

        assert summary.n_valid == 2
        assert summary.mean_aspect_ratio == pytest.approx(1.5)
        assert summary.elongation_angle == pytest.approx(0.0)
        assert summary.incidence_sign == 1.0

    def test_round_spots(self):
        """Test that circular fits leave the sign undetermined."""
        summary = summarize_geometry(np.ones((32, 32)), [make_ellipse(4, 4, 0.0, (16, 16))], [(16, 16)], 4)
        assert summary.elongation_angle is None
        assert summary.incidence_sign is None
