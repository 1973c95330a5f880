"""Tests for spot location and lattice inference."""

import numpy as np
import pytest

from diffraction_atlas.core.spots import (
    blacken_circle,
    check_spot_pos,
    detect_spots,
    find_other_spots,
    get_lattice_vectors,
    locate_spots,
)
from diffraction_atlas.exceptions import PreconditionError
from diffraction_atlas.profiles import SpotParams


def peak_map(shape, peaks, sigma=2.0, heights=None):
    """Sum of Gaussian peaks at (x, y) positions."""
    y, x = np.mgrid[0:shape[0], 0:shape[1]].astype(float)
    score = np.zeros(shape)
    heights = heights or [1.0] * len(peaks)
    for (px, py), h in zip(peaks, heights):
        score += h * np.exp(-((x - px) ** 2 + (y - py) ** 2) / (2 * sigma ** 2))
    return score


class TestDetectSpots:
    """Tests for greedy argmax-then-blacken detection."""

    def test_finds_peaks_in_order(self):
        """Test that peaks are found strongest first."""
        peaks = [(20, 20), (60, 30), (40, 70)]
        score = peak_map((100, 100), peaks, heights=[0.5, 1.0, 0.8])
        positions, _, first = detect_spots(score, 4, SpotParams(noise_floor=0.2))

        assert positions == [(60, 30), (40, 70), (20, 20)]
        assert first == pytest.approx(1.0, abs=1e-6)

    def test_noise_floor_stops(self):
        """Test that peaks below the noise floor are not accepted."""
        score = peak_map((100, 100), [(20, 20), (70, 70)], heights=[1.0, 0.1])
        positions, _, _ = detect_spots(score, 4, SpotParams(noise_floor=0.2))
        assert positions == [(20, 20)]

    def test_input_not_modified(self):
        """Test that the caller's score map is left intact."""
        score = peak_map((50, 50), [(25, 25)])
        original = score.copy()
        detect_spots(score, 4)
        np.testing.assert_array_equal(score, original)

    def test_idempotent(self):
        """Test that repeated runs give the same spots in the same order."""
        rng = np.random.default_rng(3)
        peaks = [tuple(p) for p in rng.integers(10, 90, size=(8, 2))]
        score = peak_map((100, 100), peaks, heights=list(rng.random(8) + 0.5))
        first, _, _ = detect_spots(score, 3)
        second, _, _ = detect_spots(score, 3)
        assert first == second

    def test_empty_map(self):
        """Test that an all-zero map yields no spots."""
        positions, _, first = detect_spots(np.zeros((20, 20)), 3)
        assert positions == []
        assert first == 0.0

    def test_blacken_circle(self):
        """Test that blackening zeros a disk in place."""
        score = np.ones((21, 21))
        blacken_circle(score, 10, 10, 3)
        assert score[10, 10] == 0
        assert score[10, 12] == 0
        assert score[10, 15] == 1


class TestLatticeVectors:
    """Tests for lattice inference from spot positions."""

    def test_square_lattice(self, square_lattice):
        """Test that a square lattice gives its two basis vectors."""
        vectors = get_lattice_vectors(square_lattice, tolerance=2.0)
        assert set(vectors) == {(20, 0), (0, 20)}

    def test_hexagonal_lattice(self):
        """Test that a hexagonal patch gives two non-collinear shortest vectors."""
        v1, v2 = np.array([40, 0]), np.array([20, 35])
        indices = [(0, 0), (1, 0), (-1, 0), (0, 1), (0, -1), (1, -1), (-1, 1)]
        positions = [tuple(int(c) for c in 128 + i * v1 + j * v2) for i, j in indices]
        vectors = get_lattice_vectors(positions, tolerance=3.0)

        assert len(vectors) == 2
        a, b = (np.array(v) for v in vectors)
        assert abs(a[0] * b[1] - a[1] * b[0]) > 0
        assert all(38 <= np.hypot(*v) <= 42 for v in vectors)

    def test_too_few_positions(self):
        """Test that one spot has no lattice."""
        assert get_lattice_vectors([(5, 5)], tolerance=2.0) == []

    def test_jittered_positions(self, square_lattice):
        """Test that small position errors are clustered away."""
        rng = np.random.default_rng(0)
        jittered = [(x + int(rng.integers(-1, 2)), y + int(rng.integers(-1, 2))) for x, y in square_lattice]
        vectors = get_lattice_vectors(jittered, tolerance=3.0)
        assert len(vectors) == 2
        for vx, vy in vectors:
            assert (abs(vx) <= 2 and abs(abs(vy) - 20) <= 2) or (abs(vy) <= 2 and abs(abs(vx) - 20) <= 2)


class TestFindOtherSpots:
    """Tests for lattice-guided search of missed spots."""

    def test_recovers_missing_site(self, square_lattice):
        """Test that a spot absent from the greedy list is found at its lattice site."""
        score = peak_map((120, 120), square_lattice)
        known = [p for p in square_lattice if p != (60, 60)]
        work = score.copy()
        for x, y in known:
            blacken_circle(work, x, y, 8)

        found = find_other_spots(work, known, [(20, 0), (0, 20)], radius=4, threshold=0.5, exclusion=8)
        assert found == [(60, 60)]

    def test_threshold_rejects_empty_sites(self, square_lattice):
        """Test that empty lattice sites are not accepted."""
        score = peak_map((120, 120), square_lattice[:5])
        work = score.copy()
        for x, y in square_lattice[:5]:
            blacken_circle(work, x, y, 8)
        found = find_other_spots(work, square_lattice[:5], [(20, 0), (0, 20)], radius=4, threshold=0.5)
        assert found == []

    def test_no_vectors(self):
        """Test that no lattice means no extra spots."""
        assert find_other_spots(np.ones((10, 10)), [(5, 5)], [], radius=2, threshold=0.1) == []


class TestCheckSpotPos:
    """Tests for lattice consistency checks."""

    def test_rejects_outlier(self, square_lattice):
        """Test that a position far from every lattice site is removed."""
        positions = list(square_lattice) + [(30, 30)]
        checked = check_spot_pos(positions, [(20, 0), (0, 20)], reject_tolerance=6.0, snap_tolerance=2.0)
        assert (30, 30) not in checked
        assert len(checked) == len(square_lattice)

    def test_snaps_small_deviation(self, square_lattice):
        """Test that a slightly displaced position is moved onto its site."""
        positions = list(square_lattice)
        positions[7] = (positions[7][0] + 3, positions[7][1])
        checked = check_spot_pos(positions, [(20, 0), (0, 20)], reject_tolerance=6.0, snap_tolerance=2.0)
        assert square_lattice[7] in checked
        assert len(checked) == len(square_lattice)

    def test_order_preserved(self, square_lattice):
        """Test that checked positions keep their discovery order."""
        checked = check_spot_pos(square_lattice, [(20, 0), (0, 20)], reject_tolerance=6.0, snap_tolerance=2.0)
        assert checked == list(square_lattice)


class TestLocateSpots:
    """Tests for the full spot search."""

    def test_synthetic_pattern(self, spot_stack, compute):
        """Test that every spot of a single frame is located."""
        image = spot_stack.images[0]
        search = locate_spots(image, 8, 3, compute=compute)

        assert search.n_spots == len(spot_stack.positions)
        for x, y in spot_stack.positions:
            assert min(np.hypot(px - x, py - y) for px, py in search.positions) <= 1
        assert len(search.lattice_vectors) == 2
        assert search.score_map.shape == image.shape

    def test_repeatable(self, spot_stack, compute):
        """Test that locating twice gives the same discovery order."""
        image = spot_stack.images[1]
        assert locate_spots(image, 8, 3, compute=compute).positions == locate_spots(image, 8, 3, compute=compute).positions

    def test_undefined_pixels_filled(self, spot_stack, compute):
        """Test that NaN borders of an aligned average are tolerated."""
        image = spot_stack.images[0].copy()
        image[:, :3] = np.nan
        search = locate_spots(image, 8, 3, compute=compute)
        assert search.n_spots == len(spot_stack.positions)

    def test_invalid_radius(self, compute):
        """Test that a radius below one is rejected."""
        with pytest.raises(PreconditionError):
            locate_spots(np.ones((32, 32)), 0, 3, compute=compute)
