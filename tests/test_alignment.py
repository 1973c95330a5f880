"""Tests for stack alignment and averaging."""

import numpy as np
import pytest

from diffraction_atlas.core.alignment import (
    AlignmentEngine,
    align_and_average,
    compute_relative_positions,
    max_phase_corr,
    refine_integer_shift,
    refine_relative_positions,
)
from diffraction_atlas.core.kernels import (
    annulus,
    blurred,
    circle,
    gaussian,
    normalized,
    recursive_self_convolution,
)
from diffraction_atlas.core.preprocessing import create_hann_window
from diffraction_atlas.exceptions import PreconditionError
from diffraction_atlas.models import AlignmentOffset, ImageState, RelativePosition
from diffraction_atlas.synthetic import make_spot_stack


def make_templates(shape, radius, compute, thickness=3):
    blur = gaussian(shape, 1.0, compute)
    ring = recursive_self_convolution(blurred(normalized(annulus(shape, radius, thickness, compute)), blur), 2)
    body = blurred(normalized(circle(shape, radius, compute)), blur)
    return create_hann_window(*shape), ring, body


class TestPhaseCorrelation:
    """Tests for max_phase_corr."""

    def test_cyclic_shift(self, compute):
        """Test that a cyclic shift is recovered with a unit score."""
        image = np.random.default_rng(0).random((64, 64))
        shifted = np.roll(image, shift=(3, -5), axis=(0, 1))
        offset = max_phase_corr(compute.fft2d(image), compute.fft2d(shifted), compute=compute)
        assert (offset.dx, offset.dy) == (-5, 3)
        assert offset.score == pytest.approx(1.0)

    def test_indices_recorded(self, compute):
        """Test that the image indices are carried into the offset."""
        image = np.random.default_rng(1).random((32, 32))
        spectrum = compute.fft2d(image)
        offset = max_phase_corr(spectrum, spectrum, 2, 4, compute=compute)
        assert (offset.image_a, offset.image_b) == (2, 4)
        assert (offset.dx, offset.dy) == (0, 0)


class TestIntegerRefinement:
    """Tests for the integer search around a coarse shift."""

    def test_corrects_one_pixel_error(self, clean_stack):
        """Test that a coarse shift one pixel short is moved onto the true shift."""
        image = clean_stack.images[0]
        shifted = np.roll(image, (4, -6), axis=(0, 1))
        assert refine_integer_shift(image, shifted, -5, 3) == (-6, 4)

    def test_exact_shift_kept(self, clean_stack):
        """Test that a correct coarse shift is left alone."""
        image = clean_stack.images[0]
        shifted = np.roll(image, (-3, 2), axis=(0, 1))
        assert refine_integer_shift(image, shifted, 2, -3, search=3) == (2, -3)

    def test_zero_search(self, clean_stack):
        """Test that a zero search range returns the coarse shift."""
        image = clean_stack.images[0]
        assert refine_integer_shift(image, np.roll(image, 2, axis=1), 1, 0, search=0) == (1, 0)


class TestAlignmentEngine:
    """Tests for the alignment state machine."""

    def test_states_progress(self, clean_stack, compute):
        """Test UNPRIMED -> PRIMED -> CORRELATED."""
        shape = clean_stack.images.shape[1:]
        engine = AlignmentEngine(clean_stack.images, *make_templates(shape, 6, compute), compute=compute)
        assert engine.states == [ImageState.UNPRIMED, ImageState.UNPRIMED]

        engine.prime_all()
        assert engine.states == [ImageState.PRIMED, ImageState.PRIMED]

        engine.correlate_all()
        assert engine.states == [ImageState.CORRELATED, ImageState.CORRELATED]
        assert len(engine.offsets) == 1

    def test_correlate_requires_priming(self, clean_stack, compute):
        """Test that correlating an unprimed image is rejected."""
        shape = clean_stack.images.shape[1:]
        engine = AlignmentEngine(clean_stack.images, *make_templates(shape, 6, compute), compute=compute)
        engine.prime(0)
        with pytest.raises(PreconditionError):
            engine.correlate(0, 1)

    def test_positions_require_correlation(self, clean_stack, compute):
        """Test that the global solve needs every image correlated."""
        shape = clean_stack.images.shape[1:]
        engine = AlignmentEngine(clean_stack.images, *make_templates(shape, 6, compute), compute=compute)
        engine.prime_all()
        with pytest.raises(PreconditionError):
            engine.relative_positions()

    def test_template_shape_mismatch(self, clean_stack, compute):
        """Test that templates must match the image shape."""
        hann, ring, body = make_templates((64, 64), 6, compute)
        with pytest.raises(PreconditionError):
            AlignmentEngine(clean_stack.images, hann, ring, body, compute=compute)

    def test_single_image(self, clean_stack, compute):
        """Test that a one-image stack aligns to itself."""
        shape = clean_stack.images.shape[1:]
        engine = AlignmentEngine(clean_stack.images[:1], *make_templates(shape, 6, compute), compute=compute)
        assert engine.run() == [RelativePosition(index=0, dx=0, dy=0)]


class TestRelativePositions:
    """Tests for recovering per-image offsets."""

    def test_clean_stack(self, clean_stack, compute):
        """Test that the shifts of a noise-free stack are recovered exactly."""
        shape = clean_stack.images.shape[1:]
        positions = compute_relative_positions(
            clean_stack.images, *make_templates(shape, 6, compute), compute=compute
        )
        assert [(p.dx, p.dy) for p in positions] == clean_stack.shifts

    @pytest.mark.parametrize("radius, spacing", [(6, 30), (10, 44), (12, 52)])
    @pytest.mark.parametrize("shift", [(-8, -7), (0, 6), (-6, 0), (8, 8), (5, -3)])
    def test_noise_free_roundtrip(self, radius, spacing, shift, compute):
        """Test that a rolled copy of a frame is placed at exactly its shift."""
        base = make_spot_stack(
            n_images=1, shape=(192, 192), radius=radius, spacing=spacing, noise=0.0, seed=5
        ).images[0]
        dx, dy = shift
        pair = np.stack([base, np.roll(base, (dy, dx), axis=(0, 1))])

        positions = compute_relative_positions(pair, *make_templates(pair.shape[1:], radius, compute), compute=compute)
        assert (positions[0].dx, positions[0].dy) == (0, 0)
        assert (positions[1].dx, positions[1].dy) == (dx, dy)

    def test_noisy_stack(self, spot_stack, compute):
        """Test that every shift of a noisy stack is recovered exactly."""
        shape = spot_stack.images.shape[1:]
        positions = compute_relative_positions(
            spot_stack.images, *make_templates(shape, 8, compute), compute=compute, workers=2
        )
        assert [(p.dx, p.dy) for p in positions] == spot_stack.shifts

    def test_least_squares_consistency(self):
        """Test that consistent pairwise offsets are solved exactly."""
        truth = [(0, 0), (3, -2), (-4, 1)]
        offsets = [
            AlignmentOffset(dx=truth[b][0] - truth[a][0], dy=truth[b][1] - truth[a][1], score=0.9, image_a=a, image_b=b)
            for a, b in [(0, 1), (0, 2), (1, 2)]
        ]
        positions = refine_relative_positions(offsets, 3)
        assert [(p.dx, p.dy) for p in positions] == truth

    def test_low_score_outvoted(self):
        """Test that a weak inconsistent pair barely moves the solution."""
        offsets = [
            AlignmentOffset(dx=5, dy=0, score=1.0, image_a=0, image_b=1),
            AlignmentOffset(dx=2, dy=0, score=1.0, image_a=0, image_b=2),
            AlignmentOffset(dx=-3, dy=0, score=1.0, image_a=1, image_b=2),
            AlignmentOffset(dx=40, dy=0, score=0.001, image_a=0, image_b=1),
        ]
        positions = refine_relative_positions(offsets, 3)
        assert (positions[1].dx, positions[2].dx) == (5, 2)

    def test_disconnected_graph(self):
        """Test that an image linked only by non-positive scores is rejected."""
        offsets = [
            AlignmentOffset(dx=1, dy=1, score=0.8, image_a=0, image_b=1),
            AlignmentOffset(dx=2, dy=2, score=0.0, image_a=0, image_b=2),
            AlignmentOffset(dx=1, dy=1, score=-0.2, image_a=1, image_b=2),
        ]
        with pytest.raises(PreconditionError, match="disconnected"):
            refine_relative_positions(offsets, 3)


class TestAlignAndAverage:
    """Tests for overlap-weighted accumulation."""

    def test_overlap_counts(self):
        """Test that counts equal the number of covering footprints."""
        images = [np.full((4, 5), 1.0), np.full((4, 5), 3.0)]
        positions = [RelativePosition(0, 0, 0), RelativePosition(1, 2, 1)]
        aligned = align_and_average(images, positions)

        assert aligned.shape == (5, 7)
        assert aligned.origin == (2, 1)
        # Image 0 at (2, 1), image 1 at (0, 0)
        expected = np.zeros((5, 7), dtype=int)
        expected[1:5, 2:7] += 1
        expected[0:4, 0:5] += 1
        np.testing.assert_array_equal(aligned.overlap_count, expected)

    def test_mean_of_contributors(self):
        """Test that accumulator / count is the mean of covering pixels."""
        images = [np.full((4, 5), 1.0), np.full((4, 5), 3.0)]
        positions = [RelativePosition(0, 0, 0), RelativePosition(1, 2, 1)]
        mean = align_and_average(images, positions).mean()

        assert mean[2, 3] == pytest.approx(2.0)  # both
        assert mean[4, 6] == pytest.approx(1.0)  # image 0 only
        assert mean[0, 0] == pytest.approx(3.0)  # image 1 only
        assert np.isnan(mean[0, 6])  # neither

    def test_content_lines_up(self, clean_stack):
        """Test that shifted content averages back onto image 0's pattern."""
        positions = [RelativePosition(i, dx, dy) for i, (dx, dy) in enumerate(clean_stack.shifts)]
        aligned = align_and_average(clean_stack.images, positions)
        ox, oy = aligned.origin
        rows, cols = clean_stack.images.shape[1:]
        window = aligned.mean()[oy:oy + rows, ox:ox + cols]
        both = aligned.overlap_count[oy:oy + rows, ox:ox + cols] == 2
        np.testing.assert_allclose(window[both], clean_stack.images[0][both], atol=1e-9)

    def test_position_count_mismatch(self):
        """Test that every image needs a position."""
        with pytest.raises(PreconditionError):
            align_and_average([np.ones((3, 3))] * 2, [RelativePosition(0, 0, 0)])
