"""Tests for preprocessing module."""

import numpy as np
import pytest
from PIL import Image

from diffraction_atlas.core.preprocessing import (
    create_hann_window,
    fill_undefined,
    get_stack_info,
    gradient_magnitude,
    load_stack,
    threshold_proportion,
    to_grayscale,
    validate_stack,
)
from diffraction_atlas.exceptions import PreconditionError


@pytest.fixture
def uint8_frames():
    """Three distinct 24x32 uint8 frames."""
    rng = np.random.default_rng(0)
    return [rng.integers(0, 256, size=(24, 32), dtype=np.uint8) for _ in range(3)]


class TestGrayscaleConversion:
    """Tests for grayscale conversion."""

    def test_already_grayscale(self):
        """Test that grayscale image passes through."""
        gray = np.random.rand(100, 100)
        result = to_grayscale(gray)

        assert result.shape == gray.shape
        assert result.dtype == np.float64

    def test_rgb_conversion(self):
        """Test RGB to grayscale conversion."""
        rgb = np.random.rand(100, 100, 3)
        result = to_grayscale(rgb)

        assert result.shape == (100, 100)
        assert result.dtype == np.float64

    def test_uint8_scaled(self):
        """Test that 8-bit input is scaled to [0, 1]."""
        result = to_grayscale(np.array([[0, 255]], dtype=np.uint8))
        assert result.tolist() == [[0.0, 1.0]]


class TestLoadStack:
    """Tests for reading stacks from disk."""

    def test_multi_frame_tiff(self, tmp_path, uint8_frames):
        """Test that every page of a TIFF becomes one frame."""
        path = tmp_path / "stack.tif"
        pages = [Image.fromarray(f) for f in uint8_frames]
        pages[0].save(path, save_all=True, append_images=pages[1:])

        stack = load_stack(path)
        assert stack.shape == (3, 24, 32)
        assert stack.dtype == np.float64
        np.testing.assert_allclose(stack[2], uint8_frames[2] / 255.0)

    def test_directory(self, tmp_path, uint8_frames):
        """Test that a directory is loaded in file name order."""
        for name, frame in zip(["b.png", "a.png", "c.png"], uint8_frames):
            Image.fromarray(frame).save(tmp_path / name)
        (tmp_path / "notes.txt").write_text("not an image")

        stack = load_stack(tmp_path)
        assert stack.shape == (3, 24, 32)
        np.testing.assert_allclose(stack[0], uint8_frames[1] / 255.0)

    def test_missing_path(self, tmp_path):
        """Test that a missing stack raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_stack(tmp_path / "nope.tif")


class TestValidateStack:
    """Tests for stack validation."""

    def test_list_of_frames(self):
        """Test that equally sized frames are stacked."""
        stack = validate_stack([np.zeros((4, 5)), np.ones((4, 5))])
        assert stack.shape == (2, 4, 5)

    def test_single_frame(self):
        """Test that one 2D array is a one-image stack."""
        assert validate_stack(np.zeros((4, 5))).shape == (1, 4, 5)

    def test_empty(self):
        """Test that an empty stack is rejected."""
        with pytest.raises(PreconditionError, match="empty"):
            validate_stack([])

    def test_shape_mismatch(self):
        """Test that frames of different shapes are rejected."""
        with pytest.raises(PreconditionError, match="Image 1"):
            validate_stack([np.zeros((4, 5)), np.zeros((5, 4))])

    def test_bad_dimensions(self):
        """Test that 1D frames are rejected."""
        with pytest.raises(PreconditionError):
            validate_stack([np.zeros(5)])


class TestGradient:
    """Tests for gradient magnitude filtrates."""

    @pytest.mark.parametrize("operator", ["sobel", "scharr"])
    def test_step_edge(self, operator):
        """Test that the gradient peaks on a vertical step."""
        image = np.zeros((20, 20))
        image[:, 10:] = 1.0
        grad = gradient_magnitude(image, operator)
        assert grad.shape == image.shape
        assert grad[10, 9:11].min() > grad[10, 3]

    def test_unknown_operator(self):
        """Test that an unknown operator is rejected."""
        with pytest.raises(ValueError, match="Unknown gradient operator"):
            gradient_magnitude(np.zeros((5, 5)), "canny")


class TestThresholdProportion:
    """Tests for histogram proportion thresholding."""

    def test_top_tenth(self):
        """Test that the brightest tenth of a ramp is selected."""
        image = np.arange(100, dtype=float)
        mask = threshold_proportion(image, 0.1, hist_bins=100)
        assert np.flatnonzero(mask).tolist() == list(range(90, 100))

    def test_non_zero(self):
        """Test that zero pixels are neither counted nor marked."""
        image = np.concatenate([np.zeros(100), np.arange(1, 11, dtype=float)])
        mask = threshold_proportion(image, 0.5, hist_bins=10, non_zero=True)
        assert not mask[:100].any()
        assert mask[100:].sum() == 5

    def test_constant_image(self):
        """Test that a constant image keeps every pixel."""
        assert threshold_proportion(np.full((4, 4), 3.0), 0.2).all()

    def test_invalid_fraction(self):
        """Test that a fraction outside (0, 1] is rejected."""
        with pytest.raises(ValueError):
            threshold_proportion(np.arange(10.0), 0.0)


class TestFillAndNormalize:
    """Tests for NaN filling, normalization and windows."""

    def test_fill_median(self):
        """Test that NaN pixels take the median of the defined pixels."""
        image = np.array([[1.0, 2.0], [np.nan, 9.0]])
        filled = fill_undefined(image)
        assert filled[1, 0] == 2.0
        assert np.isnan(image[1, 0])

    def test_fill_all_undefined(self):
        """Test that an all-NaN image is rejected."""
        with pytest.raises(PreconditionError):
            fill_undefined(np.full((2, 2), np.nan))

    def test_hann_window(self):
        """Test that the Hann window is zero at the border and peaks inside."""
        window = create_hann_window(16, 20)
        assert window.shape == (16, 20)
        assert window[0].max() == 0.0
        assert window.max() <= 1.0


class TestStackInfo:
    """Tests for stack statistics."""

    def test_info_keys(self):
        """Test that stack info reports count, shape and intensity statistics."""
        info = get_stack_info(np.ones((3, 4, 5)))
        assert info["n_images"] == 3
        assert info["shape"] == (4, 5)
        assert info["mean"] == 1.0
        assert info["std"] == 0.0
