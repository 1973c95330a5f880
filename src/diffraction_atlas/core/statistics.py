"""Correlation statistics and radial spectrum accumulation."""

from typing import Optional, Tuple

import numpy as np


def pearson_corr(x: np.ndarray, y: np.ndarray) -> float:
    """
    Pearson correlation coefficient of two equally sized arrays.

    Returns 0.0 when either input has zero variance.
    """
    x = np.asarray(x, dtype=np.float64).ravel()
    y = np.asarray(y, dtype=np.float64).ravel()
    if x.size != y.size:
        raise ValueError(f"Arrays differ in size: {x.size} vs {y.size}")
    if x.size < 2:
        return 0.0
    dx = x - x.mean()
    dy = y - y.mean()
    denom = np.sqrt(np.dot(dx, dx) * np.dot(dy, dy))
    if denom < 1e-300:
        return 0.0
    return float(np.clip(np.dot(dx, dy) / denom, -1.0, 1.0))


def weighted_pearson_corr(x: np.ndarray, y: np.ndarray, weights: np.ndarray) -> float:
    """
    Weighted Pearson correlation coefficient.

    Args:
        x: First sample
        y: Second sample, same size as x
        weights: Non-negative weight per pair

    Returns:
        Correlation in [-1, 1], 0.0 for zero weighted variance or zero total weight
    """
    x = np.asarray(x, dtype=np.float64).ravel()
    y = np.asarray(y, dtype=np.float64).ravel()
    w = np.asarray(weights, dtype=np.float64).ravel()
    if not x.size == y.size == w.size:
        raise ValueError(f"Arrays differ in size: {x.size}, {y.size}, {w.size}")

    total = w.sum()
    if x.size < 2 or total <= 0:
        return 0.0

    dx = x - np.dot(w, x) / total
    dy = y - np.dot(w, y) / total
    cov = np.dot(w, dx * dy)
    var_x = np.dot(w, dx * dx)
    var_y = np.dot(w, dy * dy)
    denom = np.sqrt(var_x * var_y)
    if denom < 1e-300:
        return 0.0
    return float(np.clip(cov / denom, -1.0, 1.0))


def weighted_pearson_autocorr(data: np.ndarray, errors: np.ndarray) -> float:
    """
    Lag-1 autocorrelation of a sequence, weighted by its per-element errors.

    Each (data[i], data[i+1]) pair is weighted by 1 / (err[i]^2 + err[i+1]^2).
    Zero errors are replaced by the smallest positive error so exact
    elements dominate without producing infinite weights.

    Args:
        data: 1D sequence
        errors: Standard error of each element

    Returns:
        Weighted lag-1 Pearson correlation, 0.0 for degenerate input
    """
    data = np.asarray(data, dtype=np.float64)
    errors = np.abs(np.asarray(errors, dtype=np.float64))
    if data.size < 3:
        return 0.0

    positive = errors[errors > 0]
    floor = positive.min() if positive.size else 1.0
    errors = np.where(errors > 0, errors, floor)

    pair_var = errors[:-1] ** 2 + errors[1:] ** 2
    return weighted_pearson_corr(data[:-1], data[1:], 1.0 / pair_var)


def error_weighted_centroid(
    positions: np.ndarray,
    values: np.ndarray,
    errors: Optional[np.ndarray] = None,
) -> float:
    """
    Centroid of positions weighted by value / error^2.

    Negative values are clipped to zero. Falls back to the position of the
    largest value when all weights vanish.
    """
    positions = np.asarray(positions, dtype=np.float64)
    values = np.clip(np.asarray(values, dtype=np.float64), 0, None)
    if errors is None:
        weights = values
    else:
        errors = np.abs(np.asarray(errors, dtype=np.float64))
        positive = errors[errors > 0]
        floor = positive.min() if positive.size else 1.0
        weights = values / np.where(errors > 0, errors, floor) ** 2

    total = weights.sum()
    if total <= 0:
        return float(positions[np.argmax(values)])
    return float(np.dot(weights, positions) / total)


class SpectrumAccumulator:
    """
    Running 1D histogram of a 2D spectrum's amplitude against radial frequency.

    Bins have equal width in frequency (cycles/pixel) over [0, max_frequency];
    samples beyond max_frequency (the FFT corners) are ignored. Per-bin sums
    and sums of squares over every added spectrum give a mean and a standard
    error for each bin.
    """

    def __init__(self, shape: Tuple[int, int], n_bins: int = 64, max_frequency: float = 0.5):
        if n_bins < 3:
            raise ValueError(f"n_bins must be at least 3, got {n_bins}")
        self.n_bins = n_bins
        self.edges = np.linspace(0.0, max_frequency, n_bins + 1)

        fy = np.fft.fftfreq(shape[0])[:, None]
        fx = np.fft.fftfreq(shape[1])[None, :]
        k = np.hypot(fx, fy).ravel()
        inside = k <= max_frequency
        self._select = np.flatnonzero(inside)
        self._bin_index = np.minimum(np.digitize(k[inside], self.edges) - 1, n_bins - 1)

        self.sum = np.zeros(n_bins)
        self.sumsq = np.zeros(n_bins)
        self.count = np.zeros(n_bins, dtype=np.int64)
        self.n_spectra = 0

    @property
    def centers(self) -> np.ndarray:
        return 0.5 * (self.edges[:-1] + self.edges[1:])

    def add(self, amplitude: np.ndarray) -> None:
        """Merge one amplitude spectrum (unshifted FFT layout) into the histogram."""
        values = np.asarray(amplitude, dtype=np.float64).ravel()[self._select]
        self.sum += np.bincount(self._bin_index, weights=values, minlength=self.n_bins)
        self.sumsq += np.bincount(self._bin_index, weights=values ** 2, minlength=self.n_bins)
        self.count += np.bincount(self._bin_index, minlength=self.n_bins)
        self.n_spectra += 1

    def mean(self) -> np.ndarray:
        return self.sum / np.maximum(self.count, 1)

    def error(self) -> np.ndarray:
        """Standard error of each bin mean."""
        n = np.maximum(self.count, 1)
        mean = self.sum / n
        var = np.clip(self.sumsq / n - mean ** 2, 0, None)
        return np.sqrt(var / n)

    def autocorrelation(self) -> float:
        """Error-weighted lag-1 autocorrelation over populated bins."""
        populated = self.count > 0
        return weighted_pearson_autocorr(self.mean()[populated], self.error()[populated])

    def centroid(self) -> float:
        """Error-weighted centroid frequency of the histogram."""
        populated = self.count > 0
        return error_weighted_centroid(
            self.centers[populated], self.mean()[populated], self.error()[populated]
        )
