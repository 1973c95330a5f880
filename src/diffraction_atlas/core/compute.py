"""Frequency-domain array operations shared by every pipeline stage."""

import logging
import threading
from typing import Callable, Dict, List, Optional

import numpy as np
from scipy import fft as sp_fft

from ..exceptions import KernelError

logger = logging.getLogger(__name__)


class ArrayCompute:
    """
    FFTs, elementwise arithmetic, reductions and named kernels over 2D arrays.

    FFTs are parallelised internally by scipy.fft across `workers` threads.
    Kernels are registered once and then only looked up, so a single instance
    can be shared by every stage of a run.
    """

    def __init__(self, workers: int = 1):
        self.workers = max(1, int(workers))
        self._kernels: Dict[str, Callable[..., np.ndarray]] = {}

    def fft2d(self, array: np.ndarray) -> np.ndarray:
        return sp_fft.fft2(array, workers=self.workers)

    def ifft2d(self, spectrum: np.ndarray, real: bool = True) -> np.ndarray:
        result = sp_fft.ifft2(spectrum, workers=self.workers)
        return result.real if real else result

    def multiply(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return np.multiply(a, b)

    def divide(self, a: np.ndarray, b: np.ndarray, eps: float = 0.0) -> np.ndarray:
        """Elementwise a / b, zero wherever |b| <= eps."""
        out = np.zeros(np.broadcast(a, b).shape, dtype=np.result_type(a, b, np.float64))
        np.divide(a, b, out=out, where=np.abs(b) > eps)
        return out

    def reduce_sum(self, array: np.ndarray) -> float:
        return array.sum()

    def register_kernel(self, name: str, kernel: Callable[..., np.ndarray]) -> None:
        if not callable(kernel):
            raise KernelError(name, "kernel is not callable")
        self._kernels[name] = kernel

    @property
    def kernel_names(self) -> List[str]:
        return sorted(self._kernels)

    def run_kernel(self, name: str, *args, **kwargs) -> np.ndarray:
        """
        Run a registered kernel by name.

        Raises:
            KernelError: If no kernel has that name or the kernel fails
        """
        try:
            kernel = self._kernels[name]
        except KeyError:
            raise KernelError(name, f"no kernel registered (available: {', '.join(self.kernel_names)})") from None

        try:
            return kernel(*args, **kwargs)
        except (TypeError, ValueError, FloatingPointError) as e:
            raise KernelError(name, str(e)) from e


_default_compute: Optional[ArrayCompute] = None
_default_lock = threading.Lock()


def create_compute(workers: int = 1) -> ArrayCompute:
    """Create a compute instance with the built-in frequency kernels registered."""
    from .kernels import register_builtin_kernels

    compute = ArrayCompute(workers=workers)
    register_builtin_kernels(compute)
    logger.debug("Compute ready with %d FFT workers, kernels: %s", compute.workers, compute.kernel_names)
    return compute


def get_compute() -> ArrayCompute:
    """Return the process-wide compute instance, creating it on first use."""
    global _default_compute
    with _default_lock:
        if _default_compute is None:
            _default_compute = create_compute()
        return _default_compute
