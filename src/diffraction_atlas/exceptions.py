"""Error types raised by the diffraction atlas pipeline."""


class AtlasError(Exception):
    """Base class for all pipeline errors."""


class PreconditionError(AtlasError, ValueError):
    """An operation was called with inputs it cannot process.

    Raised at the entry of the offending operation (empty stacks, mismatched
    frame shapes, empty masks, disconnected alignment graphs, ...).
    """


class KernelError(AtlasError, RuntimeError):
    """A named compute kernel is missing or failed to build."""

    def __init__(self, kernel_name: str, message: str):
        self.kernel_name = kernel_name
        super().__init__(f"Kernel '{kernel_name}' failed: {message}")


class BackendError(AtlasError, RuntimeError):
    """The clustering/fitting backend failed during a pipeline stage."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        super().__init__(f"Clustering backend failed during {stage}: {message}")
