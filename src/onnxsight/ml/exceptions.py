"""Exception hierarchy for the inference core.

Only ``TensorShapeError`` is meant to reach callers. The others are raised
inside the adapter and absorbed at the ``initialize``/``process`` boundary.
"""

from __future__ import annotations


class OnnxSightError(Exception):
    """Base class for all OnnxSight errors."""


class ConfigurationError(OnnxSightError):
    """Raised when a model reference is empty, unknown, or unreadable."""


class BackendError(OnnxSightError):
    """Raised when the inference backend fails to load or run a model."""


class PipelineError(OnnxSightError):
    """Raised when a frame cannot be obtained from the upstream source."""


class TensorShapeError(OnnxSightError, RuntimeError):
    """Raised when a reshape would change the tensor's element count."""
