"""
Error Taxonomy
==============
Exceptions raised by the loading and inference pipeline.

Startup errors (``ManifestError``, ``ShardError``, ``ModelBuildError``) leave
the process permanently unready.  Request errors are caught per request by
the route handlers and turned into the JSON error envelope.
"""
from __future__ import annotations


class LeafcareError(Exception):
    """Base class for every error raised by this package."""


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------
class ManifestError(LeafcareError):
    """A manifest, label or remedy artifact is missing or malformed."""


class ShardError(LeafcareError):
    """A weight shard referenced by the manifest is missing or unreadable."""


class ModelBuildError(LeafcareError):
    """The model topology cannot be turned into an executable graph."""


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------
class NotReadyError(LeafcareError):
    """Inference was requested before the model reached the ready state."""

    def __init__(self, message: str, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ModelNotReadyError(NotReadyError):
    """The prediction service refused a request because the model is not ready."""


class DecodeError(LeafcareError):
    """The uploaded file is not a decodable image."""


class InferenceError(LeafcareError):
    """The forward pass produced an output that cannot be interpreted."""
