"""
Inference Engine
================
One forward pass, then argmax.  The model's last layer is a softmax, so the
output is used as-is: no re-normalisation happens here.
"""
from __future__ import annotations

import logging

import numpy as np
import torch

from leafcare_server.engine.registry import ModelRegistry
from leafcare_server.errors import InferenceError


logger = logging.getLogger("leafcare_server.inference")


def top_prediction(probabilities: np.ndarray | list[float]) -> tuple[int, float]:
    """
    Return ``(index, value)`` of the maximum.

    Ties resolve to the first index holding the maximum, so
    ``[0.2, 0.5, 0.5, 0.1]`` gives ``(1, 0.5)``.
    """
    vector = np.asarray(probabilities, dtype=np.float64).reshape(-1)
    if vector.size == 0:
        raise InferenceError("Model produced an empty output vector")
    if not np.all(np.isfinite(vector)):
        raise InferenceError("Model output contains NaN or infinite values")
    index = int(np.argmax(vector))
    return index, float(vector[index])


class InferenceEngine:
    def __init__(self, registry: ModelRegistry) -> None:
        self.registry = registry

    def predict(self, tensor: torch.Tensor) -> tuple[int, float]:
        """Return ``(class_index, confidence in [0, 1])`` for a preprocessed batch of one."""
        probabilities = self.registry.infer(tensor)
        index, confidence = top_prediction(probabilities)
        logger.debug("argmax=%d p=%.4f over %d classes", index, confidence, probabilities.shape[0])
        return index, confidence
