# ============================================================================
# Leafcare Disease Classifier - Inference Tests
# ============================================================================
# Purpose: Verify argmax selection and output-vector sanity checks
# ============================================================================

import math

import numpy as np
import pytest
import torch

from leafcare_server.engine.inference import InferenceEngine, top_prediction
from leafcare_server.errors import InferenceError, NotReadyError


class StubRegistry:
    def __init__(self, output):
        self.output = np.asarray(output, dtype=np.float32)
        self.seen = []

    def infer(self, tensor):
        self.seen.append(tuple(tensor.shape))
        return self.output


class TestTopPrediction:
    """argmax with first-index tie-break."""

    def test_picks_maximum(self):
        assert top_prediction([0.1, 0.7, 0.2]) == (1, pytest.approx(0.7))

    def test_first_of_ties_wins(self):
        assert top_prediction([0.2, 0.5, 0.5, 0.1]) == (1, 0.5)

    def test_single_class(self):
        assert top_prediction(np.array([1.0])) == (0, 1.0)

    def test_accepts_column_shape(self):
        assert top_prediction(np.array([[0.1], [0.9]]))[0] == 1

    def test_empty_output(self):
        with pytest.raises(InferenceError, match="empty"):
            top_prediction([])

    @pytest.mark.parametrize("bad", [math.nan, math.inf, -math.inf])
    def test_non_finite_output(self, bad):
        with pytest.raises(InferenceError, match="NaN or infinite"):
            top_prediction([0.1, bad, 0.3])


class TestInferenceEngine:
    def test_predict_uses_registry_output(self):
        registry = StubRegistry([0.05, 0.05, 0.9])
        engine = InferenceEngine(registry)

        index, confidence = engine.predict(torch.zeros((1, 4, 4, 3)))

        assert index == 2
        assert confidence == pytest.approx(0.9)
        assert registry.seen == [(1, 4, 4, 3)]

    def test_not_ready_propagates(self, model_dir):
        from leafcare_server.engine.registry import ModelRegistry

        engine = InferenceEngine(ModelRegistry(model_dir / "model.json", device="cpu"))
        with pytest.raises(NotReadyError):
            engine.predict(torch.zeros((1, 224, 224, 3)))

    def test_real_model_prefers_dominant_channel(self, model_dir):
        from leafcare_server.engine.registry import ModelRegistry

        registry = ModelRegistry(model_dir / "model.json", device="cpu")
        registry.initialize()
        image = torch.zeros((1, 224, 224, 3))
        image[..., 1] = 1.0

        index, confidence = InferenceEngine(registry).predict(image)

        assert index == 1
        assert 0.9 < confidence < 1.0
