# ============================================================================
# Leafcare Disease Classifier - Model Registry Tests
# ============================================================================
# Purpose: Verify the run-once load state machine and the readiness gate
# ============================================================================

import threading
import time

import numpy as np
import pytest
import torch

from leafcare_server.engine.graph import build_model
from leafcare_server.engine.registry import ModelRegistry, ModelState
from leafcare_server.errors import NotReadyError


class CountingBuilder:
    """Wraps ``build_model`` and records how often it ran."""

    def __init__(self, delay=0.0, error=None):
        self.calls = 0
        self.delay = delay
        self.error = error

    def __call__(self, topology, weights):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return build_model(topology, weights)


@pytest.fixture
def zeros_input(img_size):
    return torch.zeros((1, img_size, img_size, 3))


class TestLifecycle:
    """UNINITIALIZED -> LOADING -> READY / FAILED."""

    def test_starts_uninitialized(self, model_dir, zeros_input):
        registry = ModelRegistry(model_dir / "model.json", device="cpu")
        assert registry.state is ModelState.UNINITIALIZED
        assert not registry.is_ready()

        with pytest.raises(NotReadyError) as excinfo:
            registry.infer(zeros_input)
        assert excinfo.value.retryable is True

    def test_ready_after_initialize(self, model_dir):
        registry = ModelRegistry(model_dir / "model.json", device="cpu")
        assert registry.initialize() is ModelState.READY
        assert registry.is_ready()
        assert registry.failure_reason is None

    def test_initialize_is_idempotent(self, model_dir):
        builder = CountingBuilder()
        registry = ModelRegistry(model_dir / "model.json", device="cpu", builder=builder)

        registry.initialize()
        registry.initialize()

        assert builder.calls == 1
        assert registry.state is ModelState.READY

    def test_failure_is_terminal(self, tmp_path, zeros_input):
        builder = CountingBuilder()
        registry = ModelRegistry(tmp_path / "model.json", device="cpu", builder=builder)

        assert registry.initialize() is ModelState.FAILED
        assert "ManifestError" in registry.failure_reason
        assert registry.initialize() is ModelState.FAILED
        assert builder.calls == 0

        with pytest.raises(NotReadyError) as excinfo:
            registry.infer(zeros_input)
        assert excinfo.value.retryable is False

    def test_builder_error_marks_failed(self, model_dir):
        builder = CountingBuilder(error=RuntimeError("boom"))
        registry = ModelRegistry(model_dir / "model.json", device="cpu", builder=builder)

        assert registry.initialize() is ModelState.FAILED
        assert registry.failure_reason == "RuntimeError: boom"
        registry.initialize()
        assert builder.calls == 1

    def test_failure_is_logged(self, tmp_path, caplog):
        registry = ModelRegistry(tmp_path / "model.json", device="cpu")
        with caplog.at_level("ERROR", logger="leafcare_server.registry"):
            registry.initialize()
        assert "Model failed to load" in caplog.text


class TestConcurrency:
    """Concurrent callers share one load."""

    def test_concurrent_initialize_builds_once(self, model_dir):
        builder = CountingBuilder(delay=0.2)
        registry = ModelRegistry(model_dir / "model.json", device="cpu", builder=builder)
        results = []

        threads = [threading.Thread(target=lambda: results.append(registry.initialize())) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert builder.calls == 1
        assert results == [ModelState.READY] * 4

    def test_loading_is_observable_and_wait_blocks(self, model_dir, zeros_input):
        builder = CountingBuilder(delay=0.3)
        registry = ModelRegistry(model_dir / "model.json", device="cpu", builder=builder)
        worker = threading.Thread(target=registry.initialize)
        worker.start()

        deadline = time.monotonic() + 5
        while registry.state is ModelState.UNINITIALIZED and time.monotonic() < deadline:
            time.sleep(0.005)
        assert registry.state is ModelState.LOADING

        with pytest.raises(NotReadyError) as excinfo:
            registry.infer(zeros_input)
        assert excinfo.value.retryable is True

        assert registry.wait(timeout=5) is ModelState.READY
        worker.join()

    def test_wait_before_initialize_returns_immediately(self, model_dir):
        registry = ModelRegistry(model_dir / "model.json", device="cpu")
        assert registry.wait(timeout=10) is ModelState.UNINITIALIZED


class TestInference:
    """Forward pass through a READY registry."""

    def test_output_is_probability_vector(self, model_dir, zeros_input):
        registry = ModelRegistry(model_dir / "model.json", device="cpu")
        registry.initialize()

        output = registry.infer(zeros_input)

        assert isinstance(output, np.ndarray)
        assert output.shape == (4,)
        np.testing.assert_allclose(output, np.full(4, 0.25), rtol=1e-5)

    def test_output_size_probe(self, model_dir):
        registry = ModelRegistry(model_dir / "model.json", device="cpu")
        assert registry.output_size is None
        registry.initialize()
        assert registry.output_size == 4
