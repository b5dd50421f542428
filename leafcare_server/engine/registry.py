"""
Model Registry
==============
Owns the single process-wide model instance and its readiness state.

State machine::

    UNINITIALIZED -> LOADING -> READY
                             -> FAILED   (terminal, never retried)

``initialize()`` is the only writer.  Readers gate on ``is_ready()`` (or
block on ``wait()``); the model is immutable once published, so forward
passes need no lock.
"""
from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

import numpy as np
import torch
from torch import nn

from leafcare_server.engine.graph import build_model
from leafcare_server.engine.weights import WeightManifestLoader, decode_weights
from leafcare_server.errors import NotReadyError


logger = logging.getLogger("leafcare_server.registry")


class ModelState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


def resolve_device(device: str | None) -> torch.device:
    if device is None or device == "auto":
        device = "cuda" if torch.cuda.is_available() else "cpu"
    return torch.device(device)


class ModelRegistry:
    """Run-once model construction plus a read barrier for inference."""

    def __init__(
        self,
        manifest_path: Path | str,
        shard_dir: Path | str | None = None,
        device: str | None = None,
        loader: WeightManifestLoader | None = None,
        builder: Callable[[dict[str, Any], dict[str, np.ndarray]], nn.Module] = build_model,
    ) -> None:
        self.manifest_path = Path(manifest_path)
        self.shard_dir = Path(shard_dir) if shard_dir is not None else None
        self.device = resolve_device(device)
        self._loader = loader or WeightManifestLoader()
        self._builder = builder

        self._lock = threading.Lock()
        self._settled = threading.Event()
        self._state = ModelState.UNINITIALIZED
        self._model: nn.Module | None = None
        self._failure_reason: str | None = None
        self._output_size: int | None = None

    # ------------------------------------------------------------------
    # Writer
    # ------------------------------------------------------------------
    def initialize(self) -> ModelState:
        """
        Build the model once.

        Returns the settled state.  Calling again after READY is a no-op;
        calling again after FAILED returns FAILED without retrying.
        """
        with self._lock:
            if self._state in (ModelState.READY, ModelState.FAILED):
                return self._state

            self._state = ModelState.LOADING
            logger.info("Loading model from %s …", self.manifest_path)
            try:
                loaded = self._loader.load(self.manifest_path, self.shard_dir)
                weights = decode_weights(loaded.weight_specs, loaded.buffer)
                model = self._builder(loaded.topology, weights)
                model = model.to(self.device)
                model.eval()
            except Exception as exc:
                self._failure_reason = f"{type(exc).__name__}: {exc}"
                self._state = ModelState.FAILED
                logger.exception("Model failed to load: %s", self._failure_reason)
            else:
                # Publish the model before flipping the state readers check
                self._model = model
                self._state = ModelState.READY
                logger.info("✓ Model loaded on %s", self.device)
            finally:
                self._settled.set()
            return self._state

    # ------------------------------------------------------------------
    # Readers
    # ------------------------------------------------------------------
    @property
    def state(self) -> ModelState:
        return self._state

    @property
    def failure_reason(self) -> str | None:
        return self._failure_reason

    def is_ready(self) -> bool:
        return self._state is ModelState.READY

    def wait(self, timeout: float | None = None) -> ModelState:
        """Block until READY/FAILED or ``timeout`` seconds, then report the state."""
        if self._state is not ModelState.UNINITIALIZED:
            self._settled.wait(timeout)
        return self._state

    def infer(self, tensor: torch.Tensor) -> np.ndarray:
        """
        Run one forward pass and return the first batch row as a 1-D array.

        Raises
        ------
        NotReadyError
            If the model is not READY.
        """
        model = self._model
        if self._state is not ModelState.READY or model is None:
            raise NotReadyError(
                f"Model is {self._state.value}",
                retryable=self._state in (ModelState.UNINITIALIZED, ModelState.LOADING),
            )

        with torch.inference_mode():
            output = model(tensor.to(self.device))
        if isinstance(output, (tuple, list)):
            output = output[0]
        return output[0].reshape(-1).float().cpu().numpy()

    @property
    def output_size(self) -> int | None:
        """Length of the output vector, probed lazily from a zero input."""
        if self._output_size is None and self.is_ready():
            shape = getattr(self._model, "input_shape", None)
            if shape and len(shape) == 4 and all(d is not None for d in shape[1:]):
                probe = torch.zeros((1, *shape[1:]), dtype=torch.float32)
                self._output_size = int(self.infer(probe).shape[0])
        return self._output_size
