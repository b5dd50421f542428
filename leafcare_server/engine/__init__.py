"""Inference engine package."""
from __future__ import annotations

from leafcare_server.engine import (
    graph,
    inference,
    labels,
    layers,
    preprocess,
    registry,
    service,
    weights,
)


__all__ = ["graph", "inference", "labels", "layers", "preprocess", "registry", "service", "weights"]
