"""
Leafcare Server Package
=======================
FastAPI inference server for plant-leaf disease diagnosis.

Provides:
- Health check endpoints (/health, /health/ready, /health/live)
- Diagnosis endpoint (/predict) returning a label, confidence and remedy
- Loading of tfjs layers-model exports (manifest + sharded weights)
"""
from __future__ import annotations


__version__ = "0.1.0"
