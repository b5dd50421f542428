"""
Server Configuration
====================
Centralized configuration for the leaf-disease inference server.
All settings are read from environment variables with sensible defaults.
"""
from __future__ import annotations

import os
from pathlib import Path


# =============================================================================
# Path Configuration
# =============================================================================
BASE_DIR = Path(os.environ.get("LEAFCARE_BASE_DIR", Path(__file__).parent.parent))
MODEL_DIR = Path(os.environ.get("LEAFCARE_MODEL_DIR", BASE_DIR / "model"))
UPLOAD_DIR = Path(os.environ.get("LEAFCARE_UPLOAD_DIR", BASE_DIR / "uploads"))

# =============================================================================
# Model Artifacts
# =============================================================================
# Manifest (topology + weight specs + shard list), written by the exporter
MANIFEST_FILE: str = os.environ.get("LEAFCARE_MANIFEST_FILE", "model.json")

# Stringified class index -> class name
CLASS_INDEX_FILE: str = os.environ.get("LEAFCARE_CLASS_INDEX_FILE", "class_indices.json")

# Optional class name -> {solution, pesticide}
REMEDY_FILE: str = os.environ.get("LEAFCARE_REMEDY_FILE", "diseaseInfo.json")

# ``cpu``, ``cuda`` or ``auto``
DEVICE: str = os.environ.get("LEAFCARE_DEVICE", "auto")

# =============================================================================
# Preprocessing
# =============================================================================
IMG_SIZE: int = int(os.environ.get("LEAFCARE_IMG_SIZE", "224"))

# ``bilinear``, ``nearest`` or ``bicubic``
RESAMPLE: str = os.environ.get("LEAFCARE_RESAMPLE", "bilinear")

# =============================================================================
# Request Handling
# =============================================================================
MAX_UPLOAD_BYTES: int = int(os.environ.get("LEAFCARE_MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))

# How long a request may wait for a model that is still loading (0 = reject)
READY_WAIT_SECONDS: float = float(os.environ.get("LEAFCARE_READY_WAIT_SECONDS", "0"))

# Per-request timeout for preprocessing + inference (0 = disabled)
PREDICT_TIMEOUT_SECONDS: float = float(os.environ.get("LEAFCARE_PREDICT_TIMEOUT_SECONDS", "0"))

# =============================================================================
# Server Configuration
# =============================================================================
HOST: str = os.environ.get("LEAFCARE_HOST", "0.0.0.0")
PORT: int = int(os.environ.get("PORT", os.environ.get("LEAFCARE_PORT", "5000")))
LOG_LEVEL: str = os.environ.get("LEAFCARE_LOG_LEVEL", "INFO")
CORS_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.environ.get("LEAFCARE_CORS_ORIGINS", "*").split(",")
    if origin.strip()
]


def manifest_path() -> Path:
    """Absolute path of the model manifest inside ``MODEL_DIR``."""
    return MODEL_DIR / MANIFEST_FILE


def class_index_path() -> Path:
    return MODEL_DIR / CLASS_INDEX_FILE


def remedy_path() -> Path:
    return MODEL_DIR / REMEDY_FILE
