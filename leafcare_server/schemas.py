"""
Pydantic Schemas
================
Request / response models for the inference server API, plus the schemas
the JSON model artifacts are validated against at load time.
"""
from __future__ import annotations

import math
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator


# =============================================================================
# Health Check Schemas
# =============================================================================

class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str = Field(default="healthy", examples=["healthy"])


class ReadyResponse(BaseModel):
    """Readiness probe response: indicates model and labels are loaded."""
    ready: bool = Field(..., examples=[True])
    state: str = Field(..., examples=["ready"])
    failure_reason: str | None = Field(default=None, examples=["ShardError: missing shard"])
    num_classes: int = Field(..., examples=[38])
    unknown_labels: int = Field(default=0, examples=[0])
    missing_remedies: int = Field(default=0, examples=[3])


class LiveResponse(BaseModel):
    """Liveness probe response: indicates process is running."""
    live: bool = Field(default=True, examples=[True])


# =============================================================================
# Inference Schemas
# =============================================================================

class PredictResponse(BaseModel):
    """Successful single-image diagnosis."""
    status: Literal["success"] = "success"
    label: str = Field(..., examples=["Tomato___Late_blight"])
    confidence: str = Field(..., examples=["97.31"])
    solution: str = Field(..., examples=["Remove infected leaves and improve airflow."])
    pesticide: str = Field(..., examples=["Chlorothalonil"])


class ErrorResponse(BaseModel):
    """Standard error envelope."""
    status: Literal["error"] = "error"
    message: str = Field(..., examples=["No image uploaded."])


# =============================================================================
# Classes Endpoint
# =============================================================================

class ClassInfo(BaseModel):
    """Information about a disease class."""
    index: int = Field(..., examples=[0])
    name: str = Field(..., examples=["Apple___Apple_scab"])


class ClassesListResponse(BaseModel):
    """List of all classification classes, in model output order."""
    classes: list[ClassInfo]
    total: int = Field(..., examples=[38])


# =============================================================================
# Artifact Schemas
# =============================================================================

# Bytes per stored element
DTYPE_BYTES: dict[str, int] = {"float32": 4, "int32": 4, "bool": 1}
QUANTIZED_BYTES: dict[str, int] = {"uint8": 1, "uint16": 2, "float16": 2}


class WeightQuantization(BaseModel):
    """tfjs-style weight quantization block."""
    model_config = ConfigDict(extra="ignore")

    dtype: Literal["uint8", "uint16", "float16"]
    scale: float | None = None
    min: float | None = None

    @field_validator("scale", "min")
    @classmethod
    def _finite(cls, value: float | None) -> float | None:
        if value is not None and not math.isfinite(value):
            raise ValueError("quantization parameters must be finite")
        return value


class WeightSpec(BaseModel):
    """One named tensor stored in the concatenated shard buffer."""
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    shape: list[int]
    dtype: Literal["float32", "int32", "bool"] = "float32"
    quantization: WeightQuantization | None = None

    @field_validator("shape")
    @classmethod
    def _non_negative(cls, value: list[int]) -> list[int]:
        if any(dim < 0 for dim in value):
            raise ValueError(f"negative dimension in shape {value}")
        return value

    @property
    def size(self) -> int:
        return math.prod(self.shape)

    @property
    def byte_length(self) -> int:
        if self.quantization is not None:
            return self.size * QUANTIZED_BYTES[self.quantization.dtype]
        return self.size * DTYPE_BYTES[self.dtype]


class WeightGroup(BaseModel):
    """A group of shard files and the weights packed into them."""
    model_config = ConfigDict(extra="ignore")

    paths: list[str] = Field(..., min_length=1)
    weights: list[WeightSpec]


class ModelManifest(BaseModel):
    """``model.json`` as written by the tfjs layers-model exporter."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True, protected_namespaces=())

    format: str | None = None
    generated_by: str | None = Field(default=None, alias="generatedBy")
    model_topology: dict[str, Any] = Field(..., alias="modelTopology")
    weights_manifest: list[WeightGroup] = Field(..., alias="weightsManifest", min_length=1)

    @property
    def weight_specs(self) -> list[WeightSpec]:
        return [spec for group in self.weights_manifest for spec in group.weights]

    @property
    def shard_paths(self) -> list[str]:
        return [path for group in self.weights_manifest for path in group.paths]


class ClassIndexFile(RootModel[dict[str, str]]):
    """``class_indices.json``: stringified index -> class name."""


class RemedyFields(BaseModel):
    model_config = ConfigDict(extra="ignore")

    solution: str | None = None
    pesticide: str | None = None


class RemedyFile(RootModel[dict[str, RemedyFields]]):
    """``diseaseInfo.json``: class name -> remedy texts."""
