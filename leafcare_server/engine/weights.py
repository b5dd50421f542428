"""
Weight Manifest Loader
======================
Read a tfjs layers-model manifest (``model.json``) plus its binary weight
shards and reassemble them into one contiguous buffer.

``decode_weights`` slices that buffer into named numpy arrays.  It is a pure
function of (specs, buffer) and needs no ML runtime.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import numpy as np
from pydantic import ValidationError

from leafcare_server.errors import ManifestError, ShardError
from leafcare_server.schemas import ModelManifest, WeightSpec


logger = logging.getLogger("leafcare_server.weights")


# Shard contents are little-endian regardless of the host
_STORED_DTYPES: dict[str, np.dtype] = {
    "float32": np.dtype("<f4"),
    "int32": np.dtype("<i4"),
    "bool": np.dtype("u1"),
}
_QUANTIZED_DTYPES: dict[str, np.dtype] = {
    "uint8": np.dtype("u1"),
    "uint16": np.dtype("<u2"),
    "float16": np.dtype("<f2"),
}


@dataclass
class LoadedWeights:
    """Everything needed to build the model, fully resident in memory."""

    topology: dict[str, Any]
    weight_specs: list[WeightSpec]
    buffer: bytearray

    @property
    def total_bytes(self) -> int:
        return len(self.buffer)


def read_manifest(manifest_path: Path) -> ModelManifest:
    """Parse and validate ``model.json``; every failure becomes ``ManifestError``."""
    try:
        raw = Path(manifest_path).read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ManifestError(f"Manifest not found: {manifest_path}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ManifestError(f"Cannot read manifest {manifest_path}: {exc}") from exc

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Manifest {manifest_path} is not valid JSON: {exc}") from exc

    try:
        return ModelManifest.model_validate(payload)
    except ValidationError as exc:
        raise ManifestError(f"Manifest {manifest_path} failed validation: {exc}") from exc


class WeightManifestLoader:
    """Load a manifest and concatenate its shards in declaration order."""

    def load(
        self,
        manifest_path: Path | str,
        shard_dir: Path | str | None = None,
    ) -> LoadedWeights:
        """
        Read the manifest and every shard it references.

        Parameters
        ----------
        manifest_path : Path
            Location of ``model.json``.
        shard_dir : Path, optional
            Directory holding the shard files.  Defaults to the manifest's
            own directory.

        Returns
        -------
        LoadedWeights
            The raw topology, the flattened weight spec list (unmodified),
            and the concatenated shard buffer.

        Raises
        ------
        ManifestError
            If the manifest is missing, unreadable or malformed.
        ShardError
            If any shard is missing, unreadable or outside ``shard_dir``.
        """
        manifest_path = Path(manifest_path)
        manifest = read_manifest(manifest_path)
        shard_dir = Path(shard_dir) if shard_dir is not None else manifest_path.parent

        shard_files = [_resolve_shard(shard_dir, name) for name in manifest.shard_paths]
        buffer = _read_shards(shard_files)

        logger.info(
            "Read %d shard(s), %d bytes, %d weight spec(s) from %s",
            len(shard_files),
            len(buffer),
            len(manifest.weight_specs),
            manifest_path.name,
        )
        return LoadedWeights(
            topology=manifest.model_topology,
            weight_specs=manifest.weight_specs,
            buffer=buffer,
        )


def _resolve_shard(shard_dir: Path, name: str) -> Path:
    root = shard_dir.resolve()
    path = (root / name).resolve()
    if root not in path.parents:
        raise ShardError(f"Shard path {name!r} escapes {shard_dir}")
    return path


def _read_shards(paths: list[Path]) -> bytearray:
    """Read all shards into a single pre-sized buffer, in the given order."""
    sizes: list[int] = []
    for path in paths:
        try:
            sizes.append(path.stat().st_size)
        except FileNotFoundError as exc:
            raise ShardError(f"Weight shard not found: {path.name}") from exc
        except OSError as exc:
            raise ShardError(f"Cannot stat weight shard {path.name}: {exc}") from exc

    buffer = bytearray(sum(sizes))
    offset = 0
    with memoryview(buffer) as view:
        for path, size in zip(paths, sizes):
            try:
                with open(path, "rb") as fh:
                    read = fh.readinto(view[offset:offset + size])
            except OSError as exc:
                raise ShardError(f"Cannot read weight shard {path.name}: {exc}") from exc
            if read != size:
                raise ShardError(
                    f"Weight shard {path.name} changed while reading "
                    f"(expected {size} bytes, got {read})"
                )
            offset += size
    return buffer


def decode_weights(
    weight_specs: list[WeightSpec],
    buffer: bytes | bytearray,
) -> dict[str, np.ndarray]:
    """
    Slice the concatenated shard buffer into named arrays.

    Specs consume the buffer back to back in list order.  The specs must
    account for every byte of the buffer: a short or long buffer is a fatal
    ``ManifestError``, never a silent truncation.
    """
    expected = sum(spec.byte_length for spec in weight_specs)
    if expected != len(buffer):
        raise ManifestError(
            f"Weight specs describe {expected} bytes but the shards hold {len(buffer)} bytes"
        )

    weights: dict[str, np.ndarray] = {}
    offset = 0
    for spec in weight_specs:
        if spec.name in weights:
            raise ManifestError(f"Duplicate weight name in manifest: {spec.name}")
        weights[spec.name] = _decode_one(spec, buffer, offset)
        offset += spec.byte_length
    return weights


def _decode_one(spec: WeightSpec, buffer: bytes | bytearray, offset: int) -> np.ndarray:
    quant = spec.quantization

    if spec.size == 0:
        return np.zeros(spec.shape, dtype=np.bool_ if spec.dtype == "bool" else spec.dtype)

    if quant is None:
        array = np.frombuffer(buffer, dtype=_STORED_DTYPES[spec.dtype], count=spec.size, offset=offset)
        if spec.dtype == "bool":
            array = array.astype(np.bool_)
        return array.reshape(spec.shape)

    raw = np.frombuffer(buffer, dtype=_QUANTIZED_DTYPES[quant.dtype], count=spec.size, offset=offset)
    if quant.dtype == "float16":
        array = raw.astype(np.float32)
    else:
        if quant.scale is None or quant.min is None:
            raise ManifestError(f"Quantized weight {spec.name} is missing scale/min")
        array = raw.astype(np.float32) * np.float32(quant.scale) + np.float32(quant.min)

    if spec.dtype == "int32":
        array = np.round(array).astype(np.int32)
    elif spec.dtype == "bool":
        array = array != 0
    return array.reshape(spec.shape)
