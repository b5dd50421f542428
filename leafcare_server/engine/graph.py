"""
Graph Builder
=============
Turn a Keras-style model topology (as embedded in a tfjs ``model.json``) plus
decoded weights into an executable torch module.

Supports ``Sequential`` and ``Model``/``Functional`` containers (Keras 2
``inbound_nodes`` format), nested inside one another, e.g. a truncated
MobileNetV2 wrapped in a Sequential classification head.
"""
from __future__ import annotations

import logging
from typing import Any

import numpy as np
import torch
from torch import nn

from leafcare_server.engine.layers import LAYER_BUILDERS, KerasLayer, WeightLookup
from leafcare_server.errors import ModelBuildError


logger = logging.getLogger("leafcare_server.graph")

# (layer name, node index, tensor index)
TensorKey = tuple[str, int, int]

_CONTAINERS = ("Sequential", "Model", "Functional")


class SequentialGraph(nn.Module):
    """A plain chain of layers."""

    def __init__(self, name: str, layers: list[nn.Module]) -> None:
        super().__init__()
        self.graph_name = name
        self.layers = nn.ModuleList(layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        for layer in self.layers:
            x = layer(x)
        return x


class FunctionalGraph(nn.Module):
    """
    A DAG of layers executed in a precomputed topological order.

    ``plan`` holds one step per layer call: (layer index, output node index,
    input keys).  A shared layer appears once per call node.
    """

    def __init__(
        self,
        name: str,
        layers: list[nn.Module],
        plan: list[tuple[int, str, int, list[TensorKey]]],
        input_keys: list[TensorKey],
        output_keys: list[TensorKey],
    ) -> None:
        super().__init__()
        self.graph_name = name
        self.layers = nn.ModuleList(layers)
        self.plan = plan
        self.input_keys = input_keys
        self.output_keys = output_keys

    def forward(self, *inputs: torch.Tensor) -> torch.Tensor | tuple[torch.Tensor, ...]:
        if len(inputs) == 1 and isinstance(inputs[0], (list, tuple)):
            inputs = tuple(inputs[0])
        if len(inputs) != len(self.input_keys):
            raise ValueError(
                f"{self.graph_name} expects {len(self.input_keys)} input(s), got {len(inputs)}"
            )

        values: dict[TensorKey, torch.Tensor] = dict(zip(self.input_keys, inputs))
        for index, name, node, in_keys in self.plan:
            layer = self.layers[index]
            args = [values[key] for key in in_keys]
            if getattr(layer, "takes_list", False):
                out = layer(args)
            else:
                out = layer(*args)
            if isinstance(out, tuple):
                for t, tensor in enumerate(out):
                    values[(name, node, t)] = tensor
            else:
                values[(name, node, 0)] = out

        outputs = tuple(values[key] for key in self.output_keys)
        return outputs[0] if len(outputs) == 1 else outputs


class KerasGraph(nn.Module):
    """Top-level executable model: NHWC batch in, model output out."""

    def __init__(self, body: nn.Module, name: str, input_shape: tuple[int | None, ...] | None) -> None:
        super().__init__()
        self.body = body
        self.graph_name = name
        self.input_shape = input_shape

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.body(x)


# =============================================================================
# Builders
# =============================================================================

def build_model(topology: dict[str, Any], weights: dict[str, np.ndarray]) -> KerasGraph:
    """
    Build an eval-mode ``KerasGraph`` from a topology and decoded weights.

    Raises
    ------
    ModelBuildError
        Unknown layer or activation, missing/misshapen weight, or a graph
        whose nodes cannot be resolved.
    """
    spec = _unwrap_topology(topology)
    lookup = WeightLookup(weights)
    body = _build_layer(spec, lookup)

    unused = lookup.unused()
    if unused:
        logger.warning("%d weight(s) in the manifest were not used: %s", len(unused), ", ".join(unused[:10]))

    config = spec.get("config")
    name = config.get("name", "model") if isinstance(config, dict) else "model"
    graph = KerasGraph(body, name, _find_input_shape(spec))
    graph.eval()
    return graph


def _unwrap_topology(topology: dict[str, Any]) -> dict[str, Any]:
    # Keras .to_json() nests the graph under "model_config" in tfjs exports
    spec = topology.get("model_config", topology)
    if not isinstance(spec, dict) or "class_name" not in spec:
        raise ModelBuildError("Model topology has no 'class_name'")
    return spec


def _layer_name(spec: dict[str, Any]) -> str:
    config = spec.get("config")
    if isinstance(config, dict) and config.get("name"):
        return str(config["name"])
    if spec.get("name"):
        return str(spec["name"])
    raise ModelBuildError(f"{spec.get('class_name')} layer without a name")


def _build_layer(spec: dict[str, Any], lookup: WeightLookup) -> nn.Module:
    class_name = spec.get("class_name")
    config = spec.get("config")

    if class_name == "Sequential":
        return _build_sequential(config, lookup)
    if class_name in ("Model", "Functional"):
        return _build_functional(config, lookup)

    builder = LAYER_BUILDERS.get(class_name)
    if builder is None:
        raise ModelBuildError(f"Unsupported layer type {class_name!r}")

    name = _layer_name(spec)
    config = config or {}
    if config.get("data_format", "channels_last") != "channels_last":
        raise ModelBuildError(f"Layer {name!r}: only channels_last is supported")

    try:
        return builder(name, config, lookup)
    except ModelBuildError:
        raise
    except (KeyError, TypeError, ValueError) as exc:
        raise ModelBuildError(f"Invalid config for layer {name!r} ({class_name}): {exc}") from exc


def _build_sequential(config: Any, lookup: WeightLookup) -> SequentialGraph:
    # Very old Keras serialises a Sequential config as the bare layer list
    if isinstance(config, list):
        name, layer_specs = "sequential", config
    elif isinstance(config, dict):
        name, layer_specs = config.get("name", "sequential"), config.get("layers")
    else:
        raise ModelBuildError("Sequential config must be a dict or a list")
    if not layer_specs:
        raise ModelBuildError(f"Sequential {name!r} has no layers")

    layers = [_build_layer(layer_spec, lookup) for layer_spec in layer_specs]
    for layer in layers:
        if isinstance(layer, KerasLayer) and layer.takes_list:
            raise ModelBuildError(f"Merge layer {layer.layer_name!r} cannot appear in a Sequential")
    return SequentialGraph(name, layers)


def _tensor_key(ref: Any) -> TensorKey:
    if not isinstance(ref, (list, tuple)) or len(ref) < 3 or not isinstance(ref[0], str):
        raise ModelBuildError(f"Unsupported node reference {ref!r} (only Keras 2 format is supported)")
    return str(ref[0]), int(ref[1]), int(ref[2])


def _endpoint_keys(refs: Any) -> list[TensorKey]:
    if not refs:
        raise ModelBuildError("Functional model without input_layers/output_layers")
    # A single endpoint is sometimes written flat: ["input_1", 0, 0]
    if isinstance(refs[0], str):
        refs = [refs]
    return [_tensor_key(ref) for ref in refs]


def _build_functional(config: Any, lookup: WeightLookup) -> FunctionalGraph:
    if not isinstance(config, dict) or not config.get("layers"):
        raise ModelBuildError("Functional model config has no layers")
    name = config.get("name", "model")

    layers: list[nn.Module] = []
    index: dict[str, int] = {}
    pending: list[tuple[int, str, int, list[TensorKey]]] = []

    for layer_spec in config["layers"]:
        layer_name = _layer_name(layer_spec)
        if layer_name in index:
            raise ModelBuildError(f"Duplicate layer name {layer_name!r} in {name!r}")
        module = _build_layer(layer_spec, lookup)
        index[layer_name] = len(layers)
        layers.append(module)

        if layer_spec.get("class_name") == "InputLayer":
            continue
        for node_index, node in enumerate(layer_spec.get("inbound_nodes") or []):
            if isinstance(node, dict):
                raise ModelBuildError(f"Layer {layer_name!r}: Keras 3 node format is not supported")
            in_keys = [_tensor_key(ref) for ref in node]
            takes_list = isinstance(module, KerasLayer) and module.takes_list
            if len(in_keys) > 1 and not takes_list and not isinstance(module, FunctionalGraph):
                raise ModelBuildError(
                    f"Layer {layer_name!r} receives {len(in_keys)} inputs but accepts one"
                )
            pending.append((index[layer_name], layer_name, node_index, in_keys))

    input_keys = _endpoint_keys(config.get("input_layers"))
    output_keys = _endpoint_keys(config.get("output_layers"))
    plan = _order_plan(name, pending, input_keys, output_keys)
    return FunctionalGraph(name, layers, plan, input_keys, output_keys)


def _order_plan(
    name: str,
    pending: list[tuple[int, str, int, list[TensorKey]]],
    input_keys: list[TensorKey],
    output_keys: list[TensorKey],
) -> list[tuple[int, str, int, list[TensorKey]]]:
    """Kahn-style ordering: run a step once all of its inputs exist."""
    available: set[tuple[str, int]] = {(key[0], key[1]) for key in input_keys}
    plan: list[tuple[int, str, int, list[TensorKey]]] = []

    while pending:
        ready = [step for step in pending if all((k[0], k[1]) in available for k in step[3])]
        if not ready:
            missing = sorted({k[0] for step in pending for k in step[3] if (k[0], k[1]) not in available})
            raise ModelBuildError(f"Graph {name!r} has unresolved or cyclic inputs: {', '.join(missing)}")
        for step in ready:
            plan.append(step)
            available.add((step[1], step[2]))
        pending = [step for step in pending if step not in ready]

    for key in output_keys:
        if (key[0], key[1]) not in available:
            raise ModelBuildError(f"Graph {name!r} output {key[0]!r} is never computed")
    return plan


def _find_input_shape(spec: dict[str, Any]) -> tuple[int | None, ...] | None:
    """Best-effort batch input shape, e.g. ``(None, 224, 224, 3)``."""
    config = spec.get("config")
    layer_specs = config if isinstance(config, list) else (config or {}).get("layers") or []
    for layer_spec in layer_specs:
        layer_config = layer_spec.get("config") or {}
        shape = layer_config.get("batch_input_shape") or layer_config.get("batch_shape")
        if shape:
            return tuple(shape)
        if layer_spec.get("class_name") in _CONTAINERS:
            return _find_input_shape(layer_spec)
        if spec.get("class_name") == "Sequential":
            break
    return None
