"""
Keras Layer Equivalents
=======================
Inference-only torch modules that reproduce the numerics of the Keras layers
found in tfjs layers-model exports.

Every module consumes and produces channels-last (NHWC) tensors so that
``Flatten``/``Reshape``/``Concatenate`` see the same element order as Keras.
Spatial ops permute to NCHW internally around the torch kernel call.
"""
from __future__ import annotations

import math
from collections.abc import Callable
from typing import Any

import numpy as np
import torch
import torch.nn.functional as F
from torch import nn

from leafcare_server.errors import ModelBuildError


# =============================================================================
# WEIGHT ACCESS
# =============================================================================

class WeightLookup:
    """
    Named access to decoded weights, tracking which ones were consumed.

    Weights are found as ``<layer>/<param>`` first, then by the
    ``/<layer>/<param>`` suffix used when a model is nested in another.
    A suffix shared by several unused weights is an error.
    """

    def __init__(self, weights: dict[str, np.ndarray]) -> None:
        self._weights = weights
        self._used: set[str] = set()

    def get(self, layer_name: str, param: str, shape: tuple[int | None, ...] | None = None) -> np.ndarray:
        key = f"{layer_name}/{param}"
        if key not in self._weights:
            suffix = "/" + key
            matches = [n for n in self._weights if n.endswith(suffix) and n not in self._used]
            if not matches:
                raise ModelBuildError(f"Missing weight {key!r} for layer {layer_name!r}")
            if len(matches) > 1:
                raise ModelBuildError(
                    f"Weight {key!r} for layer {layer_name!r} is ambiguous: {sorted(matches)}"
                )
            key = matches[0]

        array = self._weights[key]
        if shape is not None:
            ok = array.ndim == len(shape) and all(
                want is None or want == got for want, got in zip(shape, array.shape)
            )
            if not ok:
                raise ModelBuildError(
                    f"Weight {key!r} has shape {tuple(array.shape)}, expected {shape}"
                )
        self._used.add(key)
        return array

    def unused(self) -> list[str]:
        return [name for name in self._weights if name not in self._used]


def _to_tensor(array: np.ndarray) -> torch.Tensor:
    array = np.asarray(array, dtype=np.float32)
    if not (array.flags.writeable and array.flags.aligned and array.flags.c_contiguous):
        array = np.array(array, dtype=np.float32, order="C")
    return torch.from_numpy(array)


def _pair(value: Any) -> tuple[int, int]:
    if isinstance(value, int):
        return value, value
    first, second = value
    return int(first), int(second)


def _same_padding(size: int, kernel: int, stride: int, dilation: int = 1) -> tuple[int, int]:
    """TF ``same`` padding: the odd pixel goes after, not before."""
    out = math.ceil(size / stride)
    effective = (kernel - 1) * dilation + 1
    total = max((out - 1) * stride + effective - size, 0)
    return total // 2, total - total // 2


def _pad_nchw_same(
    x: torch.Tensor,
    kernel: tuple[int, int],
    stride: tuple[int, int],
    dilation: tuple[int, int] = (1, 1),
    value: float = 0.0,
) -> torch.Tensor:
    top, bottom = _same_padding(x.shape[2], kernel[0], stride[0], dilation[0])
    left, right = _same_padding(x.shape[3], kernel[1], stride[1], dilation[1])
    if top == bottom == left == right == 0:
        return x
    return F.pad(x, (left, right, top, bottom), value=value)


# =============================================================================
# ACTIVATION FUNCTIONS
# =============================================================================

ACTIVATION_MAP: dict[str, Callable[[], nn.Module]] = {
    "linear": nn.Identity,
    "relu": nn.ReLU,
    "relu6": nn.ReLU6,
    "sigmoid": nn.Sigmoid,
    "tanh": nn.Tanh,
    "softmax": lambda: nn.Softmax(dim=-1),
    "elu": nn.ELU,
    "selu": nn.SELU,
    "softplus": nn.Softplus,
    "softsign": nn.Softsign,
    "swish": nn.SiLU,
    "silu": nn.SiLU,
    "gelu": nn.GELU,
    "leaky_relu": lambda: nn.LeakyReLU(0.2),
}


def get_activation_fn(name: str | None) -> nn.Module:
    """Returns the instantiated activation module for a Keras activation name."""
    key = (name or "linear").lower()
    if key not in ACTIVATION_MAP:
        raise ModelBuildError(f"Unsupported activation {name!r}")
    return ACTIVATION_MAP[key]()


# =============================================================================
# BASE
# =============================================================================

class KerasLayer(nn.Module):
    """Base for channels-last inference layers."""

    # Merge layers receive a list of tensors instead of a single tensor
    takes_list: bool = False

    def __init__(self, name: str) -> None:
        super().__init__()
        self.layer_name = name

    def extra_repr(self) -> str:
        return f"name={self.layer_name!r}"


class Passthrough(KerasLayer):
    """InputLayer, Dropout and friends: identity at inference time."""

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x


# =============================================================================
# CONVOLUTION / DENSE
# =============================================================================

class Conv2D(KerasLayer):
    def __init__(
        self,
        name: str,
        kernel: np.ndarray,
        bias: np.ndarray | None,
        strides: tuple[int, int],
        padding: str,
        dilation: tuple[int, int],
        groups: int,
        activation: nn.Module,
    ) -> None:
        super().__init__(name)
        # Keras HWIO -> torch OIHW
        self.register_buffer("weight", _to_tensor(kernel.transpose(3, 2, 0, 1)))
        self.register_buffer("bias", _to_tensor(bias) if bias is not None else None)
        self.kernel_size = (kernel.shape[0], kernel.shape[1])
        self.strides = strides
        self.padding = padding
        self.dilation = dilation
        self.groups = groups
        self.activation = activation

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = x.permute(0, 3, 1, 2)
        if self.padding == "same":
            x = _pad_nchw_same(x, self.kernel_size, self.strides, self.dilation)
        x = F.conv2d(x, self.weight, self.bias, self.strides, 0, self.dilation, self.groups)
        return self.activation(x.permute(0, 2, 3, 1))


def _depthwise_to_torch(kernel: np.ndarray) -> np.ndarray:
    """Keras [kh, kw, in, mult] -> torch [in * mult, 1, kh, kw] (channel i*mult + m)."""
    kh, kw, channels, mult = kernel.shape
    return kernel.transpose(2, 3, 0, 1).reshape(channels * mult, 1, kh, kw)


class DepthwiseConv2D(Conv2D):
    def __init__(
        self,
        name: str,
        kernel: np.ndarray,
        bias: np.ndarray | None,
        strides: tuple[int, int],
        padding: str,
        dilation: tuple[int, int],
        activation: nn.Module,
    ) -> None:
        channels = kernel.shape[2]
        # Conv2D transposes HWIO -> OIHW, so hand it the torch layout back in HWIO
        super().__init__(
            name,
            _depthwise_to_torch(kernel).transpose(2, 3, 1, 0),
            bias,
            strides,
            padding,
            dilation,
            channels,
            activation,
        )


class SeparableConv2D(KerasLayer):
    def __init__(
        self,
        name: str,
        depthwise: DepthwiseConv2D,
        pointwise: Conv2D,
    ) -> None:
        super().__init__(name)
        self.depthwise = depthwise
        self.pointwise = pointwise

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.pointwise(self.depthwise(x))


class Dense(KerasLayer):
    def __init__(self, name: str, kernel: np.ndarray, bias: np.ndarray | None, activation: nn.Module) -> None:
        super().__init__(name)
        # Keras stores [in, out]; applied on the last axis like Keras does
        self.register_buffer("kernel", _to_tensor(kernel))
        self.register_buffer("bias", _to_tensor(bias) if bias is not None else None)
        self.activation = activation

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = torch.matmul(x, self.kernel)
        if self.bias is not None:
            x = x + self.bias
        return self.activation(x)


# =============================================================================
# NORMALIZATION / ACTIVATION LAYERS
# =============================================================================

class BatchNormalization(KerasLayer):
    def __init__(self, name: str, scale: np.ndarray, shift: np.ndarray, axis: int) -> None:
        super().__init__(name)
        self.register_buffer("scale", _to_tensor(scale))
        self.register_buffer("shift", _to_tensor(shift))
        self.axis = axis

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        shape = [1] * x.dim()
        shape[self.axis % x.dim()] = -1
        return x * self.scale.view(shape) + self.shift.view(shape)


class Activation(KerasLayer):
    def __init__(self, name: str, activation: nn.Module) -> None:
        super().__init__(name)
        self.activation = activation

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.activation(x)


class ReLU(KerasLayer):
    def __init__(self, name: str, max_value: float | None, negative_slope: float, threshold: float) -> None:
        super().__init__(name)
        self.max_value = max_value
        self.negative_slope = negative_slope
        self.threshold = threshold

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.negative_slope == 0 and self.threshold == 0:
            x = F.relu(x)
        else:
            x = torch.where(x >= self.threshold, x, self.negative_slope * (x - self.threshold))
        if self.max_value is not None:
            x = torch.clamp(x, max=self.max_value)
        return x


class Softmax(KerasLayer):
    def __init__(self, name: str, axis: int) -> None:
        super().__init__(name)
        self.axis = axis

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return torch.softmax(x, dim=self.axis)


class Rescaling(KerasLayer):
    def __init__(self, name: str, scale: float, offset: float) -> None:
        super().__init__(name)
        self.scale = scale
        self.offset = offset

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x * self.scale + self.offset


# =============================================================================
# POOLING / RESHAPING
# =============================================================================

class MaxPooling2D(KerasLayer):
    def __init__(self, name: str, pool_size: tuple[int, int], strides: tuple[int, int], padding: str) -> None:
        super().__init__(name)
        self.pool_size = pool_size
        self.strides = strides
        self.padding = padding

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = x.permute(0, 3, 1, 2)
        if self.padding == "same":
            x = _pad_nchw_same(x, self.pool_size, self.strides, value=float("-inf"))
        x = F.max_pool2d(x, self.pool_size, self.strides)
        return x.permute(0, 2, 3, 1)


class AveragePooling2D(MaxPooling2D):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        x = x.permute(0, 3, 1, 2)
        if self.padding == "same":
            # TF averages over the valid pixels only
            ones = torch.ones((1, 1, x.shape[2], x.shape[3]), dtype=x.dtype, device=x.device)
            counts = F.avg_pool2d(_pad_nchw_same(ones, self.pool_size, self.strides), self.pool_size, self.strides)
            x = F.avg_pool2d(_pad_nchw_same(x, self.pool_size, self.strides), self.pool_size, self.strides)
            x = x / counts
        else:
            x = F.avg_pool2d(x, self.pool_size, self.strides)
        return x.permute(0, 2, 3, 1)


class GlobalPooling2D(KerasLayer):
    def __init__(self, name: str, mode: str, keepdims: bool) -> None:
        super().__init__(name)
        self.mode = mode
        self.keepdims = keepdims

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if self.mode == "max":
            return torch.amax(x, dim=(1, 2), keepdim=self.keepdims)
        return torch.mean(x, dim=(1, 2), keepdim=self.keepdims)


class Flatten(KerasLayer):
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x.reshape(x.shape[0], -1)


class Reshape(KerasLayer):
    def __init__(self, name: str, target_shape: tuple[int, ...]) -> None:
        super().__init__(name)
        self.target_shape = target_shape

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return x.reshape(x.shape[0], *self.target_shape)


class ZeroPadding2D(KerasLayer):
    def __init__(self, name: str, rows: tuple[int, int], cols: tuple[int, int]) -> None:
        super().__init__(name)
        self.rows = rows
        self.cols = cols

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # F.pad pads from the last dim backwards: C, W, H
        return F.pad(x, (0, 0, self.cols[0], self.cols[1], self.rows[0], self.rows[1]))


# =============================================================================
# MERGE
# =============================================================================

class Add(KerasLayer):
    takes_list = True

    def forward(self, inputs: list[torch.Tensor]) -> torch.Tensor:
        out = inputs[0]
        for other in inputs[1:]:
            out = out + other
        return out


class Multiply(KerasLayer):
    takes_list = True

    def forward(self, inputs: list[torch.Tensor]) -> torch.Tensor:
        out = inputs[0]
        for other in inputs[1:]:
            out = out * other
        return out


class Concatenate(KerasLayer):
    takes_list = True

    def __init__(self, name: str, axis: int) -> None:
        super().__init__(name)
        self.axis = axis

    def forward(self, inputs: list[torch.Tensor]) -> torch.Tensor:
        return torch.cat(inputs, dim=self.axis)


# =============================================================================
# BUILDERS: (name, keras config, weights) -> module
# =============================================================================

def _padding_mode(config: dict[str, Any]) -> str:
    padding = str(config.get("padding", "valid")).lower()
    if padding not in ("valid", "same"):
        raise ModelBuildError(f"Unsupported padding {padding!r}")
    return padding


def _bias(name: str, config: dict[str, Any], weights: WeightLookup, units: int) -> np.ndarray | None:
    if not config.get("use_bias", True):
        return None
    return weights.get(name, "bias", (units,))


def _build_conv2d(name: str, config: dict[str, Any], weights: WeightLookup) -> nn.Module:
    kh, kw = _pair(config["kernel_size"])
    filters = int(config["filters"])
    groups = int(config.get("groups", 1))
    kernel = weights.get(name, "kernel", (kh, kw, None, filters))
    return Conv2D(
        name,
        kernel,
        _bias(name, config, weights, filters),
        _pair(config.get("strides", 1)),
        _padding_mode(config),
        _pair(config.get("dilation_rate", 1)),
        groups,
        get_activation_fn(config.get("activation")),
    )


def _build_depthwise(name: str, config: dict[str, Any], weights: WeightLookup) -> nn.Module:
    kh, kw = _pair(config["kernel_size"])
    mult = int(config.get("depth_multiplier", 1))
    kernel = weights.get(name, "depthwise_kernel", (kh, kw, None, mult))
    return DepthwiseConv2D(
        name,
        kernel,
        _bias(name, config, weights, kernel.shape[2] * mult),
        _pair(config.get("strides", 1)),
        _padding_mode(config),
        _pair(config.get("dilation_rate", 1)),
        get_activation_fn(config.get("activation")),
    )


def _build_separable(name: str, config: dict[str, Any], weights: WeightLookup) -> nn.Module:
    kh, kw = _pair(config["kernel_size"])
    mult = int(config.get("depth_multiplier", 1))
    filters = int(config["filters"])
    depthwise_kernel = weights.get(name, "depthwise_kernel", (kh, kw, None, mult))
    pointwise_kernel = weights.get(
        name, "pointwise_kernel", (1, 1, depthwise_kernel.shape[2] * mult, filters)
    )
    depthwise = DepthwiseConv2D(
        name + "/depthwise",
        depthwise_kernel,
        None,
        _pair(config.get("strides", 1)),
        _padding_mode(config),
        _pair(config.get("dilation_rate", 1)),
        nn.Identity(),
    )
    pointwise = Conv2D(
        name + "/pointwise",
        pointwise_kernel,
        _bias(name, config, weights, filters),
        (1, 1),
        "valid",
        (1, 1),
        1,
        get_activation_fn(config.get("activation")),
    )
    return SeparableConv2D(name, depthwise, pointwise)


def _build_dense(name: str, config: dict[str, Any], weights: WeightLookup) -> nn.Module:
    units = int(config["units"])
    return Dense(
        name,
        weights.get(name, "kernel", (None, units)),
        _bias(name, config, weights, units),
        get_activation_fn(config.get("activation")),
    )


def _build_batchnorm(name: str, config: dict[str, Any], weights: WeightLookup) -> nn.Module:
    axis = config.get("axis", -1)
    if isinstance(axis, list):
        if len(axis) != 1:
            raise ModelBuildError(f"BatchNormalization {name!r} over several axes is not supported")
        axis = axis[0]

    mean = weights.get(name, "moving_mean")
    variance = weights.get(name, "moving_variance", mean.shape)
    gamma = weights.get(name, "gamma", mean.shape) if config.get("scale", True) else np.ones_like(mean)
    beta = weights.get(name, "beta", mean.shape) if config.get("center", True) else np.zeros_like(mean)
    epsilon = float(config.get("epsilon", 1e-3))

    scale = gamma / np.sqrt(variance + epsilon)
    return BatchNormalization(name, scale, beta - mean * scale, int(axis))


def _build_relu(name: str, config: dict[str, Any], weights: WeightLookup) -> nn.Module:
    max_value = config.get("max_value")
    return ReLU(
        name,
        float(max_value) if max_value is not None else None,
        float(config.get("negative_slope", 0.0) or 0.0),
        float(config.get("threshold", 0.0) or 0.0),
    )


def _build_pooling(cls: type[MaxPooling2D]) -> Callable[[str, dict[str, Any], WeightLookup], nn.Module]:
    def build(name: str, config: dict[str, Any], weights: WeightLookup) -> nn.Module:
        pool_size = _pair(config.get("pool_size", 2))
        strides = config.get("strides")
        return cls(
            name,
            pool_size,
            _pair(strides) if strides is not None else pool_size,
            _padding_mode(config),
        )
    return build


def _build_zero_padding(name: str, config: dict[str, Any], weights: WeightLookup) -> nn.Module:
    padding = config.get("padding", 1)
    if isinstance(padding, int):
        rows = cols = (padding, padding)
    elif all(isinstance(p, int) for p in padding):
        rows = (padding[0], padding[0])
        cols = (padding[1], padding[1])
    else:
        rows, cols = _pair(padding[0]), _pair(padding[1])
    return ZeroPadding2D(name, rows, cols)


LAYER_BUILDERS: dict[str, Callable[[str, dict[str, Any], WeightLookup], nn.Module]] = {
    "InputLayer": lambda name, config, weights: Passthrough(name),
    "Dropout": lambda name, config, weights: Passthrough(name),
    "SpatialDropout2D": lambda name, config, weights: Passthrough(name),
    "GaussianNoise": lambda name, config, weights: Passthrough(name),
    "Conv2D": _build_conv2d,
    "DepthwiseConv2D": _build_depthwise,
    "SeparableConv2D": _build_separable,
    "Dense": _build_dense,
    "BatchNormalization": _build_batchnorm,
    "Activation": lambda name, config, weights: Activation(name, get_activation_fn(config.get("activation"))),
    "ReLU": _build_relu,
    "Softmax": lambda name, config, weights: Softmax(name, int(config.get("axis", -1))),
    "Rescaling": lambda name, config, weights: Rescaling(
        name, float(config.get("scale", 1.0)), float(config.get("offset", 0.0))
    ),
    "MaxPooling2D": _build_pooling(MaxPooling2D),
    "AveragePooling2D": _build_pooling(AveragePooling2D),
    "GlobalAveragePooling2D": lambda name, config, weights: GlobalPooling2D(
        name, "avg", bool(config.get("keepdims", False))
    ),
    "GlobalMaxPooling2D": lambda name, config, weights: GlobalPooling2D(
        name, "max", bool(config.get("keepdims", False))
    ),
    "Flatten": lambda name, config, weights: Flatten(name),
    "Reshape": lambda name, config, weights: Reshape(name, tuple(int(d) for d in config["target_shape"])),
    "ZeroPadding2D": _build_zero_padding,
    "Add": lambda name, config, weights: Add(name),
    "Multiply": lambda name, config, weights: Multiply(name),
    "Concatenate": lambda name, config, weights: Concatenate(name, int(config.get("axis", -1))),
}
