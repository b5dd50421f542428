"""
Image Preprocessor
==================
Decode an uploaded image and turn it into the ``[1, H, W, 3]`` float tensor
the classifier was trained on: RGB, resized to ``IMG_SIZE``, scaled by
1/255 into ``[0, 1]``.
"""
from __future__ import annotations

import logging
from pathlib import Path

import torch
from PIL import Image
from torchvision import transforms
from torchvision.transforms import InterpolationMode

from leafcare_server import config
from leafcare_server.errors import DecodeError


logger = logging.getLogger("leafcare_server.preprocess")

RESAMPLE_MODES: dict[str, InterpolationMode] = {
    "nearest": InterpolationMode.NEAREST,
    "bilinear": InterpolationMode.BILINEAR,
    "bicubic": InterpolationMode.BICUBIC,
}


def _build_inference_transform(size: int, resample: str) -> transforms.Compose:
    """Build the deterministic (no-augmentation) transform for inference."""
    if resample not in RESAMPLE_MODES:
        raise ValueError(f"Unknown resample mode {resample!r}; choose from {sorted(RESAMPLE_MODES)}")
    return transforms.Compose([
        transforms.Resize((size, size), interpolation=RESAMPLE_MODES[resample], antialias=True),
        # uint8 [0, 255] -> float32 [0.0, 1.0] by dividing by 255
        transforms.ToTensor(),
    ])


class ImagePreprocessor:
    """Path in, ``[1, size, size, 3]`` float32 tensor out."""

    def __init__(self, size: int | None = None, resample: str | None = None) -> None:
        self.size = size or config.IMG_SIZE
        self.resample = (resample or config.RESAMPLE).lower()
        self._transform = _build_inference_transform(self.size, self.resample)

    def decode(self, image_path: Path | str) -> Image.Image:
        """Open any PIL-readable image as RGB, or raise ``DecodeError``."""
        try:
            with Image.open(image_path) as image:
                image.load()
                return image.convert("RGB")
        except FileNotFoundError as exc:
            raise DecodeError(f"Image file not found: {Path(image_path).name}") from exc
        except Image.DecompressionBombError as exc:
            raise DecodeError(f"Image is too large to decode: {exc}") from exc
        except (OSError, ValueError, SyntaxError, EOFError) as exc:
            raise DecodeError(f"Cannot decode image: {exc}") from exc

    def process(self, image_path: Path | str) -> torch.Tensor:
        image = self.decode(image_path)
        chw = self._transform(image)
        # (3, H, W) -> (1, H, W, 3), channels-last like the training pipeline
        tensor = chw.permute(1, 2, 0).unsqueeze(0).contiguous()
        logger.debug("Preprocessed %s -> %s", Path(image_path).name, tuple(tensor.shape))
        return tensor
