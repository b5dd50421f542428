# ============================================================================
# Leafcare Disease Classifier - Pytest Configuration
# ============================================================================
# Purpose: Shared fixtures for writing tfjs-style model artifacts, images,
#          and a ready-to-use service context
# ============================================================================

import json
import os
from pathlib import Path

import numpy as np
import pytest
from PIL import Image


os.environ.setdefault("LEAFCARE_LOG_LEVEL", "WARNING")


# =============================================================================
# Artifact Helpers
# =============================================================================

def keras_layer(class_name, name, **config):
    """Serialized Keras layer as it appears inside ``modelTopology``."""
    return {"class_name": class_name, "config": {"name": name, **config}}


def functional_layer(class_name, name, inbound, **config):
    """Layer entry of a Functional model, Keras 2 node format."""
    nodes = [[[src, 0, 0, {}] for src in inbound]] if inbound else []
    return {
        "class_name": class_name,
        "name": name,
        "config": {"name": name, **config},
        "inbound_nodes": nodes,
    }


def sequential(name, *layers):
    return {"class_name": "Sequential", "config": {"name": name, "layers": list(layers)}}


def write_tfjs_model(model_dir, topology, weights, shard_size=None):
    """
    Write ``model.json`` plus ``group1-shardNofM.bin`` files.

    ``weights`` is a list of ``(name, ndarray)`` in storage order.  When
    ``shard_size`` is given the concatenated bytes are split across several
    shards of that size.
    """
    model_dir = Path(model_dir)
    model_dir.mkdir(parents=True, exist_ok=True)

    specs = []
    blob = bytearray()
    for name, array in weights:
        array = np.asarray(array)
        if array.dtype == np.int32:
            dtype, data = "int32", array.astype("<i4").tobytes()
        elif array.dtype == np.bool_:
            dtype, data = "bool", array.astype(np.uint8).tobytes()
        else:
            dtype, data = "float32", array.astype("<f4").tobytes()
        specs.append({"name": name, "shape": list(array.shape), "dtype": dtype})
        blob += data

    shard_size = shard_size or max(len(blob), 1)
    chunks = [bytes(blob[i:i + shard_size]) for i in range(0, len(blob), shard_size)] or [b""]
    paths = []
    for number, chunk in enumerate(chunks, start=1):
        shard_name = f"group1-shard{number}of{len(chunks)}.bin"
        (model_dir / shard_name).write_bytes(chunk)
        paths.append(shard_name)

    manifest = {
        "format": "layers-model",
        "generatedBy": "keras v2.15.0",
        "convertedBy": "TensorFlow.js Converter v4.17.0",
        "modelTopology": {"class_name": topology["class_name"], "config": topology["config"]},
        "weightsManifest": [{"paths": paths, "weights": specs}],
    }
    manifest_path = model_dir / "model.json"
    manifest_path.write_text(json.dumps(manifest), encoding="utf-8")
    return manifest_path


# Declared out of order on purpose: numeric key order is the contract
CLASS_INDICES = {
    "2": "Tomato___Leaf_Mold",
    "0": "Tomato___Early_blight",
    "3": "Tomato___healthy",
    "1": "Tomato___Late_blight",
}

REMEDIES = {
    "Tomato___Early_blight": {
        "solution": "Remove lower infected leaves and mulch the soil.",
        "pesticide": "Mancozeb",
    },
    "Tomato___Late_blight": {
        "solution": "Destroy infected plants and avoid overhead watering.",
        "pesticide": "Chlorothalonil",
    },
}


def colour_classifier_topology(num_classes=4):
    """GAP over RGB followed by a softmax Dense: strongest channel wins."""
    return sequential(
        "colour_classifier",
        keras_layer("InputLayer", "input_1", batch_input_shape=[None, 224, 224, 3], dtype="float32"),
        keras_layer("GlobalAveragePooling2D", "global_average_pooling2d"),
        keras_layer("Dense", "dense", units=num_classes, activation="softmax", use_bias=True),
    )


def colour_classifier_weights(num_classes=4):
    kernel = np.zeros((3, num_classes), dtype=np.float32)
    kernel[0, 0] = kernel[1, 1] = kernel[2, 2] = 5.0
    bias = np.zeros((num_classes,), dtype=np.float32)
    return [("dense/kernel", kernel), ("dense/bias", bias)]


# =============================================================================
# Model Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def img_size():
    """Standard image size for models."""
    return 224


@pytest.fixture(scope="session")
def device():
    """Tests always run on CPU."""
    return "cpu"


@pytest.fixture
def model_dir(tmp_path):
    """A complete artifact directory: manifest, two shards, labels, remedies."""
    directory = tmp_path / "model"
    write_tfjs_model(directory, colour_classifier_topology(), colour_classifier_weights(), shard_size=32)
    (directory / "class_indices.json").write_text(json.dumps(CLASS_INDICES), encoding="utf-8")
    (directory / "diseaseInfo.json").write_text(json.dumps(REMEDIES), encoding="utf-8")
    return directory


@pytest.fixture
def context(model_dir, img_size, device):
    """Unstarted service context over ``model_dir``."""
    from leafcare_server.engine.preprocess import ImagePreprocessor
    from leafcare_server.engine.registry import ModelRegistry
    from leafcare_server.engine.service import ServiceContext

    return ServiceContext(
        registry=ModelRegistry(model_dir / "model.json", device=device),
        preprocessor=ImagePreprocessor(img_size, "bilinear"),
        class_index_path=model_dir / "class_indices.json",
        remedy_path=model_dir / "diseaseInfo.json",
    )


@pytest.fixture
def started_context(context):
    context.start()
    return context


# =============================================================================
# Image Fixtures
# =============================================================================

@pytest.fixture
def make_image(tmp_path):
    """Factory writing a solid-colour image and returning its path."""
    counter = {"n": 0}

    def _make(colour=(255, 0, 0), size=(10, 10), fmt="JPEG", mode="RGB"):
        counter["n"] += 1
        suffix = {"JPEG": ".jpg", "PNG": ".png", "BMP": ".bmp", "GIF": ".gif"}[fmt]
        path = tmp_path / f"upload_{counter['n']}{suffix}"
        save_kwargs = {"quality": 95} if fmt == "JPEG" else {}
        Image.new(mode, size, colour).save(path, fmt, **save_kwargs)
        return path

    return _make


@pytest.fixture
def red_jpeg(make_image):
    """10x10 solid-red JPEG."""
    return make_image((255, 0, 0), (10, 10), "JPEG")


@pytest.fixture
def corrupt_image(tmp_path):
    path = tmp_path / "broken.jpg"
    path.write_bytes(b"\xff\xd8\xff\xe0 definitely not a jpeg body")
    return path


# =============================================================================
# Pytest Hooks
# =============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "integration: mark as integration test")
