"""
Prediction Service
==================
Request-scoped orchestration: readiness gate -> preprocess -> infer ->
label + remedy lookup.  The uploaded file is deleted on every exit path.

``ServiceContext`` holds everything built once at startup (model registry,
labels, remedies) and is injected into the service instead of living in
module globals.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from leafcare_server import config
from leafcare_server.engine.inference import InferenceEngine
from leafcare_server.engine.labels import UNKNOWN_LABEL, LabelMap, RemedyCatalog
from leafcare_server.engine.preprocess import ImagePreprocessor
from leafcare_server.engine.registry import ModelRegistry, ModelState
from leafcare_server.errors import ManifestError, ModelNotReadyError


logger = logging.getLogger("leafcare_server.service")


class LookupDiagnostics:
    """Counts the lenient fallbacks so data-quality gaps stay visible."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.unknown_labels = 0
        self.missing_remedies = 0

    def record_unknown_label(self, index: int) -> None:
        with self._lock:
            self.unknown_labels += 1
        logger.warning("Class index %d has no label; answering 'Unknown'", index)

    def record_missing_remedy(self, label: str) -> None:
        with self._lock:
            self.missing_remedies += 1
        logger.warning("No remedy entry for %r; using default advice", label)


@dataclass
class ServiceContext:
    """Process-wide state, constructed once at startup."""

    registry: ModelRegistry
    preprocessor: ImagePreprocessor
    class_index_path: Path
    remedy_path: Path
    labels: LabelMap | None = None
    remedies: RemedyCatalog = field(default_factory=RemedyCatalog)
    startup_error: str | None = None
    ready_wait_seconds: float = 0.0
    diagnostics: LookupDiagnostics = field(default_factory=LookupDiagnostics)

    def __post_init__(self) -> None:
        self.engine = InferenceEngine(self.registry)

    @classmethod
    def from_config(cls) -> ServiceContext:
        return cls(
            registry=ModelRegistry(config.manifest_path(), device=config.DEVICE),
            preprocessor=ImagePreprocessor(config.IMG_SIZE, config.RESAMPLE),
            class_index_path=config.class_index_path(),
            remedy_path=config.remedy_path(),
            ready_wait_seconds=config.READY_WAIT_SECONDS,
        )

    def start(self) -> ModelState:
        """
        Load labels, remedies and the model.  Failures are logged and leave
        the context permanently unready; nothing is retried.
        """
        try:
            self.labels = LabelMap.load(self.class_index_path)
            self.remedies = RemedyCatalog.load(self.remedy_path)
        except ManifestError as exc:
            self.startup_error = f"{type(exc).__name__}: {exc}"
            logger.exception("Initialization error: %s", self.startup_error)
            return self.state

        if self.registry.initialize() is ModelState.READY:
            output_size = self.registry.output_size
            if output_size is not None and output_size != len(self.labels):
                logger.warning(
                    "Model emits %d classes but %d labels are loaded; extra indices resolve to 'Unknown'",
                    output_size,
                    len(self.labels),
                )
        return self.state

    @property
    def state(self) -> ModelState:
        if self.startup_error is not None:
            return ModelState.FAILED
        return self.registry.state

    @property
    def failure_reason(self) -> str | None:
        return self.startup_error or self.registry.failure_reason

    def is_ready(self) -> bool:
        return self.startup_error is None and self.labels is not None and self.registry.is_ready()


@dataclass(frozen=True)
class PredictionResult:
    label: str
    confidence_percent: float
    solution: str
    pesticide: str

    @property
    def confidence_text(self) -> str:
        return f"{self.confidence_percent:.2f}"


class PredictionService:
    def __init__(self, context: ServiceContext) -> None:
        self.context = context

    def handle(self, image_path: Path | str) -> PredictionResult:
        """
        Diagnose the image at ``image_path`` and delete it afterwards.

        Raises
        ------
        ModelNotReadyError
            The model or labels are not loaded.
        DecodeError
            The file is not a readable image.
        InferenceError
            The model output cannot be interpreted.
        """
        image_path = Path(image_path)
        try:
            self._ensure_ready()
            tensor = self.context.preprocessor.process(image_path)
            index, confidence = self.context.engine.predict(tensor)
            return self._assemble(index, confidence)
        finally:
            _discard_upload(image_path)

    def _ensure_ready(self) -> None:
        ctx = self.context
        if ctx.is_ready():
            return
        if ctx.state is ModelState.LOADING and ctx.ready_wait_seconds > 0:
            ctx.registry.wait(ctx.ready_wait_seconds)
            if ctx.is_ready():
                return

        state = ctx.state
        if state is ModelState.FAILED:
            raise ModelNotReadyError(f"Model failed to load: {ctx.failure_reason}", retryable=False)
        raise ModelNotReadyError(f"Model is {state.value}; try again shortly", retryable=True)

    def _assemble(self, index: int, confidence: float) -> PredictionResult:
        labels = self.context.labels
        remedies = self.context.remedies
        diagnostics = self.context.diagnostics

        if labels is None or index not in labels:
            diagnostics.record_unknown_label(index)
        label = labels.resolve(index) if labels is not None else UNKNOWN_LABEL

        if label not in remedies:
            diagnostics.record_missing_remedy(label)
        remedy = remedies.lookup(label)

        result = PredictionResult(
            label=label,
            confidence_percent=round(confidence * 100, 2),
            solution=remedy.solution,
            pesticide=remedy.pesticide,
        )
        logger.info("Prediction: %s (%s%%)", result.label, result.confidence_text)
        return result


def _discard_upload(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        # Never mask the request's own outcome
        logger.warning("Could not delete upload %s: %s", path, exc)
