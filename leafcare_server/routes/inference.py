"""
Inference Routes
================
``POST /predict``: multipart upload named ``image`` -> diagnosis + remedy.

The upload is written to ``UPLOAD_DIR`` and handed to the prediction
service, which deletes it once the request is done, whatever the outcome.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from tempfile import NamedTemporaryFile

from fastapi import APIRouter, Depends, File, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from leafcare_server import config
from leafcare_server.dependencies import get_service
from leafcare_server.engine.service import PredictionService
from leafcare_server.errors import DecodeError, ModelNotReadyError
from leafcare_server.schemas import ErrorResponse, PredictResponse


logger = logging.getLogger("leafcare_server.routes.inference")

router = APIRouter(tags=["inference"])

_CHUNK_SIZE = 1024 * 1024


class UploadRejected(Exception):
    """The upload is unusable before it ever reaches the model."""


def error_response(status_code: int, message: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(message=message).model_dump(),
        headers=headers,
    )


async def _save_upload(image: UploadFile) -> Path:
    """Stream the upload into ``UPLOAD_DIR``, enforcing ``MAX_UPLOAD_BYTES``."""
    upload_dir = Path(config.UPLOAD_DIR)
    upload_dir.mkdir(parents=True, exist_ok=True)
    suffix = Path(image.filename or "").suffix[:10]

    with NamedTemporaryFile(dir=upload_dir, suffix=suffix, delete=False) as tmp:
        tmp_path = Path(tmp.name)
        written = 0
        try:
            while chunk := await image.read(_CHUNK_SIZE):
                written += len(chunk)
                if written > config.MAX_UPLOAD_BYTES:
                    raise UploadRejected(
                        f"Image exceeds the {config.MAX_UPLOAD_BYTES} byte upload limit."
                    )
                tmp.write(chunk)
            if written == 0:
                raise UploadRejected("Empty image file.")
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise

    logger.debug("Saved upload %s (%d bytes, %s)", tmp_path.name, written, image.content_type)
    return tmp_path


@router.post(
    "/predict",
    response_model=PredictResponse,
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
)
async def predict(
    image: UploadFile | None = File(default=None),
    service: PredictionService = Depends(get_service),
) -> PredictResponse | JSONResponse:
    """
    Diagnose a single leaf image.

    Accepts a multipart-form upload named ``image``.  Returns the predicted
    disease label, the confidence as a two-decimal percentage string, and
    the remedy texts.
    """
    if image is None or not image.filename:
        return error_response(400, "No image uploaded.")

    try:
        upload_path = await _save_upload(image)
    except UploadRejected as exc:
        logger.warning("Rejected upload: %s", exc)
        return error_response(400, str(exc))

    try:
        call = run_in_threadpool(service.handle, upload_path)
        if config.PREDICT_TIMEOUT_SECONDS > 0:
            # The worker keeps running after a timeout and still deletes the upload
            result = await asyncio.wait_for(call, timeout=config.PREDICT_TIMEOUT_SECONDS)
        else:
            result = await call
    except DecodeError as exc:
        logger.warning("Bad image: %s", exc)
        return error_response(400, str(exc))
    except ModelNotReadyError as exc:
        logger.error("Prediction refused: %s", exc)
        headers = {"Retry-After": "5"} if exc.retryable else None
        return error_response(500, str(exc), headers)
    except asyncio.TimeoutError:
        logger.error("Prediction timed out after %.1fs", config.PREDICT_TIMEOUT_SECONDS)
        return error_response(500, "Prediction timed out.")
    except Exception:
        logger.exception("Prediction Error")
        return error_response(500, "Failed to process image.")

    return PredictResponse(
        label=result.label,
        confidence=result.confidence_text,
        solution=result.solution,
        pesticide=result.pesticide,
    )
