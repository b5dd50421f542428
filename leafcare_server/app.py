"""
FastAPI Application
===================
Entry point for the inference server.

Start with::

    uvicorn leafcare_server.app:app --host 0.0.0.0 --port 5000

or the ``leafcare-server`` console script.
"""
from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from leafcare_server import __version__, config
from leafcare_server.engine.registry import ModelState
from leafcare_server.engine.service import PredictionService, ServiceContext
from leafcare_server.routes.classes import router as classes_router
from leafcare_server.routes.health import router as health_router
from leafcare_server.routes.inference import error_response
from leafcare_server.routes.inference import router as inference_router


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger("leafcare_server")


# ---------------------------------------------------------------------------
# Lifespan: load model on startup, cleanup on shutdown
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Load labels, remedies and the model once; a failure leaves the server unready."""
    logger.info("Starting leafcare server v%s …", __version__)
    context: ServiceContext = app.state.context
    try:
        state = await run_in_threadpool(context.start)
    except Exception:
        logger.exception("Failed to initialize on startup")
        state = context.state
    if state is ModelState.READY:
        logger.info("Model ready; serving predictions.")
    else:
        # Server still starts; /health/ready reports why
        logger.error("Model not ready (%s): %s", state.value, context.failure_reason)
    yield
    logger.info("Shutting down leafcare server.")


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
def create_app(context: ServiceContext | None = None) -> FastAPI:
    """Build the app around ``context`` (defaults to one built from config)."""
    app = FastAPI(
        title="Leafcare Disease Classifier",
        description=(
            "Inference API for plant-leaf disease diagnosis. Classifies an "
            "uploaded leaf image and returns the disease label, confidence, "
            "and a suggested remedy."
        ),
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context or ServiceContext.from_config()
    app.state.service = PredictionService(app.state.context)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        """Malformed form fields get the JSON error envelope with a 400."""
        if any(tuple(err.get("loc", ()))[-1:] == ("image",) for err in exc.errors()):
            message = "No image uploaded."
        else:
            message = "Invalid request."
        logger.warning("Rejected request to %s: %s", request.url.path, message)
        return error_response(400, message)

    app.include_router(health_router)
    app.include_router(inference_router)
    app.include_router(classes_router)

    @app.get("/", include_in_schema=False)
    async def root() -> dict[str, str]:
        """Redirect-free landing that confirms the server is alive."""
        return {"message": "Leafcare Disease Classifier API", "version": __version__}

    return app


app = create_app()


def main() -> None:
    uvicorn.run(
        "leafcare_server.app:app",
        host=config.HOST,
        port=config.PORT,
        log_level=config.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
