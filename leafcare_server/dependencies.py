"""
Request Dependencies
====================
FastAPI dependencies that hand route handlers the objects built at startup.
"""
from __future__ import annotations

from fastapi import Request

from leafcare_server.engine.service import PredictionService, ServiceContext


def get_context(request: Request) -> ServiceContext:
    return request.app.state.context


def get_service(request: Request) -> PredictionService:
    return request.app.state.service
