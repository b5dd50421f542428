"""
Classes Routes
==============
Endpoint for listing the disease classes in model output order.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends

from leafcare_server.dependencies import get_context
from leafcare_server.engine.service import ServiceContext
from leafcare_server.schemas import ClassesListResponse, ClassInfo


router = APIRouter(tags=["classes"])


@router.get("/classes", response_model=ClassesListResponse)
async def list_classes(context: ServiceContext = Depends(get_context)) -> ClassesListResponse:
    """
    List all disease classes.

    Position ``index`` is the model's output index; empty until the label
    file has been loaded.
    """
    labels = context.labels.as_list() if context.labels is not None else []
    return ClassesListResponse(
        classes=[ClassInfo(index=i, name=name) for i, name in enumerate(labels)],
        total=len(labels),
    )
