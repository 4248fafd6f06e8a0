import asyncio
from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from fileuploader.api.deps import get_ingestion_service
from fileuploader.core.errors import ServiceUnavailableError
from fileuploader.schemas import HealthResponse, ReadinessResponse
from fileuploader.services.ingestion import IngestionService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        service="fileuploader",
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/ready", response_model=ReadinessResponse)
async def ready(
    service: IngestionService = Depends(get_ingestion_service),
) -> ReadinessResponse:
    if not await asyncio.to_thread(service.storage.is_ready):
        raise ServiceUnavailableError("Storage is not ready")
    return ReadinessResponse(status="ready", checks={"storage": "ok"})
