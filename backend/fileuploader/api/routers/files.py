from collections.abc import Iterator
from typing import BinaryIO
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Request, Response, UploadFile, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from fileuploader.api.deps import enforce_rate_limit, get_ingestion_service
from fileuploader.core.errors import InvalidRequestError
from fileuploader.core.security import AuthClaims
from fileuploader.schemas import ErrorResponse, FileMetadata, UploadResponse
from fileuploader.services.ingestion import IngestionService

router = APIRouter(prefix="/api/v1", tags=["files"])
legacy_router = APIRouter(prefix="/files", tags=["files"])

_ERROR_RESPONSES = {
    status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse},
    status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
    status.HTTP_429_TOO_MANY_REQUESTS: {"model": ErrorResponse},
}


def _wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("accept", "").lower()


def _content_disposition(filename: str) -> str:
    fallback = filename.encode("ascii", "replace").decode("ascii").replace('"', "_").replace("?", "_")
    return f"attachment; filename=\"{fallback}\"; filename*=UTF-8''{quote(filename, safe='')}"


def _iter_chunks(handle: BinaryIO, chunk_size: int) -> Iterator[bytes]:
    try:
        while chunk := handle.read(chunk_size):
            yield chunk
    finally:
        handle.close()


@router.post(
    "/upload",
    response_model=UploadResponse,
    responses={status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse}, **_ERROR_RESPONSES},
)
async def upload_file(
    request: Request,
    file: UploadFile | None = File(default=None),
    claims: AuthClaims = Depends(enforce_rate_limit),
    service: IngestionService = Depends(get_ingestion_service),
) -> UploadResponse:
    if file is None:
        raise InvalidRequestError("No file provided")
    try:
        return await service.upload_file(file, claims.subject_id, request.is_disconnected)
    finally:
        await file.close()


@router.get(
    "/files/{file_id}",
    response_model=FileMetadata,
    responses={
        status.HTTP_200_OK: {"content": {"application/octet-stream": {}}},
        **_ERROR_RESPONSES,
    },
)
async def download_file(
    file_id: str,
    request: Request,
    claims: AuthClaims = Depends(enforce_rate_limit),
    service: IngestionService = Depends(get_ingestion_service),
) -> Response:
    if _wants_json(request):
        metadata = await service.get_file_metadata(file_id, claims.subject_id)
        return JSONResponse(metadata.model_dump(mode="json", by_alias=True))

    handle, metadata = await service.get_file(file_id, claims.subject_id)
    return StreamingResponse(
        _iter_chunks(handle, service.settings.chunk_size),
        media_type=metadata.content_type,
        headers={
            "Content-Disposition": _content_disposition(metadata.original_name),
            "Content-Length": str(metadata.size),
        },
        background=BackgroundTask(handle.close),
    )


@router.delete(
    "/files/{file_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=_ERROR_RESPONSES,
)
async def delete_file(
    file_id: str,
    claims: AuthClaims = Depends(enforce_rate_limit),
    service: IngestionService = Depends(get_ingestion_service),
) -> Response:
    await service.delete_file(file_id, claims.subject_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


legacy_router.add_api_route(
    "/{file_id}",
    download_file,
    methods=["GET"],
    include_in_schema=False,
)
