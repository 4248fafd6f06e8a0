from fileuploader.schemas.errors import ErrorResponse
from fileuploader.schemas.files import FileMetadata, UploadResponse
from fileuploader.schemas.health import HealthResponse, ReadinessResponse

__all__ = [
    "ErrorResponse",
    "FileMetadata",
    "UploadResponse",
    "HealthResponse",
    "ReadinessResponse",
]
