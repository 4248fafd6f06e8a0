from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FileMetadata(CamelModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    original_name: str
    size: int = Field(..., ge=0)
    content_type: str
    upload_time: datetime
    checksum: str
    owner_id: str = Field(..., min_length=1)
    url: str


class UploadResponse(CamelModel):
    id: str
    url: str
    size: int
    content_type: str
    upload_time: datetime
    checksum: str

    @classmethod
    def from_metadata(cls, metadata: FileMetadata) -> "UploadResponse":
        return cls(
            id=metadata.id,
            url=metadata.url,
            size=metadata.size,
            content_type=metadata.content_type,
            upload_time=metadata.upload_time,
            checksum=metadata.checksum,
        )
