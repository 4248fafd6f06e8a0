from __future__ import annotations

import asyncio
import hashlib
import io
import logging
import os
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import BinaryIO
from uuid import uuid4

from fastapi import UploadFile

from fileuploader.core.config import Settings
from fileuploader.core.errors import (
    AppError,
    FileTooLargeError,
    InternalError,
    InvalidRequestError,
    NotFoundError,
    UnauthenticatedError,
)
from fileuploader.schemas import FileMetadata, UploadResponse
from fileuploader.services.storage import StorageBackend, StorageError, StorageNotFoundError
from fileuploader.services.validation import FileValidator, sanitize_filename

logger = logging.getLogger(__name__)

DisconnectProbe = Callable[[], Awaitable[bool]]

FILE_URL_PREFIX = "/api/v1/files/"


def file_url(file_id: str) -> str:
    return f"{FILE_URL_PREFIX}{file_id}"


def _measure(stream: BinaryIO) -> int:
    size = stream.seek(0, os.SEEK_END)
    stream.seek(0)
    return size


class IngestionService:
    """Upload and download pipelines over a storage backend."""

    def __init__(
        self,
        settings: Settings,
        storage: StorageBackend,
        validator: FileValidator | None = None,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.validator = validator or FileValidator(
            settings.max_file_size, settings.allowed_types
        )

    async def upload_file(
        self,
        upload: UploadFile,
        subject_id: str | None,
        is_disconnected: DisconnectProbe | None = None,
    ) -> UploadResponse:
        if not subject_id:
            raise UnauthenticatedError()

        declared_size = upload.size
        if declared_size is None:
            declared_size = await asyncio.to_thread(_measure, upload.file)

        try:
            content_type = self.validator.validate_declaration(
                upload.filename, declared_size, upload.content_type
            )
            await asyncio.to_thread(self.validator.validate_content, upload.file, content_type)
        except AppError as exc:
            logger.warning(
                "File validation failed for %r (%d bytes) from %s: %s",
                upload.filename,
                declared_size,
                subject_id,
                exc.message,
            )
            raise

        content = await self._read_content(upload, subject_id, is_disconnected)
        checksum = hashlib.sha256(content).hexdigest()

        file_id = str(uuid4())
        metadata = FileMetadata(
            id=file_id,
            original_name=sanitize_filename(upload.filename),
            size=len(content),
            content_type=content_type,
            upload_time=datetime.now(timezone.utc),
            checksum=checksum,
            owner_id=subject_id,
            url=file_url(file_id),
        )

        try:
            await asyncio.to_thread(self.storage.store, file_id, io.BytesIO(content), metadata)
        except StorageError as exc:
            logger.error(
                "Failed to store file %s (%r) for %s: %s", file_id, upload.filename, subject_id, exc
            )
            raise InternalError("Failed to store file", cause=exc) from exc

        logger.info(
            "File uploaded: id=%s name=%r size=%d type=%s owner=%s checksum=%s",
            file_id,
            metadata.original_name,
            metadata.size,
            content_type,
            subject_id,
            checksum,
        )
        return UploadResponse.from_metadata(metadata)

    async def _read_content(
        self,
        upload: UploadFile,
        subject_id: str,
        is_disconnected: DisconnectProbe | None,
    ) -> bytes:
        await upload.seek(0)
        chunks: list[bytes] = []
        total = 0
        while True:
            if is_disconnected is not None and await is_disconnected():
                logger.warning("Upload of %r aborted, client %s disconnected", upload.filename, subject_id)
                raise InvalidRequestError("Upload aborted")
            chunk = await upload.read(self.settings.chunk_size)
            if not chunk:
                break
            total += len(chunk)
            if total > self.settings.max_file_size:
                logger.warning(
                    "Upload of %r from %s exceeded %d bytes while reading",
                    upload.filename,
                    subject_id,
                    self.settings.max_file_size,
                )
                raise FileTooLargeError()
            chunks.append(chunk)
        return b"".join(chunks)

    async def get_file_metadata(self, file_id: str, subject_id: str | None) -> FileMetadata:
        if not subject_id:
            raise UnauthenticatedError()
        return await asyncio.to_thread(self._authorized_metadata, file_id, subject_id)

    async def get_file(
        self, file_id: str, subject_id: str | None
    ) -> tuple[BinaryIO, FileMetadata]:
        metadata = await self.get_file_metadata(file_id, subject_id)
        try:
            handle, _ = await asyncio.to_thread(self.storage.retrieve, file_id)
        except StorageNotFoundError as exc:
            logger.info("File %s vanished before it could be opened for %s", file_id, subject_id)
            raise NotFoundError() from exc
        except StorageError as exc:
            logger.error("Failed to retrieve file %s for %s: %s", file_id, subject_id, exc)
            raise InternalError(cause=exc) from exc

        logger.info("File retrieved: id=%s owner=%s", file_id, subject_id)
        return handle, metadata

    async def delete_file(self, file_id: str, subject_id: str | None) -> None:
        await self.get_file_metadata(file_id, subject_id)
        try:
            await asyncio.to_thread(self.storage.delete, file_id)
        except StorageError as exc:
            logger.error("Failed to delete file %s for %s: %s", file_id, subject_id, exc)
            raise InternalError(cause=exc) from exc
        logger.info("File deleted: id=%s owner=%s", file_id, subject_id)

    def _authorized_metadata(self, file_id: str, subject_id: str) -> FileMetadata:
        if not self.storage.exists(file_id):
            raise NotFoundError()

        try:
            metadata = self.storage.get_metadata(file_id)
        except StorageError as exc:
            logger.error("Failed to get metadata for %s (requested by %s): %s", file_id, subject_id, exc)
            raise NotFoundError() from exc

        # Same response as a missing id so callers cannot probe for other owners' files.
        if metadata.owner_id != subject_id:
            logger.warning(
                "Unauthorized file access attempt: id=%s requester=%s owner=%s",
                file_id,
                subject_id,
                metadata.owner_id,
            )
            raise NotFoundError()
        return metadata
