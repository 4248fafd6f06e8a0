import logging
import os
import posixpath
import secrets
import shutil
from abc import ABC, abstractmethod
from collections.abc import Callable
from pathlib import Path
from typing import Any, BinaryIO, Final

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from fileuploader.core.config import Settings
from fileuploader.schemas import FileMetadata

logger = logging.getLogger(__name__)

METADATA_SUFFIX: Final[str] = ".meta"


class StorageError(Exception):
    """Raised when a storage operation fails."""


class StoragePathError(StorageError):
    """Raised when a file id would address a location outside the storage root."""


class StorageNotFoundError(StorageError):
    """Raised when no metadata exists for a file id."""


class StorageBackend(ABC):
    """Persists file content and its metadata sidecar under a file id."""

    scheme: str

    @abstractmethod
    def store(self, file_id: str, stream: BinaryIO, metadata: FileMetadata) -> None: ...

    @abstractmethod
    def retrieve(self, file_id: str) -> tuple[BinaryIO, FileMetadata]:
        """Return an open content stream and its metadata; the caller closes the stream."""

    @abstractmethod
    def delete(self, file_id: str) -> None: ...

    @abstractmethod
    def exists(self, file_id: str) -> bool: ...

    @abstractmethod
    def get_metadata(self, file_id: str) -> FileMetadata: ...

    @abstractmethod
    def is_ready(self) -> bool: ...


def _decode_metadata(raw: bytes | str, file_id: str) -> FileMetadata:
    try:
        return FileMetadata.model_validate_json(raw)
    except ValidationError as exc:
        raise StorageError(f"Failed to decode metadata for {file_id}: {exc}") from exc


class LocalStorageBackend(StorageBackend):
    """Filesystem storage: content at ``<root>/<id>``, metadata at ``<root>/<id>.meta``."""

    scheme: Final[str] = "local"

    def __init__(self, base_path: str | os.PathLike[str]) -> None:
        self.base_path = Path(os.path.abspath(base_path))
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _object_path(self, file_id: str, suffix: str = "") -> Path:
        # Lexical check: the joined path must normalise to a direct child of the
        # root whose name is exactly the requested id.
        candidate = Path(os.path.normpath(os.path.join(self.base_path, file_id)))
        if not file_id or candidate.parent != self.base_path or candidate.name != file_id:
            raise StoragePathError(f"Invalid file path for id {file_id!r}")
        return candidate.with_name(file_id + suffix)

    def store(self, file_id: str, stream: BinaryIO, metadata: FileMetadata) -> None:
        content_path = self._object_path(file_id)
        metadata_path = self._object_path(file_id, METADATA_SUFFIX)

        try:
            self._write_atomic(content_path, lambda f: shutil.copyfileobj(stream, f))
        except OSError as exc:
            raise StorageError(f"Failed to write file {content_path}: {exc}") from exc

        payload = metadata.model_dump_json().encode("utf-8")
        try:
            self._write_atomic(metadata_path, lambda f: f.write(payload))
        except OSError as exc:
            self._remove_quietly(content_path)
            raise StorageError(f"Failed to write metadata {metadata_path}: {exc}") from exc

    def retrieve(self, file_id: str) -> tuple[BinaryIO, FileMetadata]:
        content_path = self._object_path(file_id)
        metadata = self.get_metadata(file_id)
        try:
            handle = content_path.open("rb")
        except OSError as exc:
            raise StorageError(f"Failed to open file {content_path}: {exc}") from exc
        return handle, metadata

    def delete(self, file_id: str) -> None:
        for path in (self._object_path(file_id), self._object_path(file_id, METADATA_SUFFIX)):
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                raise StorageError(f"Failed to delete {path}: {exc}") from exc

    def exists(self, file_id: str) -> bool:
        try:
            path = self._object_path(file_id)
        except StoragePathError:
            return False
        try:
            return path.is_file()
        except OSError as exc:
            logger.warning("Failed to check file %s: %s", path, exc)
            return False

    def get_metadata(self, file_id: str) -> FileMetadata:
        metadata_path = self._object_path(file_id, METADATA_SUFFIX)
        try:
            raw = metadata_path.read_bytes()
        except FileNotFoundError:
            raise StorageNotFoundError(file_id) from None
        except OSError as exc:
            raise StorageError(f"Failed to open metadata file {metadata_path}: {exc}") from exc
        return _decode_metadata(raw, file_id)

    def is_ready(self) -> bool:
        return self.base_path.is_dir() and os.access(self.base_path, os.W_OK)

    def _write_atomic(self, target: Path, write: Callable[[BinaryIO], object]) -> None:
        tmp_path = target.with_name(f".{target.name}.{secrets.token_hex(4)}.tmp")
        try:
            with tmp_path.open("wb") as f:
                write(f)
            os.replace(tmp_path, target)
        except BaseException:
            self._remove_quietly(tmp_path)
            raise

    @staticmethod
    def _remove_quietly(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove partial file %s", path)


class S3StorageBackend(StorageBackend):
    """S3-compatible storage with the same two-object layout under ``prefix``."""

    scheme: Final[str] = "s3"

    _MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound"})

    def __init__(self, client: Any, bucket: str, prefix: str = "files/") -> None:
        self.client = client
        self.bucket = bucket
        self.prefix = prefix.strip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3StorageBackend":
        session = boto3.session.Session()
        client = session.client(
            "s3",
            endpoint_url=str(settings.s3_endpoint) if settings.s3_endpoint else None,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            region_name=settings.s3_region,
            config=Config(signature_version="s3v4"),
        )
        return cls(client, settings.s3_bucket, settings.s3_prefix)

    def _object_key(self, file_id: str, suffix: str = "") -> str:
        base = posixpath.join("/", self.prefix)
        candidate = posixpath.normpath(posixpath.join(base, file_id))
        if not file_id or posixpath.dirname(candidate) != base or posixpath.basename(candidate) != file_id:
            raise StoragePathError(f"Invalid object key for id {file_id!r}")
        return (candidate + suffix).lstrip("/")

    def _is_missing(self, exc: ClientError) -> bool:
        return exc.response.get("Error", {}).get("Code") in self._MISSING_CODES

    def store(self, file_id: str, stream: BinaryIO, metadata: FileMetadata) -> None:
        content_key = self._object_key(file_id)
        metadata_key = self._object_key(file_id, METADATA_SUFFIX)
        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=content_key,
                Body=stream,
                ContentType=metadata.content_type,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to write object {content_key}: {exc}") from exc

        try:
            self.client.put_object(
                Bucket=self.bucket,
                Key=metadata_key,
                Body=metadata.model_dump_json().encode("utf-8"),
                ContentType="application/json",
            )
        except (BotoCoreError, ClientError) as exc:
            try:
                self.client.delete_object(Bucket=self.bucket, Key=content_key)
            except (BotoCoreError, ClientError):
                logger.warning("Could not remove partial object %s", content_key)
            raise StorageError(f"Failed to write metadata {metadata_key}: {exc}") from exc

    def retrieve(self, file_id: str) -> tuple[BinaryIO, FileMetadata]:
        content_key = self._object_key(file_id)
        metadata = self.get_metadata(file_id)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=content_key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to open object {content_key}: {exc}") from exc
        return response["Body"], metadata

    def delete(self, file_id: str) -> None:
        for key in (self._object_key(file_id), self._object_key(file_id, METADATA_SUFFIX)):
            try:
                self.client.delete_object(Bucket=self.bucket, Key=key)
            except ClientError as exc:
                if self._is_missing(exc):
                    continue
                raise StorageError(f"Failed to delete {key}: {exc}") from exc
            except BotoCoreError as exc:
                raise StorageError(f"Failed to delete {key}: {exc}") from exc

    def exists(self, file_id: str) -> bool:
        try:
            key = self._object_key(file_id)
        except StoragePathError:
            return False
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if self._is_missing(exc):
                return False
            logger.error("Failed to check object %s: %s", key, exc)
            return False
        except BotoCoreError as exc:
            logger.error("Failed to check object %s: %s", key, exc)
            return False
        return True

    def get_metadata(self, file_id: str) -> FileMetadata:
        metadata_key = self._object_key(file_id, METADATA_SUFFIX)
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=metadata_key)
            body = response["Body"]
            try:
                raw = body.read()
            finally:
                body.close()
        except ClientError as exc:
            if self._is_missing(exc):
                raise StorageNotFoundError(file_id) from None
            raise StorageError(f"Failed to read metadata {metadata_key}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to read metadata {metadata_key}: {exc}") from exc
        return _decode_metadata(raw, file_id)

    def is_ready(self) -> bool:
        try:
            self.client.head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError) as exc:
            logger.warning("Storage bucket %s is not reachable: %s", self.bucket, exc)
            return False
        return True


def build_storage_backend(settings: Settings) -> StorageBackend:
    if settings.storage_backend == "s3":
        return S3StorageBackend.from_settings(settings)
    return LocalStorageBackend(settings.storage_path)
