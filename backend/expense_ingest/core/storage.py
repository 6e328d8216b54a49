"""Content-addressed document store on the local filesystem.

Bytes are hashed while they are copied so each upload is read once. The
SHA-256 digest is the document identity; the stored file name is unique
per call and is never reused.
"""

import asyncio
import hashlib
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional

from expense_ingest.core.config import get_settings
from expense_ingest.core.errors import NotFoundError, StorageError, ValidationFailedError
from expense_ingest.schemas.values import DocumentHash

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 81920
FALLBACK_EXTENSION = ".bin"


@dataclass(frozen=True)
class StoredDocument:
    stored_name: str
    extension: str
    size_bytes: int
    content_hash: DocumentHash


def _file_extension(filename: Optional[str]) -> str:
    if not filename:
        return ""
    return Path(filename).suffix.lower()


def build_stored_name(original_name: Optional[str], source_path: Optional[str] = None) -> str:
    ext = _file_extension(original_name) or _file_extension(source_path) or FALLBACK_EXTENSION
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"{stamp}_{uuid.uuid4().hex}{ext}"


class ContentAddressedStore:
    def __init__(self, root: str | os.PathLike[str]) -> None:
        self.root = Path(root)

    @classmethod
    def from_settings(cls) -> "ContentAddressedStore":
        return cls(get_settings().import_storage_dir)

    def path_for(self, stored_name: str) -> Path:
        if not stored_name or not stored_name.strip():
            raise ValidationFailedError("Stored file name is required")
        name = Path(stored_name.strip()).name
        if name != stored_name.strip():
            raise ValidationFailedError("Stored file name must not contain directories")
        return self.root / name

    def save_sync(self, source_path: str | os.PathLike[str], original_name: str) -> StoredDocument:
        source = Path(source_path)
        if not source.is_file():
            raise NotFoundError(f"Source file not found: {source.name}")
        try:
            with source.open("rb") as stream:
                return self.save_stream_sync(stream, original_name, source_hint=str(source))
        except OSError as exc:
            raise StorageError("Failed to read source file") from exc

    def save_stream_sync(
        self,
        stream: BinaryIO,
        original_name: str,
        *,
        source_hint: Optional[str] = None,
    ) -> StoredDocument:
        stored_name = build_stored_name(original_name, source_hint)
        destination = self.root / stored_name
        digest = hashlib.sha256()
        size = 0
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            # "xb" refuses to overwrite an existing artifact.
            target_file = destination.open("xb")
        except OSError as exc:
            raise StorageError("Failed to create stored document") from exc

        try:
            with target_file as target:
                while True:
                    chunk = stream.read(COPY_CHUNK_SIZE)
                    if not chunk:
                        break
                    digest.update(chunk)
                    target.write(chunk)
                    size += len(chunk)
        except OSError as exc:
            self._discard(destination)
            logger.exception("Failed to store document %s", original_name)
            raise StorageError("Failed to store document") from exc
        except BaseException:
            self._discard(destination)
            raise

        ext = Path(stored_name).suffix.lstrip(".").lower()
        logger.info("Stored document %s as %s (%d bytes)", original_name, stored_name, size)
        return StoredDocument(
            stored_name=stored_name,
            extension=ext,
            size_bytes=size,
            content_hash=DocumentHash.create(digest.hexdigest()),
        )

    async def save(self, source_path: str | os.PathLike[str], original_name: str) -> StoredDocument:
        return await asyncio.to_thread(self.save_sync, source_path, original_name)

    def open_read(self, stored_name: str) -> BinaryIO:
        path = self.path_for(stored_name)
        if not path.is_file():
            raise NotFoundError(f"Stored file not found: {stored_name}")
        try:
            return path.open("rb")
        except OSError as exc:
            raise StorageError("Failed to open stored document") from exc

    def read_bytes(self, stored_name: str) -> bytes:
        with self.open_read(stored_name) as stream:
            try:
                return stream.read()
            except OSError as exc:
                raise StorageError("Failed to read stored document") from exc

    def delete(self, stored_name: str) -> None:
        path = self.path_for(stored_name)
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError("Failed to delete stored document") from exc

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove partial file %s", path)
