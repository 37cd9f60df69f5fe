"""
File storage for knowledge base uploads.

Stores raw bytes on the local filesystem with a path layout that can later map
onto an object store:

    {base_dir}/{owner_id}/{scope_id}/{uuid}-{sanitized_name}
"""

import asyncio
import re
import uuid
from pathlib import Path
from typing import Protocol

from loguru import logger

from .models import StoredFile

_MIME_TYPES = {
    "txt": "text/plain",
    "md": "text/markdown",
    "markdown": "text/markdown",
    "json": "application/json",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "epub": "application/epub+zip",
    "html": "text/html",
    "htm": "text/html",
    "csv": "text/csv",
    "xml": "application/xml",
    "js": "text/javascript",
    "ts": "text/typescript",
    "py": "text/x-python",
    "java": "text/x-java",
    "c": "text/x-c",
    "cpp": "text/x-c++",
    "h": "text/x-c",
    "css": "text/css",
    "sql": "text/x-sql",
    "sh": "text/x-shellscript",
    "yaml": "text/yaml",
    "yml": "text/yaml",
}

DOCX_MIME = _MIME_TYPES["docx"]
EPUB_MIME = _MIME_TYPES["epub"]


def get_mime_type(file_name: str) -> str:
    """Guess a MIME type from the file extension."""
    ext = Path(file_name).suffix.lower().lstrip(".")
    return _MIME_TYPES.get(ext, "application/octet-stream")


class FileStorage(Protocol):
    """Interface consumed by the indexing pipeline and the manager."""

    async def store(
        self, owner_id: str, scope_id: str, content: bytes, file_name: str
    ) -> StoredFile: ...

    async def read(self, path: str) -> bytes: ...

    async def delete(self, path: str) -> None: ...

    async def exists(self, path: str) -> bool: ...


class LocalFileStorage:
    """
    Filesystem implementation of `FileStorage`.

    Owner and scope ids become directory names, so they are validated against
    path traversal before use.
    """

    def __init__(self, base_dir: str | Path = "data/knowledge-base"):
        """
        Initialize the file storage.

        Args:
            base_dir: Root directory for all stored files
        """
        self.base_dir = Path(base_dir).resolve()
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"📚 KB file storage initialized at: {self.base_dir}")

    def _sanitize_component(self, component: str) -> str:
        """
        Validate an id used as a directory name.

        Raises:
            ValueError: If the id is empty or contains path characters
        """
        if not component:
            raise ValueError("Path component cannot be empty")

        sanitized = re.sub(r'[<>:"|?*\\/]', "", component).strip(". ")
        if not sanitized or sanitized != component:
            raise ValueError(
                f"Invalid path component: '{component}'. Must not contain path separators or special characters."
            )
        return sanitized

    def _sanitize_filename(self, file_name: str) -> str:
        """Keep letters, digits, dot, dash and underscore; cap the length."""
        name = Path(file_name).name
        sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", name)
        sanitized = re.sub(r"_{2,}", "_", sanitized)[:100]
        return sanitized or "unnamed_file"

    def _resolve(self, path: str) -> Path:
        """Resolve a stored path and make sure it stays under base_dir."""
        resolved = Path(path).resolve()
        if not resolved.is_relative_to(self.base_dir):
            raise ValueError(f"Path '{path}' is outside the storage root")
        return resolved

    async def store(
        self, owner_id: str, scope_id: str, content: bytes, file_name: str
    ) -> StoredFile:
        """
        Save uploaded bytes.

        Args:
            owner_id: Owning user id
            scope_id: Scope directory, usually the character id
            content: File content as bytes
            file_name: Original filename

        Returns:
            StoredFile with the storage path and size
        """
        directory = (
            self.base_dir
            / self._sanitize_component(owner_id)
            / self._sanitize_component(scope_id)
        )
        file_path = directory / f"{uuid.uuid4()}-{self._sanitize_filename(file_name)}"

        await asyncio.to_thread(directory.mkdir, parents=True, exist_ok=True)
        await asyncio.to_thread(file_path.write_bytes, content)

        logger.info(f"💾 Saved file '{file_name}' -> '{file_path.name}' for owner '{owner_id}'")

        return StoredFile(
            path=str(file_path),
            original_name=file_name,
            mime_type=get_mime_type(file_name),
            size_bytes=len(content),
        )

    async def read(self, path: str) -> bytes:
        return await asyncio.to_thread(self._resolve(path).read_bytes)

    async def delete(self, path: str) -> None:
        """Delete a stored file; a missing file is not an error."""
        file_path = self._resolve(path)
        try:
            await asyncio.to_thread(file_path.unlink)
            logger.info(f"🗑️ Deleted stored file '{file_path.name}'")
        except FileNotFoundError:
            logger.debug(f"Stored file already gone: {file_path}")

    async def exists(self, path: str) -> bool:
        return await asyncio.to_thread(self._resolve(path).exists)
