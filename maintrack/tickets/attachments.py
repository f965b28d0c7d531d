"""Media attached to ticket stages, stored as uuid-named files on disk."""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

from .models import Ticket

logger = logging.getLogger(__name__)

_SAFE_FILENAME_RE = re.compile(r"^[0-9a-f]{32}\.[a-z0-9]{1,16}$")


class InvalidAttachmentError(ValueError):
    """Raised when an upload or filename is not acceptable."""


@dataclass(slots=True)
class MediaUpload:
    """Uploaded file contents together with the client supplied name."""

    filename: str
    content: bytes


class BlobStore(Protocol):
    async def put(self, content: bytes, *, suffix: str) -> str:
        ...

    async def exists(self, reference: str) -> bool:
        ...

    async def delete(self, reference: str) -> None:
        ...


class LocalBlobStore:
    """Blob store keeping files under ``root`` and exposing them below ``public_prefix``."""

    def __init__(self, root: Path | str, *, public_prefix: str = "/api/files") -> None:
        self._root = Path(root)
        self._prefix = public_prefix.rstrip("/")

    @property
    def root(self) -> Path:
        return self._root

    async def put(self, content: bytes, *, suffix: str) -> str:
        filename = f"{uuid.uuid4().hex}.{suffix.lower()}"
        path = self._root / filename
        await asyncio.to_thread(self._write, path, content)
        return f"{self._prefix}/{filename}"

    async def exists(self, reference: str) -> bool:
        try:
            path = self._path_for(reference)
        except InvalidAttachmentError:
            return False
        return await asyncio.to_thread(path.is_file)

    async def delete(self, reference: str) -> None:
        path = self._path_for(reference)
        await asyncio.to_thread(path.unlink, missing_ok=True)

    def resolve(self, filename: str) -> Path:
        """Return the on-disk path of a stored file, rejecting unsafe names."""

        if "/" in filename or "\\" in filename or ".." in filename:
            raise InvalidAttachmentError("Invalid filename")
        if not _SAFE_FILENAME_RE.match(filename):
            raise InvalidAttachmentError("Invalid filename")
        return self._root / filename

    def _path_for(self, reference: str) -> Path:
        prefix = f"{self._prefix}/"
        if not reference.startswith(prefix):
            raise InvalidAttachmentError(f"Reference {reference!r} is not managed by this store")
        return self.resolve(reference[len(prefix):])

    def _write(self, path: Path, content: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("xb") as out:
            out.write(content)


class AttachmentManager:
    """Associate uploads with stage data and clean them up on deletion."""

    def __init__(
        self,
        blobs: BlobStore,
        *,
        allowed_extensions: Iterable[str] = ("jpg", "jpeg", "png", "gif", "webp", "mp4", "mov", "pdf"),
        max_size: int = 10 * 1024 * 1024,
    ) -> None:
        self._blobs = blobs
        self._allowed_extensions = frozenset(ext.strip().lower() for ext in allowed_extensions if ext.strip())
        self._max_size = max_size

    async def store(self, upload: MediaUpload | None) -> str | None:
        """Persist ``upload`` and return its reference, or ``None`` without an upload."""

        if upload is None:
            return None
        suffix = self._validate(upload)
        reference = await self._blobs.put(upload.content, suffix=suffix)
        logger.info("Stored attachment %s (%d bytes)", reference, len(upload.content))
        return reference

    async def retire(self, reference: str | None) -> None:
        """Remove one referenced blob; a missing blob is not an error."""

        if not reference:
            return
        try:
            if await self._blobs.exists(reference):
                await self._blobs.delete(reference)
                logger.info("Removed attachment %s", reference)
            else:
                logger.debug("Attachment %s already absent", reference)
        except (OSError, InvalidAttachmentError):
            logger.warning("Could not remove attachment %s", reference, exc_info=True)

    async def purge(self, ticket: Ticket) -> None:
        """Remove the open and closure media of ``ticket``."""

        for reference in ticket.media_references():
            await self.retire(reference)

    def _validate(self, upload: MediaUpload) -> str:
        if not upload.filename or "." not in upload.filename:
            raise InvalidAttachmentError("File extension is required")
        suffix = upload.filename.rsplit(".", 1)[-1].lower()
        if suffix not in self._allowed_extensions:
            allowed = ", ".join(sorted(self._allowed_extensions))
            raise InvalidAttachmentError(f"File type not allowed. Allowed: {allowed}")
        if len(upload.content) > self._max_size:
            raise InvalidAttachmentError(f"File too large. Max size: {self._max_size} bytes")
        return suffix
