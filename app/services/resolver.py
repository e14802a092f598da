from dataclasses import dataclass
from typing import AsyncIterator, Union

from app.models.records import Kind, ObjectRecord, Role, ShortLinkRecord
from app.services.blob_store import BlobStore
from app.services.errors import BlobNotFoundError
from app.services.metadata_store import MetadataStore
from logger_config import setup_logger

logger = setup_logger()


@dataclass
class Content:
    chunks: AsyncIterator[bytes]
    content_type: str
    kind: Kind
    size_bytes: int
    filename: str
    is_admin: bool = False


@dataclass(frozen=True)
class Redirect:
    target_url: str
    is_admin: bool = False


@dataclass(frozen=True)
class NotFound:
    identifier: str


Resolution = Union[Content, Redirect, NotFound]


def strip_extension(id_path: str) -> str:
    """``abc123.png`` -> ``abc123``."""
    return id_path.rsplit(".", 1)[0] if "." in id_path else id_path


class Resolver:
    def __init__(self, metadata_store: MetadataStore, blob_store: BlobStore):
        self.metadata_store = metadata_store
        self.blob_store = blob_store

    async def resolve(self, id_path: str) -> Resolution:
        """Map an identifier (optionally with an extension) to content, a redirect, or nothing.

        A record whose blob is gone (a sweep racing this read) resolves to
        NotFound. StorageFailure from the stores propagates.
        """
        identifier = strip_extension(id_path)
        if not identifier:
            return NotFound(id_path)

        record = await self.metadata_store.get(identifier)
        if isinstance(record, ObjectRecord):
            return await self._open(record, id_path)
        if isinstance(record, ShortLinkRecord):
            return Redirect(record.target_url, is_admin=record.role_at_upload is Role.ADMIN)

        logger.warning(f"No data found for ID: {identifier}")
        return NotFound(id_path)

    async def resolve_raw(self, id_path: str) -> Resolution:
        """Like resolve, but only text objects are served."""
        identifier = strip_extension(id_path)
        record = await self.metadata_store.get(identifier) if identifier else None
        if isinstance(record, ObjectRecord) and record.kind is Kind.TEXT:
            return await self._open(record, id_path)
        return NotFound(id_path)

    async def _open(self, record: ObjectRecord, id_path: str) -> Resolution:
        try:
            chunks = await self.blob_store.open(record.id)
        except BlobNotFoundError:
            logger.warning(f"Record {record.id} has no blob, treating as not found")
            return NotFound(id_path)
        return Content(
            chunks=chunks,
            content_type=record.content_type,
            kind=record.kind,
            size_bytes=record.size_bytes,
            filename=record.filename,
            is_admin=record.role_at_upload is Role.ADMIN,
        )
