import asyncio
import hashlib
import os
from pathlib import Path
from typing import AsyncIterator, Iterator, Tuple

import aiofiles
import aiofiles.os

from app.services.errors import BlobNotFoundError, StorageFailure
from logger_config import setup_logger

logger = setup_logger()

BLOB_SUFFIX = ".blob"
CHUNK_SIZE = 64 * 1024


class BlobStore:
    def __init__(self, data_dir: Path, temp_dir: Path):
        self.data_dir = Path(data_dir)
        self.temp_dir = Path(temp_dir)

    async def initialize(self):
        """Create the storage directories and clear leftovers of interrupted uploads."""
        logger.info("Initializing blob store...")

        self.data_dir.mkdir(exist_ok=True, parents=True)
        self.temp_dir.mkdir(exist_ok=True, parents=True)
        logger.debug(f"Storage directories created/verified: {self.data_dir}, {self.temp_dir}")

        files_removed = 0
        for file in self.temp_dir.glob("*"):
            if file.is_file():
                await aiofiles.os.unlink(file)
                files_removed += 1
        logger.info(f"Cleaned temporary directory, removed {files_removed} files")

    def get_blob_path(self, blob_id: str) -> Path:
        """Get the path where a blob should be stored based on its ID."""
        # Use first 2 chars of MD5 hash as directory name
        hash_prefix = hashlib.md5(blob_id.encode()).hexdigest()[:2]
        return self.data_dir / hash_prefix / f"{blob_id}{BLOB_SUFFIX}"

    async def write(self, blob_id: str, chunks: AsyncIterator[bytes]) -> int:
        """Stream chunks into the blob for ``blob_id`` and return its size.

        Content goes to a temp file first and is renamed into place only
        after the last chunk is flushed, so an aborted upload never leaves
        a partial blob at the final path. Exceptions raised by ``chunks``
        (a size check, a client disconnect, cancellation) propagate after
        the temp file is removed.
        """
        blob_path = self.get_blob_path(blob_id)
        temp_path = self.temp_dir / f"{blob_id}_temp{BLOB_SUFFIX}"
        committed = False
        size = 0
        try:
            blob_path.parent.mkdir(exist_ok=True, parents=True)
            async with aiofiles.open(temp_path, 'wb') as f:
                async for chunk in chunks:
                    size += len(chunk)
                    await f.write(chunk)
                await f.flush()
                await asyncio.to_thread(os.fsync, f.fileno())
            await aiofiles.os.rename(str(temp_path), str(blob_path))
            committed = True
        except OSError as e:
            logger.error(f"Error writing blob {blob_id}: {str(e)}", exc_info=True)
            raise StorageFailure(f"Failed to save data to '{blob_id}': {e}") from e
        finally:
            if not committed and await aiofiles.os.path.exists(temp_path):
                await aiofiles.os.unlink(temp_path)

        logger.debug(f"Stored blob {blob_id} ({size} bytes)")
        return size

    async def open(self, blob_id: str, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        """Open a blob for streaming.

        The file is opened eagerly so a missing blob raises here, before
        any response has started; the returned iterator closes it when done.
        """
        blob_path = self.get_blob_path(blob_id)
        try:
            handle = await aiofiles.open(blob_path, 'rb')
        except FileNotFoundError as e:
            raise BlobNotFoundError(blob_id) from e
        except OSError as e:
            logger.error(f"Failed to read blob {blob_id}: {e}")
            raise StorageFailure(f"Failed to read file '{blob_id}': {e}") from e

        async def file_iterator():
            try:
                while chunk := await handle.read(chunk_size):
                    yield chunk
            finally:
                await handle.close()

        return file_iterator()

    async def exists(self, blob_id: str) -> bool:
        return await aiofiles.os.path.exists(self.get_blob_path(blob_id))

    async def delete(self, blob_id: str) -> bool:
        """Delete a blob. Returns False if it was already gone."""
        blob_path = self.get_blob_path(blob_id)
        try:
            await aiofiles.os.unlink(blob_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Failed to delete blob {blob_id}: {e}")
            raise StorageFailure(f"Failed to delete file '{blob_id}': {e}") from e
        return True

    def iter_blobs(self) -> Iterator[Tuple[str, float]]:
        """Yield ``(blob_id, mtime)`` for every stored blob."""
        for folder_path, _, files in os.walk(self.data_dir):
            for file in files:
                if not file.endswith(BLOB_SUFFIX):
                    continue
                path = Path(folder_path) / file
                try:
                    mtime = path.stat().st_mtime
                except FileNotFoundError:
                    continue
                yield file[:-len(BLOB_SUFFIX)], mtime
