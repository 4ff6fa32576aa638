# ========================
# src/pipeline/source.py
# ========================

"""
Archive Stream Sources

Wraps a remote object (S3), a local file or an in-memory buffer as a single
sequential async byte stream. No parsing happens here.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from .errors import SourceRetrievalError

logger = logging.getLogger(__name__)


class ByteStream(ABC):
    """A sequential, read-once stream of bytes."""

    @abstractmethod
    async def read(self, size: int) -> bytes:
        """Read up to `size` bytes. Returns b'' at end of stream."""

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying handle."""


class ArchiveSource(ABC):
    """Something that can be opened into a ByteStream."""

    @property
    @abstractmethod
    def description(self) -> str:
        """Human readable locator used in logs and run summaries."""

    @abstractmethod
    async def open(self) -> ByteStream:
        """
        Open the source for reading.

        Raises:
            SourceRetrievalError: If the object cannot be retrieved
        """


class _BlockingReaderStream(ByteStream):
    """Adapts a blocking file-like object; reads run in a worker thread."""

    def __init__(self, handle):
        self._handle = handle

    async def read(self, size: int) -> bytes:
        return await asyncio.to_thread(self._handle.read, size)

    async def close(self) -> None:
        await asyncio.to_thread(self._handle.close)


class S3ArchiveSource(ArchiveSource):
    """
    Streams an object from S3.

    The GetObject call and the body reads are blocking boto3 calls and run
    in worker threads so the event loop stays free for the database loads.
    Retries are whatever the botocore client is configured with.
    """

    def __init__(self, s3_client, bucket: str, key: str):
        """
        Args:
            s3_client: A boto3 S3 client
            bucket (str): Bucket name
            key (str): Object key of the archive
        """
        self.s3_client = s3_client
        self.bucket = bucket
        self.key = key

    @property
    def description(self) -> str:
        return f"s3://{self.bucket}/{self.key}"

    async def open(self) -> ByteStream:
        logger.info(f"Fetching archive {self.description}")
        try:
            response = await asyncio.to_thread(
                self.s3_client.get_object, Bucket=self.bucket, Key=self.key
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Could not fetch {self.description}: {e}")
            raise SourceRetrievalError(f"Could not fetch {self.description}: {e}") from e

        content_length = response.get('ContentLength')
        if content_length is not None:
            logger.info(f"Archive size: {content_length / (1024 * 1024):.2f} MB")

        return _BlockingReaderStream(response['Body'])


class LocalFileSource(ArchiveSource):
    """Streams an archive from the local filesystem."""

    def __init__(self, file_path):
        self.file_path = Path(file_path)

    @property
    def description(self) -> str:
        return str(self.file_path)

    async def open(self) -> ByteStream:
        try:
            handle = await asyncio.to_thread(open, self.file_path, 'rb')
        except OSError as e:
            logger.error(f"Could not open archive '{self.file_path}': {e}")
            raise SourceRetrievalError(f"Could not open archive '{self.file_path}': {e}") from e
        return _BlockingReaderStream(handle)


class _MemoryStream(ByteStream):

    def __init__(self, data: bytes, chunk_size: int):
        self._view = memoryview(data)
        self._position = 0
        self._chunk_size = chunk_size
        self.closed = False

    async def read(self, size: int) -> bytes:
        # Never hand out more than chunk_size so callers see several chunks
        size = min(size, self._chunk_size)
        chunk = bytes(self._view[self._position:self._position + size])
        self._position += len(chunk)
        # Give other tasks a turn, like a real network read would
        await asyncio.sleep(0)
        return chunk

    async def close(self) -> None:
        self.closed = True


class BytesSource(ArchiveSource):
    """An archive already held in memory (uploads and tests)."""

    def __init__(self, data: bytes, chunk_size: int = 64 * 1024, name: Optional[str] = None):
        self.data = data
        self.chunk_size = chunk_size
        self.name = name or "<memory>"
        self.opened_streams = []

    @property
    def description(self) -> str:
        return self.name

    async def open(self) -> ByteStream:
        stream = _MemoryStream(self.data, self.chunk_size)
        self.opened_streams.append(stream)
        return stream
