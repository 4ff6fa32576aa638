# ========================
# src/pipeline/archive.py
# ========================

"""
Streaming ZIP Demultiplexer

Decodes a ZIP archive front to back from a sequential byte stream, driven by
the local file headers rather than the central directory. Each member is
surfaced as soon as its header has been parsed, and its body is decompressed
lazily as the consumer reads it, so loading of early members can start before
the rest of the archive has been downloaded.

The next member is only decoded once the current member's body has been read
to the end (or discarded), which gives natural backpressure: at most one
chunk of decompressed data is held in memory at a time.
"""

import asyncio
import logging
import struct
import zlib
from dataclasses import dataclass
from typing import AsyncIterator, Optional

from .errors import ArchiveDecodeError
from .source import ByteStream

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024

LOCAL_FILE_HEADER_SIGNATURE = 0x04034b50
CENTRAL_DIRECTORY_SIGNATURE = 0x02014b50
ZIP64_END_OF_CENTRAL_DIRECTORY_SIGNATURE = 0x06064b50
END_OF_CENTRAL_DIRECTORY_SIGNATURE = 0x06054b50
DATA_DESCRIPTOR_SIGNATURE = 0x08074b50

# Any of these means every member has been seen
END_SIGNATURES = {
    CENTRAL_DIRECTORY_SIGNATURE,
    ZIP64_END_OF_CENTRAL_DIRECTORY_SIGNATURE,
    END_OF_CENTRAL_DIRECTORY_SIGNATURE,
}

# Local file header after the 4 byte signature
LOCAL_HEADER = struct.Struct('<HHHHHIIIHH')

METHOD_STORED = 0
METHOD_DEFLATED = 8

FLAG_ENCRYPTED = 0x0001
FLAG_DATA_DESCRIPTOR = 0x0008
FLAG_UTF8 = 0x0800

ZIP64_EXTRA_ID = 0x0001
ZIP64_SENTINEL = 0xFFFFFFFF


@dataclass
class MemberHeader:
    """Fields of a local file header that the decoder needs."""
    name: str
    flags: int
    method: int
    crc32: int
    compressed_size: int
    uncompressed_size: int
    zip64: bool = False

    @property
    def has_data_descriptor(self) -> bool:
        return bool(self.flags & FLAG_DATA_DESCRIPTOR)

    @property
    def is_directory(self) -> bool:
        return self.name.endswith('/')


class _StreamBuffer:
    """Read-ahead buffer over a ByteStream with exact reads and push-back."""

    def __init__(self, stream: ByteStream, chunk_size: int):
        self._stream = stream
        self._chunk_size = chunk_size
        self._buffer = bytearray()
        self._eof = False
        self.bytes_read = 0
        self.position = 0

    async def _fill(self) -> bool:
        if self._eof:
            return False
        try:
            chunk = await self._stream.read(self._chunk_size)
        except Exception as e:
            raise ArchiveDecodeError(f"Archive stream failed at offset {self.position}: {e}") from e
        if not chunk:
            self._eof = True
            return False
        self.bytes_read += len(chunk)
        self._buffer.extend(chunk)
        return True

    async def at_eof(self) -> bool:
        return not self._buffer and not await self._fill()

    async def read_exact(self, size: int, what: str) -> bytes:
        while len(self._buffer) < size:
            if not await self._fill():
                raise ArchiveDecodeError(
                    f"Unexpected end of archive while reading {what} at offset {self.position}"
                )
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        self.position += size
        return data

    async def read_some(self, limit: int) -> bytes:
        if not self._buffer and not await self._fill():
            return b''
        data = bytes(self._buffer[:limit])
        del self._buffer[:limit]
        self.position += len(data)
        return data

    def unread(self, data: bytes) -> None:
        if data:
            self._buffer[:0] = data
            self.position -= len(data)


def _apply_zip64_extra(extra: bytes, compressed_size: int, uncompressed_size: int):
    """
    Resolve 32 bit size sentinels from the ZIP64 extended information field.

    Returns:
        tuple: (zip64, compressed_size, uncompressed_size)
    """
    zip64 = False
    offset = 0
    while offset + 4 <= len(extra):
        tag, size = struct.unpack_from('<HH', extra, offset)
        offset += 4
        if tag == ZIP64_EXTRA_ID:
            zip64 = True
            field = extra[offset:offset + size]
            position = 0
            if uncompressed_size == ZIP64_SENTINEL and len(field) >= position + 8:
                uncompressed_size, = struct.unpack_from('<Q', field, position)
                position += 8
            if compressed_size == ZIP64_SENTINEL and len(field) >= position + 8:
                compressed_size, = struct.unpack_from('<Q', field, position)
        offset += size
    return zip64, compressed_size, uncompressed_size


class ArchiveMember:
    """
    One file entry of the archive.

    The body is an async iterator of byte chunks and can be read exactly once.
    Whoever reads it owns it until it has been read to the end or discarded.
    """

    def __init__(self, header: MemberHeader, body: AsyncIterator[bytes]):
        self.header = header
        self.name = header.name
        self._body = body
        self._settled = asyncio.Event()
        self.error: Optional[BaseException] = None
        self.bytes_read = 0

    @property
    def settled(self) -> bool:
        return self._settled.is_set()

    def __aiter__(self):
        return self

    async def __anext__(self) -> bytes:
        if self._settled.is_set():
            if self.error is not None:
                raise self.error
            raise StopAsyncIteration
        try:
            chunk = await self._body.__anext__()
        except StopAsyncIteration:
            self._settled.set()
            raise
        except BaseException as e:
            self.error = e
            self._settled.set()
            raise
        self.bytes_read += len(chunk)
        return chunk

    async def discard(self) -> int:
        """
        Read and drop whatever is left of the body.

        A decode error is already recorded on the member and is raised again
        by the reader, so it is only logged here.

        Returns:
            int: Number of bytes discarded
        """
        discarded = 0
        try:
            async for chunk in self:
                discarded += len(chunk)
        except ArchiveDecodeError as e:
            logger.warning(f"Could not drain member '{self.name}': {e}")
        if discarded:
            logger.debug(f"Discarded {discarded:,} unread bytes of '{self.name}'")
        return discarded

    async def wait_settled(self) -> None:
        await self._settled.wait()

    def __repr__(self) -> str:
        return f"ArchiveMember(name={self.name!r}, method={self.header.method})"


class ZipStreamReader:
    """
    Async iterator over the members of a streamed ZIP archive.

    Iteration ends when the central directory is reached or the stream ends
    cleanly at a record boundary. Malformed input or a failing stream raises
    ArchiveDecodeError, which is terminal.
    """

    def __init__(self, stream: ByteStream, chunk_size: int = DEFAULT_CHUNK_SIZE):
        """
        Args:
            stream (ByteStream): Sequential archive bytes
            chunk_size (int): Read size and upper bound for decompressed chunks
        """
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.chunk_size = chunk_size
        self._buffer = _StreamBuffer(stream, chunk_size)
        self._iterator = None
        self.members_discovered = 0
        self.closed = False

    @property
    def bytes_read(self) -> int:
        return self._buffer.bytes_read

    def __aiter__(self):
        if self._iterator is None:
            self._iterator = self._iter_members()
        return self._iterator

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()

    async def _iter_members(self):
        while True:
            signature = await self._read_signature()

            if signature is None:
                logger.debug("Archive stream ended at a record boundary")
                break

            if signature in END_SIGNATURES:
                logger.debug(f"Reached central directory at offset {self._buffer.position - 4}")
                break

            if signature != LOCAL_FILE_HEADER_SIGNATURE:
                raise ArchiveDecodeError(
                    f"Unexpected record signature 0x{signature:08x} at offset {self._buffer.position - 4}"
                )

            header = await self._read_local_header()
            member = ArchiveMember(header, self._member_body(header))

            if header.is_directory:
                logger.debug(f"Skipping directory entry '{header.name}'")
                await member.discard()
                self._raise_for_member(member)
                continue

            self.members_discovered += 1
            logger.debug(f"Discovered member '{header.name}' (method {header.method})")
            yield member

            await member.wait_settled()
            self._raise_for_member(member)

        self.closed = True
        logger.info(f"Archive closed: {self.members_discovered} members, {self.bytes_read:,} bytes read")

    @staticmethod
    def _raise_for_member(member: ArchiveMember) -> None:
        if member.error is None:
            return
        if isinstance(member.error, ArchiveDecodeError):
            raise member.error
        raise ArchiveDecodeError(f"Body of '{member.name}' failed: {member.error}") from member.error

    async def _read_signature(self) -> Optional[int]:
        if await self._buffer.at_eof():
            return None
        raw = await self._buffer.read_exact(4, "record signature")
        return struct.unpack('<I', raw)[0]

    async def _read_local_header(self) -> MemberHeader:
        raw = await self._buffer.read_exact(LOCAL_HEADER.size, "local file header")
        (_version, flags, method, _mod_time, _mod_date,
         crc32, compressed_size, uncompressed_size,
         name_length, extra_length) = LOCAL_HEADER.unpack(raw)

        name_bytes = await self._buffer.read_exact(name_length, "file name")
        extra = await self._buffer.read_exact(extra_length, "extra field")

        try:
            name = name_bytes.decode('utf-8' if flags & FLAG_UTF8 else 'cp437')
        except UnicodeDecodeError as e:
            raise ArchiveDecodeError(f"Invalid member name {name_bytes!r}: {e}") from e

        if flags & FLAG_ENCRYPTED:
            raise ArchiveDecodeError(f"Member '{name}' is encrypted, which is not supported")

        if method not in (METHOD_STORED, METHOD_DEFLATED):
            raise ArchiveDecodeError(f"Member '{name}' uses unsupported compression method {method}")

        if method == METHOD_STORED and flags & FLAG_DATA_DESCRIPTOR:
            raise ArchiveDecodeError(
                f"Member '{name}' is stored with a trailing data descriptor; its length cannot be streamed"
            )

        zip64, compressed_size, uncompressed_size = _apply_zip64_extra(
            extra, compressed_size, uncompressed_size
        )

        return MemberHeader(
            name=name,
            flags=flags,
            method=method,
            crc32=crc32,
            compressed_size=compressed_size,
            uncompressed_size=uncompressed_size,
            zip64=zip64,
        )

    async def _member_body(self, header: MemberHeader):
        crc = 0
        produced = 0

        if header.method == METHOD_STORED:
            remaining = header.compressed_size
            while remaining:
                chunk = await self._buffer.read_some(min(remaining, self.chunk_size))
                if not chunk:
                    raise ArchiveDecodeError(f"Unexpected end of archive inside '{header.name}'")
                remaining -= len(chunk)
                crc = zlib.crc32(chunk, crc)
                produced += len(chunk)
                yield chunk
        else:
            decompressor = zlib.decompressobj(-zlib.MAX_WBITS)
            remaining = None if header.has_data_descriptor else header.compressed_size

            while not decompressor.eof:
                if remaining == 0:
                    raise ArchiveDecodeError(
                        f"Compressed data of '{header.name}' ended before the deflate stream was complete"
                    )
                limit = self.chunk_size if remaining is None else min(self.chunk_size, remaining)
                data = await self._buffer.read_some(limit)
                if not data:
                    raise ArchiveDecodeError(f"Unexpected end of archive inside '{header.name}'")
                if remaining is not None:
                    remaining -= len(data)

                pending = data
                while True:
                    try:
                        output = decompressor.decompress(pending, self.chunk_size)
                    except zlib.error as e:
                        raise ArchiveDecodeError(f"Corrupt deflate data in '{header.name}': {e}") from e
                    pending = decompressor.unconsumed_tail
                    if output:
                        crc = zlib.crc32(output, crc)
                        produced += len(output)
                        yield output
                    if decompressor.eof or (not pending and len(output) < self.chunk_size):
                        break

            leftover = decompressor.unused_data
            if remaining is None:
                self._buffer.unread(leftover)
            elif leftover or remaining:
                raise ArchiveDecodeError(
                    f"Compressed size of '{header.name}' does not match its deflate stream"
                )

        expected_crc = header.crc32
        expected_size = header.uncompressed_size
        if header.has_data_descriptor:
            expected_crc, expected_size = await self._read_data_descriptor(header)

        if crc != expected_crc:
            raise ArchiveDecodeError(
                f"CRC mismatch in '{header.name}': expected 0x{expected_crc:08x}, got 0x{crc:08x}"
            )
        if produced != expected_size:
            raise ArchiveDecodeError(
                f"Size mismatch in '{header.name}': expected {expected_size:,} bytes, got {produced:,}"
            )

    async def _read_data_descriptor(self, header: MemberHeader):
        raw = await self._buffer.read_exact(4, "data descriptor")
        if struct.unpack('<I', raw)[0] == DATA_DESCRIPTOR_SIGNATURE:
            raw = await self._buffer.read_exact(4, "data descriptor")
        crc32, = struct.unpack('<I', raw)

        size_format = '<QQ' if header.zip64 else '<II'
        sizes = await self._buffer.read_exact(struct.calcsize(size_format), "data descriptor")
        _compressed_size, uncompressed_size = struct.unpack(size_format, sizes)
        return crc32, uncompressed_size
