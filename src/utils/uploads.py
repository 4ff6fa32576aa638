# ========================
# src/utils/uploads.py
# ========================

"""
Upload spooling for the API server.

Uploaded archives are written to disk chunk by chunk and then ingested
through a LocalFileSource, so an upload never sits in memory as a whole.
"""

import asyncio
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_SIZE = 1024 * 1024


class UploadTooLargeError(ValueError):
    """The upload passed the configured size limit."""

    def __init__(self, max_bytes: int):
        super().__init__(f"Upload exceeds the {max_bytes:,} byte limit")
        self.max_bytes = max_bytes


async def save_upload(upload, destination, max_bytes: int, chunk_size: int = UPLOAD_CHUNK_SIZE) -> int:
    """
    Copy an uploaded file to disk without buffering it whole.

    Args:
        upload: Object with an async read(size), such as fastapi.UploadFile
        destination: Target file path; parent directories are created
        max_bytes (int): Size limit, checked as the bytes arrive
        chunk_size (int): Bytes read per call

    Returns:
        int: Number of bytes written

    Raises:
        UploadTooLargeError: The limit was passed; the partial file is removed
    """
    path = Path(destination)
    path.parent.mkdir(parents=True, exist_ok=True)

    written = 0
    handle = await asyncio.to_thread(open, path, 'wb')
    try:
        while True:
            chunk = await upload.read(chunk_size)
            if not chunk:
                break
            written += len(chunk)
            if written > max_bytes:
                raise UploadTooLargeError(max_bytes)
            await asyncio.to_thread(handle.write, chunk)
    except BaseException:
        handle.close()
        path.unlink(missing_ok=True)
        raise
    else:
        handle.close()

    logger.info(f"Saved upload to {path} ({written:,} bytes)")
    return written
