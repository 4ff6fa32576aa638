# ========================
# tests/test_source.py
# ========================

import unittest
import io
import os
import sys
import tempfile
from unittest.mock import MagicMock

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from botocore.exceptions import ClientError, EndpointConnectionError

from src.pipeline.errors import SourceRetrievalError
from src.pipeline.source import BytesSource, LocalFileSource, S3ArchiveSource


async def read_all(stream, size=4):
    parts = []
    while True:
        chunk = await stream.read(size)
        if not chunk:
            return b''.join(parts), len(parts)
        parts.append(chunk)


class TestS3ArchiveSource(unittest.IsolatedAsyncioTestCase):
    """Test the S3 source against a mocked boto3 client."""

    def setUp(self):
        self.s3_client = MagicMock()
        self.source = S3ArchiveSource(self.s3_client, 'exports', 'medium.zip')

    async def test_streams_object_body(self):
        body = io.BytesIO(b"PK\x03\x04 archive bytes")
        self.s3_client.get_object.return_value = {'Body': body, 'ContentLength': 20}

        stream = await self.source.open()
        data, reads = await read_all(stream)
        await stream.close()

        self.s3_client.get_object.assert_called_once_with(Bucket='exports', Key='medium.zip')
        self.assertEqual(data, b"PK\x03\x04 archive bytes")
        self.assertGreater(reads, 1)
        self.assertTrue(body.closed)

    async def test_missing_object(self):
        self.s3_client.get_object.side_effect = ClientError(
            {'Error': {'Code': 'NoSuchKey', 'Message': 'The specified key does not exist.'}},
            'GetObject',
        )

        with self.assertRaises(SourceRetrievalError) as context:
            await self.source.open()
        self.assertIn('s3://exports/medium.zip', str(context.exception))

    async def test_unreachable_endpoint(self):
        self.s3_client.get_object.side_effect = EndpointConnectionError(endpoint_url='https://s3.amazonaws.com')

        with self.assertRaises(SourceRetrievalError):
            await self.source.open()

    def test_description(self):
        self.assertEqual(self.source.description, 's3://exports/medium.zip')


class TestLocalFileSource(unittest.IsolatedAsyncioTestCase):

    async def test_reads_file(self):
        with tempfile.NamedTemporaryFile(suffix='.zip', delete=False) as f:
            f.write(b"0123456789")
            temp_file_path = f.name

        try:
            stream = await LocalFileSource(temp_file_path).open()
            data, _ = await read_all(stream, size=3)
            await stream.close()
            self.assertEqual(data, b"0123456789")
        finally:
            os.unlink(temp_file_path)

    async def test_missing_file(self):
        with self.assertRaises(SourceRetrievalError):
            await LocalFileSource('/nonexistent/archive.zip').open()


class TestBytesSource(unittest.IsolatedAsyncioTestCase):

    async def test_reads_are_capped_at_chunk_size(self):
        source = BytesSource(b"abcdefghij", chunk_size=3, name="upload.zip")

        stream = await source.open()
        data, reads = await read_all(stream, size=1024)
        await stream.close()

        self.assertEqual(data, b"abcdefghij")
        self.assertEqual(reads, 4)
        self.assertEqual(source.description, "upload.zip")
        self.assertTrue(source.opened_streams[0].closed)

    def test_default_description(self):
        self.assertEqual(BytesSource(b"").description, "<memory>")


if __name__ == '__main__':
    unittest.main()
