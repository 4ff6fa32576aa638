# ========================
# tests/test_utils.py
# ========================

import unittest
import io
import json
import os
import sys
import tempfile
import asyncio
import uuid
import zipfile
from unittest.mock import MagicMock

# Add the project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.pipeline.errors import ConfigurationError
from src.utils.aws import list_buckets, list_regions
from src.utils.config import Config
from src.utils.data_generator import CSV_HEADER, PRESETS, TestArchiveGenerator
from src.utils.performance_monitor import PerformanceMonitor, monitor_performance
from src.utils.run_history import RunHistoryManager
from src.utils.uploads import UploadTooLargeError, save_upload


class TestConfig(unittest.TestCase):
    """Test configuration handling."""

    def test_defaults(self):
        config = Config({'TARGET_TABLE': 'items', 'TARGET_COLUMNS': 'id,column1,column2,column3'})

        self.assertEqual(config.target_columns, ['id', 'column1', 'column2', 'column3'])
        self.assertEqual(Config({'target_table': 'staging.items'}).TARGET_TABLE, 'staging.items')

    def test_zero_concurrency_means_unbounded(self):
        self.assertIsNone(Config({'MAX_CONCURRENT_MEMBERS': 0}).max_concurrent_members)
        self.assertEqual(Config({'MAX_CONCURRENT_MEMBERS': 3}).max_concurrent_members, 3)

    def test_invalid_values(self):
        config = Config({'PG_PORT': 70000, 'READ_CHUNK_SIZE': 0, 'LOG_LEVEL': 'LOUD'})

        validations = config.validate_config()

        self.assertFalse(validations['pg_port'])
        self.assertFalse(validations['read_chunk_size'])
        self.assertFalse(validations['log_level'])
        with self.assertRaises(ConfigurationError):
            config.require_valid()

    def test_secrets_are_redacted(self):
        config = Config({'AWS_SECRET_ACCESS_KEY': 'very-secret', 'PG_PASSWORD': 'hunter2'})

        data = config.to_dict()

        self.assertEqual(data['AWS_SECRET_ACCESS_KEY'], '***')
        self.assertEqual(data['PG_PASSWORD'], '***')
        self.assertEqual(config.to_dict(redact_secrets=False)['PG_PASSWORD'], 'hunter2')
        self.assertNotIn('REQUIRED_SETTINGS', data)

    def test_file_round_trip_keeps_real_secrets(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, 'config.json')
            Config({'TARGET_TABLE': 'staging.items', 'PG_PASSWORD': 'hunter2'}).save_to_file(path)

            with open(path) as f:
                self.assertEqual(json.load(f)['PG_PASSWORD'], '***')

            loaded = Config.load_from_file(path)
            self.assertEqual(loaded.TARGET_TABLE, 'staging.items')
            self.assertNotEqual(loaded.PG_PASSWORD, '***')

    def test_postgres_conninfo(self):
        config = Config({
            'PG_HOST': 'localhost',
            'PG_PORT': 5432,
            'PG_DATABASE': 'warehouse',
            'PG_USERNAME': 'loader',
            'PG_PASSWORD': 'pw',
        })

        conninfo = config.postgres_conninfo()

        self.assertIn('dbname=warehouse', conninfo)
        self.assertIn('user=loader', conninfo)


class TestArchiveGeneration(unittest.TestCase):
    """Test the synthetic archive generator."""

    def test_archive_layout(self):
        generator = TestArchiveGenerator(seed=42)

        data = generator.generate_archive_bytes(3, 100)

        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            self.assertEqual(archive.namelist(), ['data_1.csv', 'data_2.csv', 'data_3.csv'])
            lines = archive.read('data_2.csv').decode('utf-8').splitlines(keepends=True)

        self.assertEqual(lines[0], CSV_HEADER)
        self.assertEqual(len(lines), 101)
        self.assertTrue(lines[1].startswith('2_1,'))
        self.assertTrue(lines[-1].startswith('2_100,'))

    def test_same_seed_same_archive(self):
        first = TestArchiveGenerator(seed=5).generate_archive_bytes(1, 20)
        second = TestArchiveGenerator(seed=5).generate_archive_bytes(1, 20)

        with zipfile.ZipFile(io.BytesIO(first)) as a, zipfile.ZipFile(io.BytesIO(second)) as b:
            self.assertEqual(a.read('data_1.csv'), b.read('data_1.csv'))

    def test_malformed_row(self):
        generator = TestArchiveGenerator(seed=1)
        buffer = io.BytesIO()

        stats = generator.write_archive(buffer, 2, 10, malformed={1: 4})

        self.assertEqual(stats['malformed_members'], ['data_2.csv'])
        with zipfile.ZipFile(buffer) as archive:
            rows = archive.read('data_2.csv').decode('utf-8').splitlines()
        self.assertTrue(rows[5].startswith('2_5,not-a-number,'))

    def test_preset(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            stats = TestArchiveGenerator(seed=42).generate_preset('small', temp_dir, show_progress=False)

            self.assertTrue(os.path.exists(stats['file_path']))
            self.assertEqual(stats['total_rows'], 300)
            self.assertGreater(stats['archive_bytes'], 0)

        self.assertEqual(PRESETS['medium'], (10, 100_000))

    def test_unknown_preset(self):
        with self.assertRaises(ValueError):
            TestArchiveGenerator().generate_preset('huge', '.')


class _FakeUpload:
    """Async reader shaped like fastapi.UploadFile."""

    def __init__(self, data: bytes):
        self._buffer = io.BytesIO(data)
        self.bytes_served = 0

    async def read(self, size=-1):
        chunk = self._buffer.read(size)
        self.bytes_served += len(chunk)
        await asyncio.sleep(0)
        return chunk


class TestSaveUpload(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.path = os.path.join(self.temp_dir.name, 'uploaded', 'run_small.zip')

    def tearDown(self):
        self.temp_dir.cleanup()

    async def test_upload_is_written_in_chunks(self):
        data = TestArchiveGenerator(seed=42).generate_archive_bytes(3, 100)

        written = await save_upload(_FakeUpload(data), self.path, max_bytes=len(data), chunk_size=1024)

        self.assertEqual(written, len(data))
        with open(self.path, 'rb') as f:
            self.assertEqual(f.read(), data)

    async def test_oversized_upload_stops_early(self):
        upload = _FakeUpload(b'x' * 100_000)

        with self.assertRaises(UploadTooLargeError):
            await save_upload(upload, self.path, max_bytes=10_000, chunk_size=4096)

        # Reading stops at the first chunk past the limit
        self.assertEqual(upload.bytes_served, 12_288)
        self.assertFalse(os.path.exists(self.path))


class TestRunHistory(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.manager = RunHistoryManager(os.path.join(self.temp_dir.name, 'history', 'runs.json'))

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_save_and_load(self):
        run_id = str(uuid.uuid4())
        self.manager.save_runs({run_id: {'status': 'completed'}, 'not-a-uuid': {'status': 'failed'}})

        runs = self.manager.load_runs()

        self.assertEqual(list(runs), [run_id])

    def test_unfinished_runs_are_interrupted(self):
        runs = {
            'a': {'status': 'processing'},
            'b': {'status': 'queued'},
            'c': {'status': 'completed'},
        }

        self.assertEqual(self.manager.mark_interrupted(runs), 2)
        self.assertEqual(runs['a']['status'], 'interrupted')
        self.assertEqual(runs['c']['status'], 'completed')

    def test_missing_history_file(self):
        self.assertEqual(self.manager.load_runs(), {})


class TestPerformanceMonitor(unittest.TestCase):

    def test_summary(self):
        with monitor_performance("test run") as monitor:
            monitor.add_checkpoint("Processing file data_1.csv")
            monitor.update_progress(100, 4096)
            monitor.update_progress(-1, 10)

        summary = monitor.stop_monitoring()

        self.assertEqual(summary['rows_loaded'], 100)
        self.assertEqual(summary['bytes_loaded'], 4106)
        self.assertEqual(summary['members_completed'], 2)
        self.assertEqual(summary['checkpoints'][0]['name'], "Processing file data_1.csv")
        self.assertGreater(summary['peak_memory_usage_mb'], 0)

    def test_current_stats_before_start(self):
        stats = PerformanceMonitor().get_current_stats()
        self.assertEqual(stats['elapsed_seconds'], 0)


class TestAwsHelpers(unittest.TestCase):

    def test_regions_sorted(self):
        ec2_client = MagicMock()
        ec2_client.describe_regions.return_value = {
            'Regions': [{'RegionName': 'us-east-1'}, {'RegionName': 'eu-west-1'}]
        }
        self.assertEqual(list_regions(ec2_client), ['eu-west-1', 'us-east-1'])

    def test_buckets_sorted(self):
        s3_client = MagicMock()
        s3_client.list_buckets.return_value = {'Buckets': [{'Name': 'zeta'}, {'Name': 'alpha'}]}
        self.assertEqual(list_buckets(s3_client), ['alpha', 'zeta'])


if __name__ == '__main__':
    unittest.main()
