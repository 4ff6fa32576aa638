#!/usr/bin/env python3
# ========================
# scripts/create_test_files.py
# ========================

"""
Script to create the test archives (small, medium, large) and optionally
upload them to the configured S3 bucket.

The large preset is 20 files of 1,000,000 rows each, so it takes a while.
"""

import sys
import os
import argparse
import logging

# Add project root to Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm

from src.utils.aws import create_s3_client, upload_file
from src.utils.config import Config
from src.utils.data_generator import PRESETS, TestArchiveGenerator
from src.utils.logging_setup import setup_logging
from src.utils.performance_monitor import monitor_performance


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create ZIP archives of CSV files for testing the pipeline.")
    parser.add_argument('presets', nargs='*', choices=sorted(PRESETS), default=['small', 'medium'],
                        help="Archives to create (default: small medium)")
    parser.add_argument('--output-dir', default=None, help="Where to write the archives (defaults to TEST_FILES_DIR)")
    parser.add_argument('--seed', type=int, default=42, help="Random seed")
    parser.add_argument('--upload', action='store_true', help="Upload each archive to AWS_S3_BUCKET_NAME")
    return parser.parse_args(argv)


def upload_archive(config: Config, file_path: str) -> None:
    """Upload one archive to the configured bucket, keyed by its file name."""
    key = os.path.basename(file_path)
    s3_client = create_s3_client(config)
    with tqdm(total=os.path.getsize(file_path), unit='B', unit_scale=True, desc=f"upload {key}") as progress:
        upload_file(s3_client, file_path, config.AWS_S3_BUCKET_NAME, key, callback=progress.update)
    print(f"   • Uploaded to s3://{config.AWS_S3_BUCKET_NAME}/{key}")


def main(argv=None):
    """Create the requested archives."""
    args = parse_args(argv)
    config = Config()
    setup_logging(log_level=config.LOG_LEVEL)

    output_dir = args.output_dir or config.TEST_FILES_DIR
    if args.upload and not config.AWS_S3_BUCKET_NAME:
        print("AWS_S3_BUCKET_NAME is not set, cannot upload")
        return 1

    print("=" * 60)
    print("TEST ARCHIVE GENERATION")
    print("=" * 60)
    print(f"Presets: {', '.join(args.presets)}")
    print(f"Output directory: {output_dir}")
    print("=" * 60)

    generator = TestArchiveGenerator(seed=args.seed)

    for preset in args.presets:
        num_files, num_rows = PRESETS[preset]
        print(f"\n🔄 Creating {preset}.zip ({num_files} files x {num_rows:,} rows)...")

        with monitor_performance(f"Generate {preset}") as monitor:
            stats = generator.generate_preset(preset, output_dir)
            monitor.add_checkpoint("Archive written", {'archive_bytes': stats['archive_bytes']})

        print(f"   • {stats['file_path']}: {stats['archive_bytes'] / (1024 * 1024):.2f} MB zipped, "
              f"{stats['uncompressed_bytes'] / (1024 * 1024):.2f} MB unzipped")

        if args.upload:
            try:
                upload_archive(config, stats['file_path'])
            except (BotoCoreError, ClientError) as e:
                logging.getLogger(__name__).error(f"Upload of {stats['file_path']} failed: {e}")
                return 1

    print("\n✅ Done")
    return 0


if __name__ == '__main__':
    sys.exit(main())
