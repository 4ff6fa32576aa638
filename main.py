#!/usr/bin/env python3
# ========================
# main.py
# ========================

"""
Main Entry Point for the Streaming Archive Ingestion Pipeline

Fetches a ZIP archive of CSV files (from S3, or a local file), streams
every member into PostgreSQL with COPY and reports the aggregate outcome.
"""

import sys
import asyncio
import argparse
import logging
from pathlib import Path

# Add src to Python path
sys.path.insert(0, str(Path(__file__).parent / 'src'))

from src.pipeline import IngestionPipeline, IngestionError, LocalFileSource, PostgresCopySink, build_pipeline
from src.utils import Config, setup_logging


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stream a ZIP archive of CSV files into PostgreSQL.")
    parser.add_argument('--key', help="S3 object key of the archive (defaults to ARCHIVE_KEY)")
    parser.add_argument('--file', help="Load a local archive instead of fetching from S3")
    parser.add_argument('--max-concurrent-members', type=int, default=None,
                        help="Ceiling for members loading at once (0 = unbounded)")
    return parser.parse_args(argv)


def create_pipeline(config: Config, args: argparse.Namespace) -> IngestionPipeline:
    """Build the pipeline for an S3 archive or a local file."""
    if args.max_concurrent_members is not None:
        config.MAX_CONCURRENT_MEMBERS = args.max_concurrent_members

    if not args.file:
        return build_pipeline(config, key=args.key)

    # Local archives only need the database settings
    missing = [name for name in config.missing_settings() if name.startswith('PG_')]
    if missing:
        raise IngestionError(f"Missing settings: {', '.join(missing)}")

    sink = PostgresCopySink.from_config(config)
    return IngestionPipeline(LocalFileSource(args.file), sink, config=config)


def main(argv=None):
    """Main execution function."""
    args = parse_args(argv)

    # Initialize configuration
    config = Config()

    # Setup logging
    setup_logging(
        log_level=config.LOG_LEVEL,
        log_file="pipeline.log",
        log_dir="logs"
    )

    logger = logging.getLogger(__name__)
    logger.info("=" * 60)
    logger.info("STREAMING ARCHIVE INGESTION - MAIN EXECUTION")
    logger.info("=" * 60)

    try:
        pipeline = create_pipeline(config, args)
        results = asyncio.run(pipeline.run())
        _print_execution_summary(results)
        logger.info("Ingestion completed successfully!")
        return 0

    except IngestionError as e:
        logger.error(f"Ingestion failed: {e}")
        return 1
    except Exception as e:
        logger.error(f"Ingestion failed unexpectedly: {e}", exc_info=True)
        return 1


def _print_execution_summary(results: dict) -> None:
    """Print final execution summary."""
    print("\n" + "=" * 70)
    print("INGESTION SUMMARY")
    print("=" * 70)
    print(f"📦 Source: {results['source']}")
    print(f"   • Members discovered: {results['members_discovered']}")
    print(f"   • Archive bytes read: {results['archive_bytes_read']:,}")

    print("\n🔄 Loading:")
    print(f"   • Rows loaded: {results['rows_loaded']:,}")
    print(f"   • Bytes relayed: {results['bytes_loaded']:,}")
    print(f"   • Peak concurrent members: {results['peak_concurrent_members']}")

    performance = results.get('performance') or {}
    if performance:
        print(f"   • Time: {performance['total_processing_time_seconds']:.2f} seconds")
        print(f"   • Peak memory: {performance['peak_memory_usage_mb']:.2f} MB")

    print("\n📁 Members:")
    for member in results['members']:
        print(f"   • {member['member']}: {member['rows_loaded']:,} rows")
    print("=" * 70)


if __name__ == '__main__':
    exit_code = main()
    sys.exit(exit_code)
