# ========================
# src/utils/performance_monitor.py
# ========================

"""
Performance Monitoring Utilities

Tracks memory usage, elapsed time and throughput of an ingestion run,
with named memory checkpoints at the interesting points of the run.
"""

import time
import os
import logging
from contextlib import contextmanager
from typing import Dict, Any, Optional

import psutil

logger = logging.getLogger(__name__)


class PerformanceMonitor:
    """
    Performance monitoring utility for the ingestion pipeline.
    Tracks memory usage, processing time, and throughput.
    """

    def __init__(self, name: str = "Ingestion", log_interval: int = 10):
        """
        Initialize performance monitor.

        Args:
            name (str): Name for this monitoring session
            log_interval (int): Log progress every N completed members
        """
        self.name = name
        self.log_interval = log_interval
        self.start_time = None
        self.end_time = None
        self.peak_memory_mb = 0
        self.rows_loaded = 0
        self.bytes_loaded = 0
        self.members_completed = 0
        self.checkpoints = []

        logger.debug(f"PerformanceMonitor initialized: {name}")

    def start_monitoring(self) -> None:
        """Start performance monitoring."""
        self.start_time = time.time()
        self.peak_memory_mb = self._get_memory_usage_mb()

        logger.info(f"{self.name} - Performance monitoring started")
        logger.info(f"Initial memory usage: {self.peak_memory_mb:.2f} MB")

    def update_progress(self, rows: int, bytes_loaded: int) -> None:
        """
        Record one finished member load.

        Args:
            rows (int): Rows the sink reported for the member
            bytes_loaded (int): Bytes relayed for the member
        """
        self.rows_loaded += max(rows, 0)
        self.bytes_loaded += bytes_loaded
        self.members_completed += 1
        current_memory = self._get_memory_usage_mb()
        self.peak_memory_mb = max(self.peak_memory_mb, current_memory)

        if self.members_completed % self.log_interval == 0:
            self._log_progress(current_memory)

    def add_checkpoint(self, name: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        """
        Add a performance checkpoint and log the memory in use at that point.

        Args:
            name (str): Checkpoint name
            metadata (dict): Optional metadata to store
        """
        memory_mb = self._get_memory_usage_mb()
        self.peak_memory_mb = max(self.peak_memory_mb, memory_mb)
        checkpoint = {
            'name': name,
            'timestamp': time.time(),
            'memory_mb': memory_mb,
            'rows_loaded': self.rows_loaded,
            'members_completed': self.members_completed,
            'metadata': metadata or {}
        }
        self.checkpoints.append(checkpoint)
        logger.debug(f"{name} - memory usage: {memory_mb:.2f} MB")

    def _log_progress(self, current_memory: float) -> None:
        """Log current progress."""
        if self.start_time:
            elapsed = time.time() - self.start_time
            throughput = self.bytes_loaded / elapsed / (1024 * 1024) if elapsed > 0 else 0

            logger.info(
                f"{self.name} - Progress: {self.members_completed} members, "
                f"{self.rows_loaded:,} rows, "
                f"{throughput:.2f} MB/sec, "
                f"Memory: {current_memory:.2f} MB"
            )

    def stop_monitoring(self) -> Dict[str, Any]:
        """
        Stop monitoring and return performance summary.

        Returns:
            dict: Performance statistics
        """
        self.end_time = time.time()
        total_time = self.end_time - self.start_time if self.start_time else 0

        summary = {
            'name': self.name,
            'total_processing_time_seconds': total_time,
            'rows_loaded': self.rows_loaded,
            'bytes_loaded': self.bytes_loaded,
            'members_completed': self.members_completed,
            'average_throughput_rows_per_second': self.rows_loaded / total_time if total_time > 0 else 0,
            'average_throughput_mb_per_second': self.bytes_loaded / total_time / (1024 * 1024) if total_time > 0 else 0,
            'peak_memory_usage_mb': self.peak_memory_mb,
            'checkpoints': self.checkpoints
        }

        self._log_summary(summary)
        return summary

    def _log_summary(self, summary: Dict[str, Any]) -> None:
        """Log formatted performance summary."""
        logger.info("=" * 60)
        logger.info(f"PERFORMANCE SUMMARY - {summary['name']}")
        logger.info("=" * 60)
        logger.info(f"Total processing time: {summary['total_processing_time_seconds']:.2f} seconds")
        logger.info(f"Members loaded: {summary['members_completed']:,}")
        logger.info(f"Rows loaded: {summary['rows_loaded']:,}")
        logger.info(f"Bytes relayed: {summary['bytes_loaded']:,}")
        logger.info(f"Average throughput: {summary['average_throughput_mb_per_second']:.2f} MB/second")
        logger.info(f"Peak memory usage: {summary['peak_memory_usage_mb']:.2f} MB")
        if summary['checkpoints']:
            logger.info(f"Checkpoints recorded: {len(summary['checkpoints'])}")
        logger.info("=" * 60)

    def _get_memory_usage_mb(self) -> float:
        """Get current memory usage (RSS) in MB."""
        process = psutil.Process(os.getpid())
        return process.memory_info().rss / (1024 * 1024)

    def get_current_stats(self) -> Dict[str, Any]:
        """Get current performance statistics."""
        elapsed = time.time() - self.start_time if self.start_time else 0
        return {
            'elapsed_seconds': elapsed,
            'rows_loaded': self.rows_loaded,
            'bytes_loaded': self.bytes_loaded,
            'members_completed': self.members_completed,
            'current_memory_mb': self._get_memory_usage_mb(),
            'peak_memory_mb': self.peak_memory_mb,
        }


@contextmanager
def monitor_performance(name: str = "Ingestion"):
    """
    Context manager for easy performance monitoring.

    Args:
        name (str): Name for this monitoring session

    Yields:
        PerformanceMonitor: Monitor instance
    """
    monitor = PerformanceMonitor(name)
    monitor.start_monitoring()
    try:
        yield monitor
    finally:
        monitor.stop_monitoring()


class SystemResourceMonitor:
    """Monitor system-wide resource usage."""

    @staticmethod
    def get_system_stats() -> Dict[str, Any]:
        """Get current system resource statistics."""
        stats = {}
        try:
            stats['cpu_count'] = psutil.cpu_count()

            memory = psutil.virtual_memory()
            stats['memory_total_gb'] = memory.total / (1024**3)
            stats['memory_available_gb'] = memory.available / (1024**3)
            stats['memory_used_percent'] = memory.percent

            process = psutil.Process(os.getpid())
            stats['process_memory_mb'] = process.memory_info().rss / (1024 * 1024)
        except psutil.Error as e:
            logger.warning(f"Could not get system stats: {e}")

        return stats
