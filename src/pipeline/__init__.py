# ========================
# src/pipeline/__init__.py
# ========================

"""
Ingestion Pipeline Package

This package contains all core components of the streaming archive ingestion pipeline:
- source: Sequential byte streams over S3 objects, local files and memory
- archive: Streaming ZIP demultiplexer
- sink: PostgreSQL COPY bulk loading
- orchestrator: Run coordination and aggregate outcome
- errors: Error kinds shared by the components
"""

from .source import ArchiveSource, S3ArchiveSource, LocalFileSource, BytesSource
from .archive import ZipStreamReader, ArchiveMember
from .sink import PostgresCopySink, LoadResult
from .orchestrator import IngestionPipeline, AggregateOutcome, build_pipeline
from .errors import (
    IngestionError,
    ConfigurationError,
    SourceRetrievalError,
    ArchiveDecodeError,
    MemberLoadError,
    SinkConnectionError,
)

__all__ = [
    'ArchiveSource',
    'S3ArchiveSource',
    'LocalFileSource',
    'BytesSource',
    'ZipStreamReader',
    'ArchiveMember',
    'PostgresCopySink',
    'LoadResult',
    'IngestionPipeline',
    'AggregateOutcome',
    'build_pipeline',
    'IngestionError',
    'ConfigurationError',
    'SourceRetrievalError',
    'ArchiveDecodeError',
    'MemberLoadError',
    'SinkConnectionError',
]

__version__ = "1.0.0"
