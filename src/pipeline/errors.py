# ========================
# src/pipeline/errors.py
# ========================

"""
Pipeline Errors

Exception hierarchy shared by the source, archive, sink and orchestrator modules.
"""

from typing import Optional


class IngestionError(Exception):
    """Base class for every error raised by the ingestion pipeline."""


class ConfigurationError(IngestionError):
    """Configuration is incomplete or invalid; raised before a run starts."""


class SourceRetrievalError(IngestionError):
    """The remote archive could not be fetched. Fatal, no member is started."""


class ArchiveDecodeError(IngestionError):
    """The archive stream is malformed or the underlying stream failed."""


class SinkConnectionError(IngestionError):
    """The database sink could not be opened (or closed)."""


class MemberLoadError(IngestionError):
    """
    Loading one archive member into the sink failed.

    Only the task for that member fails; sibling loads keep running.
    """

    def __init__(self, member_name: str, message: str, cause: Optional[BaseException] = None):
        self.member_name = member_name
        self.cause = cause
        super().__init__(f"Failed to load '{member_name}': {message}")
