# ========================
# src/pipeline/orchestrator.py
# ========================

"""
Ingestion Orchestrator Module

Coordinates one ingestion run: opens the sink, walks the archive member by
member, loads every member concurrently through the sink, waits for all
loads to settle and reports a single aggregate outcome. The sink is
released exactly once on every exit path.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .archive import ArchiveMember, ZipStreamReader, DEFAULT_CHUNK_SIZE
from .errors import ArchiveDecodeError, IngestionError, MemberLoadError, SinkConnectionError, SourceRetrievalError
from .sink import PostgresCopySink
from .source import ArchiveSource, S3ArchiveSource
from ..utils.config import Config
from ..utils.performance_monitor import PerformanceMonitor

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    DRAINING = 'draining'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    CLOSED = 'closed'


class TaskStatus(str, Enum):
    PENDING = 'pending'
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'


@dataclass
class IngestionTask:
    """Bookkeeping for the load of one archive member."""
    member_name: str
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[BaseException] = None
    bytes_loaded: int = 0
    rows_loaded: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def settled(self) -> bool:
        return self.status != TaskStatus.PENDING

    def to_dict(self) -> Dict[str, Any]:
        return {
            'member': self.member_name,
            'status': self.status.value,
            'error': str(self.error) if self.error else None,
            'bytes_loaded': self.bytes_loaded,
            'rows_loaded': self.rows_loaded,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class AggregateOutcome:
    """
    Pipeline-wide result. Succeeded only if every task succeeded and no
    source, decode or sink error occurred; otherwise holds the first error.
    """
    source: str
    error: Optional[BaseException] = None
    tasks: List[IngestionTask] = field(default_factory=list)
    members_discovered: int = 0
    archive_bytes_read: int = 0
    performance: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.error is None and all(task.status == TaskStatus.SUCCEEDED for task in self.tasks)

    @property
    def rows_loaded(self) -> int:
        return sum(max(task.rows_loaded, 0) for task in self.tasks)

    @property
    def bytes_loaded(self) -> int:
        return sum(task.bytes_loaded for task in self.tasks)

    @property
    def failed_members(self) -> List[str]:
        return [task.member_name for task in self.tasks if task.status == TaskStatus.FAILED]

    def record_failure(self, error: BaseException) -> None:
        """Keep the first error; later ones are only logged by the caller."""
        if self.error is None:
            self.error = error

    def fold(self, task: IngestionTask) -> None:
        self.tasks.append(task)
        if task.status == TaskStatus.FAILED and task.error is not None:
            self.record_failure(task.error)


class TaskRegistry:
    """
    Owns the in-flight member loads of one run.

    Every spawned load is tracked until it settles, at which point it leaves
    the pending set and is handed to the on_settled callback. An optional
    ceiling limits how many loads run at the same time; without it every
    discovered member loads immediately.
    """

    def __init__(self, max_concurrency: Optional[int] = None, on_settled=None):
        if max_concurrency is not None and max_concurrency <= 0:
            max_concurrency = None
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None
        self._on_settled = on_settled
        self._pending: Dict[asyncio.Task, IngestionTask] = {}
        self.settled: List[IngestionTask] = []
        self.in_flight = 0
        self.peak_in_flight = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def spawn(self, task: IngestionTask, load) -> asyncio.Task:
        """
        Start a load coroutine for a task.

        Args:
            task (IngestionTask): Bookkeeping record, updated in place
            load: Coroutine function taking the task; raising marks it failed
        """
        runner = asyncio.create_task(self._run(task, load), name=f"load:{task.member_name}")
        self._pending[runner] = task
        runner.add_done_callback(self._settle)
        return runner

    async def _run(self, task: IngestionTask, load) -> None:
        if self._semaphore is not None:
            async with self._semaphore:
                await self._run_unbounded(task, load)
        else:
            await self._run_unbounded(task, load)

    async def _run_unbounded(self, task: IngestionTask, load) -> None:
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        task.started_at = datetime.now()
        try:
            await load(task)
        finally:
            self.in_flight -= 1
            task.finished_at = datetime.now()

    def _settle(self, runner: asyncio.Task) -> None:
        task = self._pending.pop(runner)
        if runner.cancelled():
            task.status = TaskStatus.FAILED
            task.error = asyncio.CancelledError(f"Load of '{task.member_name}' was cancelled")
        elif runner.exception() is not None:
            task.status = TaskStatus.FAILED
            task.error = runner.exception()
        else:
            task.status = TaskStatus.SUCCEEDED
        self.settled.append(task)
        if self._on_settled is not None:
            self._on_settled(task)

    async def drain(self) -> None:
        """Wait until every spawned load has settled."""
        while self._pending:
            await asyncio.wait(list(self._pending))


class IngestionPipeline:
    """
    Streams every member of an archive into the sink.

    A member load that fails does not cancel its siblings, and every member
    the archive yields is still loaded. Rows from the members that succeeded
    stay committed: a failed run is not rolled back.
    """

    def __init__(self,
                 source: ArchiveSource,
                 sink,
                 config: Optional[Config] = None,
                 max_concurrent_members: Optional[int] = None,
                 chunk_size: Optional[int] = None):
        """
        Initialize the ingestion pipeline.

        Args:
            source (ArchiveSource): Where the archive comes from
            sink: Object with async open(), load(name, chunks) and close()
            config (Config): Configuration object
            max_concurrent_members (int): Ceiling for concurrent loads, None for unbounded
            chunk_size (int): Read and decompression chunk size in bytes
        """
        self.source = source
        self.sink = sink
        self.config = config or Config()
        self.max_concurrent_members = (
            max_concurrent_members if max_concurrent_members is not None
            else self.config.max_concurrent_members
        )
        self.chunk_size = chunk_size or int(self.config.READ_CHUNK_SIZE) or DEFAULT_CHUNK_SIZE
        self.state = RunState.IDLE
        self.registry: Optional[TaskRegistry] = None
        self.last_outcome: Optional[AggregateOutcome] = None
        self.monitor = PerformanceMonitor(f"Ingestion of {source.description}")

        logger.info("IngestionPipeline initialized:")
        logger.info(f"  Source: {source.description}")
        logger.info(f"  Chunk size: {self.chunk_size:,} bytes")
        logger.info(f"  Max concurrent members: {self.max_concurrent_members or 'unbounded'}")

    async def execute(self) -> AggregateOutcome:
        """
        Run the pipeline and return its aggregate outcome.

        Pipeline errors are captured on the outcome rather than raised; the
        sink is closed before this returns, whatever happened.

        Returns:
            AggregateOutcome: Final result of the run
        """
        if self.state != RunState.IDLE:
            raise RuntimeError(f"Pipeline already ran (state: {self.state.value})")

        outcome = AggregateOutcome(source=self.source.description)
        self.last_outcome = outcome
        self.registry = TaskRegistry(self.max_concurrent_members, on_settled=self._on_task_settled)
        self.state = RunState.RUNNING
        self.monitor.start_monitoring()
        self.monitor.add_checkpoint("Starting zip file processing")

        try:
            await self.sink.open()
            await self._ingest_archive(outcome)
        except (SourceRetrievalError, SinkConnectionError) as e:
            outcome.record_failure(e)
        finally:
            self.state = RunState.DRAINING
            await self.registry.drain()
            for task in self.registry.settled:
                outcome.fold(task)
            self.state = RunState.SUCCEEDED if outcome.succeeded else RunState.FAILED
            await self._release()

        self.monitor.add_checkpoint("Finished zip file processing")
        outcome.performance = self.monitor.stop_monitoring()
        return outcome

    async def _ingest_archive(self, outcome: AggregateOutcome) -> None:
        stream = await self.source.open()
        reader = ZipStreamReader(stream, self.chunk_size)
        try:
            async for member in reader:
                self._start_member(member)
        except ArchiveDecodeError as e:
            logger.error(f"Archive decoding failed: {e}")
            outcome.record_failure(e)
        finally:
            await reader.aclose()
            # Loads still read from the stream, so it stays open until they settle
            await self.registry.drain()
            outcome.members_discovered = reader.members_discovered
            outcome.archive_bytes_read = reader.bytes_read
            await stream.close()

    def _start_member(self, member: ArchiveMember) -> None:
        logger.info(f"Processing file: {member.name}")
        self.monitor.add_checkpoint(f"Processing file {member.name}")
        task = IngestionTask(member_name=member.name)

        async def load(task: IngestionTask) -> None:
            await self._load_member(member, task)

        self.registry.spawn(task, load)

    async def _load_member(self, member: ArchiveMember, task: IngestionTask) -> None:
        try:
            result = await self.sink.load(member.name, member)
        except MemberLoadError:
            raise
        except Exception as e:
            raise MemberLoadError(member.name, str(e), e) from e
        finally:
            # Let the reader move on to the next member
            await member.discard()
            task.bytes_loaded = member.bytes_read

        task.rows_loaded = result.rows_loaded
        task.bytes_loaded = result.bytes_written

    def _on_task_settled(self, task: IngestionTask) -> None:
        if task.status == TaskStatus.SUCCEEDED:
            self.monitor.update_progress(task.rows_loaded, task.bytes_loaded)
            logger.debug(f"Member '{task.member_name}' settled successfully")
        else:
            logger.error(f"Member '{task.member_name}' failed: {task.error}")

    async def _release(self) -> None:
        try:
            await self.sink.close()
        except Exception as e:
            logger.error(f"Error closing the sink connection: {e}")
        self.state = RunState.CLOSED

    async def run(self) -> dict:
        """
        Execute the complete pipeline from start to finish.

        The outcome is computed first, the sink is released, and only then is
        a failure surfaced.

        Returns:
            dict: Summary of the run

        Raises:
            IngestionError: The first error of a failed run
        """
        logger.info(f"Starting ingestion of '{self.source.description}'...")
        outcome = await self.execute()
        results = self.build_results(outcome)
        self._log_final_summary(results)

        if not outcome.succeeded:
            error = outcome.error
            if error is None:
                error = IngestionError(f"Members failed: {', '.join(outcome.failed_members)}")
            raise error

        logger.info("Ingestion finished successfully.")
        return results

    def build_results(self, outcome: AggregateOutcome) -> dict:
        return {
            'pipeline_status': 'completed' if outcome.succeeded else 'failed',
            'source': outcome.source,
            'error': str(outcome.error) if outcome.error else None,
            'members_discovered': outcome.members_discovered,
            'members': [task.to_dict() for task in outcome.tasks],
            'failed_members': outcome.failed_members,
            'rows_loaded': outcome.rows_loaded,
            'bytes_loaded': outcome.bytes_loaded,
            'archive_bytes_read': outcome.archive_bytes_read,
            'peak_concurrent_members': self.registry.peak_in_flight if self.registry else 0,
            'performance': outcome.performance,
        }

    def _log_final_summary(self, results: dict) -> None:
        """Log final run summary."""
        logger.info("=" * 60)
        logger.info("INGESTION RUN SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Source: {results['source']}")
        logger.info(f"Status: {results['pipeline_status']}")
        logger.info(f"Members discovered: {results['members_discovered']}")
        logger.info(f"Rows loaded: {results['rows_loaded']:,}")
        logger.info(f"Bytes loaded: {results['bytes_loaded']:,}")
        if results['failed_members']:
            logger.info(f"Failed members: {', '.join(results['failed_members'])}")
        if results['error']:
            logger.info(f"First error: {results['error']}")
        logger.info("=" * 60)


def build_pipeline(config: Config, s3_client=None, key: Optional[str] = None) -> IngestionPipeline:
    """
    Wire an S3 source and a PostgreSQL sink from configuration.

    Args:
        config (Config): Validated configuration
        s3_client: Optional boto3 S3 client, created from config when omitted
        key (str): Archive key, defaults to config.ARCHIVE_KEY

    Returns:
        IngestionPipeline: Ready to run
    """
    config.require_valid()

    if s3_client is None:
        from ..utils.aws import create_s3_client
        s3_client = create_s3_client(config)

    source = S3ArchiveSource(s3_client, config.AWS_S3_BUCKET_NAME, key or config.ARCHIVE_KEY)
    sink = PostgresCopySink.from_config(config)
    return IngestionPipeline(source, sink, config=config)
