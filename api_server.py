# ========================
# api_server.py
# ========================

"""
FastAPI Server for the Archive Ingestion Pipeline

Provides REST API endpoints for triggering ingestion runs, uploading archives,
checking run status, and listing the AWS regions and S3 buckets a run can use.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Any, Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import FastAPI, File, UploadFile, HTTPException, BackgroundTasks, Query
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from src.pipeline import IngestionError, IngestionPipeline, LocalFileSource, PostgresCopySink, build_pipeline
from src.utils.aws import create_ec2_client, create_s3_client, list_buckets, list_regions
from src.utils.config import Config
from src.utils.logging_setup import setup_logging
from src.utils.performance_monitor import SystemResourceMonitor
from src.utils.run_history import RunHistoryManager
from src.utils.uploads import UploadTooLargeError, save_upload

# Configuration
config = Config()

# Setup logging
setup_logging(log_level=config.LOG_LEVEL, log_file="api_server.log")
logger = logging.getLogger(__name__)

# Initialize run history manager
run_history_manager = RunHistoryManager(config.RUN_HISTORY_FILE)

# Initialize FastAPI app
app = FastAPI(
    title="Archive Ingestion API",
    description="Stream ZIP archives of CSV files from S3 into PostgreSQL",
    version="1.0.0"
)

# Add CORS middleware to allow frontend access
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify exact origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def initialize_run_status() -> Dict[str, Dict[str, Any]]:
    """Load persisted runs and flag the ones a previous process left unfinished."""
    runs = run_history_manager.load_runs()
    if run_history_manager.mark_interrupted(runs):
        run_history_manager.save_runs(runs)
    return runs


# Global state for tracking runs
run_status: Dict[str, Dict[str, Any]] = initialize_run_status()


def persist_run_status():
    """Save current run status to persistent storage."""
    run_history_manager.save_runs(run_status)


# Constants
RUN_NOT_FOUND_MSG = "Run not found"
MAX_UPLOAD_BYTES = 512 * 1024 * 1024
UPLOAD_DIR = config.get_data_paths()['uploads_dir']


class IngestionRunManager:
    """Manages background ingestion runs."""

    @staticmethod
    async def execute(run_id: str, pipeline: IngestionPipeline) -> None:
        """Run a pipeline as a background task and record the outcome."""
        logger.info(f"Starting ingestion run {run_id}")
        run_status[run_id]['status'] = 'processing'
        run_status[run_id]['started_at'] = datetime.now().isoformat()
        persist_run_status()

        try:
            results = await pipeline.run()
        except IngestionError as e:
            logger.error(f"Ingestion run {run_id} failed: {e}")
            run_status[run_id]['status'] = 'failed'
            run_status[run_id]['error'] = str(e)
            run_status[run_id]['failed_at'] = datetime.now().isoformat()
            run_status[run_id]['results'] = pipeline.build_results(pipeline.last_outcome)
        except Exception as e:
            logger.error(f"Ingestion run {run_id} failed unexpectedly: {e}", exc_info=True)
            run_status[run_id]['status'] = 'failed'
            run_status[run_id]['error'] = str(e)
            run_status[run_id]['failed_at'] = datetime.now().isoformat()
        else:
            run_status[run_id]['status'] = 'completed'
            run_status[run_id]['completed_at'] = datetime.now().isoformat()
            run_status[run_id]['results'] = results
            logger.info(f"Ingestion run {run_id} completed successfully")
        finally:
            persist_run_status()


def _new_run(run_type: str, source: str, run_id: Optional[str] = None, **extra) -> str:
    run_id = run_id or str(uuid.uuid4())
    run_status[run_id] = {
        'run_id': run_id,
        'type': run_type,
        'source': source,
        'status': 'queued',
        'created_at': datetime.now().isoformat(),
        **extra
    }
    persist_run_status()
    return run_id


@app.get("/")
async def root():
    """Root endpoint with API information."""
    return {
        "message": "Archive Ingestion API",
        "version": "1.0.0",
        "endpoints": {
            "run": "/run - Ingest an archive from S3",
            "upload": "/upload - Upload a ZIP archive and ingest it",
            "status": "/status/{run_id} - Check run status",
            "runs": "/runs - List all runs",
            "regions": "/aws/regions - List AWS regions",
            "buckets": "/s3/buckets - List S3 buckets",
            "health": "/health - Health check",
            "api_docs": "/docs - API documentation"
        },
        "api_docs_url": "/docs"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "active_runs": len([r for r in run_status.values() if r['status'] in ('queued', 'processing')]),
        "system": SystemResourceMonitor.get_system_stats()
    }


@app.post("/run")
async def start_run(
    background_tasks: BackgroundTasks,
    key: Optional[str] = Query(None, description="S3 object key of the archive (defaults to ARCHIVE_KEY)"),
    max_concurrent_members: Optional[int] = Query(None, description="Ceiling for concurrent member loads, 0 = unbounded", ge=0, le=100)
):
    """
    Ingest an archive from the configured S3 bucket.

    Returns:
        dict: Run ID and status information
    """
    run_config = Config(config.to_dict(redact_secrets=False))
    if max_concurrent_members is not None:
        run_config.MAX_CONCURRENT_MEMBERS = max_concurrent_members

    try:
        pipeline = build_pipeline(run_config, key=key)
    except IngestionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    run_id = _new_run('s3', pipeline.source.description, max_concurrent_members=run_config.MAX_CONCURRENT_MEMBERS)
    background_tasks.add_task(IngestionRunManager.execute, run_id, pipeline)

    logger.info(f"Queued ingestion run {run_id} for {pipeline.source.description}")
    return {
        "run_id": run_id,
        "source": pipeline.source.description,
        "status": "queued",
        "message": "Ingestion run started.",
        "estimated_processing_info": "Use /status/{run_id} to check progress"
    }


@app.post("/upload")
async def upload_archive(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...)
):
    """
    Upload a ZIP archive and ingest it.

    Returns:
        dict: Run ID and status information
    """
    if not file.filename or not file.filename.lower().endswith('.zip'):
        raise HTTPException(status_code=400, detail="Only ZIP archives are supported")

    missing = [name for name in config.missing_settings() if name.startswith('PG_')]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing settings: {', '.join(missing)}")

    run_id = str(uuid.uuid4())
    file_path = UPLOAD_DIR / f"{run_id}_{Path(file.filename).name}"
    try:
        file_size = await save_upload(file, file_path, MAX_UPLOAD_BYTES)
    except UploadTooLargeError:
        raise HTTPException(status_code=413, detail="Archive too large for upload; put it in S3 and use /run")

    sink = PostgresCopySink.from_config(config)
    pipeline = IngestionPipeline(LocalFileSource(file_path), sink, config=config)

    _new_run('upload', file.filename, run_id=run_id, input_file=str(file_path), file_size=file_size)
    background_tasks.add_task(IngestionRunManager.execute, run_id, pipeline)

    logger.info(f"Queued ingestion run {run_id} for upload {file.filename}")
    return {
        "run_id": run_id,
        "filename": file.filename,
        "status": "queued",
        "message": "Archive uploaded successfully. Ingestion started.",
        "estimated_processing_info": "Use /status/{run_id} to check progress"
    }


@app.get("/status/{run_id}")
async def get_run_status(run_id: str):
    """
    Get the status of an ingestion run.

    Args:
        run_id: Unique run identifier

    Returns:
        dict: Run status and results
    """
    if run_id not in run_status:
        raise HTTPException(status_code=404, detail=RUN_NOT_FOUND_MSG)

    run = run_status[run_id].copy()

    if 'results' in run:
        results = run['results']
        run['summary'] = {
            'members_discovered': results.get('members_discovered', 0),
            'rows_loaded': results.get('rows_loaded', 0),
            'failed_members': results.get('failed_members', []),
        }

    return run


@app.get("/runs")
async def list_runs(
    status: Optional[str] = Query(None, description="Filter by status: queued, processing, completed, failed, interrupted"),
    limit: int = Query(50, description="Maximum number of runs to return", ge=1, le=100)
):
    """
    List ingestion runs with optional filtering.

    Returns:
        dict: List of runs
    """
    runs = list(run_status.values())

    if status:
        runs = [run for run in runs if run['status'] == status]

    # Newest first
    runs.sort(key=lambda x: x['created_at'], reverse=True)
    runs = runs[:limit]

    return {
        "runs": runs,
        "total_count": len(run_status),
        "filtered_count": len(runs)
    }


@app.delete("/runs/{run_id}")
async def delete_run(run_id: str):
    """
    Delete a finished run from the history. Loaded rows are not touched.

    Returns:
        dict: Deletion status
    """
    if run_id not in run_status:
        raise HTTPException(status_code=404, detail=RUN_NOT_FOUND_MSG)

    if run_status[run_id]['status'] in ('queued', 'processing'):
        raise HTTPException(status_code=409, detail="Run is still active")

    del run_status[run_id]
    persist_run_status()

    logger.info(f"Deleted run {run_id} from history")
    return {"message": f"Run {run_id} deleted successfully"}


@app.get("/aws/regions")
async def get_regions():
    """List the AWS regions available to the configured credentials."""
    try:
        ec2_client = create_ec2_client(config)
        regions = await asyncio.to_thread(list_regions, ec2_client)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Could not list AWS regions: {e}")
        raise HTTPException(status_code=502, detail=f"Could not list AWS regions: {e}")
    return {"result": regions}


@app.get("/s3/buckets")
async def get_buckets(region: Optional[str] = Query(None, description="AWS region, defaults to AWS_REGION")):
    """List the S3 buckets visible to the configured credentials."""
    try:
        s3_client = create_s3_client(config, region)
        buckets = await asyncio.to_thread(list_buckets, s3_client)
    except (BotoCoreError, ClientError) as e:
        logger.error(f"Could not list S3 buckets: {e}")
        raise HTTPException(status_code=502, detail=f"Could not list S3 buckets: {e}")
    return {"result": buckets}


def start_server(host: str = "0.0.0.0", port: int = 8000, reload: bool = False):
    """Start the FastAPI server."""
    logger.info(f"Starting Archive Ingestion API server on {host}:{port}")
    uvicorn.run(
        "api_server:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info"
    )


if __name__ == "__main__":
    start_server(port=config.API_PORT)
