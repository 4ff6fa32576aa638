# ========================
# src/utils/run_history.py
# ========================

"""
Run History Management

Handles persistent storage of ingestion run metadata.
"""

import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Any

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = ('queued', 'processing')


class RunHistoryManager:
    """Manages persistent run metadata storage."""

    def __init__(self, history_file: str = "data/run_history.json"):
        self.history_file = Path(history_file)
        self.history_file.parent.mkdir(parents=True, exist_ok=True)

    def save_runs(self, runs: Dict[str, Dict[str, Any]]) -> None:
        """Save all run metadata to persistent storage."""
        try:
            with open(self.history_file, 'w') as f:
                json.dump(runs, f, indent=2, default=str)
            logger.debug(f"Saved metadata for {len(runs)} runs")
        except OSError as e:
            logger.error(f"Failed to save run history: {e}")

    def load_runs(self) -> Dict[str, Dict[str, Any]]:
        """Load run metadata from persistent storage."""
        if not self.history_file.exists():
            return {}
        try:
            with open(self.history_file, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to load run history: {e}")
            return {}

        runs = {run_id: run for run_id, run in data.items() if self._is_valid_uuid(run_id)}
        logger.info(f"Loaded metadata for {len(runs)} persisted runs")
        return runs

    def mark_interrupted(self, runs: Dict[str, Dict[str, Any]]) -> int:
        """
        Flag runs that were still active when the previous process stopped.

        Their loads were abandoned mid-stream, so whatever members finished
        are committed and the rest are not.

        Returns:
            int: Number of runs marked as interrupted
        """
        interrupted = 0
        for run in runs.values():
            if run.get('status') in ACTIVE_STATUSES:
                run['status'] = 'interrupted'
                run['failed_at'] = datetime.now().isoformat()
                run['error'] = 'Service stopped before the run finished'
                interrupted += 1
        if interrupted:
            logger.warning(f"Marked {interrupted} unfinished runs as interrupted")
        return interrupted

    def _is_valid_uuid(self, uuid_string: str) -> bool:
        """Check if string is a valid UUID."""
        try:
            uuid.UUID(uuid_string)
            return True
        except ValueError:
            return False
