# ========================
# src/utils/config.py
# ========================

"""
Configuration Management

Centralized configuration for the ingestion pipeline with environment support.
Values come from environment variables; a local .env file is read first when present.
"""

import os
from pathlib import Path
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv
from psycopg.conninfo import make_conninfo

load_dotenv()


class Config:
    """
    Configuration class for the ingestion pipeline.
    Supports environment variables and default values.
    """

    # Settings that must be present before a run can start
    REQUIRED_SETTINGS = [
        'AWS_ACCESS_KEY_ID',
        'AWS_SECRET_ACCESS_KEY',
        'AWS_REGION',
        'AWS_S3_BUCKET_NAME',
        'PG_HOST',
        'PG_PORT',
        'PG_DATABASE',
        'PG_USERNAME',
        'PG_PASSWORD',
    ]

    def __init__(self, config_dict: Optional[Dict[str, Any]] = None):
        """
        Initialize configuration.

        Args:
            config_dict (dict): Optional configuration overrides
        """
        # S3 Connection
        self.AWS_ACCESS_KEY_ID = os.getenv('AWS_ACCESS_KEY_ID', '')
        self.AWS_SECRET_ACCESS_KEY = os.getenv('AWS_SECRET_ACCESS_KEY', '')
        self.AWS_REGION = os.getenv('AWS_REGION', '')
        self.AWS_S3_BUCKET_NAME = os.getenv('AWS_S3_BUCKET_NAME', '')
        self.ARCHIVE_KEY = os.getenv('ARCHIVE_KEY', 'medium.zip')

        # PostgreSQL Connection
        self.PG_HOST = os.getenv('PG_HOST', '')
        self.PG_PORT = int(os.getenv('PG_PORT', '5432'))
        self.PG_DATABASE = os.getenv('PG_DATABASE', '')
        self.PG_USERNAME = os.getenv('PG_USERNAME', '')
        self.PG_PASSWORD = os.getenv('PG_PASSWORD', '')
        self.PG_POOL_MAX_SIZE = int(os.getenv('PG_POOL_MAX_SIZE', '10'))
        self.PG_CONNECT_TIMEOUT = float(os.getenv('PG_CONNECT_TIMEOUT', '30'))

        # Bulk-load Target
        self.TARGET_TABLE = os.getenv('TARGET_TABLE', 'items')
        self.TARGET_COLUMNS = os.getenv('TARGET_COLUMNS', 'id,column1,column2,column3')

        # Streaming Settings
        self.READ_CHUNK_SIZE = int(os.getenv('READ_CHUNK_SIZE', str(64 * 1024)))
        self.MAX_CONCURRENT_MEMBERS = int(os.getenv('MAX_CONCURRENT_MEMBERS', '0'))  # 0 = unbounded

        # Logging Configuration
        self.LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

        # Service Settings
        self.RUN_HISTORY_FILE = os.getenv('RUN_HISTORY_FILE', 'data/run_history.json')
        self.API_PORT = int(os.getenv('API_PORT', '8000'))
        self.TEST_FILES_DIR = os.getenv('TEST_FILES_DIR', 'data/test_files')

        # Override with provided config
        if config_dict:
            self._update_from_dict(config_dict)

    def _update_from_dict(self, config_dict: Dict[str, Any]) -> None:
        """Update configuration from dictionary."""
        for key, value in config_dict.items():
            if hasattr(self, key.upper()):
                setattr(self, key.upper(), value)

    @property
    def target_columns(self) -> List[str]:
        """Target columns as a list, in CSV order."""
        return [column.strip() for column in str(self.TARGET_COLUMNS).split(',') if column.strip()]

    @property
    def max_concurrent_members(self) -> Optional[int]:
        """Concurrency ceiling for member loads, None when unbounded."""
        limit = int(self.MAX_CONCURRENT_MEMBERS)
        return limit if limit > 0 else None

    def postgres_conninfo(self) -> str:
        """Build a libpq connection string from the PostgreSQL settings."""
        return make_conninfo(
            host=self.PG_HOST,
            port=str(self.PG_PORT),
            dbname=self.PG_DATABASE,
            user=self.PG_USERNAME,
            password=self.PG_PASSWORD,
            connect_timeout=str(int(self.PG_CONNECT_TIMEOUT)),
        )

    def get_data_paths(self) -> Dict[str, Path]:
        """Get all configured data paths as Path objects."""
        return {
            'run_history_file': Path(self.RUN_HISTORY_FILE),
            'test_files_dir': Path(self.TEST_FILES_DIR),
            'uploads_dir': Path('data/uploaded'),
            'logs_dir': Path('logs')
        }

    def ensure_directories(self) -> None:
        """Create necessary directories if they don't exist."""
        paths = self.get_data_paths()
        for path_name, path in paths.items():
            if path_name.endswith('_dir'):
                path.mkdir(parents=True, exist_ok=True)
            else:
                path.parent.mkdir(parents=True, exist_ok=True)

    def missing_settings(self) -> List[str]:
        """Names of required settings that are empty."""
        return [name for name in self.REQUIRED_SETTINGS if not str(getattr(self, name)).strip()]

    def validate_config(self) -> Dict[str, bool]:
        """
        Validate configuration values.

        Returns:
            dict: Validation results for each setting
        """
        validations = {}

        # Validate numeric ranges
        validations['pg_port'] = 1 <= int(self.PG_PORT) <= 65535
        validations['pg_pool_max_size'] = int(self.PG_POOL_MAX_SIZE) > 0
        validations['pg_connect_timeout'] = float(self.PG_CONNECT_TIMEOUT) > 0
        validations['read_chunk_size'] = int(self.READ_CHUNK_SIZE) > 0
        validations['max_concurrent_members'] = int(self.MAX_CONCURRENT_MEMBERS) >= 0
        validations['api_port'] = 1000 <= int(self.API_PORT) <= 65535

        # Validate bulk-load target
        validations['target_table'] = bool(str(self.TARGET_TABLE).strip())
        validations['target_columns'] = len(self.target_columns) > 0
        validations['archive_key'] = bool(str(self.ARCHIVE_KEY).strip())

        # Validate log level
        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        validations['log_level'] = self.LOG_LEVEL.upper() in valid_log_levels

        return validations

    def require_valid(self) -> None:
        """
        Check the configuration before a run starts.

        Raises:
            ConfigurationError: If required settings are missing or a value is out of range
        """
        from ..pipeline.errors import ConfigurationError

        problems = []

        missing = self.missing_settings()
        if missing:
            problems.append(f"missing settings: {', '.join(missing)}")

        invalid = [name for name, ok in self.validate_config().items() if not ok]
        if invalid:
            problems.append(f"invalid settings: {', '.join(invalid)}")

        if problems:
            raise ConfigurationError("Configuration is not valid - " + "; ".join(problems))

    def to_dict(self, redact_secrets: bool = True) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        data = {
            attr: getattr(self, attr)
            for attr in dir(self)
            if attr.isupper() and attr != 'REQUIRED_SETTINGS'
        }
        if redact_secrets:
            for secret in ('AWS_SECRET_ACCESS_KEY', 'PG_PASSWORD'):
                if data.get(secret):
                    data[secret] = '***'
        return data

    def save_to_file(self, file_path: str) -> None:
        """Save configuration to JSON file (secrets redacted)."""
        import json
        with open(file_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2, default=str)

    @classmethod
    def load_from_file(cls, file_path: str) -> 'Config':
        """Load configuration from JSON file."""
        import json
        with open(file_path, 'r') as f:
            config_dict = json.load(f)
        # Redacted placeholders never override real values
        config_dict = {key: value for key, value in config_dict.items() if value != '***'}
        return cls(config_dict)

    def __str__(self) -> str:
        """String representation of configuration."""
        lines = ["Configuration Settings:"]
        config_dict = self.to_dict()
        for key, value in sorted(config_dict.items()):
            lines.append(f"  {key}: {value}")
        return "\n".join(lines)
