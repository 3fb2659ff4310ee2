"""
Configuration for the reference document store.

All configuration is done via environment variables, with defaults
suitable for local development and tests.

Invariants:
    - All settings have sensible defaults for local development
    - Invalid values fail at load time, not on first query

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import json_log_formatter

logger = logging.getLogger(__name__)

_LOG_FORMATS = ("json", "text")


@dataclass(frozen=True)
class StoreConfig:
    """SQLite document store configuration.

    Attributes:
        data_dir: Directory holding the database file
        db_name: Database file name
        wal_mode: SQLite WAL mode enabled
        busy_timeout_ms: SQLite busy timeout in milliseconds
        cache_size_pages: SQLite cache size in pages (negative = KB)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    data_dir: str = "./data"
    db_name: str = "documents.db"
    wal_mode: bool = True
    busy_timeout_ms: int = 5000
    cache_size_pages: int = -64000  # 64MB
    log_level: str = "INFO"
    log_format: str = "text"

    def __post_init__(self) -> None:
        if self.busy_timeout_ms < 0:
            raise ValueError(f"busy_timeout_ms must be non-negative, got {self.busy_timeout_ms}")
        if self.log_format not in _LOG_FORMATS:
            raise ValueError(f"log_format must be one of {_LOG_FORMATS}, got '{self.log_format}'")
        if "/" in self.db_name or "\\" in self.db_name:
            raise ValueError(f"db_name must be a bare file name, got '{self.db_name}'")

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.db_name

    @classmethod
    def from_env(cls) -> StoreConfig:
        """Load configuration from environment variables."""
        return cls(
            data_dir=os.getenv("DOCSTORE_DATA_DIR", "./data"),
            db_name=os.getenv("DOCSTORE_DB_NAME", "documents.db"),
            wal_mode=os.getenv("SQLITE_WAL_MODE", "true").lower() == "true",
            busy_timeout_ms=int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            cache_size_pages=int(os.getenv("SQLITE_CACHE_SIZE", "-64000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "text"),
        )


def setup_logging(config: StoreConfig) -> None:
    """Configure root logging for a host process.

    The libraries never call this themselves.

    Args:
        config: Store configuration
    """
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if config.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]
