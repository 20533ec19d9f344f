"""Storage layer - Database schemas and repositories."""

from burn_watcher.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from burn_watcher.storage.models import Base, BurnEventModel, ScanCheckpointModel
from burn_watcher.storage.repos import BurnEventDTO, BurnEventRepository, CheckpointRepository

__all__ = [
    "Base",
    "BurnEventDTO",
    "BurnEventModel",
    "BurnEventRepository",
    "CheckpointRepository",
    "DatabaseManager",
    "ScanCheckpointModel",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
