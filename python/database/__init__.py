"""
Database Package for the sdnscore watchlist scoring system

This package provides:
- SQLAlchemy ORM models for snapshots, scores and run bookkeeping
- Session provider with one transaction per store operation
- Repository pattern for data access
- SqlAlchemyStore, the production ScoreStore implementation
"""

from database.models import (
    Base,
    WatchlistSnapshotRow,
    WatchlistEntryRow,
    ScoreRecordRow,
    ScoreRunRow,
    CustomerFailureRow,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    create_test_provider,
)
from database.repositories import (
    SnapshotRepository,
    ScoreRepository,
    RunRepository,
)
from database.sql_store import SqlAlchemyStore

__all__ = [
    # Base
    'Base',
    # Models
    'WatchlistSnapshotRow',
    'WatchlistEntryRow',
    'ScoreRecordRow',
    'ScoreRunRow',
    'CustomerFailureRow',
    # Connection
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'create_test_provider',
    # Repositories
    'SnapshotRepository',
    'ScoreRepository',
    'RunRepository',
    # Store
    'SqlAlchemyStore',
]
