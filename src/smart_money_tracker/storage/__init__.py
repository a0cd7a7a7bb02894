"""Storage layer - Database schemas, repositories and checkpoints."""

from smart_money_tracker.storage.checkpoints import CheckpointTracker, StagedCheckpoint
from smart_money_tracker.storage.database import (
    DatabaseManager,
    create_async_db_engine,
    create_async_session_factory,
    init_async_db,
)
from smart_money_tracker.storage.models import (
    AppliedEventModel,
    Base,
    CheckpointModel,
    EventProcessingErrorModel,
    MaterializedDocumentModel,
    WalletStateModel,
)
from smart_money_tracker.storage.repos import (
    AppliedEventRepository,
    CheckpointDTO,
    CheckpointRepository,
    EventProcessingErrorDTO,
    EventProcessingErrorRepository,
    WalletStateDTO,
    WalletStateRepository,
)

__all__ = [
    "AppliedEventModel",
    "AppliedEventRepository",
    "Base",
    "CheckpointDTO",
    "CheckpointModel",
    "CheckpointRepository",
    "CheckpointTracker",
    "DatabaseManager",
    "EventProcessingErrorDTO",
    "EventProcessingErrorModel",
    "EventProcessingErrorRepository",
    "MaterializedDocumentModel",
    "StagedCheckpoint",
    "WalletStateDTO",
    "WalletStateModel",
    "WalletStateRepository",
    "create_async_db_engine",
    "create_async_session_factory",
    "init_async_db",
]
