"""Database layer for PlanSync with async SQLAlchemy."""

from plansync.db.connection import create_engine_from_config, create_session_factory, init_db
from plansync.db.models import (
    AreaPathModel,
    Base,
    MappingModel,
    SyncHistoryModel,
    SyncLogModel,
    TeamModel,
    WorkItemModel,
    WorkItemRelationModel,
    WorkItemTypeModel,
)

__all__ = [
    "AreaPathModel",
    "Base",
    "MappingModel",
    "SyncHistoryModel",
    "SyncLogModel",
    "TeamModel",
    "WorkItemModel",
    "WorkItemRelationModel",
    "WorkItemTypeModel",
    "create_engine_from_config",
    "create_session_factory",
    "init_db",
]
