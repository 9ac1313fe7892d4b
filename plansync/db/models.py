"""SQLAlchemy async database models for PlanSync.

Cached Azure DevOps entities, ProductBoard <-> Azure DevOps mappings,
incremental-sync watermarks and the webhook audit log.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class WorkItemModel(Base):
    """Cached Azure DevOps work item.

    ``parent_id`` carries no storage-level foreign key; the cache layer only
    writes it once the referenced row exists.
    """

    __tablename__ = "ado_work_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    url: Mapped[str | None] = mapped_column(Text)
    rev: Mapped[int | None] = mapped_column(Integer)
    type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(String(100), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text)
    area_path: Mapped[str | None] = mapped_column(Text)
    area_id: Mapped[int | None] = mapped_column(Integer)
    iteration_path: Mapped[str | None] = mapped_column(Text)
    iteration_id: Mapped[int | None] = mapped_column(Integer)
    priority: Mapped[int | None] = mapped_column(Integer)
    value_area: Mapped[str | None] = mapped_column(Text)
    tags: Mapped[str | None] = mapped_column(Text)
    description: Mapped[str | None] = mapped_column(Text)
    history: Mapped[str | None] = mapped_column(Text)
    acceptance_criteria: Mapped[str | None] = mapped_column(Text)

    # Identities
    assigned_to_name: Mapped[str | None] = mapped_column(Text)
    assigned_to_email: Mapped[str | None] = mapped_column(Text)
    created_by_name: Mapped[str | None] = mapped_column(Text)
    created_by_email: Mapped[str | None] = mapped_column(Text)
    changed_by_name: Mapped[str | None] = mapped_column(Text)
    changed_by_email: Mapped[str | None] = mapped_column(Text)

    created_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    changed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    parent_id: Mapped[int | None] = mapped_column(Integer, index=True)

    # Board
    board_column: Mapped[str | None] = mapped_column(Text)
    board_column_done: Mapped[bool | None] = mapped_column(Boolean)
    comment_count: Mapped[int | None] = mapped_column(Integer)
    watermark: Mapped[int | None] = mapped_column(Integer)
    stack_rank: Mapped[float | None] = mapped_column(Float)
    effort: Mapped[float | None] = mapped_column(Float)
    story_points: Mapped[float | None] = mapped_column(Float)
    business_value: Mapped[int | None] = mapped_column(Integer)

    ps_id: Mapped[str | None] = mapped_column(String(100), index=True)
    raw_data: Mapped[dict | None] = mapped_column(JSON)
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class WorkItemRelationModel(Base):
    """Relation edge; replaced wholesale per source item on every fetch."""

    __tablename__ = "ado_work_item_relations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_id: Mapped[int] = mapped_column(Integer, nullable=False)
    target_id: Mapped[int | None] = mapped_column(Integer)
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    rel_type: Mapped[str] = mapped_column(String(200), nullable=False)
    attributes: Mapped[dict | None] = mapped_column(JSON)

    is_parent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_child: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_related: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_hyperlink: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_cross_system_link: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    ps_id: Mapped[str | None] = mapped_column(String(100))

    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_relations_source", "source_id"),
        Index("idx_relations_source_type", "source_id", "rel_type"),
    )


class AreaPathModel(Base):
    __tablename__ = "ado_area_paths"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    structure_type: Mapped[str | None] = mapped_column(String(50))
    has_children: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    raw_data: Mapped[dict | None] = mapped_column(JSON)
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class TeamModel(Base):
    __tablename__ = "ado_teams"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    url: Mapped[str | None] = mapped_column(Text)
    identity_url: Mapped[str | None] = mapped_column(Text)
    project_name: Mapped[str | None] = mapped_column(Text)
    project_id: Mapped[str | None] = mapped_column(String(64))
    raw_data: Mapped[dict | None] = mapped_column(JSON)
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class WorkItemTypeModel(Base):
    __tablename__ = "ado_work_item_types"

    name: Mapped[str] = mapped_column(String(200), primary_key=True)
    description: Mapped[str | None] = mapped_column(Text)
    reference_name: Mapped[str | None] = mapped_column(Text)
    url: Mapped[str | None] = mapped_column(Text)
    color: Mapped[str | None] = mapped_column(String(16))
    icon_url: Mapped[str | None] = mapped_column(Text)
    is_disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    raw_data: Mapped[dict | None] = mapped_column(JSON)
    last_synced_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class MappingModel(Base):
    """ProductBoard feature <-> Azure DevOps work item link.

    One row per ``ps_id``. ``wts_id`` stays NULL while the row only carries
    debounce state or a pending create.
    """

    __tablename__ = "pb_ado_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ps_id: Mapped[str] = mapped_column(String(100), nullable=False)
    wts_id: Mapped[int | None] = mapped_column(Integer, index=True)
    wts_url: Mapped[str | None] = mapped_column(Text)
    last_known_ps_status: Mapped[str | None] = mapped_column(Text)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    sync_status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    sync_error: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("ps_id", name="uq_mapping_ps_id"),
        CheckConstraint(
            "sync_status IN ('pending', 'success', 'error')",
            name="check_mapping_sync_status_valid",
        ),
    )


class SyncHistoryModel(Base):
    """Per-entity-type incremental sync watermark (overwritten on every attempt)."""

    __tablename__ = "ado_sync_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    last_sync_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    items_synced: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("status IN ('success', 'error')", name="check_history_status_valid"),
        CheckConstraint("items_synced >= 0", name="check_items_synced_non_negative"),
    )


class SyncLogModel(Base):
    """Append-only audit row per inbound webhook event, updated in place."""

    __tablename__ = "pb_ado_sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str | None] = mapped_column(Text)
    ps_item_id: Mapped[str | None] = mapped_column(String(100), index=True)
    ps_item_type: Mapped[str | None] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    details: Mapped[str | None] = mapped_column(Text)
    payload: Mapped[dict | None] = mapped_column(JSON)
    wts_item_id: Mapped[int | None] = mapped_column(Integer)
    wts_payload: Mapped[list | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
