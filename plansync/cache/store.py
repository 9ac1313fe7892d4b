"""Local relational cache for Azure DevOps entities, mappings and audit rows.

Every public method opens its own transaction. Database failures surface as
``StoreError`` so callers can decide whether a failed write is fatal.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from plansync.core.errors import StoreError
from plansync.db.models import (
    AreaPathModel,
    Base,
    MappingModel,
    SyncLogModel,
    TeamModel,
    WorkItemModel,
    WorkItemRelationModel,
    WorkItemTypeModel,
)
from plansync.models import (
    AreaPath,
    Mapping,
    Relation,
    SyncStatus,
    Team,
    WorkItem,
    WorkItemType,
)

logger = logging.getLogger(__name__)

UPSERT_CHUNK_SIZE = 100

# WorkItem attributes that are not table columns
_WORK_ITEM_EXTRA = {"relations", "unrecognized"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def upsert_statement(
    session: AsyncSession,
    model: type[Base],
    rows: list[dict[str, Any]],
    conflict_key: Sequence[str],
    skip_on_update: Iterable[str] = (),
):
    """INSERT .. ON CONFLICT (conflict_key) DO UPDATE for PostgreSQL or SQLite.

    Columns in ``skip_on_update`` are written on insert but left untouched
    when the row already exists.
    """
    dialect = session.bind.dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(model).values(rows)
    elif dialect == "sqlite":
        stmt = sqlite.insert(model).values(rows)
    else:
        raise StoreError(f"Upsert not supported for dialect {dialect!r}")

    skip = set(conflict_key) | set(skip_on_update)
    updates = {col: stmt.excluded[col] for col in rows[0] if col not in skip}
    if not updates:
        return stmt.on_conflict_do_nothing(index_elements=list(conflict_key))
    return stmt.on_conflict_do_update(index_elements=list(conflict_key), set_=updates)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _row_to_relation(row: WorkItemRelationModel) -> Relation:
    return Relation(
        source_id=row.source_id,
        target_id=row.target_id,
        target_url=row.target_url,
        rel_type=row.rel_type,
        attributes=row.attributes or {},
        ps_id=row.ps_id,
    )


def _relation_to_row(relation: Relation, synced_at: datetime) -> dict[str, Any]:
    return {
        "source_id": relation.source_id,
        "target_id": relation.target_id,
        "target_url": relation.target_url,
        "rel_type": relation.rel_type,
        "attributes": relation.attributes,
        "is_parent": relation.is_parent,
        "is_child": relation.is_child,
        "is_related": relation.is_related,
        "is_hyperlink": relation.is_hyperlink,
        "is_cross_system_link": relation.is_cross_system_link,
        "ps_id": relation.ps_id,
        "last_synced_at": synced_at,
    }


def _row_to_work_item(row: WorkItemModel, relations: list[Relation]) -> WorkItem:
    values = {col.key: getattr(row, col.key) for col in WorkItemModel.__table__.columns}
    values["raw_data"] = values.get("raw_data") or {}
    values["last_synced_at"] = _as_utc(values["last_synced_at"])
    return WorkItem(**values, relations=relations)


def _row_to_mapping(row: MappingModel) -> Mapping:
    return Mapping(
        ps_id=row.ps_id,
        wts_id=row.wts_id,
        wts_url=row.wts_url,
        last_known_ps_status=row.last_known_ps_status,
        last_synced_at=_as_utc(row.last_synced_at),
        sync_status=SyncStatus(row.sync_status),
        sync_error=row.sync_error,
    )


class CacheStore:
    """Async repository over the cache tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            raise StoreError(str(exc)) from exc
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    # ------------------------------------------------------------------
    # Generic contract
    # ------------------------------------------------------------------

    async def get(self, model: type[Base], *criteria) -> list[Any]:
        """Return ORM rows of ``model`` matching every criterion."""
        async with self.session() as session:
            result = await session.execute(select(model).where(*criteria))
            return list(result.scalars().all())

    async def upsert_many(
        self,
        model: type[Base],
        rows: list[dict[str, Any]],
        conflict_key: Sequence[str],
        skip_on_update: Iterable[str] = (),
    ) -> int:
        if not rows:
            return 0
        skip = tuple(skip_on_update)
        async with self.session() as session:
            for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
                chunk = rows[start : start + UPSERT_CHUNK_SIZE]
                await session.execute(
                    upsert_statement(session, model, chunk, conflict_key, skip)
                )
        return len(rows)

    async def delete_relations_for_sources(self, source_ids: Iterable[int]) -> None:
        ids = list(source_ids)
        if not ids:
            return
        async with self.session() as session:
            await session.execute(
                delete(WorkItemRelationModel).where(WorkItemRelationModel.source_id.in_(ids))
            )

    async def replace_relations(
        self, source_ids: Iterable[int], relations: list[Relation]
    ) -> None:
        """Delete every relation of ``source_ids`` and insert ``relations``.

        Both steps share one transaction.
        """
        ids = list(source_ids)
        synced_at = utcnow()
        async with self.session() as session:
            if ids:
                await session.execute(
                    delete(WorkItemRelationModel).where(
                        WorkItemRelationModel.source_id.in_(ids)
                    )
                )
            session.add_all(
                WorkItemRelationModel(**_relation_to_row(r, synced_at)) for r in relations
            )

    # ------------------------------------------------------------------
    # Work items
    # ------------------------------------------------------------------

    async def _load_work_items(self, *criteria) -> list[WorkItem]:
        async with self.session() as session:
            result = await session.execute(
                select(WorkItemModel).where(*criteria).order_by(WorkItemModel.id)
            )
            rows = list(result.scalars().all())
            if not rows:
                return []

            rel_result = await session.execute(
                select(WorkItemRelationModel)
                .where(WorkItemRelationModel.source_id.in_([r.id for r in rows]))
                .order_by(WorkItemRelationModel.id)
            )
            by_source: dict[int, list[Relation]] = {}
            for rel in rel_result.scalars().all():
                by_source.setdefault(rel.source_id, []).append(_row_to_relation(rel))

        return [_row_to_work_item(row, by_source.get(row.id, [])) for row in rows]

    async def get_work_items(self, ids: Iterable[int]) -> list[WorkItem]:
        id_list = list(ids)
        if not id_list:
            return []
        return await self._load_work_items(WorkItemModel.id.in_(id_list))

    async def get_work_items_by_type(self, work_item_type: str) -> list[WorkItem]:
        return await self._load_work_items(WorkItemModel.type == work_item_type)

    async def existing_work_item_ids(self, ids: Iterable[int]) -> set[int]:
        id_list = list(ids)
        if not id_list:
            return set()
        async with self.session() as session:
            result = await session.execute(
                select(WorkItemModel.id).where(WorkItemModel.id.in_(id_list))
            )
            return set(result.scalars().all())

    async def upsert_work_items(self, items: list[WorkItem]) -> int:
        """Upsert items without touching ``parent_id`` on existing rows.

        New rows are inserted with a NULL parent; ``set_parent_ids`` links
        them once the parent row is known to exist.
        """
        synced_at = utcnow()
        rows = []
        for item in items:
            row = item.model_dump(exclude=_WORK_ITEM_EXTRA)
            row["parent_id"] = None
            row["last_synced_at"] = synced_at
            rows.append(row)
        return await self.upsert_many(
            WorkItemModel, rows, ["id"], skip_on_update=["parent_id"]
        )

    async def set_parent_ids(self, links: dict[int, int | None]) -> None:
        if not links:
            return
        async with self.session() as session:
            for child_id, parent_id in links.items():
                await session.execute(
                    update(WorkItemModel)
                    .where(WorkItemModel.id == child_id)
                    .values(parent_id=parent_id)
                )

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def upsert_area_paths(self, area_paths: list[AreaPath]) -> int:
        synced_at = utcnow()
        rows = [{**a.model_dump(), "last_synced_at": synced_at} for a in area_paths]
        return await self.upsert_many(AreaPathModel, rows, ["id"])

    async def get_area_paths(self) -> list[AreaPath]:
        rows = await self.get(AreaPathModel)
        return [
            AreaPath(
                id=r.id,
                name=r.name,
                path=r.path,
                structure_type=r.structure_type,
                has_children=r.has_children,
                raw_data=r.raw_data or {},
            )
            for r in sorted(rows, key=lambda r: r.path)
        ]

    async def upsert_teams(self, teams: list[Team]) -> int:
        synced_at = utcnow()
        rows = [{**t.model_dump(), "last_synced_at": synced_at} for t in teams]
        return await self.upsert_many(TeamModel, rows, ["id"])

    async def get_teams(self) -> list[Team]:
        rows = await self.get(TeamModel)
        return [
            Team(
                id=r.id,
                name=r.name,
                description=r.description,
                url=r.url,
                identity_url=r.identity_url,
                project_name=r.project_name,
                project_id=r.project_id,
                raw_data=r.raw_data or {},
            )
            for r in sorted(rows, key=lambda r: r.name)
        ]

    async def upsert_item_types(self, item_types: list[WorkItemType]) -> int:
        synced_at = utcnow()
        rows = [{**t.model_dump(), "last_synced_at": synced_at} for t in item_types]
        return await self.upsert_many(WorkItemTypeModel, rows, ["name"])

    async def get_item_types(self) -> list[WorkItemType]:
        rows = await self.get(WorkItemTypeModel)
        return [
            WorkItemType(
                name=r.name,
                description=r.description,
                reference_name=r.reference_name,
                url=r.url,
                color=r.color,
                icon_url=r.icon_url,
                is_disabled=r.is_disabled,
                raw_data=r.raw_data or {},
            )
            for r in sorted(rows, key=lambda r: r.name)
        ]

    # ------------------------------------------------------------------
    # Mappings
    # ------------------------------------------------------------------

    async def get_mapping(self, ps_id: str) -> Mapping | None:
        rows = await self.get(MappingModel, MappingModel.ps_id == ps_id)
        return _row_to_mapping(rows[0]) if rows else None

    async def upsert_mapping(self, mapping: Mapping) -> None:
        """Last write wins on ``ps_id``."""
        row = mapping.model_dump()
        row["sync_status"] = mapping.sync_status.value
        await self.upsert_many(MappingModel, [row], ["ps_id"])

    async def link_mappings(self, links: dict[str, tuple[int, str]]) -> int:
        """Set ``wts_id``/``wts_url`` per ``ps_id`` without touching the PB status.

        New rows are recorded as a successful link; an existing row keeps its
        sync status.
        """
        synced_at = utcnow()
        rows = [
            {
                "ps_id": ps_id,
                "wts_id": wts_id,
                "wts_url": wts_url,
                "last_synced_at": synced_at,
                "sync_status": SyncStatus.SUCCESS.value,
            }
            for ps_id, (wts_id, wts_url) in sorted(links.items())
        ]
        return await self.upsert_many(
            MappingModel, rows, ["ps_id"], skip_on_update=("sync_status",)
        )

    async def set_mapping_status(
        self,
        ps_id: str,
        status: str | None,
        sync_status: SyncStatus | None = None,
        sync_error: str | None = None,
    ) -> None:
        """Record the last known ProductBoard status, creating the row if needed."""
        row: dict[str, Any] = {
            "ps_id": ps_id,
            "last_known_ps_status": status,
            "sync_status": (sync_status or SyncStatus.PENDING).value,
            "sync_error": sync_error,
        }
        skip = () if sync_status is not None else ("sync_status", "sync_error")
        await self.upsert_many(MappingModel, [row], ["ps_id"], skip_on_update=skip)

    # ------------------------------------------------------------------
    # Webhook audit log
    # ------------------------------------------------------------------

    async def create_sync_log(
        self,
        *,
        status: str,
        event_type: str | None = None,
        ps_item_id: str | None = None,
        ps_item_type: str | None = None,
        details: str | None = None,
        payload: dict | None = None,
    ) -> int:
        async with self.session() as session:
            entry = SyncLogModel(
                event_type=event_type,
                ps_item_id=ps_item_id,
                ps_item_type=ps_item_type,
                status=status,
                details=details,
                payload=payload,
            )
            session.add(entry)
            await session.flush()
            return entry.id

    async def update_sync_log(self, log_id: int, **values: Any) -> None:
        async with self.session() as session:
            await session.execute(
                update(SyncLogModel).where(SyncLogModel.id == log_id).values(**values)
            )

    async def get_sync_log(self, log_id: int) -> SyncLogModel | None:
        rows = await self.get(SyncLogModel, SyncLogModel.id == log_id)
        return rows[0] if rows else None

    async def list_sync_logs(self, ps_item_id: str | None = None) -> list[SyncLogModel]:
        criteria = [SyncLogModel.ps_item_id == ps_item_id] if ps_item_id else []
        rows = await self.get(SyncLogModel, *criteria)
        return sorted(rows, key=lambda r: r.id)
