"""PlanSync Pydantic models for the canonical item representation.

Raw partner payloads are converted into these models by ``plansync.mapping``
before any business logic touches them. Keys an extractor does not know are
kept in ``unrecognized`` rather than dropped.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Generic, TypeVar

from pydantic import BaseModel, Field

T = TypeVar("T")

PARENT_LINK = "System.LinkTypes.Hierarchy-Reverse"
CHILD_LINK = "System.LinkTypes.Hierarchy-Forward"
RELATED_LINK = "System.LinkTypes.Related"
HYPERLINK = "Hyperlink"


class FetchSource(str, Enum):
    """Where a FetchResult value came from."""

    REMOTE = "remote"
    CACHE = "cache"
    NONE = "none"


@dataclass
class FetchResult(Generic[T]):
    """Value returned by the cache layer together with the path that produced it.

    ``error`` is set when the value is a degraded cache fallback after a
    failed remote call.
    """

    value: T
    source: FetchSource
    error: Exception | None = None

    @property
    def degraded(self) -> bool:
        return self.source == FetchSource.CACHE and self.error is not None


class CommitmentStatus(str, Enum):
    """Local commitment status of a story."""

    NOT_COMMITTED = "not_committed"
    EXPLORING = "exploring"
    PLANNING = "planning"
    COMMITTED = "committed"


class SyncStatus(str, Enum):
    """Mapping row sync state."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class SyncLogStatus(str, Enum):
    """Progression of a webhook event through the sync controller."""

    RECEIVED = "received"
    IGNORED = "ignored"
    FETCHED = "fetched"
    PROCESSING_REQUIRED = "processing_required"
    SKIPPED_STATUS_CHECK = "skipped_status_check"
    SKIPPED_NO_STATUS = "skipped_no_status"
    DRY_RUN = "dry_run"
    ADO_CREATED = "ado_created"
    ADO_UPDATED = "ado_updated"
    ADO_ERROR = "ado_error"
    FETCH_ERROR = "fetch_error"
    MAPPING_FETCH_ERROR = "mapping_fetch_error"
    MAPPING_UPDATE_ERROR = "mapping_update_error"
    CONFIG_ERROR = "config_error"
    ADO_CONFIG_ERROR = "ado_config_error"
    UNEXPECTED_ERROR = "unexpected_error"


# ============================================================================
# Work-tracking side (Azure DevOps)
# ============================================================================


class Relation(BaseModel):
    """Directed edge from a work item to another item or URL."""

    source_id: int
    target_id: int | None = None
    target_url: str
    rel_type: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    ps_id: str | None = None  # set when the URL points at a ProductBoard feature

    @property
    def is_parent(self) -> bool:
        return self.rel_type == PARENT_LINK

    @property
    def is_child(self) -> bool:
        return self.rel_type == CHILD_LINK

    @property
    def is_related(self) -> bool:
        return self.rel_type == RELATED_LINK

    @property
    def is_hyperlink(self) -> bool:
        return self.rel_type == HYPERLINK

    @property
    def is_cross_system_link(self) -> bool:
        return self.ps_id is not None


class WorkItem(BaseModel):
    """Work item as cached locally."""

    id: int
    url: str | None = None
    rev: int | None = None
    type: str = "Unknown"
    title: str = ""
    state: str = "Unknown"
    reason: str | None = None
    area_path: str | None = None
    area_id: int | None = None
    iteration_path: str | None = None
    iteration_id: int | None = None
    priority: int | None = None
    value_area: str | None = None
    tags: str | None = None
    description: str | None = None
    history: str | None = None
    acceptance_criteria: str | None = None

    assigned_to_name: str | None = None
    assigned_to_email: str | None = None
    created_by_name: str | None = None
    created_by_email: str | None = None
    changed_by_name: str | None = None
    changed_by_email: str | None = None

    created_date: datetime | None = None
    changed_date: datetime | None = None
    parent_id: int | None = None

    board_column: str | None = None
    board_column_done: bool | None = None
    comment_count: int | None = None
    watermark: int | None = None
    stack_rank: float | None = None
    effort: float | None = None
    story_points: float | None = None
    business_value: int | None = None

    ps_id: str | None = None
    raw_data: dict[str, Any] = Field(default_factory=dict)
    last_synced_at: datetime | None = None

    relations: list[Relation] = Field(default_factory=list)
    unrecognized: dict[str, Any] = Field(default_factory=dict)


class AreaPath(BaseModel):
    """Flattened node of the area classification tree."""

    id: int
    name: str
    path: str
    structure_type: str | None = None
    has_children: bool = False
    raw_data: dict[str, Any] = Field(default_factory=dict)


class Team(BaseModel):
    id: str
    name: str
    description: str | None = None
    url: str | None = None
    identity_url: str | None = None
    project_name: str | None = None
    project_id: str | None = None
    raw_data: dict[str, Any] = Field(default_factory=dict)


class WorkItemType(BaseModel):
    name: str
    description: str | None = None
    reference_name: str | None = None
    url: str | None = None
    color: str | None = None
    icon_url: str | None = None
    is_disabled: bool = False
    raw_data: dict[str, Any] = Field(default_factory=dict)


class PatchOperation(BaseModel):
    """Single JSON-patch operation sent to the work-tracking system."""

    op: str
    path: str
    value: Any = None


# ============================================================================
# Planning side (ProductBoard) and local stories
# ============================================================================


class PlanningItem(BaseModel):
    """ProductBoard feature as extracted from the feature detail endpoint."""

    id: str
    name: str = ""
    description: str = ""
    type: str | None = None
    parent_id: str | None = None
    status: str | None = None
    product_id: str | None = None
    component_id: str | None = None
    component_name: str | None = None
    product_name: str | None = None

    story_points: float | None = None
    investment_category: str | None = None
    growth_driver: bool = False
    tentpole: bool = False
    target_date: str | None = None
    owner: str | None = None

    acceptance_criteria: str = ""
    customer_need: str = ""
    technical_notes: str = ""
    links: dict[str, Any] = Field(default_factory=dict)

    unrecognized: dict[str, Any] = Field(default_factory=dict)


class Story(BaseModel):
    """Locally authored story projected onto a ProductBoard feature."""

    id: str
    ps_id: str | None = None
    title: str
    description: str = ""
    commitment_status: CommitmentStatus | None = None

    reach_score: float | None = None
    impact_score: float | None = None
    confidence_score: float | None = None
    effort_score: float | None = None
    rice_score: float | None = None

    acceptance_criteria: str | None = None
    customer_need_description: str | None = None
    release_notes: str | None = None

    engineering_assigned_story_points: float | None = None
    board_level_stack_rank: int | None = None
    timeframe: str | None = None
    owner_name: str | None = None
    teams: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)

    commercialization_needed: bool | None = None
    growth_driver: bool | None = None
    tentpole: bool | None = None
    t_shirt_sizing: str | None = None
    investment_category: str | None = None

    unrecognized: dict[str, Any] = Field(default_factory=dict)


class Mapping(BaseModel):
    """Cross-system identity link and cached planning status."""

    ps_id: str
    wts_id: int | None = None
    wts_url: str | None = None
    last_known_ps_status: str | None = None
    last_synced_at: datetime | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: str | None = None


class SyncHistoryRecord(BaseModel):
    entity_type: str
    last_sync_time: datetime
    items_synced: int = 0
    status: str
    error_message: str | None = None
