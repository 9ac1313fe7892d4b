"""Extraction: raw partner payloads -> canonical models.

Azure DevOps delivers work item fields as a flat dict keyed by
``"Namespace.Name"`` reference names, so every lookup below indexes the
flat key directly.
"""

from __future__ import annotations

import re
from typing import Any

from plansync.models import (
    HYPERLINK,
    AreaPath,
    CommitmentStatus,
    PlanningItem,
    Relation,
    Story,
    Team,
    WorkItem,
    WorkItemType,
)

PRODUCTBOARD_HOST = "productboard.com"
_PB_FEATURE_RE = re.compile(r"/features?/([A-Za-z0-9-]+)")
_WORK_ITEM_URL_RE = re.compile(r"/workItems/(\d+)$", re.IGNORECASE)

# field reference name -> WorkItem attribute
SCALAR_FIELDS: dict[str, str] = {
    "System.WorkItemType": "type",
    "System.Title": "title",
    "System.State": "state",
    "System.Reason": "reason",
    "System.AreaPath": "area_path",
    "System.AreaId": "area_id",
    "System.IterationPath": "iteration_path",
    "System.IterationId": "iteration_id",
    "Microsoft.VSTS.Common.Priority": "priority",
    "Microsoft.VSTS.Common.ValueArea": "value_area",
    "System.Tags": "tags",
    "System.Description": "description",
    "System.History": "history",
    "Microsoft.VSTS.Common.AcceptanceCriteria": "acceptance_criteria",
    "System.CreatedDate": "created_date",
    "System.ChangedDate": "changed_date",
    "System.Parent": "parent_id",
    "System.BoardColumn": "board_column",
    "System.BoardColumnDone": "board_column_done",
    "System.CommentCount": "comment_count",
    "System.Watermark": "watermark",
    "Microsoft.VSTS.Common.StackRank": "stack_rank",
    "Microsoft.VSTS.Scheduling.Effort": "effort",
    "Microsoft.VSTS.Scheduling.StoryPoints": "story_points",
    "Microsoft.VSTS.Common.BusinessValue": "business_value",
}

IDENTITY_FIELDS: dict[str, str] = {
    "System.AssignedTo": "assigned_to",
    "System.CreatedBy": "created_by",
    "System.ChangedBy": "changed_by",
}

# Fields present on every item that carry nothing worth keeping
_IGNORED_FIELDS = {"System.Id", "System.Rev", "System.TeamProject", "System.NodeName"}


def _identity(value: Any) -> tuple[str | None, str | None]:
    """Return (displayName, uniqueName) for an identity field."""
    if isinstance(value, dict):
        return value.get("displayName"), value.get("uniqueName")
    if isinstance(value, str) and value:
        # Older API versions serialise identities as "Name <email>"
        match = re.match(r"^(.*?)\s*<([^>]+)>$", value)
        if match:
            return match.group(1), match.group(2)
        return value, None
    return None, None


def extract_ps_id_from_url(url: str | None) -> str | None:
    """Return the ProductBoard feature id a hyperlink points at, if any."""
    if not url or PRODUCTBOARD_HOST not in url:
        return None
    match = _PB_FEATURE_RE.search(url)
    return match.group(1) if match else None


def extract_target_id(url: str | None) -> int | None:
    if not url:
        return None
    match = _WORK_ITEM_URL_RE.search(url)
    return int(match.group(1)) if match else None


def parse_parent_id(url: str | None) -> int | None:
    """Parse the numeric id from the last path segment of a work item URL."""
    if not url:
        return None
    segment = url.rstrip("/").rsplit("/", 1)[-1]
    try:
        return int(segment)
    except ValueError:
        return None


def extract_relation(source_id: int, raw: dict[str, Any]) -> Relation:
    url = raw.get("url", "")
    rel_type = raw.get("rel", "")
    ps_id = extract_ps_id_from_url(url) if rel_type == HYPERLINK else None
    return Relation(
        source_id=source_id,
        target_id=extract_target_id(url),
        target_url=url,
        rel_type=rel_type,
        attributes=raw.get("attributes") or {},
        ps_id=ps_id,
    )


def extract_work_item(raw: dict[str, Any]) -> WorkItem:
    """Build a WorkItem from a ``workitems?$expand=all`` entry."""
    item_id = int(raw["id"])
    fields: dict[str, Any] = raw.get("fields") or {}

    values: dict[str, Any] = {}
    for key, attr in SCALAR_FIELDS.items():
        if fields.get(key) is not None:
            values[attr] = fields[key]

    for key, prefix in IDENTITY_FIELDS.items():
        name, email = _identity(fields.get(key))
        values[f"{prefix}_name"] = name
        values[f"{prefix}_email"] = email

    if not values.get("title"):
        values["title"] = f"Untitled Item {item_id}"

    relations = [extract_relation(item_id, rel) for rel in raw.get("relations") or []]
    ps_id = next((r.ps_id for r in relations if r.ps_id), None)

    known = set(SCALAR_FIELDS) | set(IDENTITY_FIELDS) | _IGNORED_FIELDS
    unrecognized = {k: v for k, v in fields.items() if k not in known}

    return WorkItem(
        id=item_id,
        url=raw.get("url"),
        rev=raw.get("rev"),
        ps_id=ps_id,
        raw_data=raw,
        relations=relations,
        unrecognized=unrecognized,
        **values,
    )


def extract_area_path(node: dict[str, Any]) -> AreaPath:
    return AreaPath(
        id=node["id"],
        name=node["name"],
        path=node.get("path") or node["name"],
        structure_type=node.get("structureType"),
        has_children=bool(node.get("hasChildren")),
        raw_data=node,
    )


def extract_team(raw: dict[str, Any]) -> Team:
    return Team(
        id=raw["id"],
        name=raw["name"],
        description=raw.get("description"),
        url=raw.get("url"),
        identity_url=raw.get("identityUrl"),
        project_name=raw.get("projectName"),
        project_id=raw.get("projectId"),
        raw_data=raw,
    )


def extract_work_item_type(raw: dict[str, Any]) -> WorkItemType:
    icon = raw.get("icon") or {}
    return WorkItemType(
        name=raw["name"],
        description=raw.get("description"),
        reference_name=raw.get("referenceName"),
        url=raw.get("url"),
        color=raw.get("color"),
        icon_url=icon.get("url") if isinstance(icon, dict) else None,
        is_disabled=bool(raw.get("isDisabled")),
        raw_data=raw,
    )


# ============================================================================
# ProductBoard
# ============================================================================

_PB_KNOWN_KEYS = {
    "id", "name", "description", "type", "parent_id", "status", "product_id",
    "component_id", "component", "product", "custom_fields", "notes", "links",
}


def _truthy(value: Any) -> bool:
    return value is True or value == "true"


def _note(notes: list[dict[str, Any]], note_type: str) -> str:
    for note in notes:
        if note.get("type") == note_type:
            return note.get("content") or ""
    return ""


def _feature_data(raw: dict[str, Any]) -> dict[str, Any]:
    data = raw.get("data", raw)
    return data if isinstance(data, dict) else {}


def extract_planning_item(raw: dict[str, Any], item_id: str | None = None) -> PlanningItem:
    """Build a PlanningItem from a ``GET /features/{id}`` response."""
    data = _feature_data(raw)
    custom = data.get("custom_fields") or {}
    notes = data.get("notes") or []
    status = data.get("status")
    component = data.get("component") or {}
    product = data.get("product") or {}

    effort = custom.get("effort")
    try:
        story_points = float(effort) if effort not in (None, "") else None
    except (TypeError, ValueError):
        story_points = None

    return PlanningItem(
        id=str(data.get("id") or item_id or ""),
        name=data.get("name") or "",
        description=data.get("description") or "",
        type=data.get("type") or "feature",
        parent_id=data.get("parent_id"),
        status=(status.get("name") if isinstance(status, dict) else status) or None,
        product_id=data.get("product_id"),
        component_id=data.get("component_id"),
        component_name=component.get("name"),
        product_name=product.get("name") or component.get("project"),
        story_points=story_points,
        investment_category=custom.get("investment_category") or None,
        growth_driver=_truthy(custom.get("growth_driver")),
        tentpole=_truthy(custom.get("tentpole")),
        target_date=custom.get("timeframe") or None,
        owner=custom.get("owner") or None,
        acceptance_criteria=_note(notes, "acceptance_criteria"),
        customer_need=_note(notes, "customer_need"),
        technical_notes=_note(notes, "technical_notes"),
        links=data.get("links") if isinstance(data.get("links"), dict) else {},
        unrecognized={k: v for k, v in data.items() if k not in _PB_KNOWN_KEYS},
    )


# ProductBoard status -> local commitment status (inverse of the projection table)
_STATUS_TO_COMMITMENT = {
    "backlog": CommitmentStatus.NOT_COMMITTED,
    "discovery": CommitmentStatus.EXPLORING,
    "in-progress": CommitmentStatus.COMMITTED,
}

_STORY_CUSTOM_KEYS = {
    "rice_score", "reach", "impact", "confidence", "effort", "release_notes",
    "effort_story_points", "stack_rank", "timeframe", "owner", "tags", "teams",
    "commercialization_needed", "growth_driver", "tentpole", "t_shirt_size",
    "investment_category", "source_system", "source_id",
}


def _split_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [part.strip() for part in str(value).split(",") if part.strip()]


def extract_story(raw: dict[str, Any], ps_id: str | None = None) -> Story:
    """Rebuild a Story from a feature payload produced by ``story_to_feature``."""
    data = _feature_data(raw)
    custom = data.get("custom_fields") or {}
    notes = data.get("notes") or []
    status = data.get("status")
    status_name = status.get("name") if isinstance(status, dict) else status

    return Story(
        id=str(custom.get("source_id") or data.get("id") or ps_id or ""),
        ps_id=ps_id or data.get("id"),
        title=data.get("name") or "",
        description=data.get("description") or "",
        commitment_status=_STATUS_TO_COMMITMENT.get(status_name or "backlog"),
        reach_score=custom.get("reach"),
        impact_score=custom.get("impact"),
        confidence_score=custom.get("confidence"),
        effort_score=custom.get("effort"),
        rice_score=custom.get("rice_score"),
        acceptance_criteria=_note(notes, "acceptance_criteria") or None,
        customer_need_description=_note(notes, "customer_need") or None,
        release_notes=custom.get("release_notes"),
        engineering_assigned_story_points=custom.get("effort_story_points"),
        board_level_stack_rank=custom.get("stack_rank"),
        timeframe=custom.get("timeframe"),
        owner_name=custom.get("owner"),
        teams=_split_list(custom.get("teams")),
        tags=_split_list(custom.get("tags")),
        commercialization_needed=custom.get("commercialization_needed"),
        growth_driver=custom.get("growth_driver"),
        tentpole=custom.get("tentpole"),
        t_shirt_sizing=custom.get("t_shirt_size"),
        investment_category=custom.get("investment_category"),
        unrecognized={k: v for k, v in custom.items() if k not in _STORY_CUSTOM_KEYS},
    )
