"""Projection: canonical models -> partner payloads.

Lossy fields (not round-trip safe):
- ADO ``System.Description`` merges description, customer need, technical
  notes and the ProductBoard link into one HTML block.
- ADO ``System.Tags`` flattens component, product and flag values.
- ProductBoard ``status`` collapses ``planning`` and ``committed`` into
  ``in-progress``.
- ProductBoard ``teams``/``tags`` are ", "-joined strings; values that
  themselves contain a comma do not survive a round trip.
"""

from __future__ import annotations

from html import escape
from typing import Any

from plansync.models import CommitmentStatus, PatchOperation, PlanningItem, Story, WorkItem

DEFAULT_PS_STATUS = "backlog"
DEFAULT_STACK_RANK = 999
PS_BUSINESS_VALUE = 2
STORY_SOURCE_SYSTEM = "story_creator"

COMMITMENT_TO_PS_STATUS: dict[CommitmentStatus, str] = {
    CommitmentStatus.NOT_COMMITTED: "backlog",
    CommitmentStatus.EXPLORING: "discovery",
    CommitmentStatus.PLANNING: "in-progress",
    CommitmentStatus.COMMITTED: "in-progress",
}

WORK_ITEM_TYPE_TO_PS: dict[str, str] = {
    "Epic": "epic",
    "Feature": "feature",
    "User Story": "feature",
    "Task": "task",
}

WORK_ITEM_STATE_TO_PS: dict[str, str] = {
    "New": "backlog",
    "Active": "in-progress",
    "Resolved": "in-progress",
    "Closed": "done",
}


def compute_rice_score(
    reach: float | None,
    impact: float | None,
    confidence: float | None,
    effort: float | None,
) -> float | None:
    """(reach * impact * confidence) / effort, rounded to 2 decimals.

    Returns None unless all four inputs are present and effort > 0.
    """
    if reach is None or impact is None or confidence is None or effort is None:
        return None
    if effort <= 0:
        return None
    return round(reach * impact * confidence / effort, 2)


def resolve_rice_score(story: Story) -> float | None:
    """Keep an existing score; compute one only when it is absent."""
    if story.rice_score is not None:
        return story.rice_score
    return compute_rice_score(
        story.reach_score, story.impact_score, story.confidence_score, story.effort_score
    )


def map_commitment_status(status: CommitmentStatus | str | None) -> str:
    if status is None:
        return DEFAULT_PS_STATUS
    try:
        return COMMITMENT_TO_PS_STATUS[CommitmentStatus(status)]
    except (KeyError, ValueError):
        return DEFAULT_PS_STATUS


def _join(values: list[str]) -> str | None:
    return ", ".join(values) if values else None


def story_to_feature(story: Story) -> dict[str, Any]:
    """Build the ProductBoard feature payload for a local story."""
    notes = []
    if story.acceptance_criteria:
        notes.append({"type": "acceptance_criteria", "content": story.acceptance_criteria})
    if story.customer_need_description:
        notes.append({"type": "customer_need", "content": story.customer_need_description})

    stack_rank = story.board_level_stack_rank
    custom = {
        "rice_score": resolve_rice_score(story),
        "reach": story.reach_score,
        "impact": story.impact_score,
        "confidence": story.confidence_score,
        "effort": story.effort_score,
        "release_notes": story.release_notes,
        "effort_story_points": story.engineering_assigned_story_points,
        "stack_rank": DEFAULT_STACK_RANK if stack_rank is None else stack_rank,
        "timeframe": story.timeframe,
        "owner": story.owner_name,
        "tags": _join(story.tags),
        "teams": _join(story.teams),
        "commercialization_needed": story.commercialization_needed,
        "growth_driver": story.growth_driver,
        "tentpole": story.tentpole,
        "t_shirt_size": story.t_shirt_sizing,
        "investment_category": story.investment_category,
        "source_system": STORY_SOURCE_SYSTEM,
        "source_id": story.id,
    }

    payload: dict[str, Any] = {
        "name": story.title,
        "description": story.description,
        "type": "initiative" if story.tentpole else "feature",
        "status": map_commitment_status(story.commitment_status),
        "custom_fields": {k: v for k, v in custom.items() if v is not None},
    }
    if notes:
        payload["notes"] = notes
    return payload


def work_item_to_feature(item: WorkItem) -> dict[str, Any]:
    """Build a ProductBoard feature payload from a cached work item."""
    notes = []
    if item.acceptance_criteria:
        notes.append({"type": "acceptance_criteria", "content": item.acceptance_criteria})
    if item.business_value is not None:
        notes.append({"type": "business_value", "content": str(item.business_value)})

    custom = {
        "source_system": "azure_devops",
        "source_id": str(item.id),
        "effort_story_points": item.story_points,
        "stack_rank": item.stack_rank,
        "area_path": item.area_path,
        "iteration_path": item.iteration_path,
        "owner": item.assigned_to_email or item.assigned_to_name,
    }
    payload: dict[str, Any] = {
        "name": item.title,
        "description": item.description or "",
        "type": WORK_ITEM_TYPE_TO_PS.get(item.type, "feature"),
        "status": WORK_ITEM_STATE_TO_PS.get(item.state, DEFAULT_PS_STATUS),
        "custom_fields": {k: v for k, v in custom.items() if v is not None},
    }
    if notes:
        payload["notes"] = notes
    return payload


# ============================================================================
# ProductBoard feature -> Azure DevOps JSON-patch
# ============================================================================


def ps_tag(ps_id: str) -> str:
    """Tag stamped on every work item created from a ProductBoard feature."""
    return f"ProductBoard:{ps_id}"


def _field(op: str, name: str, value: Any) -> PatchOperation:
    return PatchOperation(op=op, path=f"/fields/{name}", value=value)


def _description_html(item: PlanningItem, feature_url: str | None) -> str:
    parts = [f"<div>{item.description}</div>"]
    if item.customer_need:
        parts.append(f"<div><h3>Customer Need:</h3>{item.customer_need}</div>")
    if feature_url is not None:
        if item.technical_notes:
            parts.append(f"<div><h3>Technical Notes:</h3>{item.technical_notes}</div>")
        parts.append(
            "<div><h3>ProductBoard Link:</h3>"
            f'<a href="{escape(feature_url)}">ProductBoard Feature {escape(item.id)}</a></div>'
        )
    return "".join(parts)


def _tags(item: PlanningItem) -> str:
    tags = [
        ps_tag(item.id),
        f"PB-Component:{item.component_id or 'none'}",
        f"PB-Product:{item.product_id or 'none'}",
    ]
    if item.growth_driver:
        tags.append("GrowthDriver")
    if item.tentpole:
        tags.append("Tentpole")
    if item.investment_category:
        tags.append(f"Investment:{item.investment_category}")
    return "; ".join(tags)


def build_create_operations(
    item: PlanningItem, area_path: str | None, feature_url: str
) -> list[PatchOperation]:
    """JSON-patch ops creating a work item for a ProductBoard feature.

    Optional values are omitted entirely rather than sent as nulls.
    """
    ops = [_field("add", "System.Title", item.name or f"PB Item {item.id}")]
    if area_path:
        ops.append(_field("add", "System.AreaPath", area_path))
    ops += [
        _field("add", "System.Description", _description_html(item, feature_url)),
        _field("add", "Microsoft.VSTS.Common.AcceptanceCriteria", item.acceptance_criteria),
        _field("add", "System.State", "New"),
    ]
    if item.story_points:
        ops.append(_field("add", "Microsoft.VSTS.Scheduling.StoryPoints", item.story_points))
    if item.target_date:
        ops.append(_field("add", "Microsoft.VSTS.Scheduling.TargetDate", item.target_date))
    ops += [
        _field("add", "Microsoft.VSTS.Common.BusinessValue", PS_BUSINESS_VALUE),
        _field("add", "System.Tags", _tags(item)),
    ]
    if item.investment_category:
        ops.append(_field("add", "Custom.InvestmentCategory", item.investment_category))
    if item.growth_driver:
        ops.append(_field("add", "Custom.GrowthDriver", "true"))
    if item.tentpole:
        ops.append(_field("add", "Custom.Tentpole", "true"))

    ops.append(
        PatchOperation(
            op="add",
            path="/relations/-",
            value={
                "rel": "Hyperlink",
                "url": feature_url,
                "attributes": {"comment": "ProductBoard feature"},
            },
        )
    )
    return ops


def build_update_operations(item: PlanningItem) -> list[PatchOperation]:
    """JSON-patch ops refreshing an already linked work item."""
    ops = [
        _field("replace", "System.Title", item.name or f"PB Item {item.id}"),
        _field("replace", "System.Description", _description_html(item, None)),
        _field("replace", "Microsoft.VSTS.Common.AcceptanceCriteria", item.acceptance_criteria),
    ]
    if item.story_points:
        ops.append(_field("replace", "Microsoft.VSTS.Scheduling.StoryPoints", item.story_points))
    if item.target_date:
        ops.append(_field("replace", "Microsoft.VSTS.Scheduling.TargetDate", item.target_date))
    return ops


def operations_payload(ops: list[PatchOperation]) -> list[dict[str, Any]]:
    return [op.model_dump() for op in ops]
