"""Rebuild the epic -> feature -> story tree from flat items and relation edges."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field

from plansync.mapping.extract import parse_parent_id
from plansync.models import PARENT_LINK, WorkItem

EPIC = "Epic"
FEATURE = "Feature"
USER_STORY = "User Story"


@dataclass
class EpicNode:
    item: WorkItem
    feature_ids: list[int] = field(default_factory=list)


@dataclass
class FeatureNode:
    item: WorkItem
    story_ids: list[int] = field(default_factory=list)


@dataclass
class Hierarchy:
    epics_by_id: dict[int, EpicNode] = field(default_factory=dict)
    features_by_id: dict[int, FeatureNode] = field(default_factory=dict)
    stories: list[WorkItem] = field(default_factory=list)
    feature_to_epic: dict[int, int] = field(default_factory=dict)
    story_to_feature: dict[int, int] = field(default_factory=dict)

    @property
    def counts(self) -> tuple[int, int, int]:
        return len(self.epics_by_id), len(self.features_by_id), len(self.stories)


def parent_of(item: WorkItem) -> int | None:
    """Parent id from the item's first reverse-hierarchy relation.

    Later reverse-hierarchy edges are ignored even when the first one
    cannot be parsed.
    """
    for relation in item.relations:
        if relation.rel_type == PARENT_LINK:
            return parse_parent_id(relation.target_url)
    return None


def build_hierarchy(
    epics: Iterable[WorkItem],
    features: Iterable[WorkItem],
    stories: Iterable[WorkItem],
) -> Hierarchy:
    """Pure and deterministic: child lists and stories are ordered by id.

    Items whose parent is not in the supplied set are left out of the
    parent/child indexes.
    """
    hierarchy = Hierarchy()

    for epic in epics:
        hierarchy.epics_by_id[epic.id] = EpicNode(item=epic)
    for feature in features:
        hierarchy.features_by_id[feature.id] = FeatureNode(item=feature)

    for feature_id, node in hierarchy.features_by_id.items():
        epic_id = parent_of(node.item)
        if epic_id is not None and epic_id in hierarchy.epics_by_id:
            hierarchy.epics_by_id[epic_id].feature_ids.append(feature_id)
            hierarchy.feature_to_epic[feature_id] = epic_id

    story_list = sorted({s.id: s for s in stories}.values(), key=lambda s: s.id)
    for story in story_list:
        feature_id = parent_of(story)
        if feature_id is not None and feature_id in hierarchy.features_by_id:
            hierarchy.features_by_id[feature_id].story_ids.append(story.id)
            hierarchy.story_to_feature[story.id] = feature_id
    hierarchy.stories = story_list

    for epic_node in hierarchy.epics_by_id.values():
        epic_node.feature_ids.sort()
    for feature_node in hierarchy.features_by_id.values():
        feature_node.story_ids.sort()

    return hierarchy
