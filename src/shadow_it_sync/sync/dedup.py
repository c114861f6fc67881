"""
Deduplication Merger

Collapses application rows that share a normalized name into the
earliest-created row. Scopes are unioned, relationships re-pointed (or
folded into an existing edge of the same user), empty annotations of the
primary filled from the oldest duplicate that has them, and duplicates
deleted. Running it twice is the same as running it once.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List

from src.shadow_it_sync.db.operations import DatabaseOperations
from src.shadow_it_sync.sync.state import ApplicationRecord, PersistedState, RelationshipRecord
from src.utils.error_handling import MergeConflictError
from src.utils.logging import get_logger

logger = get_logger(__name__)

ANNOTATION_FIELDS = ("owner", "notes", "management_status")
# Default status counts as "empty" so a reviewed duplicate's status survives the merge
UNSET_MANAGEMENT_STATUS = "Needs Review"


@dataclass
class MergeGroup:
    key: str
    primary: ApplicationRecord
    duplicates: List[ApplicationRecord]
    relationships: List[RelationshipRecord] = field(default_factory=list)

    @property
    def duplicate_ids(self) -> List[int]:
        return [d.id for d in self.duplicates]

    @property
    def merged_scopes(self) -> FrozenSet[str]:
        scopes = set(self.primary.all_scopes)
        for dup in self.duplicates:
            scopes |= dup.all_scopes
        for rel in self.relationships:
            scopes |= rel.scopes
        return frozenset(scopes)

    def annotation_fills(self) -> Dict[str, Any]:
        """Values for the primary's empty annotation fields, taken from the oldest duplicate having one."""
        fills: Dict[str, Any] = {}
        for name in ANNOTATION_FIELDS:
            if not _is_empty(name, getattr(self.primary, name)):
                continue
            for dup in self.duplicates:
                value = getattr(dup, name)
                if not _is_empty(name, value):
                    fills[name] = value
                    break
        return fills


def _is_empty(name: str, value: Any) -> bool:
    if value is None or (isinstance(value, str) and not value.strip()):
        return True
    return name == "management_status" and value == UNSET_MANAGEMENT_STATUS


def plan_merge(state: PersistedState) -> List[MergeGroup]:
    """Groups with more than one application row, primary first by (created_at, id)."""
    rels_by_app = state.relationships_by_application()
    groups = []
    for key, rows in sorted(state.applications_by_key().items()):
        if len(rows) < 2:
            continue
        primary, duplicates = rows[0], rows[1:]
        moved = [rel for dup in duplicates for rel in sorted(rels_by_app.get(dup.id, []), key=lambda r: r.id)]
        groups.append(MergeGroup(key=key, primary=primary, duplicates=duplicates, relationships=moved))
    return groups


@dataclass
class DeduplicationResult:
    merged_groups: int = 0
    applications_deleted: int = 0
    relationships_moved: int = 0
    relationships_merged: int = 0
    details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mergedGroups": self.merged_groups,
            "applicationsDeleted": self.applications_deleted,
            "relationshipsMoved": self.relationships_moved,
            "relationshipsMerged": self.relationships_merged,
            "details": self.details,
        }


class ApplicationMerger:
    def __init__(self, db: DatabaseOperations):
        self.db = db

    async def run(self, organization_id: int) -> DeduplicationResult:
        state = await self.db.load_state(organization_id)
        groups = plan_merge(state)
        result = DeduplicationResult()
        if not groups:
            logger.info(f"No duplicate applications for organization {organization_id}")
            return result

        for group in groups:
            moved, merged = await self._merge_group(group)
            result.merged_groups += 1
            result.applications_deleted += len(group.duplicates)
            result.relationships_moved += moved
            result.relationships_merged += merged
            names = ", ".join(d.name for d in group.duplicates)
            result.details.append(f"Merged {names} into {group.primary.name}")
            logger.info(result.details[-1])

        await self.db.recompute_application_risk(
            organization_id, [g.primary.id for g in groups], keep_stored_scopes=True)
        return result

    async def _merge_group(self, group: MergeGroup):
        moved = merged = 0
        async with self.db.write_session("merge_applications", len(group.duplicates)) as session:
            for rel in group.relationships:
                try:
                    await self.db.repoint_relationship(session, rel.id, group.primary.id)
                    moved += 1
                except MergeConflictError as conflict:
                    conflict.log(logger)
                    await self.db.merge_relationship_into(session, rel.id, rel.user_id, group.primary.id)
                    merged += 1
            await self.db.finalize_merge(
                session,
                group.primary.id,
                group.duplicate_ids,
                group.merged_scopes,
                group.annotation_fills(),
            )
        return moved, merged
