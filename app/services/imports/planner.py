# app/services/imports/planner.py
"""
Work plan construction for GP51 imports.

The plan is an ordered list of work items (users first, then vehicles). It is
computed once per job and frozen on the job row, so a resumed job slices the
same feed into the same chunks.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from app.models.import_job import ImportType

logger = logging.getLogger("fleetsync.imports.planner")


@dataclass(frozen=True)
class WorkItem:
    """One GP51 user or device to import."""
    kind: str  # "user" or "vehicle"
    identifier: str

    def to_dict(self) -> Dict[str, str]:
        return {"kind": self.kind, "identifier": self.identifier}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "WorkItem":
        return cls(kind=data["kind"], identifier=data["identifier"])


async def build_plan(
    client: Any,
    import_type: ImportType,
    selected_usernames: Optional[List[str]] = None
) -> List[WorkItem]:
    """
    Ask GP51 for the records an import of ``import_type`` covers.

    Args:
        client: GP51 client (list_users / list_devices)
        import_type: Scope of the import
        selected_usernames: Explicit accounts for selective or users-only runs

    Returns:
        List[WorkItem]: Ordered, duplicate-free plan
    """
    import_type = ImportType(import_type)
    usernames: List[str] = []
    device_ids: List[str] = []

    if import_type in (ImportType.USERS_ONLY, ImportType.COMPLETE_SYSTEM):
        usernames = list(selected_usernames) if selected_usernames else await client.list_users()
    elif import_type == ImportType.SELECTIVE:
        usernames = list(selected_usernames or [])

    if import_type in (ImportType.VEHICLES_ONLY, ImportType.COMPLETE_SYSTEM):
        device_ids = [d.deviceid for d in await client.list_devices()]
    elif import_type == ImportType.SELECTIVE and usernames:
        device_ids = [d.deviceid for d in await client.list_devices(usernames)]

    plan: List[WorkItem] = []
    seen = set()
    for kind, identifiers in (("user", usernames), ("vehicle", device_ids)):
        for identifier in identifiers:
            if (kind, identifier) not in seen:
                seen.add((kind, identifier))
                plan.append(WorkItem(kind=kind, identifier=identifier))

    logger.info(
        f"Planned {import_type.value} import: {len(usernames)} users, {len(device_ids)} vehicles"
    )
    return plan


def slice_chunk(plan: List[WorkItem], chunk_index: int, chunk_size: int) -> List[WorkItem]:
    """Items of chunk ``chunk_index`` (0-based)."""
    start = chunk_index * chunk_size
    return plan[start:start + chunk_size]
