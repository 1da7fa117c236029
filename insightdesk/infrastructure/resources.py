"""Backend-agnostic contract for reading and writing workspace documents."""
from __future__ import annotations

from typing import Any, Mapping, Protocol

from insightdesk.core.ids import utc_now
from insightdesk.domain.errors import ValidationError
from insightdesk.domain.workspaces import ResourceKey, ResourceKind

CHILD_FIELDS = {
    ResourceKind.WORKSPACE: ("dashboards",),
    ResourceKind.DASHBOARD: ("tiles", "notes", "contacts"),
}


class ResourceStore(Protocol):
    """Persistence contract shared by the guest and the member backends.

    Documents are camelCase dictionaries. Workspace and dashboard documents
    never carry their child collections; callers assemble the tree.
    """

    backend: str

    async def find_one(self, kind: ResourceKind, key: ResourceKey) -> dict[str, Any] | None:
        """Return the addressed document or ``None``."""

    async def find_many(self, kind: ResourceKind, key: ResourceKey) -> list[dict[str, Any]]:
        """Return every document of ``kind`` under the container named by ``key``."""

    async def insert_one(self, kind: ResourceKind, key: ResourceKey, document: Mapping[str, Any]) -> dict[str, Any]:
        """Insert ``document``; raise ``DuplicateIdError`` on an id collision."""

    async def update_one(self, kind: ResourceKind, key: ResourceKey, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Merge ``changes`` into the addressed document and stamp ``updatedAt``."""

    async def update_many(
        self, kind: ResourceKind, key: ResourceKey, changes_by_id: Mapping[str, Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        """Apply several updates under one container as a single write."""

    async def delete_one(self, kind: ResourceKind, key: ResourceKey) -> None:
        """Delete the addressed document and everything below it."""

    async def reassign_workspace_id(self, old_id: str, new_id: str) -> None:
        """Rename a workspace and rewrite the keys of its descendants."""

    async def clear(self) -> None:
        """Remove every document owned by this store's identity."""


def require_key(kind: ResourceKind, key: ResourceKey, *, collection: bool = False) -> None:
    """Check that ``key`` names every field ``kind`` needs."""

    required: list[tuple[str, str | None]] = []
    if kind is not ResourceKind.WORKSPACE:
        required.append(("workspaceId", key.workspace_id))
    if kind.is_dashboard_child:
        required.append(("dashboardId", key.dashboard_id))
    if not collection:
        required.append(("id", key.target_id(kind)))
    for field, value in required:
        if not value:
            raise ValidationError(field, f"required to address a {kind.value}")


def flat_document(kind: ResourceKind, document: Mapping[str, Any]) -> dict[str, Any]:
    """Copy ``document`` without its child collections."""

    children = CHILD_FIELDS.get(kind, ())
    return {field: value for field, value in document.items() if field not in children}


def stamped_changes(kind: ResourceKind, changes: Mapping[str, Any]) -> dict[str, Any]:
    """Return the changes an update may apply, with ``updatedAt`` set.

    Identity fields and child collections cannot be changed through an
    update. An explicit ``updatedAt`` in ``changes`` is kept so migrated
    documents retain their original timestamps.
    """

    protected = {"id", "ownerId", "workspaceId", "dashboardId", *CHILD_FIELDS.get(kind, ())}
    cleaned = {field: value for field, value in changes.items() if field not in protected}
    cleaned["updatedAt"] = changes.get("updatedAt") or utc_now()
    return cleaned
