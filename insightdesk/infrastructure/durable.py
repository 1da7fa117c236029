"""Member store scoping every DuckDB document by its owner."""
from __future__ import annotations

import asyncio
from typing import Any, Mapping

from insightdesk.domain.errors import NotFoundError
from insightdesk.domain.workspaces import ResourceKey, ResourceKind
from insightdesk.infrastructure.duckdb_driver import COLLECTIONS, DuckDBDocumentDriver
from insightdesk.infrastructure.resources import flat_document, require_key, stamped_changes

_PRIVATE_FIELDS = {
    ResourceKind.WORKSPACE: (),
    ResourceKind.DASHBOARD: ("ownerId",),
    ResourceKind.TILE: ("ownerId", "workspaceId", "dashboardId"),
    ResourceKind.NOTE: ("ownerId", "workspaceId", "dashboardId"),
    ResourceKind.CONTACT: ("ownerId", "workspaceId", "dashboardId"),
}


class DurableResourceStore:
    backend = "durable"

    def __init__(self, driver: DuckDBDocumentDriver, owner_id: str) -> None:
        if not owner_id:
            raise ValueError("durable stores require an owner id")
        self._driver = driver
        self._owner_id = owner_id

    @property
    def owner_id(self) -> str:
        return self._owner_id

    def _filters(self, kind: ResourceKind, key: ResourceKey, *, collection: bool = False) -> dict[str, Any]:
        filters: dict[str, Any] = {"ownerId": self._owner_id}
        if kind is ResourceKind.WORKSPACE:
            if not collection:
                filters["id"] = key.workspace_id
            return filters
        filters["workspaceId"] = key.workspace_id
        if kind is ResourceKind.DASHBOARD:
            if not collection:
                filters["id"] = key.dashboard_id
            return filters
        filters["dashboardId"] = key.dashboard_id
        if not collection:
            filters["id"] = key.resource_id
        return filters

    def _public(self, kind: ResourceKind, document: Mapping[str, Any]) -> dict[str, Any]:
        hidden = _PRIVATE_FIELDS[kind]
        return flat_document(kind, {field: value for field, value in document.items() if field not in hidden})

    async def _call(self, func, *args):
        return await asyncio.to_thread(func, *args)

    async def ping(self) -> None:
        await self._call(self._driver.ping)

    # ------------------------------------------------------------------
    # ResourceStore
    # ------------------------------------------------------------------
    async def find_one(self, kind: ResourceKind, key: ResourceKey) -> dict[str, Any] | None:
        require_key(kind, key)
        document = await self._call(self._driver.find_one, kind.collection, self._filters(kind, key))
        return self._public(kind, document) if document is not None else None

    async def find_many(self, kind: ResourceKind, key: ResourceKey) -> list[dict[str, Any]]:
        require_key(kind, key, collection=True)
        documents = await self._call(self._driver.find, kind.collection, self._filters(kind, key, collection=True))
        return [self._public(kind, document) for document in documents]

    async def insert_one(self, kind: ResourceKind, key: ResourceKey, document: Mapping[str, Any]) -> dict[str, Any]:
        require_key(kind, key)
        if kind is not ResourceKind.WORKSPACE:
            parent = ResourceKind.DASHBOARD if kind.is_dashboard_child else ResourceKind.WORKSPACE
            parent_key = ResourceKey(key.workspace_id, key.dashboard_id)
            exists = await self._call(self._driver.find_one, parent.collection, self._filters(parent, parent_key))
            if exists is None:
                raise NotFoundError(parent.value, parent_key.target_id(parent))
        stored = flat_document(kind, document)
        stored.update(self._filters(kind, key))
        stored = await self._call(self._driver.insert_one, kind.collection, stored)
        return self._public(kind, stored)

    async def update_one(self, kind: ResourceKind, key: ResourceKey, changes: Mapping[str, Any]) -> dict[str, Any]:
        require_key(kind, key)
        document = await self._call(
            self._driver.update_one, kind.collection, self._filters(kind, key), stamped_changes(kind, changes)
        )
        if document is None:
            raise NotFoundError(kind.value, key.target_id(kind))
        return self._public(kind, document)

    async def update_many(
        self, kind: ResourceKind, key: ResourceKey, changes_by_id: Mapping[str, Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        require_key(kind, key, collection=True)
        stamped = {document_id: stamped_changes(kind, changes) for document_id, changes in changes_by_id.items()}
        documents = await self._call(
            self._driver.update_many, kind.collection, self._filters(kind, key, collection=True), stamped
        )
        return [self._public(kind, document) for document in documents]

    async def delete_one(self, kind: ResourceKind, key: ResourceKey) -> None:
        require_key(kind, key)
        deleted = await self._call(self._driver.delete_one, kind.collection, self._filters(kind, key))
        if not deleted:
            raise NotFoundError(kind.value, key.target_id(kind))
        if kind is ResourceKind.WORKSPACE:
            for collection in COLLECTIONS[1:]:
                await self._call(
                    self._driver.delete_many, collection, {"ownerId": self._owner_id, "workspaceId": key.workspace_id}
                )
        elif kind is ResourceKind.DASHBOARD:
            for child in (ResourceKind.TILE, ResourceKind.NOTE, ResourceKind.CONTACT):
                await self._call(
                    self._driver.delete_many,
                    child.collection,
                    {"ownerId": self._owner_id, "workspaceId": key.workspace_id, "dashboardId": key.dashboard_id},
                )

    async def reassign_workspace_id(self, old_id: str, new_id: str) -> None:
        await self._call(self._driver.rename_workspace, self._owner_id, old_id, new_id)

    async def clear(self) -> None:
        for collection in COLLECTIONS:
            await self._call(self._driver.delete_many, collection, {"ownerId": self._owner_id})
