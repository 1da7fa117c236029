"""Guest store keeping the whole workspace tree in one local storage blob."""
from __future__ import annotations

import copy
import json
from typing import Any, Mapping

from insightdesk.core.logging import get_logger
from insightdesk.domain.errors import DuplicateIdError, NotFoundError
from insightdesk.domain.workspaces import ResourceKey, ResourceKind
from insightdesk.infrastructure.local_storage import LocalStorageDriver
from insightdesk.infrastructure.resources import flat_document, require_key, stamped_changes

LOGGER = get_logger(__name__)

WORKSPACES_STORAGE_KEY = "insights_workspaces"


def _find(items: list[Any], item_id: str | None) -> dict[str, Any] | None:
    for item in items:
        if isinstance(item, dict) and item.get("id") == item_id:
            return item
    return None


def _parent_kind(kind: ResourceKind) -> ResourceKind:
    return ResourceKind.DASHBOARD if kind.is_dashboard_child else ResourceKind.WORKSPACE


class EphemeralResourceStore:
    backend = "ephemeral"

    def __init__(self, driver: LocalStorageDriver) -> None:
        self._driver = driver

    # ------------------------------------------------------------------
    # Tree access
    # ------------------------------------------------------------------
    def _load(self) -> list[dict[str, Any]]:
        raw = self._driver.get(WORKSPACES_STORAGE_KEY)
        if not raw:
            return []
        try:
            tree = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Discarding unreadable guest workspace data")
            return []
        if not isinstance(tree, list):
            LOGGER.warning("Discarding guest workspace data of unexpected type %s", type(tree).__name__)
            return []
        return tree

    def _save(self, tree: list[dict[str, Any]]) -> None:
        self._driver.set(WORKSPACES_STORAGE_KEY, json.dumps(tree, ensure_ascii=False))

    def _collection(self, tree: list[dict[str, Any]], kind: ResourceKind, key: ResourceKey) -> list[Any] | None:
        if kind is ResourceKind.WORKSPACE:
            return tree
        workspace = _find(tree, key.workspace_id)
        if workspace is None:
            return None
        dashboards = workspace.setdefault("dashboards", [])
        if kind is ResourceKind.DASHBOARD:
            return dashboards
        dashboard = _find(dashboards, key.dashboard_id)
        if dashboard is None:
            return None
        return dashboard.setdefault(kind.collection, [])

    def _existing(self, tree: list[dict[str, Any]], kind: ResourceKind, key: ResourceKey) -> dict[str, Any]:
        items = self._collection(tree, kind, key) or []
        document = _find(items, key.target_id(kind))
        if document is None:
            raise NotFoundError(kind.value, key.target_id(kind))
        return document

    def export_graph(self) -> list[dict[str, Any]]:
        """Return the full nested tree as stored."""

        return self._load()

    # ------------------------------------------------------------------
    # ResourceStore
    # ------------------------------------------------------------------
    async def find_one(self, kind: ResourceKind, key: ResourceKey) -> dict[str, Any] | None:
        require_key(kind, key)
        items = self._collection(self._load(), kind, key) or []
        document = _find(items, key.target_id(kind))
        if document is None:
            return None
        return flat_document(kind, copy.deepcopy(document))

    async def find_many(self, kind: ResourceKind, key: ResourceKey) -> list[dict[str, Any]]:
        require_key(kind, key, collection=True)
        items = self._collection(self._load(), kind, key) or []
        return [flat_document(kind, copy.deepcopy(item)) for item in items if isinstance(item, dict)]

    async def insert_one(self, kind: ResourceKind, key: ResourceKey, document: Mapping[str, Any]) -> dict[str, Any]:
        require_key(kind, key)
        tree = self._load()
        items = self._collection(tree, kind, key)
        if items is None:
            parent = _parent_kind(kind)
            raise NotFoundError(parent.value, key.target_id(parent))
        document_id = key.target_id(kind)
        if _find(items, document_id) is not None:
            raise DuplicateIdError(kind.value, document_id)
        stored = copy.deepcopy(dict(document))
        stored["id"] = document_id
        if kind is ResourceKind.WORKSPACE:
            stored["dashboards"] = []
        elif kind is ResourceKind.DASHBOARD:
            stored.update({"workspaceId": key.workspace_id, "tiles": [], "notes": [], "contacts": []})
        items.append(stored)
        self._save(tree)
        return flat_document(kind, copy.deepcopy(stored))

    async def update_one(self, kind: ResourceKind, key: ResourceKey, changes: Mapping[str, Any]) -> dict[str, Any]:
        require_key(kind, key)
        tree = self._load()
        document = self._existing(tree, kind, key)
        document.update(stamped_changes(kind, changes))
        self._save(tree)
        return flat_document(kind, copy.deepcopy(document))

    async def update_many(
        self, kind: ResourceKind, key: ResourceKey, changes_by_id: Mapping[str, Mapping[str, Any]]
    ) -> list[dict[str, Any]]:
        require_key(kind, key, collection=True)
        tree = self._load()
        items = self._collection(tree, kind, key) or []
        targets = []
        for document_id in changes_by_id:
            document = _find(items, document_id)
            if document is None:
                raise NotFoundError(kind.value, document_id)
            targets.append(document)
        for document, changes in zip(targets, changes_by_id.values()):
            document.update(stamped_changes(kind, changes))
        self._save(tree)
        return [flat_document(kind, copy.deepcopy(document)) for document in targets]

    async def delete_one(self, kind: ResourceKind, key: ResourceKey) -> None:
        require_key(kind, key)
        tree = self._load()
        items = self._collection(tree, kind, key) or []
        document = _find(items, key.target_id(kind))
        if document is None:
            raise NotFoundError(kind.value, key.target_id(kind))
        items.remove(document)
        self._save(tree)

    async def reassign_workspace_id(self, old_id: str, new_id: str) -> None:
        tree = self._load()
        workspace = _find(tree, old_id)
        if workspace is None:
            raise NotFoundError("workspace", old_id)
        if _find(tree, new_id) is not None:
            raise DuplicateIdError("workspace", new_id)
        workspace["id"] = new_id
        for dashboard in workspace.get("dashboards", []):
            if isinstance(dashboard, dict):
                dashboard["workspaceId"] = new_id
        self._save(tree)
        LOGGER.info("Reassigned guest workspace %s to %s", old_id, new_id)

    async def clear(self) -> None:
        self._driver.remove(WORKSPACES_STORAGE_KEY)
