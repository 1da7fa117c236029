"""Workspace and dashboard aggregates.

The manager keeps an in-memory mirror of each guest session's workspace
tree, hydrated from the session's store on first access. Member stores are
shared with other workers and devices, so member trees are read from the
durable store on every call and never mirrored. Every change is written
through the store first; the mirror only follows successful writes.
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Any, Mapping

from insightdesk.core.ids import new_id, utc_now
from insightdesk.core.logging import get_logger
from insightdesk.core.schema import (
    DEFAULT_DASHBOARD_NAME,
    DEFAULT_TILE_MODEL,
    Contact,
    Dashboard,
    Note,
    Tile,
    Workspace,
    WorkspaceSnapshot,
)
from insightdesk.core.validation import optional_text, require_text
from insightdesk.domain.errors import DuplicateIdError, NotFoundError, ValidationError, WorkspaceError
from insightdesk.domain.workspaces import ContainerRef, Identity, ResourceKey, ResourceKind
from insightdesk.infrastructure.resources import ResourceStore
from insightdesk.infrastructure.selector import StoreSelector

LOGGER = get_logger(__name__)

MODEL_BY_KIND = {
    ResourceKind.TILE: Tile,
    ResourceKind.NOTE: Note,
    ResourceKind.CONTACT: Contact,
}


def default_dashboard_id(workspace_id: str) -> str:
    return f"dashboard_{workspace_id}_default"


class AggregateMirror:
    """Workspace trees keyed by identity scope.

    At most ``capacity`` trees are kept; the least recently used one is
    dropped first and rehydrated from its store on the next access.
    """

    def __init__(self, capacity: int = 1024) -> None:
        if capacity < 1:
            raise ValueError("mirror capacity must be positive")
        self._capacity = capacity
        self._trees: OrderedDict[str, dict[str, Workspace]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._trees)

    def get(self, scope: str) -> dict[str, Workspace] | None:
        tree = self._trees.get(scope)
        if tree is not None:
            self._trees.move_to_end(scope)
        return tree

    def put(self, scope: str, tree: dict[str, Workspace]) -> None:
        self._trees[scope] = tree
        self._trees.move_to_end(scope)
        while len(self._trees) > self._capacity:
            evicted, _ = self._trees.popitem(last=False)
            LOGGER.debug("Evicted mirrored tree for %s", evicted)

    def drop(self, scope: str) -> None:
        self._trees.pop(scope, None)

    def clear(self) -> None:
        self._trees.clear()


def _normalise_active(workspace: Workspace) -> None:
    if not workspace.dashboards:
        return
    active = [dashboard for dashboard in workspace.dashboards if dashboard.is_active]
    if len(active) == 1:
        return
    keep = active[0] if active else workspace.dashboards[0]
    LOGGER.warning(
        "Workspace %s had %s active dashboards, keeping %s", workspace.id, len(active), keep.id
    )
    for dashboard in workspace.dashboards:
        dashboard.is_active = dashboard is keep


class WorkspaceAggregateManager:
    def __init__(self, selector: StoreSelector, mirror: AggregateMirror | None = None) -> None:
        self._selector = selector
        self._mirror = mirror if mirror is not None else AggregateMirror()

    @property
    def mirror(self) -> AggregateMirror:
        return self._mirror

    def store_for(self, identity: Identity) -> ResourceStore:
        return self._selector.for_identity(identity)

    # ------------------------------------------------------------------
    # Hydration
    # ------------------------------------------------------------------
    async def _tree(self, identity: Identity) -> dict[str, Workspace]:
        if identity.is_member:
            return await self._hydrate(identity)
        tree = self._mirror.get(identity.scope)
        if tree is None:
            tree = await self._hydrate(identity)
            self._mirror.put(identity.scope, tree)
        return tree

    async def _hydrate(self, identity: Identity) -> dict[str, Workspace]:
        store = self.store_for(identity)
        tree: dict[str, Workspace] = {}
        for workspace_doc in await store.find_many(ResourceKind.WORKSPACE, ResourceKey()):
            workspace = Workspace.from_document(workspace_doc)
            for dashboard_doc in await store.find_many(ResourceKind.DASHBOARD, ResourceKey(workspace.id)):
                dashboard = Dashboard.from_document(dashboard_doc)
                key = ResourceKey(workspace.id, dashboard.id)
                tiles = [Tile.from_document(doc) for doc in await store.find_many(ResourceKind.TILE, key)]
                dashboard.tiles = sorted(tiles, key=lambda tile: tile.order_index)
                dashboard.notes = [Note.from_document(doc) for doc in await store.find_many(ResourceKind.NOTE, key)]
                dashboard.contacts = [
                    Contact.from_document(doc) for doc in await store.find_many(ResourceKind.CONTACT, key)
                ]
                workspace.dashboards.append(dashboard)
            _normalise_active(workspace)
            tree[workspace.id] = workspace
        LOGGER.debug("Hydrated %s workspaces for %s", len(tree), identity.scope)
        return tree

    def invalidate(self, identity: Identity) -> None:
        self._mirror.drop(identity.scope)

    def _workspace(self, tree: dict[str, Workspace], workspace_id: str) -> Workspace:
        workspace = tree.get(workspace_id)
        if workspace is None:
            raise NotFoundError("workspace", workspace_id)
        return workspace

    def _dashboard(self, workspace: Workspace, dashboard_id: str) -> Dashboard:
        for dashboard in workspace.dashboards:
            if dashboard.id == dashboard_id:
                return dashboard
        raise NotFoundError("dashboard", dashboard_id)

    def _replace_workspace(self, tree: dict[str, Workspace], document: Mapping[str, Any]) -> Workspace:
        updated = Workspace.from_document(dict(document))
        updated.dashboards = tree[updated.id].dashboards
        tree[updated.id] = updated
        return updated

    def _replace_dashboard(self, workspace: Workspace, document: Mapping[str, Any]) -> Dashboard:
        updated = Dashboard.from_document(dict(document))
        for index, dashboard in enumerate(workspace.dashboards):
            if dashboard.id == updated.id:
                updated.tiles = dashboard.tiles
                updated.notes = dashboard.notes
                updated.contacts = dashboard.contacts
                workspace.dashboards[index] = updated
                break
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def list_workspaces(self, identity: Identity) -> list[Workspace]:
        tree = await self._tree(identity)
        return [workspace.model_copy(deep=True) for workspace in tree.values()]

    async def get_workspace(self, identity: Identity, workspace_id: str) -> Workspace:
        tree = await self._tree(identity)
        return self._workspace(tree, workspace_id).model_copy(deep=True)

    async def get_dashboard(self, identity: Identity, workspace_id: str, dashboard_id: str) -> Dashboard:
        tree = await self._tree(identity)
        workspace = self._workspace(tree, workspace_id)
        return self._dashboard(workspace, dashboard_id).model_copy(deep=True)

    async def get_active_dashboard(self, identity: Identity, workspace_id: str) -> Dashboard | None:
        tree = await self._tree(identity)
        workspace = self._workspace(tree, workspace_id)
        for dashboard in workspace.dashboards:
            if dashboard.is_active:
                return dashboard.model_copy(deep=True)
        if workspace.dashboards:
            return workspace.dashboards[0].model_copy(deep=True)
        return None

    async def find_workspace(self, identity: Identity, snapshot: WorkspaceSnapshot) -> Workspace | None:
        """Find the workspace a snapshot describes.

        Lookup is by id first, then by ``(name, website)``. A name match whose
        stored id differs from the snapshot's id is renamed to the snapshot's
        id so later lookups by id succeed.
        """

        tree = await self._tree(identity)
        if snapshot.id and snapshot.id in tree:
            return tree[snapshot.id].model_copy(deep=True)

        name = snapshot.name.strip()
        website = optional_text(snapshot.website)
        matches = [workspace for workspace in tree.values() if workspace.name == name and workspace.website == website]
        if not matches:
            return None
        if len(matches) > 1:
            LOGGER.error(
                "Found %s workspaces named %r (%s) for %s, using the oldest",
                len(matches),
                name,
                website,
                identity.scope,
            )
        match = min(matches, key=lambda workspace: workspace.created_at)

        if snapshot.id and snapshot.id != match.id:
            old_id = match.id
            await self.store_for(identity).reassign_workspace_id(old_id, snapshot.id)
            del tree[old_id]
            match.id = snapshot.id
            for dashboard in match.dashboards:
                dashboard.workspace_id = snapshot.id
            tree[snapshot.id] = match
        return match.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Workspace lifecycle
    # ------------------------------------------------------------------
    async def create_workspace(self, identity: Identity, snapshot: WorkspaceSnapshot) -> Workspace:
        tree = await self._tree(identity)
        store = self.store_for(identity)
        now = utc_now()
        workspace_id = optional_text(snapshot.id) or new_id("workspace")
        if workspace_id in tree:
            raise DuplicateIdError("workspace", workspace_id)

        workspace = Workspace(
            id=workspace_id,
            name=require_text("name", snapshot.name),
            website=optional_text(snapshot.website),
            owner_id=identity.id if identity.is_member else None,
            created_at=now,
            updated_at=now,
        )
        dashboard = Dashboard(
            id=default_dashboard_id(workspace_id),
            workspace_id=workspace_id,
            name=DEFAULT_DASHBOARD_NAME,
            template_id=optional_text(snapshot.template_id),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        for index, draft in enumerate(snapshot.tiles):
            dashboard.tiles.append(
                Tile(
                    id=optional_text(draft.id) or new_id("tile"),
                    title=require_text(f"tiles.{index}.title", draft.title),
                    content=require_text(f"tiles.{index}.content", draft.content),
                    prompt=draft.prompt.strip(),
                    model=optional_text(draft.model) or DEFAULT_TILE_MODEL,
                    order_index=index,
                    created_at=now,
                    updated_at=now,
                    total_tokens=draft.total_tokens,
                )
            )

        await store.insert_one(ResourceKind.WORKSPACE, ResourceKey(workspace_id), workspace.to_document())
        try:
            await store.insert_one(
                ResourceKind.DASHBOARD, ResourceKey(workspace_id, dashboard.id), dashboard.to_document()
            )
            for tile in dashboard.tiles:
                await store.insert_one(
                    ResourceKind.TILE, ResourceKey(workspace_id, dashboard.id, tile.id), tile.to_document()
                )
        except WorkspaceError:
            await self._discard_partial_workspace(store, workspace_id)
            raise

        workspace.dashboards.append(dashboard)
        tree[workspace_id] = workspace
        LOGGER.info("Created workspace %s with %s tiles for %s", workspace_id, len(dashboard.tiles), identity.scope)
        return workspace.model_copy(deep=True)

    async def _discard_partial_workspace(self, store: ResourceStore, workspace_id: str) -> None:
        try:
            await store.delete_one(ResourceKind.WORKSPACE, ResourceKey(workspace_id))
        except WorkspaceError as exc:
            LOGGER.error("Could not discard partially created workspace %s: %s", workspace_id, exc)

    async def get_or_create_workspace(self, identity: Identity, snapshot: WorkspaceSnapshot) -> tuple[Workspace, bool]:
        existing = await self.find_workspace(identity, snapshot)
        if existing is not None:
            return existing, False
        return await self.create_workspace(identity, snapshot), True

    async def update_workspace(
        self, identity: Identity, workspace_id: str, changes: Mapping[str, Any]
    ) -> Workspace:
        tree = await self._tree(identity)
        workspace = self._workspace(tree, workspace_id)
        if not changes:
            return workspace.model_copy(deep=True)
        document = await self.store_for(identity).update_one(
            ResourceKind.WORKSPACE, ResourceKey(workspace_id), changes
        )
        return self._replace_workspace(tree, document).model_copy(deep=True)

    async def reset(self, identity: Identity) -> None:
        """Drop a guest's whole tree."""

        if identity.is_member:
            raise ValidationError("identity", "only guest sessions can be reset")
        await self.store_for(identity).clear()
        self.invalidate(identity)
        LOGGER.info("Cleared guest workspace data for %s", identity.scope)

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------
    async def create_dashboard(
        self, identity: Identity, workspace_id: str, name: str, template_id: str | None = None
    ) -> Dashboard:
        tree = await self._tree(identity)
        workspace = self._workspace(tree, workspace_id)
        store = self.store_for(identity)
        now = utc_now()
        dashboard = Dashboard(
            id=new_id("dashboard"),
            workspace_id=workspace_id,
            name=require_text("name", name),
            template_id=optional_text(template_id),
            is_active=True,
            created_at=now,
            updated_at=now,
        )
        document = await store.insert_one(
            ResourceKind.DASHBOARD, ResourceKey(workspace_id, dashboard.id), dashboard.to_document()
        )
        demote = {sibling.id: {"isActive": False} for sibling in workspace.dashboards if sibling.is_active}
        if demote:
            try:
                demoted = await store.update_many(ResourceKind.DASHBOARD, ResourceKey(workspace_id), demote)
            except WorkspaceError:
                self.invalidate(identity)
                raise
            for sibling_doc in demoted:
                self._replace_dashboard(workspace, sibling_doc)
        created = Dashboard.from_document(document)
        workspace.dashboards.append(created)
        LOGGER.info("Created dashboard %s in workspace %s", created.id, workspace_id)
        return created.model_copy(deep=True)

    async def set_active_dashboard(self, identity: Identity, workspace_id: str, dashboard_id: str) -> Dashboard:
        tree = await self._tree(identity)
        workspace = self._workspace(tree, workspace_id)
        self._dashboard(workspace, dashboard_id)
        changes = {
            dashboard.id: {"isActive": dashboard.id == dashboard_id}
            for dashboard in workspace.dashboards
            if dashboard.is_active != (dashboard.id == dashboard_id)
        }
        if changes:
            documents = await self.store_for(identity).update_many(
                ResourceKind.DASHBOARD, ResourceKey(workspace_id), changes
            )
            for document in documents:
                self._replace_dashboard(workspace, document)
        return self._dashboard(workspace, dashboard_id).model_copy(deep=True)

    async def update_dashboard(
        self,
        identity: Identity,
        workspace_id: str,
        dashboard_id: str,
        *,
        name: str | None = None,
        bg_color: str | None = None,
    ) -> Dashboard:
        tree = await self._tree(identity)
        workspace = self._workspace(tree, workspace_id)
        dashboard = self._dashboard(workspace, dashboard_id)
        changes: dict[str, Any] = {}
        if name is not None:
            changes["name"] = require_text("name", name)
        if bg_color is not None:
            changes["bgColor"] = require_text("bgColor", bg_color)
        if not changes:
            return dashboard.model_copy(deep=True)
        document = await self.store_for(identity).update_one(
            ResourceKind.DASHBOARD, ResourceKey(workspace_id, dashboard_id), changes
        )
        return self._replace_dashboard(workspace, document).model_copy(deep=True)

    async def delete_dashboard(self, identity: Identity, workspace_id: str, dashboard_id: str) -> Dashboard | None:
        """Delete a dashboard and return the workspace's active dashboard afterwards."""

        tree = await self._tree(identity)
        workspace = self._workspace(tree, workspace_id)
        target = self._dashboard(workspace, dashboard_id)
        store = self.store_for(identity)
        await store.delete_one(ResourceKind.DASHBOARD, ResourceKey(workspace_id, dashboard_id))
        workspace.dashboards.remove(target)
        LOGGER.info("Deleted dashboard %s from workspace %s", dashboard_id, workspace_id)
        if not workspace.dashboards:
            return None
        if target.is_active:
            promoted = workspace.dashboards[0]
            try:
                documents = await store.update_many(
                    ResourceKind.DASHBOARD, ResourceKey(workspace_id), {promoted.id: {"isActive": True}}
                )
            except WorkspaceError:
                self.invalidate(identity)
                raise
            for document in documents:
                self._replace_dashboard(workspace, document)
        return await self.get_active_dashboard(identity, workspace_id)

    # ------------------------------------------------------------------
    # Mirror maintenance for dashboard resources
    # ------------------------------------------------------------------
    def _mirrored_dashboard(self, identity: Identity, container: ContainerRef) -> Dashboard | None:
        tree = self._mirror.get(identity.scope)
        if tree is None:
            return None
        workspace = tree.get(container.workspace_id)
        if workspace is None:
            return None
        for dashboard in workspace.dashboards:
            if dashboard.id == container.dashboard_id:
                return dashboard
        return None

    def apply_resource(
        self, identity: Identity, kind: ResourceKind, container: ContainerRef, document: Mapping[str, Any]
    ) -> None:
        """Upsert a stored tile, note or contact into the mirror."""

        dashboard = self._mirrored_dashboard(identity, container)
        if dashboard is None:
            return
        entity = MODEL_BY_KIND[kind].from_document(dict(document))
        items = dashboard.collection(kind.collection)
        for index, item in enumerate(items):
            if item.id == entity.id:
                items[index] = entity
                break
        else:
            items.append(entity)
        if kind is ResourceKind.TILE:
            items.sort(key=lambda tile: tile.order_index)

    def discard_resource(
        self, identity: Identity, kind: ResourceKind, container: ContainerRef, resource_id: str
    ) -> None:
        dashboard = self._mirrored_dashboard(identity, container)
        if dashboard is None:
            return
        items = dashboard.collection(kind.collection)
        items[:] = [item for item in items if item.id != resource_id]

    async def touch(self, identity: Identity, container: ContainerRef, stamp: str) -> None:
        """Stamp ``updatedAt`` on a dashboard and its workspace."""

        store = self.store_for(identity)
        dashboard_doc = await store.update_one(
            ResourceKind.DASHBOARD,
            ResourceKey(container.workspace_id, container.dashboard_id),
            {"updatedAt": stamp},
        )
        workspace_doc = await store.update_one(
            ResourceKind.WORKSPACE, ResourceKey(container.workspace_id), {"updatedAt": stamp}
        )
        tree = self._mirror.get(identity.scope)
        if tree is None or container.workspace_id not in tree:
            return
        workspace = self._replace_workspace(tree, workspace_doc)
        self._replace_dashboard(workspace, dashboard_doc)
