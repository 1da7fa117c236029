"""Copy a guest's workspace graph into a member's durable store.

Every entity is upserted by its natural key so running the same migration
twice converges on the same durable state. Problems with individual entities
are recorded in the summary and the walk continues; only an unavailable
durable backend stops it early. The guest's own store is never modified.
"""
from __future__ import annotations

from typing import Any, Callable, Mapping

from pydantic import ValidationError as PydanticValidationError

from insightdesk.application.aggregates import WorkspaceAggregateManager
from insightdesk.core.ids import utc_now
from insightdesk.core.logging import get_logger
from insightdesk.core.plans import MigrationLimits
from insightdesk.core.schema import (
    DEFAULT_DASHBOARD_BG,
    DEFAULT_NOTE_TITLE,
    DEFAULT_TILE_MODEL,
    Contact,
    Dashboard,
    MigrationRequest,
    Note,
    Tile,
    Workspace,
)
from insightdesk.domain.errors import BackendUnavailableError, DuplicateIdError, WorkspaceError
from insightdesk.domain.workspaces import Identity, MigrationSummary, ResourceKey, ResourceKind
from insightdesk.infrastructure.durable import DurableResourceStore
from insightdesk.infrastructure.selector import StoreSelector

LOGGER = get_logger(__name__)

CONTACT_FIELDS = ("jobTitle", "linkedinUrl", "email", "phone", "company", "notes")
MODEL_BY_KIND = {
    ResourceKind.WORKSPACE: Workspace,
    ResourceKind.DASHBOARD: Dashboard,
    ResourceKind.TILE: Tile,
    ResourceKind.NOTE: Note,
    ResourceKind.CONTACT: Contact,
}


def _text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def _int(value: Any, default: int | None) -> int | None:
    if isinstance(value, bool):
        return default
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return default


def _history(entries: Any, owner_id: str, fallback: str) -> list[dict[str, Any]]:
    """Keep well-formed messages; unknown roles become ``user``."""

    if not isinstance(entries, list):
        return []
    messages = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        content = entry.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        role = entry.get("role")
        kind = entry.get("kind")
        messages.append(
            {
                "id": _text(entry.get("id")) or f"{owner_id}_msg_{index}",
                "role": role if role in ("assistant", "system") else "user",
                "content": content,
                "createdAt": _text(entry.get("createdAt")) or fallback,
                "kind": kind if kind in ("chat", "regeneration") else "chat",
            }
        )
    return messages


def _tile(item: Mapping[str, Any], index: int, fallback: str) -> dict[str, Any] | None:
    tile_id = _text(item.get("id"))
    title = _text(item.get("title"))
    content = item.get("content")
    if not tile_id or not title or not isinstance(content, str) or not content.strip():
        return None
    created_at = _text(item.get("createdAt")) or fallback
    prompt = item.get("prompt")
    return {
        "id": tile_id,
        "title": title,
        "content": content,
        "prompt": prompt if isinstance(prompt, str) else "",
        "model": _text(item.get("model")) or DEFAULT_TILE_MODEL,
        "orderIndex": _int(item.get("orderIndex"), index),
        "createdAt": created_at,
        "updatedAt": _text(item.get("updatedAt")) or created_at,
        "attempts": _int(item.get("attempts"), 0),
        "totalTokens": _int(item.get("totalTokens"), None),
        "history": _history(item.get("history"), tile_id, created_at),
    }


def _note(item: Mapping[str, Any], index: int, fallback: str) -> dict[str, Any] | None:
    note_id = _text(item.get("id"))
    content = item.get("content")
    if not note_id or not isinstance(content, str) or not content.strip():
        return None
    created_at = _text(item.get("createdAt")) or fallback
    return {
        "id": note_id,
        "title": _text(item.get("title")) or DEFAULT_NOTE_TITLE,
        "content": content,
        "createdAt": created_at,
        "updatedAt": _text(item.get("updatedAt")) or created_at,
    }


def _contact(item: Mapping[str, Any], index: int, fallback: str) -> dict[str, Any] | None:
    contact_id = _text(item.get("id"))
    name = _text(item.get("name"))
    if not contact_id or not name:
        return None
    created_at = _text(item.get("createdAt")) or fallback
    document = {
        "id": contact_id,
        "name": name,
        "createdAt": created_at,
        "updatedAt": _text(item.get("updatedAt")) or created_at,
        "chatHistory": _history(item.get("chatHistory"), contact_id, created_at),
    }
    for field in CONTACT_FIELDS:
        document[field] = _text(item.get(field))
    return document


class MigrationEngine:
    def __init__(
        self,
        selector: StoreSelector,
        limits: MigrationLimits | None = None,
        aggregates: WorkspaceAggregateManager | None = None,
    ) -> None:
        self._selector = selector
        self._limits = limits or MigrationLimits()
        self._aggregates = aggregates

    @property
    def limits(self) -> MigrationLimits:
        return self._limits

    async def migrate(self, identity: Identity, graph: Any) -> MigrationSummary:
        """Upsert ``graph`` into ``identity``'s durable store and report the counts.

        ``graph`` is the guest's nested workspace list, either bare or wrapped
        as ``{"workspaces": [...]}``. This method never raises.
        """

        summary = MigrationSummary()
        if not identity.is_member:
            summary.errors.append("Migration requires a member identity")
            return summary
        workspaces = self._workspaces(graph, summary)
        if not workspaces:
            return summary

        store = self._selector.durable_for(identity)
        try:
            await store.ping()
        except BackendUnavailableError as exc:
            LOGGER.error("Migration for %s aborted, durable store unavailable: %s", identity.scope, exc)
            summary.errors.append(f"Durable store unavailable: {exc}")
            return summary

        LOGGER.info("Migrating %s guest workspaces for %s", len(workspaces), identity.scope)
        try:
            await self._migrate_workspaces(store, identity, workspaces, summary)
        except BackendUnavailableError as exc:
            LOGGER.error("Migration for %s stopped early: %s", identity.scope, exc)
            summary.errors.append(f"Migration stopped: {exc}")
        finally:
            if self._aggregates is not None:
                self._aggregates.invalidate(identity)
        LOGGER.info("Migration for %s finished: %s", identity.scope, summary.to_dict())
        return summary

    def _workspaces(self, graph: Any, summary: MigrationSummary) -> list[Any]:
        if isinstance(graph, MigrationRequest):
            return list(graph.workspaces)
        if isinstance(graph, Mapping):
            graph = graph.get("workspaces")
        if isinstance(graph, list):
            return graph
        summary.errors.append("Invalid workspace data")
        return []

    def _cap(self, items: Any, limit: int, message: str, summary: MigrationSummary) -> list[Any]:
        if not isinstance(items, list):
            return []
        if len(items) > limit:
            summary.errors.append(message)
            LOGGER.warning(message)
            return items[:limit]
        return items

    async def _upsert(
        self, store: DurableResourceStore, kind: ResourceKind, key: ResourceKey, document: dict[str, Any]
    ) -> None:
        MODEL_BY_KIND[kind].model_validate(document)
        if await store.find_one(kind, key) is None:
            try:
                await store.insert_one(kind, key, document)
                return
            except DuplicateIdError:
                LOGGER.info("%s %s appeared during migration, updating instead", kind.value, key.target_id(kind))
        await store.update_one(kind, key, document)

    # ------------------------------------------------------------------
    # Graph walk
    # ------------------------------------------------------------------
    async def _migrate_workspaces(
        self,
        store: DurableResourceStore,
        identity: Identity,
        workspaces: list[Any],
        summary: MigrationSummary,
    ) -> None:
        limit = self._limits.max_workspaces
        seen: set[str] = set()
        for raw in self._cap(workspaces, limit, f"Workspaces truncated (max {limit})", summary):
            if not isinstance(raw, dict) or not _text(raw.get("id")) or not _text(raw.get("name")):
                summary.errors.append("Workspace missing required fields")
                continue
            workspace_id = _text(raw["id"])
            if workspace_id in seen:
                summary.errors.append(f"Duplicate workspace id detected: {workspace_id}")
                continue
            seen.add(workspace_id)
            try:
                await self._migrate_workspace(store, identity, workspace_id, raw, summary)
            except BackendUnavailableError:
                raise
            except (WorkspaceError, PydanticValidationError) as exc:
                summary.errors.append(f"Failed to migrate workspace {workspace_id}: {exc}")

    async def _migrate_workspace(
        self,
        store: DurableResourceStore,
        identity: Identity,
        workspace_id: str,
        raw: Mapping[str, Any],
        summary: MigrationSummary,
    ) -> None:
        created_at = _text(raw.get("createdAt")) or utc_now()
        document = {
            "id": workspace_id,
            "name": _text(raw.get("name")),
            "website": _text(raw.get("website")),
            "ownerId": identity.id,
            "createdAt": created_at,
            "updatedAt": _text(raw.get("updatedAt")) or created_at,
        }
        await self._upsert(store, ResourceKind.WORKSPACE, ResourceKey(workspace_id), document)
        summary.workspaces_migrated += 1

        limit = self._limits.max_dashboards_per_workspace
        dashboards = self._cap(
            raw.get("dashboards"), limit, f"Dashboards truncated for workspace {workspace_id} (max {limit})", summary
        )
        valid: list[dict[str, Any]] = []
        seen: set[str] = set()
        for dashboard in dashboards:
            if not isinstance(dashboard, dict) or not _text(dashboard.get("id")) or not _text(dashboard.get("name")):
                summary.errors.append(f"Dashboard missing required fields in workspace {workspace_id}")
                continue
            dashboard_id = _text(dashboard["id"])
            parent = dashboard.get("workspaceId")
            if parent is not None and parent != workspace_id:
                summary.errors.append(f"Dashboard {dashboard_id} has mismatched workspaceId {parent}")
                continue
            if dashboard_id in seen:
                summary.errors.append(f"Duplicate dashboard id {dashboard_id} in workspace {workspace_id}")
                continue
            seen.add(dashboard_id)
            valid.append(dashboard)

        flagged = [dashboard for dashboard in valid if dashboard.get("isActive") is True]
        active = (flagged or valid or [None])[0]
        for dashboard in valid:
            dashboard_id = _text(dashboard["id"])
            try:
                await self._migrate_dashboard(
                    store, workspace_id, dashboard_id, dashboard, dashboard is active, created_at, summary
                )
            except BackendUnavailableError:
                raise
            except (WorkspaceError, PydanticValidationError) as exc:
                summary.errors.append(f"Failed to migrate dashboard {dashboard_id}: {exc}")

    async def _migrate_dashboard(
        self,
        store: DurableResourceStore,
        workspace_id: str,
        dashboard_id: str,
        raw: Mapping[str, Any],
        is_active: bool,
        fallback: str,
        summary: MigrationSummary,
    ) -> None:
        created_at = _text(raw.get("createdAt")) or fallback
        document = {
            "id": dashboard_id,
            "workspaceId": workspace_id,
            "name": _text(raw.get("name")),
            "templateId": _text(raw.get("templateId")),
            "bgColor": _text(raw.get("bgColor")) or DEFAULT_DASHBOARD_BG,
            "isActive": is_active,
            "createdAt": created_at,
            "updatedAt": _text(raw.get("updatedAt")) or created_at,
        }
        await self._upsert(store, ResourceKind.DASHBOARD, ResourceKey(workspace_id, dashboard_id), document)
        summary.dashboards_migrated += 1

        children: list[tuple[ResourceKind, str, int, Callable[..., dict[str, Any] | None]]] = [
            (ResourceKind.TILE, "Tiles", self._limits.max_tiles_per_dashboard, _tile),
            (ResourceKind.CONTACT, "Contacts", self._limits.max_contacts_per_dashboard, _contact),
            (ResourceKind.NOTE, "Notes", self._limits.max_notes_per_dashboard, _note),
        ]
        for kind, label, limit, normalise in children:
            items = self._cap(
                raw.get(kind.collection), limit, f"{label} truncated for dashboard {dashboard_id} (max {limit})", summary
            )
            await self._migrate_children(
                store, kind, ResourceKey(workspace_id, dashboard_id), items, normalise, created_at, summary
            )

    async def _migrate_children(
        self,
        store: DurableResourceStore,
        kind: ResourceKind,
        container: ResourceKey,
        items: list[Any],
        normalise: Callable[..., dict[str, Any] | None],
        fallback: str,
        summary: MigrationSummary,
    ) -> None:
        dashboard_id = container.dashboard_id
        seen: set[str] = set()
        counter = f"{kind.collection}_migrated"
        for index, item in enumerate(items):
            document = normalise(item, index, fallback) if isinstance(item, dict) else None
            if document is None:
                summary.errors.append(f"{kind.value.capitalize()} missing required fields in dashboard {dashboard_id}")
                continue
            resource_id = document["id"]
            if resource_id in seen:
                summary.errors.append(f"Duplicate {kind.value} id {resource_id} in dashboard {dashboard_id}")
                continue
            seen.add(resource_id)
            key = ResourceKey(container.workspace_id, dashboard_id, resource_id)
            try:
                await self._upsert(store, kind, key, document)
            except BackendUnavailableError:
                raise
            except (WorkspaceError, PydanticValidationError) as exc:
                summary.errors.append(f"Failed to migrate {kind.value} {resource_id}: {exc}")
                continue
            setattr(summary, counter, getattr(summary, counter) + 1)
