"""Quota-checked mutations over workspaces, dashboards and their resources.

Every resource mutation follows the same sequence: resolve the container,
evaluate the quota, build and validate the entity, reserve the quota unit,
write through the identity's store and finally update the aggregate mirror
and notify listeners. A failed write releases the reserved unit before the
error propagates.
"""
from __future__ import annotations

from typing import Any, Iterable, Mapping, Protocol

from insightdesk.application.aggregates import WorkspaceAggregateManager
from insightdesk.application.quota import QuotaLedger
from insightdesk.core.ids import new_id, utc_now
from insightdesk.core.logging import get_logger
from insightdesk.core.schema import (
    DEFAULT_NOTE_TITLE,
    DEFAULT_TILE_MODEL,
    ChatRequest,
    Contact,
    ContactCreate,
    ContactUpdate,
    Dashboard,
    DashboardCreate,
    DashboardUpdate,
    Message,
    Note,
    NoteCreate,
    NoteUpdate,
    RegenerateRequest,
    Tile,
    TileCreate,
    TileReorder,
    TileUpdate,
    WorkspaceSnapshot,
    WorkspaceUpdate,
)
from insightdesk.core.validation import coerce_payload, optional_text, require_text
from insightdesk.domain.errors import (
    AssistantUnavailableError,
    InvalidOrderError,
    NotFoundError,
    QuotaExceededError,
    WorkspaceError,
)
from insightdesk.domain.workspaces import (
    ChatOutcome,
    ContainerRef,
    Identity,
    MutationEvent,
    MutationResult,
    QuotaAction,
    QuotaResult,
    ResourceKey,
    ResourceKind,
)
from insightdesk.infrastructure.assistant import AssistantClient, AssistantRequest, get_assistant_client
from insightdesk.infrastructure.selector import StoreSelector

LOGGER = get_logger(__name__)

CONTACT_FIELDS = ("job_title", "linkedin_url", "email", "phone", "company", "notes")


class MutationListener(Protocol):
    async def on_committed(self, event: MutationEvent) -> None:
        """Called after a mutation has been persisted."""


def _camel(field: str) -> str:
    head, *rest = field.split("_")
    return head + "".join(part.capitalize() for part in rest)


class MutationOrchestrator:
    def __init__(
        self,
        selector: StoreSelector,
        ledger: QuotaLedger,
        aggregates: WorkspaceAggregateManager,
        *,
        assistant: AssistantClient | None = None,
        listeners: Iterable[MutationListener] = (),
    ) -> None:
        self._selector = selector
        self._ledger = ledger
        self._aggregates = aggregates
        self._assistant = assistant
        self._listeners: list[MutationListener] = list(listeners)

    @property
    def aggregates(self) -> WorkspaceAggregateManager:
        return self._aggregates

    @property
    def ledger(self) -> QuotaLedger:
        return self._ledger

    @property
    def assistant(self) -> AssistantClient:
        return self._assistant or get_assistant_client()

    def add_listener(self, listener: MutationListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------
    async def _check(self, identity: Identity, action: QuotaAction) -> None:
        evaluation = await self._ledger.evaluate(identity, action)
        if not evaluation.allowed:
            raise QuotaExceededError(action.value, evaluation.used, evaluation.limit)

    async def _consume(self, identity: Identity, action: QuotaAction) -> QuotaResult:
        result = await self._ledger.consume(identity, action)
        if not result.allowed:
            raise QuotaExceededError(action.value, result.used, result.limit)
        return result

    async def _release(self, identity: Identity, action: QuotaAction) -> None:
        try:
            await self._ledger.rollback(identity, action)
        except WorkspaceError as exc:
            LOGGER.error("Quota rollback of %s failed for %s: %s", action.value, identity.scope, exc)

    async def _notify(self, event: MutationEvent) -> None:
        for listener in self._listeners:
            try:
                await listener.on_committed(event)
            except Exception:  # listeners never affect the mutation outcome
                LOGGER.exception("Mutation listener %r failed for %s", listener, event.operation)

    async def _commit(
        self,
        identity: Identity,
        kind: ResourceKind,
        operation: str,
        container: ContainerRef,
        document: Mapping[str, Any] | None,
        resource_id: str,
    ) -> None:
        if document is None:
            self._aggregates.discard_resource(identity, kind, container, resource_id)
        else:
            self._aggregates.apply_resource(identity, kind, container, document)
        try:
            await self._aggregates.touch(identity, container, utc_now())
        except WorkspaceError as exc:
            LOGGER.warning("Could not stamp dashboard %s after %s: %s", container.dashboard_id, operation, exc)
        LOGGER.info("%s %s %s in %s", operation, kind.value, resource_id, container.dashboard_id)
        await self._notify(
            MutationEvent(identity, kind, operation, container.workspace_id, container.dashboard_id, resource_id)
        )

    async def _container(self, identity: Identity, container: ContainerRef) -> Dashboard:
        return await self._aggregates.get_dashboard(identity, container.workspace_id, container.dashboard_id)

    def _find(self, dashboard: Dashboard, kind: ResourceKind, resource_id: str):
        for item in dashboard.collection(kind.collection):
            if item.id == resource_id:
                return item
        raise NotFoundError(kind.value, resource_id)

    async def _insert(
        self,
        identity: Identity,
        kind: ResourceKind,
        container: ContainerRef,
        entity: Any,
        action: QuotaAction | None,
    ) -> tuple[dict[str, Any], QuotaResult | None]:
        quota = await self._consume(identity, action) if action else None
        store = self._selector.for_identity(identity)
        try:
            document = await store.insert_one(kind, ResourceKey.within(container, entity.id), entity.to_document())
        except WorkspaceError:
            if action:
                await self._release(identity, action)
            raise
        await self._commit(identity, kind, "created", container, document, entity.id)
        return document, quota

    async def _update(
        self,
        identity: Identity,
        kind: ResourceKind,
        container: ContainerRef,
        resource_id: str,
        changes: Mapping[str, Any],
        operation: str = "updated",
    ) -> dict[str, Any]:
        store = self._selector.for_identity(identity)
        document = await store.update_one(kind, ResourceKey.within(container, resource_id), changes)
        await self._commit(identity, kind, operation, container, document, resource_id)
        return document

    async def _delete(
        self, identity: Identity, kind: ResourceKind, container: ContainerRef, resource_id: str
    ) -> Dashboard:
        """Delete one resource and return its dashboard as it was before the delete."""

        dashboard = await self._container(identity, container)
        self._find(dashboard, kind, resource_id)
        store = self._selector.for_identity(identity)
        await store.delete_one(kind, ResourceKey.within(container, resource_id))
        await self._commit(identity, kind, "deleted", container, None, resource_id)
        return dashboard

    async def _assign_positions(
        self, identity: Identity, container: ContainerRef, ordered: list[Tile]
    ) -> list[dict[str, Any]]:
        """Write ``orderIndex = position`` for every tile not already there."""

        changes = {
            tile.id: {"orderIndex": position}
            for position, tile in enumerate(ordered)
            if tile.order_index != position
        }
        if not changes:
            return []
        store = self._selector.for_identity(identity)
        documents = await store.update_many(ResourceKind.TILE, ResourceKey.within(container), changes)
        for document in documents:
            self._aggregates.apply_resource(identity, ResourceKind.TILE, container, document)
        return documents

    async def _ask(self, request: AssistantRequest):
        try:
            return await self.assistant.reply(request)
        except WorkspaceError:
            raise
        except Exception as exc:  # any client failure counts as an unavailable assistant
            LOGGER.exception("Assistant client failed")
            raise AssistantUnavailableError(f"Assistant call failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Workspaces
    # ------------------------------------------------------------------
    async def create_workspace(
        self, identity: Identity, payload: WorkspaceSnapshot | Mapping[str, Any]
    ) -> MutationResult:
        snapshot = coerce_payload(WorkspaceSnapshot, payload)
        require_text("name", snapshot.name)
        existing = await self._aggregates.find_workspace(identity, snapshot)
        if existing is not None:
            return MutationResult(entity=existing, quota=None, created=False)

        action = QuotaAction.CREATE_WORKSPACE
        await self._check(identity, action)
        quota = await self._consume(identity, action)
        try:
            workspace = await self._aggregates.create_workspace(identity, snapshot)
        except WorkspaceError:
            await self._release(identity, action)
            raise
        await self._notify(MutationEvent(identity, ResourceKind.WORKSPACE, "created", workspace.id))
        return MutationResult(entity=workspace, quota=quota)

    async def update_workspace(
        self, identity: Identity, workspace_id: str, payload: WorkspaceUpdate | Mapping[str, Any]
    ) -> MutationResult:
        update = coerce_payload(WorkspaceUpdate, payload)
        changes: dict[str, Any] = {}
        if "name" in update.model_fields_set and update.name is not None:
            changes["name"] = require_text("name", update.name)
        if "website" in update.model_fields_set:
            changes["website"] = optional_text(update.website)
        workspace = await self._aggregates.update_workspace(identity, workspace_id, changes)
        await self._notify(MutationEvent(identity, ResourceKind.WORKSPACE, "updated", workspace.id))
        return MutationResult(entity=workspace, created=False)

    # ------------------------------------------------------------------
    # Dashboards
    # ------------------------------------------------------------------
    async def create_dashboard(
        self, identity: Identity, workspace_id: str, payload: DashboardCreate | Mapping[str, Any]
    ) -> MutationResult:
        request = coerce_payload(DashboardCreate, payload)
        dashboard = await self._aggregates.create_dashboard(identity, workspace_id, request.name, request.template_id)
        await self._notify(MutationEvent(identity, ResourceKind.DASHBOARD, "created", workspace_id, dashboard.id))
        return MutationResult(entity=dashboard)

    async def set_active_dashboard(self, identity: Identity, workspace_id: str, dashboard_id: str) -> MutationResult:
        dashboard = await self._aggregates.set_active_dashboard(identity, workspace_id, dashboard_id)
        await self._notify(MutationEvent(identity, ResourceKind.DASHBOARD, "activated", workspace_id, dashboard_id))
        return MutationResult(entity=dashboard, created=False)

    async def update_dashboard(
        self,
        identity: Identity,
        workspace_id: str,
        dashboard_id: str,
        payload: DashboardUpdate | Mapping[str, Any],
    ) -> MutationResult:
        update = coerce_payload(DashboardUpdate, payload)
        dashboard = await self._aggregates.update_dashboard(
            identity, workspace_id, dashboard_id, name=update.name, bg_color=update.bg_color
        )
        await self._notify(MutationEvent(identity, ResourceKind.DASHBOARD, "updated", workspace_id, dashboard_id))
        return MutationResult(entity=dashboard, created=False)

    async def delete_dashboard(self, identity: Identity, workspace_id: str, dashboard_id: str) -> MutationResult:
        """Delete a dashboard; the result entity is the workspace's new active dashboard."""

        active = await self._aggregates.delete_dashboard(identity, workspace_id, dashboard_id)
        await self._notify(MutationEvent(identity, ResourceKind.DASHBOARD, "deleted", workspace_id, dashboard_id))
        return MutationResult(entity=active, created=False)

    # ------------------------------------------------------------------
    # Tiles
    # ------------------------------------------------------------------
    async def create_tile(
        self, identity: Identity, container: ContainerRef, payload: TileCreate | Mapping[str, Any]
    ) -> MutationResult:
        draft = coerce_payload(TileCreate, payload)
        dashboard = await self._container(identity, container)
        await self._check(identity, QuotaAction.CREATE_TILE)

        now = utc_now()
        next_index = max((tile.order_index for tile in dashboard.tiles), default=-1) + 1
        tile = Tile(
            id=new_id("tile"),
            title=require_text("title", draft.title),
            content=require_text("content", draft.content),
            prompt=draft.prompt.strip(),
            model=optional_text(draft.model) or DEFAULT_TILE_MODEL,
            order_index=next_index,
            created_at=now,
            updated_at=now,
            total_tokens=draft.total_tokens,
        )
        document, quota = await self._insert(identity, ResourceKind.TILE, container, tile, QuotaAction.CREATE_TILE)
        return MutationResult(entity=Tile.from_document(document), quota=quota)

    async def update_tile(
        self,
        identity: Identity,
        container: ContainerRef,
        tile_id: str,
        payload: TileUpdate | Mapping[str, Any],
    ) -> MutationResult:
        update = coerce_payload(TileUpdate, payload)
        dashboard = await self._container(identity, container)
        self._find(dashboard, ResourceKind.TILE, tile_id)
        changes: dict[str, Any] = {}
        for field in ("title", "content"):
            value = getattr(update, field)
            if value is not None:
                changes[field] = require_text(field, value)
        if update.prompt is not None:
            changes["prompt"] = update.prompt.strip()
        if update.model is not None:
            changes["model"] = require_text("model", update.model)
        document = await self._update(identity, ResourceKind.TILE, container, tile_id, changes)
        return MutationResult(entity=Tile.from_document(document), created=False)

    async def delete_tile(self, identity: Identity, container: ContainerRef, tile_id: str) -> MutationResult:
        """Delete a tile and close the gap it leaves in ``orderIndex``."""

        dashboard = await self._delete(identity, ResourceKind.TILE, container, tile_id)
        remaining = [tile for tile in dashboard.tiles if tile.id != tile_id]
        try:
            shifted = await self._assign_positions(identity, container, remaining)
        except WorkspaceError as exc:
            self._aggregates.invalidate(identity)
            LOGGER.error(
                "Could not compact tile order in %s after deleting %s: %s", container.dashboard_id, tile_id, exc
            )
        else:
            if shifted:
                LOGGER.info(
                    "Shifted %s tiles in %s after deleting %s", len(shifted), container.dashboard_id, tile_id
                )
        return MutationResult(entity=None, created=False)

    async def reorder_tiles(
        self,
        identity: Identity,
        container: ContainerRef,
        payload: TileReorder | Mapping[str, Any] | list[str],
    ) -> MutationResult:
        """Assign ``orderIndex`` from positions in ``order``.

        ``order`` must be a permutation of the dashboard's tile ids. Tiles
        already at their position are not rewritten, so repeating a reorder
        writes nothing.
        """

        if isinstance(payload, list):
            payload = {"order": payload}
        order = [tile_id.strip() for tile_id in coerce_payload(TileReorder, payload).order]
        dashboard = await self._container(identity, container)
        tiles = {tile.id: tile for tile in dashboard.tiles}

        duplicates = sorted({tile_id for tile_id in order if order.count(tile_id) > 1})
        unknown = sorted(set(order) - set(tiles))
        missing = sorted(set(tiles) - set(order))
        if duplicates or unknown or missing:
            problems = []
            if duplicates:
                problems.append(f"duplicate ids {duplicates}")
            if unknown:
                problems.append(f"unknown ids {unknown}")
            if missing:
                problems.append(f"missing ids {missing}")
            raise InvalidOrderError("; ".join(problems))

        documents = await self._assign_positions(identity, container, [tiles[tile_id] for tile_id in order])
        if documents:
            try:
                await self._aggregates.touch(identity, container, utc_now())
            except WorkspaceError as exc:
                LOGGER.warning("Could not stamp dashboard %s after reorder: %s", container.dashboard_id, exc)
            LOGGER.info("Reordered %s tiles in %s", len(documents), container.dashboard_id)
            await self._notify(
                MutationEvent(identity, ResourceKind.TILE, "reordered", container.workspace_id, container.dashboard_id)
            )
            for document in documents:
                tiles[document["id"]] = Tile.from_document(document)
        ordered = sorted(tiles.values(), key=lambda tile: order.index(tile.id))
        for position, tile in enumerate(ordered):
            tile.order_index = position
        return MutationResult(entity=ordered, created=False)

    async def chat_with_tile(
        self,
        identity: Identity,
        container: ContainerRef,
        tile_id: str,
        payload: ChatRequest | Mapping[str, Any],
    ) -> ChatOutcome:
        request = coerce_payload(ChatRequest, payload)
        dashboard = await self._container(identity, container)
        tile = self._find(dashboard, ResourceKind.TILE, tile_id)
        text = require_text("message", request.message)
        context = {"title": tile.title, "content": tile.content, "prompt": tile.prompt}
        return await self._chat(
            identity, container, ResourceKind.TILE, tile, "history", text, tile.model, context, QuotaAction.TILE_CHAT
        )

    async def regenerate_tile(
        self,
        identity: Identity,
        container: ContainerRef,
        tile_id: str,
        payload: RegenerateRequest | Mapping[str, Any] | None = None,
    ) -> MutationResult:
        request = coerce_payload(RegenerateRequest, payload)
        dashboard = await self._container(identity, container)
        tile = self._find(dashboard, ResourceKind.TILE, tile_id)
        action = QuotaAction.REGENERATE
        await self._check(identity, action)

        prompt = optional_text(request.prompt) or tile.prompt or tile.title
        model = optional_text(request.model) or tile.model
        quota = await self._consume(identity, action)
        try:
            reply = await self._ask(
                AssistantRequest(
                    prompt=prompt,
                    model=model,
                    history=[message.to_document() for message in tile.history],
                    context={"title": tile.title, "content": tile.content},
                )
            )
            if not reply.content or not reply.content.strip():
                raise AssistantUnavailableError("Assistant returned an empty completion")
            message = Message(
                id=new_id("msg"), role="assistant", content=reply.content, created_at=utc_now(), kind="regeneration"
            )
            changes: dict[str, Any] = {
                "content": reply.content,
                "prompt": prompt,
                "model": reply.model or model,
                "attempts": tile.attempts + 1,
                "history": [entry.to_document() for entry in tile.history] + [message.to_document()],
            }
            if reply.total_tokens is not None:
                changes["totalTokens"] = (tile.total_tokens or 0) + reply.total_tokens
            document = await self._update(identity, ResourceKind.TILE, container, tile_id, changes, "regenerated")
        except WorkspaceError:
            await self._release(identity, action)
            raise
        return MutationResult(entity=Tile.from_document(document), quota=quota, created=False)

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------
    async def create_note(
        self, identity: Identity, container: ContainerRef, payload: NoteCreate | Mapping[str, Any]
    ) -> MutationResult:
        draft = coerce_payload(NoteCreate, payload)
        await self._container(identity, container)
        now = utc_now()
        note = Note(
            id=new_id("note"),
            title=optional_text(draft.title) or DEFAULT_NOTE_TITLE,
            content=require_text("content", draft.content),
            created_at=now,
            updated_at=now,
        )
        document, _ = await self._insert(identity, ResourceKind.NOTE, container, note, None)
        return MutationResult(entity=Note.from_document(document))

    async def update_note(
        self,
        identity: Identity,
        container: ContainerRef,
        note_id: str,
        payload: NoteUpdate | Mapping[str, Any],
    ) -> MutationResult:
        update = coerce_payload(NoteUpdate, payload)
        dashboard = await self._container(identity, container)
        self._find(dashboard, ResourceKind.NOTE, note_id)
        changes: dict[str, Any] = {}
        if update.title is not None:
            changes["title"] = require_text("title", update.title)
        if update.content is not None:
            changes["content"] = require_text("content", update.content)
        document = await self._update(identity, ResourceKind.NOTE, container, note_id, changes)
        return MutationResult(entity=Note.from_document(document), created=False)

    async def delete_note(self, identity: Identity, container: ContainerRef, note_id: str) -> MutationResult:
        await self._delete(identity, ResourceKind.NOTE, container, note_id)
        return MutationResult(entity=None, created=False)

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------
    async def create_contact(
        self, identity: Identity, container: ContainerRef, payload: ContactCreate | Mapping[str, Any]
    ) -> MutationResult:
        draft = coerce_payload(ContactCreate, payload)
        await self._container(identity, container)
        await self._check(identity, QuotaAction.CREATE_CONTACT)
        now = utc_now()
        contact = Contact(
            id=new_id("contact"),
            name=require_text("name", draft.name),
            created_at=now,
            updated_at=now,
            **{field: optional_text(getattr(draft, field)) for field in CONTACT_FIELDS},
        )
        document, quota = await self._insert(
            identity, ResourceKind.CONTACT, container, contact, QuotaAction.CREATE_CONTACT
        )
        return MutationResult(entity=Contact.from_document(document), quota=quota)

    async def update_contact(
        self,
        identity: Identity,
        container: ContainerRef,
        contact_id: str,
        payload: ContactUpdate | Mapping[str, Any],
    ) -> MutationResult:
        update = coerce_payload(ContactUpdate, payload)
        dashboard = await self._container(identity, container)
        self._find(dashboard, ResourceKind.CONTACT, contact_id)
        changes: dict[str, Any] = {}
        if update.name is not None:
            changes["name"] = require_text("name", update.name)
        for field in CONTACT_FIELDS:
            if field in update.model_fields_set:
                changes[_camel(field)] = optional_text(getattr(update, field))
        document = await self._update(identity, ResourceKind.CONTACT, container, contact_id, changes)
        return MutationResult(entity=Contact.from_document(document), created=False)

    async def delete_contact(self, identity: Identity, container: ContainerRef, contact_id: str) -> MutationResult:
        await self._delete(identity, ResourceKind.CONTACT, container, contact_id)
        return MutationResult(entity=None, created=False)

    async def chat_with_contact(
        self,
        identity: Identity,
        container: ContainerRef,
        contact_id: str,
        payload: ChatRequest | Mapping[str, Any],
    ) -> ChatOutcome:
        request = coerce_payload(ChatRequest, payload)
        dashboard = await self._container(identity, container)
        contact = self._find(dashboard, ResourceKind.CONTACT, contact_id)
        text = require_text("message", request.message)
        context = contact.model_dump(exclude={"chat_history"})
        return await self._chat(
            identity,
            container,
            ResourceKind.CONTACT,
            contact,
            "chat_history",
            text,
            DEFAULT_TILE_MODEL,
            context,
            QuotaAction.CONTACT_CHAT,
        )

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------
    async def _chat(
        self,
        identity: Identity,
        container: ContainerRef,
        kind: ResourceKind,
        entity: Tile | Contact,
        history_field: str,
        text: str,
        model: str,
        context: dict[str, Any],
        action: QuotaAction,
    ) -> ChatOutcome:
        """Append the user turn, ask the assistant and append its reply.

        The user turn is kept when the assistant fails; the outcome then
        carries the error and no reply.
        """

        await self._check(identity, action)
        history: list[Message] = list(getattr(entity, history_field))
        model_cls = type(entity)
        history_key = _camel(history_field)

        quota = await self._consume(identity, action)
        user_message = Message(id=new_id("msg"), role="user", content=text, created_at=utc_now())
        history.append(user_message)
        try:
            document = await self._update(
                identity,
                kind,
                container,
                entity.id,
                {history_key: [message.to_document() for message in history]},
                "chatted",
            )
        except WorkspaceError:
            await self._release(identity, action)
            raise
        entity = model_cls.from_document(document)

        try:
            reply = await self._ask(
                AssistantRequest(
                    prompt=text,
                    model=model,
                    history=[message.to_document() for message in history],
                    context=context,
                )
            )
        except AssistantUnavailableError as exc:
            LOGGER.warning("Assistant failed for %s %s: %s", kind.value, entity.id, exc)
            return ChatOutcome(entity=entity, message=user_message, reply=None, error=str(exc), quota=quota)

        assistant_message = Message(id=new_id("msg"), role="assistant", content=reply.content, created_at=utc_now())
        history.append(assistant_message)
        changes: dict[str, Any] = {history_key: [message.to_document() for message in history]}
        if kind is ResourceKind.TILE and reply.total_tokens is not None:
            changes["totalTokens"] = (entity.total_tokens or 0) + reply.total_tokens
        document = await self._update(identity, kind, container, entity.id, changes, "chatted")
        return ChatOutcome(
            entity=model_cls.from_document(document), message=user_message, reply=assistant_message, quota=quota
        )
