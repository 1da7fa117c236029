"""Domain value objects for workspace orchestration."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class IdentityKind(str, Enum):
    GUEST = "guest"
    MEMBER = "member"


class QuotaAction(str, Enum):
    CREATE_WORKSPACE = "createWorkspace"
    CREATE_CONTACT = "createContact"
    CREATE_TILE = "createTile"
    TILE_CHAT = "tileChat"
    CONTACT_CHAT = "contactChat"
    REGENERATE = "regenerate"


class ResourceKind(str, Enum):
    WORKSPACE = "workspace"
    DASHBOARD = "dashboard"
    TILE = "tile"
    NOTE = "note"
    CONTACT = "contact"

    @property
    def collection(self) -> str:
        """Name of the durable collection and of the dashboard field holding it."""

        return f"{self.value}s"

    @property
    def is_dashboard_child(self) -> bool:
        return self in (ResourceKind.TILE, ResourceKind.NOTE, ResourceKind.CONTACT)


@dataclass(frozen=True, slots=True)
class Identity:
    """Resolved caller of a request.

    Guests carry a ``session`` naming their local storage bucket; members carry
    the stable external ``id`` every durable document is scoped by.
    """

    kind: IdentityKind
    id: str | None = None
    plan: str = "guest"
    session: str | None = None

    def __post_init__(self) -> None:
        if self.kind is IdentityKind.MEMBER and not self.id:
            raise ValueError("member identities require an id")

    @classmethod
    def guest(cls, session: str | None = None, plan: str = "guest") -> Identity:
        return cls(kind=IdentityKind.GUEST, id=None, plan=plan, session=session)

    @classmethod
    def member(cls, member_id: str, plan: str = "member") -> Identity:
        return cls(kind=IdentityKind.MEMBER, id=member_id, plan=plan)

    @property
    def is_member(self) -> bool:
        return self.kind is IdentityKind.MEMBER

    @property
    def scope(self) -> str:
        if self.is_member:
            return f"member:{self.id}"
        return f"guest:{self.session or 'default'}"


@dataclass(frozen=True, slots=True)
class ContainerRef:
    """The ``(workspaceId, dashboardId)`` pair a resource lives in."""

    workspace_id: str
    dashboard_id: str


@dataclass(frozen=True, slots=True)
class ResourceKey:
    """Addresses a document or a collection inside an identity's store.

    A workspace is addressed by ``workspace_id``; a dashboard by
    ``workspace_id`` and ``dashboard_id``; tiles, notes and contacts by all
    three fields. Leaving the last field empty addresses the collection.
    """

    workspace_id: str | None = None
    dashboard_id: str | None = None
    resource_id: str | None = None

    @classmethod
    def within(cls, container: ContainerRef, resource_id: str | None = None) -> ResourceKey:
        return cls(container.workspace_id, container.dashboard_id, resource_id)

    def target_id(self, kind: ResourceKind) -> str | None:
        if kind is ResourceKind.WORKSPACE:
            return self.workspace_id
        if kind is ResourceKind.DASHBOARD:
            return self.dashboard_id
        return self.resource_id


@dataclass(slots=True)
class QuotaResult:
    action: QuotaAction
    allowed: bool
    used: int
    limit: float

    @property
    def remaining(self) -> float:
        return max(0, self.limit - self.used)

    def to_dict(self) -> dict[str, Any]:
        unlimited = math.isinf(self.limit)
        return {
            "action": self.action.value,
            "allowed": self.allowed,
            "used": self.used,
            "limit": None if unlimited else int(self.limit),
            "remaining": None if unlimited else int(self.remaining),
        }


@dataclass(slots=True)
class MutationResult:
    entity: Any
    quota: QuotaResult | None = None
    created: bool = True


@dataclass(slots=True)
class ChatOutcome:
    """Result of a chat turn; ``reply`` is ``None`` when the assistant failed."""

    entity: Any
    message: Any
    reply: Any | None = None
    error: str | None = None
    quota: QuotaResult | None = None


@dataclass(frozen=True, slots=True)
class MutationEvent:
    identity: Identity
    kind: ResourceKind
    operation: str
    workspace_id: str
    dashboard_id: str | None = None
    resource_id: str | None = None


@dataclass(slots=True)
class MigrationSummary:
    workspaces_migrated: int = 0
    dashboards_migrated: int = 0
    tiles_migrated: int = 0
    contacts_migrated: int = 0
    notes_migrated: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workspacesMigrated": self.workspaces_migrated,
            "dashboardsMigrated": self.dashboards_migrated,
            "tilesMigrated": self.tiles_migrated,
            "contactsMigrated": self.contacts_migrated,
            "notesMigrated": self.notes_migrated,
            "errors": list(self.errors),
        }
