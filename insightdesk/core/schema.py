from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DEFAULT_TILE_MODEL = "gpt-4o-mini"
DEFAULT_DASHBOARD_NAME = "Default Dashboard"
DEFAULT_DASHBOARD_BG = "#f5f5f0"
DEFAULT_NOTE_TITLE = "Note"


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")

    @classmethod
    def from_document(cls, document: dict[str, Any]):
        return cls.model_validate(document)


class Message(Record):
    id: str
    role: Literal["user", "assistant", "system"]
    content: str
    created_at: str
    kind: Literal["chat", "regeneration"] = "chat"


class Tile(Record):
    id: str
    title: str
    content: str
    prompt: str = ""
    model: str = DEFAULT_TILE_MODEL
    order_index: int = 0
    created_at: str
    updated_at: str
    attempts: int = 0
    total_tokens: int | None = None
    history: list[Message] = Field(default_factory=list)


class Note(Record):
    id: str
    title: str = DEFAULT_NOTE_TITLE
    content: str
    created_at: str
    updated_at: str


class Contact(Record):
    id: str
    name: str
    job_title: str | None = None
    linkedin_url: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    notes: str | None = None
    created_at: str
    updated_at: str | None = None
    chat_history: list[Message] = Field(default_factory=list)


class Dashboard(Record):
    id: str
    workspace_id: str
    name: str
    template_id: str | None = None
    bg_color: str = DEFAULT_DASHBOARD_BG
    is_active: bool = False
    created_at: str
    updated_at: str
    tiles: list[Tile] = Field(default_factory=list)
    notes: list[Note] = Field(default_factory=list)
    contacts: list[Contact] = Field(default_factory=list)

    def to_document(self, *, children: bool = False) -> dict[str, Any]:
        exclude = None if children else {"tiles", "notes", "contacts"}
        return self.model_dump(by_alias=True, mode="json", exclude=exclude)

    def collection(self, field_name: str) -> list[Any]:
        return getattr(self, field_name)


class Workspace(Record):
    id: str
    name: str
    website: str | None = None
    owner_id: str | None = None
    created_at: str
    updated_at: str
    dashboards: list[Dashboard] = Field(default_factory=list)

    def to_document(self, *, children: bool = False) -> dict[str, Any]:
        if not children:
            return self.model_dump(by_alias=True, mode="json", exclude={"dashboards"})
        document = self.model_dump(by_alias=True, mode="json", exclude={"dashboards"})
        document["dashboards"] = [dashboard.to_document(children=True) for dashboard in self.dashboards]
        return document


# ----------------------------------------------------------------------
# Request payloads
# ----------------------------------------------------------------------


class Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class TileDraft(Payload):
    id: str | None = None
    title: str
    content: str
    prompt: str = ""
    model: str | None = None
    total_tokens: int | None = None


class WorkspaceSnapshot(Payload):
    id: str | None = None
    name: str
    website: str | None = None
    template_id: str | None = None
    tiles: list[TileDraft] = Field(default_factory=list)


class WorkspaceUpdate(Payload):
    name: str | None = None
    website: str | None = None


class DashboardCreate(Payload):
    name: str
    template_id: str | None = None


class DashboardUpdate(Payload):
    name: str | None = None
    bg_color: str | None = None


class TileCreate(TileDraft):
    pass


class TileUpdate(Payload):
    title: str | None = None
    content: str | None = None
    prompt: str | None = None
    model: str | None = None


class TileReorder(Payload):
    order: list[str]


class ChatRequest(Payload):
    message: str


class RegenerateRequest(Payload):
    prompt: str | None = None
    model: str | None = None


class NoteCreate(Payload):
    title: str | None = None
    content: str


class NoteUpdate(Payload):
    title: str | None = None
    content: str | None = None


class ContactCreate(Payload):
    name: str
    job_title: str | None = None
    linkedin_url: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    notes: str | None = None


class ContactUpdate(Payload):
    name: str | None = None
    job_title: str | None = None
    linkedin_url: str | None = None
    email: str | None = None
    phone: str | None = None
    company: str | None = None
    notes: str | None = None


class MigrationRequest(Payload):
    workspaces: list[Any] = Field(default_factory=list)
