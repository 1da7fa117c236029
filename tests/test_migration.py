from __future__ import annotations

import asyncio
import copy

from conftest import GUEST, MEMBER

from insightdesk.application.aggregates import WorkspaceAggregateManager
from insightdesk.application.migration import MigrationEngine
from insightdesk.core.plans import MigrationLimits
from insightdesk.domain.errors import BackendUnavailableError
from insightdesk.domain.workspaces import ContainerRef, Identity
from insightdesk.infrastructure.durable import DurableResourceStore

STAMP = "2025-03-01T10:00:00+00:00"


def _tile(tile_id: str, order_index: int, **extra) -> dict:
    tile = {
        "id": tile_id,
        "title": f"Tile {tile_id}",
        "content": "Generated insight",
        "prompt": "Summarise",
        "orderIndex": order_index,
        "createdAt": STAMP,
        "updatedAt": STAMP,
    }
    tile.update(extra)
    return tile


def _graph() -> list[dict]:
    return [
        {
            "id": "ws_1",
            "name": "Acme",
            "website": "acme.io",
            "createdAt": STAMP,
            "updatedAt": STAMP,
            "dashboards": [
                {
                    "id": "db_1",
                    "workspaceId": "ws_1",
                    "name": "Main",
                    "isActive": False,
                    "createdAt": STAMP,
                    "tiles": [_tile("tile_a", 0), _tile("tile_b", 1)],
                    "contacts": [
                        {"id": "contact_1", "name": "Dana", "jobTitle": "CTO"},
                        {"id": "contact_1", "name": "Dana again"},
                    ],
                    "notes": [{"id": "note_1", "content": "Call back"}],
                },
                {
                    "id": "db_2",
                    "workspaceId": "ws_1",
                    "name": "Research",
                    "isActive": True,
                    "createdAt": STAMP,
                    "tiles": [],
                },
            ],
        }
    ]


def _engine(selector, **kwargs) -> MigrationEngine:
    return MigrationEngine(selector, **kwargs)


def _tree(selector, identity=MEMBER) -> list[dict]:
    workspaces = asyncio.run(WorkspaceAggregateManager(selector).list_workspaces(identity))
    return [workspace.model_dump() for workspace in workspaces]


def test_migration_copies_graph_and_reports_counts(selector):
    summary = asyncio.run(_engine(selector).migrate(MEMBER, _graph()))

    assert summary.to_dict() == {
        "workspacesMigrated": 1,
        "dashboardsMigrated": 2,
        "tilesMigrated": 2,
        "contactsMigrated": 1,
        "notesMigrated": 1,
        "errors": ["Duplicate contact id contact_1 in dashboard db_1"],
    }

    workspace = asyncio.run(WorkspaceAggregateManager(selector).get_workspace(MEMBER, "ws_1"))
    assert workspace.owner_id == MEMBER.id
    main, research = workspace.dashboards
    assert [tile.id for tile in main.tiles] == ["tile_a", "tile_b"]
    assert main.contacts[0].name == "Dana"
    assert main.contacts[0].job_title == "CTO"
    assert main.notes[0].title == "Note"
    assert (main.is_active, research.is_active) == (False, True)
    assert main.bg_color == "#f5f5f0"


def test_migration_is_idempotent(selector):
    engine = _engine(selector)

    first = asyncio.run(engine.migrate(MEMBER, _graph()))
    after_first = _tree(selector)
    second = asyncio.run(engine.migrate(MEMBER, {"workspaces": _graph()}))
    after_second = _tree(selector)

    assert first.to_dict() == second.to_dict()
    assert after_first == after_second


def test_migration_keeps_original_timestamps(selector):
    asyncio.run(_engine(selector).migrate(MEMBER, _graph()))

    workspace = asyncio.run(WorkspaceAggregateManager(selector).get_workspace(MEMBER, "ws_1"))

    assert workspace.created_at == STAMP
    assert workspace.updated_at == STAMP
    assert workspace.dashboards[0].tiles[0].updated_at == STAMP


def test_migration_skips_invalid_entities(selector):
    graph = _graph()
    dashboards = graph[0]["dashboards"]
    dashboards[0]["tiles"].append({"id": "tile_c", "title": "No content"})
    dashboards.append({"id": "db_3", "workspaceId": "ws_other", "name": "Stray"})
    dashboards.append({"name": "No id"})
    graph.append({"id": "ws_1", "name": "Acme copy"})
    graph.append({"name": "Nameless", "id": ""})

    summary = asyncio.run(_engine(selector).migrate(MEMBER, graph))

    assert summary.workspaces_migrated == 1
    assert summary.dashboards_migrated == 2
    assert summary.tiles_migrated == 2
    assert "Tile missing required fields in dashboard db_1" in summary.errors
    assert "Dashboard db_3 has mismatched workspaceId ws_other" in summary.errors
    assert "Dashboard missing required fields in workspace ws_1" in summary.errors
    assert "Duplicate workspace id detected: ws_1" in summary.errors
    assert "Workspace missing required fields" in summary.errors


def test_migration_truncates_oversized_collections(selector):
    graph = _graph()
    graph[0]["dashboards"][0]["tiles"] = [_tile(f"tile_{index}", index) for index in range(5)]
    limits = MigrationLimits(max_tiles_per_dashboard=3, max_dashboards_per_workspace=1)

    summary = asyncio.run(_engine(selector, limits=limits).migrate(MEMBER, graph))

    assert summary.dashboards_migrated == 1
    assert summary.tiles_migrated == 3
    assert "Dashboards truncated for workspace ws_1 (max 1)" in summary.errors
    assert "Tiles truncated for dashboard db_1 (max 3)" in summary.errors
    workspace = asyncio.run(WorkspaceAggregateManager(selector).get_workspace(MEMBER, "ws_1"))
    # the only dashboard left is promoted to active
    assert workspace.dashboards[0].is_active is True


def test_migration_normalises_chat_history(selector):
    graph = _graph()
    graph[0]["dashboards"][0]["tiles"][0]["history"] = [
        {"role": "bot", "content": "Hello"},
        {"role": "assistant", "content": "  "},
        "not a message",
        {"id": "msg_kept", "role": "assistant", "content": "Hi", "kind": "regeneration"},
    ]

    asyncio.run(_engine(selector).migrate(MEMBER, graph))

    workspace = asyncio.run(WorkspaceAggregateManager(selector).get_workspace(MEMBER, "ws_1"))
    history = workspace.dashboards[0].tiles[0].history
    assert [(message.id, message.role, message.kind) for message in history] == [
        ("tile_a_msg_0", "user", "chat"),
        ("msg_kept", "assistant", "regeneration"),
    ]
    assert history[0].created_at == STAMP


def test_migration_requires_member(selector):
    summary = asyncio.run(_engine(selector).migrate(GUEST, _graph()))

    assert summary.workspaces_migrated == 0
    assert summary.errors == ["Migration requires a member identity"]


def test_migration_rejects_malformed_payload(selector):
    summary = asyncio.run(_engine(selector).migrate(MEMBER, {"workspaces": "nope"}))

    assert summary.errors == ["Invalid workspace data"]


def test_migration_reports_unavailable_backend(selector, monkeypatch):
    async def unavailable(self):
        raise BackendUnavailableError("connection refused")

    monkeypatch.setattr(DurableResourceStore, "ping", unavailable)

    summary = asyncio.run(_engine(selector).migrate(MEMBER, _graph()))

    assert summary.workspaces_migrated == 0
    assert summary.errors == ["Durable store unavailable: connection refused"]


def test_migration_stops_when_backend_drops_mid_walk(selector, monkeypatch):
    original = DurableResourceStore.insert_one
    calls = []

    async def flaky(self, kind, key, document):
        calls.append(kind)
        if len(calls) > 2:
            raise BackendUnavailableError("connection lost")
        return await original(self, kind, key, document)

    monkeypatch.setattr(DurableResourceStore, "insert_one", flaky)

    summary = asyncio.run(_engine(selector).migrate(MEMBER, _graph()))

    assert summary.workspaces_migrated == 1
    assert summary.dashboards_migrated == 1
    assert summary.tiles_migrated == 0
    assert summary.errors[-1] == "Migration stopped: connection lost"


def test_migration_leaves_guest_store_untouched(selector, orchestrator):
    async def build_guest_graph():
        result = await orchestrator.create_workspace(GUEST, {"id": "ws_guest", "name": "Guest Co"})
        container = ContainerRef("ws_guest", result.entity.dashboards[0].id)
        await orchestrator.create_tile(GUEST, container, {"title": "Overview", "content": "Body"})
        return selector.ephemeral_for(GUEST).export_graph()

    graph = asyncio.run(build_guest_graph())
    before = copy.deepcopy(graph)

    summary = asyncio.run(_engine(selector).migrate(MEMBER, graph))

    assert summary.errors == []
    assert summary.tiles_migrated == 1
    assert selector.ephemeral_for(GUEST).export_graph() == before
    assert [workspace["id"] for workspace in _tree(selector)] == ["ws_guest"]


def test_migration_is_scoped_to_the_member(selector):
    other = Identity.member("member-2")
    engine = _engine(selector)

    asyncio.run(engine.migrate(MEMBER, _graph()))
    asyncio.run(engine.migrate(other, _graph()))

    assert [workspace["owner_id"] for workspace in _tree(selector)] == [MEMBER.id]
    assert [workspace["owner_id"] for workspace in _tree(selector, other)] == [other.id]


def test_migration_refreshes_aggregate_mirror(selector, aggregates):
    assert asyncio.run(aggregates.list_workspaces(MEMBER)) == []

    asyncio.run(MigrationEngine(selector, aggregates=aggregates).migrate(MEMBER, _graph()))

    assert [workspace.id for workspace in asyncio.run(aggregates.list_workspaces(MEMBER))] == ["ws_1"]
