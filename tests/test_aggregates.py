from __future__ import annotations

import asyncio

import pytest
from conftest import GUEST, MEMBER

from insightdesk.application.aggregates import AggregateMirror, WorkspaceAggregateManager
from insightdesk.core.schema import WorkspaceSnapshot
from insightdesk.domain.errors import NotFoundError, ValidationError
from insightdesk.domain.workspaces import Identity, ResourceKey, ResourceKind


def _snapshot(**overrides) -> WorkspaceSnapshot:
    data = {"name": "Acme", "website": "acme.io"}
    data.update(overrides)
    return WorkspaceSnapshot.model_validate(data)


def _active(workspace) -> list[str]:
    return [dashboard.id for dashboard in workspace.dashboards if dashboard.is_active]


def test_create_workspace_seeds_default_dashboard(aggregates, identity):
    snapshot = _snapshot(
        id="ws_acme",
        tiles=[{"title": "Overview", "content": "First"}, {"title": "Market", "content": "Second"}],
    )

    workspace = asyncio.run(aggregates.create_workspace(identity, snapshot))

    assert workspace.id == "ws_acme"
    assert workspace.owner_id == identity.id
    dashboard = workspace.dashboards[0]
    assert dashboard.id == "dashboard_ws_acme_default"
    assert dashboard.name == "Default Dashboard"
    assert dashboard.bg_color == "#f5f5f0"
    assert dashboard.is_active is True
    assert [tile.order_index for tile in dashboard.tiles] == [0, 1]
    assert all(tile.id.startswith("tile_") for tile in dashboard.tiles)


def test_workspace_tree_is_rehydrated_from_store(selector, aggregates, identity):
    snapshot = _snapshot(tiles=[{"title": "Overview", "content": "First"}])
    created = asyncio.run(aggregates.create_workspace(identity, snapshot))

    fresh = WorkspaceAggregateManager(selector)
    workspaces = asyncio.run(fresh.list_workspaces(identity))

    assert [workspace.id for workspace in workspaces] == [created.id]
    assert workspaces[0].dashboards[0].tiles[0].title == "Overview"


def test_find_workspace_by_name_reassigns_id(selector, aggregates, identity):
    created = asyncio.run(aggregates.create_workspace(identity, _snapshot()))

    found = asyncio.run(aggregates.find_workspace(identity, _snapshot(id="ws_client")))

    assert found.id == "ws_client"
    assert found.dashboards[0].workspace_id == "ws_client"
    fresh = WorkspaceAggregateManager(selector)
    workspaces = asyncio.run(fresh.list_workspaces(identity))
    assert [workspace.id for workspace in workspaces] == ["ws_client"]
    assert workspaces[0].dashboards[0].id == f"dashboard_{created.id}_default"
    assert workspaces[0].dashboards[0].workspace_id == "ws_client"


def test_find_workspace_prefers_oldest_duplicate(selector, aggregates, identity):
    store = selector.for_identity(identity)

    async def scenario():
        for workspace_id, created_at in (("ws_new", "2025-02-01T00:00:00+00:00"), ("ws_old", "2024-01-01T00:00:00+00:00")):
            await store.insert_one(
                ResourceKind.WORKSPACE,
                ResourceKey(workspace_id),
                {"id": workspace_id, "name": "Acme", "website": "acme.io", "createdAt": created_at, "updatedAt": created_at},
            )
        return await aggregates.find_workspace(identity, _snapshot())

    assert asyncio.run(scenario()).id == "ws_old"


def test_find_workspace_returns_none_without_match(aggregates, identity):
    asyncio.run(aggregates.create_workspace(identity, _snapshot()))

    assert asyncio.run(aggregates.find_workspace(identity, _snapshot(website="other.io"))) is None


def test_get_or_create_is_idempotent(aggregates, identity):
    async def scenario():
        first, created = await aggregates.get_or_create_workspace(identity, _snapshot(id="ws_1"))
        second, created_again = await aggregates.get_or_create_workspace(identity, _snapshot(id="ws_1"))
        return first, created, second, created_again

    first, created, second, created_again = asyncio.run(scenario())

    assert created is True
    assert created_again is False
    assert first.id == second.id
    assert len(asyncio.run(aggregates.list_workspaces(identity))) == 1


def test_dashboards_keep_exactly_one_active(selector, aggregates, identity):
    async def scenario():
        workspace = await aggregates.create_workspace(identity, _snapshot(id="ws_1"))
        second = await aggregates.create_dashboard(identity, "ws_1", "Research")
        after_create = await aggregates.get_workspace(identity, "ws_1")
        third = await aggregates.create_dashboard(identity, "ws_1", "Pipeline")
        await aggregates.set_active_dashboard(identity, "ws_1", workspace.dashboards[0].id)
        after_switch = await aggregates.get_workspace(identity, "ws_1")
        return workspace, second, third, after_create, after_switch

    workspace, second, third, after_create, after_switch = asyncio.run(scenario())

    assert second.is_active is True
    assert _active(after_create) == [second.id]
    assert _active(after_switch) == [workspace.dashboards[0].id]

    fresh = WorkspaceAggregateManager(selector)
    persisted = asyncio.run(fresh.get_workspace(identity, "ws_1"))
    assert _active(persisted) == [workspace.dashboards[0].id]
    assert [dashboard.id for dashboard in persisted.dashboards][1:] == [second.id, third.id]


def test_set_active_dashboard_is_a_noop_when_already_active(aggregates, identity):
    async def scenario():
        workspace = await aggregates.create_workspace(identity, _snapshot(id="ws_1"))
        default = workspace.dashboards[0]
        result = await aggregates.set_active_dashboard(identity, "ws_1", default.id)
        return default, result

    default, result = asyncio.run(scenario())

    assert result.is_active is True
    assert result.updated_at == default.updated_at


def test_set_active_dashboard_rejects_unknown_dashboard(aggregates, identity):
    async def scenario():
        await aggregates.create_workspace(identity, _snapshot(id="ws_1"))
        await aggregates.create_workspace(identity, _snapshot(id="ws_2", name="Globex"))
        await aggregates.set_active_dashboard(identity, "ws_1", "dashboard_ws_2_default")

    with pytest.raises(NotFoundError):
        asyncio.run(scenario())


def test_deleting_active_dashboard_promotes_first_remaining(aggregates, identity):
    async def scenario():
        workspace = await aggregates.create_workspace(identity, _snapshot(id="ws_1"))
        research = await aggregates.create_dashboard(identity, "ws_1", "Research")
        promoted = await aggregates.delete_dashboard(identity, "ws_1", research.id)
        return workspace, promoted, await aggregates.get_workspace(identity, "ws_1")

    workspace, promoted, after = asyncio.run(scenario())

    assert promoted.id == workspace.dashboards[0].id
    assert _active(after) == [promoted.id]
    assert len(after.dashboards) == 1


def test_active_dashboard_falls_back_to_first(selector, aggregates, identity):
    store = selector.for_identity(identity)
    stamp = "2025-01-01T00:00:00+00:00"

    async def scenario():
        await store.insert_one(
            ResourceKind.WORKSPACE,
            ResourceKey("ws_1"),
            {"id": "ws_1", "name": "Acme", "createdAt": stamp, "updatedAt": stamp},
        )
        for dashboard_id in ("db_a", "db_b"):
            await store.insert_one(
                ResourceKind.DASHBOARD,
                ResourceKey("ws_1", dashboard_id),
                {"id": dashboard_id, "workspaceId": "ws_1", "name": dashboard_id, "isActive": False,
                 "createdAt": stamp, "updatedAt": stamp},
            )
        return await aggregates.get_active_dashboard(identity, "ws_1")

    assert asyncio.run(scenario()).id == "db_a"


def test_update_dashboard_and_workspace(aggregates, identity):
    async def scenario():
        workspace = await aggregates.create_workspace(identity, _snapshot(id="ws_1"))
        dashboard = await aggregates.update_dashboard(
            identity, "ws_1", workspace.dashboards[0].id, name="Board", bg_color="#000000"
        )
        renamed = await aggregates.update_workspace(identity, "ws_1", {"name": "Acme Corp"})
        return dashboard, renamed

    dashboard, renamed = asyncio.run(scenario())

    assert dashboard.name == "Board"
    assert dashboard.bg_color == "#000000"
    assert renamed.name == "Acme Corp"
    assert renamed.dashboards[0].name == "Board"


def test_update_dashboard_rejects_blank_name(aggregates, identity):
    async def scenario():
        workspace = await aggregates.create_workspace(identity, _snapshot(id="ws_1"))
        await aggregates.update_dashboard(identity, "ws_1", workspace.dashboards[0].id, name="   ")

    with pytest.raises(ValidationError):
        asyncio.run(scenario())


def test_guest_reset_clears_tree(aggregates):
    async def scenario():
        await aggregates.create_workspace(GUEST, _snapshot())
        await aggregates.reset(GUEST)
        return await aggregates.list_workspaces(GUEST)

    assert asyncio.run(scenario()) == []


def test_member_tree_cannot_be_reset(aggregates):
    with pytest.raises(ValidationError):
        asyncio.run(aggregates.reset(MEMBER))


def test_mirror_copies_do_not_leak_mutations(aggregates, identity):
    workspace = asyncio.run(aggregates.create_workspace(identity, _snapshot(id="ws_1")))
    workspace.name = "Mutated"

    assert asyncio.run(aggregates.get_workspace(identity, "ws_1")).name == "Acme"


def test_mirror_drops_least_recently_used_tree():
    mirror = AggregateMirror(capacity=2)
    mirror.put("a", {})
    mirror.put("b", {})
    assert mirror.get("a") == {}
    mirror.put("c", {})

    assert len(mirror) == 2
    assert mirror.get("b") is None
    assert mirror.get("a") == {}
    assert mirror.get("c") == {}


def test_mirror_rejects_non_positive_capacity():
    with pytest.raises(ValueError):
        AggregateMirror(capacity=0)


def test_evicted_guest_tree_is_rehydrated(selector):
    aggregates = WorkspaceAggregateManager(selector, AggregateMirror(capacity=1))
    other = Identity.guest("other-session")

    async def scenario():
        await aggregates.create_workspace(GUEST, _snapshot(id="ws_guest"))
        await aggregates.create_workspace(other, _snapshot(id="ws_other", name="Other"))
        return await aggregates.list_workspaces(GUEST), await aggregates.list_workspaces(other)

    mine, theirs = asyncio.run(scenario())

    assert len(aggregates.mirror) == 1
    assert [workspace.id for workspace in mine] == ["ws_guest"]
    assert [workspace.id for workspace in theirs] == ["ws_other"]


def test_member_trees_are_not_mirrored(aggregates):
    asyncio.run(aggregates.create_workspace(MEMBER, _snapshot(id="ws_member")))
    asyncio.run(aggregates.list_workspaces(MEMBER))

    assert len(aggregates.mirror) == 0
    assert aggregates.mirror.get(MEMBER.scope) is None
