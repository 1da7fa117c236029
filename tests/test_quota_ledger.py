from __future__ import annotations

import asyncio
import math
from datetime import datetime, timedelta, timezone

from conftest import GUEST, MEMBER

from insightdesk.application.quota import QuotaLedger
from insightdesk.core.plans import PlanTable, load_migration_limits, load_plan_table
from insightdesk.domain.workspaces import Identity, QuotaAction
from insightdesk.infrastructure.local_storage import LocalStorageRegistry
from insightdesk.infrastructure.quota_store import DurableQuotaCounterStore, LocalQuotaCounterStore


def test_plan_table_loads_tiers_from_yaml():
    plans = load_plan_table()

    assert plans.limit_for("guest", QuotaAction.CREATE_WORKSPACE) == 3
    assert plans.limit_for("guest", QuotaAction.TILE_CHAT) == 5
    assert plans.limit_for("member", QuotaAction.TILE_CHAT) == 50
    assert math.isinf(plans.limit_for("business", QuotaAction.CREATE_TILE))
    # unknown tiers never get more than a guest
    assert plans.get_limits("enterprise-trial") == plans.get_limits("guest")

    limits = load_migration_limits()
    assert limits.max_workspaces == 10
    assert limits.max_dashboards_per_workspace == 25
    assert limits.max_tiles_per_dashboard == 200


def test_plan_table_treats_null_as_unlimited():
    plans = PlanTable({"guest": {"createTile": 2}, "team": {"createTile": None}})

    assert plans.limit_for("team", QuotaAction.CREATE_TILE) == math.inf
    assert plans.limit_for("team", QuotaAction.TILE_CHAT) == 0
    assert plans.limit_for("guest", QuotaAction.CREATE_TILE) == 2


def test_guest_workspace_limit_blocks_fourth_consume(ledger):
    async def scenario():
        results = [await ledger.consume(GUEST, QuotaAction.CREATE_WORKSPACE) for _ in range(4)]
        evaluation = await ledger.evaluate(GUEST, QuotaAction.CREATE_WORKSPACE)
        return results, evaluation

    results, evaluation = asyncio.run(scenario())

    assert [result.allowed for result in results] == [True, True, True, False]
    assert [result.used for result in results] == [1, 2, 3, 3]
    assert evaluation.allowed is False
    assert evaluation.used == 3
    assert evaluation.remaining == 0


def test_rollback_restores_previous_count_and_floors_at_zero(ledger, identity):
    async def scenario():
        before = await ledger.evaluate(identity, QuotaAction.CREATE_TILE)
        await ledger.consume(identity, QuotaAction.CREATE_TILE)
        restored = await ledger.rollback(identity, QuotaAction.CREATE_TILE)
        floored = await ledger.rollback(identity, QuotaAction.CREATE_TILE)
        return before, restored, floored

    before, restored, floored = asyncio.run(scenario())

    assert before.used == 0
    assert restored.used == 0
    assert floored.used == 0


def test_concurrent_consumes_never_exceed_limit(ledger, identity):
    limited = Identity(kind=identity.kind, id=identity.id, plan="guest", session=identity.session)

    async def scenario():
        results = await asyncio.gather(
            *[ledger.consume(limited, QuotaAction.CREATE_WORKSPACE) for _ in range(10)]
        )
        return results, await ledger.evaluate(limited, QuotaAction.CREATE_WORKSPACE)

    results, evaluation = asyncio.run(scenario())

    assert sum(result.allowed for result in results) == 3
    assert evaluation.used == 3


def test_member_counters_persist_in_duckdb_and_reset(ledger):
    async def scenario():
        for _ in range(2):
            await ledger.consume(MEMBER, QuotaAction.TILE_CHAT)
        usage = {result.action: result for result in await ledger.usage(MEMBER)}
        await ledger.reset(MEMBER)
        after = await ledger.evaluate(MEMBER, QuotaAction.TILE_CHAT)
        return usage, after

    usage, after = asyncio.run(scenario())

    assert usage[QuotaAction.TILE_CHAT].used == 2
    assert usage[QuotaAction.TILE_CHAT].limit == 50
    assert usage[QuotaAction.CREATE_WORKSPACE].used == 0
    assert after.used == 0


def test_business_plan_is_unlimited(selector):
    ledger = QuotaLedger(
        load_plan_table(),
        LocalQuotaCounterStore(selector.local_storage),
        DurableQuotaCounterStore(selector.driver),
    )
    business = Identity.member("member-business", plan="business")

    result = asyncio.run(ledger.consume(business, QuotaAction.CREATE_WORKSPACE))

    assert result.allowed is True
    assert result.to_dict()["limit"] is None
    assert result.to_dict()["remaining"] is None


def test_guest_counters_expire_with_window():
    now = [datetime(2025, 1, 1, tzinfo=timezone.utc)]
    registry = LocalStorageRegistry()
    store = LocalQuotaCounterStore(registry, window=timedelta(hours=24), clock=lambda: now[0])

    async def consume():
        return await store.increment_with_ceiling(GUEST, QuotaAction.TILE_CHAT, 5)

    assert asyncio.run(consume()) == (True, 1)
    now[0] += timedelta(hours=23)
    assert asyncio.run(consume()) == (True, 2)
    now[0] += timedelta(hours=2)
    assert asyncio.run(consume()) == (True, 1)


def test_guest_counters_reset_on_usage_version_bump():
    registry = LocalStorageRegistry()
    old = LocalQuotaCounterStore(registry, version=1)
    new = LocalQuotaCounterStore(registry, version=2)

    async def scenario():
        await old.increment_with_ceiling(GUEST, QuotaAction.REGENERATE, 5)
        await old.increment_with_ceiling(GUEST, QuotaAction.REGENERATE, 5)
        return await new.get_all(GUEST)

    assert asyncio.run(scenario())[QuotaAction.REGENERATE] == 0


def test_guest_sessions_have_independent_counters(ledger):
    other = Identity.guest("another-session")

    async def scenario():
        await ledger.consume(GUEST, QuotaAction.CREATE_CONTACT)
        return await ledger.evaluate(other, QuotaAction.CREATE_CONTACT)

    assert asyncio.run(scenario()).used == 0
