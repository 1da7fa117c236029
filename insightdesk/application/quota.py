"""Per-identity action counters checked against plan limits."""
from __future__ import annotations

from insightdesk.core.logging import get_logger
from insightdesk.core.plans import PlanTable
from insightdesk.domain.workspaces import Identity, QuotaAction, QuotaResult
from insightdesk.infrastructure.quota_store import QuotaCounterStore

LOGGER = get_logger(__name__)


class QuotaLedger:
    """Evaluate, reserve and release quota units.

    ``consume`` is the only way a counter grows and it never passes the plan
    limit. ``rollback`` undoes one reservation after a failed write.
    Member counter failures propagate as ``BackendUnavailableError`` so the
    caller denies the action.
    """

    def __init__(
        self,
        plans: PlanTable,
        guest_counters: QuotaCounterStore,
        member_counters: QuotaCounterStore,
    ) -> None:
        self._plans = plans
        self._guest_counters = guest_counters
        self._member_counters = member_counters

    @property
    def plans(self) -> PlanTable:
        return self._plans

    def _counters(self, identity: Identity) -> QuotaCounterStore:
        return self._member_counters if identity.is_member else self._guest_counters

    def _limit(self, identity: Identity, action: QuotaAction) -> float:
        return self._plans.limit_for(identity.plan, action)

    async def evaluate(self, identity: Identity, action: QuotaAction | str) -> QuotaResult:
        action = QuotaAction(action)
        used = (await self._counters(identity).get_all(identity))[action]
        limit = self._limit(identity, action)
        return QuotaResult(action=action, allowed=used < limit, used=used, limit=limit)

    async def consume(self, identity: Identity, action: QuotaAction | str) -> QuotaResult:
        action = QuotaAction(action)
        limit = self._limit(identity, action)
        allowed, used = await self._counters(identity).increment_with_ceiling(identity, action, limit)
        if allowed:
            LOGGER.info("Consumed %s for %s (%s/%s)", action.value, identity.scope, used, limit)
        else:
            LOGGER.info("Denied %s for %s at %s/%s", action.value, identity.scope, used, limit)
        return QuotaResult(action=action, allowed=allowed, used=used, limit=limit)

    async def rollback(self, identity: Identity, action: QuotaAction | str) -> QuotaResult:
        action = QuotaAction(action)
        used = await self._counters(identity).decrement(identity, action)
        limit = self._limit(identity, action)
        LOGGER.info("Rolled back %s for %s (%s/%s)", action.value, identity.scope, used, limit)
        return QuotaResult(action=action, allowed=used < limit, used=used, limit=limit)

    async def reset(self, identity: Identity) -> None:
        await self._counters(identity).reset(identity)
        LOGGER.info("Reset usage counters for %s", identity.scope)

    async def usage(self, identity: Identity) -> list[QuotaResult]:
        counters = await self._counters(identity).get_all(identity)
        results = []
        for action in QuotaAction:
            limit = self._limit(identity, action)
            results.append(QuotaResult(action=action, allowed=counters[action] < limit, used=counters[action], limit=limit))
        return results
