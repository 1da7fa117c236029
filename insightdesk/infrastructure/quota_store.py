"""Counter storage behind the quota ledger.

Guest counters live in the guest's local storage next to the workspace tree
and expire with a rolling window or a usage-version bump. Member counters
live in the durable ``quotas`` table and only move through the ledger.
"""
from __future__ import annotations

import asyncio
import json
import math
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from insightdesk.core.ids import utc_datetime
from insightdesk.core.logging import get_logger
from insightdesk.domain.workspaces import Identity, QuotaAction
from insightdesk.infrastructure.duckdb_driver import DuckDBDocumentDriver
from insightdesk.infrastructure.local_storage import LocalStorageDriver, LocalStorageRegistry

LOGGER = get_logger(__name__)

USAGE_STORAGE_KEY = "auth_usage"


class QuotaCounterStore(Protocol):
    async def get_all(self, identity: Identity) -> dict[QuotaAction, int]:
        """Return the current counter of every action."""

    async def increment_with_ceiling(self, identity: Identity, action: QuotaAction, ceiling: float) -> tuple[bool, int]:
        """Atomically increment unless the counter reached ``ceiling``."""

    async def decrement(self, identity: Identity, action: QuotaAction) -> int:
        """Decrement by one, never below zero."""

    async def reset(self, identity: Identity) -> None:
        """Zero every counter of ``identity``."""


class LocalQuotaCounterStore:
    def __init__(
        self,
        registry: LocalStorageRegistry,
        *,
        window: timedelta = timedelta(hours=24),
        version: int = 2,
        clock: Callable[[], datetime] = utc_datetime,
    ) -> None:
        self._registry = registry
        self._window = window
        self._version = version
        self._clock = clock

    def _fresh(self) -> dict[str, Any]:
        return {"version": self._version, "windowStartedAt": self._clock().isoformat(), "usage": {}}

    def _load(self, driver: LocalStorageDriver) -> dict[str, Any]:
        raw = driver.get(USAGE_STORAGE_KEY)
        if not raw:
            return self._fresh()
        try:
            blob = json.loads(raw)
            started = datetime.fromisoformat(blob["windowStartedAt"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            LOGGER.warning("Resetting unreadable guest usage counters")
            return self._fresh()
        if blob.get("version") != self._version:
            LOGGER.info("Guest usage version changed to %s, counters reset", self._version)
            return self._fresh()
        if self._clock() - started >= self._window:
            return self._fresh()
        if not isinstance(blob.get("usage"), dict):
            blob["usage"] = {}
        return blob

    def _save(self, driver: LocalStorageDriver, blob: dict[str, Any]) -> None:
        driver.set(USAGE_STORAGE_KEY, json.dumps(blob))

    async def get_all(self, identity: Identity) -> dict[QuotaAction, int]:
        usage = self._load(self._registry.for_session(identity.session))["usage"]
        return {action: int(usage.get(action.value, 0)) for action in QuotaAction}

    async def increment_with_ceiling(self, identity: Identity, action: QuotaAction, ceiling: float) -> tuple[bool, int]:
        driver = self._registry.for_session(identity.session)
        blob = self._load(driver)
        used = int(blob["usage"].get(action.value, 0))
        if not math.isinf(ceiling) and used >= ceiling:
            return False, used
        blob["usage"][action.value] = used + 1
        self._save(driver, blob)
        return True, used + 1

    async def decrement(self, identity: Identity, action: QuotaAction) -> int:
        driver = self._registry.for_session(identity.session)
        blob = self._load(driver)
        used = max(int(blob["usage"].get(action.value, 0)) - 1, 0)
        blob["usage"][action.value] = used
        self._save(driver, blob)
        return used

    async def reset(self, identity: Identity) -> None:
        driver = self._registry.for_session(identity.session)
        self._save(driver, self._fresh())


class DurableQuotaCounterStore:
    def __init__(self, driver: DuckDBDocumentDriver) -> None:
        self._driver = driver

    async def get_all(self, identity: Identity) -> dict[QuotaAction, int]:
        counters = await asyncio.to_thread(self._driver.get_counters, identity.id)
        return {action: counters.get(action.value, 0) for action in QuotaAction}

    async def increment_with_ceiling(self, identity: Identity, action: QuotaAction, ceiling: float) -> tuple[bool, int]:
        return await asyncio.to_thread(self._driver.increment_with_ceiling, identity.id, action.value, ceiling)

    async def decrement(self, identity: Identity, action: QuotaAction) -> int:
        return await asyncio.to_thread(self._driver.decrement_floor, identity.id, action.value)

    async def reset(self, identity: Identity) -> None:
        await asyncio.to_thread(self._driver.reset_counters, identity.id)
