"""Plan tiers, their action limits and the migration payload caps."""
from __future__ import annotations

import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

import yaml

from insightdesk.core.logging import get_logger
from insightdesk.domain.workspaces import QuotaAction

CONFIG_DIR = Path(__file__).resolve().parent.parent / "config"
PLANS_FILE = CONFIG_DIR / "plans.yaml"

LOGGER = get_logger(__name__)

GUEST_LIMITS = {
    QuotaAction.CREATE_WORKSPACE: 3,
    QuotaAction.CREATE_CONTACT: 5,
    QuotaAction.CREATE_TILE: 20,
    QuotaAction.TILE_CHAT: 5,
    QuotaAction.CONTACT_CHAT: 5,
    QuotaAction.REGENERATE: 5,
}


@dataclass(frozen=True)
class MigrationLimits:
    max_workspaces: int = 10
    max_dashboards_per_workspace: int = 25
    max_tiles_per_dashboard: int = 200
    max_contacts_per_dashboard: int = 200
    max_notes_per_dashboard: int = 200

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> MigrationLimits:
        if not data:
            return cls()
        known = {name: int(value) for name, value in data.items() if name in cls.__dataclass_fields__}
        return cls(**known)


def _coerce_limit(value: Any) -> float:
    if value is None:
        return math.inf
    if isinstance(value, float) and math.isinf(value):
        return math.inf
    limit = int(value)
    if limit < 0:
        raise ValueError(f"plan limits must be non-negative, got {value!r}")
    return limit


class PlanTable:
    """Limits per plan tier, keyed by :class:`QuotaAction`.

    Unknown plans fall back to the default plan so a misconfigured identity is
    never granted more than a guest.
    """

    def __init__(self, plans: Mapping[str, Mapping[str, Any]], default_plan: str = "guest") -> None:
        self._plans: dict[str, dict[QuotaAction, float]] = {}
        for plan, limits in plans.items():
            parsed: dict[QuotaAction, float] = {}
            for action in QuotaAction:
                parsed[action] = _coerce_limit(limits.get(action.value, 0)) if limits else 0
            self._plans[plan] = parsed
        if default_plan not in self._plans:
            self._plans[default_plan] = {action: float(limit) for action, limit in GUEST_LIMITS.items()}
        self._default_plan = default_plan

    @property
    def plans(self) -> list[str]:
        return list(self._plans)

    def get_limits(self, plan: str) -> dict[QuotaAction, float]:
        limits = self._plans.get(plan)
        if limits is None:
            LOGGER.warning("Unknown plan %s, falling back to %s limits", plan, self._default_plan)
            limits = self._plans[self._default_plan]
        return dict(limits)

    def limit_for(self, plan: str, action: QuotaAction) -> float:
        return self.get_limits(plan)[action]


def _load_config(path: Path | None) -> dict:
    target = path or PLANS_FILE
    if not target.exists():
        LOGGER.warning("Plan configuration %s not found, using built-in guest limits", target)
        return {}
    with target.open("r", encoding="utf-8") as fp:
        return yaml.safe_load(fp) or {}


def load_plan_table(path: Path | None = None) -> PlanTable:
    config = _load_config(path)
    return PlanTable(config.get("plans") or {}, default_plan=config.get("default_plan", "guest"))


def load_migration_limits(path: Path | None = None) -> MigrationLimits:
    return MigrationLimits.from_mapping(_load_config(path).get("migration"))
