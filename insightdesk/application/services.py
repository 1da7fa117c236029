"""Process-wide wiring of stores, ledger, orchestrator and migration engine."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from insightdesk.application.aggregates import AggregateMirror, WorkspaceAggregateManager
from insightdesk.application.migration import MigrationEngine
from insightdesk.application.mutations import MutationOrchestrator
from insightdesk.application.quota import QuotaLedger
from insightdesk.core.plans import load_migration_limits, load_plan_table
from insightdesk.core.settings import Settings
from insightdesk.infrastructure.duckdb_driver import DuckDBDocumentDriver
from insightdesk.infrastructure.identity import GuestTokenSigner
from insightdesk.infrastructure.local_storage import LocalStorageRegistry
from insightdesk.infrastructure.quota_store import DurableQuotaCounterStore, LocalQuotaCounterStore
from insightdesk.infrastructure.selector import StoreSelector


@dataclass(slots=True)
class Services:
    settings: Settings
    driver: DuckDBDocumentDriver
    selector: StoreSelector
    ledger: QuotaLedger
    aggregates: WorkspaceAggregateManager
    orchestrator: MutationOrchestrator
    migration: MigrationEngine
    signer: GuestTokenSigner


def build_services(settings: Settings) -> Services:
    driver = DuckDBDocumentDriver(settings.db_path)
    local_storage = LocalStorageRegistry(settings.guest_storage_root, capacity=settings.guest_session_capacity)
    selector = StoreSelector(local_storage, driver)
    ledger = QuotaLedger(
        load_plan_table(settings.plans_file),
        LocalQuotaCounterStore(
            local_storage,
            window=timedelta(hours=settings.guest_window_hours),
            version=settings.usage_version,
        ),
        DurableQuotaCounterStore(driver),
    )
    aggregates = WorkspaceAggregateManager(selector, AggregateMirror(settings.mirror_capacity))
    return Services(
        settings=settings,
        driver=driver,
        selector=selector,
        ledger=ledger,
        aggregates=aggregates,
        orchestrator=MutationOrchestrator(selector, ledger, aggregates),
        migration=MigrationEngine(selector, load_migration_limits(settings.plans_file), aggregates),
        signer=GuestTokenSigner(settings.guest_secret),
    )


_services = build_services(Settings.from_env())


def configure_services(settings: Settings | None = None) -> Services:
    """Rebuild every singleton, e.g. after the environment changed."""

    global _services
    _services.driver.close()
    _services = build_services(settings or Settings.from_env())
    return _services


def get_services() -> Services:
    return _services


def get_orchestrator() -> MutationOrchestrator:
    """Return the singleton mutation orchestrator for the process."""

    return _services.orchestrator


def get_migration_engine() -> MigrationEngine:
    return _services.migration


def get_ledger() -> QuotaLedger:
    return _services.ledger


def get_aggregates() -> WorkspaceAggregateManager:
    return _services.aggregates


def get_signer() -> GuestTokenSigner:
    return _services.signer


def reset_services() -> None:
    """Wipe stored documents, counters and mirrors (used in tests)."""

    _services.driver.reset()
    _services.selector.local_storage.reset()
    _services.aggregates.mirror.clear()
