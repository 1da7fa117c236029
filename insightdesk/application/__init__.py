"""Application services."""

from .aggregates import AggregateMirror, WorkspaceAggregateManager
from .migration import MigrationEngine
from .mutations import MutationListener, MutationOrchestrator
from .quota import QuotaLedger
from .services import (
    configure_services,
    get_aggregates,
    get_ledger,
    get_migration_engine,
    get_orchestrator,
    get_services,
    get_signer,
    reset_services,
)

__all__ = [
    "AggregateMirror",
    "MigrationEngine",
    "MutationListener",
    "MutationOrchestrator",
    "QuotaLedger",
    "WorkspaceAggregateManager",
    "configure_services",
    "get_aggregates",
    "get_ledger",
    "get_migration_engine",
    "get_orchestrator",
    "get_services",
    "get_signer",
    "reset_services",
]
