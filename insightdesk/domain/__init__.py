"""Domain layer definitions."""

from .errors import (
    AssistantUnavailableError,
    BackendUnavailableError,
    DuplicateIdError,
    InvalidOrderError,
    NotFoundError,
    QuotaExceededError,
    ValidationError,
    WorkspaceError,
)
from .workspaces import (
    ChatOutcome,
    ContainerRef,
    Identity,
    IdentityKind,
    MigrationSummary,
    MutationEvent,
    MutationResult,
    QuotaAction,
    QuotaResult,
    ResourceKey,
    ResourceKind,
)

__all__ = [
    "AssistantUnavailableError",
    "BackendUnavailableError",
    "ChatOutcome",
    "ContainerRef",
    "DuplicateIdError",
    "Identity",
    "IdentityKind",
    "InvalidOrderError",
    "MigrationSummary",
    "MutationEvent",
    "MutationResult",
    "NotFoundError",
    "QuotaAction",
    "QuotaExceededError",
    "QuotaResult",
    "ResourceKey",
    "ResourceKind",
    "ValidationError",
    "WorkspaceError",
]
