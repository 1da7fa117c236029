"""Error taxonomy shared by the stores, the ledger and the orchestrator."""
from __future__ import annotations

import math
from typing import Any


class WorkspaceError(Exception):
    """Base class for every error raised by the workspace core."""

    code = "workspace_error"

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": str(self)}


class NotFoundError(WorkspaceError):
    """Raised when an entity is missing or owned by another identity.

    Both cases produce the same message so callers cannot test for foreign
    ids.
    """

    code = "not_found"

    def __init__(self, kind: str, resource_id: str | None = None) -> None:
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"{kind.capitalize()} not found")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["kind"] = self.kind
        return payload


class QuotaExceededError(WorkspaceError):
    code = "quota_exceeded"

    def __init__(self, action: str, used: int, limit: float) -> None:
        self.action = action
        self.used = used
        self.limit = limit
        super().__init__(f"Limit reached for {action}: used {used} of {limit}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "action": self.action,
                "used": self.used,
                "limit": None if math.isinf(self.limit) else int(self.limit),
            }
        )
        return payload


class ValidationError(WorkspaceError):
    code = "validation_error"

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update({"field": self.field, "reason": self.reason})
        return payload


class InvalidOrderError(ValidationError):
    """Raised when a reorder request is not a permutation of the tile ids."""

    code = "invalid_order"

    def __init__(self, reason: str) -> None:
        super().__init__("order", reason)


class DuplicateIdError(WorkspaceError):
    code = "duplicate_id"

    def __init__(self, kind: str, resource_id: str) -> None:
        self.kind = kind
        self.resource_id = resource_id
        super().__init__(f"{kind.capitalize()} {resource_id} already exists")


class BackendUnavailableError(WorkspaceError):
    code = "backend_unavailable"


class AssistantUnavailableError(WorkspaceError):
    code = "assistant_unavailable"


__all__ = [
    "AssistantUnavailableError",
    "BackendUnavailableError",
    "DuplicateIdError",
    "InvalidOrderError",
    "NotFoundError",
    "QuotaExceededError",
    "ValidationError",
    "WorkspaceError",
]
