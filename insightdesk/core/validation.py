from __future__ import annotations

from typing import Any, Mapping, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from insightdesk.domain.errors import ValidationError

PayloadT = TypeVar("PayloadT", bound=BaseModel)


def require_text(field: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "must be a non-empty string")
    return value.strip()


def optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    return value.strip() or None


def coerce_payload(model: type[PayloadT], payload: PayloadT | Mapping[str, Any] | None) -> PayloadT:
    """Validate ``payload`` into ``model``, reporting the first offending field."""

    if isinstance(payload, model):
        return payload
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as exc:
        error = exc.errors()[0]
        field = ".".join(str(part) for part in error.get("loc", ())) or "payload"
        raise ValidationError(field, error.get("msg", "invalid value")) from exc
