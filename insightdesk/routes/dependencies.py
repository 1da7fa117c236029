from __future__ import annotations

from typing import Any

from fastapi import Request, Response

from insightdesk.application import get_services, get_signer
from insightdesk.core.schema import Contact, Dashboard, Note, Tile, Workspace
from insightdesk.domain.workspaces import Identity, QuotaResult
from insightdesk.infrastructure.identity import GUEST_COOKIE, resolve_identity

GUEST_COOKIE_MAX_AGE = 60 * 60 * 24 * 30


def get_identity(request: Request, response: Response) -> Identity:
    """Resolve the caller, issuing a fresh guest session when none is present."""

    signer = get_signer()
    identity = resolve_identity(
        request.headers,
        request.cookies,
        signer,
        trust_plan_header=get_services().settings.trust_plan_header,
    )
    if not identity.is_member and identity.session is None:
        session, token = signer.issue()
        response.set_cookie(GUEST_COOKIE, token, max_age=GUEST_COOKIE_MAX_AGE, httponly=True, samesite="lax")
        identity = Identity.guest(session)
    return identity


def serialize(entity: Any) -> Any:
    if isinstance(entity, (Workspace, Dashboard)):
        return entity.to_document(children=True)
    if isinstance(entity, (Tile, Note, Contact)):
        return entity.to_document()
    if isinstance(entity, list):
        return [serialize(item) for item in entity]
    return entity


def usage(quota: QuotaResult | None) -> dict[str, Any] | None:
    return quota.to_dict() if quota is not None else None
