"""Usage read-out, guest reset and the guest-to-member migration endpoint."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from insightdesk.application import get_aggregates, get_ledger, get_migration_engine, get_services, get_signer
from insightdesk.domain.errors import ValidationError
from insightdesk.domain.workspaces import Identity
from insightdesk.infrastructure.identity import GUEST_COOKIE, GUEST_HEADER
from insightdesk.routes.dependencies import get_identity

router = APIRouter(tags=["account"])


@router.get("/usage")
async def get_usage(identity: Identity = Depends(get_identity)) -> dict:
    results = await get_ledger().usage(identity)
    return {
        "kind": identity.kind.value,
        "plan": identity.plan,
        "usage": {result.action.value: result.to_dict() for result in results},
    }


@router.post("/usage/reset")
async def reset_usage(identity: Identity = Depends(get_identity)) -> dict:
    if not identity.is_member:
        raise ValidationError("identity", "usage can only be reset for members")
    await get_ledger().reset(identity)
    return {"reset": True}


@router.post("/guest/reset")
async def reset_guest(identity: Identity = Depends(get_identity)) -> dict:
    await get_aggregates().reset(identity)
    return {"reset": True}


@router.post("/migrate")
async def migrate_guest_data(
    request: Request, payload: dict | None = None, identity: Identity = Depends(get_identity)
) -> dict:
    """Copy guest data into the member's store.

    The guest graph comes from ``workspaceData`` in the body or, when absent,
    from the server-side guest session named by the request's guest token.
    """

    if not identity.is_member:
        raise ValidationError("identity", "sign in before migrating guest data")
    payload = payload or {}
    graph = payload.get("workspaceData", payload)
    if not isinstance(graph, (dict, list)) or (isinstance(graph, dict) and "workspaces" not in graph):
        token = request.cookies.get(GUEST_COOKIE) or request.headers.get(GUEST_HEADER)
        session = get_signer().unsign(token) if token else None
        if session is None:
            raise ValidationError("workspaceData", "no guest workspace data supplied")
        graph = get_services().selector.guest_session(session).export_graph()
    summary = await get_migration_engine().migrate(identity, graph)
    return summary.to_dict()
