"""Tile, note and contact endpoints scoped to one dashboard."""
from __future__ import annotations

from fastapi import APIRouter, Depends

from insightdesk.application import get_orchestrator
from insightdesk.domain.workspaces import ChatOutcome, ContainerRef, Identity
from insightdesk.routes.dependencies import get_identity, serialize, usage

router = APIRouter(prefix="/workspaces/{workspace_id}/dashboards/{dashboard_id}", tags=["resources"])


def _container(workspace_id: str, dashboard_id: str) -> ContainerRef:
    return ContainerRef(workspace_id=workspace_id, dashboard_id=dashboard_id)


def _chat(outcome: ChatOutcome, key: str) -> dict:
    return {
        key: serialize(outcome.entity),
        "message": outcome.message.to_document(),
        "reply": outcome.reply.to_document() if outcome.reply is not None else None,
        "error": outcome.error,
        "usage": usage(outcome.quota),
    }


# ----------------------------------------------------------------------
# Tiles
# ----------------------------------------------------------------------


@router.post("/tiles")
async def create_tile(
    workspace_id: str, dashboard_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    result = await get_orchestrator().create_tile(identity, _container(workspace_id, dashboard_id), payload)
    return {"tile": serialize(result.entity), "usage": usage(result.quota)}


@router.post("/tiles/reorder")
async def reorder_tiles(
    workspace_id: str, dashboard_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    result = await get_orchestrator().reorder_tiles(identity, _container(workspace_id, dashboard_id), payload)
    return {"tiles": serialize(result.entity)}


@router.patch("/tiles/{tile_id}")
async def update_tile(
    workspace_id: str, dashboard_id: str, tile_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    result = await get_orchestrator().update_tile(identity, _container(workspace_id, dashboard_id), tile_id, payload)
    return {"tile": serialize(result.entity)}


@router.delete("/tiles/{tile_id}")
async def delete_tile(
    workspace_id: str, dashboard_id: str, tile_id: str, identity: Identity = Depends(get_identity)
) -> dict:
    await get_orchestrator().delete_tile(identity, _container(workspace_id, dashboard_id), tile_id)
    return {"deleted": tile_id}


@router.post("/tiles/{tile_id}/chat")
async def chat_with_tile(
    workspace_id: str, dashboard_id: str, tile_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    outcome = await get_orchestrator().chat_with_tile(
        identity, _container(workspace_id, dashboard_id), tile_id, payload
    )
    return _chat(outcome, "tile")


@router.post("/tiles/{tile_id}/regenerate")
async def regenerate_tile(
    workspace_id: str,
    dashboard_id: str,
    tile_id: str,
    payload: dict | None = None,
    identity: Identity = Depends(get_identity),
) -> dict:
    result = await get_orchestrator().regenerate_tile(
        identity, _container(workspace_id, dashboard_id), tile_id, payload
    )
    return {"tile": serialize(result.entity), "usage": usage(result.quota)}


# ----------------------------------------------------------------------
# Notes
# ----------------------------------------------------------------------


@router.post("/notes")
async def create_note(
    workspace_id: str, dashboard_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    result = await get_orchestrator().create_note(identity, _container(workspace_id, dashboard_id), payload)
    return {"note": serialize(result.entity)}


@router.patch("/notes/{note_id}")
async def update_note(
    workspace_id: str, dashboard_id: str, note_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    result = await get_orchestrator().update_note(identity, _container(workspace_id, dashboard_id), note_id, payload)
    return {"note": serialize(result.entity)}


@router.delete("/notes/{note_id}")
async def delete_note(
    workspace_id: str, dashboard_id: str, note_id: str, identity: Identity = Depends(get_identity)
) -> dict:
    await get_orchestrator().delete_note(identity, _container(workspace_id, dashboard_id), note_id)
    return {"deleted": note_id}


# ----------------------------------------------------------------------
# Contacts
# ----------------------------------------------------------------------


@router.post("/contacts")
async def create_contact(
    workspace_id: str, dashboard_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    result = await get_orchestrator().create_contact(identity, _container(workspace_id, dashboard_id), payload)
    return {"contact": serialize(result.entity), "usage": usage(result.quota)}


@router.patch("/contacts/{contact_id}")
async def update_contact(
    workspace_id: str, dashboard_id: str, contact_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    result = await get_orchestrator().update_contact(
        identity, _container(workspace_id, dashboard_id), contact_id, payload
    )
    return {"contact": serialize(result.entity)}


@router.delete("/contacts/{contact_id}")
async def delete_contact(
    workspace_id: str, dashboard_id: str, contact_id: str, identity: Identity = Depends(get_identity)
) -> dict:
    await get_orchestrator().delete_contact(identity, _container(workspace_id, dashboard_id), contact_id)
    return {"deleted": contact_id}


@router.post("/contacts/{contact_id}/chat")
async def chat_with_contact(
    workspace_id: str, dashboard_id: str, contact_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    outcome = await get_orchestrator().chat_with_contact(
        identity, _container(workspace_id, dashboard_id), contact_id, payload
    )
    return _chat(outcome, "contact")
