from __future__ import annotations

from fastapi import APIRouter, Depends

from insightdesk.application import get_aggregates, get_orchestrator
from insightdesk.domain.errors import NotFoundError
from insightdesk.domain.workspaces import Identity
from insightdesk.routes.dependencies import get_identity, serialize, usage

router = APIRouter(prefix="/workspaces", tags=["workspace"])


@router.get("")
async def list_workspaces(identity: Identity = Depends(get_identity)) -> dict:
    workspaces = await get_aggregates().list_workspaces(identity)
    return {"items": serialize(workspaces)}


@router.post("")
async def create_workspace(payload: dict, identity: Identity = Depends(get_identity)) -> dict:
    result = await get_orchestrator().create_workspace(identity, payload)
    return {"workspace": serialize(result.entity), "created": result.created, "usage": usage(result.quota)}


@router.get("/{workspace_id}")
async def get_workspace(workspace_id: str, identity: Identity = Depends(get_identity)) -> dict:
    workspace = await get_aggregates().get_workspace(identity, workspace_id)
    return {"workspace": serialize(workspace)}


@router.patch("/{workspace_id}")
async def update_workspace(workspace_id: str, payload: dict, identity: Identity = Depends(get_identity)) -> dict:
    result = await get_orchestrator().update_workspace(identity, workspace_id, payload)
    return {"workspace": serialize(result.entity)}


@router.post("/{workspace_id}/dashboards")
async def create_dashboard(workspace_id: str, payload: dict, identity: Identity = Depends(get_identity)) -> dict:
    result = await get_orchestrator().create_dashboard(identity, workspace_id, payload)
    return {"dashboard": serialize(result.entity)}


@router.get("/{workspace_id}/dashboards/active")
async def get_active_dashboard(workspace_id: str, identity: Identity = Depends(get_identity)) -> dict:
    dashboard = await get_aggregates().get_active_dashboard(identity, workspace_id)
    if dashboard is None:
        raise NotFoundError("dashboard")
    return {"dashboard": serialize(dashboard)}


@router.post("/{workspace_id}/dashboards/{dashboard_id}/activate")
async def activate_dashboard(workspace_id: str, dashboard_id: str, identity: Identity = Depends(get_identity)) -> dict:
    result = await get_orchestrator().set_active_dashboard(identity, workspace_id, dashboard_id)
    return {"dashboard": serialize(result.entity)}


@router.patch("/{workspace_id}/dashboards/{dashboard_id}")
async def update_dashboard(
    workspace_id: str, dashboard_id: str, payload: dict, identity: Identity = Depends(get_identity)
) -> dict:
    result = await get_orchestrator().update_dashboard(identity, workspace_id, dashboard_id, payload)
    return {"dashboard": serialize(result.entity)}


@router.delete("/{workspace_id}/dashboards/{dashboard_id}")
async def delete_dashboard(workspace_id: str, dashboard_id: str, identity: Identity = Depends(get_identity)) -> dict:
    result = await get_orchestrator().delete_dashboard(identity, workspace_id, dashboard_id)
    return {"deleted": dashboard_id, "active": serialize(result.entity)}
