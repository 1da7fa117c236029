from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

sys.path.append(str(Path(__file__).resolve().parents[1]))

from insightdesk.application import configure_services, get_services, get_signer, reset_services
from insightdesk.infrastructure.identity import GUEST_COOKIE

MEMBER_HEADERS = {"X-Member-Id": "member-api"}


@pytest.fixture(autouse=True)
def reset_state():
    reset_services()
    yield
    reset_services()


@pytest.fixture()
def trusted_plan_header():
    configure_services(replace(get_services().settings, trust_plan_header=True))
    yield
    configure_services()


@pytest.fixture()
def client():
    from insightdesk.app import create_app

    with TestClient(create_app()) as test_client:
        yield test_client


def _create_workspace(client: TestClient, name: str = "Acme", **kwargs) -> dict:
    response = client.post("/api/workspaces", json={"name": name, "website": "acme.io"}, **kwargs)
    assert response.status_code == 200, response.text
    return response.json()


def _dashboard_url(workspace: dict) -> str:
    dashboard_id = workspace["dashboards"][0]["id"]
    return f"/api/workspaces/{workspace['id']}/dashboards/{dashboard_id}"


def test_root_route(client: TestClient):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["message"] == "Insightdesk Workspace API"


def test_guest_receives_session_cookie_and_keeps_its_data(client: TestClient):
    body = _create_workspace(client)

    assert client.cookies.get(GUEST_COOKIE)
    assert body["created"] is True
    assert body["usage"] == {"action": "createWorkspace", "allowed": True, "used": 1, "limit": 3, "remaining": 2}

    listed = client.get("/api/workspaces").json()["items"]
    assert [workspace["name"] for workspace in listed] == ["Acme"]
    assert listed[0]["dashboards"][0]["isActive"] is True


def test_guest_flow_over_http(client: TestClient):
    workspace = _create_workspace(client)["workspace"]
    base = _dashboard_url(workspace)

    tiles = []
    for title in ("A", "B", "C"):
        response = client.post(f"{base}/tiles", json={"title": title, "content": f"{title} body"})
        assert response.status_code == 200, response.text
        tiles.append(response.json()["tile"]["id"])
    a, b, c = tiles

    reordered = client.post(f"{base}/tiles/reorder", json={"order": [c, a, b]}).json()["tiles"]
    assert [(tile["id"], tile["orderIndex"]) for tile in reordered] == [(c, 0), (a, 1), (b, 2)]

    note = client.post(f"{base}/notes", json={"content": "Remember"}).json()["note"]
    assert note["title"] == "Note"

    contact = client.post(f"{base}/contacts", json={"name": "Dana", "email": "dana@acme.io"}).json()
    assert contact["usage"]["action"] == "createContact"

    assert client.delete(f"{base}/tiles/{b}").json() == {"deleted": b}
    active = client.get(f"/api/workspaces/{workspace['id']}/dashboards/active").json()["dashboard"]
    assert [tile["id"] for tile in active["tiles"]] == [c, a]
    assert [item["id"] for item in active["notes"]] == [note["id"]]


def test_guest_workspace_quota_returns_429(client: TestClient):
    for index in range(3):
        _create_workspace(client, name=f"Company {index}")

    response = client.post("/api/workspaces", json={"name": "Company 3"})

    assert response.status_code == 429
    assert response.json()["error"] == "quota_exceeded"
    assert response.json()["used"] == 3
    assert response.json()["limit"] == 3


def test_errors_map_to_status_codes(client: TestClient):
    workspace = _create_workspace(client)["workspace"]
    base = _dashboard_url(workspace)

    missing = client.get("/api/workspaces/ws_missing")
    assert missing.status_code == 404
    assert missing.json() == {"error": "not_found", "detail": "Workspace not found", "kind": "workspace"}

    blank = client.post(f"{base}/tiles", json={"title": " ", "content": "Body"})
    assert blank.status_code == 400
    assert blank.json()["field"] == "title"

    bad_order = client.post(f"{base}/tiles/reorder", json={"order": ["tile_unknown"]})
    assert bad_order.status_code == 400
    assert bad_order.json()["error"] == "invalid_order"

    not_json = client.post("/api/workspaces", content="nope", headers={"content-type": "application/json"})
    assert not_json.status_code == 400


def test_chat_without_assistant_keeps_user_turn(client: TestClient):
    workspace = _create_workspace(client)["workspace"]
    base = _dashboard_url(workspace)
    tile = client.post(f"{base}/tiles", json={"title": "Overview", "content": "Body"}).json()["tile"]

    response = client.post(f"{base}/tiles/{tile['id']}/chat", json={"message": "What next?"})

    assert response.status_code == 200
    body = response.json()
    assert body["reply"] is None
    assert body["error"] == "Assistant integration not configured"
    assert [message["content"] for message in body["tile"]["history"]] == ["What next?"]
    assert body["usage"]["used"] == 1


def test_regenerate_without_assistant_returns_502(client: TestClient):
    workspace = _create_workspace(client)["workspace"]
    base = _dashboard_url(workspace)
    tile = client.post(f"{base}/tiles", json={"title": "Overview", "content": "Body"}).json()["tile"]

    response = client.post(f"{base}/tiles/{tile['id']}/regenerate", json={})

    assert response.status_code == 502
    assert client.get("/api/usage").json()["usage"]["regenerate"]["used"] == 0


def test_member_flow_is_isolated_from_guests(client: TestClient):
    member_workspace = _create_workspace(client, name="Member Co", headers=MEMBER_HEADERS)["workspace"]

    assert member_workspace["ownerId"] == "member-api"
    assert client.get("/api/workspaces").json()["items"] == []
    other = client.get(f"/api/workspaces/{member_workspace['id']}", headers={"X-Member-Id": "someone-else"})
    assert other.status_code == 404

    usage = client.get("/api/usage", headers=MEMBER_HEADERS).json()
    assert usage["kind"] == "member"
    assert usage["usage"]["createWorkspace"]["limit"] == 100

    assert client.post("/api/usage/reset", headers=MEMBER_HEADERS).json() == {"reset": True}
    assert client.get("/api/usage", headers=MEMBER_HEADERS).json()["usage"]["createWorkspace"]["used"] == 0


def test_business_plan_reports_unlimited_usage(trusted_plan_header, client: TestClient):
    usage = client.get("/api/usage", headers={**MEMBER_HEADERS, "X-Plan": "business"}).json()

    assert usage["plan"] == "business"
    assert usage["usage"]["createTile"]["limit"] is None


def test_plan_header_is_ignored_unless_trusted(client: TestClient):
    usage = client.get("/api/usage", headers={**MEMBER_HEADERS, "X-Plan": "business"}).json()

    assert usage["plan"] == "member"
    assert usage["usage"]["createTile"]["limit"] == 2000


def test_guest_reset_keeps_usage(client: TestClient):
    _create_workspace(client)

    assert client.post("/api/guest/reset").json() == {"reset": True}
    assert client.get("/api/workspaces").json()["items"] == []
    assert client.get("/api/usage").json()["usage"]["createWorkspace"]["used"] == 1


def test_guests_cannot_reset_usage_or_migrate(client: TestClient):
    assert client.post("/api/usage/reset").status_code == 400
    assert client.post("/api/migrate", json={"workspaceData": []}).status_code == 400


def test_migrate_from_request_body(client: TestClient):
    graph = [
        {
            "id": "ws_guest",
            "name": "Guest Co",
            "dashboards": [
                {
                    "id": "db_guest",
                    "workspaceId": "ws_guest",
                    "name": "Main",
                    "isActive": True,
                    "tiles": [{"id": "tile_1", "title": "Overview", "content": "Body", "orderIndex": 0}],
                }
            ],
        }
    ]

    response = client.post("/api/migrate", json={"workspaceData": graph}, headers=MEMBER_HEADERS)

    assert response.status_code == 200
    assert response.json() == {
        "workspacesMigrated": 1,
        "dashboardsMigrated": 1,
        "tilesMigrated": 1,
        "contactsMigrated": 0,
        "notesMigrated": 0,
        "errors": [],
    }
    workspace = client.get("/api/workspaces/ws_guest", headers=MEMBER_HEADERS).json()["workspace"]
    assert workspace["dashboards"][0]["tiles"][0]["title"] == "Overview"


def test_migrate_from_guest_session(client: TestClient):
    workspace = _create_workspace(client, name="Guest Co")["workspace"]
    client.post(f"{_dashboard_url(workspace)}/notes", json={"content": "Hand over"})
    token = client.cookies.get(GUEST_COOKIE)
    assert get_signer().unsign(token)

    response = client.post("/api/migrate", headers=MEMBER_HEADERS)

    assert response.status_code == 200
    summary = response.json()
    assert summary["workspacesMigrated"] == 1
    assert summary["notesMigrated"] == 1
    member_items = client.get("/api/workspaces", headers=MEMBER_HEADERS).json()["items"]
    assert [item["id"] for item in member_items] == [workspace["id"]]
    # the guest copy is left in place
    assert len(client.get("/api/workspaces").json()["items"]) == 1
