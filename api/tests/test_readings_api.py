import asyncio

import httpx
import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from api.app.identity import issue_token
from api.app.main import app, init_state, shutdown_state


@pytest_asyncio.fixture
async def client(sqlite_settings):
    previous = app.state.settings
    await init_state(app, sqlite_settings)
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
    await shutdown_state(app)
    app.state.settings = previous


async def _sign_in(client):
    r = await client.post("/api/v1/auth/anonymous")
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["user"]["is_anonymous"] is True
    return data["user"]["id"], {"Authorization": f"Bearer {data['tokens']['access_token']}"}


async def _view(client, h):
    r = await client.get("/api/v1/readings", headers=h)
    assert r.status_code == 200
    return r.json()["data"]


async def _eventually(client, h, predicate):
    last = {}

    async def check():
        last["view"] = await _view(client, h)
        return predicate(last["view"])

    for _ in range(200):
        if await check():
            return last["view"]
        await asyncio.sleep(0.01)
    raise AssertionError(f"view never matched: {last.get('view')}")


@pytest.mark.asyncio
async def test_requires_bearer_token(client):
    r = await client.get("/api/v1/readings")
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "unauthorized"

    r = await client.get("/api/v1/readings", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401
    assert r.json()["error"]["code"] == "invalid_token"


@pytest.mark.asyncio
async def test_add_and_delete_flow(client):
    user_id, h = await _sign_in(client)

    r = await client.get("/api/v1/auth/me", headers=h)
    assert r.json()["data"]["id"] == user_id

    view = await _eventually(client, h, lambda v: not v["isLoading"])
    assert view["readings"] == [] and view["totalPages"] == 0 and view["userId"] == user_id

    r = await client.post("/api/v1/readings", headers=h, json={"pages": "5"})
    assert r.json()["data"] == {"accepted": True, "pagesInput": ""}
    r = await client.post("/api/v1/readings", headers=h, json={"pages": 3})
    assert r.json()["data"]["accepted"] is True

    view = await _eventually(client, h, lambda v: len(v["readings"]) == 2)
    assert view["totalPages"] == 8
    assert view["todayPages"] == 8
    stamps = [e["timestamp"] for e in view["readings"]]
    assert stamps == sorted(stamps, reverse=True)
    assert sorted(e["pages"] for e in view["readings"]) == [3, 5]

    r = await client.post("/api/v1/readings", headers=h, json={"pages": "abc"})
    assert r.json()["data"] == {"accepted": False, "pagesInput": "abc"}

    target = view["readings"][0]["id"]
    r = await client.delete(f"/api/v1/readings/{target}", headers=h)
    assert r.json()["data"]["accepted"] is True
    view = await _eventually(client, h, lambda v: len(v["readings"]) == 1)
    assert all(e["id"] != target for e in view["readings"])


@pytest.mark.asyncio
async def test_users_do_not_see_each_other(client):
    _, h1 = await _sign_in(client)
    _, h2 = await _sign_in(client)
    await client.post("/api/v1/readings", headers=h1, json={"pages": "4"})
    await _eventually(client, h1, lambda v: v["totalPages"] == 4)
    view = await _eventually(client, h2, lambda v: not v["isLoading"])
    assert view["readings"] == []


@pytest.mark.asyncio
async def test_token_exchange_and_logout(client):
    token = issue_token(app.state.settings, "bootstrap-user")
    r = await client.post("/api/v1/auth/token", json={"token": token})
    assert r.status_code == 200
    data = r.json()["data"]
    assert data["user"]["id"] == "bootstrap-user"
    h = {"Authorization": f"Bearer {data['tokens']['access_token']}"}

    await _view(client, h)
    assert app.state.sessions.get("bootstrap-user") is not None

    r = await client.post("/api/v1/auth/logout", headers=h)
    assert r.status_code == 200
    assert app.state.sessions.get("bootstrap-user") is None

    r = await client.get("/api/v1/readings", headers=h)
    assert r.status_code == 401
    r = await client.get("/api/v1/auth/me", headers=h)
    assert r.status_code == 401
    assert app.state.sessions.get("bootstrap-user") is None

    r = await client.post("/api/v1/auth/token", json={"token": token})
    h2 = {"Authorization": f"Bearer {r.json()['data']['tokens']['access_token']}"}
    r = await client.get("/api/v1/auth/me", headers=h2)
    assert r.status_code == 200

    r = await client.post("/api/v1/auth/token", json={"token": "bad"})
    assert r.status_code == 401
    r = await client.post("/api/v1/auth/token", json={})
    assert r.status_code == 400


def test_websocket_pushes_views(sqlite_settings):
    previous = app.state.settings
    app.state.settings = sqlite_settings
    try:
        with TestClient(app) as tc:
            token = tc.post("/api/v1/auth/anonymous").json()["data"]["tokens"]["access_token"]
            with tc.websocket_connect(f"/ws/readings?token={token}") as ws:
                first = ws.receive_json()
                assert first["type"] == "view"

                ws.send_json({"type": "add", "pages": "7"})
                acked, view = False, None
                for _ in range(10):
                    msg = ws.receive_json()
                    if msg["type"] == "ack":
                        assert msg == {"type": "ack", "op": "add", "accepted": True}
                        acked = True
                    elif msg["type"] == "view" and msg["data"]["totalPages"] == 7:
                        view = msg["data"]
                    if acked and view:
                        break
                assert acked and view["readings"][0]["pages"] == 7

                ws.send_json({"type": "nonsense"})
                assert ws.receive_json() == {"type": "error", "code": "bad_message"}

            # 断开后发送任务已回收，会话不再被持有
            assert app.state.sessions._holders == {}
            assert len(app.state.sessions) == 1

            with tc.websocket_connect("/ws/readings?token=bad") as ws:
                assert ws.receive_json() == {"type": "error", "code": "invalid_token"}
    finally:
        app.state.settings = previous
