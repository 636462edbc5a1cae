import asyncio
import json

import pytest
from starlette.websockets import WebSocketDisconnect

from websocket_service import ConnectionManager


def start_session(client, headers, capital=1000):
    resp = client.post("/sessions", json={"initial_capital": capital, "currency": "USD"}, headers=headers)
    assert resp.status_code == 200
    return resp.json()


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_signup_and_login(client):
    resp = client.post("/auth/signup", json={"email": "new@example.com", "password": "pw"})
    assert resp.status_code == 200

    dup = client.post("/auth/signup", json={"email": "new@example.com", "password": "pw"})
    assert dup.status_code == 409
    assert dup.json()["detail"] == "User already exists"

    bad = client.post("/auth/login", json={"email": "new@example.com", "password": "nope"})
    assert bad.status_code == 401

    good = client.post("/auth/login", json={"email": "new@example.com", "password": "pw"})
    assert good.status_code == 200
    assert good.json()["user_id"] == resp.json()["user_id"]


def test_routes_require_token(client):
    assert client.get("/sessions").status_code == 401
    assert client.get("/sessions", headers={"Authorization": "Bearer garbage"}).status_code == 401


def test_settings_roundtrip(client, auth_headers):
    assert client.get("/settings", headers=auth_headers).json()["initial_capital"] == 18000

    resp = client.patch("/settings", json={"risk_percent": 5, "low_trade_alert": True}, headers=auth_headers)
    assert resp.status_code == 200
    assert resp.json()["risk_percent"] == 5
    assert resp.json()["low_trade_alert"] is True

    empty = client.patch("/settings", json={"unknown": 1}, headers=auth_headers)
    assert empty.status_code == 400
    assert empty.json()["detail"] == "No valid fields provided for update"


def test_session_lifecycle(client, auth_headers):
    assert client.get("/sessions/active", headers=auth_headers).json() is None

    first = start_session(client, auth_headers)
    second = start_session(client, auth_headers, capital=500)
    assert (first["session_number"], second["session_number"]) == (1, 2)

    sessions = client.get("/sessions", headers=auth_headers).json()
    assert [s["session_number"] for s in sessions] == [2, 1]
    assert [s["is_active"] for s in sessions] == [True, False]

    switched = client.post("/sessions/switch", json={"session_number": 1}, headers=auth_headers)
    assert switched.status_code == 200
    assert client.get("/sessions/active", headers=auth_headers).json()["id"] == first["id"]

    missing = client.post("/sessions/switch", json={"session_number": 9}, headers=auth_headers)
    assert missing.status_code == 404

    patched = client.patch(f"/sessions/{first['id']}", json={"payout_percent": 80}, headers=auth_headers)
    assert patched.json()["payout_percent"] == 80


def test_trade_flow(client, auth_headers):
    session = start_session(client, auth_headers)

    amount = client.get(f"/sessions/{session['id']}/next-trade-amount", headers=auth_headers).json()["amount"]
    assert amount == pytest.approx(20)

    ids = [client.post("/trades", json={"trade_amount": amount}, headers=auth_headers).json()["id"] for _ in range(2)]

    settled = client.post(f"/trades/{ids[0]}/settle", json={"result": "loss"}, headers=auth_headers)
    assert settled.status_code == 200
    assert settled.json()["current_balance"] == pytest.approx(980)

    invalid = client.post(f"/trades/{ids[1]}/settle", json={"result": "draw"}, headers=auth_headers)
    assert invalid.status_code == 422

    client.patch(f"/trades/{ids[1]}", json={"result": "win"}, headers=auth_headers)
    trades = client.get("/trades", params={"session_id": session["id"]}, headers=auth_headers).json()
    assert [t["current_balance"] for t in trades] == pytest.approx([980, 998.4])

    assert client.get(f"/sessions/{session['id']}/next-trade-amount", headers=auth_headers).json()["amount"] == pytest.approx(
        998.4 * 0.02
    )

    stats = client.get(f"/sessions/{session['id']}/stats", headers=auth_headers).json()
    assert stats["win_rate"] == pytest.approx(50)
    assert stats["streak"] == {"type": "win", "count": 1}

    assert client.delete(f"/trades/{ids[0]}", headers=auth_headers).status_code == 200
    assert client.get(f"/trades/{ids[0]}", headers=auth_headers).status_code == 404
    assert client.get(f"/trades/{ids[1]}", headers=auth_headers).json()["current_balance"] == pytest.approx(1018.4)


def test_add_trade_without_active_session(client, auth_headers):
    resp = client.post("/trades", json={"trade_amount": 10}, headers=auth_headers)

    assert resp.status_code == 400


def test_clear_and_export(client, auth_headers):
    session = start_session(client, auth_headers)

    empty = client.get("/export/trades", params={"session_id": session["id"]}, headers=auth_headers)
    assert empty.status_code == 200
    assert empty.headers["content-type"].startswith("text/csv")
    assert empty.text.splitlines() == ["No.,Result,Trade Amount,Return,Current Balance"]

    trade = client.post("/trades", json={"trade_amount": 25}, headers=auth_headers).json()
    client.post(f"/trades/{trade['id']}/settle", json={"result": "win"}, headers=auth_headers)
    lines = client.get("/export/trades", headers=auth_headers).text.splitlines()
    assert lines[1] == "1,WIN,25.00,23.00,1023.00"

    assert client.delete("/trades", headers=auth_headers).json() == {"deleted": True}
    assert client.delete("/trades", headers=auth_headers).json() == {"deleted": False}


def test_calculation_endpoints(client):
    resp = client.post(
        "/calc/next-trade-amount",
        json={
            "current_balance": 1000,
            "previous_trade_amount": 50,
            "previous_result": "loss",
            "risk_percent": 2,
            "recovery_multiplier": 2,
            "payout_percent": 92,
        },
    )
    assert resp.json()["amount"] == 100

    resp = client.post("/calc/trade-return", json={"trade_amount": 100, "result": "win", "payout_percent": 92})
    assert resp.json()["amount"] == 92

    resp = client.post("/calc/trade-return", json={"trade_amount": 100, "result": "push"})
    assert resp.status_code == 400

    resp = client.post(
        "/calc/position-size",
        json={"account_balance": 10000, "risk_percentage": 2, "entry_price": 100, "stop_loss_price": 100},
    )
    assert resp.status_code == 400

    resp = client.post(
        "/calc/profit-loss",
        json={"entry_price": 100, "exit_price": 90, "quantity": 2, "direction": "short"},
    )
    assert resp.json()["amount"] == 20


def test_language_preference(client, auth_headers):
    assert client.get("/ui/language", headers=auth_headers).json() == {"language": "zh"}

    resp = client.post("/ui/language", json={"language": "en"}, headers=auth_headers)
    assert resp.json() == {"delivered": 0}
    assert client.get("/ui/language", headers=auth_headers).json() == {"language": "en"}

    assert client.post("/ui/language", json={"language": "fr"}, headers=auth_headers).status_code == 400


def test_websocket_notifications(client, auth_headers):
    token = auth_headers["Authorization"].split()[1]

    with client.websocket_connect(f"/ws/notifications?token={token}") as ws:
        ws.send_text(json.dumps({"type": "new_trade"}))
        assert ws.receive_json() == {"type": "new_trade"}

        ws.send_text(json.dumps({"type": "language_changed", "language": "en"}))
        assert ws.receive_json() == {"type": "language_changed", "language": "en"}

        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"


def test_websocket_rejects_bad_token(client):
    with pytest.raises(WebSocketDisconnect):
        with client.websocket_connect("/ws/notifications?token=nope") as ws:
            ws.receive_text()


class FakeWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def accept(self):
        pass

    async def send_text(self, message):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(json.loads(message))


def test_manager_drops_broken_sockets():
    manager = ConnectionManager()
    healthy, broken = FakeWebSocket(), FakeWebSocket(fail=True)

    async def scenario():
        await manager.connect(healthy, 1)
        await manager.connect(broken, 1)
        return await manager.notify_new_trade(1)

    assert asyncio.run(scenario()) == 1
    assert healthy.sent == [{"type": "new_trade"}]
    assert broken not in manager.active_connections
    assert manager.user_connections[1] == {healthy}
