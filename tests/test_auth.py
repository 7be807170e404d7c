import asyncio

import pytest
from fastapi.testclient import TestClient

from inbox import auth, config, main


def test_password_hashing_roundtrip():
    stored = auth.hash_password("s3cret!")
    assert stored != "s3cret!"
    assert auth.verify_password("s3cret!", stored)
    assert not auth.verify_password("wrong", stored)
    assert not auth.verify_password("s3cret!", "")
    assert not auth.verify_password("s3cret!", "not-a-hash")


def test_access_token_roundtrip(monkeypatch):
    monkeypatch.setattr(config, "AGENT_AUTH_SECRET", "test-secret")
    token = auth.issue_access_token({"username": "laura", "id": 3, "name": "Laura"})
    assert auth.parse_access_token(token) == {"username": "laura", "id": 3, "name": "Laura"}
    assert auth.parse_access_token("garbage") is None

    expired = auth.issue_access_token({"username": "laura"}, ttl_seconds=-10)
    assert auth.parse_access_token(expired) is None

    monkeypatch.setattr(config, "AGENT_AUTH_SECRET", "rotated")
    assert auth.parse_access_token(token) is None


@pytest.mark.parametrize(
    "path,public",
    [
        ("/health", True),
        ("/metrics", True),
        ("/api/auth/login", True),
        ("/webhook/evolution", True),
        ("/uploads/image_1.jpg", True),
        ("/ws", True),
        ("/api/conversations", False),
        ("/api/auth/me", False),
    ],
)
def test_public_paths(path, public):
    assert auth.is_public_path(path) is public


def test_register_login_and_me(db_manager, client):
    r = client.post("/api/auth/register", json={"username": "laura", "password": "123"})
    assert r.status_code == 400
    r = client.post("/api/auth/register", json={"username": "laura", "password": "secreto", "name": "Laura"})
    assert r.status_code == 200
    assert r.json()["agent"]["username"] == "laura"
    assert client.post("/api/auth/register", json={"username": "laura", "password": "secreto"}).status_code == 400

    assert client.post("/api/auth/login", json={"username": "laura"}).status_code == 400
    assert client.post("/api/auth/login", json={"username": "laura", "password": "nope"}).status_code == 401
    r = client.post("/api/auth/login", json={"username": "laura", "password": "secreto"})
    assert r.status_code == 200
    body = r.json()
    assert body["token"]
    assert "password_hash" not in body["agent"]
    assert r.cookies.get(config.ACCESS_COOKIE_NAME) == body["token"]
    assert asyncio.run(db_manager.get_agent("laura"))["last_login"] is not None

    agents = client.get("/api/auth/agents").json()["data"]
    assert [a["username"] for a in agents] == ["laura"]
    assert client.post("/api/auth/logout").status_code == 200


def test_inactive_agent_cannot_login(db_manager, client):
    client.post("/api/auth/register", json={"username": "pedro", "password": "secreto"})
    asyncio.run(db_manager._execute("UPDATE agents SET is_active = 0 WHERE username = ?", ("pedro",)))
    assert client.post("/api/auth/login", json={"username": "pedro", "password": "secreto"}).status_code == 403


def test_api_requires_token_when_auth_enabled(db_manager, monkeypatch):
    monkeypatch.setattr(config, "DISABLE_AUTH", False)
    monkeypatch.setattr(config, "AGENT_AUTH_SECRET", "test-secret")
    with TestClient(main.app) as c:
        assert c.get("/api/conversations").status_code == 401
        assert c.get("/health").status_code == 200

        c.post("/api/auth/register", json={"username": "laura", "password": "secreto", "name": "Laura"})
        token = c.post("/api/auth/login", json={"username": "laura", "password": "secreto"}).json()["token"]
        r = c.get("/api/conversations", headers={"Authorization": f"Bearer {token}"})
        assert r.status_code == 200
        me = c.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"}).json()["agent"]
        assert me["name"] == "Laura"


def test_relayed_messages_require_api_key(runtime, client, monkeypatch):
    monkeypatch.setattr(config, "SYSTEM_API_KEY", "k3y")
    body = {"phone": "573001112222", "message": "Hola", "whatsapp_id": "N8N9"}
    assert client.post("/webhook/receive-message", json=body).status_code == 401
    r = client.post("/webhook/receive-message", json=body, headers={"x-api-key": "k3y"})
    assert r.status_code == 200


def test_gateway_webhook_with_wrong_key_is_acknowledged_and_dropped(runtime, client, webhook_payload, automation, monkeypatch):
    monkeypatch.setattr(config, "SYSTEM_API_KEY", "k3y")
    r = client.post("/webhook/evolution", json=webhook_payload("573001112222@s.whatsapp.net", "Hola"))
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert asyncio.run(runtime.db_manager.get_conversation("+573001112222")) is None
    assert automation.ai_calls == []

    r = client.post(
        "/webhook/evolution",
        json=webhook_payload("573001112222@s.whatsapp.net", "Hola"),
        headers={"x-api-key": "k3y"},
    )
    assert r.status_code == 200
    assert asyncio.run(runtime.db_manager.get_conversation("+573001112222")) is not None
