import asyncio

PHONE = "+573001112222"


def test_tags_crud(runtime, client):
    assert client.post("/api/tags", json={"name": "  "}).status_code == 400
    created = client.post("/api/tags", json={"name": "Mayorista", "color": "#00ff00"}).json()["data"]
    # Same name upserts the colour.
    updated = client.post("/api/tags", json={"name": "Mayorista", "color": "#0000ff"}).json()["data"]
    assert updated["id"] == created["id"]
    assert updated["color"] == "#0000ff"

    asyncio.run(runtime.db_manager.upsert_conversation(PHONE))
    asyncio.run(runtime.db_manager.assign_tag(PHONE, created["id"]))
    assert client.delete(f"/api/tags/{created['id']}").status_code == 200
    assert asyncio.run(runtime.db_manager.get_conversation_tags(PHONE)) == []
    assert client.delete(f"/api/tags/{created['id']}").status_code == 404


def test_settings_apply_to_existing(runtime, client):
    for phone in (PHONE, "+573009998888"):
        asyncio.run(runtime.db_manager.upsert_conversation(phone))

    r = client.post("/api/settings", json={"key": "default_ai_enabled", "value": False})
    assert r.json()["updatedConversations"] == 0
    assert asyncio.run(runtime.db_manager.get_conversation(PHONE))["ai_enabled"] is True

    r = client.post("/api/settings", json={"key": "default_ai_enabled", "value": False, "applyToExisting": True})
    assert r.json()["updatedConversations"] == 2
    conv = asyncio.run(runtime.db_manager.get_conversation(PHONE))
    assert conv["ai_enabled"] is False
    assert conv["conversation_state"] == "agent_active"

    assert client.get("/api/settings/default_ai_enabled").json()["value"] is False
    assert client.get("/api/settings").json()["settings"] == {"default_ai_enabled": False}
    assert client.get("/api/settings/missing").status_code == 404
    assert client.post("/api/settings", json={"value": 1}).status_code == 400


def test_quick_replies_crud(runtime, client):
    r = client.post("/api/quick-replies", json={"shortcut": "/hola", "content": "¡Hola! ¿Cómo te ayudo?"})
    assert r.status_code == 200
    reply = r.json()["data"]
    assert client.post("/api/quick-replies", json={"shortcut": "/hola", "content": "x"}).status_code == 409
    assert client.post("/api/quick-replies", json={"content": "x"}).status_code == 400

    r = client.put(f"/api/quick-replies/{reply['id']}", json={"content": "Buenas"})
    assert r.json()["data"]["content"] == "Buenas"
    assert r.json()["data"]["shortcut"] == "/hola"
    assert client.put("/api/quick-replies/999", json={"content": "x"}).status_code == 404

    assert len(client.get("/api/quick-replies").json()["data"]) == 1
    assert client.delete(f"/api/quick-replies/{reply['id']}").status_code == 200
    assert client.delete(f"/api/quick-replies/{reply['id']}").status_code == 404


def test_quick_reply_upload(runtime, client, upload_dir):
    r = client.post("/api/quick-replies/upload", files={"file": ("promo.png", b"\x89PNG....", "image/png")})
    body = r.json()
    assert body["url"].startswith("/uploads/quick_replies/image_")
    assert body["mediaType"] == "image"
    assert len(list((upload_dir / "quick_replies").iterdir())) == 1

    bad = client.post("/api/quick-replies/upload", files={"file": ("x.exe", b"MZ", "application/x-msdownload")})
    assert bad.status_code == 400


def test_knowledge_text_and_media(runtime, client, upload_dir):
    r = client.post("/api/ai-knowledge/text", json={"title": "Horario", "content": "Lunes a sábado", "keywords": "horario, abierto"})
    text_row = r.json()["data"]
    assert text_row["keywords"] == ["horario", "abierto"]
    assert client.post("/api/ai-knowledge/text", json={"title": "x"}).status_code == 400

    r = client.post(
        "/api/ai-knowledge/upload",
        files={"file": ("catalogo.jpg", b"\xff\xd8\xff", "image/jpeg")},
        data={"title": "Catálogo", "description": "Catálogo 2024", "keywords": "catalogo,precios"},
    )
    media_row = r.json()["data"]
    assert media_row["type"] == "image"
    assert media_row["full_url"] == f"https://inbox.example.com{media_row['media_url']}"
    stored = upload_dir / "ai_knowledge"
    assert len(list(stored.iterdir())) == 1

    pdf = client.post("/api/ai-knowledge/upload", files={"file": ("x.pdf", b"%PDF", "application/pdf")})
    assert pdf.status_code == 400

    images = client.get("/api/ai-knowledge", params={"type": "image"}).json()["data"]
    assert [k["id"] for k in images] == [media_row["id"]]
    assert len(client.get("/api/ai-knowledge", params={"active": "true"}).json()["data"]) == 2

    assert client.delete(f"/api/ai-knowledge/{media_row['id']}").status_code == 200
    assert list(stored.iterdir()) == []
    assert client.delete(f"/api/ai-knowledge/{media_row['id']}").status_code == 404


def test_send_message_through_gateway(runtime, client, subscribe, gateway):
    from inbox.realtime import conversation_channel

    sock = subscribe(conversation_channel(PHONE))
    assert client.post("/api/send-message", json={"phone": PHONE}).status_code == 400

    r = client.post("/api/send-message", json={"phone": PHONE, "message": "Ya va en camino", "temp_id": "tmp-1", "agent_name": "Laura"})
    body = r.json()
    assert body["success"] is True
    assert body["message"]["status"] == "delivered"
    assert body["message"]["whatsapp_id"] == "tmp-1"
    assert gateway.texts == [(PHONE, "Ya va en camino")]
    assert sock.events("agent_message")[0]["data"]["agent_name"] == "Laura"

    dup = client.post("/api/send-message", json={"phone": PHONE, "message": "otra", "temp_id": "tmp-1"})
    assert dup.status_code == 409


def test_send_message_without_gateway_uses_automation(runtime, client, automation, monkeypatch):
    monkeypatch.setattr(type(runtime.gateway), "configured", False)
    r = client.post("/api/send-message", json={"phone": PHONE, "message": "Hola", "name": "Ana"})
    assert r.json()["success"] is True
    assert automation.sent[0]["phone"] == PHONE
    assert automation.sent[0]["message"] == "Hola"


def test_send_file(runtime, client, gateway, upload_dir):
    r = client.post(
        "/api/send-file",
        files={"file": ("factura.pdf", b"%PDF-1.4", "application/pdf")},
        data={"phone": PHONE, "caption": "Tu factura"},
    )
    body = r.json()
    assert body["success"] is True
    assert body["message"]["media_type"] == "document"
    phone, url, kind, caption = gateway.media[0]
    assert (phone, kind, caption) == (PHONE, "document", "Tu factura")
    assert url == f"https://inbox.example.com{body['url']}"


def test_dashboard_stats(runtime, client):
    dm = runtime.db_manager
    asyncio.run(dm.upsert_conversation(PHONE))
    asyncio.run(dm.create_message(phone=PHONE, sender="customer", text="hola"))
    asyncio.run(dm.create_message(phone=PHONE, sender="agent", text="hola!", agent_name="Laura"))
    asyncio.run(dm.create_message(phone=PHONE, sender="ai", text="bot"))

    stats = client.get("/api/dashboard/stats").json()["stats"]
    assert stats["received"] == 1
    assert stats["sent"] == 1
    assert stats["ai_sent"] == 1
    assert stats["new_conversations"] == 1
    assert stats["agents"] == [{"agent_name": "Laura", "count": 1}]

    assert client.get("/api/dashboard/stats", params={"startDate": "ayer"}).status_code == 400


def test_dashboard_charts_bucket_by_hour_and_day(runtime, client):
    dm = runtime.db_manager
    asyncio.run(dm.upsert_conversation(PHONE))
    asyncio.run(dm.create_message(phone=PHONE, sender="customer", text="hola", timestamp="2026-03-10T09:15:00+00:00"))
    asyncio.run(dm.create_message(phone=PHONE, sender="agent", text="hola!", timestamp="2026-03-10T09:40:00+00:00"))
    asyncio.run(dm.create_message(phone=PHONE, sender="ai", text="bot", timestamp="2026-03-10T11:05:00+00:00"))

    chart = client.get("/api/dashboard/charts", params={"startDate": "2026-03-10", "endDate": "2026-03-10"}).json()["chart"]
    assert chart["period"] == "hour"
    assert chart["points"] == [
        {"time": "2026-03-10T09:00", "received": 1, "sent": 1, "ai_sent": 0, "created": 0},
        {"time": "2026-03-10T11:00", "received": 0, "sent": 0, "ai_sent": 1, "created": 0},
    ]

    chart = client.get("/api/dashboard/charts", params={"startDate": "2026-03-01", "endDate": "2026-03-10"}).json()["chart"]
    assert chart["period"] == "day"
    assert chart["points"] == [{"time": "2026-03-10", "received": 1, "sent": 1, "ai_sent": 1, "created": 0}]

    # Without a range the chart covers today, where the conversation was created.
    today = client.get("/api/dashboard/charts").json()["chart"]
    assert sum(p["created"] for p in today["points"]) == 1

    assert client.get("/api/dashboard/charts", params={"endDate": "10/03/2026"}).status_code == 400
