import asyncio
import json

import httpx
import pytest

from inbox.automation import AutomationClient, AutomationReply, parse_ai_reply


@pytest.mark.parametrize(
    "data,expected",
    [
        ([{"output": "Hola"}], AutomationReply(text="Hola")),
        ({"output": " Hola "}, AutomationReply(text="Hola")),
        ({"text": "Mira", "mediaUrl": "https://x/a.jpg", "mediaType": "image"}, AutomationReply("Mira", "https://x/a.jpg", "image")),
        ({"output": {"message": "anidado"}}, AutomationReply(text="anidado")),
        ("texto plano", AutomationReply(text="texto plano")),
        ([], None),
        ({}, None),
        ("   ", None),
        (42, None),
    ],
)
def test_parse_ai_reply(data, expected):
    assert parse_ai_reply(data) == expected


def test_trigger_ai_posts_message_and_parses_reply():
    seen = []

    def handler(request):
        seen.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json=[{"output": "¡Claro!"}])

    client = AutomationClient("https://n8n/send", "https://n8n/ai", transport=httpx.MockTransport(handler))
    reply = asyncio.run(client.trigger_ai(phone="+573001112222", text="Hola", contact_name="Ana"))

    assert reply == AutomationReply(text="¡Claro!")
    url, body = seen[0]
    assert url == "https://n8n/ai"
    assert body["type"] == "incoming_message"
    assert (body["phone"], body["name"], body["message"]) == ("+573001112222", "Ana", "Hola")


def test_trigger_ai_failures_return_none():
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    client = AutomationClient("https://n8n/send", "https://n8n/ai", transport=httpx.MockTransport(handler))
    assert asyncio.run(client.trigger_ai(phone="+57", text="x")) is None
    assert asyncio.run(AutomationClient("", "").trigger_ai(phone="+57", text="x")) is None


def test_send_message_and_state_change():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    client = AutomationClient("https://n8n/send", "", transport=httpx.MockTransport(handler))
    ok = asyncio.run(
        client.send_message(phone="+57300", name="Ana", message="Hola", temp_id="t1", media_type="image", media_url="u")
    )
    asyncio.run(client.notify_state_change("+57300", "agent_active"))

    assert ok is True
    assert bodies[0]["conversation_state"] == "agent_active"
    assert bodies[0]["media_url"] == "u"
    assert bodies[1]["type"] == "state_change"
    assert bodies[1]["new_state"] == "agent_active"


def test_send_message_reports_failure():
    def handler(request):
        return httpx.Response(500)

    client = AutomationClient("https://n8n/send", "", transport=httpx.MockTransport(handler))
    assert asyncio.run(client.send_message(phone="+57300", name=None, message="Hola")) is False
    assert asyncio.run(AutomationClient("", "").send_message(phone="+57300", name=None, message="Hola")) is False
