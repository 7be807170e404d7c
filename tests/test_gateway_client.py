import asyncio
import json

import httpx

from inbox.gateway import MEDIA_STRATEGIES, TEXT_STRATEGIES, EvolutionClient, gateway_number


def _client(handler, **kwargs):
    kwargs.setdefault("public_url", "https://inbox.example.com")
    return EvolutionClient(
        "https://evo.example.com/", "evo-key", "main", transport=httpx.MockTransport(handler), **kwargs
    )


def test_gateway_number():
    assert gateway_number("+573001112222") == "573001112222"
    assert gateway_number("120363025555555555@g.us") == "120363025555555555@g.us"


def test_send_text_first_strategy_wins():
    seen = []

    def handler(request):
        seen.append((request.url.path, request.headers["apikey"], json.loads(request.content)))
        return httpx.Response(201, json={"key": {"id": "ABC"}})

    result = asyncio.run(_client(handler).send_text("+573001112222", "Hola"))

    assert result.success
    assert result.strategy == "options_wrapped"
    assert result.data == {"key": {"id": "ABC"}}
    path, key, body = seen[0]
    assert (path, key) == ("/message/sendText/main", "evo-key")
    assert body["number"] == "573001112222"
    assert body["options"]["presence"] == "composing"


def test_send_text_falls_back_through_strategies():
    bodies = []

    def handler(request):
        body = json.loads(request.content)
        bodies.append(body)
        if body["number"].endswith("@c.us"):
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(400, json={"error": "Bad Request"})

    result = asyncio.run(_client(handler).send_text("+573001112222", "Hola"))

    assert result.success
    assert result.strategy == "jid_cus"
    assert len(bodies) == len(TEXT_STRATEGIES)
    assert bodies[1]["textMessage"] == {"text": "Hola"}
    assert bodies[-1]["number"] == "573001112222@c.us"


def test_send_text_all_strategies_fail():
    def handler(request):
        return httpx.Response(500, text="boom")

    result = asyncio.run(_client(handler).send_text("+573001112222", "Hola"))
    assert not result.success
    assert result.error == "boom"


def test_transport_errors_move_to_next_strategy():
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) == 1:
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={})

    result = asyncio.run(_client(handler).send_text("+573001112222", "Hola"))
    assert result.success
    assert result.strategy == "hybrid"


def test_send_media_rewrites_localhost_and_names_file():
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(400, json={}) if len(bodies) < 2 else httpx.Response(200, json={})

    result = asyncio.run(
        _client(handler).send_media("+573001112222", "http://localhost:4000/uploads/a.jpg", "image", caption="Mira")
    )

    assert result.success
    assert result.strategy == MEDIA_STRATEGIES[1].name
    first, second = bodies
    assert first["media"] == "https://inbox.example.com/uploads/a.jpg"
    assert first["fileName"] == "file.jpg"
    assert first["caption"] == "Mira"
    assert second["url"] == "https://inbox.example.com/uploads/a.jpg"


def test_unconfigured_client_does_not_call_out():
    def handler(request):
        raise AssertionError("no request expected")

    client = EvolutionClient("", "", "", transport=httpx.MockTransport(handler))
    assert not client.configured
    assert not asyncio.run(client.send_text("+573001112222", "Hola")).success
    assert asyncio.run(client.fetch_group_info("1203@g.us")) is None
    assert asyncio.run(client.fetch_base64({"key": {}})) is None


def test_fetch_group_info_tries_endpoint_variants():
    paths = []

    def handler(request):
        paths.append(request.url.path)
        if request.url.path == "/group/info/main":
            return httpx.Response(200, json={"id": "1203@g.us", "subject": "Ventas"})
        return httpx.Response(404, json={})

    info = asyncio.run(_client(handler).fetch_group_info("1203@g.us"))
    assert info["subject"] == "Ventas"
    assert paths == ["/group/findGroup/main", "/group/info/main"]


def test_fetch_base64_and_mark_read():
    requests = []

    def handler(request):
        requests.append((request.url.path, json.loads(request.content)))
        if "getBase64FromMessage" in request.url.path:
            return httpx.Response(200, json={"base64": "QUJD", "mimetype": "image/jpeg"})
        return httpx.Response(200, json={"read": True})

    client = _client(handler)
    message = {"key": {"id": "X1", "remoteJid": "5730@s.whatsapp.net"}, "message": {"imageMessage": {}}, "pushName": "Ana"}
    assert asyncio.run(client.fetch_base64(message)) == "QUJD"
    assert asyncio.run(client.mark_as_read("+573001112222")) == {"read": True}

    (b64_path, b64_body), (read_path, read_body) = requests
    assert b64_body == {"message": {"key": message["key"], "message": message["message"]}}
    assert read_path == "/chat/markMessageAsRead/main"
    assert read_body == {"number": "573001112222@c.us", "read": True}


def test_check_instance_reports_errors():
    def handler(request):
        raise httpx.ConnectTimeout("timeout", request=request)

    assert "error" in asyncio.run(_client(handler).check_instance())
