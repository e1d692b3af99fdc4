from __future__ import annotations

import hashlib
from typing import Any

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from pyvalet._images import CloudinaryImageHost, UrlQrRenderer, sign_params
from pyvalet._transport import WhatsAppChannel, parse_webhook_messages
from pyvalet.config import CloudinarySettings, WhatsAppSettings
from pyvalet.exceptions import ValetTransportError, ValetUploadError


class _GraphApi:
    """Minimal stand-in for the Graph API endpoints the channel uses."""

    def __init__(self) -> None:
        self.posted: list[dict[str, Any]] = []
        self.auth: list[str] = []
        self.fail_messages = False
        self.base = ""

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/v18.0/PHONE/messages", self.messages)
        app.router.add_get("/v18.0/media-1", self.media_meta)
        app.router.add_get("/download/media-1", self.download)
        return app

    async def messages(self, request: web.Request) -> web.Response:
        self.auth.append(request.headers.get("authorization", ""))
        if self.fail_messages:
            return web.json_response({"error": {"message": "bad"}}, status=500)
        self.posted.append(await request.json())
        return web.json_response({"messages": [{"id": "wamid.out"}]})

    async def media_meta(self, request: web.Request) -> web.Response:
        return web.json_response({"url": f"{self.base}/download/media-1"})

    async def download(self, request: web.Request) -> web.Response:
        return web.Response(body=b"\xff\xd8jpeg")


@pytest.mark.asyncio
async def test_whatsapp_channel_sends_and_fetches() -> None:
    api = _GraphApi()
    async with TestServer(api.app()) as server:
        api.base = f"http://{server.host}:{server.port}"
        settings = WhatsAppSettings(access_token="tok", phone_id="PHONE", base_url=api.base)
        async with aiohttp.ClientSession() as session:
            channel = WhatsAppChannel(settings, session)

            await channel.send_text("919000000100", "hello")
            await channel.send_image("919000000100", "https://qr.example.test/1.png", "scan me")
            await channel.send_image("919000000100", "uploaded-media-id")
            data = await channel.fetch_media("media-1")

    assert data == b"\xff\xd8jpeg"
    assert api.auth == ["Bearer tok"] * 3
    assert api.posted[0] == {
        "messaging_product": "whatsapp",
        "to": "919000000100",
        "type": "text",
        "text": {"body": "hello"},
    }
    assert api.posted[1]["image"] == {"link": "https://qr.example.test/1.png", "caption": "scan me"}
    assert api.posted[2]["image"] == {"id": "uploaded-media-id"}


@pytest.mark.asyncio
async def test_whatsapp_channel_raises_on_http_error() -> None:
    api = _GraphApi()
    api.fail_messages = True
    async with TestServer(api.app()) as server:
        settings = WhatsAppSettings(phone_id="PHONE", base_url=f"http://{server.host}:{server.port}")
        async with aiohttp.ClientSession() as session:
            channel = WhatsAppChannel(settings, session)
            with pytest.raises(ValetTransportError) as excinfo:
                await channel.send_text("919000000100", "hello")
            with pytest.raises(ValetTransportError):
                await channel.fetch_media("unknown-media")

    assert excinfo.value.status_code == 500
    assert excinfo.value.endpoint == "/PHONE/messages"


def test_parse_webhook_messages() -> None:
    body = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "changes": [
                    {
                        "value": {
                            "statuses": [{"id": "wamid.s", "status": "delivered"}],
                            "messages": [
                                {"from": "919000000100", "id": "m1", "timestamp": "1767258000", "type": "text", "text": {"body": "hi"}},
                                {"from": "919000000001", "id": "m2", "type": "image", "image": {"id": "media-1", "caption": "done"}},
                                {"from": "919000000100", "id": "m3", "type": "button", "button": {"text": "check-in"}},
                                {"from": "919000000100", "id": "m4", "type": "sticker", "sticker": {}},
                                {"id": "m5", "type": "text", "text": {"body": "no sender"}},
                            ],
                        }
                    }
                ]
            }
        ],
    }

    parsed = parse_webhook_messages(body)

    assert [(m.message_id, m.text, m.image_ref) for m in parsed] == [
        ("m1", "hi", None),
        ("m2", "done", "media-1"),
        ("m3", "check-in", None),
    ]
    assert parsed[0].timestamp is not None
    assert parsed[0].timestamp.year == 2026
    assert parsed[1].timestamp is None
    assert parse_webhook_messages({"object": "whatsapp_business_account"}) == []


def test_sign_params_sorts_keys() -> None:
    expected = hashlib.sha1(b"folder=parked_cars&timestamp=1700000000secret").hexdigest()

    assert sign_params({"timestamp": "1700000000", "folder": "parked_cars"}, "secret") == expected


@pytest.mark.asyncio
async def test_cloudinary_upload(monkeypatch: pytest.MonkeyPatch) -> None:
    received: dict[str, Any] = {}

    async def upload(request: web.Request) -> web.Response:
        form = await request.post()
        received.update({key: form[key] for key in ("folder", "timestamp", "api_key", "signature")})
        received["file"] = form["file"].file.read()  # type: ignore[union-attr]
        return web.json_response({"secure_url": "https://res.cloudinary.test/demo/parked_cars/abc.jpg"})

    async def reject(request: web.Request) -> web.Response:
        return web.Response(status=401, text="bad signature")

    app = web.Application()
    app.router.add_post("/v1_1/demo/image/upload", upload)
    app.router.add_post("/v1_1/broken/image/upload", reject)
    async with TestServer(app) as server:
        monkeypatch.setattr(
            "pyvalet._images.CLOUDINARY_UPLOAD_URL",
            f"http://{server.host}:{server.port}/v1_1/{{cloud_name}}/image/upload",
        )
        async with aiohttp.ClientSession() as session:
            host = CloudinaryImageHost(
                CloudinarySettings(cloud_name="demo", api_key="key", api_secret="secret"),
                session,
                clock=lambda: 1700000000.0,
            )
            url = await host.upload_image(b"jpeg", "parked_cars")

            broken = CloudinaryImageHost(CloudinarySettings(cloud_name="broken"), session)
            with pytest.raises(ValetUploadError) as excinfo:
                await broken.upload_image(b"jpeg", "parked_cars")

    assert url == "https://res.cloudinary.test/demo/parked_cars/abc.jpg"
    assert received["file"] == b"jpeg"
    assert received["folder"] == "parked_cars"
    assert received["api_key"] == "key"
    assert received["signature"] == sign_params({"folder": "parked_cars", "timestamp": "1700000000"}, "secret")
    assert excinfo.value.status_code == 401


@pytest.mark.asyncio
async def test_url_qr_renderer_quotes_payload() -> None:
    renderer = UrlQrRenderer("https://qr.example.test/png?size=400&data={data}")

    url = await renderer.render("https://wa.me/15550001111?text=qr_scan%3Aabc")

    assert url == (
        "https://qr.example.test/png?size=400&data="
        "https%3A%2F%2Fwa.me%2F15550001111%3Ftext%3Dqr_scan%253Aabc"
    )
    with pytest.raises(ValueError):
        UrlQrRenderer("https://qr.example.test/png")
