"""WhatsApp Cloud API messaging channel and webhook parsing."""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any, Protocol

import aiohttp

from pyvalet._constants import USER_AGENT
from pyvalet._redact import redact_for_log
from pyvalet.config import WhatsAppSettings
from pyvalet.exceptions import ValetTransportError
from pyvalet.models.message import InboundMessage

_logger = logging.getLogger(__name__)


class MessagingChannel(Protocol):
    """Structural interface of the outbound messaging channel.

    Having a protocol here makes it easy to pass test doubles while
    keeping the production implementation (`WhatsAppChannel`) concrete.
    """

    async def send_text(self, to: str, body: str) -> None:
        ...

    async def send_image(self, to: str, image_ref: str, caption: str = "") -> None:
        ...

    async def fetch_media(self, media_id: str) -> bytes:
        ...


class WhatsAppChannel:
    """Messaging channel backed by the WhatsApp Cloud (Graph) API."""

    def __init__(self, settings: WhatsAppSettings, http_session: aiohttp.ClientSession) -> None:
        self._settings = settings
        self._http = http_session

    @property
    def _api_root(self) -> str:
        return f"{self._settings.base_url.rstrip('/')}/{self._settings.api_version}"

    def _headers(self) -> dict[str, str]:
        return {
            "authorization": f"Bearer {self._settings.access_token}",
            "user-agent": USER_AGENT,
        }

    async def _request_json(self, method: str, url: str, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        try:
            async with self._http.request(method, url, headers=self._headers(), **kwargs) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise ValetTransportError(
                        f"HTTP {resp.status} from {endpoint}: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except ValetTransportError:
            raise
        except aiohttp.ClientError as exc:
            raise ValetTransportError(f"Request to {endpoint} failed: {exc}", endpoint=endpoint) from exc

        try:
            body = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValetTransportError(f"Invalid JSON from {endpoint}: {text[:200]}", endpoint=endpoint) from exc
        if not isinstance(body, dict):
            raise ValetTransportError(f"Unexpected response shape from {endpoint}", endpoint=endpoint)
        return body

    async def _post_message(self, payload: Mapping[str, Any]) -> None:
        endpoint = f"/{self._settings.phone_id}/messages"
        _logger.debug("POST %s %s", endpoint, redact_for_log(payload))
        await self._request_json("POST", f"{self._api_root}{endpoint}", endpoint, json=payload)

    async def send_text(self, to: str, body: str) -> None:
        await self._post_message(
            {
                "messaging_product": "whatsapp",
                "to": to,
                "type": "text",
                "text": {"body": body},
            }
        )

    async def send_image(self, to: str, image_ref: str, caption: str = "") -> None:
        """Send an image given either a public URL or an uploaded media id."""
        image: dict[str, str] = {"link": image_ref} if image_ref.startswith(("http://", "https://")) else {"id": image_ref}
        if caption:
            image["caption"] = caption
        await self._post_message(
            {
                "messaging_product": "whatsapp",
                "to": to,
                "type": "image",
                "image": image,
            }
        )

    async def fetch_media(self, media_id: str) -> bytes:
        """Resolve a media id to its download URL and fetch the bytes."""
        endpoint = f"/{media_id}"
        meta = await self._request_json("GET", f"{self._api_root}{endpoint}", endpoint)
        url = meta.get("url")
        if not isinstance(url, str) or not url:
            raise ValetTransportError(f"Media {media_id} has no download URL", endpoint=endpoint)

        try:
            async with self._http.get(url, headers=self._headers()) as resp:
                if resp.status != 200:
                    raise ValetTransportError(
                        f"HTTP {resp.status} downloading media {media_id}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
                return await resp.read()
        except ValetTransportError:
            raise
        except aiohttp.ClientError as exc:
            raise ValetTransportError(f"Download of media {media_id} failed: {exc}", endpoint=endpoint) from exc


def _parse_timestamp(value: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_webhook_messages(body: Mapping[str, Any]) -> list[InboundMessage]:
    """Extract inbound messages from a WhatsApp webhook delivery.

    Status callbacks and unsupported message types are skipped.
    """
    messages: list[InboundMessage] = []
    for entry in body.get("entry") or []:
        for change in entry.get("changes") or []:
            value = change.get("value") or {}
            for raw in value.get("messages") or []:
                sender = raw.get("from")
                if not isinstance(sender, str) or not sender:
                    continue
                kind = raw.get("type")
                text: str | None = None
                image_ref: str | None = None
                if kind == "text":
                    text = (raw.get("text") or {}).get("body")
                elif kind == "image":
                    image = raw.get("image") or {}
                    image_ref = image.get("id")
                    text = image.get("caption")
                elif kind == "button":
                    text = (raw.get("button") or {}).get("text")
                else:
                    _logger.debug("Skipping unsupported WhatsApp message type %s", kind)
                    continue
                messages.append(
                    InboundMessage(
                        sender=sender,
                        text=text,
                        image_ref=image_ref,
                        message_id=raw.get("id"),
                        timestamp=_parse_timestamp(raw.get("timestamp")),
                    )
                )
    return messages
