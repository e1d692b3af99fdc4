"""Image host and QR renderer collaborators."""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol
from urllib.parse import quote

import aiohttp

from pyvalet.config import CloudinarySettings
from pyvalet.exceptions import ValetUploadError

_logger = logging.getLogger(__name__)

CLOUDINARY_UPLOAD_URL = "https://api.cloudinary.com/v1_1/{cloud_name}/image/upload"


class ImageHost(Protocol):
    async def upload_image(self, data: bytes, folder: str) -> str:
        """Store *data* and return its public URL."""
        ...


class QrRenderer(Protocol):
    async def render(self, payload: str) -> str:
        """Return an image reference (URL or media id) encoding *payload*."""
        ...


def sign_params(params: dict[str, str], api_secret: str) -> str:
    """Cloudinary request signature: SHA-1 of the sorted params followed by the secret."""
    to_sign = "&".join(f"{key}={params[key]}" for key in sorted(params))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode()).hexdigest()


class CloudinaryImageHost:
    """Signed uploads to Cloudinary."""

    def __init__(
        self,
        settings: CloudinarySettings,
        http_session: aiohttp.ClientSession,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._http = http_session
        self._clock = clock

    async def upload_image(self, data: bytes, folder: str) -> str:
        endpoint = CLOUDINARY_UPLOAD_URL.format(cloud_name=self._settings.cloud_name)
        params = {"folder": folder, "timestamp": str(int(self._clock()))}

        form = aiohttp.FormData()
        form.add_field("file", data, filename="upload.jpg", content_type="application/octet-stream")
        for key, value in params.items():
            form.add_field(key, value)
        form.add_field("api_key", self._settings.api_key)
        form.add_field("signature", sign_params(params, self._settings.api_secret))

        _logger.debug("Uploading %d bytes to Cloudinary folder %s", len(data), folder)
        try:
            async with self._http.post(endpoint, data=form) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise ValetUploadError(
                        f"HTTP {resp.status} from Cloudinary: {text[:200]}",
                        status_code=resp.status,
                        endpoint=endpoint,
                    )
        except ValetUploadError:
            raise
        except aiohttp.ClientError as exc:
            raise ValetUploadError(f"Cloudinary upload failed: {exc}", endpoint=endpoint) from exc

        try:
            body: dict[str, Any] = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValetUploadError(f"Invalid JSON from Cloudinary: {text[:200]}", endpoint=endpoint) from exc
        url = body.get("secure_url") or body.get("url")
        if not isinstance(url, str) or not url:
            raise ValetUploadError("Cloudinary response has no URL", endpoint=endpoint)
        return url


class UrlQrRenderer:
    """Render QR codes through an HTTP QR image service.

    ``template`` must contain a ``{data}`` placeholder, for example
    ``https://api.qrserver.com/v1/create-qr-code/?size=400x400&data={data}``.
    """

    def __init__(self, template: str) -> None:
        if "{data}" not in template:
            raise ValueError("QR image URL template needs a {data} placeholder")
        self._template = template

    async def render(self, payload: str) -> str:
        return self._template.format(data=quote(payload, safe=""))
