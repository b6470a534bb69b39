"""Image upload to Dify's ``/files/upload`` endpoint.

Accepts inline ``data:`` URIs and remote http(s) URLs.  Every failure is
raised as ``UploadError``; callers decide whether to drop the image.
"""

from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import uuid
from urllib.parse import urlparse

import httpx

from ..types import UploadedFile, UploadError

logger = logging.getLogger(__name__)

DEFAULT_MIME = "image/png"
MAX_IMAGE_BYTES = 20 * 1024 * 1024


def decode_data_uri(url: str) -> tuple[bytes, str]:
    """Split ``data:<mime>;base64,<payload>`` into bytes and mime type."""
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:"):
        raise UploadError(url, "malformed data URI")
    meta = header[len("data:"):].split(";")
    mime = meta[0] or DEFAULT_MIME
    if "base64" not in meta[1:]:
        raise UploadError(url, "data URI is not base64 encoded")
    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise UploadError(url, f"invalid base64 payload ({e})") from e
    return data, mime


def _filename(mime: str, url: str = "") -> str:
    if url:
        name = urlparse(url).path.rsplit("/", 1)[-1]
        if name and "." in name:
            return name
    ext = mimetypes.guess_extension(mime) or ".png"
    return f"image_{uuid.uuid4().hex[:8]}{ext}"


class DifyImageUploader:
    """Uploads image references and returns upstream file handles."""

    def __init__(self, client: httpx.AsyncClient, api_base: str) -> None:
        self._client = client
        self._api_base = api_base.rstrip("/")

    async def _download(self, url: str) -> tuple[bytes, str]:
        try:
            resp = await self._client.get(url, follow_redirects=True)
        except httpx.HTTPError as e:
            raise UploadError(url, f"download failed ({e})") from e
        if resp.status_code != 200:
            raise UploadError(url, f"download returned {resp.status_code}")
        mime = resp.headers.get("content-type", "").split(";")[0].strip()
        if not mime.startswith("image/"):
            mime = mimetypes.guess_type(urlparse(url).path)[0] or DEFAULT_MIME
        return resp.content, mime

    async def fetch(self, url: str) -> tuple[bytes, str, str]:
        """Image bytes, mime type and a file name for *url*."""
        if url.startswith("data:"):
            data, mime = decode_data_uri(url)
            name = _filename(mime)
        elif url.startswith(("http://", "https://")):
            data, mime = await self._download(url)
            name = _filename(mime, url)
        else:
            raise UploadError(url, "unsupported image reference")
        if not data:
            raise UploadError(url, "empty image")
        if len(data) > MAX_IMAGE_BYTES:
            raise UploadError(url, f"image exceeds {MAX_IMAGE_BYTES} bytes")
        return data, mime, name

    async def upload(self, url: str, *, user: str, api_key: str) -> UploadedFile:
        data, mime, name = await self.fetch(url)
        try:
            resp = await self._client.post(
                f"{self._api_base}/files/upload",
                headers={"Authorization": f"Bearer {api_key}"},
                files={"file": (name, data, mime)},
                data={"user": user},
            )
        except httpx.HTTPError as e:
            raise UploadError(url, f"upload request failed ({e})") from e
        if resp.status_code not in (200, 201):
            raise UploadError(url, f"upload returned {resp.status_code}: {resp.text[:200]}")
        try:
            body = resp.json()
        except ValueError as e:
            raise UploadError(url, "upload response is not JSON") from e
        file_id = body.get("id") if isinstance(body, dict) else None
        if not file_id:
            raise UploadError(url, "upload response has no file id")

        logger.info("Uploaded image %s (%d bytes) as %s", name, len(data), file_id)
        return UploadedFile(
            file_id=str(file_id),
            name=str(body.get("name") or name),
            size=int(body.get("size") or len(data)),
            mime_type=str(body.get("mime_type") or mime),
        )
