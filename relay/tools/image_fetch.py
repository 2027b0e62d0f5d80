from __future__ import annotations

import asyncio
import base64
import mimetypes
from pathlib import Path
from typing import Optional

import httpx

from relay.core.errors import ImageFetchFailure
from relay.core.models import InlineData, InlineMediaPart


DEFAULT_MIME_TYPE = "image/jpeg"
UPLOADS_PREFIX = "/uploads/"


def _guess_mime_type(content_type: Optional[str]) -> str:
    if not content_type:
        return DEFAULT_MIME_TYPE
    mime = content_type.split(";", 1)[0].strip().lower()
    if mime.startswith("image/"):
        return mime
    return DEFAULT_MIME_TYPE


def _to_part(body: bytes, mime_type: str) -> InlineMediaPart:
    return InlineMediaPart(
        inline_data=InlineData(
            mime_type=mime_type,
            data=base64.b64encode(body).decode("ascii"),
        )
    )


class ImageFetcher:
    """Turns an image reference into an inline media part.

    Remote URLs are fetched with a single bounded GET. Paths returned by the
    upload endpoint (``/uploads/<name>``) are read from the upload directory.
    Every failure surfaces as ImageFetchFailure so the caller can fall back
    to a text-only turn.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float = 15.0,
        upload_dir: Optional[Path] = None,
    ):
        self._client = client
        self._timeout = timeout
        self._upload_dir = Path(upload_dir).resolve() if upload_dir else None

    async def fetch(self, url: str) -> InlineMediaPart:
        if url.startswith(UPLOADS_PREFIX) and self._upload_dir is not None:
            return await self._read_upload(url[len(UPLOADS_PREFIX):])
        return await self._download(url)

    async def _download(self, url: str) -> InlineMediaPart:
        try:
            # httpx timeouts bound each read; wait_for bounds the whole download
            response = await asyncio.wait_for(
                self._client.get(url, timeout=self._timeout, follow_redirects=True),
                self._timeout,
            )
            response.raise_for_status()
        except (httpx.TimeoutException, asyncio.TimeoutError) as exc:
            raise ImageFetchFailure(code="IMAGE_TIMEOUT", message=f"Timed out fetching {url}") from exc
        except httpx.HTTPStatusError as exc:
            raise ImageFetchFailure(
                code="IMAGE_HTTP_ERROR",
                message=f"Image request returned {exc.response.status_code}",
            ) from exc
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ImageFetchFailure(code="IMAGE_FETCH_ERROR", message=str(exc)) from exc

        body = response.content
        if not body:
            raise ImageFetchFailure(code="IMAGE_EMPTY", message=f"Empty body from {url}")
        return _to_part(body, _guess_mime_type(response.headers.get("content-type")))

    async def _read_upload(self, name: str) -> InlineMediaPart:
        target = (self._upload_dir / name).resolve()
        if self._upload_dir not in target.parents:
            raise ImageFetchFailure(code="IMAGE_PATH_INVALID", message=f"Refusing to read {name!r}")
        try:
            body = await asyncio.to_thread(target.read_bytes)
        except OSError as exc:
            raise ImageFetchFailure(code="IMAGE_READ_ERROR", message=str(exc)) from exc
        if not body:
            raise ImageFetchFailure(code="IMAGE_EMPTY", message=f"Empty upload {name!r}")
        mime, _ = mimetypes.guess_type(target.name)
        return _to_part(body, mime if mime and mime.startswith("image/") else DEFAULT_MIME_TYPE)
