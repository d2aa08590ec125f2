import asyncio
import base64
import binascii
from typing import Dict, List, Optional, Sequence
from urllib.parse import unquote_to_bytes

import httpx
from loguru import logger as log

from src.services.meme.arguments.models import ImageReference, UrlImage
from src.services.meme.errors import ImageFetchError
from src.services.meme.images.avatar import AvatarLookup
from src.utils.aio import gather_or_cancel


class ImageResolver:
    """Downloads image arguments. All of them, or none: one failure fails the call."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        avatars: AvatarLookup,
        timeout: float,
        max_bytes: int,
    ):
        self.client = client
        self.avatars = avatars
        self.timeout = timeout
        self.max_bytes = max_bytes

    async def resolve(
        self,
        refs: Sequence[ImageReference],
        avatars: Optional[AvatarLookup] = None,
    ) -> List[bytes]:
        """Fetch each distinct reference once, concurrently, and return bytes in `refs` order."""
        lookup = avatars or self.avatars
        distinct = list(dict.fromkeys(refs))
        if len(distinct) < len(refs):
            log.debug(f"Fetching {len(distinct)} distinct images for {len(refs)} references")

        fetched = await gather_or_cancel(*(self._fetch(ref, lookup) for ref in distinct))
        by_ref: Dict[ImageReference, bytes] = dict(zip(distinct, fetched))
        return [by_ref[ref] for ref in refs]

    async def _fetch(self, ref: ImageReference, avatars: AvatarLookup) -> bytes:
        if isinstance(ref, UrlImage):
            url = ref.url
        else:
            url = await avatars.avatar_url(ref.user_id)

        if url.startswith("data:"):
            return self._decode_data_url(ref, url)

        # httpx timeouts bound each read; this bounds the whole download
        try:
            return await asyncio.wait_for(self._download(ref, url), self.timeout)
        except asyncio.TimeoutError as e:
            raise ImageFetchError(ref, f"timed out after {self.timeout}s") from e

    async def _download(self, ref: ImageReference, url: str) -> bytes:
        data = bytearray()
        try:
            async with self.client.stream(
                "GET", url, timeout=self.timeout, follow_redirects=True
            ) as response:
                if not response.is_success:
                    raise ImageFetchError(ref, f"HTTP {response.status_code}")
                declared = response.headers.get("content-length", "")
                if declared.isdigit() and int(declared) > self.max_bytes:
                    raise ImageFetchError(ref, f"{declared} bytes exceeds {self.max_bytes}")
                async for chunk in response.aiter_bytes():
                    data.extend(chunk)
                    if len(data) > self.max_bytes:
                        raise ImageFetchError(ref, f"body exceeds {self.max_bytes} bytes")
        except httpx.TimeoutException as e:
            raise ImageFetchError(ref, f"timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise ImageFetchError(ref, repr(e)) from e

        if not data:
            raise ImageFetchError(ref, "empty body")
        return bytes(data)

    def _decode_data_url(self, ref: ImageReference, url: str) -> bytes:
        header, _, payload = url.partition(",")
        try:
            if header.endswith(";base64"):
                data = base64.b64decode(payload, validate=True)
            else:
                data = unquote_to_bytes(payload)
        except binascii.Error as e:
            raise ImageFetchError(ref, f"bad data URL: {e}") from e
        if not data:
            raise ImageFetchError(ref, "empty data URL")
        if len(data) > self.max_bytes:
            raise ImageFetchError(ref, f"{len(data)} bytes exceeds {self.max_bytes}")
        return data
