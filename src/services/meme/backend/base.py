"""Common plumbing for the rendering-service adapters.

Both protocol variants share one `httpx.AsyncClient`, one error mapping and
one set of per-stage timeouts. Subclasses only describe their wire format.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import httpx
from loguru import logger as log

from common.config_models import BackendTimeoutConfig
from src.services.meme.errors import (
    BackendError,
    BackendStage,
    MalformedBackendResponse,
    ToolsUnavailable,
)
from src.services.meme.templates.models import TemplateInfo
from src.utils.aio import gather_or_cancel

InfoResult = Union[TemplateInfo, BackendError]

# image tool -> its numeric parameters, in positional order
IMAGE_OPERATIONS: Dict[str, Tuple[str, ...]] = {
    "flip_horizontal": (),
    "flip_vertical": (),
    "grayscale": (),
    "invert": (),
    "gif_reverse": (),
    "rotate": ("degrees",),
}


def _error_detail(response: httpx.Response) -> str:
    """Pull the service's own error text out of a failed response."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200] if text else f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for field in ("detail", "error", "message"):
            if body.get(field):
                return str(body[field])
    return f"HTTP {response.status_code}"


class MemeBackend(ABC):
    """One rendering service, speaking one fixed protocol variant."""

    variant: str = ""

    def __init__(
        self,
        base_url: str,
        client: httpx.AsyncClient,
        timeouts: BackendTimeoutConfig,
        info_concurrency: int = 8,
        version: Optional[str] = None,
    ):
        self.base_url = base_url.strip().rstrip("/")
        self.client = client
        self.timeouts = timeouts
        self.info_concurrency = max(1, info_concurrency)
        self.version = version

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.base_url!r}, version={self.version!r})"

    async def _request(
        self,
        stage: BackendStage,
        method: str,
        path: str,
        *,
        timeout: float,
        **kwargs: Any,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        try:
            response = await self.client.request(method, url, timeout=timeout, **kwargs)
        except httpx.TimeoutException as e:
            raise BackendError(stage, f"{method} {path} timed out after {timeout}s") from e
        except httpx.HTTPError as e:
            raise BackendError(stage, f"{method} {path} failed: {e!r}") from e

        if not response.is_success:
            raise BackendError(
                stage,
                f"{method} {path} -> {response.status_code}: {_error_detail(response)}",
                status_code=response.status_code,
            )
        return response

    async def _request_json(
        self,
        stage: BackendStage,
        method: str,
        path: str,
        *,
        timeout: float,
        **kwargs: Any,
    ) -> Any:
        response = await self._request(stage, method, path, timeout=timeout, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise MalformedBackendResponse(stage, f"{method} {path} returned non-JSON body") from e

    async def _request_bytes(
        self,
        stage: BackendStage,
        method: str,
        path: str,
        *,
        timeout: float,
        **kwargs: Any,
    ) -> bytes:
        response = await self._request(stage, method, path, timeout=timeout, **kwargs)
        if not response.content:
            raise MalformedBackendResponse(stage, f"{method} {path} returned an empty body")
        return response.content

    @abstractmethod
    async def list_keys(self) -> List[str]:
        """Every template key the service knows."""

    @abstractmethod
    async def get_info(self, key: str) -> TemplateInfo:
        """Full metadata for one key. Raises BackendError (404 means unknown key)."""

    @abstractmethod
    async def generate(
        self,
        key: str,
        images: List[bytes],
        texts: List[str],
        options: Dict[str, Any],
        image_names: Optional[List[str]] = None,
    ) -> bytes:
        """Render a meme and return the encoded image."""

    @abstractmethod
    async def get_preview(self, key: str) -> bytes:
        """Render the template's sample image."""

    async def upload_image(self, data: bytes) -> str:
        raise BackendError("upload", f"{self.variant} backend does not accept uploads")

    async def image_operation(self, operation: str, data: bytes, **params: Any) -> bytes:
        """Apply one of IMAGE_OPERATIONS to an image and return the result."""
        raise ToolsUnavailable(self.variant)

    async def get_infos(self, keys: Iterable[str]) -> Dict[str, InfoResult]:
        """Fetch metadata for many keys; one key failing never fails the batch."""
        semaphore = asyncio.Semaphore(self.info_concurrency)

        async def fetch_one(key: str) -> InfoResult:
            async with semaphore:
                try:
                    return await self.get_info(key)
                except BackendError as e:
                    return e

        keys = list(keys)
        results = await gather_or_cancel(*(fetch_one(key) for key in keys))
        log.debug(f"Fetched info for {len(keys)} templates from {self.base_url}")
        return dict(zip(keys, results))
