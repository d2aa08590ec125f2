"""
Rendering-service adapters.

`detect_backend` picks the protocol variant once, by probing the service's
version endpoint; everything downstream talks to the returned `MemeBackend`
without knowing which variant it is.
"""

import httpx
from loguru import logger as log

from common.config_models import MemeBackendConfig
from src.services.meme.backend.base import MemeBackend
from src.services.meme.backend.fast_api import FastApiBackend
from src.services.meme.backend.rs_api import RsApiBackend
from src.services.meme.errors import BackendError

# the python meme-generator reports 0.1.x; anything else is the rust rewrite
FAST_API_VERSION_PREFIX = "0.1."

_VARIANTS: dict[str, type[MemeBackend]] = {
    FastApiBackend.variant: FastApiBackend,
    RsApiBackend.variant: RsApiBackend,
}


async def probe_version(base_url: str, client: httpx.AsyncClient, timeout: float) -> str:
    url = f"{base_url.strip().rstrip('/')}/meme/version"
    try:
        response = await client.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        raise BackendError("version", f"GET /meme/version failed: {e!r}") from e
    if not response.is_success:
        raise BackendError(
            "version",
            f"GET /meme/version -> {response.status_code}",
            status_code=response.status_code,
        )
    return response.text.strip().strip('"')


async def detect_backend(
    config: MemeBackendConfig,
    client: httpx.AsyncClient,
    info_concurrency: int = 8,
) -> MemeBackend:
    """Build the adapter for the configured service, probing its variant if needed."""
    version = None
    variant = config.variant
    if variant == "auto":
        version = await probe_version(config.base_url, client, config.timeouts.version_seconds)
        variant = (
            FastApiBackend.variant
            if version.startswith(FAST_API_VERSION_PREFIX)
            else RsApiBackend.variant
        )

    backend = _VARIANTS[variant](
        config.base_url,
        client,
        config.timeouts,
        info_concurrency=info_concurrency,
        version=version,
    )
    log.info(f"Using {backend}")
    return backend


__all__ = [
    "MemeBackend",
    "FastApiBackend",
    "RsApiBackend",
    "detect_backend",
    "probe_version",
]
