import asyncio
import time
from typing import Dict, List, Optional

from loguru import logger as log

from src.services.meme.backend import MemeBackend
from src.services.meme.errors import BackendError
from src.services.meme.templates.loader import TemplateSnapshotStore
from src.services.meme.templates.models import TemplateInfo


class TemplateCache:
    """Process-wide template metadata, replaced wholesale by `refresh()`.

    Reads are plain dict lookups and may run concurrently. `refresh()` is the
    only writer; overlapping calls share one in-flight fetch.
    """

    def __init__(
        self,
        backend: MemeBackend,
        store: TemplateSnapshotStore,
        eager_info: bool = True,
    ):
        self._backend = backend
        self._store = store
        self.eager_info = eager_info
        self._templates: Dict[str, TemplateInfo] = {}
        self.fetched_at: Optional[int] = None
        self._inflight: Optional["asyncio.Future[int]"] = None

    def __len__(self) -> int:
        return len(self._templates)

    async def start(self) -> int:
        """Populate from the snapshot, or from the service when there is none."""
        templates, fetched_at = self._store.load()
        if templates:
            self._templates = {t.key: t for t in templates}
            self.fetched_at = fetched_at
            log.info(f"Loaded {len(templates)} templates from snapshot")
            return len(templates)
        return await self.refresh()

    def get(self, key: str) -> Optional[TemplateInfo]:
        return self._templates.get(key)

    def all(self) -> List[TemplateInfo]:
        return list(self._templates.values())

    @property
    def is_exhaustive(self) -> bool:
        """True when every known template carries full metadata."""
        templates = self._templates
        return bool(templates) and all(t.complete for t in templates.values())

    async def refresh(self) -> int:
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._refresh())
        else:
            log.debug("Refresh already running, joining it")
        return await asyncio.shield(self._inflight)

    async def _refresh(self) -> int:
        started = time.monotonic()
        keys = await self._backend.list_keys()
        log.info(f"Service lists {len(keys)} templates")

        templates: Dict[str, TemplateInfo] = {}
        if self.eager_info:
            results = await self._backend.get_infos(keys)
            for key in keys:
                result = results.get(key)
                if isinstance(result, TemplateInfo):
                    templates[key] = (
                        result if result.key == key else result.model_copy(update={"key": key})
                    )
                    continue
                log.warning(f"Info for template {key} unavailable, keeping bare key: {result}")
                templates[key] = TemplateInfo.placeholder(key)
        else:
            templates = {key: TemplateInfo.placeholder(key) for key in keys}

        self._templates = templates
        try:
            self.fetched_at = self._store.save(list(templates.values()))
        except OSError as e:
            self.fetched_at = int(time.time() * 1000)
            log.error(f"Could not persist template snapshot: {e}")

        log.info(
            f"Refreshed {len(templates)} templates in {time.monotonic() - started:.2f}s"
        )
        return len(templates)

    async def detail(self, template: TemplateInfo) -> TemplateInfo:
        """Full metadata for a cached entry, fetched on demand for key-only entries."""
        if template.complete:
            return template
        try:
            info = await self._backend.get_info(template.key)
        except BackendError as e:
            log.warning(f"Deferred info fetch for {template.key} failed: {e}")
            raise
        return info if info.key == template.key else info.model_copy(update={"key": template.key})

    async def fetch_direct(self, key: str) -> TemplateInfo:
        """Ask the service about a key the cache does not know, labelled with that key."""
        info = await self._backend.get_info(key)
        return info.model_copy(update={"key": key})
