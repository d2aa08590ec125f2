import asyncio

import pytest

from src.services.meme.errors import BackendError
from src.services.meme.templates.cache import TemplateCache
from src.services.meme.templates.models import TemplateInfo
from tests.unit.meme.meme_test_base import (
    FakeBackend,
    InMemoryStore,
    MemeTestBase,
    sample_templates,
)


class TestTemplateCache(MemeTestBase):
    @pytest.mark.asyncio
    async def test_refresh_loads_every_template(self):
        backend = FakeBackend(sample_templates())
        store = InMemoryStore()
        cache = TemplateCache(backend, store)

        count = await cache.refresh()

        assert count == 3
        assert len(cache) == 3
        assert [t.key for t in cache.all()] == ["petpet", "drake", "kiss"]
        assert cache.get("drake").default_texts == ["this", "that"]
        assert cache.is_exhaustive
        assert store.saves == 1
        assert [t.key for t in store.templates] == ["petpet", "drake", "kiss"]
        assert cache.fetched_at == store.fetched_at

    @pytest.mark.asyncio
    async def test_refresh_keeps_key_when_info_fails(self, log_messages):
        backend = FakeBackend(sample_templates(), failing={"drake"})
        cache = TemplateCache(backend, InMemoryStore())

        count = await cache.refresh()

        assert count == 3
        assert cache.get("petpet").complete
        placeholder = cache.get("drake")
        assert placeholder is not None and not placeholder.complete
        assert not cache.is_exhaustive
        assert any("drake" in m for m in log_messages)

    @pytest.mark.asyncio
    async def test_refresh_propagates_list_failure(self):
        class Unreachable(FakeBackend):
            async def list_keys(self):
                raise BackendError("list", "GET /memes/keys timed out after 10s")

        cache = TemplateCache(Unreachable(sample_templates()), InMemoryStore())
        with pytest.raises(BackendError):
            await cache.refresh()
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_refresh_replaces_previous_set(self):
        backend = FakeBackend(sample_templates())
        cache = TemplateCache(backend, InMemoryStore())
        await cache.refresh()

        del backend.infos["kiss"]
        await cache.refresh()

        assert cache.get("kiss") is None
        assert len(cache) == 2

    @pytest.mark.asyncio
    async def test_concurrent_refreshes_share_one_fetch(self):
        backend = FakeBackend(sample_templates())
        backend.list_gate = asyncio.Event()
        cache = TemplateCache(backend, InMemoryStore())

        first = asyncio.ensure_future(cache.refresh())
        second = asyncio.ensure_future(cache.refresh())
        await asyncio.sleep(0)
        backend.list_gate.set()

        assert await asyncio.gather(first, second) == [3, 3]
        assert backend.calls["list"] == 1

        await cache.refresh()
        assert backend.calls["list"] == 2

    @pytest.mark.asyncio
    async def test_lazy_refresh_defers_info(self):
        backend = FakeBackend(sample_templates())
        cache = TemplateCache(backend, InMemoryStore(), eager_info=False)

        await cache.refresh()

        assert backend.calls["info"] == 0
        assert not cache.is_exhaustive
        detailed = await cache.detail(cache.get("kiss"))
        assert detailed.complete and detailed.min_images == 2
        assert backend.calls["info"] == 1
        # detail does not write back
        assert not cache.get("kiss").complete

    @pytest.mark.asyncio
    async def test_detail_of_complete_entry_is_local(self):
        backend = FakeBackend(sample_templates())
        cache = TemplateCache(backend, InMemoryStore())
        await cache.refresh()
        calls = backend.calls["info"]

        assert await cache.detail(cache.get("petpet")) is cache.get("petpet")
        assert backend.calls["info"] == calls

    @pytest.mark.asyncio
    async def test_start_prefers_snapshot(self):
        backend = FakeBackend(sample_templates())
        store = InMemoryStore([TemplateInfo(key="cached")], fetched_at=123)
        cache = TemplateCache(backend, store)

        assert await cache.start() == 1
        assert cache.get("cached") is not None
        assert cache.fetched_at == 123
        assert backend.calls["list"] == 0

    @pytest.mark.asyncio
    async def test_start_without_snapshot_refreshes(self):
        backend = FakeBackend(sample_templates())
        cache = TemplateCache(backend, InMemoryStore())

        assert await cache.start() == 3
        assert backend.calls["list"] == 1

    @pytest.mark.asyncio
    async def test_unwritable_snapshot_does_not_fail_refresh(self):
        class ReadOnlyStore(InMemoryStore):
            def save(self, templates, fetched_at=None):
                raise PermissionError("read-only filesystem")

        cache = TemplateCache(FakeBackend(sample_templates()), ReadOnlyStore())
        assert await cache.refresh() == 3
        assert cache.fetched_at is not None
