"""
Meme generation entry point for the command layer.

`MemeGenerator.create_meme` runs the whole pipeline for one invocation:
template lookup -> argument parsing -> count validation -> image download ->
backend render. Internal failures are logged in full and re-raised as a
`UserFacingError` carrying one short reply.
"""

from contextlib import contextmanager
from typing import Iterable, Iterator, List, Optional

import httpx
from human_id import generate_id
from loguru import logger as log
from pydantic import BaseModel

from common.global_config import Config, global_config
from src.services.meme.arguments import (
    ArgumentParser,
    ConstraintValidator,
    MessageNode,
    UserAvatar,
)
from src.services.meme.arguments.parser import coerce_declared
from src.services.meme.backend import MemeBackend, detect_backend
from src.services.meme.backend.base import IMAGE_OPERATIONS
from src.services.meme.errors import MemeError, UnknownImageOperation, UserFacingError
from src.services.meme.images import AvatarProvider, ImageResolver
from src.services.meme.templates.cache import TemplateCache
from src.services.meme.templates.loader import TemplateSnapshotStore
from src.services.meme.templates.models import MemeOption, TemplateInfo
from src.services.meme.templates.resolver import TemplateResolver
from src.utils.context import invocation_id
from src.utils.logging_config import setup_logging

setup_logging()

NOT_READY_MESSAGE = "The meme service is still starting, try again shortly"


class Invoker(BaseModel):
    """Who asked, and where."""

    user_id: str
    # channel/guild the command came from; selects the deny-list entry
    scope: Optional[str] = None
    avatar_url: Optional[str] = None


def tool_template(operation: str) -> TemplateInfo:
    """Describe an image tool as a one-image template so it parses like a meme."""
    if operation not in IMAGE_OPERATIONS:
        raise UnknownImageOperation(operation, IMAGE_OPERATIONS)
    params = IMAGE_OPERATIONS[operation]
    return TemplateInfo(
        key=operation,
        min_images=1,
        max_images=1,
        max_texts=len(params),
        options=[MemeOption(name=name, type="number") for name in params],
    )


class MemeGenerator:
    def __init__(
        self,
        config: Config = global_config,
        client: Optional[httpx.AsyncClient] = None,
        backend: Optional[MemeBackend] = None,
        store: Optional[TemplateSnapshotStore] = None,
    ):
        self.config = config
        self.client = client
        self.backend = backend
        self.store = store or TemplateSnapshotStore(config.snapshot_file())
        self.parser = ArgumentParser()
        self.validator = ConstraintValidator(config.arguments.tolerate_excess)
        self.avatars = AvatarProvider(config.images.avatar_url_template)
        self.cache: Optional[TemplateCache] = None
        self.resolver: Optional[TemplateResolver] = None
        self.images: Optional[ImageResolver] = None
        self._owns_client = False

    @property
    def ready(self) -> bool:
        return self.resolver is not None

    async def start(self) -> int:
        """Connect to the service and load templates. Returns the template count."""
        if self.client is None:
            self.client = httpx.AsyncClient()
            self._owns_client = True
        if self.backend is None:
            self.backend = await detect_backend(
                self.config.meme_backend,
                self.client,
                info_concurrency=self.config.template_cache.info_concurrency,
            )

        cache = TemplateCache(self.backend, self.store, self.config.template_cache.eager_info)
        self.images = ImageResolver(
            self.client,
            self.avatars,
            timeout=self.config.images.timeout_seconds,
            max_bytes=self.config.images.max_bytes,
        )
        count = await cache.start()
        self.cache = cache
        self.resolver = TemplateResolver(cache, self.config.resolver.deny_list)
        log.info(f"Meme generator ready with {count} templates")
        return count

    async def aclose(self) -> None:
        if self._owns_client and self.client is not None:
            await self.client.aclose()
            self.client = None
            self._owns_client = False

    @contextmanager
    def _user_facing(self, action: str) -> Iterator[None]:
        if not self.ready:
            raise UserFacingError(NOT_READY_MESSAGE)
        try:
            yield
        except MemeError as e:
            if e.user_correctable:
                log.info(f"{action} rejected: {e}")
            else:
                log.error(f"{action} failed: {e!r}")
            raise UserFacingError(e.user_message(), e) from e

    async def create_meme(
        self,
        invoker: Invoker,
        query_key: str,
        nodes: Iterable[MessageNode],
        quoted: Optional[Iterable[MessageNode]] = None,
    ) -> bytes:
        token = invocation_id.set(generate_id())
        try:
            with self._user_facing(f"Meme {query_key!r} for {invoker.user_id}"):
                return await self._create(invoker, query_key, nodes, quoted)
        finally:
            invocation_id.reset(token)

    async def _create(
        self,
        invoker: Invoker,
        query_key: str,
        nodes: Iterable[MessageNode],
        quoted: Optional[Iterable[MessageNode]],
    ) -> bytes:
        assert self.resolver is not None and self.images is not None
        assert self.backend is not None

        resolution = await self.resolver.lookup(query_key, invoker.scope)
        template = resolution.template
        parsed = self.parser.parse(nodes, template, quoted, resolution.shortcut_args)
        arguments = self.validator.apply(parsed, template, invoker.user_id)

        avatars = self.avatars.with_known(invoker.user_id, invoker.avatar_url)
        images = await self.images.resolve(arguments.image_refs, avatars)
        names = [
            ref.user_id if isinstance(ref, UserAvatar) else ""
            for ref in arguments.image_refs
        ]

        log.info(
            f"Generating {template.key}: {len(images)} images, "
            f"{len(arguments.texts)} texts, options={arguments.options}"
        )
        return await self.backend.generate(
            template.key,
            images,
            arguments.texts,
            arguments.options,
            image_names=names,
        )

    async def refresh(self) -> int:
        with self._user_facing("Template refresh"):
            assert self.cache is not None
            return await self.cache.refresh()

    def search(self, query: str, scope: Optional[str] = None) -> List[TemplateInfo]:
        with self._user_facing(f"Search {query!r}"):
            assert self.resolver is not None
            return self.resolver.search(query, scope)

    async def preview(self, query_key: str, scope: Optional[str] = None) -> bytes:
        with self._user_facing(f"Preview {query_key!r}"):
            assert self.resolver is not None and self.backend is not None
            template = await self.resolver.resolve(query_key, scope)
            return await self.backend.get_preview(template.key)

    async def image_tool(
        self,
        invoker: Invoker,
        operation: str,
        nodes: Iterable[MessageNode],
        quoted: Optional[Iterable[MessageNode]] = None,
    ) -> bytes:
        """Run one image tool (flip, rotate, ...) on the first image of the command.

        Like a one-image template: the invoker's avatar stands in when no image
        is given, and the tool's parameters come as options (`--degrees=90`) or
        as plain text in parameter order.
        """
        token = invocation_id.set(generate_id())
        try:
            with self._user_facing(f"Image tool {operation!r} for {invoker.user_id}"):
                return await self._image_tool(invoker, operation, nodes, quoted)
        finally:
            invocation_id.reset(token)

    async def _image_tool(
        self,
        invoker: Invoker,
        operation: str,
        nodes: Iterable[MessageNode],
        quoted: Optional[Iterable[MessageNode]],
    ) -> bytes:
        assert self.images is not None and self.backend is not None

        tool = tool_template(operation)
        parsed = self.parser.parse(nodes, tool, quoted)
        arguments = self.validator.apply(parsed, tool, invoker.user_id)

        params = {name: value for name, value in arguments.options.items() if tool.option(name)}
        for option, raw in zip(tool.options, arguments.texts):
            params.setdefault(option.name, coerce_declared(option, raw))

        avatars = self.avatars.with_known(invoker.user_id, invoker.avatar_url)
        (image,) = await self.images.resolve(arguments.image_refs, avatars)

        log.info(f"Running image tool {operation} with {params}")
        return await self.backend.image_operation(operation, image, **params)
