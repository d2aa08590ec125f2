"""Adapter for meme-generator-rs.

Images never travel inline: each one is uploaded first and referenced by id,
the render call answers with an output id, and the bytes are fetched by id.
"""

import base64
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger as log

from src.services.meme.backend.base import InfoResult, MemeBackend
from src.services.meme.errors import BackendError, BackendStage, MalformedBackendResponse
from src.services.meme.templates.models import MemeOption, MemeShortcut, TemplateInfo
from src.utils.aio import gather_or_cancel


def _flag_aliases(option: Dict[str, Any]) -> List[str]:
    flags = option.get("parser_flags") or {}
    name = option.get("name") or ""
    aliases = list(flags.get("short_aliases") or []) + list(flags.get("long_aliases") or [])
    if flags.get("short") and name:
        aliases.insert(0, name[0])
    return [a.lstrip("-") for a in aliases if a.lstrip("-") and a.lstrip("-") != name]


def _shortcut_args(shortcut: Dict[str, Any]) -> List[str]:
    args = [str(t) for t in shortcut.get("texts") or []]
    for name, value in (shortcut.get("options") or {}).items():
        if isinstance(value, bool):
            value = "true" if value else "false"
        args.append(f"--{name}={value}")
    return args


def parse_info(data: Any, key: Optional[str] = None) -> TemplateInfo:
    if not isinstance(data, dict) or not isinstance(data.get("params"), dict):
        raise MalformedBackendResponse("info", f"template info for {key!r} has no params")

    params = data["params"]
    options = [
        MemeOption(
            name=opt["name"],
            type=opt.get("type") or "string",
            default=opt.get("default"),
            choices=opt.get("choices"),
            description=opt.get("description"),
            minimum=opt.get("minimum"),
            maximum=opt.get("maximum"),
            aliases=_flag_aliases(opt),
        )
        for opt in params.get("options") or []
        if isinstance(opt, dict) and opt.get("name")
    ]
    shortcuts = [
        MemeShortcut(
            pattern=sc["pattern"],
            humanized=sc.get("humanized"),
            args=_shortcut_args(sc),
        )
        for sc in data.get("shortcuts") or []
        if isinstance(sc, dict) and sc.get("pattern")
    ]

    try:
        return TemplateInfo(
            key=data.get("key") or key,
            keywords=[k for k in data.get("keywords") or [] if k],
            tags=list(data.get("tags") or []),
            min_images=params.get("min_images") or 0,
            max_images=params.get("max_images"),
            min_texts=params.get("min_texts") or 0,
            max_texts=params.get("max_texts"),
            default_texts=list(params.get("default_texts") or []),
            options=options,
            shortcuts=shortcuts,
            date_created=data.get("date_created"),
            date_modified=data.get("date_modified"),
        )
    except ValueError as e:
        raise MalformedBackendResponse("info", f"template info for {key!r} is invalid: {e}") from e


def _image_id(stage: BackendStage, data: Any) -> str:
    if not isinstance(data, dict) or not data.get("image_id"):
        raise MalformedBackendResponse(stage, "response has no image_id")
    return str(data["image_id"])


class RsApiBackend(MemeBackend):
    variant = "rs"

    async def list_keys(self) -> List[str]:
        keys = await self._request_json(
            "list", "GET", "/meme/keys", timeout=self.timeouts.metadata_seconds
        )
        if not isinstance(keys, list):
            raise MalformedBackendResponse("list", "/meme/keys did not return a list")
        return [str(k) for k in keys]

    async def get_info(self, key: str) -> TemplateInfo:
        data = await self._request_json(
            "info", "GET", f"/memes/{key}/info", timeout=self.timeouts.metadata_seconds
        )
        return parse_info(data, key)

    async def get_infos(self, keys: Iterable[str]) -> Dict[str, InfoResult]:
        """Serve the batch from one /meme/infos call, per key as a fallback."""
        keys = list(keys)
        try:
            infos = await self._request_json(
                "info", "GET", "/meme/infos", timeout=self.timeouts.metadata_seconds
            )
            if not isinstance(infos, list):
                raise MalformedBackendResponse("info", "/meme/infos did not return a list")
        except BackendError as e:
            log.warning(f"Bulk info fetch failed, fetching per key: {e}")
            return await super().get_infos(keys)

        by_key: Dict[str, InfoResult] = {}
        for raw in infos:
            raw_key = raw.get("key") if isinstance(raw, dict) else None
            if not raw_key:
                continue
            try:
                by_key[raw_key] = parse_info(raw, raw_key)
            except MalformedBackendResponse as e:
                by_key[raw_key] = e

        return {
            key: by_key.get(key) or BackendError("info", f"{key} missing from /meme/infos")
            for key in keys
        }

    async def upload_image(self, data: bytes) -> str:
        payload = {"type": "data", "data": base64.b64encode(data).decode("ascii")}
        result = await self._request_json(
            "upload", "POST", "/image/upload", json=payload, timeout=self.timeouts.upload_seconds
        )
        return _image_id("upload", result)

    async def _fetch_image(self, image_id: str) -> bytes:
        return await self._request_bytes(
            "fetch", "GET", f"/image/{image_id}", timeout=self.timeouts.fetch_seconds
        )

    async def generate(
        self,
        key: str,
        images: List[bytes],
        texts: List[str],
        options: Dict[str, Any],
        image_names: Optional[List[str]] = None,
    ) -> bytes:
        image_ids = await gather_or_cancel(*(self.upload_image(data) for data in images))
        names = image_names or [""] * len(image_ids)
        payload = {
            "images": [{"name": name, "id": image_id} for name, image_id in zip(names, image_ids)],
            "texts": list(texts),
            "options": options,
        }

        log.debug(f"POST /memes/{key} with {len(image_ids)} uploaded images, {len(texts)} texts")
        result = await self._request_json(
            "generate",
            "POST",
            f"/memes/{key}",
            json=payload,
            timeout=self.timeouts.generate_seconds,
        )
        return await self._fetch_image(_image_id("generate", result))

    async def image_operation(self, operation: str, data: bytes, **params: Any) -> bytes:
        image_id = await self.upload_image(data)
        log.debug(f"POST /tools/image_operations/{operation} on {image_id} with {params}")
        result = await self._request_json(
            "tool",
            "POST",
            f"/tools/image_operations/{operation}",
            json={"image_id": image_id, **params},
            timeout=self.timeouts.generate_seconds,
        )
        return await self._fetch_image(_image_id("tool", result))

    async def get_preview(self, key: str) -> bytes:
        result = await self._request_json(
            "preview", "GET", f"/memes/{key}/preview", timeout=self.timeouts.preview_seconds
        )
        return await self._fetch_image(_image_id("preview", result))
