"""Adapter for the python meme-generator service (versions 0.1.x).

Images travel inline: one multipart POST carries raw image bytes, repeated
`texts` fields and a JSON `args` field, and the rendered image comes back in
the response body.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from loguru import logger as log

from src.services.meme.backend.base import MemeBackend
from src.services.meme.errors import MalformedBackendResponse
from src.services.meme.templates.models import MemeOption, MemeShortcut, TemplateInfo

# injected by the service itself, never a user option
_RESERVED_ARGS = {"user_infos"}


def _schema_type(prop: Dict[str, Any]) -> str:
    if prop.get("type"):
        return str(prop["type"])
    for alternative in prop.get("anyOf") or []:
        if alternative.get("type") and alternative["type"] != "null":
            return str(alternative["type"])
    return "string"


def _parser_aliases(parser_options: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Map option dest -> {alias: constant or None} from argparse-style parser options."""
    aliases: Dict[str, Dict[str, Any]] = {}
    for parser_option in parser_options:
        names = [n.lstrip("-") for n in parser_option.get("names") or [] if n.lstrip("-")]
        if not names:
            continue
        dest = parser_option.get("dest") or names[0]
        action = parser_option.get("action") or {}
        # action type 0 is store_const
        constant = action.get("value") if action.get("type") == 0 else None
        for name in names:
            aliases.setdefault(dest, {})[name] = constant
    return aliases


def parse_info(data: Any, key: Optional[str] = None) -> TemplateInfo:
    if not isinstance(data, dict) or not isinstance(data.get("params_type"), dict):
        raise MalformedBackendResponse("info", f"template info for {key!r} has no params_type")

    params = data["params_type"]
    args_type = params.get("args_type") or {}
    properties = (args_type.get("args_model") or {}).get("properties") or {}
    aliases = _parser_aliases(args_type.get("parser_options") or [])

    options = []
    for name, prop in properties.items():
        if name in _RESERVED_ARGS or not isinstance(prop, dict):
            continue
        option_aliases = aliases.get(name, {})
        options.append(
            MemeOption(
                name=name,
                type=_schema_type(prop),
                default=prop.get("default"),
                choices=prop.get("enum"),
                description=prop.get("description"),
                minimum=prop.get("minimum"),
                maximum=prop.get("maximum"),
                aliases=[a for a in option_aliases if a != name],
                flag_values={a: v for a, v in option_aliases.items() if v is not None},
            )
        )

    shortcuts = [
        MemeShortcut(
            pattern=sc["key"],
            humanized=sc.get("humanized"),
            args=[str(a) for a in sc.get("args") or []],
        )
        for sc in data.get("shortcuts") or []
        if isinstance(sc, dict) and sc.get("key")
    ]

    keywords = data.get("keywords") or []
    if isinstance(keywords, str):
        keywords = [keywords]

    try:
        return TemplateInfo(
            key=data.get("key") or key,
            keywords=[k for k in keywords if k],
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
        # pydantic.ValidationError is a ValueError
        raise MalformedBackendResponse("info", f"template info for {key!r} is invalid: {e}") from e


class FastApiBackend(MemeBackend):
    variant = "fast"

    async def list_keys(self) -> List[str]:
        keys = await self._request_json(
            "list", "GET", "/memes/keys", timeout=self.timeouts.metadata_seconds
        )
        if not isinstance(keys, list):
            raise MalformedBackendResponse("list", "/memes/keys did not return a list")
        return [str(k) for k in keys]

    async def get_info(self, key: str) -> TemplateInfo:
        data = await self._request_json(
            "info", "GET", f"/memes/{key}/info", timeout=self.timeouts.metadata_seconds
        )
        return parse_info(data, key)

    async def generate(
        self,
        key: str,
        images: List[bytes],
        texts: List[str],
        options: Dict[str, Any],
        image_names: Optional[List[str]] = None,
    ) -> bytes:
        args = dict(options)
        if image_names and any(image_names):
            args["user_infos"] = [{"name": name} for name in image_names]

        # every field is a multipart part, so the body stays multipart without images
        files: List[Tuple[str, Tuple[Optional[str], bytes]]] = [
            ("images", (f"image{i}", data)) for i, data in enumerate(images)
        ]
        files.extend(("texts", (None, text.encode("utf-8"))) for text in texts)
        files.append(("args", (None, json.dumps(args, ensure_ascii=False).encode("utf-8"))))

        log.debug(f"POST /memes/{key}/ with {len(images)} images, {len(texts)} texts")
        return await self._request_bytes(
            "generate",
            "POST",
            f"/memes/{key}/",
            files=files,
            timeout=self.timeouts.generate_seconds,
        )

    async def get_preview(self, key: str) -> bytes:
        return await self._request_bytes(
            "preview", "GET", f"/memes/{key}/preview", timeout=self.timeouts.preview_seconds
        )
