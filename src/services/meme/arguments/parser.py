"""Turns chat message nodes into images, texts and options.

Text is split shell-style: whitespace separates tokens and quotes group.
Classification looks at the raw token, so quoting a token forces it to be
text (`"-x"` or `"@123"`):

- `-name`, `--name`, `-name=value`, `--name=value`  -> option (bare = true)
- `@` followed by digits                            -> that user's avatar
- anything else                                     -> text

Option values are coerced by the template's declared type when it has one,
otherwise by shape (true/false, integer, decimal, string).
"""

import math
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional

from src.services.meme.arguments.models import (
    GroupNode,
    ImageNode,
    ImageReference,
    MentionNode,
    MessageNode,
    ParsedArguments,
    TextNode,
    UrlImage,
    UserAvatar,
)
from src.services.meme.errors import InvalidOptionValue
from src.services.meme.templates.models import MemeOption, TemplateInfo

_TOKEN_PATTERN = re.compile(r"""(?:[^\s"']+|"[^"]*"|'[^']*'|["'])+""")
_QUOTED_PATTERN = re.compile(r""""([^"]*)"|'([^']*)'""")
_OPTION_PATTERN = re.compile(r"^-{1,2}([^\s=-][^\s=]*)(?:=(.*))?$", re.DOTALL)
_MENTION_PATTERN = re.compile(r"^@(\d+)$")
_INTEGER_PATTERN = re.compile(r"^-?\d+$")
_DECIMAL_PATTERN = re.compile(r"^-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?$")
_NEEDS_QUOTING = re.compile(r"""[\s"']""")

_TRUE_WORDS = {"true", "1", "yes", "on"}
_FALSE_WORDS = {"false", "0", "no", "off"}
# filled in by the rendering service itself
_RESERVED_OPTIONS = {"user_infos"}


def split_tokens(text: str) -> List[str]:
    """Split on whitespace, keeping quoted runs (quotes included) together."""
    return _TOKEN_PATTERN.findall(text)


def unquote(token: str) -> str:
    return _QUOTED_PATTERN.sub(
        lambda m: m.group(1) if m.group(1) is not None else m.group(2), token
    )


def quote_token(text: str) -> str:
    """Inverse of `unquote` for a single text argument."""
    if text and not _NEEDS_QUOTING.search(text) and text[0] not in "-@":
        return text
    return "'\"'".join(f'"{piece}"' for piece in text.split('"'))


def flatten(nodes: Iterable[MessageNode]) -> Iterator[MessageNode]:
    """Depth-first walk yielding leaf nodes in order."""
    for node in nodes:
        if isinstance(node, GroupNode):
            yield from flatten(node.children)
        else:
            yield node


def coerce_heuristic(raw: Optional[str]) -> Any:
    if raw is None or raw == "true":
        return True
    if raw == "false":
        return False
    if _INTEGER_PATTERN.match(raw):
        return int(raw)
    if _DECIMAL_PATTERN.match(raw):
        value = float(raw)
        # out-of-range exponents overflow to inf, which has no numeric spelling here
        return value if math.isfinite(value) else raw
    return raw


def coerce_declared(option: MemeOption, raw: Optional[str]) -> Any:
    declared = option.type.lower()
    if declared in ("boolean", "bool"):
        if raw is None:
            return True
        word = raw.lower()
        if word not in _TRUE_WORDS | _FALSE_WORDS:
            raise InvalidOptionValue(option.name, raw, "boolean")
        return word in _TRUE_WORDS

    if raw is None:
        raise InvalidOptionValue(option.name, True, declared)

    value: Any
    if declared in ("integer", "int"):
        try:
            value = int(raw)
        except ValueError:
            raise InvalidOptionValue(option.name, raw, "integer")
    elif declared in ("number", "float"):
        try:
            value = float(raw)
        except ValueError:
            raise InvalidOptionValue(option.name, raw, "number")
    else:
        value = raw

    if isinstance(value, (int, float)):
        if option.minimum is not None and value < option.minimum:
            raise InvalidOptionValue(option.name, raw, f"number >= {option.minimum:g}")
        if option.maximum is not None and value > option.maximum:
            raise InvalidOptionValue(option.name, raw, f"number <= {option.maximum:g}")

    if option.choices:
        for choice in option.choices:
            if value == choice or str(value) == str(choice):
                return choice
        raise InvalidOptionValue(
            option.name, raw, "one of " + ", ".join(str(c) for c in option.choices)
        )
    return value


class ArgumentParser:
    """Stateless; one instance can serve every invocation."""

    def parse(
        self,
        nodes: Iterable[MessageNode],
        template: Optional[TemplateInfo] = None,
        quoted: Optional[Iterable[MessageNode]] = None,
        prefix_tokens: Optional[Iterable[str]] = None,
    ) -> ParsedArguments:
        """
        Args:
            nodes: the command body after the template name
            template: declares option types, aliases and choices when known
            quoted: the replied-to message; only its images are used, ahead of the body's
            prefix_tokens: already-split tokens placed before the body (shortcut expansions)
        """
        image_refs: List[ImageReference] = []
        texts: List[str] = []
        raw_options: Dict[str, Optional[str]] = {}

        for node in flatten(quoted or []):
            if isinstance(node, ImageNode) and node.src:
                image_refs.append(UrlImage(url=node.src))

        def take(token: str) -> None:
            option = _OPTION_PATTERN.match(token)
            if option:
                name, value = option.group(1), option.group(2)
                raw_options[name] = None if value is None else unquote(value)
                return
            mention = _MENTION_PATTERN.match(token)
            if mention:
                image_refs.append(UserAvatar(user_id=mention.group(1)))
                return
            texts.append(unquote(token))

        for token in prefix_tokens or []:
            take(token)

        pending: List[str] = []

        def flush() -> None:
            for token in split_tokens("".join(pending)):
                take(token)
            pending.clear()

        for node in flatten(nodes):
            if isinstance(node, TextNode):
                pending.append(node.content)
                continue
            flush()
            if isinstance(node, MentionNode) and node.user_id:
                image_refs.append(UserAvatar(user_id=node.user_id))
            elif isinstance(node, ImageNode) and node.src:
                image_refs.append(UrlImage(url=node.src))
        flush()

        return ParsedArguments(
            image_refs=image_refs,
            texts=texts,
            options=self.coerce_options(raw_options, template),
        )

    def coerce_options(
        self,
        raw_options: Dict[str, Optional[str]],
        template: Optional[TemplateInfo] = None,
    ) -> Dict[str, Any]:
        options: Dict[str, Any] = {}
        for name, raw in raw_options.items():
            declared = template.option(name) if template is not None else None
            if declared is None:
                if name not in _RESERVED_OPTIONS:
                    options[name] = coerce_heuristic(raw)
                continue
            if raw is None:
                # a bare alias may stand for a fixed value
                alias = name if name in declared.flag_values else name.replace("-", "_")
                if alias in declared.flag_values:
                    raw = str(declared.flag_values[alias])
            options[declared.name] = coerce_declared(declared, raw)
        return options


def to_command_line(parsed: ParsedArguments) -> str:
    """Render a parse back to text that parses to the same result.

    URL images have no textual form and are left out.
    """
    parts: List[str] = []
    for ref in parsed.image_refs:
        if isinstance(ref, UserAvatar) and ref.user_id.isdigit():
            parts.append(f"@{ref.user_id}")
    parts.extend(quote_token(text) for text in parsed.texts)
    for name, value in parsed.options.items():
        if value is True:
            parts.append(f"--{name}")
        elif value is False:
            parts.append(f"--{name}=false")
        else:
            rendered = str(value)
            if not rendered or _NEEDS_QUOTING.search(rendered):
                rendered = quote_token(rendered)
            parts.append(f"--{name}={rendered}")
    return " ".join(parts)
