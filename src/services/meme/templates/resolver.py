"""Fuzzy lookup of a user-typed template name.

Candidates are ranked by tier (lower is better), ties broken by cache order:

1. the query equals the key or a keyword
2. a keyword contains the query
3. the query contains a keyword
4. the key contains the query
5. a tag equals or contains the query

Substring tiers can pick an unintended template for short queries; there is
no disambiguation step.
"""

import re
from dataclasses import dataclass, field
from typing import Collection, Dict, List, Optional, Tuple

from loguru import logger as log

from src.services.meme.errors import BackendError, MalformedBackendResponse, TemplateNotFound
from src.services.meme.templates.cache import TemplateCache
from src.services.meme.templates.models import MemeShortcut, TemplateInfo

# keys the service could plausibly know; anything else is not worth a round trip
_DIRECT_KEY_PATTERN = re.compile(r"^[\w-]+$")
_PLACEHOLDER_PATTERN = re.compile(r"\{(\w+)\}")


def match_tier(template: TemplateInfo, query: str) -> Optional[int]:
    if template.key == query or query in template.keywords:
        return 1
    if any(query in keyword for keyword in template.keywords):
        return 2
    if any(keyword in query for keyword in template.keywords):
        return 3
    if query in template.key:
        return 4
    if any(query in tag for tag in template.tags):
        return 5
    return None


def _shortcut_matches(shortcut: MemeShortcut, query: str) -> Optional[Dict[str, str]]:
    try:
        matched = re.fullmatch(shortcut.pattern, query)
    except re.error:
        return {} if shortcut.pattern == query else None
    if matched is None:
        return None
    return {k: v for k, v in matched.groupdict().items() if v is not None}


def _expand(args: List[str], groups: Dict[str, str]) -> List[str]:
    return [
        _PLACEHOLDER_PATTERN.sub(lambda m: groups.get(m.group(1), m.group(0)), arg)
        for arg in args
    ]


@dataclass
class Resolution:
    template: TemplateInfo
    # tokens a matched shortcut places ahead of the user's own arguments
    shortcut_args: List[str] = field(default_factory=list)


class TemplateResolver:
    def __init__(self, cache: TemplateCache, deny_list: Optional[Dict[str, List[str]]] = None):
        self._cache = cache
        self._deny_list = deny_list or {}

    def denied_keys(self, scope: Optional[str]) -> Collection[str]:
        denied = set(self._deny_list.get("*", []))
        if scope is not None:
            denied.update(self._deny_list.get(scope, []))
        return denied

    def _ranked(self, query: str) -> List[Tuple[int, int, TemplateInfo]]:
        ranked = []
        for index, template in enumerate(self._cache.all()):
            tier = match_tier(template, query)
            if tier is not None:
                ranked.append((tier, index, template))
        ranked.sort(key=lambda item: (item[0], item[1]))
        return ranked

    def search(self, query: str, scope: Optional[str] = None) -> List[TemplateInfo]:
        """Every visible match, best first."""
        query = query.strip()
        if not query:
            return []
        denied = self.denied_keys(scope)
        return [t for _, _, t in self._ranked(query) if t.key not in denied]

    def keyword_mappings(self) -> Dict[str, str]:
        """Alias (key or keyword) -> template key; earlier templates win clashes."""
        mappings: Dict[str, str] = {}
        for template in self._cache.all():
            for alias in [template.key, *template.keywords]:
                mappings.setdefault(alias, template.key)
        return mappings

    def _match_shortcut(self, query: str) -> Optional[Resolution]:
        for template in self._cache.all():
            for shortcut in template.shortcuts:
                groups = _shortcut_matches(shortcut, query)
                if groups is not None:
                    return Resolution(template, _expand(shortcut.args, groups))
        return None

    async def lookup(self, query: str, scope: Optional[str] = None) -> Resolution:
        query = query.strip()
        if not query:
            raise TemplateNotFound(query)
        denied = self.denied_keys(scope)

        ranked = self._ranked(query)
        resolution = Resolution(ranked[0][2]) if ranked else self._match_shortcut(query)
        if resolution is not None:
            if resolution.template.key in denied:
                log.info(f"Template {resolution.template.key} is denied in scope {scope}")
                raise TemplateNotFound(query)
            resolution.template = await self._cache.detail(resolution.template)
            return resolution

        if self._cache.is_exhaustive or not _DIRECT_KEY_PATTERN.match(query):
            raise TemplateNotFound(query)

        log.debug(f"{query!r} not in cache, asking the service directly")
        try:
            template = await self._cache.fetch_direct(query)
        except MalformedBackendResponse as e:
            raise TemplateNotFound(query) from e
        except BackendError as e:
            if e.status_code in (404, 422):
                raise TemplateNotFound(query) from e
            raise
        if template.key in denied:
            raise TemplateNotFound(query)
        return Resolution(template)

    async def resolve(self, query: str, scope: Optional[str] = None) -> TemplateInfo:
        return (await self.lookup(query, scope)).template
