from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from sitecatalog.core.urls import normalize_url, same_domain
from sitecatalog.schemas.results import UrlSource

SOURCE_GEMINI: UrlSource = "gemini"
SOURCE_GPT: UrlSource = "gpt"
SOURCE_SITEMAP: UrlSource = "sitemap"
SOURCE_MERGED: UrlSource = "merged"

SOURCE_ORDER: tuple[UrlSource, ...] = (SOURCE_GEMINI, SOURCE_GPT, SOURCE_SITEMAP)


@dataclass(frozen=True, slots=True)
class MergedUrl:
    url: str
    sources: frozenset[UrlSource]

    @property
    def primary_source(self) -> UrlSource:
        return primary_source(self.sources)


def reconcile_urls(source_urls: Mapping[UrlSource, Any], base_domain: str) -> list[MergedUrl]:
    """Merge per-source URL lists into one sorted, domain-scoped set.

    Scoping always compares against ``https://{base_domain}``; only the
    hostname takes part in the comparison, so http candidates still pass.
    """
    scope_origin = f"https://{base_domain}"
    url_sources: dict[str, set[UrlSource]] = {}

    for source in SOURCE_ORDER:
        for raw_url in _iter_raw_urls(source_urls.get(source)):
            normalized = normalize_url(raw_url)
            if not same_domain(normalized, scope_origin):
                continue
            url_sources.setdefault(normalized, set()).add(source)

    return [MergedUrl(url=url, sources=frozenset(sources)) for url, sources in sorted(url_sources.items())]


def primary_source(sources: Iterable[UrlSource]) -> UrlSource:
    labels = set(sources)
    if SOURCE_SITEMAP in labels:
        return SOURCE_SITEMAP
    if SOURCE_GEMINI in labels and SOURCE_GPT in labels:
        return SOURCE_MERGED
    if SOURCE_GEMINI in labels:
        return SOURCE_GEMINI
    return SOURCE_GPT


def multi_source_urls(merged: Iterable[MergedUrl]) -> list[MergedUrl]:
    return [item for item in merged if len(item.sources) > 1]


def single_source_urls(merged: Iterable[MergedUrl]) -> list[MergedUrl]:
    return [item for item in merged if len(item.sources) == 1]


def _iter_raw_urls(raw: Any) -> Iterable[str]:
    if not isinstance(raw, (list, tuple)):
        return ()
    return (item for item in raw if isinstance(item, str) and item.strip())
