from __future__ import annotations

from dataclasses import dataclass
import warnings

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning, Tag

# (attribute, value) pairs tried in order after the <title> element.
TITLE_META_SIGNALS = (("property", "og:title"), ("name", "twitter:title"))
DESCRIPTION_META_SIGNALS = (
    ("name", "description"),
    ("property", "og:description"),
    ("name", "twitter:description"),
)


@dataclass(frozen=True, slots=True)
class PageMetadata:
    title: str | None = None
    description: str | None = None


EMPTY_METADATA = PageMetadata()


def parse_page_metadata(html: str) -> PageMetadata:
    """Pull a display title and description out of raw page markup.

    Never raises for malformed markup; a missing signal yields ``None``.
    """
    if not html:
        return EMPTY_METADATA

    with warnings.catch_warnings():
        # Short pages that look like a URL or path trip a bs4 warning.
        warnings.simplefilter("ignore", MarkupResemblesLocatorWarning)
        soup = BeautifulSoup(html, "html.parser")
    title = None
    if soup.title is not None:
        title = _clean_text(soup.title.get_text())
    if title is None:
        title = _first_meta_content(soup, TITLE_META_SIGNALS)

    description = _first_meta_content(soup, DESCRIPTION_META_SIGNALS)
    return PageMetadata(title=title, description=description)


def _first_meta_content(soup: BeautifulSoup, signals: tuple[tuple[str, str], ...]) -> str | None:
    for attribute, expected in signals:
        for tag in soup.find_all("meta", attrs={attribute: True}):
            if not isinstance(tag, Tag):
                continue
            value = tag.get(attribute)
            if not isinstance(value, str) or value.strip().lower() != expected:
                continue
            content = tag.get("content")
            cleaned = _clean_text(content if isinstance(content, str) else None)
            if cleaned:
                return cleaned
    return None


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.replace("\xa0", " ").strip()
    return stripped or None
