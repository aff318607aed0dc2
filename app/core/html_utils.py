from __future__ import annotations

from dataclasses import dataclass
from html.parser import HTMLParser


@dataclass(frozen=True)
class PageMetaTags:
    """Raw metadata candidates found in a document, before any fallback is applied."""

    og_title: str | None = None
    og_description: str | None = None
    og_image: str | None = None
    twitter_image: str | None = None
    meta_description: str | None = None
    title: str | None = None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    text = " ".join(value.split())
    return text or None


class _MetaTagParser(HTMLParser):
    """Collect ``<meta>`` tags and the first ``<title>`` text.

    Only the first occurrence of each tag counts. Parsing stops caring about
    the body once ``</head>`` is seen.
    """

    _TRACKED = {
        "og:title": "og_title",
        "og:description": "og_description",
        "og:image": "og_image",
        "og:image:url": "og_image",
        "twitter:image": "twitter_image",
        "twitter:image:src": "twitter_image",
        "description": "meta_description",
    }

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.found: dict[str, str] = {}
        self._in_title = False
        self._title_parts: list[str] = []
        self._title_done = False
        self._head_closed = False

    def handle_starttag(self, tag: str, attrs) -> None:
        if self._head_closed:
            return
        if tag == "meta":
            attr_map = {name.lower(): (value or "") for name, value in attrs if name}
            key = (attr_map.get("property") or attr_map.get("name") or "").strip().lower()
            field_name = self._TRACKED.get(key)
            content = attr_map.get("content")
            if field_name and content and field_name not in self.found:
                self.found[field_name] = content
        elif tag == "title" and not self._title_done:
            self._in_title = True

    def handle_endtag(self, tag: str) -> None:
        if tag == "title" and self._in_title:
            self._in_title = False
            self._title_done = True
        elif tag == "head":
            self._head_closed = True

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self._title_parts.append(data)

    @property
    def title(self) -> str | None:
        return "".join(self._title_parts) if self._title_parts else None


def parse_meta_tags(html: str) -> PageMetaTags:
    """Scan an HTML document for Open Graph, Twitter and standard metadata tags.

    Entities are decoded and whitespace collapsed. Malformed markup is
    tolerated the same way :class:`html.parser.HTMLParser` tolerates it.
    """
    parser = _MetaTagParser()
    parser.feed(html)
    parser.close()
    found = parser.found
    return PageMetaTags(
        og_title=_clean(found.get("og_title")),
        og_description=_clean(found.get("og_description")),
        og_image=_clean(found.get("og_image")),
        twitter_image=_clean(found.get("twitter_image")),
        meta_description=_clean(found.get("meta_description")),
        title=_clean(parser.title),
    )


__all__ = ["PageMetaTags", "parse_meta_tags"]
