"""Convert Zotero's rich-text markup to Pandoc Markdown.

Zotero marks up titles with a small subset of HTML (``<i>``, ``<b>``,
``<sup>``, ``<sub>``, small-caps and "nocase" spans). Bibliography files
in YAML are read as Markdown, so prose fields are converted before they
are written there; JSON files are read as CSL JSON and keep the markup.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from html.parser import HTMLParser
from typing import Any

FORMATTABLE_FIELDS = frozenset(
    {
        "abstract",
        "collection-title",
        "collection-title-short",
        "container-title",
        "container-title-short",
        "original-publisher",
        "original-publisher-place",
        "original-title",
        "publisher",
        "publisher-place",
        "reviewed-title",
        "title",
        "title-short",
        "short-title",
    }
)

_MD_SPECIAL_RE = re.compile(r"([\\*_^~\[\]`])")

_TAGS = {
    "i": ("*", "*"),
    "em": ("*", "*"),
    "b": ("**", "**"),
    "strong": ("**", "**"),
    "sup": ("^", "^"),
    "sub": ("~", "~"),
}


def escape_markdown(text: str) -> str:
    """Backslash-escape characters Pandoc would read as Markdown."""
    return _MD_SPECIAL_RE.sub(r"\\\1", text)


class _Converter(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.out: list[str] = []
        self.stack: list[str] = []

    def handle_starttag(self, tag: str, attrs: list[tuple[str, str | None]]) -> None:
        if tag in _TAGS:
            opening, closing = _TAGS[tag]
        elif tag == "span":
            attributes = dict(attrs)
            style = (attributes.get("style") or "").replace(" ", "")
            if "font-variant:small-caps" in style:
                opening, closing = "[", "]{.smallcaps}"
            elif attributes.get("class") == "nocase":
                opening, closing = "[", "]{.nocase}"
            else:
                opening, closing = "", ""
        else:
            opening, closing = "", ""
        self.out.append(opening)
        self.stack.append(closing)

    def handle_endtag(self, tag: str) -> None:
        if self.stack:
            self.out.append(self.stack.pop())

    def handle_data(self, data: str) -> None:
        self.out.append(escape_markdown(data))

    def result(self) -> str:
        self.close()
        while self.stack:
            self.out.append(self.stack.pop())
        return "".join(self.out)


def html_to_markdown(text: str) -> str:
    """Convert Zotero pseudo-HTML to Pandoc Markdown.

    >>> html_to_markdown("On <i>Being</i> and <sup>2</sup>")
    'On *Being* and ^2^'
    """
    conv = _Converter()
    conv.feed(text)
    return conv.result()


def markdownify_record(record: Mapping[str, Any]) -> dict[str, Any]:
    """Convert the prose fields of a record to Markdown."""
    ret = dict(record)
    for field in FORMATTABLE_FIELDS:
        value = ret.get(field)
        if isinstance(value, str):
            ret[field] = html_to_markdown(value)
    return ret
