"""Citation key types and search terms.

Zotero items can be cited by several kinds of keys:

- ``key``: the Zotero item key, e.g. ``ABCD1234``
- ``betterbibtexkey``: a Better BibTeX citation key, e.g. ``doe2020TwoWords``
- ``easykey``: a zotxt easy citekey, e.g. ``doe:2020two``

The structured types can be turned into search terms for the Zotero Web
API. None of the functions here perform I/O.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Iterable
from dataclasses import dataclass

# ------------- Constants & Regex -------------

ITEM_KEY = "key"
BETTER_BIBTEX_KEY = "betterbibtexkey"
EASY_KEY = "easykey"

KEY_TYPES: tuple[str, ...] = (ITEM_KEY, BETTER_BIBTEX_KEY, EASY_KEY)

# Order in which structured key types are tried when deriving search terms.
SEARCH_KEY_TYPES: tuple[str, ...] = (BETTER_BIBTEX_KEY, EASY_KEY)

ITEM_KEY_RE = re.compile(r"[A-Z0-9]{8}")

_LETTERS = r"[^\W\d_]+"
_STRUCTURED_RE = {
    BETTER_BIBTEX_KEY: re.compile(rf"(?P<author>{_LETTERS})(?P<year>\d{{4}})?(?P<title>[^\W_]*)"),
    EASY_KEY: re.compile(rf"(?P<author>{_LETTERS}):(?P<year>\d{{4}})?(?P<title>[^\W_]*)"),
}

# A run of capitals not followed by a lowercase letter ("HTML" in
# "HTMLParser"), a capitalised word, or a leading non-uppercase run.
_TITLE_WORD_RE = re.compile(r"[A-Z]+(?![a-z])|[A-Z][^A-Z]*|[^A-Z]+")


@dataclass(frozen=True)
class SearchTerms:
    """Search terms derived from a structured citation key."""

    author: str
    year: str | None = None
    title_words: tuple[str, ...] = ()

    def query(self) -> str:
        """Return the terms as a space-separated query string."""
        parts = [self.author]
        if self.year:
            parts.append(self.year)
        parts.extend(self.title_words)
        return " ".join(parts)


# ------------- Classification -------------


def split_title(text: str) -> list[str]:
    """Split a camel-case title fragment into words."""
    return _TITLE_WORD_RE.findall(text)


def terms(key: str, key_type: str) -> SearchTerms | None:
    """Derive search terms from ``key`` read as ``key_type``.

    Returns None if the key does not match the grammar of that key type.
    Item keys never yield search terms.

    >>> terms("doe2020Title", "betterbibtexkey")
    SearchTerms(author='doe', year='2020', title_words=('Title',))
    """
    regex = _STRUCTURED_RE.get(key_type)
    if regex is None:
        return None
    match = regex.fullmatch(key)
    if not match:
        return None
    return SearchTerms(
        author=match.group("author"),
        year=match.group("year"),
        title_words=tuple(split_title(match.group("title"))),
    )


def matches(key: str, key_type: str) -> bool:
    """Check whether ``key`` can be read as ``key_type``."""
    if key_type == ITEM_KEY:
        return ITEM_KEY_RE.fullmatch(key) is not None
    if key_type in _STRUCTURED_RE:
        return _STRUCTURED_RE[key_type].fullmatch(key) is not None
    raise ValueError(f"{key_type}: unknown citation key type")


def candidate_types(key: str, key_types: Iterable[str] = KEY_TYPES) -> set[str]:
    """Return every key type in ``key_types`` that ``key`` qualifies for."""
    return {t for t in key_types if matches(key, t)}


def parse_key_types(value: str | Iterable[str] | None) -> tuple[str, ...]:
    """Validate an allow-list of key types.

    Accepts a comma-separated string or a list. Returns all known key
    types if ``value`` is None or empty.
    """
    if not value:
        return KEY_TYPES
    if isinstance(value, str):
        names = [v.strip() for v in value.split(",")]
    else:
        names = [str(v).strip() for v in value]
    names = [n.lower() for n in names if n]
    unknown = [n for n in names if n not in KEY_TYPES]
    if unknown:
        raise ValueError(f"{', '.join(unknown)}: unknown citation key type(s)")
    ret: list[str] = []
    for name in names:
        if name not in ret:
            ret.append(name)
    return tuple(ret)


class KeyTypeOrder:
    """Thread-safe priority list of key types.

    The key type that resolved the most recent key is moved to the front,
    so that documents using one kind of citation key need a single query
    per key.
    """

    def __init__(self, key_types: Iterable[str] = KEY_TYPES) -> None:
        self._order = list(key_types)
        self._lock = threading.Lock()

    def snapshot(self) -> list[str]:
        with self._lock:
            return list(self._order)

    def promote(self, key_type: str) -> None:
        with self._lock:
            if key_type in self._order and self._order[0] != key_type:
                self._order.remove(key_type)
                self._order.insert(0, key_type)

    def __iter__(self):
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._order)
