"""Bibliography files that cache records fetched from Zotero.

The format of a bibliography file is determined by its filename suffix.
CSL JSON and CSL YAML files can be read and written; BibTeX and BibLaTeX
files can only be read, and only the citation keys they define are used.

``update`` adds records for citation keys that are not yet in the file
and leaves every record that is already there untouched. Writes are
atomic (temp file + ``os.replace``).
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Callable, Iterable, Mapping, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

import bibtexparser
import yaml
from bibtexparser.bparser import BibTexParser

from citekey_resolver.connectors import Connector
from citekey_resolver.errors import (
    BibliographyIOError,
    BibliographyNotFoundError,
    BibliographyParseError,
    InvalidFieldNameError,
    LookupFailure,
    NoSuffixError,
    ResponseError,
    ServiceConnectionError,
    UnsupportedFormatError,
)
from citekey_resolver.markup import markdownify_record
from citekey_resolver.records import Record, normalize_record

# ------------- Constants -------------

# Preferred order of fields in YAML files; unlisted fields follow in
# lexical order. See appendix IV of the CSL specification.
CSL_KEY_ORDER = (
    "id",
    "type",
    "author",
    "recipient",
    "status",
    "issued",
    "title",
    "title-short",
    "short-title",
    "original-title",
    "translator",
    "editor",
    "container-title",
    "container-title-short",
    "collection-editor",
    "collection-title",
    "collection-title-short",
    "edition",
    "volume",
    "issue",
    "page-first",
    "page",
    "publisher",
    "publisher-place",
    "original-publisher",
    "original-publisher-place",
    "doi",
    "pmcid",
    "pmid",
    "url",
    "accessed",
    "isbn",
    "issn",
    "call-number",
    "language",
    "abstract",
)

_KEY_RANK = {k: i for i, k in enumerate(CSL_KEY_ORDER)}


def csl_key_sort_key(key: str) -> tuple[int, str]:
    """Sort key that puts listed CSL fields first, in their listed order."""
    return (_KEY_RANK.get(key, len(_KEY_RANK)), key)


# ------------- Codecs -------------


@dataclass(frozen=True)
class Codec:
    """Functions to decode and encode a bibliography format.

    Attributes:
        decode: Takes the file content, returns a list of records.
        encode: Takes a list of records, returns the file content. None
            if the format is read-only.
        converts_markup: Whether rich-text fields must be converted to
            Markdown before encoding.
    """

    decode: Callable[[str], list[Record]] | None
    encode: Callable[[Sequence[Record]], str] | None = None
    converts_markup: bool = False


def json_decode(text: str) -> list[Record]:
    data = json.loads(text)
    if not isinstance(data, list):
        raise ValueError("expected a list of items")
    return data


def json_encode(records: Sequence[Record]) -> str:
    return json.dumps(list(records), indent=2, ensure_ascii=False)


def yaml_decode(text: str) -> list[Record]:
    data = yaml.safe_load(text)
    if data is None:
        return []
    if not isinstance(data, dict):
        raise ValueError("expected a mapping")
    refs = data.get("references")
    if refs is None:
        return []
    if not isinstance(refs, list):
        raise ValueError('"references" is not a list')
    return refs


class QuotedStr(str):
    """A string that is written as a double-quoted YAML scalar."""


class CslYamlDumper(yaml.SafeDumper):
    pass


def _represent_quoted(dumper: yaml.SafeDumper, data: QuotedStr) -> yaml.Node:
    return dumper.represent_scalar("tag:yaml.org,2002:str", str(data), style='"')


CslYamlDumper.add_representer(QuotedStr, _represent_quoted)


def _yaml_ready(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _yaml_ready(value[k]) for k in sorted(value, key=csl_key_sort_key)}
    if isinstance(value, (list, tuple)):
        return [_yaml_ready(v) for v in value]
    if isinstance(value, str):
        return QuotedStr(value)
    return value


def yaml_encode(records: Sequence[Record]) -> str:
    """Encode records as CSL YAML.

    Records are sorted by ID, fields in ``CSL_KEY_ORDER``, and strings are
    double-quoted, so that control characters are escaped.
    """
    items = sorted(records, key=lambda r: str(r.get("id", "")))
    return yaml.dump(
        {"references": _yaml_ready(items)},
        Dumper=CslYamlDumper,
        sort_keys=False,
        allow_unicode=True,
        default_flow_style=False,
        explicit_start=True,
        explicit_end=True,
        width=float("inf"),
    )


def bibtex_decode(text: str) -> list[Record]:
    """Return the citation keys defined in a BibTeX/BibLaTeX file as records."""
    parser = BibTexParser(common_strings=True, ignore_nonstandard_types=False)
    parser.customization = None
    db = bibtexparser.loads(text, parser=parser)
    return [{"id": entry["ID"]} for entry in db.entries if entry.get("ID")]


CODECS: dict[str, Codec] = {
    "json": Codec(json_decode, json_encode),
    "yaml": Codec(yaml_decode, yaml_encode, converts_markup=True),
    "yml": Codec(yaml_decode, yaml_encode, converts_markup=True),
    "bib": Codec(bibtex_decode),
    "bibtex": Codec(bibtex_decode),
}


def register_codec(suffix: str, codec: Codec) -> None:
    """Register a codec for a filename suffix (case-insensitive)."""
    CODECS[suffix.lower()] = codec


def get_codec(path: str) -> Codec:
    """Return the codec for the suffix of ``path``.

    Raises:
        NoSuffixError: If the filename has no suffix.
        UnsupportedFormatError: If no codec is registered for the suffix.
    """
    _, ext = os.path.splitext(path)
    suffix = ext[1:]
    if not suffix:
        raise NoSuffixError(path)
    codec = CODECS.get(suffix.lower())
    if codec is None:
        raise UnsupportedFormatError(path)
    return codec


# ------------- Reading & writing -------------


def read(path: str) -> list[Record]:
    """Read the records from a bibliography file.

    Raises:
        NoSuffixError, UnsupportedFormatError: See ``get_codec``.
        BibliographyNotFoundError: If the file does not exist.
        BibliographyIOError: If the file cannot be read.
        BibliographyParseError: If the file cannot be parsed.
    """
    codec = get_codec(path)
    if codec.decode is None:
        raise UnsupportedFormatError(path, "cannot parse format")
    try:
        with open(path, encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError as e:
        raise BibliographyNotFoundError(path, "no such file", e.errno) from e
    except UnicodeDecodeError as e:
        raise BibliographyParseError(path, f"not UTF-8: {e}") from e
    except OSError as e:
        raise BibliographyIOError(path, e.strerror or str(e), e.errno) from e
    try:
        items = codec.decode(text)
    except Exception as e:
        raise BibliographyParseError(path, f"parse error: {e}") from e
    records = []
    for item in items:
        if not isinstance(item, Mapping):
            raise BibliographyParseError(path, "item is not a mapping")
        try:
            records.append(normalize_record(item))
        except InvalidFieldNameError as e:
            raise BibliographyParseError(path, str(e)) from e
    return records


def write(path: str, records: Sequence[Record]) -> None:
    """Write records to a bibliography file, replacing it atomically.

    If ``records`` is empty, only checks that the format can be written
    and does not touch the filesystem.

    Raises:
        NoSuffixError, UnsupportedFormatError: See ``get_codec``.
        BibliographyIOError: If the file cannot be written.
    """
    codec = get_codec(path)
    if codec.encode is None:
        raise UnsupportedFormatError(path, "cannot write format")
    if not records:
        return
    try:
        text = codec.encode(records)
    except (TypeError, ValueError, yaml.YAMLError) as e:
        raise BibliographyIOError(path, f"serialisation error: {e}") from e
    if not text.endswith("\n"):
        text += "\n"
    directory = os.path.dirname(os.path.abspath(path))
    try:
        tmp = tempfile.NamedTemporaryFile(
            "w", delete=False, encoding="utf-8", dir=directory, prefix=".tmp_biblio_", suffix=".tmp"
        )
    except OSError as e:
        raise BibliographyIOError(path, e.strerror or str(e), e.errno) from e
    try:
        try:
            tmp.write(text)
            tmp.flush()
            os.fsync(tmp.fileno())
        finally:
            tmp.close()
        os.replace(tmp.name, path)
    except OSError as e:
        try:
            os.unlink(tmp.name)
        except FileNotFoundError:
            pass
        raise BibliographyIOError(path, e.strerror or str(e), e.errno) from e


def record_ids(records: Iterable[Mapping[str, Any]], path: str = "") -> set[str]:
    """Return the IDs of the given records.

    Raises:
        BibliographyParseError: If an ID is neither a string nor missing.
    """
    ids = set()
    for record in records:
        ident = record.get("id")
        if ident is None:
            continue
        if not isinstance(ident, str):
            raise BibliographyParseError(path, f"cannot parse ID of item: {ident!r}")
        ids.add(ident)
    return ids


# ------------- Updating -------------


@dataclass
class CacheUpdateResult:
    """Result of adding citation keys to a bibliography file.

    ``records`` holds every record in the file after the update, so the
    file need not be read again.
    """

    path: str
    records: list[Record] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    written: bool = False


def update(
    connector: Connector,
    path: str,
    keys: Sequence[str],
    logger: logging.Logger | None = None,
    max_workers: int = 1,
) -> CacheUpdateResult:
    """Add the records for ``keys`` to a bibliography file.

    Keys that are already in the file are skipped. Keys that cannot be
    resolved are logged and reported in the result; the other keys are
    still added. The file is rewritten at most once, and not at all if
    no record was added.

    Args:
        connector: Connector to look keys up with.
        path: The bibliography file; created if it does not exist.
        keys: Citation keys, in the order in which they should be added.
        logger: Logger for per-key failures.
        max_workers: Number of keys to look up concurrently.

    Raises:
        BibliographyError: If the file cannot be read or written.
        ServiceConnectionError: If the service cannot be reached. Nothing
            is written in that case.
    """
    logger = logger or logging.getLogger(__name__)
    result = CacheUpdateResult(path=path)
    if not keys:
        return result

    codec = get_codec(path)
    write(path, [])

    try:
        records = read(path)
    except BibliographyNotFoundError:
        records = []
    ids = record_ids(records, path)
    result.records = records

    todo = []
    for key in keys:
        if key not in ids and key not in todo:
            todo.append(key)

    for key, record, error in _resolve_all(connector, todo, max_workers):
        if error is not None:
            logger.warning("%s", error)
            result.failures[key] = getattr(error, "reason", None) or str(error)
            continue
        if codec.converts_markup:
            record = markdownify_record(record)
        records.append(record)
        result.added.append(key)

    if not result.added:
        return result
    write(path, records)
    result.written = True
    return result


def _resolve_all(
    connector: Connector,
    keys: Sequence[str],
    max_workers: int,
) -> list[tuple[str, Record | None, Exception | None]]:
    """Resolve keys, in order, collecting per-key failures.

    A connection error cancels all outstanding lookups and is re-raised.
    The connector is usable again once this returns or raises.
    """
    if max_workers <= 1 or len(keys) <= 1:
        results = []
        for key in keys:
            try:
                results.append((key, connector.resolve(key), None))
            except (LookupFailure, ResponseError) as e:
                results.append((key, None, e))
        return results

    def work(key: str) -> Record:
        return connector.resolve(key)

    try:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures: list[Future] = [pool.submit(work, key) for key in keys]
            results = []
            try:
                for key, future in zip(keys, futures):
                    try:
                        results.append((key, future.result(), None))
                    except (LookupFailure, ResponseError) as e:
                        results.append((key, None, e))
            except ServiceConnectionError:
                connector.cancel()
                for future in futures:
                    future.cancel()
                raise
    finally:
        # The pool has joined its workers, so no lookup can still see the flag.
        connector.reset()
    return results