"""CSL records: field-name normalization and note-encoded extras.

A record is a plain ``dict`` mapping normalized CSL variable names to
values. Zotero stores variables that have no Zotero field in the item's
"Extra" field, which is exported as the CSL ``note``, e.g.::

    original-date: 1970-01-01
    {:original-author: Doe || John}

``apply_extras`` lifts these into proper CSL variables.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator, Mapping
from typing import Any

from citekey_resolver.errors import DateParseError, InvalidFieldNameError

Record = dict[str, Any]

# ------------- Constants & Regex -------------

CSL_DATE_FIELDS = frozenset(
    {
        "accessed",
        "available-date",
        "event-date",
        "issued",
        "original-date",
        "submitted",
    }
)

CSL_NAME_FIELDS = frozenset(
    {
        "author",
        "chair",
        "collection-editor",
        "compiler",
        "composer",
        "container-author",
        "contributor",
        "curator",
        "director",
        "editor",
        "editorial-director",
        "executive-producer",
        "guest",
        "host",
        "illustrator",
        "interviewer",
        "narrator",
        "organizer",
        "original-author",
        "performer",
        "producer",
        "recipient",
        "reviewed-author",
        "script-writer",
        "series-creator",
        "translator",
    }
)

_ILLEGAL_NAME_CHAR_RE = re.compile(r"[^\w\s-]")
_SEPARATOR_RE = re.compile(r"[\s_-]+")

_EXTRA_NAME = r"[^\W\d_][\w -]*?"
_EXTRA_LINE_RE = re.compile(rf"\s*(?P<name>{_EXTRA_NAME})\s*:\s*(?P<value>.*?)\s*")
_EXTRA_GROUP_RE = re.compile(rf"\s*\{{:(?P<name>{_EXTRA_NAME})\s*:\s*(?P<value>[^}}]*?)\s*\}}")

_CITEKEY_RE = re.compile(r"\s*(?i:citation key|citekey)\s*:\s*(?P<key>\S+)\s*")

_YEAR_RE = re.compile(r"-?\d{1,4}")
_MONTH_DAY_RE = re.compile(r"\d{1,2}")


# ------------- Field names -------------


def normalize_field_name(name: str) -> str:
    """Normalize a CSL variable name.

    "Original Date", "ORIGINAL-DATE", and "original_date" all become
    "original-date".

    Raises:
        InvalidFieldNameError: If the name is empty or contains characters
            other than letters, digits, spaces, hyphens, and underscores.
    """
    if not isinstance(name, str):
        raise InvalidFieldNameError(str(name), f"{name!r}: field name is not a string.")
    stripped = name.strip()
    if not stripped:
        raise InvalidFieldNameError(name, "Field name is empty.")
    if _ILLEGAL_NAME_CHAR_RE.search(stripped):
        raise InvalidFieldNameError(name)
    normalized = _SEPARATOR_RE.sub("-", stripped.lower()).strip("-")
    if not normalized:
        raise InvalidFieldNameError(name)
    return normalized


def normalize_record(record: Mapping[str, Any]) -> Record:
    """Return a copy of ``record`` with every field name normalized.

    Applies to nested mappings and to mappings inside lists, so that
    ``{"Author": [{"Family": "Doe"}]}`` becomes
    ``{"author": [{"family": "Doe"}]}``. Idempotent.
    """
    return _normalize_value(record)


def _normalize_value(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {normalize_field_name(k): _normalize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize_value(v) for v in value]
    return value


def _num_to_str(value: Any) -> Any:
    # bool is an int subclass; CSL has no booleans worth converting.
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return str(int(value))
    if isinstance(value, Mapping):
        return {k: _num_to_str(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_num_to_str(v) for v in value]
    return value


def csl_item_from_json(data: Mapping[str, Any]) -> Record:
    """Convert a decoded CSL JSON item into a normalized record.

    Numbers become strings (date parts, volumes, issue numbers), since
    bibliography files store them as text.
    """
    return normalize_record(_num_to_str(data))


def make_record(key: str, data: Mapping[str, Any], logger: logging.Logger | None = None) -> Record:
    """Build the record for ``key`` from a CSL JSON item.

    The record's ``id`` is set to the citation key it was looked up with
    and extras in the note are applied.
    """
    record = csl_item_from_json(data)
    record["id"] = key
    return apply_extras(record, logger=logger)


# ------------- Extras -------------


def extract_extras(record: Mapping[str, Any]) -> Iterator[tuple[str, str]]:
    """Yield the ``(field, value)`` pairs encoded in the record's note.

    Each line of the note is either a single ``name: value`` pair or one
    or more ``{:name: value}`` groups. Scanning a line stops at the first
    group that does not match. Returns a new iterator on every call.
    """
    note = record.get("note")
    if not isinstance(note, str) or not note:
        return
    for line in note.splitlines():
        if line.lstrip().startswith("{:"):
            pos = 0
            while pos < len(line):
                match = _EXTRA_GROUP_RE.match(line, pos)
                if not match:
                    break
                field = _field_or_none(match.group("name"))
                if field is None:
                    break
                yield field, match.group("value")
                pos = match.end()
            continue
        match = _EXTRA_LINE_RE.fullmatch(line)
        if match:
            field = _field_or_none(match.group("name"))
            if field is not None:
                yield field, match.group("value")


def _field_or_none(name: str) -> str | None:
    try:
        return normalize_field_name(name)
    except InvalidFieldNameError:
        return None


def citation_keys_from_note(record: Mapping[str, Any]) -> list[str]:
    """Return the values of all ``citation key:`` lines in the note.

    The label is matched case-insensitively and may also be ``citekey``.
    """
    note = record.get("note")
    if not isinstance(note, str):
        return []
    keys = []
    for line in note.splitlines():
        match = _CITEKEY_RE.fullmatch(line)
        if match:
            keys.append(match.group("key"))
    return keys


def is_date_field(field: str) -> bool:
    return field in CSL_DATE_FIELDS or field.endswith("-date")


def is_name_field(field: str) -> bool:
    return field in CSL_NAME_FIELDS


def parse_date_range(value: str) -> dict[str, list[list[str]]]:
    """Parse one date or a range of two dates in CSL's "date-parts" form.

    Dates are written ``YYYY``, ``YYYY-MM``, or ``YYYY-MM-DD``; a range is
    two dates separated by ``/``.

    >>> parse_date_range("1970-01-01/1970-02")
    {'date-parts': [['1970', '01', '01'], ['1970', '02']]}

    Raises:
        DateParseError: Naming the malformed date and part.
    """
    value = value.strip()
    dates = value.split("/")
    if len(dates) > 2:
        raise DateParseError(value, "too many dates")
    labels = ("from", "to") if len(dates) == 2 else ("from",)
    parts = []
    for label, date in zip(labels, dates):
        date = date.strip()
        if not date:
            raise DateParseError(value, f"missing {label} date")
        parts.append(_parse_date(value, label, date))
    return {"date-parts": parts}


def _parse_date(value: str, label: str, date: str) -> list[str]:
    # A leading minus marks a year BC and is not a separator.
    negative = date.startswith("-")
    fields = (date[1:] if negative else date).split("-")
    if negative:
        fields[0] = "-" + fields[0]
    if len(fields) > 3:
        raise DateParseError(value, f"{label} date: too many parts")
    year = fields[0]
    if not _YEAR_RE.fullmatch(year):
        raise DateParseError(value, f"{label} date: year is malformed")
    if len(fields) > 1:
        month = fields[1]
        if not _MONTH_DAY_RE.fullmatch(month) or not 1 <= int(month) <= 12:
            raise DateParseError(value, f"{label} date: month is malformed")
    if len(fields) > 2:
        day = fields[2]
        if not _MONTH_DAY_RE.fullmatch(day) or not 1 <= int(day) <= 31:
            raise DateParseError(value, f"{label} date: day is malformed")
    return fields


def parse_name(value: str) -> dict[str, str]:
    """Parse a single name as written in the Extra field.

    ``Doe || John`` and ``Doe, John`` give ``{"family": "Doe",
    "given": "John"}``; anything else is kept as a literal name.
    """
    for sep in ("||", ","):
        if sep in value:
            family, given = (p.strip() for p in value.split(sep, 1))
            name = {}
            if family:
                name["family"] = family
            if given:
                name["given"] = given
            if name:
                return name
    return {"literal": value.strip()}


def apply_extras(record: Mapping[str, Any], logger: logging.Logger | None = None) -> Record:
    """Return a copy of ``record`` with the extras from its note applied.

    Variables the record already has are not overwritten, except that
    names are added to existing name lists. A malformed date only drops
    that one field; the error is logged as a warning.
    """
    logger = logger or logging.getLogger(__name__)
    ret = dict(record)
    ident = record.get("id", "?")
    for field, value in extract_extras(record):
        if is_name_field(field):
            names = ret.get(field)
            if not isinstance(names, list):
                if names is not None:
                    continue
                names = []
            ret[field] = [*names, parse_name(value)]
        elif field in ret:
            continue
        elif is_date_field(field):
            try:
                ret[field] = parse_date_range(value)
            except DateParseError as e:
                logger.warning("%s: %s: %s", ident, field, e)
        else:
            ret[field] = value
    return ret
