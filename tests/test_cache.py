"""Tests for bibliography files and cache updates."""

from __future__ import annotations

import json
import logging
import os

import pytest

from citekey_resolver import cache
from citekey_resolver.errors import (
    AmbiguousError,
    BibliographyIOError,
    BibliographyNotFoundError,
    BibliographyParseError,
    NoSuffixError,
    ServiceConnectionError,
    UnsupportedFormatError,
)


def _write_json(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")


class TestGetCodec:
    def test_no_suffix(self):
        with pytest.raises(NoSuffixError):
            cache.get_codec("references")

    def test_unsupported(self):
        with pytest.raises(UnsupportedFormatError):
            cache.get_codec("references.txt")

    @pytest.mark.parametrize("name", ["refs.json", "refs.JSON", "refs.yaml", "refs.Yml", "refs.bib", "refs.bibtex"])
    def test_known_suffixes(self, name):
        assert cache.get_codec(name).decode is not None

    def test_register_codec(self, monkeypatch):
        monkeypatch.setattr(cache, "CODECS", dict(cache.CODECS))
        cache.register_codec("CSLJSON", cache.CODECS["json"])
        assert cache.get_codec("refs.csljson") is cache.CODECS["json"]


class TestRead:
    """Tests for reading bibliography files."""

    def test_missing_file(self, tmp_path):
        with pytest.raises(BibliographyNotFoundError) as exc_info:
            cache.read(str(tmp_path / "missing.json"))
        assert exc_info.value.errno is not None

    def test_json(self, tmp_path):
        path = tmp_path / "refs.json"
        _write_json(path, [{"ID": "a", "Title Short": "T", "Author": [{"Family": "Doe"}]}])
        assert cache.read(str(path)) == [{"id": "a", "title-short": "T", "author": [{"family": "Doe"}]}]

    def test_json_not_a_list(self, tmp_path):
        path = tmp_path / "refs.json"
        _write_json(path, {"id": "a"})
        with pytest.raises(BibliographyParseError):
            cache.read(str(path))

    def test_json_syntax_error(self, tmp_path):
        path = tmp_path / "refs.json"
        path.write_text("[{", encoding="utf-8")
        with pytest.raises(BibliographyParseError, match="parse error"):
            cache.read(str(path))

    def test_item_not_a_mapping(self, tmp_path):
        path = tmp_path / "refs.json"
        _write_json(path, ["a"])
        with pytest.raises(BibliographyParseError):
            cache.read(str(path))

    def test_invalid_field_name(self, tmp_path):
        path = tmp_path / "refs.json"
        _write_json(path, [{"id": "a", "bad.name": "x"}])
        with pytest.raises(BibliographyParseError):
            cache.read(str(path))

    def test_yaml(self, tmp_path):
        path = tmp_path / "refs.yaml"
        path.write_text("---\nreferences:\n- id: a\n  Title: T\n...\n", encoding="utf-8")
        assert cache.read(str(path)) == [{"id": "a", "title": "T"}]

    @pytest.mark.parametrize("content", ["", "---\n...\n", "title: No references\n"])
    def test_yaml_without_references(self, tmp_path, content):
        path = tmp_path / "refs.yaml"
        path.write_text(content, encoding="utf-8")
        assert cache.read(str(path)) == []

    def test_yaml_references_not_a_list(self, tmp_path):
        path = tmp_path / "refs.yaml"
        path.write_text("references: a\n", encoding="utf-8")
        with pytest.raises(BibliographyParseError):
            cache.read(str(path))

    def test_bibtex(self, tmp_path):
        path = tmp_path / "refs.bib"
        path.write_text(
            "@article{doe2020Title,\n  title = {Title},\n  journal = jan,\n}\n\n@online{roe2019Web,\n  url = {x}\n}\n",
            encoding="utf-8",
        )
        assert cache.record_ids(cache.read(str(path))) == {"doe2020Title", "roe2019Web"}

    def test_not_utf8(self, tmp_path):
        path = tmp_path / "refs.json"
        path.write_bytes(b'[{"id": "\xff"}]')
        with pytest.raises(BibliographyParseError):
            cache.read(str(path))


class TestWrite:
    """Tests for writing bibliography files."""

    def test_empty_records_touch_nothing(self, tmp_path):
        path = tmp_path / "refs.json"
        cache.write(str(path), [])
        assert not path.exists()

    def test_read_only_format(self, tmp_path):
        with pytest.raises(UnsupportedFormatError, match="cannot write format"):
            cache.write(str(tmp_path / "refs.bib"), [])

    def test_json_round_trip(self, tmp_path):
        path = str(tmp_path / "refs.json")
        records = [{"id": "b", "title": "Über <i>T</i>"}, {"id": "a", "issued": {"date-parts": [["2020", "1"]]}}]
        cache.write(path, records)
        assert cache.read(path) == records

    def test_yaml_round_trip(self, tmp_path):
        path = str(tmp_path / "refs.yaml")
        records = [
            {"id": "b", "title": "Tab\there: colon", "author": [{"family": "Doe", "given": "J."}]},
            {"id": "a", "issued": {"date-parts": [["2020", "01"]]}, "volume": "3"},
        ]
        cache.write(path, records)
        assert cache.read(path) == sorted(records, key=lambda r: r["id"])

    def test_yaml_layout(self, tmp_path):
        path = tmp_path / "refs.yaml"
        cache.write(str(path), [{"title": "T", "zzz": "z", "type": "book", "id": "a", "author": [{"family": "D"}]}])
        text = path.read_text(encoding="utf-8")
        assert text.startswith("---\nreferences:\n")
        assert text.endswith("...\n")
        positions = [text.index(f"{k}:") for k in ("id", "type", "author", "title", "zzz")]
        assert positions == sorted(positions)
        assert '"T"' in text

    def test_trailing_newline(self, tmp_path):
        path = tmp_path / "refs.json"
        cache.write(str(path), [{"id": "a"}])
        assert path.read_text(encoding="utf-8").endswith("]\n")

    def test_no_temp_files_left(self, tmp_path):
        cache.write(str(tmp_path / "refs.json"), [{"id": "a"}])
        assert os.listdir(tmp_path) == ["refs.json"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(BibliographyIOError):
            cache.write(str(tmp_path / "nodir" / "refs.json"), [{"id": "a"}])

    def test_failed_replace_removes_temp_file(self, tmp_path, monkeypatch):
        path = tmp_path / "refs.json"
        _write_json(path, [{"id": "old"}])

        def fail(src, dst):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(cache.os, "replace", fail)
        with pytest.raises(BibliographyIOError) as exc_info:
            cache.write(str(path), [{"id": "new"}])
        assert exc_info.value.errno == 13
        assert os.listdir(tmp_path) == ["refs.json"]
        assert json.loads(path.read_text(encoding="utf-8")) == [{"id": "old"}]


class TestRecordIds:
    def test_ids(self):
        assert cache.record_ids([{"id": "a"}, {"id": "b"}, {"title": "no id"}]) == {"a", "b"}

    def test_non_string_id(self):
        with pytest.raises(BibliographyParseError):
            cache.record_ids([{"id": 3}], "refs.json")


class TestUpdate:
    """Tests for adding records to a bibliography file."""

    def test_adds_only_missing_keys(self, tmp_path, fake_connector):
        path = tmp_path / "refs.json"
        _write_json(path, [{"id": "a"}])
        connector = fake_connector({"a": {"title": "A"}, "b": {"title": "B"}})

        result = cache.update(connector, str(path), ["a", "b"])

        assert connector.calls == ["b"]
        assert result.added == ["b"]
        assert result.written
        assert json.loads(path.read_text(encoding="utf-8")) == [{"id": "a"}, {"id": "b", "title": "B"}]
        assert result.records == [{"id": "a"}, {"id": "b", "title": "B"}]

    def test_second_update_leaves_file_untouched(self, tmp_path, fake_connector):
        path = tmp_path / "refs.yaml"
        connector = fake_connector({"a": {"title": "<i>A</i>"}, "b": {"title": "B"}})
        cache.update(connector, str(path), ["b", "a"])
        before = path.read_bytes()
        mtime = path.stat().st_mtime_ns

        result = cache.update(connector, str(path), ["a", "b"])

        assert not result.written
        assert result.added == []
        assert path.read_bytes() == before
        assert path.stat().st_mtime_ns == mtime
        assert connector.calls == ["b", "a"]

    def test_keys_are_deduplicated(self, tmp_path, fake_connector):
        path = tmp_path / "refs.json"
        connector = fake_connector({"a": {}})
        result = cache.update(connector, str(path), ["a", "a"])
        assert connector.calls == ["a"]
        assert [r["id"] for r in cache.read(str(path))] == ["a"]
        assert result.added == ["a"]

    def test_failures_reported_and_others_added(self, tmp_path, fake_connector, caplog):
        path = tmp_path / "refs.json"
        connector = fake_connector({"a": {}, "c": AmbiguousError("c", "multiple-matches")})

        with caplog.at_level(logging.WARNING):
            result = cache.update(connector, str(path), ["a", "b", "c"], logger=logging.getLogger("test"))

        assert result.added == ["a"]
        assert result.failures == {
            "b": "not found",
            "c": "citation key assigned to more than one item",
        }
        assert "b: not found" in caplog.text
        assert [r["id"] for r in cache.read(str(path))] == ["a"]

    def test_nothing_found_creates_no_file(self, tmp_path, fake_connector):
        path = tmp_path / "refs.json"
        result = cache.update(fake_connector(), str(path), ["a"])
        assert not result.written
        assert not path.exists()

    def test_connection_error_writes_nothing(self, tmp_path, fake_connector):
        path = tmp_path / "refs.json"
        _write_json(path, [{"id": "x"}])
        before = path.read_bytes()
        connector = fake_connector({"a": {}, "b": ServiceConnectionError("http://localhost", "refused")})

        with pytest.raises(ServiceConnectionError):
            cache.update(connector, str(path), ["a", "b", "c"])

        assert path.read_bytes() == before
        assert connector.calls == ["a", "b"]

    def test_concurrent_lookups_keep_key_order(self, tmp_path, fake_connector):
        path = tmp_path / "refs.json"
        keys = [f"k{i}" for i in range(10)]
        connector = fake_connector({k: {} for k in keys})
        result = cache.update(connector, str(path), keys, max_workers=4)
        assert result.added == keys
        assert [r["id"] for r in cache.read(str(path))] == keys

    def test_concurrent_connection_error_cancels(self, tmp_path, fake_connector):
        path = tmp_path / "refs.json"
        results = {f"k{i}": {} for i in range(5)}
        results["k0"] = ServiceConnectionError("http://localhost", "refused")
        connector = fake_connector(results)

        with pytest.raises(ServiceConnectionError):
            cache.update(connector, str(path), list(results), max_workers=3)

        assert connector.cancel_calls == 1
        assert not path.exists()

    def test_connector_usable_after_cancelled_update(self, tmp_path, fake_connector):
        path = tmp_path / "refs.json"
        results = {f"k{i}": {} for i in range(5)}
        results["k1"] = ServiceConnectionError("http://localhost", "refused")
        connector = fake_connector(results)
        with pytest.raises(ServiceConnectionError):
            cache.update(connector, str(path), list(results), max_workers=2)
        assert not connector.cancelled

        results["k1"] = {}
        result = cache.update(connector, str(path), list(results), max_workers=2)

        assert result.added == list(results)
        assert result.failures == {}

    def test_yaml_converts_markup(self, tmp_path, fake_connector):
        path = tmp_path / "refs.yaml"
        cache.update(fake_connector({"a": {"title": "On <i>Being</i>"}}), str(path), ["a"])
        assert cache.read(str(path))[0]["title"] == "On *Being*"

    def test_json_keeps_markup(self, tmp_path, fake_connector):
        path = tmp_path / "refs.json"
        cache.update(fake_connector({"a": {"title": "On <i>Being</i>"}}), str(path), ["a"])
        assert cache.read(str(path))[0]["title"] == "On <i>Being</i>"

    def test_unwritable_format_checked_first(self, tmp_path, fake_connector):
        connector = fake_connector({"a": {}})
        with pytest.raises(UnsupportedFormatError):
            cache.update(connector, str(tmp_path / "refs.bib"), ["a"])
        with pytest.raises(NoSuffixError):
            cache.update(connector, str(tmp_path / "refs"), ["a"])
        assert connector.calls == []

    def test_corrupt_file_is_not_overwritten(self, tmp_path, fake_connector):
        path = tmp_path / "refs.json"
        path.write_text("not json", encoding="utf-8")
        connector = fake_connector({"a": {}})
        with pytest.raises(BibliographyParseError):
            cache.update(connector, str(path), ["a"])
        assert path.read_text(encoding="utf-8") == "not json"
        assert connector.calls == []

    def test_no_keys(self, tmp_path, fake_connector):
        result = cache.update(fake_connector(), str(tmp_path / "refs"), [])
        assert result.added == []
        assert not result.written
