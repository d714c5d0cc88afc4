"""Shared fixtures for citekey_resolver tests."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from citekey_resolver import Connector, HttpClient, NotFoundError, ResolutionCancelled

ZOTXT_HEADERS = {"Content-Type": "text/plain; charset=utf-8"}
CSL_JSON_HEADERS = {"Content-Type": "application/vnd.citationstyles.csl+json"}
JSON_HEADERS = {"Content-Type": "application/json"}


@pytest.fixture
def make_item():
    """Factory fixture for creating CSL JSON items as Zotero sends them."""

    def _make_item(**kwargs) -> dict[str, Any]:
        item = {
            "id": kwargs.pop("id", "1234567/ABCD1234"),
            "type": "article-journal",
            "title": "Example Title",
            "author": [{"family": "Doe", "given": "Jane"}],
            "issued": {"date-parts": [[2020]]},
        }
        item.update(kwargs)
        return item

    return _make_item


@pytest.fixture
def logger():
    """Create a test logger."""
    return logging.getLogger("test")


def make_http(handler: Callable[[httpx.Request], httpx.Response]) -> HttpClient:
    """Create an HttpClient whose requests are answered by ``handler``."""
    return HttpClient(timeout=5.0, transport=httpx.MockTransport(handler), max_retries=0)


def zotxt_response(items: Any, headers: dict[str, str] | None = None, status: int = 200) -> httpx.Response:
    content = items if isinstance(items, (str, bytes)) else json.dumps(items)
    return httpx.Response(status, content=content, headers=headers or ZOTXT_HEADERS)


def csl_json_response(items: list[dict[str, Any]], status: int = 200) -> httpx.Response:
    return httpx.Response(status, content=json.dumps({"items": items}), headers=CSL_JSON_HEADERS)


def json_response(data: Any) -> httpx.Response:
    return httpx.Response(200, content=json.dumps(data), headers=JSON_HEADERS)


class FakeConnector(Connector):
    """Connector that returns predetermined records.

    ``results`` maps citation keys to records or to exceptions to raise.
    Unknown keys raise NotFoundError.
    """

    name = "fake"

    def __init__(self, results: dict[str, Any] | None = None):
        super().__init__(logging.getLogger("test"))
        self.results = results or {}
        self.calls: list[str] = []
        self.cancel_calls = 0

    def cancel(self):
        self.cancel_calls += 1
        super().cancel()

    def resolve(self, key):
        if self.cancelled:
            raise ResolutionCancelled()
        self.calls.append(key)
        result = self.results.get(key)
        if result is None:
            raise NotFoundError(key)
        if isinstance(result, Exception):
            raise result
        return {"id": key, **result}


@pytest.fixture
def fake_connector():
    """Factory fixture for creating fake connectors."""

    def _create(results: dict[str, Any] | None = None) -> FakeConnector:
        return FakeConnector(results)

    return _create
