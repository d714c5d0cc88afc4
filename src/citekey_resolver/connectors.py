"""Connectors that look up citation keys in Zotero.

Two connectors are provided:

- ``ZotxtConnector`` queries the zotxt add-on of a locally running Zotero
  desktop client, once per citation key type, until one query succeeds.
- ``ZoteroWebConnector`` queries the Zotero Web API. Item keys are looked
  up directly; other citation keys are turned into a title/creator/year
  search, and if that finds several items, the one whose "Extra" field
  assigns it the citation key is picked.

Both return normalized CSL records whose ``id`` is the citation key.
``ConnectorChain`` tries several connectors in order.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence
from typing import Any

import httpx

from citekey_resolver.citekeys import (
    ITEM_KEY,
    SEARCH_KEY_TYPES,
    KeyTypeOrder,
    candidate_types,
    matches,
    parse_key_types,
    terms,
)
from citekey_resolver.errors import (
    AmbiguousError,
    EncodingError,
    LookupFailure,
    MalformedResponseError,
    NotFoundError,
    ResolutionCancelled,
    ResponseError,
)
from citekey_resolver.records import Record, citation_keys_from_note, make_record
from citekey_resolver.utils import HttpClient, response_json

ZOTXT_BASE_URL = "http://localhost:23119/zotxt/items"
ZOTXT_MIME_TYPE = "text/plain"

ZOTERO_API_URL = "https://api.zotero.org"
ZOTERO_API_VERSION = "3"
CSL_JSON_MIME_TYPE = "application/vnd.citationstyles.csl+json"
JSON_MIME_TYPE = "application/json"


class Connector(ABC):
    """Something that resolves citation keys to CSL records."""

    name = "connector"

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._cancelled = threading.Event()

    @abstractmethod
    def resolve(self, key: str) -> Record:
        """Look up ``key`` and return its record.

        Raises:
            NotFoundError: If no item matches the key.
            AmbiguousError: If the key cannot be pinned to one item.
            ServiceConnectionError: If the service cannot be reached.
            ResponseError: If the service sent a malformed response.
        """

    def cancel(self) -> None:
        """Make every further network call raise ``ResolutionCancelled``."""
        self._cancelled.set()

    def reset(self) -> None:
        self._cancelled.clear()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class HttpConnector(Connector):
    """A connector that talks to a service over HTTP."""

    def __init__(
        self,
        http: HttpClient,
        key_types: Iterable[str] | str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(logger)
        self.http = http
        self.key_types = parse_key_types(key_types)

    def _get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        if self.cancelled:
            raise ResolutionCancelled(url)
        return self.http.get(url, params=params)


# ------------- zotxt -------------


class ZotxtConnector(HttpConnector):
    """Look up citation keys with zotxt.

    zotxt needs to be told which type a citation key is, so every type the
    key qualifies for is tried in turn. The type that succeeded is tried
    first for the next key.
    """

    name = "zotxt"

    def __init__(
        self,
        http: HttpClient,
        base_url: str = ZOTXT_BASE_URL,
        key_types: Iterable[str] | str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(http, key_types=key_types, logger=logger)
        self.base_url = base_url
        self.order = KeyTypeOrder(self.key_types)

    def resolve(self, key: str) -> Record:
        if not key:
            raise ValueError("Citation key is the empty string.")
        candidates = candidate_types(key, self.key_types)
        reason = "does not match any citation key type"
        for key_type in self.order.snapshot():
            if key_type not in candidates:
                continue
            try:
                item = self._lookup(key_type, key)
            except EncodingError:
                raise
            except ResponseError as e:
                # zotxt replies to unknown keys with an error message or an
                # empty body, so any malformed response counts as "not found".
                reason = f"not found ({key_type}: {e.detail})"
                self.logger.debug("%s: %s: %s", key, key_type, e)
                continue
            self.order.promote(key_type)
            return make_record(key, item, logger=self.logger)
        raise NotFoundError(key, reason)

    def _lookup(self, key_type: str, key: str) -> dict[str, Any]:
        resp = self._get(self.base_url, params={key_type: key})
        data = response_json(resp, ZOTXT_MIME_TYPE, require_charset=True)
        if not isinstance(data, list) or len(data) != 1 or not isinstance(data[0], dict):
            raise MalformedResponseError(str(resp.request.url), "expected exactly one item")
        return data[0]


# ------------- Zotero Web API -------------


class ZoteroWebConnector(HttpConnector):
    """Look up citation keys with the Zotero Web API.

    Searches the user's library and every group library the user belongs
    to; results from all of them are pooled.
    """

    name = "zotero-web"

    def __init__(
        self,
        http: HttpClient,
        api_key: str,
        user_id: int | str | None = None,
        base_url: str = ZOTERO_API_URL,
        key_types: Iterable[str] | str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(http, key_types=key_types, logger=logger)
        if not api_key:
            raise ValueError("Zotero API key is the empty string.")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._user_id = str(user_id) if user_id else None
        self._endpoints: list[str] | None = None
        self._lock = threading.Lock()

    def _params(self, **kwargs: str) -> dict[str, str]:
        return {"v": ZOTERO_API_VERSION, "key": self.api_key, **kwargs}

    @property
    def user_id(self) -> str:
        """The ID of the user the API key belongs to (looked up once)."""
        with self._lock:
            if self._user_id is None:
                url = f"{self.base_url}/keys/{self.api_key}"
                data = response_json(self._get(url, params={"v": ZOTERO_API_VERSION}), JSON_MIME_TYPE)
                user_id = data.get("userID") if isinstance(data, dict) else None
                if not isinstance(user_id, int) or isinstance(user_id, bool):
                    raise MalformedResponseError(url, "no user ID in response")
                self._user_id = str(user_id)
                self.logger.debug("Zotero user ID: %s", self._user_id)
            return self._user_id

    def endpoints(self) -> list[str]:
        """Item endpoints of the user library and all group libraries."""
        user_id = self.user_id
        with self._lock:
            if self._endpoints is None:
                endpoints = [f"{self.base_url}/users/{user_id}/items"]
                url = f"{self.base_url}/users/{user_id}/groups"
                groups = response_json(self._get(url, params=self._params()), JSON_MIME_TYPE)
                if not isinstance(groups, list):
                    raise MalformedResponseError(url, "expected a list of groups")
                for group in groups:
                    group_id = group.get("id") if isinstance(group, dict) else None
                    if group_id is None:
                        raise MalformedResponseError(url, "group without ID")
                    endpoints.append(f"{self.base_url}/groups/{group_id}/items")
                self._endpoints = endpoints
            return list(self._endpoints)

    def _items(self, url: str, params: dict[str, str]) -> list[dict[str, Any]]:
        resp = self._get(url, params=params)
        if resp.status_code == 404:
            return []
        data = response_json(resp, CSL_JSON_MIME_TYPE)
        items = data.get("items") if isinstance(data, dict) else None
        if not isinstance(items, list) or not all(isinstance(i, dict) for i in items):
            raise MalformedResponseError(url, "expected CSL JSON items")
        return items

    def lookup(self, key: str) -> list[dict[str, Any]]:
        """Fetch the item with the Zotero item key ``key`` from every library."""
        pooled = []
        for endpoint in self.endpoints():
            pooled.extend(self._items(f"{endpoint}/{key}", self._params(format="csljson")))
        return pooled

    def search(self, query: str) -> list[dict[str, Any]]:
        """Search every library by title, creator, and year."""
        params = self._params(format="csljson", qmode="titleCreatorYear", q=query)
        pooled = []
        for endpoint in self.endpoints():
            pooled.extend(self._items(endpoint, params))
        return pooled

    def resolve(self, key: str) -> Record:
        if not key:
            raise ValueError("Citation key is the empty string.")
        if ITEM_KEY in self.key_types and matches(key, ITEM_KEY):
            items = self.lookup(key)
            if not items:
                raise NotFoundError(key)
            if len(items) > 1:
                raise AmbiguousError(key, "multiple-items")
            return make_record(key, items[0], logger=self.logger)

        search_terms = None
        for key_type in SEARCH_KEY_TYPES:
            if key_type in self.key_types:
                search_terms = terms(key, key_type)
                if search_terms:
                    break
        if not search_terms:
            raise NotFoundError(key, "cannot parse citation key")

        items = self.search(search_terms.query())
        if not items:
            raise NotFoundError(key)
        if len(items) == 1:
            return make_record(key, items[0], logger=self.logger)
        return make_record(key, disambiguate(key, items), logger=self.logger)


def disambiguate(key: str, items: Sequence[dict[str, Any]]) -> dict[str, Any]:
    """Pick the item whose note assigns it the citation key ``key``.

    Raises:
        AmbiguousError: If no item or more than one item has the key.
    """
    matching = [i for i in items if key in citation_keys_from_note(i)]
    if not matching:
        raise AmbiguousError(key, "no-match")
    if len(matching) > 1:
        raise AmbiguousError(key, "multiple-matches")
    return matching[0]


# ------------- Chains -------------


class ConnectorChain(Connector):
    """Try several connectors in order.

    A key is passed on to the next connector only if the previous one
    could not find it or sent a malformed response. A key resolved by
    one connector is not looked up with the others.
    """

    name = "chain"

    def __init__(self, connectors: Sequence[Connector], logger: logging.Logger | None = None) -> None:
        super().__init__(logger)
        if not connectors:
            raise ValueError("No connectors given.")
        self.connectors = list(connectors)

    def resolve(self, key: str) -> Record:
        *fallbacks, last = self.connectors
        for connector in fallbacks:
            try:
                return connector.resolve(key)
            except (LookupFailure, ResponseError) as e:
                self.logger.debug("%s: %s: %s", connector.name, key, e)
        return last.resolve(key)

    def cancel(self) -> None:
        super().cancel()
        for connector in self.connectors:
            connector.cancel()

    def reset(self) -> None:
        super().reset()
        for connector in self.connectors:
            connector.reset()