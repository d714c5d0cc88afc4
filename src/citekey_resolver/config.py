"""Configuration for resolving citation keys."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import yaml

from citekey_resolver.citekeys import KEY_TYPES, parse_key_types
from citekey_resolver.connectors import (
    ZOTERO_API_URL,
    ZOTXT_BASE_URL,
    Connector,
    ZoteroWebConnector,
    ZotxtConnector,
)
from citekey_resolver.utils import DEFAULT_USER_AGENT, HttpClient, RateLimiter

CONNECTOR_NAMES = ("zotxt", "zotero-web")

# Document metadata fields and the config fields they set.
METADATA_FIELDS = {
    "zotero-bibliography": "cache_path",
    "zotero-citekey-types": "key_types",
    "zotero-api-key": "api_key",
    "zotero-user-id": "user_id",
    "zotero-connectors": "connectors",
}


@dataclass
class ResolverConfig:
    """Configuration for resolving citation keys.

    Attributes:
        cache_path: Bibliography file to add records to. If None, records
            are added to the document's metadata instead.
        key_types: Citation key types to try, in order.
        connectors: Names of the connectors to use, in priority order. The
            Web API connector is only used if an API key is set.
        api_key: Zotero Web API key
        user_id: Zotero user ID (looked up with the API key if not set)
        zotxt_url: Items endpoint of zotxt
        api_url: Base URL of the Zotero Web API
        timeout: HTTP timeout in seconds
        rate_limit: Requests per minute sent to the Web API
        max_workers: Number of keys to look up concurrently
        verbose: Enable verbose logging
    """

    cache_path: str | None = None
    key_types: tuple[str, ...] = KEY_TYPES
    connectors: tuple[str, ...] = CONNECTOR_NAMES
    api_key: str | None = None
    user_id: str | None = None
    zotxt_url: str = ZOTXT_BASE_URL
    api_url: str = ZOTERO_API_URL
    timeout: float = 20.0
    rate_limit: int = 60
    max_workers: int = 1
    verbose: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.key_types = parse_key_types(self.key_types)
        if isinstance(self.connectors, str):
            self.connectors = tuple(c.strip() for c in self.connectors.split(",") if c.strip())
        else:
            self.connectors = tuple(self.connectors)
        unknown = [c for c in self.connectors if c not in CONNECTOR_NAMES]
        if unknown:
            raise ValueError(f"{', '.join(unknown)}: unknown connector(s)")
        if self.user_id is not None:
            self.user_id = str(self.user_id)
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ResolverConfig:
        """Create config from a dictionary (e.g., loaded from YAML).

        Keys may use hyphens or underscores. Unknown keys are kept in
        ``extra``.
        """
        known = set(cls.__dataclass_fields__) - {"extra"}
        kwargs: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            name = str(key).replace("-", "_")
            if name in known:
                kwargs[name] = value
            else:
                extra[key] = value
        return cls(**kwargs, extra=extra)

    @classmethod
    def from_yaml(cls, path: str) -> ResolverConfig:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_metadata(cls, meta: Mapping[str, Any], **overrides: Any) -> ResolverConfig:
        """Create config from a document's metadata block.

        Credentials that are not set in the metadata are read from the
        ZOTERO_API_KEY and ZOTERO_USER_ID environment variables.
        """
        kwargs: dict[str, Any] = {}
        for meta_key, name in METADATA_FIELDS.items():
            value = meta.get(meta_key)
            if value is None:
                continue
            if isinstance(value, str) and not value.strip():
                raise ValueError(f"{meta_key}: is the empty string")
            kwargs[name] = value
        kwargs.setdefault("api_key", os.environ.get("ZOTERO_API_KEY") or None)
        kwargs.setdefault("user_id", os.environ.get("ZOTERO_USER_ID") or None)
        kwargs.update(overrides)
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Convert config to a dictionary for serialization (without the API key)."""
        return {
            "cache_path": self.cache_path,
            "key_types": list(self.key_types),
            "connectors": list(self.connectors),
            "user_id": self.user_id,
            "zotxt_url": self.zotxt_url,
            "api_url": self.api_url,
            "timeout": self.timeout,
            "rate_limit": self.rate_limit,
            "max_workers": self.max_workers,
            "verbose": self.verbose,
        }


def build_http_client(
    config: ResolverConfig,
    rate_limited: bool = False,
    logger: logging.Logger | None = None,
) -> HttpClient:
    return HttpClient(
        timeout=config.timeout,
        user_agent=DEFAULT_USER_AGENT,
        rate_limiter=RateLimiter(req_per_min=config.rate_limit) if rate_limited else None,
        logger=logger,
    )


def build_connectors(
    config: ResolverConfig,
    http: HttpClient | None = None,
    logger: logging.Logger | None = None,
) -> list[Connector]:
    """Create the connectors named in the config, in priority order.

    Only requests to the Web API are rate limited. If ``http`` is given,
    all connectors share it.
    """
    connectors: list[Connector] = []
    for name in config.connectors:
        if name == "zotxt":
            connectors.append(
                ZotxtConnector(
                    http or build_http_client(config, logger=logger),
                    base_url=config.zotxt_url,
                    key_types=config.key_types,
                    logger=logger,
                )
            )
        elif name == "zotero-web":
            if not config.api_key:
                continue
            connectors.append(
                ZoteroWebConnector(
                    http or build_http_client(config, rate_limited=True, logger=logger),
                    api_key=config.api_key,
                    user_id=config.user_id,
                    base_url=config.api_url,
                    key_types=config.key_types,
                    logger=logger,
                )
            )
    return connectors
