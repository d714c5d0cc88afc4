"""Add bibliographic data for the citation keys used in a document.

Citation keys that are not defined in the document's metadata or in one
of its bibliography files are looked up in Zotero. If a bibliography file
is configured ("zotero-bibliography"), the records are added to that file
and the file is added to the document's bibliography; otherwise they are
added to the document's "references" metadata field.

Lookup failures are reported one line per key and never stop the
document from being processed.

Usage:
    citekey-resolve doe2020Title doe:2019word                   # print records
    citekey-resolve -b refs.json doe2020Title                     # update refs.json
    citekey-resolve -b refs.yaml --api-key KEY --existing other.bib doe2020Title

Environment variables:
    ZOTERO_API_KEY  - Zotero Web API key (enables the Web API connector)
    ZOTERO_USER_ID  - Your Zotero user ID (looked up if not set)
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import os
import sys
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from citekey_resolver import cache
from citekey_resolver.config import ResolverConfig, build_connectors
from citekey_resolver.connectors import Connector, ConnectorChain, HttpConnector
from citekey_resolver.errors import (
    BibliographyError,
    BibliographyNotFoundError,
    LookupFailure,
    ResponseError,
    ServiceConnectionError,
)
from citekey_resolver.records import Record


@dataclass
class DocumentUpdate:
    """Result of resolving the citation keys of a document.

    Attributes:
        bibliography: Bibliography file to add to the document, if the
            records were added to a file.
        records: The records of that file, or else the newly resolved
            records to add to the document's metadata.
        failures: Reason for every key that could not be resolved.
        errors: Errors that stopped resolution (e.g., network down).
    """

    bibliography: str | None = None
    records: list[Record] = field(default_factory=list)
    failures: dict[str, str] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures and not self.errors


def undefined_keys(requested_keys: Iterable[str], existing_keys: Iterable[str]) -> list[str]:
    """Return the requested keys that are not defined yet.

    Preserves order and drops duplicates.
    """
    existing = set(existing_keys)
    ret: list[str] = []
    seen: set[str] = set()
    for key in requested_keys:
        if key and key not in existing and key not in seen:
            seen.add(key)
            ret.append(key)
    return ret


def _as_connector(connectors: Sequence[Connector], logger: logging.Logger) -> Connector:
    if len(connectors) == 1:
        return connectors[0]
    return ConnectorChain(connectors, logger=logger)


def resolve_document(
    existing_keys: Iterable[str],
    requested_keys: Iterable[str],
    connectors: Sequence[Connector],
    cache_path: str | None = None,
    logger: logging.Logger | None = None,
    max_workers: int = 1,
) -> DocumentUpdate:
    """Resolve the citation keys of a document that are not defined yet.

    Args:
        existing_keys: Keys defined in the document's metadata or
            bibliography files.
        requested_keys: Keys used in the document, in order.
        connectors: Connectors to try, in priority order.
        cache_path: Bibliography file to add records to. If None, or if the
            file cannot be used, the resolved records are returned instead.
        logger: Logger for failures.
        max_workers: Number of keys to look up concurrently.

    Returns:
        A DocumentUpdate. Never raises for lookup or network failures.
    """
    logger = logger or logging.getLogger(__name__)
    result = DocumentUpdate()
    keys = undefined_keys(requested_keys, existing_keys)
    if not keys:
        return result
    if not connectors:
        logger.error("No connectors configured.")
        result.errors.append("no connectors configured")
        return result
    connector = _as_connector(connectors, logger)
    connector.reset()

    if cache_path:
        try:
            update = cache.update(connector, cache_path, keys, logger=logger, max_workers=max_workers)
        except ServiceConnectionError as e:
            logger.error("%s", e)
            result.errors.append(str(e))
            return result
        except BibliographyError as e:
            logger.error("%s", e)
            result.errors.append(str(e))
        else:
            result.failures.update(update.failures)
            result.records = update.records
            if update.records:
                result.bibliography = cache_path
            return result

    for key in keys:
        try:
            result.records.append(connector.resolve(key))
        except (LookupFailure, ResponseError) as e:
            logger.warning("%s", e)
            result.failures[key] = getattr(e, "reason", None) or str(e)
        except ServiceConnectionError as e:
            logger.error("%s", e)
            result.errors.append(str(e))
            break
    return result


# ------------- Document metadata -------------


def _bibliography_files(meta: Mapping[str, Any]) -> list[str]:
    bibliography = meta.get("bibliography")
    if bibliography is None:
        return []
    if isinstance(bibliography, str):
        return [bibliography]
    if isinstance(bibliography, (list, tuple)):
        return [str(b) for b in bibliography]
    raise ValueError('Cannot parse metadata field "bibliography".')


def _locate(path: str, base_dir: str | None) -> str:
    if base_dir and not os.path.isabs(path):
        return os.path.join(base_dir, path)
    return path


def meta_sources(
    meta: Mapping[str, Any],
    base_dir: str | None = None,
    logger: logging.Logger | None = None,
) -> list[Record]:
    """Return the records defined in the metadata and its bibliography files.

    Bibliography files that cannot be read are logged and skipped.
    """
    logger = logger or logging.getLogger(__name__)
    records = [r for r in meta.get("references") or [] if isinstance(r, Mapping)]
    try:
        fnames = _bibliography_files(meta)
    except ValueError as e:
        logger.warning("%s", e)
        fnames = []
    for fname in fnames:
        try:
            records.extend(cache.read(_locate(fname, base_dir)))
        except BibliographyError as e:
            logger.warning("%s", e)
    return records


def add_sources(
    meta: MutableMapping[str, Any],
    used_keys: Iterable[str],
    config: ResolverConfig | None = None,
    connectors: Sequence[Connector] | None = None,
    base_dir: str | None = None,
    logger: logging.Logger | None = None,
) -> DocumentUpdate:
    """Add bibliographic data for undefined citation keys to ``meta``.

    Either adds the bibliography file to the "bibliography" field or
    appends the records to the "references" field. Relative paths are
    interpreted relative to ``base_dir``.
    """
    logger = logger or logging.getLogger(__name__)
    config = config or ResolverConfig.from_metadata(meta)
    if connectors is None:
        connectors = build_connectors(config, logger=logger)
    cache_path = _locate(config.cache_path, base_dir) if config.cache_path else None

    try:
        existing = cache.record_ids(meta_sources(meta, base_dir=base_dir, logger=logger))
    except BibliographyError as e:
        logger.warning("%s", e)
        existing = set()
    result = resolve_document(
        existing,
        used_keys,
        connectors,
        cache_path=cache_path,
        logger=logger,
        max_workers=config.max_workers,
    )

    if result.bibliography:
        try:
            fnames = _bibliography_files(meta)
        except ValueError:
            fnames = []
        if result.bibliography not in fnames and config.cache_path not in fnames:
            fnames.append(result.bibliography)
        meta["bibliography"] = fnames[0] if len(fnames) == 1 else fnames
    elif result.records:
        references = list(meta.get("references") or [])
        references.extend(result.records)
        meta["references"] = references
    return result


# ------------- CLI -------------


def init_logging(verbose: bool) -> logging.Logger:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")
    return logging.getLogger("citekey_resolver")


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="citekey-resolve",
        description="Look up citation keys in Zotero and add them to a bibliography file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    p.add_argument("keys", nargs="+", help="Citation keys to look up")
    p.add_argument("-b", "--bibliography", help="Bibliography file to add records to (.json, .yaml, .yml)")
    p.add_argument(
        "--existing",
        action="append",
        default=[],
        help="Bibliography file whose citation keys count as defined (repeatable)",
    )
    p.add_argument("--config", help="YAML configuration file")
    p.add_argument("--key-types", help="Citation key types to try (comma-separated: key,betterbibtexkey,easykey)")
    p.add_argument("--connectors", help="Connectors to use, in order (comma-separated: zotxt,zotero-web)")
    p.add_argument("--api-key", help="Zotero Web API key (or set ZOTERO_API_KEY)")
    p.add_argument("--user-id", help="Zotero user ID (or set ZOTERO_USER_ID)")
    p.add_argument("--zotxt-url", help="zotxt items endpoint")
    p.add_argument("--timeout", type=float, help="HTTP timeout seconds")
    p.add_argument("--max-workers", type=int, help="Number of keys to look up concurrently")
    p.add_argument("--format", choices=["yaml", "json"], default="yaml", help="Output format without -b")
    p.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    return p


def load_config(args: argparse.Namespace) -> ResolverConfig:
    config = ResolverConfig.from_yaml(args.config) if args.config else ResolverConfig()
    overrides: dict[str, Any] = {
        "cache_path": args.bibliography,
        "key_types": args.key_types,
        "connectors": args.connectors,
        "api_key": args.api_key or (None if config.api_key else os.environ.get("ZOTERO_API_KEY")),
        "user_id": args.user_id or (None if config.user_id else os.environ.get("ZOTERO_USER_ID")),
        "zotxt_url": args.zotxt_url,
        "timeout": args.timeout,
        "max_workers": args.max_workers,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if args.verbose:
        overrides["verbose"] = True
    return dataclasses.replace(config, **overrides)


def print_summary(result: DocumentUpdate, logger: logging.Logger) -> None:
    logger.info(
        "Summary: records=%d, failures=%d, errors=%d",
        len(result.records),
        len(result.failures),
        len(result.errors),
    )
    if result.bibliography:
        logger.info("Bibliography: %s", result.bibliography)


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Returns:
        Exit code: 0=success, 1=configuration error, 2=some keys failed.
    """
    args = build_arg_parser().parse_args(argv)
    logger = init_logging(args.verbose)
    try:
        config = load_config(args)
    except (OSError, ValueError) as e:
        logger.error("%s", e)
        return 1
    if config.verbose:
        logger.setLevel(logging.DEBUG)

    existing: set[str] = set()
    for fname in args.existing:
        try:
            existing |= cache.record_ids(cache.read(fname), fname)
        except BibliographyNotFoundError as e:
            logger.warning("%s", e)
        except BibliographyError as e:
            logger.error("%s", e)
            return 1

    connectors = build_connectors(config, logger=logger)
    if not connectors:
        logger.error("No connectors: set an API key to use the Zotero Web API.")
        return 1
    try:
        result = resolve_document(
            existing,
            args.keys,
            connectors,
            cache_path=config.cache_path,
            logger=logger,
            max_workers=config.max_workers,
        )
    finally:
        for connector in connectors:
            if isinstance(connector, HttpConnector):
                connector.http.close()

    if not result.bibliography and result.records:
        encode = cache.yaml_encode if args.format == "yaml" else cache.json_encode
        sys.stdout.write(encode(result.records).rstrip("\n") + "\n")
    print_summary(result, logger)
    return 0 if result.ok else 2
