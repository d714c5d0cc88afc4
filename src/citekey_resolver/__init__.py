"""citekey-resolver - Look up citation keys in Zotero.

This package provides tools for:
- Classifying citation keys (Zotero item keys, Better BibTeX keys, easy citekeys)
- Looking up citation keys with zotxt or the Zotero Web API
- Caching the resulting CSL records in JSON or YAML bibliography files
- Adding bibliographic data for undefined citation keys to a document

Example usage:
    from citekey_resolver import HttpClient, ZotxtConnector, update

    connector = ZotxtConnector(HttpClient())
    result = update(connector, "refs.json", ["doe2020Title"])
"""

from citekey_resolver._version import __version__
from citekey_resolver.cache import (
    CODECS,
    CacheUpdateResult,
    Codec,
    get_codec,
    read,
    record_ids,
    register_codec,
    update,
    write,
)
from citekey_resolver.citekeys import (
    BETTER_BIBTEX_KEY,
    EASY_KEY,
    ITEM_KEY,
    KEY_TYPES,
    KeyTypeOrder,
    SearchTerms,
    candidate_types,
    parse_key_types,
    terms,
)
from citekey_resolver.config import ResolverConfig, build_connectors
from citekey_resolver.connectors import (
    Connector,
    ConnectorChain,
    ZoteroWebConnector,
    ZotxtConnector,
    disambiguate,
)
from citekey_resolver.errors import (
    AmbiguousError,
    BibliographyError,
    BibliographyIOError,
    BibliographyNotFoundError,
    BibliographyParseError,
    DateParseError,
    EmptyResponseError,
    EncodingError,
    HTTPStatusError,
    InvalidFieldNameError,
    LookupFailure,
    MalformedResponseError,
    MimeTypeError,
    NoSuffixError,
    NotFoundError,
    ResolutionCancelled,
    ResolverError,
    ResponseError,
    ServiceConnectionError,
    UnsupportedFormatError,
)
from citekey_resolver.records import (
    apply_extras,
    extract_extras,
    normalize_field_name,
    normalize_record,
    parse_date_range,
)
from citekey_resolver.resolver import DocumentUpdate, add_sources, resolve_document
from citekey_resolver.utils import HttpClient, RateLimiter

__all__ = [
    # Version
    "__version__",
    # Key classification
    "BETTER_BIBTEX_KEY",
    "EASY_KEY",
    "ITEM_KEY",
    "KEY_TYPES",
    "KeyTypeOrder",
    "SearchTerms",
    "candidate_types",
    "parse_key_types",
    "terms",
    # Records
    "apply_extras",
    "extract_extras",
    "normalize_field_name",
    "normalize_record",
    "parse_date_range",
    # Connectors
    "Connector",
    "ConnectorChain",
    "ZoteroWebConnector",
    "ZotxtConnector",
    "disambiguate",
    "HttpClient",
    "RateLimiter",
    # Bibliography files
    "CODECS",
    "CacheUpdateResult",
    "Codec",
    "get_codec",
    "read",
    "record_ids",
    "register_codec",
    "update",
    "write",
    # Resolution
    "DocumentUpdate",
    "ResolverConfig",
    "add_sources",
    "build_connectors",
    "resolve_document",
    # Errors
    "AmbiguousError",
    "BibliographyError",
    "BibliographyIOError",
    "BibliographyNotFoundError",
    "BibliographyParseError",
    "DateParseError",
    "EmptyResponseError",
    "EncodingError",
    "HTTPStatusError",
    "InvalidFieldNameError",
    "LookupFailure",
    "MalformedResponseError",
    "MimeTypeError",
    "NoSuffixError",
    "NotFoundError",
    "ResolutionCancelled",
    "ResolverError",
    "ResponseError",
    "ServiceConnectionError",
    "UnsupportedFormatError",
]
