"""Exceptions raised while resolving citation keys.

Per-key lookup failures (``NotFoundError``, ``AmbiguousError``) are
collected and reported by the callers; everything else aborts the call
that raised it.
"""

from __future__ import annotations


class ResolverError(Exception):
    """Base class for all errors raised by citekey_resolver."""


# ------------- Record model -------------


class InvalidFieldNameError(ResolverError, ValueError):
    """A field name is empty or contains illegal characters."""

    def __init__(self, name: str, message: str | None = None) -> None:
        self.name = name
        super().__init__(message or f"{name!r}: not a valid field name.")


class DateParseError(ResolverError, ValueError):
    """A date (range) in an extra field could not be parsed."""

    def __init__(self, value: str, message: str) -> None:
        self.value = value
        super().__init__(f"{value}: {message}.")


# ------------- Network -------------


class ServiceConnectionError(ResolverError, ConnectionError):
    """The service could not be reached. Fatal for the whole batch."""

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        super().__init__(f"{url}: {message}")


class ResolutionCancelled(ServiceConnectionError):
    """Raised before a network call once the batch has been cancelled."""

    def __init__(self, url: str = "") -> None:
        super().__init__(url, "cancelled")


class ResponseError(ResolverError):
    """A response did not have the expected shape."""

    def __init__(self, url: str, message: str) -> None:
        self.url = url
        self.detail = message
        super().__init__(f"{url}: {message}")


class HTTPStatusError(ResponseError):
    def __init__(self, url: str, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(url, f"HTTP status {status_code}")


class MimeTypeError(ResponseError):
    def __init__(self, url: str, expected: str, got: str | None) -> None:
        self.expected = expected
        self.got = got
        if got:
            super().__init__(url, f"expected MIME type {expected}, got {got}")
        else:
            super().__init__(url, "response has no MIME type")


class EmptyResponseError(ResponseError):
    def __init__(self, url: str) -> None:
        super().__init__(url, "empty response")


class EncodingError(ResponseError):
    def __init__(self, url: str, charset: str) -> None:
        self.charset = charset
        super().__init__(url, f"expected UTF-8 charset, got {charset}")


class MalformedResponseError(ResponseError):
    """The body could not be parsed or has the wrong structure."""


# ------------- Lookup -------------


class LookupFailure(ResolverError):
    """A citation key could not be resolved. Not fatal for other keys."""

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        self.reason = message
        super().__init__(f"{key}: {message}")


class NotFoundError(LookupFailure):
    def __init__(self, key: str, message: str = "not found") -> None:
        super().__init__(key, message)


class AmbiguousError(LookupFailure):
    """Several items match a citation key.

    ``kind`` is ``"no-match"`` if disambiguation left no item,
    ``"multiple-matches"`` if it left more than one, and
    ``"multiple-items"`` if a direct lookup found more than one item.
    """

    MESSAGES = {
        "no-match": "no matching items",
        "multiple-matches": "citation key assigned to more than one item",
        "multiple-items": "more than one item matches",
    }

    def __init__(self, key: str, kind: str) -> None:
        self.kind = kind
        super().__init__(key, self.MESSAGES[kind])


# ------------- Bibliography files -------------


class BibliographyError(ResolverError):
    """Reading or writing a bibliography file failed."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"{path}: {message}")


class NoSuffixError(BibliographyError):
    def __init__(self, path: str) -> None:
        super().__init__(path, "no filename suffix")


class UnsupportedFormatError(BibliographyError):
    def __init__(self, path: str, message: str = "unsupported format") -> None:
        super().__init__(path, message)


class BibliographyParseError(BibliographyError):
    pass


class BibliographyIOError(BibliographyError):
    """An OS-level error; ``errno`` is set where the OS reported one."""

    def __init__(self, path: str, message: str, errno: int | None = None) -> None:
        self.errno = errno
        super().__init__(path, message)


class BibliographyNotFoundError(BibliographyIOError):
    pass
