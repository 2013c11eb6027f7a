"""Encoding and decoding of flat string maps in URL query syntax."""

from __future__ import annotations

from collections.abc import Mapping
from urllib.parse import parse_qsl, quote, unquote, urlsplit

# Characters ECMAScript's encodeURIComponent leaves untouched, besides
# alphanumerics. Providers and redirect listeners expect this encoding.
_COMPONENT_SAFE = "-_.!~*'()"

StringMap = dict[str, str]


class QueryStringUtils:
    """Converts flat ``str -> str`` maps to and from query strings.

    ``stringify`` drops keys whose value is empty or ``None``; ``parse``
    ignores parameters without a value.
    """

    def stringify(self, values: Mapping[str, str | None]) -> str:
        encoded = []
        for key, value in values.items():
            if not value:
                continue
            encoded.append(
                f"{quote(key, safe=_COMPONENT_SAFE)}={quote(value, safe=_COMPONENT_SAFE)}"
            )
        return "&".join(encoded)

    def parse(self, url: str, use_hash: bool = False) -> StringMap:
        """Parse the query (or fragment, with ``use_hash``) of a URL."""
        parts = urlsplit(url)
        return self.parse_query_string(parts.fragment if use_hash else parts.query)

    def parse_query_string(self, query: str) -> StringMap:
        result: StringMap = {}
        query = query.strip()
        if query[:1] in ("?", "#", "&"):
            query = query[1:]
        for param in query.split("&"):
            key, sep, value = param.partition("=")
            if not sep or not value:
                continue
            result[unquote(key)] = unquote(value)
        return result

    def parse_redirect_query(self, query: str) -> StringMap:
        """Parse a redirect callback query, which providers form-encode.

        Unlike :meth:`parse_query_string`, ``+`` decodes to a space
        (RFC 6749 Section 4.1.2, Appendix B).
        """
        query = query.strip()
        if query[:1] in ("?", "#", "&"):
            query = query[1:]
        return dict(parse_qsl(query))
