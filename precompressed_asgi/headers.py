"""
HTTP Accept-Encoding header parsing and pre-compressed variant selection.
"""
from enum import Enum
from functools import lru_cache


class AcceptedEncoding(Enum):
    """
    An encoding we can serve from a pre-compressed sibling file.
    The value is the 'Content-Encoding' token.
    """

    BROTLI = "br"
    GZIP = "gzip"
    NONE = ""

    @property
    def suffix(self) -> str:
        """File-name suffix of the pre-compressed sibling ("" for NONE)."""
        return SUFFIXES[self]


SUFFIXES: dict[AcceptedEncoding, str] = {
    AcceptedEncoding.BROTLI: ".br",
    AcceptedEncoding.GZIP: ".gz",
    AcceptedEncoding.NONE: "",
}


def parse_tokens(accept_encoding: str) -> list[str]:
    """
    Splits an 'Accept-Encoding' header into bare coding names,
    e.g. "br;q=0.8, gzip" -> ["br", "gzip"].
    Parameters such as "q=" are dropped, they take no part in the selection.
    """
    return [part.split(";", 1)[0].strip() for part in accept_encoding.split(",")]


@lru_cache(maxsize=128)
def select_encoding(accept_encoding: str) -> AcceptedEncoding:
    """
    Returns the pre-compressed variant to try for the given
    'Accept-Encoding' header value.

    The order is fixed: "br" wins whenever it is listed, then "gzip",
    otherwise no encoding. Quality values and the declared order are
    ignored, and matching is case-sensitive.

    Results are LRU-cached for performance.
    """
    if not accept_encoding:
        return AcceptedEncoding.NONE

    tokens = parse_tokens(accept_encoding)

    # Brotli first, regardless of where it appears in the header
    if "br" in tokens:
        return AcceptedEncoding.BROTLI

    if "gzip" in tokens:
        return AcceptedEncoding.GZIP

    return AcceptedEncoding.NONE
