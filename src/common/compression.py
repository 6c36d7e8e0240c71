"""Reversible compression for large text fields of the saved payload.

Compressed values are ``lz:`` followed by LZString's URI-safe encoding, the
format the browser client writes, so records stay readable from both sides.
Values that are short, already tagged, or that fail to decode are passed
through unchanged.
"""

import logging

from lzstring import LZString

logger = logging.getLogger(__name__)

LZ_PREFIX = "lz:"
DEFAULT_THRESHOLD = 256

_lz = LZString()


def compress_if_needed(text: str | None, threshold: int = DEFAULT_THRESHOLD) -> str | None:
    if text is None:
        return None
    s = str(text)
    if not s or s.startswith(LZ_PREFIX) or len(s) < threshold:
        return s
    packed = _lz.compressToEncodedURIComponent(s)
    if not packed:
        return s
    return LZ_PREFIX + packed


def decompress_if_needed(text: str | None) -> str | None:
    if text is None:
        return None
    s = str(text)
    if not s.startswith(LZ_PREFIX):
        return s
    payload = s[len(LZ_PREFIX):]
    try:
        out = _lz.decompressFromEncodedURIComponent(payload)
    except (KeyError, IndexError, TypeError, ValueError) as e:
        logger.warning(f"Could not decompress {len(s)} chars of stored text: {e!r}")
        return s
    # an empty result for a non-empty payload means the data was not LZString
    if out is None or (payload and not out):
        return s
    return out
