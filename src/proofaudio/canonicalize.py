"""
Canonical JSON for manifest signing.

The capture app signs SHA-256 over a compact, key-sorted JSON rendering of
the manifest without its signature field. The verifier must reproduce
those bytes exactly:

- keys sorted by code point at every level and written verbatim,
  arrays in original order
- no whitespace between tokens
- in string values, "/" escaped as "\\/" and control characters
  (C0, DEL, C1) as \\u00xx
- integers as decimal text
- floats in FLOAT_STYLE (see _encode_float)

Canonicalization works on the parsed wire tree, so the output depends only
on the parsed values, never on the file's key order or whitespace.
"""
from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict

from proofaudio.codec import format_timestamp, sha256_digest

__all__ = [
    "FLOAT_STYLE",
    "SIGNATURE_FIELD",
    "canonicalize",
    "canonicalize_to_str",
    "manifest_digest",
    "manifest_signing_bytes",
    "signing_view",
]

# Shortest round-trip digits; plain notation while the decimal exponent
# is within (-5, 16], otherwise "1.5e17" / "1e-7". Integral floats keep a
# trailing ".0" and 0.0 serializes as "0.0".
FLOAT_STYLE = "shortest-roundtrip"

SIGNATURE_FIELD = "signature"

_PLAIN_MAX_EXP = 16
_PLAIN_MIN_EXP = -5

# Integers outside this range are read as doubles by the producer's parser.
_INT_MIN = -(2**63)
_INT_MAX = 2**64 - 1

_SHORT_ESCAPES = {
    '"': '\\"',
    "\\": "\\\\",
    "/": "\\/",
    "\n": "\\n",
    "\r": "\\r",
    "\t": "\\t",
}


def canonicalize(obj: Any) -> bytes:
    """Serialize *obj* to canonical JSON as UTF-8 bytes."""
    return canonicalize_to_str(obj).encode("utf-8")


def canonicalize_to_str(obj: Any) -> str:
    """Return the canonical JSON text for *obj*."""
    return _serialize(obj)


def signing_view(tree: Mapping) -> Dict[str, Any]:
    """The manifest as signed: every field except the signature."""
    return {k: v for k, v in tree.items() if k != SIGNATURE_FIELD}


def manifest_signing_bytes(tree: Mapping) -> bytes:
    return canonicalize(signing_view(tree))


def manifest_digest(tree: Mapping) -> bytes:
    """SHA-256 of the canonical signing bytes (the ECDSA message)."""
    return sha256_digest(manifest_signing_bytes(tree))


def _serialize(value: Any) -> str:
    if value is None:
        return "null"
    if value is True:
        return "true"
    if value is False:
        return "false"
    if isinstance(value, str):
        return _encode_string(value)
    if isinstance(value, int):
        return _encode_int(value)
    if isinstance(value, (float, Decimal)):
        return _encode_float(float(value))
    if isinstance(value, datetime):
        return _encode_string(format_timestamp(value))
    if isinstance(value, Mapping):
        items = []
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError("canonical JSON requires string keys")
            items.append((key, item))
        items.sort(key=lambda kv: kv[0])
        serialized = [
            '"' + key + '":' + _serialize(item) for key, item in items
        ]
        return "{" + ",".join(serialized) + "}"
    if isinstance(value, Sequence) and not isinstance(value, (bytes, bytearray, str)):
        return "[" + ",".join(_serialize(item) for item in value) + "]"
    raise TypeError(f"unsupported type for canonical JSON: {type(value)!r}")


def _encode_string(value: str) -> str:
    out = ['"']
    for ch in value:
        escaped = _SHORT_ESCAPES.get(ch)
        if escaped is not None:
            out.append(escaped)
            continue
        code = ord(ch)
        if code < 0x20 or 0x7F <= code <= 0x9F:
            out.append(f"\\u{code:04x}")
        else:
            out.append(ch)
    out.append('"')
    return "".join(out)


def _encode_int(value: int) -> str:
    if _INT_MIN <= value <= _INT_MAX:
        return str(value)
    try:
        return _encode_float(float(value))
    except OverflowError:
        raise ValueError("integer out of range for canonical JSON") from None


def _encode_float(value: float) -> str:
    if not math.isfinite(value):
        raise ValueError("non-finite float not permitted in canonical JSON")
    if value == 0:
        return "-0.0" if math.copysign(1.0, value) < 0 else "0.0"

    sign = "-" if value < 0 else ""
    # repr() yields the shortest digit string that round-trips.
    dec = Decimal(repr(abs(value))).normalize()
    parts = dec.as_tuple()
    digits = "".join(str(d) for d in parts.digits)
    exponent = int(parts.exponent)
    length = len(digits)
    point = length + exponent  # 10^(point-1) <= |value| < 10^point

    if exponent >= 0 and point <= _PLAIN_MAX_EXP:
        return sign + digits + ("0" * exponent) + ".0"
    if 0 < point <= _PLAIN_MAX_EXP:
        return sign + digits[:point] + "." + digits[point:]
    if _PLAIN_MIN_EXP < point <= 0:
        return sign + "0." + ("0" * -point) + digits
    if length == 1:
        return f"{sign}{digits}e{point - 1}"
    return f"{sign}{digits[0]}.{digits[1:]}e{point - 1}"
