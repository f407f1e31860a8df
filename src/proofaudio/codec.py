"""
Codec layer: raw-to-structured conversions for manifests and bundles.

The capture app exports keys and signatures in raw form:
  - public keys as X||Y (64 bytes, big-endian, no SEC1 prefix)
  - ECDSA signatures as R||S (64 bytes, each zero-padded to 32)

Everything here is pure and fails closed with a VerificationError.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import encode_dss_signature

from proofaudio.errors import ErrorKind, VerificationError

RAW_PUBLIC_KEY_LEN = 64
RAW_SIGNATURE_LEN = 64
DIGEST_LEN = 32

_SEC1_UNCOMPRESSED = b"\x04"


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def sha256_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256_b64(data: bytes) -> str:
    return b64encode(sha256_digest(data))


def digests_equal(a: bytes, b: bytes) -> bool:
    """Constant-time comparison of two digests."""
    return hmac.compare_digest(a, b)


# ---------------------------------------------------------------------------
# Base64
# ---------------------------------------------------------------------------

def b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def b64decode(
    value: Any,
    *,
    kind: ErrorKind = ErrorKind.MANIFEST_MALFORMED,
    field: str = "value",
    length: Optional[int] = None,
) -> bytes:
    """Decode standard, padded Base64.

    Characters outside the alphabet and bad padding are rejected rather
    than skipped. When *length* is given the decoded size must match.
    """
    if not isinstance(value, str):
        raise VerificationError(kind, f"{field}: expected a Base64 string")
    try:
        raw = base64.b64decode(value.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        raise VerificationError(kind, f"{field}: invalid Base64") from None
    if length is not None and len(raw) != length:
        raise VerificationError(
            kind, f"{field}: expected {length} bytes, got {len(raw)}"
        )
    return raw


# ---------------------------------------------------------------------------
# Keys and signatures
# ---------------------------------------------------------------------------

def reconstruct_public_key(raw: bytes) -> ec.EllipticCurvePublicKey:
    """Rebuild a P-256 public key from raw X||Y coordinates."""
    if len(raw) != RAW_PUBLIC_KEY_LEN:
        raise VerificationError(
            ErrorKind.KEY_MALFORMED,
            f"public key must be {RAW_PUBLIC_KEY_LEN} bytes, got {len(raw)}",
        )
    try:
        return ec.EllipticCurvePublicKey.from_encoded_point(
            ec.SECP256R1(), _SEC1_UNCOMPRESSED + bytes(raw)
        )
    except ValueError:
        raise VerificationError(
            ErrorKind.KEY_MALFORMED, "public key is not a point on P-256"
        ) from None


def public_key_raw(public_key: ec.EllipticCurvePublicKey) -> bytes:
    """Inverse of reconstruct_public_key: X||Y without the SEC1 prefix."""
    numbers = public_key.public_numbers()
    return numbers.x.to_bytes(32, "big") + numbers.y.to_bytes(32, "big")


def parse_signature(raw: bytes) -> Tuple[int, int]:
    """Split a raw R||S signature into two big-endian integers."""
    if len(raw) != RAW_SIGNATURE_LEN:
        raise VerificationError(
            ErrorKind.KEY_MALFORMED,
            f"signature must be {RAW_SIGNATURE_LEN} bytes, got {len(raw)}",
        )
    half = RAW_SIGNATURE_LEN // 2
    return int.from_bytes(raw[:half], "big"), int.from_bytes(raw[half:], "big")


def encode_signature(r: int, s: int) -> bytes:
    return r.to_bytes(32, "big") + s.to_bytes(32, "big")


def device_key_id(raw_public_key: bytes) -> bytes:
    """SHA-256 of the raw public key. Display and cross-check only."""
    return sha256_digest(raw_public_key)


def verify_ecdsa(
    public_key: ec.EllipticCurvePublicKey, message: bytes, r: int, s: int
) -> bool:
    """ECDSA P-256 / SHA-256 over *message*.

    The producer signs the 32-byte manifest digest as a message, so the
    curve operation runs over SHA-256 of that digest.
    """
    try:
        der = encode_dss_signature(r, s)
        public_key.verify(der, message, ec.ECDSA(hashes.SHA256()))
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def format_timestamp(dt: datetime) -> str:
    """Fixed-width UTC ISO-8601 with exactly three fractional digits."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S") + f".{dt.microsecond // 1000:03d}Z"


def parse_timestamp(ts: str) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp. Return None on failure."""
    try:
        return datetime.fromisoformat(ts.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        return None


__all__ = [
    "DIGEST_LEN",
    "RAW_PUBLIC_KEY_LEN",
    "RAW_SIGNATURE_LEN",
    "b64decode",
    "b64encode",
    "device_key_id",
    "digests_equal",
    "encode_signature",
    "format_timestamp",
    "parse_signature",
    "parse_timestamp",
    "public_key_raw",
    "reconstruct_public_key",
    "sha256_b64",
    "sha256_digest",
    "verify_ecdsa",
]
