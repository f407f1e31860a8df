"""
Producer-side signing: the capture app's half of the protocol.

Used to build fixtures and round-trip tests. A DeviceKey holds a P-256
private key in memory; manifests are built as wire trees, signed over
their canonical digest, and written as standard bundles.
"""
from __future__ import annotations

import json
import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from proofaudio import canonicalize, codec
from proofaudio.bundle import DISCLOSURE_NAME, MANIFEST_NAME
from proofaudio.config import CURRENT_SCHEMA_VERSION

DEFAULT_APP_BUNDLE_ID = "app.proofaudio.capture"
DEFAULT_APP_VERSION = "1.0.0"
DISCLOSURE_TEXT = (
    "This proof bundle contains an audio recording and a signed manifest.\n"
    "It shows the audio has not been modified since capture. It does not\n"
    "establish what was said, who said it, or whether consent was given.\n"
)


class DeviceKey:
    """In-memory P-256 signing key."""

    def __init__(self, private_key: ec.EllipticCurvePrivateKey):
        self._private_key = private_key

    @classmethod
    def generate(cls) -> "DeviceKey":
        return cls(ec.generate_private_key(ec.SECP256R1()))

    @classmethod
    def from_private_value(cls, value: int) -> "DeviceKey":
        """Deterministic key from a scalar, for reproducible fixtures."""
        return cls(ec.derive_private_key(value, ec.SECP256R1()))

    @property
    def public_key(self) -> ec.EllipticCurvePublicKey:
        return self._private_key.public_key()

    @property
    def public_key_raw(self) -> bytes:
        return codec.public_key_raw(self.public_key)

    @property
    def key_id(self) -> bytes:
        return codec.device_key_id(self.public_key_raw)

    def sign_digest(self, digest: bytes) -> bytes:
        """Sign a manifest digest and return the raw R||S signature."""
        der = self._private_key.sign(digest, ec.ECDSA(hashes.SHA256()))
        r, s = decode_dss_signature(der)
        return codec.encode_signature(r, s)

    def __repr__(self) -> str:
        return f"DeviceKey(key_id={codec.b64encode(self.key_id)!r})"


def build_manifest(
    audio: bytes,
    key: DeviceKey,
    *,
    audio_format: str = "m4a",
    capture_start: Optional[datetime] = None,
    duration_seconds: float = 10.0,
    app_version: str = DEFAULT_APP_VERSION,
    app_bundle_id: str = DEFAULT_APP_BUNDLE_ID,
    location: Optional[Dict[str, Any]] = None,
    motion: Optional[Dict[str, Any]] = None,
    continuity: Optional[Dict[str, Any]] = None,
    clock: Optional[Dict[str, Any]] = None,
    schema_version: int = CURRENT_SCHEMA_VERSION,
) -> Dict[str, Any]:
    """Unsigned manifest wire tree. Absent vectors are explicit nulls."""
    start = capture_start or datetime.now(timezone.utc)
    end = start + timedelta(seconds=duration_seconds)
    return {
        "schemaVersion": schema_version,
        "audioHash": codec.sha256_b64(audio),
        "audioFormat": audio_format,
        "audioSizeBytes": len(audio),
        "captureStart": codec.format_timestamp(start),
        "captureEnd": codec.format_timestamp(end),
        "durationSeconds": float(duration_seconds),
        "appVersion": app_version,
        "appBundleId": app_bundle_id,
        "deviceKeyId": codec.b64encode(key.key_id),
        "publicKey": codec.b64encode(key.public_key_raw),
        "trustVectors": {
            "location": location,
            "motion": motion,
            "continuity": continuity,
            "clock": clock,
        },
    }


def sign_manifest(tree: Dict[str, Any], key: DeviceKey) -> Dict[str, Any]:
    """Return a copy of *tree* with its signature field set."""
    digest = canonicalize.manifest_digest(tree)
    signed = dict(tree)
    signed["signature"] = codec.b64encode(key.sign_digest(digest))
    return signed


def manifest_to_bytes(tree: Dict[str, Any]) -> bytes:
    """Pretty-printed manifest.json contents, as the capture app writes them."""
    return json.dumps(tree, indent=2, sort_keys=True).encode("utf-8")


def write_standard_bundle(
    directory: Path,
    audio: bytes,
    manifest_bytes: bytes,
    audio_name: str = "recording.m4a",
) -> Path:
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    (directory / audio_name).write_bytes(audio)
    (directory / MANIFEST_NAME).write_bytes(manifest_bytes)
    (directory / DISCLOSURE_NAME).write_text(DISCLOSURE_TEXT, encoding="utf-8")
    return directory


def write_archive_bundle(
    path: Path,
    audio: bytes,
    manifest_bytes: bytes,
    audio_name: str = "recording.m4a",
    *,
    folder: Optional[str] = None,
) -> Path:
    """Zip the three members, optionally under one top-level folder."""
    prefix = f"{folder}/" if folder else ""
    path = Path(path)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.writestr(prefix + audio_name, audio)
        zf.writestr(prefix + MANIFEST_NAME, manifest_bytes)
        zf.writestr(prefix + DISCLOSURE_NAME, DISCLOSURE_TEXT)
    return path


__all__ = [
    "DeviceKey",
    "build_manifest",
    "manifest_to_bytes",
    "sign_manifest",
    "write_archive_bundle",
    "write_standard_bundle",
]
