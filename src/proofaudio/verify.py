"""
Verification orchestrator.

Pipeline for one bundle, strictly in order:

  classify -> [unseal] -> parse manifest -> schema gate -> audio hash
  -> canonicalize + signature -> trust level

Any stage may fail with a VerificationError; the first failure ends the
run. verify_bundle() converts that into a failed VerificationResult, so
bad input never escapes as an exception. Cryptographic work only starts
after the schema version has been accepted.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Sequence, Union

from proofaudio import bundle, canonicalize, codec, sealed
from proofaudio.bundle import BundleKind
from proofaudio.config import DEFAULT_CONFIG, VerifierConfig
from proofaudio.errors import ErrorKind, ExtractionError, VerificationError
from proofaudio.manifest import SignedAudioManifest, check_schema_version, parse_wire, validate_wire
from proofaudio.secure import SecretBuffer
from proofaudio.trust import TrustLevel, compute_trust_level

logger = logging.getLogger(__name__)

DEFAULT_EXTRACT_NAME = "recording.m4a"

PathLike = Union[str, Path]


# ---------------------------------------------------------------------------
# Result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerificationResult:
    """Outcome of one verification: Verified or Failed(kind), never both."""

    verified: bool
    bundle_kind: Optional[BundleKind] = None
    trust_level: Optional[TrustLevel] = None
    manifest: Optional[SignedAudioManifest] = None
    error: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    detail: str = ""
    warnings: List[str] = field(default_factory=list)
    extracted_path: Optional[Path] = None
    path: Optional[str] = None

    @classmethod
    def failed(
        cls,
        exc: VerificationError,
        *,
        bundle_kind: Optional[BundleKind] = None,
        path: Optional[str] = None,
    ) -> "VerificationResult":
        return cls(
            verified=False,
            bundle_kind=bundle_kind,
            error=exc.kind,
            error_message=exc.describe(),
            detail=exc.detail,
            path=path,
        )

    @property
    def exit_code(self) -> int:
        if self.verified or self.error is None:
            return 0
        return self.error.exit_code

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "status": "verified" if self.verified else "failed",
        }
        if self.path is not None:
            d["path"] = self.path
        if self.bundle_kind is not None:
            d["bundleKind"] = self.bundle_kind.value
        if self.verified:
            if self.trust_level is not None:
                d["trustLevel"] = self.trust_level.value
                d["trustLabel"] = self.trust_level.label
            if self.manifest is not None:
                d["manifest"] = self.manifest.summary()
        else:
            d["error"] = self.error_message
            d["errorKind"] = self.error.value if self.error else None
            d["exitCode"] = self.exit_code
            if self.detail:
                d["detail"] = self.detail
        d["warnings"] = list(self.warnings)
        if self.extracted_path is not None:
            d["extractedPath"] = str(self.extracted_path)
        return d


# ---------------------------------------------------------------------------
# Core pipeline
# ---------------------------------------------------------------------------

def _cross_checks(manifest: SignedAudioManifest, audio: bytes) -> List[str]:
    warnings: List[str] = []
    if not codec.digests_equal(manifest.device_key_id, codec.device_key_id(manifest.public_key)):
        warnings.append("deviceKeyId does not match the SHA-256 of the public key")
    if manifest.audio_size_bytes != len(audio):
        warnings.append(
            f"audioSizeBytes is {manifest.audio_size_bytes} but the audio is {len(audio)} bytes"
        )
    return warnings


def verify_audio_and_manifest(
    audio: bytes,
    manifest_bytes: bytes,
    config: Optional[VerifierConfig] = None,
) -> VerificationResult:
    """Verify an in-memory (audio, manifest) pair.

    Raises VerificationError on the first failing stage.
    """
    config = config or DEFAULT_CONFIG

    tree = parse_wire(manifest_bytes)
    version = check_schema_version(tree, config)
    logger.debug("manifest schemaVersion %d accepted", version)
    manifest = validate_wire(tree)

    if not codec.digests_equal(codec.sha256_digest(audio), manifest.audio_hash):
        raise VerificationError(ErrorKind.HASH_MISMATCH)
    logger.debug("audio hash matches (%d bytes)", len(audio))

    public_key = codec.reconstruct_public_key(manifest.public_key)
    r, s = codec.parse_signature(manifest.signature)
    try:
        digest = canonicalize.manifest_digest(tree)
    except (ValueError, TypeError, RecursionError) as exc:
        raise VerificationError(
            ErrorKind.MANIFEST_MALFORMED, f"manifest cannot be canonicalized: {exc}"
        ) from None
    if not codec.verify_ecdsa(public_key, digest, r, s):
        raise VerificationError(ErrorKind.SIGNATURE_INVALID)
    logger.debug("manifest signature valid")

    level = compute_trust_level(manifest.trust_vectors)
    logger.debug("trust level %s", level.value)
    return VerificationResult(
        verified=True,
        trust_level=level,
        manifest=manifest,
        warnings=_cross_checks(manifest, audio),
    )


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

def safe_audio_name(filename: str) -> str:
    """Final path component of *filename*, or the default when nothing is left."""
    name = PurePosixPath(filename.replace("\\", "/")).name
    if name in ("", ".", ".."):
        return DEFAULT_EXTRACT_NAME
    return name


def extract_audio(audio: bytes, filename: str, directory: PathLike) -> Path:
    target = Path(directory) / safe_audio_name(filename)
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(audio)
    except OSError as exc:
        raise ExtractionError(f"cannot write {target}: {exc.strerror or exc}") from exc
    logger.debug("extracted audio to %s", target)
    return target


# ---------------------------------------------------------------------------
# Public entry points
# ---------------------------------------------------------------------------

def verify_bundle(
    path: PathLike,
    password: Union[str, SecretBuffer, None] = None,
    *,
    extract_to: Optional[PathLike] = None,
    config: Optional[VerifierConfig] = None,
) -> VerificationResult:
    """Verify the bundle at *path*.

    Failures are returned, not raised. The one exception is
    ExtractionError, raised when *extract_to* is set, the sealed bundle
    verified, and the audio could not be written.
    """
    config = config or DEFAULT_CONFIG
    shown = str(path)
    kind: Optional[BundleKind] = None
    try:
        loaded = bundle.load_bundle(Path(path), config)
        kind = loaded.kind
        if kind is BundleKind.SEALED:
            payload = sealed.unseal(loaded.sealed or b"", password, config=config)
            audio, manifest_bytes, audio_name = (
                payload.audio, payload.manifest, payload.audio_filename,
            )
        else:
            members = loaded.members
            if members is None:
                raise VerificationError(
                    ErrorKind.MANIFEST_MALFORMED, f"{kind.value} bundle has no members"
                )
            audio, manifest_bytes, audio_name = (
                members.audio, members.manifest, members.audio_name,
            )
        result = verify_audio_and_manifest(audio, manifest_bytes, config)
    except VerificationError as exc:
        logger.debug("verification failed at %s: %s", exc.kind.value, exc.detail)
        return VerificationResult.failed(exc, bundle_kind=kind, path=shown)

    extracted = None
    if extract_to is not None and kind is BundleKind.SEALED:
        extracted = extract_audio(audio, audio_name, extract_to)
    return replace(result, bundle_kind=kind, extracted_path=extracted, path=shown)


def verify_many(
    paths: Sequence[PathLike],
    password: Optional[str] = None,
    *,
    max_workers: int = 4,
    config: Optional[VerifierConfig] = None,
) -> List[VerificationResult]:
    """Verify independent bundles concurrently. Results keep input order."""
    if not paths:
        return []
    workers = max(1, min(max_workers, len(paths)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(lambda p: verify_bundle(p, password, config=config), paths))


__all__ = [
    "DEFAULT_EXTRACT_NAME",
    "VerificationResult",
    "extract_audio",
    "safe_audio_name",
    "verify_audio_and_manifest",
    "verify_bundle",
    "verify_many",
]
