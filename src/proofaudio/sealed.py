"""
Sealed proof bundles: password-protected .proofaudio containers.

Envelope (JSON):
    {version, salt, nonce, kdfAlgorithm, kdfParameters{iterations,
     memoryCostKB, parallelism}, encryptedPayload, createdAt}

encryptedPayload is AES-256-GCM in the combined layout
nonce(12) || ciphertext || tag(16). Older writers may carry the nonce only
in the header with ciphertext || tag in the blob; both are accepted.

The plaintext is JSON {audioData, manifestData, audioFilename} with the
two data fields Base64-encoded.

Unsealing is linear with no retries. Wrong password and tampered
ciphertext both surface as DecryptionFailed and are never distinguished.
Password and derived key live in SecretBuffers that are wiped on every
exit path; neither is logged.
"""
from __future__ import annotations

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Union

from argon2.low_level import Type as Argon2Type
from argon2.low_level import hash_secret_raw
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from proofaudio import codec
from proofaudio.config import CURRENT_BUNDLE_VERSION, DEFAULT_CONFIG, VerifierConfig
from proofaudio.errors import ErrorKind, VerificationError
from proofaudio.manifest import load_json_object
from proofaudio.manifest_schema import validate_sealed_envelope, validate_sealed_payload
from proofaudio.secure import SecretBuffer

logger = logging.getLogger(__name__)

KDF_PBKDF2 = "pbkdf2"
KDF_ARGON2ID = "argon2id"
SUPPORTED_KDFS = (KDF_PBKDF2, KDF_ARGON2ID)

KEY_LEN = 32
SALT_LEN = 32
NONCE_LEN = 12
TAG_LEN = 16

SEALED_SUFFIX = ".proofaudio"

_CORRUPT = ErrorKind.BUNDLE_CORRUPTED


# ---------------------------------------------------------------------------
# Envelope model
# ---------------------------------------------------------------------------

def _decode(value: Any, name: str, length: Optional[int] = None) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    try:
        return codec.b64decode(value, kind=_CORRUPT, field=name, length=length)
    except VerificationError as exc:
        raise ValueError(exc.detail) from None


class KdfParameters(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    iterations: int
    memory_cost_kb: Optional[int] = Field(default=None, alias="memoryCostKB")
    parallelism: Optional[int] = None


class SealedBundleHeader(BaseModel):
    """Outer envelope of a sealed bundle. Read once, never mutated."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    version: int
    salt: bytes
    nonce: Optional[bytes] = None
    kdf_algorithm: str = Field(alias="kdfAlgorithm")
    kdf_parameters: KdfParameters = Field(alias="kdfParameters")
    encrypted_payload: bytes = Field(alias="encryptedPayload")
    created_at: str = Field(alias="createdAt")

    @field_validator("salt", mode="before")
    @classmethod
    def _decode_salt(cls, value: Any) -> bytes:
        return _decode(value, "salt", SALT_LEN)

    @field_validator("nonce", mode="before")
    @classmethod
    def _decode_nonce(cls, value: Any) -> Optional[bytes]:
        if value is None or value == "":
            return None
        return _decode(value, "nonce", NONCE_LEN)

    @field_validator("encrypted_payload", mode="before")
    @classmethod
    def _decode_payload(cls, value: Any) -> bytes:
        return _decode(value, "encryptedPayload")


@dataclass(frozen=True)
class DecryptedPayload:
    """Plaintext contents of a sealed bundle. Memory only."""

    audio: bytes = field(repr=False)
    manifest: bytes = field(repr=False)
    audio_filename: str


# ---------------------------------------------------------------------------
# Envelope parsing
# ---------------------------------------------------------------------------

def parse_header(data: bytes, config: VerifierConfig = DEFAULT_CONFIG) -> SealedBundleHeader:
    """Parse and gate the envelope. Version is checked before anything else."""
    envelope = load_json_object(data, _CORRUPT, "sealed bundle")

    version = envelope.get("version")
    if isinstance(version, bool) or not isinstance(version, int):
        raise VerificationError(_CORRUPT, "sealed bundle version must be an integer")
    if version > config.max_bundle_version:
        raise VerificationError(
            ErrorKind.UNSUPPORTED_BUNDLE_VERSION,
            f"sealed bundle version {version} > supported {config.max_bundle_version}",
            version=version,
        )

    errors = validate_sealed_envelope(envelope)
    if errors:
        raise VerificationError(_CORRUPT, "; ".join(errors[:5]))
    try:
        header = SealedBundleHeader.model_validate(envelope)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "(root)"
        raise VerificationError(_CORRUPT, f"{loc}: {first.get('msg', 'invalid')}") from None

    check_kdf_parameters(header.kdf_algorithm, header.kdf_parameters, config)
    return header


def check_kdf_parameters(
    algorithm: str, params: KdfParameters, config: VerifierConfig = DEFAULT_CONFIG
) -> None:
    """Reject unknown algorithms and work factors outside the compiled-in bounds."""
    if algorithm == KDF_PBKDF2:
        if not config.pbkdf2_min_iterations <= params.iterations <= config.pbkdf2_max_iterations:
            raise VerificationError(
                _CORRUPT, f"pbkdf2 iterations out of bounds: {params.iterations}"
            )
        return
    if algorithm == KDF_ARGON2ID:
        if params.memory_cost_kb is None or params.parallelism is None:
            raise VerificationError(_CORRUPT, "argon2id requires memoryCostKB and parallelism")
        if not 1 <= params.iterations <= config.argon2_max_time_cost:
            raise VerificationError(
                _CORRUPT, f"argon2id time cost out of bounds: {params.iterations}"
            )
        if not 1 <= params.parallelism <= config.argon2_max_parallelism:
            raise VerificationError(
                _CORRUPT, f"argon2id parallelism out of bounds: {params.parallelism}"
            )
        low = max(config.argon2_min_memory_kb, 8 * params.parallelism)
        if not low <= params.memory_cost_kb <= config.argon2_max_memory_kb:
            raise VerificationError(
                _CORRUPT, f"argon2id memory cost out of bounds: {params.memory_cost_kb}"
            )
        return
    raise VerificationError(_CORRUPT, f"unknown KDF algorithm: {algorithm!r}")


# ---------------------------------------------------------------------------
# Key derivation
# ---------------------------------------------------------------------------

def derive_key(
    password: SecretBuffer, salt: bytes, algorithm: str, params: KdfParameters
) -> SecretBuffer:
    """Derive a 256-bit key. The caller wipes the returned buffer."""
    if algorithm == KDF_PBKDF2:
        raw = hashlib.pbkdf2_hmac(
            "sha256", password.data, salt, params.iterations, dklen=KEY_LEN
        )
    elif algorithm == KDF_ARGON2ID:
        raw = hash_secret_raw(
            secret=bytes(password.data),
            salt=salt,
            time_cost=params.iterations,
            memory_cost=params.memory_cost_kb,
            parallelism=params.parallelism,
            hash_len=KEY_LEN,
            type=Argon2Type.ID,
        )
    else:
        raise VerificationError(_CORRUPT, f"unknown KDF algorithm: {algorithm!r}")
    key = SecretBuffer(raw)
    del raw
    return key


# ---------------------------------------------------------------------------
# Decryption
# ---------------------------------------------------------------------------

def _layouts(header: SealedBundleHeader) -> List[Tuple[str, bytes, bytes]]:
    """Candidate (layout, nonce, ciphertext||tag) splits of the payload blob."""
    blob = header.encrypted_payload
    candidates: List[Tuple[str, bytes, bytes]] = []
    if len(blob) >= NONCE_LEN + TAG_LEN:
        candidates.append(("combined", blob[:NONCE_LEN], blob[NONCE_LEN:]))
    if (
        header.nonce is not None
        and blob[:NONCE_LEN] != header.nonce
        and len(blob) >= TAG_LEN
    ):
        candidates.append(("detached", header.nonce, blob))
    if not candidates:
        raise VerificationError(_CORRUPT, f"encrypted payload too short: {len(blob)} bytes")
    return candidates


def _decrypt(key: SecretBuffer, header: SealedBundleHeader) -> bytes:
    cipher = AESGCM(key.data)
    for layout, nonce, sealed in _layouts(header):
        try:
            plaintext = cipher.decrypt(nonce, sealed, None)
        except InvalidTag:
            continue
        logger.debug("sealed payload decrypted (%s layout)", layout)
        return plaintext
    raise VerificationError(ErrorKind.DECRYPTION_FAILED)


def _parse_payload(plaintext: bytes) -> DecryptedPayload:
    doc = load_json_object(plaintext, _CORRUPT, "decrypted payload")
    errors = validate_sealed_payload(doc)
    if errors:
        raise VerificationError(_CORRUPT, "; ".join(errors[:5]))
    return DecryptedPayload(
        audio=codec.b64decode(doc["audioData"], kind=_CORRUPT, field="audioData"),
        manifest=codec.b64decode(doc["manifestData"], kind=_CORRUPT, field="manifestData"),
        audio_filename=doc["audioFilename"],
    )


def unseal(
    data: bytes,
    password: Union[str, SecretBuffer, None],
    *,
    config: VerifierConfig = DEFAULT_CONFIG,
) -> DecryptedPayload:
    """Parse, derive, decrypt and parse the payload of a sealed bundle."""
    header = parse_header(data, config)
    logger.debug(
        "sealed bundle v%d kdf=%s iterations=%d",
        header.version, header.kdf_algorithm, header.kdf_parameters.iterations,
    )
    if isinstance(password, SecretBuffer):
        return _unseal_with(header, password)
    with SecretBuffer.from_text(password) as pw:
        return _unseal_with(header, pw)


def _unseal_with(header: SealedBundleHeader, password: SecretBuffer) -> DecryptedPayload:
    with derive_key(password, header.salt, header.kdf_algorithm, header.kdf_parameters) as key:
        plaintext = _decrypt(key, header)
    try:
        return _parse_payload(plaintext)
    finally:
        del plaintext


# ---------------------------------------------------------------------------
# Sealing (producer side)
# ---------------------------------------------------------------------------

def seal_bundle(
    audio: bytes,
    manifest: bytes,
    audio_filename: str,
    password: Union[str, SecretBuffer],
    *,
    kdf_algorithm: str = KDF_PBKDF2,
    iterations: Optional[int] = None,
    memory_cost_kb: int = 65536,
    parallelism: int = 1,
    salt: Optional[bytes] = None,
    nonce: Optional[bytes] = None,
    created_at: Optional[datetime] = None,
    config: VerifierConfig = DEFAULT_CONFIG,
) -> bytes:
    """Encrypt an (audio, manifest) pair into sealed bundle bytes.

    Writes the combined layout and echoes the nonce in the header, the
    same shape the capture app produces.
    """
    if iterations is None:
        iterations = config.default_seal_iterations if kdf_algorithm == KDF_PBKDF2 else 3
    salt = os.urandom(SALT_LEN) if salt is None else salt
    nonce = os.urandom(NONCE_LEN) if nonce is None else nonce
    if len(salt) != SALT_LEN or len(nonce) != NONCE_LEN:
        raise ValueError(f"salt must be {SALT_LEN} bytes and nonce {NONCE_LEN} bytes")

    params_doc: Dict[str, Any] = {"iterations": iterations}
    if kdf_algorithm == KDF_ARGON2ID:
        params_doc.update({"memoryCostKB": memory_cost_kb, "parallelism": parallelism})
    else:
        params_doc.update({"memoryCostKB": 0, "parallelism": 1})
    params = KdfParameters.model_validate(params_doc)
    try:
        check_kdf_parameters(kdf_algorithm, params, config)
    except VerificationError as exc:
        raise ValueError(exc.detail) from None

    plaintext = json.dumps({
        "audioData": codec.b64encode(audio),
        "manifestData": codec.b64encode(manifest),
        "audioFilename": audio_filename,
    }).encode("utf-8")

    if isinstance(password, SecretBuffer):
        sealed = _encrypt(password, salt, nonce, kdf_algorithm, params, plaintext)
    else:
        with SecretBuffer.from_text(password) as pw:
            sealed = _encrypt(pw, salt, nonce, kdf_algorithm, params, plaintext)
    del plaintext

    created = created_at or datetime.now(timezone.utc)
    envelope = {
        "version": CURRENT_BUNDLE_VERSION,
        "salt": codec.b64encode(salt),
        "nonce": codec.b64encode(nonce),
        "kdfAlgorithm": kdf_algorithm,
        "kdfParameters": params_doc,
        "encryptedPayload": codec.b64encode(nonce + sealed),
        "createdAt": codec.format_timestamp(created),
    }
    return json.dumps(envelope, indent=2).encode("utf-8")


def _encrypt(
    password: SecretBuffer,
    salt: bytes,
    nonce: bytes,
    algorithm: str,
    params: KdfParameters,
    plaintext: bytes,
) -> bytes:
    with derive_key(password, salt, algorithm, params) as key:
        return AESGCM(key.data).encrypt(nonce, plaintext, None)


__all__ = [
    "DecryptedPayload",
    "KDF_ARGON2ID",
    "KDF_PBKDF2",
    "KdfParameters",
    "SEALED_SUFFIX",
    "SUPPORTED_KDFS",
    "SealedBundleHeader",
    "check_kdf_parameters",
    "derive_key",
    "parse_header",
    "seal_bundle",
    "unseal",
]
