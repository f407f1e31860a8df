"""
Error taxonomy for proof bundle verification.

Every failure the pipeline can report is one ErrorKind. Each kind has a
stable exit code (the CLI contract) and a fixed user-facing message.
Exit codes are a public API: scripts gate on them.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    HASH_MISMATCH = "HashMismatch"
    SIGNATURE_INVALID = "SignatureInvalid"
    MANIFEST_MALFORMED = "ManifestMalformed"
    SCHEMA_UNSUPPORTED = "SchemaUnsupported"
    AUDIO_FILE_MISSING = "AudioFileMissing"
    AUDIO_FILE_CORRUPT = "AudioFileCorrupt"
    DECRYPTION_FAILED = "DecryptionFailed"
    BUNDLE_CORRUPTED = "BundleCorrupted"
    UNSUPPORTED_BUNDLE_VERSION = "UnsupportedBundleVersion"
    KEY_MALFORMED = "KeyMalformed"

    @property
    def exit_code(self) -> int:
        return _EXIT_CODES[self]

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_EXIT_CODES: Dict[ErrorKind, int] = {
    ErrorKind.HASH_MISMATCH: 1,
    ErrorKind.SIGNATURE_INVALID: 2,
    ErrorKind.MANIFEST_MALFORMED: 3,
    ErrorKind.SCHEMA_UNSUPPORTED: 4,
    ErrorKind.AUDIO_FILE_MISSING: 5,
    ErrorKind.AUDIO_FILE_CORRUPT: 6,
    ErrorKind.DECRYPTION_FAILED: 7,
    ErrorKind.BUNDLE_CORRUPTED: 8,
    ErrorKind.UNSUPPORTED_BUNDLE_VERSION: 9,
    ErrorKind.KEY_MALFORMED: 10,
}

_MESSAGES: Dict[ErrorKind, str] = {
    ErrorKind.HASH_MISMATCH: "Audio has been modified since capture",
    ErrorKind.SIGNATURE_INVALID: "Signature verification failed",
    ErrorKind.MANIFEST_MALFORMED: "Invalid proof file",
    ErrorKind.SCHEMA_UNSUPPORTED: "Proof format version is not supported",
    ErrorKind.AUDIO_FILE_MISSING: "Audio file not found",
    ErrorKind.AUDIO_FILE_CORRUPT: "Audio file is corrupted",
    ErrorKind.DECRYPTION_FAILED: "Could not decrypt. Check your password",
    ErrorKind.BUNDLE_CORRUPTED: "This file has been modified and cannot be opened",
    ErrorKind.UNSUPPORTED_BUNDLE_VERSION: "This sealed proof requires a newer app version",
    ErrorKind.KEY_MALFORMED: "Public key or signature is malformed",
}

# Longer explanations shown under the summary in text output.
REMEDIATIONS: Dict[ErrorKind, str] = {
    ErrorKind.HASH_MISMATCH: (
        "The audio file does not match the cryptographic hash recorded at "
        "capture time. This recording cannot be verified as authentic."
    ),
    ErrorKind.SIGNATURE_INVALID: (
        "The digital signature is invalid. The manifest may have been "
        "tampered with or was not created by the capture app."
    ),
    ErrorKind.DECRYPTION_FAILED: (
        "Could not decrypt the sealed proof. Please check your password "
        "and try again."
    ),
    ErrorKind.SCHEMA_UNSUPPORTED: (
        "This proof was produced by a newer app version. Update the "
        "verifier and try again."
    ),
}


class VerificationError(Exception):
    """A terminal pipeline failure of a single kind."""

    def __init__(self, kind: ErrorKind, detail: str = "", *, version: Optional[int] = None):
        self.kind = kind
        self.detail = detail
        self.version = version
        super().__init__(self.describe())

    @property
    def exit_code(self) -> int:
        return self.kind.exit_code

    def describe(self) -> str:
        if self.version is not None and self.kind is ErrorKind.SCHEMA_UNSUPPORTED:
            return f"Proof format version {self.version} is not supported"
        return self.kind.message

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "errorKind": self.kind.value,
            "error": self.describe(),
            "exitCode": self.exit_code,
        }
        if self.detail:
            d["detail"] = self.detail
        return d


class ExtractionError(Exception):
    """Writing extracted audio failed after a successful verification."""


__all__ = [
    "ErrorKind",
    "REMEDIATIONS",
    "VerificationError",
    "ExtractionError",
]
