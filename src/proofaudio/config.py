"""
Verifier configuration.

All limits are compiled-in constants gathered into one frozen object.
Callers that need different limits build their own VerifierConfig and
pass it down explicitly; nothing here is mutated at runtime.
"""
from __future__ import annotations

from dataclasses import dataclass

# Highest manifest schemaVersion this verifier understands.
CURRENT_SCHEMA_VERSION = 1

# Highest sealed bundle envelope version this verifier understands.
CURRENT_BUNDLE_VERSION = 1

# Work factor the capture app uses when sealing.
DEFAULT_PBKDF2_ITERATIONS = 600_000

ENV_PASSWORD = "PROOFAUDIO_PASSWORD"


@dataclass(frozen=True)
class VerifierConfig:
    max_schema_version: int = CURRENT_SCHEMA_VERSION
    max_bundle_version: int = CURRENT_BUNDLE_VERSION

    # PBKDF2-HMAC-SHA256
    pbkdf2_min_iterations: int = 1_000
    pbkdf2_max_iterations: int = 10_000_000

    # Argon2id ("iterations" is the time cost)
    argon2_max_time_cost: int = 64
    argon2_min_memory_kb: int = 8
    argon2_max_memory_kb: int = 4 * 1024 * 1024
    argon2_max_parallelism: int = 64

    # Upper bound for any single member read into memory.
    max_member_bytes: int = 1024 * 1024 * 1024

    default_seal_iterations: int = DEFAULT_PBKDF2_ITERATIONS


DEFAULT_CONFIG = VerifierConfig()


__all__ = [
    "CURRENT_SCHEMA_VERSION",
    "CURRENT_BUNDLE_VERSION",
    "DEFAULT_PBKDF2_ITERATIONS",
    "DEFAULT_CONFIG",
    "ENV_PASSWORD",
    "VerifierConfig",
]
