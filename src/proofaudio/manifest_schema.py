"""
Runtime schema enforcement for manifests and sealed bundles.

Validates the three wire documents against the JSON schemas bundled in
src/proofaudio/schemas/:

  manifest.v1.schema.json      signed audio manifest
  trust_vectors.schema.json    referenced by the manifest schema
  sealed_bundle.schema.json    sealed bundle envelope
  sealed_payload.schema.json   decrypted sealed payload

Schemas ship inside the package so they are always available in installed
wheels. Validation FAILS CLOSED: if schemas cannot be loaded, an error is
raised rather than validation being skipped.
"""
from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Dict, List

import referencing
import referencing.jsonschema
from jsonschema import Draft202012Validator

# ---------------------------------------------------------------------------
# Schema loading -- package-relative, fail closed
# ---------------------------------------------------------------------------

_SCHEMA_DIR = Path(__file__).resolve().parent / "schemas"

_SCHEMA_FILES = {
    "manifest": "manifest.v1.schema.json",
    "trust_vectors": "trust_vectors.schema.json",
    "sealed_bundle": "sealed_bundle.schema.json",
    "sealed_payload": "sealed_payload.schema.json",
}

_validators: Dict[str, Draft202012Validator] = {}
_load_lock = threading.Lock()


def _load_validators() -> Dict[str, Draft202012Validator]:
    """Load and cache schema validators with $ref resolution."""
    with _load_lock:
        if _validators:
            return _validators

        missing = [n for n in _SCHEMA_FILES.values() if not (_SCHEMA_DIR / n).exists()]
        if missing:
            raise FileNotFoundError(
                f"Schema files not found in {_SCHEMA_DIR}: {', '.join(missing)}. "
                f"This usually means the package was installed incorrectly."
            )

        schemas = {
            key: json.loads((_SCHEMA_DIR / name).read_text())
            for key, name in _SCHEMA_FILES.items()
        }

        # Build registry for $ref resolution between schemas
        registry = referencing.Registry().with_resources([
            (schema["$id"], referencing.Resource.from_contents(schema))
            for schema in schemas.values()
        ])

        loaded = {
            key: Draft202012Validator(schema, registry=registry)
            for key, schema in schemas.items()
        }
        _validators.update(loaded)
        return _validators


def _validate(name: str, document: Any) -> List[str]:
    validator = _load_validators()[name]
    errors = []
    for error in sorted(validator.iter_errors(document), key=lambda e: list(e.path)):
        path = ".".join(str(p) for p in error.absolute_path) or "(root)"
        errors.append(f"{path}: {error.message}")
    return errors


# ---------------------------------------------------------------------------
# Validation -- fail closed
# ---------------------------------------------------------------------------

def validate_manifest(manifest: Dict[str, Any]) -> List[str]:
    """Validate a manifest wire tree. Returns error messages (empty = valid)."""
    return _validate("manifest", manifest)


def validate_sealed_envelope(envelope: Dict[str, Any]) -> List[str]:
    """Validate a sealed bundle envelope. Returns error messages (empty = valid)."""
    return _validate("sealed_bundle", envelope)


def validate_sealed_payload(payload: Dict[str, Any]) -> List[str]:
    """Validate a decrypted sealed payload. Returns error messages (empty = valid)."""
    return _validate("sealed_payload", payload)


__all__ = ["validate_manifest", "validate_sealed_envelope", "validate_sealed_payload"]
