"""
Signed audio manifest: wire parsing and the typed record.

A manifest is handled in two forms:

  wire tree   the JSON document as parsed (dicts, lists, int, float, str).
              This is what gets canonicalized, so extra fields written by
              the producer stay covered by the signature.
  SignedAudioManifest
              the frozen, typed view used by the pipeline and for display.
              Base64 fields are decoded to raw bytes.
"""
from __future__ import annotations

import json
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from proofaudio import codec
from proofaudio.config import DEFAULT_CONFIG, VerifierConfig
from proofaudio.errors import ErrorKind, VerificationError
from proofaudio.manifest_schema import validate_manifest

_WIRE_CONFIG = ConfigDict(
    frozen=True,
    populate_by_name=True,
    extra="allow",
    protected_namespaces=(),
)


def _decode_b64_field(value: Any, field: str, length: Optional[int] = None) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    try:
        return codec.b64decode(value, field=field, length=length)
    except VerificationError as exc:
        raise ValueError(exc.detail) from None


# ---------------------------------------------------------------------------
# Trust vectors
# ---------------------------------------------------------------------------

class LocationSnapshot(BaseModel):
    model_config = _WIRE_CONFIG

    lat: float
    lon: float
    accuracy: float


class LocationVector(BaseModel):
    model_config = _WIRE_CONFIG

    start: LocationSnapshot
    end: LocationSnapshot


class MotionVector(BaseModel):
    model_config = _WIRE_CONFIG

    acceleration_variance: float = Field(alias="accelerationVariance")
    rotation_variance: float = Field(alias="rotationVariance")
    duration: float
    sample_count: int = Field(alias="sampleCount")

    @property
    def is_stationary(self) -> bool:
        return self.acceleration_variance < 0.01


class InterruptionEvent(BaseModel):
    model_config = _WIRE_CONFIG

    timestamp: datetime
    reason: str


class ContinuityVector(BaseModel):
    model_config = _WIRE_CONFIG

    uninterrupted: bool
    interruption_events: List[InterruptionEvent] = Field(alias="interruptionEvents")


class ClockVector(BaseModel):
    model_config = _WIRE_CONFIG

    wall_clock_start: datetime = Field(alias="wallClockStart")
    wall_clock_end: datetime = Field(alias="wallClockEnd")
    monotonic_delta: float = Field(alias="monotonicDelta")
    time_zone: str = Field(alias="timeZone")


class TrustVectors(BaseModel):
    """Four independent, optional context records captured with the audio."""

    model_config = _WIRE_CONFIG

    location: Optional[LocationVector] = None
    motion: Optional[MotionVector] = None
    continuity: Optional[ContinuityVector] = None
    clock: Optional[ClockVector] = None


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------

class SignedAudioManifest(BaseModel):
    model_config = _WIRE_CONFIG

    schema_version: int = Field(alias="schemaVersion", ge=1)
    audio_hash: bytes = Field(alias="audioHash")
    audio_format: str = Field(alias="audioFormat")
    audio_size_bytes: int = Field(alias="audioSizeBytes", ge=0)
    capture_start: datetime = Field(alias="captureStart")
    capture_end: datetime = Field(alias="captureEnd")
    duration_seconds: float = Field(alias="durationSeconds")
    app_version: str = Field(alias="appVersion")
    app_bundle_id: str = Field(alias="appBundleId")
    device_key_id: bytes = Field(alias="deviceKeyId")
    public_key: bytes = Field(alias="publicKey")
    trust_vectors: TrustVectors = Field(alias="trustVectors")
    signature: bytes

    @field_validator("audio_hash", mode="before")
    @classmethod
    def _decode_audio_hash(cls, value: Any) -> bytes:
        return _decode_b64_field(value, "audioHash", codec.DIGEST_LEN)

    # Lengths of key material are checked by the codec (KeyMalformed).
    @field_validator("device_key_id", "public_key", "signature", mode="before")
    @classmethod
    def _decode_key_material(cls, value: Any, info: Any) -> bytes:
        return _decode_b64_field(value, info.field_name)

    @property
    def audio_hash_b64(self) -> str:
        return codec.b64encode(self.audio_hash)

    @property
    def device_key_id_b64(self) -> str:
        return codec.b64encode(self.device_key_id)

    def summary(self) -> Dict[str, Any]:
        """Machine-readable snapshot for reports."""
        tv = self.trust_vectors
        location = None
        if tv.location is not None:
            location = {
                "startLat": tv.location.start.lat,
                "startLon": tv.location.start.lon,
                "startAccuracy": tv.location.start.accuracy,
                "endLat": tv.location.end.lat,
                "endLon": tv.location.end.lon,
                "endAccuracy": tv.location.end.accuracy,
            }
        motion = None
        if tv.motion is not None:
            motion = {
                "accelerationVariance": tv.motion.acceleration_variance,
                "rotationVariance": tv.motion.rotation_variance,
                "sampleCount": tv.motion.sample_count,
            }
        continuity = None
        if tv.continuity is not None:
            continuity = {
                "uninterrupted": tv.continuity.uninterrupted,
                "interruptionCount": len(tv.continuity.interruption_events),
            }
        clock = None
        if tv.clock is not None:
            clock = {
                "timeZone": tv.clock.time_zone,
                "monotonicDelta": tv.clock.monotonic_delta,
            }
        return {
            "schemaVersion": self.schema_version,
            "recording": {
                "captureStart": codec.format_timestamp(self.capture_start),
                "captureEnd": codec.format_timestamp(self.capture_end),
                "durationSeconds": self.duration_seconds,
                "audioFormat": self.audio_format,
                "audioSizeBytes": self.audio_size_bytes,
                "audioHash": self.audio_hash_b64,
            },
            "identity": {
                "deviceKeyId": self.device_key_id_b64,
                "appBundleId": self.app_bundle_id,
                "appVersion": self.app_version,
            },
            "trustVectors": {
                "location": location,
                "motion": motion,
                "continuity": continuity,
                "clock": clock,
            },
        }


# ---------------------------------------------------------------------------
# Parsing stages
# ---------------------------------------------------------------------------

# Containers nested deeper than this are rejected at parse time.
MAX_JSON_DEPTH = 128


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant: {name}")


def _finite_float(text: str) -> float:
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"number out of range: {text}")
    return value


def _bounded_int(text: str) -> int:
    # Integers past 64 bits are read as doubles, so they must fit one.
    value = int(text)
    try:
        float(value)
    except OverflowError:
        raise ValueError(f"number out of range ({len(text)} digits)") from None
    return value


def _check_depth(tree: Any, limit: int = MAX_JSON_DEPTH) -> None:
    stack = [(tree, 1)]
    while stack:
        node, depth = stack.pop()
        if depth > limit:
            raise ValueError(f"nesting deeper than {limit} levels")
        children = node.values() if isinstance(node, dict) else node
        for child in children:
            if isinstance(child, (dict, list)):
                stack.append((child, depth + 1))


def load_json_object(data: bytes, kind: ErrorKind, what: str) -> Dict[str, Any]:
    """Strict JSON: UTF-8 only, no NaN/Infinity, bounded numbers and depth,
    top level must be an object."""
    try:
        tree = json.loads(
            data.decode("utf-8"),
            parse_constant=_reject_constant,
            parse_float=_finite_float,
            parse_int=_bounded_int,
        )
        if isinstance(tree, (dict, list)):
            _check_depth(tree)
    except (UnicodeDecodeError, ValueError, RecursionError) as exc:
        raise VerificationError(kind, f"{what} is not valid JSON: {exc}") from None
    if not isinstance(tree, dict):
        raise VerificationError(kind, f"{what} must be a JSON object")
    return tree


def parse_wire(data: bytes) -> Dict[str, Any]:
    """Parse manifest bytes into the wire tree."""
    return load_json_object(data, ErrorKind.MANIFEST_MALFORMED, "manifest")


def check_schema_version(tree: Dict[str, Any], config: VerifierConfig = DEFAULT_CONFIG) -> int:
    """Gate on schemaVersion before anything else is trusted."""
    version = tree.get("schemaVersion")
    if isinstance(version, bool) or not isinstance(version, int):
        raise VerificationError(
            ErrorKind.MANIFEST_MALFORMED, "schemaVersion must be an integer"
        )
    if version > config.max_schema_version:
        raise VerificationError(
            ErrorKind.SCHEMA_UNSUPPORTED,
            f"manifest schemaVersion {version} > supported {config.max_schema_version}",
            version=version,
        )
    return version


def validate_wire(tree: Dict[str, Any]) -> SignedAudioManifest:
    """Structural validation, then the typed record."""
    errors = validate_manifest(tree)
    if errors:
        raise VerificationError(ErrorKind.MANIFEST_MALFORMED, "; ".join(errors[:5]))
    try:
        return SignedAudioManifest.model_validate(tree)
    except ValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(p) for p in first.get("loc", ())) or "(root)"
        raise VerificationError(
            ErrorKind.MANIFEST_MALFORMED, f"{loc}: {first.get('msg', 'invalid')}"
        ) from None


__all__ = [
    "ClockVector",
    "ContinuityVector",
    "InterruptionEvent",
    "LocationSnapshot",
    "LocationVector",
    "MAX_JSON_DEPTH",
    "MotionVector",
    "SignedAudioManifest",
    "TrustVectors",
    "check_schema_version",
    "load_json_object",
    "parse_wire",
    "validate_wire",
]
