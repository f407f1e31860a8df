"""Shared fixtures: signed manifests and bundles built at test time."""
from __future__ import annotations

import copy
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import pytest

from proofaudio.sealed import seal_bundle
from proofaudio.signing import (
    DeviceKey,
    build_manifest,
    manifest_to_bytes,
    sign_manifest,
    write_standard_bundle,
)

PASSWORD = "TestPassword123!"
TEST_ITERATIONS = 1_000
CAPTURE_START = datetime(2025, 1, 15, 10, 30, 0, tzinfo=timezone.utc)

AUDIO = b"\x00\x00\x00\x20ftypM4A " + bytes(range(256)) * 8

LOCATION = {
    "start": {"lat": 37.7749, "lon": -122.4194, "accuracy": 5.0},
    "end": {"lat": 37.775, "lon": -122.4195, "accuracy": 4.5},
}
MOTION = {
    "accelerationVariance": 0.004,
    "rotationVariance": 0.0021,
    "duration": 12.5,
    "sampleCount": 1250,
}
CONTINUITY = {"uninterrupted": True, "interruptionEvents": []}
CLOCK = {
    "wallClockStart": "2025-01-15T10:30:00.000Z",
    "wallClockEnd": "2025-01-15T10:30:12.500Z",
    "monotonicDelta": 12.5,
    "timeZone": "America/Los_Angeles",
}


@pytest.fixture
def password() -> str:
    return PASSWORD


@pytest.fixture
def audio() -> bytes:
    return AUDIO


@pytest.fixture
def full_vectors() -> Dict[str, Any]:
    return {
        "location": copy.deepcopy(LOCATION),
        "motion": copy.deepcopy(MOTION),
        "continuity": copy.deepcopy(CONTINUITY),
        "clock": copy.deepcopy(CLOCK),
    }


@pytest.fixture
def device_key() -> DeviceKey:
    return DeviceKey.from_private_value(0x1F2E3D4C5B6A79880123456789ABCDEF)


@pytest.fixture
def make_manifest(device_key) -> Callable[..., Dict[str, Any]]:
    """Signed wire tree for *audio*. Keyword args go to build_manifest."""

    def _make(
        audio: bytes = AUDIO,
        *,
        key: Optional[DeviceKey] = None,
        sign: bool = True,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        kwargs.setdefault("capture_start", CAPTURE_START)
        kwargs.setdefault("duration_seconds", 12.5)
        signer = key or device_key
        tree = build_manifest(audio, signer, **kwargs)
        return sign_manifest(tree, signer) if sign else tree

    return _make


@pytest.fixture
def make_bundle(tmp_path, make_manifest) -> Callable[..., Path]:
    """Standard bundle directory. Pass *manifest* (tree or bytes) to override."""
    counter = {"n": 0}

    def _make(
        audio: bytes = AUDIO,
        manifest: Any = None,
        *,
        audio_name: str = "recording.m4a",
        **kwargs: Any,
    ) -> Path:
        counter["n"] += 1
        if manifest is None:
            manifest = make_manifest(audio, **kwargs)
        data = manifest if isinstance(manifest, bytes) else manifest_to_bytes(manifest)
        return write_standard_bundle(
            tmp_path / f"bundle_{counter['n']}", audio, data, audio_name
        )

    return _make


@pytest.fixture
def make_sealed(tmp_path, make_manifest) -> Callable[..., Path]:
    """Sealed .proofaudio file with a cheap PBKDF2 work factor."""
    counter = {"n": 0}

    def _make(
        audio: bytes = AUDIO,
        manifest: Any = None,
        *,
        password: str = PASSWORD,
        audio_filename: str = "recording.m4a",
        **seal_kwargs: Any,
    ) -> Path:
        counter["n"] += 1
        if manifest is None:
            manifest = make_manifest(audio)
        data = manifest if isinstance(manifest, bytes) else manifest_to_bytes(manifest)
        seal_kwargs.setdefault("iterations", TEST_ITERATIONS)
        sealed = seal_bundle(audio, data, audio_filename, password, **seal_kwargs)
        path = tmp_path / f"sealed_{counter['n']}.proofaudio"
        path.write_bytes(sealed)
        return path

    return _make
