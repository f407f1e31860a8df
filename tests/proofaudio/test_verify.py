"""Verification pipeline: stage ordering, tamper detection, results, extraction."""
from __future__ import annotations

import base64
import json

import pytest

from proofaudio import codec, verify
from proofaudio.bundle import BundleKind
from proofaudio.errors import ErrorKind, ExtractionError, VerificationError
from proofaudio.signing import DeviceKey, manifest_to_bytes, sign_manifest
from proofaudio.trust import TrustLevel
from proofaudio.verify import (
    VerificationResult,
    safe_audio_name,
    verify_audio_and_manifest,
    verify_bundle,
    verify_many,
)

EMPTY_SHA256_B64 = "47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU="


def _flip_b64(value: str, index: int = 0) -> str:
    raw = bytearray(base64.b64decode(value))
    raw[index] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


def _failure(audio: bytes, manifest) -> VerificationError:
    data = manifest if isinstance(manifest, bytes) else manifest_to_bytes(manifest)
    with pytest.raises(VerificationError) as exc_info:
        verify_audio_and_manifest(audio, data)
    return exc_info.value


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestVerified:
    def test_empty_audio_no_vectors_is_level_c(self, make_manifest):
        tree = make_manifest(b"")
        assert tree["audioHash"] == EMPTY_SHA256_B64
        result = verify_audio_and_manifest(b"", manifest_to_bytes(tree))
        assert result.verified
        assert result.trust_level is TrustLevel.C
        assert result.warnings == []

    def test_full_vectors_is_level_a(self, make_manifest, audio, full_vectors):
        result = verify_audio_and_manifest(audio, manifest_to_bytes(make_manifest(audio, **full_vectors)))
        assert result.trust_level is TrustLevel.A

    def test_interrupted_is_level_b(self, make_manifest, audio, full_vectors):
        full_vectors["continuity"] = {
            "uninterrupted": False,
            "interruptionEvents": [{"timestamp": "2025-01-15T10:30:05.000Z", "reason": "siri"}],
        }
        result = verify_audio_and_manifest(audio, manifest_to_bytes(make_manifest(audio, **full_vectors)))
        assert result.trust_level is TrustLevel.B

    def test_key_order_and_whitespace_irrelevant(self, make_manifest, audio, full_vectors):
        tree = make_manifest(audio, **full_vectors)
        reordered = dict(reversed(list(tree.items())))
        data = json.dumps(reordered, separators=(",", ":")).encode()
        assert verify_audio_and_manifest(audio, data).verified

    def test_signed_extra_field_verifies(self, make_manifest, audio, device_key):
        tree = make_manifest(audio, sign=False)
        tree["producerBuild"] = "2025.01/rc1"
        signed = sign_manifest(tree, device_key)
        assert verify_audio_and_manifest(audio, manifest_to_bytes(signed)).verified

    def test_any_device_key_verifies(self, make_manifest, audio):
        key = DeviceKey.generate()
        assert verify_audio_and_manifest(audio, manifest_to_bytes(make_manifest(audio, key=key))).verified

    def test_non_ascii_and_slashes(self, make_manifest, audio):
        tree = make_manifest(audio, app_bundle_id="com.example/çapture", app_version="2.0 “beta”")
        assert verify_audio_and_manifest(audio, manifest_to_bytes(tree)).verified


# ---------------------------------------------------------------------------
# Tampering
# ---------------------------------------------------------------------------

class TestTamper:
    def test_audio_bit_flip(self, make_manifest, audio):
        tree = make_manifest(audio)
        flipped = bytearray(audio)
        flipped[len(flipped) // 2] ^= 0x01
        assert _failure(bytes(flipped), tree).kind is ErrorKind.HASH_MISMATCH

    def test_audio_truncated(self, make_manifest, audio):
        assert _failure(audio[:-1], make_manifest(audio)).kind is ErrorKind.HASH_MISMATCH

    @pytest.mark.parametrize(
        "field,value",
        [
            ("appVersion", "9.9.9"),
            ("audioFormat", "wav"),
            ("captureStart", "2020-01-01T00:00:00.000Z"),
            ("durationSeconds", 99.0),
            ("audioSizeBytes", 1),
        ],
    )
    def test_manifest_field_changed(self, make_manifest, audio, field, value):
        tree = make_manifest(audio)
        tree[field] = value
        assert _failure(audio, tree).kind is ErrorKind.SIGNATURE_INVALID

    def test_float_rewritten_as_int(self, make_manifest, audio):
        tree = make_manifest(audio, duration_seconds=12.0)
        data = manifest_to_bytes(tree).replace(b'"durationSeconds": 12.0', b'"durationSeconds": 12')
        assert b'"durationSeconds": 12,' in data
        assert _failure(audio, data).kind is ErrorKind.SIGNATURE_INVALID

    def test_trust_vector_added(self, make_manifest, audio, full_vectors):
        tree = make_manifest(audio)
        tree["trustVectors"]["location"] = full_vectors["location"]
        assert _failure(audio, tree).kind is ErrorKind.SIGNATURE_INVALID

    def test_unsigned_extra_field(self, make_manifest, audio):
        tree = make_manifest(audio)
        tree["injected"] = True
        assert _failure(audio, tree).kind is ErrorKind.SIGNATURE_INVALID

    def test_signature_bit_flip(self, make_manifest, audio):
        tree = make_manifest(audio)
        tree["signature"] = _flip_b64(tree["signature"], 40)
        assert _failure(audio, tree).kind is ErrorKind.SIGNATURE_INVALID

    def test_swapped_public_key(self, make_manifest, audio):
        tree = make_manifest(audio)
        other = DeviceKey.from_private_value(99)
        tree["publicKey"] = codec.b64encode(other.public_key_raw)
        assert _failure(audio, tree).kind is ErrorKind.SIGNATURE_INVALID

    def test_audio_hash_replaced_with_tampered_audio_hash(self, make_manifest, audio):
        tampered = audio + b"x"
        tree = make_manifest(audio)
        tree["audioHash"] = codec.sha256_b64(tampered)
        assert _failure(tampered, tree).kind is ErrorKind.SIGNATURE_INVALID


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------

class TestKeyMalformed:
    def test_off_curve_public_key(self, make_manifest, audio):
        tree = make_manifest(audio)
        tree["publicKey"] = codec.b64encode(b"\x01" * 64)
        assert _failure(audio, tree).kind is ErrorKind.KEY_MALFORMED

    def test_short_public_key(self, make_manifest, audio):
        tree = make_manifest(audio)
        tree["publicKey"] = codec.b64encode(b"\x01" * 33)
        assert _failure(audio, tree).kind is ErrorKind.KEY_MALFORMED

    def test_der_signature_rejected(self, make_manifest, audio):
        tree = make_manifest(audio)
        tree["signature"] = codec.b64encode(b"\x30" + b"\x01" * 70)
        assert _failure(audio, tree).kind is ErrorKind.KEY_MALFORMED

    def test_hash_checked_before_key(self, make_manifest, audio):
        tree = make_manifest(audio)
        tree["publicKey"] = codec.b64encode(b"\x01" * 64)
        assert _failure(audio + b"x", tree).kind is ErrorKind.HASH_MISMATCH


# ---------------------------------------------------------------------------
# Schema gate
# ---------------------------------------------------------------------------

class TestSchemaGate:
    def test_newer_schema_runs_no_crypto(self, monkeypatch, make_manifest, audio):
        tree = make_manifest(audio, sign=False)
        tree["schemaVersion"] = 2
        tree["signature"] = codec.b64encode(b"\x00" * 64)
        data = manifest_to_bytes(tree)

        calls = []

        def _record(name):
            def _fn(*args, **kwargs):
                calls.append(name)
                raise AssertionError(f"{name} must not run")
            return _fn

        for name in ("sha256_digest", "reconstruct_public_key", "parse_signature", "verify_ecdsa"):
            monkeypatch.setattr(codec, name, _record(name))
        monkeypatch.setattr(verify.canonicalize, "manifest_digest", _record("manifest_digest"))

        err = _failure(audio, data)
        assert err.kind is ErrorKind.SCHEMA_UNSUPPORTED
        assert err.version == 2
        assert calls == []

    def test_newer_schema_with_unknown_shape(self, audio):
        data = json.dumps({"schemaVersion": 7, "somethingNew": {}}).encode()
        assert _failure(audio, data).kind is ErrorKind.SCHEMA_UNSUPPORTED

    def test_string_version_malformed(self, make_manifest, audio):
        tree = make_manifest(audio)
        tree["schemaVersion"] = "1"
        assert _failure(audio, tree).kind is ErrorKind.MANIFEST_MALFORMED

    def test_zero_version_malformed(self, make_manifest, audio):
        tree = make_manifest(audio)
        tree["schemaVersion"] = 0
        assert _failure(audio, tree).kind is ErrorKind.MANIFEST_MALFORMED

    def test_not_json(self, audio):
        assert _failure(audio, b"\x89PNG").kind is ErrorKind.MANIFEST_MALFORMED


# ---------------------------------------------------------------------------
# Warnings
# ---------------------------------------------------------------------------

class TestWarnings:
    def test_device_key_id_mismatch(self, make_manifest, audio, device_key):
        tree = make_manifest(audio, sign=False)
        tree["deviceKeyId"] = codec.b64encode(b"\x00" * 32)
        result = verify_audio_and_manifest(audio, manifest_to_bytes(sign_manifest(tree, device_key)))
        assert result.verified
        assert any("deviceKeyId" in w for w in result.warnings)

    def test_size_mismatch(self, make_manifest, audio, device_key):
        tree = make_manifest(audio, sign=False)
        tree["audioSizeBytes"] = len(audio) + 10
        result = verify_audio_and_manifest(audio, manifest_to_bytes(sign_manifest(tree, device_key)))
        assert result.verified
        assert any("audioSizeBytes" in w for w in result.warnings)


# ---------------------------------------------------------------------------
# verify_bundle
# ---------------------------------------------------------------------------

class TestVerifyBundle:
    def test_directory(self, make_bundle):
        result = verify_bundle(make_bundle())
        assert result.verified
        assert result.bundle_kind is BundleKind.DIRECTORY
        assert result.exit_code == 0

    def test_sealed(self, make_sealed, password, full_vectors, make_manifest, audio):
        path = make_sealed(audio, make_manifest(audio, **full_vectors))
        result = verify_bundle(path, password)
        assert result.verified
        assert result.bundle_kind is BundleKind.SEALED
        assert result.trust_level is TrustLevel.A

    def test_sealed_wrong_password(self, make_sealed):
        result = verify_bundle(make_sealed(), "wrong-password")
        assert not result.verified
        assert result.error is ErrorKind.DECRYPTION_FAILED
        assert result.exit_code == 7
        assert result.trust_level is None
        assert result.manifest is None

    def test_sealed_tampered_audio_inside(self, make_sealed, make_manifest, audio):
        tree = make_manifest(audio)
        path = make_sealed(audio + b"!", tree)
        result = verify_bundle(path, "TestPassword123!")
        assert result.error is ErrorKind.HASH_MISMATCH

    def test_missing_path(self, tmp_path):
        result = verify_bundle(tmp_path / "missing")
        assert result.error is ErrorKind.MANIFEST_MALFORMED
        assert result.bundle_kind is None

    def test_failures_never_raise(self, tmp_path):
        for content in (b"", b"\x00" * 100, b"PK\x03\x04junk", b'{"encryptedPayload": 1}'):
            path = tmp_path / "input.bin"
            path.write_bytes(content)
            result = verify_bundle(path)
            assert not result.verified
            assert result.exit_code in range(1, 11)

    @pytest.mark.parametrize(
        "raw",
        ["9" * 400, "-" + "9" * 400, "[" * 700 + "]" * 700, '{"a":' * 700 + "0" + "}" * 700],
    )
    def test_hostile_extra_field_is_malformed(self, make_manifest, make_bundle, audio, raw):
        tree = make_manifest(audio)
        tree["extra"] = "PLACEHOLDER"
        data = manifest_to_bytes(tree).replace(b'"PLACEHOLDER"', raw.encode())
        result = verify_bundle(make_bundle(audio, data))
        assert not result.verified
        assert result.error is ErrorKind.MANIFEST_MALFORMED
        assert result.exit_code == 3

    def test_huge_audio_size_is_malformed(self, make_manifest, make_bundle, audio):
        tree = make_manifest(audio)
        data = manifest_to_bytes(tree).replace(
            f'"audioSizeBytes": {len(audio)}'.encode(), b'"audioSizeBytes": ' + b"9" * 400
        )
        assert b"9" * 400 in data
        assert verify_bundle(make_bundle(audio, data)).error is ErrorKind.MANIFEST_MALFORMED

    @pytest.mark.parametrize("exc", [ValueError("bad"), TypeError("bad"), RecursionError()])
    def test_canonicalization_failure_is_malformed(self, monkeypatch, make_bundle, exc):
        path = make_bundle()

        def _fail(tree):
            raise exc

        monkeypatch.setattr(verify.canonicalize, "manifest_digest", _fail)
        result = verify_bundle(path)
        assert result.error is ErrorKind.MANIFEST_MALFORMED

    def test_result_is_frozen(self, make_bundle):
        result = verify_bundle(make_bundle())
        with pytest.raises(Exception):
            result.verified = False


class TestResultDict:
    def test_verified_dict(self, make_bundle):
        d = verify_bundle(make_bundle()).to_dict()
        assert d["status"] == "verified"
        assert d["bundleKind"] == "directory"
        assert d["trustLevel"] == "C"
        assert d["manifest"]["schemaVersion"] == 1
        assert "errorKind" not in d
        json.dumps(d)

    def test_failed_dict(self, make_bundle, audio):
        d = verify_bundle(make_bundle(audio=audio, manifest=b"{}")).to_dict()
        assert d["status"] == "failed"
        assert d["errorKind"] == "ManifestMalformed"
        assert d["exitCode"] == 3
        assert d["error"] == "Invalid proof file"
        assert "trustLevel" not in d

    def test_schema_unsupported_message_has_version(self):
        err = VerificationError(ErrorKind.SCHEMA_UNSUPPORTED, version=3)
        d = VerificationResult.failed(err).to_dict()
        assert d["error"] == "Proof format version 3 is not supported"
        assert d["exitCode"] == 4


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------

class TestExtraction:
    def test_extracts_after_verification(self, make_sealed, password, audio, tmp_path):
        out = tmp_path / "out"
        result = verify_bundle(make_sealed(), password, extract_to=out)
        assert result.verified
        assert result.extracted_path == out / "recording.m4a"
        assert result.extracted_path.read_bytes() == audio

    def test_nothing_written_on_failure(self, make_sealed, tmp_path):
        out = tmp_path / "out"
        result = verify_bundle(make_sealed(), "wrong", extract_to=out)
        assert not result.verified
        assert not out.exists()

    def test_standard_bundle_not_extracted(self, make_bundle, tmp_path):
        out = tmp_path / "out"
        result = verify_bundle(make_bundle(), extract_to=out)
        assert result.verified
        assert result.extracted_path is None
        assert not out.exists()

    def test_path_components_stripped(self, make_sealed, password, tmp_path):
        out = tmp_path / "out"
        path = make_sealed(audio_filename="../../etc/evil.m4a")
        result = verify_bundle(path, password, extract_to=out)
        assert result.extracted_path == out / "evil.m4a"
        assert result.extracted_path.exists()

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("recording.m4a", "recording.m4a"),
            ("a/b/c.wav", "c.wav"),
            ("..\\..\\win.aac", "win.aac"),
            ("", "recording.m4a"),
            ("..", "recording.m4a"),
            ("dir/", "dir"),
        ],
    )
    def test_safe_audio_name(self, name, expected):
        assert safe_audio_name(name) == expected

    def test_write_failure_raises(self, make_sealed, password, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        with pytest.raises(ExtractionError):
            verify_bundle(make_sealed(), password, extract_to=blocker)


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------

class TestVerifyMany:
    def test_order_preserved(self, make_bundle, make_sealed, password, audio, tmp_path):
        good = make_bundle()
        bad = make_bundle(audio=audio, manifest=b"[]")
        sealed = make_sealed()
        missing = tmp_path / "missing"
        results = verify_many([good, bad, sealed, missing, good], password, max_workers=3)
        assert [r.verified for r in results] == [True, False, True, False, True]
        assert [r.path for r in results] == [str(p) for p in (good, bad, sealed, missing, good)]
        assert results[1].error is ErrorKind.MANIFEST_MALFORMED

    def test_empty(self):
        assert verify_many([]) == []
