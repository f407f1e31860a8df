"""
Bundle classification and loading.

A bundle arrives as one of:

  directory   recording.<ext> + manifest.json + disclosure file
  archive     the same three members in a zip (optionally under one folder)
  sealed      a single JSON envelope (.proofaudio)
  manifest    a bare manifest.json whose audio sits next to it

Members are read into memory; nothing is written. The disclosure file is
never parsed.
"""
from __future__ import annotations

import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Iterable, List, Optional, Tuple

from proofaudio.config import DEFAULT_CONFIG, VerifierConfig
from proofaudio.errors import ErrorKind, VerificationError
from proofaudio.manifest import load_json_object
from proofaudio.sealed import SEALED_SUFFIX

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
AUDIO_STEM = "recording"
AUDIO_EXTENSIONS = ("m4a", "aac", "mp4", "wav")
DISCLOSURE_NAME = "disclosure.txt"

_ARCHIVE_JUNK = ("__MACOSX/",)


class BundleKind(str, Enum):
    DIRECTORY = "directory"
    ARCHIVE = "archive"
    SEALED = "sealed"
    MANIFEST_FILE = "manifest"

    @property
    def is_sealed(self) -> bool:
        return self is BundleKind.SEALED


@dataclass(frozen=True)
class StandardMembers:
    """Audio and manifest bytes of a standard bundle."""

    audio: bytes = field(repr=False)
    manifest: bytes = field(repr=False)
    audio_name: str


@dataclass(frozen=True)
class LoadedBundle:
    kind: BundleKind
    path: Path
    members: Optional[StandardMembers] = None
    sealed: Optional[bytes] = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def _read_limited(path: Path, limit: int, kind: ErrorKind, what: str) -> bytes:
    try:
        size = path.stat().st_size
        if size > limit:
            raise VerificationError(kind, f"{what} exceeds {limit} bytes")
        return path.read_bytes()
    except OSError as exc:
        raise VerificationError(kind, f"cannot read {what}: {exc.strerror or exc}") from None


def _sniff(path: Path, config: VerifierConfig) -> Tuple[BundleKind, Optional[bytes]]:
    if not path.exists():
        raise VerificationError(ErrorKind.MANIFEST_MALFORMED, f"path not found: {path}")
    if path.is_dir():
        return BundleKind.DIRECTORY, None
    if path.suffix.lower() == SEALED_SUFFIX:
        return BundleKind.SEALED, None
    if zipfile.is_zipfile(path):
        return BundleKind.ARCHIVE, None

    data = _read_limited(path, config.max_member_bytes, ErrorKind.MANIFEST_MALFORMED, "bundle file")
    doc = load_json_object(data, ErrorKind.MANIFEST_MALFORMED, "bundle file")
    if "encryptedPayload" in doc:
        return BundleKind.SEALED, data
    if "schemaVersion" in doc:
        return BundleKind.MANIFEST_FILE, data
    raise VerificationError(
        ErrorKind.MANIFEST_MALFORMED, "file is neither a sealed bundle nor a manifest"
    )


def classify(path: Path, config: VerifierConfig = DEFAULT_CONFIG) -> BundleKind:
    """Decide what kind of bundle *path* is. Unrecognised input is ManifestMalformed."""
    kind, _ = _sniff(Path(path), config)
    return kind


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def load_bundle(path: Path, config: VerifierConfig = DEFAULT_CONFIG) -> LoadedBundle:
    path = Path(path)
    kind, data = _sniff(path, config)
    logger.debug("classified %s as %s bundle", path, kind.value)

    if kind is BundleKind.SEALED:
        if data is None:
            data = _read_limited(
                path, config.max_member_bytes, ErrorKind.BUNDLE_CORRUPTED, "sealed bundle"
            )
        return LoadedBundle(kind=kind, path=path, sealed=data)
    if kind is BundleKind.ARCHIVE:
        return LoadedBundle(kind=kind, path=path, members=_load_archive(path, config))
    if kind is BundleKind.MANIFEST_FILE:
        audio_path = find_audio_file(path.parent)
        members = StandardMembers(
            audio=_read_audio(audio_path, config),
            manifest=data or b"",
            audio_name=audio_path.name,
        )
        return LoadedBundle(kind=kind, path=path, members=members)
    return LoadedBundle(kind=kind, path=path, members=_load_directory(path, config))


def _is_audio_name(name: str) -> bool:
    return PurePosixPath(name).suffix.lower().lstrip(".") in AUDIO_EXTENSIONS


def find_audio_file(directory: Path) -> Path:
    """recording.<ext> first, then any file with an audio extension."""
    for ext in AUDIO_EXTENSIONS:
        candidate = directory / f"{AUDIO_STEM}.{ext}"
        if candidate.is_file():
            return candidate
    try:
        entries = sorted(directory.iterdir())
    except OSError:
        entries = []
    for entry in entries:
        if entry.is_file() and _is_audio_name(entry.name):
            return entry
    raise VerificationError(ErrorKind.AUDIO_FILE_MISSING, f"no audio file in {directory}")


def _read_audio(path: Path, config: VerifierConfig) -> bytes:
    return _read_limited(path, config.max_member_bytes, ErrorKind.AUDIO_FILE_CORRUPT, "audio file")


def _load_directory(directory: Path, config: VerifierConfig) -> StandardMembers:
    audio_path = find_audio_file(directory)
    manifest_path = directory / MANIFEST_NAME
    if not manifest_path.is_file():
        raise VerificationError(ErrorKind.MANIFEST_MALFORMED, f"{MANIFEST_NAME} not found")
    audio = _read_audio(audio_path, config)
    manifest = _read_limited(
        manifest_path, config.max_member_bytes, ErrorKind.MANIFEST_MALFORMED, MANIFEST_NAME
    )
    return StandardMembers(audio=audio, manifest=manifest, audio_name=audio_path.name)


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------

def _depth(info: zipfile.ZipInfo) -> int:
    return len(PurePosixPath(info.filename).parts)


def _pick_audio(members: Iterable[zipfile.ZipInfo]) -> Optional[zipfile.ZipInfo]:
    candidates: List[zipfile.ZipInfo] = sorted(members, key=lambda i: i.filename)
    for ext in AUDIO_EXTENSIONS:
        for info in candidates:
            if PurePosixPath(info.filename).name == f"{AUDIO_STEM}.{ext}":
                return info
    for info in candidates:
        if _is_audio_name(info.filename):
            return info
    return None


def _read_member(
    zf: zipfile.ZipFile, info: zipfile.ZipInfo, limit: int, kind: ErrorKind
) -> bytes:
    if info.file_size > limit:
        raise VerificationError(kind, f"{info.filename} exceeds {limit} bytes")
    try:
        return zf.read(info)
    except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, OSError) as exc:
        raise VerificationError(kind, f"cannot read {info.filename}: {exc}") from None


def _load_archive(path: Path, config: VerifierConfig) -> StandardMembers:
    try:
        zf = zipfile.ZipFile(path)
    except (zipfile.BadZipFile, OSError) as exc:
        raise VerificationError(ErrorKind.MANIFEST_MALFORMED, f"unreadable archive: {exc}") from None

    with zf:
        files = [
            i for i in zf.infolist()
            if not i.is_dir() and not i.filename.startswith(_ARCHIVE_JUNK)
        ]
        manifests = sorted(
            (i for i in files if PurePosixPath(i.filename).name == MANIFEST_NAME),
            key=_depth,
        )
        if manifests:
            root = PurePosixPath(manifests[0].filename).parent
        else:
            audio_any = sorted((i for i in files if _is_audio_name(i.filename)), key=_depth)
            root = PurePosixPath(audio_any[0].filename).parent if audio_any else PurePosixPath(".")

        in_root = [i for i in files if PurePosixPath(i.filename).parent == root]
        audio_info = _pick_audio(in_root)
        if audio_info is None:
            raise VerificationError(ErrorKind.AUDIO_FILE_MISSING, "no audio member in archive")
        if not manifests:
            raise VerificationError(ErrorKind.MANIFEST_MALFORMED, f"{MANIFEST_NAME} not in archive")

        audio = _read_member(zf, audio_info, config.max_member_bytes, ErrorKind.AUDIO_FILE_CORRUPT)
        manifest = _read_member(
            zf, manifests[0], config.max_member_bytes, ErrorKind.MANIFEST_MALFORMED
        )

    return StandardMembers(
        audio=audio,
        manifest=manifest,
        audio_name=PurePosixPath(audio_info.filename).name,
    )


__all__ = [
    "AUDIO_EXTENSIONS",
    "AUDIO_STEM",
    "BundleKind",
    "DISCLOSURE_NAME",
    "LoadedBundle",
    "MANIFEST_NAME",
    "StandardMembers",
    "classify",
    "find_audio_file",
    "load_bundle",
]
