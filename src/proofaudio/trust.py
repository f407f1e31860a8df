"""
Trust level computation.

Levels summarize how much corroborating context accompanies a verified
signature. Level A is highest, Level C is the floor for any verified
recording:

  A  location + motion + continuity.uninterrupted
  B  location + motion
  C  everything else
"""
from __future__ import annotations

from enum import Enum

from proofaudio.manifest import TrustVectors


class TrustLevel(str, Enum):
    A = "A"
    B = "B"
    C = "C"

    @property
    def display_name(self) -> str:
        return f"Level {self.value}"

    @property
    def label(self) -> str:
        return _LABELS[self]

    @property
    def explanation(self) -> str:
        return _EXPLANATIONS[self]

    @property
    def style(self) -> str:
        """Rich style used when rendering the level in a terminal."""
        return _STYLES[self]


_LABELS = {
    TrustLevel.A: "Verified Continuous Capture",
    TrustLevel.B: "Verified Capture + Context",
    TrustLevel.C: "Verified Capture",
}

_EXPLANATIONS = {
    TrustLevel.A: (
        "This recording was captured continuously without interruption, "
        "with full context."
    ),
    TrustLevel.B: (
        "This recording was captured with location and motion context."
    ),
    TrustLevel.C: (
        "This recording was captured by the app and has not been modified."
    ),
}

_STYLES = {
    TrustLevel.A: "green",
    TrustLevel.B: "blue",
    TrustLevel.C: "yellow",
}


def compute_trust_level(vectors: TrustVectors) -> TrustLevel:
    has_location = vectors.location is not None
    has_motion = vectors.motion is not None
    uninterrupted = vectors.continuity is not None and vectors.continuity.uninterrupted

    if has_location and has_motion and uninterrupted:
        return TrustLevel.A
    if has_location and has_motion:
        return TrustLevel.B
    return TrustLevel.C


__all__ = ["TrustLevel", "compute_trust_level"]
