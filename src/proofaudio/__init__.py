"""
proofaudio: offline verification of signed audio proof bundles.

- Verify standard bundles (directory, zip) and sealed .proofaudio files
- Reproduce the capture app's canonical manifest bytes and check the
  P-256 signature and audio hash
- Classify trust level A/B/C from the recorded context vectors
- Exit codes are stable per failure kind (see proofaudio.errors)
"""

__version__ = "1.0.0"

from .errors import ErrorKind, VerificationError
from .trust import TrustLevel
from .verify import VerificationResult, verify_audio_and_manifest, verify_bundle, verify_many

__all__ = [
    "__version__",
    "ErrorKind",
    "VerificationError",
    "TrustLevel",
    "VerificationResult",
    "verify_audio_and_manifest",
    "verify_bundle",
    "verify_many",
]
