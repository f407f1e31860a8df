"""
Scoped buffers for passwords and derived keys.

Python cannot guarantee that immutable str/bytes copies are wiped, so
secret material is kept in one mutable bytearray whose lifetime is bound
to a ``with`` block. On exit (normal or exceptional) the buffer is
overwritten with zeros and truncated. Temporaries made from it are
dropped immediately by the callers (best effort).
"""
from __future__ import annotations

from types import TracebackType
from typing import Optional, Type, Union


class SecretBuffer:
    """A zero-on-exit byte buffer. Never printed, never logged."""

    __slots__ = ("_buf",)

    def __init__(self, data: Union[bytes, bytearray, memoryview] = b""):
        self._buf = bytearray(data)

    @classmethod
    def from_text(cls, text: Optional[str]) -> "SecretBuffer":
        return cls((text or "").encode("utf-8"))

    def __enter__(self) -> "SecretBuffer":
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        self.wipe()

    def wipe(self) -> None:
        for i in range(len(self._buf)):
            self._buf[i] = 0
        del self._buf[:]

    @property
    def data(self) -> bytearray:
        return self._buf

    @property
    def wiped(self) -> bool:
        return not self._buf

    def __len__(self) -> int:
        return len(self._buf)

    def __repr__(self) -> str:
        return f"SecretBuffer(<{len(self._buf)} bytes>)"


__all__ = ["SecretBuffer"]
