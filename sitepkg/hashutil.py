from __future__ import annotations

import base64
import hashlib
from typing import BinaryIO, Optional


class _Digesting:
    def __init__(self) -> None:
        self._hash = hashlib.sha256()
        self.count = 0

    def digest(self) -> bytes:
        return self._hash.digest()

    def hexdigest(self) -> str:
        return self._hash.hexdigest()

    def b64digest(self) -> str:
        return base64.b64encode(self._hash.digest()).decode("ascii")


class HashingReader(_Digesting):
    """Wrap a binary reader and SHA-256 every byte that passes through it."""

    def __init__(self, fh: BinaryIO):
        super().__init__()
        self._fh = fh

    def read(self, size: Optional[int] = None) -> bytes:
        if size is None or size < 0:
            data = self._fh.read()
        else:
            data = self._fh.read(size)
        self._hash.update(data)
        self.count += len(data)
        return data


class HashingWriter(_Digesting):
    """Wrap a binary writer and SHA-256 every byte written through it."""

    def __init__(self, fh: BinaryIO):
        super().__init__()
        self._fh = fh

    def write(self, data: bytes) -> int:
        n = self._fh.write(data)
        self._hash.update(data)
        self.count += len(data)
        return n

    def flush(self) -> None:
        self._fh.flush()


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
