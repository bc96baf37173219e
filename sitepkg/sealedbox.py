"""Minimal authenticated-encryption container ("sealed box").

A box is AES-256-GCM ciphertext (tag appended) together with the random
96-bit nonce it was sealed under and an algorithm id. Its binary form is::

    [CE 3A][alg: u16 big-endian][nonce: 12 bytes][ciphertext + tag]

The ciphertext runs to the end of the buffer, so a box is always the last
thing in its container.

Keys live in a fixed 32-byte mutable buffer that is zeroed by ``Key.close``.
Use keys as context managers so the wipe happens on every exit path; the
finalizer only catches keys that were leaked anyway.
"""

from __future__ import annotations

import base64
import hashlib
import json
import os
import struct
from dataclasses import dataclass

from Cryptodome.Cipher import AES
from Cryptodome.Random import get_random_bytes

from .constants import (
    ALG_AES256_GCM,
    BOX_MAGIC,
    FINGERPRINT_SIZE,
    KEY_SIZE,
    KEYFILE_MODE,
    NONCE_SIZE,
    TAG_SIZE,
)
from .errors import (
    AuthenticationError,
    BoxFormatError,
    UnsupportedAlgorithmError,
    UnusableKeyError,
)
from .log import get_logger

logger = get_logger(__name__)

_BOX_HDR = struct.Struct(">2sH12s")


class Key:
    """32 bytes of symmetric key material with an explicit wipe."""

    def __init__(self) -> None:
        self._bs = bytearray(KEY_SIZE)
        self._closed = False

    @classmethod
    def generate(cls) -> "Key":
        key = cls()
        key._bs[:] = get_random_bytes(KEY_SIZE)
        return key

    @classmethod
    def from_bytes(cls, data) -> "Key":
        if len(data) != KEY_SIZE:
            raise UnusableKeyError(
                f"unable to unmarshal key from binary; unexpected length: {len(data)} != {KEY_SIZE}"
            )
        key = cls()
        key._bs[:] = data
        return key

    def __enter__(self) -> "Key":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __del__(self) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        bs = getattr(self, "_bs", None)
        if bs is not None:
            for i in range(len(bs)):
                bs[i] = 0
        self._closed = True

    def buffer(self) -> bytearray:
        """The live key buffer; it is zeroed when the key is closed."""
        if self._closed:
            raise ValueError("key is closed")
        return self._bs

    def to_bytes(self) -> bytes:
        """An immutable copy of the key, for APIs that insist on ``bytes``."""
        return bytes(self.buffer())

    def fingerprint(self) -> str:
        return hashlib.sha256(self.buffer()).digest()[:FINGERPRINT_SIZE].hex()

    def __repr__(self) -> str:
        if self._closed:
            return "Key(closed)"
        return f"Key(fpr={self.fingerprint()})"


def new_key() -> Key:
    return Key.generate()


def key_from_bytes(data) -> Key:
    return Key.from_bytes(data)


def new_keyfile(path: str, overwrite: bool = False) -> Key:
    """Generate a key and persist it to ``path`` readable by the owner only.

    Unless ``overwrite`` is set the file must not exist yet. The caller owns
    (and must close) the returned key.
    """
    key = new_key()
    flags = os.O_WRONLY | os.O_CREAT
    flags |= os.O_TRUNC if overwrite else os.O_EXCL
    try:
        fd = os.open(path, flags, KEYFILE_MODE)
        with open(fd, "wb") as fh:
            os.fchmod(fh.fileno(), KEYFILE_MODE)
            fh.write(key.buffer())
    except BaseException:
        key.close()
        raise
    logger.debug("wrote keyfile", path=path, fpr=key.fingerprint())
    return key


def load_keyfile(path: str) -> Key:
    buf = bytearray(KEY_SIZE + 1)
    try:
        with open(path, "rb") as fh:
            n = fh.readinto(buf)
        if n != KEY_SIZE:
            raise UnusableKeyError(f"unusable keyfile (invalid size): {path}")
        return Key.from_bytes(memoryview(buf)[:KEY_SIZE])
    finally:
        for i in range(len(buf)):
            buf[i] = 0


def fresh_nonce() -> bytes:
    return get_random_bytes(NONCE_SIZE)


@dataclass
class Box:
    alg: int
    nonce: bytes
    ciphertext: bytes

    def open(self, key: Key) -> bytes:
        """Authenticate and decrypt; nothing is returned unless the tag verifies."""
        if self.alg != ALG_AES256_GCM:
            raise UnsupportedAlgorithmError(f"unsupported version: {self.alg}")
        if len(self.nonce) != NONCE_SIZE:
            raise BoxFormatError(f"unexpected nonce length: {len(self.nonce)} != {NONCE_SIZE}")
        if len(self.ciphertext) < TAG_SIZE:
            raise AuthenticationError("message authentication failed (ciphertext truncated)")
        cipher = AES.new(key.buffer(), AES.MODE_GCM, nonce=self.nonce, mac_len=TAG_SIZE)
        body, tag = self.ciphertext[:-TAG_SIZE], self.ciphertext[-TAG_SIZE:]
        try:
            return cipher.decrypt_and_verify(body, tag)
        except ValueError as exc:
            raise AuthenticationError("message authentication failed") from exc

    def to_bytes(self) -> bytes:
        if len(self.nonce) != NONCE_SIZE:
            raise BoxFormatError(f"unexpected nonce length: {len(self.nonce)} != {NONCE_SIZE}")
        return _BOX_HDR.pack(BOX_MAGIC, self.alg, self.nonce) + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> "Box":
        if len(data) < _BOX_HDR.size:
            raise BoxFormatError(f"box too short: {len(data)} < {_BOX_HDR.size} bytes")
        magic, alg, nonce = _BOX_HDR.unpack_from(data)
        if magic != BOX_MAGIC:
            raise BoxFormatError(f"unexpected magic bytes: {magic.hex()} != {BOX_MAGIC.hex()}")
        if alg != ALG_AES256_GCM:
            raise UnsupportedAlgorithmError(f"unsupported version: {alg}")
        return cls(alg=alg, nonce=nonce, ciphertext=bytes(data[_BOX_HDR.size:]))

    def to_json(self) -> str:
        return json.dumps(
            {
                "alg": self.alg,
                "nonce": base64.b64encode(self.nonce).decode("ascii"),
                "ciphertext": base64.b64encode(self.ciphertext).decode("ascii"),
            }
        )

    @classmethod
    def from_json(cls, text: str) -> "Box":
        try:
            obj = json.loads(text)
            alg = obj["alg"]
            nonce = base64.b64decode(obj["nonce"], validate=True)
            ciphertext = base64.b64decode(obj["ciphertext"], validate=True)
        except (ValueError, KeyError, TypeError) as exc:
            raise BoxFormatError(f"malformed box JSON: {exc}") from exc
        if not isinstance(alg, int) or alg != ALG_AES256_GCM:
            raise UnsupportedAlgorithmError(f"unsupported version: {alg}")
        return cls(alg=alg, nonce=nonce, ciphertext=ciphertext)


def seal(key: Key, plaintext: bytes) -> Box:
    """Encrypt ``plaintext`` under a fresh random nonce."""
    return _seal_with_nonce(key, plaintext, fresh_nonce())


def _seal_with_nonce(key: Key, plaintext: bytes, nonce: bytes) -> Box:
    cipher = AES.new(key.buffer(), AES.MODE_GCM, nonce=nonce, mac_len=TAG_SIZE)
    body, tag = cipher.encrypt_and_digest(plaintext)
    return Box(alg=ALG_AES256_GCM, nonce=nonce, ciphertext=body + tag)
