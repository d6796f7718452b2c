"""AES-256-CBC transform used to keep segments encrypted at rest.

Blob layout: ``[16-byte IV][CBC ciphertext, PKCS7 padded]``.
"""

from __future__ import annotations

import binascii
import os
from pathlib import Path

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

IV_LENGTH = 16
KEY_LENGTH = 32
BLOCK_BITS = algorithms.AES.block_size


class CryptoError(Exception):
    """Base class for at-rest decryption errors."""


class MalformedInput(CryptoError):
    """Blob is too short to contain the IV prefix."""


class DecryptionFailure(CryptoError):
    """Ciphertext did not decrypt to a correctly padded plaintext."""


def load_key(raw: str | bytes) -> bytes:
    """Normalise a configured key into 32 raw bytes.

    Accepts raw bytes, a 32 character UTF-8 string or 64 hex characters.
    """

    if isinstance(raw, bytes):
        key = raw
    else:
        text = raw.strip()
        if len(text) == KEY_LENGTH * 2:
            try:
                key = binascii.unhexlify(text)
            except binascii.Error:
                key = text.encode("utf-8")
        else:
            key = text.encode("utf-8")
    if len(key) != KEY_LENGTH:
        raise ValueError(f"encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
    return key


class CryptoTransform:
    """Encrypt/decrypt byte buffers with a fixed process-wide key."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH:
            raise ValueError(f"encryption key must be {KEY_LENGTH} bytes, got {len(key)}")
        self._key = bytes(key)

    def encrypt(self, plaintext: bytes) -> bytes:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(BLOCK_BITS).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        return iv + encryptor.update(padded) + encryptor.finalize()

    def decrypt(self, blob: bytes) -> bytes:
        if len(blob) < IV_LENGTH:
            raise MalformedInput(
                f"encrypted blob is {len(blob)} bytes, shorter than the {IV_LENGTH}-byte IV"
            )
        iv = blob[:IV_LENGTH]
        ciphertext = blob[IV_LENGTH:]
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        unpadder = padding.PKCS7(BLOCK_BITS).unpadder()
        try:
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            return unpadder.update(padded) + unpadder.finalize()
        except ValueError as exc:
            raise DecryptionFailure(str(exc)) from exc


def _sibling_name(path: Path, marker: str) -> Path:
    return path.with_name(f"{path.stem}_{marker}{path.suffix}")


def encrypt_file(transform: CryptoTransform, src: Path, dst: Path | None = None) -> Path:
    src = Path(src)
    target = Path(dst) if dst else _sibling_name(src, "encrypted")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(transform.encrypt(src.read_bytes()))
    return target


def decrypt_file(transform: CryptoTransform, src: Path, dst: Path | None = None) -> Path:
    src = Path(src)
    if dst:
        target = Path(dst)
    else:
        stem = src.stem
        if stem.endswith("_encrypted"):
            stem = stem[: -len("_encrypted")]
        target = src.with_name(f"{stem}_decrypted{src.suffix}")
    payload = transform.decrypt(src.read_bytes())
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(payload)
    return target
