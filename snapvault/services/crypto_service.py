"""Authenticated encryption for blobs and the metadata file at rest.

Container layout (version 1)::

    MAGIC (10 bytes ASCII) | VERSION (1) | SALT (16) | NONCE (12) | CIPHERTEXT | TAG (16)

The key is derived from the passphrase with PBKDF2-HMAC-SHA256 over a fresh
random salt; the cipher is AES-256-GCM with a fresh random nonce per
container. The iteration count is fixed per format version.
"""

from __future__ import annotations

import base64
import logging
import os
import secrets
import tempfile
from typing import TYPE_CHECKING, BinaryIO

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from snapvault.exceptions import CryptoError, CryptoFailure

if TYPE_CHECKING:
    from pathlib import Path

logger = logging.getLogger(__name__)

MAGIC = b"SVAULTBLOB"
VERSION = 1
SALT_LEN = 16
NONCE_LEN = 12
TAG_LEN = 16
KEY_LEN = 32
HEADER_LEN = len(MAGIC) + 1 + SALT_LEN + NONCE_LEN

# Iteration count is part of the format: never change it for an existing version.
KDF_ITERATIONS: dict[int, int] = {1: 120_000}

CHUNK_SIZE = 64 * 1024

_VERIFIER_PLAINTEXT = b"snapvault-passphrase-check"


def derive_key(passphrase: str, salt: bytes, version: int = VERSION) -> bytes:
    """Derive a 256-bit key from a passphrase and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_LEN,
        salt=salt,
        iterations=KDF_ITERATIONS[version],
    )
    return kdf.derive(passphrase.encode("utf-8"))


def _new_header() -> tuple[bytes, bytes, bytes]:
    salt = secrets.token_bytes(SALT_LEN)
    nonce = secrets.token_bytes(NONCE_LEN)
    header = MAGIC + bytes([VERSION]) + salt + nonce
    return header, salt, nonce


def _parse_header(header: bytes) -> tuple[int, bytes, bytes]:
    """Validate a container header and return (version, salt, nonce)."""
    if len(header) < len(MAGIC):
        raise CryptoError(CryptoFailure.TRUNCATED, "header shorter than magic tag")
    if header[: len(MAGIC)] != MAGIC:
        raise CryptoError(CryptoFailure.BAD_MAGIC)
    if len(header) < len(MAGIC) + 1:
        raise CryptoError(CryptoFailure.TRUNCATED, "missing version byte")
    version = header[len(MAGIC)]
    if version not in KDF_ITERATIONS:
        raise CryptoError(CryptoFailure.UNSUPPORTED_VERSION, f"version {version}")
    if len(header) < HEADER_LEN:
        raise CryptoError(CryptoFailure.TRUNCATED, "incomplete salt/nonce")
    offset = len(MAGIC) + 1
    salt = header[offset : offset + SALT_LEN]
    nonce = header[offset + SALT_LEN : HEADER_LEN]
    return version, salt, nonce


def encrypt_bytes(plaintext: bytes, passphrase: str) -> bytes:
    """Encrypt a payload into a self-describing container."""
    header, salt, nonce = _new_header()
    key = derive_key(passphrase, salt)
    return header + AESGCM(key).encrypt(nonce, plaintext, None)


def decrypt_bytes(container: bytes, passphrase: str) -> bytes:
    """Decrypt a container produced by ``encrypt_bytes`` or ``StreamEncryptor``."""
    version, salt, nonce = _parse_header(container[:HEADER_LEN])
    body = container[HEADER_LEN:]
    if len(body) < TAG_LEN:
        raise CryptoError(CryptoFailure.TRUNCATED, "missing authentication tag")
    key = derive_key(passphrase, salt, version)
    try:
        return AESGCM(key).decrypt(nonce, body, None)
    except InvalidTag as exc:
        raise CryptoError(CryptoFailure.AUTHENTICATION_FAILED) from exc


class StreamEncryptor:
    """Incrementally encrypt into an open binary stream.

    The header is written on construction, ciphertext on each ``write`` and
    the GCM tag on ``finish``. Nothing is buffered beyond one chunk.
    """

    def __init__(self, dst: BinaryIO, passphrase: str) -> None:
        header, salt, nonce = _new_header()
        key = derive_key(passphrase, salt)
        self._dst = dst
        self._encryptor = Cipher(algorithms.AES(key), modes.GCM(nonce)).encryptor()
        self._finished = False
        dst.write(header)

    def write(self, chunk: bytes) -> None:
        self._dst.write(self._encryptor.update(chunk))

    def finish(self) -> None:
        if self._finished:
            return
        self._dst.write(self._encryptor.finalize())
        self._dst.write(self._encryptor.tag)
        self._finished = True


def encrypt_stream(src: BinaryIO, dst: BinaryIO, passphrase: str) -> int:
    """Encrypt ``src`` into ``dst``. Returns the number of plaintext bytes."""
    encryptor = StreamEncryptor(dst, passphrase)
    total = 0
    for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
        encryptor.write(chunk)
        total += len(chunk)
    encryptor.finish()
    return total


def decrypt_stream(src: BinaryIO, dst: BinaryIO, passphrase: str) -> int:
    """Decrypt a seekable container stream into ``dst``.

    Plaintext is written before the tag is verified, so ``dst`` must be a
    scratch location that the caller discards when this raises.
    """
    version, salt, nonce = _parse_header(src.read(HEADER_LEN))
    end = src.seek(0, os.SEEK_END)
    body_len = end - HEADER_LEN - TAG_LEN
    if body_len < 0:
        raise CryptoError(CryptoFailure.TRUNCATED, "missing authentication tag")
    src.seek(end - TAG_LEN)
    tag = src.read(TAG_LEN)
    src.seek(HEADER_LEN)

    key = derive_key(passphrase, salt, version)
    decryptor = Cipher(algorithms.AES(key), modes.GCM(nonce, tag)).decryptor()
    remaining = body_len
    total = 0
    while remaining > 0:
        chunk = src.read(min(CHUNK_SIZE, remaining))
        if not chunk:
            raise CryptoError(CryptoFailure.TRUNCATED, "ciphertext ended early")
        remaining -= len(chunk)
        plain = decryptor.update(chunk)
        dst.write(plain)
        total += len(plain)
    try:
        dst.write(decryptor.finalize())
    except InvalidTag as exc:
        raise CryptoError(CryptoFailure.AUTHENTICATION_FAILED) from exc
    return total


def looks_encrypted(path: Path) -> bool:
    """Return True if the file starts with a supported container header."""
    try:
        with open(path, "rb") as f:
            head = f.read(len(MAGIC) + 1)
    except OSError:
        return False
    return (
        len(head) == len(MAGIC) + 1 and head[: len(MAGIC)] == MAGIC and head[-1] in KDF_ITERATIONS
    )


def encrypt_file(src_path: Path, dst_path: Path, passphrase: str) -> None:
    """Encrypt a file, replacing ``dst_path`` atomically."""
    dst_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dst_path.parent, prefix=".", suffix=".tmp")
    try:
        with open(src_path, "rb") as src, os.fdopen(fd, "wb") as dst:
            encrypt_stream(src, dst, passphrase)
            dst.flush()
            os.fsync(dst.fileno())
        os.replace(tmp_name, dst_path)
    except BaseException:
        _discard(tmp_name)
        raise


def decrypt_file(src_path: Path, dst_path: Path, passphrase: str) -> None:
    """Decrypt a file; ``dst_path`` only appears once authentication succeeds."""
    dst_path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=dst_path.parent, prefix=".", suffix=".tmp")
    try:
        with open(src_path, "rb") as src, os.fdopen(fd, "wb") as dst:
            decrypt_stream(src, dst, passphrase)
        os.replace(tmp_name, dst_path)
    except BaseException:
        _discard(tmp_name)
        raise


def _discard(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove scratch file %s: %s", path, exc)


def make_verifier(passphrase: str) -> str:
    """Return a storable token proving knowledge of ``passphrase``."""
    return base64.urlsafe_b64encode(encrypt_bytes(_VERIFIER_PLAINTEXT, passphrase)).decode()


def check_verifier(verifier: str, passphrase: str) -> bool:
    """Check a passphrase against a token from ``make_verifier``."""
    try:
        container = base64.urlsafe_b64decode(verifier.encode())
        return decrypt_bytes(container, passphrase) == _VERIFIER_PLAINTEXT
    except CryptoError:
        return False
    except ValueError:
        logger.warning("Stored passphrase verifier is malformed")
        return False
