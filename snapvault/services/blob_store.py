"""Content-addressable blob vault keyed by SHA-256."""

from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from snapvault.exceptions import (
    BlobMissingError,
    BlobWriteError,
    CryptoError,
    CryptoFailure,
    StoreLayoutError,
)
from snapvault.services.crypto_service import StreamEncryptor, decrypt_file, looks_encrypted

if TYPE_CHECKING:
    from collections.abc import Iterator

logger = logging.getLogger(__name__)

VAULT_DIRNAME = ".snapvault"
STORAGE_DIRNAME = "storage"
LAYOUT_FILE = "layout.json"

# Bucket width is versioned: changing it orphans every existing blob path,
# so a new width means a new LAYOUT_VERSION and a relocation step.
LAYOUT_VERSION = 1
BUCKET_WIDTHS: dict[int, int] = {1: 2}
HASH_ALGORITHM = "sha256"

CHUNK_SIZE = 64 * 1024

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def hash_file(file_path: Path) -> str:
    """Compute SHA-256 hash of a file."""
    sha = hashlib.sha256()
    with open(file_path, "rb") as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b""):
            sha.update(chunk)
    return sha.hexdigest()


def validate_hash(content_hash: str) -> str:
    """Return the hash if it is a lowercase hex SHA-256 digest, else raise ValueError."""
    if not _HASH_RE.match(content_hash):
        raise ValueError(f"Invalid content hash: {content_hash!r}")
    return content_hash


class BlobStore:
    """Stores immutable blobs under ``<root>/<bucket>/<hash>``.

    Writes go to a scratch file inside the vault and are hard-linked into
    place, so a blob is either absent or complete under its final name and
    an existing blob is never overwritten. When a passphrase is given, new
    blobs are encrypted at rest; the hash always covers the plaintext.
    """

    def __init__(self, root: Path, passphrase: str | None = None, *, create: bool = True) -> None:
        self.root = root
        self.passphrase = passphrase or None
        self._tmp_dir = root / "tmp"
        if not create and not (root / LAYOUT_FILE).is_file():
            raise StoreLayoutError(f"No blob vault at {root}")
        try:
            self._tmp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BlobWriteError(f"Cannot create vault at {root}: {exc}") from exc
        self.bucket_width = self._load_layout()

    @classmethod
    def for_destination(
        cls, dest: Path, passphrase: str | None = None, *, create: bool = True
    ) -> BlobStore:
        """Open the vault that lives under a backup destination directory.

        With ``create=False`` the vault must already be initialized; a missing
        layout raises StoreLayoutError and nothing is written.
        """
        return cls(dest / VAULT_DIRNAME / STORAGE_DIRNAME, passphrase, create=create)

    def _write_layout(self, layout_path: Path) -> None:
        layout = {
            "version": LAYOUT_VERSION,
            "bucket_width": BUCKET_WIDTHS[LAYOUT_VERSION],
            "algorithm": HASH_ALGORITHM,
        }
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._tmp_dir, suffix=".layout")
        except OSError as exc:
            raise BlobWriteError(f"Cannot create vault at {self.root}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as out:
                json.dump(layout, out, indent=2)
                out.flush()
                os.fsync(out.fileno())
            os.link(tmp_name, layout_path)
        except FileExistsError:
            logger.debug("Vault layout at %s written concurrently", self.root)
        except OSError as exc:
            raise BlobWriteError(f"Cannot write vault layout at {layout_path}: {exc}") from exc
        else:
            logger.info("Initialized blob vault at %s (layout v%d)", self.root, LAYOUT_VERSION)
        finally:
            Path(tmp_name).unlink(missing_ok=True)

    def _load_layout(self) -> int:
        layout_path = self.root / LAYOUT_FILE
        if not layout_path.exists():
            self._write_layout(layout_path)

        try:
            layout = json.loads(layout_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreLayoutError(f"Cannot read vault layout at {layout_path}: {exc}") from exc
        if not isinstance(layout, dict):
            raise StoreLayoutError(f"Vault layout at {layout_path} is not a JSON object")
        version = layout.get("version")
        if version not in BUCKET_WIDTHS or layout.get("algorithm") != HASH_ALGORITHM:
            raise StoreLayoutError(
                f"Vault at {self.root} uses layout {layout!r}; "
                f"this build reads layout v{LAYOUT_VERSION} only"
            )
        width = BUCKET_WIDTHS[version]
        if layout.get("bucket_width") != width:
            raise StoreLayoutError(
                f"Vault at {self.root} declares bucket width {layout.get('bucket_width')}, "
                f"expected {width} for layout v{version}"
            )
        return width

    def blob_path(self, content_hash: str) -> Path:
        validate_hash(content_hash)
        return self.root / content_hash[: self.bucket_width] / content_hash

    def exists(self, content_hash: str) -> bool:
        return self.blob_path(content_hash).exists()

    def iter_hashes(self) -> Iterator[str]:
        """Yield the hash of every stored blob."""
        for bucket in sorted(self.root.iterdir()):
            if not bucket.is_dir() or bucket == self._tmp_dir:
                continue
            for blob in sorted(bucket.iterdir()):
                if _HASH_RE.match(blob.name):
                    yield blob.name

    def put(self, source: Path | BinaryIO) -> str:
        """Store content and return its hash.

        A path is hashed first so that content already in the vault is never
        re-written; a stream is hashed while it is copied.
        """
        if isinstance(source, Path):
            content_hash = hash_file(source)
            if self.exists(content_hash):
                logger.debug("Blob %s already stored, skipping write", content_hash)
                return content_hash
            with open(source, "rb") as src:
                return self._ingest(src)
        return self._ingest(source)

    def put_bytes(self, data: bytes) -> str:
        content_hash = hashlib.sha256(data).hexdigest()
        if self.exists(content_hash):
            return content_hash
        return self._ingest(io.BytesIO(data))

    def _ingest(self, src: BinaryIO) -> str:
        sha = hashlib.sha256()
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._tmp_dir, suffix=".tmp")
        except OSError as exc:
            raise BlobWriteError(f"Cannot create scratch file in {self._tmp_dir}: {exc}") from exc

        try:
            with os.fdopen(fd, "wb") as out:
                try:
                    sink: BinaryIO | StreamEncryptor = (
                        StreamEncryptor(out, self.passphrase) if self.passphrase else out
                    )
                except OSError as exc:
                    raise BlobWriteError(f"Cannot write to vault: {exc}") from exc
                for chunk in iter(lambda: src.read(CHUNK_SIZE), b""):
                    sha.update(chunk)
                    try:
                        sink.write(chunk)
                    except OSError as exc:
                        raise BlobWriteError(f"Cannot write to vault: {exc}") from exc
                try:
                    if isinstance(sink, StreamEncryptor):
                        sink.finish()
                    out.flush()
                    os.fsync(out.fileno())
                except OSError as exc:
                    raise BlobWriteError(f"Cannot flush blob to vault: {exc}") from exc

            content_hash = sha.hexdigest()
            self._commit(tmp_name, content_hash)
            return content_hash
        finally:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not remove scratch blob %s: %s", tmp_name, exc)

    def _commit(self, tmp_name: str, content_hash: str) -> None:
        target = self.blob_path(content_hash)
        try:
            target.parent.mkdir(exist_ok=True)
            os.link(tmp_name, target)
        except FileExistsError:
            # A concurrent writer stored the same content first.
            logger.debug("Blob %s committed concurrently, keeping first copy", content_hash)
        except OSError as exc:
            raise BlobWriteError(f"Cannot commit blob {content_hash}: {exc}") from exc

    def _is_encrypted_blob(self, path: Path, content_hash: str) -> bool:
        if not looks_encrypted(path):
            return False
        # A plaintext blob may start with the container magic by coincidence.
        return hash_file(path) != content_hash

    def get(self, content_hash: str, destination: Path) -> None:
        """Copy a blob to ``destination``. Raises BlobMissingError if it is absent."""
        path = self.blob_path(content_hash)
        if not path.is_file():
            logger.error("Integrity failure: blob %s is missing from %s", content_hash, self.root)
            raise BlobMissingError(content_hash)

        if self._is_encrypted_blob(path, content_hash):
            if self.passphrase is None:
                raise CryptoError(CryptoFailure.PASSPHRASE_REQUIRED, f"blob {content_hash}")
            decrypt_file(path, destination, self.passphrase)
            return

        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=".", suffix=".tmp")
        os.close(fd)
        try:
            shutil.copyfile(path, tmp_name)
            os.replace(tmp_name, destination)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def read_bytes(self, content_hash: str) -> bytes:
        """Return a blob's plaintext content."""
        fd, tmp_name = tempfile.mkstemp(dir=self._tmp_dir, suffix=".out")
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            self.get(content_hash, tmp_path)
            return tmp_path.read_bytes()
        finally:
            tmp_path.unlink(missing_ok=True)

    def verify(self, content_hash: str) -> bool:
        """Re-hash a stored blob and compare with its name."""
        path = self.blob_path(content_hash)
        if not path.is_file():
            raise BlobMissingError(content_hash)
        if not self._is_encrypted_blob(path, content_hash):
            return hash_file(path) == content_hash
        return hashlib.sha256(self.read_bytes(content_hash)).hexdigest() == content_hash
