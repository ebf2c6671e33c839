"""Tests for the content-addressed blob vault."""

from __future__ import annotations

import hashlib
import io
import json
import threading
from typing import TYPE_CHECKING

import pytest

from snapvault.exceptions import BlobMissingError, CryptoError, CryptoFailure, StoreLayoutError
from snapvault.services.blob_store import BlobStore, hash_file, validate_hash
from snapvault.services.crypto_service import looks_encrypted

if TYPE_CHECKING:
    from pathlib import Path


def _sha(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class TestBlobStore:
    def test_put_returns_sha256_of_content(self, blob_store: BlobStore, tmp_path: Path) -> None:
        src = tmp_path / "a.txt"
        src.write_bytes(b"alpha")
        assert blob_store.put(src) == _sha(b"alpha")
        assert hash_file(src) == _sha(b"alpha")

    def test_blob_lives_in_bucket(self, blob_store: BlobStore) -> None:
        digest = blob_store.put_bytes(b"bucketed")
        path = blob_store.blob_path(digest)
        assert path.parent.name == digest[:2]
        assert path.read_bytes() == b"bucketed"

    def test_identical_content_stored_once(self, blob_store: BlobStore, tmp_path: Path) -> None:
        one = tmp_path / "one.bin"
        two = tmp_path / "two.bin"
        one.write_bytes(b"same bytes")
        two.write_bytes(b"same bytes")
        assert blob_store.put(one) == blob_store.put(two)
        assert list(blob_store.iter_hashes()) == [_sha(b"same bytes")]

    def test_existing_blob_is_not_rewritten(self, blob_store: BlobStore) -> None:
        digest = blob_store.put_bytes(b"immutable")
        path = blob_store.blob_path(digest)
        inode = path.stat().st_ino
        blob_store.put(io.BytesIO(b"immutable"))
        assert path.stat().st_ino == inode

    def test_get_copies_content(self, blob_store: BlobStore, tmp_path: Path) -> None:
        digest = blob_store.put_bytes(b"restore me")
        target = tmp_path / "restore" / "nested" / "file.txt"
        blob_store.get(digest, target)
        assert target.read_bytes() == b"restore me"

    def test_get_missing_blob_raises(self, blob_store: BlobStore, tmp_path: Path) -> None:
        missing = _sha(b"never stored")
        with pytest.raises(BlobMissingError) as excinfo:
            blob_store.get(missing, tmp_path / "out")
        assert excinfo.value.content_hash == missing
        assert not (tmp_path / "out").exists()

    def test_no_scratch_files_left_behind(self, blob_store: BlobStore) -> None:
        for i in range(5):
            blob_store.put_bytes(f"blob {i}".encode())
        assert list((blob_store.root / "tmp").iterdir()) == []

    def test_verify_detects_corruption(self, blob_store: BlobStore) -> None:
        digest = blob_store.put_bytes(b"original")
        assert blob_store.verify(digest)
        path = blob_store.blob_path(digest)
        path.chmod(0o644)
        path.write_bytes(b"tampered")
        assert not blob_store.verify(digest)

    def test_invalid_hash_rejected(self, blob_store: BlobStore) -> None:
        with pytest.raises(ValueError):
            blob_store.blob_path("../../etc/passwd")
        with pytest.raises(ValueError):
            validate_hash("ABC")

    def test_concurrent_put_of_same_content(self, blob_store: BlobStore) -> None:
        payload = b"raced" * 10_000
        results: list[str] = []

        def worker() -> None:
            results.append(blob_store.put(io.BytesIO(payload)))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert set(results) == {_sha(payload)}
        assert blob_store.blob_path(_sha(payload)).read_bytes() == payload


class TestEncryptedBlobStore:
    def test_blob_encrypted_at_rest(self, backup_dest: Path, tmp_path: Path) -> None:
        store = BlobStore.for_destination(backup_dest, "vault-pass")
        digest = store.put_bytes(b"private data")
        assert digest == _sha(b"private data")
        assert looks_encrypted(store.blob_path(digest))

        target = tmp_path / "plain.txt"
        store.get(digest, target)
        assert target.read_bytes() == b"private data"
        assert store.verify(digest)

    def test_reading_encrypted_blob_without_passphrase(
        self, backup_dest: Path, tmp_path: Path
    ) -> None:
        digest = BlobStore.for_destination(backup_dest, "vault-pass").put_bytes(b"secret")
        plain_store = BlobStore.for_destination(backup_dest)
        with pytest.raises(CryptoError) as excinfo:
            plain_store.get(digest, tmp_path / "out")
        assert excinfo.value.reason is CryptoFailure.PASSPHRASE_REQUIRED

    def test_wrong_passphrase(self, backup_dest: Path, tmp_path: Path) -> None:
        digest = BlobStore.for_destination(backup_dest, "vault-pass").put_bytes(b"secret")
        other = BlobStore.for_destination(backup_dest, "other-pass")
        with pytest.raises(CryptoError) as excinfo:
            other.get(digest, tmp_path / "out")
        assert excinfo.value.reason is CryptoFailure.AUTHENTICATION_FAILED
        assert not (tmp_path / "out").exists()


class TestVaultLayout:
    def test_layout_file_written(self, blob_store: BlobStore) -> None:
        layout = json.loads((blob_store.root / "layout.json").read_text())
        assert layout == {"version": 1, "bucket_width": 2, "algorithm": "sha256"}

    def test_incompatible_layout_rejected(self, backup_dest: Path) -> None:
        store = BlobStore.for_destination(backup_dest)
        (store.root / "layout.json").write_text(
            json.dumps({"version": 1, "bucket_width": 3, "algorithm": "sha256"})
        )
        with pytest.raises(StoreLayoutError):
            BlobStore.for_destination(backup_dest)

    def test_unknown_layout_version_rejected(self, backup_dest: Path) -> None:
        store = BlobStore.for_destination(backup_dest)
        (store.root / "layout.json").write_text(
            json.dumps({"version": 7, "bucket_width": 2, "algorithm": "sha256"})
        )
        with pytest.raises(StoreLayoutError):
            BlobStore.for_destination(backup_dest)

    def test_layout_written_without_scratch_leftovers(self, blob_store: BlobStore) -> None:
        assert list((blob_store.root / "tmp").iterdir()) == []
        assert sorted(p.name for p in blob_store.root.iterdir()) == ["layout.json", "tmp"]

    def test_existing_layout_is_not_rewritten(self, backup_dest: Path) -> None:
        store = BlobStore.for_destination(backup_dest)
        layout = {"version": 1, "bucket_width": 2, "algorithm": "sha256", "note": "kept"}
        (store.root / "layout.json").write_text(json.dumps(layout))
        BlobStore.for_destination(backup_dest)
        assert json.loads((store.root / "layout.json").read_text()) == layout

    @pytest.mark.parametrize("content", ['{"version": 1, "bucket', "[1, 2]", ""])
    def test_damaged_layout_raises_layout_error(self, backup_dest: Path, content: str) -> None:
        store = BlobStore.for_destination(backup_dest)
        (store.root / "layout.json").write_text(content)
        with pytest.raises(StoreLayoutError):
            BlobStore.for_destination(backup_dest)


class TestOpenExistingVault:
    def test_missing_vault_is_not_created(self, backup_dest: Path) -> None:
        (backup_dest / ".snapvault").mkdir()
        with pytest.raises(StoreLayoutError):
            BlobStore.for_destination(backup_dest, create=False)
        assert list((backup_dest / ".snapvault").iterdir()) == []

    def test_existing_vault_opens_read_only(self, backup_dest: Path) -> None:
        digest = BlobStore.for_destination(backup_dest).put_bytes(b"kept")
        store = BlobStore.for_destination(backup_dest, create=False)
        assert store.read_bytes(digest) == b"kept"
