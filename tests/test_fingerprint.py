import hashlib

import pytest

from imagestore.fingerprint import fingerprint_bytes, fingerprint_file, is_valid_digest


def test_fingerprint_bytes_is_sha256_hex():
    digest = fingerprint_bytes(b"image data")
    assert digest == hashlib.sha256(b"image data").hexdigest()
    assert len(digest) == 64
    assert is_valid_digest(digest)


def test_fingerprint_is_deterministic_and_content_sensitive():
    assert fingerprint_bytes(b"abc") == fingerprint_bytes(bytearray(b"abc"))
    assert fingerprint_bytes(b"abc") != fingerprint_bytes(b"abd")


def test_fingerprint_file_matches_bytes(tmp_path):
    # Larger than one read chunk.
    data = bytes(range(256)) * 1024
    path = tmp_path / "blob.bin"
    path.write_bytes(data)
    assert fingerprint_file(path) == fingerprint_bytes(data)


def test_fingerprint_file_missing_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        fingerprint_file(tmp_path / "missing.png")


def test_is_valid_digest_rejects_garbage():
    assert not is_valid_digest("")
    assert not is_valid_digest("z" * 64)
    assert not is_valid_digest("A" * 64)
    assert not is_valid_digest("a" * 63)
