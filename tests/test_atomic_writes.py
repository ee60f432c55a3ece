"""
Tests for storage.atomic: crash-safe, owner-only writes of key material.
"""
from __future__ import annotations

import os
import stat
from pathlib import Path
from unittest.mock import patch

import pytest

from storage.atomic import atomic_write_bytes, atomic_write_text, ensure_dir


class TestAtomicWriteBytes:
    """atomic_write_bytes: temp file + fsync + rename."""

    def test_writes_content(self, tmp_path):
        path = tmp_path / "example.test.crt"

        atomic_write_bytes(path, b"-----BEGIN CERTIFICATE-----")

        assert path.read_bytes() == b"-----BEGIN CERTIFICATE-----"

    def test_replaces_existing(self, tmp_path):
        path = tmp_path / "example.test.crt"
        path.write_bytes(b"old chain")

        atomic_write_bytes(path, b"new chain")

        assert path.read_bytes() == b"new chain"

    def test_owner_only_by_default(self, tmp_path):
        path = tmp_path / "acme_account.key"

        atomic_write_bytes(path, b"key")

        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_custom_mode(self, tmp_path):
        path = tmp_path / "public.pem"

        atomic_write_bytes(path, b"pem", mode=0o644)

        assert stat.S_IMODE(path.stat().st_mode) == 0o644

    def test_no_temp_file_left(self, tmp_path):
        path = tmp_path / "example.test.key"

        atomic_write_bytes(path, b"key")

        assert [p.name for p in tmp_path.iterdir()] == ["example.test.key"]

    def test_fsync_before_rename(self, tmp_path):
        path = tmp_path / "example.test.key"
        order = []
        real_fsync, real_replace = os.fsync, os.replace

        def fsync(fd):
            order.append("fsync")
            real_fsync(fd)

        def replace(src, dst):
            order.append("replace")
            real_replace(src, dst)

        with patch("storage.atomic.os.fsync", side_effect=fsync), \
                patch("storage.atomic.os.replace", side_effect=replace):
            atomic_write_bytes(path, b"key")

        assert order == ["fsync", "replace"]

    def test_failed_rename_keeps_old_file_and_cleans_temp(self, tmp_path):
        path = tmp_path / "example.test.crt"
        path.write_bytes(b"old chain")

        with patch("storage.atomic.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                atomic_write_bytes(path, b"new chain")

        assert path.read_bytes() == b"old chain"
        assert [p.name for p in tmp_path.iterdir()] == ["example.test.crt"]

    def test_creates_parent_dirs_owner_only(self, tmp_path):
        path = tmp_path / "cache" / "nested" / "example.test.key"

        atomic_write_bytes(path, b"key")

        assert path.read_bytes() == b"key"
        assert stat.S_IMODE(path.parent.stat().st_mode) == 0o700


class TestAtomicWriteText:
    def test_encodes_text(self, tmp_path):
        path = tmp_path / "token"

        atomic_write_text(path, "dns-token\n")

        assert path.read_text() == "dns-token\n"


class TestEnsureDir:
    def test_existing_dir_is_tightened(self, tmp_path):
        existing = tmp_path / "certs"
        existing.mkdir(mode=0o755)
        os.chmod(existing, 0o755)

        ensure_dir(Path(existing))

        assert stat.S_IMODE(existing.stat().st_mode) == 0o700

    def test_write_tightens_existing_cache_dir(self, tmp_path):
        cache = tmp_path / "certs"
        cache.mkdir()
        os.chmod(cache, 0o755)

        atomic_write_bytes(cache / "example.test.crt", b"chain")

        assert stat.S_IMODE(cache.stat().st_mode) == 0o700
