from __future__ import annotations

import hashlib
from pathlib import Path

from vdctl.infrastructure.filesystem import atomic_write_bytes, sha256_file


class TestAtomicWrite:
    def test_creates_parents_and_replaces(self, tmp_path: Path) -> None:
        target = tmp_path / "a" / "b" / "file.bin"
        atomic_write_bytes(target, b"one")
        atomic_write_bytes(target, b"two\r\n")
        assert target.read_bytes() == b"two\r\n"
        assert [p.name for p in target.parent.iterdir()] == ["file.bin"]

    def test_sha256(self, tmp_path: Path) -> None:
        target = tmp_path / "f"
        target.write_bytes(b"x" * 200_000)
        assert sha256_file(target) == hashlib.sha256(b"x" * 200_000).hexdigest()
