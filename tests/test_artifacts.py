# Copyright (c) Syntropy Systems
"""Tests for trial directories and their lifetime."""

from concurrent.futures import ThreadPoolExecutor

from fpbisect.artifacts import ArtifactManager, directory_size, next_run_dir


class TestNextRunDir:
    def test_numbering(self, temp_dir):
        first = next_run_dir(temp_dir / "bisect")
        second = next_run_dir(temp_dir / "bisect")

        assert first.name == "bisect-01"
        assert second.name == "bisect-02"
        assert first.is_dir()

    def test_continues_after_highest(self, temp_dir):
        (temp_dir / "bisect-07").mkdir()
        (temp_dir / "unrelated").mkdir()

        assert next_run_dir(temp_dir).name == "bisect-08"

    def test_concurrent_callers_get_distinct_dirs(self, temp_dir):
        with ThreadPoolExecutor(max_workers=8) as pool:
            dirs = list(pool.map(lambda _: next_run_dir(temp_dir), range(20)))

        assert len({d.name for d in dirs}) == 20


class TestArtifactManager:
    def test_acquire_creates_unique_dirs(self, temp_dir):
        manager = ArtifactManager(temp_dir / "trials")

        a = manager.acquire("trial")
        b = manager.acquire("trial")

        assert a.path != b.path
        assert a.path.is_dir()
        assert a.path.name == "001-trial"
        assert manager.active == sorted([a.path, b.path])

    def test_release_keeps_dir_without_delete(self, temp_dir):
        manager = ArtifactManager(temp_dir / "trials")

        with manager.acquire("trial") as lease:
            (lease.path / "out.txt").write_text("x")

        assert lease.path.exists()
        assert manager.active == []

    def test_release_deletes_with_delete(self, temp_dir):
        manager = ArtifactManager(temp_dir / "trials", delete=True)

        lease = manager.acquire("trial")
        (lease.path / "out.txt").write_text("x")
        lease.release()
        lease.release()

        assert not lease.path.exists()
        assert manager.active == []

    def test_peak_active(self, temp_dir):
        manager = ArtifactManager(temp_dir / "trials", delete=True)

        leases = [manager.acquire(f"t{i}") for i in range(3)]
        for lease in leases:
            lease.release()
        manager.acquire("again").release()

        assert manager.peak_active == 3

    def test_cleanup(self, temp_dir):
        kept = ArtifactManager(temp_dir / "kept")
        kept.acquire("trial")
        removed = ArtifactManager(temp_dir / "removed", delete=True)
        removed.acquire("trial")

        kept.cleanup()
        removed.cleanup()

        assert (temp_dir / "kept").exists()
        assert not (temp_dir / "removed").exists()


def test_directory_size(temp_dir):
    (temp_dir / "a").write_bytes(b"1234")
    (temp_dir / "sub").mkdir()
    (temp_dir / "sub" / "b").write_bytes(b"12")

    assert directory_size(temp_dir) == 6
    assert directory_size(temp_dir / "missing") == 0
