import os
import stat
import pytest

from hardsnap.operations import BackupOperations
from hardsnap.manifest import ManifestStore
from tests.conftest import TestBase, same_inode


class TestSnapshot(TestBase):
    """Test snapshot functionality with proper isolation."""

    def test_snapshot_creation(self):
        """Test that a snapshot can be created successfully."""
        with BackupOperations(str(self.dest_dir)) as ops:
            result = ops.snapshot(str(self.source_dir))

            assert result.snapshot_id == 1
            assert result.path == self.dest_dir.resolve() / "snapshots" / "000001"
            assert result.copied == 5
            assert result.linked == 0
            assert result.errors == {}
            assert result.exit_code == 0

            manifest = ops.store.load(1)
            assert len(manifest) == 5  # 4 text files + 1 binary file
            assert result.size == manifest.total_size > 0
            assert result.elapsed > 0
            for record in manifest:
                source = self.source_dir / record.relative_path
                assert manifest.physical_path(record.relative_path).read_bytes() == source.read_bytes()

    def test_second_run_links_everything(self):
        """An unchanged source produces identical hashes and zero copies."""
        with BackupOperations(str(self.dest_dir)) as ops:
            ops.snapshot(str(self.source_dir))
            second = ops.snapshot(str(self.source_dir))

            assert second.snapshot_id == 2
            assert second.copied == 0
            assert second.linked == 5

            first_manifest = ops.store.load(1)
            second_manifest = ops.store.load(2)
            assert first_manifest.hashes() == second_manifest.hashes()
            for record in second_manifest:
                assert same_inode(first_manifest.physical_path(record.relative_path),
                                  second_manifest.physical_path(record.relative_path))

    def test_duplicate_content_detection(self):
        """Identical files in one run share a single physical copy."""
        dup_dir = self.working_dir / "duplicates"
        os.makedirs(dup_dir)
        for i in range(5):
            with open(dup_dir / f"file_{i}.txt", "w") as f:
                f.write("This is identical content in multiple files")

        with BackupOperations(str(self.dest_dir)) as ops:
            result = ops.snapshot(str(dup_dir))
            assert result.copied == 1
            assert result.deduplicated == 4

            manifest = ops.store.load(1)
            assert len(manifest) == 5
            assert len(set(manifest.hashes().values())) == 1
            inodes = {os.stat(manifest.physical_path(r.relative_path)).st_ino for r in manifest}
            assert len(inodes) == 1

    def test_example_scenario(self):
        """a/b share a blob; d in the next run reuses the blob of the deleted c."""
        source = self.working_dir / "scenario"
        os.makedirs(source)
        (source / "a.txt").write_text("hello")
        (source / "b.txt").write_text("hello")
        (source / "c.txt").write_text("world")

        with BackupOperations(str(self.dest_dir)) as ops:
            first = ops.snapshot(str(source))
            manifest1 = ops.store.load(first.snapshot_id)
            assert sorted(manifest1.records) == ["a.txt", "b.txt", "c.txt"]
            blobs = {os.stat(manifest1.physical_path(p)).st_ino for p in manifest1.records}
            assert len(blobs) == 2
            assert same_inode(manifest1.physical_path("a.txt"), manifest1.physical_path("b.txt"))

            (source / "c.txt").unlink()
            (source / "d.txt").write_text("world")
            second = ops.snapshot(str(source))
            manifest2 = ops.store.load(second.snapshot_id)

            assert sorted(manifest2.records) == ["a.txt", "b.txt", "d.txt"]
            assert second.copied == 0
            assert same_inode(manifest2.physical_path("d.txt"), manifest1.physical_path("c.txt"))

    def test_moved_file_is_linked(self):
        """Renaming a file keeps its content linked rather than copied."""
        with BackupOperations(str(self.dest_dir)) as ops:
            ops.snapshot(str(self.source_dir))
            os.makedirs(self.source_dir / "moved")
            os.rename(self.source_dir / "binary.bin", self.source_dir / "moved" / "renamed.bin")

            result = ops.snapshot(str(self.source_dir))
            assert result.copied == 0

            manifest1 = ops.store.load(1)
            manifest2 = ops.store.load(2)
            assert "binary.bin" not in manifest2
            assert same_inode(manifest2.physical_path("moved/renamed.bin"),
                              manifest1.physical_path("binary.bin"))

    def test_multiple_snapshots(self):
        """Only modified and new files are copied by later snapshots."""
        with BackupOperations(str(self.dest_dir)) as ops:
            assert ops.snapshot(str(self.source_dir)).snapshot_id == 1

            with open(self.source_dir / "file_1.txt", "w") as f:
                f.write("Modified content")
            with open(self.source_dir / "new_file.txt", "w") as f:
                f.write("New file content")

            result = ops.snapshot(str(self.source_dir))
            assert result.snapshot_id == 2
            assert result.copied == 2
            assert result.linked == 4

            assert (self.snapshot_tree(1) / "file_1.txt").read_text() == "Content of file 1"
            assert (self.snapshot_tree(2) / "file_1.txt").read_text() == "Modified content"
            assert len(ops.store.load(2)) == 6

    def test_source_edits_never_reach_snapshots(self):
        """Snapshot files are separate inodes from the source and carry no write bits."""
        with BackupOperations(str(self.dest_dir)) as ops:
            ops.snapshot(str(self.source_dir))
            ops.snapshot(str(self.source_dir))

            with open(self.source_dir / "file_2.txt", "r+") as f:
                f.write("XX")

            for snapshot_id in (1, 2):
                committed = self.snapshot_tree(snapshot_id) / "file_2.txt"
                assert committed.read_text() == "Content of file 2"
                assert not same_inode(committed, self.source_dir / "file_2.txt")
                assert stat.S_IMODE(os.stat(committed).st_mode) & 0o222 == 0

    def test_manifest_records_source_metadata(self):
        target = self.source_dir / "script.sh"
        target.write_text("#!/bin/sh\necho hi\n")
        os.chmod(target, 0o754)
        os.utime(target, ns=(1_600_000_000_000_000_000, 1_600_000_000_000_000_000))

        with BackupOperations(str(self.dest_dir)) as ops:
            ops.snapshot(str(self.source_dir))
            record = ops.store.load(1).get("script.sh")

        assert record.mode == 0o754
        assert record.mtime_ns == 1_600_000_000_000_000_000
        assert record.size == len("#!/bin/sh\necho hi\n")
        assert os.stat(self.snapshot_tree(1) / "script.sh").st_mtime_ns == record.mtime_ns

    def test_nested_directories(self):
        self.write_file("level1/level2/deep.txt", "deep")
        self.write_file("level1/other.txt", "other")

        with BackupOperations(str(self.dest_dir)) as ops:
            ops.snapshot(str(self.source_dir))
            manifest = ops.store.load(1)

        assert "level1/level2/deep.txt" in manifest
        assert (self.snapshot_tree(1) / "level1" / "level2" / "deep.txt").read_text() == "deep"

    def test_destination_inside_source_is_skipped(self):
        inner_dest = self.source_dir / "backups"
        with BackupOperations(str(inner_dest)) as ops:
            ops.snapshot(str(self.source_dir))
            second = ops.snapshot(str(self.source_dir))
            manifest = ops.store.load(second.snapshot_id)

        assert not any(path.startswith("backups/") for path in manifest.records)
        assert len(manifest) == 5

    def test_force_rehash_catches_same_size_edit(self):
        """An edit that keeps size and mtime is only seen with force_rehash."""
        path = self.source_dir / "file_3.txt"
        before = os.stat(path)

        with BackupOperations(str(self.dest_dir)) as ops:
            ops.snapshot(str(self.source_dir))

            path.write_text("Content of file X")
            os.utime(path, ns=(before.st_atime_ns, before.st_mtime_ns))

            trusting = ops.snapshot(str(self.source_dir))
            assert trusting.copied == 0
            assert (self.snapshot_tree(2) / "file_3.txt").read_text() == "Content of file 3"

            forced = ops.snapshot(str(self.source_dir), force_rehash=True)
            assert forced.copied == 1
            assert (self.snapshot_tree(3) / "file_3.txt").read_text() == "Content of file X"

    def test_empty_source_directory(self):
        empty = self.working_dir / "empty"
        os.makedirs(empty)
        with BackupOperations(str(self.dest_dir)) as ops:
            result = ops.snapshot(str(empty))
            assert result.files == 0
            assert len(ops.store.load(1)) == 0

    def test_invalid_target(self):
        with BackupOperations(str(self.dest_dir)) as ops:
            with pytest.raises(ValueError):
                ops.snapshot(str(self.working_dir / "missing"))
            with pytest.raises(ValueError):
                ops.snapshot(str(self.source_dir / "file_1.txt"))
        assert ManifestStore(self.dest_dir).snapshot_ids() == []
