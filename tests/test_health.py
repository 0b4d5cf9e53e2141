import os
import pytest
from pathlib import Path

# Import the necessary modules from the hardsnap package
try:
    from hardsnap.operations import BackupOperations
    from hardsnap.manifest import ManifestStore
    from hardsnap.fingerprint import hash_file_content
except ImportError as e:
    pytest.skip(f"Failed to import hardsnap modules: {e}", allow_module_level=True)
from tests.conftest import TestBase


class TestHealth(TestBase):
    """Basic health check tests for hardsnap."""

    def test_imports(self):
        """Test that all required modules can be imported."""
        assert BackupOperations is not None
        assert ManifestStore is not None
        assert hash_file_content is not None

    def test_backup_operations_initialization(self):
        """The destination is not created until the first snapshot."""
        ops = BackupOperations(str(self.dest_dir))
        try:
            assert ops is not None
            assert not self.dest_dir.exists()
            assert ops.list_snapshots() == []
        finally:
            ops.close()

    def test_hash_function(self):
        """Test that hash_file_content produces a SHA-256 hex digest."""
        test_file = self.working_dir / "test.txt"
        with open(test_file, "w") as f:
            f.write("Test content")

        file_hash = hash_file_content(str(test_file))
        assert isinstance(file_hash, str)
        assert len(file_hash) == 64
        assert file_hash == hash_file_content(test_file, chunk_size=3)

    def test_context_manager(self):
        """Test that BackupOperations works as a context manager."""
        with BackupOperations(str(self.dest_dir)) as ops:
            result = ops.snapshot(str(self.source_dir))
        assert result.snapshot_id == 1

    def test_check_integrity(self):
        """Test that the check operation identifies altered snapshot content."""
        with BackupOperations(str(self.dest_dir)) as ops:
            ops.snapshot(str(self.source_dir))

            all_valid, corrupted_items = ops.check()
            assert all_valid is True
            assert len(corrupted_items) == 0

            # Corrupt a committed file by flipping its first byte
            victim = self.snapshot_tree(1) / "file_1.txt"
            os.chmod(victim, 0o644)
            data = bytearray(victim.read_bytes())
            data[0] = (data[0] + 1) % 256
            victim.write_bytes(bytes(data))

            all_valid, corrupted_items = ops.check()
            assert all_valid is False
            assert len(corrupted_items) == 1
            assert corrupted_items[0]['path'] == "file_1.txt"
            assert corrupted_items[0]['snapshot_id'] == 1
            assert corrupted_items[0]['calculated_hash'] != corrupted_items[0]['stored_hash']

    def test_check_reports_missing_file(self):
        with BackupOperations(str(self.dest_dir)) as ops:
            ops.snapshot(str(self.source_dir))
            os.unlink(self.snapshot_tree(1) / "binary.bin")

            all_valid, corrupted_items = ops.check(1)
            assert all_valid is False
            assert corrupted_items[0]['path'] == "binary.bin"
            assert corrupted_items[0]['calculated_hash'] is None

    def test_check_unknown_snapshot(self):
        with BackupOperations(str(self.dest_dir)) as ops:
            with pytest.raises(ValueError):
                ops.check(7)
