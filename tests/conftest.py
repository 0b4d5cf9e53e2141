import os
import pytest
import shutil
import tempfile
import time
from pathlib import Path

from hardsnap.errors import CrossDeviceError, DiskFullError, TransientIOError
from hardsnap.fsops import LocalFileSystem


# ---- Individual fixtures for flexible test composition ----

@pytest.fixture
def temp_dir():
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)


@pytest.fixture
def source_dir(temp_dir):
    """Create a source directory with test files."""
    source_dir = temp_dir / "source"
    os.makedirs(source_dir)
    create_test_files(source_dir)
    return source_dir


@pytest.fixture
def dest_dir(temp_dir):
    """Destination directory path; created by the first snapshot."""
    return temp_dir / "backups"


# ---- Fault-injecting filesystems ----

class UnreadableFileSystem(LocalFileSystem):
    """Fails every read of a file whose name is in ``names``."""

    def __init__(self, *names):
        self.names = set(names)

    def read_stream(self, path, chunk_size=1024 * 1024):
        if Path(path).name in self.names:
            raise TransientIOError(f"Permission denied: '{path}'", str(path), 13)
        return super().read_stream(path, chunk_size)


class CrossDeviceFileSystem(LocalFileSystem):
    """Every hard link fails as if source and target were on different devices."""

    def create_hard_link(self, source, link_path):
        raise CrossDeviceError(f"Invalid cross-device link: '{link_path}'", str(link_path), 18)


class FullDiskFileSystem(LocalFileSystem):
    """New files can't be written once ``allowed`` writes have happened."""

    def __init__(self, allowed=0, names=None):
        self.allowed = allowed
        self.names = set(names or ())
        self.writes = 0

    def write_stream(self, path, chunks):
        name = Path(path).name
        if name != ".sequence.tmp" and (not self.names or name in self.names):
            if self.writes >= self.allowed:
                raise DiskFullError(f"No space left on device: '{path}'", str(path), 28)
            self.writes += 1
        return super().write_stream(path, chunks)


# ---- Base test class for inheritance-based testing ----

class TestBase:
    """Base class for all hardsnap tests providing isolation and cleanup."""

    def setUp(self):
        """
        Set up the test environment.

        This method:
        1. Creates a temporary directory
        2. Sets up source and restore directories
        3. Picks a destination path (created by the first snapshot)
        4. Creates test files
        """
        self.temp_dir = tempfile.TemporaryDirectory()
        self.working_dir = Path(self.temp_dir.name)

        self.source_dir = self.working_dir / "source"
        self.restore_dir = self.working_dir / "restore"
        self.dest_dir = self.working_dir / "backups"
        os.makedirs(self.source_dir)
        os.makedirs(self.restore_dir)

        self._create_test_files()

    def tearDown(self):
        """Clean up after the test."""
        self._safe_cleanup()

    @pytest.fixture(autouse=True)
    def _setup_teardown_fixture(self):
        """
        Pytest fixture to automatically call setUp and tearDown.

        This fixture is automatically used by all test methods in classes
        that inherit from TestBase.
        """
        self.setUp()
        yield
        self.tearDown()

    def _create_test_files(self):
        """Create test files in the source directory."""
        create_test_files(self.source_dir)

    def _safe_cleanup(self):
        """Clean up the temporary directory, tolerating permission leftovers."""
        for root, dirs, _ in os.walk(self.working_dir):
            for name in dirs:
                try:
                    os.chmod(os.path.join(root, name), 0o755)
                except OSError:
                    pass
        try:
            self.temp_dir.cleanup()
        except (PermissionError, OSError) as e:
            time.sleep(0.1)
            shutil.rmtree(self.temp_dir.name, ignore_errors=True)
            print(f"Warning: Could not clean up temporary directory cleanly: {e}")

    def write_file(self, relative_path, content):
        """Create a file under the source directory, making parent directories."""
        path = self.source_dir / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content)
        return path

    def snapshot_tree(self, snapshot_id):
        """Directory holding the file tree of a committed snapshot."""
        return self.dest_dir / "snapshots" / f"{snapshot_id:06d}" / "tree"


# ---- Helper functions for both approaches ----

def create_test_files(directory, count=5):
    """Create test files in the specified directory."""
    # Create text files
    for i in range(1, count):
        with open(directory / f"file_{i}.txt", "w") as f:
            f.write(f"Content of file {i}")

    # Create a binary file
    with open(directory / "binary.bin", "wb") as f:
        f.write(os.urandom(1024))  # 1KB of random data


def same_inode(first, second):
    a = os.stat(first)
    b = os.stat(second)
    return (a.st_dev, a.st_ino) == (b.st_dev, b.st_ino)
