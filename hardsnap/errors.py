"""
Exception types raised by the snapshot engine.

Per-file errors (TransientIOError, CrossDeviceError) are recorded against a
single path and never stop a run on their own. The remaining types are
structural: they abort the run and leave the previous snapshot as the
latest one.
"""

from typing import Optional


class HardsnapError(Exception):
    """Base class for all engine errors."""


class FileSystemError(HardsnapError):
    """
    A filesystem operation failed for a specific path.

    Attributes:
        path: Path the operation was acting on
        errno: Underlying OS error number, if any
    """

    def __init__(self, message: str, path: Optional[str] = None, errno: Optional[int] = None):
        self.path = path
        self.errno = errno
        super().__init__(message)


class TransientIOError(FileSystemError):
    """Permission denied, vanished file and other per-file I/O failures."""


class CrossDeviceError(FileSystemError):
    """A hard link was requested across two filesystems."""


class DiskFullError(FileSystemError):
    """The destination ran out of space (or quota)."""


class CorruptManifestError(HardsnapError):
    """
    A committed snapshot's manifest is missing, truncated or unreadable.

    The engine refuses to build on top of a broken history; an operator has
    to repair or prune the snapshot first.
    """

    def __init__(self, snapshot_id: int, details: str):
        self.snapshot_id = snapshot_id
        self.details = details
        super().__init__(f"Manifest of snapshot {snapshot_id} is corrupt: {details}")


class SnapshotNotFoundError(HardsnapError):
    """Raised when a requested snapshot does not exist."""

    def __init__(self, snapshot_id: int):
        self.snapshot_id = snapshot_id
        super().__init__(f"Snapshot {snapshot_id} does not exist")


class DestinationLockedError(HardsnapError):
    """Another run holds the destination lock."""


class BackupCancelled(HardsnapError):
    """The run was cancelled before it could commit."""
