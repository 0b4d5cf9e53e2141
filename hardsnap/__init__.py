"""
Hardsnap - point-in-time directory snapshots built from hard links.

Each snapshot is a complete copy of the source tree on disk, but files
whose content was already backed up are hard-linked to the earlier copy
instead of being stored again. Snapshots only become visible once they are
complete, and interrupted runs are cleaned up by the next one.
"""

__version__ = "0.1.0"

# Export public API
from .config import EngineConfig, load_config
from .manifest import FileRecord, Manifest, ManifestStore
from .operations import BackupOperations, SnapshotResult

__all__ = [
    "BackupOperations",
    "EngineConfig",
    "FileRecord",
    "Manifest",
    "ManifestStore",
    "SnapshotResult",
    "load_config",
]
