"""
Publishing snapshots and recovering from interrupted runs.

A run builds its snapshot in ``<destination>/.staging-<id>/``: the file
tree under ``tree/`` and, once verified, ``manifest.db`` next to it.
Committing is one directory rename into ``snapshots/<id>``, so a crash at
any point leaves either the complete new snapshot or no trace of it except
the staging directory, which the next run deletes.
"""

import json
import logging
import os
import socket
import time
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from .config import EngineConfig
from .errors import DestinationLockedError, HardsnapError
from .fsops import LocalFileSystem
from .manifest import PRUNING_PREFIX, STAGING_PREFIX, TREE_NAME, Manifest, ManifestStore

logger = logging.getLogger('hardsnap')

LOCK_FILE_NAME = "hardsnap.lock"


class SnapshotState(Enum):
    STAGING = "staging"
    VERIFIED = "verified"
    COMMITTED = "committed"
    ABORTED = "aborted"


class DestinationLock:
    """
    Exclusive advisory lock on a destination, held for a whole run.

    The lock file is created with ``O_CREAT | O_EXCL`` and records the
    owner's PID and hostname. A lock left behind by a dead process on this
    host is considered stale and taken over.
    """

    def __init__(self, destination: Union[str, Path]):
        self.path = Path(destination) / LOCK_FILE_NAME
        self._owner: Optional[dict] = None

    def acquire(self) -> None:
        """
        Take the lock.

        Raises:
            DestinationLockedError: If another live process holds it
        """
        owner = {
            "pid": os.getpid(),
            "hostname": socket.gethostname(),
            "acquired_at": time.time(),
        }
        for attempt in range(2):
            try:
                fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if attempt == 0 and self._break_if_stale():
                    continue
                holder = self._read_owner() or {}
                raise DestinationLockedError(
                    f"Backup already in progress for '{self.path.parent}' "
                    f"(pid {holder.get('pid', 'unknown')} on {holder.get('hostname', 'unknown host')})"
                )
            try:
                os.write(fd, json.dumps(owner).encode())
                os.fsync(fd)
            finally:
                os.close(fd)
            self._owner = owner
            logger.debug(f"Acquired lock '{self.path}'")
            return

    def release(self) -> None:
        """Remove the lock file if this instance still owns it."""
        if self._owner is None:
            return
        current = self._read_owner()
        if current is not None and current.get("pid") == self._owner["pid"] \
                and current.get("hostname") == self._owner["hostname"]:
            try:
                self.path.unlink()
            except FileNotFoundError:
                pass
            logger.debug(f"Released lock '{self.path}'")
        else:
            logger.warning(f"Lock '{self.path}' was taken over by another process, not releasing")
        self._owner = None

    def _read_owner(self) -> Optional[dict]:
        try:
            return json.loads(self.path.read_text())
        except (OSError, ValueError):
            return None

    def _break_if_stale(self) -> bool:
        """Remove the lock if its owner is a dead process on this host."""
        owner = self._read_owner()
        if owner is None:
            # Unreadable: either mid-write by its owner or garbage. Only
            # garbage older than a minute is removed.
            try:
                age = time.time() - self.path.stat().st_mtime
            except FileNotFoundError:
                return True
            if age < 60:
                return False
        elif owner.get("hostname") != socket.gethostname() or _process_alive(owner.get("pid")):
            return False

        logger.warning(f"Removing stale lock '{self.path}' (owner: {owner})")
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        return True

    def __enter__(self) -> 'DestinationLock':
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def _process_alive(pid: Optional[int]) -> bool:
    if not isinstance(pid, int) or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to another user.
        return True
    except OSError:
        return False
    return True


class SnapshotCommitController:
    """
    Drives one snapshot through ``STAGING -> VERIFIED -> COMMITTED``.

    Any failure before the commit rename moves it to ``ABORTED`` through
    ``abort()``, which deletes the staging directory. Must be used while
    holding the DestinationLock.
    """

    def __init__(self, store: ManifestStore, config: Optional[EngineConfig] = None,
                 fs: Optional[LocalFileSystem] = None):
        self.store = store
        self.config = config or EngineConfig()
        self.fs = fs or store.fs
        self.state: Optional[SnapshotState] = None
        self.snapshot_id: Optional[int] = None

    @property
    def staging_dir(self) -> Path:
        return self.store.staging_dir(self.snapshot_id)

    @property
    def staging_tree(self) -> Path:
        return self.staging_dir / TREE_NAME

    def recover(self) -> List[Path]:
        """
        Delete staging and pruning leftovers of interrupted runs.

        Returns:
            List[Path]: Directories that were removed
        """
        removed = []
        if not self.store.root.is_dir():
            return removed
        for entry in self.fs.list_dir(self.store.root):
            if entry.name.startswith((STAGING_PREFIX, PRUNING_PREFIX)) and entry.is_dir(follow_symlinks=False):
                logger.warning(f"Removing leftover directory of an interrupted run: '{entry.path}'")
                self.fs.remove_tree(entry.path)
                removed.append(Path(entry.path))
        return removed

    def begin(self) -> Path:
        """
        Reserve the next snapshot ID and create its staging tree.

        Returns:
            Path: Directory the Materializer should populate
        """
        self._expect(None)
        self.fs.make_dirs(self.store.snapshots_dir)
        self.snapshot_id = self.store.next_id()
        self.store.reserve_id(self.snapshot_id)
        self.fs.make_dirs(self.staging_tree)
        self.state = SnapshotState.STAGING
        logger.info(f"Staging snapshot {self.snapshot_id} in '{self.staging_dir}'")
        return self.staging_tree

    def verify(self, manifest: Manifest) -> None:
        """
        Make the manifest durable inside the staging directory.

        Raises:
            HardsnapError: If the per-file error ratio exceeds ``max_error_ratio``
            DiskFullError: If the manifest can't be written
        """
        self._expect(SnapshotState.STAGING)
        total = len(manifest) + len(manifest.errors)
        ratio = self.config.max_error_ratio
        if ratio is not None and total and len(manifest.errors) / total > ratio:
            raise HardsnapError(
                f"{len(manifest.errors)} of {total} files failed, above the allowed ratio of {ratio}"
            )
        self.store.save(manifest, self.snapshot_id)
        self.fs.fsync_dir(self.staging_tree)
        self.state = SnapshotState.VERIFIED

    def commit(self, manifest: Optional[Manifest] = None) -> Path:
        """
        Publish the staged snapshot with a single rename.

        Returns:
            Path: Directory of the committed snapshot
        """
        self._expect(SnapshotState.VERIFIED)
        final_dir = self.store.snapshot_dir(self.snapshot_id)
        self.fs.atomic_rename(self.staging_dir, final_dir)
        self.fs.fsync_dir(self.store.snapshots_dir)
        self.state = SnapshotState.COMMITTED
        if manifest is not None:
            manifest.root_path = self.store.tree_dir(self.snapshot_id)
        logger.info(f"Committed snapshot {self.snapshot_id} at '{final_dir}'")
        return final_dir

    def abort(self) -> None:
        """Discard the staged snapshot; the previous latest snapshot stays visible."""
        if self.state in (SnapshotState.COMMITTED, SnapshotState.ABORTED) or self.snapshot_id is None:
            return
        logger.warning(f"Aborting snapshot {self.snapshot_id}")
        self.fs.remove_tree(self.staging_dir)
        self.state = SnapshotState.ABORTED

    def _expect(self, state: Optional[SnapshotState]) -> None:
        if self.state is not state:
            wanted = state.value if state else "new"
            current = self.state.value if self.state else "new"
            raise RuntimeError(f"Snapshot is {current}, expected {wanted}")
