import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from .commit import DestinationLock, SnapshotCommitController
from .config import EngineConfig
from .errors import HardsnapError, SnapshotNotFoundError, TransientIOError
from .fingerprint import hash_file_content
from .fsops import LocalFileSystem
from .manifest import Manifest, ManifestStore, resolve_under
from .materializer import SnapshotMaterializer
from .planner import SnapshotPlanner


# Get logger instance (configuration is handled in cli.py)
logger = logging.getLogger('hardsnap')

EXIT_OK = 0
EXIT_ABORTED = 1
EXIT_PARTIAL = 2


@dataclass
class SnapshotResult:
    """Summary of a committed snapshot run."""
    snapshot_id: int
    path: Path
    linked: int = 0
    copied: int = 0
    deduplicated: int = 0
    fallback_copies: int = 0
    size: int = 0
    elapsed: float = 0.0
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def files(self) -> int:
        return self.linked + self.copied

    @property
    def exit_code(self) -> int:
        """0 for a clean run, 2 when the snapshot committed with per-file errors."""
        return EXIT_PARTIAL if self.errors else EXIT_OK


class BackupOperations:
    """Handles core backup operations like snapshot, restore, list, prune and check."""

    def __init__(self, destination: Union[str, Path], config: Optional[EngineConfig] = None,
                 fs: Optional[LocalFileSystem] = None):
        """
        Initialize BackupOperations for a destination directory.

        Args:
            destination: Directory holding the snapshots; created on first snapshot
            config: Engine settings, defaults when omitted
            fs: Filesystem implementation, the local OS when omitted
        """
        self.destination = Path(destination).resolve()
        self.config = config or EngineConfig()
        self.fs = fs or LocalFileSystem()
        self.store = ManifestStore(self.destination, self.fs)
        logger.debug(f"Initialized BackupOperations with destination '{self.destination}'")

    def snapshot(self, target_directory: Union[str, Path], force_rehash: Optional[bool] = None,
                 cancel_event: Optional[threading.Event] = None) -> SnapshotResult:
        """
        Take a snapshot of the specified directory.

        Unchanged files are hard-linked from the latest snapshot, new or
        changed content is copied. The snapshot only becomes visible once it
        is complete; on any fatal error or cancellation the staging directory
        is removed and the previous snapshot remains the latest.

        Args:
            target_directory: Path to the directory to snapshot
            force_rehash: Hash every file even if size and mtime are unchanged
            cancel_event: Set from another thread to abort the run

        Returns:
            SnapshotResult: ID, location and counts of the committed snapshot

        Raises:
            ValueError: If the target directory doesn't exist or is not a directory
            PermissionError: If the target directory can't be read
            DestinationLockedError: If another backup runs against the destination
            CorruptManifestError: If the latest snapshot's manifest is unreadable
            DiskFullError: If the destination ran out of space
            BackupCancelled: If ``cancel_event`` was set
            RuntimeError: If there's any other error during the snapshot process
        """
        target_path = Path(target_directory).resolve()

        if not target_path.exists():
            raise ValueError(f"Target directory '{target_directory}' does not exist")
        if not target_path.is_dir():
            raise ValueError(f"'{target_directory}' is not a directory")
        if not os.access(target_path, os.R_OK):
            raise PermissionError(f"No permission to read directory '{target_directory}'")

        started = time.monotonic()
        config = self.config.with_overrides(force_rehash=force_rehash)
        self.fs.make_dirs(self.destination)

        with DestinationLock(self.destination):
            controller = SnapshotCommitController(self.store, config, self.fs)
            controller.recover()

            previous = self.store.latest()
            if previous is None:
                logger.info("No previous snapshot found, every file will be copied")
            else:
                logger.info(f"Building on snapshot {previous.snapshot_id} ({len(previous)} files)")

            try:
                staging_tree = controller.begin()
                planner = SnapshotPlanner(self.fs, config, cancel_event)
                plan = planner.plan(target_path, previous, exclude=[self.destination])

                materializer = SnapshotMaterializer(self.fs, config, cancel_event)
                manifest = materializer.materialize(plan, staging_tree)
                manifest.source_root = str(target_path)

                controller.verify(manifest)
                path = controller.commit(manifest)
            except BaseException as e:
                logger.error(f"Snapshot of '{target_directory}' aborted: {e!r}")
                try:
                    controller.abort()
                except HardsnapError as cleanup_error:
                    logger.error(f"Could not remove staging directory: {cleanup_error}")
                if isinstance(e, (HardsnapError, KeyboardInterrupt, SystemExit)):
                    raise
                raise RuntimeError(f"Failed to create snapshot: {str(e)}") from e

        for relative_path, cause in manifest.errors.items():
            logger.warning(f"Not backed up: '{relative_path}': {cause}")

        result = SnapshotResult(
            snapshot_id=controller.snapshot_id,
            path=path,
            linked=manifest.stats["linked"],
            copied=manifest.stats["copied"],
            deduplicated=manifest.stats["deduplicated"],
            fallback_copies=manifest.stats["fallback_copies"],
            errors=dict(manifest.errors),
            size=manifest.total_size,
            elapsed=time.monotonic() - started,
        )
        logger.info(
            f"Snapshot {result.snapshot_id} completed: {result.linked} linked, "
            f"{result.copied} copied, {len(result.errors)} errors"
        )
        return result

    def list_snapshots(self) -> List[Dict[str, Any]]:
        """
        List all snapshots with disk usage metrics.

        Returns:
            List[Dict[str, Any]]: List of snapshots with information including:
                - id: Snapshot ID
                - timestamp: Creation timestamp
                - files: Number of files in the snapshot
                - errors: Number of files that could not be backed up
                - size: Total size of files in kilobytes
                - distinct_size: Kilobytes held by inodes no other snapshot shares

        Raises:
            CorruptManifestError: If a snapshot's manifest is unreadable
        """
        snapshots = []
        inodes_by_snapshot: Dict[int, Dict[Tuple[int, int], int]] = {}
        for snapshot_id in self.store.snapshot_ids():
            manifest = self.store.load(snapshot_id)
            inodes_by_snapshot[snapshot_id] = self._inodes(manifest)
            snapshots.append({
                'id': snapshot_id,
                'timestamp': manifest.created_at,
                'files': len(manifest),
                'errors': len(manifest.errors),
                'size': int(manifest.total_size / 1024),
            })

        for snapshot in snapshots:
            own = inodes_by_snapshot[snapshot['id']]
            shared: Set[Tuple[int, int]] = set()
            for other_id, other in inodes_by_snapshot.items():
                if other_id != snapshot['id']:
                    shared.update(other)
            distinct = sum(size for inode, size in own.items() if inode not in shared)
            snapshot['distinct_size'] = int(distinct / 1024)

        logger.debug(f"Retrieved information for {len(snapshots)} snapshots")
        return snapshots

    def _inodes(self, manifest: Manifest) -> Dict[Tuple[int, int], int]:
        """Map each inode of a snapshot to its size."""
        inodes = {}
        for record in manifest:
            try:
                st = self.fs.get_metadata(manifest.physical_path(record.relative_path))
            except TransientIOError:
                continue
            inodes[(st.st_dev, st.st_ino)] = st.st_size
        return inodes

    def restore(self, snapshot_id: int, output_directory: Union[str, Path]) -> bool:
        """
        Restore a snapshot to the specified directory.

        Files are written under a temporary name and renamed into place, so
        an existing file in the output directory is replaced rather than
        written through (it may be a hard link into a snapshot). Recorded
        permission bits and modification times are reapplied.

        Args:
            snapshot_id: ID of the snapshot to restore
            output_directory: Directory to restore the snapshot to

        Returns:
            bool: True if every file was restored

        Raises:
            ValueError: If the snapshot doesn't exist or parameters are invalid
            PermissionError: If there's no permission to write to the output directory
            CorruptManifestError: If the snapshot's manifest is unreadable
        """
        if not isinstance(snapshot_id, int) or snapshot_id <= 0:
            raise ValueError(f"Invalid snapshot ID: {snapshot_id}")
        if not output_directory:
            raise ValueError("Output directory cannot be empty")

        try:
            manifest = self.store.load(snapshot_id)
        except SnapshotNotFoundError as e:
            raise ValueError(str(e)) from e

        output_path = Path(output_directory).resolve()
        os.makedirs(output_path, exist_ok=True)
        if not os.access(output_path, os.W_OK):
            raise PermissionError(f"No permission to write to directory '{output_directory}'")

        logger.info(f"Restoring snapshot {snapshot_id} from {manifest.created_at} to {output_path}")
        restored_count = 0
        skipped_count = 0
        for record in manifest:
            try:
                target = resolve_under(output_path, record.relative_path)
            except ValueError as e:
                logger.warning(f"Skipping '{record.relative_path}': {e}")
                skipped_count += 1
                continue
            tmp_path = target.with_name(f".{target.name}.hardsnap-tmp")
            try:
                self.fs.make_dirs(target.parent)
                self.fs.remove_file(tmp_path)
                self.fs.write_stream(
                    tmp_path,
                    self.fs.read_stream(manifest.physical_path(record.relative_path), self.config.chunk_size)
                )
                self.fs.set_metadata(tmp_path, record.mode, record.mtime_ns)
                self.fs.atomic_rename(tmp_path, target)
                restored_count += 1
            except TransientIOError as e:
                logger.warning(f"Failed to restore '{record.relative_path}': {e}")
                self.fs.remove_file(tmp_path)
                skipped_count += 1

        if skipped_count > 0:
            logger.warning(f"Skipped {skipped_count} files due to errors")
        logger.info(f"Restored {restored_count}/{len(manifest)} files from snapshot {snapshot_id}")
        return skipped_count == 0

    def prune(self, snapshot_id: int) -> bool:
        """
        Delete a snapshot.

        Other snapshots hold their own hard links, so their data survives.
        The snapshot is first renamed out of ``snapshots/`` so it disappears
        atomically, then its tree is removed.

        Args:
            snapshot_id: ID of the snapshot to prune

        Returns:
            bool: True if the prune was successful

        Raises:
            ValueError: If the snapshot doesn't exist or ID is invalid
            DestinationLockedError: If a backup is running against the destination
        """
        if not isinstance(snapshot_id, int) or snapshot_id <= 0:
            raise ValueError(f"Invalid snapshot ID: {snapshot_id}")

        with DestinationLock(self.destination):
            snapshot_dir = self.store.snapshot_dir(snapshot_id)
            if not snapshot_dir.is_dir():
                raise ValueError(f"Snapshot {snapshot_id} does not exist")

            logger.info(f"Pruning snapshot {snapshot_id}")
            pruning_dir = self.store.pruning_dir(snapshot_id)
            self.fs.atomic_rename(snapshot_dir, pruning_dir)
            self.fs.fsync_dir(self.store.snapshots_dir)
            self.fs.remove_tree(pruning_dir)

        logger.info(f"Successfully pruned snapshot {snapshot_id}")
        return True

    def check(self, snapshot_id: Optional[int] = None) -> Tuple[bool, List[Dict[str, Any]]]:
        """
        Verify that snapshot files still hold the bytes their manifests record.

        Every file is rehashed and compared with its manifest hash. Missing or
        unreadable files are reported with a calculated hash of None.

        Args:
            snapshot_id: Snapshot to check; all snapshots when omitted

        Returns:
            Tuple[bool, List[Dict[str, Any]]]: A tuple containing:
                - A boolean indicating if all content matches the expected hash.
                - A list of dictionaries with information about corrupted files

        Raises:
            ValueError: If the snapshot doesn't exist
            CorruptManifestError: If a manifest is unreadable
        """
        ids = [snapshot_id] if snapshot_id is not None else self.store.snapshot_ids()
        logger.info(f"Starting integrity check of {len(ids)} snapshots")

        corrupted_items = []
        for current_id in ids:
            try:
                manifest = self.store.load(current_id)
            except SnapshotNotFoundError as e:
                raise ValueError(str(e)) from e

            for record in manifest:
                physical = manifest.physical_path(record.relative_path)
                try:
                    calculated = hash_file_content(physical, self.fs, self.config.chunk_size)
                except TransientIOError as e:
                    logger.debug(f"Could not read '{physical}': {e}")
                    calculated = None
                if calculated != record.content_hash:
                    corrupted_items.append({
                        'snapshot_id': current_id,
                        'timestamp': manifest.created_at,
                        'path': record.relative_path,
                        'stored_hash': record.content_hash,
                        'calculated_hash': calculated,
                    })

        if corrupted_items:
            logger.warning(f"Integrity check failed. Found {len(corrupted_items)} corrupted files.")
        else:
            logger.info("Integrity check passed. All content is valid.")
        return not corrupted_items, corrupted_items

    def close(self) -> None:
        """Release resources; kept for symmetry with the context manager protocol."""
        logger.debug("Closing BackupOperations")

    def __enter__(self) -> 'BackupOperations':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
