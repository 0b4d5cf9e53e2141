import hashlib
import logging
import stat
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .config import EngineConfig
from .errors import BackupCancelled, CrossDeviceError, DiskFullError, FileSystemError, TransientIOError
from .fsops import LocalFileSystem
from .manifest import FileRecord, Manifest, resolve_under
from .planner import Action, Plan, PlanEntry

logger = logging.getLogger('hardsnap')


@dataclass
class _Outcome:
    record: Optional[FileRecord] = None
    kind: Optional[str] = None
    cause: Optional[str] = None
    disk_full: bool = False


class SnapshotMaterializer:
    """
    Executes a plan inside a staging directory.

    Files to link become new hard links to the prior snapshot's inodes;
    files to copy are streamed into freshly created files. Nothing that
    already exists is ever opened for writing, and metadata is only applied
    to inodes created by this run, so committed snapshots sharing an inode
    are never modified.
    """

    def __init__(self, fs: Optional[LocalFileSystem] = None, config: Optional[EngineConfig] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.fs = fs or LocalFileSystem()
        self.config = config or EngineConfig()
        self.cancel_event = cancel_event
        self._disk_full_failures = 0

    def materialize(self, plan: Plan, staging_root: Union[str, Path]) -> Manifest:
        """
        Populate ``staging_root`` from ``plan`` and return the new manifest.

        Args:
            plan: Plan produced by the SnapshotPlanner
            staging_root: Empty directory receiving the snapshot tree

        Returns:
            Manifest: Records of materialized files plus per-file errors

        Raises:
            DiskFullError: If out-of-space failures reach ``disk_full_limit``
            BackupCancelled: If the cancel event was set
        """
        root = Path(staging_root)
        self.fs.make_dirs(root)
        self._disk_full_failures = 0

        entries = list(plan)
        outcomes: Dict[int, _Outcome] = {}
        primaries: List[Tuple[int, PlanEntry]] = []
        duplicates: List[Tuple[int, PlanEntry, int]] = []
        first_copy: Dict[str, int] = {}

        for index, entry in enumerate(entries):
            if entry.action is Action.ERROR:
                outcomes[index] = _Outcome(cause=entry.cause)
            elif entry.action is Action.COPY and entry.record.content_hash in first_copy:
                duplicates.append((index, entry, first_copy[entry.record.content_hash]))
            else:
                if entry.action is Action.COPY:
                    first_copy[entry.record.content_hash] = index
                primaries.append((index, entry))

        self._run(primaries, root, outcomes)

        for index, entry, primary_index in duplicates:
            self._check_cancelled()
            primary = entries[primary_index]
            outcomes[index] = self._link_duplicate(entry, primary, outcomes[primary_index], root)
            self._track(outcomes[index])

        # Single writer: results are folded into the manifest here, in plan order.
        manifest = Manifest(source_root=str(plan.source_root), root_path=root)
        for index, entry in enumerate(entries):
            outcome = outcomes[index]
            if outcome.record is None:
                manifest.add_error(entry.relative_path, outcome.cause or "unknown error")
                continue
            manifest.add(outcome.record)
            if outcome.kind in ("linked", "deduplicated"):
                manifest.stats["linked"] += 1
            else:
                manifest.stats["copied"] += 1
            if outcome.kind == "deduplicated":
                manifest.stats["deduplicated"] += 1
            elif outcome.kind == "fallback":
                manifest.stats["fallback_copies"] += 1

        logger.info(
            f"Materialized {len(manifest)} files into '{root}': {manifest.stats['linked']} linked, "
            f"{manifest.stats['copied']} copied, {len(manifest.errors)} errors"
        )
        return manifest

    def _run(self, items: List[Tuple[int, PlanEntry]], root: Path, outcomes: Dict[int, _Outcome]) -> None:
        if self.config.workers == 1 or len(items) < 2:
            for processed, (index, entry) in enumerate(items, 1):
                outcomes[index] = self._materialize_one(entry, root)
                self._track(outcomes[index])
                if processed % 100 == 0:
                    logger.info(f"Materialized {processed}/{len(items)} files")
            return

        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            futures = {pool.submit(self._materialize_one, entry, root): index for index, entry in items}
            try:
                for processed, future in enumerate(as_completed(futures), 1):
                    index = futures[future]
                    outcomes[index] = future.result()
                    self._track(outcomes[index])
                    if processed % 100 == 0:
                        logger.info(f"Materialized {processed}/{len(items)} files")
            except BaseException:
                for future in futures:
                    future.cancel()
                raise

    def _track(self, outcome: _Outcome) -> None:
        """Abort once out-of-space failures stop being isolated."""
        if not outcome.disk_full:
            return
        self._disk_full_failures += 1
        if self._disk_full_failures >= self.config.disk_full_limit:
            raise DiskFullError(
                f"Destination is out of space ({self._disk_full_failures} files failed): {outcome.cause}"
            )

    def _materialize_one(self, entry: PlanEntry, root: Path) -> _Outcome:
        self._check_cancelled()
        try:
            target = resolve_under(root, entry.relative_path)
        except ValueError as e:
            logger.warning(str(e))
            return _Outcome(cause=str(e))

        try:
            self.fs.make_dirs(target.parent)
            if entry.action is Action.LINK:
                return self._link(entry, target)
            record = self._copy(entry.source, target, entry.record)
            return _Outcome(record=record, kind="copied")
        except DiskFullError as e:
            logger.warning(f"Out of space while materializing '{entry.relative_path}': {e}")
            return _Outcome(cause=str(e), disk_full=True)
        except FileSystemError as e:
            logger.warning(f"Could not materialize '{entry.relative_path}': {e}")
            return _Outcome(cause=str(e))

    def _link(self, entry: PlanEntry, target: Path) -> _Outcome:
        try:
            self.fs.create_hard_link(entry.source, target)
            return _Outcome(record=entry.record, kind="linked")
        except CrossDeviceError:
            logger.info(f"'{entry.source}' is on another device, copying it instead of linking")
            try:
                record = self._copy(entry.source, target, entry.record)
            except TransientIOError as e:
                logger.warning(f"Cannot copy '{entry.source}' ({e}), copying '{entry.origin}' instead")
                record = self._copy(entry.origin, target, entry.record)
        except TransientIOError as e:
            logger.warning(f"Cannot link to '{entry.source}' ({e}), copying '{entry.origin}' instead")
            record = self._copy(entry.origin, target, entry.record)
        return _Outcome(record=record, kind="fallback")

    def _link_duplicate(self, entry: PlanEntry, primary: PlanEntry, primary_outcome: _Outcome,
                        root: Path) -> _Outcome:
        """Link a file to the copy of the same bytes made earlier in this run."""
        if primary_outcome.record is not None and \
                primary_outcome.record.content_hash == entry.record.content_hash:
            try:
                target = resolve_under(root, entry.relative_path)
                self.fs.make_dirs(target.parent)
                self.fs.create_hard_link(resolve_under(root, primary.relative_path), target)
                return _Outcome(record=entry.record, kind="deduplicated")
            except (ValueError, FileSystemError) as e:
                logger.debug(f"Could not link '{entry.relative_path}' to '{primary.relative_path}': {e}")
        return self._materialize_one(entry, root)

    def _copy(self, source: Path, target: Path, record: FileRecord) -> FileRecord:
        """
        Stream ``source`` into a new file at ``target``.

        The content is hashed on the way through, so the returned record
        describes the bytes actually written even if the source changed
        after it was planned.
        """
        sha256 = hashlib.sha256()

        def chunks():
            for chunk in self.fs.read_stream(source, self.config.chunk_size):
                sha256.update(chunk)
                yield chunk

        size = self.fs.write_stream(target, chunks())
        try:
            self.fs.set_metadata(target, record.mode | stat.S_IRUSR, record.mtime_ns)
            if self.config.protect_snapshots:
                self.fs.make_read_only(target)
        except BaseException:
            self.fs.remove_file(target)
            raise

        content_hash = sha256.hexdigest()
        if content_hash != record.content_hash or size != record.size:
            logger.warning(f"'{source}' changed while it was being backed up")
            return replace(record, content_hash=content_hash, size=size)
        return record

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise BackupCancelled("Materialization was cancelled")
