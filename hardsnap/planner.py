import logging
import os
import stat
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import FrozenSet, Iterable, Iterator, List, Optional, Tuple, Union

from .config import EngineConfig
from .errors import BackupCancelled, TransientIOError
from .fingerprint import fingerprint, metadata_unchanged, same_bytes
from .fsops import LocalFileSystem
from .manifest import FileRecord, Manifest

logger = logging.getLogger('hardsnap')


class Action(Enum):
    LINK = "link"
    COPY = "copy"
    ERROR = "error"


@dataclass(frozen=True)
class PlanEntry:
    """
    Decision for one file.

    ``source`` is the prior snapshot's physical file for LINK and the
    source-tree file for COPY. ``origin`` is always the source-tree file.
    """
    relative_path: str
    action: Action
    source: Optional[Path] = None
    origin: Optional[Path] = None
    record: Optional[FileRecord] = None
    cause: Optional[str] = None


@dataclass
class Plan:
    source_root: Path
    entries: List[PlanEntry] = field(default_factory=list)

    def count(self, action: Action) -> int:
        return sum(1 for entry in self.entries if entry.action is action)

    def __iter__(self) -> Iterator[PlanEntry]:
        return iter(self.entries)

    def __len__(self) -> int:
        return len(self.entries)


# (relative path, absolute path, metadata or None, error cause or None)
_WalkItem = Tuple[str, Path, Optional[os.stat_result], Optional[str]]


class SnapshotPlanner:
    """
    Walks a source tree and decides, per file, whether to link or copy it.

    Symlinks are always dereferenced: a link to a file is backed up as the
    file it points to, a link to a directory is descended into. A link that
    points back to one of its own ancestors is reported as a cycle.
    Planning only reads; it never changes the filesystem.
    """

    def __init__(self, fs: Optional[LocalFileSystem] = None, config: Optional[EngineConfig] = None,
                 cancel_event: Optional[threading.Event] = None):
        self.fs = fs or LocalFileSystem()
        self.config = config or EngineConfig()
        self.cancel_event = cancel_event

    def plan(self, source_root: Union[str, Path], previous_manifest: Optional[Manifest] = None,
             exclude: Iterable[Union[str, Path]] = ()) -> Plan:
        """
        Build the plan for a new snapshot of ``source_root``.

        Args:
            source_root: Directory to back up
            previous_manifest: Manifest of the latest committed snapshot, if any
            exclude: Directories not to descend into (e.g. the destination)

        Returns:
            Plan: One entry per discovered file or failed traversal entry

        Raises:
            TransientIOError: If ``source_root`` itself can't be listed
            BackupCancelled: If the cancel event was set
        """
        root = Path(source_root)
        plan = Plan(source_root=root)
        slots: List[Optional[PlanEntry]] = []
        to_hash: List[Tuple[int, str, Path, os.stat_result]] = []

        for relative_path, path, st, cause in self._walk(root, exclude):
            if cause is not None:
                logger.warning(f"Cannot back up '{path}': {cause}")
                slots.append(PlanEntry(relative_path, Action.ERROR, origin=path, cause=cause))
                continue

            previous = previous_manifest.get(relative_path) if previous_manifest else None
            if not self.config.force_rehash and metadata_unchanged(previous, st):
                record = FileRecord(relative_path, previous.content_hash, st.st_size,
                                    st.st_mtime_ns, stat.S_IMODE(st.st_mode))
                slots.append(PlanEntry(relative_path, Action.LINK,
                                       source=previous_manifest.physical_path(relative_path),
                                       origin=path, record=record))
                continue

            to_hash.append((len(slots), relative_path, path, st))
            slots.append(None)

        logger.info(f"Found {len(slots)} files in '{root}', {len(to_hash)} need hashing")

        for (index, relative_path, path, st), result in zip(to_hash, self._hash_all(to_hash)):
            if isinstance(result, FileRecord):
                slots[index] = self._decide(result, path, previous_manifest)
            else:
                logger.warning(f"Cannot read '{path}': {result}")
                slots[index] = PlanEntry(relative_path, Action.ERROR, origin=path, cause=result)

        plan.entries = [entry for entry in slots if entry is not None]
        logger.info(
            f"Planned {len(plan)} entries: {plan.count(Action.LINK)} link, "
            f"{plan.count(Action.COPY)} copy, {plan.count(Action.ERROR)} error"
        )
        return plan

    def _decide(self, record: FileRecord, path: Path, previous: Optional[Manifest]) -> PlanEntry:
        """Link to any prior copy of the same bytes, else copy from the source."""
        match = previous.lookup(record.content_hash) if previous else None
        if match is not None:
            physical = previous.physical_path(match)
            if self._confirm_match(record, path, physical):
                return PlanEntry(record.relative_path, Action.LINK, source=physical,
                                 origin=path, record=record)
        return PlanEntry(record.relative_path, Action.COPY, source=path, origin=path, record=record)

    def _confirm_match(self, record: FileRecord, path: Path, physical: Path) -> bool:
        limit = self.config.verify_below
        if not limit or record.size >= limit:
            return True
        try:
            identical = same_bytes(self.fs, path, physical)
        except TransientIOError as e:
            logger.warning(f"Could not verify '{physical}' against '{path}': {e}")
            return False
        if not identical:
            logger.warning(f"Hash match for '{record.relative_path}' differs byte-wise from '{physical}'")
        return identical

    def _hash_all(self, items: List[Tuple[int, str, Path, os.stat_result]]) -> Iterator[Union[FileRecord, str]]:
        """Hash files, on worker threads when configured; results keep input order."""
        if self.config.workers == 1 or len(items) < 2:
            return map(self._hash_one, items)
        with ThreadPoolExecutor(max_workers=self.config.workers) as pool:
            return iter(list(pool.map(self._hash_one, items)))

    def _hash_one(self, item: Tuple[int, str, Path, os.stat_result]) -> Union[FileRecord, str]:
        _, relative_path, path, st = item
        self._check_cancelled()
        try:
            return fingerprint(self.fs, path, relative_path, st, self.config.chunk_size)
        except TransientIOError as e:
            return str(e)

    def _walk(self, root: Path, exclude: Iterable[Union[str, Path]]) -> Iterator[_WalkItem]:
        """Depth-first traversal yielding regular files and per-entry errors."""
        excluded = {Path(p).resolve() for p in exclude}
        root_st = self.fs.get_metadata(root)
        stack: List[Tuple[Path, str, FrozenSet[Tuple[int, int]]]] = [
            (root, "", frozenset([(root_st.st_dev, root_st.st_ino)]))
        ]

        while stack:
            self._check_cancelled()
            directory, relative_dir, ancestors = stack.pop()
            try:
                entries = self.fs.list_dir(directory)
            except TransientIOError as e:
                if not relative_dir:
                    raise
                yield relative_dir, directory, None, str(e)
                continue

            subdirs = []
            for entry in entries:
                relative_path = f"{relative_dir}/{entry.name}" if relative_dir else entry.name
                path = Path(entry.path)
                try:
                    relative_path.encode("utf-8")
                except UnicodeEncodeError:
                    # Escape the raw bytes so distinct names never share a key
                    shown = os.fsencode(relative_path).decode("utf-8", "backslashreplace")
                    yield shown, path, None, "file name is not valid UTF-8"
                    continue

                try:
                    st = self.fs.get_metadata(path)
                except TransientIOError as e:
                    yield relative_path, path, None, str(e)
                    continue

                if stat.S_ISDIR(st.st_mode):
                    if path.resolve() in excluded:
                        logger.info(f"Skipping excluded directory '{path}'")
                        continue
                    key = (st.st_dev, st.st_ino)
                    if key in ancestors:
                        yield relative_path, path, None, "symlink cycle: points to one of its parent directories"
                        continue
                    subdirs.append((path, relative_path, ancestors | {key}))
                elif stat.S_ISREG(st.st_mode):
                    yield relative_path, path, st, None
                else:
                    logger.debug(f"Skipping special file '{path}'")

            stack.extend(reversed(subdirs))

    def _check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise BackupCancelled("Planning was cancelled")
