import hashlib
import logging
import re
import sqlite3
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, List, Optional, Union

from .errors import CorruptManifestError, DiskFullError, SnapshotNotFoundError
from .fsops import LocalFileSystem

logger = logging.getLogger('hardsnap')

FORMAT_VERSION = 1
MANIFEST_NAME = "manifest.db"
TREE_NAME = "tree"
SNAPSHOTS_DIR = "snapshots"
SEQUENCE_FILE = ".sequence"
STAGING_PREFIX = ".staging-"
PRUNING_PREFIX = ".pruning-"
STAT_KEYS = ("linked", "copied", "deduplicated", "fallback_copies", "errors")

_ID_PATTERN = re.compile(r"^\d+$")
_SQLITE_FULL = 13


@dataclass(frozen=True)
class FileRecord:
    """Content identity and metadata of one file at scan time."""
    relative_path: str
    content_hash: str
    size: int
    mtime_ns: int
    mode: int


def records_digest(records: List[FileRecord]) -> str:
    """SHA-256 over the canonical serialization of a record list."""
    sha256 = hashlib.sha256()
    for record in records:
        line = (f"{record.relative_path}\0{record.content_hash}\0{record.size}"
                f"\0{record.mtime_ns}\0{record.mode}\n")
        sha256.update(line.encode("utf-8"))
    return sha256.hexdigest()


def resolve_under(root: Path, relative_path: str) -> Path:
    """Join a manifest path onto ``root``, refusing anything that escapes it."""
    pure = PurePosixPath(relative_path)
    if not pure.parts or pure.is_absolute() or ".." in pure.parts:
        raise ValueError(f"Refusing to place '{relative_path}' outside '{root}'")
    return root.joinpath(*pure.parts)


class Manifest:
    """
    Files of one snapshot, keyed by relative path in insertion order.

    ``blobs`` is the back-index from content hash to the first path in this
    snapshot holding those bytes. ``errors`` lists paths that could not be
    materialized, with their cause.
    """

    def __init__(self, snapshot_id: Optional[int] = None, source_root: Optional[str] = None,
                 created_at: Optional[str] = None, root_path: Optional[Path] = None):
        self.snapshot_id = snapshot_id
        self.source_root = source_root
        self.created_at = created_at or datetime.now().isoformat()
        self.root_path = root_path
        self.records: Dict[str, FileRecord] = {}
        self.blobs: Dict[str, str] = {}
        self.errors: Dict[str, str] = {}
        self.stats: Dict[str, int] = {key: 0 for key in STAT_KEYS}

    def add(self, record: FileRecord) -> None:
        """Append a record; a path may appear only once."""
        path = record.relative_path
        if path in self.records or path in self.errors:
            raise ValueError(f"Duplicate manifest path '{path}'")
        self.records[path] = record
        self.blobs.setdefault(record.content_hash, path)

    def add_error(self, relative_path: str, cause: str) -> str:
        """
        Record a file that could not be backed up.

        Error keys are display names and may clash with another entry (an
        escaped undecodable name can spell out a real file name). A clashing
        key gets a numbered suffix instead of failing the whole snapshot.

        Returns:
            The key the error was stored under
        """
        key = relative_path
        counter = 1
        while key in self.records or key in self.errors:
            counter += 1
            key = f"{relative_path} [{counter}]"
        if key != relative_path:
            logger.warning(f"Error entry '{relative_path}' clashes with another path, storing it as '{key}'")
        self.errors[key] = cause
        self.stats["errors"] = len(self.errors)
        return key

    def get(self, relative_path: str) -> Optional[FileRecord]:
        return self.records.get(relative_path)

    def lookup(self, content_hash: str) -> Optional[str]:
        """Return the canonical path holding ``content_hash``, if any."""
        return self.blobs.get(content_hash)

    def physical_path(self, relative_path: str) -> Path:
        """Location of a record's bytes inside the committed snapshot tree."""
        if self.root_path is None:
            raise ValueError("Manifest is not attached to a snapshot tree")
        return self.root_path.joinpath(*relative_path.split("/"))

    def hashes(self) -> Dict[str, str]:
        return {path: record.content_hash for path, record in self.records.items()}

    def digest(self) -> str:
        return records_digest(list(self.records.values()))

    @property
    def total_size(self) -> int:
        return sum(record.size for record in self.records.values())

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self) -> Iterator[FileRecord]:
        return iter(self.records.values())

    def __contains__(self, relative_path: object) -> bool:
        return relative_path in self.records


class ManifestStore:
    """
    Locates snapshots under a destination root and persists their manifests.

    Each manifest is an SQLite database stored next to the snapshot's file
    tree. A version tag, a record count and a digest of all records are kept
    in the ``meta`` table so that a truncated or foreign file is reported as
    corrupt instead of being read as an empty snapshot.
    """

    def __init__(self, destination: Union[str, Path], fs: Optional[LocalFileSystem] = None):
        self.root = Path(destination)
        self.fs = fs or LocalFileSystem()
        self.snapshots_dir = self.root / SNAPSHOTS_DIR

    # ---- Layout ----

    def snapshot_dir(self, snapshot_id: int) -> Path:
        return self.snapshots_dir / f"{snapshot_id:06d}"

    def tree_dir(self, snapshot_id: int) -> Path:
        return self.snapshot_dir(snapshot_id) / TREE_NAME

    def staging_dir(self, snapshot_id: int) -> Path:
        return self.root / f"{STAGING_PREFIX}{snapshot_id:06d}"

    def pruning_dir(self, snapshot_id: int) -> Path:
        return self.root / f"{PRUNING_PREFIX}{snapshot_id:06d}"

    def snapshot_ids(self) -> List[int]:
        """IDs of all committed snapshots, oldest first."""
        if not self.snapshots_dir.is_dir():
            return []
        return sorted(
            int(entry.name) for entry in self.fs.list_dir(self.snapshots_dir)
            if _ID_PATTERN.match(entry.name) and entry.is_dir()
        )

    def next_id(self) -> int:
        """Next snapshot ID; never reuses an ID that was handed out before."""
        ids = self.snapshot_ids()
        last = ids[-1] if ids else 0
        sequence_path = self.root / SEQUENCE_FILE
        if sequence_path.is_file():
            try:
                last = max(last, int(sequence_path.read_text().strip() or 0))
            except ValueError:
                logger.warning(f"Ignoring unreadable sequence file '{sequence_path}'")
        return last + 1

    def reserve_id(self, snapshot_id: int) -> None:
        """Durably record ``snapshot_id`` as handed out."""
        sequence_path = self.root / SEQUENCE_FILE
        tmp_path = self.root / f"{SEQUENCE_FILE}.tmp"
        self.fs.remove_file(tmp_path)
        self.fs.write_stream(tmp_path, [str(snapshot_id).encode()])
        self.fs.atomic_rename(tmp_path, sequence_path)
        self.fs.fsync_dir(self.root)

    # ---- Persistence ----

    def save(self, manifest: Manifest, snapshot_id: int) -> Path:
        """
        Durably write a manifest into the staging directory of a snapshot.

        The database is built under a temporary name, flushed to disk and
        renamed into place, so the staging directory holds either a complete
        manifest or none.

        Returns:
            Path: Location of the written manifest

        Raises:
            DiskFullError: If the destination ran out of space
            sqlite3.Error: If the database could not be written
        """
        staging = self.staging_dir(snapshot_id)
        final_path = staging / MANIFEST_NAME
        tmp_path = staging / f"{MANIFEST_NAME}.tmp"
        self.fs.remove_file(tmp_path)

        manifest.snapshot_id = snapshot_id
        try:
            self._write(tmp_path, manifest)
        except sqlite3.Error as e:
            self.fs.remove_file(tmp_path)
            if getattr(e, "sqlite_errorcode", None) == _SQLITE_FULL or "full" in str(e):
                raise DiskFullError(f"Could not write manifest: {e}", str(tmp_path)) from e
            raise

        self.fs.fsync_file(tmp_path)
        self.fs.atomic_rename(tmp_path, final_path)
        self.fs.fsync_dir(staging)
        self.fs.make_read_only(final_path)
        logger.debug(f"Wrote manifest for snapshot {snapshot_id} with {len(manifest)} records")
        return final_path

    def _write(self, path: Path, manifest: Manifest) -> None:
        with closing(sqlite3.connect(str(path))) as conn:
            self._create_tables(conn)
            meta = {
                "format_version": FORMAT_VERSION,
                "snapshot_id": manifest.snapshot_id,
                "created_at": manifest.created_at,
                "source_root": manifest.source_root or "",
                "record_count": len(manifest),
                "records_digest": manifest.digest(),
            }
            meta.update(manifest.stats)
            conn.executemany(
                "INSERT INTO meta (key, value) VALUES (?, ?)",
                [(key, str(value)) for key, value in meta.items()]
            )
            conn.executemany(
                "INSERT INTO files (path, content_hash, size, mtime_ns, mode) VALUES (?, ?, ?, ?, ?)",
                [(r.relative_path, r.content_hash, r.size, r.mtime_ns, r.mode) for r in manifest]
            )
            conn.executemany(
                "INSERT INTO blobs (content_hash, path) VALUES (?, ?)",
                list(manifest.blobs.items())
            )
            conn.executemany(
                "INSERT INTO errors (path, cause) VALUES (?, ?)",
                list(manifest.errors.items())
            )
            conn.commit()

    def _create_tables(self, conn: sqlite3.Connection) -> None:
        """Create the manifest schema."""
        conn.execute('''
        CREATE TABLE meta (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        ''')
        conn.execute('''
        CREATE TABLE files (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            path TEXT NOT NULL UNIQUE,
            content_hash TEXT NOT NULL,
            size INTEGER NOT NULL,
            mtime_ns INTEGER NOT NULL,
            mode INTEGER NOT NULL
        )
        ''')
        conn.execute('''
        CREATE TABLE blobs (
            content_hash TEXT PRIMARY KEY,
            path TEXT NOT NULL
        )
        ''')
        conn.execute('''
        CREATE TABLE errors (
            path TEXT PRIMARY KEY,
            cause TEXT NOT NULL
        )
        ''')

    def load(self, snapshot_id: int) -> Manifest:
        """
        Load the manifest of a committed snapshot.

        Raises:
            SnapshotNotFoundError: If no such snapshot was committed
            CorruptManifestError: If the snapshot exists but its manifest
                is missing, truncated, of an unknown version or inconsistent
        """
        snapshot_dir = self.snapshot_dir(snapshot_id)
        if not snapshot_dir.is_dir():
            raise SnapshotNotFoundError(snapshot_id)
        path = snapshot_dir / MANIFEST_NAME
        if not path.is_file():
            raise CorruptManifestError(snapshot_id, "manifest file is missing")

        try:
            manifest = self._read(path, snapshot_id)
        except sqlite3.DatabaseError as e:
            raise CorruptManifestError(snapshot_id, f"unreadable database ({e})") from e
        except (KeyError, ValueError) as e:
            raise CorruptManifestError(snapshot_id, f"invalid metadata ({e})") from e
        return manifest

    def _read(self, path: Path, snapshot_id: int) -> Manifest:
        with closing(sqlite3.connect(f"{path.as_uri()}?mode=ro", uri=True)) as conn:
            conn.row_factory = sqlite3.Row
            meta = {row['key']: row['value'] for row in conn.execute("SELECT key, value FROM meta")}

            version = int(meta['format_version'])
            if version != FORMAT_VERSION:
                raise CorruptManifestError(
                    snapshot_id, f"unsupported format version {version} (expected {FORMAT_VERSION})"
                )

            manifest = Manifest(
                snapshot_id=int(meta['snapshot_id']),
                source_root=meta.get('source_root') or None,
                created_at=meta['created_at'],
                root_path=self.tree_dir(snapshot_id),
            )
            for row in conn.execute(
                "SELECT path, content_hash, size, mtime_ns, mode FROM files ORDER BY seq"
            ):
                manifest.add(FileRecord(
                    relative_path=row['path'],
                    content_hash=row['content_hash'],
                    size=row['size'],
                    mtime_ns=row['mtime_ns'],
                    mode=row['mode'],
                ))
            blobs = {row['content_hash']: row['path']
                     for row in conn.execute("SELECT content_hash, path FROM blobs")}
            for row in conn.execute("SELECT path, cause FROM errors"):
                manifest.add_error(row['path'], row['cause'])
            for key in STAT_KEYS:
                manifest.stats[key] = int(meta.get(key, 0))

        if len(manifest) != int(meta['record_count']):
            raise CorruptManifestError(
                snapshot_id, f"expected {meta['record_count']} records, found {len(manifest)}"
            )
        if manifest.digest() != meta['records_digest']:
            raise CorruptManifestError(snapshot_id, "record digest mismatch")
        for content_hash, blob_path in blobs.items():
            record = manifest.get(blob_path)
            if record is None or record.content_hash != content_hash:
                raise CorruptManifestError(snapshot_id, f"back-index entry for '{blob_path}' is inconsistent")
        manifest.blobs = blobs
        return manifest

    def latest(self) -> Optional[Manifest]:
        """Manifest of the newest committed snapshot, or None on a first run."""
        ids = self.snapshot_ids()
        if not ids:
            return None
        return self.load(ids[-1])
