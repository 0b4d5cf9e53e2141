"""
Filesystem capability interface used by the snapshot engine.

The engine never calls ``os`` or ``shutil`` directly for anything that
touches the source tree or the destination; it goes through a
``LocalFileSystem`` instance instead. Every ``OSError`` is translated into
the engine's typed errors so callers can tell a per-file failure from a
cross-device link or a full disk.
"""

import errno
import os
import shutil
import stat
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Union

from .errors import CrossDeviceError, DiskFullError, FileSystemError, TransientIOError

PathLike = Union[str, Path]

CHUNK_SIZE = 1024 * 1024

_DISK_FULL_ERRNOS = {errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)}


def translate_os_error(exc: OSError, path: PathLike) -> FileSystemError:
    """Map an OSError onto the engine's error taxonomy."""
    message = f"{exc.strerror or exc}: '{path}'"
    if exc.errno == errno.EXDEV:
        return CrossDeviceError(message, str(path), exc.errno)
    if exc.errno in _DISK_FULL_ERRNOS:
        return DiskFullError(message, str(path), exc.errno)
    return TransientIOError(message, str(path), exc.errno)


@contextmanager
def _translated(path: PathLike):
    try:
        yield
    except OSError as exc:
        raise translate_os_error(exc, path) from exc


class LocalFileSystem:
    """Filesystem operations backed by the local OS."""

    def list_dir(self, path: PathLike) -> List[os.DirEntry]:
        """Return the entries of a directory sorted by name."""
        with _translated(path):
            with os.scandir(path) as it:
                return sorted(it, key=lambda entry: entry.name)

    def get_metadata(self, path: PathLike, follow_symlinks: bool = True) -> os.stat_result:
        with _translated(path):
            return os.stat(path, follow_symlinks=follow_symlinks)

    def set_metadata(self, path: PathLike, mode: int, mtime_ns: int) -> None:
        """Apply permission bits and modification time to a file."""
        with _translated(path):
            os.utime(path, ns=(mtime_ns, mtime_ns))
            os.chmod(path, stat.S_IMODE(mode))

    def make_read_only(self, path: PathLike) -> None:
        """Clear every write bit on a file."""
        with _translated(path):
            mode = stat.S_IMODE(os.stat(path).st_mode)
            os.chmod(path, mode & ~(stat.S_IWUSR | stat.S_IWGRP | stat.S_IWOTH))

    def read_stream(self, path: PathLike, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the content of a file in chunks of at most ``chunk_size`` bytes."""
        with _translated(path):
            with open(path, "rb") as f:
                for chunk in iter(lambda: f.read(chunk_size), b""):
                    yield chunk

    def write_stream(self, path: PathLike, chunks: Iterable[bytes]) -> int:
        """
        Write chunks to a new file and flush it to disk.

        The file is created exclusively: an existing path is never opened,
        so a hard-linked inode can't be truncated through this call. A
        partially written file is removed before the error propagates.

        Returns:
            int: Number of bytes written
        """
        written = 0
        with _translated(path):
            f = open(path, "xb")
        try:
            with f:
                with _translated(path):
                    for chunk in chunks:
                        f.write(chunk)
                        written += len(chunk)
                    f.flush()
                    os.fsync(f.fileno())
        except BaseException:
            try:
                os.unlink(path)
            except OSError:
                pass
            raise
        return written

    def create_hard_link(self, source: PathLike, link_path: PathLike) -> None:
        with _translated(link_path):
            os.link(source, link_path)

    def make_dirs(self, path: PathLike) -> None:
        with _translated(path):
            os.makedirs(path, exist_ok=True)

    def atomic_rename(self, source: PathLike, target: PathLike) -> None:
        """Rename ``source`` to ``target`` in a single filesystem operation."""
        with _translated(source):
            os.replace(source, target)

    def remove_tree(self, path: PathLike) -> None:
        """Delete a directory tree; a missing path is not an error."""
        if not os.path.lexists(path):
            return
        with _translated(path):
            shutil.rmtree(path)

    def remove_file(self, path: PathLike) -> None:
        with _translated(path):
            try:
                os.unlink(path)
            except FileNotFoundError:
                pass

    def fsync_file(self, path: PathLike) -> None:
        with _translated(path):
            fd = os.open(path, os.O_RDONLY)
            try:
                os.fsync(fd)
            finally:
                os.close(fd)

    def fsync_dir(self, path: PathLike) -> None:
        """Flush a directory entry table; a no-op where directories can't be opened."""
        if os.name == "nt":
            return
        self.fsync_file(path)
