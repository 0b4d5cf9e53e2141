import hashlib
import os
import stat
from pathlib import Path
from typing import Optional, Union

from .fsops import CHUNK_SIZE, LocalFileSystem
from .manifest import FileRecord

_default_fs = LocalFileSystem()


def hash_file_content(file_path: Union[str, Path], fs: Optional[LocalFileSystem] = None,
                      chunk_size: int = CHUNK_SIZE) -> str:
    """Generate a SHA-256 hash for a file's content, reading it once in chunks."""
    fs = fs or _default_fs
    sha256 = hashlib.sha256()
    for chunk in fs.read_stream(file_path, chunk_size):
        sha256.update(chunk)
    return sha256.hexdigest()


def fingerprint(fs: LocalFileSystem, file_path: Union[str, Path], relative_path: str,
                st: Optional[os.stat_result] = None, chunk_size: int = CHUNK_SIZE) -> FileRecord:
    """
    Build a FileRecord for a file by hashing its content.

    Args:
        fs: Filesystem to read through
        file_path: Absolute path of the file in the source tree
        relative_path: Path recorded in the manifest
        st: Metadata captured during traversal; fetched when omitted

    Raises:
        TransientIOError: If the file can't be read or vanished
    """
    if st is None:
        st = fs.get_metadata(file_path)
    content_hash = hash_file_content(file_path, fs, chunk_size)
    return FileRecord(
        relative_path=relative_path,
        content_hash=content_hash,
        size=st.st_size,
        mtime_ns=st.st_mtime_ns,
        mode=stat.S_IMODE(st.st_mode),
    )


def metadata_unchanged(previous: Optional[FileRecord], st: os.stat_result) -> bool:
    """Size and mtime pre-filter: True when the previous hash may be reused."""
    return (
        previous is not None
        and previous.size == st.st_size
        and previous.mtime_ns == st.st_mtime_ns
    )


def same_bytes(fs: LocalFileSystem, first: Union[str, Path], second: Union[str, Path],
               chunk_size: int = 64 * 1024) -> bool:
    """Compare two files byte for byte."""
    left = fs.read_stream(first, chunk_size)
    right = fs.read_stream(second, chunk_size)
    try:
        # Chunks of the same size line up until one side ends.
        while True:
            a = next(left, b"")
            b = next(right, b"")
            if a != b:
                return False
            if not a:
                return True
    finally:
        left.close()
        right.close()
