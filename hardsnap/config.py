"""
Engine settings.

Settings come from defaults, then an optional INI file with a
``[hardsnap]`` section, then command-line overrides applied by the caller.
"""

import configparser
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .fsops import CHUNK_SIZE

logger = logging.getLogger('hardsnap')

CONFIG_FILE_NAME = "hardsnap.ini"
SECTION = "hardsnap"


@dataclass(frozen=True)
class EngineConfig:
    """
    Tunables of a snapshot run.

    Attributes:
        workers: Threads used to hash and copy files
        force_rehash: Ignore the size/mtime fast path and hash every file
        protect_snapshots: Clear write bits on newly materialized files
        verify_below: Byte-compare hash matches smaller than this (0 disables)
        disk_full_limit: Per-file out-of-space failures tolerated before aborting
        max_error_ratio: Abort when errored/total files exceeds this (None disables)
        chunk_size: Read size used for hashing and copying
    """
    workers: int = 1
    force_rehash: bool = False
    protect_snapshots: bool = True
    verify_below: int = 0
    disk_full_limit: int = 3
    max_error_ratio: Optional[float] = None
    chunk_size: int = CHUNK_SIZE

    def __post_init__(self):
        if self.workers < 1:
            raise ValueError(f"workers must be at least 1, got {self.workers}")
        if self.verify_below < 0:
            raise ValueError(f"verify_below must not be negative, got {self.verify_below}")
        if self.disk_full_limit < 1:
            raise ValueError(f"disk_full_limit must be at least 1, got {self.disk_full_limit}")
        if self.max_error_ratio is not None and not 0.0 <= self.max_error_ratio <= 1.0:
            raise ValueError(f"max_error_ratio must be between 0 and 1, got {self.max_error_ratio}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")

    def with_overrides(self, **overrides: Any) -> 'EngineConfig':
        """Return a copy with every override that is not None applied."""
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})


def _parse_value(parser: configparser.ConfigParser, key: str, field_type: Any) -> Any:
    if field_type is bool:
        return parser.getboolean(SECTION, key)
    if field_type is int:
        return parser.getint(SECTION, key)
    raw = parser.get(SECTION, key).strip()
    if raw.lower() in ("", "none"):
        return None
    return float(raw)


def load_config(path: Union[str, Path]) -> EngineConfig:
    """
    Read engine settings from an INI file.

    Args:
        path: Path to the INI file

    Returns:
        EngineConfig: Defaults overridden by the file's ``[hardsnap]`` section

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file has unknown keys or invalid values
    """
    path = Path(path)
    if not path.is_file():
        raise FileNotFoundError(f"Config file '{path}' not found")

    parser = configparser.ConfigParser()
    try:
        parser.read(path)
    except configparser.Error as e:
        raise ValueError(f"Invalid config file '{path}': {e}") from e

    if not parser.has_section(SECTION):
        logger.debug(f"No [{SECTION}] section in '{path}', using defaults")
        return EngineConfig()

    known = {f.name: f for f in fields(EngineConfig)}
    types = {"workers": int, "force_rehash": bool, "protect_snapshots": bool,
             "verify_below": int, "disk_full_limit": int, "max_error_ratio": float,
             "chunk_size": int}
    values: Dict[str, Any] = {}
    for key in parser.options(SECTION):
        if key not in known:
            raise ValueError(f"Unknown setting '{key}' in '{path}'")
        try:
            values[key] = _parse_value(parser, key, types[key])
        except ValueError as e:
            raise ValueError(f"Invalid value for '{key}' in '{path}': {e}") from e

    logger.debug(f"Loaded settings from '{path}': {values}")
    return EngineConfig(**values)


def find_config(destination: Union[str, Path], explicit: Optional[Union[str, Path]] = None) -> EngineConfig:
    """Load ``explicit`` if given, else ``<destination>/hardsnap.ini`` if present, else defaults."""
    if explicit:
        return load_config(explicit)
    candidate = Path(destination) / CONFIG_FILE_NAME
    if candidate.is_file():
        return load_config(candidate)
    return EngineConfig()
