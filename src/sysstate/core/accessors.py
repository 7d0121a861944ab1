"""Access to the filesystem and to a registry-like key/value namespace.

The state engines never touch the host directly; they go through these
accessors, which are handed to them in a :class:`~sysstate.core.context.StateContext`.
``LocalFileSystem`` works on the local disk. ``MemoryRegistryStore`` and
``JsonRegistryStore`` model a Windows-style registry (keys holding named
values) so state can be captured and replayed on any host.
"""

from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DirectoryEntry:
    """One item found while walking a directory tree."""

    full_name: str
    relative_path: str
    length: int
    last_write_time_utc: str
    is_container: bool


def format_timestamp(timestamp: float) -> str:
    """Format a POSIX timestamp as an ISO 8601 UTC string."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def parse_timestamp(value: str) -> float:
    """Parse an ISO 8601 string back into a POSIX timestamp."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class FileSystem:
    """Interface for the filesystem operations the engines need."""

    def resolve(self, path: Union[str, Path]) -> Path:
        raise NotImplementedError

    def exists(self, path: Union[str, Path]) -> bool:
        raise NotImplementedError

    def is_dir(self, path: Union[str, Path]) -> bool:
        raise NotImplementedError

    def read_bytes(self, path: Union[str, Path]) -> bytes:
        raise NotImplementedError

    def write_bytes(self, path: Union[str, Path], data: bytes) -> None:
        raise NotImplementedError

    def walk(self, path: Union[str, Path]) -> Iterator[DirectoryEntry]:
        raise NotImplementedError

    def make_dir(self, path: Union[str, Path]) -> None:
        raise NotImplementedError

    def touch(self, path: Union[str, Path], mtime: Optional[float] = None) -> None:
        raise NotImplementedError


class LocalFileSystem(FileSystem):
    """Filesystem accessor backed by the local disk.

    Paths are expanded for ``~`` and environment variables before use, so
    template paths such as ``$HOME/.ssh/config`` or ``%APPDATA%\\Code`` work
    on the host they were written for.
    """

    def resolve(self, path: Union[str, Path]) -> Path:
        return Path(os.path.expandvars(str(path))).expanduser()

    def exists(self, path: Union[str, Path]) -> bool:
        return self.resolve(path).exists()

    def is_dir(self, path: Union[str, Path]) -> bool:
        return self.resolve(path).is_dir()

    def read_bytes(self, path: Union[str, Path]) -> bytes:
        return self.resolve(path).read_bytes()

    def write_bytes(self, path: Union[str, Path], data: bytes) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def walk(self, path: Union[str, Path]) -> Iterator[DirectoryEntry]:
        """Yield every file and directory below ``path`` in sorted order."""
        root = self.resolve(path)
        for item in sorted(root.rglob("*"), key=lambda p: p.relative_to(root).as_posix()):
            stat = item.stat()
            is_container = item.is_dir()
            yield DirectoryEntry(
                full_name=str(item),
                relative_path=item.relative_to(root).as_posix(),
                length=0 if is_container else stat.st_size,
                last_write_time_utc=format_timestamp(stat.st_mtime),
                is_container=is_container,
            )

    def make_dir(self, path: Union[str, Path]) -> None:
        self.resolve(path).mkdir(parents=True, exist_ok=True)

    def touch(self, path: Union[str, Path], mtime: Optional[float] = None) -> None:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.touch(exist_ok=True)
        if mtime is not None:
            os.utime(target, (mtime, mtime))


BINARY_TAG = "$binary"


def encode_value(value: Any) -> Any:
    """Make a registry value JSON-safe.

    Binary values become ``{"$binary": "<base64>"}``; lists and mappings are
    encoded item by item. Anything else is returned unchanged.
    """
    if isinstance(value, (bytes, bytearray)):
        return {BINARY_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    if isinstance(value, dict):
        return {key: encode_value(item) for key, item in value.items()}
    return value


def decode_value(value: Any) -> Any:
    """Reverse :func:`encode_value`."""
    if isinstance(value, dict):
        if set(value) == {BINARY_TAG}:
            return base64.b64decode(value[BINARY_TAG])
        return {key: decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [decode_value(item) for item in value]
    return value


def normalize_key(path: str) -> str:
    """Normalize a registry key path for lookups.

    Separators are unified to backslashes, trailing separators dropped, and
    the result lower-cased since registry keys are case-insensitive.
    """
    normalized = str(path).strip().replace("/", "\\")
    while "\\\\" in normalized:
        normalized = normalized.replace("\\\\", "\\")
    return normalized.rstrip("\\").lower()


def key_name(path: str) -> str:
    """Return the last segment of a registry key path."""
    return str(path).strip().replace("/", "\\").rstrip("\\").split("\\")[-1]


class RegistryStore:
    """Interface for a registry-like namespace of keys holding named values."""

    def key_exists(self, path: str) -> bool:
        raise NotImplementedError

    def get_values(self, path: str) -> Dict[str, Any]:
        raise NotImplementedError

    def get_value(self, path: str, name: str) -> Any:
        raise NotImplementedError

    def create_key(self, path: str) -> None:
        raise NotImplementedError

    def set_value(self, path: str, name: str, value: Any) -> None:
        raise NotImplementedError

    def value_exists(self, path: str, name: str) -> bool:
        if not self.key_exists(path):
            return False
        return name in self.get_values(path)


class MemoryRegistryStore(RegistryStore):
    """Registry store held in memory."""

    def __init__(self, keys: Optional[Dict[str, Dict[str, Any]]] = None):
        self._keys: Dict[str, Dict[str, Any]] = {}
        self._names: Dict[str, str] = {}
        for path, values in (keys or {}).items():
            self.create_key(path)
            for name, value in values.items():
                self.set_value(path, name, value)

    def key_exists(self, path: str) -> bool:
        return normalize_key(path) in self._keys

    def get_values(self, path: str) -> Dict[str, Any]:
        try:
            return dict(self._keys[normalize_key(path)])
        except KeyError:
            raise KeyError(f"Registry key not found: {path}") from None

    def get_value(self, path: str, name: str) -> Any:
        values = self.get_values(path)
        if name not in values:
            raise KeyError(f"Registry value '{name}' not found under {path}")
        return values[name]

    def create_key(self, path: str) -> None:
        normalized = normalize_key(path)
        if normalized not in self._keys:
            self._keys[normalized] = {}
            self._names[normalized] = str(path).strip().rstrip("\\/")
            logger.debug("Created registry key %s", path)

    def set_value(self, path: str, name: str, value: Any) -> None:
        normalized = normalize_key(path)
        if normalized not in self._keys:
            raise KeyError(f"Registry key not found: {path}")
        self._keys[normalized][name] = value

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        """Return all keys and values, keyed by their original spelling."""
        return {self._names[k]: dict(v) for k, v in self._keys.items()}


class JsonRegistryStore(MemoryRegistryStore):
    """Registry store persisted to a JSON file after every change."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        keys: Dict[str, Dict[str, Any]] = {}
        if self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                keys = json.load(f)
            if not isinstance(keys, dict):
                raise ValueError(f"Registry file {self.path} must contain a JSON object")
        self._loading = True
        super().__init__(decode_value(keys))
        self._loading = False

    def _save(self) -> None:
        if self._loading:
            return
        text = json.dumps(encode_value(self.to_dict()), indent=2, sort_keys=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(text)

    def create_key(self, path: str) -> None:
        existed = self.key_exists(path)
        super().create_key(path)
        if not existed:
            self._save()

    def set_value(self, path: str, name: str, value: Any) -> None:
        super().set_value(path, name, value)
        self._save()
