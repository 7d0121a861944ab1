"""Capture and restore of file and directory state.

A ``file`` entry is stored byte-for-byte in the state files directory
(optionally encrypted, with a ``<name>.metadata.json`` sidecar). A
``directory`` entry is stored as a JSON manifest describing the tree:

```json
[
  {
    "FullName": "/home/me/.config/app/themes",
    "RelativePath": "themes",
    "Length": 0,
    "LastWriteTimeUtc": "2025-01-01T12:00:00+00:00",
    "IsContainer": true
  }
]
```

Directory capture records structure and timestamps only; restoring it
recreates directories and empty placeholder files.
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .accessors import parse_timestamp
from .context import StateContext
from .crypto import ENCRYPTED_MARKER, is_encrypted
from .paths import metadata_path
from .template import FileStateConfig, FileType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FileState:
    """Result of capturing one file entry.

    Attributes:
        name (str): Entry name from the template.
        source (str): Path that was captured.
        state_path (Path): Artifact written under the state files directory.
        type (FileType): ``file`` or ``directory``.
        checksum (str): Hex digest of the plaintext content (file) or manifest (directory).
        checksum_type (str): Hash algorithm used for ``checksum``.
        size (int): Plaintext size in bytes.
        encrypted (bool): Whether the artifact is encrypted.
        entries (int): Number of manifest entries for a directory, else 0.
    """

    name: str
    source: str
    state_path: Path
    type: FileType
    checksum: str
    checksum_type: str
    size: int
    encrypted: bool
    entries: int = 0


def compute_checksum(data: bytes, checksum_type: str = "SHA256") -> str:
    """Return the hex digest of ``data`` using the named algorithm."""
    return hashlib.new(checksum_type.replace("-", "").lower(), data).hexdigest()


def write_artifact(context: StateContext, state_path: Path, data: bytes, encrypt: bool) -> None:
    """Write an artifact, encrypting it and recording a sidecar when asked."""
    sidecar = metadata_path(state_path)
    state_path.parent.mkdir(parents=True, exist_ok=True)
    if encrypt:
        blob = context.encrypt(data)
        state_path.write_text(blob, encoding="ascii")
        sidecar.write_text(
            json.dumps(
                {"Encrypted": True, "Encoding": "Base64", "OriginalSize": len(data)}, indent=2
            ),
            encoding="utf-8",
        )
    else:
        state_path.write_bytes(data)
        if sidecar.exists():
            sidecar.unlink()


def read_artifact(context: StateContext, state_path: Path, encrypt: bool = False) -> bytes:
    """Read an artifact back, decrypting it when it was stored encrypted.

    The sidecar decides when present. Without one, the artifact is only
    treated as encrypted when the entry asks for encryption and the content
    carries the marker, so plaintext that happens to start with the marker is
    returned unchanged.

    Raises:
        DecryptionError: If the artifact is encrypted and cannot be decrypted.
    """
    raw = state_path.read_bytes()
    sidecar = metadata_path(state_path)
    metadata: Dict[str, Any] = {}
    if sidecar.exists():
        metadata = json.loads(sidecar.read_text(encoding="utf-8"))
        encrypted = bool(metadata.get("Encrypted"))
    else:
        encrypted = encrypt and raw.startswith(ENCRYPTED_MARKER.encode("ascii"))

    if not encrypted:
        return raw

    blob = raw.decode("ascii", errors="replace").strip()
    data = context.decrypt(blob if is_encrypted(blob) else ENCRYPTED_MARKER + blob)
    expected = metadata.get("OriginalSize")
    if expected is not None and expected != len(data):
        logger.warning(
            "Decrypted size of %s is %d bytes, metadata recorded %s", state_path, len(data), expected
        )
    return data


def is_excluded(relative_path: str, patterns: Sequence[str]) -> bool:
    """Check a relative path, or any of its parents, against exclude patterns."""
    if not patterns:
        return False
    normalized = [p.replace("\\", "/") for p in patterns]
    parts = relative_path.split("/")
    for i in range(1, len(parts) + 1):
        candidate = "/".join(parts[:i])
        for pattern in normalized:
            if fnmatch.fnmatch(candidate, pattern) or fnmatch.fnmatch(parts[i - 1], pattern):
                return True
    return False


class FileStateEngine:
    """Captures files and directory trees into the state files directory."""

    def __init__(self, context: StateContext):
        self.context = context
        self.filesystem = context.filesystem
        self._capture_handlers: Dict[FileType, Callable[[FileStateConfig], Optional[FileState]]] = {
            FileType.FILE: self._capture_file,
            FileType.DIRECTORY: self._capture_directory,
        }
        self._restore_handlers: Dict[FileType, Callable[[FileStateConfig], Optional[Path]]] = {
            FileType.FILE: self._restore_file,
            FileType.DIRECTORY: self._restore_directory,
        }

    def capture(self, config: FileStateConfig) -> Optional[FileState]:
        """Capture one entry.

        Returns:
            Optional[FileState]: The captured state, or None when the source
            does not exist (a warning is logged and the run continues).
        """
        if not config.path or not self.filesystem.exists(config.path):
            logger.warning("Source for '%s' not found: %s", config.name, config.path)
            return None
        return self._capture_handlers[config.type](config)

    def restore(self, config: FileStateConfig) -> Optional[Path]:
        """Restore one entry to its destination.

        Returns:
            Optional[Path]: The restored destination, or None when there was
            no saved state to restore.
        """
        state_path = self.context.state_path(config.dynamic_state_path, create=False)
        if not state_path.exists():
            logger.warning("No saved state for '%s' at %s", config.name, state_path)
            return None
        if not config.restore_target:
            logger.warning("No destination configured for '%s'", config.name)
            return None
        return self._restore_handlers[config.type](config)

    def _capture_file(self, config: FileStateConfig) -> Optional[FileState]:
        if self.filesystem.is_dir(config.path):
            logger.warning("'%s' expects a file but %s is a directory", config.name, config.path)
            return None

        data = self.filesystem.read_bytes(config.path)
        checksum = compute_checksum(data, config.checksum_type)
        state_path = self.context.state_path(config.dynamic_state_path)
        write_artifact(self.context, state_path, data, config.encrypt)
        logger.info("Captured file '%s' -> %s", config.name, state_path)
        return FileState(
            name=config.name,
            source=str(config.path),
            state_path=state_path,
            type=FileType.FILE,
            checksum=checksum,
            checksum_type=config.checksum_type,
            size=len(data),
            encrypted=config.encrypt,
        )

    def _capture_directory(self, config: FileStateConfig) -> Optional[FileState]:
        if not self.filesystem.is_dir(config.path):
            logger.warning("'%s' expects a directory but %s is not one", config.name, config.path)
            return None

        manifest: List[Dict[str, Any]] = []
        for entry in self.filesystem.walk(config.path):
            if is_excluded(entry.relative_path, config.exclude_patterns):
                continue
            manifest.append(
                {
                    "FullName": entry.full_name,
                    "RelativePath": entry.relative_path,
                    "Length": entry.length,
                    "LastWriteTimeUtc": entry.last_write_time_utc,
                    "IsContainer": entry.is_container,
                }
            )

        data = json.dumps(manifest, indent=2).encode("utf-8")
        state_path = self.context.state_path(config.dynamic_state_path)
        write_artifact(self.context, state_path, data, config.encrypt)
        logger.info(
            "Captured directory '%s' (%d entries) -> %s", config.name, len(manifest), state_path
        )
        return FileState(
            name=config.name,
            source=str(config.path),
            state_path=state_path,
            type=FileType.DIRECTORY,
            checksum=compute_checksum(data, config.checksum_type),
            checksum_type=config.checksum_type,
            size=len(data),
            encrypted=config.encrypt,
            entries=len(manifest),
        )

    def _restore_file(self, config: FileStateConfig) -> Optional[Path]:
        state_path = self.context.state_path(config.dynamic_state_path, create=False)
        data = read_artifact(self.context, state_path, config.encrypt)
        target = self.filesystem.resolve(config.restore_target)
        self.filesystem.write_bytes(target, data)
        logger.info("Restored file '%s' -> %s", config.name, target)
        return target

    def _restore_directory(self, config: FileStateConfig) -> Optional[Path]:
        state_path = self.context.state_path(config.dynamic_state_path, create=False)
        manifest = json.loads(read_artifact(self.context, state_path, config.encrypt).decode("utf-8"))
        if not isinstance(manifest, list):
            raise ValueError(f"Directory manifest {state_path} must be a JSON array")

        root = self.filesystem.resolve(config.restore_target)
        self.filesystem.make_dir(root)
        for entry in manifest:
            relative = str(entry["RelativePath"]).replace("\\", "/")
            if ".." in relative.split("/"):
                logger.warning("Skipping unsafe manifest entry %s", relative)
                continue
            target = root.joinpath(*relative.split("/"))
            if entry.get("IsContainer"):
                self.filesystem.make_dir(target)
            else:
                mtime = None
                if entry.get("LastWriteTimeUtc"):
                    mtime = parse_timestamp(str(entry["LastWriteTimeUtc"]))
                self.filesystem.touch(target, mtime)
        logger.info(
            "Restored directory structure '%s' (%d entries) -> %s", config.name, len(manifest), root
        )
        return root
