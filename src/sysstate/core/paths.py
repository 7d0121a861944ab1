"""Path helpers for the state files directory."""

from __future__ import annotations

from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import List, Union

from .errors import UnsafePathError

METADATA_SUFFIX = ".metadata.json"


def _split_parts(dynamic_state_path: str) -> List[str]:
    # Templates are written on Windows, so accept both separators.
    normalized = dynamic_state_path.replace("\\", "/")
    return [part for part in PurePosixPath(normalized).parts if part not in ("", ".")]


def resolve_state_path(
    root: Union[str, Path], dynamic_state_path: str, create: bool = True
) -> Path:
    """Resolve a dynamic state path under the state files directory.

    Args:
        root: The state files directory for this run.
        dynamic_state_path: Path relative to ``root`` naming one artifact.
        create: Create the parent directories of the resolved path.

    Returns:
        Path: Absolute, canonical path of the artifact.

    Raises:
        UnsafePathError: If the path is empty, absolute, contains ``..``
            segments, or resolves outside ``root``.
    """
    if not dynamic_state_path or not str(dynamic_state_path).strip():
        raise UnsafePathError("dynamic_state_path must not be empty")

    raw = str(dynamic_state_path)
    if PurePosixPath(raw.replace("\\", "/")).is_absolute() or PureWindowsPath(raw).drive:
        raise UnsafePathError(f"dynamic_state_path must be relative: {raw}")

    parts = _split_parts(raw)
    if not parts:
        raise UnsafePathError(f"dynamic_state_path has no path segments: {raw}")
    if ".." in parts:
        raise UnsafePathError(f"dynamic_state_path must not contain '..': {raw}")

    root_path = Path(root).expanduser().resolve()
    target = root_path.joinpath(*parts).resolve()
    if target != root_path and root_path not in target.parents:
        raise UnsafePathError(f"{raw} resolves outside of {root_path}")
    if target == root_path:
        raise UnsafePathError(f"dynamic_state_path must name an artifact: {raw}")

    if create:
        target.parent.mkdir(parents=True, exist_ok=True)
    return target


def metadata_path(state_path: Path) -> Path:
    """Return the sidecar metadata path for an artifact."""
    return state_path.with_name(state_path.name + METADATA_SUFFIX)
