"""Template documents and their resolution.

A template describes one backup component: metadata, prerequisites, and the
files, registry entries, and applications whose state is captured. A base
template can be combined with a machine-specific overlay; list sections are
merged by entry name and the result is validated only after the merge, so an
overlay may supply fields the base leaves out.

Example:
    ```python
    from sysstate.core.template import load_template

    template = load_template("templates/display.yaml", "overlays/gaming-rig.yaml")
    for entry in template.files:
        print(entry.name, entry.dynamic_state_path)
    ```
"""

from __future__ import annotations

import copy
import hashlib
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import yaml

from .errors import TemplateError, TemplateValidationError

logger = logging.getLogger(__name__)

LIST_SECTIONS = ("prerequisites", "files", "registry", "applications")
# Restore order: prereqs, pre_update, entries, post_update, cleanup.
STAGE_SECTIONS = ("prereqs", "pre_update", "post_update", "cleanup")
DEFAULT_CHECKSUM_TYPE = "SHA256"


class Action(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"
    SYNC = "sync"

    def applies_to(self, mode: "Mode") -> bool:
        """Whether an entry with this action takes part in a run of ``mode``."""
        return self is Action.SYNC or self.value == mode.value


class Mode(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"


class FileType(str, Enum):
    FILE = "file"
    DIRECTORY = "directory"


class RegistryType(str, Enum):
    KEY = "key"
    VALUE = "value"


class PrerequisiteType(str, Enum):
    SCRIPT = "script"
    REGISTRY = "registry"
    APPLICATION = "application"


class OnMissing(str, Enum):
    WARN = "warn"
    FAIL_BACKUP = "fail_backup"
    FAIL_RESTORE = "fail_restore"

    def blocks(self, mode: Mode) -> bool:
        """Whether a failed check under this policy aborts a run of ``mode``."""
        if self is OnMissing.FAIL_BACKUP:
            return mode is Mode.BACKUP
        if self is OnMissing.FAIL_RESTORE:
            return mode is Mode.RESTORE
        return False


@dataclass(frozen=True)
class Metadata:
    name: str
    description: str = ""
    version: str = ""
    type: str = ""
    author: str = ""


@dataclass(frozen=True)
class PrerequisiteSpec:
    name: str
    type: PrerequisiteType
    check: str
    expected_output: Optional[str] = None
    value_name: Optional[str] = None
    on_missing: OnMissing = OnMissing.WARN


@dataclass(frozen=True)
class FileStateConfig:
    name: str
    type: FileType
    action: Action
    dynamic_state_path: str
    path: Optional[str] = None
    destination: Optional[str] = None
    encrypt: bool = False
    checksum_type: str = DEFAULT_CHECKSUM_TYPE
    exclude_patterns: Tuple[str, ...] = ()

    @property
    def restore_target(self) -> Optional[str]:
        """Where restore writes to; falls back to the backup source path."""
        return self.destination or self.path


@dataclass(frozen=True)
class RegistryStateConfig:
    name: str
    path: str
    action: Action
    dynamic_state_path: str
    type: RegistryType = RegistryType.KEY
    value_name: Optional[str] = None
    encrypt: bool = False

    @property
    def single_value(self) -> bool:
        return self.value_name is not None


@dataclass(frozen=True)
class ApplicationStateConfig:
    name: str
    dynamic_state_path: str
    discovery_command: str
    type: str = "custom"
    parse_script: Optional[str] = None
    install_script: Optional[str] = None
    uninstall_script: Optional[str] = None


@dataclass(frozen=True)
class StageStep:
    name: str
    script: str
    type: str = "script"
    parameters: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Template:
    metadata: Metadata
    prerequisites: Tuple[PrerequisiteSpec, ...] = ()
    files: Tuple[FileStateConfig, ...] = ()
    registry: Tuple[RegistryStateConfig, ...] = ()
    applications: Tuple[ApplicationStateConfig, ...] = ()
    prereqs: Tuple[StageStep, ...] = ()
    pre_update: Tuple[StageStep, ...] = ()
    post_update: Tuple[StageStep, ...] = ()
    cleanup: Tuple[StageStep, ...] = ()

    @property
    def name(self) -> str:
        return self.metadata.name


def load_template_document(path: Union[str, Path]) -> Dict[str, Any]:
    """Read a template document from a YAML or JSON file.

    Raises:
        TemplateError: If the file cannot be read or does not hold a mapping.
    """
    path = Path(path).expanduser()
    try:
        with open(path, "r", encoding="utf-8") as f:
            if path.suffix.lower() == ".json":
                document = json.load(f)
            else:
                document = yaml.safe_load(f)
    except OSError as e:
        raise TemplateError(f"Cannot read template {path}: {e}") from e
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise TemplateError(f"Malformed template {path}: {e}") from e

    if document is None:
        document = {}
    if not isinstance(document, dict):
        raise TemplateError(f"Template {path} must contain a mapping at the top level")
    return document


def merge_by_name(
    base: List[Dict[str, Any]], overlay: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """Merge two entry lists keyed on ``name``.

    An overlay entry replaces the base entry with the same name in place,
    unmatched overlay entries are appended, and unmatched base entries are
    kept. When a name occurs more than once the last definition wins.
    """
    merged: Dict[Any, Dict[str, Any]] = {}
    for position, item in enumerate(list(base) + list(overlay)):
        if not isinstance(item, dict):
            raise TemplateError(f"Template entries must be mappings, got {item!r}")
        name = item.get("name")
        key = name if name is not None else ("<unnamed>", position)
        merged[key] = copy.deepcopy(item)
    return list(merged.values())


def _section(document: Mapping[str, Any], key: str) -> List[Dict[str, Any]]:
    value = document.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise TemplateError(f"'{key}' must be a list")
    return value


def merge_documents(
    base: Mapping[str, Any], overlay: Optional[Mapping[str, Any]] = None
) -> Dict[str, Any]:
    """Merge an overlay document onto a base document without validating."""
    merged: Dict[str, Any] = copy.deepcopy(dict(base))
    for key in LIST_SECTIONS:
        if key in merged:
            merged[key] = merge_by_name(_section(merged, key), [])
    if not overlay:
        return merged

    base_metadata = merged.get("metadata") or {}
    overlay_metadata = overlay.get("metadata") or {}
    if not isinstance(base_metadata, dict) or not isinstance(overlay_metadata, dict):
        raise TemplateError("'metadata' must be a mapping")
    metadata = dict(base_metadata)
    metadata.update({k: v for k, v in overlay_metadata.items() if v is not None})
    merged["metadata"] = metadata

    for key in LIST_SECTIONS:
        if key in overlay:
            merged[key] = merge_by_name(_section(merged, key), _section(overlay, key))

    if "stages" in overlay:
        base_stages = merged.get("stages") or {}
        overlay_stages = overlay.get("stages") or {}
        if not isinstance(base_stages, dict) or not isinstance(overlay_stages, dict):
            raise TemplateError("'stages' must be a mapping")
        stages = dict(base_stages)
        for stage in STAGE_SECTIONS:
            if stage in overlay_stages:
                stages[stage] = merge_by_name(
                    _section(base_stages, stage), _section(overlay_stages, stage)
                )
        merged["stages"] = stages

    for key, value in overlay.items():
        if key not in LIST_SECTIONS and key not in ("metadata", "stages"):
            merged[key] = copy.deepcopy(value)
    return merged


def _require(item: Mapping[str, Any], key: str, where: str, errors: List[str]) -> None:
    value = item.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        errors.append(f"'{where}.{key}' is missing")


def _check_enum(
    item: Mapping[str, Any], key: str, enum: Any, where: str, errors: List[str]
) -> None:
    value = item.get(key)
    if value is None:
        return
    allowed = [member.value for member in enum]
    if str(value).lower() not in allowed:
        errors.append(f"'{where}.{key}' must be one of {', '.join(allowed)} (got {value!r})")


def _check_checksum(item: Mapping[str, Any], where: str, errors: List[str]) -> None:
    value = item.get("checksum_type")
    if value is None:
        return
    try:
        hashlib.new(str(value).replace("-", "").lower())
    except ValueError:
        errors.append(f"'{where}.checksum_type' is not a supported hash algorithm ({value!r})")


def validate_document(document: Mapping[str, Any]) -> List[str]:
    """Validate a merged template document.

    Returns:
        List[str]: Every problem found; empty when the document is valid.
    """
    errors: List[str] = []

    metadata = document.get("metadata")
    if not isinstance(metadata, dict):
        errors.append("'metadata.name' is missing")
    else:
        _require(metadata, "name", "metadata", errors)

    for key in LIST_SECTIONS:
        value = document.get(key)
        if value is not None and not isinstance(value, list):
            errors.append(f"'{key}' must be a list")

    for index, item in enumerate(document.get("prerequisites") or []):
        where = f"prerequisites[{index}]"
        _require(item, "name", where, errors)
        _require(item, "type", where, errors)
        if item.get("check") is None and item.get("inline_script") is None:
            errors.append(f"'{where}.check' is missing")
        _check_enum(item, "type", PrerequisiteType, where, errors)
        _check_enum(item, "on_missing", OnMissing, where, errors)

    for index, item in enumerate(document.get("files") or []):
        where = f"files[{index}]"
        _require(item, "name", where, errors)
        _require(item, "dynamic_state_path", where, errors)
        if item.get("path") is None and item.get("destination") is None:
            errors.append(f"'{where}.path' is missing")
        _check_enum(item, "type", FileType, where, errors)
        _check_enum(item, "action", Action, where, errors)
        _check_checksum(item, where, errors)

    for index, item in enumerate(document.get("registry") or []):
        where = f"registry[{index}]"
        _require(item, "name", where, errors)
        _require(item, "path", where, errors)
        _require(item, "dynamic_state_path", where, errors)
        _check_enum(item, "type", RegistryType, where, errors)
        _check_enum(item, "action", Action, where, errors)
        if str(item.get("type", "")).lower() == RegistryType.VALUE.value and not (
            item.get("value_name") or item.get("key_name")
        ):
            errors.append(f"'{where}.value_name' is missing")

    for index, item in enumerate(document.get("applications") or []):
        where = f"applications[{index}]"
        _require(item, "name", where, errors)
        _require(item, "dynamic_state_path", where, errors)
        _require(item, "discovery_command", where, errors)

    stages = document.get("stages") or {}
    if not isinstance(stages, dict):
        errors.append("'stages' must be a mapping")
    else:
        for stage in stages:
            if stage not in STAGE_SECTIONS:
                errors.append(
                    f"'stages.{stage}' is not a known stage (expected one of {', '.join(STAGE_SECTIONS)})"
                )
        for stage in STAGE_SECTIONS:
            steps = stages.get(stage) or []
            if not isinstance(steps, list):
                errors.append(f"'stages.{stage}' must be a list")
                continue
            for index, item in enumerate(steps):
                where = f"stages.{stage}[{index}]"
                if not isinstance(item, dict):
                    errors.append(f"'{where}' must be a mapping")
                    continue
                _require(item, "name", where, errors)
                if item.get("script") is None and item.get("inline_script") is None:
                    errors.append(f"'{where}.script' is missing")

    return errors


def _optional_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _build_template(document: Mapping[str, Any]) -> Template:
    metadata = document["metadata"]
    stages = document.get("stages") or {}

    def steps(stage: str) -> Tuple[StageStep, ...]:
        return tuple(
            StageStep(
                name=str(item["name"]),
                script=str(item.get("script") or item.get("inline_script")),
                type=str(item.get("type", "script")),
                parameters=dict(item.get("parameters") or {}),
            )
            for item in stages.get(stage) or []
        )

    return Template(
        metadata=Metadata(
            name=str(metadata["name"]),
            description=str(metadata.get("description") or ""),
            version=str(metadata.get("version") or ""),
            type=str(metadata.get("type") or ""),
            author=str(metadata.get("author") or ""),
        ),
        prerequisites=tuple(
            PrerequisiteSpec(
                name=str(item["name"]),
                type=PrerequisiteType(str(item["type"]).lower()),
                check=str(item.get("check") or item.get("inline_script")),
                expected_output=_optional_str(item.get("expected_output")),
                value_name=_optional_str(item.get("value_name")),
                on_missing=OnMissing(str(item.get("on_missing", "warn")).lower()),
            )
            for item in document.get("prerequisites") or []
        ),
        files=tuple(
            FileStateConfig(
                name=str(item["name"]),
                type=FileType(str(item.get("type", "file")).lower()),
                action=Action(str(item.get("action", "sync")).lower()),
                dynamic_state_path=str(item["dynamic_state_path"]),
                path=_optional_str(item.get("path")),
                destination=_optional_str(item.get("destination")),
                encrypt=bool(item.get("encrypt", False)),
                checksum_type=str(item.get("checksum_type") or DEFAULT_CHECKSUM_TYPE),
                exclude_patterns=tuple(str(p) for p in item.get("exclude_patterns") or []),
            )
            for item in document.get("files") or []
        ),
        registry=tuple(
            RegistryStateConfig(
                name=str(item["name"]),
                path=str(item["path"]),
                action=Action(str(item.get("action", "sync")).lower()),
                dynamic_state_path=str(item["dynamic_state_path"]),
                type=RegistryType(str(item.get("type", "key")).lower()),
                value_name=_optional_str(item.get("value_name") or item.get("key_name")),
                encrypt=bool(item.get("encrypt", False)),
            )
            for item in document.get("registry") or []
        ),
        applications=tuple(
            ApplicationStateConfig(
                name=str(item["name"]),
                dynamic_state_path=str(item["dynamic_state_path"]),
                discovery_command=str(item["discovery_command"]),
                type=str(item.get("type") or "custom"),
                parse_script=_optional_str(item.get("parse_script")),
                install_script=_optional_str(item.get("install_script")),
                uninstall_script=_optional_str(item.get("uninstall_script")),
            )
            for item in document.get("applications") or []
        ),
        prereqs=steps("prereqs"),
        pre_update=steps("pre_update"),
        post_update=steps("post_update"),
        cleanup=steps("cleanup"),
    )


def resolve(
    base: Mapping[str, Any], overlay: Optional[Mapping[str, Any]] = None
) -> Template:
    """Merge a base template with an optional overlay and validate the result.

    Args:
        base: The base template document.
        overlay: Optional machine-specific document layered on top.

    Returns:
        Template: The resolved, immutable template.

    Raises:
        TemplateError: If either document is structurally unusable.
        TemplateValidationError: If the merged document fails validation.
    """
    document = merge_documents(base, overlay)
    errors = validate_document(document)
    if errors:
        raise TemplateValidationError(errors)
    template = _build_template(document)
    logger.debug(
        "Resolved template '%s' (%d prerequisites, %d files, %d registry, %d applications)",
        template.name,
        len(template.prerequisites),
        len(template.files),
        len(template.registry),
        len(template.applications),
    )
    return template


def load_template(
    path: Union[str, Path], overlay_path: Optional[Union[str, Path]] = None
) -> Template:
    """Load a template file and an optional overlay file and resolve them."""
    base = load_template_document(path)
    overlay = load_template_document(overlay_path) if overlay_path else None
    return resolve(base, overlay)
