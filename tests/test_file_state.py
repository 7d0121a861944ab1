"""Tests for file and directory capture and restore."""

import hashlib
import json
import os
from pathlib import Path

import pytest

from sysstate.core.context import StateContext
from sysstate.core.errors import DecryptionError, EncryptionError
from sysstate.core.file_state import FileStateEngine, compute_checksum, is_excluded
from sysstate.core.template import Action, FileStateConfig, FileType


def file_entry(path: Path, dynamic_state_path: str = "files/hello.txt", **kwargs) -> FileStateConfig:
    return FileStateConfig(
        name=kwargs.pop("name", "Hello"),
        type=FileType.FILE,
        action=Action.SYNC,
        dynamic_state_path=dynamic_state_path,
        path=str(path),
        **kwargs,
    )


def directory_entry(path: Path, **kwargs) -> FileStateConfig:
    return FileStateConfig(
        name="Profiles",
        type=FileType.DIRECTORY,
        action=Action.SYNC,
        dynamic_state_path="files/profiles.json",
        path=str(path),
        **kwargs,
    )


@pytest.fixture
def hello(source_dir: Path) -> Path:
    """Create a small source file."""
    path = source_dir / "hello.txt"
    path.write_bytes(b"Hello World")
    return path


@pytest.fixture
def profiles(source_dir: Path) -> Path:
    """Create a directory tree with nested folders and files."""
    root = source_dir / "profiles"
    (root / "icc").mkdir(parents=True)
    (root / "cache").mkdir()
    (root / "icc" / "monitor.icc").write_bytes(b"icc-data")
    (root / "cache" / "thumbs.db").write_bytes(b"cache")
    (root / "default.json").write_text("{}")
    os.utime(root / "default.json", (1_700_000_000, 1_700_000_000))
    return root


def test_capture_file(context: StateContext, hello: Path, state_dir: Path) -> None:
    """Test capturing a file byte-for-byte with its checksum."""
    state = FileStateEngine(context).capture(file_entry(hello))
    assert state is not None
    assert state.checksum == hashlib.sha256(b"Hello World").hexdigest()
    assert state.checksum_type == "SHA256"
    assert state.size == 11
    assert not state.encrypted
    assert (state_dir / "files" / "hello.txt").read_bytes() == b"Hello World"
    assert not (state_dir / "files" / "hello.txt.metadata.json").exists()


def test_checksum_is_stable(context: StateContext, hello: Path) -> None:
    """Test that capturing unchanged content twice gives the same checksum."""
    engine = FileStateEngine(context)
    first = engine.capture(file_entry(hello))
    second = engine.capture(file_entry(hello))
    assert first.checksum == second.checksum


def test_checksum_type(context: StateContext, hello: Path) -> None:
    """Test a non-default hash algorithm."""
    state = FileStateEngine(context).capture(file_entry(hello, checksum_type="MD5"))
    assert state.checksum == hashlib.md5(b"Hello World").hexdigest()
    assert compute_checksum(b"x", "SHA-1") == hashlib.sha1(b"x").hexdigest()


def test_capture_encrypted_file(context: StateContext, hello: Path, state_dir: Path) -> None:
    """Test that an encrypted artifact is tagged and has a sidecar."""
    state = FileStateEngine(context).capture(file_entry(hello, encrypt=True))
    artifact = state_dir / "files" / "hello.txt"
    assert state.encrypted
    assert artifact.read_text().startswith("ENCRYPTED:")
    sidecar = json.loads((state_dir / "files" / "hello.txt.metadata.json").read_text())
    assert sidecar == {"Encrypted": True, "Encoding": "Base64", "OriginalSize": 11}


def test_restore_encrypted_file(context: StateContext, hello: Path, tmp_path: Path) -> None:
    """Test restoring an encrypted file to a new destination."""
    engine = FileStateEngine(context)
    destination = tmp_path / "restored" / "hello.txt"
    entry = file_entry(hello, encrypt=True, destination=str(destination))
    engine.capture(entry)

    assert engine.restore(entry) == destination
    assert destination.read_bytes() == b"Hello World"


def test_restore_with_wrong_passphrase(context: StateContext, hello: Path, tmp_path: Path) -> None:
    """Test that a wrong passphrase raises and writes nothing."""
    destination = tmp_path / "restored.txt"
    entry = file_entry(hello, encrypt=True, destination=str(destination))
    FileStateEngine(context).capture(entry)

    context.passphrase = "wrong"
    with pytest.raises(DecryptionError):
        FileStateEngine(context).restore(entry)
    assert not destination.exists()


def test_encrypt_without_passphrase(context: StateContext, hello: Path) -> None:
    """Test that encryption without a passphrase raises."""
    context.passphrase = None
    with pytest.raises(EncryptionError):
        FileStateEngine(context).capture(file_entry(hello, encrypt=True))


def test_restore_overwrites_source(context: StateContext, hello: Path) -> None:
    """Test that restore falls back to the source path."""
    engine = FileStateEngine(context)
    entry = file_entry(hello)
    engine.capture(entry)
    hello.write_bytes(b"changed")

    assert engine.restore(entry) == hello
    assert hello.read_bytes() == b"Hello World"


def test_plaintext_starting_with_marker(context: StateContext, source_dir: Path, tmp_path: Path) -> None:
    """Test that a plain file whose content starts with the marker restores unchanged."""
    note = source_dir / "note.txt"
    note.write_bytes(b"ENCRYPTED: this is just a note")
    destination = tmp_path / "restored" / "note.txt"
    entry = file_entry(note, dynamic_state_path="files/note.txt", destination=str(destination))

    engine = FileStateEngine(context)
    engine.capture(entry)
    context.passphrase = None

    assert engine.restore(entry) == destination
    assert destination.read_bytes() == b"ENCRYPTED: this is just a note"


def test_missing_source_is_skipped(context: StateContext, source_dir: Path, state_dir: Path) -> None:
    """Test that a missing source is skipped without writing state."""
    state = FileStateEngine(context).capture(file_entry(source_dir / "missing.txt"))
    assert state is None
    assert not (state_dir / "files" / "hello.txt").exists()


def test_missing_state_is_skipped(context: StateContext, hello: Path) -> None:
    """Test that restoring without saved state does nothing."""
    assert FileStateEngine(context).restore(file_entry(hello)) is None
    assert hello.read_bytes() == b"Hello World"


def test_capture_directory_manifest(context: StateContext, profiles: Path, state_dir: Path) -> None:
    """Test the directory manifest format."""
    state = FileStateEngine(context).capture(directory_entry(profiles))
    assert state.type is FileType.DIRECTORY
    assert state.entries == 5

    manifest = json.loads((state_dir / "files" / "profiles.json").read_text())
    assert [e["RelativePath"] for e in manifest] == [
        "cache",
        "cache/thumbs.db",
        "default.json",
        "icc",
        "icc/monitor.icc",
    ]
    assert set(manifest[0]) == {"FullName", "RelativePath", "Length", "LastWriteTimeUtc", "IsContainer"}
    assert manifest[0]["IsContainer"] is True
    assert manifest[0]["Length"] == 0
    assert manifest[4]["Length"] == len(b"icc-data")
    assert manifest[2]["LastWriteTimeUtc"].startswith("2023-11-14T22:13:20")


def test_directory_exclude_patterns(context: StateContext, profiles: Path, state_dir: Path) -> None:
    """Test that excluded paths and their children are left out."""
    state = FileStateEngine(context).capture(directory_entry(profiles, exclude_patterns=("cache", "*.icc")))
    manifest = json.loads((state_dir / "files" / "profiles.json").read_text())
    assert [e["RelativePath"] for e in manifest] == ["default.json", "icc"]
    assert state.entries == 2


def test_restore_directory_structure(context: StateContext, profiles: Path, tmp_path: Path) -> None:
    """Test that restoring a directory recreates its structure."""
    destination = tmp_path / "restored_profiles"
    entry = directory_entry(profiles, destination=str(destination), encrypt=True)
    engine = FileStateEngine(context)
    engine.capture(entry)

    assert engine.restore(entry) == destination
    assert (destination / "icc").is_dir()
    assert (destination / "cache").is_dir()
    placeholder = destination / "icc" / "monitor.icc"
    assert placeholder.is_file()
    assert placeholder.read_bytes() == b""
    assert int((destination / "default.json").stat().st_mtime) == 1_700_000_000


def test_file_entry_pointing_at_directory(context: StateContext, profiles: Path) -> None:
    """Test that a file entry whose source is a directory is skipped."""
    assert FileStateEngine(context).capture(file_entry(profiles)) is None


def test_is_excluded() -> None:
    """Test exclude pattern matching against paths and their parents."""
    assert is_excluded("cache/thumbs.db", ["cache"])
    assert is_excluded("a/b/c.tmp", ["*.tmp"])
    assert is_excluded("a\\b", []) is False
    assert is_excluded("logs/today.log", ["logs/*"])
    assert not is_excluded("src/main.py", ["*.log"])
