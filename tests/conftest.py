"""Test configuration."""

from __future__ import annotations

import base64
import hashlib
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from sysstate.core.accessors import MemoryRegistryStore
from sysstate.core.context import StateContext
from sysstate.core.crypto import ENCRYPTED_MARKER, Encryptor, is_encrypted
from sysstate.core.errors import DecryptionError, EncryptionError, ScriptError
from sysstate.core.scripts import ScriptRunner

WINGET_OUTPUT = """\
Name                 Id                          Version
-------------------------------------------------------------
Git                  Git.Git                     2.45.1
Visual Studio Code   Microsoft.VisualStudioCode  1.90.0
7-Zip                7zip.7zip                   24.07
"""


class ReversibleEncryptor(Encryptor):
    """Deterministic encryptor for tests.

    The blob carries a digest of the passphrase so a wrong passphrase is
    detected, and the payload is plain base64 so tests can inspect it.
    """

    def encrypt(self, data: bytes, passphrase: str) -> str:
        if not passphrase:
            raise EncryptionError("A passphrase is required")
        tag = hashlib.sha256(passphrase.encode()).digest()[:8]
        return ENCRYPTED_MARKER + base64.b64encode(tag + data).decode("ascii")

    def decrypt(self, blob: str, passphrase: str) -> bytes:
        if not is_encrypted(blob):
            raise DecryptionError("not encrypted")
        raw = base64.b64decode(blob[len(ENCRYPTED_MARKER) :])
        if raw[:8] != hashlib.sha256(passphrase.encode()).digest()[:8]:
            raise DecryptionError("wrong passphrase")
        return raw[8:]


class RecordingPlugins:
    """Plugin callables that record how they were invoked."""

    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    def record(self, name: str, input_text: Optional[str], /, **params: Any) -> None:
        self.calls.append({"name": name, "input": input_text, "params": params})

    def install(self, runner: ScriptRunner) -> None:
        def winget_list(input_text: Optional[str], **params: Any) -> str:
            self.record("discover:winget", input_text, **params)
            return WINGET_OUTPUT

        def empty_list(input_text: Optional[str], **params: Any) -> str:
            self.record("discover:empty", input_text, **params)
            return "   \n"

        def broken(input_text: Optional[str], **params: Any) -> str:
            self.record("discover:broken", input_text, **params)
            raise RuntimeError("winget is not installed")

        def install_apps(input_text: Optional[str], **params: Any) -> str:
            self.record("install:apps", input_text, **params)
            return "installed"

        def uninstall_apps(input_text: Optional[str], **params: Any) -> str:
            self.record("uninstall:apps", input_text, **params)
            return "uninstalled"

        def echo_ok(input_text: Optional[str], **params: Any) -> str:
            self.record("check:ok", input_text, **params)
            return "  System available\n"

        def failing_check(input_text: Optional[str], **params: Any) -> str:
            self.record("check:fail", input_text, **params)
            raise ScriptError("exit status 1")

        def stage_step(input_text: Optional[str], **params: Any) -> None:
            self.record("stage:step", input_text, **params)

        runner.register("discover:winget", winget_list)
        runner.register("discover:empty", empty_list)
        runner.register("discover:broken", broken)
        runner.register("install:apps", install_apps)
        runner.register("uninstall:apps", uninstall_apps)
        runner.register("check:ok", echo_ok)
        runner.register("check:fail", failing_check)
        runner.register("stage:step", stage_step)

    def names(self) -> List[str]:
        return [call["name"] for call in self.calls]


@pytest.fixture(autouse=True)
def home_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the home directory at a temporary path so no test reads or writes the real one."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    return home


@pytest.fixture
def winget_output() -> str:
    """Sample ``winget list`` output."""
    return WINGET_OUTPUT


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    """Create a state files directory for a test run."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """Create a directory holding source files to capture."""
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def registry() -> MemoryRegistryStore:
    """Create a registry store with a few keys."""
    return MemoryRegistryStore(
        {
            "HKCU:\\Control Panel\\Desktop": {
                "LogPixels": 96,
                "Wallpaper": "C:\\Windows\\web\\wallpaper.jpg",
                "PSPath": "Microsoft.PowerShell.Core\\Registry::HKEY_CURRENT_USER\\Control Panel\\Desktop",
                "PSChildName": "Desktop",
            },
            "HKCU:\\Keyboard Layout\\Preload": {"1": "00000409", "2": "00000407"},
        }
    )


@pytest.fixture
def plugins() -> RecordingPlugins:
    """Create recording plugins."""
    return RecordingPlugins()


@pytest.fixture
def runner(plugins: RecordingPlugins) -> ScriptRunner:
    """Create a script runner that only runs registered plugins."""
    runner = ScriptRunner(allow_external=False)
    plugins.install(runner)
    return runner


@pytest.fixture
def context(state_dir: Path, registry: MemoryRegistryStore, runner: ScriptRunner) -> StateContext:
    """Create a run context with the test encryptor and passphrase."""
    return StateContext(
        state_dir=state_dir,
        passphrase="P@ss1",
        registry=registry,
        runner=runner,
        encryptor=ReversibleEncryptor(),
    )
