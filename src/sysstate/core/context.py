"""Per-run context shared by the state engines."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .accessors import FileSystem, LocalFileSystem, MemoryRegistryStore, RegistryStore
from .crypto import Encryptor, default_encryptor
from .errors import DecryptionError, EncryptionError
from .paths import resolve_state_path
from .scripts import ScriptRunner


@dataclass
class StateContext:
    """Everything a capture or restore call needs for one run.

    Attributes:
        state_dir (Path): The state files directory; every dynamic state path
            is resolved under it. Owned by the caller.
        passphrase (Optional[str]): Secret used for encrypted entries.
        filesystem (FileSystem): Accessor for source and destination files.
        registry (RegistryStore): Accessor for registry keys and values.
        runner (ScriptRunner): Executes discovery, parse, install, and check scripts.
        encryptor (Encryptor): Protects and unprotects encrypted artifacts.
    """

    state_dir: Path
    passphrase: Optional[str] = None
    filesystem: FileSystem = field(default_factory=LocalFileSystem)
    registry: RegistryStore = field(default_factory=MemoryRegistryStore)
    runner: ScriptRunner = field(default_factory=ScriptRunner)
    encryptor: Encryptor = default_encryptor

    def __post_init__(self) -> None:
        self.state_dir = Path(self.state_dir).expanduser()

    def state_path(self, dynamic_state_path: str, create: bool = True) -> Path:
        """Resolve a dynamic state path under the state files directory."""
        return resolve_state_path(self.state_dir, dynamic_state_path, create=create)

    def encrypt(self, data: bytes) -> str:
        if not self.passphrase:
            raise EncryptionError("Encryption requested but no passphrase was provided")
        return self.encryptor.encrypt(data, self.passphrase)

    def decrypt(self, blob: str) -> bytes:
        if not self.passphrase:
            raise DecryptionError("Encrypted state found but no passphrase was provided")
        return self.encryptor.decrypt(blob, self.passphrase)
