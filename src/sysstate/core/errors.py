"""Exceptions raised by the state capture and replay engine."""

from typing import List, Optional


class StateError(Exception):
    """Base class for all sysstate errors."""


class TemplateError(StateError):
    """A template document could not be read or parsed."""


class TemplateValidationError(TemplateError):
    """A resolved template is missing required fields or has invalid values.

    Attributes:
        errors (List[str]): Every problem found, e.g. ``'metadata.name' is missing``.
    """

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


class PrerequisiteFailure(StateError):
    """One or more prerequisites with a blocking policy failed."""

    def __init__(self, mode: str, failures: List[str]):
        self.mode = mode
        self.failures = list(failures)
        super().__init__(f"Prerequisites failed for {mode}: {', '.join(self.failures)}")


class EncryptionError(StateError):
    """Data could not be encrypted, or no passphrase was available."""


class DecryptionError(EncryptionError):
    """An encrypted blob could not be decrypted (wrong passphrase or corrupt data)."""


class UnsafePathError(StateError):
    """A state path escapes the state files directory."""


class ScriptError(StateError):
    """An external command or registered script failed."""

    def __init__(self, message: str, output: Optional[str] = None):
        self.output = output
        super().__init__(message)
