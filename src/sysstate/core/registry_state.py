"""Capture and restore of registry keys and values.

Dumps are JSON objects. A single value:

```json
{"KeyName": "Desktop", "RegistryPath": "HKCU:\\\\Control Panel\\\\Desktop",
 "ValueName": "LogPixels", "Value": 96, "Encrypted": false,
 "Timestamp": "2025-01-01T12:00:00+00:00"}
```

A whole key stores every named value in ``Values`` instead. When encrypted,
each value is replaced by the encrypted JSON encoding of that value. Binary
values are stored as ``{"$binary": "<base64>"}``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .accessors import decode_value, encode_value, key_name
from .context import StateContext
from .template import RegistryStateConfig

logger = logging.getLogger(__name__)

# Properties the PowerShell registry provider adds to every key.
EXCLUDED_VALUE_NAMES = frozenset(
    {"PSPath", "PSParentPath", "PSChildName", "PSDrive", "PSProvider"}
)


class RegistryStateEngine:
    """Captures registry state into, and restores it from, JSON dumps."""

    def __init__(self, context: StateContext):
        self.context = context
        self.registry = context.registry

    def _seal(self, value: Any, encrypt: bool) -> Any:
        value = encode_value(value)
        if not encrypt:
            return value
        return self.context.encrypt(json.dumps(value).encode("utf-8"))

    def _unseal(self, value: Any, encrypted: bool) -> Any:
        if encrypted:
            value = json.loads(self.context.decrypt(str(value)).decode("utf-8"))
        return decode_value(value)

    def capture(self, config: RegistryStateConfig) -> Optional[Dict[str, Any]]:
        """Capture a single value or every value of a key.

        Returns:
            Optional[Dict[str, Any]]: The dump that was written, or None when
            the key (or named value) does not exist.
        """
        if not self.registry.key_exists(config.path):
            logger.warning("Registry key for '%s' not found: %s", config.name, config.path)
            return None

        dump: Dict[str, Any] = {
            "KeyName": key_name(config.path),
            "RegistryPath": config.path,
        }
        if config.single_value:
            if not self.registry.value_exists(config.path, config.value_name):
                logger.warning(
                    "Registry value '%s' for '%s' not found under %s",
                    config.value_name,
                    config.name,
                    config.path,
                )
                return None
            value = self.registry.get_value(config.path, config.value_name)
            dump["ValueName"] = config.value_name
            dump["Value"] = self._seal(value, config.encrypt)
        else:
            values = {
                name: self._seal(value, config.encrypt)
                for name, value in sorted(self.registry.get_values(config.path).items())
                if name not in EXCLUDED_VALUE_NAMES
            }
            dump["Values"] = values
        dump["Encrypted"] = config.encrypt
        dump["Timestamp"] = datetime.now(timezone.utc).isoformat()

        # Serialize before opening so an unencodable value leaves no partial file.
        text = json.dumps(dump, indent=2)
        state_path = self.context.state_path(config.dynamic_state_path)
        with open(state_path, "w", encoding="utf-8") as f:
            f.write(text)
        logger.info("Captured registry '%s' -> %s", config.name, state_path)
        return dump

    def restore(self, config: RegistryStateConfig) -> bool:
        """Restore a dump, creating the key when it does not exist.

        Returns:
            bool: True when values were written, False when there was no dump.

        Raises:
            DecryptionError: If an encrypted dump cannot be decrypted.
        """
        state_path = self.context.state_path(config.dynamic_state_path, create=False)
        if not state_path.exists():
            logger.warning("No saved registry state for '%s' at %s", config.name, state_path)
            return False

        with open(state_path, "r", encoding="utf-8") as f:
            dump = json.load(f)
        encrypted = bool(dump.get("Encrypted"))
        target = config.path or dump.get("RegistryPath")

        # Decrypt everything before touching the registry.
        if "Values" in dump:
            values = {
                name: self._unseal(value, encrypted) for name, value in dump["Values"].items()
            }
        else:
            values = {dump["ValueName"]: self._unseal(dump.get("Value"), encrypted)}

        if not self.registry.key_exists(target):
            logger.info("Creating registry key %s", target)
            self.registry.create_key(target)
        for name, value in values.items():
            self.registry.set_value(target, name, value)
        logger.info("Restored registry '%s' (%d values) -> %s", config.name, len(values), target)
        return True
