"""Discovery and replay of installed applications."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

from .context import StateContext
from .template import ApplicationStateConfig

logger = logging.getLogger(__name__)

DEFAULT_PARSE_SCRIPT = "builtin:json"


def normalize_applications(parsed: Any) -> List[Dict[str, Any]]:
    """Turn a parse script result into a list of application records.

    Accepts a list, a single mapping, JSON text of either, or nothing.
    """
    if parsed is None:
        return []
    if isinstance(parsed, (bytes, str)):
        text = parsed.decode("utf-8") if isinstance(parsed, bytes) else parsed
        if not text.strip():
            return []
        parsed = json.loads(text)
    if isinstance(parsed, dict):
        parsed = [parsed]
    if not isinstance(parsed, (list, tuple)):
        raise ValueError(f"Parse script returned {type(parsed).__name__}, expected a list")

    applications = []
    for item in parsed:
        if not isinstance(item, dict):
            raise ValueError(f"Application records must be mappings, got {item!r}")
        record = dict(item)
        for key in ("Name", "Id", "Version"):
            record.setdefault(key, None)
        applications.append(record)
    return applications


class ApplicationStateEngine:
    """Captures application lists and replays install/uninstall scripts."""

    def __init__(self, context: StateContext):
        self.context = context
        self.runner = context.runner

    def discover(self, config: ApplicationStateConfig) -> Optional[List[Dict[str, Any]]]:
        """Run discovery and persist the parsed application list.

        An empty discovery output writes ``[]``. If the discovery command or
        the parse script fails, nothing is written and None is returned.
        """
        try:
            output = self.runner.run(config.discovery_command)
        except Exception as e:
            logger.warning("Discovery for '%s' failed: %s", config.name, e)
            return None

        text = output if isinstance(output, str) else json.dumps(output)
        if output is None or not text.strip():
            applications: List[Dict[str, Any]] = []
        else:
            try:
                parsed = self.runner.run(config.parse_script or DEFAULT_PARSE_SCRIPT, text)
                applications = normalize_applications(parsed)
            except Exception as e:
                logger.warning("Parsing discovery output for '%s' failed: %s", config.name, e)
                return None

        text = json.dumps(applications, indent=2)
        state_path = self.context.state_path(config.dynamic_state_path)
        with open(state_path, "w", encoding="utf-8") as f:
            f.write(text)
        logger.info(
            "Discovered %d applications for '%s' -> %s", len(applications), config.name, state_path
        )
        return applications

    def load(self, config: ApplicationStateConfig) -> Optional[List[Dict[str, Any]]]:
        """Read a persisted application list, or None if there is none."""
        state_path = self.context.state_path(config.dynamic_state_path, create=False)
        if not state_path.exists():
            return None
        with open(state_path, "r", encoding="utf-8") as f:
            return normalize_applications(json.load(f))

    def _replay(self, config: ApplicationStateConfig, script: Optional[str], verb: str) -> bool:
        if not script:
            logger.debug("No %s script for '%s'", verb, config.name)
            return False
        applications = self.load(config)
        if applications is None:
            logger.info("No saved application list for '%s', nothing to %s", config.name, verb)
            return False

        logger.info("Replaying %s of %d applications for '%s'", verb, len(applications), config.name)
        output = self.runner.run(
            script,
            json.dumps(applications),
            {"name": config.name, "count": len(applications)},
        )
        if isinstance(output, str) and output.strip():
            logger.debug("%s output for '%s': %s", verb.capitalize(), config.name, output.strip())
        return True

    def install(self, config: ApplicationStateConfig) -> bool:
        """Run the install script with the saved list; missing list is a no-op."""
        return self._replay(config, config.install_script, "install")

    def uninstall(self, config: ApplicationStateConfig) -> bool:
        """Run the uninstall script with the saved list; missing script or list is a no-op."""
        return self._replay(config, config.uninstall_script, "uninstall")
