"""Configuration management for sysstate."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, List, Optional

from rich.console import Console

from .scripts import DEFAULT_TIMEOUT, default_shell

console = Console()

DEFAULT_CONFIG_FILE = Path("~/.config/sysstate/config.yaml")

DEFAULT_CONFIG: Dict[str, Any] = {
    "state_dir": "~/.local/share/sysstate/state",
    "registry_file": "~/.local/share/sysstate/registry.json",
    "shell": default_shell(),
    "script_timeout": DEFAULT_TIMEOUT,
    "allow_external_scripts": True,
    "log_file": None,
}


class Config:
    """Configuration class for sysstate."""

    def __init__(self, config_file: Optional[Path] = None) -> None:
        """Initialize configuration."""
        self.config: Dict[str, Any] = {}
        self.state_dir: Path = Path()
        self.registry_file: Path = Path()
        self.shell: List[str] = []
        self.script_timeout: Optional[float] = DEFAULT_TIMEOUT
        self.allow_external_scripts: bool = True
        self.log_file: Optional[str] = None
        self.load_config(config_file)

    def load_config(self, config_file: Optional[Path] = None) -> None:
        """Load configuration from file.

        Defaults are applied first. A config file given explicitly must
        exist; the default location is only read when present.

        Raises:
            ValueError: If the file is malformed or holds invalid values.
        """
        self._merge_config(copy.deepcopy(DEFAULT_CONFIG))

        if config_file is None:
            default = DEFAULT_CONFIG_FILE.expanduser()
            if not default.exists():
                return
            config_file = default

        import yaml

        try:
            with open(Path(config_file).expanduser(), "r") as f:
                user_config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            console.print(f"[red]Error loading config file: {e}[/red]")
            raise ValueError(f"Cannot load config file {config_file}: {e}") from e
        if user_config:
            self._merge_config(user_config)

    def _merge_config(self, config: Dict[str, Any]) -> None:
        """Merge configuration with current configuration."""
        if not isinstance(config, dict):
            raise ValueError("Configuration must be a dictionary")

        self.config.update(config)

        if "state_dir" in config:
            if not isinstance(config["state_dir"], str):
                raise ValueError("state_dir must be a string")
            self.state_dir = Path(config["state_dir"]).expanduser()

        if "registry_file" in config:
            if not isinstance(config["registry_file"], str):
                raise ValueError("registry_file must be a string")
            self.registry_file = Path(config["registry_file"]).expanduser()

        if "shell" in config:
            shell = config["shell"]
            if isinstance(shell, str):
                shell = shell.split()
            if not isinstance(shell, list) or not shell:
                raise ValueError("shell must be a non-empty list")
            self.shell = [str(part) for part in shell]

        if "script_timeout" in config:
            timeout = config["script_timeout"]
            if timeout is not None and (
                isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0
            ):
                raise ValueError("script_timeout must be a positive number")
            self.script_timeout = None if timeout is None else float(timeout)

        if "allow_external_scripts" in config:
            if not isinstance(config["allow_external_scripts"], bool):
                raise ValueError("allow_external_scripts must be a boolean")
            self.allow_external_scripts = config["allow_external_scripts"]

        if "log_file" in config:
            if config["log_file"] is not None and not isinstance(config["log_file"], str):
                raise ValueError("log_file must be a string")
            self.log_file = config["log_file"]

    def validate(self) -> List[str]:
        """Validate configuration."""
        errors = []

        if not isinstance(self.state_dir, Path) or not str(self.state_dir):
            errors.append("state_dir must be set")

        if not isinstance(self.shell, list) or not self.shell:
            errors.append("shell must be a non-empty list")

        if self.script_timeout is not None and self.script_timeout <= 0:
            errors.append("script_timeout must be a positive number")

        return errors

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: The configuration key to get.
            default: The default value to return if the key is not found.

        Returns:
            The configuration value, or the default if not found.
        """
        return self.config.get(key, default)
