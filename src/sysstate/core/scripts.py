"""Script execution boundary.

Templates name the logic for prerequisite checks, discovery parsing, install
and uninstall replay, and stage steps as script text. ``ScriptRunner`` decides
how that text is executed:

1. If the text (stripped) is the name of a registered plugin, the plugin
   callable is invoked with the input text and any parameters.
2. Otherwise, when external scripts are allowed, the text is handed to the
   configured shell as a single command in a child process, with the input
   text on stdin, parameters exported as ``SYSSTATE_PARAM_<NAME>`` environment
   variables and a timeout. Nothing is ever evaluated in-process.

Built-in plugins:

- ``builtin:json`` parses the input as JSON.
- ``builtin:table`` parses column-aligned tables such as ``winget list``
  output into a list of records keyed by the header columns.
- ``builtin:lines`` returns the non-empty input lines.
"""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import sys
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import ScriptError, StateError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0

PluginFunc = Callable[..., Any]

_COLUMN_SPLIT = re.compile(r"\s{2,}")
_SEPARATOR = re.compile(r"^[\s\-=|+]+$")
_SPINNER = re.compile(r"^\s*[-\\|/]\s*$")


def default_shell() -> List[str]:
    """Return the argv prefix used to run external script text on this host."""
    if sys.platform == "win32":
        return ["powershell", "-NoProfile", "-NonInteractive", "-Command"]
    return ["sh", "-c"]


def parse_json(input_text: Optional[str], **_: Any) -> Any:
    """Parse input text as JSON; empty input yields an empty list."""
    if not input_text or not input_text.strip():
        return []
    return json.loads(input_text)


def parse_lines(input_text: Optional[str], **_: Any) -> List[str]:
    """Return the stripped, non-empty lines of the input."""
    return [line.strip() for line in (input_text or "").splitlines() if line.strip()]


def parse_table(input_text: Optional[str], **_: Any) -> List[Dict[str, str]]:
    """Parse a column-aligned table into records.

    The first line that splits into two or more columns is taken as the
    header. Separator rows (dashes) and spinner lines are skipped, and data
    rows are split on runs of two or more spaces.

    Example:
        ```
        Name        Id                 Version
        ----------------------------------------
        Git         Git.Git            2.45.1
        ```

        becomes ``[{"Name": "Git", "Id": "Git.Git", "Version": "2.45.1"}]``.
    """
    header: Optional[List[str]] = None
    records: List[Dict[str, str]] = []
    for line in (input_text or "").splitlines():
        if not line.strip() or _SPINNER.match(line) or _SEPARATOR.match(line):
            continue
        parts = [part.strip() for part in _COLUMN_SPLIT.split(line.strip()) if part.strip()]
        if header is None:
            if len(parts) < 2:
                parts = line.split()
            if len(parts) >= 2:
                header = parts
            continue
        if len(parts) < 2:
            continue
        records.append(dict(zip(header, parts)))
    return records


BUILTIN_PLUGINS: Dict[str, PluginFunc] = {
    "builtin:json": parse_json,
    "builtin:lines": parse_lines,
    "builtin:table": parse_table,
}


class ScriptRunner:
    """Run template scripts as registered plugins or external commands.

    Attributes:
        shell (List[str]): Argv prefix for external commands.
        timeout (Optional[float]): Seconds before an external command is killed.
        allow_external (bool): Whether script text that is not a plugin name may
            be executed as an external command.
        plugins (Dict[str, PluginFunc]): Registered plugin callables.
    """

    def __init__(
        self,
        shell: Optional[Sequence[str]] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        allow_external: bool = True,
        plugins: Optional[Mapping[str, PluginFunc]] = None,
        cwd: Optional[str] = None,
    ):
        self.shell = list(shell) if shell else default_shell()
        self.timeout = timeout
        self.allow_external = allow_external
        self.cwd = cwd
        self.plugins: Dict[str, PluginFunc] = dict(BUILTIN_PLUGINS)
        if plugins:
            self.plugins.update(plugins)

    def register(self, name: str, func: Optional[PluginFunc] = None) -> Any:
        """Register a plugin, either directly or as a decorator.

        Example:
            ```python
            runner = ScriptRunner()

            @runner.register("check:git")
            def check_git(input_text, **params):
                return "git available"
            ```
        """
        if func is not None:
            self.plugins[name] = func
            return func

        def decorator(f: PluginFunc) -> PluginFunc:
            self.plugins[name] = f
            return f

        return decorator

    def is_plugin(self, script: str) -> bool:
        return script.strip() in self.plugins

    def run(
        self,
        script: str,
        input_text: Optional[str] = None,
        parameters: Optional[Mapping[str, Any]] = None,
    ) -> Any:
        """Run script text and return its result.

        Plugins may return any value; external commands return their stdout.

        Raises:
            ScriptError: If the script fails, times out, or cannot be started.
        """
        if not script or not script.strip():
            raise ScriptError("Script is empty")
        parameters = dict(parameters or {})

        name = script.strip()
        plugin = self.plugins.get(name)
        if plugin is not None:
            logger.debug("Running plugin %s", name)
            try:
                return plugin(input_text, **parameters)
            except StateError:
                raise
            except Exception as e:
                raise ScriptError(f"Plugin '{name}' failed: {e}") from e

        if not self.allow_external:
            raise ScriptError(f"External scripts are disabled and no plugin is named '{name}'")
        return self._run_external(script, input_text, parameters)

    def _run_external(
        self, script: str, input_text: Optional[str], parameters: Mapping[str, Any]
    ) -> str:
        env = dict(os.environ)
        for key, value in parameters.items():
            env[f"SYSSTATE_PARAM_{str(key).upper()}"] = str(value)

        summary = script.strip().splitlines()[0][:80]
        logger.debug("Running external script: %s", summary)
        try:
            result = subprocess.run(
                [*self.shell, script],
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                cwd=self.cwd,
                env=env,
                check=True,
            )
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or e.stdout or "").strip()
            message = f"Script exited with status {e.returncode}"
            if detail:
                message = f"{message}: {detail}"
            raise ScriptError(message, output=e.stdout) from e
        except subprocess.TimeoutExpired as e:
            raise ScriptError(f"Script timed out after {self.timeout} seconds") from e
        except OSError as e:
            raise ScriptError(f"Cannot start script shell {self.shell[0]}: {e}") from e

        if result.stderr and result.stderr.strip():
            logger.debug("Script stderr: %s", result.stderr.strip())
        return result.stdout
