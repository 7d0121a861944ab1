"""Prerequisite checks run before a backup or restore."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Tuple

from .context import StateContext
from .errors import PrerequisiteFailure
from .template import Mode, OnMissing, PrerequisiteSpec, PrerequisiteType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrerequisiteResult:
    name: str
    passed: bool
    message: str
    on_missing: OnMissing = OnMissing.WARN
    blocking: bool = False


@dataclass
class PrerequisiteReport:
    """Outcome of validating every prerequisite of a template.

    Attributes:
        mode (Mode): The run the checks were made for.
        results (List[PrerequisiteResult]): One result per prerequisite, in order.
    """

    mode: Mode
    results: List[PrerequisiteResult] = field(default_factory=list)

    @property
    def failures(self) -> List[PrerequisiteResult]:
        return [r for r in self.results if not r.passed]

    @property
    def aborted(self) -> bool:
        return any(r.blocking for r in self.results)

    def raise_for_abort(self) -> None:
        """Raise if any failed prerequisite blocks this run."""
        blocking = [f"{r.name} ({r.message})" for r in self.results if r.blocking]
        if blocking:
            raise PrerequisiteFailure(self.mode.value, blocking)


CheckHandler = Callable[[StateContext, PrerequisiteSpec], Tuple[bool, str]]


def _output_text(output: Any) -> str:
    """Render a check result for comparison with ``expected_output``.

    Lists of strings are joined one per line; other structured results are
    compared as JSON.
    """
    if output is None:
        return ""
    if isinstance(output, str):
        return output.strip()
    if isinstance(output, (list, tuple)) and all(isinstance(item, str) for item in output):
        return "\n".join(item.strip() for item in output)
    if isinstance(output, (list, tuple, dict)):
        return json.dumps(output, default=str)
    return str(output).strip()


def _check_script(context: StateContext, spec: PrerequisiteSpec) -> Tuple[bool, str]:
    output = context.runner.run(spec.check)
    text = _output_text(output)
    if spec.expected_output is None:
        return True, text or "Script completed"
    if text == spec.expected_output.strip():
        return True, text
    return False, f"Expected '{spec.expected_output}', got '{text}'"


def _check_registry(context: StateContext, spec: PrerequisiteSpec) -> Tuple[bool, str]:
    registry = context.registry
    if not registry.key_exists(spec.check):
        return False, f"Registry key not found: {spec.check}"
    if spec.value_name is None:
        return True, f"Registry key exists: {spec.check}"
    if not registry.value_exists(spec.check, spec.value_name):
        return False, f"Registry value '{spec.value_name}' not found under {spec.check}"
    value = registry.get_value(spec.check, spec.value_name)
    if spec.expected_output is not None and str(value) != spec.expected_output:
        return False, f"Registry value '{spec.value_name}' is '{value}', expected '{spec.expected_output}'"
    return True, f"Registry value '{spec.value_name}' = {value}"


def _check_application(context: StateContext, spec: PrerequisiteSpec) -> Tuple[bool, str]:
    output = context.runner.run(spec.check)
    text = _output_text(output)
    if isinstance(output, (list, tuple, dict)):
        present = bool(output)
    else:
        present = bool(text)
    if not present:
        return False, "Application not found"
    if spec.expected_output is not None and text != spec.expected_output.strip():
        return False, f"Expected '{spec.expected_output}', got '{text}'"
    return True, text


CHECK_HANDLERS: Dict[PrerequisiteType, CheckHandler] = {
    PrerequisiteType.SCRIPT: _check_script,
    PrerequisiteType.REGISTRY: _check_registry,
    PrerequisiteType.APPLICATION: _check_application,
}


class PrerequisiteValidator:
    """Runs prerequisite checks and applies each item's missing-policy."""

    def __init__(self, context: StateContext):
        self.context = context

    def check(self, spec: PrerequisiteSpec, mode: Mode) -> PrerequisiteResult:
        """Run a single check. Never raises; errors count as a failed check."""
        handler = CHECK_HANDLERS[spec.type]
        try:
            passed, message = handler(self.context, spec)
        except Exception as e:
            logger.debug("Prerequisite '%s' raised", spec.name, exc_info=True)
            passed, message = False, f"Check failed: {e}"

        blocking = not passed and spec.on_missing.blocks(mode)
        if passed:
            logger.debug("Prerequisite '%s' passed: %s", spec.name, message)
        elif blocking:
            logger.error("Prerequisite '%s' failed (%s): %s", spec.name, spec.on_missing.value, message)
        else:
            logger.warning("Prerequisite '%s' not met: %s", spec.name, message)
        return PrerequisiteResult(
            name=spec.name,
            passed=passed,
            message=message,
            on_missing=spec.on_missing,
            blocking=blocking,
        )

    def validate(self, prerequisites: Iterable[PrerequisiteSpec], mode: Mode) -> PrerequisiteReport:
        """Check every prerequisite for ``mode``.

        All checks run even after a blocking failure so callers can report
        every problem at once. Use :meth:`PrerequisiteReport.raise_for_abort`
        to stop the run.
        """
        mode = Mode(mode)
        report = PrerequisiteReport(mode=mode)
        for spec in prerequisites:
            report.results.append(self.check(spec, mode))
        return report
