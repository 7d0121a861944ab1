"""Backup and restore runs over a resolved template.

This module drives one run: it validates prerequisites, then hands every
declared entry, in declaration order, to the engine registered for its
(entity, mode) pair. Per-entry problems are recorded and the run continues;
only encryption errors and blocking prerequisite failures stop it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from rich.console import Console
from rich.markup import escape

from .application_state import ApplicationStateEngine
from .context import StateContext
from .errors import EncryptionError, PrerequisiteFailure, StateError
from .file_state import FileStateEngine
from .prerequisites import PrerequisiteReport, PrerequisiteValidator
from .registry_state import RegistryStateEngine
from .template import Mode, StageStep, Template

logger = logging.getLogger(__name__)

CAPTURED = "captured"
RESTORED = "restored"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class EntryResult:
    kind: str
    name: str
    status: str
    message: str = ""


@dataclass
class RunReport:
    """Everything that happened during one run.

    Attributes:
        template (str): Name of the template that was run.
        mode (Mode): ``backup`` or ``restore``.
        prerequisites (Optional[PrerequisiteReport]): Prerequisite results, if checked.
        entries (List[EntryResult]): One result per processed entry or stage step.
    """

    template: str
    mode: Mode
    prerequisites: Optional[PrerequisiteReport] = None
    entries: List[EntryResult] = field(default_factory=list)

    @property
    def failures(self) -> List[EntryResult]:
        return [e for e in self.entries if e.status == FAILED]

    @property
    def success(self) -> bool:
        return not self.failures

    def count(self, status: str) -> int:
        return sum(1 for e in self.entries if e.status == status)


Handler = Callable[[Any], EntryResult]


class StateManager:
    """Runs backups and restores of templates against a state files directory.

    Attributes:
        context (StateContext): Shared run context (state dir, passphrase, accessors).
        console (Console): Rich console for progress output.
    """

    def __init__(self, context: StateContext, console: Optional[Console] = None):
        self.context = context
        self.console = console or Console()
        self.files = FileStateEngine(context)
        self.registry = RegistryStateEngine(context)
        self.applications = ApplicationStateEngine(context)
        self.validator = PrerequisiteValidator(context)
        self._handlers: Dict[Tuple[str, Mode], Handler] = {
            ("file", Mode.BACKUP): self._backup_file,
            ("file", Mode.RESTORE): self._restore_file,
            ("registry", Mode.BACKUP): self._backup_registry,
            ("registry", Mode.RESTORE): self._restore_registry,
            ("application", Mode.BACKUP): self._backup_application,
            ("application", Mode.RESTORE): self._restore_application,
        }

    def check_prerequisites(self, template: Template, mode: Mode) -> PrerequisiteReport:
        """Validate a template's prerequisites without running anything else."""
        return self.validator.validate(template.prerequisites, mode)

    def backup(self, template: Template, skip_prerequisites: bool = False) -> RunReport:
        """Capture every backup entry of a template.

        Raises:
            PrerequisiteFailure: If a ``fail_backup`` prerequisite fails.
            EncryptionError: If an encrypted entry cannot be protected.
        """
        return self._run(template, Mode.BACKUP, skip_prerequisites)

    def restore(self, template: Template, skip_prerequisites: bool = False) -> RunReport:
        """Restore every restore entry of a template, with its stage steps.

        Raises:
            PrerequisiteFailure: If a ``fail_restore`` prerequisite fails.
            DecryptionError: If an encrypted artifact cannot be decrypted.
        """
        return self._run(template, Mode.RESTORE, skip_prerequisites)

    def uninstall(self, template: Template) -> RunReport:
        """Replay the uninstall script of every application entry."""
        report = RunReport(template=template.name, mode=Mode.RESTORE)
        for app in template.applications:
            report.entries.append(
                self._guard(
                    "application",
                    app.name,
                    lambda a=app: EntryResult(
                        "application",
                        a.name,
                        RESTORED if self.applications.uninstall(a) else SKIPPED,
                        "uninstall",
                    ),
                )
            )
        return report

    def _run(self, template: Template, mode: Mode, skip_prerequisites: bool) -> RunReport:
        verb = "Backing up" if mode is Mode.BACKUP else "Restoring"
        self.console.print(f"[bold]{verb} {escape(template.name)}")
        self.console.print(f"[bold]State directory: {self.context.state_dir}")
        report = RunReport(template=template.name, mode=mode)

        if not skip_prerequisites and template.prerequisites:
            report.prerequisites = self.check_prerequisites(template, mode)
            try:
                report.prerequisites.raise_for_abort()
            except PrerequisiteFailure:
                self.console.print(f"[red]Prerequisites failed, {mode.value} aborted")
                raise

        if mode is Mode.RESTORE:
            self._run_stage(template.prereqs, "prereqs", report)
            self._run_stage(template.pre_update, "pre_update", report)

        entries: Iterable[Tuple[str, Any]] = (
            [("file", e) for e in template.files]
            + [("registry", e) for e in template.registry]
            + [("application", e) for e in template.applications]
        )
        for kind, entry in entries:
            action = getattr(entry, "action", None)
            if action is not None and not action.applies_to(mode):
                logger.debug("Skipping %s '%s' (action=%s)", kind, entry.name, action.value)
                continue
            handler = self._handlers[(kind, mode)]
            report.entries.append(self._guard(kind, entry.name, lambda e=entry: handler(e)))

        if mode is Mode.RESTORE:
            self._run_stage(template.post_update, "post_update", report)
            self._run_stage(template.cleanup, "cleanup", report)

        self.console.print(
            f"[bold]{verb} {escape(template.name)} finished: "
            f"{report.count(CAPTURED) + report.count(RESTORED)} done, "
            f"{report.count(SKIPPED)} skipped, {report.count(FAILED)} failed"
        )
        return report

    def _guard(self, kind: str, name: str, call: Callable[[], EntryResult]) -> EntryResult:
        try:
            return call()
        except EncryptionError:
            raise
        except (StateError, OSError, ValueError, KeyError, TypeError) as e:
            logger.error("%s '%s' failed: %s", kind.capitalize(), name, e)
            self.console.print(f"[red]Error processing {kind} '{escape(name)}': {escape(str(e))}")
            return EntryResult(kind, name, FAILED, str(e))

    def _run_stage(self, steps: Iterable[StageStep], stage: str, report: RunReport) -> None:
        for step in steps:

            def call(s: StageStep = step) -> EntryResult:
                self.context.runner.run(s.script, parameters=s.parameters)
                return EntryResult("stage", s.name, RESTORED, stage)

            report.entries.append(self._guard("stage", step.name, call))

    def _backup_file(self, entry: Any) -> EntryResult:
        state = self.files.capture(entry)
        if state is None:
            return EntryResult("file", entry.name, SKIPPED, f"source not found: {entry.path}")
        self.console.print(f"[green]Backed up: {escape(entry.name)}")
        return EntryResult("file", entry.name, CAPTURED, f"{state.checksum_type} {state.checksum}")

    def _restore_file(self, entry: Any) -> EntryResult:
        target = self.files.restore(entry)
        if target is None:
            return EntryResult("file", entry.name, SKIPPED, "no saved state")
        self.console.print(f"[green]Restored: {escape(entry.name)}")
        return EntryResult("file", entry.name, RESTORED, str(target))

    def _backup_registry(self, entry: Any) -> EntryResult:
        dump = self.registry.capture(entry)
        if dump is None:
            return EntryResult("registry", entry.name, SKIPPED, f"key not found: {entry.path}")
        self.console.print(f"[green]Backed up: {escape(entry.name)}")
        return EntryResult("registry", entry.name, CAPTURED, entry.dynamic_state_path)

    def _restore_registry(self, entry: Any) -> EntryResult:
        if not self.registry.restore(entry):
            return EntryResult("registry", entry.name, SKIPPED, "no saved state")
        self.console.print(f"[green]Restored: {escape(entry.name)}")
        return EntryResult("registry", entry.name, RESTORED, entry.path)

    def _backup_application(self, entry: Any) -> EntryResult:
        applications = self.applications.discover(entry)
        if applications is None:
            return EntryResult("application", entry.name, FAILED, "discovery failed")
        self.console.print(f"[green]Discovered {len(applications)} applications: {escape(entry.name)}")
        return EntryResult("application", entry.name, CAPTURED, f"{len(applications)} applications")

    def _restore_application(self, entry: Any) -> EntryResult:
        if not self.applications.install(entry):
            return EntryResult("application", entry.name, SKIPPED, "nothing to install")
        self.console.print(f"[green]Replayed install: {escape(entry.name)}")
        return EntryResult("application", entry.name, RESTORED, "install")
