"""Command line interface for sysstate."""

from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .core.accessors import JsonRegistryStore
from .core.config import Config
from .core.context import StateContext
from .core.errors import StateError
from .core.logging import setup_logging
from .core.manager import FAILED, SKIPPED, RunReport, StateManager
from .core.prerequisites import PrerequisiteReport
from .core.scripts import ScriptRunner
from .core.template import Mode, Template, load_template

console = Console()

STATUS_STYLES = {FAILED: "red", SKIPPED: "yellow"}

template_argument = click.argument(
    "template_path",
    metavar="TEMPLATE",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
overlay_option = click.option(
    "--overlay",
    "-o",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Machine-specific template merged on top of TEMPLATE",
)
state_dir_option = click.option(
    "--state-dir",
    "-s",
    type=click.Path(file_okay=False, path_type=Path),
    help="State files directory (defaults to state_dir from the config)",
)
passphrase_option = click.option(
    "--passphrase",
    envvar="SYSSTATE_PASSPHRASE",
    help="Passphrase for encrypted entries (prompted for when needed and not given)",
)
skip_prereq_option = click.option(
    "--skip-prerequisites", is_flag=True, help="Do not run the template's prerequisite checks"
)


@click.group()
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Configuration file (defaults to ~/.config/sysstate/config.yaml)",
)
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--log-file", help="Also write a debug log to this file")
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[Path], debug: bool, log_file: Optional[str]) -> None:
    """System state backup and restore tool.

    Captures files, registry keys, and installed application lists described
    by a template into a state files directory, and replays them on restore.

    Main commands:

      backup     Capture the state described by a template
      restore    Restore captured state and replay application installs
      uninstall  Replay application uninstall scripts
      validate   Resolve a template and run its prerequisite checks
      show       Show the resolved template

    Run 'sysstate COMMAND --help' for more information on a specific command.
    """
    try:
        config = Config(config_file)
    except ValueError as e:
        console.print(f"[red]Error: {escape(str(e))}")
        raise click.Abort()
    setup_logging(debug=debug, log_file=log_file or config.log_file)
    ctx.obj = config


def _needs_passphrase(template: Template) -> bool:
    return any(f.encrypt for f in template.files) or any(r.encrypt for r in template.registry)


def _build_context(
    config: Config,
    template: Template,
    state_dir: Optional[Path],
    passphrase: Optional[str],
    confirm: bool,
    prompt: bool = True,
) -> StateContext:
    if prompt and not passphrase and _needs_passphrase(template):
        passphrase = click.prompt(
            "Passphrase for encrypted state",
            hide_input=True,
            confirmation_prompt=confirm,
        )
    return StateContext(
        state_dir=state_dir or config.state_dir,
        passphrase=passphrase,
        registry=JsonRegistryStore(config.registry_file),
        runner=ScriptRunner(
            shell=config.shell,
            timeout=config.script_timeout,
            allow_external=config.allow_external_scripts,
        ),
    )


def _print_prerequisites(report: Optional[PrerequisiteReport]) -> None:
    if report is None or not report.results:
        return
    table = Table(title="Prerequisites")
    table.add_column("Name", style="cyan")
    table.add_column("Result")
    table.add_column("Policy", style="magenta")
    table.add_column("Message")
    for result in report.results:
        if result.passed:
            outcome = "[green]passed"
        elif result.blocking:
            outcome = "[red]failed"
        else:
            outcome = "[yellow]warning"
        table.add_row(escape(result.name), outcome, result.on_missing.value, escape(result.message))
    console.print(table)


def _print_report(report: RunReport) -> None:
    _print_prerequisites(report.prerequisites)
    if not report.entries:
        console.print("[yellow]No entries were processed")
        return
    table = Table(title=f"{report.mode.value.capitalize()} of {report.template}")
    table.add_column("Kind", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Status")
    table.add_column("Details")
    for entry in report.entries:
        style = STATUS_STYLES.get(entry.status, "green")
        table.add_row(entry.kind, escape(entry.name), f"[{style}]{entry.status}", escape(entry.message))
    console.print(table)


def _finish(report: RunReport) -> None:
    _print_report(report)
    if not report.success:
        console.print(f"[red]Error: {len(report.failures)} entries failed")
        raise click.Abort()


@cli.command()
@template_argument
@overlay_option
@state_dir_option
@passphrase_option
@skip_prereq_option
@click.pass_obj
def backup(
    config: Config,
    template_path: Path,
    overlay: Optional[Path],
    state_dir: Optional[Path],
    passphrase: Optional[str],
    skip_prerequisites: bool,
) -> None:
    """Capture the state described by a template.

    TEMPLATE is a YAML or JSON template file.

    Examples:

      # Back up keyboard settings into the default state directory
      sysstate backup templates/keyboard.yaml

      # Use a machine overlay and a specific state directory
      sysstate backup templates/display.yaml -o overlays/gaming-rig.yaml -s ./state
    """
    try:
        template = load_template(template_path, overlay)
        context = _build_context(config, template, state_dir, passphrase, confirm=True)
        report = StateManager(context, console).backup(template, skip_prerequisites)
    except (StateError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}")
        raise click.Abort()
    _finish(report)


@cli.command()
@template_argument
@overlay_option
@state_dir_option
@passphrase_option
@skip_prereq_option
@click.pass_obj
def restore(
    config: Config,
    template_path: Path,
    overlay: Optional[Path],
    state_dir: Optional[Path],
    passphrase: Optional[str],
    skip_prerequisites: bool,
) -> None:
    """Restore captured state and replay application installs.

    TEMPLATE is the template the state was captured with.

    Examples:

      sysstate restore templates/keyboard.yaml -s ./state
    """
    try:
        template = load_template(template_path, overlay)
        context = _build_context(config, template, state_dir, passphrase, confirm=False)
        report = StateManager(context, console).restore(template, skip_prerequisites)
    except (StateError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}")
        raise click.Abort()
    _finish(report)


@cli.command()
@template_argument
@overlay_option
@state_dir_option
@click.pass_obj
def uninstall(
    config: Config, template_path: Path, overlay: Optional[Path], state_dir: Optional[Path]
) -> None:
    """Replay the uninstall scripts of a template's applications.

    Examples:

      sysstate uninstall templates/applications.yaml -s ./state
    """
    try:
        template = load_template(template_path, overlay)
        context = _build_context(config, template, state_dir, None, confirm=False, prompt=False)
        report = StateManager(context, console).uninstall(template)
    except (StateError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}")
        raise click.Abort()
    _finish(report)


@cli.command()
@template_argument
@overlay_option
@click.option(
    "--mode",
    "-m",
    type=click.Choice([m.value for m in Mode]),
    default=Mode.BACKUP.value,
    show_default=True,
    help="Which run the prerequisite policies are applied for",
)
@click.pass_obj
def validate(config: Config, template_path: Path, overlay: Optional[Path], mode: str) -> None:
    """Resolve a template and run its prerequisite checks.

    Exits with an error when the template is invalid or a prerequisite
    blocks the chosen mode.
    """
    try:
        template = load_template(template_path, overlay)
        context = StateContext(
            state_dir=config.state_dir,
            registry=JsonRegistryStore(config.registry_file),
            runner=ScriptRunner(
                shell=config.shell,
                timeout=config.script_timeout,
                allow_external=config.allow_external_scripts,
            ),
        )
        report = StateManager(context, console).check_prerequisites(template, Mode(mode))
    except (StateError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}")
        raise click.Abort()

    console.print(f"[green]Template '{escape(template.name)}' is valid")
    _print_prerequisites(report)
    if report.aborted:
        console.print(f"[red]Error: prerequisites block {mode}")
        raise click.Abort()


@cli.command()
@template_argument
@overlay_option
def show(template_path: Path, overlay: Optional[Path]) -> None:
    """Show the resolved template."""
    try:
        template = load_template(template_path, overlay)
    except (StateError, ValueError) as e:
        console.print(f"[red]Error: {escape(str(e))}")
        raise click.Abort()

    meta = template.metadata
    console.print(f"[bold cyan]{escape(meta.name)}[/] {escape(meta.version)}")
    if meta.description:
        console.print(escape(meta.description))

    table = Table(title="Entries")
    table.add_column("Kind", style="cyan")
    table.add_column("Name", style="green")
    table.add_column("Source")
    table.add_column("State Path", style="magenta")
    table.add_column("Encrypted")
    for f in template.files:
        table.add_row(
            f"file:{f.type.value}", escape(f.name), escape(f.path or ""), f.dynamic_state_path, str(f.encrypt)
        )
    for r in template.registry:
        source = f"{r.path} ({r.value_name})" if r.value_name else r.path
        table.add_row("registry", escape(r.name), escape(source), r.dynamic_state_path, str(r.encrypt))
    for a in template.applications:
        table.add_row("application", escape(a.name), a.type, a.dynamic_state_path, "False")
    console.print(table)

    for prereq in template.prerequisites:
        console.print(f"  - prerequisite {escape(prereq.name)} ({prereq.type.value}, {prereq.on_missing.value})")


def main() -> None:
    """Entry point for the sysstate CLI."""
    cli()


if __name__ == "__main__":
    main()
