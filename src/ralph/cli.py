"""CLI entrypoint for ralph.

``ralph run`` works through the ready items of the current feature, one
fresh worker per item. Exit codes: 0 when a unit of work completed (more
may remain), 100 when ``--once`` found nothing to do, 1 on failure, or the
exit code of a hook that failed under the block policy.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from . import __version__
from .cascade import CompletionCascade
from .config import RalphConfig
from .context import ConfigurationError, RunContext, RunMode, resolve_run_context, use_feature
from .hooks import HookFailed, HookRunner
from .loop import LoopDriver
from .loop_logger import LoopLogger
from .selector import ReadinessSelector
from .step import StepExecutor
from .store import STATUS_CLOSED, STATUS_IN_PROGRESS, STATUS_OPEN, BeadsStore, IssueStore, StoreError
from .stream import StreamFilter
from .templates import MissingRequiredVariable, TemplateError, TemplateRenderer, check_templates
from .worker import WorkerRunner

# Initialize Typer app
app = typer.Typer(
    name="ralph",
    help="Work through a feature's ready issues with a fresh-context worker per issue.",
    add_completion=False,
)

console = Console()

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, level: str = "INFO") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level; otherwise ``level``.
        level: Level name used when not verbose.
    """
    log_level = logging.DEBUG if verbose else getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def notify(message: str) -> None:
    """Print user-facing progress text verbatim."""
    console.print(message, markup=False, highlight=False)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"ralph version {__version__}")
        raise typer.Exit()


def load_config(ralph_dir: Optional[Path], verbose: bool) -> RalphConfig:
    """Load configuration, set up logging and exit 1 on invalid settings."""
    config = RalphConfig.from_env(ralph_dir)
    setup_logging(verbose or config.debug, config.log_level)

    errors = config.validate()
    if errors:
        for error in errors:
            console.print(f"[red]Error:[/red] {error}")
        raise typer.Exit(1)
    return config


def resolve_context(
    config: RalphConfig,
    feature: Optional[str],
    spec: Optional[str],
    mode: RunMode = RunMode.LOOP,
) -> RunContext:
    try:
        return resolve_run_context(
            config.ralph_dir,
            spec=spec,
            feature=feature,
            mode=mode,
            specs_dir=config.specs_dir,
        )
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)


def create_store(config: RalphConfig) -> IssueStore:
    return BeadsStore(command=config.store.command)


def create_worker(config: RalphConfig) -> WorkerRunner:
    return WorkerRunner(
        command=config.worker.command,
        timeout=config.worker.timeout,
        stream_filter=StreamFilter(config.output),
        display=notify,
    )


def create_renderer(config: RalphConfig) -> TemplateRenderer:
    return TemplateRenderer.from_dirs(
        config.ralph_dir,
        template_dir=config.template_dir,
        metadata_dir=config.metadata_dir,
    )


def _run(
    feature: Optional[str],
    once: bool,
    spec: Optional[str],
    ralph_dir: Optional[Path],
    verbose: bool,
) -> None:
    config = load_config(ralph_dir, verbose)
    mode = RunMode.ONCE if once else RunMode.LOOP
    ctx = resolve_context(config, feature, spec, mode)

    store = create_store(config)
    if config.store.sync:
        try:
            store.sync()
        except StoreError as e:
            logger.warning(f"Issue store sync failed, continuing with local state: {e}")

    selector = ReadinessSelector(store, strict=config.store.strict)
    cascade = CompletionCascade(store, notify, specs_readme=config.pinned_context)
    executor = StepExecutor(
        context=ctx,
        store=store,
        selector=selector,
        renderer=create_renderer(config),
        worker=create_worker(config),
        cascade=cascade,
        notify=notify,
        pinned_context=config.pinned_context,
    )
    hooks = HookRunner(config.hooks, policy=config.hooks_on_failure)
    run_logger = LoopLogger(ctx.logs_dir, ctx.label, mode.value)
    driver = LoopDriver(ctx, executor, hooks, selector, notify, run_logger)

    if mode is RunMode.LOOP:
        console.print(f"[bold]Ralph loop starting[/bold] (feature: {ctx.label}, hooks-on-failure: {hooks.policy.value})")

    try:
        result = driver.run()
    except HookFailed as e:
        console.print(f"[red]Error:[/red] {e}")
        exit_code = e.exit_code if e.exit_code > 0 else 1
        run_logger.finalize("hook_failed", exit_code)
        raise typer.Exit(exit_code)
    except TemplateError as e:
        console.print(f"[red]Error:[/red] {e}")
        run_logger.log_error(str(e))
        run_logger.finalize("configuration_error", 1)
        raise typer.Exit(1)

    run_logger.finalize(result.outcome.value, result.exit_code)
    if mode is RunMode.LOOP:
        run_logger.print_summary(console)
    raise typer.Exit(result.exit_code)


@app.callback()
def main(
    version: bool = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Ralph work loop."""
    pass


@app.command()
def run(
    feature: Optional[str] = typer.Argument(
        None,
        help="Feature label (defaults to the current feature).",
    ),
    once: bool = typer.Option(
        False,
        "--once",
        "-1",
        help="Run a single step. Exits 100 when there is no ready work.",
    ),
    spec: Optional[str] = typer.Option(
        None,
        "--spec",
        "-s",
        help="Work on this feature; its workflow state must exist.",
    ),
    ralph_dir: Optional[Path] = typer.Option(
        None,
        "--ralph-dir",
        help="Ralph state directory (default: $RALPH_DIR or .wrapix/ralph).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Work through ready issues until done, paused or failed."""
    _run(feature, once, spec, ralph_dir, verbose)


@app.command()
def step(
    feature: Optional[str] = typer.Argument(None, help="Feature label."),
    spec: Optional[str] = typer.Option(None, "--spec", "-s", help="Work on this feature."),
    ralph_dir: Optional[Path] = typer.Option(None, "--ralph-dir", help="Ralph state directory."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose output."),
) -> None:
    """Run a single step (deprecated: use 'ralph run --once')."""
    console.print("[yellow]Warning:[/yellow] 'ralph step' is deprecated, use 'ralph run --once'")
    _run(feature, True, spec, ralph_dir, verbose)


@app.command()
def status(
    spec: Optional[str] = typer.Option(None, "--spec", "-s", help="Feature to report on."),
    ralph_dir: Optional[Path] = typer.Option(None, "--ralph-dir", help="Ralph state directory."),
    verbose: bool = typer.Option(False, "--verbose", help="Enable verbose output."),
) -> None:
    """Show progress for the current feature."""
    config = load_config(ralph_dir, verbose)
    ctx = resolve_context(config, None, spec)
    store = create_store(config)

    try:
        items = [item for item in store.list(label=ctx.bead_label) if not item.is_epic]
    except StoreError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    counts = {STATUS_OPEN: 0, STATUS_IN_PROGRESS: 0, STATUS_CLOSED: 0}
    for item in items:
        counts[item.status] = counts.get(item.status, 0) + 1
    awaiting = sum(1 for item in items if item.awaiting_input)
    total = len(items)
    percent = (counts[STATUS_CLOSED] * 100 // total) if total else 0

    console.print(f"\n[bold]Ralph Status: {ctx.label}[/bold]")
    if ctx.molecule_id:
        console.print(f"Molecule: {ctx.molecule_id}")
    console.print(f"Spec: {ctx.spec_path}\n")

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Status")
    table.add_column("Count", justify="right")
    table.add_row("Open", str(counts[STATUS_OPEN]))
    table.add_row("In progress", str(counts[STATUS_IN_PROGRESS]))
    table.add_row("Closed", str(counts[STATUS_CLOSED]))
    if awaiting:
        table.add_row("[yellow]Awaiting input[/yellow]", str(awaiting))
    console.print(table)
    console.print(f"\nProgress: {percent}% ({counts[STATUS_CLOSED]}/{total})")

    next_item = ReadinessSelector(store).next_ready(ctx.bead_label)
    if next_item:
        console.print(f"Next: {next_item.id} {next_item.title}", markup=False, highlight=False)
    else:
        console.print("Next: none ready")


@app.command()
def use(
    name: str = typer.Argument(..., help="Feature label to make current."),
    ralph_dir: Optional[Path] = typer.Option(None, "--ralph-dir", help="Ralph state directory."),
) -> None:
    """Switch the current feature."""
    config = load_config(ralph_dir, False)
    try:
        use_feature(config.ralph_dir, name, config.specs_dir)
    except ConfigurationError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"Active workflow: {name.strip()}")


@app.command()
def render(
    name: str = typer.Argument(..., help="Template name (e.g. 'run')."),
    var: Optional[list[str]] = typer.Option(
        None,
        "--var",
        help="Variable as KEY=VALUE. Repeatable.",
    ),
    ralph_dir: Optional[Path] = typer.Option(None, "--ralph-dir", help="Ralph state directory."),
) -> None:
    """Print a rendered template."""
    config = load_config(ralph_dir, False)

    variables = {}
    for entry in var or []:
        key, sep, value = entry.partition("=")
        if not sep or not key:
            console.print(f"[red]Error:[/red] Invalid --var '{entry}', expected KEY=VALUE")
            raise typer.Exit(1)
        variables[key] = value

    try:
        content = create_renderer(config).render(name, variables)
    except MissingRequiredVariable as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print("Supply them with --var KEY=VALUE or as environment variables.")
        raise typer.Exit(1)
    except TemplateError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    typer.echo(content)


@app.command()
def check(
    ralph_dir: Optional[Path] = typer.Option(None, "--ralph-dir", help="Ralph state directory."),
) -> None:
    """Validate templates, partials and variable metadata."""
    config = load_config(ralph_dir, False)
    results = check_templates(create_renderer(config))

    if not results:
        console.print("[yellow]No templates found.[/yellow]")
        raise typer.Exit(1)

    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Template", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    for result in results:
        status_text = "[green]OK[/green]" if result.ok else "[red]FAIL[/red]"
        table.add_row(result.name, status_text, result.error or "")
    console.print(table)

    failed = [r for r in results if not r.ok]
    if failed:
        console.print(f"\n[red]{len(failed)} template(s) failed validation[/red]")
        raise typer.Exit(1)
    console.print(f"\n[green]All {len(results)} template(s) valid[/green]")
