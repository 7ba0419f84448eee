"""CLI entrypoint for repoforge.

The CLI operates on a "target repo" (the codebase being modified, where
repomix runs and where changes are written) and a documentation location
(a directory holding api_docs.md, or a documentation file). Both usually
live in the same project.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from . import __version__
from .chat_client import ChatClient
from .config import Config
from .errors import RepoforgeError
from .events import FanoutEventSink, LoggingEventSink
from .file_resolver import ResolvedChange, apply_changes, resolve_changes
from .orchestrator import OrchestrationRequest, OrchestrationResult, Orchestrator
from .repomix import RepomixRunner
from .response_parser import extract_change_set
from .run_log import RunLogWriter

# Initialize Typer app
app = typer.Typer(
    name="repoforge",
    help="Two-stage AI code modification: identify files, generate changes, apply them.",
    add_completion=False,
)

console = Console()


def setup_logging(verbose: bool = False, level_name: str = "INFO") -> None:
    """Configure logging with Rich handler.

    Args:
        verbose: If True, set DEBUG level.
        level_name: Level used otherwise (REPOFORGE_LOG_LEVEL).
    """
    level = logging.DEBUG if verbose else getattr(logging, level_name.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"repoforge version {__version__}")
        raise typer.Exit()


def load_repomix_overrides(path: Optional[Path]) -> dict:
    """Read repomix config overrides from a JSON file.

    Args:
        path: JSON file path, or None for no overrides.

    Returns:
        The overrides mapping.
    """
    if path is None:
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        console.print(f"[red]Error:[/red] Cannot read repomix config overrides {path}: {escape(str(e))}")
        raise typer.Exit(1)
    if not isinstance(data, dict):
        console.print(f"[red]Error:[/red] Repomix config overrides must be a JSON object: {path}")
        raise typer.Exit(1)
    return data


def resolve_repo(repo: Path) -> Path:
    """Resolve the target repository path, exiting if it does not exist."""
    repo_path = repo.resolve()
    if not repo_path.is_dir():
        console.print(f"[red]Error:[/red] Target repository does not exist: {repo_path}")
        raise typer.Exit(1)
    return repo_path


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
    """Two-stage AI code modification for a repository."""


@app.command()
def run(
    task: str = typer.Argument(..., help="Natural-language description of the change."),
    repo: Path = typer.Option(
        Path.cwd(),
        "--repo",
        "-r",
        help="Path to the target repository.",
    ),
    docs: Optional[Path] = typer.Option(
        None,
        "--docs",
        "-d",
        help="Documentation directory (containing api_docs.md) or file. Default: the repo.",
    ),
    model: Optional[str] = typer.Option(
        None,
        "--model",
        "-m",
        help="Model name (default from config, gpt-4).",
    ),
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        help="OpenAI-compatible API base URL.",
    ),
    api_key: Optional[str] = typer.Option(
        None,
        "--api-key",
        help="API key (default: REPOFORGE_API_KEY or OPENAI_API_KEY).",
    ),
    repomix_config: Optional[Path] = typer.Option(
        None,
        "--repomix-config",
        help="JSON file with repomix config overrides.",
    ),
    keep_artifacts: bool = typer.Option(
        False,
        "--keep-artifacts",
        help="Keep the per-run snapshot files under temp/<run id>/.",
    ),
    log_dir: Optional[Path] = typer.Option(
        None,
        "--log-dir",
        help="Write a JSON run log to this directory.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Run the full pipeline on a target repository.

    Examples:
        repoforge run "add a greeting function" --repo ./app --docs ./docs

        repoforge run "fix the login bug" --model gpt-4o --log-dir logs/runs
    """
    repo_path = resolve_repo(repo)
    docs_path = (docs or repo_path).resolve()
    overrides = load_repomix_overrides(repomix_config)

    # Load configuration
    config = Config.from_env(repo_path)
    setup_logging(verbose, config.log_level)
    if api_key:
        config.api_key = api_key
    if keep_artifacts:
        config.keep_artifacts = True

    errors = config.validate()
    if errors:
        console.print("[red]Configuration errors:[/red]")
        for error in errors:
            console.print(f"  - {error}")
        raise typer.Exit(1)

    sinks = [LoggingEventSink()]
    run_log = RunLogWriter(log_dir) if log_dir else None
    if run_log:
        sinks.append(run_log)

    console.print("\n[bold]Starting code modification[/bold]")
    console.print(f"[dim]Target repo:[/dim] {repo_path}")
    console.print(f"[dim]Documentation:[/dim] {docs_path}")
    console.print(f"[dim]Model:[/dim] {model or config.model.name}")
    console.print(f"[dim]Task:[/dim] {escape(task)}")
    console.print()

    orchestrator = Orchestrator(config, event_sink=FanoutEventSink(sinks))
    request = OrchestrationRequest(
        repo_root=repo_path,
        docs_root=docs_path,
        task=task,
        api_key=config.api_key or "",
        base_url=base_url,
        model=model,
        repomix_overrides=overrides,
    )

    try:
        result = orchestrator.run(request)
    except RepoforgeError as e:
        console.print(f"\n[red]Error ({e.kind}):[/red] {escape(str(e))}")
        if run_log and run_log.log_file:
            console.print(f"[dim]Run log:[/dim] {run_log.log_file}")
        raise typer.Exit(1)

    _display_run_result(result, repo_path)
    if run_log and run_log.log_file:
        console.print(f"[dim]Run log:[/dim] {run_log.log_file}")

    if not result.success:
        raise typer.Exit(1)


@app.command()
def pack(
    output: Path = typer.Option(
        ...,
        "--output",
        "-o",
        help="Where to write the snapshot.",
    ),
    repo: Path = typer.Option(
        Path.cwd(),
        "--repo",
        "-r",
        help="Path to the repository to pack.",
    ),
    include: Optional[List[str]] = typer.Option(
        None,
        "--include",
        "-i",
        help="File to include uncompressed (repeatable). Without it a compressed snapshot is produced.",
    ),
    repomix_config: Optional[Path] = typer.Option(
        None,
        "--repomix-config",
        help="JSON file with repomix config overrides.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Produce a compressed or targeted repository snapshot with repomix."""
    repo_path = resolve_repo(repo)
    overrides = load_repomix_overrides(repomix_config)
    config = Config.from_env(repo_path)
    setup_logging(verbose, config.log_level)
    runner = RepomixRunner(timeout=config.repomix_timeout)
    overrides = {**config.repomix_overrides, **overrides}

    try:
        if include:
            snapshot = runner.generate_targeted(repo_path, list(include), output, overrides)
            kind = "Targeted"
        else:
            snapshot = runner.generate_compressed(repo_path, output, overrides)
            kind = "Compressed"
    except RepoforgeError as e:
        console.print(f"[red]Error ({e.kind}):[/red] {escape(str(e))}")
        raise typer.Exit(1)

    console.print(f"[green]{kind} snapshot written:[/green] {output} ({len(snapshot):,} chars)")


@app.command()
def apply(
    response_file: Path = typer.Argument(..., help="File holding a saved model response."),
    repo: Path = typer.Option(
        Path.cwd(),
        "--repo",
        "-r",
        help="Path to the target repository.",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Show where each file would be written without writing.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        help="Enable verbose output.",
    ),
) -> None:
    """Parse a saved change document and apply it to a repository."""
    repo_path = resolve_repo(repo)
    config = Config.from_env(repo_path)
    setup_logging(verbose, config.log_level)

    try:
        text = response_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        console.print(f"[red]Error:[/red] Cannot read {response_file}: {escape(str(e))}")
        raise typer.Exit(1)

    try:
        change_set = extract_change_set(text)
        if not change_set:
            console.print("[yellow]No code changes to apply.[/yellow]")
            raise typer.Exit(1)
        if dry_run:
            changes = resolve_changes(change_set, repo_path, config.ignore_dirs)
        else:
            changes = apply_changes(change_set, repo_path, config.ignore_dirs)
    except RepoforgeError as e:
        console.print(f"[red]Error ({e.kind}):[/red] {escape(str(e))}")
        raise typer.Exit(1)

    title = "Planned changes (dry run)" if dry_run else "Applied changes"
    _display_changes(changes, repo_path, title)


@app.command()
def prompt(
    text: str = typer.Argument(..., help="Prompt to send."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name."),
    base_url: Optional[str] = typer.Option(None, "--base-url", help="API base URL."),
    api_key: Optional[str] = typer.Option(None, "--api-key", help="API key."),
) -> None:
    """Send a single prompt to the model and print the reply."""
    config = Config.from_env(Path.cwd())
    key = api_key or config.api_key
    if not key:
        console.print("[red]Error:[/red] An API key is required (--api-key or REPOFORGE_API_KEY).")
        raise typer.Exit(1)

    client = ChatClient(
        api_key=key,
        base_url=base_url or config.model.base_url,
        model=model or config.model.name,
        temperature=config.model.temperature,
        max_tokens=config.model.max_tokens,
        timeout=config.model.timeout,
    )
    try:
        reply = client.complete(text)
    except RepoforgeError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    console.print(reply, markup=False, highlight=False)


def _display_run_result(result: OrchestrationResult, repo_root: Path) -> None:
    """Display the outcome of a pipeline run."""
    if result.success:
        console.print(f"\n[green]{result.message}[/green]")
    else:
        console.print(f"\n[yellow]{result.message}[/yellow]")
    console.print(f"[dim]Run id:[/dim] {result.correlation_id}")

    if result.changes:
        _display_changes(result.changes, repo_root, "Files written")


def _display_changes(
    changes: list[ResolvedChange], repo_root: Optional[Path], title: str
) -> None:
    """Display resolved changes as a table."""
    table = Table(title=title)
    table.add_column("Model path", style="cyan")
    table.add_column("Written to")
    table.add_column("Resolution", style="dim")

    for change in changes:
        target = change.target
        if repo_root is not None:
            try:
                target = target.relative_to(repo_root)
            except ValueError:
                pass
        table.add_row(change.logical_path, str(target), change.strategy.value)

    console.print(table)
