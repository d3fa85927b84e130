"""depsweep CLI - find declared npm dependencies a project never uses."""
import time
from pathlib import Path
from typing import List, Optional

import click
import typer
from rich.markup import escape
from rich.table import Table

from depsweep.analyzer.cache import UsageCache
from depsweep.analyzer.engine import AnalysisOptions, UsageEngine
from depsweep.analyzer.manifest import MANIFEST_NAME, find_manifest
from depsweep.analyzer.models import INDETERMINATE, PROTECTED, UNUSED, USED, AnalysisReport
from depsweep.config import __version__, get_config
from depsweep.errors import DepsweepError
from depsweep.utils.logger import configure_logging
from depsweep.utils.safe_console import SafeConsole

app = typer.Typer(
    name="depsweep",
    help="Find declared dependencies that a JavaScript/TypeScript project never uses",
    add_completion=False
)
# Use SafeConsole for Windows Unicode compatibility
console = SafeConsole()

# Cache management sub-command
cache_app = typer.Typer(name="cache", help="Manage the persistent usage cache")

VERDICTS = [USED, UNUSED, PROTECTED, INDETERMINATE]
VERDICT_STYLES = {
    USED: "green",
    UNUSED: "bold red",
    PROTECTED: "cyan",
    INDETERMINATE: "yellow",
}


def _render_report(report: AnalysisReport, show_all: bool, only: Optional[str] = None):
    title = f"{report.package_name} ({report.files_scanned} source files)"
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Dependency", style="cyan", no_wrap=True)
    table.add_column("Category")
    table.add_column("Verdict")
    table.add_column("Uses", justify="right")
    table.add_column("Evidence")

    shown = 0
    for verdict in report.verdicts:
        if only and verdict.verdict != only:
            continue
        if not only and not show_all and verdict.verdict == USED:
            continue
        style = VERDICT_STYLES.get(verdict.verdict, "white")
        evidence = ", ".join(verdict.evidence_kinds)
        if verdict.protection_reason:
            evidence = evidence or verdict.protection_reason
        table.add_row(
            escape(verdict.name),
            verdict.category,
            f"[{style}]{verdict.verdict}[/{style}]",
            str(verdict.usage_count),
            escape(evidence),
        )
        shown += 1

    if shown:
        console.print(table)

    counts = {v: len(report.names_with(v)) for v in (USED, UNUSED, PROTECTED, INDETERMINATE)}
    console.print(
        f"[bold yellow]Summary:[/bold yellow] {counts[USED]} used, "
        f"{counts[UNUSED]} unused, {counts[PROTECTED]} protected, "
        f"{counts[INDETERMINATE]} indeterminate"
    )

    if report.diagnostics:
        console.print(f"[dim]{len(report.diagnostics)} diagnostics:[/dim]")
        for diagnostic in report.diagnostics:
            location = diagnostic.file_path
            if diagnostic.line:
                location = f"{location}:{diagnostic.line}"
            console.print(f"  [yellow]⚠[/yellow] {escape(location)} [dim]{diagnostic.kind}[/dim] {escape(diagnostic.message)}")

    for member in report.members:
        console.print()
        _render_report(member, show_all, only)


@app.command()
def audit(
    project_path: str = typer.Argument(".", help="Project root (or package.json) to analyze"),
    aggressive: bool = typer.Option(False, "--aggressive", help="Judge protected dependencies on evidence alone"),
    safe: List[str] = typer.Option([], "--safe", "-s", help="Dependency name or glob to always keep (repeatable)"),
    ignore: List[str] = typer.Option([], "--ignore", "-i", help="gitignore-style pattern to skip (repeatable)"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", min=1, help="Worker pool size"),
    cache_dir: Optional[Path] = typer.Option(None, "--cache-dir", help="Persist the usage cache in this directory"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
    show_all: bool = typer.Option(False, "--all", "-a", help="Also list used dependencies"),
    only: Optional[str] = typer.Option(
        None, "--only",
        click_type=click.Choice(VERDICTS, case_sensitive=False),
        help="List only dependencies with this verdict"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Report which declared dependencies are used, unused, protected or indeterminate."""
    configure_logging("DEBUG" if verbose else get_config().log_level)

    target = Path(project_path).resolve()
    if not target.exists():
        console.print(f"[bold red]Error:[/bold red] Project path does not exist: {escape(str(target))}")
        raise typer.Exit(1)

    options = AnalysisOptions(
        aggressive=aggressive,
        safe_list=tuple(safe),
        ignore_patterns=tuple(ignore),
        max_workers=workers,
        cache_dir=cache_dir,
    )

    start_time = time.time()
    try:
        if target.is_dir() and not (target / MANIFEST_NAME).is_file():
            target = find_manifest(target)
        with UsageEngine(options) as engine:
            if json_output:
                report = engine.analyze(target)
            else:
                with console.status("[bold green]Resolving dependency usage..."):
                    report = engine.analyze(target)
    except DepsweepError as e:
        console.print(f"[bold red]Error:[/bold red] {escape(str(e))}")
        raise typer.Exit(1)
    elapsed = time.time() - start_time

    if json_output:
        typer.echo(report.to_json())
        return

    console.print(f"[bold blue]Analyzed:[/bold blue] {escape(report.manifest_path)} [dim]({elapsed:.2f}s)[/dim]\n")
    _render_report(report, show_all, only)


def _resolve_cache_dir(cache_dir: Optional[Path]) -> Path:
    cache_dir = cache_dir or get_config().cache_dir
    if cache_dir is None:
        console.print("[bold red]Error:[/bold red] No cache directory given and DEPSWEEP_CACHE_DIR is not set")
        raise typer.Exit(1)
    return Path(cache_dir)


# =========================================================================
# CACHE MANAGEMENT COMMANDS
# =========================================================================

@cache_app.command("clear")
def cache_clear(
    cache_dir: Optional[Path] = typer.Argument(None, help="Cache directory (defaults to DEPSWEEP_CACHE_DIR)"),
):
    """Clear the persistent usage cache."""
    cache_dir = _resolve_cache_dir(cache_dir)
    with UsageCache(cache_dir) as cache:
        cache.clear()
    console.print(f"[green]✓ Cache cleared: {escape(str(cache_dir))}[/green]")


@cache_app.command("stats")
def cache_stats(
    cache_dir: Optional[Path] = typer.Argument(None, help="Cache directory (defaults to DEPSWEEP_CACHE_DIR)"),
):
    """Display persistent usage cache statistics."""
    cache_dir = _resolve_cache_dir(cache_dir)
    with UsageCache(cache_dir) as cache:
        stats = cache.stats()

    table = Table(title=f"Cache Statistics: {cache_dir}", show_header=True, header_style="bold cyan")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", justify="right", style="green")
    table.add_row("Cached Files", str(stats['entries']))
    console.print(table)


# Register cache sub-command
app.add_typer(cache_app)


def _version_callback(value: bool):
    if value:
        typer.echo(f"depsweep {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(False, "--version", callback=_version_callback, is_eager=True,
                                 help="Show the version and exit"),
):
    """depsweep - dependency usage resolution for JavaScript/TypeScript projects."""
    pass


if __name__ == "__main__":
    app()
