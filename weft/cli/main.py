"""weft CLI — replay recorded sessions and inspect what they produced.

    weft replay session.json
    weft context session.json "oauth login"
    weft relevant session.json TASK_ID --max-size 2000
    weft export session.json
"""

from __future__ import annotations

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from weft import __version__
from weft.adaptation.engine import CycleResult
from weft.cli.context import SessionFile, run_async
from weft.config import settings
from weft.exceptions import WeftError
from weft.logging import configure_logging
from weft.session import WeftSession
from weft.types import ContextLayer

console = Console()

app = typer.Typer(
    name="weft",
    help="weft -- adaptive planning and context kernel for long-running agents.",
    no_args_is_help=True,
)


@app.callback()
def main(
    log_level: str = typer.Option(settings.log_level, "--log-level", help="Logging level"),
) -> None:
    configure_logging(log_level, console=Console(stderr=True))


async def _replay(path: Path) -> tuple[WeftSession, list[CycleResult | WeftError]]:
    recorded = SessionFile.load(path)
    session = WeftSession(recorded.initial_plan())
    results: list[CycleResult | WeftError] = []
    async with session:
        for batch in recorded.batches:
            try:
                result = await session.submit(batch)
            except WeftError as e:
                results.append(e)
                continue
            if result is not None:
                results.append(result)
    return session, results


def _load(path: Path) -> tuple[WeftSession, list[CycleResult | WeftError]]:
    try:
        return run_async(_replay(path))
    except (OSError, ValueError) as e:
        console.print(f"[red]Cannot load {path}: {e}[/red]")
        raise typer.Exit(1) from e


@app.command("replay")
def replay(
    path: Path = typer.Argument(help="Recorded session (JSON)"),
):
    """Replay a recorded session and show every adaptation cycle."""
    session, results = _load(path)

    table = Table(title=f"Adaptation cycles — {path.name}")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Status", style="cyan")
    table.add_column("Version", justify="right")
    table.add_column("Strategy", style="magenta")
    table.add_column("Triggers", style="white")
    table.add_column("Repairs", justify="right")

    for i, result in enumerate(results, 1):
        if isinstance(result, WeftError):
            table.add_row(str(i), "[red]failed[/red]", "", "", str(result)[:80], "")
            continue
        kinds = ", ".join(sorted({t.get("kind", "?") for t in result.triggers}))
        strategy = result.strategy + (" (escalated)" if result.escalated else "")
        table.add_row(
            str(i),
            result.status,
            str(result.plan_version),
            strategy,
            kinds,
            str(result.repair_iterations),
        )

    console.print(table)
    console.print(
        f"Final plan [bold]{session.plan.id}[/bold] v{session.plan.version}: "
        f"{len(session.plan.tasks)} tasks, {len(session.plan.dependencies)} edges; "
        f"context v{session.context.version}, {session.context.total_size} chars"
    )


@app.command("context")
def context(
    path: Path = typer.Argument(help="Recorded session (JSON)"),
    query: str = typer.Argument(help="What to look for"),
    layer: list[ContextLayer] = typer.Option(None, "--layer", "-l", help="Restrict to layers"),
    limit: int = typer.Option(10, "--limit", "-n", help="Max results"),
):
    """Search the context a replayed session ends with."""
    session, _ = _load(path)
    pieces = session.search(query, layer or None, limit)
    if not pieces:
        console.print("[dim]Nothing matches.[/dim]")
        return

    table = Table(title=f"Context — '{query}'")
    table.add_column("Layer", style="cyan", no_wrap=True)
    table.add_column("Key", style="white")
    table.add_column("Kind", style="magenta", max_width=18)
    table.add_column("Value", style="white")
    table.add_column("When", style="dim", no_wrap=True)
    for piece in pieces:
        text = piece.text
        table.add_row(
            piece.layer.value,
            piece.key,
            piece.kind,
            text[:100] + ("..." if len(text) > 100 else ""),
            piece.timestamp.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


@app.command("relevant")
def relevant(
    path: Path = typer.Argument(help="Recorded session (JSON)"),
    task: str = typer.Argument(help="Task id (or free text)"),
    max_size: int = typer.Option(2000, "--max-size", "-s", help="Character budget"),
):
    """Show the context selected for a task under a size budget."""
    session, _ = _load(path)
    selected = session.get_relevant_context(task, max_size)

    table = Table(title=f"Relevant context for {task} ({selected.total_size}/{max_size} chars)")
    table.add_column("Score", justify="right", style="green")
    table.add_column("Piece", style="white")
    for piece in selected.pieces():
        table.add_row(f"{selected.scores[piece.ref]:.3f}", piece.ref)
    console.print(table)


@app.command("export")
def export(
    path: Path = typer.Argument(help="Recorded session (JSON)"),
):
    """Print the final plan and context as JSON."""
    session, _ = _load(path)
    console.print_json(json.dumps(session.export(), default=str))


@app.command("version")
def version():
    """Show the installed version."""
    console.print(f"weft {__version__}")
