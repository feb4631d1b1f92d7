"""Ferret CLI — background research from the terminal.

Commands:
    ferret research  — Queue research on a query
    ferret work      — Run the worker pool (forever, or --once to drain)
    ferret status    — Queue stats and recent tasks
    ferret search    — Full-text search over finished research
    ferret log       — Activity log for one task
    ferret detect    — Show what the trigger detector makes of some text
    ferret inject    — Run the injection decision for a session
    ferret remember  — Store a memory observation
    ferret cleanup   — Delete old tasks, sessions and injection records
"""

from __future__ import annotations

import asyncio

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from ferret.utils import setup_logging

# Initialize logging on import
setup_logging()

app = typer.Typer(
    name="ferret",
    help="🦦 Ferret — background research for coding sessions",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()

_STATUS_COLORS = {
    "queued": "yellow",
    "running": "cyan",
    "completed": "green",
    "injected": "magenta",
    "failed": "red",
}


def _service():
    from ferret.config import settings
    from ferret.service import ResearchService

    return ResearchService(settings)


# ── ferret research ───────────────────────────────────────────


@app.command()
def research(
    query: str = typer.Argument(..., help="What to research"),
    depth: str = typer.Option(None, "--depth", "-d", help="quick | medium | deep (default from settings)"),
    priority: int = typer.Option(5, "--priority", "-p", min=1, max=10, help="1 (low) – 10 (high)"),
    session: str = typer.Option(None, "--session", "-s", help="Attach the task to a session"),
    force: bool = typer.Option(False, "--force", help="Research again even if recently done"),
):
    """🔎 Queue research on a query."""
    if depth is not None and depth not in ("quick", "medium", "deep"):
        console.print(f"[red]Unknown depth '{depth}' — use quick, medium or deep[/]")
        raise typer.Exit(1)
    asyncio.run(_research(query, depth, priority, session, force))


async def _research(query: str, depth: str | None, priority: int, session: str | None, force: bool):
    from ferret.errors import QueueFullError

    service = _service()
    depth = depth or service.config.default_depth
    try:
        if session:
            await service.start_session(session)
        try:
            task_id = await service.request_research(
                query, depth=depth, priority=priority, session_id=session, force=force
            )
        except QueueFullError as exc:
            console.print(f"[red]⚠ {exc}[/]")
            raise typer.Exit(1)
        console.print(f"[green]✓ Queued[/] [bold]{task_id}[/] [dim]({depth}, priority {priority})[/]")
        console.print(f"[dim]Run [bold]ferret work --once[/] to process, [bold]ferret log {task_id}[/] to follow.[/]")
    finally:
        await service.close()


# ── ferret work ───────────────────────────────────────────────


@app.command()
def work(
    once: bool = typer.Option(False, "--once", help="Drain the queue and exit"),
):
    """⚙️  Run the research worker pool."""
    try:
        asyncio.run(_work(once))
    except KeyboardInterrupt:
        console.print("\n[dim]Worker stopped.[/]")


async def _work(once: bool):
    service = _service()
    try:
        if once:
            with console.status("[dim]Researching...[/]", spinner="dots"):
                n = await service.run_until_idle()
            console.print(f"[green]✓ Processed {n} task run(s)[/]")
        else:
            console.print(
                f"[dim]Worker pool running ({service.config.queue.max_concurrent} slot(s)). Ctrl-C to stop.[/]"
            )
            await service.run_forever()
    finally:
        await service.close()


# ── ferret status ─────────────────────────────────────────────


@app.command()
def status(
    limit: int = typer.Option(10, "--limit", "-n", help="Recent tasks to show"),
):
    """📊 Queue stats and recent tasks."""
    asyncio.run(_status(limit))


async def _status(limit: int):
    service = _service()
    try:
        data = await service.status(limit)
        sessions = await service.active_sessions()
    finally:
        await service.close()

    stats = data["stats"]
    stats_table = Table(show_header=False, box=None, padding=(0, 2))
    stats_table.add_column("Status", style="cyan")
    stats_table.add_column("Count", style="white")
    for name in ("queued", "running", "completed", "injected", "failed"):
        stats_table.add_row(name, f"[{_STATUS_COLORS[name]}]{getattr(stats, name)}[/]")
    stats_table.add_row("processed", str(stats.total_processed))
    stats_table.add_row("active sessions", str(len(sessions)))
    console.print(Panel(stats_table, title="[bold cyan]Queue[/]", border_style="cyan"))

    recent = data["recent"]
    if not recent:
        console.print("[dim]No research yet.[/]")
        return
    table = Table(title="Recent Research")
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Query", style="white")
    table.add_column("Status")
    table.add_column("Depth", style="dim")
    table.add_column("Conf.", justify="right")
    for t in recent:
        color = _STATUS_COLORS.get(t.status, "white")
        conf = f"{t.result.confidence:.0%}" if t.result else "—"
        table.add_row(t.id[:8], t.query[:60], f"[{color}]{t.status}[/]", t.depth, conf)
    console.print(table)


# ── ferret search ─────────────────────────────────────────────


@app.command()
def search(
    query: str = typer.Argument(..., help="Words to search for"),
    limit: int = typer.Option(10, "--limit", "-n"),
):
    """📚 Search finished research."""
    asyncio.run(_search(query, limit))


async def _search(query: str, limit: int):
    service = _service()
    try:
        tasks = await service.search(query, limit)
    finally:
        await service.close()

    if not tasks:
        console.print(f"[dim]Nothing found for '{query}'.[/]")
        return
    for t in tasks:
        body = t.result.summary if t.result else ""
        console.print(Panel(
            body,
            title=f"[bold]{t.query}[/]",
            subtitle=f"[dim]{t.id[:8]} · {t.status}[/]",
            border_style="green",
        ))


# ── ferret log ────────────────────────────────────────────────


@app.command()
def log(
    task_id: str = typer.Argument(..., help="Task ID"),
    n: int = typer.Option(50, "--lines", "-n"),
):
    """📜 Show a task's activity log."""
    asyncio.run(_log(task_id, n))


async def _log(task_id: str, n: int):
    service = _service()
    try:
        task = await service.queue.get(task_id)
        lines = await service.task_log(task_id, n)
    finally:
        await service.close()

    if task is not None:
        color = _STATUS_COLORS.get(task.status, "white")
        console.print(f"[bold]{task.query}[/] [{color}]{task.status}[/]")
        if task.error:
            console.print(f"[red]error:[/] {task.error}")
    if not lines:
        console.print("[dim]No activity recorded (is Redis running?).[/]")
        return
    for line in lines:
        console.print(f"[dim]{line}[/]")


# ── ferret detect ─────────────────────────────────────────────


@app.command()
def detect(
    text: str = typer.Argument(..., help="Prompt or tool output"),
    tool: str = typer.Option(None, "--tool", "-t", help="Treat TEXT as output of this tool"),
):
    """🎯 Run the trigger detector on some text."""
    from ferret.config import settings
    from ferret.triggers import TriggerDetector

    detector = TriggerDetector(
        speculative_probability=settings.speculative_probability,
        min_confidence=settings.min_trigger_confidence,
    )
    if tool:
        trigger = detector.detect(text, "tool_output", tool_name=tool)
    else:
        trigger = detector.detect(text)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Field", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("research?", "[green]yes[/]" if trigger.should_research else "[dim]no[/]")
    table.add_row("enqueue?", "[green]yes[/]" if detector.should_enqueue(trigger) else "[dim]no[/]")
    table.add_row("query", trigger.query or "—")
    table.add_row("depth", trigger.depth)
    table.add_row("priority", str(trigger.priority))
    table.add_row("confidence", f"{trigger.confidence:.2f}")
    table.add_row("reason", trigger.reason)
    console.print(Panel(table, title="[bold yellow]Trigger[/]", border_style="yellow"))


# ── ferret inject ─────────────────────────────────────────────


@app.command()
def inject(
    session: str = typer.Argument(..., help="Session ID"),
    query: str = typer.Argument(..., help="What the session is working on"),
    project: str = typer.Option(None, "--project", help="Project path"),
):
    """💉 Run the injection decision for a session."""
    asyncio.run(_inject(session, query, project))


async def _inject(session: str, query: str, project: str | None):
    service = _service()
    try:
        await service.start_session(session, project)
        injection = await service.get_injection(session, query, project=project)
    finally:
        await service.close()

    if injection is None:
        console.print("[dim]Nothing to inject (budget, cooldown, or no relevant knowledge).[/]")
        return
    console.print(Panel(
        injection.content,
        title=f"[bold magenta]{injection.type}[/]",
        subtitle=f"[dim]~{injection.tokens} tokens[/]",
        border_style="magenta",
    ))


# ── ferret remember ───────────────────────────────────────────


@app.command()
def remember(
    title: str = typer.Argument(..., help="Short title"),
    summary: str = typer.Argument(..., help="What was learnt"),
    type: str = typer.Option("discovery", "--type", help="decision | bugfix | feature | refactor | discovery | change"),
    project: str = typer.Option(None, "--project", help="Project path"),
    files: list[str] = typer.Option(None, "--file", "-f", help="Related file (repeatable)"),
):
    """🧠 Store a memory observation."""
    if type not in ("decision", "bugfix", "feature", "refactor", "discovery", "change"):
        console.print(f"[red]Unknown type '{type}'[/]")
        raise typer.Exit(1)
    asyncio.run(_remember(title, summary, type, project, files or []))


async def _remember(title: str, summary: str, obs_type: str, project: str | None, files: list[str]):
    service = _service()
    try:
        obs_id = await service.remember(title, summary, type=obs_type, project=project, files=files)
    finally:
        await service.close()
    console.print(f"[green]✓ Remembered[/] [bold]{obs_id}[/]")


# ── ferret cleanup ────────────────────────────────────────────


@app.command()
def cleanup(
    days: float = typer.Option(30, "--days", help="Delete records older than this"),
):
    """🧹 Delete old tasks, sessions and injection records."""
    asyncio.run(_cleanup(days))


async def _cleanup(days: float):
    service = _service()
    try:
        removed = await service.cleanup(days)
    finally:
        await service.close()
    console.print(
        f"[green]✓ Removed[/] {removed['tasks']} task(s), "
        f"{removed['sessions']} session(s), {removed['injections']} injection record(s)"
    )


# ── Entry point ───────────────────────────────────────────────

if __name__ == "__main__":
    app()
