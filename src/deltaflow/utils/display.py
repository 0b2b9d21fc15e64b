"""
Rich rendering of run results.

``render_run_result`` builds a renderable (status table plus an error panel
for root causes); ``print_run_result`` writes it to a console.
"""

from __future__ import annotations

from rich.console import Console, Group, RenderableType
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from deltaflow.core.coordinator import ActionOutcome, RunResult
from deltaflow.core.pipeline import ActionStatus, PipelineStatus

STATUS_STYLES = {
    ActionStatus.PENDING: "dim",
    ActionStatus.RUNNING: "yellow",
    ActionStatus.COMPLETED: "green",
    ActionStatus.FAILED: "red",
    ActionStatus.SKIPPED: "cyan",
}


def _status_cell(outcome: ActionOutcome) -> str:
    style = STATUS_STYLES.get(outcome.status, "")
    text = str(outcome.status)
    if outcome.status == ActionStatus.COMPLETED:
        text = f"✓ {text}"
    elif outcome.status == ActionStatus.FAILED:
        text = f"✗ {text}"
    if outcome.skipped_reason:
        text += f" ({outcome.skipped_reason})"
    return f"[{style}]{text}[/{style}]" if style else text


def _delta_cell(outcome: ActionOutcome) -> str:
    delta = outcome.delta
    if delta is None:
        return ""
    if delta.is_empty:
        return "[dim]no changes[/dim]"
    parts = []
    if delta.insert_path:
        parts.append("[green]+ins[/green]")
    if delta.update_path:
        parts.append("[yellow]~upd[/yellow]")
    if delta.delete_path:
        parts.append("[red]-del[/red]")
    return " ".join(parts)


def _error_preview(message: str | None, limit: int = 80) -> str:
    if not message:
        return ""
    first_line = message.strip().splitlines()[0] if message.strip() else ""
    if len(first_line) > limit:
        first_line = first_line[: limit - 3] + "..."
    return f"[red]{first_line}[/red]"


def render_run_result(result: RunResult) -> RenderableType:
    """Table of actions and, for failed runs, a panel naming each root cause."""
    title_style = "green" if result.status == PipelineStatus.COMPLETED else "red"
    table = Table(
        title=f"[bold]Pipeline {result.pipeline_id}[/bold] [{title_style}]{result.status}[/{title_style}]",
        title_justify="left",
    )
    table.add_column("#", justify="right", style="dim")
    table.add_column("Node", style="bold")
    table.add_column("Status")
    table.add_column("Mode", style="dim")
    table.add_column("Attempts", justify="right")
    table.add_column("Delta")
    table.add_column("Error")

    for outcome in result.actions:
        table.add_row(
            str(outcome.execution_order),
            outcome.node_name,
            _status_cell(outcome),
            str(outcome.mode) if outcome.mode else "",
            str(outcome.attempts) if outcome.attempts else "",
            _delta_cell(outcome),
            _error_preview(outcome.error_message),
        )

    causes = result.root_causes()
    if not causes:
        return table

    error_lines: list[RenderableType] = []
    for root, downstream in causes.items():
        error_lines.append(Text.from_markup(f"[bold red]✗ {root}[/bold red]"))
        message = result.outcome_for(root).error_message or "unknown error"
        error_lines.append(Text(f"  {message}", style="dim"))
        if downstream:
            error_lines.append(Text(f"  downstream failed: {', '.join(downstream)}", style="red"))
    panel = Panel(Group(*error_lines), title="[bold red]Errors[/bold red]", border_style="red")
    return Group(table, panel)


def print_run_result(result: RunResult, console: Console | None = None) -> None:
    """Print a run result to ``console`` (stdout by default)."""
    (console or Console()).print(render_run_result(result))
