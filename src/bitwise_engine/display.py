# display.py
# All terminal output for the bitwise strategy engine.
#
# This module owns presentation entirely. engine.py never formats strings for
# the terminal. It logs, and callers hand results to named functions here.
# Swap this file to change the entire UI.
#
# Colour language:
#   cyan    : scheduling / stage events
#   blue    : bits and metrics
#   yellow  : verification
#   green   : committed / verified
#   red     : failures, halts, mismatches
#   magenta : rejections and declines

import json
import logging

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text
from rich.tree import Tree

from bitwise_engine.models import (
    ExecutionResult,
    ExecutionStatus,
    Stage,
    StepStatus,
    VerificationReport,
)
from bitwise_engine.store import StoreStatistics

console = Console()

_STATUS_STYLE = {
    StepStatus.COMMITTED: "green",
    StepStatus.REJECTED: "magenta",
    StepStatus.FAILED: "red",
    StepStatus.DECLINED: "dim",
}

_RUN_STYLE = {
    ExecutionStatus.COMPLETED: "green",
    ExecutionStatus.FAILED: "red",
    ExecutionStatus.CANCELLED: "yellow",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    if len(value) > max_len:
        return value[:max_len] + "…"
    return value


def configure_logging(level: str = "WARNING") -> None:
    """Route the bitwise_engine logger tree through rich."""
    handler = RichHandler(console=console, show_path=False, markup=False)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root = logging.getLogger("bitwise_engine")
    root.handlers[:] = [handler]
    root.setLevel(level.upper())
    root.propagate = False


# ---------------------------------------------------------------------------
# Run entry and progress
# ---------------------------------------------------------------------------


def banner(strategy_name: str, bits: str, budget: float) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Bitwise Strategy Engine[/bold cyan]\n"
            "[dim]Scheduler → algorithms → scoring → policy, with replay verification[/dim]\n\n"
            f"[dim]Strategy :[/dim] [white]{strategy_name}[/white]\n"
            f"[dim]Input    :[/dim] [blue]{_mono(bits, 64)}[/blue] [dim]({len(bits)} bits)[/dim]\n"
            f"[dim]Budget   :[/dim] [white]{budget:g}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def progress(result: ExecutionResult | None, status: str) -> None:
    """Engine progress listener. Pass to Engine.subscribe()."""
    if result is None:
        console.print(_label("ENGINE", "cyan"), f"[cyan] {status}…[/cyan]")
        return
    committed = len(result.committed_steps)
    console.print(
        _label("ENGINE", "cyan"),
        f"[cyan] {status}[/cyan]  [dim]steps={len(result.steps)} committed={committed} "
        f"budget={result.budget.remaining:g}/{result.budget.initial:g}[/dim]",
    )


def plan_parsed(stages: list[Stage]) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="cyan",
        show_header=True,
        header_style="bold cyan",
        padding=(0, 1),
    )
    table.add_column("Stage", justify="center", width=6)
    table.add_column("Mode", width=10)
    table.add_column("Algorithm", style="bold white")
    table.add_column("Range", style="dim white")

    for index, stage in enumerate(stages):
        mode = "parallel" if stage.parallel else "single"
        for inv in stage.invocations:
            span = f"[{inv.range.start}, {inv.range.end})" if inv.range else "all"
            table.add_row(str(index), mode, inv.algorithm, span)

    console.print(
        Panel(
            table,
            title=_label("SCHEDULER: PLAN PARSED", "cyan"),
            border_style="cyan",
            padding=(0, 1),
        )
    )


# ---------------------------------------------------------------------------
# Execution record
# ---------------------------------------------------------------------------


def execution_summary(result: ExecutionResult) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="dim",
        show_header=True,
        header_style="bold dim",
        padding=(0, 1),
    )
    table.add_column("Step", justify="center", width=6)
    table.add_column("Algorithm", width=14)
    table.add_column("Operation", width=10)
    table.add_column("Status", width=10)
    table.add_column("Cost", justify="right", width=6)
    table.add_column("Score", justify="right", width=8)
    table.add_column("Detail", style="dim white")

    for step in result.steps:
        style = _STATUS_STYLE[step.status]
        detail = step.reason or _mono(json.dumps(step.params), 40)
        table.add_row(
            str(step.step_index),
            step.algorithm,
            step.operation or "-",
            f"[{style}]{step.status.value}[/{style}]",
            f"{step.cost:g}",
            "-" if step.score is None else f"{step.score:.3f}",
            _mono(detail, 60),
        )

    counts = result.status_counts()
    console.print(
        Panel(
            table,
            title="[dim]EXECUTION SUMMARY[/dim]",
            subtitle=f"[dim]{' '.join(f'{k}={v}' for k, v in counts.items())}[/dim]",
            border_style="dim",
            padding=(0, 1),
        )
    )


def execution_tree(result: ExecutionResult) -> None:
    """Stage → step graph with committed diffs, like a call tree."""
    root_label = (result.checksum or "")[:8]
    graph = Tree(f"[bold green]Execution Graph (checksum: {root_label}...)[/bold green]")

    stages: dict[int, Tree] = {}
    for step in result.steps:
        node = stages.get(step.stage_index)
        if node is None:
            node = graph.add(f"[bold cyan]Stage {step.stage_index}[/bold cyan]")
            stages[step.stage_index] = node
        style = _STATUS_STYLE[step.status]
        step_node = node.add(
            f"[bold magenta]Step {step.step_index}: {step.algorithm}[/bold magenta] "
            f"[{style}]{step.status.value}[/{style}]"
        )
        if step.operation:
            step_node.add(f"[dim]Operation:[/dim] {step.operation} {json.dumps(step.params)}")
        if step.committed:
            spans = ", ".join(f"[{r.start}, {r.end})" for r in step.affected_bit_ranges) or "none"
            step_node.add(f"[blue]{_mono(step.before_bits, 48)}[/blue] → [green]{_mono(step.after_bits, 48)}[/green]")
            step_node.add(f"[dim]Changed:[/dim] {spans}  [dim]cost:[/dim] {step.cost:g}")
        elif step.reason:
            step_node.add(f"[{style}]{step.reason}[/{style}]")
        for line in step.logs:
            step_node.add(f"[dim]log: {_mono(line, 80)}[/dim]")

    console.print()
    console.print(graph)


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verification_report(report: VerificationReport) -> None:
    console.print()
    console.print(Rule(f"[yellow]{report.mode.upper()} VERIFICATION[/yellow]", style="yellow"))
    if report.verified:
        console.print(
            f"  [bold green]✓ Verified[/bold green]  [dim]{report.expected_hash}[/dim]\n"
            f"  [green]{report.match_percentage:.2f}% match[/green]"
        )
        return

    lines = [
        f"[bold red]Replay does not reproduce the recorded result.[/bold red]",
        f"[white]Match: {report.match_percentage:.2f}%  ({report.mismatch_count} mismatched bit(s))[/white]",
        f"[dim]Expected: {report.expected_hash}[/dim]",
        f"[dim]Actual  : {report.actual_hash}[/dim]",
    ]
    if report.mismatch_positions:
        lines.append(f"[dim]Positions: {_mono(str(report.mismatch_positions), 100)}[/dim]")
    if report.step_mismatches:
        lines.append(f"[white]Diverging steps: {report.step_mismatches}[/white]")
    if report.chain_breaks:
        lines.append(f"[white]Chain breaks: {report.chain_breaks}[/white]")
    if report.checksum_verified is False:
        lines.append("[white]Checksum does not match the recorded steps.[/white]")
    console.print(
        Panel(
            "\n".join(lines),
            title=_label("VERIFICATION MISMATCH ✗", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def store_statistics(stats: StoreStatistics) -> None:
    console.print()
    table = Table(box=box.SIMPLE, show_header=False, padding=(0, 1))
    table.add_column("Key", style="dim")
    table.add_column("Value", style="white")
    table.add_row("Results", str(stats.total_results))
    table.add_row("Bookmarked", str(stats.bookmarked_count))
    table.add_row("Success rate", f"{stats.success_rate:.1f}%")
    table.add_row("Avg duration", f"{stats.avg_duration_ms:.1f} ms")
    table.add_row("Tags", ", ".join(stats.unique_tags) or "-")
    console.print(Panel(table, title="[dim]RESULT STORE[/dim]", border_style="dim", padding=(0, 1)))


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: ExecutionResult) -> None:
    color = _RUN_STYLE.get(result.status, "white")
    changes = result.metrics_change()
    metric_line = "  ".join(f"{k}: {v:+g}" for k, v in changes.items() if v)
    console.print()
    console.print(
        Panel(
            f"[blue]{_mono(result.initial_bits, 96)}[/blue]\n"
            f"[green]{_mono(result.final_bits, 96)}[/green]\n\n"
            f"[dim]Budget used:[/dim] {result.budget.used:g} / {result.budget.initial:g}\n"
            f"[dim]Metrics Δ  :[/dim] {metric_line or 'unchanged'}\n"
            f"[dim]Duration   :[/dim] {result.duration_ms:.1f} ms",
            title=_label(f"RESULT: {result.status.value.upper()}", color),
            border_style=color,
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{reason}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
