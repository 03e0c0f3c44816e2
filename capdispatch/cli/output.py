"""
capdispatch CLI - Rich Output Helpers

Formatting helpers shared by the CLI commands: message lines, JSON,
key/value listings, and tables for skills and tool-call traces.

Functions:
    print_json        - Print formatted JSON
    print_error       - Print error message to stderr
    print_warning     - Print warning message
    print_key_value   - Print aligned key/value pairs
    print_markdown    - Print rendered markdown
    print_skills      - Print the skills of a registry as a table
    print_tool_calls  - Print a turn's tool-call records as a table
    print_result      - Print a skill Result
"""

from __future__ import annotations

import json
from typing import Any, Iterable, Optional, Sequence

from rich.console import Console
from rich.json import JSON
from rich.markdown import Markdown
from rich.markup import escape
from rich.table import Table

from capdispatch.cognition.trace import ToolCallRecord
from capdispatch.skills.result import Result

# Create console instances
console = Console()
err_console = Console(stderr=True)

STATUS_OK = "[green]ok[/green]"
STATUS_FAILED = "[red]failed[/red]"


def print_json(
    data: dict | list,
    indent: int = 2,
    highlight: bool = True,
) -> None:
    """
    Print formatted JSON.

    Args:
        data: Data to print as JSON
        indent: Indentation level
        highlight: Whether to syntax highlight
    """
    json_str = json.dumps(data, indent=indent, ensure_ascii=False, default=str)
    if highlight:
        console.print(JSON(json_str), soft_wrap=True)
    else:
        console.print(json_str, markup=False, highlight=False, soft_wrap=True)


def print_error(
    message: str,
    details: Optional[str] = None,
    hint: Optional[str] = None,
) -> None:
    """
    Print error message.

    Args:
        message: Error message
        details: Optional detailed error information
        hint: Optional hint for resolving the error
    """
    err_console.print(f"[bold red]Error:[/bold red] {message}")

    if details:
        err_console.print(f"[dim]{escape(details)}[/dim]")

    if hint:
        err_console.print(f"[yellow]Hint:[/yellow] {hint}")


def print_warning(message: str, details: Optional[str] = None) -> None:
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")
    if details:
        console.print(f"[dim]{details}[/dim]")


def print_key_value(
    items: Sequence[tuple[str, Any]],
    title: Optional[str] = None,
    key_style: str = "cyan",
) -> None:
    """
    Print key-value pairs aligned on the key column.

    Args:
        items: List of (key, value) tuples
        title: Optional title
        key_style: Style for keys
    """
    if title:
        console.print(f"[bold]{title}[/bold]")
        console.print()

    width = max((len(str(k)) for k, _ in items), default=0)
    for key, value in items:
        console.print(f"  [{key_style}]{str(key).ljust(width)}[/{key_style}]: {value}")


def print_markdown(content: str) -> None:
    console.print(Markdown(content))


def print_skills(skills: Iterable[dict[str, Any]], title: str = "Skills") -> None:
    """
    Print skill metadata (as returned by ``SkillRegistry.list_all``).

    Args:
        skills: Skill info dicts
        title: Table title
    """
    table = Table(title=title)
    table.add_column("Name", style="cyan", no_wrap=True)
    table.add_column("Tool", no_wrap=True)
    table.add_column("Priority", justify="right")
    table.add_column("Tags", style="dim")
    table.add_column("Description")

    for info in skills:
        table.add_row(
            info["name"],
            info["tool"],
            str(info["priority"]),
            ", ".join(info["tags"]),
            truncate_string(info["description"], 60),
        )
    console.print(table)


def print_tool_calls(records: Sequence[ToolCallRecord]) -> None:
    """
    Print the tool calls of a turn.

    Args:
        records: Records from ``ConversationTurnTrace.tool_calls``
    """
    if not records:
        return

    table = Table(title="Tool calls")
    table.add_column("Step", justify="right")
    table.add_column("Skill", style="cyan", no_wrap=True)
    table.add_column("Args", style="dim")
    table.add_column("Status")
    table.add_column("Duration", justify="right")

    for record in records:
        status = STATUS_OK if record.ok else f"{STATUS_FAILED} {escape(record.error or '')}"
        table.add_row(
            str(record.step),
            record.name,
            truncate_string(json.dumps(record.args, ensure_ascii=False, default=str), 50),
            status,
            format_duration_ms(record.duration_ms),
        )
    console.print(table)


def print_result(result: Result[Any]) -> None:
    """Print a skill Result as JSON, failures to stderr."""
    payload = result.to_payload()
    if result.ok:
        print_json(payload["data"])
    else:
        error = payload["error"]
        print_error(escape(f"[{error['kind']}] {error['message']}"))
        if error.get("details"):
            err_console.print_json(json.dumps(error["details"], default=str))


def format_duration_ms(ms: float) -> str:
    """
    Format a duration given in milliseconds.

    Returns:
        ``"850ms"``, ``"1.2s"`` or ``"2m 5s"``
    """
    if ms < 1000:
        return f"{ms:.0f}ms"
    seconds = ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    return f"{int(seconds // 60)}m {int(seconds % 60)}s"


def truncate_string(s: str, max_length: int, suffix: str = "...") -> str:
    if len(s) <= max_length:
        return s
    return s[:max_length - len(suffix)] + suffix
