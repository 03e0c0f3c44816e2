"""
capdispatch - Command Line Interface

Operator tooling for the capability-dispatch runtime. Built with Typer for
the command surface and Rich for output.

Usage:
    $ capdispatch --help
    $ capdispatch config show
    $ capdispatch skills list --registry myapp.skills:registry
    $ capdispatch skills call get_total --args '{"period": "2024-01"}' -r myapp.skills:registry
    $ capdispatch ask "What were total sales in January?" -r myapp.skills:registry
    $ capdispatch sanitize answer.txt

Sub-command Groups:
    config - Configuration inspection
    skills - Inspect and invoke the skills of a registry

Registries are referenced as ``module:attribute``, where the attribute is a
``SkillRegistry`` instance or a zero-argument callable returning one.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from capdispatch import __version__
from capdispatch.skills.base import SkillContext
from capdispatch.skills.registry import SkillRegistry

# Create main console for output
console = Console()
err_console = Console(stderr=True)

# Create main application
app = typer.Typer(
    name="capdispatch",
    help="capdispatch - capability-dispatch runtime for tool-using models",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)

# Create sub-command groups
config_app = typer.Typer(
    name="config",
    help="Configuration inspection commands",
    no_args_is_help=True,
)

skills_app = typer.Typer(
    name="skills",
    help="Inspect and invoke registry skills",
    no_args_is_help=True,
)

# Register sub-commands
app.add_typer(config_app, name="config")
app.add_typer(skills_app, name="skills")

REGISTRY_OPTION_HELP = "Skill registry as module:attribute (instance or factory)."


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"capdispatch version {__version__}")
        raise typer.Exit()


def configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
        return
    from capdispatch.config.settings import settings

    logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL))


@app.callback()
def main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging.",
    ),
) -> None:
    """
    capdispatch - capability-dispatch runtime

    Lets a generative model answer questions by calling a bounded palette
    of typed, validated skills.

    Use --help on any subcommand for detailed information.
    """
    configure_logging(verbose)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def load_registry(reference: str) -> SkillRegistry:
    """Resolve ``module:attribute`` into a :class:`SkillRegistry`.

    Raises:
        typer.BadParameter: If the reference cannot be resolved
    """
    module_name, sep, attr = reference.partition(":")
    if not sep or not module_name or not attr:
        raise typer.BadParameter(f"Expected module:attribute, got {reference!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise typer.BadParameter(f"Cannot import {module_name!r}: {exc}") from exc

    target = getattr(module, attr, None)
    if target is None:
        raise typer.BadParameter(f"{module_name!r} has no attribute {attr!r}")
    if not isinstance(target, SkillRegistry) and callable(target):
        target = target()
    if not isinstance(target, SkillRegistry):
        raise typer.BadParameter(
            f"{reference!r} is a {type(target).__name__}, not a SkillRegistry"
        )
    return target


def cli_context(tenant: str, user: str) -> SkillContext:
    return SkillContext(tenant_id=tenant, user_id=user, metadata={"source": "cli"})


# ---------------------------------------------------------------------------
# Top-level commands
# ---------------------------------------------------------------------------


@app.command()
def ask(
    question: str = typer.Argument(..., help="Question to answer."),
    registry_ref: Optional[str] = typer.Option(
        None,
        "--registry",
        "-r",
        help=REGISTRY_OPTION_HELP,
        envvar="CAPDISPATCH_REGISTRY",
    ),
    max_steps: Optional[int] = typer.Option(
        None,
        "--max-steps",
        "-s",
        min=1,
        help="Override DISPATCH_MAX_STEPS.",
    ),
    reasoning: Optional[str] = typer.Option(
        None,
        "--reasoning",
        help="Reasoning level: minimal, low, medium, high.",
    ),
    tenant: str = typer.Option("cli", "--tenant", help="Tenant id for the skill context."),
    user: str = typer.Option("cli", "--user", help="User id for the skill context."),
    as_json: bool = typer.Option(False, "--json", help="Print the full trace as JSON."),
    show_thinking: bool = typer.Option(
        False, "--thinking", help="Print the reasoning summary."
    ),
) -> None:
    """
    Run one full turn against the configured Anthropic model.

    Prints the final answer and a table of the skills that were called.
    """
    from capdispatch.cli.output import (
        print_error,
        print_json,
        print_markdown,
        print_tool_calls,
        print_warning,
    )
    from capdispatch.cognition.errors import ProviderError, TurnError
    from capdispatch.cognition.llm_client import create_provider
    from capdispatch.cognition.orchestrator import DispatchConfig, Orchestrator
    from capdispatch.cognition.provider import TranscriptEntry
    from capdispatch.cognition.reasoning import ReasoningLevel

    registry = load_registry(registry_ref) if registry_ref else SkillRegistry()

    config = DispatchConfig.from_settings()
    if max_steps is not None:
        config.max_steps = max_steps
    if reasoning is not None:
        try:
            config.reasoning_level = ReasoningLevel(reasoning.lower())
        except ValueError as exc:
            raise typer.BadParameter(f"Unknown reasoning level {reasoning!r}") from exc

    try:
        provider = create_provider()
    except ProviderError as exc:
        print_error(exc.detail, hint="Set ANTHROPIC_API_KEY in the environment or .env")
        raise typer.Exit(1)

    orchestrator = Orchestrator(provider, config)
    try:
        trace = asyncio.run(
            orchestrator.run_turn(
                [TranscriptEntry.user(question)],
                registry,
                cli_context(tenant, user),
            )
        )
    except TurnError as exc:
        print_error(exc.user_message, details=exc.detail)
        raise typer.Exit(2)

    if as_json:
        print_json(trace.to_dict())
        return

    if show_thinking and trace.thinking_summary:
        console.print(Panel(escape(trace.thinking_summary), title="Thinking", border_style="dim"))
    print_tool_calls(trace.tool_calls)
    console.print()
    print_markdown(trace.final_text)
    if trace.fallback_used:
        print_warning("The model produced no answer; showing the fallback text.")
    console.print()
    console.print(
        f"[dim]steps={trace.steps} requests={trace.usage.provider_requests} "
        f"tokens={trace.usage.total_tokens}"
        f"{' forced' if trace.forced_finalization else ''}"
        f"{' fallback' if trace.fallback_used else ''}[/dim]"
    )


@app.command()
def sanitize(
    source: str = typer.Argument(..., help="Text file to sanitize, or - for stdin."),
) -> None:
    """
    Truncate a trailing repetition loop in model output.

    Reads the text, applies the repetition-loop sanitizer and prints the
    result to stdout.
    """
    from capdispatch.cognition.sanitizer import truncate_repetition_loop

    if source == "-":
        text = sys.stdin.read()
    else:
        path = Path(source)
        if not path.is_file():
            err_console.print(f"[red]File not found: {path}[/red]")
            raise typer.Exit(1)
        text = path.read_text(encoding="utf-8")

    sys.stdout.write(truncate_repetition_loop(text))


# Subcommand modules register their commands on the groups above
from capdispatch.cli import config, skills  # noqa: E402,F401

# Expose the apps for use in submodules
__all__ = [
    "app",
    "config_app",
    "skills_app",
    "console",
    "err_console",
    "load_registry",
    "__version__",
]


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
