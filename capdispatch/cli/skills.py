"""
capdispatch CLI - Skill Commands

Commands:
    list   - List the skills of a registry
    schema - Show provider function declarations
    call   - Validate and execute one skill
"""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer

from capdispatch.cli import REGISTRY_OPTION_HELP, cli_context, load_registry, skills_app

RegistryOption = typer.Option(
    ...,
    "--registry",
    "-r",
    help=REGISTRY_OPTION_HELP,
    envvar="CAPDISPATCH_REGISTRY",
)


@skills_app.command("list")
def list_skills(
    registry_ref: str = RegistryOption,
    tool: Optional[str] = typer.Option(None, "--tool", "-t", help="Only this tool category."),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON."),
    markdown: bool = typer.Option(
        False, "--markdown", help="Print the prompt-ready capability overview."
    ),
) -> None:
    """
    List registered skills.
    """
    from capdispatch.cli.output import print_json, print_markdown, print_skills

    registry = load_registry(registry_ref)
    if tool:
        registry = registry.filtered(enabled_tools=[tool])

    if as_json:
        print_json(registry.list_all())
    elif markdown:
        print_markdown(registry.describe())
    else:
        print_skills(registry.list_all(), title=f"Skills ({len(registry)})")


@skills_app.command("schema")
def show_schema(
    name: Optional[str] = typer.Argument(None, help="Only this skill."),
    registry_ref: str = RegistryOption,
) -> None:
    """
    Show the function declarations sent to the provider.
    """
    from capdispatch.cli.output import print_error, print_json

    declarations = [d.to_dict() for d in load_registry(registry_ref).to_function_declarations()]
    if name is not None:
        declarations = [d for d in declarations if d["name"] == name]
        if not declarations:
            print_error(f"Unknown skill: {name}")
            raise typer.Exit(1)
        print_json(declarations[0])
        return
    print_json(declarations)


@skills_app.command("call")
def call_skill(
    name: str = typer.Argument(..., help="Skill name."),
    args: str = typer.Option("{}", "--args", "-a", help="Arguments as a JSON object."),
    registry_ref: str = RegistryOption,
    tenant: str = typer.Option("cli", "--tenant", help="Tenant id for the skill context."),
    user: str = typer.Option("cli", "--user", help="User id for the skill context."),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Per-call deadline in seconds."
    ),
) -> None:
    """
    Execute one skill through the registry.

    Arguments are validated exactly as they are for model-issued calls.
    Exits with status 1 when the skill returns a failure.
    """
    from capdispatch.cli.output import print_result

    try:
        raw_args = json.loads(args)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"--args is not valid JSON: {exc}") from exc

    registry = load_registry(registry_ref)
    result = asyncio.run(
        registry.execute(name, raw_args, cli_context(tenant, user), timeout=timeout)
    )
    print_result(result)
    if not result.ok:
        raise typer.Exit(1)
