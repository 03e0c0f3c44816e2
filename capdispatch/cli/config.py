"""
capdispatch CLI - Configuration Commands

Commands:
    show - Display the effective settings (secrets masked)
"""

from __future__ import annotations

from typing import Any

import typer

from capdispatch.cli import config_app, console

SECRET_FIELDS = frozenset({"ANTHROPIC_API_KEY"})


def mask_secret(value: str) -> str:
    """Show only the last four characters of a secret."""
    if not value:
        return ""
    if len(value) <= 8:
        return "****"
    return f"****{value[-4:]}"


def effective_settings() -> dict[str, Any]:
    from capdispatch.config.settings import settings

    data = settings.model_dump()
    for key in SECRET_FIELDS:
        if key in data:
            data[key] = mask_secret(data[key])
    return data


@config_app.command("show")
def show_config(
    as_json: bool = typer.Option(False, "--json", help="Print as JSON."),
) -> None:
    """
    Display current configuration.

    Values come from the environment and the .env file. Secrets are
    masked.
    """
    from capdispatch.cli.output import print_json, print_key_value

    data = effective_settings()
    if as_json:
        print_json(data)
        return

    print_key_value(
        [(key, _display(value)) for key, value in sorted(data.items())],
        title="capdispatch settings",
    )
    console.print()


def _display(value: Any) -> str:
    if isinstance(value, str):
        text = value.replace("\n", " ")
        return text if len(text) <= 70 else text[:67] + "..."
    return str(value)
