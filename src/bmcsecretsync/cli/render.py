"""Path template preview: render TEMPLATE."""

from __future__ import annotations

import sys

import click

from ..backend.pathbuilder import PathTemplateBuilder, PathVariables
from ..errors import TemplateExecutionError, TemplateSyntaxError
from ..models import DEFAULT_PATH_TEMPLATE
from ._common import console


def register_render_commands(main: click.Group) -> None:
    """Register the render command."""

    @main.command("render")
    @click.argument("template", default=DEFAULT_PATH_TEMPLATE)
    @click.option("--region", default="unknown", help="Region value.")
    @click.option("--hostname", required=True, help="Hostname value.")
    @click.option("--username", required=True, help="Username value.")
    def render(template: str, region: str, hostname: str, username: str):
        """Render a path template with the given values."""
        try:
            builder = PathTemplateBuilder(template)
            path = builder.render(
                PathVariables(region=region, hostname=hostname, username=username)
            )
        except (TemplateSyntaxError, TemplateExecutionError) as exc:
            console.print(f"[bold red]Error:[/] {exc}")
            sys.exit(1)
        click.echo(path)
