"""CLI: paybridge methods"""

import json

import click
from rich.console import Console

from paybridge.registry import default_registry

console = Console()


@click.command("methods")
@click.option("--json-output", "--json", is_flag=True)
def methods_cmd(json_output: bool):
    """List the operations the responder dispatches."""
    registry = default_registry()
    if json_output:
        click.echo(json.dumps([
            {
                "request": op.request_method,
                "response": op.response_method,
                "requestType": op.request_type.__name__,
                "responseType": op.response_type.__name__,
                "streaming": op.streaming,
            }
            for op in registry
        ], indent=2))
        return
    console.print(f"[bold]Registered methods ({len(registry)})[/bold]")
    for op in registry:
        streaming = " [yellow](streaming)[/yellow]" if op.streaming else ""
        # soft_wrap keeps method names whole on narrow terminals
        console.print(
            f"  [cyan]{op.request_method}[/cyan] -> [green]{op.response_method}[/green]{streaming}\n"
            f"    [dim]{op.request_type.__name__} -> {op.response_type.__name__}[/dim]",
            soft_wrap=True,
        )
