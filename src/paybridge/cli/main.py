"""
paybridge CLI — `paybridge` command.

Commands:
  paybridge serve <env>                       Run the responder
  paybridge send <env> <method> <payload>     One correlated request
  paybridge loopback <env> <method> <payload> Responder + request in one process
  paybridge methods                           List registered operations
"""

import logging

try:
    import click
    from rich.console import Console
    from rich.logging import RichHandler
except ImportError:
    raise SystemExit("CLI requires extras: pip install paybridge[cli]")

from paybridge import __version__
from paybridge.config import BridgeConfig, load_config
from paybridge.errors import ConfigError

console = Console()


def _load_config(environment: str) -> BridgeConfig:
    try:
        return load_config(environment)
    except ConfigError as e:
        console.print(f"[red]{e.message}[/red]")
        raise SystemExit(1)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


@click.group()
@click.version_option(__version__)
@click.option("--log-level", default="INFO", show_default=True,
              type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False))
def main(log_level: str):
    """paybridge: payment requests over the event bus."""
    _setup_logging(log_level)


# Register subcommands from separate modules
from paybridge.cli.bridge import loopback_cmd, send_cmd, serve_cmd
from paybridge.cli.methods import methods_cmd

main.add_command(serve_cmd)
main.add_command(send_cmd)
main.add_command(loopback_cmd)
main.add_command(methods_cmd)


if __name__ == "__main__":
    main()
