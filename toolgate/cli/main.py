"""
toolgate CLI - Start the gateway MCP server.

Run `toolgate` from an MCP client configuration. Providers and policies are
read from environment variables; stdout carries the MCP protocol, so every
diagnostic goes to stderr.
"""

import asyncio
import logging
import sys

import click
import yaml
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from toolgate import __version__
from toolgate.validation.config import ConfigError, GatewayConfig, load_config, redacted_dump

console = Console(stderr=True)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
    )


def _print_summary(config: GatewayConfig) -> None:
    table = Table(title="Providers")
    table.add_column("Name", style="cyan")
    table.add_column("Transport")
    table.add_column("Target")
    table.add_column("Auth")

    for provider in config.providers:
        target = provider.url if not provider.is_local else " ".join([provider.command or ""] + provider.args)
        table.add_row(provider.name, provider.transport, target or "", provider.auth_type)
    console.print(table)

    mode = "summarize" if config.has_credential and config.filter.enabled else "truncate"
    if config.filter.force_summarize:
        mode = "always summarize"
    console.print(
        f"Filter: [bold]{mode}[/bold] "
        f"(max {config.filter.max_response_chars} chars, summarize from {config.filter.summarize_threshold})"
    )
    search = "model-ranked" if config.routing.enabled and config.has_credential else "keyword"
    console.print(f"Search: [bold]{search}[/bold] (model {config.routing.effective_model(config.completion)})")


@click.command()
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--check", is_flag=True, help="Validate configuration, print a summary, and exit")
@click.option("--dump-config", is_flag=True, help="Print the resolved configuration as YAML (secrets masked) and exit")
@click.option("--lazy", is_flag=True, help="Register providers on the first request instead of at startup")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    show_default=True,
    help="Log verbosity (logs go to stderr)",
)
def cli(version: bool, check: bool, dump_config: bool, lazy: bool, log_level: str) -> None:
    """
    toolgate - MCP gateway with tool search and response filtering.

    \b
    Providers (indexed, N = 1..20):
        MCP_N_NAME, MCP_N_URL | MCP_N_COMMAND, MCP_N_ARGS,
        MCP_N_AUTH_TYPE, MCP_N_AUTH_KEY, MCP_N_AUTH_TOKEN, MCP_N_ENV_JSON
    Providers (delimited, values joined with ';'):
        MCP_NAME, MCP_URL, MCP_COMMAND, MCP_ARGS, MCP_TRANSPORT, ...
    Completion API:
        LLM_API_KEY | OPENAI_API_KEY | OPENROUTER_API_KEY, LLM_BASE_URL, LLM_MODEL
    Policies:
        ENABLE_LLM_FILTER, MAX_RESPONSE_CHARS, SUMMARIZE_THRESHOLD,
        FORCE_LLM_FILTER, ENABLE_LLM_SEARCH, ROUTER_MODEL

    \b
    Examples:
        MCP_1_NAME=docs MCP_1_URL=https://x/mcp toolgate
        toolgate --check
    """
    if version:
        click.echo(f"toolgate v{__version__}")
        return

    _setup_logging(log_level)

    try:
        config = load_config()
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)

    if dump_config:
        click.echo(yaml.dump(redacted_dump(config), default_flow_style=False, sort_keys=False))
        return

    if check:
        _print_summary(config)
        return

    from toolgate.gateway.executor import RegistrationError
    from toolgate.gateway.server import GatewayController, serve

    controller = GatewayController(config)
    try:
        asyncio.run(serve(controller, eager=not lazy))
    except RegistrationError as e:
        console.print(f"[red]Error: {e}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        pass


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
