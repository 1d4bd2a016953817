"""
CLI interface for AI Cost Proxy.

Provides operator commands: schema setup, serving, and read-only views of
the catalog and accounts.
"""

import asyncio
import logging
import os
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ai_cost_proxy.config.loader import CONFIG_ENV_VAR, ProxyConfig, load_config_from_env
from ai_cost_proxy.storage.repository import AccountLedger, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


def _load_config(config_path: Optional[str]) -> ProxyConfig:
    return load_config_from_env(config_path)


def _format_price(amount) -> str:
    """Format a per-1K price without losing small fractions."""
    return f"${amount:f}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Cost Proxy CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Cost Proxy - Use --help to see available commands")


@app.command()
def init(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Initialize the ledger database."""
    try:
        proxy_config = _load_config(config)
        initialize_schema(proxy_config.database)
        console.print(f"[green]✓[/] Database initialized at {proxy_config.database}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def models(
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """List enabled models and their prices."""
    try:
        proxy_config = _load_config(config)
    except Exception as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title="Enabled models")
    table.add_column("Model")
    table.add_column("Provider")
    table.add_column("Category")
    table.add_column("Input / 1K", justify="right")
    table.add_column("Output / 1K", justify="right")
    for entry in proxy_config.catalog.list_enabled():
        table.add_row(
            entry.id,
            entry.provider.value,
            entry.category.value,
            _format_price(entry.pricing.input_per_1k),
            _format_price(entry.pricing.output_per_1k),
        )
    console.print(table)


@app.command()
def account(
    user_id: str = typer.Argument(..., help="User id to inspect"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
):
    """Show a user's plan, status and balance.

    Uses the stats view, so an account is created on first inspection and
    storage errors fall back to the default view.
    """
    try:
        proxy_config = _load_config(config)
    except Exception as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    try:
        initialize_schema(proxy_config.database)
    except Exception as e:
        console.print(f"[red]Error opening database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    status = asyncio.run(AccountLedger(proxy_config.database).stats(user_id))
    console.print(f"\n[bold]Account:[/bold] {user_id}")
    console.print(f"Plan: {status.plan.value}")
    console.print(f"Status: {status.status.value}")
    console.print(f"Balance: ${status.balance:,.6f}")
    console.print(f"Total spent: ${status.total_spent:,.6f}")
    last_used = status.last_used_at.isoformat() if status.last_used_at else "never"
    console.print(f"Last used: {last_used}")


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Bind address"),
    port: int = typer.Option(8000, "--port", "-p", help="Bind port"),
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to YAML config"),
    log_level: str = typer.Option("info", "--log-level", help="Logging level"),
):
    """Run the proxy server."""
    import uvicorn

    if config:
        os.environ[CONFIG_ENV_VAR] = config
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "ai_cost_proxy.api.app:create_app",
        factory=True,
        host=host,
        port=port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    app()
