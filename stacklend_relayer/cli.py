"""
CLI entry point for the StackLend relayer.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import structlog
import typer
import uvicorn

from .config import RelayerConfig
from .errors import BatchAbortedError, ConfigurationError, RelayerError
from .relayer import StackLendRelayer
from .state import StateStore

app = typer.Typer(
    name="stacklend-relayer",
    help="StackLend Stacks-to-Scroll borrow relayer",
    add_completion=False,
)

CONFIG_OPTION = typer.Option(
    None,
    "--config",
    "-c",
    help="Path to .env configuration file",
)


def configure_logging(level: str = "INFO", json_logs: bool = False) -> None:
    """Configure structlog once for the process."""
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
    )


def _load(config_path: Optional[Path], json_logs: bool = False) -> RelayerConfig:
    try:
        config = RelayerConfig.from_env(config_path)
    except ConfigurationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    configure_logging(config.settings.log_level, json_logs)
    return config


@app.command()
def run(
    config_path: Optional[Path] = CONFIG_OPTION,
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON log lines"),
) -> None:
    """
    Start the control API and the periodic relay loop.
    """
    config = _load(config_path, json_logs)
    settings = config.settings

    from .server import create_app

    typer.echo(f"Control API on {settings.host}:{settings.port}. Press Ctrl+C to stop.")
    uvicorn.run(
        create_app(config=config, start_poller=True),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


@app.command()
def sync(config_path: Optional[Path] = CONFIG_OPTION) -> None:
    """
    Run one sync cycle and exit. Stops at the first failing borrow.
    """
    config = _load(config_path)

    async def _sync() -> int:
        relayer = StackLendRelayer(config)
        try:
            result = await relayer.trigger_sync()
        except BatchAbortedError as e:
            for key, tx_hash in e.results.items():
                typer.echo(f"✓ {key}: {tx_hash}")
            typer.echo(f"✗ {e.key}: {e.cause}")
            return 1
        finally:
            await relayer.close()

        for key, tx_hash in result.results.items():
            typer.echo(f"✓ {key}: {tx_hash}")
        typer.echo(
            f"Processed {len(result.results)} borrows, logged {result.deposits_logged} deposits"
        )
        if not result.reads_complete:
            typer.echo("Warning: some Stacks reads failed; watermark not advanced.")
        return 0

    code = asyncio.run(_sync())
    if code:
        raise typer.Exit(code)


@app.command()
def check(config_path: Optional[Path] = CONFIG_OPTION) -> None:
    """
    List finalized events not yet handled (without submitting).
    """
    config = _load(config_path)

    async def _check() -> None:
        relayer = StackLendRelayer(config)
        try:
            borrows, deposits = await relayer.preview()
        finally:
            await relayer.close()

        typer.echo(f"Watermark: {relayer.store.watermark}")
        typer.echo(f"Confirmations: {config.settings.stacks_confirmations}")
        typer.echo("")

        if not borrows and not deposits:
            typer.echo("No pending events found.")
            return

        typer.echo(f"Found {len(borrows)} pending borrow requests:\n")
        for event in borrows:
            typer.echo(f"  ID: {event.id}")
            typer.echo(f"  Height: {event.height}")
            typer.echo(f"  User: {event.user}")
            typer.echo(f"  Token: {event.token_id}")
            typer.echo(f"  Amount: {event.amount}")
            typer.echo(f"  Recipient: {event.dest_recipient}")
            typer.echo("")

        typer.echo(f"Found {len(deposits)} unlogged deposits:\n")
        for event in deposits:
            typer.echo(f"  ID: {event.id} ({event.pool_kind})")
            typer.echo(f"  Height: {event.height}")
            typer.echo(f"  User: {event.user}")
            typer.echo(f"  Amount: {event.amount} (balance {event.balance})")
            typer.echo("")

    asyncio.run(_check())


@app.command()
def repay(
    token_id: str = typer.Argument(..., help="Stacks token-id (key in TOKEN_MAP)"),
    sender: str = typer.Argument(..., help="EVM address repaying the loan"),
    amount: int = typer.Argument(..., help="Amount in token base units"),
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """
    Submit a repay call to the borrow controller.
    """
    config = _load(config_path)

    async def _repay() -> int:
        relayer = StackLendRelayer(config)
        try:
            tx_hash = await relayer.repay(token_id, sender, amount)
        except RelayerError as e:
            typer.echo(f"✗ Repay failed: {e}", err=True)
            return 1
        finally:
            await relayer.close()

        typer.echo(f"✓ Submitted: {tx_hash}")
        return 0

    code = asyncio.run(_repay())
    if code:
        raise typer.Exit(code)


@app.command()
def requeue(
    key: str = typer.Argument(..., help="Event key, e.g. borrow:0xabc...:0"),
    config_path: Optional[Path] = CONFIG_OPTION,
) -> None:
    """
    Return a dead-lettered borrow to the retry queue.
    """
    config = _load(config_path)
    store = StateStore(config.settings.state_file)

    try:
        store.requeue(key)
    except KeyError:
        typer.echo(f"No failure recorded for {key}", err=True)
        raise typer.Exit(1)

    typer.echo(f"Requeued {key}; it will be retried on the next cycle.")


@app.command()
def version() -> None:
    """Show the relayer version."""
    from stacklend_relayer import __version__
    typer.echo(f"stacklend-relayer v{__version__}")


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
