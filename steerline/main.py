"""Main entry point for steerline."""

import asyncio
import os
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from steerline.config import Config, set_config
from steerline.logging import configure_logging, get_logger
from steerline.session import SessionStore

log = get_logger(__name__)

cli = typer.Typer(help="steerline - chat bot front end that steers a running agent")
console = Console()


def _load_config(config: str) -> Config:
    if config:
        try:
            return Config.from_yaml(Path(config))
        except Exception as e:
            log.error("Failed to load config", error=str(e))
    return Config.load()


def main(config: str = "", model: str = "", verbose: bool = False) -> None:
    """Start the Telegram bot."""
    from steerline.app import SteerlineApp

    if verbose:
        os.environ["STEERLINE_LOGGING__LEVEL"] = "DEBUG"

    cfg = _load_config(config)
    if model:
        cfg.model.model = model
    if verbose:
        cfg.logging.level = "DEBUG"
    set_config(cfg)
    configure_logging()

    cfg.resolved_sessions_dir().mkdir(parents=True, exist_ok=True)

    try:
        asyncio.run(SteerlineApp(cfg).run())
    except KeyboardInterrupt:
        log.info("Shutting down...")
        sys.exit(0)
    except Exception as e:
        log.error("Fatal error", error=str(e))
        sys.exit(1)


@cli.command()
def run(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Run the bot (long polling)."""
    main(config, model, verbose)


@cli.command()
def sessions(
    config: str = typer.Option("", "-c", "--config", help="Path to config file"),
) -> None:
    """List persisted sessions."""
    cfg = _load_config(config)
    store = SessionStore(cfg.resolved_sessions_dir())

    table = Table(title=f"Sessions in {store.sessions_dir}")
    table.add_column("Session key", style="cyan")
    table.add_column("Provider session")
    table.add_column("Queries", justify="right")
    table.add_column("Tokens in/out", justify="right")
    table.add_column("Saved at")

    for identity in store.list_identities():
        record = store.load(identity)
        if record is None:
            continue
        table.add_row(
            identity.session_key,
            record.session_id[:8],
            str(record.total_queries),
            f"{record.total_input_tokens}/{record.total_output_tokens}",
            record.saved_at,
        )
    console.print(table)


@cli.command()
def version() -> None:
    """Show version information."""
    from steerline import __version__

    console.print(f"steerline v{__version__}")


if __name__ == "__main__":
    cli()
