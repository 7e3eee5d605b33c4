"""Command-line interface for Bonfire."""

import asyncio
from pathlib import Path

import click

from bonfire import __version__
from bonfire.config import Config, ConfigurationError
from bonfire.logging import get_logger, setup_logging

log = get_logger("cli")


@click.group()
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Set logging level (overrides config).",
)
@click.option(
    "--log-json/--no-log-json",
    default=None,
    help="Output logs as JSON or human-readable format (overrides config).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    config_file: Path | None,
    log_level: str | None,
    log_json: bool | None,
) -> None:
    """Bonfire - announcements mirrored to Discord, rosters driven by reactions."""
    ctx.ensure_object(dict)

    try:
        config = Config.load_or_default(config_file)
    except (ConfigurationError, ValueError) as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)
    ctx.obj["config"] = config
    ctx.obj["config_file"] = config_file

    effective_log_level = log_level or config.log_level
    effective_log_json = log_json if log_json is not None else config.log_json
    setup_logging(json_output=effective_log_json, level=effective_log_level)


def _open_database(config: Config):
    from bonfire.database import get_engine
    from bonfire.migrations import migrate

    engine = get_engine(config)
    migrate(engine)
    return engine


def _require_discord(config: Config) -> None:
    try:
        config.require_discord_token()
        config.require_channel_id()
    except ConfigurationError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)


@cli.command()
def version() -> None:
    """Print version information."""
    click.echo(f"bonfire {__version__}")


@cli.command()
@click.option("--host", default="127.0.0.1", help="API host to bind.")
@click.option("--port", default=8000, type=int, help="API port to bind.")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Start the full service (Discord bot + sync engine + API).

    The bot and the API share one database and one sync engine. Use Ctrl+C
    or send SIGTERM for graceful shutdown.

    Requires DISCORD_TOKEN and a configured announcement channel.
    """
    from uvicorn import Config as UvicornConfig
    from uvicorn import Server

    from bonfire.api import create_app
    from bonfire.bot import BonfireBot, run_bot

    config = ctx.obj["config"]
    _require_discord(config)

    engine = _open_database(config)
    log.info("serve_command_invoked", api_host=host, api_port=port)

    async def run():
        """Run the bot and the API concurrently."""
        bot = BonfireBot(config, engine)

        app = create_app(config)
        app.state.config = config
        app.state.db = engine
        app.state.store = bot.sync.store
        app.state.sync = bot.sync

        server = Server(UvicornConfig(app, host=host, port=port, log_level="info"))

        api_task = asyncio.create_task(server.serve())
        bot_task = asyncio.create_task(run_bot(config, engine, bot=bot))

        # If either completes or fails, cancel the other
        done, pending = await asyncio.wait(
            [bot_task, api_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        for task in done:
            if not task.cancelled() and task.exception():
                raise task.exception()  # type: ignore[misc]

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("serve_shutdown_requested")
    except Exception as e:
        log.error("serve_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        engine.dispose()


@cli.command(name="sync-reactions")
@click.pass_context
def sync_reactions(ctx: click.Context) -> None:
    """Resync stored reaction counts from Discord once, then exit."""
    import discord

    from bonfire.gateway import MessageGateway
    from bonfire.store import RecordStore
    from bonfire.sweeper import ReconciliationSweeper

    config = ctx.obj["config"]
    _require_discord(config)

    engine = _open_database(config)

    async def run() -> int:
        client = discord.Client(intents=discord.Intents.default())
        ack_emoji = config.discord.ack_emoji
        gateway = MessageGateway(client, config.require_channel_id(), ack_emoji)
        sweeper = ReconciliationSweeper(RecordStore(engine), gateway, ack_emoji)

        async with client:
            await client.login(config.require_discord_token())
            connection = asyncio.create_task(client.connect())
            try:
                await client.wait_until_ready()
                return await sweeper.sweep()
            finally:
                await client.close()
                await connection

    try:
        synced = asyncio.run(run())
    except Exception as e:
        log.error("sync_reactions_failed", error=str(e))
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    finally:
        engine.dispose()

    click.echo(f"Reaction counts resynced for {synced} post(s)")


@cli.group()
def db() -> None:
    """Database management commands."""
    pass


@db.command(name="status")
@click.pass_context
def db_status(ctx: click.Context) -> None:
    """Show database migration status."""
    from bonfire.database import get_engine
    from bonfire.migrations import get_current_version, get_migrations, get_pending_migrations

    config = ctx.obj["config"]
    engine = get_engine(config)

    current = get_current_version(engine)
    pending = get_pending_migrations(engine)

    click.echo(f"Database: {config.database_path}")
    click.echo(f"Current version: {current}")
    click.echo(f"Available migrations: {len(get_migrations())}")

    if pending:
        click.echo(f"Pending migrations: {len(pending)}")
        for version, module in pending:
            desc = getattr(module, "DESCRIPTION", "No description")
            click.echo(f"  {version}: {desc}")
    else:
        click.echo("No pending migrations")
    engine.dispose()


@db.command(name="migrate")
@click.option(
    "--target",
    type=int,
    default=None,
    help="Target version (default: latest).",
)
@click.pass_context
def db_migrate(ctx: click.Context, target: int | None) -> None:
    """Apply pending database migrations."""
    from bonfire.database import get_engine
    from bonfire.migrations import get_current_version, migrate

    config = ctx.obj["config"]
    engine = get_engine(config)

    before = get_current_version(engine)
    after = migrate(engine, target_version=target)
    engine.dispose()

    if before == after:
        click.echo(f"Database already at version {after}")
    else:
        click.echo(f"Migrated from version {before} to {after}")


@cli.group()
def config() -> None:
    """Configuration management commands."""
    pass


@config.command(name="check")
@click.option(
    "-c",
    "--config-file",
    type=click.Path(exists=True, path_type=Path),
    default="config.yaml",
    help="Path to configuration file.",
)
def config_check(config_file: Path) -> None:
    """Validate configuration file."""
    try:
        cfg = Config.load(config_file)
    except FileNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(f"Configuration error: {e}", err=True)
        raise SystemExit(1)

    click.echo(f"Configuration valid: {config_file}")
    click.echo(f"  Data directory: {cfg.data_dir}")
    click.echo(f"  Database path: {cfg.database_path}")
    click.echo(f"  Log level: {cfg.log_level}")
    click.echo(f"  Channel: {cfg.discord.channel_id or 'not configured'}")
    click.echo(f"  Acknowledgement emoji: {cfg.discord.ack_emoji}")
    click.echo(f"  Roster: {cfg.sync.roster_id}")
    click.echo(f"  Sweep schedule: {cfg.sync.sweep_cron}")
    if not cfg.discord_token:
        click.echo("  Warning: DISCORD_TOKEN is not set")
