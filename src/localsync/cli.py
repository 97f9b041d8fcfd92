import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import click
from tqdm import tqdm
from dotenv import load_dotenv

from .handler import DataHandler
from .sync.config import EngineConfig
from .sync.connectivity import ManualConnectivitySource
from .sync.exceptions import ConfigurationError, SerializationError

# Configure logging
logger = logging.getLogger(__name__)


def build_config(storage: Optional[str], env_file: Optional[str], remote_url: Optional[str],
                 log_level: Optional[str]) -> EngineConfig:
    """Resolve configuration from an env file, LOCALSYNC_* variables and command line options."""
    if env_file:
        load_dotenv(env_file, override=True)
    else:
        load_dotenv()

    config = EngineConfig.from_env()
    overrides = {}
    if storage:
        overrides["storage_path"] = storage
    if remote_url:
        overrides["remote_url"] = remote_url
    if log_level:
        overrides["log_level"] = log_level
    return replace(config, **overrides) if overrides else config


def run_with_handler(ctx: click.Context, action: Callable[[DataHandler], Awaitable[Any]]) -> Any:
    """Initialize a handler, run one action against it and shut it down."""
    config: EngineConfig = ctx.obj["config"]
    connectivity = ManualConnectivitySource(online=False) if ctx.obj["offline"] else None

    async def run() -> Any:
        handler = DataHandler(connectivity=connectivity)
        await handler.initialize(config)
        try:
            return await action(handler)
        finally:
            await handler.shutdown()

    try:
        return asyncio.run(run())
    except (SerializationError, ValueError) as e:
        raise click.ClickException(str(e))


def echo_json(value: Any) -> None:
    click.echo(json.dumps(value, indent=2, ensure_ascii=False, default=str))


@click.group()
@click.option('--storage', envvar='LOCALSYNC_STORAGE_PATH', type=click.Path(dir_okay=False), help='DuckDB file holding local data (in-memory if omitted)')
@click.option('--env-file', type=click.Path(exists=True, dir_okay=False), help='.env file with LOCALSYNC_* settings')
@click.option('--remote-url', envvar='LOCALSYNC_REMOTE_URL', help='Base URL of the remote document store')
@click.option('--offline', is_flag=True, default=False, help='Queue remote operations instead of sending them')
@click.option('--log-level', envvar='LOCALSYNC_LOG_LEVEL', default=None, help='Logging level')
@click.pass_context
def main(ctx, storage, env_file, remote_url, offline, log_level):
    """
    Read and write local-first data, synchronizing with a remote document store.
    """
    try:
        config = build_config(storage, env_file, remote_url, log_level)
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["offline"] = offline


@main.command()
@click.argument('key')
@click.pass_context
def get(ctx, key):
    """Print the value stored under KEY as JSON."""
    echo_json(run_with_handler(ctx, lambda handler: handler.get_data(key)))


@main.command(name='set')
@click.argument('key')
@click.argument('value')
@click.pass_context
def set_value(ctx, key, value):
    """Store VALUE (a JSON document) under KEY."""
    try:
        parsed = json.loads(value)
    except ValueError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint='VALUE')

    if run_with_handler(ctx, lambda handler: handler.set_data(key, parsed)):
        logger.info(f"Stored {key}")
    else:
        raise click.ClickException(f"{key} does not fit in local storage and was not saved")


@main.command()
@click.argument('key')
@click.pass_context
def remove(ctx, key):
    """Remove KEY."""
    run_with_handler(ctx, lambda handler: handler.remove_data(key))


@main.command()
@click.option('--prefix', default='', help='Only list keys starting with this prefix')
@click.pass_context
def keys(ctx, prefix):
    """List stored keys."""
    async def action(handler: DataHandler):
        return handler.coordinator.list_keys(prefix)

    for key in run_with_handler(ctx, action):
        click.echo(key)


@main.command()
@click.pass_context
def status(ctx):
    """Show sync status and engine health."""
    async def action(handler: DataHandler):
        health = await handler.health_check()
        return {**handler.get_status().to_dict(), "health": health["status"]}

    echo_json(run_with_handler(ctx, action))


@main.command()
@click.pass_context
def flush(ctx):
    """Replay queued remote operations now."""
    result = run_with_handler(ctx, lambda handler: handler.flush())
    if result.skipped:
        click.echo("Flush skipped (offline or remote disabled)")
        return
    click.echo(f"Committed: {result.committed}, retried: {result.retried}, "
               f"dropped: {result.dropped}, superseded: {result.superseded}")


@main.command(name='import')
@click.argument('input_file', type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_entries(ctx, input_file):
    """Import the entries of a JSON object file, one key per member."""
    try:
        entries = json.loads(Path(input_file).read_text(encoding='utf-8'))
    except ValueError as e:
        raise click.ClickException(f"Failed to read {input_file}: {e}")
    if not isinstance(entries, dict):
        raise click.ClickException(f"{input_file} must contain a JSON object")

    async def action(handler: DataHandler):
        for key, value in tqdm(entries.items(), desc="Importing entries", unit="key", ncols=80):
            await handler.set_data(key, value)
        return len(entries)

    count = run_with_handler(ctx, action)
    logger.info(f"Imported {count} entries from {input_file}")
    click.echo(f"Imported {count} entries")


if __name__ == '__main__':
    main()
