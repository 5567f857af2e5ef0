import asyncio
from typing import Optional

import typer
from pydantic import ValidationError

import config
from errors import CacheError, SyncError
from synchronizer import Synchronizer, SyncResult

logger = config.get_logger(service="main")

EXIT_CONFIG_ERROR = 2
EXIT_CACHE_ERROR = 3

app = typer.Typer(help="Caches the Slack user directory in Redis and serves it over HTTP.", no_args_is_help=True)


def resolve_log_level(verbose: int, debug: bool, error: bool) -> Optional[str]:
    """Map the verbosity flags onto a level. None means no flag was given."""
    if debug:
        return "DEBUG"
    if error:
        return "ERROR"
    if verbose:
        return "DEBUG"
    return None


@app.callback()
def main(
    ctx: typer.Context,
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Enable debug logging"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable all logging"),
    error: bool = typer.Option(False, "--error", "-e", help="Disable everything but error logging"),
) -> None:
    ctx.obj = resolve_log_level(verbose, debug, error)


def _load(ctx: typer.Context, settings_cls: type, **overrides: object):  # noqa: ANN202
    try:
        cfg = settings_cls(**{k: v for k, v in overrides.items() if v is not None})
    except ValidationError as e:
        logger.error(f"Invalid configuration: {e}")
        raise typer.Exit(code=EXIT_CONFIG_ERROR) from e
    config.set_log_level(ctx.obj or cfg.log_level)
    return cfg


async def run_sync(cfg: config.SyncConfig) -> SyncResult:
    synchronizer = Synchronizer.from_config(cfg)
    try:
        result = await synchronizer.run()
    finally:
        await synchronizer.cache.close()
    if not result.success:
        raise SyncError("; ".join(result.errors))
    return result


@app.command("update-redis")
def update_redis(
    ctx: typer.Context,
    server_id: Optional[str] = typer.Option(None, help="Unique ID to identify the server [env: SERVER_ID]"),
    slack_token: Optional[str] = typer.Option(
        None,
        help="Slack API token. Scopes: usergroups:read, users.profile:read, users:read [env: SLACK_BOT_TOKEN]",
    ),
    redis_address: Optional[str] = typer.Option(None, help="Address of the Redis server [env: REDIS_ADDRESS]"),
    ignore_lock: bool = typer.Option(False, "--ignore-lock", "-i", help="Write even if another server holds the lock"),
) -> None:
    """Query Slack and publish its users and user groups into Redis."""
    cfg = _load(
        ctx,
        config.SyncConfig,
        server_id=server_id,
        slack_bot_token=slack_token,
        redis_address=redis_address,
        ignore_lock=ignore_lock or None,
    )
    try:
        result = asyncio.run(run_sync(cfg))
    except SyncError as e:
        logger.error(f"Error: {e}")
        raise typer.Exit(code=e.exit_code) from e
    except CacheError as e:
        logger.exception(f"Error: {e}")
        raise typer.Exit(code=EXIT_CACHE_ERROR) from e
    if result.aborted:
        typer.echo(f"Lock held by {result.lock_holder}, nothing written")


@app.command("web")
def web(
    ctx: typer.Context,
    redis_address: Optional[str] = typer.Option(None, help="Address of the Redis server [env: REDIS_ADDRESS]"),
    listen_address: Optional[str] = typer.Option(None, help="Where the server should listen [env: LISTEN_ADDRESS]"),
) -> None:
    """Serve the results of `update-redis` over HTTP."""
    import web as web_module

    cfg = _load(ctx, config.WebConfig, redis_address=redis_address, listen_address=listen_address)
    web_module.serve(cfg)


if __name__ == "__main__":
    app()
