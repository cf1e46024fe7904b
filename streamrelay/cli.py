import asyncio
import datetime
import json
import random
import signal
from typing import Dict, Optional

import httpx
import redis.asyncio as aioredis
from redis.exceptions import RedisError
import typer

from streamrelay.connectors import create_sink, create_source
from streamrelay.errors import RelayError
from streamrelay.relay import Relay
from streamrelay.settings import Settings, load_settings
from streamrelay.utils.logging import get_logger, setup_logging

app = typer.Typer(help="Stream Relay Control Interface")
logger = get_logger("CLI")


@app.command()
def run():
    """
    Runs the relay until SIGINT or SIGTERM.
    """
    try:
        settings = load_settings()
    except RelayError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    setup_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
    logger.info("Application starting up...")
    raise typer.Exit(code=asyncio.run(_run(settings)))


async def _run(settings: Settings) -> int:
    try:
        relay = Relay.from_settings(settings, create_source(settings), create_sink(settings))
        await relay.start()
    except RelayError as e:
        logger.critical(f"Failed to initialize services. Application cannot start: {e}")
        return 1

    shutdown = asyncio.Event()
    _install_signal_handlers(shutdown)

    admin_task: Optional[asyncio.Task] = None
    if settings.ADMIN_ENABLED:
        admin_task = asyncio.create_task(_serve_admin(relay, settings.ADMIN_PORT))

    logger.info("Application is running. Press Ctrl+C to exit.")
    waiters = [asyncio.create_task(shutdown.wait()), asyncio.create_task(relay.failed.wait())]
    await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    for waiter in waiters:
        waiter.cancel()

    await relay.stop()
    if admin_task is not None:
        admin_task.cancel()
        await asyncio.gather(admin_task, return_exceptions=True)

    if relay.failed.is_set():
        logger.critical(f"Relay stopped after a fatal error: {relay.fatal_error}")
        return 1
    logger.info("Application shutdown completed successfully.")
    return 0


def _install_signal_handlers(shutdown: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _on_signal, sig, shutdown)
        except NotImplementedError:
            # Windows support or special environments
            pass


def _on_signal(sig: signal.Signals, shutdown: asyncio.Event) -> None:
    logger.warning(f"Received {sig.name}. Shutting down gracefully...")
    shutdown.set()


async def _serve_admin(relay: Relay, port: int) -> None:
    try:
        from uvicorn import Config, Server
        from streamrelay.admin import create_admin_app

        config = Config(
            app=create_admin_app(relay),
            host="0.0.0.0",
            port=port,
            log_config=None,
            log_level="warning",
        )
        server = Server(config)

        # Disable signal handlers as we manage them
        server.install_signal_handlers = lambda: None

        logger.info(f"Starting Admin API on port {port}")
        await server.serve()
    except Exception as e:
        logger.error(f"Failed to start Admin API: {e}")


def sample_event() -> Dict[str, str]:
    """A fake telemetry reading."""
    now = datetime.datetime.now(datetime.timezone.utc)
    return {
        "deviceId": f"device-{random.randint(0, 99)}",
        "temperature": f"{20 + random.random() * 15:.2f}",
        "humidity": f"{40 + random.random() * 20:.2f}",
        "timestamp": now.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    }


@app.command()
def publish(
    redis_url: str = typer.Option("redis://localhost:6379", envvar="REDIS_URL", help="Redis connection URL"),
    stream_key: str = typer.Option("telemetry:events", envvar="STREAM_KEY", help="Stream to append to"),
    interval_ms: int = typer.Option(1000, help="Delay between events"),
    count: int = typer.Option(0, help="Stop after this many events (0 runs until Ctrl+C)"),
):
    """
    Publishes sample telemetry events to the stream.
    """
    async def _publish():
        client = aioredis.from_url(redis_url, decode_responses=True)
        typer.echo(f"Starting data publisher for stream '{stream_key}'...")
        typer.echo("Press Ctrl+C to stop.")
        sent = 0
        try:
            while not count or sent < count:
                event = sample_event()
                try:
                    message_id = await client.xadd(stream_key, event)
                    typer.echo(f"Published event with ID: {message_id} | Device: {event['deviceId']}")
                except RedisError as e:
                    typer.echo(f"Error publishing event to Redis Stream: {e}", err=True)
                sent += 1
                if not count or sent < count:
                    await asyncio.sleep(interval_ms / 1000.0)
        finally:
            await client.aclose()

    try:
        asyncio.run(_publish())
    except KeyboardInterrupt:
        typer.echo("\nShutting down publisher...")
    typer.echo("Publisher stopped.")


@app.command()
def pending(limit: int = typer.Option(20, help="Number of pending entries to show")):
    """
    Lists the consumer group's pending (delivered but unacknowledged) entries.
    """
    try:
        settings = load_settings()
    except RelayError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    async def _pending():
        source = create_source(settings)
        await source.connect()
        try:
            return await source.pending(settings.STREAM_KEY, settings.CONSUMER_GROUP, count=limit)
        finally:
            await source.disconnect()

    try:
        entries = asyncio.run(_pending())
    except RelayError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"--- {len(entries)} pending in {settings.STREAM_KEY} / {settings.CONSUMER_GROUP} ---")
    for entry in entries:
        typer.echo(f"[{entry.id}] {entry.consumer} | idle {entry.idle_ms}ms | delivered {entry.delivery_count}x")


@app.command()
def status(url: str = typer.Option("http://localhost:8001", help="URL of the Admin API")):
    """
    Checks the status of a running relay.
    """
    try:
        r = httpx.get(f"{url}/control/status")
        if r.status_code == 200:
            typer.echo(f"✅ Relay Online: {json.dumps(r.json(), indent=2)}")
        else:
            typer.echo(f"⚠️  Relay returned {r.status_code}: {r.text}")
    except httpx.RequestError as e:
        typer.echo(f"❌ Failed to connect to {url}: {e}")
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
