from __future__ import annotations

import asyncio
import logging
import signal

try:
    import click
    from loguru import logger
except ImportError:
    raise SystemExit(
        "CLI dependencies not installed. Install with: pip install pgleaderlease[cli]"
    )

from pgleaderlease import (
    ConfigurationError,
    ElectionConfig,
    LeaderElector,
    PostgresLeaseStore,
    default_identity,
)


class InterceptHandler(logging.Handler):
    """Route stdlib logging to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _setup_logging(verbose: bool) -> None:
    lib_logger = logging.getLogger("pgleaderlease")
    lib_logger.handlers = [InterceptHandler()]
    lib_logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    lib_logger.propagate = False


dsn_option = click.option("--dsn", envvar="PG_DSN", required=True, help="PostgreSQL connection string")
table_option = click.option("--table", default="leader_leases", show_default=True, help="Lease table")


@click.group()
def main() -> None:
    """pgleaderlease: lease-based leader election on PostgreSQL."""


@main.command()
@dsn_option
@table_option
def init(dsn: str, table: str) -> None:
    """Create the lease table if it does not exist."""

    async def _init() -> None:
        async with PostgresLeaseStore(dsn, table=table) as store:
            await store.ensure_schema()

    asyncio.run(_init())
    click.echo(f"table {table} ready")


@main.command()
@dsn_option
@table_option
@click.option("--name", required=True, help="Election name")
@click.option("--namespace", default="default", show_default=True, help="Election namespace")
def status(dsn: str, table: str, name: str, namespace: str) -> None:
    """Print the current lease record."""

    async def _status() -> None:
        async with PostgresLeaseStore(dsn, table=table) as store:
            current = await store.fetch(namespace, name)
        if current is None:
            click.echo(f"{namespace}/{name}: no lease")
            return
        rec = current.record
        click.echo(f"{namespace}/{name} (version {current.token})")
        click.echo(f"  holder:      {rec.holder_identity or '<none>'}")
        click.echo(f"  duration:    {rec.lease_duration_s}s")
        click.echo(f"  acquired:    {rec.acquire_time.isoformat()}")
        click.echo(f"  renewed:     {rec.renew_time.isoformat()}")
        click.echo(f"  transitions: {rec.leader_transitions}")

    asyncio.run(_status())


@main.command()
@dsn_option
@table_option
@click.option("--name", required=True, help="Election name")
@click.option("--namespace", default="default", show_default=True, help="Election namespace")
@click.option("--identity", default=None, help="Candidate identity (default: hostname_<random>)")
@click.option("--lease-duration", type=float, default=15.0, show_default=True, help="Lease duration (seconds)")
@click.option("--renew-deadline", type=float, default=10.0, show_default=True, help="Renew deadline (seconds)")
@click.option("--retry-period", type=float, default=2.0, show_default=True, help="Retry period (seconds)")
@click.option("--no-release-on-cancel", is_flag=True, default=False, help="Keep the lease on shutdown")
@click.option("-v", "--verbose", is_flag=True, default=False, help="Log renewals too")
def run(
    dsn: str,
    table: str,
    name: str,
    namespace: str,
    identity: str | None,
    lease_duration: float,
    renew_deadline: float,
    retry_period: float,
    no_release_on_cancel: bool,
    verbose: bool,
) -> None:
    """Join the election and log leadership changes until SIGINT/SIGTERM."""
    _setup_logging(verbose)
    try:
        config = ElectionConfig(
            name=name,
            namespace=namespace,
            identity=identity or default_identity(),
            lease_duration_s=lease_duration,
            renew_deadline_s=renew_deadline,
            retry_period_s=retry_period,
            release_on_cancel=not no_release_on_cancel,
        )
    except ConfigurationError as exc:
        raise click.BadParameter(str(exc)) from exc

    async def _run() -> None:
        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, shutdown_event.set)

        async with PostgresLeaseStore(
            dsn, table=table, statement_timeout_s=config.call_timeout_s
        ) as store:
            await store.ensure_schema()
            elector = LeaderElector(store, config)

            @elector.on_started_leading
            def _started() -> None:
                logger.info("Started leading as {}", config.identity)

            @elector.on_stopped_leading
            def _stopped() -> None:
                logger.warning("Stopped leading")

            @elector.on_new_leader
            def _new_leader(leader: str) -> None:
                if leader == config.identity:
                    logger.info("Still leading")
                else:
                    logger.info("Another instance has been elected as leader: {}", leader)

            @elector.on_error
            def _error(exc: Exception) -> None:
                logger.error("Error: {}", exc)

            await elector.run(shutdown_event)
            logger.info("Shutdown signal received")

        logger.info("Clean shutdown complete")

    asyncio.run(_run())
