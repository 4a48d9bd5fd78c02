"""CLI entry point for the escrow engine."""

from __future__ import annotations

import click

_CONFIG_HELP = "Config file path (TOML)"


@click.group()
def main() -> None:
    """Escrow order-lifecycle engine."""


@main.command("init-db")
@click.option("--config", default=None, help=_CONFIG_HELP)
def init_db(config: str | None) -> None:
    """Create the database tables (development; production uses Alembic)."""
    import asyncio

    from .app import bootstrap
    from .storage.postgres.connection import create_all, dispose, init_engine

    settings = bootstrap(config_path=config)

    async def _run() -> None:
        init_engine(settings.postgres_url, use_null_pool=True)
        try:
            await create_all()
        finally:
            await dispose()

    asyncio.run(_run())
    click.echo("Database tables created.")


@main.command()
@click.option("--config", default=None, help=_CONFIG_HELP)
def sweep(config: str | None) -> None:
    """Run one reconciliation pass."""
    import asyncio

    from .app import EscrowApp, bootstrap

    settings = bootstrap(config_path=config)

    async def _run():
        async with EscrowApp(settings) as app:
            return await app.sweeper.run_once()

    result = asyncio.run(_run())
    click.echo(result.model_dump_json(indent=2))


@main.command()
@click.option("--config", default=None, help=_CONFIG_HELP)
def release(config: str | None) -> None:
    """Run one escrow release pass."""
    import asyncio

    from .app import EscrowApp, bootstrap

    settings = bootstrap(config_path=config)

    async def _run():
        async with EscrowApp(settings) as app:
            return await app.releaser.run_once()

    result = asyncio.run(_run())
    click.echo(result.model_dump_json(indent=2))


@main.command("run-scheduler")
@click.option("--config", default=None, help=_CONFIG_HELP)
def run_scheduler_cmd(config: str | None) -> None:
    """Run the sweeper and release scheduler until interrupted."""
    import asyncio

    from .app import bootstrap, run_scheduler

    settings = bootstrap(config_path=config)
    asyncio.run(run_scheduler(settings))


@main.command("force-release")
@click.argument("transaction_id")
@click.option("--admin", "admin_id", required=True, help="Operator id recorded in the audit trail")
@click.option("--notes", default="", help="Reason recorded with the release")
@click.option("--config", default=None, help=_CONFIG_HELP)
def force_release(transaction_id: str, admin_id: str, notes: str, config: str | None) -> None:
    """Release escrow for a delivered item ahead of the dispute window."""
    import asyncio

    from .app import EscrowApp, bootstrap

    settings = bootstrap(config_path=config)

    async def _run():
        async with EscrowApp(settings) as app:
            return await app.admin.force_release_escrow(transaction_id, notes, admin_id)

    agg = asyncio.run(_run())
    click.echo(f"Released transaction {transaction_id} on order {agg.order.id}")


@main.command("retry-transfer")
@click.argument("transaction_id")
@click.option("--admin", "admin_id", required=True, help="Operator id recorded in the audit trail")
@click.option("--config", default=None, help=_CONFIG_HELP)
def retry_transfer(transaction_id: str, admin_id: str, config: str | None) -> None:
    """Retry a failed seller payout."""
    import asyncio

    from .app import EscrowApp, bootstrap

    settings = bootstrap(config_path=config)

    async def _run():
        async with EscrowApp(settings) as app:
            return await app.admin.retry_transfer(transaction_id, admin_id)

    agg = asyncio.run(_run())
    txn = agg.transaction(transaction_id)
    item = agg.item(txn.order_item_id)
    status = item.escrow_status.value if item.escrow_status else "unset"
    click.echo(f"Transaction {transaction_id}: escrow {status} (attempts={txn.payout_attempts})")


if __name__ == "__main__":
    main()
