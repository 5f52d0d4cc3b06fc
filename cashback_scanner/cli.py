"""
Command line interface for the cashback scanner.
"""

import asyncio
import signal
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from cashback_scanner.core.config import settings
from cashback_scanner.core.exceptions import ConfigurationError
from cashback_scanner.core.database import init_database, close_database, DatabaseManager
from cashback_scanner.core.logging import setup_logging, get_logger
from cashback_scanner.rewards.rules import RuleRegistry
from cashback_scanner.services.query_service import QueryService

console = Console()
logger = get_logger(__name__)
app = typer.Typer(help="Cashback transaction scanner")


@app.command("init-db")
def init_db():
    """Create database tables."""
    async def _init():
        setup_logging()
        await init_database()
        await DatabaseManager.create_tables()
        await close_database()
        console.print("Database initialized")

    asyncio.run(_init())


@app.command()
def reset():
    """Drop all tables."""
    if not typer.confirm("Drop all scanner tables, including the cursor and payout records?"):
        console.print("Operation cancelled")
        return

    async def _reset():
        setup_logging()
        await init_database()
        await DatabaseManager.drop_tables()
        await close_database()
        console.print("All tables dropped")

    asyncio.run(_reset())


@app.command("check-db")
def check_db():
    """Check database connectivity."""
    async def _check():
        setup_logging()
        await init_database()
        try:
            healthy = await DatabaseManager.health_check()
        finally:
            await close_database()
        if not healthy:
            console.print("Database health check failed")
            raise typer.Exit(code=1)
        console.print("Database is healthy")

    asyncio.run(_check())


@app.command()
def run(api: Optional[bool] = typer.Option(None, help="Serve the read API in the same process")):
    """Run the scanner loop (and the read API unless disabled)."""
    serve_api = settings.api_enabled if api is None else api
    asyncio.run(_run(serve_api))


async def _run(serve_api: bool) -> None:
    from cashback_scanner.scanner.runner import ScanScheduler, build_orchestrator

    setup_logging()
    session_maker = await init_database()
    await DatabaseManager.create_tables()

    orchestrator = build_orchestrator(session_maker)
    await orchestrator.ensure_cursor()
    await orchestrator.reconcile_totals()

    scheduler = ScanScheduler(orchestrator, settings.scan_interval_seconds)
    server = None
    tasks = [asyncio.create_task(scheduler.start())]

    if serve_api:
        import uvicorn
        from cashback_scanner.api.main import create_app

        registry = RuleRegistry.from_config(settings.reward_rules)
        treasury = orchestrator.executor.gateway if orchestrator.executor else None
        api_app = create_app(QueryService(session_maker, settings.scanner_name, registry, treasury))
        server = uvicorn.Server(uvicorn.Config(
            api_app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        ))
        server.install_signal_handlers = lambda: None
        tasks.append(asyncio.create_task(server.serve()))

    stopping = asyncio.Event()

    def _signal_handler(signum: int) -> None:
        logger.info("Received signal, shutting down gracefully", signal=signum)
        stopping.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler, sig)

    logger.info(
        "Scanner started",
        network=settings.network,
        rpc=settings.rpc_url,
        treasury=settings.treasury_contract,
        settlement_enabled=orchestrator.settlement_enabled
    )
    await stopping.wait()

    await scheduler.stop()
    if server is not None:
        server.should_exit = True
    await asyncio.gather(*tasks, return_exceptions=True)
    await close_database()
    logger.info("Scanner stopped")


@app.command("scan-once")
def scan_once():
    """Run a single scan cycle and print its report."""
    async def _scan():
        from cashback_scanner.scanner.runner import build_orchestrator

        setup_logging()
        session_maker = await init_database()
        await DatabaseManager.create_tables()
        try:
            orchestrator = build_orchestrator(session_maker)
            await orchestrator.ensure_cursor()
            report = await orchestrator.trigger()
        finally:
            await close_database()

        table = Table(title="Scan cycle")
        table.add_column("Field")
        table.add_column("Value")
        for key, value in report.summary().items():
            table.add_row(key, str(value))
        console.print(table)

    asyncio.run(_scan())


@app.command()
def stats():
    """Print scanner statistics."""
    async def _stats():
        session_maker = await init_database()
        try:
            data = await QueryService(session_maker, settings.scanner_name).get_stats()
        finally:
            await close_database()
        console.print_json(data=data)

    asyncio.run(_stats())


@app.command()
def pending(limit: int = typer.Option(50, help="Maximum rows to show")):
    """List rewards awaiting manual reconciliation."""
    async def _pending():
        session_maker = await init_database()
        try:
            service = QueryService(session_maker, settings.scanner_name)
            unrewarded = await service.list_unresolved(limit=limit)
            failed = await service.list_failed(limit=limit)
        finally:
            await close_database()

        table = Table(title="Unresolved rewards")
        for column in ("Status", "Hash", "Sender", "Amount", "Rule", "Settlement ref"):
            table.add_column(column)
        for row in unrewarded + failed:
            table.add_row(
                row["status"],
                row["hash"],
                row["sender"],
                row["reward_amount"],
                row["rule_name"] or "",
                row["settlement_ref"] or "",
            )
        console.print(table)

    asyncio.run(_pending())


@app.command()
def treasury():
    """Show the treasury balance."""
    async def _balance():
        from cashback_scanner.ledger.web3_gateway import Web3PayoutGateway

        try:
            gateway = Web3PayoutGateway()
        except ConfigurationError as e:
            console.print(f"Treasury not configured: {e.message}")
            raise typer.Exit(code=1)
        balance = await gateway.get_treasury_balance()
        console.print(f"Treasury {settings.treasury_contract}: {balance}")

    asyncio.run(_balance())


@app.command()
def rules():
    """Show configured reward rules."""
    registry = RuleRegistry.from_config(settings.reward_rules)
    table = Table(title="Reward rules")
    for column in ("Name", "Contract", "Rate", "Min", "Max", "Boost", "Active"):
        table.add_column(column)
    for rule in registry:
        table.add_row(
            rule.name,
            rule.contract_address,
            str(rule.base_rate),
            str(rule.min_transaction or "-"),
            str(rule.max_cashback or "-"),
            str(rule.boost_multiplier or "-"),
            "yes" if rule.is_active else "no",
        )
    console.print(table)


if __name__ == "__main__":
    app()
