"""
Trading Cycle Engine - Main Entry Point

Runs the multi-user trading cycle scheduler against Alpaca.

Usage:
    # Check configuration
    python main.py --check

    # Initialize database
    python main.py --init-db

    # Run the scheduler (Ctrl+C to stop)
    python main.py

    # Run with a 10 minute cycle interval
    python main.py --interval 10

    # Run a single cycle and exit
    python main.py --once

    # Show scheduler and user status
    python main.py --status

    # Enable / disable auto trading for a user
    python main.py --enable USER_ID
    python main.py --disable USER_ID

    # Liquidate everything for a user and disable auto trading
    python main.py --emergency-stop USER_ID
"""

import argparse
import asyncio
import signal
from datetime import datetime
from typing import Dict, Optional

import structlog

from cycle_engine.core.config import engine_config
from cycle_engine.core.engine import TradingEngine
from cycle_engine.core.execution import OrderExecutor
from cycle_engine.core.monitoring import ActivityLogger
from cycle_engine.core.reconciliation import PortfolioReconciler
from cycle_engine.core.scheduler import PortfolioSyncJob, TradingCycleScheduler
from cycle_engine.exchange.gateway import GatewayFactory
from cycle_engine.risk.risk_gate import RiskGate
from cycle_engine.storage.database import Database
from cycle_engine.strategies.analysis import StrategyEngine
from cycle_engine.utils.logging_config import setup_logging

logger = structlog.get_logger(__name__)


class CycleEngineApp:
    """
    Wires the components together and owns their lifecycle.

    - Database and per-user gateway factory
    - Risk gate, strategy engine and order executor
    - Trading cycle scheduler and portfolio sync job
    """

    def __init__(self, interval_minutes: Optional[int] = None):
        self.interval_minutes = interval_minutes

        # Components
        self.database: Optional[Database] = None
        self.risk_gate: Optional[RiskGate] = None
        self.scheduler: Optional[TradingCycleScheduler] = None
        self.sync_job: Optional[PortfolioSyncJob] = None

        # State
        self._shutdown_event = asyncio.Event()
        self._initialized = False

    async def initialize(self):
        """Initialize all components based on configuration."""
        logger.info(
            "app.initializing",
            environment=engine_config.system.environment,
            interval_minutes=self.interval_minutes or engine_config.scheduler.cycle_interval_minutes,
        )

        self.database = Database()
        await self.database.initialize()

        activity = ActivityLogger(self.database)
        factory = GatewayFactory(self.database)

        self.risk_gate = RiskGate(self.database, factory, activity, engine_config.risk)
        strategy_engine = StrategyEngine(
            self.database, factory, activity, engine_config.strategy, engine_config.alpaca
        )
        executor = OrderExecutor(self.database, factory, activity)
        engine = TradingEngine(
            self.database,
            factory,
            self.risk_gate,
            strategy_engine,
            executor,
            activity,
            engine_config.scheduler,
        )

        self.scheduler = TradingCycleScheduler(
            self.database, engine, activity, engine_config.scheduler
        )
        if self.interval_minutes:
            await self.scheduler.set_interval(self.interval_minutes)

        self.sync_job = PortfolioSyncJob(
            self.database,
            executor,
            PortfolioReconciler(self.database, factory, activity),
            engine_config.scheduler,
        )

        self._initialized = True
        logger.info("app.initialized")

    async def run(self):
        """Run the scheduler until a shutdown signal arrives."""
        if not self._initialized:
            raise RuntimeError("App not initialized. Call initialize() first.")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler)

        try:
            await self.scheduler.start()
            if engine_config.scheduler.portfolio_sync_enabled:
                await self.sync_job.start()

            await self._shutdown_event.wait()

        except Exception as e:
            logger.error("app.error", error=str(e), exc_info=True)
            raise
        finally:
            await self.shutdown()

    async def run_once(self) -> Dict:
        """Run one trading cycle and return its summary."""
        report = await self.scheduler.execute_now()
        return {
            "started_at": report.started_at.isoformat(),
            "finished_at": report.finished_at.isoformat() if report.finished_at else None,
            "users_processed": report.users_processed,
            "failed_users": report.failed_users,
            "results": [r.model_dump(mode="json") for r in report.results],
        }

    async def shutdown(self):
        """Perform graceful shutdown."""
        logger.info("app.shutting_down")

        if self.scheduler:
            await self.scheduler.stop()
        if self.sync_job:
            await self.sync_job.stop()
        if self.database:
            await self.database.close()

        logger.info("app.shutdown_complete")

    def _signal_handler(self):
        """Handle shutdown signals."""
        logger.info("app.shutdown_signal_received")
        self._shutdown_event.set()

    async def get_status(self) -> Dict:
        """Scheduler status plus per-user trading state."""
        if not self._initialized:
            return {"status": "not_initialized"}

        users = []
        for user_id in await self.database.get_auto_trading_users():
            prefs = await self.database.get_trading_preferences(user_id)
            positions = await self.database.get_open_positions(user_id)
            users.append({
                "user_id": user_id,
                "trading_status": prefs.trading_status.value if prefs else None,
                "open_positions": len(positions),
            })

        return {
            "timestamp": datetime.utcnow().isoformat(),
            "environment": engine_config.system.environment,
            "scheduler": self.scheduler.get_status(),
            "users": users,
        }


def print_status(status: Dict):
    """Print formatted status output."""
    print("\n" + "=" * 60)
    print("           TRADING CYCLE ENGINE - STATUS")
    print("=" * 60)

    print(f"\nTimestamp: {status.get('timestamp', 'N/A')}")
    print(f"Environment: {status.get('environment', 'N/A')}")

    scheduler = status.get("scheduler", {})
    print("\nScheduler:")
    print(f"   Running: {scheduler.get('is_running', False)}")
    print(f"   Interval: {scheduler.get('interval_minutes', 'N/A')} minutes")
    print(f"   Last cycle: {scheduler.get('last_cycle_at') or 'never'}")

    users = status.get("users", [])
    print(f"\nAuto-trading users ({len(users)}):")
    for user in users:
        print(
            f"   {user['user_id']}: {user['trading_status']} "
            f"({user['open_positions']} open positions)"
        )
    if not users:
        print("   None")

    print("\n" + "=" * 60)


async def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Trading Cycle Engine - multi-user equity trading on Alpaca"
    )
    parser.add_argument(
        "--interval", type=int, help="Cycle interval in minutes (default from config)"
    )
    parser.add_argument("--once", action="store_true", help="Run one cycle and exit")
    parser.add_argument(
        "--status", action="store_true", help="Show system status and exit"
    )
    parser.add_argument(
        "--check", action="store_true", help="Check configuration and exit"
    )
    parser.add_argument(
        "--init-db", action="store_true", help="Initialize database and exit"
    )
    parser.add_argument("--enable", metavar="USER_ID", help="Enable auto trading for a user")
    parser.add_argument("--disable", metavar="USER_ID", help="Disable auto trading for a user")
    parser.add_argument(
        "--emergency-stop",
        metavar="USER_ID",
        help="Close all positions for a user and disable auto trading",
    )

    args = parser.parse_args()

    setup_logging()

    validation = engine_config.validate_configuration()

    if args.check:
        print("\n" + "=" * 60)
        print("           CONFIGURATION CHECK")
        print("=" * 60)
        if validation["valid"]:
            print("\n✓ Configuration is valid")
        else:
            print("\n✗ Configuration errors:")
            for issue in validation["issues"]:
                print(f"   - {issue}")
        print(f"\nEnvironment: {engine_config.system.environment}")
        print(f"Cycle interval: {engine_config.scheduler.cycle_interval_minutes} minutes")
        print(f"Default universe: {', '.join(engine_config.strategy.trading_universe)}")
        print("\n" + "=" * 60)
        return

    if not validation["valid"]:
        print("\n✗ Configuration errors:")
        for issue in validation["issues"]:
            print(f"   - {issue}")
        print("\nPlease check your .env file and try again.")
        return

    if args.init_db:
        print("\nInitializing database...")
        db = Database()
        await db.initialize()
        print("✓ Database initialized successfully")
        await db.close()
        return

    app = CycleEngineApp(interval_minutes=args.interval)
    await app.initialize()

    if args.status:
        print_status(await app.get_status())
        await app.shutdown()
        return

    if args.enable or args.disable:
        user_id = args.enable or args.disable
        await app.risk_gate.set_auto_trading(user_id, bool(args.enable), actor="cli")
        print(f"✓ Auto trading {'enabled' if args.enable else 'disabled'} for {user_id}")
        await app.shutdown()
        return

    if args.emergency_stop:
        print(f"\nEMERGENCY STOP for {args.emergency_stop}")
        confirm = input("Type 'STOP' to confirm: ")
        if confirm != "STOP":
            print("Aborted.")
            await app.shutdown()
            return
        try:
            result = await app.risk_gate.emergency_stop_all_positions(args.emergency_stop)
            print(f"✓ {result.message}")
            if result.failed_symbols:
                print(f"✗ Failed: {', '.join(result.failed_symbols)}")
        finally:
            await app.shutdown()
        return

    if args.once:
        try:
            summary = await app.run_once()
            print(
                f"✓ Cycle complete: {summary['users_processed']} users, "
                f"{len(summary['failed_users'])} failed"
            )
        finally:
            await app.shutdown()
        return

    await app.run()


def cli():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\n\nShutdown requested by user")


if __name__ == "__main__":
    cli()
