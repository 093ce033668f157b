"""
Cycle Engine - Main Entry Point

Off-chain orchestrator of the daily ten-fixture prediction contest: selects
the slate, opens the on-chain cycle, collects results, resolves the cycle
and projects slips, leaderboards and user statistics.

Usage:
    cycle-engine run                                  # Run the orchestrator
    cycle-engine migrate                              # Apply schema migrations
    cycle-engine status                               # Print cycles and open issues
    cycle-engine resolve-conflict FIXTURE --home N --away M --note TEXT
    cycle-engine clear-halt CYCLE
    cycle-engine rebuild-stats

Environment Variables:
    DATABASE_URL              PostgreSQL connection string (required)
    RPC_URL                   Chain JSON-RPC endpoint (required for run)
    CONTRACT_ADDRESS          Contest contract address (required for run)
    SIGNER_KEY_REF            env:VAR or file:/path holding the signer key (required for run)
    CHAIN_ID                  Expected chain id (default: read from node)
    RESULTS_FEED_URL          Results provider base URL (required for run)
    RESULTS_FEED_KEY          Results provider API key (required for run)
    SELECTION_CRON            UTC cron for selection (default: "0 6 * * *")
    SELECTION_GRACE_MINUTES   Minimum lead before the earliest kickoff (default: 60)
    RESOLVE_DEADLINE_HOURS    Resolve deadline after close time (default: 36)
    MAX_FIXTURES_PER_LEAGUE   Fixtures per league in a slate (default: 2)
    SELECTION_WEIGHT_LEAGUE   Selection weight of league priority (default: 1.0)
    SELECTION_WEIGHT_SPREAD   Selection weight of kickoff spread (default: 0.5)
    SELECTION_WEIGHT_INTEREST Selection weight of odds balance (default: 0.5)
    CONFIRMATION_DEPTH        Blocks before a tx or event is final (default: 12)
    FEED_RETRY_BUDGET         Feed attempts per fixture per sweep (default: 4)
    TX_RETRY_BUDGET           Transient submission retries (default: 5)
    WORKER_POOL_SIZE          Concurrent per-cycle / per-fixture tasks (default: 8)
    QUALIFY_THRESHOLD         Correct predictions for a non-zero score (default: 5)
    ODDS_DECIMALS             Fixed-point decimals of on-chain odds (default: 2)
    RPC_TIMEOUT_SECONDS       Timeout of a single RPC call (default: 20)
    SHUTDOWN_BUDGET_SECONDS   Time allowed to drain watchers on stop (default: 30)
    TELEGRAM_BOT_TOKEN        Telegram bot token for alerts
    TELEGRAM_CHAT_ID          Telegram chat ID for alerts
    LOG_LEVEL                 Logging level (DEBUG/INFO/WARNING/ERROR)

Exit codes:
    0  normal exit
    1  fatal initialization error (missing config, database unreachable,
       schema mismatch, chain or contract mismatch)
    2  usage error
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import logging
import os
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Optional

from eth_account import Account

from cycle_engine.errors import ConfigMissingError, CycleEngineError

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# Default PID file location
DEFAULT_PID_FILE = "/tmp/cycle-engine.pid"

# Required by every command / additionally by `run`
REQUIRED_ALWAYS = ("DATABASE_URL",)
REQUIRED_FOR_RUN = (
    "RPC_URL",
    "CONTRACT_ADDRESS",
    "SIGNER_KEY_REF",
    "RESULTS_FEED_URL",
    "RESULTS_FEED_KEY",
)


class SingletonEngineError(Exception):
    """Raised when another orchestrator instance is already running."""
    pass


@contextmanager
def singleton_lock(pid_file: str = DEFAULT_PID_FILE) -> Generator[None, None, None]:
    """
    Context manager that ensures only one orchestrator runs at a time.

    Two orchestrators would race on the signer nonce and on cycle
    transitions, so `run` always holds this lock.

    Raises:
        SingletonEngineError: If another instance is already running
    """
    pid_path = Path(pid_file)

    # Read existing PID before opening (which would truncate)
    existing_pid = None
    try:
        existing_pid = pid_path.read_text().strip()
    except FileNotFoundError:
        pass

    fp = open(pid_path, "a+")

    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except (IOError, OSError):
        fp.close()
        if existing_pid:
            raise SingletonEngineError(
                f"Another orchestrator is already running (PID: {existing_pid}). "
                f"Kill it with: kill {existing_pid}"
            )
        raise SingletonEngineError(
            "Another orchestrator is already running. "
            "Check for existing processes: ps aux | grep cycle-engine"
        )

    # We have the lock - now truncate and write our PID
    fp.seek(0)
    fp.truncate()
    fp.write(str(os.getpid()))
    fp.flush()

    def cleanup():
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
            fp.close()
            pid_path.unlink(missing_ok=True)
        except OSError:
            pass

    atexit.register(cleanup)

    try:
        logger.info(f"Acquired singleton lock (PID: {os.getpid()}, file: {pid_file})")
        yield
    finally:
        cleanup()
        atexit.unregister(cleanup)


def load_signer_key(ref: str) -> str:
    """
    Resolve a signer key reference.

    ``env:VAR`` reads the key from another environment variable,
    ``file:/path`` reads it from a file. The key itself never sits in
    SIGNER_KEY_REF so it does not leak into process listings or logs.
    """
    scheme, _, target = ref.partition(":")
    if not target:
        raise ConfigMissingError(["SIGNER_KEY_REF (expected env:VAR or file:/path)"])
    if scheme == "env":
        key = os.environ.get(target, "").strip()
    elif scheme == "file":
        try:
            key = Path(target).read_text().strip()
        except OSError as e:
            raise ConfigMissingError([f"SIGNER_KEY_REF ({e})"]) from e
    else:
        raise ConfigMissingError([f"SIGNER_KEY_REF (unknown scheme {scheme!r})"])
    if not key:
        raise ConfigMissingError([f"SIGNER_KEY_REF ({ref} is empty)"])
    return key


@dataclass
class OrchestratorConfig:
    """Complete orchestrator configuration."""

    # Database
    database_url: str = ""

    # Chain
    rpc_url: str = ""
    contract_address: str = ""
    signer_key_ref: str = ""
    chain_id: Optional[int] = None
    confirmation_depth: int = 12
    tx_retry_budget: int = 5
    rpc_timeout_seconds: float = 20.0

    # Results feed
    results_feed_url: str = ""
    results_feed_key: str = ""
    feed_retry_budget: int = 4

    # Selection
    selection_cron: str = "0 6 * * *"
    selection_grace_minutes: int = 60
    max_fixtures_per_league: int = 2
    selection_weight_league: float = 1.0
    selection_weight_spread: float = 0.5
    selection_weight_interest: float = 0.5

    # Cycles
    resolve_deadline_hours: int = 36
    worker_pool_size: int = 8
    qualify_threshold: int = 5
    odds_decimals: int = 2
    shutdown_budget_seconds: float = 30.0

    # Alerts
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, required: tuple[str, ...] = REQUIRED_ALWAYS + REQUIRED_FOR_RUN) -> "OrchestratorConfig":
        """
        Load configuration from environment variables.

        Raises:
            ConfigMissingError: a required variable is unset or a value is malformed.
        """
        env = os.environ
        problems: list[str] = [name for name in required if not env.get(name, "").strip()]

        def number(name: str, default, cast=int):
            raw = env.get(name)
            if raw is None or raw.strip() == "":
                return default
            try:
                return cast(raw)
            except ValueError:
                problems.append(f"{name} (not a number: {raw!r})")
                return default

        config = cls(
            database_url=env.get("DATABASE_URL", ""),
            rpc_url=env.get("RPC_URL", ""),
            contract_address=env.get("CONTRACT_ADDRESS", ""),
            signer_key_ref=env.get("SIGNER_KEY_REF", ""),
            chain_id=number("CHAIN_ID", None),
            confirmation_depth=number("CONFIRMATION_DEPTH", 12),
            tx_retry_budget=number("TX_RETRY_BUDGET", 5),
            rpc_timeout_seconds=number("RPC_TIMEOUT_SECONDS", 20.0, float),
            results_feed_url=env.get("RESULTS_FEED_URL", ""),
            results_feed_key=env.get("RESULTS_FEED_KEY", ""),
            feed_retry_budget=number("FEED_RETRY_BUDGET", 4),
            selection_cron=env.get("SELECTION_CRON", "0 6 * * *"),
            selection_grace_minutes=number("SELECTION_GRACE_MINUTES", 60),
            max_fixtures_per_league=number("MAX_FIXTURES_PER_LEAGUE", 2),
            selection_weight_league=number("SELECTION_WEIGHT_LEAGUE", 1.0, float),
            selection_weight_spread=number("SELECTION_WEIGHT_SPREAD", 0.5, float),
            selection_weight_interest=number("SELECTION_WEIGHT_INTEREST", 0.5, float),
            resolve_deadline_hours=number("RESOLVE_DEADLINE_HOURS", 36),
            worker_pool_size=number("WORKER_POOL_SIZE", 8),
            qualify_threshold=number("QUALIFY_THRESHOLD", 5),
            odds_decimals=number("ODDS_DECIMALS", 2),
            shutdown_budget_seconds=number("SHUTDOWN_BUDGET_SECONDS", 30.0, float),
            telegram_bot_token=env.get("TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=env.get("TELEGRAM_CHAT_ID") or None,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )

        from cycle_engine.core.scheduler import parse_cron

        try:
            parse_cron(config.selection_cron)
        except ValueError:
            problems.append(f"SELECTION_CRON (invalid cron: {config.selection_cron!r})")
        if not 1 <= config.qualify_threshold <= 10:
            problems.append(f"QUALIFY_THRESHOLD (must be 1-10, got {config.qualify_threshold})")
        if config.worker_pool_size < 1:
            problems.append("WORKER_POOL_SIZE (must be positive)")

        if problems:
            raise ConfigMissingError(problems)
        return config


class Orchestrator:
    """
    Main cycle orchestrator.

    Manages the lifecycle of all components:
    - Database connection and schema check
    - Results feed, collector and fixture sync
    - Chain gateway (submitter, confirmation watchers) and event subscriber
    - Projector, coordinator and the selection schedule
    - Background loops, health and cycle monitoring
    """

    def __init__(self, config: OrchestratorConfig):
        self.config = config
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._started_at: Optional[datetime] = None

        # Components (initialized on start)
        self._db = None
        self._feed = None
        self._gateway = None
        self._scheduler = None
        self._background_tasks = None
        self._alert_manager = None
        self.coordinator = None

    async def start(self) -> None:
        """Initialize every component and run until a shutdown signal."""
        logger.info("=" * 60)
        logger.info("CYCLE ENGINE")
        logger.info("=" * 60)

        self._running = True
        self._started_at = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        # Setup signal handlers FIRST to catch early signals
        self._setup_signal_handlers()

        try:
            await self._init_database()

            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            await self._init_components()

            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            self._scheduler.start()
            await self._background_tasks.start()

            logger.info("=" * 60)
            logger.info("Orchestrator started successfully")
            logger.info("Press Ctrl+C to stop")
            logger.info("=" * 60)

            await self._shutdown_event.wait()

        finally:
            await self.stop()

    async def stop(self) -> None:
        """Stop gracefully: schedule, loops, watchers, then the pool."""
        if not self._running:
            return

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        if self._scheduler:
            try:
                self._scheduler.stop()
            except Exception as e:
                logger.warning(f"Error stopping scheduler: {e}")

        if self._background_tasks:
            try:
                await self._background_tasks.stop()
            except Exception as e:
                logger.warning(f"Error stopping background tasks: {e}")

        if self._gateway:
            try:
                await self._gateway.close(drain_timeout=self.config.shutdown_budget_seconds)
            except Exception as e:
                logger.warning(f"Error closing chain gateway: {e}")

        if self._feed:
            try:
                await self._feed.close()
            except Exception as e:
                logger.warning(f"Error closing results feed: {e}")

        if self._db:
            try:
                await self._db.close()
            except Exception as e:
                logger.warning(f"Error closing database: {e}")

        logger.info("Shutdown complete")

    async def _init_database(self) -> None:
        self._db = await open_database(self.config)
        logger.info("Database: Connected, schema verified")

    async def _init_components(self) -> None:
        from cycle_engine.chain.events import EventSubscriber
        from cycle_engine.chain.gateway import ChainGateway, GatewayConfig
        from cycle_engine.core.background_tasks import BackgroundTasksManager
        from cycle_engine.core.coordinator import CoordinatorConfig, CycleCoordinator
        from cycle_engine.core.scheduler import SelectionScheduler
        from cycle_engine.core.scoring import ScoringConfig
        from cycle_engine.ingestion import FixtureSync, ResultsCollector, ResultsFeedClient
        from cycle_engine.monitoring import AlertManager, CycleMonitor, HealthChecker
        from cycle_engine.projection import Projector
        from cycle_engine.selection import MatchSelector, SelectionConfig
        from cycle_engine.storage import FixtureStore
        from cycle_engine.storage.repositories import ChainTransactionRepository
        from cycle_engine.utils.retry import RetryPolicy

        cfg = self.config
        db = self._db

        self._alert_manager = AlertManager(
            telegram_bot_token=cfg.telegram_bot_token,
            telegram_chat_id=cfg.telegram_chat_id,
        )
        if not self._alert_manager.enabled:
            logger.info("Alerts: Telegram not configured, alerts are logged only")

        store = FixtureStore(db, odds_decimals=cfg.odds_decimals)

        self._feed = ResultsFeedClient(cfg.results_feed_url, cfg.results_feed_key)
        feed_policy = RetryPolicy(max_attempts=cfg.feed_retry_budget, initial_delay=2.0, max_delay=30.0)
        collector = ResultsCollector(
            store,
            self._feed,
            alerts=self._alert_manager,
            retry_policy=feed_policy,
            concurrency=cfg.worker_pool_size,
        )
        fixture_sync = FixtureSync(store, self._feed, alerts=self._alert_manager, retry_policy=feed_policy)
        logger.info(f"Results feed: {cfg.results_feed_url}")

        account = Account.from_key(load_signer_key(cfg.signer_key_ref))
        self._gateway = ChainGateway(
            GatewayConfig(
                rpc_url=cfg.rpc_url,
                contract_address=cfg.contract_address,
                chain_id=cfg.chain_id,
                confirmation_depth=cfg.confirmation_depth,
                rpc_timeout=cfg.rpc_timeout_seconds,
                tx_retry_budget=cfg.tx_retry_budget,
            ),
            account,
            ChainTransactionRepository(db),
        )
        await self._gateway.connect()
        logger.info(f"Chain: connected (chain id {self._gateway.chain_id}, signer {account.address})")

        subscriber = EventSubscriber(self._gateway, db, depth=cfg.confirmation_depth)
        projector = Projector(
            db,
            store,
            block_timestamp=self._gateway.block_timestamp,
            scoring=ScoringConfig(
                qualify_threshold=cfg.qualify_threshold,
                odds_decimals=cfg.odds_decimals,
                score_decimals=cfg.odds_decimals,
            ),
            alerts=self._alert_manager,
        )
        projector.register(subscriber)

        grace = timedelta(minutes=cfg.selection_grace_minutes)
        selector = MatchSelector(
            store,
            SelectionConfig(
                weight_league=cfg.selection_weight_league,
                weight_spread=cfg.selection_weight_spread,
                weight_interest=cfg.selection_weight_interest,
                max_per_league=cfg.max_fixtures_per_league,
                grace=grace,
            ),
        )

        self.coordinator = CycleCoordinator(
            db,
            store,
            selector,
            self._gateway,
            projector,
            alerts=self._alert_manager,
            config=CoordinatorConfig(
                close_grace=grace,
                resolve_deadline=timedelta(hours=cfg.resolve_deadline_hours),
                worker_pool_size=cfg.worker_pool_size,
            ),
            fixture_sync=fixture_sync,
            subscriber=subscriber,
        )
        self.coordinator.register(subscriber)

        self._scheduler = SelectionScheduler(self.coordinator, cron=cfg.selection_cron)

        self._background_tasks = BackgroundTasksManager(
            coordinator=self.coordinator,
            collector=collector,
            fixture_sync=fixture_sync,
            subscriber=subscriber,
            health_checker=HealthChecker(db, self._gateway, self._feed),
            cycle_monitor=CycleMonitor(
                db, store, alerts=self._alert_manager, selection_trigger=self._scheduler.trigger
            ),
            alerts=self._alert_manager,
        )

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


async def open_database(config: OrchestratorConfig, verify: bool = True):
    """Connect the pool and, unless migrating, check the schema version."""
    from cycle_engine.storage import SCHEMA_VERSION, Database, DatabaseConfig

    db = Database(DatabaseConfig(url=config.database_url))
    await db.initialize()
    try:
        if not await db.health_check():
            raise RuntimeError("Database health check failed")
        if verify:
            await db.verify_schema(SCHEMA_VERSION)
    except BaseException:
        await db.close()
        raise
    return db


# =============================================================================
# Operator commands
# =============================================================================


async def cmd_run(config: OrchestratorConfig, args: argparse.Namespace) -> int:
    orchestrator = Orchestrator(config)
    await orchestrator.start()
    return 0


async def cmd_migrate(config: OrchestratorConfig, args: argparse.Namespace) -> int:
    from cycle_engine.storage import apply_migrations

    db = await open_database(config, verify=False)
    try:
        version = await apply_migrations(db)
    finally:
        await db.close()
    print(f"Schema at version {version}")
    return 0


async def cmd_status(config: OrchestratorConfig, args: argparse.Namespace) -> int:
    from cycle_engine.storage import FixtureStore
    from cycle_engine.storage.repositories import CycleRepository, SelectionRunRepository

    db = await open_database(config)
    try:
        cycles = await CycleRepository(db).recent(limit=args.limit)
        conflicts = await FixtureStore(db).open_conflicts()
        runs = await SelectionRunRepository(db).latest(limit=5)
    finally:
        await db.close()

    print(f"{'CYCLE':>6}  {'STATE':<17} {'CLOSE (UTC)':<17} {'DEADLINE (UTC)':<17} NOTE")
    for cycle in cycles:
        note = ""
        if cycle.is_halted:
            note = f"HALTED: {cycle.halted_reason}"
        elif cycle.cancel_reason:
            note = f"cancelled: {cycle.cancel_reason}"
        print(
            f"{cycle.cycle_id:>6}  {cycle.state.value:<17} "
            f"{_fmt_time(cycle.close_time):<17} {_fmt_time(cycle.resolve_deadline):<17} {note}"
        )

    if runs:
        print("\nRecent selection runs:")
        for run in runs:
            print(f"  cycle {run.cycle_id} at {_fmt_time(run.run_at)}: {run.outcome} ({run.candidates} candidates)")

    if conflicts:
        print("\nOpen result conflicts:")
        for c in conflicts:
            print(
                f"  fixture {c.fixture_id}: stored {c.stored_home}-{c.stored_away}, "
                f"incoming {c.incoming_home}-{c.incoming_away} ({_fmt_time(c.detected_at)})"
            )
    return 0


async def cmd_resolve_conflict(config: OrchestratorConfig, args: argparse.Namespace) -> int:
    from cycle_engine.storage import FixtureStore

    db = await open_database(config)
    try:
        result = await FixtureStore(db).override_result(args.fixture, args.home, args.away, args.note)
    finally:
        await db.close()
    print(
        f"Fixture {result.fixture_id} set to {result.home_score}-{result.away_score} "
        f"({result.outcome_1x2.value}, {result.outcome_ou25.value})"
    )
    return 0


async def cmd_clear_halt(config: OrchestratorConfig, args: argparse.Namespace) -> int:
    from cycle_engine.storage.repositories import CycleRepository

    db = await open_database(config)
    try:
        cleared = await CycleRepository(db).clear_halt(args.cycle)
    finally:
        await db.close()
    if not cleared:
        print(f"Cycle {args.cycle} is not halted", file=sys.stderr)
        return 1
    logger.warning(f"Halt cleared for cycle {args.cycle} by operator")
    print(f"Cycle {args.cycle} resumed")
    return 0


async def cmd_rebuild_stats(config: OrchestratorConfig, args: argparse.Namespace) -> int:
    from cycle_engine.projection import StatsProjector

    db = await open_database(config)
    try:
        count = await StatsProjector(db, config.qualify_threshold).rebuild()
    finally:
        await db.close()
    print(f"Rebuilt stats for {count} player(s)")
    return 0


COMMANDS = {
    "run": cmd_run,
    "migrate": cmd_migrate,
    "status": cmd_status,
    "resolve-conflict": cmd_resolve_conflict,
    "clear-halt": cmd_clear_halt,
    "rebuild-stats": cmd_rebuild_stats,
}


def _fmt_time(value: Optional[datetime]) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M") if value else "-"


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cycle-engine",
        description="Cycle Engine orchestrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("run", help="Run the orchestrator")
    commands.add_parser("migrate", help="Apply database migrations")

    status = commands.add_parser("status", help="Show recent cycles and open issues")
    status.add_argument("--limit", type=int, default=10, help="Cycles to show (default: 10)")

    resolve = commands.add_parser("resolve-conflict", help="Override a conflicted fixture result")
    resolve.add_argument("fixture", help="Fixture id")
    resolve.add_argument("--home", type=int, required=True, help="Home goals")
    resolve.add_argument("--away", type=int, required=True, help="Away goals")
    resolve.add_argument("--note", required=True, help="Why this score is correct")

    clear = commands.add_parser("clear-halt", help="Resume a halted cycle")
    clear.add_argument("cycle", type=int, help="Cycle id")

    commands.add_parser("rebuild-stats", help="Recompute user statistics from leaderboards")
    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    """Parse command line arguments. Exits with status 2 on usage errors."""
    args = build_parser().parse_args(argv)
    if args.command == "resolve-conflict" and (args.home < 0 or args.away < 0):
        build_parser().error("--home and --away must be non-negative")
    return args


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    required = REQUIRED_ALWAYS + (REQUIRED_FOR_RUN if args.command == "run" else ())
    try:
        config = OrchestratorConfig.from_env(required=required)
    except ConfigMissingError as e:
        logger.error(str(e))
        logger.error("See the environment variables in `cycle-engine --help`")
        return 1

    try:
        return await COMMANDS[args.command](config, args)
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    except CycleEngineError as e:
        logger.error(f"{e.kind}: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    load_env_file()

    args = parse_args(argv)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    if args.command != "run":
        return asyncio.run(main_async(args))

    # Ensure only one orchestrator runs at a time
    try:
        with singleton_lock():
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return 0
    except SingletonEngineError as e:
        logger.error(str(e))
        print(f"\n❌ {e}\n", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
