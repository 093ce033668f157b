"""
Schema DDL and version bookkeeping.

``apply_migrations`` is idempotent: every statement can be re-run and
each version is recorded once in ``schema_version``. At startup the engine
refuses to run unless the stored version equals SCHEMA_VERSION.
"""
from __future__ import annotations

import logging

from cycle_engine.storage.database import Database

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2

_V1 = [
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version INT PRIMARY KEY,
        applied_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    # ---------------------------------------------------------------- fixtures
    """
    CREATE TABLE IF NOT EXISTS fixtures (
        fixture_id TEXT PRIMARY KEY,
        kickoff TIMESTAMPTZ NOT NULL,
        home_team TEXT NOT NULL,
        away_team TEXT NOT NULL,
        league TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'scheduled',
        result_conflict BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_fixtures_kickoff ON fixtures (kickoff)",
    """
    CREATE TABLE IF NOT EXISTS odds_snapshots (
        id BIGSERIAL PRIMARY KEY,
        fixture_id TEXT NOT NULL REFERENCES fixtures (fixture_id),
        market TEXT NOT NULL,
        captured_at TIMESTAMPTZ NOT NULL,
        odds JSONB NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_odds_fixture_market
        ON odds_snapshots (fixture_id, market, captured_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS fixture_results (
        fixture_id TEXT PRIMARY KEY REFERENCES fixtures (fixture_id),
        home_score INT NOT NULL CHECK (home_score >= 0),
        away_score INT NOT NULL CHECK (away_score >= 0),
        outcome_1x2 TEXT NOT NULL,
        outcome_ou25 TEXT NOT NULL,
        finished_at TIMESTAMPTZ NOT NULL,
        recorded_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS result_conflicts (
        id BIGSERIAL PRIMARY KEY,
        fixture_id TEXT NOT NULL REFERENCES fixtures (fixture_id),
        stored_home INT NOT NULL,
        stored_away INT NOT NULL,
        incoming_home INT NOT NULL,
        incoming_away INT NOT NULL,
        detected_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        resolved_at TIMESTAMPTZ,
        resolution_note TEXT
    )
    """,
    # ------------------------------------------------------------------ cycles
    """
    CREATE TABLE IF NOT EXISTS cycles (
        cycle_id BIGINT PRIMARY KEY,
        state TEXT NOT NULL,
        selection_date DATE,
        open_time TIMESTAMPTZ,
        close_time TIMESTAMPTZ,
        resolve_deadline TIMESTAMPTZ,
        slate_hash TEXT,
        result_vector JSONB,
        start_tx_hash TEXT,
        resolve_tx_hash TEXT,
        halted_reason TEXT,
        cancel_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_cycles_state ON cycles (state)",
    """
    CREATE TABLE IF NOT EXISTS cycle_transitions (
        id BIGSERIAL PRIMARY KEY,
        cycle_id BIGINT NOT NULL REFERENCES cycles (cycle_id),
        from_state TEXT,
        to_state TEXT NOT NULL,
        trigger TEXT NOT NULL,
        tx_hash TEXT,
        detail TEXT,
        occurred_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS slates (
        cycle_id BIGINT PRIMARY KEY REFERENCES cycles (cycle_id),
        slate_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS slate_fixtures (
        cycle_id BIGINT NOT NULL REFERENCES slates (cycle_id),
        position INT NOT NULL CHECK (position BETWEEN 0 AND 9),
        fixture_id TEXT NOT NULL REFERENCES fixtures (fixture_id),
        kickoff TIMESTAMPTZ NOT NULL,
        home_odds BIGINT NOT NULL,
        draw_odds BIGINT NOT NULL,
        away_odds BIGINT NOT NULL,
        over_odds BIGINT NOT NULL,
        under_odds BIGINT NOT NULL,
        odds_captured_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (cycle_id, position),
        UNIQUE (cycle_id, fixture_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS selection_runs (
        id BIGSERIAL PRIMARY KEY,
        cycle_id BIGINT NOT NULL,
        run_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        outcome TEXT NOT NULL,
        candidates INT NOT NULL DEFAULT 0,
        detail TEXT
    )
    """,
    # ------------------------------------------------------------------- chain
    """
    CREATE TABLE IF NOT EXISTS chain_transactions (
        tx_hash TEXT PRIMARY KEY,
        cycle_id BIGINT NOT NULL,
        kind TEXT NOT NULL,
        nonce BIGINT NOT NULL,
        raw_tx BYTEA,
        status TEXT NOT NULL,
        max_priority_fee BIGINT,
        max_fee BIGINT,
        block_number BIGINT,
        block_hash TEXT,
        error TEXT,
        submitted_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_chain_tx_cycle_kind
        ON chain_transactions (cycle_id, kind, submitted_at DESC)
    """,
    """
    CREATE TABLE IF NOT EXISTS chain_cursor (
        consumer TEXT PRIMARY KEY,
        last_block BIGINT NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processed_events (
        consumer TEXT NOT NULL,
        tx_hash TEXT NOT NULL,
        log_index INT NOT NULL,
        block_number BIGINT NOT NULL,
        event_name TEXT NOT NULL,
        processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (consumer, tx_hash, log_index)
    )
    """,
    # --------------------------------------------------------- slips/analytics
    """
    CREATE TABLE IF NOT EXISTS slips (
        slip_id BIGINT PRIMARY KEY,
        cycle_id BIGINT NOT NULL,
        player TEXT NOT NULL,
        placed_at TIMESTAMPTZ NOT NULL,
        tx_hash TEXT NOT NULL,
        log_index INT NOT NULL,
        is_evaluated BOOLEAN NOT NULL DEFAULT FALSE,
        correct_count INT,
        score NUMERIC,
        rank INT,
        refund_eligible BOOLEAN NOT NULL DEFAULT FALSE,
        evaluated_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_slips_cycle ON slips (cycle_id)",
    "CREATE INDEX IF NOT EXISTS idx_slips_player ON slips (player)",
    """
    CREATE TABLE IF NOT EXISTS slip_predictions (
        slip_id BIGINT NOT NULL REFERENCES slips (slip_id),
        position INT NOT NULL CHECK (position BETWEEN 0 AND 9),
        fixture_id TEXT NOT NULL,
        market TEXT NOT NULL,
        selection TEXT NOT NULL,
        selected_odd BIGINT NOT NULL,
        is_hit BOOLEAN,
        PRIMARY KEY (slip_id, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leaderboard_entries (
        cycle_id BIGINT NOT NULL,
        slip_id BIGINT NOT NULL REFERENCES slips (slip_id),
        player TEXT NOT NULL,
        score NUMERIC NOT NULL,
        correct_count INT NOT NULL,
        placed_at TIMESTAMPTZ NOT NULL,
        rank INT NOT NULL,
        PRIMARY KEY (cycle_id, slip_id),
        UNIQUE (cycle_id, rank) DEFERRABLE INITIALLY DEFERRED
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_stats (
        player TEXT PRIMARY KEY,
        cycles_entered INT NOT NULL DEFAULT 0,
        total_wins INT NOT NULL DEFAULT 0,
        lifetime_score NUMERIC NOT NULL DEFAULT 0,
        current_streak INT NOT NULL DEFAULT 0,
        longest_streak INT NOT NULL DEFAULT 0,
        last_cycle_id BIGINT,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS prize_claims (
        cycle_id BIGINT NOT NULL,
        player TEXT NOT NULL,
        rank INT NOT NULL,
        amount NUMERIC NOT NULL,
        tx_hash TEXT NOT NULL,
        log_index INT NOT NULL,
        claimed_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (tx_hash, log_index)
    )
    """,
]

# The vector sent with resolveCycle lives apart from result_vector, which is
# only set once the cycle is Resolved.
_V2 = [
    "ALTER TABLE cycles ADD COLUMN IF NOT EXISTS submitted_result_vector JSONB",
    """
    UPDATE cycles
    SET submitted_result_vector = result_vector, result_vector = NULL
    WHERE state NOT IN ('resolved', 'evaluated') AND result_vector IS NOT NULL
    """,
    "ALTER TABLE cycles DROP CONSTRAINT IF EXISTS cycles_result_vector_state",
    """
    ALTER TABLE cycles ADD CONSTRAINT cycles_result_vector_state
        CHECK ((result_vector IS NOT NULL) = (state IN ('resolved', 'evaluated')))
    """,
]

MIGRATIONS: dict[int, list[str]] = {1: _V1, 2: _V2}

# Child tables first; used by tests to reset state.
ALL_TABLES = [
    "prize_claims",
    "user_stats",
    "leaderboard_entries",
    "slip_predictions",
    "slips",
    "processed_events",
    "chain_cursor",
    "chain_transactions",
    "selection_runs",
    "slate_fixtures",
    "slates",
    "cycle_transitions",
    "cycles",
    "result_conflicts",
    "fixture_results",
    "odds_snapshots",
    "fixtures",
]


async def current_version(db: Database) -> int:
    """Highest applied version, or 0 on an empty database."""
    async with db.connection() as conn:
        exists = await conn.fetchval("SELECT to_regclass('schema_version') IS NOT NULL")
        if not exists:
            return 0
        return await conn.fetchval("SELECT COALESCE(MAX(version), 0) FROM schema_version")


async def apply_migrations(db: Database) -> int:
    """Apply every pending migration in one transaction per version."""
    applied = await current_version(db)
    for version in sorted(MIGRATIONS):
        if version <= applied:
            continue
        logger.info(f"Applying schema migration v{version}")
        async with db.transaction() as conn:
            for statement in MIGRATIONS[version]:
                await conn.execute(statement)
            await conn.execute(
                "INSERT INTO schema_version (version) VALUES ($1) ON CONFLICT DO NOTHING",
                version,
            )
        applied = version
    logger.info(f"Schema at version {applied}")
    return applied
