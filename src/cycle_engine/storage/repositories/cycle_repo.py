"""
Cycle repository.

Every state change is one transaction: the ``cycles`` row is locked, the
edge is validated against the state machine, the row is updated and a
``cycle_transitions`` audit row appended. Replaying the audit log
reproduces the stored state.
"""
from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, Optional

from cycle_engine.core.outcomes import FixtureOutcome
from cycle_engine.core.states import CycleState, Trigger, can_transition
from cycle_engine.errors import InvalidTransitionError
from cycle_engine.storage.models import Cycle, CycleTransition
from cycle_engine.storage.repositories.base import BaseRepository

logger = logging.getLogger(__name__)

# Columns a transition may set alongside the state.
_TRANSITION_FIELDS = {
    "open_time",
    "close_time",
    "resolve_deadline",
    "slate_hash",
    "start_tx_hash",
    "resolve_tx_hash",
    "cancel_reason",
}


def _vector_json(vector: list[FixtureOutcome]) -> str:
    return json.dumps([o.to_json() for o in vector])


class CycleRepository(BaseRepository[Cycle]):
    """Repository for cycles and their transition log."""

    table_name = "cycles"
    model_class = Cycle

    @asynccontextmanager
    async def _transaction(self, conn=None):
        if conn is not None:
            async with conn.transaction():
                yield conn
        else:
            async with self.db.transaction() as new_conn:
                yield new_conn

    async def get(self, cycle_id: int, conn=None, for_update: bool = False) -> Optional[Cycle]:
        query = "SELECT * FROM cycles WHERE cycle_id = $1"
        if for_update:
            query += " FOR UPDATE"
        record = await self._executor(conn).fetchrow(query, cycle_id)
        return self._record_to_model(record)

    async def max_id(self) -> int:
        return await self.db.fetchval("SELECT COALESCE(MAX(cycle_id), 0) FROM cycles")

    async def create_pending(self, cycle_id: int, selection_date: date) -> Cycle:
        """Insert a Pending cycle and its first audit row. Idempotent by id."""
        async with self.db.transaction() as conn:
            record = await conn.fetchrow(
                """
                INSERT INTO cycles (cycle_id, state, selection_date)
                VALUES ($1, $2, $3)
                ON CONFLICT (cycle_id) DO NOTHING
                RETURNING *
                """,
                cycle_id,
                CycleState.PENDING.value,
                selection_date,
            )
            if record is None:
                return await self.get(cycle_id, conn=conn)
            await self._append_transition(
                conn, cycle_id, None, CycleState.PENDING, Trigger.SELECTED.value, None, "created"
            )
            return self._record_to_model(record)

    async def find_unselected_pending(self) -> Optional[Cycle]:
        """A Pending cycle whose selection failed earlier (no slate yet)."""
        record = await self.db.fetchrow(
            """
            SELECT c.* FROM cycles c
            WHERE c.state = 'pending'
              AND NOT EXISTS (SELECT 1 FROM slates s WHERE s.cycle_id = c.cycle_id)
            ORDER BY c.cycle_id DESC
            LIMIT 1
            """
        )
        return self._record_to_model(record)

    async def set_schedule(
        self,
        cycle_id: int,
        selection_date: date,
        open_time: datetime,
        close_time: datetime,
        resolve_deadline: datetime,
        slate_hash: str,
        conn=None,
    ) -> None:
        """Attach slate timing to a Pending cycle. Only valid before it opens."""
        status = await self._executor(conn).execute(
            """
            UPDATE cycles
            SET selection_date = $2, open_time = $3, close_time = $4, resolve_deadline = $5,
                slate_hash = $6, updated_at = NOW()
            WHERE cycle_id = $1 AND state = 'pending'
            """,
            cycle_id,
            selection_date,
            open_time,
            close_time,
            resolve_deadline,
            slate_hash,
        )
        if status == "UPDATE 0":
            raise InvalidTransitionError(cycle_id, "non-pending", "schedule")

    async def active(self) -> list[Cycle]:
        """Cycles not yet terminal, oldest first."""
        records = await self.db.fetch(
            """
            SELECT * FROM cycles
            WHERE state NOT IN ('evaluated', 'cancelled')
            ORDER BY cycle_id
            """
        )
        return self._records_to_models(records)

    async def recent(self, limit: int = 20) -> list[Cycle]:
        records = await self.db.fetch(
            "SELECT * FROM cycles ORDER BY cycle_id DESC LIMIT $1", limit
        )
        return self._records_to_models(records)

    async def evaluated_ids(self, conn=None) -> list[int]:
        records = await self._executor(conn).fetch(
            "SELECT cycle_id FROM cycles WHERE state = 'evaluated' ORDER BY cycle_id"
        )
        return [r["cycle_id"] for r in records]

    async def transition(
        self,
        cycle_id: int,
        expected: CycleState,
        new_state: CycleState,
        trigger: Trigger,
        tx_hash: Optional[str] = None,
        detail: Optional[str] = None,
        result_vector: Optional[list[FixtureOutcome]] = None,
        submitted_vector: Optional[list[FixtureOutcome]] = None,
        conn=None,
        **fields: Any,
    ) -> Cycle:
        """
        Move a cycle from ``expected`` to ``new_state`` atomically.

        The result vector is stored only by a transition into Resolved or
        Evaluated (defaulting to the submitted vector); ``submitted_vector``
        records what resolveCycle was sent with.

        With ``conn`` the change joins the caller's transaction (as a
        savepoint), so it commits or rolls back with the caller's writes.

        Raises:
            InvalidTransitionError: the stored state is not ``expected`` or
                the edge is not part of the state machine.
        """
        unknown = set(fields) - _TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"Unknown cycle fields: {sorted(unknown)}")
        if result_vector is not None and not new_state.has_result_vector:
            raise ValueError(f"Cycle {cycle_id} cannot hold a result vector while {new_state.value}")
        if not can_transition(expected, new_state):
            raise InvalidTransitionError(cycle_id, expected.value, new_state.value)

        async with self._transaction(conn) as conn:
            current = await self.get(cycle_id, conn=conn, for_update=True)
            if current is None or current.state != expected:
                found = current.state.value if current else "missing"
                raise InvalidTransitionError(cycle_id, found, new_state.value)

            assignments = ["state = $2", "updated_at = NOW()"]
            args: list[Any] = [cycle_id, new_state.value]
            if new_state.has_result_vector:
                vector = result_vector or current.outcomes or current.submitted_outcomes
                if vector is None:
                    raise ValueError(f"Cycle {cycle_id} needs a result vector to become {new_state.value}")
                args.append(_vector_json(vector))
                assignments.append(f"result_vector = ${len(args)}::jsonb")
            if submitted_vector is not None:
                args.append(_vector_json(submitted_vector))
                assignments.append(f"submitted_result_vector = ${len(args)}::jsonb")
            for name, value in sorted(fields.items()):
                args.append(value)
                assignments.append(f"{name} = ${len(args)}")

            record = await conn.fetchrow(
                f"UPDATE cycles SET {', '.join(assignments)} WHERE cycle_id = $1 RETURNING *",
                *args,
            )
            await self._append_transition(
                conn, cycle_id, expected, new_state, trigger.value, tx_hash, detail
            )

        logger.info(
            f"Cycle {cycle_id}: {expected.value} -> {new_state.value} ({trigger.value})"
            + (f" tx={tx_hash}" if tx_hash else "")
        )
        return self._record_to_model(record)

    async def set_halted(self, cycle_id: int, reason: str) -> None:
        await self.db.execute(
            "UPDATE cycles SET halted_reason = $2, updated_at = NOW() WHERE cycle_id = $1",
            cycle_id,
            reason,
        )

    async def clear_halt(self, cycle_id: int) -> bool:
        status = await self.db.execute(
            """
            UPDATE cycles SET halted_reason = NULL, updated_at = NOW()
            WHERE cycle_id = $1 AND halted_reason IS NOT NULL
            """,
            cycle_id,
        )
        return status != "UPDATE 0"

    async def set_start_tx(self, cycle_id: int, tx_hash: str) -> None:
        await self.db.execute(
            "UPDATE cycles SET start_tx_hash = $2, updated_at = NOW() WHERE cycle_id = $1",
            cycle_id,
            tx_hash,
        )

    async def set_resolve_tx(self, cycle_id: int, tx_hash: str) -> None:
        await self.db.execute(
            "UPDATE cycles SET resolve_tx_hash = $2, updated_at = NOW() WHERE cycle_id = $1",
            cycle_id,
            tx_hash,
        )

    async def transitions(self, cycle_id: int) -> list[CycleTransition]:
        records = await self.db.fetch(
            "SELECT * FROM cycle_transitions WHERE cycle_id = $1 ORDER BY id", cycle_id
        )
        return [CycleTransition(**dict(r)) for r in records]

    async def _append_transition(
        self,
        conn,
        cycle_id: int,
        from_state: Optional[CycleState],
        to_state: CycleState,
        trigger: str,
        tx_hash: Optional[str],
        detail: Optional[str],
    ) -> None:
        await conn.execute(
            """
            INSERT INTO cycle_transitions (cycle_id, from_state, to_state, trigger, tx_hash, detail)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            cycle_id,
            from_state.value if from_state else None,
            to_state.value,
            trigger,
            tx_hash,
            detail,
        )
