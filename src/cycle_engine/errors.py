"""
Error kinds for the cycle orchestrator.

Every failure the orchestrator reasons about is a subclass of
CycleEngineError carrying a stable ``kind`` string and a ``transient`` flag.

Propagation policy:
    - transient kinds (TransientNetwork, RateLimited, NonceGap, ...) are
      retried locally with bounded jittered backoff; on exhaustion they become
      operator alerts but never advance cycle state
    - ImmutableViolation and ResultConflict are hard errors and are never
      silently resolved
    - SlateMismatch cancels the cycle
    - TransactionReverted halts the cycle for an operator decision
    - SchemaMismatch and ConfigMissing are fatal at startup
"""
from __future__ import annotations

from typing import Optional


class CycleEngineError(Exception):
    """Base class for all orchestrator errors."""

    kind: str = "Unknown"
    transient: bool = False


# =============================================================================
# TRANSIENT
# =============================================================================


class TransientNetworkError(CycleEngineError):
    """Timeout, connection reset, 5xx or similar recoverable I/O failure."""

    kind = "TransientNetwork"
    transient = True

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RateLimitedError(TransientNetworkError):
    """Upstream rejected the request with a rate limit."""

    kind = "RateLimited"


class ConfirmationTimeoutError(CycleEngineError):
    """A transaction did not reach the required depth within its deadline."""

    kind = "ConfirmationTimeout"
    transient = True

    def __init__(self, tx_hash: str, waited_seconds: float):
        self.tx_hash = tx_hash
        self.waited_seconds = waited_seconds
        super().__init__(f"Transaction {tx_hash} unconfirmed after {waited_seconds:.0f}s")


# =============================================================================
# FIXTURE STORE
# =============================================================================


class ImmutableViolationError(CycleEngineError):
    """An immutable value was asked to change."""

    kind = "ImmutableViolation"


class ImmutableKickoffError(ImmutableViolationError):
    """Kickoff of an existing fixture differs from the stored value."""

    def __init__(self, fixture_id: str, stored, incoming):
        self.fixture_id = fixture_id
        self.stored = stored
        self.incoming = incoming
        super().__init__(
            f"Kickoff for fixture {fixture_id} is immutable "
            f"(stored={stored}, incoming={incoming})"
        )


class SlateAlreadyFrozenError(ImmutableViolationError):
    """freezeSlate is single-shot per cycle."""

    def __init__(self, cycle_id: int):
        self.cycle_id = cycle_id
        super().__init__(f"Slate for cycle {cycle_id} is already frozen")


class ResultConflictError(CycleEngineError):
    """A fixture result was re-submitted with a different score."""

    kind = "ResultConflict"

    def __init__(self, fixture_id: str, stored: tuple[int, int], incoming: tuple[int, int]):
        self.fixture_id = fixture_id
        self.stored = stored
        self.incoming = incoming
        super().__init__(
            f"Result conflict for fixture {fixture_id}: "
            f"stored {stored[0]}-{stored[1]}, incoming {incoming[0]}-{incoming[1]}"
        )


class InsufficientOddsError(CycleEngineError):
    """A slate fixture lacks a snapshot for a required market."""

    kind = "InsufficientOdds"

    def __init__(self, fixture_id: str, market: str):
        self.fixture_id = fixture_id
        self.market = market
        super().__init__(f"Fixture {fixture_id} has no {market} odds snapshot")


class InvalidResultPayloadError(CycleEngineError):
    """The results feed returned a finished fixture without a usable score."""

    kind = "InvalidResultPayload"

    def __init__(self, fixture_id: str, reason: str):
        self.fixture_id = fixture_id
        self.reason = reason
        super().__init__(f"Rejected feed payload for fixture {fixture_id}: {reason}")


class UnknownFixtureError(CycleEngineError):
    """A referenced fixture is not in the store."""

    kind = "UnknownFixture"


# =============================================================================
# SELECTION / CYCLES
# =============================================================================


class InsufficientFixturesError(CycleEngineError):
    """Fewer than ten fixtures qualify for a slate."""

    kind = "InsufficientFixtures"

    def __init__(self, found: int, required: int = 10):
        self.found = found
        self.required = required
        super().__init__(f"Only {found} qualifying fixtures, {required} required")


class SlateMismatchError(CycleEngineError):
    """The chain reported a slate hash (or cycle id) other than the one persisted."""

    kind = "SlateMismatch"

    def __init__(self, cycle_id: int, expected: str, actual: str):
        self.cycle_id = cycle_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Cycle {cycle_id}: chain slate {actual} does not match persisted {expected}"
        )


class InvalidTransitionError(CycleEngineError):
    """A requested state change violates the cycle partial order."""

    kind = "InvalidTransition"

    def __init__(self, cycle_id: int, from_state: str, to_state: str):
        self.cycle_id = cycle_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Cycle {cycle_id}: illegal transition {from_state} -> {to_state}")


# =============================================================================
# CHAIN
# =============================================================================


class ChainError(CycleEngineError):
    """Base class for submission failures reported by the node."""

    kind = "Chain"


class NonceGapError(ChainError):
    """Node rejected the nonce (too low / too high)."""

    kind = "NonceGap"
    transient = True


class AlreadyKnownError(ChainError):
    """Node already has this transaction; treated as a successful broadcast."""

    kind = "AlreadyKnown"
    transient = True


class UnderpricedError(ChainError):
    """Replacement or initial fee too low."""

    kind = "Underpriced"
    transient = True


class TransactionRevertedError(ChainError):
    """Execution reverted, either at estimation or in a mined receipt."""

    kind = "TransactionReverted"

    def __init__(self, message: str, tx_hash: Optional[str] = None):
        self.tx_hash = tx_hash
        super().__init__(message)


# =============================================================================
# STARTUP
# =============================================================================


class SchemaMismatchError(CycleEngineError):
    """Stored schema version differs from the version this code expects."""

    kind = "SchemaMismatch"

    def __init__(self, stored: Optional[int], expected: int):
        self.stored = stored
        self.expected = expected
        super().__init__(
            f"Schema version {stored} does not match expected {expected}; "
            f"run 'cycle-engine migrate'"
        )


class ConfigMissingError(CycleEngineError):
    """A required configuration value is absent or malformed."""

    kind = "ConfigMissing"

    def __init__(self, names: list[str]):
        self.names = names
        super().__init__(f"Missing required configuration: {', '.join(names)}")
