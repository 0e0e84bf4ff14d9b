"""
Transfer state reconciliation for the fantasy game.

One ``TransferState`` record exists per user per gameweek. Every transfer
recomputes the week's deduction and remaining free transfers from the
balance captured when the gameweek opened (``free_transfers_at_week_start``),
never from the running balance. Rollover to the next gameweek happens once,
when the deadline passes, and is a no-op for a gameweek already processed.
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, Optional, Tuple

from .config import (
    FIRST_GAMEWEEK,
    FREE_HIT,
    FREE_TRANSFER_CAP,
    MAX_TRANSFERS_PER_GAMEWEEK,
    TRANSFER_CHIPS,
    TRANSFER_HIT_COST,
    UNLIMITED_TRANSFERS,
    WILDCARD,
)


class TransferError(Exception):
    """Base class for transfer reconciliation failures."""


class TransferValidationError(TransferError, ValueError):
    """Caller passed input that can never be applied."""


class InvalidStateError(TransferError):
    """Stored record is inconsistent, stale, or missing its week-start balance."""


class ConcurrentUpdateError(TransferError):
    """Another request updated the same record first."""


@dataclass(frozen=True)
class TransferCost:
    free_used: int
    paid: int
    points_deducted: int


@dataclass(frozen=True)
class TransferSummary:
    transfers_made: int
    free_transfers_used: int
    paid_transfers: int
    points_deducted: int
    wildcard_used: bool = False
    free_hit_used: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transfersMade": self.transfers_made,
            "freeTransfersUsed": self.free_transfers_used,
            "paidTransfers": self.paid_transfers,
            "pointsDeducted": self.points_deducted,
            "wildcardUsed": self.wildcard_used,
            "freeHitUsed": self.free_hit_used,
        }


# python attribute -> stored JSON key
_FIELD_KEYS = {
    "free_transfers_available": "freeTransfersAvailable",
    "free_transfers_at_week_start": "freeTransfersAtWeekStart",
    "transfers_made_this_week": "transfersMadeThisWeek",
    "points_deducted_this_week": "pointsDeductedThisWeek",
    "wildcard_active": "wildcardActive",
    "free_hit_active": "freeHitActive",
    "last_gameweek_processed": "lastGameweekProcessed",
    "version": "version",
}


@dataclass(frozen=True)
class TransferState:
    free_transfers_available: int = 1
    free_transfers_at_week_start: Optional[int] = 1
    transfers_made_this_week: int = 0
    points_deducted_this_week: int = 0
    wildcard_active: bool = False
    free_hit_active: bool = False
    last_gameweek_processed: int = FIRST_GAMEWEEK
    version: int = 0

    @property
    def chip_active(self) -> bool:
        return self.wildcard_active or self.free_hit_active

    def to_dict(self) -> Dict[str, Any]:
        return {_FIELD_KEYS[k]: v for k, v in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TransferState":
        if not isinstance(data, dict):
            raise InvalidStateError(f"transfer state must be an object, got {type(data).__name__}")
        values: Dict[str, Any] = {}
        for attr, key in _FIELD_KEYS.items():
            if key in data:
                values[attr] = data[key]
        # старые записи хранили баланс под savedFreeTransfers
        if "free_transfers_available" not in values and "savedFreeTransfers" in data:
            values["free_transfers_available"] = data["savedFreeTransfers"]
        # no captured balance in the record means "missing", not the default
        values.setdefault("free_transfers_at_week_start", None)
        try:
            for attr in ("free_transfers_available", "transfers_made_this_week",
                         "points_deducted_this_week", "last_gameweek_processed", "version"):
                if attr in values:
                    values[attr] = int(values[attr])
            if values["free_transfers_at_week_start"] is not None:
                values["free_transfers_at_week_start"] = int(values["free_transfers_at_week_start"])
        except (TypeError, ValueError) as e:
            raise InvalidStateError(f"non-numeric transfer state field: {e}") from e
        for attr in ("wildcard_active", "free_hit_active"):
            if attr in values:
                values[attr] = bool(values[attr])
        return cls(**values)


def is_unlimited(free_transfers: Optional[int]) -> bool:
    return free_transfers is not None and free_transfers >= UNLIMITED_TRANSFERS


def _check_count(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TransferValidationError(f"{name} must be an integer, got {value!r}")
    if value < 0:
        raise TransferValidationError(f"{name} must be non-negative, got {value}")
    return value


def default_transfer_state(gameweek: int, first_time: bool = False) -> TransferState:
    """Initial record for a user entering squad selection for ``gameweek``.

    Gameweek 1 and a user's very first squad get unlimited free transfers;
    everyone else starts the week with one.
    """
    free = UNLIMITED_TRANSFERS if first_time or gameweek == FIRST_GAMEWEEK else 1
    return TransferState(
        free_transfers_available=free,
        free_transfers_at_week_start=free,
        last_gameweek_processed=gameweek,
    )


def compute_transfer_cost(
    transfers: int,
    free_at_week_start: int,
    gameweek: int,
    wildcard_active: bool = False,
    free_hit_active: bool = False,
) -> TransferCost:
    """Split a week's transfers into free and paid ones.

    ``free_at_week_start`` must be the balance captured when the gameweek
    opened, not whatever is left of it after earlier transfers.
    """
    _check_count("transfers", transfers)
    _check_count("free_at_week_start", free_at_week_start)

    if wildcard_active or free_hit_active:
        return TransferCost(free_used=0, paid=0, points_deducted=0)

    if gameweek == FIRST_GAMEWEEK or is_unlimited(free_at_week_start):
        return TransferCost(free_used=transfers, paid=0, points_deducted=0)

    free_used = min(transfers, free_at_week_start)
    paid = max(0, transfers - free_used)
    return TransferCost(free_used=free_used, paid=paid, points_deducted=paid * TRANSFER_HIT_COST)


def _reconcile(state: TransferState, original_free_transfers: int, gameweek: int) -> Tuple[TransferState, TransferCost]:
    cost = compute_transfer_cost(
        state.transfers_made_this_week,
        original_free_transfers,
        gameweek,
        wildcard_active=state.wildcard_active,
        free_hit_active=state.free_hit_active,
    )
    if is_unlimited(original_free_transfers) or gameweek == FIRST_GAMEWEEK:
        available = original_free_transfers
    else:
        available = max(0, original_free_transfers - cost.free_used)
    reconciled = replace(
        state,
        free_transfers_available=available,
        free_transfers_at_week_start=original_free_transfers,
        points_deducted_this_week=cost.points_deducted,
    )
    return reconciled, cost


def _require_current(state: TransferState, gameweek: int, original_free_transfers: Optional[int]) -> int:
    if original_free_transfers is None:
        raise InvalidStateError(
            f"week-start free transfer balance missing for GW{gameweek}; re-derive it with rollover"
        )
    if state.last_gameweek_processed != gameweek:
        raise InvalidStateError(
            f"transfer state belongs to GW{state.last_gameweek_processed}, not GW{gameweek}"
        )
    if (state.free_transfers_at_week_start is not None
            and state.free_transfers_at_week_start != original_free_transfers):
        raise InvalidStateError(
            f"week-start balance mismatch for GW{gameweek}: "
            f"record has {state.free_transfers_at_week_start}, got {original_free_transfers}"
        )
    return _check_count("original_free_transfers", original_free_transfers)


def validate_transfer_state(state: TransferState) -> None:
    """Raise ``InvalidStateError`` unless the stored record is self-consistent."""
    for attr in ("free_transfers_available", "transfers_made_this_week", "points_deducted_this_week", "version"):
        value = getattr(state, attr)
        if value < 0:
            raise InvalidStateError(f"{attr} is negative: {value}")
    if state.last_gameweek_processed < FIRST_GAMEWEEK:
        raise InvalidStateError(f"invalid gameweek {state.last_gameweek_processed}")
    if state.wildcard_active and state.free_hit_active:
        raise InvalidStateError("wildcard and free hit cannot both be active")

    start = state.free_transfers_at_week_start
    if start is None:
        raise InvalidStateError("week-start free transfer balance missing")
    if start < 0:
        raise InvalidStateError(f"free_transfers_at_week_start is negative: {start}")
    if state.free_transfers_available > start:
        raise InvalidStateError(
            f"free transfers available ({state.free_transfers_available}) exceed week-start balance ({start})"
        )
    expected, _ = _reconcile(state, start, state.last_gameweek_processed)
    if expected.free_transfers_available != state.free_transfers_available:
        raise InvalidStateError(
            f"free transfers available {state.free_transfers_available} != "
            f"{expected.free_transfers_available} after {state.transfers_made_this_week} transfers"
        )
    if expected.points_deducted_this_week != state.points_deducted_this_week:
        raise InvalidStateError(
            f"points deducted {state.points_deducted_this_week} != "
            f"{expected.points_deducted_this_week} for {state.transfers_made_this_week} transfers"
        )


def recompute_week(state: TransferState, original_free_transfers: int) -> TransferState:
    """Rebuild a record's derived fields around a re-derived week-start balance."""
    _check_count("original_free_transfers", original_free_transfers)
    reconciled, _ = _reconcile(state, original_free_transfers, state.last_gameweek_processed)
    return reconciled


def apply_transfer(
    state: TransferState,
    original_free_transfers: Optional[int],
    gameweek: int,
    max_transfers: int = MAX_TRANSFERS_PER_GAMEWEEK,
) -> Tuple[TransferState, TransferSummary]:
    """Record one more transfer for ``gameweek`` and recompute the week in full."""
    original = _require_current(state, gameweek, original_free_transfers)

    transfers = state.transfers_made_this_week + 1
    if transfers > max_transfers:
        raise InvalidStateError(
            f"GW{gameweek}: {transfers} transfers exceeds the limit of {max_transfers}"
        )

    new_state, cost = _reconcile(replace(state, transfers_made_this_week=transfers), original, gameweek)
    summary = TransferSummary(
        transfers_made=transfers,
        free_transfers_used=cost.free_used,
        paid_transfers=cost.paid,
        points_deducted=cost.points_deducted,
        wildcard_used=state.wildcard_active,
        free_hit_used=state.free_hit_active,
    )
    return new_state, summary


def apply_transfers(
    state: TransferState,
    count: int,
    gameweek: int,
    max_transfers: int = MAX_TRANSFERS_PER_GAMEWEEK,
) -> Tuple[TransferState, TransferSummary]:
    """Apply ``count`` transfers at once; nothing is applied if any of them fails."""
    _check_count("count", count)
    if count == 0:
        raise TransferValidationError("count must be at least 1")
    if state.transfers_made_this_week + count > max_transfers:
        raise TransferValidationError(
            f"GW{gameweek}: {state.transfers_made_this_week} + {count} transfers exceeds the limit of {max_transfers}"
        )
    summary = None
    for _ in range(count):
        state, summary = apply_transfer(state, state.free_transfers_at_week_start, gameweek, max_transfers)
    return state, summary


def rollover(
    previous: TransferState,
    next_gameweek: Optional[int] = None,
    cap: int = FREE_TRANSFER_CAP,
) -> TransferState:
    """Carry a finished gameweek's record into the next one.

    Re-running for a gameweek that was already processed returns the record
    unchanged, so a repeated deadline job cannot credit free transfers twice.
    """
    if next_gameweek is None:
        next_gameweek = previous.last_gameweek_processed + 1
    if next_gameweek <= previous.last_gameweek_processed:
        return previous

    carried = previous.free_transfers_available
    if previous.chip_active:
        free = 1
    elif (previous.last_gameweek_processed == FIRST_GAMEWEEK
          or is_unlimited(previous.free_transfers_at_week_start)
          or is_unlimited(carried)):
        # unlimited only ever lasts one gameweek
        free = 1
    else:
        # a skipped gameweek still accrues its free transfer
        gap = next_gameweek - previous.last_gameweek_processed
        free = min(cap, carried + gap)

    return TransferState(
        free_transfers_available=free,
        free_transfers_at_week_start=free,
        transfers_made_this_week=0,
        points_deducted_this_week=0,
        wildcard_active=False,
        free_hit_active=False,
        last_gameweek_processed=next_gameweek,
    )


def _check_chip(chip: str) -> str:
    if chip not in TRANSFER_CHIPS:
        raise TransferValidationError(
            f"unknown transfer chip {chip!r}; expected one of {', '.join(TRANSFER_CHIPS)}"
        )
    return chip


def activate_chip(state: TransferState, chip: str, gameweek: int) -> TransferState:
    """Turn on wildcard/free hit for the week; its transfers become free."""
    _check_chip(chip)
    original = _require_current(state, gameweek, state.free_transfers_at_week_start)
    if gameweek == FIRST_GAMEWEEK:
        raise TransferValidationError("this chip cannot be used in Gameweek 1")
    other_active = state.free_hit_active if chip == WILDCARD else state.wildcard_active
    if other_active:
        raise TransferValidationError("only one transfer chip can be active per gameweek")
    flags = {"wildcard_active": True} if chip == WILDCARD else {"free_hit_active": True}
    new_state, _ = _reconcile(replace(state, **flags), original, gameweek)
    return new_state


def deactivate_chip(state: TransferState, chip: str, gameweek: int) -> TransferState:
    _check_chip(chip)
    original = _require_current(state, gameweek, state.free_transfers_at_week_start)
    flags = {"wildcard_active": False} if chip == WILDCARD else {"free_hit_active": False}
    new_state, _ = _reconcile(replace(state, **flags), original, gameweek)
    return new_state


__all__ = [
    "FREE_HIT",
    "WILDCARD",
    "ConcurrentUpdateError",
    "InvalidStateError",
    "TransferCost",
    "TransferError",
    "TransferState",
    "TransferSummary",
    "TransferValidationError",
    "activate_chip",
    "apply_transfer",
    "apply_transfers",
    "compute_transfer_cost",
    "deactivate_chip",
    "default_transfer_state",
    "is_unlimited",
    "recompute_week",
    "rollover",
    "validate_transfer_state",
]
