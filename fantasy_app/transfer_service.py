"""
Transfer service: load/derive a user's gameweek record, apply transfers and
chips under the record lock, and roll every user over when a deadline passes.
"""

from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, Tuple

from . import config
from . import transfer_store as store
from .storage import StorageError
from .transfer_state import (
    ConcurrentUpdateError,
    InvalidStateError,
    TransferState,
    TransferSummary,
    TransferValidationError,
    activate_chip,
    apply_transfers,
    deactivate_chip,
    default_transfer_state,
    recompute_week,
    rollover,
)


def _check_gameweek(gameweek: int) -> int:
    if isinstance(gameweek, bool) or not isinstance(gameweek, int):
        raise TransferValidationError(f"gameweek must be an integer, got {gameweek!r}")
    if not config.FIRST_GAMEWEEK <= gameweek <= config.LAST_GAMEWEEK:
        raise TransferValidationError(
            f"gameweek must be between {config.FIRST_GAMEWEEK} and {config.LAST_GAMEWEEK}, got {gameweek}"
        )
    return gameweek


def _require_open(gameweek: int) -> None:
    if store.is_gameweek_closed(gameweek):
        raise InvalidStateError(f"GW{gameweek} deadline has passed")


def _derive_from_history(user_id: str, gameweek: int) -> TransferState:
    prev_gw = store.latest_gameweek_before(user_id, gameweek)
    if prev_gw is None:
        # нет ни одной записи: это первый состав пользователя
        return default_transfer_state(gameweek, first_time=True)
    for gw in sorted({prev_gw, gameweek - 1}):
        if not store.is_gameweek_closed(gw):
            raise InvalidStateError(
                f"GW{gw} is still open, GW{gameweek} cannot be carried forward yet"
            )
    previous = store.load_transfer_state(user_id, prev_gw)
    return rollover(previous, gameweek)


def get_transfer_state(user_id: str, gameweek: int) -> TransferState:
    """Return the user's record for ``gameweek``, creating or repairing it if needed."""
    _check_gameweek(gameweek)
    with store.record_lock(user_id, gameweek):
        state = store.load_transfer_state(user_id, gameweek)
        if state is not None and state.free_transfers_at_week_start is not None:
            return state

        derived = _derive_from_history(user_id, gameweek)
        if state is None:
            try:
                return store.save_transfer_state(user_id, gameweek, derived, expected_version=None)
            except ConcurrentUpdateError:
                # created by a parallel request on another instance
                return store.load_transfer_state(user_id, gameweek)

        print(
            f"[TRANSFERS] {user_id} GW{gameweek}: week-start balance missing, "
            f"re-derived as {derived.free_transfers_at_week_start}"
        )
        repaired = recompute_week(state, derived.free_transfers_at_week_start)
        return store.save_transfer_state(user_id, gameweek, repaired, expected_version=state.version)


def make_transfers(
    user_id: str,
    gameweek: int,
    count: int = 1,
    player_out: Optional[Any] = None,
    player_in: Optional[Any] = None,
) -> Tuple[TransferState, TransferSummary]:
    """Apply ``count`` transfers for the user and persist the recomputed week."""
    _check_gameweek(gameweek)
    with store.record_lock(user_id, gameweek):
        _require_open(gameweek)
        state = get_transfer_state(user_id, gameweek)
        new_state, summary = apply_transfers(
            state, count, gameweek, max_transfers=config.MAX_TRANSFERS_PER_GAMEWEEK
        )
        saved = store.save_transfer_state(user_id, gameweek, new_state, expected_version=state.version)

    try:
        store.append_transfer(user_id, {
            "gameweek": gameweek,
            "playerOutId": player_out,
            "playerInId": player_in,
            "count": count,
            "transferCost": saved.points_deducted_this_week - state.points_deducted_this_week,
            "pointsDeductedThisWeek": saved.points_deducted_this_week,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
    except StorageError as e:
        # the transfer itself is committed; the history log is best-effort
        print(f"[TRANSFERS] {user_id} GW{gameweek}: history log write failed: {e}")
    print(
        f"[TRANSFERS] {user_id} GW{gameweek}: +{count} -> {summary.transfers_made} made, "
        f"{summary.free_transfers_used} free, {summary.paid_transfers} paid, "
        f"-{summary.points_deducted} pts"
    )
    return saved, summary


def set_chip(user_id: str, gameweek: int, chip: str, active: bool) -> TransferState:
    """Toggle wildcard/free hit for the gameweek and recompute the week."""
    _check_gameweek(gameweek)
    with store.record_lock(user_id, gameweek):
        _require_open(gameweek)
        state = get_transfer_state(user_id, gameweek)
        if active:
            new_state = activate_chip(state, chip, gameweek)
        else:
            new_state = deactivate_chip(state, chip, gameweek)
        if new_state == state:
            return state
        saved = store.save_transfer_state(user_id, gameweek, new_state, expected_version=state.version)
    print(f"[TRANSFERS] {user_id} GW{gameweek}: {chip} {'activated' if active else 'deactivated'}")
    return saved


def close_gameweek(gameweek: int, user_ids: Optional[Iterable[str]] = None) -> Dict[str, str]:
    """Roll every user's record from ``gameweek`` into the next gameweek.

    Meant to be run by an external scheduler once the deadline has passed.
    Writes the closed marker first, so transfers and chip changes for
    ``gameweek`` are refused from then on. Users already rolled over are
    reported as ``skipped``; running the job twice changes nothing.
    """
    _check_gameweek(gameweek)
    next_gw = gameweek + 1
    if next_gw > config.LAST_GAMEWEEK:
        raise TransferValidationError(f"GW{gameweek} is the last gameweek of the season")

    if store.mark_gameweek_closed(gameweek):
        print(f"[rollover] GW{gameweek} deadline passed, gameweek closed")

    users = list(user_ids) if user_ids is not None else store.list_users(gameweek)
    report: Dict[str, str] = {}
    for user_id in users:
        with store.record_lock(user_id, gameweek), store.record_lock(user_id, next_gw):
            previous = store.load_transfer_state(user_id, gameweek)
            if previous is None:
                report[user_id] = "missing"
                continue
            if store.load_transfer_state(user_id, next_gw) is not None:
                report[user_id] = "skipped"
                continue
            try:
                store.save_transfer_state(user_id, next_gw, rollover(previous, next_gw), expected_version=None)
            except ConcurrentUpdateError:
                report[user_id] = "skipped"
                continue
            report[user_id] = "rolled"
    rolled = sum(1 for v in report.values() if v == "rolled")
    print(f"[rollover] GW{gameweek} -> GW{next_gw}: {rolled}/{len(report)} users rolled over")
    return report


def transfer_message(summary: TransferSummary, gameweek: int) -> str:
    if gameweek == config.FIRST_GAMEWEEK:
        return "Transfer completed! (GW1 - Unlimited free transfers)"
    if summary.wildcard_used:
        return "Transfer completed! (Wildcard active - No cost)"
    if summary.free_hit_used:
        return "Transfer completed! (Free Hit active - No cost)"
    if summary.paid_transfers > 0:
        return f"Transfer completed! This will cost {summary.points_deducted} points."
    return "Transfer completed! Free transfer used."
