import dataclasses
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from fantasy_app.config import UNLIMITED_TRANSFERS
from fantasy_app.transfer_state import (
    FREE_HIT,
    WILDCARD,
    InvalidStateError,
    TransferState,
    TransferValidationError,
    activate_chip,
    apply_transfer,
    apply_transfers,
    compute_transfer_cost,
    deactivate_chip,
    default_transfer_state,
    rollover,
    validate_transfer_state,
)


def _week(gw=5, free=1, **extra):
    return TransferState(
        free_transfers_available=free,
        free_transfers_at_week_start=free,
        last_gameweek_processed=gw,
        **extra,
    )


# ---------- compute_transfer_cost ----------

@pytest.mark.parametrize("free", [0, 1, 2, 3])
@pytest.mark.parametrize("transfers", [0, 1, 2, 5])
def test_cost_splits_free_and_paid(transfers, free):
    cost = compute_transfer_cost(transfers, free, gameweek=7)
    assert cost.free_used == min(transfers, free)
    assert cost.paid == max(0, transfers - min(transfers, free))
    assert cost.points_deducted == cost.paid * 4


@pytest.mark.parametrize("transfers,free", [(0, 0), (3, 0), (10, 1), (15, 2)])
def test_gameweek_one_is_always_free(transfers, free):
    cost = compute_transfer_cost(transfers, free, gameweek=1)
    assert cost.points_deducted == 0
    assert cost.paid == 0
    assert cost.free_used == transfers


def test_unlimited_sentinel_is_free_outside_gameweek_one():
    cost = compute_transfer_cost(12, UNLIMITED_TRANSFERS, gameweek=9)
    assert cost.paid == 0
    assert cost.points_deducted == 0


def test_chip_week_consumes_nothing():
    assert compute_transfer_cost(6, 1, gameweek=4, wildcard_active=True) == compute_transfer_cost(
        6, 1, gameweek=4, free_hit_active=True
    )
    cost = compute_transfer_cost(6, 1, gameweek=4, wildcard_active=True)
    assert (cost.free_used, cost.paid, cost.points_deducted) == (0, 0, 0)


@pytest.mark.parametrize("transfers,free", [(-1, 1), (1, -1), ("2", 1), (True, 1)])
def test_cost_rejects_bad_counts(transfers, free):
    with pytest.raises(TransferValidationError):
        compute_transfer_cost(transfers, free, gameweek=3)


# ---------- apply_transfer ----------

def test_three_transfers_with_one_free_cost_eight_points():
    state = _week(free=1)
    for _ in range(3):
        state, summary = apply_transfer(state, 1, 5)

    assert state.transfers_made_this_week == 3
    assert state.free_transfers_available == 0
    assert state.points_deducted_this_week == 8
    assert summary.free_transfers_used == 1
    assert summary.paid_transfers == 2
    assert summary.points_deducted == 8


def test_deduction_is_recomputed_not_accumulated():
    state = _week(free=2)
    state, _ = apply_transfer(state, 2, 5)
    assert (state.free_transfers_available, state.points_deducted_this_week) == (1, 0)
    state, _ = apply_transfer(state, 2, 5)
    assert (state.free_transfers_available, state.points_deducted_this_week) == (0, 0)
    state, _ = apply_transfer(state, 2, 5)
    assert (state.free_transfers_available, state.points_deducted_this_week) == (0, 4)
    state, _ = apply_transfer(state, 2, 5)
    assert state.points_deducted_this_week == 8


def test_running_balance_cannot_stand_in_for_week_start():
    state, _ = apply_transfer(_week(free=2), 2, 5)
    assert state.free_transfers_available == 1
    with pytest.raises(InvalidStateError):
        apply_transfer(state, state.free_transfers_available, 5)


def test_missing_week_start_balance_is_rejected():
    state = TransferState(free_transfers_available=1, free_transfers_at_week_start=None, last_gameweek_processed=5)
    with pytest.raises(InvalidStateError):
        apply_transfer(state, None, 5)


def test_stale_record_is_rejected():
    with pytest.raises(InvalidStateError):
        apply_transfer(_week(gw=4), 1, 5)


def test_transfer_limit_leaves_state_untouched():
    state = _week(free=1, transfers_made_this_week=2, points_deducted_this_week=4)
    with pytest.raises(InvalidStateError):
        apply_transfer(state, 1, 5, max_transfers=2)
    assert state.transfers_made_this_week == 2
    assert state.points_deducted_this_week == 4


def test_gameweek_one_keeps_unlimited_balance():
    state = default_transfer_state(1)
    for _ in range(4):
        state, summary = apply_transfer(state, UNLIMITED_TRANSFERS, 1)
    assert state.free_transfers_available == UNLIMITED_TRANSFERS
    assert state.points_deducted_this_week == 0
    assert summary.transfers_made == 4


def test_apply_transfers_matches_single_steps():
    batch, batch_summary = apply_transfers(_week(free=1), 3, 5)
    single = _week(free=1)
    for _ in range(3):
        single, _ = apply_transfer(single, 1, 5)
    assert batch == single
    assert batch_summary.points_deducted == 8


@pytest.mark.parametrize("count", [0, -2])
def test_apply_transfers_needs_positive_count(count):
    with pytest.raises(TransferValidationError):
        apply_transfers(_week(), count, 5)


def test_apply_transfers_over_limit_is_all_or_nothing():
    with pytest.raises(TransferValidationError):
        apply_transfers(_week(transfers_made_this_week=14, points_deducted_this_week=52), 2, 5, max_transfers=15)


# ---------- rollover ----------

@pytest.mark.parametrize("carried,expected", [(0, 1), (1, 2), (2, 2)])
def test_rollover_adds_one_free_transfer_up_to_cap(carried, expected):
    previous = TransferState(
        free_transfers_available=carried,
        free_transfers_at_week_start=2,
        transfers_made_this_week=2 - carried,
        last_gameweek_processed=5,
    )
    nxt = rollover(previous)
    assert nxt.last_gameweek_processed == 6
    assert nxt.free_transfers_available == expected
    assert nxt.free_transfers_at_week_start == expected
    assert nxt.transfers_made_this_week == 0
    assert nxt.points_deducted_this_week == 0


def test_rollover_resets_after_chip_week():
    previous = activate_chip(_week(free=2), WILDCARD, 5)
    previous, _ = apply_transfers(previous, 7, 5)
    nxt = rollover(previous, 6)
    assert nxt.free_transfers_available == 1
    assert not nxt.wildcard_active
    assert not nxt.free_hit_active


def test_rollover_out_of_gameweek_one_gives_one_free_transfer():
    assert rollover(default_transfer_state(1)).free_transfers_available == 1


def test_rollover_after_first_squad_gives_one_free_transfer():
    first = default_transfer_state(8, first_time=True)
    assert first.free_transfers_available == UNLIMITED_TRANSFERS
    assert rollover(first).free_transfers_available == 1


def test_rollover_over_skipped_gameweek_accrues_both():
    previous = TransferState(free_transfers_available=0, free_transfers_at_week_start=1,
                             transfers_made_this_week=1, last_gameweek_processed=3)
    assert rollover(previous, 5).free_transfers_available == 2


def test_rollover_is_idempotent():
    previous = _week(gw=5, free=1)
    once = rollover(previous, 6)
    assert rollover(once, 6) == once
    assert rollover(previous, 6) == once


def test_rollover_respects_custom_cap():
    previous = _week(gw=5, free=4)
    assert rollover(previous, cap=5).free_transfers_available == 5


# ---------- chips ----------

def test_wildcard_week_never_deducts():
    state = activate_chip(_week(free=1), WILDCARD, 5)
    state, summary = apply_transfers(state, 9, 5)
    assert state.points_deducted_this_week == 0
    assert state.free_transfers_available == 1
    assert summary.wildcard_used


def test_chip_activation_clears_existing_hit_and_deactivation_restores_it():
    state, _ = apply_transfers(_week(free=1), 3, 5)
    assert state.points_deducted_this_week == 8

    with_chip = activate_chip(state, FREE_HIT, 5)
    assert with_chip.points_deducted_this_week == 0
    assert with_chip.free_transfers_available == 1

    without = deactivate_chip(with_chip, FREE_HIT, 5)
    assert without.points_deducted_this_week == 8
    assert without.free_transfers_available == 0


def test_only_one_transfer_chip_at_a_time():
    state = activate_chip(_week(), WILDCARD, 5)
    with pytest.raises(TransferValidationError):
        activate_chip(state, FREE_HIT, 5)


def test_no_transfer_chip_in_gameweek_one():
    with pytest.raises(TransferValidationError):
        activate_chip(default_transfer_state(1), WILDCARD, 1)


def test_unknown_chip_is_rejected():
    with pytest.raises(TransferValidationError):
        activate_chip(_week(), "benchBoost", 5)


# ---------- records ----------

def test_from_dict_reads_legacy_balance_and_flags_missing_week_start():
    state = TransferState.from_dict({
        "savedFreeTransfers": 2,
        "transfersMadeThisWeek": 0,
        "pointsDeductedThisWeek": 0,
        "wildcardActive": False,
        "freeHitActive": False,
        "lastGameweekProcessed": 6,
    })
    assert state.free_transfers_available == 2
    assert state.free_transfers_at_week_start is None
    assert state.version == 0


def test_to_dict_uses_stored_keys():
    data = _week(gw=3, free=2).to_dict()
    assert data["freeTransfersAvailable"] == 2
    assert data["freeTransfersAtWeekStart"] == 2
    assert data["lastGameweekProcessed"] == 3
    assert TransferState.from_dict(data) == _week(gw=3, free=2)


def test_from_dict_rejects_garbage():
    with pytest.raises(InvalidStateError):
        TransferState.from_dict({"transfersMadeThisWeek": "lots"})
    with pytest.raises(InvalidStateError):
        TransferState.from_dict(["not", "a", "record"])


def test_validate_catches_drifted_deduction():
    drifted = _week(free=1, transfers_made_this_week=2, points_deducted_this_week=8)
    with pytest.raises(InvalidStateError):
        validate_transfer_state(drifted)


def test_validate_catches_balance_above_week_start():
    state = TransferState(free_transfers_available=2, free_transfers_at_week_start=1, last_gameweek_processed=5)
    with pytest.raises(InvalidStateError):
        validate_transfer_state(state)


def test_validate_accepts_reconciled_state():
    state, _ = apply_transfers(_week(free=2), 4, 5)
    validate_transfer_state(state)


def test_validate_catches_drifted_balance():
    # one free transfer used, but the record still shows a spare one banked
    drifted = TransferState(free_transfers_available=1, free_transfers_at_week_start=2,
                            transfers_made_this_week=0, last_gameweek_processed=5)
    with pytest.raises(InvalidStateError):
        validate_transfer_state(drifted)
    drifted = dataclasses.replace(_week(free=2), transfers_made_this_week=1, free_transfers_available=2)
    with pytest.raises(InvalidStateError):
        validate_transfer_state(drifted)
