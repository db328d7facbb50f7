"""Tests for the wagering engine: payout formula, entry rules, exposure, recent bettors."""
from __future__ import annotations

import math
import sys
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

# Ensure project root is on path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest
from wagering import (
    BetTransaction, CatalogUnavailable, Direction, Horse, Market, Mode,
    ValidationError, ValidationRule,
    aggregate, filter_transactions, format_timestamp, ledger_totals,
    parse_timestamp, preview_settlement, recent_bettors, round_half_away, settle,
    snapshot_to_csv, snapshot_to_dict, snapshot_to_text, validate_and_build,
)

from conftest import T0


def _build(**overrides):
    kwargs = dict(
        mode=Mode.FIXED_PAYOUT, direction=Direction.SALE, raw_amount=10,
        quoted_price=50, bettor_name="ace", race_id=1, horse_id=1,
    )
    kwargs.update(overrides)
    return validate_and_build(**kwargs)


def _rule(**overrides):
    with pytest.raises(ValidationError) as exc:
        _build(**overrides)
    return exc.value.rule


# ---------------------------------------------------------------------------
# Payout formula
# ---------------------------------------------------------------------------

class TestSettle:
    def test_fixed_payout_sale(self):
        s = settle(Direction.SALE, Mode.FIXED_PAYOUT, 10, 50)
        assert s.stake_amount == 500
        assert s.settlement_amount == 5000
        assert s.books == 10

    def test_fixed_payout_purchase_negates(self):
        s = settle(Direction.PURCHASE, Mode.FIXED_PAYOUT, 10, 50)
        assert s.stake_amount == -500
        assert s.settlement_amount == -5000
        assert s.books == -10

    def test_variable_price_sale(self):
        s = settle(Direction.SALE, Mode.VARIABLE_PRICE, 20, 150)
        assert s.stake_amount == 20
        assert s.settlement_amount == 30
        assert s.books is None

    def test_variable_price_purchase(self):
        s = settle(Direction.PURCHASE, Mode.VARIABLE_PRICE, 20, 150)
        assert s.stake_amount == -20
        assert s.settlement_amount == -30

    def test_variable_price_fraction(self):
        s = settle(Direction.SALE, Mode.VARIABLE_PRICE, 3, 333)
        assert s.settlement_amount == pytest.approx(9.99)


class TestPreviewSettlement:
    def test_zero_until_filled_in(self):
        assert preview_settlement(Direction.SALE, Mode.FIXED_PAYOUT, 0, 50) == 0
        assert preview_settlement(Direction.SALE, Mode.FIXED_PAYOUT, 10, None) == 0
        assert preview_settlement(Direction.SALE, Mode.FIXED_PAYOUT, None, 50) == 0

    def test_matches_settle(self):
        assert preview_settlement(Direction.PURCHASE, Mode.VARIABLE_PRICE, 20, 150) == -30

    def test_non_finite_is_zero(self):
        assert preview_settlement(Direction.SALE, Mode.FIXED_PAYOUT, float("inf"), 50) == 0
        assert preview_settlement(Direction.SALE, Mode.VARIABLE_PRICE, 10, float("nan")) == 0


class TestRoundHalfAway:
    def test_halves(self):
        assert round_half_away(2.5) == 3
        assert round_half_away(-2.5) == -3
        assert round_half_away(0.5) == 1

    def test_ordinary(self):
        assert round_half_away(333.33) == 333
        assert round_half_away(-0.06) == 0


# ---------------------------------------------------------------------------
# Validator / builder
# ---------------------------------------------------------------------------

class TestValidateAndBuild:
    def test_builds_fixed_payout(self):
        txn = _build(bettor_name="  ace  ", tax_rate=7.5, remarks="phone")
        assert txn.bettor_name == "ACE"
        assert txn.quoted_price == 50
        assert txn.fixed_price == 50
        assert txn.variable_price is None
        assert txn.books == 10
        assert txn.stake_amount == 500
        assert txn.settlement_amount == 5000
        assert txn.tax_rate == 7.5
        assert txn.remarks == "phone"
        assert txn.cancelled is False
        assert txn.id is None
        assert txn.created_at.tzinfo is not None

    def test_builds_variable_price(self):
        txn = _build(mode=Mode.VARIABLE_PRICE, quoted_price=150, raw_amount=20)
        assert txn.variable_price == 150
        assert txn.fixed_price is None
        assert txn.books is None
        assert txn.last_price == 150

    def test_fractional_price_floored(self):
        assert _build(quoted_price=50.9).quoted_price == 50
        assert _build(quoted_price=460.5).quoted_price == 460

    def test_selection_required(self):
        assert _rule(race_id=None) is ValidationRule.SELECTION_REQUIRED
        assert _rule(horse_id=None) is ValidationRule.SELECTION_REQUIRED

    def test_name_required(self):
        assert _rule(bettor_name="   ") is ValidationRule.NAME_REQUIRED
        assert _rule(bettor_name=None) is ValidationRule.NAME_REQUIRED

    @pytest.mark.parametrize("amount", [0, -5, None, float("nan"), float("inf"), float("-inf")])
    def test_invalid_amount(self, amount):
        assert _rule(raw_amount=amount) is ValidationRule.INVALID_AMOUNT

    @pytest.mark.parametrize("mode,price,ok", [
        (Mode.FIXED_PAYOUT, 1, True),
        (Mode.FIXED_PAYOUT, 460, True),
        (Mode.FIXED_PAYOUT, 0.99, False),
        (Mode.FIXED_PAYOUT, 461, False),
        (Mode.VARIABLE_PRICE, 110, True),
        (Mode.VARIABLE_PRICE, 9000, True),
        (Mode.VARIABLE_PRICE, 109.99, False),
        (Mode.VARIABLE_PRICE, 9001, False),
        (Mode.FIXED_PAYOUT, None, False),
        (Mode.FIXED_PAYOUT, float("inf"), False),
    ])
    def test_price_range(self, mode, price, ok):
        if ok:
            assert _build(mode=mode, quoted_price=price).quoted_price == math.floor(price)
        else:
            assert _rule(mode=mode, quoted_price=price) is ValidationRule.QUOTED_PRICE_OUT_OF_RANGE

    def test_rule_order(self):
        # every field bad: selection is reported first, then name, then amount
        assert _rule(race_id=None, bettor_name="", raw_amount=0, quoted_price=0) \
            is ValidationRule.SELECTION_REQUIRED
        assert _rule(bettor_name="", raw_amount=0, quoted_price=0) is ValidationRule.NAME_REQUIRED
        assert _rule(raw_amount=0, quoted_price=0) is ValidationRule.INVALID_AMOUNT

    def test_error_to_dict(self):
        with pytest.raises(ValidationError) as exc:
            _build(quoted_price=500)
        assert exc.value.to_dict() == {
            "rule": "QuotedPriceOutOfRange",
            "message": "F500 value must be between 1 and 460 (no decimals)",
        }

    def test_explicit_created_at(self):
        assert _build(created_at=T0).created_at == T0


class TestTimestamps:
    def test_z_suffix(self):
        assert parse_timestamp("2026-03-14T13:00:00Z") == T0

    def test_naive_is_utc(self):
        assert parse_timestamp("2026-03-14T13:00:00") == T0

    def test_empty(self):
        assert parse_timestamp("") is None
        assert parse_timestamp(None) is None

    def test_fixed_width(self):
        assert format_timestamp(T0) == "2026-03-14T13:00:00.000000+00:00"


class TestBetTransactionDict:
    def test_from_dict_inverts_to_dict(self, make_txn):
        txn = make_txn().with_id(42)
        assert BetTransaction.from_dict(txn.to_dict()) == txn

    def test_with_cancelled_is_a_copy(self, make_txn):
        txn = make_txn()
        cancelled = txn.with_cancelled(True)
        assert cancelled.cancelled and not txn.cancelled


# ---------------------------------------------------------------------------
# Exposure aggregator
# ---------------------------------------------------------------------------

class TestAggregate:
    def test_scenario(self, scenario, horses):
        snap = aggregate(1, scenario, horses)
        assert snap.total_stake == 1480
        assert snap.total_settlement == 14970

        a, b, c = snap.horse(1), snap.horse(2), snap.horse(3)
        assert (a.books, a.profit_loss, a.average_price) == (30, -13520, 50)
        assert b.settlement == -30
        assert (b.books, b.profit_loss, b.average_price) == (0, 1510, 333)
        assert (c.books, c.profit_loss, c.average_price) == (0, 1480, 0)
        assert snap.total_average_price == 383

    def test_books_round_half_away(self, make_txn, horses):
        snap = aggregate(1, [make_txn(amount=2.5)], horses)
        assert snap.horse(1).settlement == 1250
        assert snap.horse(1).books == 3

    def test_cancelled_ignored(self, scenario, horses):
        before = aggregate(1, scenario, horses)
        extra = replace(scenario[0], cancelled=True, bettor_name="ZED")
        after = aggregate(1, scenario + [extra], horses)
        assert after == before

    def test_idempotent(self, scenario, horses):
        assert aggregate(1, scenario, horses) == aggregate(1, scenario, horses)

    def test_inputs_not_mutated(self, scenario, horses):
        txns = list(scenario)
        aggregate(1, txns, horses)
        assert txns == scenario
        assert horses[0] == Horse(id=1, name="Alpha", quoted_price=50)

    def test_scratch_cutoff_boundary(self, make_txn, horses):
        cutoff = T0 + timedelta(minutes=10)
        card = [replace(horses[0], scratch_cutoff=cutoff)] + horses[1:]
        at_cutoff = make_txn(created_at=cutoff)
        just_before = make_txn(created_at=cutoff - timedelta(microseconds=1))

        assert aggregate(1, [at_cutoff], card).horse(1).books == 10
        assert aggregate(1, [just_before], card).horse(1).books == 0
        assert aggregate(1, [just_before], card).total_stake == 0

    def test_naive_cutoff_taken_as_utc(self, make_txn, horses):
        naive = (T0 + timedelta(minutes=10)).replace(tzinfo=None)
        card = [replace(horses[0], scratch_cutoff=naive)] + horses[1:]
        assert card[0].scratch_cutoff == T0 + timedelta(minutes=10)
        assert aggregate(1, [make_txn(minutes=10)], card).horse(1).books == 10
        assert aggregate(1, [make_txn(minutes=9)], card).horse(1).books == 0

    def test_horse_normalizes_cutoffs(self):
        horse = Horse(id=1, scratch_cutoff="2026-03-14T13:00:00Z", void_cutoff=None)
        assert horse.scratch_cutoff == T0
        assert horse.void_cutoff is None

    def test_cutoff_on_other_horse_does_not_apply(self, make_txn, horses):
        card = [horses[0], replace(horses[1], scratch_cutoff=T0 + timedelta(hours=1))] + horses[2:]
        assert aggregate(1, [make_txn(horse_id=1)], card).horse(1).books == 10

    def test_zero_settlement_guard(self, make_txn, horses):
        txns = [
            make_txn(amount=10, price=50),
            make_txn(amount=10, price=60, direction=Direction.PURCHASE),
        ]
        snap = aggregate(1, txns, horses)
        assert snap.horse(1).settlement == 0
        assert snap.horse(1).stake == -100
        assert snap.horse(1).average_price == 0

    def test_zero_stake_guard(self, make_txn, horses):
        txns = [
            make_txn(amount=10, price=50),
            make_txn(amount=500, price=110, mode=Mode.VARIABLE_PRICE,
                     direction=Direction.PURCHASE),
        ]
        snap = aggregate(1, txns, horses)
        assert snap.horse(1).stake == 0
        assert snap.horse(1).average_price == 0

    def test_unknown_horse_counts_toward_total(self, make_txn, horses):
        snap = aggregate(1, [make_txn(horse_id=99)], horses)
        assert snap.total_stake == 500
        assert snap.horse(99) is None
        assert snap.horse(1).profit_loss == 500

    def test_empty_card(self, make_txn):
        snap = aggregate(1, [make_txn()], [])
        assert snap.horses == ()
        assert snap.total_average_price == 0

    def test_missing_catalog(self, scenario):
        with pytest.raises(CatalogUnavailable) as exc:
            aggregate(7, scenario, None)
        assert exc.value.race_id == 7


# ---------------------------------------------------------------------------
# Recent bettors
# ---------------------------------------------------------------------------

class TestRecentBettors:
    def _tail(self, make_txn, names):
        # newest first
        return [make_txn(name=n, minutes=-i) for i, n in enumerate(names)]

    def test_distinct_in_recency_order(self, make_txn):
        tail = self._tail(make_txn, ["ace", "bob", "ace", "cat"])
        assert [e.bettor_name for e in recent_bettors(tail)] == ["ACE", "BOB", "CAT"]

    def test_limit(self, make_txn):
        tail = self._tail(make_txn, [f"n{i}" for i in range(12)])
        assert len(recent_bettors(tail)) == 7
        assert len(recent_bettors(tail, limit=3)) == 3
        assert recent_bettors(tail, limit=0) == []

    def test_lookback(self, make_txn):
        tail = self._tail(make_txn, ["ace"] * 5 + ["bob"])
        assert [e.bettor_name for e in recent_bettors(tail, lookback=5)] == ["ACE"]

    def test_skips_empty_names(self, make_txn):
        tail = [replace(make_txn(), bettor_name=""), make_txn(name="bob")]
        assert [e.bettor_name for e in recent_bettors(tail)] == ["BOB"]

    def test_mode_price_and_tax_from_latest(self, make_txn):
        tail = [
            make_txn(name="ace", mode=Mode.VARIABLE_PRICE, price=250, tax_rate=3),
            make_txn(name="ace", price=40, tax_rate=5, minutes=-1),
        ]
        (entry,) = recent_bettors(tail)
        assert entry.last_mode is Mode.VARIABLE_PRICE
        assert entry.last_price == 250
        assert entry.last_tax_rate == 3
        assert entry.to_dict()["last_mode"] == "Odds100"


# ---------------------------------------------------------------------------
# Ledger list view and export
# ---------------------------------------------------------------------------

class TestLedgerView:
    def test_filters(self, scenario):
        assert len(filter_transactions(scenario, "bo")) == 1
        assert len(filter_transactions(scenario, horse_id=1)) == 3
        assert len(filter_transactions(scenario, race_id=2)) == 0
        assert len(filter_transactions(scenario, direction=Direction.PURCHASE)) == 1
        assert len(filter_transactions(scenario)) == 4

    def test_zero_ids_are_real_filters(self, make_txn):
        txns = [make_txn(race_id=0, horse_id=0), make_txn(race_id=1, horse_id=1)]
        assert [(t.race_id, t.horse_id) for t in filter_transactions(txns, race_id=0)] == [(0, 0)]
        assert [(t.race_id, t.horse_id) for t in filter_transactions(txns, horse_id=0)] == [(0, 0)]
        assert len(filter_transactions(txns, race_id=None, horse_id=None)) == 2

    def test_totals_skip_cancelled(self, scenario):
        txns = scenario + [scenario[0].with_cancelled(True)]
        assert ledger_totals(txns) == (14970, 1480)


class TestExport:
    def test_dict(self, scenario, horses):
        snap = aggregate(1, scenario, horses)
        d = snapshot_to_dict(snap)
        assert snap.to_dict() == d
        assert d["total_average_price"] == 383
        assert [h["books"] for h in d["horses"]] == [30, 0, 0]

    def test_text(self, scenario, horses):
        text = snapshot_to_text(aggregate(1, scenario, horses))
        assert "RACE 1 EXPOSURE" in text
        assert "Alpha" in text
        assert "Total avg: 383" in text

    def test_csv(self, scenario, horses):
        rows = snapshot_to_csv(aggregate(1, scenario, horses)).splitlines()
        assert rows[0] == "race,horse_id,name,books,profit_loss,average_price"
        assert rows[1] == '1,1,"Alpha",30,-13520.00,50'
        assert len(rows) == 4


def test_market_labels():
    assert Market(0).label == "Local"
    assert Market(1).label == "International"
