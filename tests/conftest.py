"""Shared fixtures: tmp_path SQLite ledgers, a three-horse race card, bet builders."""
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

import pytest

from betslip_service import BetslipService
from ledger import Ledger
from wagering import Direction, Horse, Market, Mode, Race, validate_and_build

T0 = datetime(2026, 3, 14, 13, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _sqlite_only(monkeypatch):
    """Never let a developer's DATABASE_URL point tests at Postgres."""
    monkeypatch.delenv("DATABASE_URL", raising=False)


@pytest.fixture
def horses():
    return [
        Horse(id=1, name="Alpha", quoted_price=50),
        Horse(id=2, name="Bravo", quoted_price=150),
        Horse(id=3, name="Charlie", quoted_price=0),
    ]


@pytest.fixture
def ledger(tmp_path):
    return Ledger(tmp_path / "test.db")


@pytest.fixture
def seeded_ledger(ledger, horses):
    ledger.save_race(Market.LOCAL, Race(id=1, name="Maiden Plate", horses=horses))
    return ledger


@pytest.fixture
def service(seeded_ledger):
    return BetslipService(seeded_ledger, Market.LOCAL)


@pytest.fixture
def make_txn():
    """Build a valid transaction; minutes offsets created_at from T0."""
    def _make(horse_id=1, amount=10, price=50, direction=Direction.SALE,
              mode=Mode.FIXED_PAYOUT, name="ace", race_id=1, minutes=0,
              market=Market.LOCAL, tax_rate=5, created_at=None):
        return validate_and_build(
            mode=mode,
            direction=direction,
            raw_amount=amount,
            quoted_price=price,
            bettor_name=name,
            race_id=race_id,
            horse_id=horse_id,
            tax_rate=tax_rate,
            market=market,
            created_at=created_at or T0 + timedelta(minutes=minutes),
        )
    return _make


@pytest.fixture
def scenario(make_txn):
    """Three F500 sales on Alpha and one Odds100 purchase on Bravo."""
    return [
        make_txn(horse_id=1, amount=10, price=50, minutes=1),
        make_txn(horse_id=1, amount=10, price=50, minutes=2),
        make_txn(horse_id=1, amount=10, price=50, minutes=3),
        make_txn(horse_id=2, amount=20, price=150, direction=Direction.PURCHASE,
                 mode=Mode.VARIABLE_PRICE, name="bob", minutes=4),
    ]
