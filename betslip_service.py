"""Bet slip service: places bets and reports exposure for one market."""
from __future__ import annotations

import logging
from typing import List, Optional

from ledger import Ledger
from race_cache import RaceTransactionCache
from wagering import (
    DEFAULT_TAX_RATE, RECENT_BETTOR_LIMIT, RECENT_LOOKBACK,
    BetTransaction, CatalogUnavailable, Direction, Horse, Market, Mode,
    RaceExposureSnapshot, RecentBettorEntry, ValidationError, ValidationRule,
    aggregate, recent_bettors, validate_and_build,
)

logger = logging.getLogger(__name__)


class BetslipService:
    """
    Handles bet placement, cancellation and exposure for the current market.

    Keeps a RaceTransactionCache over the ledger so repeated exposure reads
    don't hit the database; every write made through this service is
    mirrored into the cache.
    """

    def __init__(self, ledger: Ledger, market: Market = Market.LOCAL):
        self.ledger = ledger
        self.market = Market(market)
        self.cache = RaceTransactionCache(self._fetch_race)

    def _fetch_race(self, race_id: int) -> List[BetTransaction]:
        return self.ledger.query_by_race(self.market, race_id)

    def switch_market(self, market: Market) -> None:
        """Change partition. Cached races belong to the old ledger and are dropped."""
        market = Market(market)
        if market is self.market:
            return
        logger.info(f"Switching market {self.market.label} -> {market.label}")
        self.market = market
        self.cache.invalidate_all()

    def _find_horse(self, race_id: Optional[int], horse_id: Optional[int]) -> Optional[Horse]:
        if race_id is None or horse_id is None:
            return None
        for h in self.ledger.get_horses(race_id, self.market) or []:
            if h.id == horse_id:
                return h
        return None

    def place_bet(
        self,
        *,
        race_id: Optional[int],
        horse_id: Optional[int],
        bettor_name: Optional[str],
        direction: Direction,
        mode: Mode,
        raw_amount: Optional[float],
        quoted_price: Optional[float] = None,
        tax_rate: float = DEFAULT_TAX_RATE,
        remarks: str = "",
    ) -> BetTransaction:
        """
        Place a bet on a catalog horse.

        Process:
        1. Resolve the horse (unknown horse counts as no selection)
        2. Validate and build the transaction, using the horse's price unless given
        3. Insert into the ledger
        4. Append the stored copy to the race cache
        """
        horse = self._find_horse(race_id, horse_id)
        if horse is None:
            raise ValidationError(ValidationRule.SELECTION_REQUIRED,
                                  "Please select a race and horse first")

        txn = validate_and_build(
            mode=mode,
            direction=direction,
            raw_amount=raw_amount,
            quoted_price=horse.quoted_price if quoted_price is None else quoted_price,
            bettor_name=bettor_name,
            race_id=race_id,
            horse_id=horse.id,
            tax_rate=tax_rate,
            market=self.market,
            horse_name=horse.name,
            remarks=remarks,
        )
        stored = self.ledger.insert(txn)
        self.cache.append(race_id, stored)
        return stored

    def race_exposure(self, race_id: int) -> RaceExposureSnapshot:
        horses = self.ledger.get_horses(race_id, self.market)
        if horses is None:
            raise CatalogUnavailable(race_id)
        return aggregate(race_id, self.cache.get(race_id), horses)

    def set_cancelled(self, txn_id: int, cancelled: bool) -> Optional[BetTransaction]:
        updated = self.ledger.update(txn_id, {"cancelled": cancelled})
        if updated is not None:
            self.cache.replace(updated)
        return updated

    def toggle_cancel(self, txn_id: int) -> Optional[BetTransaction]:
        current = self.ledger.get_transaction(txn_id)
        if current is None:
            return None
        return self.set_cancelled(txn_id, not current.cancelled)

    def delete_transaction(self, txn_id: int) -> bool:
        txn = self.ledger.get_transaction(txn_id)
        if txn is None:
            return False
        deleted = self.ledger.delete(txn_id)
        if deleted:
            # simplest way to forget one entry
            self.cache.invalidate(txn.race_id)
        return deleted

    def recent_bettors(self, limit: int = RECENT_BETTOR_LIMIT) -> List[RecentBettorEntry]:
        return recent_bettors(self.ledger.recent(self.market, RECENT_LOOKBACK), limit)

    def last_transaction(self) -> Optional[BetTransaction]:
        latest = self.ledger.recent(self.market, 1)
        return latest[0] if latest else None

    def update_horse(self, race_id: int, horse_id: int, **fields) -> Optional[Horse]:
        return self.ledger.update_horse(self.market, race_id, horse_id, **fields)
