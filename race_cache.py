"""Per-race memo of ledger transactions.

The exposure view re-aggregates on every interaction; this keeps it from
refetching the race's transactions each time. Freshly placed bets are
appended locally so they show up before the ledger is read again.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, MutableMapping, Optional

from wagering import BetTransaction

logger = logging.getLogger(__name__)

FetchRace = Callable[[int], List[BetTransaction]]


class RaceTransactionCache:
    """Memoizes each race's transaction list.

    *fetch* reads one race from the ledger. *storage* may be any mutable
    mapping (a Streamlit session dict, for instance); a plain dict is used
    otherwise. Call invalidate_all() whenever the market partition changes.
    """

    def __init__(self, fetch: FetchRace,
                 storage: Optional[MutableMapping[int, List[BetTransaction]]] = None):
        self._fetch = fetch
        self._races = storage if storage is not None else {}
        # appended before the race was ever fetched
        self._pending: Dict[int, List[BetTransaction]] = {}

    def is_cached(self, race_id: int) -> bool:
        return race_id in self._races

    __contains__ = is_cached

    def get(self, race_id: int) -> List[BetTransaction]:
        """Transactions for *race_id*, fetching on first use.

        A failing fetch propagates and nothing is memoized.
        """
        if race_id in self._races:
            return list(self._races[race_id])

        fetched = list(self._fetch(race_id))
        pending = self._pending.pop(race_id, [])
        if pending:
            known = {t.id for t in fetched if t.id is not None}
            fetched.extend(t for t in pending if t.id is None or t.id not in known)
        self._races[race_id] = fetched
        logger.debug("cached %d transactions for race %s", len(fetched), race_id)
        return list(fetched)

    def append(self, race_id: int, txn: BetTransaction) -> None:
        if race_id in self._races:
            self._races[race_id].append(txn)
        else:
            self._pending.setdefault(race_id, []).append(txn)

    def replace(self, txn: BetTransaction) -> bool:
        """Swap a cached transaction for a newer copy with the same id."""
        if txn.id is None:
            return False
        for bucket in (self._races.get(txn.race_id), self._pending.get(txn.race_id)):
            if not bucket:
                continue
            for i, cached in enumerate(bucket):
                if cached.id == txn.id:
                    bucket[i] = txn
                    return True
        return False

    def invalidate(self, race_id: int) -> None:
        self._races.pop(race_id, None)
        self._pending.pop(race_id, None)

    def invalidate_all(self) -> None:
        self._races.clear()
        self._pending.clear()
        logger.debug("race transaction cache cleared")
