"""CLI for loading race cards into the catalog and reporting on the ledger.

Usage:
    python ingest.py --card path/to/cards.json
    python ingest.py --exposure 3
    python ingest.py --exposure 3 --csv
    python ingest.py --recent --market 1
    python ingest.py --stats

Card files look like:
    {"races": [{"id": 1, "name": "Race 1",
                "horses": [{"id": 1, "name": "Alpha", "quoted_price": 50}, ...]}]}
"""
import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

from betslip_service import BetslipService
from ledger import Ledger
from wagering import (
    CatalogUnavailable, Horse, Market, Race,
    snapshot_to_csv, snapshot_to_text,
)


def parse_cards(data: Dict[str, Any]) -> List[Race]:
    """Race cards from the JSON document. A bare list of races is accepted too."""
    races_json = data.get("races", []) if isinstance(data, dict) else data
    races = []
    for r in races_json:
        races.append(Race(
            id=int(r["id"]),
            name=r.get("name") or "",
            horses=[Horse.from_dict(h) for h in r.get("horses", [])],
        ))
    return races


def load_cards(db: Ledger, path: str, market: Market) -> int:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    races = parse_cards(data)
    for race in races:
        db.save_race(market, race)
        print(f"  [ok]   race {race.id} {race.name!r}: {len(race.horses)} horses")
    print(f"Loaded {len(races)} race cards into the {market.label} catalog")
    return len(races)


def show_exposure(desk: BetslipService, race_id: int, as_csv: bool = False) -> None:
    try:
        snapshot = desk.race_exposure(race_id)
    except CatalogUnavailable as e:
        print(str(e))
        sys.exit(1)
    print(snapshot_to_csv(snapshot) if as_csv else snapshot_to_text(snapshot))


def show_recent(desk: BetslipService) -> None:
    entries = desk.recent_bettors()
    if not entries:
        print("No bettors yet")
        return
    print(f"Recent clients ({desk.market.label}):")
    for e in entries:
        print(f"  {e.bettor_name:<16} {e.last_mode.value:<8} "
              f"price={e.last_price}  tax={e.last_tax_rate}")


def show_stats(db: Ledger, market: Market) -> None:
    stats = db.get_ledger_stats(market)
    print(f"Ledger Statistics ({market.label}):")
    print(f"  Transactions:     {stats['transactions']}")
    print(f"  Cancelled:        {stats['cancelled']}")
    print(f"  Races with bets:  {stats['races_with_bets']}")
    print(f"  Distinct clients: {stats['distinct_bettors']}")
    print(f"  Total stake:      {stats['total_stake']:.2f}")
    print(f"  Total settlement: {stats['total_settlement']:.2f}")


def main(argv=None):
    ap = argparse.ArgumentParser(description="Load race cards and report on the bet ledger")
    ap.add_argument("--card", metavar="JSON", help="Load race cards from a JSON file")
    ap.add_argument("--exposure", metavar="RACE", type=int, help="Print exposure for a race")
    ap.add_argument("--csv", action="store_true", help="CSV output for --exposure")
    ap.add_argument("--recent", action="store_true", help="List recent clients")
    ap.add_argument("--stats", action="store_true", help="Show ledger statistics")
    ap.add_argument("--market", type=int, choices=[0, 1], default=0,
                    help="0 = Local (default), 1 = International")
    ap.add_argument("--db", default=os.environ.get("LEDGER_DB_PATH", "racebook.db"),
                    help="Database path (default: racebook.db)")
    args = ap.parse_args(argv)

    market = Market(args.market)
    db = Ledger(Path(args.db))

    if args.card:
        if not os.path.exists(args.card):
            print(f"File not found: {args.card}")
            sys.exit(1)
        load_cards(db, args.card, market)
    elif args.exposure is not None:
        show_exposure(BetslipService(db, market), args.exposure, args.csv)
    elif args.recent:
        show_recent(BetslipService(db, market))
    elif args.stats:
        show_stats(db, market)
    else:
        ap.print_help()


if __name__ == "__main__":
    main()
