"""Wagering exposure engine: bet entry, payout formula, per-horse exposure.

Turns individual bet transactions into per-horse books, profit/loss and
average price for a race, under the two settlement modes (F500 fixed payout
and Odds100 variable price), honouring cancellation and each horse's scratch
cutoff.

Usage:
    from wagering import validate_and_build, aggregate, Direction, Mode
    txn = validate_and_build(mode=Mode.FIXED_PAYOUT, direction=Direction.SALE,
                             raw_amount=10, quoted_price=50, bettor_name="ace",
                             race_id=1, horse_id=3)
    snapshot = aggregate(1, [txn], horses)
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Settlement per unit in F500 mode; also the divisor for books and average
FIXED_PAYOUT_UNIT = 500
# Odds100 prices are quoted in hundredths
VARIABLE_PRICE_DIVISOR = 100

FIXED_PRICE_RANGE = (1, 460)
VARIABLE_PRICE_RANGE = (110, 9000)

DEFAULT_TAX_RATE = 5

# Ledger records scanned when building the recent-bettor list
RECENT_LOOKBACK = 100
RECENT_BETTOR_LIMIT = 7


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class Market(int, Enum):
    """Ledger partition. The two markets are disjoint ledgers."""
    LOCAL = 0
    INTERNATIONAL = 1

    @property
    def label(self) -> str:
        return "Local" if self is Market.LOCAL else "International"


class Direction(str, Enum):
    SALE = "Sales"
    PURCHASE = "Purchases"


class Mode(str, Enum):
    FIXED_PAYOUT = "F500"
    VARIABLE_PRICE = "Odds100"


class ValidationRule(str, Enum):
    SELECTION_REQUIRED = "SelectionRequired"
    NAME_REQUIRED = "NameRequired"
    INVALID_AMOUNT = "InvalidAmount"
    QUOTED_PRICE_OUT_OF_RANGE = "QuotedPriceOutOfRange"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class WageringError(Exception):
    """Base class for engine errors."""


class ValidationError(WageringError):
    """A bet entry broke one of the entry rules; the user can correct it."""

    def __init__(self, rule: ValidationRule, message: str):
        super().__init__(message)
        self.rule = rule
        self.message = message

    def to_dict(self) -> Dict[str, str]:
        return {"rule": self.rule.value, "message": self.message}


class CatalogUnavailable(WageringError):
    """The horse list for a race could not be obtained."""

    def __init__(self, race_id: Any):
        super().__init__(f"No horse catalog available for race {race_id}")
        self.race_id = race_id


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Coerce a datetime or ISO-8601 string to an aware UTC datetime.

    Empty strings and None mean "not set". Naive values are taken as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width ISO form, so lexical order matches time order."""
    if value is None:
        return None
    return parse_timestamp(value).isoformat(timespec="microseconds")


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Settlement:
    """Figures implied by one transaction at creation time."""
    stake_amount: float
    settlement_amount: float
    books: Optional[float] = None     # F500 only


@dataclass(frozen=True)
class BetTransaction:
    """One ledger entry. Only the cancelled flag ever changes (via a copy)."""
    market: Market
    race_id: int
    horse_id: int
    horse_name: str
    bettor_name: str
    direction: Direction
    mode: Mode
    quoted_price: int
    stake_amount: float
    settlement_amount: float
    created_at: datetime
    books: Optional[float] = None           # F500 pair
    fixed_price: Optional[int] = None       # F500 pair
    variable_price: Optional[int] = None    # Odds100
    tax_rate: float = 0
    cancelled: bool = False
    void_flag: bool = False                 # rule 4
    special_flag: bool = False
    remarks: str = ""
    id: Optional[int] = None

    @property
    def last_price(self) -> Optional[int]:
        """Price in the mode's own column."""
        if self.mode is Mode.FIXED_PAYOUT:
            return self.fixed_price
        return self.variable_price

    def with_id(self, txn_id: int) -> "BetTransaction":
        return replace(self, id=txn_id)

    def with_cancelled(self, cancelled: bool) -> "BetTransaction":
        return replace(self, cancelled=bool(cancelled))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "market": int(self.market),
            "race_id": self.race_id,
            "horse_id": self.horse_id,
            "horse_name": self.horse_name,
            "bettor_name": self.bettor_name,
            "direction": self.direction.value,
            "mode": self.mode.value,
            "quoted_price": self.quoted_price,
            "stake_amount": self.stake_amount,
            "settlement_amount": self.settlement_amount,
            "books": self.books,
            "fixed_price": self.fixed_price,
            "variable_price": self.variable_price,
            "tax_rate": self.tax_rate,
            "cancelled": self.cancelled,
            "void_flag": self.void_flag,
            "special_flag": self.special_flag,
            "remarks": self.remarks,
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BetTransaction":
        return cls(
            id=d.get("id"),
            market=Market(int(d.get("market", 0))),
            race_id=int(d["race_id"]),
            horse_id=int(d["horse_id"]),
            horse_name=d.get("horse_name") or "",
            bettor_name=d.get("bettor_name") or "",
            direction=Direction(d["direction"]),
            mode=Mode(d["mode"]),
            quoted_price=int(d["quoted_price"]),
            stake_amount=d["stake_amount"],
            settlement_amount=d["settlement_amount"],
            books=d.get("books"),
            fixed_price=d.get("fixed_price"),
            variable_price=d.get("variable_price"),
            tax_rate=d.get("tax_rate") or 0,
            cancelled=bool(d.get("cancelled", False)),
            void_flag=bool(d.get("void_flag", False)),
            special_flag=bool(d.get("special_flag", False)),
            remarks=d.get("remarks") or "",
            created_at=parse_timestamp(d["created_at"]),
        )


@dataclass(frozen=True)
class Horse:
    """Catalog entry for one runner."""
    id: int
    name: str = ""
    quoted_price: float = 0
    scratch_cutoff: Optional[datetime] = None   # "special"
    void_cutoff: Optional[datetime] = None      # "rule 4"
    void_deduction: float = 0

    def __post_init__(self):
        # cutoffs are compared with aware UTC creation times
        object.__setattr__(self, "scratch_cutoff", parse_timestamp(self.scratch_cutoff))
        object.__setattr__(self, "void_cutoff", parse_timestamp(self.void_cutoff))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "quoted_price": self.quoted_price,
            "scratch_cutoff": format_timestamp(self.scratch_cutoff),
            "void_cutoff": format_timestamp(self.void_cutoff),
            "void_deduction": self.void_deduction,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Horse":
        return cls(
            id=int(d["id"]),
            name=d.get("name") or "",
            quoted_price=d.get("quoted_price") or 0,
            scratch_cutoff=parse_timestamp(d.get("scratch_cutoff")),
            void_cutoff=parse_timestamp(d.get("void_cutoff")),
            void_deduction=d.get("void_deduction") or 0,
        )


@dataclass
class Race:
    """A race card: the catalog's unit of storage."""
    id: int
    name: str = ""
    horses: List[Horse] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "horses": [h.to_dict() for h in self.horses],
        }


@dataclass(frozen=True)
class HorseExposure:
    horse_id: int
    name: str
    books: int
    profit_loss: float
    average_price: int
    settlement: float = 0
    stake: float = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "horse_id": self.horse_id,
            "name": self.name,
            "books": self.books,
            "profit_loss": self.profit_loss,
            "average_price": self.average_price,
            "settlement": self.settlement,
            "stake": self.stake,
        }


@dataclass(frozen=True)
class RaceExposureSnapshot:
    """Per-horse exposure for one race. Recomputed, never persisted."""
    race_id: int
    horses: Tuple[HorseExposure, ...]
    total_average_price: int
    total_stake: float
    total_settlement: float

    def horse(self, horse_id: int) -> Optional[HorseExposure]:
        for h in self.horses:
            if h.horse_id == horse_id:
                return h
        return None

    def to_dict(self) -> Dict[str, Any]:
        return snapshot_to_dict(self)


@dataclass(frozen=True)
class RecentBettorEntry:
    bettor_name: str
    last_mode: Mode
    last_price: Optional[int]
    last_tax_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bettor_name": self.bettor_name,
            "last_mode": self.last_mode.value,
            "last_price": self.last_price,
            "last_tax_rate": self.last_tax_rate,
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def round_half_away(value: float) -> int:
    """Round to the nearest integer, halves away from zero (2.5 -> 3, -2.5 -> -3)."""
    return int(Decimal(value).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def normalize_bettor_name(name: Optional[str]) -> str:
    return (name or "").strip().upper()


def _effective_amount(direction: Direction, raw_amount: float) -> float:
    return raw_amount if direction is Direction.SALE else -raw_amount


def price_range(mode: Mode) -> Tuple[int, int]:
    return FIXED_PRICE_RANGE if mode is Mode.FIXED_PAYOUT else VARIABLE_PRICE_RANGE


# ---------------------------------------------------------------------------
# Payout formula
# ---------------------------------------------------------------------------

def settle(direction: Direction, mode: Mode, raw_amount: float, quoted_price: float) -> Settlement:
    """Stake and settlement implied by a transaction.

    F500:    stake = effective * price,  settlement = effective * 500
    Odds100: stake = effective,          settlement = (effective * price) / 100

    *effective* is the raw amount for a sale and its negation for a purchase.
    """
    effective = _effective_amount(direction, raw_amount)
    if mode is Mode.FIXED_PAYOUT:
        return Settlement(
            stake_amount=effective * quoted_price,
            settlement_amount=effective * FIXED_PAYOUT_UNIT,
            books=effective,
        )
    return Settlement(
        stake_amount=effective,
        settlement_amount=(effective * quoted_price) / VARIABLE_PRICE_DIVISOR,
    )


def preview_settlement(
    direction: Direction, mode: Mode,
    raw_amount: Optional[float], quoted_price: Optional[float],
) -> float:
    """Settlement figure for the entry form; 0 until amount and price are filled in."""
    if not raw_amount or not quoted_price:
        return 0
    if not (math.isfinite(raw_amount) and math.isfinite(quoted_price)):
        return 0
    return settle(direction, mode, raw_amount, quoted_price).settlement_amount


# ---------------------------------------------------------------------------
# Validator / builder
# ---------------------------------------------------------------------------

def validate_and_build(
    *,
    mode: Mode,
    direction: Direction,
    raw_amount: Optional[float],
    quoted_price: Optional[float],
    bettor_name: Optional[str],
    race_id: Optional[int],
    horse_id: Optional[int],
    tax_rate: float = DEFAULT_TAX_RATE,
    market: Market = Market.LOCAL,
    horse_name: str = "",
    remarks: str = "",
    created_at: Optional[datetime] = None,
) -> BetTransaction:
    """Check a bet entry and build the transaction record.

    Rules are checked in order and the first failure raises ValidationError:
    selection, bettor name, amount, quoted price range for the mode.
    """
    if race_id is None or horse_id is None:
        raise ValidationError(ValidationRule.SELECTION_REQUIRED,
                              "Please select a race and horse first")

    name = normalize_bettor_name(bettor_name)
    if not name:
        raise ValidationError(ValidationRule.NAME_REQUIRED, "Please enter client name")

    if raw_amount is None or not math.isfinite(raw_amount) or raw_amount <= 0:
        raise ValidationError(ValidationRule.INVALID_AMOUNT, "Please enter a valid bet amount")

    low, high = price_range(mode)
    if quoted_price is None or not math.isfinite(quoted_price):
        price = None
    else:
        price = math.floor(quoted_price)
    if price is None or price < low or price > high:
        label = "F500 value" if mode is Mode.FIXED_PAYOUT else "Odds value"
        raise ValidationError(
            ValidationRule.QUOTED_PRICE_OUT_OF_RANGE,
            f"{label} must be between {low} and {high} (no decimals)",
        )

    s = settle(direction, mode, raw_amount, price)
    fixed = mode is Mode.FIXED_PAYOUT
    return BetTransaction(
        market=Market(market),
        race_id=race_id,
        horse_id=horse_id,
        horse_name=horse_name,
        bettor_name=name,
        direction=direction,
        mode=mode,
        quoted_price=price,
        stake_amount=s.stake_amount,
        settlement_amount=s.settlement_amount,
        books=s.books,
        fixed_price=price if fixed else None,
        variable_price=None if fixed else price,
        tax_rate=tax_rate or 0,
        remarks=remarks or "",
        created_at=parse_timestamp(created_at) if created_at else utcnow(),
    )


# ---------------------------------------------------------------------------
# Exposure aggregator
# ---------------------------------------------------------------------------

def _is_counted(txn: BetTransaction, horses_by_id: Dict[int, Horse]) -> bool:
    """Cancelled bets never count; bets placed before the horse's scratch cutoff don't either."""
    if txn.cancelled:
        return False
    horse = horses_by_id.get(txn.horse_id)
    if horse is not None and horse.scratch_cutoff is not None:
        return txn.created_at >= horse.scratch_cutoff
    return True


def aggregate(
    race_id: int,
    transactions: Iterable[BetTransaction],
    horses: Optional[Sequence[Horse]],
) -> RaceExposureSnapshot:
    """Per-horse books, profit/loss and average price for one race.

    books        = round(horse settlement / 500)
    profit/loss  = race total stake - horse settlement
    average      = round(500 / (horse settlement / horse stake)), 0 if either sum is 0
    total avg    = plain sum of the per-horse averages

    Raises CatalogUnavailable when *horses* is None.
    """
    if horses is None:
        raise CatalogUnavailable(race_id)

    horses_by_id = {h.id: h for h in horses}
    counted = [t for t in transactions if _is_counted(t, horses_by_id)]

    total_stake = sum(t.stake_amount for t in counted)
    total_settlement = sum(t.settlement_amount for t in counted)

    by_horse: Dict[int, List[BetTransaction]] = {}
    for t in counted:
        by_horse.setdefault(t.horse_id, []).append(t)

    exposures = []
    for horse in horses:
        mine = by_horse.get(horse.id, [])
        horse_settlement = sum(t.settlement_amount for t in mine)
        horse_stake = sum(t.stake_amount for t in mine)

        if horse_stake != 0 and horse_settlement != 0:
            avg = round_half_away(FIXED_PAYOUT_UNIT / (horse_settlement / horse_stake))
        else:
            avg = 0

        exp = HorseExposure(
            horse_id=horse.id,
            name=horse.name,
            books=round_half_away(horse_settlement / FIXED_PAYOUT_UNIT),
            profit_loss=total_stake - horse_settlement,
            average_price=avg,
            settlement=horse_settlement,
            stake=horse_stake,
        )
        logger.debug("race %s horse %s (%s): books=%s p/l=%s avg=%s",
                     race_id, horse.id, horse.name, exp.books, exp.profit_loss, avg)
        exposures.append(exp)

    total_avg = sum(e.average_price for e in exposures)
    logger.debug("race %s: %d counted bets, total stake=%s, total avg=%s",
                 race_id, len(counted), total_stake, total_avg)

    return RaceExposureSnapshot(
        race_id=race_id,
        horses=tuple(exposures),
        total_average_price=total_avg,
        total_stake=total_stake,
        total_settlement=total_settlement,
    )


# ---------------------------------------------------------------------------
# Recent bettors
# ---------------------------------------------------------------------------

def recent_bettors(
    ledger_tail: Sequence[BetTransaction],
    limit: int = RECENT_BETTOR_LIMIT,
    lookback: int = RECENT_LOOKBACK,
) -> List[RecentBettorEntry]:
    """Distinct bettor names, most recent first, with each one's last mode/price/tax.

    *ledger_tail* must already be ordered most-recent-first.
    """
    entries: List[RecentBettorEntry] = []
    if limit <= 0:
        return entries
    seen = set()
    for txn in ledger_tail[:lookback]:
        name = txn.bettor_name
        if not name or name in seen:
            continue
        seen.add(name)
        entries.append(RecentBettorEntry(
            bettor_name=name,
            last_mode=txn.mode,
            last_price=txn.last_price,
            last_tax_rate=txn.tax_rate or 0,
        ))
        if len(entries) >= limit:
            break
    return entries


# ---------------------------------------------------------------------------
# Ledger list view
# ---------------------------------------------------------------------------

def filter_transactions(
    transactions: Iterable[BetTransaction],
    bettor_query: str = "",
    race_id: Optional[int] = None,
    horse_id: Optional[int] = None,
    direction: Optional[Direction] = None,
) -> List[BetTransaction]:
    """Ledger list filters. Empty/None filters match everything."""
    query = (bettor_query or "").strip().lower()
    out = []
    for t in transactions:
        if query and query not in t.bettor_name.lower():
            continue
        if race_id is not None and t.race_id != race_id:
            continue
        if horse_id is not None and t.horse_id != horse_id:
            continue
        if direction is not None and t.direction is not direction:
            continue
        out.append(t)
    return out


def ledger_totals(transactions: Iterable[BetTransaction]) -> Tuple[float, float]:
    """(total settlement, total stake) over non-cancelled transactions."""
    active = [t for t in transactions if not t.cancelled]
    return (
        sum(t.settlement_amount for t in active),
        sum(t.stake_amount for t in active),
    )


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

def snapshot_to_dict(snapshot: RaceExposureSnapshot) -> dict:
    """Convert a snapshot to a JSON-serializable dict."""
    return {
        "race_id": snapshot.race_id,
        "total_average_price": snapshot.total_average_price,
        "total_stake": snapshot.total_stake,
        "total_settlement": snapshot.total_settlement,
        "horses": [h.to_dict() for h in snapshot.horses],
    }


def snapshot_to_text(snapshot: RaceExposureSnapshot) -> str:
    """Format a snapshot as a plain-text book."""
    lines = [f"=== RACE {snapshot.race_id} EXPOSURE ==="]
    lines.append(f"{'#':>3}  {'Horse':<22} {'Books':>7} {'P/L':>12} {'Avg':>6}")
    for h in snapshot.horses:
        lines.append(
            f"{h.horse_id:>3}  {h.name[:22]:<22} {h.books:>7} "
            f"{h.profit_loss:>12.2f} {h.average_price:>6}"
        )
    lines.append("")
    lines.append(f"Total stake: {snapshot.total_stake:.2f}")
    lines.append(f"Total avg: {snapshot.total_average_price}")
    return "\n".join(lines)


def snapshot_to_csv(snapshot: RaceExposureSnapshot) -> str:
    """Export per-horse rows as CSV."""
    rows = ["race,horse_id,name,books,profit_loss,average_price"]
    for h in snapshot.horses:
        rows.append(
            f"{snapshot.race_id},{h.horse_id},\"{h.name}\",{h.books},"
            f"{h.profit_loss:.2f},{h.average_price}"
        )
    return "\n".join(rows)
