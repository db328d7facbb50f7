from fastapi import FastAPI, HTTPException, Depends, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, FiniteFloat
import uvicorn
import os
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional
import logging

from betslip_service import BetslipService
from ledger import Ledger
from wagering import (
    DEFAULT_TAX_RATE, RECENT_BETTOR_LIMIT,
    CatalogUnavailable, Direction, Horse, Market, Mode, Race, ValidationError,
    filter_transactions, ledger_totals, preview_settlement,
    snapshot_to_csv, snapshot_to_dict, snapshot_to_text, utcnow,
)
import dotenv
dotenv.load_dotenv()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

LEDGER_DB_PATH = os.environ.get("LEDGER_DB_PATH", "racebook.db")
API_HOST = os.environ.get("API_HOST", "0.0.0.0")
API_PORT = int(os.environ.get("API_PORT", "8000"))
ALLOWED_ORIGINS = [
    o.strip() for o in os.environ.get("ALLOWED_ORIGINS", "*").split(",") if o.strip()
]

app = FastAPI(title="Race Book Ledger API", version="1.0.0")

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------

class HorseIn(BaseModel):
    id: int
    name: str = ""
    quoted_price: FiniteFloat = Field(0, ge=0)
    scratch_cutoff: Optional[datetime] = None
    void_cutoff: Optional[datetime] = None
    void_deduction: FiniteFloat = Field(0, ge=0)


class RaceCardIn(BaseModel):
    name: str = ""
    horses: List[HorseIn] = Field(default_factory=list)


class HorsePatch(BaseModel):
    name: Optional[str] = None
    quoted_price: Optional[FiniteFloat] = Field(None, ge=0)
    scratch_cutoff: Optional[datetime] = None
    void_cutoff: Optional[datetime] = None
    void_deduction: Optional[FiniteFloat] = Field(None, ge=0)


class BetEntry(BaseModel):
    race_id: Optional[int] = None
    horse_id: Optional[int] = None
    bettor_name: str = ""
    direction: Direction = Direction.SALE
    mode: Mode = Mode.FIXED_PAYOUT
    # amount and price go through the entry rules
    amount: Optional[float] = None
    quoted_price: Optional[float] = None
    tax_rate: FiniteFloat = Field(DEFAULT_TAX_RATE, ge=0)
    remarks: str = ""


class CancelPatch(BaseModel):
    # None toggles the current state
    cancelled: Optional[bool] = None


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

_ledger: Optional[Ledger] = None
_desks: Dict[Market, BetslipService] = {}


def get_ledger() -> Ledger:
    """Lazy-open the ledger database."""
    global _ledger
    if _ledger is None:
        _ledger = Ledger(Path(LEDGER_DB_PATH))
    return _ledger


def _desk_for(market: Market, ledger: Ledger) -> BetslipService:
    desk = _desks.get(market)
    if desk is None or desk.ledger is not ledger:
        desk = BetslipService(ledger, market)
        _desks[market] = desk
    return desk


def get_desk(
    market: int = Query(0, ge=0, le=1),
    ledger: Ledger = Depends(get_ledger),
) -> BetslipService:
    """One BetslipService (and race cache) per market."""
    return _desk_for(Market(market), ledger)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "racebook-ledger", "timestamp": utcnow().isoformat()}


@app.get("/api/races")
async def list_races(desk: BetslipService = Depends(get_desk)):
    """
    List race cards for a market
    """
    races = desk.ledger.list_races(desk.market)
    return {"market": int(desk.market), "races": [r.to_dict() for r in races]}


@app.put("/api/races/{race_id}")
async def save_race(race_id: int, card: RaceCardIn, desk: BetslipService = Depends(get_desk)):
    """
    Create or replace a race card and its horses
    """
    race = Race(
        id=race_id,
        name=card.name,
        horses=[Horse.from_dict(h.model_dump()) for h in card.horses],
    )
    try:
        desk.ledger.save_race(desk.market, race)
    except Exception as e:
        logger.error(f"Error saving race {race_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to save race card: {str(e)}")
    return {"success": True, "race": race.to_dict()}


@app.get("/api/races/{race_id}/horses")
async def get_race_horses(race_id: int, desk: BetslipService = Depends(get_desk)):
    """
    Get horses for a specific race
    """
    horses = desk.ledger.get_horses(race_id, desk.market)
    if horses is None:
        raise HTTPException(status_code=404, detail="Race not found")
    return {"race_id": race_id, "horses": [h.to_dict() for h in horses]}


@app.patch("/api/races/{race_id}/horses/{horse_id}")
async def update_horse(
    race_id: int, horse_id: int, patch: HorsePatch,
    desk: BetslipService = Depends(get_desk),
):
    """
    Edit a horse's scratch/void cutoffs, deduction, price or name
    """
    try:
        horse = desk.update_horse(race_id, horse_id, **patch.model_dump(exclude_unset=True))
    except Exception as e:
        logger.error(f"Error updating horse {race_id}/{horse_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to update horse: {str(e)}")
    if horse is None:
        raise HTTPException(status_code=404, detail="Horse not found")
    return {"success": True, "horse": horse.to_dict()}


@app.delete("/api/races")
async def clear_races(
    all: bool = False,
    desk: BetslipService = Depends(get_desk),
):
    """
    Clear race cards for the market, or for both markets with all=true
    """
    removed = desk.ledger.clear_catalog(None if all else desk.market)
    scope = "all markets" if all else desk.market.label
    return {"message": f"{scope} race cards cleared", "removed": removed}


@app.get("/api/recent-clients")
async def get_recent_clients(
    limit: int = Query(RECENT_BETTOR_LIMIT, ge=1, le=50),
    desk: BetslipService = Depends(get_desk),
):
    """
    Recent distinct client names with their last bet type, price and tax
    """
    try:
        clients = desk.recent_bettors(limit)
    except Exception as e:
        logger.error(f"Error fetching recent clients: {e}")
        raise HTTPException(status_code=500, detail="Failed to fetch recent clients")
    return [c.to_dict() for c in clients]


@app.get("/api/payout-preview")
async def payout_preview(
    direction: Direction = Direction.SALE,
    mode: Mode = Mode.FIXED_PAYOUT,
    amount: Optional[float] = None,
    quoted_price: Optional[float] = None,
):
    """
    Settlement figure for a bet that has not been placed yet
    """
    return {"settlement": preview_settlement(direction, mode, amount, quoted_price)}


@app.post("/api/bet-transaction", status_code=201)
async def create_bet_transaction(entry: BetEntry, desk: BetslipService = Depends(get_desk)):
    """
    Validate and save a new bet transaction
    """
    try:
        txn = desk.place_bet(
            race_id=entry.race_id,
            horse_id=entry.horse_id,
            bettor_name=entry.bettor_name,
            direction=entry.direction,
            mode=entry.mode,
            raw_amount=entry.amount,
            quoted_price=entry.quoted_price,
            tax_rate=entry.tax_rate,
            remarks=entry.remarks,
        )
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.to_dict())
    except Exception as e:
        logger.error(f"Error saving bet transaction: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to save bet transaction: {str(e)}")
    return {"message": "Bet transaction saved successfully", "id": txn.id, "data": txn.to_dict()}


@app.get("/api/bet-transactions")
async def list_bet_transactions(
    race_id: Optional[int] = None,
    horse_id: Optional[int] = None,
    client: str = "",
    direction: Optional[Direction] = None,
    desk: BetslipService = Depends(get_desk),
):
    """
    Ledger list for a market, newest first, with filters and totals
    """
    transactions = desk.ledger.query(desk.market, race_id)
    transactions = filter_transactions(transactions, client, race_id, horse_id, direction)
    total_settlement, total_stake = ledger_totals(transactions)
    return {
        "transactions": [t.to_dict() for t in transactions],
        "count": len(transactions),
        "total_settlement": total_settlement,
        "total_stake": total_stake,
    }


@app.get("/api/bet-transaction/{txn_id}")
async def get_bet_transaction(txn_id: int, ledger: Ledger = Depends(get_ledger)):
    """
    Get a specific bet transaction by ID
    """
    txn = ledger.get_transaction(txn_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Bet transaction not found")
    return txn.to_dict()


@app.patch("/api/bet-transaction/{txn_id}")
async def cancel_bet_transaction(
    txn_id: int, patch: CancelPatch, ledger: Ledger = Depends(get_ledger),
):
    """
    Cancel or un-cancel a bet transaction
    """
    txn = ledger.get_transaction(txn_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Bet transaction not found")
    desk = _desk_for(txn.market, ledger)
    try:
        if patch.cancelled is None:
            updated = desk.toggle_cancel(txn_id)
        else:
            updated = desk.set_cancelled(txn_id, patch.cancelled)
    except Exception as e:
        logger.error(f"Error updating bet transaction {txn_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to update bet transaction: {str(e)}")
    return {"message": "Bet transaction updated successfully", "data": updated.to_dict()}


@app.delete("/api/bet-transaction/{txn_id}")
async def delete_bet_transaction(txn_id: int, ledger: Ledger = Depends(get_ledger)):
    """
    Delete a bet transaction
    """
    txn = ledger.get_transaction(txn_id)
    if txn is None:
        raise HTTPException(status_code=404, detail="Bet transaction not found")
    _desk_for(txn.market, ledger).delete_transaction(txn_id)
    return {"message": "Bet transaction deleted successfully"}


@app.get("/api/last-transaction")
async def get_last_transaction(desk: BetslipService = Depends(get_desk)):
    """
    Most recent transaction in the market
    """
    txn = desk.last_transaction()
    return {"transaction": txn.to_dict() if txn else None}


@app.get("/api/exposure/{race_id}")
async def get_race_exposure(
    race_id: int,
    format: str = "json",
    desk: BetslipService = Depends(get_desk),
):
    """
    Per-horse books, profit/loss and average for a race (json, text or csv)
    """
    if format.lower() not in ["json", "text", "csv"]:
        raise HTTPException(status_code=400, detail="Format must be 'json', 'text' or 'csv'")
    try:
        snapshot = desk.race_exposure(race_id)
    except CatalogUnavailable as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error computing exposure for race {race_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to compute exposure: {str(e)}")

    if format.lower() == "text":
        return PlainTextResponse(snapshot_to_text(snapshot))
    if format.lower() == "csv":
        return PlainTextResponse(snapshot_to_csv(snapshot), media_type="text/csv")
    return snapshot_to_dict(snapshot)


@app.get("/api/stats")
async def get_stats(desk: BetslipService = Depends(get_desk)):
    """
    Ledger statistics for a market
    """
    return desk.ledger.get_ledger_stats(desk.market)


if __name__ == "__main__":
    uvicorn.run(app, host=API_HOST, port=API_PORT)
