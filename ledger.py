"""Persistence for the bet ledger and the race-card catalog.

Supports SQLite (default, local dev) and PostgreSQL (production).
Set DATABASE_URL env var to use Postgres; otherwise falls back to SQLite.

Both tables are partitioned by market (0 = Local, 1 = International); the two
partitions never see each other's rows.
"""
from __future__ import annotations

import logging
import os
import re
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

from wagering import (
    BetTransaction, Direction, Horse, Market, Mode, Race,
    format_timestamp, parse_timestamp, utcnow,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Postgres compatibility layer
# ---------------------------------------------------------------------------

def _translate_sql(sql: str) -> str:
    """Translate SQLite SQL dialect to Postgres."""
    # Parameter placeholders: ? -> %s
    sql = sql.replace("?", "%s")
    # AUTOINCREMENT -> Postgres SERIAL
    sql = re.sub(
        r"INTEGER\s+PRIMARY\s+KEY\s+AUTOINCREMENT",
        "SERIAL PRIMARY KEY",
        sql,
        flags=re.IGNORECASE,
    )
    # REAL is single precision in Postgres; money needs double
    sql = re.sub(r"\bREAL\b", "DOUBLE PRECISION", sql)
    return sql


class _PgCursorResult:
    """Wraps a psycopg2 cursor to provide sqlite3-compatible attributes."""

    def __init__(self, cursor, lastrowid: Optional[int] = None):
        self._cursor = cursor
        self._lastrowid = lastrowid

    @property
    def lastrowid(self) -> Optional[int]:
        return self._lastrowid

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount

    def fetchone(self):
        return self._cursor.fetchone()

    def fetchall(self):
        return self._cursor.fetchall()


class _PgConnectionWrapper:
    """Wraps a psycopg2 connection so Ledger can use the same API as sqlite3."""

    def __init__(self, pg_conn, cursor_factory):
        self._conn = pg_conn
        self._cursor_factory = cursor_factory

    def execute(self, sql, params=None):
        sql = _translate_sql(sql)
        cur = self._conn.cursor(cursor_factory=self._cursor_factory)
        cur.execute(sql, params or ())

        # For INSERT, retrieve the auto-generated serial value via lastval()
        lastrowid = None
        if sql.strip().upper().startswith("INSERT") and cur.rowcount and "bet_transactions" in sql:
            lv_cur = self._conn.cursor()
            lv_cur.execute("SELECT lastval()")
            lastrowid = lv_cur.fetchone()[0]
            lv_cur.close()
        return _PgCursorResult(cur, lastrowid)

    def executescript(self, sql):
        """Execute multiple SQL statements separated by semicolons."""
        cur = self._conn.cursor(cursor_factory=self._cursor_factory)
        for stmt in sql.split(";"):
            stmt = stmt.strip()
            if stmt:
                cur.execute(_translate_sql(stmt))
        self._conn.commit()
        return cur

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()


TRANSACTION_COLUMNS = [
    "market",
    "race_id",
    "horse_id",
    "horse_name",
    "bettor_name",
    "direction",
    "mode",
    "quoted_price",
    "stake_amount",
    "settlement_amount",
    "books",
    "fixed_price",
    "variable_price",
    "tax_rate",
    "cancelled",
    "void_flag",
    "special_flag",
    "remarks",
    "created_at",
]

# Transaction fields that may change after insert
_PATCHABLE = {"cancelled"}

_HORSE_FIELDS = {"name", "quoted_price", "scratch_cutoff", "void_cutoff", "void_deduction"}


class Ledger:
    def __init__(self, db_path: Path = None):
        database_url = os.environ.get("DATABASE_URL")
        if database_url:
            import psycopg2
            import psycopg2.extras
            # Some hosts hand out postgres:// but psycopg2 requires postgresql://
            if database_url.startswith("postgres://"):
                database_url = database_url.replace("postgres://", "postgresql://", 1)
            try:
                pg_conn = psycopg2.connect(database_url, connect_timeout=5)
            except Exception as exc:
                logger.error(f"Cannot connect to Postgres (timeout 5s): {exc}")
                raise
            pg_conn.autocommit = False
            self.conn = _PgConnectionWrapper(pg_conn, psycopg2.extras.DictCursor)
            self.db_backend = "postgres"
            self.db_path = None
        else:
            self.db_path = Path(db_path or "racebook.db")
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.db_backend = "sqlite"
        self._init_db()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_db(self) -> None:
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS bet_transactions (
                txn_id            INTEGER PRIMARY KEY AUTOINCREMENT,
                market            INTEGER NOT NULL,
                race_id           INTEGER NOT NULL,
                horse_id          INTEGER NOT NULL,
                horse_name        TEXT,
                bettor_name       TEXT NOT NULL,
                direction         TEXT NOT NULL,
                mode              TEXT NOT NULL,
                quoted_price      INTEGER NOT NULL,
                stake_amount      REAL,
                settlement_amount REAL NOT NULL,
                books             REAL,
                fixed_price       INTEGER,
                variable_price    INTEGER,
                tax_rate          REAL DEFAULT 0,
                cancelled         INTEGER DEFAULT 0,
                void_flag         INTEGER DEFAULT 0,
                special_flag      INTEGER DEFAULT 0,
                remarks           TEXT DEFAULT '',
                created_at        TEXT NOT NULL,
                updated_at        TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_bt_market_race
                ON bet_transactions(market, race_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_bt_market_created
                ON bet_transactions(market, created_at);

            CREATE TABLE IF NOT EXISTS races (
                market     INTEGER NOT NULL,
                race_id    INTEGER NOT NULL,
                name       TEXT,
                updated_at TEXT,
                PRIMARY KEY (market, race_id)
            );

            CREATE TABLE IF NOT EXISTS horses (
                market         INTEGER NOT NULL,
                race_id        INTEGER NOT NULL,
                horse_id       INTEGER NOT NULL,
                name           TEXT,
                quoted_price   REAL DEFAULT 0,
                scratch_cutoff TEXT,
                void_cutoff    TEXT,
                void_deduction REAL DEFAULT 0,
                PRIMARY KEY (market, race_id, horse_id)
            );
            """
        )
        self.conn.commit()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_transaction(row) -> BetTransaction:
        d = dict(row)
        return BetTransaction(
            id=d["txn_id"],
            market=Market(int(d["market"])),
            race_id=d["race_id"],
            horse_id=d["horse_id"],
            horse_name=d["horse_name"] or "",
            bettor_name=d["bettor_name"],
            direction=Direction(d["direction"]),
            mode=Mode(d["mode"]),
            quoted_price=d["quoted_price"],
            stake_amount=d["stake_amount"],
            settlement_amount=d["settlement_amount"],
            books=d["books"],
            fixed_price=d["fixed_price"],
            variable_price=d["variable_price"],
            tax_rate=d["tax_rate"] or 0,
            cancelled=bool(d["cancelled"]),
            void_flag=bool(d["void_flag"]),
            special_flag=bool(d["special_flag"]),
            remarks=d["remarks"] or "",
            created_at=parse_timestamp(d["created_at"]),
        )

    @staticmethod
    def _row_to_horse(row) -> Horse:
        d = dict(row)
        return Horse(
            id=d["horse_id"],
            name=d["name"] or "",
            quoted_price=d["quoted_price"] or 0,
            scratch_cutoff=parse_timestamp(d["scratch_cutoff"]),
            void_cutoff=parse_timestamp(d["void_cutoff"]),
            void_deduction=d["void_deduction"] or 0,
        )

    def _write(self, sql: str, params=()):
        """Run one write statement and commit; roll back and re-raise on failure."""
        try:
            cur = self.conn.execute(sql, params)
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return cur

    # ------------------------------------------------------------------
    # Bet transactions
    # ------------------------------------------------------------------

    def insert(self, txn: BetTransaction) -> BetTransaction:
        """Store a transaction. Returns the stored copy carrying its id."""
        values = (
            int(txn.market), txn.race_id, txn.horse_id, txn.horse_name,
            txn.bettor_name, txn.direction.value, txn.mode.value,
            txn.quoted_price, txn.stake_amount, txn.settlement_amount,
            txn.books, txn.fixed_price, txn.variable_price, txn.tax_rate,
            int(txn.cancelled), int(txn.void_flag), int(txn.special_flag),
            txn.remarks, format_timestamp(txn.created_at),
        )
        placeholders = ",".join("?" for _ in TRANSACTION_COLUMNS)
        cur = self._write(
            f"INSERT INTO bet_transactions({','.join(TRANSACTION_COLUMNS)}) "
            f"VALUES({placeholders})",
            values,
        )
        stored = txn.with_id(cur.lastrowid)
        logger.info(
            f"Saved bet {stored.id}: {Market(stored.market).label} race {stored.race_id} "
            f"horse {stored.horse_id} {stored.bettor_name} {stored.direction.value} "
            f"{stored.mode.value} @ {stored.quoted_price}"
        )
        return stored

    def get_transaction(self, txn_id: int) -> Optional[BetTransaction]:
        row = self.conn.execute(
            "SELECT * FROM bet_transactions WHERE txn_id = ?", (txn_id,)
        ).fetchone()
        return self._row_to_transaction(row) if row else None

    def query(self, market: Market, race_id: Optional[int] = None) -> List[BetTransaction]:
        """Transactions for a market (optionally one race), newest first."""
        where = ["market = ?"]
        params: list = [int(market)]
        if race_id is not None:
            where.append("race_id = ?")
            params.append(race_id)
        rows = self.conn.execute(
            f"""SELECT * FROM bet_transactions WHERE {' AND '.join(where)}
                ORDER BY created_at DESC, txn_id DESC""",
            params,
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def query_by_race(self, market: Market, race_id: int) -> List[BetTransaction]:
        return self.query(market, race_id)

    def recent(self, market: Market, limit: int) -> List[BetTransaction]:
        rows = self.conn.execute(
            """SELECT * FROM bet_transactions WHERE market = ?
               ORDER BY created_at DESC, txn_id DESC LIMIT ?""",
            (int(market), int(limit)),
        ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def update(self, txn_id: int, patch: Dict[str, Any]) -> Optional[BetTransaction]:
        """Apply *patch* to a stored transaction. Only 'cancelled' may change."""
        bad = set(patch) - _PATCHABLE
        if bad:
            raise ValueError(
                f"Only {sorted(_PATCHABLE)} can change on a transaction, got {sorted(bad)}"
            )
        if not patch:
            return self.get_transaction(txn_id)
        cur = self._write(
            "UPDATE bet_transactions SET cancelled = ?, updated_at = ? WHERE txn_id = ?",
            (int(bool(patch["cancelled"])), format_timestamp(utcnow()), txn_id),
        )
        if not cur.rowcount:
            return None
        logger.info(f"Bet {txn_id} cancelled={bool(patch['cancelled'])}")
        return self.get_transaction(txn_id)

    def delete(self, txn_id: int) -> bool:
        cur = self._write("DELETE FROM bet_transactions WHERE txn_id = ?", (txn_id,))
        return bool(cur.rowcount)

    def get_ledger_stats(self, market: Market) -> Dict[str, Any]:
        row = self.conn.execute(
            """SELECT COUNT(*) AS total,
                      SUM(CASE WHEN cancelled = 1 THEN 1 ELSE 0 END) AS cancelled,
                      COUNT(DISTINCT race_id) AS races,
                      COUNT(DISTINCT bettor_name) AS bettors,
                      SUM(CASE WHEN cancelled = 0 THEN stake_amount ELSE 0 END) AS stake,
                      SUM(CASE WHEN cancelled = 0 THEN settlement_amount ELSE 0 END) AS settlement
               FROM bet_transactions WHERE market = ?""",
            (int(market),),
        ).fetchone()
        d = dict(row)
        return {
            "market": int(market),
            "transactions": d["total"] or 0,
            "cancelled": d["cancelled"] or 0,
            "races_with_bets": d["races"] or 0,
            "distinct_bettors": d["bettors"] or 0,
            "total_stake": d["stake"] or 0,
            "total_settlement": d["settlement"] or 0,
        }

    # ------------------------------------------------------------------
    # Race-card catalog
    # ------------------------------------------------------------------

    def save_race(self, market: Market, race: Race) -> None:
        """Replace a race card (name and full horse list)."""
        m = int(market)
        try:
            self.conn.execute("DELETE FROM horses WHERE market = ? AND race_id = ?", (m, race.id))
            self.conn.execute("DELETE FROM races WHERE market = ? AND race_id = ?", (m, race.id))
            self.conn.execute(
                "INSERT INTO races(market, race_id, name, updated_at) VALUES(?,?,?,?)",
                (m, race.id, race.name or f"Race {race.id}", format_timestamp(utcnow())),
            )
            for h in race.horses:
                self.conn.execute(
                    """INSERT INTO horses(market, race_id, horse_id, name, quoted_price,
                                          scratch_cutoff, void_cutoff, void_deduction)
                       VALUES(?,?,?,?,?,?,?,?)""",
                    (m, race.id, h.id, h.name, h.quoted_price,
                     format_timestamp(h.scratch_cutoff), format_timestamp(h.void_cutoff),
                     h.void_deduction),
                )
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        logger.info(f"Saved {Market(m).label} race {race.id} with {len(race.horses)} horses")

    def list_races(self, market: Market) -> List[Race]:
        rows = self.conn.execute(
            "SELECT race_id, name FROM races WHERE market = ? ORDER BY race_id",
            (int(market),),
        ).fetchall()
        return [
            Race(id=r["race_id"], name=r["name"] or "",
                 horses=self.get_horses(r["race_id"], market) or [])
            for r in rows
        ]

    def get_horses(self, race_id: int, market: Market = Market.LOCAL) -> Optional[List[Horse]]:
        """Horses on a race card, or None when the race is not in the catalog."""
        m = int(market)
        race = self.conn.execute(
            "SELECT race_id FROM races WHERE market = ? AND race_id = ?", (m, race_id)
        ).fetchone()
        if race is None:
            return None
        rows = self.conn.execute(
            "SELECT * FROM horses WHERE market = ? AND race_id = ? ORDER BY horse_id",
            (m, race_id),
        ).fetchall()
        return [self._row_to_horse(r) for r in rows]

    def update_horse(self, market: Market, race_id: int, horse_id: int, **fields) -> Optional[Horse]:
        """Edit catalog fields of one horse (cutoffs, deduction, price, name).

        Pass a cutoff as None to clear it. Returns the updated horse or None.
        """
        bad = set(fields) - _HORSE_FIELDS
        if bad:
            raise ValueError(f"Unknown horse fields: {sorted(bad)}")
        m = int(market)
        if fields:
            sets, params = [], []
            for col, value in fields.items():
                if col in ("scratch_cutoff", "void_cutoff"):
                    value = format_timestamp(parse_timestamp(value))
                sets.append(f"{col} = ?")
                params.append(value)
            self._write(
                f"UPDATE horses SET {', '.join(sets)} "
                f"WHERE market = ? AND race_id = ? AND horse_id = ?",
                params + [m, race_id, horse_id],
            )
        row = self.conn.execute(
            "SELECT * FROM horses WHERE market = ? AND race_id = ? AND horse_id = ?",
            (m, race_id, horse_id),
        ).fetchone()
        return self._row_to_horse(row) if row else None

    def clear_catalog(self, market: Optional[Market] = None) -> int:
        """Remove race cards for one market, or for both when *market* is None."""
        try:
            if market is None:
                cur = self.conn.execute("DELETE FROM races")
                self.conn.execute("DELETE FROM horses")
            else:
                cur = self.conn.execute("DELETE FROM races WHERE market = ?", (int(market),))
                self.conn.execute("DELETE FROM horses WHERE market = ?", (int(market),))
            self.conn.commit()
        except Exception:
            self.conn.rollback()
            raise
        return cur.rowcount
