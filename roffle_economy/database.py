"""SQLite database module for roffle-economy.

Each public method is async and wraps a synchronous inner function via
asyncio.run_in_executor(None, _sync). A new connection is created per call
(WAL mode, 30s busy timeout, Row factory).

Account mutations never read-then-write from Python: balances are changed
by a single ``UPDATE accounts SET balance = balance + ?`` statement whose
WHERE clause carries the guards (enough spins, no negative balances). Every
mutating call runs inside ``BEGIN IMMEDIATE`` so the before/after snapshot
written to the audit log is consistent and the whole call commits or rolls
back as one unit.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .ledger import LedgerDelta


REFERRAL_SIDES = {
    "referrer": "referrer_credited",
    "referred": "referred_credited",
}


class GameDatabase:
    """SQLite-backed persistence for the wheel economy."""

    def __init__(self, db_path: str, logger: logging.Logger) -> None:
        self._db_path = db_path
        self._logger = logger

    def _get_connection(self) -> sqlite3.Connection:
        """Create a new SQLite connection with standard settings."""
        conn = sqlite3.connect(self._db_path, timeout=30)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.row_factory = sqlite3.Row
        return conn

    # ══════════════════════════════════════════════════════════
    #  Initialization
    # ══════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Create all tables and indexes. Idempotent."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._create_tables)

    def _create_tables(self) -> None:
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    account_id INTEGER PRIMARY KEY,
                    balance INTEGER NOT NULL DEFAULT 0 CHECK (balance >= 0),
                    spins_left INTEGER NOT NULL DEFAULT 20 CHECK (spins_left >= 0),
                    golden_tickets INTEGER NOT NULL DEFAULT 0 CHECK (golden_tickets >= 0),
                    tier TEXT NOT NULL DEFAULT 'free',
                    invites INTEGER NOT NULL DEFAULT 0,
                    username TEXT,
                    display_name TEXT,
                    photo_ref TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    last_seen TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id INTEGER NOT NULL,
                    balance_delta INTEGER NOT NULL DEFAULT 0,
                    spins_delta INTEGER NOT NULL DEFAULT 0,
                    tickets_delta INTEGER NOT NULL DEFAULT 0,
                    tier_set TEXT,
                    tx_type TEXT NOT NULL,
                    reason TEXT,
                    metadata TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_account "
                "ON transactions(account_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_type "
                "ON transactions(tx_type)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS referrals (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    referrer_id INTEGER NOT NULL,
                    referred_id INTEGER NOT NULL,
                    referrer_credited BOOLEAN NOT NULL DEFAULT 0,
                    referred_credited BOOLEAN NOT NULL DEFAULT 0,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(referrer_id, referred_id)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_referrals_pending "
                "ON referrals(referrer_credited, referred_credited)"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS inventory (
                    owner_id INTEGER NOT NULL,
                    item_type TEXT NOT NULL,
                    item_id TEXT NOT NULL,
                    acquired_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE(owner_id, item_type, item_id)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS processed_payments (
                    charge_id TEXT PRIMARY KEY,
                    buyer_id INTEGER,
                    item_type TEXT,
                    item_id TEXT,
                    amount INTEGER,
                    status TEXT NOT NULL DEFAULT 'granted',
                    processed_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.commit()
        finally:
            conn.close()

    # ══════════════════════════════════════════════════════════
    #  Shared in-transaction helpers
    # ══════════════════════════════════════════════════════════

    @staticmethod
    def _ensure_account(
        conn: sqlite3.Connection, account_id: int, starting_spins: int, starting_tier: str,
    ) -> None:
        conn.execute(
            "INSERT OR IGNORE INTO accounts (account_id, spins_left, tier) VALUES (?, ?, ?)",
            (account_id, starting_spins, starting_tier),
        )

    @staticmethod
    def _fetch_account(conn: sqlite3.Connection, account_id: int) -> dict | None:
        row = conn.execute(
            "SELECT * FROM accounts WHERE account_id = ?", (account_id,),
        ).fetchone()
        return dict(row) if row else None

    @staticmethod
    def _touch_on(conn: sqlite3.Connection, account_id: int) -> None:
        conn.execute(
            "UPDATE accounts SET last_seen = CURRENT_TIMESTAMP WHERE account_id = ?",
            (account_id,),
        )

    def _apply_delta_on(
        self,
        conn: sqlite3.Connection,
        account_id: int,
        delta: LedgerDelta,
        tx_type: str,
        reason: str | None,
        metadata: str | None,
        require_spins: int = 0,
        spin_ceiling: int | None = None,
        tier_from: tuple[str, ...] = (),
    ) -> bool:
        """Apply *delta* with one guarded UPDATE. Returns False if a guard failed."""
        before = self._fetch_account(conn, account_id)
        if before is None:
            return False

        sets = ["balance = balance + ?"]
        params: list[Any] = [delta.balance]
        if spin_ceiling is not None and delta.spins > 0:
            # Never push past the ceiling, never take away spins already held.
            sets.append("spins_left = MAX(spins_left, MIN(spins_left + ?, ?))")
            params.extend([delta.spins, spin_ceiling])
        else:
            sets.append("spins_left = spins_left + ?")
            params.append(delta.spins)
        sets.append("golden_tickets = golden_tickets + ?")
        params.append(delta.tickets)
        sets.append("invites = invites + ?")
        params.append(delta.invites)
        if delta.tier is not None:
            sets.append("tier = ?")
            params.append(delta.tier)
        sets.append("last_seen = CURRENT_TIMESTAMP")

        where = (
            "account_id = ? AND balance + ? >= 0 AND golden_tickets + ? >= 0 "
            "AND spins_left >= ?"
        )
        params.extend([account_id, delta.balance, delta.tickets, max(require_spins, -delta.spins, 0)])
        if tier_from:
            where += f" AND tier IN ({', '.join('?' for _ in tier_from)})"
            params.extend(tier_from)

        cursor = conn.execute(f"UPDATE accounts SET {', '.join(sets)} WHERE {where}", params)
        if cursor.rowcount == 0:
            return False

        after = self._fetch_account(conn, account_id)
        conn.execute(
            "INSERT INTO transactions (account_id, balance_delta, spins_delta, tickets_delta, "
            "tier_set, tx_type, reason, metadata) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                account_id,
                after["balance"] - before["balance"],
                after["spins_left"] - before["spins_left"],
                after["golden_tickets"] - before["golden_tickets"],
                delta.tier,
                tx_type,
                reason,
                metadata,
            ),
        )
        return True

    @staticmethod
    def _add_inventory_on(
        conn: sqlite3.Connection, owner_id: int, item_type: str, item_id: str,
    ) -> bool:
        try:
            conn.execute(
                "INSERT INTO inventory (owner_id, item_type, item_id) VALUES (?, ?, ?)",
                (owner_id, item_type, item_id),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    # ══════════════════════════════════════════════════════════
    #  Account Operations
    # ══════════════════════════════════════════════════════════

    async def get_account(self, account_id: int) -> dict | None:
        """Return account row as dict, or None if not exists."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                return self._fetch_account(conn, account_id)
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_or_create_account(
        self, account_id: int, starting_spins: int = 20, starting_tier: str = "free",
    ) -> dict:
        """Return account row as dict. Creates with defaults if not exists.

        Two concurrent misses both hit INSERT OR IGNORE on the primary key,
        so at most one row survives.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                self._ensure_account(conn, account_id, starting_spins, starting_tier)
                conn.commit()
                return self._fetch_account(conn, account_id) or {}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def apply_delta(
        self,
        account_id: int,
        delta: LedgerDelta,
        tx_type: str,
        reason: str | None = None,
        metadata: str | None = None,
        require_spins: int = 0,
        spin_ceiling: int | None = None,
        tier_from: tuple[str, ...] = (),
    ) -> dict | None:
        """Atomically apply a delta and log the transaction.

        Returns the updated account row, or None when the account does not
        exist or a guard rejected the update (nothing is written then).
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                applied = self._apply_delta_on(
                    conn, account_id, delta, tx_type, reason, metadata,
                    require_spins=require_spins,
                    spin_ceiling=spin_ceiling,
                    tier_from=tier_from,
                )
                if not applied:
                    conn.rollback()
                    return None
                account = self._fetch_account(conn, account_id)
                conn.commit()
                return account
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def update_profile(
        self,
        account_id: int,
        username: str | None,
        display_name: str | None,
        photo_ref: str | None,
        starting_spins: int = 20,
        starting_tier: str = "free",
    ) -> dict:
        """Create-if-missing, then refresh the cosmetic profile cache."""
        loop = asyncio.get_running_loop()

        def _sync() -> dict:
            conn = self._get_connection()
            try:
                self._ensure_account(conn, account_id, starting_spins, starting_tier)
                conn.execute(
                    "UPDATE accounts SET username = COALESCE(?, username), "
                    "display_name = COALESCE(?, display_name), "
                    "photo_ref = COALESCE(?, photo_ref), "
                    "last_seen = CURRENT_TIMESTAMP WHERE account_id = ?",
                    (username, display_name, photo_ref, account_id),
                )
                conn.commit()
                return self._fetch_account(conn, account_id) or {}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_recent_transactions(self, account_id: int, limit: int = 20) -> list[dict]:
        """Most recent audit rows for an account, newest first."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM transactions WHERE account_id = ? "
                    "ORDER BY id DESC LIMIT ?",
                    (account_id, limit),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Referrals
    # ══════════════════════════════════════════════════════════

    async def get_referral(self, referrer_id: int, referred_id: int) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM referrals WHERE referrer_id = ? AND referred_id = ?",
                    (referrer_id, referred_id),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def insert_referral(self, referrer_id: int, referred_id: int) -> int | None:
        """Insert a referral record. Returns its id, or None if the pair exists."""
        loop = asyncio.get_running_loop()

        def _sync() -> int | None:
            conn = self._get_connection()
            try:
                try:
                    cursor = conn.execute(
                        "INSERT INTO referrals (referrer_id, referred_id) VALUES (?, ?)",
                        (referrer_id, referred_id),
                    )
                    conn.commit()
                    return cursor.lastrowid
                except sqlite3.IntegrityError:
                    return None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def credit_referral_side(
        self,
        referral_id: int,
        side: str,
        account_id: int,
        delta: LedgerDelta,
        starting_spins: int = 20,
        starting_tier: str = "free",
        spin_ceiling: int | None = None,
    ) -> dict | None:
        """Flip one side's credited flag and apply its reward in one transaction.

        Returns the updated account, or None if that side was already credited.
        """
        column = REFERRAL_SIDES[side]
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(
                    f"UPDATE referrals SET {column} = 1 WHERE id = ? AND {column} = 0",
                    (referral_id,),
                )
                if cursor.rowcount == 0:
                    conn.rollback()
                    return None
                self._ensure_account(conn, account_id, starting_spins, starting_tier)
                applied = self._apply_delta_on(
                    conn, account_id, delta, "referral",
                    reason=f"Referral #{referral_id} ({side})",
                    metadata=None,
                    spin_ceiling=spin_ceiling,
                )
                if not applied:
                    conn.rollback()
                    return None
                account = self._fetch_account(conn, account_id)
                conn.commit()
                return account
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def get_uncredited_referrals(self, limit: int = 100) -> list[dict]:
        """Referral records with at least one side still waiting for its reward."""
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT * FROM referrals WHERE referrer_credited = 0 OR referred_credited = 0 "
                    "ORDER BY id LIMIT ?",
                    (limit,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def count_referrals(self, referrer_id: int) -> int:
        loop = asyncio.get_running_loop()

        def _sync() -> int:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT COUNT(*) AS cnt FROM referrals WHERE referrer_id = ?",
                    (referrer_id,),
                ).fetchone()
                return row["cnt"]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Inventory
    # ══════════════════════════════════════════════════════════

    async def has_inventory_item(self, owner_id: int, item_type: str, item_id: str) -> bool:
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT 1 FROM inventory WHERE owner_id = ? AND item_type = ? AND item_id = ?",
                    (owner_id, item_type, item_id),
                ).fetchone()
                return row is not None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def add_inventory_item(
        self,
        owner_id: int,
        item_type: str,
        item_id: str,
        starting_spins: int = 20,
        starting_tier: str = "free",
    ) -> bool:
        """Insert an inventory item, creating the owner's account if needed.

        Returns True if newly added, False if already owned.
        """
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                self._ensure_account(conn, owner_id, starting_spins, starting_tier)
                added = self._add_inventory_on(conn, owner_id, item_type, item_id)
                self._touch_on(conn, owner_id)
                conn.commit()
                return added
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def list_inventory(self, owner_id: int) -> list[dict]:
        loop = asyncio.get_running_loop()

        def _sync() -> list[dict]:
            conn = self._get_connection()
            try:
                rows = conn.execute(
                    "SELECT item_type, item_id, acquired_at FROM inventory "
                    "WHERE owner_id = ? ORDER BY acquired_at, item_type, item_id",
                    (owner_id,),
                ).fetchall()
                return [dict(r) for r in rows]
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    # ══════════════════════════════════════════════════════════
    #  Payments
    # ══════════════════════════════════════════════════════════

    async def get_processed_payment(self, charge_id: str) -> dict | None:
        loop = asyncio.get_running_loop()

        def _sync() -> dict | None:
            conn = self._get_connection()
            try:
                row = conn.execute(
                    "SELECT * FROM processed_payments WHERE charge_id = ?", (charge_id,),
                ).fetchone()
                return dict(row) if row else None
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def record_payment(
        self,
        charge_id: str,
        buyer_id: int | None,
        item_type: str | None,
        item_id: str | None,
        amount: int | None,
        status: str,
    ) -> bool:
        """Record a charge without granting anything. False if already recorded."""
        loop = asyncio.get_running_loop()

        def _sync() -> bool:
            conn = self._get_connection()
            try:
                try:
                    conn.execute(
                        "INSERT INTO processed_payments (charge_id, buyer_id, item_type, item_id, "
                        "amount, status) VALUES (?, ?, ?, ?, ?, ?)",
                        (charge_id, buyer_id, item_type, item_id, amount, status),
                    )
                    conn.commit()
                    return True
                except sqlite3.IntegrityError:
                    return False
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)

    async def process_payment(
        self,
        charge_id: str,
        buyer_id: int,
        item_type: str,
        item_id: str,
        amount: int,
        delta: LedgerDelta | None = None,
        tier_from: tuple[str, ...] = (),
        inventory_item: tuple[str, str] | None = None,
        spin_ceiling: int | None = None,
        starting_spins: int = 20,
        starting_tier: str = "free",
    ) -> dict[str, Any]:
        """Mark *charge_id* processed and apply its grant in one transaction.

        Returns ``{"duplicate": bool, "granted": bool, "account": dict | None}``.
        A duplicate charge id changes nothing. ``granted`` is False when the
        grant was a no-op (skin already owned, tier not an upgrade).
        """
        loop = asyncio.get_running_loop()

        def _sync() -> dict[str, Any]:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute(
                        "INSERT INTO processed_payments (charge_id, buyer_id, item_type, item_id, "
                        "amount) VALUES (?, ?, ?, ?, ?)",
                        (charge_id, buyer_id, item_type, item_id, amount),
                    )
                except sqlite3.IntegrityError:
                    conn.rollback()
                    return {"duplicate": True, "granted": False, "account": None}

                self._ensure_account(conn, buyer_id, starting_spins, starting_tier)
                granted = True
                if inventory_item is not None:
                    granted = self._add_inventory_on(conn, buyer_id, *inventory_item)
                    self._touch_on(conn, buyer_id)
                if delta is not None:
                    granted = self._apply_delta_on(
                        conn, buyer_id, delta, "purchase",
                        reason=f"Purchase {item_type}:{item_id}",
                        metadata=charge_id,
                        spin_ceiling=spin_ceiling,
                        tier_from=tier_from,
                    )
                if not granted:
                    conn.execute(
                        "UPDATE processed_payments SET status = 'already_owned' WHERE charge_id = ?",
                        (charge_id,),
                    )
                account = self._fetch_account(conn, buyer_id)
                conn.commit()
                return {"duplicate": False, "granted": granted, "account": account}
            finally:
                conn.close()

        return await loop.run_in_executor(None, _sync)
