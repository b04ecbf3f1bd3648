"""Credit costs, ledgers, and the atomic debit gate."""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from copilot.models import DebitResult

logger = logging.getLogger(__name__)


# Credit costs for different operations
CREDIT_COSTS: Dict[str, int] = {
    "chat": 1,          # Text chat response
    "image": 4,         # Chat with a screenshot
    "transcribe": 2,    # Final audio transcription (interims are free)
    "setup": 0,         # Profile setup
    "analyze_session": 0,
}


def cost(action: str, has_image: bool = False) -> int:
    """Credit cost of a request type."""
    if action == "chat" and has_image:
        return CREDIT_COSTS["image"]
    return CREDIT_COSTS.get(action, 0)


def default_credits_for_plan(plan_id: str) -> int:
    """Starting balance written when a user is first seen."""
    plan = (plan_id or "free").strip().lower()
    if plan.startswith("pro"):
        return 600
    if plan == "ultimate" or plan.startswith("ultimate-"):
        return 1500
    if plan == "magic" or plan.startswith("magic-"):
        return 4000
    return 10


class CreditLedger(ABC):
    """Authoritative per-user credit balances."""

    @abstractmethod
    async def get_balance(self, uid: str) -> Optional[int]:
        """Current balance, or None if the user has no entry yet."""
        pass

    @abstractmethod
    async def ensure_account(self, uid: str, plan_id: str = "free") -> int:
        """Create the entry with the plan default if missing; return the balance."""
        pass

    @abstractmethod
    async def try_debit(self, uid: str, amount: int) -> DebitResult:
        """Atomically subtract `amount` unless that would go negative."""
        pass


class InMemoryCreditLedger(CreditLedger):
    """Ledger kept in process memory, serialized per uid with asyncio locks."""

    def __init__(self, balances: Optional[Dict[str, int]] = None):
        self._balances: Dict[str, int] = dict(balances or {})
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, uid: str) -> asyncio.Lock:
        lock = self._locks.get(uid)
        if lock is None:
            lock = self._locks[uid] = asyncio.Lock()
        return lock

    async def get_balance(self, uid: str) -> Optional[int]:
        return self._balances.get(uid)

    async def ensure_account(self, uid: str, plan_id: str = "free") -> int:
        async with self._lock_for(uid):
            if uid not in self._balances:
                self._balances[uid] = default_credits_for_plan(plan_id)
                logger.info("[CREDITS] Initialized %s with %d credits (plan=%s)", uid, self._balances[uid], plan_id)
            return self._balances[uid]

    async def try_debit(self, uid: str, amount: int) -> DebitResult:
        async with self._lock_for(uid):
            current = self._balances.get(uid, 0)
            # Yield inside the critical section so concurrent debits really interleave
            await asyncio.sleep(0)
            if current < amount:
                return DebitResult(ok=False, remaining=current)
            remaining = current - amount
            self._balances[uid] = remaining
            return DebitResult(ok=True, remaining=remaining)


class SqliteCreditLedger(CreditLedger):
    """Durable ledger; every debit is one IMMEDIATE transaction."""

    def __init__(self, path: str):
        self.path = path
        self._write_lock = threading.Lock()
        with self._connect() as conn:
            conn.execute(
                "CREATE TABLE IF NOT EXISTS credits ("
                " uid TEXT PRIMARY KEY,"
                " credits INTEGER NOT NULL CHECK (credits >= 0),"
                " plan_id TEXT NOT NULL DEFAULT 'free')"
            )

    def _connect(self) -> sqlite3.Connection:
        # isolation_level=None: transactions are opened explicitly
        return sqlite3.connect(self.path, timeout=30, isolation_level=None)

    def _get_balance(self, uid: str) -> Optional[int]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT credits FROM credits WHERE uid = ?", (uid,)).fetchone()
        finally:
            conn.close()
        return int(row[0]) if row else None

    def _ensure_account(self, uid: str, plan_id: str) -> int:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute("SELECT credits FROM credits WHERE uid = ?", (uid,)).fetchone()
            if row is None:
                balance = default_credits_for_plan(plan_id)
                conn.execute(
                    "INSERT INTO credits (uid, credits, plan_id) VALUES (?, ?, ?)",
                    (uid, balance, plan_id),
                )
                logger.info("[CREDITS] Initialized %s with %d credits (plan=%s)", uid, balance, plan_id)
            else:
                balance = int(row[0])
            conn.execute("COMMIT")
            return balance
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _try_debit(self, uid: str, amount: int) -> DebitResult:
        with self._write_lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute("SELECT credits FROM credits WHERE uid = ?", (uid,)).fetchone()
                current = int(row[0]) if row else 0
                if current < amount:
                    conn.execute("ROLLBACK")
                    return DebitResult(ok=False, remaining=current)
                remaining = current - amount
                conn.execute("UPDATE credits SET credits = ? WHERE uid = ?", (remaining, uid))
                conn.execute("COMMIT")
                return DebitResult(ok=True, remaining=remaining)
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                conn.close()

    async def get_balance(self, uid: str) -> Optional[int]:
        return await asyncio.to_thread(self._get_balance, uid)

    async def ensure_account(self, uid: str, plan_id: str = "free") -> int:
        return await asyncio.to_thread(self._ensure_account, uid, plan_id)

    async def try_debit(self, uid: str, amount: int) -> DebitResult:
        return await asyncio.to_thread(self._try_debit, uid, amount)


class CreditGate:
    """Checks and debits credits before billable work is performed."""

    def __init__(self, ledger: CreditLedger):
        self.ledger = ledger

    @staticmethod
    def cost(action: str, has_image: bool = False) -> int:
        return cost(action, has_image)

    async def try_debit(self, uid: str, amount: int) -> DebitResult:
        """Debit `amount`; free actions succeed without touching the ledger."""
        if amount <= 0:
            return DebitResult(ok=True, remaining=None)
        result = await self.ledger.try_debit(uid, amount)
        if result.ok:
            logger.info("[CREDITS] Debited %d from %s (remaining=%s)", amount, uid, result.remaining)
        else:
            logger.info("[CREDITS] Denied %d for %s (balance=%s)", amount, uid, result.remaining)
        return result


class CreditCache:
    """Client-side optimistic view of the balance. Never the source of truth."""

    def __init__(self, fetch_balance=None):
        self._fetch_balance = fetch_balance
        self.credits: Optional[int] = None

    def has_enough(self, amount: int) -> bool:
        # Unknown balance: let the server decide
        if self.credits is None or amount <= 0:
            return True
        return self.credits >= amount

    def apply_optimistic(self, amount: int) -> None:
        if self.credits is not None and amount > 0:
            self.credits = max(0, self.credits - amount)

    def settle(self, remaining: Optional[int]) -> None:
        if remaining is not None:
            self.credits = int(remaining)

    async def refresh(self) -> Optional[int]:
        """Re-read the authoritative balance after a billable action settles."""
        if self._fetch_balance is None:
            return self.credits
        try:
            self.credits = await self._fetch_balance()
        except Exception as e:
            logger.warning("[CREDITS] Balance refresh failed: %s", e)
        return self.credits
