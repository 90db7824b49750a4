"""
Credit Ledger — prepaid credit balances with atomic debit / refund.

Two implementations:
  - InMemoryCreditLedger: per-user asyncio.Lock, used for development and tests
  - SupabaseCreditLedger: Postgres functions ``debit_credits`` / ``refund_credits``
    (see migrations/001_workflow_schema.sql) so the balance check, the balance
    update and the transaction insert happen in one database transaction.

Balance always equals the sum of the user's transactions. A debit that would
take the balance below zero is rejected and changes nothing.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Optional
from uuid import uuid4

from supabase import Client, PostgrestAPIError

from .errors import InsufficientCredits, InternalFailure
from .models import CreditTransaction

logger = logging.getLogger(__name__)

REASON_GENERATION = "generation"
REASON_REFUND = "refund"
REASON_GRANT = "grant"


class CreditLedger(ABC):
    @abstractmethod
    async def debit(self, user_id: str, amount: int, reason: str, run_id: Optional[str] = None) -> str:
        """Atomically take ``amount`` credits; raises InsufficientCredits."""

    @abstractmethod
    async def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        original_transaction_id: str,
        run_id: Optional[str] = None,
    ) -> Optional[str]:
        """Give back a debit. A second refund of the same debit returns None."""

    @abstractmethod
    async def get_balance(self, user_id: str) -> int:
        ...

    @abstractmethod
    async def grant(self, user_id: str, amount: int, reason: str = REASON_GRANT) -> str:
        ...

    @abstractmethod
    async def list_transactions(self, user_id: str, limit: int = 20) -> list[CreditTransaction]:
        ...


# ═════════════════════════════════════════════════════════════════════════════
# In-memory
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryCreditLedger(CreditLedger):
    def __init__(self, balances: Optional[dict[str, int]] = None):
        self._transactions: dict[str, list[CreditTransaction]] = defaultdict(list)
        self._by_id: dict[str, CreditTransaction] = {}
        self._refunded: set[str] = set()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        for user_id, amount in (balances or {}).items():
            if amount:
                self._append(user_id, amount, REASON_GRANT)

    def _append(
        self,
        user_id: str,
        amount: int,
        reason: str,
        run_id: Optional[str] = None,
        original_transaction_id: Optional[str] = None,
    ) -> CreditTransaction:
        txn = CreditTransaction(
            id=str(uuid4()),
            user_id=user_id,
            amount=amount,
            reason=reason,
            run_id=run_id,
            original_transaction_id=original_transaction_id,
        )
        self._transactions[user_id].append(txn)
        self._by_id[txn.id] = txn
        return txn

    def _balance(self, user_id: str) -> int:
        return sum(t.amount for t in self._transactions.get(user_id, []))

    async def debit(self, user_id: str, amount: int, reason: str, run_id: Optional[str] = None) -> str:
        if amount <= 0:
            raise ValueError("debit amount must be positive")
        async with self._locks[user_id]:
            balance = self._balance(user_id)
            if balance < amount:
                raise InsufficientCredits(required=amount, available=balance)
            txn = self._append(user_id, -amount, reason, run_id=run_id)
        logger.info(f"Debited {amount} credits from {user_id} (run={run_id}, balance={balance - amount})")
        return txn.id

    async def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        original_transaction_id: str,
        run_id: Optional[str] = None,
    ) -> Optional[str]:
        async with self._locks[user_id]:
            original = self._by_id.get(original_transaction_id)
            if original is None or original.user_id != user_id or original.amount >= 0:
                raise ValueError(f"Unknown debit transaction {original_transaction_id}")
            if original_transaction_id in self._refunded:
                logger.info(f"Debit {original_transaction_id} already refunded, skipping")
                return None
            if amount <= 0 or amount > -original.amount:
                raise ValueError(f"Refund of {amount} does not match debit of {-original.amount}")
            self._refunded.add(original_transaction_id)
            txn = self._append(
                user_id, amount, reason,
                run_id=run_id or original.run_id,
                original_transaction_id=original_transaction_id,
            )
        logger.info(f"Refunded {amount} credits to {user_id} (debit={original_transaction_id})")
        return txn.id

    async def get_balance(self, user_id: str) -> int:
        return self._balance(user_id)

    async def grant(self, user_id: str, amount: int, reason: str = REASON_GRANT) -> str:
        if amount <= 0:
            raise ValueError("grant amount must be positive")
        async with self._locks[user_id]:
            txn = self._append(user_id, amount, reason)
        return txn.id

    async def list_transactions(self, user_id: str, limit: int = 20) -> list[CreditTransaction]:
        return list(reversed(self._transactions.get(user_id, [])))[:limit]


# ═════════════════════════════════════════════════════════════════════════════
# Supabase
# ═════════════════════════════════════════════════════════════════════════════

def _insufficient_from_error(e: PostgrestAPIError, amount: int) -> Optional[InsufficientCredits]:
    """The debit function raises 'insufficient_credits' with the balance in details."""
    if "insufficient_credits" not in (e.message or ""):
        return None
    available = 0
    try:
        details = json.loads(e.details or "{}")
        available = int(details.get("available", 0))
    except (ValueError, TypeError):
        logger.warning(f"Could not parse insufficient_credits details: {e.details}")
    return InsufficientCredits(required=amount, available=available)


class SupabaseCreditLedger(CreditLedger):
    """
    Ledger backed by the ``profiles.credit_balance`` column and the
    ``credit_transactions`` table. The supabase client is synchronous, so every
    call runs in a worker thread.
    """

    def __init__(self, client: Client):
        self.client = client

    async def _rpc(self, fn: str, params: dict):
        return await asyncio.to_thread(lambda: self.client.rpc(fn, params).execute())

    async def debit(self, user_id: str, amount: int, reason: str, run_id: Optional[str] = None) -> str:
        try:
            resp = await self._rpc("debit_credits", {
                "p_user_id": user_id,
                "p_amount": amount,
                "p_reason": reason,
                "p_run_id": run_id,
            })
        except PostgrestAPIError as e:
            insufficient = _insufficient_from_error(e, amount)
            if insufficient is not None:
                raise insufficient
            logger.error(f"debit_credits failed for {user_id}: {e.message}", exc_info=True)
            raise InternalFailure("Credit debit failed")
        logger.info(f"Debited {amount} credits from {user_id} (run={run_id})")
        return str(resp.data)

    async def refund(
        self,
        user_id: str,
        amount: int,
        reason: str,
        original_transaction_id: str,
        run_id: Optional[str] = None,
    ) -> Optional[str]:
        try:
            resp = await self._rpc("refund_credits", {
                "p_user_id": user_id,
                "p_amount": amount,
                "p_reason": reason,
                "p_original_transaction_id": original_transaction_id,
                "p_run_id": run_id,
            })
        except PostgrestAPIError as e:
            logger.error(f"refund_credits failed for {original_transaction_id}: {e.message}", exc_info=True)
            raise InternalFailure("Credit refund failed")
        if not resp.data:
            logger.info(f"Debit {original_transaction_id} already refunded, skipping")
            return None
        logger.info(f"Refunded {amount} credits to {user_id} (debit={original_transaction_id})")
        return str(resp.data)

    async def get_balance(self, user_id: str) -> int:
        resp = await asyncio.to_thread(
            lambda: self.client.table("profiles")
            .select("credit_balance")
            .eq("id", user_id)
            .maybe_single()
            .execute()
        )
        if resp is None or not resp.data:
            return 0
        return int(resp.data.get("credit_balance") or 0)

    async def grant(self, user_id: str, amount: int, reason: str = REASON_GRANT) -> str:
        resp = await self._rpc("grant_credits", {
            "p_user_id": user_id,
            "p_amount": amount,
            "p_reason": reason,
        })
        return str(resp.data)

    async def list_transactions(self, user_id: str, limit: int = 20) -> list[CreditTransaction]:
        resp = await asyncio.to_thread(
            lambda: self.client.table("credit_transactions")
            .select("id, user_id, amount, reason, run_id, original_transaction_id, created_at")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [CreditTransaction(**row) for row in resp.data or []]
