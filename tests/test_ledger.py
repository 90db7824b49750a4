import asyncio
from types import SimpleNamespace

import pytest
from supabase import PostgrestAPIError

from mediaflow.workflow.errors import InsufficientCredits, InternalFailure
from mediaflow.workflow.ledger import (
    REASON_GENERATION,
    REASON_REFUND,
    InMemoryCreditLedger,
    SupabaseCreditLedger,
)

USER = "user-1"


async def _sum(ledger, user_id=USER) -> int:
    return sum(t.amount for t in await ledger.list_transactions(user_id, limit=1000))


@pytest.mark.asyncio
async def test_debit_and_refund_round_trip():
    ledger = InMemoryCreditLedger({USER: 50})
    debit_id = await ledger.debit(USER, 18, REASON_GENERATION, run_id="run-1")
    assert await ledger.get_balance(USER) == 32

    refund_id = await ledger.refund(USER, 18, REASON_REFUND, debit_id)
    assert refund_id is not None
    assert await ledger.get_balance(USER) == 50

    newest = (await ledger.list_transactions(USER))[0]
    assert newest.id == refund_id
    assert newest.original_transaction_id == debit_id
    assert newest.run_id == "run-1"
    assert await _sum(ledger) == 50


@pytest.mark.asyncio
async def test_insufficient_debit_changes_nothing():
    ledger = InMemoryCreditLedger({USER: 3})
    with pytest.raises(InsufficientCredits) as exc:
        await ledger.debit(USER, 5, REASON_GENERATION)

    assert exc.value.required == 5
    assert exc.value.available == 3
    assert exc.value.shortage == 2
    assert await ledger.get_balance(USER) == 3
    assert len(await ledger.list_transactions(USER)) == 1


@pytest.mark.asyncio
async def test_refund_is_idempotent_per_debit():
    ledger = InMemoryCreditLedger({USER: 20})
    debit_id = await ledger.debit(USER, 5, REASON_GENERATION)

    assert await ledger.refund(USER, 5, REASON_REFUND, debit_id) is not None
    assert await ledger.refund(USER, 5, REASON_REFUND, debit_id) is None
    assert await ledger.get_balance(USER) == 20


@pytest.mark.asyncio
async def test_refund_rejects_unknown_or_oversized_debits():
    ledger = InMemoryCreditLedger({USER: 20, "other": 20})
    debit_id = await ledger.debit(USER, 5, REASON_GENERATION)

    with pytest.raises(ValueError):
        await ledger.refund(USER, 5, REASON_REFUND, "no-such-txn")
    with pytest.raises(ValueError):
        await ledger.refund("other", 5, REASON_REFUND, debit_id)
    with pytest.raises(ValueError):
        await ledger.refund(USER, 6, REASON_REFUND, debit_id)
    assert await ledger.get_balance(USER) == 15


@pytest.mark.asyncio
async def test_non_positive_amounts_are_rejected():
    ledger = InMemoryCreditLedger({USER: 20})
    with pytest.raises(ValueError):
        await ledger.debit(USER, 0, REASON_GENERATION)
    with pytest.raises(ValueError):
        await ledger.grant(USER, -1)


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw():
    ledger = InMemoryCreditLedger({USER: 100})

    async def attempt():
        try:
            await ledger.debit(USER, 20, REASON_GENERATION)
            return True
        except InsufficientCredits:
            return False

    results = await asyncio.gather(*(attempt() for _ in range(10)))

    assert results.count(True) == 5
    assert await ledger.get_balance(USER) == 0
    assert await _sum(ledger) == 0


@pytest.mark.asyncio
async def test_unknown_user_has_zero_balance_and_grant_adds():
    ledger = InMemoryCreditLedger()
    assert await ledger.get_balance("nobody") == 0
    await ledger.grant("nobody", 10)
    assert await ledger.get_balance("nobody") == 10


# ── Supabase ledger against a fake client ────────────────────────────────────

class _FakeRpc:
    def __init__(self, client, fn, params):
        self.client = client
        self.fn = fn
        self.params = params

    def execute(self):
        self.client.calls.append((self.fn, self.params))
        outcome = self.client.responses[self.fn]
        if isinstance(outcome, Exception):
            raise outcome
        return SimpleNamespace(data=outcome)


class _FakeSupabase:
    def __init__(self, **responses):
        self.responses = responses
        self.calls = []

    def rpc(self, fn, params):
        return _FakeRpc(self, fn, params)


@pytest.mark.asyncio
async def test_supabase_debit_calls_rpc():
    client = _FakeSupabase(debit_credits="txn-1")
    ledger = SupabaseCreditLedger(client)

    assert await ledger.debit(USER, 5, REASON_GENERATION, run_id="run-1") == "txn-1"
    assert client.calls == [("debit_credits", {
        "p_user_id": USER,
        "p_amount": 5,
        "p_reason": REASON_GENERATION,
        "p_run_id": "run-1",
    })]


@pytest.mark.asyncio
async def test_supabase_insufficient_credits_is_translated():
    error = PostgrestAPIError({
        "message": "insufficient_credits",
        "details": '{"available": 3, "required": 5}',
        "code": "P0001",
        "hint": None,
    })
    ledger = SupabaseCreditLedger(_FakeSupabase(debit_credits=error))

    with pytest.raises(InsufficientCredits) as exc:
        await ledger.debit(USER, 5, REASON_GENERATION)
    assert exc.value.available == 3
    assert exc.value.shortage == 2


@pytest.mark.asyncio
async def test_supabase_other_errors_are_internal_failures():
    error = PostgrestAPIError({"message": "unknown_user", "details": None, "code": "P0001", "hint": None})
    ledger = SupabaseCreditLedger(_FakeSupabase(debit_credits=error, refund_credits=error))

    with pytest.raises(InternalFailure):
        await ledger.debit(USER, 5, REASON_GENERATION)
    with pytest.raises(InternalFailure):
        await ledger.refund(USER, 5, REASON_REFUND, "txn-1")


@pytest.mark.asyncio
async def test_supabase_repeat_refund_returns_none():
    ledger = SupabaseCreditLedger(_FakeSupabase(refund_credits=None))
    assert await ledger.refund(USER, 5, REASON_REFUND, "txn-1") is None
