import asyncio

import pytest

from persona_workers.pipeline.context import CancellationToken, CostLedger, bounded_call
from persona_workers.pipeline.errors import JobCancelled, TransientServiceError


def test_bounded_call_timeout_is_transient():
    async def slow():
        await asyncio.sleep(1)

    with pytest.raises(TransientServiceError, match=r"generation timed out after 0\.01s$"):
        asyncio.run(bounded_call(slow(), 0.01, "generation"))


def test_bounded_call_returns_value():
    async def fast():
        return 42

    assert asyncio.run(bounded_call(fast(), 1, "x")) == 42


def test_token_probe_is_consulted():
    flags = {"cancel": False}
    token = CancellationToken(probe=lambda: flags["cancel"])

    token.raise_if_cancelled("job-1")
    flags["cancel"] = True

    with pytest.raises(JobCancelled):
        token.raise_if_cancelled("job-1")
    # sticky once observed
    flags["cancel"] = False
    assert token.cancelled


def test_cost_ledger_totals():
    ledger = CostLedger()
    ledger.add("analysis", 3)
    ledger.add("generation:job-1", 0)
    ledger.add("generation:job-1", 4)
    assert ledger.total == 7
    assert len(ledger.entries) == 2
