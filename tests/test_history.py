"""Cycle history persistence and oracle context."""

import json

import pytest

from tests.helpers import MemoryStore


def _decision(coin, action, confidence):
    from vaultdealer.shell.contract import Action, CycleDecision
    return CycleDecision(coin=coin, action=Action[action], confidence=confidence)


@pytest.mark.asyncio
async def test_record_keeps_newest_first_and_trims():
    from vaultdealer.dealer.history import CycleHistory

    store = MemoryStore()
    history = CycleHistory(store, "perps", size=3)
    for i in range(5):
        await history.record(1_700_000_000 + i * 300, [_decision("BTC", "HOLD", 0.5)], 3)

    assert len(history.entries) == 3
    assert [e["timestamp"] for e in history.entries] == [1_700_001_200, 1_700_000_900, 1_700_000_600]
    assert json.loads(store.data["perps"]) == history.entries

    reloaded = CycleHistory(store, "perps", size=3)
    await reloaded.load()
    assert reloaded.entries == history.entries


@pytest.mark.asyncio
async def test_context_for_oracle():
    from vaultdealer.dealer.history import CycleHistory

    history = CycleHistory(MemoryStore())
    assert history.context_for_oracle() == {}

    await history.record(1_700_000_000, [_decision("BTC", "BUY", 0.72), _decision("ETH", "HOLD", 0.4)], 2,
                         summary="BTC breaking out")
    await history.record(1_700_000_300, [_decision("BTC", "HOLD", 0.5)], 2)

    ctx = history.context_for_oracle()
    assert ctx["recentCycles"][0] == {"time": "2023-11-14 22:18", "decisions": ["all HOLD"]}
    assert ctx["recentCycles"][1]["decisions"] == ["BTC:BUY(0.72)"]
    assert ctx["lastCycleSummary"] == "BTC breaking out"


@pytest.mark.asyncio
async def test_load_tolerates_corrupt_payload():
    from vaultdealer.dealer.history import CycleHistory

    store = MemoryStore()
    store.data["perps"] = b"not json"
    history = CycleHistory(store)
    await history.load()
    assert history.entries == []
