"""Execution reconciler: timeouts with a reference are re-checked, never guessed."""

import pytest


class StatusSource:
    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.checks = 0

    async def get_transaction_status(self, reference):
        self.checks += 1
        status = self.statuses.pop(0)
        if isinstance(status, Exception):
            raise status
        return status


def _reconciler(attempts=3):
    from vaultdealer.execution.reconciler import ExecutionReconciler

    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    return ExecutionReconciler(attempts, 2.0, sleep=fake_sleep), sleeps


def _timeout(reference="sig-1"):
    from vaultdealer.shell.errors import VenueError

    async def call():
        raise VenueError("confirmation timed out", reference=reference, timed_out=True)
    return call


@pytest.mark.asyncio
async def test_direct_success():
    from vaultdealer.shell.contract import SettlementStatus

    reconciler, _ = _reconciler()

    async def call():
        return "sig-ok"

    outcome = await reconciler.execute(call, StatusSource([]), "swap")
    assert outcome.status is SettlementStatus.SUCCESS
    assert outcome.reference == "sig-ok"
    assert outcome.succeeded


@pytest.mark.asyncio
async def test_plain_failures_are_not_reconciled():
    from vaultdealer.shell.contract import SettlementStatus
    from vaultdealer.shell.errors import VenueError

    reconciler, _ = _reconciler()
    source = StatusSource([])

    async def rejected():
        raise VenueError("insufficient margin", reference="oid-9")

    async def crashed():
        raise RuntimeError("socket closed")

    outcome = await reconciler.execute(rejected, source)
    assert outcome.status is SettlementStatus.FAILED
    assert outcome.reference == "oid-9"
    assert outcome.message == "insufficient margin"

    outcome = await reconciler.execute(crashed, source)
    assert outcome.status is SettlementStatus.FAILED
    assert outcome.message == "socket closed"

    outcome = await reconciler.execute(_timeout(reference=None), source)
    assert outcome.status is SettlementStatus.FAILED
    assert source.checks == 0


@pytest.mark.asyncio
async def test_timeout_then_confirmed_is_success():
    from vaultdealer.shell.contract import SettlementStatus, TxStatus

    reconciler, sleeps = _reconciler()
    source = StatusSource([TxStatus.PENDING, TxStatus.PENDING, TxStatus.CONFIRMED])

    outcome = await reconciler.execute(_timeout(), source, "swap")
    assert outcome.status is SettlementStatus.SUCCESS
    assert outcome.reference == "sig-1"
    assert sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_timeout_then_failed_on_chain():
    from vaultdealer.shell.contract import SettlementStatus, TxStatus

    reconciler, _ = _reconciler()
    outcome = await reconciler.execute(_timeout(), StatusSource([TxStatus.FAILED]))
    assert outcome.status is SettlementStatus.FAILED
    assert outcome.reference == "sig-1"
    assert outcome.message.startswith("Transaction failed on-chain")


@pytest.mark.asyncio
async def test_still_pending_is_uncertain():
    from vaultdealer.shell.contract import SettlementStatus, TxStatus

    reconciler, sleeps = _reconciler(attempts=2)
    source = StatusSource([TxStatus.PENDING] * 3)

    outcome = await reconciler.execute(_timeout(), source)
    assert outcome.status is SettlementStatus.UNCERTAIN
    assert outcome.reference == "sig-1"
    assert source.checks == 3
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_status_check_error_is_uncertain():
    from vaultdealer.shell.contract import SettlementStatus

    reconciler, _ = _reconciler()
    outcome = await reconciler.execute(_timeout(), StatusSource([ConnectionError("rpc down")]))
    assert outcome.status is SettlementStatus.UNCERTAIN
    assert "rpc down" in outcome.message


@pytest.mark.asyncio
async def test_venue_unsure_submission_is_reconciled():
    from vaultdealer.shell.contract import SettlementStatus, TxStatus
    from vaultdealer.shell.errors import UncertainSettlement

    reconciler, _ = _reconciler()

    async def call():
        raise UncertainSettlement("sig-9", "sent, no confirmation")

    source = StatusSource([TxStatus.CONFIRMED])
    outcome = await reconciler.execute(call, source, "transfer")
    assert outcome.status is SettlementStatus.SUCCESS
    assert outcome.reference == "sig-9"
    assert source.checks == 1

    async def no_reference():
        raise UncertainSettlement("")

    outcome = await reconciler.execute(no_reference, StatusSource([]), "transfer")
    assert outcome.status is SettlementStatus.FAILED
