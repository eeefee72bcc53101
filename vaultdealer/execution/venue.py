"""Venue contracts the engine calls. Implementations hold no engine state."""

from __future__ import annotations

from typing import Protocol

from vaultdealer.shell.contract import (
    AccountState,
    ExecutionIntent,
    SwapParams,
    TransferParams,
    TxStatus,
)


class SettlementSource(Protocol):
    async def get_transaction_status(self, reference: str) -> TxStatus: ...


class VaultVenue(SettlementSource, Protocol):
    """On-chain vault: token swaps and transfers, each returning a transaction reference."""

    async def swap(self, key: str, params: SwapParams) -> str: ...

    async def transfer(self, key: str, params: TransferParams, destination: str) -> str: ...


class PerpsVenue(SettlementSource, Protocol):
    """Perpetuals exchange. ``place_order`` returns the order reference or raises VenueError."""

    async def place_order(self, key: str, intent: ExecutionIntent) -> str: ...

    async def update_leverage(self, key: str, coin: str, leverage: float) -> None: ...

    async def get_best_prices(self, coin: str) -> tuple[float, float]: ...

    async def get_sz_decimals(self, coin: str) -> int: ...

    async def get_account_state(self) -> AccountState: ...
