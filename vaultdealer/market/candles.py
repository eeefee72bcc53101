"""Perps venue public info client: candles and mid prices over httpx."""

from __future__ import annotations

import time
from typing import Any

import httpx
import pandas as pd
import structlog

from vaultdealer.shell.config import MarketConfig
from vaultdealer.shell.errors import DataUnavailable

log = structlog.get_logger()

# exchange-native code -> (venue interval, minutes)
INTERVALS: dict[str, tuple[str, int]] = {
    "1": ("1m", 1),
    "5": ("5m", 5),
    "15": ("15m", 15),
    "60": ("1h", 60),
    "240": ("4h", 240),
    "D": ("1d", 1440),
    "W": ("1w", 10080),
}
_NATIVE = {venue: code for code, (venue, _) in INTERVALS.items()}

CANDLE_COLUMNS = ["open", "high", "low", "close", "volume"]


def normalize_interval(interval: str) -> tuple[str, int]:
    """Map '60' / '1h' / '1H' / 'd' to (venue interval, minutes)."""
    raw = str(interval).strip()
    key = raw.upper() if raw.upper() in ("D", "W") else raw
    if key in INTERVALS:
        return INTERVALS[key]
    if raw.lower() in _NATIVE:
        return INTERVALS[_NATIVE[raw.lower()]]
    raise DataUnavailable(f"Unsupported interval: {interval!r}")


def to_coin(symbol: str) -> str:
    """'BTCUSDT' / 'BTC/USD' / 'btc' -> 'BTC'."""
    coin = symbol.strip().upper().replace("/", "").replace("-", "")
    for suffix in ("USDT", "USDC", "USD"):
        if coin.endswith(suffix) and len(coin) > len(suffix):
            return coin[: -len(suffix)]
    return coin


class CandleClient:
    """Public market data from the venue's info endpoint."""

    def __init__(self, config: MarketConfig, client: httpx.AsyncClient | None = None) -> None:
        self._base_url = config.base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=config.timeout)

    async def close(self) -> None:
        await self._client.aclose()

    async def info(self, payload: dict[str, Any]) -> Any:
        try:
            resp = await self._client.post(f"{self._base_url}/info", json=payload)
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise DataUnavailable(f"{payload.get('type')} request failed: {e}") from e

    async def get_ohlc(self, symbol: str, interval: str = "60", limit: int = 200) -> pd.DataFrame:
        """Fetch the last ``limit`` candles, oldest first, as a float DataFrame indexed by open time."""
        coin = to_coin(symbol)
        venue_interval, minutes = normalize_interval(interval)
        end_ms = int(time.time() * 1000)
        start_ms = end_ms - limit * minutes * 60_000

        rows = await self.info({
            "type": "candleSnapshot",
            "req": {"coin": coin, "interval": venue_interval, "startTime": start_ms, "endTime": end_ms},
        })
        if not isinstance(rows, list):
            raise DataUnavailable(f"Unexpected candle payload for {coin}: {type(rows).__name__}")
        if not rows:
            return pd.DataFrame(columns=CANDLE_COLUMNS)

        try:
            df = pd.DataFrame({
                "time": [r["t"] for r in rows],
                "open": [r["o"] for r in rows],
                "high": [r["h"] for r in rows],
                "low": [r["l"] for r in rows],
                "close": [r["c"] for r in rows],
                "volume": [r["v"] for r in rows],
            })
        except (KeyError, TypeError) as e:
            raise DataUnavailable(f"Malformed candle for {coin}: {e}") from e

        for col in CANDLE_COLUMNS:
            df[col] = df[col].astype(float)
        df["time"] = pd.to_datetime(df["time"], unit="ms")
        df.set_index("time", inplace=True)
        return df.tail(limit)

    async def get_mids(self) -> dict[str, float]:
        mids = await self.info({"type": "allMids"})
        if not isinstance(mids, dict):
            raise DataUnavailable("Unexpected allMids payload")
        return {coin: float(px) for coin, px in mids.items()}
