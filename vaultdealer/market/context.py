"""Market Context Provider: candles and indicator values per (symbol, indicator, timeframe)."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Optional

import pandas as pd
import structlog

from vaultdealer.market import indicators
from vaultdealer.market.candles import to_coin
from vaultdealer.shell.errors import DataUnavailable

if TYPE_CHECKING:
    from vaultdealer.market.candles import CandleClient
    from vaultdealer.shell.config import IndicatorSettings

log = structlog.get_logger()

MIN_CANDLES = 30
CHANGE_LOOKBACK = 24


def _finite(name: str, value: indicators.IndicatorValue) -> indicators.IndicatorValue:
    values = value.values() if isinstance(value, dict) else [value]
    if any(v is None or math.isnan(v) or math.isinf(v) for v in values):
        raise DataUnavailable(f"{name} is undefined for the available candles")
    if isinstance(value, dict):
        return {k: round(v, 6) for k, v in value.items()}
    return round(value, 6)


class MarketContextProvider:
    def __init__(self, candles: CandleClient, candle_limit: int = 200) -> None:
        self._candles = candles
        self._limit = candle_limit

    async def get_candles(self, symbol: str, interval: str, limit: int | None = None) -> pd.DataFrame:
        df = await self._candles.get_ohlc(symbol, interval, limit or self._limit)
        if df.empty:
            raise DataUnavailable(f"No candles for {symbol} ({interval})")
        return df

    def _compute(self, df: pd.DataFrame, indicator: str, params: dict | None) -> indicators.IndicatorValue:
        name = indicators.canonical(indicator)
        if name not in indicators.INDICATORS:
            raise DataUnavailable(f"Unknown indicator: {indicator}")
        if name != "price" and len(df) < MIN_CANDLES:
            raise DataUnavailable(f"Not enough candles for {name}: {len(df)} < {MIN_CANDLES}")
        return _finite(name, indicators.compute(df, name, params))

    async def get_indicator(
        self, symbol: str, indicator: str, timeframe: str = "60", params: dict | None = None
    ) -> indicators.IndicatorValue:
        df = await self.get_candles(symbol, timeframe)
        return self._compute(df, indicator, params)

    async def get_mid_price(self, coin: str) -> float:
        mids = await self._candles.get_mids()
        coin = to_coin(coin)
        if coin not in mids:
            raise DataUnavailable(f"No mid price for {coin}")
        return mids[coin]

    async def build_asset_context(
        self,
        coin: str,
        timeframe: str,
        settings: IndicatorSettings,
        history_candles: int = 30,
    ) -> dict:
        """Price, recent change, enabled indicators and a compact candle tail for one asset."""
        df = await self.get_candles(coin, timeframe)
        close = df["close"]
        price = float(close.iloc[-1])
        base = float(close.iloc[-CHANGE_LOOKBACK]) if len(close) >= CHANGE_LOOKBACK else float(close.iloc[0])

        computed: dict[str, indicators.IndicatorValue] = {}
        for name in settings.enabled:
            try:
                computed[name] = self._compute(df, name, settings.params_for(indicators.canonical(name)))
            except DataUnavailable as e:
                log.debug("market.indicator_skipped", coin=coin, indicator=name, error=str(e))

        tail = df.tail(history_candles)
        return {
            "coin": to_coin(coin),
            "timeframe": timeframe,
            "price": price,
            "change_pct": round((price - base) / base * 100, 3) if base else 0.0,
            "indicators": computed,
            "candles": [
                [round(r.open, 6), round(r.high, 6), round(r.low, 6), round(r.close, 6), round(r.volume, 4)]
                for r in tail.itertuples()
            ],
        }

    async def get_macro_snapshot(
        self,
        coin: str,
        timeframe: str,
        enabled: list[str],
        settings: Optional[IndicatorSettings] = None,
    ) -> dict:
        """Higher-timeframe view restricted to the macro indicator list."""
        df = await self.get_candles(coin, timeframe)
        snapshot: dict[str, indicators.IndicatorValue] = {}
        for name in enabled:
            params = settings.params_for(indicators.canonical(name)) if settings else None
            try:
                snapshot[name] = self._compute(df, name, params)
            except DataUnavailable as e:
                log.debug("market.macro_indicator_skipped", coin=coin, indicator=name, error=str(e))
        return {"timeframe": timeframe, "price": float(df["close"].iloc[-1]), "indicators": snapshot}
