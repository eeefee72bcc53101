"""Test doubles shared across the suite."""

import numpy as np
import pandas as pd


class MemoryStore:
    """In-memory stand-in for SqliteStore."""

    def __init__(self):
        self.data: dict[str, bytes] = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value

    async def delete(self, key):
        self.data.pop(key, None)

    async def items(self):
        return sorted(self.data.items())


class FakeClock:
    def __init__(self, now=1_700_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_candles(closes, spread=1.0, volume=10.0):
    """OHLCV frame around a close series."""
    closes = np.asarray(list(closes), dtype=float)
    index = pd.date_range("2025-01-01", periods=len(closes), freq="h")
    return pd.DataFrame({
        "open": closes,
        "high": closes + spread,
        "low": closes - spread,
        "close": closes,
        "volume": np.full(len(closes), volume),
    }, index=index)
