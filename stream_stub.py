# stream_stub.py
# Async OHLC bar emitter (simulated random walk).
# Usage example:
#   import asyncio
#   from stream_stub import bar_stream
#   async def main():
#       async for symbol, bar in bar_stream(symbols=("XYZ",), interval_ms=50):
#           print(symbol, bar)
#   asyncio.run(main())

import asyncio
import random
import time
from typing import AsyncIterator, Dict, Iterable, Optional, Tuple

from indicators import PriceBar


def next_bar(last_close: float, jitter: float, ts: float, rng: random.Random) -> PriceBar:
    """Build one bar that opens at ``last_close`` and respects low <= open/close <= high."""
    drift = rng.uniform(-0.02, 0.02)
    shock = rng.gauss(0.0, jitter)
    close = max(0.01, last_close * (1.0 + drift * 1e-3) + shock)
    wick_up = abs(rng.gauss(0.0, jitter / 2))
    wick_down = abs(rng.gauss(0.0, jitter / 2))
    high = max(last_close, close) + wick_up
    low = max(0.0, min(last_close, close) - wick_down)
    return PriceBar(
        open=round(last_close, 6),
        high=round(high, 6),
        low=round(low, 6),
        close=round(close, 6),
        timestamp=ts,
    )


async def bar_stream(symbols: Iterable[str] = ("XYZ",),
                     base_price: float = 100.0,
                     jitter: float = 0.08,
                     interval_ms: int = 50,
                     seed: Optional[int] = None) -> AsyncIterator[Tuple[str, PriceBar]]:
    """Yield (symbol, bar) for each symbol at ~interval_ms cadence.

    Timestamps are strictly increasing per symbol.
    """
    rng = random.Random(seed)
    symbols = tuple(symbols)
    closes: Dict[str, float] = {s: float(base_price) for s in symbols}
    last_ts = 0.0
    while True:
        # Guard against a coarse clock handing out the same second twice
        now = max(time.time(), last_ts + 1e-6)
        last_ts = now
        for s in symbols:
            bar = next_bar(closes[s], jitter, now, rng)
            closes[s] = bar.close
            yield s, bar
        await asyncio.sleep(max(0.0, interval_ms / 1000.0))


if __name__ == "__main__":
    async def _demo():
        async for symbol, bar in bar_stream(symbols=("XYZ", "ABC"), interval_ms=50):
            print(symbol, bar)
    asyncio.run(_demo())
