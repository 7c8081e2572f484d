import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Sequence


def _tail(values: Sequence[float], count: int) -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    return arr[-count:] if count > 0 else arr[:0]


def rsi(closes: Sequence[float], period: int = 14) -> Optional[float]:
    """RSI from simple average gain/loss over the last ``period`` price changes."""
    prices = _tail(closes, period + 1)
    if len(prices) < 2:
        return None
    changes = np.diff(prices)
    avg_gain = float(np.mean(np.where(changes > 0, changes, 0.0)))
    avg_loss = float(np.mean(np.where(changes < 0, -changes, 0.0)))
    if avg_loss == 0:
        return 100.0
    rs = avg_gain / avg_loss
    return 100.0 - (100.0 / (1.0 + rs))


def ema(closes: Sequence[float], period: int) -> Optional[float]:
    """EMA over the last ``period`` prices, seeded with the first of them."""
    prices = _tail(closes, period)
    if len(prices) == 0:
        return None
    multiplier = 2.0 / (period + 1)
    value = float(prices[0])
    for price in prices[1:]:
        value = (float(price) - value) * multiplier + value
    return value


def sma(values: Sequence[float], period: int) -> Optional[float]:
    window = _tail(values, period)
    if len(window) == 0:
        return None
    return float(np.mean(window))


@dataclass(frozen=True)
class FairValueGap:
    """Three-bar imbalance: the range between bar one and bar three left untraded by bar two."""

    start_index: int
    end_index: int
    gap_low: float
    gap_high: float
    bullish: bool

    @property
    def size(self) -> float:
        return self.gap_high - self.gap_low

    def contains(self, price: float, tolerance: float = 0.0) -> bool:
        """True when ``price`` sits inside the gap, widened on both sides by ``tolerance`` times its size."""
        pad = self.size * tolerance
        return self.gap_low - pad <= price <= self.gap_high + pad


@dataclass(frozen=True)
class LiquidityZone:
    price: float
    touches: int
    support: bool

    @property
    def strength(self) -> float:
        return self.touches * 10.0


def find_fair_value_gaps(candles: Sequence, min_gap_percent: float = 0.5) -> List[FairValueGap]:
    """Every bullish and bearish gap of at least ``min_gap_percent``, oldest first."""
    gaps: List[FairValueGap] = []
    for i in range(2, len(candles)):
        first, third = candles[i - 2], candles[i]
        if third.low > first.high and first.high > 0:
            if (third.low - first.high) / first.high * 100 >= min_gap_percent:
                gaps.append(FairValueGap(i - 2, i, first.high, third.low, True))
        if third.high < first.low and first.low > 0:
            if (first.low - third.high) / first.low * 100 >= min_gap_percent:
                gaps.append(FairValueGap(i - 2, i, third.high, first.low, False))
    return gaps


def _pivot_prices(values: np.ndarray, highs: bool, span: int = 2) -> List[float]:
    pivots = []
    for i in range(span, len(values) - span):
        neighbours = np.concatenate((values[i - span:i], values[i + 1:i + span + 1]))
        if (highs and np.all(values[i] > neighbours)) or (not highs and np.all(values[i] < neighbours)):
            pivots.append(float(values[i]))
    return pivots


def _group_levels(prices: List[float], tolerance_pct: float, support: bool) -> List[LiquidityZone]:
    groups: List[List[float]] = []
    for price in prices:
        for group in groups:
            anchor = group[0]
            if abs(price - anchor) <= anchor * tolerance_pct / 100:
                group.append(price)
                break
        else:
            groups.append([price])
    # a single pivot is not a zone
    return [LiquidityZone(float(np.mean(g)), len(g), support) for g in groups if len(g) >= 2]


def find_liquidity_zones(
    candles: Sequence, lookback: int = 50, tolerance_pct: float = 0.5
) -> List[LiquidityZone]:
    """Clusters of repeated swing highs (resistance) and swing lows (support), strongest first."""
    if len(candles) < lookback:
        return []
    recent = candles[-lookback:]
    highs = np.asarray([c.high for c in recent], dtype=float)
    lows = np.asarray([c.low for c in recent], dtype=float)
    zones = _group_levels(_pivot_prices(highs, highs=True), tolerance_pct, support=False)
    zones += _group_levels(_pivot_prices(lows, highs=False), tolerance_pct, support=True)
    return sorted(zones, key=lambda z: z.strength, reverse=True)


def near_liquidity_zone(
    price: float, zones: Sequence[LiquidityZone], tolerance_pct: float = 1.0
) -> Optional[LiquidityZone]:
    for zone in zones:
        if abs(price - zone.price) <= zone.price * tolerance_pct / 100:
            return zone
    return None
