# models.py
"""Records shared by the evaluator, the trader and the bot loop."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Sequence, Tuple


def latest(values: Sequence[float], name: str = "series") -> float:
    if not values:
        raise ValueError(f"Indicator {name} has no values")
    return values[-1]


@dataclass(frozen=True)
class IndicatorSnapshot:
    """Indicator values computed once per tick, oldest first."""
    price: float
    emas: Dict[int, Tuple[float, ...]]
    rsi: Tuple[float, ...]
    macd: Tuple[float, ...]
    macd_signal: Tuple[float, ...]
    atr: Tuple[float, ...]
    adx: Tuple[float, ...]
    stoch_k: Tuple[float, ...]
    stoch_d: Tuple[float, ...]
    psar: Tuple[float, ...]
    volume_ratio: float

    def ema(self, period: int) -> float:
        return latest(self.emas.get(period, ()), f"ema{period}")

    @property
    def last_rsi(self) -> float:
        return latest(self.rsi, "rsi")

    @property
    def last_macd(self) -> float:
        return latest(self.macd, "macd")

    @property
    def last_macd_signal(self) -> float:
        return latest(self.macd_signal, "macd_signal")

    @property
    def last_atr(self) -> float:
        return latest(self.atr, "atr")

    @property
    def last_adx(self) -> float:
        return latest(self.adx, "adx")

    @property
    def last_stoch_k(self) -> float:
        return latest(self.stoch_k, "stoch_k")

    @property
    def last_stoch_d(self) -> float:
        return latest(self.stoch_d, "stoch_d")

    @property
    def last_psar(self) -> float:
        return latest(self.psar, "psar")


@dataclass
class Position:
    entry_price: float
    quantity: float
    initial_stop: float
    target: float
    highest_price: float
    atr: float
    trailing_stop: Optional[float] = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def trailing_active(self) -> bool:
        return self.trailing_stop is not None


@dataclass
class TradingContext:
    """Mutable state owned by the tick loop: capital and the open position."""
    capital: float
    position: Optional[Position] = None
    last_update_time: float = 0.0


class ExitReason(str, Enum):
    HARD_STOP = "HARD STOP"
    TRAILING_STOP = "TRAILING STOP"
    TAKE_PROFIT = "TAKE PROFIT"
    EMA_CROSS = "EMA CROSS"
    PSAR_REVERSAL = "PSAR REVERSAL"


@dataclass
class EntryDecision:
    enter: bool
    stop: Optional[float] = None
    target: Optional[float] = None
    atr: Optional[float] = None
    failed: List[str] = field(default_factory=list)
