# signal_generator.py
"""Entry and exit rules for a single long position.

Everything here is a pure function of the indicator snapshot, the open
position and static configuration. The only mutation is the trailing stop
ratchet on the ``Position`` handed in by the caller.
"""

from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN
from typing import Dict, Optional, Tuple

from config import (
    EMA_PERIODS, RSI_RANGE, MACD_SIGNAL_MARGIN, VOLUME_SPIKE, ADX_THRESHOLD,
    PRICE_EMA_MARGIN, SESSION_HOURS, STOP_ATR_MULTIPLIER, TARGET_ATR_MULTIPLIER,
    TRAILING_ACTIVATION_RATIO, TRAILING_STEP_SIZE, TRAILING_FLOOR_RATIO,
    TRAILING_MAX_DEVIATION, RISK_PER_TRADE, COMPOUND_RATE, QUANTITY_PRECISION,
)
from models import EntryDecision, ExitReason, IndicatorSnapshot, Position


@dataclass(frozen=True)
class TrailingStopConfig:
    activation_ratio: float = TRAILING_ACTIVATION_RATIO  # ATR multiples above entry to arm
    step_size: float = TRAILING_STEP_SIZE                # ATR multiples below price
    floor_ratio: float = TRAILING_FLOOR_RATIO            # ATR multiples above entry, minimum stop
    max_deviation: float = TRAILING_MAX_DEVIATION


@dataclass(frozen=True)
class StrategyConfig:
    """Static thresholds for the momentum entry and the exit ladder."""

    ema_periods: Tuple[int, int, int] = EMA_PERIODS
    rsi_range: Tuple[float, float] = RSI_RANGE
    macd_signal_margin: float = MACD_SIGNAL_MARGIN
    volume_spike: float = VOLUME_SPIKE
    adx_threshold: float = ADX_THRESHOLD
    price_ema_margin: float = PRICE_EMA_MARGIN
    session_hours: Tuple[int, int] = SESSION_HOURS

    stop_atr_multiplier: float = STOP_ATR_MULTIPLIER
    target_atr_multiplier: float = TARGET_ATR_MULTIPLIER
    trailing: TrailingStopConfig = field(default_factory=TrailingStopConfig)

    # Sizing / compounding
    risk_per_trade: float = RISK_PER_TRADE
    compound_rate: float = COMPOUND_RATE
    quantity_precision: int = QUANTITY_PRECISION


def in_session(hour: int, config: StrategyConfig) -> bool:
    start, end = config.session_hours
    return start <= hour < end


def entry_checks(snapshot: IndicatorSnapshot, hour: int, config: StrategyConfig) -> Dict[str, bool]:
    short, mid, long_ = config.ema_periods
    ema_short, ema_mid, ema_long = snapshot.ema(short), snapshot.ema(mid), snapshot.ema(long_)
    rsi_low, rsi_high = config.rsi_range
    current_rsi = snapshot.last_rsi

    return OrderedDict([
        ("trend", ema_short > ema_mid > ema_long),
        ("rsi", rsi_low < current_rsi < rsi_high),
        ("macd", snapshot.last_macd > snapshot.last_macd_signal * config.macd_signal_margin),
        ("volume", snapshot.volume_ratio > config.volume_spike),
        ("adx", snapshot.last_adx > config.adx_threshold),
        ("stochastic", snapshot.last_stoch_k > snapshot.last_stoch_d),
        ("price", snapshot.price > ema_short * config.price_ema_margin),
        ("session", in_session(hour, config)),
    ])


def calculate_exit_levels(entry_price: float, atr: float, config: StrategyConfig) -> Tuple[float, float]:
    stop = entry_price - atr * config.stop_atr_multiplier
    target = entry_price + atr * config.target_atr_multiplier
    return stop, target


def evaluate_entry(snapshot: IndicatorSnapshot, hour: int, config: StrategyConfig) -> EntryDecision:
    checks = entry_checks(snapshot, hour, config)
    failed = [name for name, passed in checks.items() if not passed]
    if failed:
        return EntryDecision(enter=False, failed=failed)

    atr = snapshot.last_atr
    stop, target = calculate_exit_levels(snapshot.price, atr, config)
    return EntryDecision(enter=True, stop=stop, target=target, atr=atr)


def open_position(fill_price: float, quantity: float, atr: float, config: StrategyConfig) -> Position:
    stop, target = calculate_exit_levels(fill_price, atr, config)
    return Position(
        entry_price=fill_price,
        quantity=quantity,
        initial_stop=stop,
        target=target,
        highest_price=fill_price,
        atr=atr,
    )


def update_trailing_stop(position: Position, price: float, config: StrategyConfig) -> bool:
    """Arm or ratchet the trailing stop. Returns True on the arming tick."""
    trailing = config.trailing
    floor = position.entry_price + position.atr * trailing.floor_ratio
    activated = False

    if not position.trailing_active and \
            price >= position.entry_price + position.atr * trailing.activation_ratio:
        position.trailing_stop = floor
        activated = True

    if position.trailing_active:
        candidate = price - position.atr * trailing.step_size
        deviation = (price - position.highest_price) / position.highest_price
        if candidate > position.trailing_stop and candidate > floor \
                and deviation < trailing.max_deviation:
            position.trailing_stop = candidate
            position.highest_price = price

    return activated


def check_exit(snapshot: IndicatorSnapshot, position: Position,
               config: StrategyConfig) -> Optional[ExitReason]:
    """First matching exit in fixed priority order, or None."""
    short, mid, _ = config.ema_periods
    price = snapshot.price

    if price <= position.initial_stop:
        return ExitReason.HARD_STOP
    if position.trailing_active and price <= position.trailing_stop:
        return ExitReason.TRAILING_STOP
    if price >= position.target:
        return ExitReason.TAKE_PROFIT
    if snapshot.ema(short) < snapshot.ema(mid):
        return ExitReason.EMA_CROSS
    if snapshot.last_psar > price:
        return ExitReason.PSAR_REVERSAL
    return None


def evaluate_exit(snapshot: IndicatorSnapshot, position: Position,
                  config: StrategyConfig) -> Tuple[Optional[ExitReason], bool]:
    activated = update_trailing_stop(position, snapshot.price, config)
    return check_exit(snapshot, position, config), activated


def position_size(capital: float, price: float, config: StrategyConfig) -> float:
    if price <= 0:
        raise ValueError(f"Price must be positive, got {price}")
    if capital <= 0:
        raise ValueError(f"Capital must be positive, got {capital}")
    return round(capital * config.risk_per_trade / price, config.quantity_precision)


def round_down(quantity: float, precision: int) -> float:
    """Truncate to `precision` decimals; values already on the grid are kept."""
    step = Decimal(1).scaleb(-precision)
    return float(Decimal(str(quantity)).quantize(step, rounding=ROUND_DOWN))


def pnl_percent(entry_price: float, exit_price: float) -> float:
    return (exit_price - entry_price) / entry_price * 100


def apply_compounding(capital: float, pnl_pct: float, config: StrategyConfig) -> float:
    if pnl_pct > 0:
        return capital * (1 + config.compound_rate)
    return capital
