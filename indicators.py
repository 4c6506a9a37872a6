# indicators.py

from typing import Iterable, Tuple

import numpy as np
import pandas as pd

from config import (
    EMA_PERIODS, RSI_PERIOD, MACD_FAST_PERIOD, MACD_SLOW_PERIOD, MACD_SIGNAL_PERIOD,
    ATR_PERIOD, ADX_PERIOD, STOCH_PERIOD, STOCH_SIGNAL_PERIOD, PSAR_STEP, PSAR_MAX,
    VOLUME_AVG_PERIOD,
)
from models import IndicatorSnapshot


def _wilder(series: pd.Series, period: int) -> pd.Series:
    return series.ewm(alpha=1 / period, min_periods=period, adjust=False).mean()


def ema(close: pd.Series, period: int) -> pd.Series:
    return close.ewm(span=period, min_periods=period, adjust=False).mean()


def rsi(close: pd.Series, period: int = 14) -> pd.Series:
    """RSI using Wilder's smoothing."""
    delta = close.diff()
    gain = delta.where(delta > 0, 0.0)
    loss = -delta.where(delta < 0, 0.0)

    avg_gain = _wilder(gain.iloc[1:], period)
    avg_loss = _wilder(loss.iloc[1:], period)

    rs = avg_gain / avg_loss.replace(0, np.nan)
    values = 100 - (100 / (1 + rs))
    values = values.where(avg_loss != 0, 100.0).where(avg_loss.notna())
    return values.reindex(close.index)


def macd(close: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9):
    """Return (macd line, signal line, histogram)."""
    macd_line = ema(close, fast) - ema(close, slow)
    signal_line = macd_line.ewm(span=signal, min_periods=signal, adjust=False).mean()
    return macd_line, signal_line, macd_line - signal_line


def true_range(high: pd.Series, low: pd.Series, close: pd.Series) -> pd.Series:
    prev_close = close.shift(1)
    ranges = pd.concat([high - low, (high - prev_close).abs(), (low - prev_close).abs()], axis=1)
    return ranges.max(axis=1)


def atr(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
    return _wilder(true_range(high, low, close).iloc[1:], period)


def adx(high: pd.Series, low: pd.Series, close: pd.Series, period: int = 14) -> pd.Series:
    up = high.diff()
    down = -low.diff()
    plus_dm = up.where((up > down) & (up > 0), 0.0).iloc[1:]
    minus_dm = down.where((down > up) & (down > 0), 0.0).iloc[1:]

    smoothed_tr = atr(high, low, close, period).replace(0, np.nan)
    plus_di = 100 * _wilder(plus_dm, period) / smoothed_tr
    minus_di = 100 * _wilder(minus_dm, period) / smoothed_tr

    di_sum = (plus_di + minus_di).replace(0, np.nan)
    dx = (100 * (plus_di - minus_di).abs() / di_sum).dropna()
    return _wilder(dx, period)


def stochastic(high: pd.Series, low: pd.Series, close: pd.Series,
               period: int = 14, signal_period: int = 3):
    """Return (%K, %D)."""
    lowest = low.rolling(window=period, min_periods=period).min()
    highest = high.rolling(window=period, min_periods=period).max()
    k = 100 * (close - lowest) / (highest - lowest).replace(0, np.nan)
    d = k.rolling(window=signal_period, min_periods=signal_period).mean()
    return k, d


def psar(high: pd.Series, low: pd.Series, step: float = 0.02, max_step: float = 0.2) -> pd.Series:
    """Parabolic SAR; the first bar only seeds the trend and stays NaN."""
    highs = high.to_numpy(dtype=float)
    lows = low.to_numpy(dtype=float)
    out = np.full(len(highs), np.nan)
    if len(highs) < 2:
        return pd.Series(out, index=high.index)

    rising = True
    af = step
    extreme = highs[0]
    sar = lows[0]

    for i in range(1, len(highs)):
        sar = sar + af * (extreme - sar)
        if rising:
            sar = min(sar, lows[i - 1], lows[max(i - 2, 0)])
            if lows[i] < sar:
                rising, sar, extreme, af = False, extreme, lows[i], step
            elif highs[i] > extreme:
                extreme = highs[i]
                af = min(af + step, max_step)
        else:
            sar = max(sar, highs[i - 1], highs[max(i - 2, 0)])
            if highs[i] > sar:
                rising, sar, extreme, af = True, extreme, highs[i], step
            elif lows[i] < extreme:
                extreme = lows[i]
                af = min(af + step, max_step)
        out[i] = sar

    return pd.Series(out, index=high.index)


def volume_ratio(volume: pd.Series, period: int = 20) -> float:
    """Latest volume divided by the trailing average (latest bar included)."""
    average = volume.iloc[-period:].mean()
    if not average or np.isnan(average):
        return 0.0
    return float(volume.iloc[-1] / average)


def _values(series: pd.Series) -> Tuple[float, ...]:
    return tuple(float(v) for v in series.dropna())


def build_snapshot(df: pd.DataFrame, ema_periods: Iterable[int] = EMA_PERIODS) -> IndicatorSnapshot:
    if df.empty:
        raise ValueError("Cannot compute indicators from an empty candle frame")

    close, high, low = df['close'], df['high'], df['low']
    macd_line, signal_line, _ = macd(close, MACD_FAST_PERIOD, MACD_SLOW_PERIOD, MACD_SIGNAL_PERIOD)
    stoch_k, stoch_d = stochastic(high, low, close, STOCH_PERIOD, STOCH_SIGNAL_PERIOD)

    # %K and %D are kept aligned so the latest pair belongs to the same bar
    stoch = pd.concat([stoch_k, stoch_d], axis=1).dropna()

    return IndicatorSnapshot(
        price=float(close.iloc[-1]),
        emas={period: _values(ema(close, period)) for period in ema_periods},
        rsi=_values(rsi(close, RSI_PERIOD)),
        macd=_values(macd_line[signal_line.notna()]),
        macd_signal=_values(signal_line),
        atr=_values(atr(high, low, close, ATR_PERIOD)),
        adx=_values(adx(high, low, close, ADX_PERIOD)),
        stoch_k=_values(stoch.iloc[:, 0]),
        stoch_d=_values(stoch.iloc[:, 1]),
        psar=_values(psar(high, low, PSAR_STEP, PSAR_MAX)),
        volume_ratio=volume_ratio(df['volume'], VOLUME_AVG_PERIOD),
    )
