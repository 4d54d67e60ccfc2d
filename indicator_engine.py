#!/usr/bin/env python3
"""
Indicator Engine — Moving-average relationships, crossover labels, period
returns and RSI classification for WGO technical write-ups.

Also carries the pandas indicator math used to derive historical RSI/SMA/EMA/MACD
series when the market data source only supplies raw bars.
"""

import datetime
import math
import numpy as np
import pandas as pd

# ------------------------------------------------------------------
# Config
# ------------------------------------------------------------------
MA_LENGTHS = [20, 50, 100, 200]
RSI_OVERBOUGHT = 70
RSI_OVERSOLD = 30


def is_valid_number(value):
    """True for finite real numbers (bools excluded)."""
    if value is None or isinstance(value, bool):
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def to_millis(value):
    """Convert a datetime, date or epoch-ms number to epoch milliseconds."""
    if isinstance(value, datetime.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=datetime.timezone.utc)
        return int(value.timestamp() * 1000)
    if isinstance(value, datetime.date):
        dt = datetime.datetime(value.year, value.month, value.day, tzinfo=datetime.timezone.utc)
        return int(dt.timestamp() * 1000)
    if is_valid_number(value):
        return int(value)
    return None


def to_iso_date(timestamp_ms):
    """Epoch ms -> 'YYYY-MM-DD' (UTC day)."""
    dt = datetime.datetime.fromtimestamp(timestamp_ms / 1000, tz=datetime.timezone.utc)
    return dt.strftime("%Y-%m-%d")


# ============================================================
# MOVING-AVERAGE RELATIONSHIPS
# ============================================================
def compute_ma_relationships(price, moving_averages):
    """
    Percent distance of price from each available SMA/EMA.

    moving_averages: {"sma20": 101.2, "ema50": None, ...}
    Returns {"sma20": {"pct": 1.3, "magnitude": 1.3, "direction": "above"}, ...}
    with absent or unusable averages left out.
    """
    relationships = {}
    if not is_valid_number(price):
        return relationships

    for kind in ("sma", "ema"):
        for length in MA_LENGTHS:
            key = f"{kind}{length}"
            ma_value = (moving_averages or {}).get(key)
            if not is_valid_number(ma_value) or ma_value == 0:
                continue
            pct = (price - ma_value) / ma_value * 100
            relationships[key] = {
                "type": kind.upper(),
                "length": length,
                "value": float(ma_value),
                "pct": pct,
                "magnitude": abs(pct),
                "direction": "above" if pct >= 0 else "below",
            }
    return relationships


def classify_crossovers(moving_averages, turning_points=None):
    """
    Label the 20/50 and 50/200 SMA relationships.

    The 50/200 pair is only called a golden/death cross when the detector
    found a dated crossing; otherwise it gets the neutral long-term trend label.
    """
    moving_averages = moving_averages or {}
    turning_points = turning_points or {}
    crossovers = {}

    sma20 = moving_averages.get("sma20")
    sma50 = moving_averages.get("sma50")
    sma200 = moving_averages.get("sma200")

    if is_valid_number(sma20) and is_valid_number(sma50):
        crossovers["sma20_sma50"] = {
            "fast": float(sma20),
            "slow": float(sma50),
            "label": "bullish" if sma20 >= sma50 else "bearish",
        }

    if is_valid_number(sma50) and is_valid_number(sma200):
        if sma50 > sma200:
            date = turning_points.get("golden_cross_date")
            label = "golden cross" if date else "bullish long-term trend"
        else:
            date = turning_points.get("death_cross_date")
            label = "death cross" if date else "bearish long-term trend"
        crossover = {"fast": float(sma50), "slow": float(sma200), "label": label}
        if date:
            crossover["date"] = date
        crossovers["sma50_sma200"] = crossover

    return crossovers


# ============================================================
# PERIOD RETURN
# ============================================================
def calculate_period_return(bars, start, end):
    """
    Percent return between the bars nearest to start and end.

    Start resolves to the first bar on/after start (else the last bar before it),
    end to the last bar on/before end (else the first bar after it). Returns None
    rather than 0 when both resolve to the same bar.
    """
    start_ms = to_millis(start)
    end_ms = to_millis(end)
    if not bars or start_ms is None or end_ms is None:
        return None

    sorted_bars = sorted(
        (b for b in bars if is_valid_number(b.get("timestamp"))),
        key=lambda b: b["timestamp"],
    )
    if not sorted_bars:
        return None

    start_bar = next((b for b in sorted_bars if b["timestamp"] >= start_ms), None)
    if start_bar is None:
        before = [b for b in sorted_bars if b["timestamp"] < start_ms]
        start_bar = before[-1] if before else sorted_bars[0]

    on_or_before = [b for b in sorted_bars if b["timestamp"] <= end_ms]
    if on_or_before:
        end_bar = on_or_before[-1]
    else:
        end_bar = next((b for b in sorted_bars if b["timestamp"] > end_ms), sorted_bars[-1])

    start_close = start_bar.get("close")
    end_close = end_bar.get("close")
    if not is_valid_number(start_close) or not is_valid_number(end_close):
        return None
    if start_close <= 0 or end_close <= 0:
        return None
    if start_bar["timestamp"] > end_bar["timestamp"]:
        return None
    if start_bar["timestamp"] == end_bar["timestamp"]:
        return None

    return (end_close - start_close) / start_close * 100


def classify_rsi(rsi):
    if not is_valid_number(rsi):
        return "neutral"
    if rsi >= RSI_OVERBOUGHT:
        return "overbought"
    if rsi <= RSI_OVERSOLD:
        return "oversold"
    return "neutral"


# ============================================================
# TECHNICAL INDICATORS (series, pandas)
# ============================================================
def compute_rsi(series, period=14):
    """Compute RSI (Relative Strength Index) with Wilder smoothing."""
    delta = series.diff()
    gain = delta.where(delta > 0, 0.0)
    loss = -delta.where(delta < 0, 0.0)
    avg_gain = gain.rolling(window=period, min_periods=period).mean()
    avg_loss = loss.rolling(window=period, min_periods=period).mean()
    for i in range(period, len(avg_gain)):
        avg_gain.iloc[i] = (avg_gain.iloc[i-1] * (period - 1) + gain.iloc[i]) / period
        avg_loss.iloc[i] = (avg_loss.iloc[i-1] * (period - 1) + loss.iloc[i]) / period
    rs = avg_gain / avg_loss.replace(0, np.nan)
    rsi = 100 - (100 / (1 + rs))
    # No losses in the window means RSI pegged at 100
    rsi = rsi.where(~((avg_loss == 0) & avg_gain.notna()), 100.0)
    return rsi


def compute_macd(series, fast=12, slow=26, signal_period=9):
    """Compute MACD, Signal Line, and Histogram."""
    ema_fast = series.ewm(span=fast, adjust=False).mean()
    ema_slow = series.ewm(span=slow, adjust=False).mean()
    macd_line = ema_fast - ema_slow
    signal_line = macd_line.ewm(span=signal_period, adjust=False).mean()
    histogram = macd_line - signal_line
    return macd_line, signal_line, histogram


def compute_moving_averages(series, lengths=None, kind="sma"):
    """Compute SMA or EMA series for each length; NaN until enough history."""
    averages = {}
    for length in lengths or MA_LENGTHS:
        if kind == "ema":
            ma = series.ewm(span=length, adjust=False, min_periods=length).mean()
        else:
            ma = series.rolling(window=length).mean()
        averages[length] = ma
    return averages


def series_to_points(series):
    """pandas Series indexed by timestamps -> [{"value", "timestamp"}], NaN dropped."""
    points = []
    for ts, value in series.dropna().items():
        points.append({"value": float(value), "timestamp": to_millis(pd.Timestamp(ts).to_pydatetime())})
    return points


def latest_value(series):
    """Last non-NaN value of a series, or None."""
    clean = series.dropna()
    if clean.empty:
        return None
    return float(clean.iloc[-1])
