#!/usr/bin/env python3
"""
Turning-Point Detector — Finds dated technical events in a year of history.

Every field in the result comes from an explicit crossing or extreme found in
the supplied series. Sub-checks run independently; one with missing or
non-overlapping data simply contributes nothing.
"""

from indicator_engine import is_valid_number, to_iso_date, RSI_OVERBOUGHT, RSI_OVERSOLD

# ------------------------------------------------------------------
# Config
# ------------------------------------------------------------------
SWING_LOOKBACK_BARS = 60
SWING_WINDOW = 2
EXTREME_TOLERANCE = 0.01


def _clean(points, fields):
    return [
        p for p in points or []
        if is_valid_number(p.get("timestamp")) and all(is_valid_number(p.get(f)) for f in fields)
    ]


# ============================================================
# RSI
# ============================================================
def detect_rsi_crossings(historical_rsi):
    """Most recent move into overbought (>=70) and into oversold (<=30)."""
    found = {}
    points = sorted(_clean(historical_rsi, ["value"]), key=lambda p: p["timestamp"], reverse=True)
    if len(points) < 2:
        return found

    for current, previous in zip(points, points[1:]):
        if "rsi_overbought_date" not in found and current["value"] >= RSI_OVERBOUGHT > previous["value"]:
            found["rsi_overbought_date"] = to_iso_date(current["timestamp"])
        if "rsi_oversold_date" not in found and current["value"] <= RSI_OVERSOLD < previous["value"]:
            found["rsi_oversold_date"] = to_iso_date(current["timestamp"])
        if len(found) == 2:
            break
    return found


# ============================================================
# GOLDEN / DEATH CROSS
# ============================================================
def detect_ma_crossovers(historical_sma50, historical_sma200):
    """
    Golden/death crosses of SMA-50 over SMA-200 on shared timestamps.

    While SMA-50 is above SMA-200 the golden cross date is the start of the
    current bullish regime: the first golden cross after the latest death
    cross, or the first one in the window if there was no death cross. The
    latest death cross is reported whenever one exists.
    """
    found = {}
    sma50 = {p["timestamp"]: p["value"] for p in _clean(historical_sma50, ["value"])}
    sma200 = {p["timestamp"]: p["value"] for p in _clean(historical_sma200, ["value"])}
    shared = sorted(ts for ts in sma50 if ts in sma200)
    if not shared:
        return found

    golden = []
    death = []
    for prev_ts, ts in zip(shared, shared[1:]):
        prev_fast, prev_slow = sma50[prev_ts], sma200[prev_ts]
        fast, slow = sma50[ts], sma200[ts]
        if fast > slow and prev_fast <= prev_slow:
            golden.append(ts)
        if fast < slow and prev_fast >= prev_slow:
            death.append(ts)

    latest = shared[-1]
    currently_golden = sma50[latest] > sma200[latest]

    if currently_golden and golden:
        if death:
            last_death = death[-1]
            active = next((ts for ts in golden if ts > last_death), golden[-1])
            found["golden_cross_date"] = to_iso_date(active)
        else:
            found["golden_cross_date"] = to_iso_date(golden[0])

    if death:
        found["death_cross_date"] = to_iso_date(death[-1])

    return found


# ============================================================
# MACD
# ============================================================
MACD_EVENTS = [
    ("macd_bullish_cross_date", lambda cur, prev: cur["macd"] > cur["signal"] and prev["macd"] <= prev["signal"]),
    ("macd_bearish_cross_date", lambda cur, prev: cur["macd"] < cur["signal"] and prev["macd"] >= prev["signal"]),
    ("macd_zero_cross_above_date", lambda cur, prev: cur["macd"] > 0 and prev["macd"] <= 0),
    ("macd_zero_cross_below_date", lambda cur, prev: cur["macd"] < 0 and prev["macd"] >= 0),
]


def detect_macd_crossings(historical_macd):
    """Earliest occurrence in the window of each MACD signal/zero-line cross."""
    found = {}
    points = sorted(_clean(historical_macd, ["macd", "signal"]), key=lambda p: p["timestamp"])
    for previous, current in zip(points, points[1:]):
        for key, crossed in MACD_EVENTS:
            if key not in found and crossed(current, previous):
                found[key] = to_iso_date(current["timestamp"])
    return found


# ============================================================
# BARS: SWINGS, 52-WEEK EXTREMES, LEVEL BREAKS
# ============================================================
def detect_recent_swings(daily_bars, lookback=SWING_LOOKBACK_BARS, window_size=SWING_WINDOW):
    """Dates of the highest swing high and lowest swing low in the last `lookback` bars."""
    found = {}
    bars = _clean(daily_bars, ["high", "low"])
    if len(bars) <= 2 * window_size:
        return found
    recent = sorted(bars, key=lambda b: b["timestamp"])[-lookback:]

    best_high = None
    best_low = None
    for i in range(window_size, len(recent) - window_size):
        current = recent[i]
        neighbours = recent[i - window_size:i] + recent[i + 1:i + window_size + 1]
        if all(current["high"] > b["high"] for b in neighbours):
            if best_high is None or current["high"] > best_high["high"]:
                best_high = current
        if all(current["low"] < b["low"] for b in neighbours):
            if best_low is None or current["low"] < best_low["low"]:
                best_low = current

    if best_high:
        found["recent_swing_high_date"] = to_iso_date(best_high["timestamp"])
    if best_low:
        found["recent_swing_low_date"] = to_iso_date(best_low["timestamp"])
    return found


def detect_fifty_two_week_dates(daily_bars, fifty_two_week_high, fifty_two_week_low):
    """Date of the bar that set each supplied 52-week extreme (later bar wins ties)."""
    found = {}
    bars = _clean(daily_bars, ["high", "low"])
    if not bars:
        return found

    if is_valid_number(fifty_two_week_high) and fifty_two_week_high > 0:
        hits = [b for b in bars if b["high"] >= fifty_two_week_high - EXTREME_TOLERANCE]
        if hits:
            bar = max(hits, key=lambda b: (b["high"], b["timestamp"]))
            found["fifty_two_week_high_date"] = to_iso_date(bar["timestamp"])

    if is_valid_number(fifty_two_week_low) and fifty_two_week_low > 0:
        hits = [b for b in bars if b["low"] <= fifty_two_week_low + EXTREME_TOLERANCE]
        if hits:
            bar = min(hits, key=lambda b: (b["low"], -b["timestamp"]))
            found["fifty_two_week_low_date"] = to_iso_date(bar["timestamp"])

    return found


def detect_level_breaks(daily_bars, support_level, resistance_level):
    """Most recent close through resistance (upward) and through support (downward)."""
    found = {}
    bars = sorted(_clean(daily_bars, ["close"]), key=lambda b: b["timestamp"], reverse=True)
    if len(bars) < 2:
        return found

    if is_valid_number(resistance_level) and resistance_level:
        for current, previous in zip(bars, bars[1:]):
            if current["close"] > resistance_level >= previous["close"]:
                found["resistance_break_date"] = to_iso_date(current["timestamp"])
                break

    if is_valid_number(support_level) and support_level:
        for current, previous in zip(bars, bars[1:]):
            if current["close"] < support_level <= previous["close"]:
                found["support_break_date"] = to_iso_date(current["timestamp"])
                break

    return found


def analyze_turning_points(
    daily_bars,
    historical_rsi,
    historical_sma50,
    historical_sma200,
    historical_macd,
    current_price,
    support_level,
    resistance_level,
    fifty_two_week_high,
    fifty_two_week_low,
):
    """Run every sub-check and merge the dated events into one sparse dict."""
    turning_points = {}
    turning_points.update(detect_rsi_crossings(historical_rsi))
    turning_points.update(detect_ma_crossovers(historical_sma50, historical_sma200))
    turning_points.update(detect_macd_crossings(historical_macd))
    turning_points.update(detect_recent_swings(daily_bars))
    turning_points.update(detect_fifty_two_week_dates(daily_bars, fifty_two_week_high, fifty_two_week_low))
    turning_points.update(detect_level_breaks(daily_bars, support_level, resistance_level))
    return turning_points
