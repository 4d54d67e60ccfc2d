#!/usr/bin/env python3
"""
Support/Resistance Engine — Clusters swing highs/lows from several trailing
windows into touch-weighted price levels.

Swings from the 90, 180 and 252 bar windows are pooled in that order, so a
swing inside all three windows counts three times. Clustering is streaming and
depends on that pool order.
"""

import math
import time

from indicator_engine import is_valid_number

# ------------------------------------------------------------------
# Config
# ------------------------------------------------------------------
MIN_BARS = 30
WINDOWS = [90, 180, 252]
SWING_WINDOW = 5
CLUSTER_SIZE = 1.0
BAND_PCT = 0.20
RECENT_DAYS = 60
DAY_MS = 24 * 60 * 60 * 1000

NO_LEVELS = {"support": None, "resistance": None}


def find_swings(bars, window_size=SWING_WINDOW):
    """
    Strict local extremes over +/- window_size bars.

    Bars closer than window_size to either end are never candidates.
    Returns (swing_highs, swing_lows) as lists of {"price", "timestamp"}.
    """
    swing_highs = []
    swing_lows = []

    for i in range(window_size, len(bars) - window_size):
        current = bars[i]
        is_high = True
        is_low = True
        for j in range(i - window_size, i + window_size + 1):
            if j == i:
                continue
            if current["high"] <= bars[j]["high"]:
                is_high = False
            if current["low"] >= bars[j]["low"]:
                is_low = False
            if not is_high and not is_low:
                break

        if is_high:
            swing_highs.append({"price": current["high"], "timestamp": current.get("timestamp") or 0})
        if is_low:
            swing_lows.append({"price": current["low"], "timestamp": current.get("timestamp") or 0})

    return swing_highs, swing_lows


def cluster_swings(swings, cluster_size=CLUSTER_SIZE):
    """
    Merge swings into the first existing cluster whose running average is
    within cluster_size; otherwise open a new cluster. Input order matters.
    """
    clusters = []
    for swing in swings:
        price = swing["price"]
        match = next((c for c in clusters if abs(c["avg_price"] - price) <= cluster_size), None)
        if match is not None:
            match["touches"] += 1
            match["avg_price"] = (match["avg_price"] * (match["touches"] - 1) + price) / match["touches"]
        else:
            clusters.append({"avg_price": price, "touches": 1})
    return clusters


def round_to_half(price):
    """Round half-up to the nearest $0.50."""
    return math.floor(price * 2 + 0.5) / 2


def _clean_bars(bars):
    return [
        b for b in bars or []
        if isinstance(b, dict) and all(is_valid_number(b.get(f)) for f in ("high", "low", "timestamp"))
    ]


def _rank_candidates(clusters, swings, keep, cutoff_ms, closest_first_key):
    candidates = []
    for cluster in clusters:
        if not keep(cluster["avg_price"]):
            continue
        is_recent = any(
            abs(s["price"] - cluster["avg_price"]) <= CLUSTER_SIZE and s["timestamp"] > cutoff_ms
            for s in swings
        )
        candidates.append({
            "price": cluster["avg_price"],
            "touches": cluster["touches"],
            "is_recent": is_recent,
        })

    candidates.sort(key=lambda c: (not c["is_recent"], -c["touches"], closest_first_key(c["price"])))
    return candidates


def rank_levels(bars, current_price, now_ms=None):
    """
    Full candidate lists behind calculate_support_resistance.

    Returns {"resistance": [...], "support": [...]} sorted best-first, each
    candidate {"price", "touches", "is_recent"} with the unrounded price.
    """
    bars = _clean_bars(bars)
    if len(bars) < MIN_BARS or not is_valid_number(current_price) or current_price <= 0:
        return {"resistance": [], "support": []}

    sorted_bars = sorted(bars, key=lambda b: b["timestamp"])

    all_highs = []
    all_lows = []
    for window in WINDOWS:
        highs, lows = find_swings(sorted_bars[-window:], SWING_WINDOW)
        all_highs.extend(highs)
        all_lows.extend(lows)

    if now_ms is None:
        now_ms = int(time.time() * 1000)
    cutoff_ms = now_ms - RECENT_DAYS * DAY_MS

    resistance = _rank_candidates(
        cluster_swings(all_highs),
        all_highs,
        lambda p: current_price < p < current_price * (1 + BAND_PCT),
        cutoff_ms,
        lambda p: p,
    )
    support = _rank_candidates(
        cluster_swings(all_lows),
        all_lows,
        lambda p: current_price * (1 - BAND_PCT) < p < current_price,
        cutoff_ms,
        lambda p: -p,
    )
    return {"resistance": resistance, "support": support}


def calculate_support_resistance(bars, current_price, now_ms=None):
    """
    Nearest significant support and resistance, rounded to $0.50.

    Needs at least 30 well-formed bars; otherwise (or with no candidates) the
    level is None.
    """
    if len(_clean_bars(bars)) < MIN_BARS:
        return dict(NO_LEVELS)

    ranked = rank_levels(bars, current_price, now_ms)

    # A level within a quarter of price can round onto the wrong side; skip it
    resistance = next(
        (r for r in (round_to_half(c["price"]) for c in ranked["resistance"]) if r > current_price),
        None,
    )
    support = next(
        (s for s in (round_to_half(c["price"]) for c in ranked["support"]) if s < current_price),
        None,
    )
    return {"support": support, "resistance": resistance}
