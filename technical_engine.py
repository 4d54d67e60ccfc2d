#!/usr/bin/env python3
"""
Technical Engine — Turns loaded market data into the technical facts behind a
WGO write-up: support/resistance, 12-month return, moving-average context,
crossover labels and dated turning points.

analyze_market_data() is pure; fetch_technical_data() adds the I/O.
"""

import datetime
import json
import time
import numpy as np

from indicator_engine import (
    calculate_period_return,
    classify_crossovers,
    classify_rsi,
    compute_ma_relationships,
    is_valid_number,
)
from market_data import (
    format_company_name_with_exchange,
    get_market_status,
    load_market_data,
    load_market_data_yfinance,
    normalize_company_name,
    resolve_change_percent,
    resolve_data_source,
    resolve_fifty_two_week_range,
)
from support_resistance import calculate_support_resistance
from turning_points import analyze_turning_points


class NumpyEncoder(json.JSONEncoder):
    """Handle numpy types in JSON serialization."""
    def default(self, obj):
        if isinstance(obj, (np.integer,)):
            return int(obj)
        if isinstance(obj, (np.floating,)):
            return float(obj)
        if isinstance(obj, (np.bool_,)):
            return bool(obj)
        if isinstance(obj, np.ndarray):
            return obj.tolist()
        return super().default(obj)


def one_year_before(timestamp_ms):
    """Same calendar day one year earlier (Feb 29 -> Feb 28)."""
    end = datetime.datetime.fromtimestamp(timestamp_ms / 1000, tz=datetime.timezone.utc)
    try:
        return end.replace(year=end.year - 1)
    except ValueError:
        return end.replace(year=end.year - 1, day=28)


def compute_twelve_month_return(daily_bars):
    """Return from one year before the latest bar through the latest bar."""
    latest = max(
        (b.get("timestamp") for b in daily_bars or [] if is_valid_number(b.get("timestamp"))),
        default=None,
    )
    if latest is None:
        return None
    return calculate_period_return(daily_bars, one_year_before(latest), latest)


def analyze_market_data(market_data, now_ms=None):
    """
    Compute every technical output from already-loaded data.

    market_data is the dict produced by the loaders. Missing pieces only blank
    out the outputs that depend on them.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)

    bars = market_data.get("daily_bars") or []
    price = market_data.get("current_price")
    moving_averages = market_data.get("moving_averages") or {}

    high_52w, low_52w = resolve_fifty_two_week_range(market_data.get("quote"), bars)

    if is_valid_number(price) and price > 0:
        levels = calculate_support_resistance(bars, price, now_ms=now_ms)
    else:
        levels = {"support": None, "resistance": None}

    turning_points = analyze_turning_points(
        bars,
        market_data.get("historical_rsi") or [],
        market_data.get("historical_sma50") or [],
        market_data.get("historical_sma200") or [],
        market_data.get("historical_macd") or [],
        price,
        levels["support"],
        levels["resistance"],
        high_52w,
        low_52w,
    )

    rsi = market_data.get("rsi")
    return {
        "current_price": price,
        "twelve_month_return": compute_twelve_month_return(bars),
        **{key: moving_averages.get(key) for key in sorted(moving_averages)},
        "rsi": rsi,
        "rsi_signal": classify_rsi(rsi),
        "macd": market_data.get("macd"),
        "macd_signal": market_data.get("macd_signal"),
        "macd_histogram": market_data.get("macd_histogram"),
        "support_level": levels["support"],
        "resistance_level": levels["resistance"],
        "fifty_two_week_high": high_52w,
        "fifty_two_week_low": low_52w,
        "ma_relationships": compute_ma_relationships(price, moving_averages),
        "crossovers": classify_crossovers(moving_averages, turning_points),
        "turning_points": turning_points,
    }


def fetch_technical_data(symbol, settings, now=None):
    """
    Load data for symbol (Polygon or yfinance per settings) and analyze it.

    Returns None when no price or bars could be loaded at all.
    """
    print(f"=== FETCHING TECHNICAL DATA FOR {symbol} ===")
    source = resolve_data_source(settings)
    if source == "polygon":
        market_data = load_market_data(symbol, settings)
    else:
        market_data = load_market_data_yfinance(symbol, settings)

    if not market_data or (not market_data.get("daily_bars") and not market_data.get("current_price")):
        print(f"  [WARN] No usable market data for {symbol} ({source})")
        return None

    now = now or datetime.datetime.now(tz=datetime.timezone.utc)
    result = analyze_market_data(market_data, now_ms=int(now.timestamp() * 1000))

    market_status = get_market_status(now)
    quote = market_data.get("quote") or {}
    snapshot = market_data.get("snapshot") or {}
    change_percent, session_close = resolve_change_percent(quote, snapshot, market_status)
    company_name = normalize_company_name(market_data.get("company_name") or quote.get("name") or symbol)

    result.update({
        "symbol": symbol,
        "source": source,
        "company_name": company_name,
        "company_name_with_exchange": format_company_name_with_exchange(
            company_name, symbol, market_data.get("exchange")
        ),
        "market_status": market_status,
        "change_percent": change_percent,
        "regular_session_close_price": session_close,
        "volume": snapshot.get("volume") or quote.get("volume"),
        "average_volume": quote.get("average_volume"),
        "market_cap": market_data.get("market_cap"),
    })

    levels = f"support={result['support_level']}, resistance={result['resistance_level']}"
    print(f"  [SUPPORT/RESISTANCE] {symbol}: {levels}")
    print(f"  [TURNING POINTS] {symbol}: {len(result['turning_points'])} events")
    return result
