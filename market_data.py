#!/usr/bin/env python3
"""
Market Data Loader — Pulls daily bars, quotes and indicator series for a
symbol from Polygon + Benzinga, or from yfinance when no Polygon key is set.

Raw API JSON stops here: every record is resolved through FIELD_ALIASES into
the plain dicts the analysis modules consume (bars, indicator points, MACD
points, quote fields).
"""

import datetime
import os
from concurrent.futures import ThreadPoolExecutor
from zoneinfo import ZoneInfo

import requests
import yfinance as yf

from indicator_engine import (
    MA_LENGTHS,
    compute_macd,
    compute_moving_averages,
    compute_rsi,
    is_valid_number,
    latest_value,
    series_to_points,
    to_millis,
)

# ------------------------------------------------------------------
# Config
# ------------------------------------------------------------------
POLYGON_BASE = "https://api.polygon.io"
BENZINGA_QUOTE_URL = "https://api.benzinga.com/api/v2/quoteDelayed"
DEFAULT_TIMEOUT = 15
DEFAULT_LOOKBACK_DAYS = 365
DEFAULT_MAX_WORKERS = 8
HISTORY_LIMIT = 250
MACD_WARMUP = 26 + 9 - 1
EASTERN = ZoneInfo("America/New_York")

EXCHANGE_NAMES = {
    "XNAS": "NASDAQ",
    "XNYS": "NYSE",
    "XASE": "AMEX",
    "ARCX": "NYSE ARCA",
    "BATS": "BATS",
    "EDGX": "EDGX",
    "EDGA": "EDGA",
}

# Accepted field names per external record kind, first match wins
FIELD_ALIASES = {
    "bar": {
        "high": ["h", "high", "High"],
        "low": ["l", "low", "Low"],
        "close": ["c", "close", "Close"],
        "timestamp": ["t", "timestamp"],
    },
    "indicator": {
        "value": ["value"],
        "timestamp": ["timestamp", "t"],
    },
    "macd": {
        "macd": ["value", "macd"],
        "signal": ["signal"],
        "histogram": ["histogram"],
        "timestamp": ["timestamp", "t"],
    },
    "quote": {
        "last_trade_price": ["lastTradePrice", "last"],
        "close": ["close"],
        "previous_close": ["previousClosePrice", "previousClose"],
        "change": ["change"],
        "change_percent": ["changePercent"],
        "fifty_two_week_high": ["fiftyTwoWeekHigh"],
        "fifty_two_week_low": ["fiftyTwoWeekLow"],
        "volume": ["volume"],
        "average_volume": ["averageVolume"],
        "name": ["name", "companyStandardName"],
    },
}


def load_settings(overrides=None):
    """
    Build the settings dict passed into every fetch/analysis call.

    data_source: "polygon", "yfinance", or "auto" (Polygon when a key is set).
    """
    settings = {
        "polygon_api_key": os.environ.get("POLYGON_API_KEY"),
        "benzinga_api_key": os.environ.get("BENZINGA_API_KEY"),
        "request_timeout": float(os.environ.get("WGO_REQUEST_TIMEOUT", DEFAULT_TIMEOUT)),
        "lookback_days": int(os.environ.get("WGO_LOOKBACK_DAYS", DEFAULT_LOOKBACK_DAYS)),
        "max_workers": int(os.environ.get("WGO_MAX_WORKERS", DEFAULT_MAX_WORKERS)),
        "data_source": os.environ.get("WGO_DATA_SOURCE", "auto").lower(),
    }
    if overrides:
        settings.update(overrides)
    return settings


def resolve_data_source(settings):
    source = settings.get("data_source", "auto")
    if source == "auto":
        return "polygon" if settings.get("polygon_api_key") else "yfinance"
    return source


# ============================================================
# FIELD RESOLUTION
# ============================================================
def resolve_field(record, aliases):
    """First alias present in record with a non-null value, else None."""
    if not isinstance(record, dict):
        return None
    for name in aliases:
        value = record.get(name)
        if value is not None:
            return value
    return None


def _to_float(value):
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    return value if is_valid_number(value) else None


def _normalize(record, kind):
    out = {}
    for field, aliases in FIELD_ALIASES[kind].items():
        out[field] = _to_float(resolve_field(record, aliases))
    return out


def normalize_bar(raw):
    """Polygon aggregate -> {"high","low","close","timestamp"}; None if malformed."""
    bar = _normalize(raw, "bar")
    if any(bar[f] is None for f in ("high", "low", "close", "timestamp")):
        return None
    bar["timestamp"] = int(bar["timestamp"])
    return bar


def normalize_indicator_point(raw):
    point = _normalize(raw, "indicator")
    if point["value"] is None or point["timestamp"] is None:
        return None
    point["timestamp"] = int(point["timestamp"])
    return point


def normalize_macd_point(raw):
    point = _normalize(raw, "macd")
    if point["macd"] is None or point["signal"] is None or point["histogram"] is None or point["timestamp"] is None:
        return None
    point["timestamp"] = int(point["timestamp"])
    return point


def normalize_quote(raw):
    """Benzinga delayed quote -> flat dict of the fields the analysis reads."""
    quote = {}
    for field, aliases in FIELD_ALIASES["quote"].items():
        value = resolve_field(raw, aliases)
        quote[field] = value if field == "name" else _to_float(value)
    return quote


def _normalize_all(rows, normalizer):
    out = []
    for row in rows or []:
        item = normalizer(row)
        if item is not None:
            out.append(item)
    return out


# ============================================================
# POLYGON / BENZINGA FETCHING
# ============================================================
def _get_json(url, params, settings, label):
    try:
        resp = requests.get(url, params=params, timeout=settings.get("request_timeout", DEFAULT_TIMEOUT))
        if resp.status_code != 200:
            print(f"  [WARN] {label} returned status {resp.status_code}")
            return None
        return resp.json()
    except (requests.RequestException, ValueError) as e:
        print(f"  [ERROR] {label}: {e}")
        return None


def previous_trading_day(today=None):
    """Most recent weekday strictly before today."""
    today = today or datetime.date.today()
    offset = {0: 3, 6: 2}.get(today.weekday(), 1)
    return today - datetime.timedelta(days=offset)


def fetch_historical_bars(symbol, from_date, to_date, settings):
    url = f"{POLYGON_BASE}/v2/aggs/ticker/{symbol}/range/1/day/{from_date}/{to_date}"
    params = {"adjusted": "true", "sort": "asc", "limit": 50000, "apikey": settings.get("polygon_api_key")}
    data = _get_json(url, params, settings, f"Historical bars for {symbol}")
    if not data:
        return []
    return _normalize_all(data.get("results"), normalize_bar)


def _indicator_values(symbol, indicator, params, settings, label):
    url = f"{POLYGON_BASE}/v1/indicators/{indicator}/{symbol}"
    base = {
        "timespan": "day",
        "adjusted": "true",
        "series_type": "close",
        "order": "desc",
        "apikey": settings.get("polygon_api_key"),
    }
    base.update(params)
    data = _get_json(url, base, settings, label)
    return ((data or {}).get("results") or {}).get("values") or []


def fetch_indicator_value(symbol, indicator, window, settings):
    """Point-in-time SMA/EMA/RSI as of the previous trading day, or None."""
    values = _indicator_values(
        symbol, indicator,
        {"timestamp": previous_trading_day().isoformat(), "window": window, "limit": 1},
        settings, f"{indicator.upper()}-{window} for {symbol}",
    )
    points = _normalize_all(values[:1], normalize_indicator_point)
    return points[0]["value"] if points else None


def fetch_macd(symbol, settings):
    values = _indicator_values(
        symbol, "macd",
        {"timestamp": previous_trading_day().isoformat(), "short_window": 12, "long_window": 26,
         "signal_window": 9, "limit": 1},
        settings, f"MACD for {symbol}",
    )
    points = _normalize_all(values[:1], normalize_macd_point)
    if not points:
        return {"macd": None, "signal": None, "histogram": None}
    return {"macd": points[0]["macd"], "signal": points[0]["signal"], "histogram": points[0]["histogram"]}


def fetch_indicator_history(symbol, indicator, window, from_date, to_date, settings):
    values = _indicator_values(
        symbol, indicator,
        {"timestamp.gte": from_date, "timestamp.lte": to_date, "window": window, "limit": HISTORY_LIMIT},
        settings, f"Historical {indicator.upper()}-{window} for {symbol}",
    )
    return _normalize_all(values, normalize_indicator_point)


def fetch_macd_history(symbol, from_date, to_date, settings):
    values = _indicator_values(
        symbol, "macd",
        {"timestamp.gte": from_date, "timestamp.lte": to_date, "short_window": 12, "long_window": 26,
         "signal_window": 9, "limit": HISTORY_LIMIT},
        settings, f"Historical MACD for {symbol}",
    )
    return _normalize_all(values, normalize_macd_point)


def fetch_snapshot(symbol, settings):
    """Last trade / day bar from the Polygon snapshot."""
    url = f"{POLYGON_BASE}/v2/snapshot/locale/us/markets/stocks/tickers/{symbol}"
    data = _get_json(url, {"apikey": settings.get("polygon_api_key")}, settings, f"Snapshot for {symbol}")
    ticker = (data or {}).get("ticker") or {}
    day = ticker.get("day") or {}
    last_trade = ticker.get("lastTrade") or {}
    return {
        "last_trade_price": _to_float(last_trade.get("p")),
        "day_open": _to_float(day.get("o")),
        "day_close": _to_float(day.get("c")),
        "volume": _to_float(day.get("v")),
        "todays_change_percent": _to_float(ticker.get("todaysChangePerc")),
    }


def fetch_overview(symbol, settings):
    url = f"{POLYGON_BASE}/v3/reference/tickers/{symbol}"
    data = _get_json(url, {"apikey": settings.get("polygon_api_key")}, settings, f"Overview for {symbol}")
    results = (data or {}).get("results") or {}
    return {
        "name": results.get("name"),
        "exchange": results.get("primary_exchange") or results.get("market"),
        "market_cap": _to_float(results.get("market_cap")),
    }


def fetch_benzinga_quote(symbol, settings):
    if not settings.get("benzinga_api_key"):
        return None
    data = _get_json(
        BENZINGA_QUOTE_URL,
        {"token": settings.get("benzinga_api_key"), "symbols": symbol},
        settings, f"Benzinga quote for {symbol}",
    )
    if not isinstance(data, dict) or not isinstance(data.get(symbol), dict):
        return None
    return normalize_quote(data[symbol])


def load_market_data(symbol, settings):
    """
    Fetch everything the analysis needs from Polygon/Benzinga in parallel.

    Failed calls come back as None/[] so the analysis degrades per field.
    """
    today = datetime.date.today()
    from_date = (today - datetime.timedelta(days=settings.get("lookback_days", DEFAULT_LOOKBACK_DAYS))).isoformat()
    to_date = today.isoformat()

    jobs = {
        "daily_bars": (fetch_historical_bars, (symbol, from_date, to_date, settings)),
        "snapshot": (fetch_snapshot, (symbol, settings)),
        "overview": (fetch_overview, (symbol, settings)),
        "quote": (fetch_benzinga_quote, (symbol, settings)),
        "rsi": (fetch_indicator_value, (symbol, "rsi", 14, settings)),
        "macd": (fetch_macd, (symbol, settings)),
        "historical_rsi": (fetch_indicator_history, (symbol, "rsi", 14, from_date, to_date, settings)),
        "historical_sma50": (fetch_indicator_history, (symbol, "sma", 50, from_date, to_date, settings)),
        "historical_sma200": (fetch_indicator_history, (symbol, "sma", 200, from_date, to_date, settings)),
        "historical_macd": (fetch_macd_history, (symbol, from_date, to_date, settings)),
    }
    for length in MA_LENGTHS:
        jobs[f"sma{length}"] = (fetch_indicator_value, (symbol, "sma", length, settings))
        jobs[f"ema{length}"] = (fetch_indicator_value, (symbol, "ema", length, settings))

    with ThreadPoolExecutor(max_workers=settings.get("max_workers", DEFAULT_MAX_WORKERS)) as executor:
        futures = {name: executor.submit(fn, *args) for name, (fn, args) in jobs.items()}
        results = {name: future.result() for name, future in futures.items()}

    snapshot = results["snapshot"] or {}
    overview = results["overview"] or {}
    macd = results["macd"] or {}
    current_price = snapshot.get("last_trade_price") or snapshot.get("day_close")

    return {
        "symbol": symbol,
        "source": "polygon",
        "current_price": current_price,
        "daily_bars": results["daily_bars"] or [],
        "moving_averages": {
            f"{kind}{length}": results[f"{kind}{length}"] for kind in ("sma", "ema") for length in MA_LENGTHS
        },
        "rsi": results["rsi"],
        "macd": macd.get("macd"),
        "macd_signal": macd.get("signal"),
        "macd_histogram": macd.get("histogram"),
        "historical_rsi": results["historical_rsi"] or [],
        "historical_sma50": results["historical_sma50"] or [],
        "historical_sma200": results["historical_sma200"] or [],
        "historical_macd": results["historical_macd"] or [],
        "quote": results["quote"],
        "snapshot": snapshot,
        "company_name": overview.get("name"),
        "exchange": overview.get("exchange"),
        "market_cap": overview.get("market_cap"),
    }


# ============================================================
# YFINANCE FALLBACK
# ============================================================
def fetch_price_data_yfinance(ticker, period="2y"):
    """Fetch historical price data using yfinance."""
    try:
        stock = yf.Ticker(ticker)
        df = stock.history(period=period)
        if df.empty:
            return None
        df.index = df.index.tz_localize(None)
        return df
    except Exception as e:
        print(f"  [ERROR] {ticker}: {e}")
        return None


def bars_from_dataframe(df):
    """OHLC DataFrame indexed by date -> list of bar dicts."""
    bars = []
    for ts, row in df.iterrows():
        bar = normalize_bar({
            "high": row.get("High"),
            "low": row.get("Low"),
            "close": row.get("Close"),
            "timestamp": to_millis(ts.to_pydatetime()),
        })
        if bar is not None:
            bars.append(bar)
    return bars


def indicator_data_from_dataframe(df, lookback_days=DEFAULT_LOOKBACK_DAYS):
    """
    Derive the indicator inputs locally from a price history.

    Uses the full history for warm-up, then trims every series to the
    trailing lookback window.
    """
    close = df["Close"]
    cutoff = df.index[-1] - datetime.timedelta(days=lookback_days)

    def trailing(points):
        cutoff_ms = to_millis(cutoff.to_pydatetime())
        return [p for p in points if p["timestamp"] >= cutoff_ms]

    rsi = compute_rsi(close)
    smas = compute_moving_averages(close, kind="sma")
    emas = compute_moving_averages(close, kind="ema")
    macd_line, signal_line, histogram = compute_macd(close)
    macd_line = macd_line.iloc[MACD_WARMUP:]

    historical_macd = []
    for ts, value in macd_line.items():
        historical_macd.append({
            "macd": float(value),
            "signal": float(signal_line.loc[ts]),
            "histogram": float(histogram.loc[ts]),
            "timestamp": to_millis(ts.to_pydatetime()),
        })

    moving_averages = {f"sma{n}": latest_value(s) for n, s in smas.items()}
    moving_averages.update({f"ema{n}": latest_value(s) for n, s in emas.items()})

    return {
        "moving_averages": moving_averages,
        "rsi": latest_value(rsi),
        "macd": latest_value(macd_line),
        "macd_signal": latest_value(signal_line.iloc[MACD_WARMUP:]),
        "macd_histogram": latest_value(histogram.iloc[MACD_WARMUP:]),
        "historical_rsi": trailing(series_to_points(rsi)),
        "historical_sma50": trailing(series_to_points(smas[50])),
        "historical_sma200": trailing(series_to_points(smas[200])),
        "historical_macd": trailing(historical_macd),
    }


def fetch_info_yfinance(ticker):
    """Quote-level fields from yfinance .info, same keys as normalize_quote."""
    try:
        info = yf.Ticker(ticker).info or {}
    except Exception as e:
        print(f"  [WARN] Info failed for {ticker}: {e}")
        info = {}
    return {
        "name": info.get("longName") or info.get("shortName"),
        "exchange": info.get("exchange"),
        "market_cap": _to_float(info.get("marketCap")),
        "quote": {
            "last_trade_price": _to_float(info.get("currentPrice") or info.get("regularMarketPrice")),
            "close": _to_float(info.get("regularMarketPrice")),
            "previous_close": _to_float(info.get("regularMarketPreviousClose") or info.get("previousClose")),
            "change": None,
            "change_percent": None,
            "fifty_two_week_high": _to_float(info.get("fiftyTwoWeekHigh")),
            "fifty_two_week_low": _to_float(info.get("fiftyTwoWeekLow")),
            "volume": _to_float(info.get("volume")),
            "average_volume": _to_float(info.get("averageVolume")),
            "name": info.get("longName"),
        },
    }


def load_market_data_yfinance(symbol, settings):
    """Same shape as load_market_data, built from yfinance history + .info."""
    lookback_days = settings.get("lookback_days", DEFAULT_LOOKBACK_DAYS)
    # Extra year of history so SMA-200 covers the whole lookback window
    df = fetch_price_data_yfinance(symbol, period="2y")
    if df is None or df.empty:
        return None

    cutoff = df.index[-1] - datetime.timedelta(days=lookback_days)
    info = fetch_info_yfinance(symbol)
    indicators = indicator_data_from_dataframe(df, lookback_days)
    quote = info["quote"]

    return {
        "symbol": symbol,
        "source": "yfinance",
        "current_price": quote.get("last_trade_price") or float(df["Close"].iloc[-1]),
        "daily_bars": bars_from_dataframe(df[df.index >= cutoff]),
        **indicators,
        "quote": quote,
        "snapshot": {},
        "company_name": info["name"],
        "exchange": info["exchange"],
        "market_cap": info["market_cap"],
    }


# ============================================================
# QUOTE CONTEXT
# ============================================================
def get_market_status(now=None):
    """'premarket' | 'open' | 'afterhours' | 'closed' in US Eastern time."""
    now = now or datetime.datetime.now(tz=datetime.timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=datetime.timezone.utc)
    eastern = now.astimezone(EASTERN)
    if eastern.weekday() >= 5:
        return "closed"
    hhmm = eastern.hour * 100 + eastern.minute
    if 400 <= hhmm < 930:
        return "premarket"
    if 930 <= hhmm < 1600:
        return "open"
    if 1600 <= hhmm < 2000:
        return "afterhours"
    return "closed"


def normalize_company_name(name):
    """'APPLE INC.' -> 'Apple inc.'; mixed-case names untouched."""
    if not name:
        return name
    if name == name.upper() and len(name) > 1:
        return name[0].upper() + name[1:].lower()
    return name


def get_exchange_name(exchange_code):
    if not exchange_code:
        return "NASDAQ"
    return EXCHANGE_NAMES.get(exchange_code, exchange_code)


def format_company_name_with_exchange(company_name, ticker, exchange_code=None):
    return f"{company_name} ({get_exchange_name(exchange_code)}:{ticker})"


def resolve_change_percent(quote, snapshot, market_status):
    """
    Session change percent and regular-session close.

    Premarket: premarket price vs previous close. Otherwise the regular
    session close vs previous close, then close vs open from the day bar,
    then the snapshot's change percent. Returns (change_percent, session_close).
    """
    quote = quote or {}
    snapshot = snapshot or {}
    previous_close = quote.get("previous_close")
    has_previous = is_valid_number(previous_close) and previous_close > 0

    if market_status == "premarket" and quote:
        price = quote.get("last_trade_price")
        if has_previous and is_valid_number(price) and price:
            return (price - previous_close) / previous_close * 100, None
        if is_valid_number(quote.get("change_percent")) and quote.get("change_percent"):
            return quote["change_percent"], None
        return 0.0, None

    # A flat quote falls through to the day bar
    close = quote.get("close")
    if has_previous and is_valid_number(close) and close and close != previous_close:
        return (close - previous_close) / previous_close * 100, close
    change = quote.get("change")
    if has_previous and is_valid_number(change) and change:
        return change / previous_close * 100, previous_close + change

    day_open = snapshot.get("day_open")
    day_close = snapshot.get("day_close")
    if is_valid_number(day_open) and day_open > 0 and is_valid_number(day_close) and day_close:
        change_pct = (day_close - day_open) / day_open * 100
        if change_pct != 0:
            return change_pct, day_close

    return snapshot.get("todays_change_percent") or 0.0, day_close or close


def resolve_fifty_two_week_range(quote, daily_bars):
    """52-week high/low from the quote, else derived from the bars, else (None, None)."""
    quote = quote or {}
    high = quote.get("fifty_two_week_high")
    low = quote.get("fifty_two_week_low")
    if is_valid_number(high) and high > 0 and is_valid_number(low) and low > 0:
        return high, low
    highs = [b.get("high") for b in daily_bars or [] if is_valid_number(b.get("high"))]
    lows = [b.get("low") for b in daily_bars or [] if is_valid_number(b.get("low"))]
    return max(highs, default=None), min(lows, default=None)
