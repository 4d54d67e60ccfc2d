#!/usr/bin/env python3
"""
Support/resistance engine tests on hand-built bar series with known swings.
"""

import datetime
import random

import pytest

from indicator_engine import to_millis
from support_resistance import (
    calculate_support_resistance,
    cluster_swings,
    find_swings,
    rank_levels,
    round_to_half,
)

START = datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc)


def day_ms(n):
    return to_millis(START + datetime.timedelta(days=n))


def flat_bars(count, high=101.0, low=99.0, close=100.0):
    return [{"high": high, "low": low, "close": close, "timestamp": day_ms(i)} for i in range(count)]


def bars_with_swings():
    """60 flat bars: swing highs at 5/15/35/45, swing low at 25."""
    bars = flat_bars(60)
    bars[15]["high"] = 110.2
    bars[35]["high"] = 110.6
    bars[45]["high"] = 115.0
    bars[5]["high"] = 125.0
    bars[25]["low"] = 92.3
    return bars


def test_insufficient_data():
    result = calculate_support_resistance(flat_bars(10), 50.0)
    assert result == {"support": None, "resistance": None}
    assert calculate_support_resistance([], 50.0) == {"support": None, "resistance": None}


def test_levels_from_clustered_swings():
    bars = bars_with_swings()
    now = day_ms(59) + 1
    result = calculate_support_resistance(bars, 100.0, now_ms=now)

    # 110.2 and 110.6 merge (x3 windows) into avg 110.4 -> 110.5
    assert result["resistance"] == 110.5
    assert result["support"] == 92.5

    ranked = rank_levels(bars, 100.0, now_ms=now)
    top = ranked["resistance"][0]
    assert top["touches"] == 6
    assert abs(top["price"] - 110.4) < 1e-9
    # 125 is beyond the +20% band
    assert all(c["price"] < 120.0 for c in ranked["resistance"])


def test_recent_levels_win_over_touches():
    bars = bars_with_swings()
    # Cutoff at day 40: only the 115 swing (day 45) is recent
    result = calculate_support_resistance(bars, 100.0, now_ms=day_ms(100))
    assert result["resistance"] == 115.0


def test_no_candidates_is_none_not_zero():
    result = calculate_support_resistance(flat_bars(60), 100.0, now_ms=day_ms(60))
    assert result == {"support": None, "resistance": None}


def test_levels_respect_rounding_and_side():
    rng = random.Random(11)
    bars = []
    price = 50.0
    for i in range(252):
        price = max(5.0, price * (1 + rng.gauss(0, 0.02)))
        bars.append({"high": price * 1.01, "low": price * 0.99, "close": price, "timestamp": day_ms(i)})
    current = bars[-1]["close"]
    result = calculate_support_resistance(bars, current, now_ms=day_ms(252))

    for level in (result["support"], result["resistance"]):
        if level is not None:
            assert (level * 2) == int(level * 2)
    if result["resistance"] is not None:
        assert result["resistance"] > current
    if result["support"] is not None:
        assert result["support"] < current


def test_bar_order_does_not_matter():
    bars = bars_with_swings()
    shuffled = list(bars)
    random.Random(3).shuffle(shuffled)
    now = day_ms(59) + 1
    assert calculate_support_resistance(shuffled, 100.0, now_ms=now) == \
        calculate_support_resistance(bars, 100.0, now_ms=now)


def test_find_swings_excludes_edges_and_requires_strict_extremes():
    bars = flat_bars(20)
    bars[2]["high"] = 150.0     # inside the leading edge
    bars[10]["high"] = 130.0
    bars[12]["low"] = 80.0
    bars[13]["low"] = 80.0      # tie: neither is strictly lowest
    highs, lows = find_swings(bars, 5)
    assert [s["price"] for s in highs] == [130.0]
    assert highs[0]["timestamp"] == day_ms(10)
    assert lows == []


def test_cluster_swings_running_average():
    swings = [{"price": p, "timestamp": 0} for p in (10.0, 10.9, 11.8, 10.2)]
    clusters = cluster_swings(swings)
    assert len(clusters) == 2
    assert clusters[0]["touches"] == 3
    assert abs(clusters[0]["avg_price"] - (10.0 + 10.9 + 10.2) / 3) < 1e-9
    assert clusters[1] == {"avg_price": 11.8, "touches": 1}


def test_cluster_swings_deterministic_but_order_dependent():
    swings = [{"price": p, "timestamp": 0} for p in (10.0, 10.9, 11.8)]
    assert cluster_swings(swings) == cluster_swings(list(swings))

    forward = cluster_swings(swings)
    backward = cluster_swings(list(reversed(swings)))
    assert [c["touches"] for c in forward] == [2, 1]
    assert [c["touches"] for c in backward] == [2, 1]
    assert forward[0]["avg_price"] != backward[0]["avg_price"]


def test_round_to_half():
    assert round_to_half(110.4) == 110.5
    assert round_to_half(110.24) == 110.0
    assert round_to_half(110.25) == 110.5
    assert round_to_half(92.3) == 92.5
    assert round_to_half(99.74) == 99.5


def test_malformed_bars_are_dropped():
    bars = flat_bars(40)
    bars[15]["high"] = 110.0
    bars[20]["high"] = None
    del bars[30]["low"]
    result = calculate_support_resistance(bars, 100.0, now_ms=day_ms(40))
    assert result == {"support": None, "resistance": 110.0}


def test_minimum_counts_only_well_formed_bars():
    bars = flat_bars(30)
    bars[15]["high"] = 110.0
    bars[3]["timestamp"] = None
    assert calculate_support_resistance(bars, 100.0) == {"support": None, "resistance": None}


def test_pool_order_shortest_window_first():
    """
    110.9 sits in every window, 109.1 and 110.0 only in the 252 bar one.
    Pooled 90 -> 180 -> 252 the 110.9 cluster forms first and absorbs 110.0.
    """
    bars = flat_bars(260)
    bars[30]["high"] = 109.1
    bars[50]["high"] = 110.0
    bars[200]["high"] = 110.9

    ranked = rank_levels(bars, 100.0, now_ms=day_ms(1000))["resistance"]
    assert [c["touches"] for c in ranked] == [4, 1]
    assert ranked[0]["price"] == pytest.approx((110.9 * 3 + 110.0) / 4)
    assert ranked[1]["price"] == pytest.approx(109.1)
    assert calculate_support_resistance(bars, 100.0, now_ms=day_ms(1000))["resistance"] == 110.5


def test_level_rounding_onto_price_falls_back_to_next_candidate():
    bars = flat_bars(60)
    bars[20]["high"] = 110.6
    bars[40]["high"] = 115.0
    price = 110.55

    ranked = rank_levels(bars, price, now_ms=day_ms(1000))["resistance"]
    # 110.6 ranks first but rounds to 110.5, below price
    assert ranked[0]["price"] == pytest.approx(110.6)
    assert round_to_half(ranked[0]["price"]) < price
    assert calculate_support_resistance(bars, price, now_ms=day_ms(1000))["resistance"] == 115.0
