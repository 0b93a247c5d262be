"""
Tests for leaderboard.py — ranking and prize split.
"""

from __future__ import annotations

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import datetime, timedelta, timezone

import pytest

from contest_models import Participant
from leaderboard import (
    PRIZE_SPLIT_PCT,
    prize_distribution,
    prize_for_rank,
    rank,
    standings_with_prizes,
    total_return,
)

BASE = datetime(2025, 1, 15, 2, 0, tzinfo=timezone.utc)


def p(user_id: str, profit_pct: float, bonus: float = 0.0, joined_minutes: int = 0) -> Participant:
    return Participant(
        user_id=user_id,
        display_name=user_id.title(),
        portfolio_id=f"c:{user_id}",
        joined_at=BASE + timedelta(minutes=joined_minutes),
        profit_pct=profit_pct,
        multiplier_bonus=bonus,
    )


class TestRank:

    def test_orders_by_total_return(self):
        ranked = rank([p("a", 1.0), p("b", 2.0, 0.5), p("c", 2.4)])
        assert [x.user_id for x in ranked] == ["b", "c", "a"]
        assert [x.rank for x in ranked] == [1, 2, 3]

    def test_bonus_counts(self):
        ranked = rank([p("a", 1.0, 0.06), p("b", 1.05)])
        assert ranked[0].user_id == "a"
        assert total_return(ranked[0]) == pytest.approx(1.06)

    def test_ties_broken_by_join_time_then_user_id(self):
        ranked = rank([
            p("zed", 1.0, joined_minutes=5),
            p("amy", 1.0, joined_minutes=5),
            p("bob", 1.0, joined_minutes=1),
        ])
        assert [x.user_id for x in ranked] == ["bob", "amy", "zed"]

    def test_contiguous_ranks(self):
        ranked = rank([p(str(i), float(i % 3)) for i in range(7)])
        assert [x.rank for x in ranked] == list(range(1, 8))

    def test_input_not_mutated(self):
        people = [p("a", 1.0), p("b", 2.0)]
        rank(people)
        assert [x.rank for x in people] == [0, 0]

    def test_rerank_is_stable(self):
        first = rank([p("a", 1.0), p("b", 2.0), p("c", 1.0)])
        again = rank(first)
        assert [(x.user_id, x.rank) for x in again] == [(x.user_id, x.rank) for x in first]

    def test_empty(self):
        assert rank([]) == []


class TestPrizes:

    def test_split_sums_to_hundred(self):
        assert sum(PRIZE_SPLIT_PCT) == 100

    def test_distribution_floors(self):
        dist = prize_distribution(999)
        assert dist[0] == {"rank": 1, "percentage": 40, "amount": 399}
        assert dist[-1]["amount"] == 9
        assert len(dist) == 10

    def test_prize_for_rank(self):
        assert prize_for_rank(1, 10_000) == 4_000
        assert prize_for_rank(10, 10_000) == 100
        assert prize_for_rank(11, 10_000) == 0
        assert prize_for_rank(0, 10_000) == 0

    def test_standings_with_prizes(self):
        rows = standings_with_prizes([p("a", 1.0), p("b", 3.0)], prize_pool=1_000)
        assert [(r["user_id"], r["rank"], r["prize"]) for r in rows] == [("b", 1, 400), ("a", 2, 200)]
