"""
leaderboard.py — Contest ranking and prize split.

total_return = profit_pct + multiplier_bonus

Ranking is a full re-sort on every call: highest total return first, ties
by earlier join time, then user id. Input participants are not modified;
rank() returns copies with rank = 1..N.

Prizes go to the top ten as a fixed share of the pool, floored to whole
currency units.
"""

from __future__ import annotations

import math
from dataclasses import replace
from typing import Any, Dict, Iterable, List

from contest_models import Participant

PRIZE_SPLIT_PCT = (40, 20, 10, 8, 7, 5, 4, 3, 2, 1)


def total_return(participant: Participant) -> float:
    return participant.profit_pct + participant.multiplier_bonus


def _sort_key(participant: Participant):
    return (-total_return(participant), participant.joined_at, participant.user_id)


def rank(participants: Iterable[Participant]) -> List[Participant]:
    ordered = sorted(participants, key=_sort_key)
    return [replace(p, rank=i) for i, p in enumerate(ordered, start=1)]


# ─── Prizes ───────────────────────────────────────────────────────────────────

def prize_distribution(prize_pool: float) -> List[Dict[str, Any]]:
    return [
        {"rank": i, "percentage": pct, "amount": math.floor(prize_pool * pct / 100)}
        for i, pct in enumerate(PRIZE_SPLIT_PCT, start=1)
    ]


def prize_for_rank(position: int, prize_pool: float) -> int:
    if 1 <= position <= len(PRIZE_SPLIT_PCT):
        return math.floor(prize_pool * PRIZE_SPLIT_PCT[position - 1] / 100)
    return 0


def standings_with_prizes(participants: Iterable[Participant], prize_pool: float) -> List[Dict[str, Any]]:
    """Ranked participant records with their prize amount attached."""
    standings = []
    for p in rank(participants):
        row = p.to_dict()
        row["prize"] = prize_for_rank(p.rank, prize_pool)
        standings.append(row)
    return standings
