import random

import pytest

from kaspa_raffle.draw import NO_ENTRIES, aggregate_credits, pick_weighted, select_winners
from kaspa_raffle.errors import ValidationError
from kaspa_raffle.models import Entry


def fixed(*values):
    it = iter(values)
    return lambda: next(it)


def test_single_winner_frequencies_follow_credit_share():
    rng = random.Random(1234).random
    credits = {"A": 10, "B": 20, "C": 30}
    trials = 60_000
    wins = {"A": 0, "B": 0, "C": 0}
    for _ in range(trials):
        (winner,) = select_winners(credits, 1, rng=rng).winners
        wins[winner] += 1

    assert wins["A"] / trials == pytest.approx(1 / 6, abs=0.01)
    assert wins["B"] / trials == pytest.approx(1 / 3, abs=0.01)
    assert wins["C"] / trials == pytest.approx(1 / 2, abs=0.01)


def test_two_winners_from_two_wallets_never_duplicates():
    rng = random.Random(7).random
    for _ in range(500):
        draw = select_winners({"A": 10, "B": 10}, 2, rng=rng)
        assert sorted(draw.winners) == ["A", "B"]


def test_winner_count_capped_at_distinct_wallets():
    draw = select_winners({"A": 1, "B": 2, "C": 3}, 10, rng=random.Random(3).random)
    assert len(draw.winners) == 3
    assert len(set(draw.winners)) == 3


def test_no_entries_returns_sentinel():
    assert select_winners({}, 1) is NO_ENTRIES
    assert select_winners({"A": 0}, 3) is NO_ENTRIES
    assert NO_ENTRIES.no_entries
    assert NO_ENTRIES.winners == ()


@pytest.mark.parametrize(
    "u, expected",
    [
        (0.0, "A"),
        (0.5, "B"),  # threshold 30 lands exactly on the end of B's range
        (0.51, "C"),
        (0.999, "C"),
    ],
)
def test_cumulative_weight_inversion(u, expected):
    draw = select_winners({"A": 10, "B": 20, "C": 30}, 1, rng=fixed(u))
    assert draw.winners == (expected,)


def test_rounds_draw_from_remaining_pool():
    # Round 1: 0.9 * 60 = 54 -> C. Round 2: pool {A, B}, 0.0 -> A.
    draw = select_winners({"A": 10, "B": 20, "C": 30}, 2, rng=fixed(0.9, 0.0))
    assert draw.winners == ("C", "A")
    assert draw.total_credits == 60
    assert draw.entrants == 3


def test_float_residue_falls_back_to_last_candidate():
    assert pick_weighted([("A", 0.1), ("B", 0.2)], 0.30000000000000004) == "B"


def test_invalid_winner_count_rejected():
    with pytest.raises(ValidationError):
        select_winners({"A": 1}, 0)


def test_aggregate_credits_sums_per_wallet_in_first_seen_order():
    entries = [
        Entry("B", 5.0, 5.0),
        Entry("A", 1.5, 1.5),
        Entry("B", 2.5, 2.5),
        Entry("Z", 0.0, 0.0),
    ]
    assert list(aggregate_credits(entries).items()) == [("B", 7.5), ("A", 1.5)]
