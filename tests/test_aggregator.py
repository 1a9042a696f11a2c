"""
tests/test_aggregator.py — Leaderboard Computation
===================================================
"""

from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

from rally.engine.aggregator import ContributionFact, ParticipantFact, compute_leaderboard

START = datetime(2026, 4, 1, tzinfo=UTC)


def _at(hours: float) -> datetime:
    return START + timedelta(hours=hours)


def _contribution(cid: int, pid: int, qty: int, hours: float) -> ContributionFact:
    return ContributionFact(id=cid, participant_id=pid, quantity=qty, recorded_at=_at(hours))


ALICE = ParticipantFact(id=1, user_id="alice", joined_at=_at(0))
BOB = ParticipantFact(id=2, user_id="bob", joined_at=_at(0.5))


class TestRanking:
    def test_tie_broken_by_who_reached_the_total_first(self):
        """A logs 5 then 5, B logs 10 once in between: equal totals, B got there first."""
        log = [
            _contribution(1, ALICE.id, 5, 1),
            _contribution(2, BOB.id, 10, 2),
            _contribution(3, ALICE.id, 5, 3),
        ]
        snapshot = compute_leaderboard(7, [ALICE, BOB], log, as_of=_at(10))

        assert [(e.user_id, e.total, e.rank) for e in snapshot.entries] == [
            ("bob", 10, 1),
            ("alice", 10, 2),
        ]
        assert snapshot.total_quantity == 20
        assert snapshot.contribution_count == 3

    def test_higher_total_ranks_first(self):
        log = [_contribution(1, ALICE.id, 3, 1), _contribution(2, BOB.id, 4, 2)]
        snapshot = compute_leaderboard(7, [ALICE, BOB], log, as_of=_at(10))
        assert snapshot.entries[0].user_id == "bob"

    def test_participants_without_contributions_rank_last(self):
        carol = ParticipantFact(id=3, user_id="carol", joined_at=_at(-1))
        log = [_contribution(1, ALICE.id, 0, 1)]
        snapshot = compute_leaderboard(7, [carol, ALICE], log, as_of=_at(10))

        # Both total 0; alice has a reached_at, carol does not.
        assert [e.user_id for e in snapshot.entries] == ["alice", "carol"]
        assert snapshot.active_participants == 1

    def test_order_of_input_does_not_matter(self):
        rng = random.Random(1234)
        log = [
            _contribution(i, rng.choice([ALICE.id, BOB.id]), rng.randint(0, 9), i * 0.25)
            for i in range(1, 60)
        ]
        expected = compute_leaderboard(7, [ALICE, BOB], log, as_of=_at(100))

        for _ in range(10):
            shuffled = log[:]
            rng.shuffle(shuffled)
            participants = [BOB, ALICE] if rng.random() < 0.5 else [ALICE, BOB]
            assert compute_leaderboard(7, participants, shuffled, as_of=_at(100)) == expected


class TestCutoffAndWithdrawal:
    def test_as_of_excludes_later_contributions(self):
        log = [_contribution(1, ALICE.id, 5, 1), _contribution(2, ALICE.id, 7, 5)]
        snapshot = compute_leaderboard(7, [ALICE], log, as_of=_at(2))
        assert snapshot.entries[0].total == 5
        assert snapshot.total_quantity == 5

    def test_participant_not_yet_joined_is_not_ranked(self):
        snapshot = compute_leaderboard(7, [ALICE, BOB], [], as_of=_at(0.25))
        assert [e.user_id for e in snapshot.entries] == ["alice"]

    def test_withdrawn_participant_counts_in_group_total_only(self):
        gone = ParticipantFact(id=2, user_id="bob", joined_at=_at(0), withdrawn_at=_at(4))
        log = [_contribution(1, ALICE.id, 5, 1), _contribution(2, gone.id, 8, 2)]
        snapshot = compute_leaderboard(7, [ALICE, gone], log, as_of=_at(10))

        assert [e.user_id for e in snapshot.entries] == ["alice"]
        assert snapshot.total_quantity == 13
        assert snapshot.participant_count == 1


class TestGoalAndStats:
    def test_goal_met_when_any_participant_reaches_it(self):
        log = [_contribution(1, ALICE.id, 60, 1), _contribution(2, BOB.id, 50, 2)]
        snapshot = compute_leaderboard(7, [ALICE, BOB], log, as_of=_at(10), goal_quantity=60)
        assert snapshot.goal_met
        assert snapshot.progress_percentage == 100.0

    def test_goal_not_met(self):
        log = [_contribution(1, ALICE.id, 20, 1)]
        snapshot = compute_leaderboard(7, [ALICE], log, as_of=_at(10), goal_quantity=80)
        assert not snapshot.goal_met
        assert snapshot.progress_percentage == 25.0

    def test_average_per_day_uses_at_least_one_day(self):
        log = [_contribution(1, ALICE.id, 12, 1)]
        snapshot = compute_leaderboard(7, [ALICE], log, as_of=_at(6), start_at=START)
        assert snapshot.average_per_day == 12.0

    def test_to_dict_respects_limit(self):
        log = [_contribution(1, ALICE.id, 1, 1), _contribution(2, BOB.id, 2, 2)]
        data = compute_leaderboard(7, [ALICE, BOB], log, as_of=_at(10)).to_dict(limit=1)
        assert len(data["entries"]) == 1
        assert data["entries"][0]["user_id"] == "bob"
        assert data["participant_count"] == 2


class TestEstimatedCompletion:
    def test_projects_remaining_goal_at_current_pace(self):
        # 20 in two days → 10/day; 60 left → six more days.
        log = [_contribution(1, ALICE.id, 20, 30)]
        as_of = START + timedelta(days=2)
        snapshot = compute_leaderboard(
            7, [ALICE], log, as_of=as_of, start_at=START, goal_quantity=80
        )
        assert snapshot.average_per_day == 10.0
        assert snapshot.estimated_completion_at == as_of + timedelta(days=6)
        assert snapshot.to_dict()["estimated_completion_at"] == (
            (as_of + timedelta(days=6)).isoformat()
        )

    def test_none_once_goal_met(self):
        log = [_contribution(1, ALICE.id, 60, 1)]
        snapshot = compute_leaderboard(
            7, [ALICE], log, as_of=_at(48), start_at=START, goal_quantity=60
        )
        assert snapshot.goal_met
        assert snapshot.estimated_completion_at is None

    def test_none_when_group_total_already_covers_goal(self):
        log = [_contribution(1, ALICE.id, 30, 1), _contribution(2, BOB.id, 30, 2)]
        snapshot = compute_leaderboard(
            7, [ALICE, BOB], log, as_of=_at(48), start_at=START, goal_quantity=50
        )
        assert not snapshot.goal_met
        assert snapshot.estimated_completion_at is None

    def test_none_without_progress(self):
        snapshot = compute_leaderboard(
            7, [ALICE], [], as_of=_at(48), start_at=START, goal_quantity=60
        )
        assert snapshot.average_per_day == 0.0
        assert snapshot.estimated_completion_at is None
        assert snapshot.to_dict()["estimated_completion_at"] is None

    def test_none_without_goal(self):
        log = [_contribution(1, ALICE.id, 5, 1)]
        snapshot = compute_leaderboard(7, [ALICE], log, as_of=_at(48), start_at=START)
        assert snapshot.estimated_completion_at is None
