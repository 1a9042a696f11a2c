"""
tests/test_database.py — Engine & Schema Setup
===============================================
``init_db`` must work against a plain SQLite file (local development) as
well as PostgreSQL, where document columns are JSONB.
"""

from __future__ import annotations

from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.schema import CreateTable
from conftest import FrozenClock, start_challenge

from rally.database.engine import create_db_engine, init_db
from rally.database.models import Challenge, ChallengeStatus, LifecycleJob
from rally.services.challenge_service import ChallengeService
from rally.services.job_store import SqlJobQueue
from rally.services.repository import ChallengeRepository
from rally.services.scheduler import LifecycleScheduler


def _ddl(table, dialect) -> str:
    return str(CreateTable(table).compile(dialect=dialect))


class TestSqliteFile:
    def test_init_db_creates_every_table(self, tmp_path):
        engine = create_db_engine(f"sqlite:///{tmp_path / 'rally.db'}")
        init_db(engine)
        init_db(engine)  # second run is a no-op

        assert set(inspect(engine).get_table_names()) >= {
            "challenges",
            "challenge_participants",
            "challenge_contributions",
            "challenge_transitions",
            "lifecycle_jobs",
        }

    def test_documents_round_trip(self, tmp_path):
        engine = create_db_engine(f"sqlite:///{tmp_path / 'rally.db'}")
        init_db(engine)
        clock = FrozenClock()
        queue = SqlJobQueue(engine, clock=clock)
        svc = ChallengeService(ChallengeRepository(engine), LifecycleScheduler(queue), clock=clock)

        challenge_id = start_challenge(svc, clock)
        svc.join(challenge_id, "alice")
        clock.advance(hours=1)
        svc.record_contribution(challenge_id, "alice", 4)
        clock.set(svc.get_challenge(challenge_id).end_at)
        svc.advance(challenge_id)

        challenge = svc.get_challenge(challenge_id)
        assert challenge.status == ChallengeStatus.COMPLETED
        assert challenge.final_leaderboard["entries"][0]["user_id"] == "alice"
        assert challenge.final_leaderboard["total_quantity"] == 4
        assert [job.payload for job in queue.list_jobs()] == [{"challenge_id": challenge_id}]


class TestDialects:
    def test_postgresql_uses_jsonb(self):
        assert "JSONB" in _ddl(Challenge.__table__, postgresql.dialect())
        assert "JSONB" in _ddl(LifecycleJob.__table__, postgresql.dialect())

    def test_sqlite_uses_json(self):
        ddl = _ddl(LifecycleJob.__table__, sqlite.dialect())
        assert "JSONB" not in ddl
        assert "JSON" in ddl
