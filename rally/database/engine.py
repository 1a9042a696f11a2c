"""
rally.database.engine — Database Connection & Async Helper
===========================================================

**Why this file exists:**
The worker loop runs on ``asyncio`` so it can enforce per-job timeouts,
but SQLAlchemy + psycopg2 is **synchronous**.  Calling the database
directly from a coroutine would stall every other job on the loop.

The bridge is the same one used everywhere in Rally:

    1. The worker claims a job                       (async world).
    2. It calls ``await run_db(handler, job)``.
    3. ``run_db`` ships the synchronous function to a **thread pool** via
       ``asyncio.to_thread()``.
    4. Repository reads/writes happen on that thread — the loop stays free.
    5. The result is awaited back in the worker, which completes the job.

Usage::

    from rally.database.engine import create_db_engine, init_db, run_db

    engine = create_db_engine()          # reads DATABASE_URL from .env
    init_db(engine)                      # CREATE TABLE IF NOT EXISTS …

    # Inside a coroutine:
    jobs = await run_db(queue.claim_due, 4)
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from contextlib import contextmanager
from typing import ParamSpec, TypeVar

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session

from rally.database.models import Base

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")


# ---------------------------------------------------------------------------
# Engine creation
# ---------------------------------------------------------------------------
def create_db_engine(url: str | None = None) -> Engine:
    """Build a SQLAlchemy :class:`Engine` from *url* or ``DATABASE_URL``.

    PostgreSQL gets a small pool sized for one API process plus a handful
    of worker threads:
    * ``pool_size=5`` — five persistent connections.
    * ``max_overflow=10`` — up to 10 extra connections under load.
    * ``pool_timeout=10`` — fail after 10 s if no connection is available.
    * ``pool_recycle=3600`` — recycle connections after 1 hour.

    SQLite URLs (local development) skip the pool tuning.

    Raises
    ------
    RuntimeError
        If neither *url* nor ``DATABASE_URL`` is set.
    """
    url = url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError(
            "DATABASE_URL is not set.  "
            "Copy .env.example → .env and set a valid PostgreSQL URL."
        )

    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(
            url,
            echo=False,        # Set True for SQL debugging
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,   # Reconnect stale connections automatically
            pool_timeout=10,      # Fail after 10s instead of hanging forever
            pool_recycle=3600,    # Recycle connections after 1 hour
        )
    logger.info("Database engine created → %s", engine.url.host or engine.url.database)
    return engine


# ---------------------------------------------------------------------------
# Schema initialization
# ---------------------------------------------------------------------------
def init_db(engine: Engine) -> None:
    """Create all tables defined in :mod:`rally.database.models`.

    Safe to call on every startup — ``CREATE TABLE IF NOT EXISTS`` under
    the hood.

    .. note::

        In production the schema is managed by Alembic (``alembic upgrade
        head``).  ``create_all`` is retained as a safety net for dev/test
        environments where Alembic may not have run.
    """
    Base.metadata.create_all(engine)
    logger.info("Database tables verified / created.")


# ---------------------------------------------------------------------------
# Session helper
# ---------------------------------------------------------------------------
@contextmanager
def get_session(engine: Engine):
    """Yield a :class:`Session` that auto-commits on success and rolls back
    on exception.

    Objects stay usable after the block (``expire_on_commit=False``) so
    repositories can hand detached rows back to services.

    Usage::

        with get_session(engine) as session:
            session.add(Challenge(...))
            # commit happens automatically on block exit
    """
    session = Session(engine, expire_on_commit=False)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# ---------------------------------------------------------------------------
# Async bridge
# ---------------------------------------------------------------------------
async def run_db(func: Callable[P, T], *args: P.args, **kwargs: P.kwargs) -> T:
    """Run a **synchronous** database function on a background thread.

    Every repository or queue call made from a coroutine goes through this
    wrapper::

        result = await run_db(service.handle_advance_job, job)

    Under the hood it calls :func:`asyncio.to_thread`, which schedules
    *func* on the default ``ThreadPoolExecutor`` so the event loop is never
    blocked.
    """
    return await asyncio.to_thread(func, *args, **kwargs)
