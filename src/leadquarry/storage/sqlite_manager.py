"""
Manages the SQLite database behind email-pattern learning and the feedback loop.
"""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar

import aiosqlite
import structlog
from sqlalchemy import create_engine

from leadquarry.config.config import SQLiteConfig
from leadquarry.exceptions import DatabaseConnectionError, DatabaseError
from leadquarry.resilience.retry import RetryPolicy

from .schema import BOUNCE_TYPES
from .schema import metadata as db_metadata

logger = structlog.get_logger(__name__)

T = TypeVar("T")

# The current version of the database schema.
# This should be incremented whenever the schema in schema.py changes.
CURRENT_SCHEMA_VERSION = 1

PATTERN_INITIAL_CONFIDENCE = 0.6
PATTERN_CONFIDENCE_STEP = 0.05
PATTERN_CONFIDENCE_CEILING = 0.95
PATTERN_CONFIDENCE_FLOOR = 0.1
PATTERN_STABLE_SAMPLES = 3

DEFAULT_VERIFICATION_SCORE = 50

_TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


def _timestamp(moment: Optional[datetime] = None) -> str:
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime(_TIMESTAMP_FORMAT)


_UPSERT_PATTERN_SQL = f"""
INSERT INTO domain_patterns (domain, email_pattern, pattern_confidence, sample_count, last_updated)
VALUES (?, ?, {PATTERN_INITIAL_CONFIDENCE}, 1, CURRENT_TIMESTAMP)
ON CONFLICT(domain) DO UPDATE SET
    pattern_confidence = CASE
        WHEN domain_patterns.email_pattern = excluded.email_pattern
            THEN MIN({PATTERN_CONFIDENCE_CEILING}, domain_patterns.pattern_confidence + {PATTERN_CONFIDENCE_STEP})
        WHEN domain_patterns.sample_count < {PATTERN_STABLE_SAMPLES}
            THEN domain_patterns.pattern_confidence
        ELSE MAX({PATTERN_CONFIDENCE_FLOOR}, domain_patterns.pattern_confidence - {PATTERN_CONFIDENCE_STEP})
    END,
    email_pattern = CASE
        WHEN domain_patterns.sample_count < {PATTERN_STABLE_SAMPLES} THEN excluded.email_pattern
        ELSE domain_patterns.email_pattern
    END,
    sample_count = domain_patterns.sample_count + 1,
    last_updated = CURRENT_TIMESTAMP
"""

_UPSERT_BUSINESS_SQL = f"""
INSERT INTO verified_businesses (
    business_id, verification_score, positive_reports, negative_reports, total_reports,
    email_verified, phone_verified, is_closed, created_at, updated_at
)
VALUES (?, MAX(0, MIN(100, {DEFAULT_VERIFICATION_SCORE} + ?)), ?, ?, 1, ?, ?, ?, CURRENT_TIMESTAMP, CURRENT_TIMESTAMP)
ON CONFLICT(business_id) DO UPDATE SET
    verification_score = MAX(0, MIN(100, verified_businesses.verification_score + ?)),
    positive_reports = verified_businesses.positive_reports + excluded.positive_reports,
    negative_reports = verified_businesses.negative_reports + excluded.negative_reports,
    total_reports = verified_businesses.total_reports + 1,
    email_verified = COALESCE(?, verified_businesses.email_verified),
    phone_verified = COALESCE(?, verified_businesses.phone_verified),
    is_closed = MAX(verified_businesses.is_closed, excluded.is_closed),
    updated_at = CURRENT_TIMESTAMP
"""


class SQLiteManager:
    """Handles all interactions with the SQLite database."""

    def __init__(self, config: SQLiteConfig, retry_policy: Optional[RetryPolicy] = None):
        self.config = config
        self.db_path = Path(config.db_path)
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
        self._retry = retry_policy or RetryPolicy(max_retries=2, base_delay=0.1, max_delay=1.0)
        self._initialized = False

    async def initialize(self) -> None:
        """Initializes the database, connection pool, and runs migrations."""
        if self._initialized:
            return
        try:
            for _ in range(self.config.pool_size):
                conn = await self._create_connection()
                await self._pool.put(conn)

            async with self.get_connection() as conn:
                await self._run_migrations(conn)
        except sqlite3.Error as e:
            await self.close()
            raise DatabaseConnectionError(f"Failed to open database at {self.db_path}: {e}") from e
        self._initialized = True

    async def _create_connection(self) -> aiosqlite.Connection:
        """Creates and configures a new database connection."""
        conn = await aiosqlite.connect(self.db_path)
        if self.config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        conn.row_factory = aiosqlite.Row
        return conn

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Gets a connection from the pool."""
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        """Checks schema version and applies migrations if necessary."""
        cursor = await conn.execute("PRAGMA user_version;")
        version_row = await cursor.fetchone()
        current_version = version_row[0] if version_row is not None else 0

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info("Migrating database schema", current=current_version, target=CURRENT_SCHEMA_VERSION)
            engine = create_engine(f"sqlite:///{self.db_path}")
            try:
                db_metadata.create_all(engine)
            finally:
                engine.dispose()

            await conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
            await conn.commit()
            logger.info("Database migration complete")

    async def _run(self, operation: str, fn: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        """Run ``fn`` on a pooled connection, mapping sqlite errors and retrying transient ones."""
        if not self._initialized:
            raise DatabaseConnectionError("Database is not initialized")

        async def attempt() -> T:
            try:
                async with self.get_connection() as conn:
                    return await fn(conn)
            except sqlite3.IntegrityError as e:
                error = DatabaseError(f"{operation} violated a constraint: {e}", operation)
                error.is_operational = False
                raise error from e
            except sqlite3.Error as e:
                raise DatabaseError(f"{operation} failed: {e}", operation) from e

        return await self._retry.execute(attempt, name=f"sqlite.{operation}")

    # --- domain_patterns ---

    async def get_domain_pattern(self, domain: str) -> Optional[Dict[str, Any]]:
        async def _fetch(conn: aiosqlite.Connection) -> Optional[Dict[str, Any]]:
            cursor = await conn.execute(
                "SELECT domain, email_pattern, pattern_confidence, sample_count, last_updated "
                "FROM domain_patterns WHERE domain = ?",
                (domain.lower(),),
            )
            row = await cursor.fetchone()
            return dict(row) if row is not None else None

        return await self._run("get_domain_pattern", _fetch)

    async def upsert_domain_pattern(self, domain: str, pattern: str) -> Dict[str, Any]:
        """
        Record one confirmed pattern sample for a domain.

        A matching sample nudges confidence up to the ceiling. A disagreeing
        sample replaces the pattern while fewer than three samples exist; after
        that the pattern is kept and the confidence is dampened instead.
        """

        async def _upsert(conn: aiosqlite.Connection) -> Dict[str, Any]:
            await conn.execute(_UPSERT_PATTERN_SQL, (domain.lower(), pattern))
            await conn.commit()
            cursor = await conn.execute(
                "SELECT domain, email_pattern, pattern_confidence, sample_count, last_updated "
                "FROM domain_patterns WHERE domain = ?",
                (domain.lower(),),
            )
            row = await cursor.fetchone()
            return dict(row) if row is not None else {}

        return await self._run("upsert_domain_pattern", _upsert)

    async def get_pattern_stats(self) -> Dict[str, Any]:
        async def _stats(conn: aiosqlite.Connection) -> Dict[str, Any]:
            cursor = await conn.execute(
                "SELECT COUNT(*) AS domains, AVG(pattern_confidence) AS avg_confidence, "
                "SUM(sample_count) AS samples FROM domain_patterns"
            )
            totals = await cursor.fetchone()
            cursor = await conn.execute(
                "SELECT email_pattern, COUNT(*) AS n FROM domain_patterns GROUP BY email_pattern ORDER BY n DESC"
            )
            by_pattern = {row["email_pattern"]: row["n"] for row in await cursor.fetchall()}
            return {
                "domains": totals["domains"] if totals else 0,
                "avg_confidence": round(totals["avg_confidence"] or 0.0, 3) if totals else 0.0,
                "samples": (totals["samples"] or 0) if totals else 0,
                "by_pattern": by_pattern,
            }

        return await self._run("get_pattern_stats", _stats)

    async def delete_domain_patterns(self) -> None:
        async def _delete(conn: aiosqlite.Connection) -> None:
            await conn.execute("DELETE FROM domain_patterns")
            await conn.commit()

        await self._run("delete_domain_patterns", _delete)

    # --- verified_businesses / user_feedback ---

    async def record_feedback(
        self,
        business_id: str,
        feedback_type: str,
        confidence_impact: float,
        field: Optional[str] = None,
        original_value: Optional[str] = None,
        corrected_value: Optional[str] = None,
        email_verified: Optional[bool] = None,
        phone_verified: Optional[bool] = None,
        is_closed: bool = False,
    ) -> Dict[str, Any]:
        """Append a feedback row and apply its delta to the business in one transaction."""
        delta = round(confidence_impact * 100)
        positive = 1 if confidence_impact > 0 else 0
        negative = 1 - positive

        def _flag(value: Optional[bool]) -> Optional[int]:
            return None if value is None else int(value)

        async def _record(conn: aiosqlite.Connection) -> Dict[str, Any]:
            try:
                await conn.execute(
                    "INSERT INTO user_feedback (business_id, feedback_type, field, original_value, "
                    "corrected_value, confidence_impact, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (business_id, feedback_type, field, original_value, corrected_value, confidence_impact, _timestamp()),
                )
                await conn.execute(
                    _UPSERT_BUSINESS_SQL,
                    (
                        business_id,
                        delta,
                        positive,
                        negative,
                        _flag(email_verified) or 0,
                        _flag(phone_verified) or 0,
                        int(is_closed),
                        delta,
                        _flag(email_verified),
                        _flag(phone_verified),
                    ),
                )
                await conn.commit()
            except sqlite3.Error:
                await conn.rollback()
                raise
            cursor = await conn.execute("SELECT * FROM verified_businesses WHERE business_id = ?", (business_id,))
            row = await cursor.fetchone()
            return dict(row) if row is not None else {}

        return await self._run("record_feedback", _record)

    async def get_verified_business(self, business_id: str) -> Optional[Dict[str, Any]]:
        async def _fetch(conn: aiosqlite.Connection) -> Optional[Dict[str, Any]]:
            cursor = await conn.execute("SELECT * FROM verified_businesses WHERE business_id = ?", (business_id,))
            row = await cursor.fetchone()
            return dict(row) if row is not None else None

        return await self._run("get_verified_business", _fetch)

    async def get_feedback_for_business(self, business_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        async def _fetch(conn: aiosqlite.Connection) -> List[Dict[str, Any]]:
            cursor = await conn.execute(
                "SELECT * FROM user_feedback WHERE business_id = ? ORDER BY id DESC LIMIT ?",
                (business_id, limit),
            )
            return [dict(row) for row in await cursor.fetchall()]

        return await self._run("get_feedback_for_business", _fetch)

    async def get_feedback_stats(self, days: int = 30) -> Dict[str, Any]:
        cutoff = _timestamp(datetime.now(timezone.utc) - timedelta(days=days))

        async def _stats(conn: aiosqlite.Connection) -> Dict[str, Any]:
            cursor = await conn.execute(
                "SELECT feedback_type, COUNT(*) AS n FROM user_feedback WHERE created_at >= ? GROUP BY feedback_type",
                (cutoff,),
            )
            by_type = {row["feedback_type"]: row["n"] for row in await cursor.fetchall()}
            cursor = await conn.execute(
                "SELECT COUNT(*) AS n, AVG(verification_score) AS avg_score FROM verified_businesses"
            )
            businesses = await cursor.fetchone()
            cursor = await conn.execute(
                "SELECT bounce_type, COUNT(*) AS n FROM email_bounces WHERE bounced_at >= ? GROUP BY bounce_type",
                (cutoff,),
            )
            bounces = {row["bounce_type"]: row["n"] for row in await cursor.fetchall()}
            return {
                "period_days": days,
                "feedback_by_type": by_type,
                "total_feedback": sum(by_type.values()),
                "businesses_tracked": businesses["n"] if businesses else 0,
                "avg_verification_score": round(businesses["avg_score"] or 0.0, 1) if businesses else 0.0,
                "bounces_by_type": bounces,
                "total_bounces": sum(bounces.values()),
            }

        return await self._run("get_feedback_stats", _stats)

    # --- email_bounces ---

    async def record_bounce(
        self,
        email: str,
        bounce_type: str,
        reason: Optional[str] = None,
        business_id: Optional[str] = None,
        bounced_at: Optional[datetime] = None,
    ) -> None:
        if bounce_type not in BOUNCE_TYPES:
            raise ValueError(f"Unknown bounce type: {bounce_type}")
        email = email.strip().lower()
        domain = email.rsplit("@", 1)[-1]

        async def _insert(conn: aiosqlite.Connection) -> None:
            await conn.execute(
                "INSERT INTO email_bounces (email, domain, bounce_type, reason, business_id, bounced_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (email, domain, bounce_type, reason, business_id, _timestamp(bounced_at)),
            )
            await conn.commit()

        await self._run("record_bounce", _insert)

    async def has_hard_bounce(self, email: str) -> bool:
        async def _check(conn: aiosqlite.Connection) -> bool:
            cursor = await conn.execute(
                "SELECT 1 FROM email_bounces WHERE email = ? AND bounce_type = 'hard' LIMIT 1",
                (email.strip().lower(),),
            )
            return await cursor.fetchone() is not None

        return await self._run("has_hard_bounce", _check)

    async def get_domain_bounce_stats(self, domain: str, days: int = 90) -> Dict[str, Any]:
        """Hard bounces as a share of all bounce records for ``domain`` within ``days``."""
        cutoff = _timestamp(datetime.now(timezone.utc) - timedelta(days=days))

        async def _stats(conn: aiosqlite.Connection) -> Dict[str, Any]:
            cursor = await conn.execute(
                "SELECT COUNT(*) AS total, "
                "SUM(CASE WHEN bounce_type = 'hard' THEN 1 ELSE 0 END) AS hard "
                "FROM email_bounces WHERE domain = ? AND bounced_at >= ?",
                (domain.lower(), cutoff),
            )
            row = await cursor.fetchone()
            total = row["total"] if row else 0
            hard = (row["hard"] or 0) if row else 0
            return {"total": total, "hard": hard, "bounce_rate": hard / total if total else 0.0}

        return await self._run("get_domain_bounce_stats", _stats)

    async def close(self) -> None:
        """Closes all connections in the pool."""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._initialized = False
