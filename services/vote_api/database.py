"""PostgreSQL vote record store."""
import asyncio
import uuid
import asyncpg
from typing import Optional, List
from datetime import datetime
import logging

from ..shared.models import VoteRecord
from .config import settings
from .lifecycle import DuplicateSubmissionError, StoreUnavailableError

logger = logging.getLogger(__name__)

# Driver and network failures that mean the store cannot answer right now
STORE_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError)


SCHEMA = """
    CREATE TABLE IF NOT EXISTS votes (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        email TEXT NOT NULL,
        country_code TEXT NOT NULL,
        privacy_policy TEXT,
        age_attestation TEXT,
        created TIMESTAMPTZ NOT NULL,
        confirmed TIMESTAMPTZ,
        disabled BOOLEAN NOT NULL DEFAULT FALSE
    );
    CREATE UNIQUE INDEX IF NOT EXISTS votes_email_key ON votes (email);
    CREATE INDEX IF NOT EXISTS votes_confirmed_idx ON votes (confirmed DESC)
        WHERE confirmed IS NOT NULL AND NOT disabled;
"""

COLUMNS = """
    id, email, country_code, privacy_policy, age_attestation,
    created, confirmed, disabled
"""


def _row_to_record(row) -> VoteRecord:
    return VoteRecord(
        id=str(row["id"]),
        email=row["email"],
        country_code=row["country_code"],
        privacy_policy=row["privacy_policy"],
        age_attestation=row["age_attestation"],
        created=row["created"],
        confirmed=row["confirmed"],
        disabled=row["disabled"],
    )


def _parse_id(vote_id: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(vote_id)
    except (ValueError, TypeError, AttributeError):
        return None


class Database:
    """Async PostgreSQL store for vote records."""

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn or settings.postgres_dsn
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize database connection pool and schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=settings.POSTGRES_POOL_MIN_SIZE,
                max_size=settings.POSTGRES_POOL_MAX_SIZE,
                command_timeout=settings.POSTGRES_COMMAND_TIMEOUT
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                logger.info("PostgreSQL connection verified")
                await conn.execute(SCHEMA)

        except STORE_ERRORS as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise StoreUnavailableError(f"PostgreSQL unavailable: {e}") from e

    async def find_by_id(self, vote_id: str) -> Optional[VoteRecord]:
        """
        Get a vote record by its id.

        Args:
            vote_id: Record identifier

        Returns:
            VoteRecord or None if not found (including malformed ids)
        """
        key = _parse_id(vote_id)
        if key is None:
            return None

        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {COLUMNS} FROM votes WHERE id = $1", key
                )
                return _row_to_record(row) if row else None

        except STORE_ERRORS as e:
            logger.error(f"Error getting vote {vote_id}: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def find_by_email(self, email: str) -> Optional[VoteRecord]:
        """Get the vote record registered for an email, if any."""
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {COLUMNS} FROM votes WHERE email = $1", email
                )
                return _row_to_record(row) if row else None

        except STORE_ERRORS as e:
            logger.error(f"Error looking up vote by email: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def insert(self, record: VoteRecord) -> VoteRecord:
        """
        Insert a new vote record.

        Args:
            record: Record without an id

        Returns:
            VoteRecord with the id assigned by PostgreSQL

        Raises:
            DuplicateSubmissionError: If the email is already registered
        """
        query = f"""
            INSERT INTO votes
            (email, country_code, privacy_policy, age_attestation,
             created, confirmed, disabled)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING {COLUMNS}
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    query,
                    record.email, record.country_code,
                    record.privacy_policy, record.age_attestation,
                    record.created, record.confirmed, record.disabled
                )
                return _row_to_record(row)

        except asyncpg.UniqueViolationError as e:
            raise DuplicateSubmissionError(record.email) from e
        except STORE_ERRORS as e:
            logger.error(f"Error inserting vote: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def confirm(self, vote_id: str, confirmed_at: datetime) -> Optional[VoteRecord]:
        """
        Mark a pending vote as confirmed.

        The update only applies while `confirmed` is still NULL, so exactly
        one caller wins when confirmations race.

        Returns:
            The updated record, or None if nothing was pending under that id
        """
        key = _parse_id(vote_id)
        if key is None:
            return None

        query = f"""
            UPDATE votes
            SET confirmed = $2
            WHERE id = $1 AND confirmed IS NULL
            RETURNING {COLUMNS}
        """
        try:
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(query, key, confirmed_at)
                return _row_to_record(row) if row else None

        except STORE_ERRORS as e:
            logger.error(f"Error confirming vote {vote_id}: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def list_confirmed(self) -> List[VoteRecord]:
        """
        Get every confirmed, enabled vote.

        Returns:
            List of records, most recently confirmed first
        """
        query = f"""
            SELECT {COLUMNS}
            FROM votes
            WHERE confirmed IS NOT NULL AND disabled = FALSE
            ORDER BY confirmed DESC
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query)
                return [_row_to_record(row) for row in rows]

        except STORE_ERRORS as e:
            logger.error(f"Error listing confirmed votes: {e}")
            raise StoreUnavailableError(str(e)) from e

    async def check_health(self) -> bool:
        """
        Check PostgreSQL connection health.

        Returns:
            bool: True if healthy, False otherwise
        """
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")
