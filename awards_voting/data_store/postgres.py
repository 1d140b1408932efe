"""PostgreSQL data store backed by asyncpg, with LISTEN/NOTIFY change feeds."""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import asyncpg

from ..config import settings
from ..shared.models import Category, ChangeEvent, Vote
from .base import (
    DataStore,
    EventCallback,
    StatusCallback,
    StoreError,
    StoreUnavailable,
    Subscription,
    SubscriptionStatus,
    UniqueViolation,
    ForeignKeyViolation,
    CheckViolation,
)

logger = logging.getLogger(__name__)


SCHEMA_SQL = """
CREATE EXTENSION IF NOT EXISTS "uuid-ossp";

CREATE TABLE IF NOT EXISTS categories (
    id INTEGER PRIMARY KEY CHECK (id > 0),
    title TEXT NOT NULL,
    nominees JSONB NOT NULL,
    unlocked BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS votes (
    id UUID PRIMARY KEY DEFAULT uuid_generate_v4(),
    category_id INTEGER REFERENCES categories(id),
    option TEXT NOT NULL CONSTRAINT votes_option_check CHECK (option IN ('A', 'B', 'C', 'D')),
    device_id TEXT NOT NULL,
    browser_fingerprint TEXT,
    session_id TEXT,
    ip_address TEXT,
    user_agent TEXT,
    timestamp TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    CONSTRAINT votes_category_id_device_id_key UNIQUE (category_id, device_id)
);

CREATE INDEX IF NOT EXISTS idx_votes_category ON votes(category_id);
CREATE INDEX IF NOT EXISTS idx_votes_device ON votes(device_id);
CREATE INDEX IF NOT EXISTS idx_votes_browser_fp ON votes(browser_fingerprint);
CREATE INDEX IF NOT EXISTS idx_categories_unlocked ON categories(unlocked);

-- Only one category can be unlocked at a time
CREATE UNIQUE INDEX IF NOT EXISTS idx_single_unlocked ON categories(unlocked) WHERE unlocked = true;

CREATE OR REPLACE FUNCTION touch_category() RETURNS trigger AS $$
BEGIN
    NEW.updated_at = clock_timestamp();
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

CREATE OR REPLACE FUNCTION notify_awards_change() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify('{channel}', json_build_object(
        'table', TG_TABLE_NAME,
        'type', TG_OP,
        'new', row_to_json(NEW),
        'old', CASE WHEN TG_OP = 'UPDATE' THEN row_to_json(OLD) ELSE NULL END
    )::text);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS categories_touch ON categories;
CREATE TRIGGER categories_touch BEFORE UPDATE ON categories
    FOR EACH ROW EXECUTE FUNCTION touch_category();

DROP TRIGGER IF EXISTS categories_notify ON categories;
CREATE TRIGGER categories_notify AFTER UPDATE ON categories
    FOR EACH ROW EXECUTE FUNCTION notify_awards_change();

DROP TRIGGER IF EXISTS votes_notify ON votes;
CREATE TRIGGER votes_notify AFTER INSERT ON votes
    FOR EACH ROW EXECUTE FUNCTION notify_awards_change();
"""

CATEGORY_COLUMNS = {
    'title': 'title',
    'nominees': 'nominees',
    'is_unlocked': 'unlocked',
}


async def _init_connection(conn: asyncpg.Connection) -> None:
    await conn.set_type_codec(
        'jsonb',
        encoder=json.dumps,
        decoder=json.loads,
        schema='pg_catalog'
    )


def _category_from_row(row) -> Category:
    return Category.from_dict(dict(row))


def _vote_from_row(row) -> Vote:
    return Vote.from_dict(dict(row))


class PostgresSubscription(Subscription):
    """LISTEN on a dedicated connection, filtered to one table."""

    def __init__(self, connection: asyncpg.Connection, channel: str, table: str,
                 on_event: EventCallback, on_status: StatusCallback):
        self.connection = connection
        self.channel = channel
        self.table = table
        self.on_event = on_event
        self.on_status = on_status
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    async def start(self) -> None:
        self.connection.add_termination_listener(self._on_terminated)
        await self.connection.add_listener(self.channel, self._on_notification)
        self._active = True
        logger.info(f"Listening for {self.table} changes on channel {self.channel}")
        self.on_status(SubscriptionStatus.SUBSCRIBED, None)

    def _on_notification(self, connection, pid, channel, payload) -> None:
        if not self._active:
            return
        try:
            event = ChangeEvent.from_dict(json.loads(payload))
        except (ValueError, KeyError) as e:
            logger.error(f"Malformed change notification on {channel}: {e}")
            return
        if event.table == self.table:
            self.on_event(event)

    def _on_terminated(self, connection) -> None:
        if not self._active:
            return
        self._active = False
        logger.warning(f"Notification connection for {self.table} terminated")
        self.on_status(
            SubscriptionStatus.CHANNEL_ERROR,
            StoreUnavailable("notification connection terminated")
        )

    async def unsubscribe(self) -> None:
        if not self._active and self.connection.is_closed():
            return
        self._active = False
        try:
            self.connection.remove_termination_listener(self._on_terminated)
            if not self.connection.is_closed():
                await self.connection.remove_listener(self.channel, self._on_notification)
                await self.connection.close()
            logger.debug(f"Unsubscribed from {self.table} notifications")
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            logger.error(f"Error closing notification connection: {e}")


class PostgresDataStore(DataStore):
    """Async PostgreSQL data store."""

    def __init__(self, dsn: Optional[str] = None, channel: Optional[str] = None,
                 connect_timeout: Optional[float] = None):
        self.dsn = dsn or settings.postgres_dsn
        self.channel = channel or settings.NOTIFY_CHANNEL
        self.connect_timeout = connect_timeout or settings.STORE_TIMEOUT_SECONDS
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self, create_schema: bool = False) -> None:
        """Initialize the connection pool, optionally creating the schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=settings.POSTGRES_POOL_MIN_SIZE,
                max_size=settings.POSTGRES_POOL_MAX_SIZE,
                timeout=self.connect_timeout,
                command_timeout=self.connect_timeout,
                init=_init_connection
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                if create_schema:
                    await conn.execute(SCHEMA_SQL.replace('{channel}', self.channel))
                    logger.info("PostgreSQL schema ensured")

        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e!r}")
            raise StoreUnavailable(str(e)) from e

    @asynccontextmanager
    async def _connection(self):
        """Acquire a pooled connection and translate driver errors."""
        if self.pool is None:
            raise StoreUnavailable("PostgreSQL pool is not initialized")
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except asyncpg.UniqueViolationError as e:
            raise UniqueViolation(str(e), constraint=e.constraint_name) from e
        except asyncpg.ForeignKeyViolationError as e:
            raise ForeignKeyViolation(str(e), constraint=e.constraint_name) from e
        except asyncpg.CheckViolationError as e:
            raise CheckViolation(str(e), constraint=e.constraint_name) from e
        except (asyncpg.PostgresConnectionError, asyncpg.InterfaceError, OSError) as e:
            raise StoreUnavailable(str(e)) from e
        except asyncpg.PostgresError as e:
            raise StoreError(str(e)) from e

    async def fetch_categories(self, unlocked: Optional[bool] = None) -> List[Category]:
        async with self._connection() as conn:
            if unlocked is None:
                rows = await conn.fetch("SELECT * FROM categories ORDER BY id")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM categories WHERE unlocked = $1 ORDER BY id",
                    unlocked
                )
        return [_category_from_row(row) for row in rows]

    async def fetch_category(self, category_id: int) -> Optional[Category]:
        async with self._connection() as conn:
            row = await conn.fetchrow("SELECT * FROM categories WHERE id = $1", category_id)
        return _category_from_row(row) if row else None

    async def fetch_votes(self, category_id: Optional[int] = None,
                          identity: Optional[str] = None) -> List[Vote]:
        clauses = []
        args: List[Any] = []
        if category_id is not None:
            args.append(category_id)
            clauses.append(f"category_id = ${len(args)}")
        if identity is not None:
            args.append(identity)
            clauses.append(f"device_id = ${len(args)}")

        query = "SELECT * FROM votes"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY timestamp DESC"

        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)
        return [_vote_from_row(row) for row in rows]

    async def find_vote(self, category_id: int, identity: str) -> Optional[Vote]:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM votes WHERE category_id = $1 AND device_id = $2",
                category_id, identity
            )
        return _vote_from_row(row) if row else None

    async def insert_vote(self, vote: Vote) -> Vote:
        query = """
            INSERT INTO votes (
                id,
                category_id,
                option,
                device_id,
                browser_fingerprint,
                session_id,
                user_agent
            ) VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                query,
                vote.id,
                vote.category_id,
                vote.option,
                vote.identity,
                vote.browser_fingerprint,
                vote.session_id,
                vote.user_agent
            )
        logger.debug(f"Inserted vote {vote.id} for category {vote.category_id}")
        return _vote_from_row(row)

    async def update_categories(self, values: Dict[str, Any],
                                category_id: Optional[int] = None) -> List[Category]:
        assignments = []
        args: List[Any] = []
        for key, value in values.items():
            column = CATEGORY_COLUMNS.get(key)
            if column is None:
                raise ValueError(f"Unknown category field: {key}")
            args.append(value)
            assignments.append(f"{column} = ${len(args)}")

        query = f"UPDATE categories SET {', '.join(assignments)}"
        if category_id is not None:
            args.append(category_id)
            query += f" WHERE id = ${len(args)}"
        query += " RETURNING *"

        async with self._connection() as conn:
            rows = await conn.fetch(query, *args)
        return sorted((_category_from_row(row) for row in rows), key=lambda c: c.id)

    async def upsert_category(self, category: Category) -> None:
        """Create or refresh a category's title and nominees (setup only)."""
        query = """
            INSERT INTO categories (id, title, nominees)
            VALUES ($1, $2, $3)
            ON CONFLICT (id)
            DO UPDATE SET title = EXCLUDED.title, nominees = EXCLUDED.nominees
        """
        async with self._connection() as conn:
            await conn.execute(query, category.id, category.title, category.nominees)

    async def subscribe(self, table: str, on_event: EventCallback,
                        on_status: StatusCallback) -> Subscription:
        try:
            connection = await asyncio.wait_for(
                asyncpg.connect(self.dsn),
                timeout=self.connect_timeout
            )
        except asyncio.TimeoutError as e:
            raise StoreUnavailable("timed out opening notification connection") from e
        except (asyncpg.PostgresError, OSError) as e:
            raise StoreUnavailable(str(e)) from e

        subscription = PostgresSubscription(connection, self.channel, table, on_event, on_status)
        try:
            await subscription.start()
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as e:
            await connection.close()
            raise StoreUnavailable(str(e)) from e
        return subscription

    async def check_health(self) -> bool:
        try:
            async with self._connection() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except StoreError as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def close(self) -> None:
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed")
        except (asyncpg.PostgresError, OSError) as e:
            logger.error(f"Error closing PostgreSQL pool: {e}")
