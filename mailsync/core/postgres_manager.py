"""
PostgreSQL connection manager for the mail sync engine.
Owns the connection pool and the engine's schema.
"""

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass

from psycopg2.extras import RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

logger = logging.getLogger(__name__)


@dataclass
class PostgreSQLConfig:
    """Configuration for PostgreSQL connection."""
    host: str = os.getenv('POSTGRES_HOST', 'localhost')
    port: int = int(os.getenv('POSTGRES_PORT', '5432'))
    database: str = os.getenv('POSTGRES_DB', 'mailsync')
    user: str = os.getenv('POSTGRES_USER', 'mailsync')
    password: str = os.getenv('POSTGRES_PASSWORD', 'secure_password')
    min_connections: int = 2
    max_connections: int = 20


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS email_accounts (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    provider VARCHAR(20) NOT NULL,
    email_address TEXT NOT NULL,
    credentials_ref TEXT,
    settings JSONB NOT NULL DEFAULT '{}'::jsonb,
    folders JSONB NOT NULL DEFAULT '[]'::jsonb,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    sync_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    polling_interval_seconds INTEGER NOT NULL DEFAULT 300,
    delivery_mode VARCHAR(10) NOT NULL DEFAULT 'poll',
    subscription_id TEXT,
    subscription_folder TEXT,
    subscription_expires_at TIMESTAMP WITH TIME ZONE,
    subscription_client_state TEXT,
    last_sync_at TIMESTAMP WITH TIME ZONE,
    last_attempt_at TIMESTAMP WITH TIME ZONE,
    last_error TEXT,
    last_error_at TIMESTAMP WITH TIME ZONE,
    needs_reauth BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS folder_cursors (
    account_id TEXT NOT NULL REFERENCES email_accounts(id) ON DELETE CASCADE,
    folder TEXT NOT NULL,
    cursor TEXT,
    in_progress BOOLEAN NOT NULL DEFAULT FALSE,
    lock_owner TEXT,
    locked_at TIMESTAMP WITH TIME ZONE,
    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    PRIMARY KEY (account_id, folder)
);

CREATE TABLE IF NOT EXISTS email_index (
    account_id TEXT NOT NULL REFERENCES email_accounts(id) ON DELETE CASCADE,
    message_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    folder TEXT NOT NULL,
    subject TEXT,
    sender TEXT,
    recipients JSONB NOT NULL DEFAULT '[]'::jsonb,
    direction VARCHAR(10) NOT NULL DEFAULT 'received',
    thread_id TEXT,
    sent_at TIMESTAMP WITH TIME ZONE,
    received_at TIMESTAMP WITH TIME ZONE,
    has_attachments BOOLEAN NOT NULL DEFAULT FALSE,
    is_read BOOLEAN NOT NULL DEFAULT FALSE,
    preview TEXT,
    analyzed_at TIMESTAMP WITH TIME ZONE,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    PRIMARY KEY (account_id, message_id)
);

CREATE TABLE IF NOT EXISTS email_content_cache (
    account_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    body_text TEXT,
    body_html TEXT,
    fetched_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    PRIMARY KEY (account_id, message_id),
    CONSTRAINT fk_content_cache_index FOREIGN KEY (account_id, message_id)
        REFERENCES email_index(account_id, message_id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS learning_jobs (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES email_accounts(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    state VARCHAR(20) NOT NULL DEFAULT 'queued',
    total INTEGER NOT NULL DEFAULT 0,
    processed INTEGER NOT NULL DEFAULT 0,
    succeeded INTEGER NOT NULL DEFAULT 0,
    failed INTEGER NOT NULL DEFAULT 0,
    skipped INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    started_at TIMESTAMP WITH TIME ZONE,
    finished_at TIMESTAMP WITH TIME ZONE,
    error TEXT,
    results JSONB NOT NULL DEFAULT '{}'::jsonb
);

CREATE TABLE IF NOT EXISTS learning_results (
    account_id TEXT NOT NULL,
    message_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    patterns JSONB NOT NULL,
    analyzed_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
    PRIMARY KEY (account_id, message_id)
);

CREATE INDEX IF NOT EXISTS idx_email_accounts_subscription ON email_accounts(subscription_id);
CREATE INDEX IF NOT EXISTS idx_email_accounts_address ON email_accounts(provider, lower(email_address));
CREATE INDEX IF NOT EXISTS idx_email_index_user ON email_index(user_id);
CREATE INDEX IF NOT EXISTS idx_email_index_folder ON email_index(account_id, folder);
CREATE INDEX IF NOT EXISTS idx_email_index_unanalyzed ON email_index(account_id) WHERE analyzed_at IS NULL;
CREATE INDEX IF NOT EXISTS idx_learning_jobs_active ON learning_jobs(user_id, account_id, state);
"""


class PostgreSQLManager:
    """Connection pool owner for the sync engine."""

    def __init__(self, config_or_pool=None):
        """
        Initialize PostgreSQL manager with connection pooling.

        Args:
            config_or_pool: Either a PostgreSQLConfig object or a connection pool.
                          If None, creates default config.
        """
        if hasattr(config_or_pool, 'getconn') and hasattr(config_or_pool, 'putconn'):
            self.pool = config_or_pool
            self.config = None
            logger.info("PostgreSQL manager initialized with existing pool")
        else:
            self.config = config_or_pool or PostgreSQLConfig()
            self._initialize_pool()
            self._ensure_schema()

    def _initialize_pool(self) -> None:
        """Initialize connection pool."""
        if not self.config:
            raise ValueError("Cannot initialize pool without config")

        try:
            self.pool = ThreadedConnectionPool(
                self.config.min_connections,
                self.config.max_connections,
                host=self.config.host,
                port=self.config.port,
                database=self.config.database,
                user=self.config.user,
                password=self.config.password,
                cursor_factory=RealDictCursor
            )
            logger.info(f"PostgreSQL connection pool initialized for {self.config.database}")
        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        if not self.pool:
            raise RuntimeError("No connection pool available")

        conn = None
        try:
            logger.debug("Requesting database connection from pool")
            conn = self.pool.getconn()
            conn.autocommit = True
            yield conn
        except Exception as e:
            logger.error(f"Database operation failed: {e} (type: {type(e)})")
            raise
        finally:
            if conn:
                self.pool.putconn(conn)

    def _ensure_schema(self) -> None:
        """Create the engine's tables and indexes. Skip if using external pool."""
        if not self.config:
            logger.debug("Skipping schema creation for external pool")
            return

        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA_SQL)
                logger.info("PostgreSQL schema initialized successfully")

    def get_version_info(self):
        """Get PostgreSQL version and connection info."""
        try:
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT version()")
                    version_result = cur.fetchone()
                    version_str = version_result['version'] if version_result else "Unknown"
                    version_short = version_str.split(' on ')[0] if ' on ' in version_str else version_str
                    return {"connected": True, "version": version_short}
        except Exception as e:
            logger.error(f"Failed to get PostgreSQL version: {e}")
            return {"connected": False, "error": str(e)}

    def close(self) -> None:
        """Close connection pool."""
        if self.pool:
            self.pool.closeall()
            logger.info("PostgreSQL connection pool closed")
