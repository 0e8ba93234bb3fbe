"""
PostgreSQL implementation of :class:`SyncRepository`.

Locks and delivery-mode switches are single conditional ``UPDATE`` statements
so they stay atomic under concurrent workers; index inserts are multi-row
``INSERT ... ON CONFLICT DO NOTHING RETURNING`` statements.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from psycopg2 import sql
from psycopg2.extras import Json, execute_values

from mailsync.email.models import (
    Account,
    Direction,
    FolderCursor,
    LearningJob,
    MessageBody,
    MessageIndexEntry,
    ProviderKind,
)

from .postgres_manager import PostgreSQLManager
from .repository import SyncRepository

logger = logging.getLogger(__name__)

ACCOUNT_COLUMNS = (
    "id", "user_id", "provider", "email_address", "credentials_ref", "settings",
    "folders", "is_active", "sync_enabled", "polling_interval_seconds",
    "delivery_mode", "subscription_id", "subscription_folder",
    "subscription_expires_at", "subscription_client_state", "last_sync_at",
    "last_attempt_at", "last_error", "last_error_at", "needs_reauth",
)

INDEX_COLUMNS = (
    "account_id", "message_id", "user_id", "folder", "subject", "sender",
    "recipients", "direction", "thread_id", "sent_at", "received_at",
    "has_attachments", "is_read", "preview",
)

JOB_COLUMNS = (
    "id", "account_id", "user_id", "state", "total", "processed", "succeeded",
    "failed", "skipped", "created_at", "started_at", "finished_at", "error", "results",
)


def _adapt(value: Any) -> Any:
    """Convert model values into something psycopg2 can bind."""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (dict, list)):
        return Json(value)
    return value


def _row_to_account(row: Dict[str, Any]) -> Account:
    return Account(**{col: row[col] for col in ACCOUNT_COLUMNS})


def _row_to_entry(row: Dict[str, Any]) -> MessageIndexEntry:
    return MessageIndexEntry(
        account_id=row["account_id"],
        message_id=row["message_id"],
        folder=row["folder"],
        user_id=row["user_id"],
        subject=row.get("subject"),
        sender=row.get("sender"),
        recipients=list(row.get("recipients") or []),
        direction=Direction(row.get("direction") or "received"),
        thread_id=row.get("thread_id"),
        sent_at=row.get("sent_at"),
        received_at=row.get("received_at"),
        has_attachments=bool(row.get("has_attachments")),
        is_read=bool(row.get("is_read")),
        preview=row.get("preview"),
        analyzed_at=row.get("analyzed_at"),
    )


def _row_to_job(row: Dict[str, Any]) -> LearningJob:
    return LearningJob(**{col: row[col] for col in JOB_COLUMNS})


class PostgreSQLSyncRepository(SyncRepository):
    """Sync repository backed by the tables created in :mod:`postgres_manager`."""

    def __init__(self, postgres_manager: PostgreSQLManager) -> None:
        self.db_manager = postgres_manager

    def _execute(self, query, params=None) -> int:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return cur.rowcount

    def _fetchone(self, query, params=None) -> Optional[Dict[str, Any]]:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                row = cur.fetchone()
                return dict(row) if row else None

    def _fetchall(self, query, params=None) -> List[Dict[str, Any]]:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return [dict(row) for row in cur.fetchall()]

    @staticmethod
    def _check_fields(fields: Iterable[str]) -> None:
        unknown = set(fields) - set(ACCOUNT_COLUMNS)
        if unknown:
            raise ValueError(f"unknown account fields: {', '.join(sorted(unknown))}")

    def _set_clause(self, updates: Dict[str, Any]):
        self._check_fields(updates)
        clause = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(key)) for key in updates
        )
        return clause, [_adapt(value) for value in updates.values()]

    # ------------------------------------------------------------------
    def get_account(self, account_id: str) -> Optional[Account]:
        row = self._fetchone("SELECT * FROM email_accounts WHERE id = %s", [account_id])
        return _row_to_account(row) if row else None

    def list_accounts(self, active_only: bool = True) -> List[Account]:
        query = "SELECT * FROM email_accounts"
        if active_only:
            query += " WHERE is_active = TRUE"
        query += " ORDER BY id"
        return [_row_to_account(row) for row in self._fetchall(query)]

    def update_account(self, account_id: str, updates: Dict[str, Any]) -> None:
        if not updates:
            return
        clause, values = self._set_clause(updates)
        query = sql.SQL("UPDATE email_accounts SET {} WHERE id = %s").format(clause)
        self._execute(query, values + [account_id])
        logger.debug("Updated email account %s: %s", account_id, sorted(updates))

    def update_account_if(
        self, account_id: str, expected: Dict[str, Any], updates: Dict[str, Any]
    ) -> bool:
        clause, values = self._set_clause(updates)
        self._check_fields(expected)
        conditions = sql.SQL("").join(
            sql.SQL(" AND {} IS NOT DISTINCT FROM %s").format(sql.Identifier(key))
            for key in expected
        )
        query = sql.SQL("UPDATE email_accounts SET {} WHERE id = %s{}").format(clause, conditions)
        params = values + [account_id] + [_adapt(value) for value in expected.values()]
        return self._execute(query, params) == 1

    def find_account_by_subscription(self, subscription_id: str) -> Optional[Account]:
        row = self._fetchone(
            "SELECT * FROM email_accounts WHERE subscription_id = %s", [subscription_id]
        )
        return _row_to_account(row) if row else None

    def find_account_by_address(self, provider: ProviderKind, email_address: str) -> Optional[Account]:
        row = self._fetchone(
            "SELECT * FROM email_accounts WHERE provider = %s AND lower(email_address) = lower(%s)",
            [ProviderKind(provider).value, email_address],
        )
        return _row_to_account(row) if row else None

    # ------------------------------------------------------------------
    def get_cursor(self, account_id: str, folder: str) -> Optional[FolderCursor]:
        row = self._fetchone(
            """
            SELECT account_id, folder, cursor, in_progress, lock_owner, locked_at, updated_at
            FROM folder_cursors WHERE account_id = %s AND folder = %s
            """,
            [account_id, folder],
        )
        return FolderCursor(**row) if row else None

    def try_lock(
        self, account_id: str, folder: str, owner: str, now: datetime, stale_before: datetime
    ) -> bool:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO folder_cursors (account_id, folder)
                    VALUES (%s, %s)
                    ON CONFLICT (account_id, folder) DO NOTHING
                    """,
                    [account_id, folder],
                )
                cur.execute(
                    """
                    UPDATE folder_cursors
                    SET in_progress = TRUE, lock_owner = %s, locked_at = %s
                    WHERE account_id = %s AND folder = %s
                      AND (in_progress = FALSE OR locked_at IS NULL OR locked_at < %s)
                    """,
                    [owner, now, account_id, folder, stale_before],
                )
                return cur.rowcount == 1

    def refresh_lock(self, account_id: str, folder: str, owner: str, now: datetime) -> bool:
        return self._execute(
            """
            UPDATE folder_cursors SET locked_at = %s
            WHERE account_id = %s AND folder = %s AND in_progress = TRUE AND lock_owner = %s
            """,
            [now, account_id, folder, owner],
        ) == 1

    def release_lock(self, account_id: str, folder: str, owner: str) -> bool:
        return self._execute(
            """
            UPDATE folder_cursors SET in_progress = FALSE, lock_owner = NULL, locked_at = NULL
            WHERE account_id = %s AND folder = %s AND lock_owner = %s
            """,
            [account_id, folder, owner],
        ) == 1

    def set_cursor(self, account_id: str, folder: str, cursor: Optional[str], now: datetime) -> None:
        self._execute(
            """
            INSERT INTO folder_cursors (account_id, folder, cursor, updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (account_id, folder)
            DO UPDATE SET cursor = EXCLUDED.cursor, updated_at = EXCLUDED.updated_at
            """,
            [account_id, folder, cursor, now],
        )

    # ------------------------------------------------------------------
    def insert_index_entries(self, entries: Iterable[MessageIndexEntry]) -> List[str]:
        values = [
            tuple(_adapt(getattr(entry, col)) for col in INDEX_COLUMNS)
            for entry in entries
        ]
        if not values:
            return []
        query = (
            f"INSERT INTO email_index ({', '.join(INDEX_COLUMNS)}) VALUES %s "
            "ON CONFLICT (account_id, message_id) DO NOTHING RETURNING message_id"
        )
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                rows = execute_values(cur, query, values, page_size=len(values), fetch=True)
        return [row["message_id"] for row in rows]

    def get_index_entry(self, account_id: str, message_id: str) -> Optional[MessageIndexEntry]:
        row = self._fetchone(
            "SELECT * FROM email_index WHERE account_id = %s AND message_id = %s",
            [account_id, message_id],
        )
        return _row_to_entry(row) if row else None

    def select_for_learning(
        self,
        account_id: str,
        *,
        include_analyzed: bool,
        since: Optional[datetime],
        limit: int,
    ) -> List[MessageIndexEntry]:
        query = "SELECT * FROM email_index WHERE account_id = %s"
        params: List[Any] = [account_id]
        if not include_analyzed:
            query += " AND analyzed_at IS NULL"
        if since is not None:
            query += " AND COALESCE(sent_at, received_at, created_at) >= %s"
            params.append(since)
        query += " ORDER BY COALESCE(sent_at, received_at, created_at) DESC LIMIT %s"
        params.append(limit)
        return [_row_to_entry(row) for row in self._fetchall(query, params)]

    def count_analyzed(self, account_id: str, since: Optional[datetime]) -> int:
        query = "SELECT COUNT(*) AS count FROM email_index WHERE account_id = %s AND analyzed_at IS NOT NULL"
        params: List[Any] = [account_id]
        if since is not None:
            query += " AND COALESCE(sent_at, received_at, created_at) >= %s"
            params.append(since)
        row = self._fetchone(query, params)
        return int(row["count"]) if row else 0

    def mark_analyzed(self, account_id: str, message_ids: Iterable[str], now: datetime) -> None:
        ids = list(message_ids)
        if not ids:
            return
        self._execute(
            "UPDATE email_index SET analyzed_at = %s WHERE account_id = %s AND message_id = ANY(%s)",
            [now, account_id, ids],
        )

    # ------------------------------------------------------------------
    def get_content(self, account_id: str, message_id: str) -> Optional[MessageBody]:
        row = self._fetchone(
            """
            SELECT account_id, message_id, body_text, body_html, fetched_at
            FROM email_content_cache WHERE account_id = %s AND message_id = %s
            """,
            [account_id, message_id],
        )
        if not row:
            return None
        return MessageBody(
            account_id=row["account_id"],
            message_id=row["message_id"],
            text=row["body_text"],
            html=row["body_html"],
            fetched_at=row["fetched_at"],
        )

    def put_content(self, body: MessageBody) -> bool:
        return self._execute(
            """
            INSERT INTO email_content_cache (account_id, message_id, body_text, body_html, fetched_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (account_id, message_id) DO NOTHING
            """,
            [body.account_id, body.message_id, body.text, body.html, body.fetched_at],
        ) == 1

    # ------------------------------------------------------------------
    def create_job(self, job: LearningJob) -> None:
        values = [_adapt(getattr(job, col)) for col in JOB_COLUMNS]
        self._execute(
            f"INSERT INTO learning_jobs ({', '.join(JOB_COLUMNS)}) "
            f"VALUES ({', '.join(['%s'] * len(JOB_COLUMNS))})",
            values,
        )

    def save_job(self, job: LearningJob) -> None:
        columns = [col for col in JOB_COLUMNS if col != "id"]
        assignments = ", ".join(f"{col} = %s" for col in columns)
        values = [_adapt(getattr(job, col)) for col in columns]
        self._execute(f"UPDATE learning_jobs SET {assignments} WHERE id = %s", values + [job.id])

    def get_job(self, job_id: str) -> Optional[LearningJob]:
        row = self._fetchone("SELECT * FROM learning_jobs WHERE id = %s", [job_id])
        return _row_to_job(row) if row else None

    def find_active_job(self, user_id: str, account_id: str) -> Optional[LearningJob]:
        row = self._fetchone(
            """
            SELECT * FROM learning_jobs
            WHERE user_id = %s AND account_id = %s AND state IN ('queued', 'running')
            ORDER BY created_at DESC LIMIT 1
            """,
            [user_id, account_id],
        )
        return _row_to_job(row) if row else None

    def save_learning_result(
        self, account_id: str, user_id: str, message_id: str, patterns: Dict[str, Any], now: datetime
    ) -> None:
        self._execute(
            """
            INSERT INTO learning_results (account_id, message_id, user_id, patterns, analyzed_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (account_id, message_id)
            DO UPDATE SET patterns = EXCLUDED.patterns, analyzed_at = EXCLUDED.analyzed_at
            """,
            [account_id, message_id, user_id, Json(patterns), now],
        )
