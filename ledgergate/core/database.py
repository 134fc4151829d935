"""
Ledgergate Change Store

Single source of truth for captured Changes and the Changesets that group
them. Every status write is a conditional UPDATE keyed on the expected prior
status; callers treat zero affected rows as a conflict.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from typing import Any, Iterable, List, Optional, Tuple

from ledgergate.core.models import (
    Change,
    ChangeStatus,
    Changeset,
    GatewayStats,
    StatusCounts,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

_CHANGE_ORDER = "ORDER BY created_at ASC, rowid ASC"


class StoreClosedError(RuntimeError):
    pass


class ChangeStore:
    def __init__(self, db_path: str = "ledgergate.db", busy_timeout: float = 10.0):
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._initialized = False
        self._closed = False

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        # Per-connection setting; cascade deletes depend on it
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connect(self):
        if self._closed:
            raise StoreClosedError(f"Change store at {self.db_path} is closed")
        conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    def _table_columns(self, cur, table: str) -> set[str]:
        cur.execute(f"PRAGMA table_info({table})")
        rows = cur.fetchall()
        return {str(row["name"]) for row in rows}

    def _ensure_column(self, cur, table: str, column: str, definition: str) -> None:
        columns = self._table_columns(cur, table)
        if column in columns:
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def initialize(self) -> None:
        if self._initialized:
            return
        if self._closed:
            raise StoreClosedError(f"Change store at {self.db_path} is closed")
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS changesets (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    resolved_at TEXT,
                    resolved_by TEXT,
                    claim_token TEXT,
                    claimed_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS pending_changes (
                    id TEXT PRIMARY KEY,
                    changeset_id TEXT NOT NULL,
                    method TEXT NOT NULL,
                    path TEXT NOT NULL,
                    original_url TEXT NOT NULL,
                    headers TEXT NOT NULL,
                    body TEXT,
                    query TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    created_at TEXT NOT NULL,
                    resolved_at TEXT,
                    resolved_by TEXT,
                    response TEXT,
                    error TEXT,
                    claim_token TEXT,
                    claimed_at TEXT,
                    FOREIGN KEY (changeset_id) REFERENCES changesets(id) ON DELETE CASCADE
                )
            """)

            # Databases created before execution claims existed
            for table in ("changesets", "pending_changes"):
                self._ensure_column(cur, table, "claim_token", "TEXT")
                self._ensure_column(cur, table, "claimed_at", "TEXT")

            cur.execute("CREATE INDEX IF NOT EXISTS idx_status ON pending_changes(status)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_created_at ON pending_changes(created_at)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_changeset_id ON pending_changes(changeset_id)")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_changeset_status ON changesets(status)")
            conn.commit()

        self._initialized = True
        logger.info("Change store initialized at %s", self.db_path)

    def close(self) -> None:
        self._initialized = False
        self._closed = True
        logger.info("Change store at %s closed", self.db_path)

    # ------------------------------------------------------------------
    # Changesets
    # ------------------------------------------------------------------

    @staticmethod
    def _insert_changeset(cur, changeset: Changeset) -> None:
        cur.execute(
            """
            INSERT INTO changesets
            (id, name, description, status, created_at, resolved_at, resolved_by)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                changeset.id,
                changeset.name,
                changeset.description,
                changeset.status.value,
                changeset.created_at,
                changeset.resolved_at,
                changeset.resolved_by,
            ),
        )

    def create_changeset(self, changeset: Changeset) -> Changeset:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            self._insert_changeset(cur, changeset)
            conn.commit()
        return changeset

    def get_changeset(self, changeset_id: str) -> Optional[Changeset]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM changesets WHERE id = ?", (changeset_id,))
            row = cur.fetchone()
        return Changeset.from_row(dict(row)) if row else None

    def list_changesets(self, status: Optional[ChangeStatus] = None) -> List[Changeset]:
        self.initialize()
        sql = """
            SELECT c.*, COUNT(pc.id) AS changes_count
            FROM changesets c
            LEFT JOIN pending_changes pc ON c.id = pc.changeset_id
        """
        params: Tuple[Any, ...] = ()
        if status:
            sql += " WHERE c.status = ?"
            params = (ChangeStatus(status).value,)
        sql += " GROUP BY c.id ORDER BY c.created_at DESC"
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, params)
            rows = cur.fetchall()
        return [Changeset.from_row(dict(row)) for row in rows]

    def get_changeset_with_changes(self, changeset_id: str) -> Optional[Tuple[Changeset, List[Change]]]:
        """Changeset and its members in creation order, read on one connection."""
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM changesets WHERE id = ?", (changeset_id,))
            row = cur.fetchone()
            if not row:
                return None
            cur.execute(
                f"SELECT * FROM pending_changes WHERE changeset_id = ? {_CHANGE_ORDER}",
                (changeset_id,),
            )
            change_rows = cur.fetchall()
        changes = [Change.from_row(dict(r)) for r in change_rows]
        changeset = Changeset.from_row(dict(row))
        changeset.changes_count = len(changes)
        return changeset, changes

    def claim_changeset(self, changeset_id: str) -> Optional[str]:
        """Take the exclusive right to resolve a pending changeset."""
        self.initialize()
        token = uuid.uuid4().hex
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE changesets SET claim_token = ?, claimed_at = ?
                WHERE id = ? AND status = 'pending' AND claim_token IS NULL
                """,
                (token, utcnow_iso(), changeset_id),
            )
            conn.commit()
            return token if cur.rowcount == 1 else None

    def release_changeset_claim(self, changeset_id: str, claim_token: str) -> bool:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE changesets SET claim_token = NULL, claimed_at = NULL
                WHERE id = ? AND status = 'pending' AND claim_token = ?
                """,
                (changeset_id, claim_token),
            )
            conn.commit()
            return cur.rowcount == 1

    def resolve_changeset(
        self,
        changeset_id: str,
        status: ChangeStatus,
        resolved_by: str,
        claim_token: Optional[str] = None,
    ) -> bool:
        """pending -> approved/rejected. False when the changeset was not pending (or not ours)."""
        self.initialize()
        status = ChangeStatus(status)
        if status == ChangeStatus.PENDING:
            raise ValueError("A changeset cannot be resolved back to pending")
        claim_clause = "claim_token = ?" if claim_token else "claim_token IS NULL"
        params: Tuple[Any, ...] = (status.value, utcnow_iso(), resolved_by, changeset_id)
        if claim_token:
            params += (claim_token,)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                UPDATE changesets SET status = ?, resolved_at = ?, resolved_by = ?, claim_token = NULL, claimed_at = NULL
                WHERE id = ? AND status = 'pending' AND {claim_clause}
                """,
                params,
            )
            conn.commit()
            return cur.rowcount == 1

    def settle_changeset(self, changeset_id: str, resolved_by: str) -> Optional[ChangeStatus]:
        """
        Resolve a pending, unclaimed changeset whose members are all resolved.

        approved when every member is approved, rejected otherwise. Returns the
        new status, or None when the changeset still has pending members.
        """
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE changesets
                SET status = CASE
                        WHEN EXISTS (
                            SELECT 1 FROM pending_changes pc
                            WHERE pc.changeset_id = changesets.id AND pc.status = 'rejected'
                        ) THEN 'rejected'
                        ELSE 'approved'
                    END,
                    resolved_at = ?,
                    resolved_by = ?
                WHERE id = ?
                  AND status = 'pending'
                  AND claim_token IS NULL
                  AND EXISTS (SELECT 1 FROM pending_changes pc WHERE pc.changeset_id = changesets.id)
                  AND NOT EXISTS (
                      SELECT 1 FROM pending_changes pc
                      WHERE pc.changeset_id = changesets.id AND pc.status = 'pending'
                  )
                """,
                (utcnow_iso(), resolved_by, changeset_id),
            )
            if cur.rowcount != 1:
                conn.commit()
                return None
            cur.execute("SELECT status FROM changesets WHERE id = ?", (changeset_id,))
            row = cur.fetchone()
            conn.commit()
        return ChangeStatus(row["status"])

    def delete_changeset(self, changeset_id: str) -> bool:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            # Members go with it through ON DELETE CASCADE
            cur.execute("DELETE FROM changesets WHERE id = ?", (changeset_id,))
            conn.commit()
            return cur.rowcount > 0

    def delete_changesets(self, status: Optional[ChangeStatus] = None) -> int:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            if status:
                cur.execute("DELETE FROM changesets WHERE status = ?", (ChangeStatus(status).value,))
            else:
                cur.execute("DELETE FROM changesets")
            conn.commit()
            return cur.rowcount

    # ------------------------------------------------------------------
    # Changes
    # ------------------------------------------------------------------

    def create_change(self, change: Change, new_changeset: Optional[Changeset] = None) -> bool:
        """
        Persist a pending change, optionally with the changeset that will own it.

        Both rows are written in one transaction. Without new_changeset the
        target changeset must exist, be pending and not mid-resolution;
        returns False (nothing written) otherwise.
        """
        self.initialize()
        if new_changeset is not None and new_changeset.id != change.changeset_id:
            raise ValueError("change.changeset_id must reference the new changeset")
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
                if new_changeset is not None:
                    self._insert_changeset(cur, new_changeset)
                else:
                    cur.execute(
                        "SELECT 1 FROM changesets WHERE id = ? AND status = 'pending' AND claim_token IS NULL",
                        (change.changeset_id,),
                    )
                    if cur.fetchone() is None:
                        conn.rollback()
                        return False
                cur.execute(
                    """
                    INSERT INTO pending_changes
                    (id, changeset_id, method, path, original_url, headers, body, query,
                     status, created_at, resolved_at, resolved_by, response, error)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        change.id,
                        change.changeset_id,
                        change.method,
                        change.path,
                        change.original_url,
                        json.dumps(change.headers),
                        change.body,
                        json.dumps(change.query),
                        change.status.value,
                        change.created_at,
                        change.resolved_at,
                        change.resolved_by,
                        change.response,
                        change.error,
                    ),
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return True

    def get_change(self, change_id: str) -> Optional[Change]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT * FROM pending_changes WHERE id = ?", (change_id,))
            row = cur.fetchone()
        return Change.from_row(dict(row)) if row else None

    def list_changes(
        self,
        status: Optional[ChangeStatus] = None,
        changeset_id: Optional[str] = None,
    ) -> List[Change]:
        self.initialize()
        sql = "SELECT * FROM pending_changes"
        conditions: List[str] = []
        params: List[Any] = []
        if status:
            conditions.append("status = ?")
            params.append(ChangeStatus(status).value)
        if changeset_id is not None:
            conditions.append("changeset_id = ?")
            params.append(changeset_id)
        if conditions:
            sql += " WHERE " + " AND ".join(conditions)
        sql += " ORDER BY created_at DESC, rowid DESC"
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(sql, tuple(params))
            rows = cur.fetchall()
        return [Change.from_row(dict(row)) for row in rows]

    def claim_change(self, change_id: str) -> Optional[str]:
        """
        Compare-and-set claim on a pending change.

        Returns a claim token when this caller won, None when the change is no
        longer pending or another caller already holds the claim. Status stays
        pending while claimed.
        """
        self.initialize()
        token = uuid.uuid4().hex
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE pending_changes SET claim_token = ?, claimed_at = ?
                WHERE id = ? AND status = 'pending' AND claim_token IS NULL
                """,
                (token, utcnow_iso(), change_id),
            )
            conn.commit()
            return token if cur.rowcount == 1 else None

    def release_change_claim(self, change_id: str, claim_token: str) -> bool:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                """
                UPDATE pending_changes SET claim_token = NULL, claimed_at = NULL
                WHERE id = ? AND status = 'pending' AND claim_token = ?
                """,
                (change_id, claim_token),
            )
            conn.commit()
            return cur.rowcount == 1

    def resolve_change(
        self,
        change_id: str,
        status: ChangeStatus,
        resolved_by: str,
        response: Optional[str] = None,
        error: Optional[str] = None,
        claim_token: Optional[str] = None,
    ) -> bool:
        """
        pending -> approved/rejected in one conditional UPDATE.

        With claim_token only the claim holder can resolve; without it only an
        unclaimed change can be. False means nothing was written.
        """
        self.initialize()
        status = ChangeStatus(status)
        if status == ChangeStatus.PENDING:
            raise ValueError("A change cannot be resolved back to pending")
        if response is not None and error is not None:
            raise ValueError("response and error are mutually exclusive")
        claim_clause = "claim_token = ?" if claim_token else "claim_token IS NULL"
        params: Tuple[Any, ...] = (status.value, utcnow_iso(), resolved_by, response, error, change_id)
        if claim_token:
            params += (claim_token,)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                UPDATE pending_changes
                SET status = ?, resolved_at = ?, resolved_by = ?, response = ?, error = ?,
                    claim_token = NULL, claimed_at = NULL
                WHERE id = ? AND status = 'pending' AND {claim_clause}
                """,
                params,
            )
            conn.commit()
            return cur.rowcount == 1

    def move_changes(self, change_ids: Iterable[str], changeset_id: str) -> int:
        """Reassign pending changes to another pending changeset."""
        self.initialize()
        ids = list(change_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(
                f"""
                UPDATE pending_changes SET changeset_id = ?
                WHERE id IN ({placeholders})
                  AND status = 'pending'
                  AND claim_token IS NULL
                  AND changeset_id NOT IN (SELECT id FROM changesets WHERE claim_token IS NOT NULL)
                  AND EXISTS (
                      SELECT 1 FROM changesets
                      WHERE id = ? AND status = 'pending' AND claim_token IS NULL
                  )
                """,
                (changeset_id, *ids, changeset_id),
            )
            conn.commit()
            return cur.rowcount

    def delete_change(self, change_id: str) -> bool:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("DELETE FROM pending_changes WHERE id = ?", (change_id,))
            conn.commit()
            return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    @staticmethod
    def _counts(rows) -> StatusCounts:
        counts = StatusCounts()
        for row in rows:
            status = str(row["status"])
            if status in (s.value for s in ChangeStatus):
                setattr(counts, status, int(row["n"]))
        return counts

    def get_stats(self) -> GatewayStats:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute("SELECT status, COUNT(*) AS n FROM pending_changes GROUP BY status")
            change_rows = cur.fetchall()
            cur.execute("SELECT status, COUNT(*) AS n FROM changesets GROUP BY status")
            changeset_rows = cur.fetchall()
        return GatewayStats(changes=self._counts(change_rows), changesets=self._counts(changeset_rows))
