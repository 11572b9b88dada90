from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Any

from .models import EVENT_BOUND, BindingEvent


class BindingHistoryStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS binding_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event TEXT NOT NULL,
                    claim_name TEXT NOT NULL,
                    volume_name TEXT,
                    workload TEXT,
                    mount_path TEXT,
                    message TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_binding_history_claim
                ON binding_history(claim_name, event, created_at)
                """
            )
            connection.commit()

    def record_event(self, event: BindingEvent) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO binding_history (
                    event,
                    claim_name,
                    volume_name,
                    workload,
                    mount_path,
                    message,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.event,
                    event.claim_name,
                    event.volume_name,
                    event.workload,
                    event.path,
                    event.message,
                    event.created_at,
                ),
            )
            connection.commit()

    def get_current_bindings(self) -> dict[str, str]:
        """Claim name to volume name for claims whose latest binding event is ``bound``."""
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT current.claim_name, current.volume_name, current.event
                FROM binding_history AS current
                WHERE current.workload IS NULL
                  AND current.id = (
                    SELECT candidate.id
                    FROM binding_history AS candidate
                    WHERE candidate.claim_name = current.claim_name
                      AND candidate.workload IS NULL
                    ORDER BY candidate.created_at DESC, candidate.id DESC
                    LIMIT 1
                  )
                """
            )
            rows = cursor.fetchall()

        return {claim_name: volume_name for claim_name, volume_name, event in rows if event == EVENT_BOUND}

    def get_recent_events(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT event, claim_name, volume_name, workload, mount_path, message, created_at
                FROM binding_history
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [
            {
                "event": row[0],
                "claim_name": row[1],
                "volume_name": row[2],
                "workload": row[3],
                "mount_path": row[4],
                "message": row[5],
                "created_at": row[6],
            }
            for row in rows
        ]

    def count_events(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT COUNT(*) FROM binding_history")
            row = cursor.fetchone()

        return int(row[0]) if row else 0

    def prune(self, keep_latest: int) -> int:
        if keep_latest < 0:
            raise ValueError("keep_latest must be >= 0")

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                DELETE FROM binding_history
                WHERE id IN (
                    SELECT id
                    FROM binding_history
                    ORDER BY created_at DESC, id DESC
                    LIMIT -1 OFFSET ?
                )
                """,
                (keep_latest,),
            )
            connection.commit()
            return cursor.rowcount
