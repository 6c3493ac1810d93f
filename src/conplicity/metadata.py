from __future__ import annotations

from pathlib import Path
import sqlite3
from typing import Any

from .models import OperationResult


class OperationHistoryStore:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                CREATE TABLE IF NOT EXISTS operation_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    volume_name TEXT NOT NULL,
                    engine TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message TEXT,
                    started_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
                """
            )
            connection.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_operation_history_lookup
                ON operation_history(volume_name, operation, status, created_at)
                """
            )
            connection.commit()

    def record_result(self, result: OperationResult, *, engine: str) -> None:
        with sqlite3.connect(self.db_path) as connection:
            connection.execute(
                """
                INSERT INTO operation_history (
                    volume_name,
                    engine,
                    operation,
                    status,
                    message,
                    started_at,
                    created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.volume_name,
                    engine,
                    result.operation,
                    result.status,
                    result.message,
                    result.started_at,
                    result.finished_at,
                ),
            )
            connection.commit()

    def get_last_success(self, volume_name: str, operation: str) -> str | None:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT created_at
                FROM operation_history
                WHERE volume_name = ? AND operation = ? AND status = 'success'
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (volume_name, operation),
            )
            row = cursor.fetchone()

        return str(row[0]) if row else None

    def get_last_success_map(self, operation: str = "backup") -> dict[str, str]:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT volume_name, MAX(created_at)
                FROM operation_history
                WHERE operation = ? AND status = 'success'
                GROUP BY volume_name
                """,
                (operation,),
            )
            rows = cursor.fetchall()

        return {volume_name: last_success for volume_name, last_success in rows}

    def get_recent_results(self, limit: int = 50) -> list[dict[str, Any]]:
        if limit <= 0:
            return []

        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute(
                """
                SELECT volume_name, engine, operation, status, message, created_at
                FROM operation_history
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (limit,),
            )
            rows = cursor.fetchall()

        return [
            {
                "volume_name": row[0],
                "engine": row[1],
                "operation": row[2],
                "status": row[3],
                "message": row[4],
                "created_at": row[5],
            }
            for row in rows
        ]

    def count_results(self) -> int:
        with sqlite3.connect(self.db_path) as connection:
            cursor = connection.execute("SELECT COUNT(*) FROM operation_history")
            row = cursor.fetchone()

        return int(row[0]) if row else 0
