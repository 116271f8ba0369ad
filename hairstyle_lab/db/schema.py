from __future__ import annotations

import sqlite3
from typing import Iterable


MIGRATIONS: list[Iterable[str]] = [
    (
        """
        CREATE TABLE IF NOT EXISTS strategies (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            model TEXT NOT NULL,
            instruction_template TEXT NOT NULL,
            score REAL NOT NULL DEFAULT 0.5,
            usage_count INTEGER NOT NULL DEFAULT 0,
            win_count INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            origin TEXT NOT NULL DEFAULT 'seed',
            genes_json TEXT,
            reference_description TEXT,
            created_for_session TEXT,
            created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS attempts (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL,
            strategy_id TEXT NOT NULL,
            strategy_name TEXT NOT NULL,
            reference_image_ref TEXT NOT NULL,
            output_image_ref TEXT,
            evaluation_passed INTEGER,
            evaluation_confidence REAL,
            evaluation_details_json TEXT,
            user_selected INTEGER NOT NULL DEFAULT 0,
            generation_time_ms INTEGER NOT NULL DEFAULT 0,
            error_message TEXT,
            created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS evolution_state (
            id INTEGER PRIMARY KEY CHECK (id = 1),
            last_cycle INTEGER NOT NULL DEFAULT 0,
            evolved_at INTEGER
        )
        """,
        """
        INSERT OR IGNORE INTO evolution_state(id, last_cycle) VALUES (1, 0)
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_attempts_session_id ON attempts(session_id)
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_strategies_active_score ON strategies(is_active, score)
        """,
    ),
]


def apply_migrations(conn: sqlite3.Connection) -> None:
    """Apply the static set of DDL statements to the provided connection."""

    cursor = conn.cursor()
    for migration in MIGRATIONS:
        for statement in migration:
            cursor.execute(statement)
    conn.commit()
