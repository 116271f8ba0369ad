from __future__ import annotations

import json
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, MutableMapping, Sequence, TypeVar

from ..schema import apply_migrations
from .interfaces import (
    GenerationAttempt,
    StoreProtocol,
    StoreUnavailableError,
    Strategy,
)

T = TypeVar("T")

_STRATEGY_COLUMNS = (
    "id, name, model, instruction_template, score, usage_count, win_count, is_active, "
    "origin, genes_json, reference_description, created_for_session, created_at"
)
_ATTEMPT_COLUMNS = (
    "id, session_id, strategy_id, strategy_name, reference_image_ref, output_image_ref, "
    "evaluation_passed, evaluation_confidence, evaluation_details_json, user_selected, "
    "generation_time_ms, error_message, created_at"
)


def _json_dumps(payload: Mapping[str, Any] | Sequence[Any] | None) -> str | None:
    if payload is None:
        return None
    if isinstance(payload, MutableMapping):
        payload = dict(payload)
    return json.dumps(payload, ensure_ascii=False)


def _json_loads(raw: str | None) -> Any:
    if raw is None:
        return None
    return json.loads(raw)


def _strategy_from_row(row: Sequence[Any]) -> Strategy:
    return Strategy(
        id=row[0],
        name=row[1],
        model=row[2],
        instruction_template=row[3],
        score=float(row[4]),
        usage_count=int(row[5]),
        win_count=int(row[6]),
        is_active=bool(row[7]),
        origin=row[8],
        genes=_json_loads(row[9]),
        reference_description=row[10],
        created_for_session=row[11],
        created_at=row[12],
    )


def _attempt_from_row(row: Sequence[Any]) -> GenerationAttempt:
    return GenerationAttempt(
        id=row[0],
        session_id=row[1],
        strategy_id=row[2],
        strategy_name=row[3],
        reference_image_ref=row[4],
        output_image_ref=row[5],
        evaluation_passed=None if row[6] is None else bool(row[6]),
        evaluation_confidence=row[7],
        evaluation_details=_json_loads(row[8]),
        user_selected=bool(row[9]),
        generation_time_ms=int(row[10]),
        error_message=row[11],
        created_at=row[12],
    )


def _decode_rows(rows: Sequence[Sequence[Any]], decode: Callable[[Sequence[Any]], T], kind: str) -> list[T]:
    # rows edited outside the store surface as an unusable store, not a crash
    decoded: list[T] = []
    for row in rows:
        try:
            decoded.append(decode(row))
        except (ValueError, TypeError) as exc:
            raise StoreUnavailableError(f"corrupt {kind} row {row[0]!r}: {exc}") from exc
    return decoded


@dataclass
class SQLiteStore(StoreProtocol):
    """Store that persists strategies, attempts and evolution state in SQLite."""

    db_path: Path
    timeout_s: float = 5.0
    _closed: bool = field(init=False, default=False, repr=False)

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout_s)
            try:
                apply_migrations(conn)
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"cannot open store at {self.db_path}: {exc}") from exc

    def _connect(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreUnavailableError("store is closed")
        try:
            # explicit BEGIN IMMEDIATE in transaction(); reads run in autocommit
            return sqlite3.connect(self.db_path, timeout=self.timeout_s, isolation_level=None)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"cannot connect to {self.db_path}: {exc}") from exc

    @contextmanager
    def reader(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreUnavailableError(str(exc)) from exc
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.rollback()
            raise StoreUnavailableError(str(exc)) from exc
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def close(self) -> None:
        self._closed = True

    # ------------------------------------------------------------------
    # Strategies
    def insert_strategies(self, records: Iterable[Strategy]) -> list[str]:
        records = list(records)
        with self.transaction() as conn:
            _insert_strategies(conn, records)
        return [record.id for record in records]

    def select_strategies(
        self,
        *,
        active: bool | None = None,
        ids: Sequence[str] | None = None,
    ) -> list[Strategy]:
        clauses: list[str] = []
        params: list[Any] = []
        if active is not None:
            clauses.append("is_active=?")
            params.append(1 if active else 0)
        if ids is not None:
            if not ids:
                return []
            clauses.append(f"id IN ({','.join('?' for _ in ids)})")
            params.extend(ids)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        query = (
            f"SELECT {_STRATEGY_COLUMNS} FROM strategies{where} "
            "ORDER BY score DESC, created_at ASC, id ASC"
        )
        with self.reader() as conn:
            rows = conn.execute(query, params).fetchall()
        return _decode_rows(rows, _strategy_from_row, "strategy")

    def count_strategies(self) -> int:
        with self.reader() as conn:
            row = conn.execute("SELECT COUNT(*) FROM strategies").fetchone()
        return int(row[0]) if row else 0

    # ------------------------------------------------------------------
    # Attempts
    def insert_attempt(self, record: GenerationAttempt) -> str:
        created_at = int(record.created_at or time.time())
        passed = None if record.evaluation_passed is None else int(record.evaluation_passed)
        with self.transaction() as conn:
            conn.execute(
                f"INSERT INTO attempts({_ATTEMPT_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    record.id,
                    record.session_id,
                    record.strategy_id,
                    record.strategy_name,
                    record.reference_image_ref,
                    record.output_image_ref,
                    passed,
                    record.evaluation_confidence,
                    _json_dumps(record.evaluation_details),
                    int(record.user_selected),
                    int(record.generation_time_ms),
                    record.error_message,
                    created_at,
                ),
            )
        return record.id

    def select_attempts(self, session_id: str) -> list[GenerationAttempt]:
        with self.reader() as conn:
            rows = conn.execute(
                f"SELECT {_ATTEMPT_COLUMNS} FROM attempts WHERE session_id=? "
                "ORDER BY created_at ASC, rowid ASC",
                (session_id,),
            ).fetchall()
        return _decode_rows(rows, _attempt_from_row, "attempt")

    def count_attempts(self) -> int:
        with self.reader() as conn:
            row = conn.execute("SELECT COUNT(*) FROM attempts").fetchone()
        return int(row[0]) if row else 0

    def apply_selection_outcome(
        self,
        *,
        attempt_id: str,
        winner_strategy_id: str,
        loser_strategy_ids: Sequence[str],
        win_step: float,
        loss_step: float,
    ) -> None:
        losers = [sid for sid in dict.fromkeys(loser_strategy_ids) if sid != winner_strategy_id]
        with self.transaction() as conn:
            if not _mark_selected(conn, attempt_id):
                raise KeyError(attempt_id)
            conn.execute(
                "UPDATE strategies SET score = score + ?, win_count = win_count + 1, "
                "usage_count = usage_count + 1 WHERE id=?",
                (float(win_step), winner_strategy_id),
            )
            if losers:
                conn.execute(
                    "UPDATE strategies SET score = score - ?, usage_count = usage_count + 1 "
                    f"WHERE id IN ({','.join('?' for _ in losers)})",
                    (float(loss_step), *losers),
                )

    # ------------------------------------------------------------------
    # Evolution
    def get_evolution_cycle(self) -> int:
        with self.reader() as conn:
            row = conn.execute("SELECT last_cycle FROM evolution_state WHERE id=1").fetchone()
        return int(row[0]) if row else 0

    def apply_evolution(
        self,
        *,
        expected_cycle: int,
        new_cycle: int,
        retire_ids: Sequence[str],
        replacements: Sequence[Strategy],
    ) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE evolution_state SET last_cycle=?, evolved_at=? WHERE id=1 AND last_cycle=?",
                (int(new_cycle), int(time.time()), int(expected_cycle)),
            )
            if cursor.rowcount != 1:
                return False
            if retire_ids:
                conn.execute(
                    "UPDATE strategies SET is_active=0 "
                    f"WHERE id IN ({','.join('?' for _ in retire_ids)})",
                    tuple(retire_ids),
                )
            _insert_strategies(conn, replacements)
        return True


def _insert_strategies(conn: sqlite3.Connection, records: Sequence[Strategy]) -> None:
    now = int(time.time())
    conn.executemany(
        f"INSERT INTO strategies({_STRATEGY_COLUMNS}) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)",
        [
            (
                record.id,
                record.name,
                record.model,
                record.instruction_template,
                float(record.score),
                int(record.usage_count),
                int(record.win_count),
                int(record.is_active),
                record.origin,
                _json_dumps(record.genes),
                record.reference_description,
                record.created_for_session,
                int(record.created_at or now),
            )
            for record in records
        ],
    )


def _mark_selected(conn: sqlite3.Connection, attempt_id: str) -> bool:
    row = conn.execute("SELECT session_id FROM attempts WHERE id=?", (attempt_id,)).fetchone()
    if row is None:
        return False
    conn.execute(
        "UPDATE attempts SET user_selected = CASE WHEN id=? THEN 1 ELSE 0 END WHERE session_id=?",
        (attempt_id, row[0]),
    )
    return True
