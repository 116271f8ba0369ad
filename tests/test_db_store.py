from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from hairstyle_lab.db.repo.interfaces import GenerationAttempt, StoreUnavailableError, Strategy
from hairstyle_lab.db.repo.sqlite import SQLiteStore

from fakes import make_attempt, make_strategy


def test_schema_created_with_indexes(store: SQLiteStore) -> None:
    conn = sqlite3.connect(store.db_path)
    try:
        tables = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert {"strategies", "attempts", "evolution_state"}.issubset(tables)
        index_names = {row[1] for row in conn.execute("PRAGMA index_list('attempts')")}
        assert "idx_attempts_session_id" in index_names
        assert conn.execute("SELECT last_cycle FROM evolution_state WHERE id=1").fetchone() == (0,)
    finally:
        conn.close()


def test_migrations_are_idempotent(tmp_path: Path) -> None:
    SQLiteStore(tmp_path / "lab.sqlite")
    again = SQLiteStore(tmp_path / "lab.sqlite")
    assert again.get_evolution_cycle() == 0


def test_strategies_roundtrip_sorted_by_score(store: SQLiteStore) -> None:
    store.insert_strategies(
        [
            make_strategy("low", score=0.2),
            make_strategy("high", score=0.9, genes={"role": "editor"}),
            make_strategy("off", score=1.5, is_active=False),
        ]
    )

    active = store.select_strategies(active=True)
    assert [s.id for s in active] == ["high", "low"]
    assert active[0].genes == {"role": "editor"}
    assert [s.id for s in store.select_strategies()] == ["off", "high", "low"]
    assert [s.id for s in store.select_strategies(ids=["low"])] == ["low"]
    assert store.select_strategies(ids=[]) == []
    assert store.count_strategies() == 3


def test_attempt_roundtrip_keeps_failures(store: SQLiteStore) -> None:
    strategy = make_strategy("s1")
    ok = make_attempt("sess", strategy)
    failed = make_attempt("sess", strategy, failed=True)
    store.insert_attempt(ok)
    store.insert_attempt(failed)

    loaded = store.select_attempts("sess")
    assert [a.id for a in loaded] == [ok.id, failed.id]
    assert loaded[0].evaluation_passed is True
    assert loaded[0].evaluation_details == {"overallSimilarity": 0.4}
    assert loaded[1].output_image_ref is None
    assert loaded[1].error_message == "No image returned"
    assert loaded[1].evaluation_passed is None
    assert store.count_attempts() == 2


def test_mark_selected_keeps_one_selection_per_session(store: SQLiteStore) -> None:
    s1, s2 = make_strategy("s1"), make_strategy("s2")
    first = make_attempt("sess", s1)
    second = make_attempt("sess", s2)
    other = make_attempt("other", s1)
    for attempt in (first, second, other):
        store.insert_attempt(attempt)

    for attempt in (first, other, second):
        _select(store, attempt)

    selected = {a.id for a in store.select_attempts("sess") if a.user_selected}
    assert selected == {second.id}
    assert [a.user_selected for a in store.select_attempts("other")] == [True]


def test_selection_outcome_rolls_back_when_attempt_missing(store: SQLiteStore) -> None:
    store.insert_strategies([make_strategy("s1"), make_strategy("s2")])

    with pytest.raises(KeyError):
        store.apply_selection_outcome(
            attempt_id="missing",
            winner_strategy_id="s1",
            loser_strategy_ids=["s2"],
            win_step=0.05,
            loss_step=0.05,
        )

    scores = {s.id: (s.score, s.usage_count) for s in store.select_strategies()}
    assert scores == {"s1": (0.5, 0), "s2": (0.5, 0)}


def test_apply_evolution_is_compare_and_set(store: SQLiteStore) -> None:
    store.insert_strategies([make_strategy("a"), make_strategy("b", score=0.1)])

    applied = store.apply_evolution(
        expected_cycle=0,
        new_cycle=1,
        retire_ids=["b"],
        replacements=[make_strategy("c")],
    )
    stale = store.apply_evolution(
        expected_cycle=0,
        new_cycle=1,
        retire_ids=["a"],
        replacements=[make_strategy("d")],
    )

    assert applied is True
    assert stale is False
    assert store.get_evolution_cycle() == 1
    assert sorted(s.id for s in store.select_strategies(active=True)) == ["a", "c"]
    assert store.count_strategies() == 3


def test_closed_store_reports_unavailable(store: SQLiteStore) -> None:
    store.close()
    with pytest.raises(StoreUnavailableError):
        store.count_attempts()


def test_attempt_record_rejects_inconsistent_fields() -> None:
    with pytest.raises(ValueError):
        GenerationAttempt(
            session_id="s",
            strategy_id="x",
            strategy_name="x",
            reference_image_ref="ref",
            output_image_ref="out.png",
            error_message="boom",
        )
    with pytest.raises(ValueError):
        GenerationAttempt(
            session_id="s",
            strategy_id="x",
            strategy_name="x",
            reference_image_ref="ref",
            error_message="boom",
            evaluation_passed=True,
        )


def test_strategy_validation_rejects_empty_template() -> None:
    with pytest.raises(ValueError):
        Strategy(id="x", name="x", instruction_template="  ")


def test_corrupt_strategy_row_reports_unavailable(store: SQLiteStore) -> None:
    store.insert_strategies([make_strategy("ok")])
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute("UPDATE strategies SET genes_json='{bad' WHERE id='ok'")
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(StoreUnavailableError, match="corrupt strategy row"):
        store.select_strategies(active=True)


def test_corrupt_attempt_row_reports_unavailable(store: SQLiteStore) -> None:
    attempt = make_attempt("sess", make_strategy("s1"))
    store.insert_attempt(attempt)
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute("UPDATE attempts SET evaluation_details_json='[1,' WHERE id=?", (attempt.id,))
        conn.commit()
    finally:
        conn.close()

    with pytest.raises(StoreUnavailableError, match="corrupt attempt row"):
        store.select_attempts("sess")


def _select(store: SQLiteStore, attempt: GenerationAttempt) -> None:
    store.apply_selection_outcome(
        attempt_id=attempt.id,
        winner_strategy_id=attempt.strategy_id,
        loser_strategy_ids=[],
        win_step=0.05,
        loss_step=0.05,
    )
