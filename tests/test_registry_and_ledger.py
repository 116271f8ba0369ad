from __future__ import annotations

import sqlite3

import pytest

from hairstyle_lab.db.repo.interfaces import StoreUnavailableError
from hairstyle_lab.db.repo.sqlite import SQLiteStore
from hairstyle_lab.learning.ledger import AttemptLedger
from hairstyle_lab.strategies.registry import StrategyRegistry, UnknownStrategyError
from hairstyle_lab.strategies.templates import SEED_TEMPLATES

from fakes import BrokenStore, make_attempt, make_strategy

SEED_NAMES = [name for name, _ in SEED_TEMPLATES]


@pytest.mark.parametrize("backend", [None, BrokenStore()])
def test_unreachable_registry_returns_default_set(backend) -> None:
    registry = StrategyRegistry(store=backend)

    active = registry.get_active()

    assert [s.name for s in active] == SEED_NAMES
    assert all(s.score == 0.5 and s.is_active for s in active)
    assert [s.id for s in active] == ["default-1", "default-2", "default-3", "default-4"]


@pytest.mark.parametrize(
    "corruption",
    [
        "INSERT INTO strategies(id, name, model, instruction_template, origin) "
        "VALUES('hand', 'Hand', 'm', 'edit {reference}', 'manual')",
        "UPDATE strategies SET genes_json='{bad' WHERE id='default-2'",
        "UPDATE strategies SET instruction_template='' WHERE id='default-3'",
    ],
)
def test_corrupt_strategy_row_falls_back_to_default_set(store: SQLiteStore, corruption: str) -> None:
    registry = StrategyRegistry(store=store)
    registry.bootstrap_defaults()
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute(corruption)
        conn.commit()
    finally:
        conn.close()

    active = registry.get_active()

    assert [s.id for s in active] == ["default-1", "default-2", "default-3", "default-4"]
    assert [s.name for s in active] == SEED_NAMES


def test_bootstrap_seeds_empty_store_once(store: SQLiteStore) -> None:
    registry = StrategyRegistry(store=store)

    first = registry.get_active()
    registry.bootstrap_defaults()

    assert sorted(s.name for s in first) == sorted(SEED_NAMES)
    assert store.count_strategies() == 4


def test_get_active_orders_by_descending_score(store: SQLiteStore) -> None:
    store.insert_strategies([make_strategy("a", score=0.3), make_strategy("b", score=0.7), make_strategy("c", score=0.5)])

    assert [s.id for s in StrategyRegistry(store=store).get_active()] == ["b", "c", "a"]


def test_get_by_ids_keeps_requested_order(store: SQLiteStore) -> None:
    store.insert_strategies([make_strategy("a", score=0.9), make_strategy("b", score=0.1)])
    registry = StrategyRegistry(store=store)

    assert [s.id for s in registry.get_by_ids(["b", "a", "b"])] == ["b", "a"]
    with pytest.raises(UnknownStrategyError) as excinfo:
        registry.get_by_ids(["a", "nope"])
    assert excinfo.value.missing == ["nope"]


def test_get_by_ids_degrades_to_defaults_when_store_down() -> None:
    strategies = StrategyRegistry(store=BrokenStore()).get_by_ids(["a"])
    assert [s.name for s in strategies] == SEED_NAMES


def test_create_batch_resets_scores_and_counters(store: SQLiteStore) -> None:
    registry = StrategyRegistry(store=store)
    ids = registry.create_batch(
        [make_strategy("x", score=0.9, usage_count=3, win_count=2, is_active=False, origin="dynamic")]
    )

    assert ids == ["x"]
    (created,) = store.select_strategies(ids=ids)
    assert (created.score, created.usage_count, created.win_count, created.is_active) == (0.5, 0, 0, True)
    assert created.origin == "dynamic"


def test_ledger_append_fails_soft() -> None:
    attempt = make_attempt("sess", make_strategy("s1"))

    assert AttemptLedger(store=None).append(attempt) is None
    assert AttemptLedger(store=BrokenStore()).append(attempt) is None
    with pytest.raises(StoreUnavailableError):
        AttemptLedger(store=BrokenStore()).mark_selected(
            attempt.id, winner_strategy_id="s1", loser_strategy_ids=[], win_step=0.05, loss_step=0.05
        )


def test_ledger_lists_session_attempts(store: SQLiteStore) -> None:
    ledger = AttemptLedger(store=store)
    strategy = make_strategy("s1")
    first = make_attempt("sess", strategy)
    ledger.append(first)
    ledger.append(make_attempt("other", strategy))

    assert [a.id for a in ledger.list_by_session("sess")] == [first.id]
    assert ledger.count_all() == 2
    assert ledger.mark_selected(
        first.id, winner_strategy_id="s1", loser_strategy_ids=[], win_step=0.05, loss_step=0.05
    ) is True
    assert ledger.list_by_session("sess")[0].user_selected is True
    assert ledger.mark_selected(
        "missing", winner_strategy_id="s1", loser_strategy_ids=[], win_step=0.05, loss_step=0.05
    ) is False
