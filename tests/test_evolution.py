from __future__ import annotations

from hairstyle_lab.config import EvolutionConfig
from hairstyle_lab.db.repo.sqlite import SQLiteStore
from hairstyle_lab.learning.evolution import EvolutionScheduler
from hairstyle_lab.rng import DeterministicRNG
from hairstyle_lab.strategies.registry import StrategyRegistry
from hairstyle_lab.strategies.templates import compose_template, is_valid_genome, random_genome

from fakes import BrokenStore, make_attempt, make_strategy


def _record_attempts(store: SQLiteStore, count: int, start: int = 0) -> None:
    strategy = make_strategy("default-1")
    for index in range(start, start + count):
        store.insert_attempt(make_attempt(f"session-{index // 4}", strategy))


def _seeded(store: SQLiteStore) -> EvolutionScheduler:
    StrategyRegistry(store=store).bootstrap_defaults()
    return EvolutionScheduler(store=store, config=EvolutionConfig(seed=7))


def test_no_evolution_before_five_sessions(store: SQLiteStore) -> None:
    scheduler = _seeded(store)
    _record_attempts(store, 19)

    report = scheduler.maybe_evolve()

    assert report.evolved is False
    assert report.approximate_sessions == 4
    assert report.reason


def test_evolution_at_five_sessions(store: SQLiteStore) -> None:
    scheduler = _seeded(store)
    _record_attempts(store, 20)

    report = scheduler.maybe_evolve()

    assert report.evolved is True
    assert report.approximate_sessions == 5
    assert report.retired_count == report.activated_count == 2


def test_second_call_without_new_attempts_is_a_noop(store: SQLiteStore) -> None:
    scheduler = _seeded(store)
    _record_attempts(store, 20)

    assert scheduler.maybe_evolve().evolved is True
    again = scheduler.maybe_evolve()

    assert again.evolved is False
    assert "next evolution at 10" in again.reason


def test_pool_size_unchanged_and_lowest_scores_retired(store: SQLiteStore) -> None:
    store.insert_strategies(
        [
            make_strategy("best", score=0.9, genes=random_genome(DeterministicRNG(1))),
            make_strategy("good", score=0.7, genes=random_genome(DeterministicRNG(2))),
            make_strategy("weak", score=0.3),
            make_strategy("worst", score=0.1),
        ]
    )
    scheduler = EvolutionScheduler(store=store, config=EvolutionConfig(seed=3))
    _record_attempts(store, 20)

    report = scheduler.maybe_evolve()

    active = store.select_strategies(active=True)
    assert report.evolved is True
    assert set(report.retired) == {"weak", "worst"}
    assert len(active) == 4
    newcomers = [s for s in active if s.id in report.activated]
    assert len(newcomers) == 2
    for strategy in newcomers:
        assert strategy.origin == "evolved"
        assert strategy.score == 0.5 and strategy.usage_count == 0
        assert is_valid_genome(strategy.genes)
        assert strategy.instruction_template == compose_template(strategy.genes)


def test_last_active_strategy_is_never_retired(store: SQLiteStore) -> None:
    store.insert_strategies([make_strategy("only")])
    scheduler = EvolutionScheduler(store=store)
    _record_attempts(store, 20)

    report = scheduler.maybe_evolve()

    assert report.evolved is False
    assert [s.id for s in store.select_strategies(active=True)] == ["only"]
    # the cycle is consumed so the next call does not retry it
    assert store.get_evolution_cycle() == 1


def test_later_cycles_trigger_again(store: SQLiteStore) -> None:
    scheduler = _seeded(store)
    _record_attempts(store, 20)
    assert scheduler.maybe_evolve().evolved is True

    _record_attempts(store, 19, start=20)
    assert scheduler.maybe_evolve().evolved is False
    _record_attempts(store, 1, start=39)
    assert scheduler.maybe_evolve().evolved is True
    assert store.get_evolution_cycle() == 2


def test_unavailable_store_disables_evolution() -> None:
    for backend in (None, BrokenStore()):
        report = EvolutionScheduler(store=backend).maybe_evolve()
        assert report.evolved is False
        assert report.reason.startswith("evolution disabled")


def test_status_reports_next_evolution(store: SQLiteStore) -> None:
    scheduler = _seeded(store)
    _record_attempts(store, 14)

    status = scheduler.status()

    assert status.total_attempts == 14
    assert status.approximate_sessions == 3
    assert status.next_evolution_sessions == 5
    assert status.pending is False
