from __future__ import annotations

import sqlite3

import pytest

from hairstyle_lab.config import ScoringConfig
from hairstyle_lab.db.repo.sqlite import SQLiteStore
from hairstyle_lab.learning.ledger import AttemptLedger
from hairstyle_lab.learning.scoring import ScoreUpdater

from fakes import BrokenStore, make_attempt, make_strategy


def _scores(store: SQLiteStore) -> dict[str, tuple[float, int, int]]:
    return {s.id: (s.score, s.usage_count, s.win_count) for s in store.select_strategies()}


def test_selected_strategy_wins_and_sibling_loses(store: SQLiteStore) -> None:
    s1, s2 = make_strategy("s1"), make_strategy("s2")
    store.insert_strategies([s1, s2])
    winner = make_attempt("sess", s1)
    store.insert_attempt(winner)
    store.insert_attempt(make_attempt("sess", s2))

    assert ScoreUpdater(store=store).record_selection(winner.id, "sess") is True

    scores = _scores(store)
    assert scores["s1"][0] > 0.5
    assert scores["s2"][0] < 0.5
    assert scores["s1"][1:] == (1, 1)
    assert scores["s2"][1:] == (1, 0)
    assert [a.user_selected for a in store.select_attempts("sess")] == [True, False]


def test_every_distinct_loser_decreases_once(store: SQLiteStore) -> None:
    strategies = [make_strategy(f"s{i}") for i in range(4)]
    store.insert_strategies(strategies)
    winner = make_attempt("sess", strategies[0])
    store.insert_attempt(winner)
    for strategy in strategies[1:]:
        store.insert_attempt(make_attempt("sess", strategy))
    # a second attempt by the same loser strategy still counts as one participant
    store.insert_attempt(make_attempt("sess", strategies[1], failed=True))

    updater = ScoreUpdater(store=store, config=ScoringConfig(win_step=0.1, loss_step=0.02))
    assert updater.record_selection(winner.id, "sess") is True

    scores = _scores(store)
    assert scores["s0"] == (pytest.approx(0.6), 1, 1)
    for strategy_id in ("s1", "s2", "s3"):
        assert scores[strategy_id] == (pytest.approx(0.48), 1, 0)


def test_winner_strategy_is_not_penalised_for_its_own_siblings(store: SQLiteStore) -> None:
    s1, s2 = make_strategy("s1"), make_strategy("s2")
    store.insert_strategies([s1, s2])
    winner = make_attempt("sess", s1)
    store.insert_attempt(winner)
    store.insert_attempt(make_attempt("sess", s1))
    store.insert_attempt(make_attempt("sess", s2))

    ScoreUpdater(store=store).record_selection(winner.id, "sess")

    scores = _scores(store)
    assert scores["s1"] == (pytest.approx(0.55), 1, 1)
    assert scores["s2"] == (pytest.approx(0.45), 1, 0)


def test_unknown_winner_changes_nothing(store: SQLiteStore) -> None:
    s1, s2 = make_strategy("s1"), make_strategy("s2")
    store.insert_strategies([s1, s2])
    store.insert_attempt(make_attempt("sess", s1))
    elsewhere = make_attempt("other", s2)
    store.insert_attempt(elsewhere)

    updater = ScoreUpdater(store=store)
    assert updater.record_selection("missing", "sess") is False
    assert updater.record_selection(elsewhere.id, "sess") is False

    assert _scores(store) == {"s1": (0.5, 0, 0), "s2": (0.5, 0, 0)}
    assert not any(a.user_selected for a in store.select_attempts("sess"))


def test_failed_attempt_cannot_win(store: SQLiteStore) -> None:
    s1 = make_strategy("s1")
    store.insert_strategies([s1])
    failed = make_attempt("sess", s1, failed=True)
    store.insert_attempt(failed)

    assert ScoreUpdater(store=store).record_selection(failed.id, "sess") is False
    assert _scores(store)["s1"] == (0.5, 0, 0)


@pytest.mark.parametrize("backend", [None, BrokenStore()])


def test_unavailable_store_reports_failure(backend) -> None:
    assert ScoreUpdater(store=backend).record_selection("a", "sess") is False


def test_corrupt_session_row_reports_failure(store: SQLiteStore) -> None:
    s1 = make_strategy("s1")
    store.insert_strategies([s1])
    winner = make_attempt("sess", s1)
    store.insert_attempt(winner)
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute("UPDATE attempts SET evaluation_details_json='{bad' WHERE id=?", (winner.id,))
        conn.commit()
    finally:
        conn.close()

    assert ScoreUpdater(store=store).record_selection(winner.id, "sess") is False
    assert _scores(store)["s1"] == (0.5, 0, 0)


def test_selection_goes_through_the_given_ledger(store: SQLiteStore) -> None:
    s1, s2 = make_strategy("s1"), make_strategy("s2")
    store.insert_strategies([s1, s2])
    winner = make_attempt("sess", s1)
    store.insert_attempt(winner)
    store.insert_attempt(make_attempt("sess", s2))
    ledger = RecordingLedger(store=store)

    assert ScoreUpdater(store=None, ledger=ledger).record_selection(winner.id, "sess") is True

    assert ledger.selected == [(winner.id, "s1", ["s2"])]
    assert _scores(store)["s1"] == (pytest.approx(0.55), 1, 1)


class RecordingLedger(AttemptLedger):
    def __init__(self, store: SQLiteStore) -> None:
        super().__init__(store=store)
        self.selected: list[tuple[str, str, list[str]]] = []

    def mark_selected(self, attempt_id, *, winner_strategy_id, loser_strategy_ids, win_step, loss_step):
        self.selected.append((attempt_id, winner_strategy_id, list(loser_strategy_ids)))
        return super().mark_selected(
            attempt_id,
            winner_strategy_id=winner_strategy_id,
            loser_strategy_ids=loser_strategy_ids,
            win_step=win_step,
            loss_step=loss_step,
        )


def test_reselection_moves_the_flag(store: SQLiteStore) -> None:
    s1, s2 = make_strategy("s1"), make_strategy("s2")
    store.insert_strategies([s1, s2])
    first = make_attempt("sess", s1)
    second = make_attempt("sess", s2)
    store.insert_attempt(first)
    store.insert_attempt(second)
    updater = ScoreUpdater(store=store)

    updater.record_selection(first.id, "sess")
    updater.record_selection(second.id, "sess")

    selected = [a.id for a in store.select_attempts("sess") if a.user_selected]
    assert selected == [second.id]


def test_scoring_steps_must_be_positive() -> None:
    with pytest.raises(ValueError):
        ScoringConfig(win_step=0.0)
