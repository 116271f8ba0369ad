from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from hairstyle_lab.config import ScoringConfig
from hairstyle_lab.db.repo.interfaces import StoreProtocol, StoreUnavailableError
from hairstyle_lab.logging_utils import RunLogger

from .ledger import AttemptLedger


@dataclass
class ScoreUpdater:
    """Reward the strategy the user picked and penalize the rest of the session."""

    store: Optional[StoreProtocol]
    config: ScoringConfig = field(default_factory=ScoringConfig)
    logger: Optional[RunLogger] = None
    ledger: Optional[AttemptLedger] = None

    def __post_init__(self) -> None:
        if self.ledger is None:
            self.ledger = AttemptLedger(store=self.store, logger=self.logger)

    def _log(self, message: str, level: str = "INFO") -> None:
        if self.logger:
            self.logger.log("SCORE", message, level=level)

    def record_selection(self, attempt_id: str, session_id: str) -> bool:
        assert self.ledger is not None
        try:
            attempts = self.ledger.list_by_session(session_id)
            winner = next((attempt for attempt in attempts if attempt.id == attempt_id), None)
            if winner is None:
                self._log(f"attempt {attempt_id} not found in session {session_id}", level="WARN")
                return False
            if not winner.output_image_ref:
                self._log(f"attempt {attempt_id} produced no image and cannot win", level="WARN")
                return False
            losers = sorted(
                {
                    attempt.strategy_id
                    for attempt in attempts
                    if attempt.id != attempt_id and attempt.strategy_id != winner.strategy_id
                }
            )
            marked = self.ledger.mark_selected(
                attempt_id,
                winner_strategy_id=winner.strategy_id,
                loser_strategy_ids=losers,
                win_step=self.config.win_step,
                loss_step=self.config.loss_step,
            )
        except StoreUnavailableError as exc:
            self._log(f"selection not recorded: {exc}", level="ERROR")
            return False
        if not marked:
            return False
        self._log(
            f"session {session_id}: {winner.strategy_name} +{self.config.win_step:g}, "
            f"{len(losers)} losers -{self.config.loss_step:g}"
        )
        return True


__all__ = ["ScoreUpdater"]
