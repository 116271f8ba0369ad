from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from hairstyle_lab.db.repo.interfaces import GenerationAttempt, StoreProtocol, StoreUnavailableError
from hairstyle_lab.logging_utils import RunLogger


@dataclass
class AttemptLedger:
    """Append-mostly record of every generation attempt."""

    store: Optional[StoreProtocol]
    logger: Optional[RunLogger] = None

    def _require_store(self) -> StoreProtocol:
        if self.store is None:
            raise StoreUnavailableError("persistence is not configured")
        return self.store

    def append(self, attempt: GenerationAttempt) -> Optional[str]:
        """Store the attempt and return its id; ``None`` when persistence failed."""

        try:
            attempt_id = self._require_store().insert_attempt(attempt)
        except StoreUnavailableError as exc:
            if self.logger:
                self.logger.log("LEDGER", f"attempt {attempt.strategy_name} not recorded: {exc}", level="WARN")
            return None
        if self.logger:
            state = "ok" if attempt.output_image_ref else "error"
            self.logger.log("LEDGER", f"recorded {state} attempt {attempt_id} ({attempt.strategy_name})", level="DEBUG")
        return attempt_id

    def mark_selected(
        self,
        attempt_id: str,
        *,
        winner_strategy_id: str,
        loser_strategy_ids: Sequence[str],
        win_step: float,
        loss_step: float,
    ) -> bool:
        """Flag the winning attempt (clearing its siblings) together with the score deltas.

        Both happen in one transaction. Returns ``False`` when the attempt no
        longer exists; raises ``StoreUnavailableError`` when the store is down.
        """

        try:
            self._require_store().apply_selection_outcome(
                attempt_id=attempt_id,
                winner_strategy_id=winner_strategy_id,
                loser_strategy_ids=loser_strategy_ids,
                win_step=win_step,
                loss_step=loss_step,
            )
        except KeyError:
            if self.logger:
                self.logger.log("LEDGER", f"attempt {attempt_id} disappeared before selection", level="WARN")
            return False
        return True

    def list_by_session(self, session_id: str) -> list[GenerationAttempt]:
        return self._require_store().select_attempts(session_id)

    def count_all(self) -> int:
        return self._require_store().count_attempts()


__all__ = ["AttemptLedger"]
