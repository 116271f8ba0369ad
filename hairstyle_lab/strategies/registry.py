from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Sequence

from hairstyle_lab.db.repo.interfaces import NEUTRAL_SCORE, StoreProtocol, StoreUnavailableError, Strategy
from hairstyle_lab.logging_utils import RunLogger

from .templates import default_strategies


class UnknownStrategyError(LookupError):
    """Raised when a caller names strategy ids the registry does not hold."""

    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = list(missing)
        super().__init__(f"unknown strategy ids: {', '.join(self.missing)}")


@dataclass
class StrategyRegistry:
    """Source of strategies; degrades to the fixed seed set when the store is down."""

    store: Optional[StoreProtocol]
    logger: Optional[RunLogger] = None

    def _require_store(self) -> StoreProtocol:
        if self.store is None:
            raise StoreUnavailableError("persistence is not configured")
        return self.store

    def _log(self, message: str, level: str = "INFO") -> None:
        if self.logger:
            self.logger.log("REGISTRY", message, level=level)

    def bootstrap_defaults(self) -> list[Strategy]:
        """Persist the seed set into an empty store and return the active pool."""

        try:
            store = self._require_store()
            if store.count_strategies() == 0:
                store.insert_strategies(default_strategies())
                self._log("seeded default strategies")
            return store.select_strategies(active=True)
        except StoreUnavailableError as exc:
            self._log(f"store unavailable, using in-memory defaults: {exc}", level="WARN")
            return default_strategies()

    def get_active(self) -> list[Strategy]:
        try:
            store = self._require_store()
            active = store.select_strategies(active=True)
            if active:
                return active
            if store.count_strategies() == 0:
                return self.bootstrap_defaults()
        except StoreUnavailableError as exc:
            self._log(f"store unavailable, using in-memory defaults: {exc}", level="WARN")
            return default_strategies()
        self._log("no active strategies stored, using in-memory defaults", level="WARN")
        return default_strategies()

    def get_by_ids(self, ids: Sequence[str]) -> list[Strategy]:
        requested = list(dict.fromkeys(ids))
        if not requested:
            return []
        try:
            found = self._require_store().select_strategies(ids=requested)
        except StoreUnavailableError as exc:
            self._log(f"store unavailable while loading {len(requested)} strategies: {exc}", level="WARN")
            return default_strategies()
        by_id = {strategy.id: strategy for strategy in found}
        missing = [strategy_id for strategy_id in requested if strategy_id not in by_id]
        if missing:
            raise UnknownStrategyError(missing)
        return [by_id[strategy_id] for strategy_id in requested]

    def create_batch(self, strategies: Sequence[Strategy]) -> list[str]:
        """Persist new strategies with neutral score and zeroed counters.

        Raises ``StoreUnavailableError`` when they cannot be stored.
        """

        fresh = [
            replace(strategy, score=NEUTRAL_SCORE, usage_count=0, win_count=0, is_active=True)
            for strategy in strategies
        ]
        ids = self._require_store().insert_strategies(fresh)
        self._log(f"created {len(ids)} strategies")
        return ids

    def list_all(self) -> list[Strategy]:
        return self._require_store().select_strategies()


__all__ = ["StrategyRegistry", "UnknownStrategyError"]
