from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from hairstyle_lab.config import EvolutionConfig
from hairstyle_lab.db.repo.interfaces import DEFAULT_MODEL, StoreProtocol, StoreUnavailableError
from hairstyle_lab.logging_utils import RunLogger
from hairstyle_lab.rng import DeterministicRNG
from hairstyle_lab.strategies.templates import evolved_strategy, is_valid_genome, synthesize_genomes


@dataclass(frozen=True)
class EvolutionReport:
    evolved: bool
    reason: str
    retired_count: int = 0
    activated_count: int = 0
    total_attempts: Optional[int] = None
    approximate_sessions: Optional[int] = None
    retired: tuple[str, ...] = ()
    activated: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"evolved": self.evolved, "reason": self.reason}
        if self.evolved:
            payload["retiredCount"] = self.retired_count
            payload["activatedCount"] = self.activated_count
            payload["retired"] = list(self.retired)
            payload["activated"] = list(self.activated)
        if self.total_attempts is not None:
            payload["totalAttempts"] = self.total_attempts
        if self.approximate_sessions is not None:
            payload["approximateSessions"] = self.approximate_sessions
        return payload


@dataclass(frozen=True)
class EvolutionStatus:
    total_attempts: int
    approximate_sessions: int
    last_cycle: int
    next_evolution_sessions: int
    pending: bool

    def as_dict(self) -> dict[str, Any]:
        return {
            "totalAttempts": self.total_attempts,
            "approximateSessions": self.approximate_sessions,
            "lastCycle": self.last_cycle,
            "nextEvolution": self.next_evolution_sessions,
            "pending": self.pending,
        }


@dataclass
class EvolutionScheduler:
    """Rotate the weakest active strategies out every few sessions."""

    store: Optional[StoreProtocol]
    config: EvolutionConfig = field(default_factory=EvolutionConfig)
    logger: Optional[RunLogger] = None
    rng: Optional[DeterministicRNG] = None

    def __post_init__(self) -> None:
        if self.rng is None:
            self.rng = DeterministicRNG(self.config.seed)

    def _require_store(self) -> StoreProtocol:
        if self.store is None:
            raise StoreUnavailableError("persistence is not configured")
        return self.store

    def _log(self, message: str, level: str = "INFO") -> None:
        if self.logger:
            self.logger.log("EVOLVE", message, level=level)

    def _cycle_for(self, total_attempts: int) -> tuple[int, int]:
        approx = total_attempts // self.config.attempts_per_session
        return approx, approx // self.config.sessions_per_cycle

    def status(self) -> EvolutionStatus:
        store = self._require_store()
        total = store.count_attempts()
        last_cycle = store.get_evolution_cycle()
        approx, cycle = self._cycle_for(total)
        return EvolutionStatus(
            total_attempts=total,
            approximate_sessions=approx,
            last_cycle=last_cycle,
            next_evolution_sessions=(max(cycle, last_cycle) + 1) * self.config.sessions_per_cycle,
            pending=cycle > last_cycle,
        )

    def maybe_evolve(self) -> EvolutionReport:
        try:
            return self._maybe_evolve()
        except StoreUnavailableError as exc:
            self._log(f"evolution disabled: {exc}", level="WARN")
            return EvolutionReport(evolved=False, reason=f"evolution disabled: {exc}")

    def _maybe_evolve(self) -> EvolutionReport:
        store = self._require_store()
        total = store.count_attempts()
        approx, cycle = self._cycle_for(total)
        last_cycle = store.get_evolution_cycle()
        if cycle <= last_cycle:
            next_at = (last_cycle + 1) * self.config.sessions_per_cycle
            return EvolutionReport(
                evolved=False,
                reason=f"Not time yet: {approx} sessions, next evolution at {next_at}",
                total_attempts=total,
                approximate_sessions=approx,
            )

        active = store.select_strategies(active=True)
        retire_n = min(self.config.retire_count, max(0, len(active) - 1))
        if retire_n == 0:
            applied = store.apply_evolution(
                expected_cycle=last_cycle,
                new_cycle=cycle,
                retire_ids=(),
                replacements=(),
            )
            reason = (
                f"cycle {cycle} skipped: only {len(active)} active strategies"
                if applied
                else f"cycle {cycle} already handled"
            )
            self._log(reason, level="WARN")
            return EvolutionReport(evolved=False, reason=reason, total_attempts=total, approximate_sessions=approx)

        # active is ordered by descending score, so the tail holds the weakest
        retired = active[-retire_n:]
        survivors = active[:-retire_n]
        parents = [dict(strategy.genes) for strategy in survivors if is_valid_genome(strategy.genes)]
        existing = [dict(strategy.genes) for strategy in active if is_valid_genome(strategy.genes)]
        genomes = synthesize_genomes(
            parents,
            retire_n,
            self.rng,
            mutation_rate=self.config.mutation_rate,
            exclude=existing,
        )
        model = survivors[0].model if survivors else DEFAULT_MODEL
        replacements = [evolved_strategy(genes, model=model, cycle=cycle) for genes in genomes]
        applied = store.apply_evolution(
            expected_cycle=last_cycle,
            new_cycle=cycle,
            retire_ids=[strategy.id for strategy in retired],
            replacements=replacements,
        )
        if not applied:
            reason = f"cycle {cycle} already handled"
            self._log(reason)
            return EvolutionReport(evolved=False, reason=reason, total_attempts=total, approximate_sessions=approx)

        self._log(
            f"cycle {cycle}: retired {', '.join(s.name for s in retired)}; "
            f"activated {', '.join(s.name for s in replacements)}"
        )
        return EvolutionReport(
            evolved=True,
            reason=f"Evolved at {approx} sessions",
            retired_count=len(retired),
            activated_count=len(replacements),
            total_attempts=total,
            approximate_sessions=approx,
            retired=tuple(strategy.id for strategy in retired),
            activated=tuple(strategy.id for strategy in replacements),
        )


__all__ = ["EvolutionReport", "EvolutionScheduler", "EvolutionStatus"]
