"""Learning loop: attempt history, selection scoring and pool evolution."""

from .evolution import EvolutionReport, EvolutionScheduler, EvolutionStatus
from .ledger import AttemptLedger
from .scoring import ScoreUpdater

__all__ = ["AttemptLedger", "EvolutionReport", "EvolutionScheduler", "EvolutionStatus", "ScoreUpdater"]
